"""
Partition router.

Each EvaluationRecord is written to a date partition named after the day its
reporting window ends, e.g. "dmarc_2024_01_31". Before the first write to a
partition in a run, the router makes sure the partition exists with the
declared schema, creating it when the store reports it missing.

Both pre-creation and write routing use partition_key(), so a record always
lands in a partition that was established for it.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from dmarc_ingest.models.report import EvaluationRecord
from dmarc_ingest.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "dmarc_"
DEFAULT_DATE_FORMAT = "%Y_%m_%d"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

# Field type -> columns. Expanded into PARTITION_SCHEMA below.
_SCHEMA_BY_TYPE: dict[str, list[str]] = {
    "keyword": [
        "org_name", "email", "report_id", "domain",
        "adkim", "aspf", "p", "sp",
        "disposition", "dkim", "spf", "reason",
        "envelope_to", "envelope_from", "header_from",
    ],
    "text": ["extra_contact_info"],
    "long": ["pct", "count"],
    "date": ["begin_timestamp", "end_timestamp"],
    "ip": ["source_ip"],
    "object": ["auth_results"],
}


def build_schema() -> dict[str, dict[str, str]]:
    """Return the {"properties": {column: {"type": ...}}} partition schema."""
    properties: dict[str, dict[str, str]] = {}
    for field_type, columns in _SCHEMA_BY_TYPE.items():
        for column in columns:
            definition = {"type": field_type}
            if field_type == "date":
                definition["format"] = "epoch_millis"
            properties[column] = definition
    return {"properties": properties}


PARTITION_SCHEMA = build_schema()


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class PartitionRouter:
    """Computes partition keys and establishes each partition once per run."""

    def __init__(
        self,
        store: DocumentStore,
        prefix: str = DEFAULT_PREFIX,
        date_format: str = DEFAULT_DATE_FORMAT,
        schema: Optional[dict] = None,
    ):
        self.store = store
        self.prefix = prefix
        self.date_format = date_format
        self.schema = schema or PARTITION_SCHEMA
        # Keys confirmed to exist (found or created) during this router's lifetime
        self._known: set[str] = set()

    def key_for_timestamp(self, timestamp_ms: int) -> str:
        """Raises ValueError, OverflowError or OSError outside the datetime range."""
        day = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        return f"{self.prefix}{day.strftime(self.date_format)}"

    def partition_key(self, record: EvaluationRecord) -> Optional[str]:
        """
        Partition for a record, from its end timestamp.

        Falls back to the begin timestamp when the end is unknown. Returns
        None when the record has neither, or when the timestamp is not a
        representable date (e.g. <end>99999999999999</end>).
        """
        timestamp = record.end_timestamp or record.begin_timestamp
        if timestamp is None:
            return None
        try:
            return self.key_for_timestamp(timestamp)
        except (ValueError, OverflowError, OSError) as e:
            logger.debug("No partition for timestamp %r: %s", timestamp, e)
            return None

    def partition_keys(self, records: Iterable[EvaluationRecord]) -> list[str]:
        """Distinct partition keys for records, in first-seen order."""
        keys: list[str] = []
        for record in records:
            key = self.partition_key(record)
            if key is not None and key not in keys:
                keys.append(key)
        return keys

    def ensure_partition(self, key: str) -> bool:
        """
        Make sure one partition exists. Returns True if it was created now.

        Store errors propagate: a partition whose schema cannot be
        established must not receive writes.
        """
        if key in self._known:
            return False

        if self.store.mapping_exists(key):
            logger.debug("Partition %s already exists", key)
            self._known.add(key)
            return False

        self.store.create_mapping(key, self.schema)
        self._known.add(key)
        logger.info("Created partition %s", key)
        return True

    def ensure_partitions(self, records: Iterable[EvaluationRecord]) -> list[str]:
        """Establish every partition the records need; return the ones created."""
        return [key for key in self.partition_keys(records) if self.ensure_partition(key)]
