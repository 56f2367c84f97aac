"""
Document Store interface and its Supabase implementation.

The pipeline only needs three operations from a store:

  mapping_exists(partition_key)          -> bool
  create_mapping(partition_key, schema)  -> None
  upsert(partition_key, document)        -> UpsertResult

SupabaseDocumentStore keeps one Postgres table per partition. Partition
tables are created by the create_dmarc_partition() SQL function (see
supabase/migrations/), which also registers the partition and its declared
schema in the dmarc_partitions registry table. Both steps are idempotent, so
repeated or concurrent runs against the same day never fail or duplicate a
schema.
"""

import logging
import time
from typing import Protocol, runtime_checkable

from supabase import Client

from dmarc_ingest.models.ingestion import UpsertResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Raised when a single store call fails."""
    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class StoreConnectionError(StoreError):
    """Raised when the store cannot be reached at startup. Fatal for a run."""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

@runtime_checkable
class DocumentStore(Protocol):
    def mapping_exists(self, partition_key: str) -> bool: ...

    def create_mapping(self, partition_key: str, schema: dict) -> None: ...

    def upsert(self, partition_key: str, document: dict) -> UpsertResult: ...


# ---------------------------------------------------------------------------
# Supabase implementation
# ---------------------------------------------------------------------------

CREATE_PARTITION_RPC = "create_dmarc_partition"

# PostgREST reloads its schema cache asynchronously after the partition
# function's NOTIFY, so a table created moments ago can still be unknown.
SCHEMA_CACHE_ATTEMPTS = 5
SCHEMA_CACHE_DELAY = 0.5  # seconds, doubled per attempt
_MISSING_TABLE_CODES = {"PGRST205", "42P01"}


def _is_missing_table(error: Exception) -> bool:
    if getattr(error, "code", None) in _MISSING_TABLE_CODES:
        return True
    return "schema cache" in str(error)


class SupabaseDocumentStore:
    """Document Store backed by Supabase (PostgREST) tables."""

    def __init__(
        self,
        client: Client,
        registry_table: str = "dmarc_partitions",
        schema_cache_attempts: int = SCHEMA_CACHE_ATTEMPTS,
        schema_cache_delay: float = SCHEMA_CACHE_DELAY,
        sleep=time.sleep,
    ):
        self.client = client
        self.registry_table = registry_table
        self.schema_cache_attempts = schema_cache_attempts
        self.schema_cache_delay = schema_cache_delay
        self._sleep = sleep
        # Partitions created by this store that have not yet taken a write
        self._fresh: set[str] = set()

    def check_connectivity(self) -> None:
        """
        Read the partition registry once.

        Raises StoreConnectionError when the store is unreachable or the
        registry table is missing (migrations not applied).
        """
        try:
            self.client.table(self.registry_table).select("name").limit(1).execute()
        except Exception as e:
            raise StoreConnectionError(
                f"Document store unreachable: {str(e)}", "store_unreachable"
            )

    def mapping_exists(self, partition_key: str) -> bool:
        try:
            result = (
                self.client.table(self.registry_table)
                .select("name")
                .eq("name", partition_key)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise StoreError(
                f"Failed to look up partition {partition_key!r}: {str(e)}",
                "mapping_lookup_failed",
            )
        return bool(result.data)

    def create_mapping(self, partition_key: str, schema: dict) -> None:
        try:
            self.client.rpc(
                CREATE_PARTITION_RPC,
                {"partition_name": partition_key, "properties": schema.get("properties", {})},
            ).execute()
        except Exception as e:
            raise StoreError(
                f"Failed to create partition {partition_key!r}: {str(e)}",
                "mapping_create_failed",
            )
        self._fresh.add(partition_key)

    def _insert(self, partition_key: str, document: dict):
        attempts = self.schema_cache_attempts if partition_key in self._fresh else 1
        delay = self.schema_cache_delay
        for attempt in range(1, attempts + 1):
            try:
                result = self.client.table(partition_key).insert(document).execute()
            except Exception as e:
                if attempt == attempts or not _is_missing_table(e):
                    raise
                logger.info(
                    "Partition %s not visible yet (attempt %d/%d), waiting %.1fs",
                    partition_key,
                    attempt,
                    attempts,
                    delay,
                )
                self._sleep(delay)
                delay *= 2
                continue
            self._fresh.discard(partition_key)
            return result

    def upsert(self, partition_key: str, document: dict) -> UpsertResult:
        """
        Insert one document into its partition table.

        Every record is a new row; there is no update of a prior document.
        Store errors are returned as a non-created result rather than raised,
        so one rejected write never stops the others. The first write to a
        partition this store just created waits, within a bounded number of
        attempts, for PostgREST to see the new table.
        """
        try:
            result = self._insert(partition_key, document)
        except Exception as e:
            logger.debug("Insert into %s failed: %s", partition_key, e)
            return UpsertResult(result="error", diagnostics=str(e))

        if not result.data:
            return UpsertResult(result="noop", diagnostics="insert returned no data")
        return UpsertResult(result="created")
