"""
Database client configuration.
Uses Supabase (PostgREST) as the document store for partitioned DMARC records.
"""

from supabase import create_client, Client

from dmarc_ingest.config import StoreConfig
from dmarc_ingest.services.document_store import SupabaseDocumentStore


def create_supabase_client(config: StoreConfig) -> Client:
    """Admin client for service-level operations (bypasses RLS)."""
    if not config.url or not config.service_key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment variables")
    return create_client(config.url, config.service_key)


def create_document_store(config: StoreConfig) -> SupabaseDocumentStore:
    return SupabaseDocumentStore(
        create_supabase_client(config),
        registry_table=config.registry_table,
    )
