"""
DMARC Ingest API
FastAPI application that feeds DMARC aggregate reports into partitioned storage.
"""

import logging

from fastapi import Depends, FastAPI, HTTPException

from dmarc_ingest.routers import ingest
from dmarc_ingest.routers.ingest import get_document_store
from dmarc_ingest.services.document_store import StoreError, SupabaseDocumentStore

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="DMARC Ingest API",
    description="Ingests DMARC aggregate reports (RFC 7489) into date-partitioned tables",
    version="0.1.0",
)

# Include routers
app.include_router(ingest.router, prefix="/api/ingest", tags=["ingest"])


@app.get("/")
async def root():
    return {"message": "DMARC Ingest API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/store")
def health_store(store: SupabaseDocumentStore = Depends(get_document_store)):
    """
    Test the document store connection.

    Reads one row of the partition registry to verify that the Supabase
    client can reach the database and that migrations were applied.
    Returns 503 on failure.
    """
    try:
        store.check_connectivity()
    except StoreError as exc:
        logger.error(f"Store health check failed: {exc.message}")
        raise HTTPException(status_code=503, detail=exc.message)
    return {"status": "ok", "store": "reachable", "registry": store.registry_table}
