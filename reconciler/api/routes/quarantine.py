"""Quarantine review and resolution endpoints."""

import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from reconciler.api.deps import get_store
from reconciler.db.repository import CatalogStore
from reconciler.ingest.quarantine import QuarantineResolutionError, QuarantineResolver
from reconciler.match.canonical_matcher import BatchCommitError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/quarantine", tags=["quarantine"])


class QuarantinedRecordResponse(BaseModel):
    """Response model for a quarantined record."""
    id: str
    retailer_id: str
    feed_id: str
    run_id: str
    match_key: str
    status: str
    parsed_fields: Dict[str, Any]
    blocking_issues: List[Dict[str, Any]]
    resolved_upc: Optional[str]
    retailer_sku_id: Optional[str]


class ResolveRequest(BaseModel):
    """Request model for resolving a quarantined record."""
    upc: str
    run_id: Optional[str] = None


class ResolveResponse(BaseModel):
    record_id: str
    retailer_sku_id: str
    canonical_sku_id: Optional[str]
    auto_created: bool


@router.get("", response_model=List[QuarantinedRecordResponse])
async def list_quarantined(
    feed_id: Optional[str] = None,
    store: CatalogStore = Depends(get_store),
):
    """List quarantined records, optionally for one feed."""
    records = await store.list_quarantined(feed_id)
    return [
        QuarantinedRecordResponse(
            id=r.id,
            retailer_id=r.retailer_id,
            feed_id=r.feed_id,
            run_id=r.run_id,
            match_key=r.match_key,
            status=r.status.value,
            parsed_fields=r.parsed_fields,
            blocking_issues=r.blocking_issues,
            resolved_upc=r.resolved_upc,
            retailer_sku_id=r.retailer_sku_id,
        )
        for r in records
    ]


@router.post("/{record_id}/resolve", response_model=ResolveResponse)
async def resolve_quarantined(
    record_id: str,
    body: ResolveRequest,
    store: CatalogStore = Depends(get_store),
):
    """Supply a UPC for a quarantined record and match it."""
    resolver = QuarantineResolver(store)
    try:
        result = await resolver.resolve(record_id, body.upc, body.run_id or uuid4().hex)
    except QuarantineResolutionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BatchCommitError as e:
        logger.error(f"Matching failed while resolving quarantined record {record_id}: {e}")
        raise HTTPException(status_code=503, detail="Matching failed, the record can be resolved again")

    return ResolveResponse(
        record_id=record_id,
        retailer_sku_id=result.retailer_sku.id,
        canonical_sku_id=result.canonical_sku_id,
        auto_created=result.auto_created,
    )
