"""
API routes for the Chain Archive HTTP API.

Read endpoints query the ArchiveStore only and never touch the ledger.
POST /archive/{uid} is the manual backfill entry point and maps the
archive error taxonomy onto HTTP status codes:

    StateNotTerminal -> 400
    FetchError       -> 502
    PersistError     -> 500
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..archive import (
    ArchivedRecord,
    ArchiveStore,
    BackfillTrigger,
    FetchError,
    PersistError,
    StateNotTerminal,
    StoreError,
)
from .config import Settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chain Archive"])


# --- Response Models ---


class ProductListResponse(BaseModel):
    """Paginated list of archived products."""

    success: bool = True
    count: int
    total: int
    page: int
    pages: int
    data: list[dict[str, Any]]


class ProductResponse(BaseModel):
    """A single archived product."""

    success: bool = True
    data: dict[str, Any]


class ArchiveResponse(BaseModel):
    """Result of a manual archive request."""

    success: bool = True
    message: str
    already_archived: bool
    data: dict[str, Any]


class SearchResponse(BaseModel):
    """Filtered list of archived products."""

    success: bool = True
    count: int
    data: list[dict[str, Any]]


class CategoryCount(BaseModel):
    category: str
    count: int


class StatsBody(BaseModel):
    total_completed: int
    last_30_days: int
    last_7_days: int
    oldest_record: str | None = None
    newest_record: str | None = None
    average_delivery_days: int
    average_delivery_time: str
    category_breakdown: list[CategoryCount] = Field(default_factory=list)


class StatsResponse(BaseModel):
    """Archive statistics."""

    success: bool = True
    stats: StatsBody


class VerificationResponse(BaseModel):
    """Ledger references for verifying an archived product."""

    success: bool = True
    contract_address: str
    uid: int
    final_tx_hash: str
    final_block: int


# --- Dependencies ---


def get_store(request: Request) -> ArchiveStore:
    """Get archive store from app state."""
    return request.app.state.services.store


def get_backfill(request: Request) -> BackfillTrigger:
    """Get backfill trigger from app state."""
    return request.app.state.services.backfill


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _store_failure(e: StoreError) -> HTTPException:
    logger.error(f"Archive store error: {e}")
    return HTTPException(status_code=500, detail={"code": "STORE_ERROR", "message": str(e)})


def _records(records: list[ArchivedRecord]) -> list[dict[str, Any]]:
    return [record.to_dict() for record in records]


# --- Product Routes ---


@router.get("/products", response_model=ProductListResponse)
async def list_products(
    request: Request,
    page: int = Query(1, ge=1, description="Page number (1-based)"),
    limit: int | None = Query(None, ge=1, description="Page size"),
    store: ArchiveStore = Depends(get_store),
):
    """
    List archived products, most recently completed first.
    """
    settings = get_settings(request)
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    try:
        records = await store.list_records(limit=limit, offset=(page - 1) * limit)
        total = await store.count()
    except StoreError as e:
        raise _store_failure(e)

    return ProductListResponse(
        count=len(records),
        total=total,
        page=page,
        pages=math.ceil(total / limit),
        data=_records(records),
    )


@router.get("/products/{uid}", response_model=ProductResponse)
async def get_product(uid: int, store: ArchiveStore = Depends(get_store)):
    """
    Get one archived product by uid.
    """
    try:
        record = await store.find_by_uid(uid)
    except StoreError as e:
        raise _store_failure(e)
    if record is None:
        raise HTTPException(status_code=404, detail="Product not found in archive")
    return ProductResponse(data=record.to_dict())


@router.get("/products/{uid}/verification", response_model=VerificationResponse)
async def get_verification(uid: int, store: ArchiveStore = Depends(get_store)):
    """
    Ledger references needed to verify an archived product independently.
    """
    try:
        record = await store.find_by_uid(uid)
    except StoreError as e:
        raise _store_failure(e)
    if record is None:
        raise HTTPException(status_code=404, detail="Product not found in archive")
    return VerificationResponse(**record.verification_info())


# --- Stats & Search Routes ---


@router.get("/stats", response_model=StatsResponse)
async def get_stats(store: ArchiveStore = Depends(get_store)):
    """
    Archive statistics: totals, recent activity and category breakdown.
    """
    try:
        stats = await store.statistics(now=datetime.now(timezone.utc))
    except StoreError as e:
        raise _store_failure(e)
    stats["average_delivery_time"] = f"{stats['average_delivery_days']} days"
    return StatsResponse(stats=StatsBody(**stats))


@router.get("/search", response_model=SearchResponse)
async def search_products(
    manufacturer: str | None = Query(None, description="Manufacturer address"),
    customer: str | None = Query(None, description="Customer address"),
    category: str | None = Query(None, description="Product category"),
    start_date: datetime | None = Query(None, description="Completed at or after"),
    end_date: datetime | None = Query(None, description="Completed at or before"),
    store: ArchiveStore = Depends(get_store),
):
    """
    Search archived products; every given filter must match.
    """
    try:
        records = await store.search(
            manufacturer=manufacturer,
            customer=customer,
            category=category,
            start=start_date,
            end=end_date,
        )
    except StoreError as e:
        raise _store_failure(e)
    return SearchResponse(count=len(records), data=_records(records))


@router.get("/manufacturer/{address}", response_model=SearchResponse)
async def products_by_manufacturer(address: str, store: ArchiveStore = Depends(get_store)):
    """
    All archived products made by one manufacturer.
    """
    try:
        records = await store.search(manufacturer=address)
    except StoreError as e:
        raise _store_failure(e)
    return SearchResponse(count=len(records), data=_records(records))


@router.get("/customer/{address}", response_model=SearchResponse)
async def products_by_customer(address: str, store: ArchiveStore = Depends(get_store)):
    """
    All archived products received by one customer.
    """
    try:
        records = await store.search(customer=address)
    except StoreError as e:
        raise _store_failure(e)
    return SearchResponse(count=len(records), data=_records(records))


@router.get("/export")
async def export_archive(request: Request, store: ArchiveStore = Depends(get_store)):
    """
    Export every archived product as a downloadable JSON backup.
    """
    settings = get_settings(request)
    try:
        records = await store.export()
    except StoreError as e:
        raise _store_failure(e)
    return JSONResponse(
        content={
            "export_date": datetime.now(timezone.utc).isoformat(),
            "total_records": len(records),
            "data": _records(records),
        },
        headers={"Content-Disposition": f"attachment; filename={settings.export_filename}"},
    )


# --- Backfill Route ---


@router.post("/archive/{uid}", response_model=ArchiveResponse)
async def archive_product(uid: int, backfill: BackfillTrigger = Depends(get_backfill)):
    """
    Manually archive a product whose completion event was missed.

    Succeeds (with already_archived=true) when the product is already in the archive.
    """
    try:
        result = await backfill.backfill(uid)
    except StateNotTerminal as e:
        raise HTTPException(
            status_code=400,
            detail={
                "code": e.code,
                "message": f"Product not yet completed on ledger (current state: {e.current_state})",
            },
        )
    except FetchError as e:
        raise HTTPException(status_code=502, detail=e.to_dict())
    except PersistError as e:
        raise HTTPException(status_code=500, detail=e.to_dict())

    logger.info(
        f"Manual archive request for product {uid}: {result.message}",
        extra={"uid": uid, "already_archived": result.already_archived},
    )
    return ArchiveResponse(
        message=result.message,
        already_archived=result.already_archived,
        data=result.record.to_dict(),
    )
