"""API endpoints for payout import, reconciliation and statistics."""

import os
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import config
from ..auth import PROCESSOR_RATE_LIMIT, limiter, verify_api_key
from ..cache import TTLCache
from ..database import PayoutRepository, get_async_session_factory
from ..errors import NotConnected, PayoutNotFound, ProcessorRejected, ProcessorUnavailable
from ..processor import ProcessorClientBase, get_processor_client
from .importer import ImportService
from .models import (
    ImportAvailability,
    ImportResult,
    PayoutStats,
    ReconciliationOutcome,
    RevenueSummary,
)
from .service import PayoutLockRegistry, ReconciliationService
from .stats import StatisticsAggregator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payouts", tags=["payouts"])


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return get_async_session_factory()


@lru_cache()
def get_processor() -> ProcessorClientBase:
    return get_processor_client(os.getenv("PAYMENT_PROCESSOR", "stripe"))


@lru_cache()
def get_stats_cache() -> TTLCache:
    return TTLCache(
        capacity=config.DEFAULT_STATS_CACHE_CAPACITY,
        ttl=config.get_stats_cache_ttl(),
    )


@lru_cache()
def get_lock_registry() -> PayoutLockRegistry:
    """Process-wide so concurrent requests for one payout serialize."""
    return PayoutLockRegistry()


def get_reconciliation_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    processor: ProcessorClientBase = Depends(get_processor),
    stats_cache: TTLCache = Depends(get_stats_cache),
    locks: PayoutLockRegistry = Depends(get_lock_registry),
) -> ReconciliationService:
    return ReconciliationService(
        session_factory,
        processor,
        locks=locks,
        stats_cache=stats_cache,
    )


def get_import_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    processor: ProcessorClientBase = Depends(get_processor),
    stats_cache: TTLCache = Depends(get_stats_cache),
) -> ImportService:
    return ImportService(session_factory, processor, stats_cache=stats_cache)


def get_statistics(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    stats_cache: TTLCache = Depends(get_stats_cache),
) -> StatisticsAggregator:
    return StatisticsAggregator(session_factory, cache=stats_cache)


class ReconcileRequestBody(BaseModel):
    """Request body for reconciling one payout."""
    payout_id: str = Field(..., description="Internal payout id or processor payout reference")
    church_id: Optional[str] = Field(
        default=None,
        description="Owning church; required only for payouts not imported yet",
    )


class ReconcileAllRequestBody(BaseModel):
    church_id: str


class ImportRequestBody(BaseModel):
    """Request body for a historical payout import."""
    church_id: str
    limit: int = Field(default=10, ge=1, le=config.MAX_IMPORT_LIMIT)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class PayoutListResponse(BaseModel):
    payouts: List[Dict[str, Any]]
    total: int


def _not_connected(e: NotConnected) -> HTTPException:
    return HTTPException(status_code=409, detail=str(e))


@router.get("/stats", response_model=PayoutStats)
async def payout_stats(
    church_id: str = Query(..., description="Church to summarize"),
    statistics: StatisticsAggregator = Depends(get_statistics),
    api_key: str = Depends(verify_api_key),
):
    return await statistics.stats(church_id)


@router.post("/reconcile")
async def reconcile_payout(
    body: ReconcileRequestBody,
    service: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Reconcile one payout against the donation ledger.

    Reconciling an already reconciled payout returns its stored aggregates.
    Processor failures answer 502 and leave the payout retryable.
    """
    try:
        result = await service.reconcile(body.payout_id, church_id=body.church_id)
    except PayoutNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NotConnected as e:
        raise _not_connected(e)

    if result.outcome == ReconciliationOutcome.FAILED:
        raise HTTPException(
            status_code=502,
            detail={
                "message": result.describe(),
                "payout_id": result.payout_id,
                "processor_payout_reference": result.processor_payout_reference,
            },
        )

    response = result.model_dump(mode="json")
    response["message"] = result.describe()
    return response


@router.post("/reconcile-all")
@limiter.limit(PROCESSOR_RATE_LIMIT)
async def reconcile_all_payouts(
    request: Request,
    body: ReconcileAllRequestBody,
    service: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    """Reconcile every paid, unreconciled payout of a church."""
    try:
        batch = await service.reconcile_all(body.church_id)
    except NotConnected as e:
        raise _not_connected(e)

    response = batch.to_summary_dict()
    response["results"] = [r.model_dump(mode="json") for r in batch.results]
    return response


@router.get("/import", response_model=ImportAvailability)
async def import_availability(
    church_id: str = Query(...),
    importer: ImportService = Depends(get_import_service),
    api_key: str = Depends(verify_api_key),
):
    try:
        return await importer.check_available(church_id)
    except (ProcessorUnavailable, ProcessorRejected) as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/import", response_model=ImportResult)
@limiter.limit(PROCESSOR_RATE_LIMIT)
async def import_payouts(
    request: Request,
    body: ImportRequestBody,
    importer: ImportService = Depends(get_import_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Import the church's most recent payouts from the payment processor.

    Safe to repeat: payouts already imported are counted as skipped.
    """
    if body.start_date and body.end_date and body.start_date > body.end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    try:
        return await importer.import_historical(
            body.church_id,
            limit=body.limit,
            start=body.start_date,
            end=body.end_date,
        )
    except NotConnected as e:
        raise _not_connected(e)
    except ProcessorUnavailable as e:
        partial = e.partial_result or ImportResult()
        raise HTTPException(
            status_code=502,
            detail={"message": str(e), **partial.model_dump()},
        )
    except ProcessorRejected as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("", response_model=PayoutListResponse)
async def list_payouts(
    church_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    api_key: str = Depends(verify_api_key),
):
    async with session_factory() as session:
        repo = PayoutRepository(session)
        payouts = await repo.list_for_church(church_id, status, start, end, limit, offset)
        total = await repo.count_for_church(church_id)
    return PayoutListResponse(payouts=[p.to_dict() for p in payouts], total=total)


@router.get("/revenue", response_model=RevenueSummary)
async def revenue_summary(
    church_id: str = Query(...),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    statistics: StatisticsAggregator = Depends(get_statistics),
    api_key: str = Depends(verify_api_key),
):
    """Gross revenue of succeeded donations, donor-covered fees included."""
    return await statistics.revenue(church_id, start, end)


@router.get("/health")
async def payouts_health():
    """Health check endpoint for the payouts service."""
    return {"status": "healthy", "service": "payouts"}
