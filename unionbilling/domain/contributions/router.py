"""Contributions router - FastAPI endpoints for contribution billing"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from ...auth import get_current_actor_id
from ...database import get_db
from .lytex_service import LytexService, lytex_token_provider
from .portal_access import portal_context_from_request
from .reconciliation_service import ReconciliationService
from .schemas import (
    PendingReconciliationResponse,
    ReconcileBatchRequest,
    ReconcileResponse,
    SetValueRequest,
    SetValueResponse,
    SyncOneResponse,
    SyncRequest,
    SyncResponse,
)
from .value_service import ContributionValueService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contributions", tags=["Contributions"])


def get_lytex_service() -> LytexService:
    """Dependency injection for LytexService"""
    return LytexService(token_provider=lytex_token_provider)


def get_value_service(
    db: Session = Depends(get_db),
    lytex: LytexService = Depends(get_lytex_service),
) -> ContributionValueService:
    """Dependency injection for ContributionValueService"""
    return ContributionValueService(db, lytex)


def get_reconciliation_service(
    db: Session = Depends(get_db),
    lytex: LytexService = Depends(get_lytex_service),
) -> ReconciliationService:
    """Dependency injection for ReconciliationService"""
    return ReconciliationService(db, lytex)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ============================================================================
# VALUE ASSIGNMENT (public, employer and accounting-office portals)
# ============================================================================


@router.post("/set-value", response_model=SetValueResponse)
async def set_contribution_value(
    body: SetValueRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    service: ContributionValueService = Depends(get_value_service),
):
    """Set the value of an awaiting contribution and generate its boleto"""
    invoice_url = await service.assign_value(
        contribution_id=body.contribution_id,
        value=body.value,
        portal_context=portal_context_from_request(body.portal_type, body.portal_id),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        background_tasks=background_tasks,
    )
    return SetValueResponse(lytex_invoice_url=invoice_url)


# ============================================================================
# LYTEX SYNC AND RECONCILIATION (staff)
# ============================================================================


@router.post("/sync", response_model=SyncResponse)
async def sync_pending_contributions(
    body: SyncRequest,
    actor_id: str = Depends(get_current_actor_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Pull payment status from Lytex for every open invoice of a clinic"""
    logger.info(f"Lytex sync for clinic {body.clinic_id} requested by {actor_id}")
    return await service.sync_pending(body.clinic_id)


@router.get("/pending-reconciliation", response_model=PendingReconciliationResponse)
async def get_pending_reconciliation(
    clinic_id: str = Query(...),
    actor_id: str = Depends(get_current_actor_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Paid contributions still waiting for reconciliation"""
    return {"contribution_ids": service.pending_reconciliation_ids(clinic_id)}


@router.post("/reconcile-batch", response_model=ReconcileResponse)
async def reconcile_contributions_batch(
    body: ReconcileBatchRequest,
    actor_id: str = Depends(get_current_actor_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Reconcile a batch of contributions"""
    return {"reconciled": service.reconcile_batch(body.contribution_ids, actor_id)}


@router.post("/{contribution_id}/sync", response_model=SyncOneResponse)
async def sync_contribution(
    contribution_id: str,
    actor_id: str = Depends(get_current_actor_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Pull payment status from Lytex for one contribution"""
    return await service.sync_one(contribution_id)


@router.post("/{contribution_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_contribution(
    contribution_id: str,
    actor_id: str = Depends(get_current_actor_id),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    """Reconcile one paid contribution"""
    return {"reconciled": service.reconcile_one(contribution_id, actor_id)}


@router.post("/{contribution_id}/cancel")
async def cancel_contribution(
    contribution_id: str,
    actor_id: str = Depends(get_current_actor_id),
    service: ContributionValueService = Depends(get_value_service),
):
    """Cancel the boleto of an open contribution"""
    logger.info(f"Cancellation of contribution {contribution_id} requested by {actor_id}")
    await service.cancel_contribution(contribution_id)
    return {"success": True}
