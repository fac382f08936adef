"""
Billing API Routes
Provider webhooks and the admin import of historical paid records.
"""

from typing import Literal

from fastapi import APIRouter, Depends, Header, Query, Request

from jobflow.auth.verify import CallerContext, require_admin
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.api.job_response import ImportResponse, ReconcileResponse
from jobflow.models.domain.job_domain import DocumentKind
from jobflow.routes.dependencies import get_billing_service, get_reconciliation_service

logger = get_logger(__name__)

router = APIRouter(tags=["billing"])


@router.post("/webhooks/billing", response_model=ReconcileResponse)
async def billing_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    reconciliation=Depends(get_reconciliation_service),
):
    """Signature-verified provider event. Unknown documents are acknowledged."""
    payload = await request.body()
    result = await reconciliation.handle_webhook(payload, stripe_signature)
    return ReconcileResponse(
        handled=result.handled, job_id=result.job_id, applied=result.applied, detail=result.detail
    )


@router.post("/admin/billing/import", response_model=ImportResponse)
async def import_paid(
    kind: Literal["invoice", "quote"] = Query("invoice"),
    customer_ref: str | None = Query(None, description="Limit to one provider customer"),
    caller: CallerContext = Depends(require_admin),
    billing=Depends(get_billing_service),
):
    summary = await billing.import_paid(DocumentKind(kind), customer_ref)
    logger.info("Billing import requested", admin_id=caller.user_id, kind=kind)
    return ImportResponse(
        imported=summary.imported,
        skipped=summary.skipped,
        imported_job_ids=summary.imported_job_ids,
    )
