from fastapi import APIRouter, Depends
from typing import Optional
import logging

from ...api.deps import get_reconciler, get_current_user_optional, get_staff_user, ensure_staff
from ...core.errors import LedgerPermissionError, ServiceResult
from ...core.security import TokenPayload
from ...schemas.billing import InvoiceResponse, PaymentResponse, ReconciliationReport
from ...services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Billing"])

@router.get("/invoices", response_model=ServiceResult)
async def list_invoices(
    appointment_id: Optional[int] = None,
    reconciler: ReconciliationService = Depends(get_reconciler),
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional)
):
    """Invoices with their line items, newest first."""
    try:
        ensure_staff(current_user, "list_invoices")
    except LedgerPermissionError as e:
        logger.warning(f"{e.message} ({e.context()})")
        return ServiceResult.failed(e.message, empty=[])

    return ServiceResult.ok([
        InvoiceResponse.model_validate(invoice).model_dump(by_alias=True, mode="json")
        for invoice in reconciler.list_invoices(appointment_id)
    ])

@router.get("/payments", response_model=ServiceResult)
async def list_payments(
    appointment_id: Optional[int] = None,
    reconciler: ReconciliationService = Depends(get_reconciler),
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional)
):
    try:
        ensure_staff(current_user, "list_payments")
    except LedgerPermissionError as e:
        logger.warning(f"{e.message} ({e.context()})")
        return ServiceResult.failed(e.message, empty=[])

    return ServiceResult.ok([
        PaymentResponse.model_validate(payment).model_dump(by_alias=True, mode="json")
        for payment in reconciler.list_payments(appointment_id)
    ])

@router.post("/invoices/reconcile", response_model=ReconciliationReport)
async def reconcile_invoices(
    reconciler: ReconciliationService = Depends(get_reconciler),
    current_user: TokenPayload = Depends(get_staff_user)
):
    """Bring every invoice's status in line with its payment status."""
    logger.info(f"Invoice sync requested by {current_user.sub}")
    return reconciler.reconcile_all()

@router.post("/invoices/reconcile/appointments", response_model=ReconciliationReport)
async def reconcile_appointments(
    reconciler: ReconciliationService = Depends(get_reconciler),
    current_user: TokenPayload = Depends(get_staff_user)
):
    """Replay payment reconciliation that was deferred while records were unreachable."""
    logger.info(f"Appointment payment sync requested by {current_user.sub}")
    return reconciler.reconcile_appointments()
