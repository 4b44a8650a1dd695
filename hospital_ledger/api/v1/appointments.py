from fastapi import APIRouter, Depends
from typing import Optional
import logging

from ...api.deps import get_ledger, get_current_user_optional, get_staff_user, ensure_staff
from ...core.errors import LedgerPermissionError, ServiceResult
from ...core.security import TokenPayload
from ...models.appointment import AppointmentStatus
from ...schemas.appointment import (
    AppointmentResponse, AppointmentResult, AppointmentUpdate,
    PaymentStatusUpdate, RescheduleRequest
)
from ...services.appointment_service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])

def _to_result(result: ServiceResult) -> AppointmentResult:
    return AppointmentResult(
        appointment=AppointmentResponse.model_validate(result.data),
        warnings=result.warnings
    )

@router.get("", response_model=ServiceResult)
async def list_appointments(
    status: Optional[AppointmentStatus] = None,
    patient_id: Optional[str] = None,
    ledger: AppointmentService = Depends(get_ledger),
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional)
):
    """List appointments ordered by schedule."""
    try:
        ensure_staff(current_user, "list_appointments")
    except LedgerPermissionError as e:
        logger.warning(f"{e.message} ({e.context()})")
        return ServiceResult.failed(e.message, empty=[])

    appointments = ledger.list_appointments(status=status, patient_ref=patient_id)
    return ServiceResult.ok([
        AppointmentResponse.model_validate(a).model_dump(by_alias=True, mode="json")
        for a in appointments
    ])

@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    ledger: AppointmentService = Depends(get_ledger),
    _: TokenPayload = Depends(get_staff_user)
):
    return AppointmentResponse.model_validate(ledger.get(appointment_id))

@router.patch("/{appointment_id}", response_model=AppointmentResult)
async def update_appointment(
    appointment_id: int,
    changes: AppointmentUpdate,
    ledger: AppointmentService = Depends(get_ledger),
    current_user: TokenPayload = Depends(get_staff_user)
):
    """Edit an appointment. A missing appointment is recreated and a warning returned."""
    logger.info(f"Appointment {appointment_id} edited by {current_user.sub}")
    return _to_result(ledger.update(appointment_id, changes))

@router.post("/{appointment_id}/confirm", response_model=AppointmentResult)
async def confirm_appointment(
    appointment_id: int,
    ledger: AppointmentService = Depends(get_ledger),
    _: TokenPayload = Depends(get_staff_user)
):
    return _to_result(ledger.confirm(appointment_id))

@router.post("/{appointment_id}/cancel", response_model=AppointmentResult)
async def cancel_appointment(
    appointment_id: int,
    ledger: AppointmentService = Depends(get_ledger),
    _: TokenPayload = Depends(get_staff_user)
):
    return _to_result(ledger.cancel(appointment_id))

@router.post("/{appointment_id}/admit", response_model=AppointmentResult)
async def admit_patient(
    appointment_id: int,
    ledger: AppointmentService = Depends(get_ledger),
    _: TokenPayload = Depends(get_staff_user)
):
    return _to_result(ledger.admit(appointment_id))

@router.post("/{appointment_id}/complete", response_model=AppointmentResult)
async def complete_appointment(
    appointment_id: int,
    ledger: AppointmentService = Depends(get_ledger),
    _: TokenPayload = Depends(get_staff_user)
):
    return _to_result(ledger.complete(appointment_id))

@router.post("/{appointment_id}/reschedule", response_model=AppointmentResult)
async def reschedule_appointment(
    appointment_id: int,
    reschedule: RescheduleRequest,
    ledger: AppointmentService = Depends(get_ledger),
    _: TokenPayload = Depends(get_staff_user)
):
    """Move to a new slot; the appointment is saved as Confirmed."""
    return _to_result(ledger.reschedule(appointment_id, reschedule.date, reschedule.time))

@router.post("/{appointment_id}/payment", response_model=AppointmentResult)
async def update_payment_status(
    appointment_id: int,
    payment: PaymentStatusUpdate,
    ledger: AppointmentService = Depends(get_ledger),
    current_user: TokenPayload = Depends(get_staff_user)
):
    """Mark paid, mark pending or refund."""
    logger.info(
        f"Payment status of appointment {appointment_id} set to "
        f"{payment.payment_status.value} by {current_user.sub}"
    )
    return _to_result(ledger.set_payment_status(appointment_id, payment.payment_status))
