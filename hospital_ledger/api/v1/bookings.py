from fastapi import APIRouter, Depends
from typing import Optional
import logging

from ...api.deps import (
    get_booking_service, get_current_user_optional, get_staff_user,
    rate_limit_check, ensure_staff
)
from ...core.errors import LedgerPermissionError, ServiceResult
from ...core.security import TokenPayload
from ...schemas.booking import (
    BookingRequest, BookingResult, OfflineBookingResponse, SyncReport
)
from ...services.offline_booking_service import OfflineBookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

@router.post("", response_model=BookingResult)
async def book_appointment(
    booking: BookingRequest,
    booking_service: OfflineBookingService = Depends(get_booking_service),
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional),
    _: None = Depends(rate_limit_check)
):
    """Book an appointment. Falls back to the offline queue when the store is unreachable."""
    booked_by = current_user.sub if current_user else "anonymous"
    logger.info(f"Booking request from {booked_by} for doctor {booking.doctor_id}")
    return booking_service.book(booking)

@router.post("/sync", response_model=SyncReport)
async def sync_offline_bookings(
    booking_service: OfflineBookingService = Depends(get_booking_service),
    _: TokenPayload = Depends(get_staff_user)
):
    """Replay bookings queued while offline."""
    return booking_service.sync_pending()

@router.get("/pending", response_model=ServiceResult)
async def list_pending_bookings(
    booking_service: OfflineBookingService = Depends(get_booking_service),
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional)
):
    """Bookings still waiting in the offline queue."""
    try:
        ensure_staff(current_user, "list_pending_bookings")
    except LedgerPermissionError as e:
        logger.warning(f"{e.message} ({e.context()})")
        return ServiceResult.failed(e.message, empty=[])

    entries = booking_service.pending_entries()
    return ServiceResult.ok([
        OfflineBookingResponse.model_validate(entry).model_dump(by_alias=True, mode="json")
        for entry in entries
    ])
