from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional
import logging

from ..core.database import STORE_UNAVAILABLE, db_healthcheck
from ..core.errors import LedgerError, TransientNetworkError
from ..models.appointment import Appointment, AppointmentStatus, PaymentMode, PaymentStatus
from ..models.offline_booking import OfflineBooking, SyncStatus
from ..schemas.booking import BookingRequest, BookingResult, SyncReport
from .appointment_service import AppointmentService

logger = logging.getLogger(__name__)

class ConnectivityProbe:
    """Answers whether the authoritative store is reachable right now."""

    def __init__(self, bind):
        self.bind = bind

    def is_online(self) -> bool:
        ok, error = db_healthcheck(self.bind)
        if not ok:
            logger.warning(f"No connectivity to the appointment store: {error}")
        return ok

class OfflineBookingService:
    """Books online when the store is reachable, otherwise queues locally for replay."""

    QUEUE_ATTEMPTS = 3

    def __init__(
        self,
        ledger: AppointmentService,
        queue_db: Session,
        probe: Optional[ConnectivityProbe] = None,
    ):
        self.ledger = ledger
        self.db = ledger.db
        self.tokens = ledger.tokens
        self.queue_db = queue_db
        self.probe = probe or ConnectivityProbe(self.db.get_bind())

    def book(self, request: BookingRequest) -> BookingResult:
        """Book an appointment; never blocks on connectivity."""
        if self.probe.is_online():
            try:
                return self._book_online(request)
            except TransientNetworkError as e:
                logger.warning(f"Online booking failed, queueing offline: {e.message} ({e.context()})")
        return self._book_offline(request)

    def sync_pending(self) -> SyncReport:
        """Replay queued bookings in FIFO order.

        Each entry is committed on its own: a failure leaves that entry
        pending and never touches entries already synced.
        """
        if not self.probe.is_online():
            return SyncReport(pending=self._pending_query().count(), online=False)

        synced = failed = 0
        for entry in self._pending_query().all():
            entry.attempts = (entry.attempts or 0) + 1
            try:
                appointment = self._replay(entry)
            except (LedgerError, SQLAlchemyError, ValidationError) as e:
                self.db.rollback()
                entry.last_error = str(e)
                self.queue_db.commit()
                failed += 1
                logger.warning(f"Offline booking {entry.offline_token} not synced (attempt {entry.attempts}): {str(e)}")
                continue

            entry.sync_status = SyncStatus.SYNCED.value
            entry.appointment_id = appointment.id
            entry.token_number = appointment.token_number
            entry.synced_at = datetime.utcnow()
            entry.last_error = None
            self.queue_db.commit()
            synced += 1
            logger.info(f"Synced offline booking {entry.offline_token} as {appointment.token_number}")

        pending = self._pending_query().count()
        logger.info(f"Offline sync complete: synced={synced} failed={failed} pending={pending}")
        return SyncReport(synced=synced, failed=failed, pending=pending, online=True)

    def pending_entries(self) -> List[OfflineBooking]:
        return self._pending_query().all()

    def _pending_query(self):
        return self.queue_db.query(OfflineBooking).filter(
            OfflineBooking.sync_status == SyncStatus.PENDING.value
        ).order_by(OfflineBooking.id)

    def _book_online(self, request: BookingRequest, offline_token: Optional[str] = None) -> BookingResult:
        appointment = self._create(request, offline_token)
        return BookingResult(
            token_number=appointment.token_number,
            appointment_id=appointment.id,
            status=appointment.status,
            payment_status=appointment.payment_status,
            sync_status=SyncStatus.SYNCED,
            invoice_number=appointment.invoice_number,
            message=f"Appointment booked successfully! Your token number is: {appointment.token_number}",
        )

    def _create(self, request: BookingRequest, offline_token: Optional[str] = None) -> Appointment:
        token_number = self.tokens.next_token()
        try:
            return self.ledger.create_appointment(request, token_number, offline_token)
        except STORE_UNAVAILABLE as e:
            # token_number is spent; tokens are never recycled
            self.db.rollback()
            raise TransientNetworkError(
                "Appointment store unreachable",
                operation="book",
                entity=f"appointmentTokens/{token_number}",
            ) from e

    def _book_offline(self, request: BookingRequest) -> BookingResult:
        for _ in range(self.QUEUE_ATTEMPTS):
            entry = OfflineBooking(
                offline_token=self.tokens.offline_token(),
                payload=request.model_dump(mode="json"),
                sync_status=SyncStatus.PENDING.value,
            )
            self.queue_db.add(entry)
            try:
                self.queue_db.commit()
                break
            except IntegrityError:
                # Placeholder collided with a queued one; draw another
                self.queue_db.rollback()
        else:
            raise LedgerError("Could not queue booking offline", operation="book")

        logger.info(f"Stored booking offline as {entry.offline_token} (queue id {entry.id})")

        paid_online = request.payment_mode == PaymentMode.ONLINE
        return BookingResult(
            token_number=entry.offline_token,
            local_id=entry.id,
            status=AppointmentStatus.CONFIRMED if paid_online else AppointmentStatus.PENDING,
            payment_status=PaymentStatus.PAID if paid_online else PaymentStatus.PENDING,
            sync_status=SyncStatus.PENDING,
            message=(
                f"Appointment booked offline! Your token number is: {entry.offline_token}. "
                "Your booking will be synced when connection is restored."
            ),
        )

    def _replay(self, entry: OfflineBooking) -> Appointment:
        # An earlier run may have booked it before the queue was updated
        existing = self.db.query(Appointment).filter(
            Appointment.offline_token == entry.offline_token
        ).first()
        if existing is not None:
            logger.info(f"Offline booking {entry.offline_token} already stored as appointment {existing.id}")
            return existing

        request = BookingRequest.model_validate(entry.payload)
        # Re-minted through the authoritative counter; the placeholder is kept for lookup
        return self._create(request, offline_token=entry.offline_token)
