from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional
import logging
import uuid

from ..core.errors import (
    InvalidTransitionError, LedgerError, NotFoundError, ServiceResult,
    TransientNetworkError, ValidationFailure
)
from ..models.appointment import (
    Appointment, AppointmentStatus, PaymentMode, PaymentStatus, ServiceType,
    COUNTER_PAYMENT_MODES
)
from ..models.token import AppointmentToken, TokenStatus
from ..schemas.appointment import AppointmentUpdate
from ..schemas.booking import BookingRequest
from .change_feed import ChangeFeed
from .token_service import TokenService

logger = logging.getLogger(__name__)

PaymentListener = Callable[[Appointment, PaymentStatus, PaymentStatus], None]

S = AppointmentStatus

# Rescheduled is accepted as a target but never stored
ALLOWED_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED, S.ADMITTED, S.RESCHEDULED}),
    S.CONFIRMED: frozenset({S.CANCELLED, S.COMPLETED, S.ADMITTED, S.RESCHEDULED}),
    S.ADMITTED: frozenset({S.COMPLETED, S.RESCHEDULED}),
    S.RESCHEDULED: frozenset({S.CONFIRMED, S.CANCELLED, S.COMPLETED, S.ADMITTED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

TOKEN_STATUS_FOR = {
    S.COMPLETED: TokenStatus.USED,
    S.CANCELLED: TokenStatus.CANCELLED,
}

# Statuses at which the cash desk is assumed to have collected
AUTO_PAID_STATUSES = frozenset({S.CONFIRMED, S.COMPLETED})

class AppointmentService:
    """The appointment ledger: lifecycle transitions and payment-status policy.

    Payment-status changes are handed to registered listeners after commit;
    the reconciliation engine subscribes itself at composition time.
    """

    def __init__(
        self,
        db: Session,
        tokens: Optional[TokenService] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        self.db = db
        self.tokens = tokens or TokenService(db)
        self.feed = feed or ChangeFeed()
        self.payment_listeners: List[PaymentListener] = []

    def add_payment_listener(self, listener: PaymentListener) -> None:
        self.payment_listeners.append(listener)

    # Booking

    def create_appointment(
        self,
        request: BookingRequest,
        token_number: str,
        offline_token: Optional[str] = None,
    ) -> Appointment:
        """Create an appointment and its token in one commit."""
        paid_online = request.payment_mode == PaymentMode.ONLINE

        appointment = Appointment(
            patient_ref=request.patient_id or self._new_patient_ref(),
            patient_name=request.patient_name,
            phone=request.phone,
            age=request.age,
            gender=request.gender,
            symptoms=request.symptoms,
            doctor_ref=request.doctor_id,
            doctor_name=request.doctor_name,
            service_ref=request.service_id,
            service_name=request.service_name,
            service_type=request.service_type,
            scheduled_at=request.scheduled_at,
            status=S.CONFIRMED if paid_online else S.PENDING,
            payment_mode=request.payment_mode,
            payment_status=PaymentStatus.PAID if paid_online else PaymentStatus.PENDING,
            fees=request.fees,
            token_number=token_number,
            offline_token=offline_token,
        )
        self.db.add(appointment)
        self.tokens.issue(appointment)
        self.db.commit()
        self.db.refresh(appointment)

        logger.info(
            f"Booked appointment {appointment.id} token={token_number} "
            f"status={appointment.status.value} payment={appointment.payment_status.value}"
        )
        self.feed.appointment_changed(appointment, "created")

        if appointment.payment_status == PaymentStatus.PAID:
            self._notify_payment(appointment, PaymentStatus.PENDING, PaymentStatus.PAID)

        return appointment

    # Reads

    def get(self, appointment_id: int) -> Appointment:
        appointment = self.db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFoundError(
                f"Appointment {appointment_id} not found",
                operation="get",
                entity=f"appointments/{appointment_id}",
            )
        return appointment

    def get_by_token(self, token_number: str) -> Optional[Appointment]:
        token = self.tokens.lookup(token_number)
        return token.appointment if token else None

    def list_appointments(
        self,
        status: Optional[AppointmentStatus] = None,
        patient_ref: Optional[str] = None,
    ) -> List[Appointment]:
        query = self.db.query(Appointment)
        if status is not None:
            query = query.filter(Appointment.status == status)
        if patient_ref is not None:
            query = query.filter(Appointment.patient_ref == patient_ref)
        return query.order_by(Appointment.scheduled_at, Appointment.id).all()

    # Staff edits

    def update(self, appointment_id: int, changes: AppointmentUpdate) -> ServiceResult:
        """Apply a staff edit; a missing appointment is recreated from the payload."""
        appointment = self.db.get(Appointment, appointment_id)
        if appointment is None:
            return self._recreate(appointment_id, changes)

        # Validate everything before the first mutation
        if changes.status is not None and changes.status != appointment.status:
            self._check_transition(appointment, changes.status)
        if changes.scheduled_at is not None and appointment.is_terminal:
            raise InvalidTransitionError(
                f"Cannot reschedule a {appointment.status.value} appointment",
                operation="update",
                entity=f"appointments/{appointment_id}",
            )
        if (
            changes.payment_status == PaymentStatus.REFUNDED
            and appointment.payment_status != PaymentStatus.PAID
        ):
            raise InvalidTransitionError(
                "Only a paid appointment can be refunded",
                operation="update",
                entity=f"appointments/{appointment_id}",
            )
        if changes.token_number is not None and changes.token_number != appointment.token_number:
            if appointment.token_number is not None:
                raise InvalidTransitionError(
                    "Token number cannot be changed once issued",
                    operation="update",
                    entity=f"appointments/{appointment_id}",
                )
            if self._token_taken(changes.token_number):
                raise ValidationFailure(
                    f"Token {changes.token_number} is already issued to another appointment",
                    operation="update",
                    entity=f"appointments/{appointment_id}",
                )

        old_payment = appointment.payment_status

        self._apply_fields(appointment, changes)
        if changes.token_number is not None and appointment.token_number is None:
            appointment.token_number = changes.token_number
            self.tokens.issue(appointment)

        if changes.scheduled_at is not None:
            appointment.scheduled_at = changes.scheduled_at

        if changes.status is not None:
            appointment.status = self._settled(changes.status)

        if changes.payment_status is not None:
            appointment.payment_status = changes.payment_status
        elif not changes.payment_override:
            self._apply_payment_policy(appointment)

        token_status = TOKEN_STATUS_FOR.get(appointment.status)
        if token_status is not None and appointment.token_number:
            self.tokens.mark(appointment.token_number, token_status)

        self.db.commit()
        self.db.refresh(appointment)

        logger.info(
            f"Updated appointment {appointment.id}: status={appointment.status.value} "
            f"payment={appointment.payment_status.value}"
        )
        self.feed.appointment_changed(appointment, "updated")

        warnings = []
        if appointment.payment_status != old_payment:
            warnings.extend(self._notify_payment(appointment, old_payment, appointment.payment_status))
        return ServiceResult.ok(appointment, warnings)

    def confirm(self, appointment_id: int) -> ServiceResult:
        return self._act(appointment_id, AppointmentUpdate(status=S.CONFIRMED))

    def cancel(self, appointment_id: int) -> ServiceResult:
        return self._act(appointment_id, AppointmentUpdate(status=S.CANCELLED))

    def admit(self, appointment_id: int) -> ServiceResult:
        return self._act(appointment_id, AppointmentUpdate(status=S.ADMITTED))

    def complete(self, appointment_id: int) -> ServiceResult:
        return self._act(appointment_id, AppointmentUpdate(status=S.COMPLETED))

    def reschedule(self, appointment_id: int, date, time: str) -> ServiceResult:
        return self._act(
            appointment_id,
            AppointmentUpdate(status=S.RESCHEDULED, date=date, time=time),
        )

    def set_payment_status(self, appointment_id: int, payment_status: PaymentStatus) -> ServiceResult:
        """Explicit staff payment action ("mark paid", "mark pending", "refund")."""
        return self._act(appointment_id, AppointmentUpdate(payment_status=payment_status))

    # Internals

    def _act(self, appointment_id: int, changes: AppointmentUpdate) -> ServiceResult:
        # Named actions need an existing appointment; only generic edits upsert
        self.get(appointment_id)
        return self.update(appointment_id, changes)

    def _check_transition(self, appointment: Appointment, target: AppointmentStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[appointment.status]:
            raise InvalidTransitionError(
                f"Cannot move appointment from {appointment.status.value} to {target.value}",
                operation="update",
                entity=f"appointments/{appointment.id}",
            )

    @staticmethod
    def _settled(status: AppointmentStatus) -> AppointmentStatus:
        # Rescheduled folds back to Confirmed on save
        return S.CONFIRMED if status == S.RESCHEDULED else status

    @staticmethod
    def _apply_payment_policy(appointment: Appointment) -> None:
        # Pay-at-hospital and online payments are never promoted here
        if (
            appointment.payment_mode in COUNTER_PAYMENT_MODES
            and appointment.status in AUTO_PAID_STATUSES
            and appointment.payment_status == PaymentStatus.PENDING
        ):
            appointment.payment_status = PaymentStatus.PAID

    @staticmethod
    def _apply_fields(appointment: Appointment, changes: AppointmentUpdate) -> None:
        mapping = {
            "patient_name": "patient_name",
            "phone": "phone",
            "age": "age",
            "gender": "gender",
            "patient_id": "patient_ref",
            "doctor_id": "doctor_ref",
            "doctor_name": "doctor_name",
            "service_id": "service_ref",
            "service_name": "service_name",
            "service_type": "service_type",
            "payment_mode": "payment_mode",
            "fees": "fees",
            "notes": "notes",
        }
        for field, column in mapping.items():
            value = getattr(changes, field)
            if value is not None:
                setattr(appointment, column, value)

    def _recreate(self, appointment_id: int, changes: AppointmentUpdate) -> ServiceResult:
        warning = f"Appointment {appointment_id} was missing and has been recreated from the update"
        logger.warning(f"{warning} (operation=update entity=appointments/{appointment_id})")
        warnings = [warning]

        token_number = changes.token_number
        if token_number and self._token_taken(token_number):
            dropped = f"Token {token_number} is already issued to another appointment and was not reused"
            logger.warning(f"{dropped} (operation=update entity=appointments/{appointment_id})")
            warnings.append(dropped)
            token_number = None

        status = self._settled(changes.status or S.PENDING)
        appointment = Appointment(
            id=appointment_id,
            patient_ref=changes.patient_id or self._new_patient_ref(),
            patient_name=changes.patient_name or "Unknown patient",
            phone=changes.phone,
            age=changes.age,
            gender=changes.gender,
            doctor_ref=changes.doctor_id or "unassigned",
            doctor_name=changes.doctor_name,
            service_ref=changes.service_id or "unassigned",
            service_name=changes.service_name,
            service_type=changes.service_type or ServiceType.SERVICE,
            scheduled_at=changes.scheduled_at or datetime.utcnow().replace(second=0, microsecond=0),
            status=status,
            payment_mode=changes.payment_mode or PaymentMode.PAY_AT_HOSPITAL,
            payment_status=changes.payment_status or PaymentStatus.PENDING,
            fees=changes.fees or 0,
            notes=changes.notes,
            token_number=token_number,
        )
        if changes.payment_status is None and not changes.payment_override:
            self._apply_payment_policy(appointment)

        self.db.add(appointment)
        if appointment.token_number:
            self.tokens.issue(appointment)
        self.db.flush()
        self._advance_id_sequence()
        self.db.commit()
        self.db.refresh(appointment)
        self.feed.appointment_changed(appointment, "recreated")

        if appointment.payment_status != PaymentStatus.PENDING:
            warnings.extend(
                self._notify_payment(appointment, PaymentStatus.PENDING, appointment.payment_status)
            )
        return ServiceResult.ok(appointment, warnings)

    def _token_taken(self, token_number: str) -> bool:
        if self.db.get(AppointmentToken, token_number) is not None:
            return True
        return self.db.query(Appointment.id).filter(
            Appointment.token_number == token_number
        ).first() is not None

    def _advance_id_sequence(self) -> None:
        # An explicit id leaves the PostgreSQL serial behind; move it past the max
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.execute(text(
            "SELECT setval(pg_get_serial_sequence('appointments', 'id'), "
            "(SELECT MAX(id) FROM appointments))"
        ))

    def _notify_payment(
        self,
        appointment: Appointment,
        old_status: PaymentStatus,
        new_status: PaymentStatus,
    ) -> List[str]:
        warnings = []
        for listener in self.payment_listeners:
            try:
                listener(appointment, old_status, new_status)
            except TransientNetworkError as e:
                # The batch synchronizer picks this up on its next run
                logger.warning(f"Deferred payment reconciliation: {e.message} ({e.context()})")
                warnings.append(f"Payment records will be reconciled later: {e.message}")
            except LedgerError as e:
                # The appointment change is already committed; leave the repair to the batch run
                self.db.rollback()
                logger.error(f"Payment reconciliation failed: {type(e).__name__}: {e.message} ({e.context()})")
                warnings.append(f"Payment records will be reconciled later: {e.message}")
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(
                    f"Payment reconciliation failed: {str(e)} "
                    f"(operation=on_payment_status_change entity=appointments/{appointment.id})"
                )
                warnings.append("Payment records will be reconciled later")
        return warnings

    @staticmethod
    def _new_patient_ref() -> str:
        return f"patient-{uuid.uuid4().hex[:12]}"
