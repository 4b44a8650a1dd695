from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional
import logging
import secrets

from ..core.config import settings
from ..core.database import STORE_UNAVAILABLE
from ..core.errors import InvariantViolation, TransientNetworkError
from ..models.appointment import Appointment
from ..models.token import AppointmentToken, TokenCounter, TokenStatus
from ..schemas.token import CounterSnapshot

logger = logging.getLogger(__name__)

class TokenService:
    """Issues appointment tokens from the shared persisted counter."""

    OFFLINE_MARKER = "OFF"

    def __init__(
        self,
        db: Session,
        prefix: Optional[str] = None,
        pad: Optional[int] = None,
        counter_name: Optional[str] = None,
    ):
        self.db = db
        self.prefix = prefix or settings.TOKEN_PREFIX
        self.pad = pad or settings.TOKEN_PAD
        self.counter_name = counter_name or settings.TOKEN_COUNTER_NAME

    def format_token(self, number: int) -> str:
        return f"{self.prefix}-{str(number).zfill(self.pad)}"

    def next_token(self) -> str:
        """Allocate the next token number.

        Raises TransientNetworkError when the store cannot complete the
        increment; callers booking a patient fall back to offline_token().
        """
        try:
            value = self._increment()
        except STORE_UNAVAILABLE as e:
            self.db.rollback()
            logger.warning(f"Token counter unreachable (counter={self.counter_name}): {str(e)}")
            raise TransientNetworkError(
                "Token counter unavailable",
                operation="next_token",
                entity=self.counter_name,
            ) from e

        token_number = self.format_token(value)
        logger.info(f"Generated appointment token: {token_number}")
        return token_number

    def _increment(self) -> int:
        stmt = (
            update(TokenCounter)
            .where(TokenCounter.name == self.counter_name)
            .values(value=TokenCounter.value + 1, updated_at=func.now())
            .returning(TokenCounter.value)
            .execution_options(synchronize_session=False)
        )

        for _ in range(2):
            value = self.db.execute(stmt).scalar_one_or_none()
            if value is not None:
                self.db.commit()
                return value

            # First allocation: create the counter already holding 1
            self.db.add(TokenCounter(name=self.counter_name, value=1))
            try:
                self.db.commit()
                return 1
            except IntegrityError:
                # A concurrent caller created it first; increment theirs
                self.db.rollback()

        raise InvariantViolation(
            "Token counter could be neither incremented nor created",
            operation="next_token",
            entity=self.counter_name,
        )

    def offline_token(self) -> str:
        """Placeholder token for bookings taken without the store.

        Not globally unique; it is replaced by a counter token at sync.
        """
        timestamp = str(int(datetime.utcnow().timestamp() * 1000))[-6:]
        suffix = str(secrets.randbelow(100)).zfill(2)
        return f"{self.prefix}-{self.OFFLINE_MARKER}-{timestamp}{suffix}"

    def is_offline_token(self, token_number: str) -> bool:
        return token_number.startswith(f"{self.prefix}-{self.OFFLINE_MARKER}-")

    def issue(self, appointment: Appointment) -> AppointmentToken:
        """Stage the token record; committed together with its appointment."""
        token = AppointmentToken(
            token_number=appointment.token_number,
            patient_name=appointment.patient_name,
            phone=appointment.phone,
            scheduled_at=appointment.scheduled_at,
            status=TokenStatus.ACTIVE,
        )
        token.appointment = appointment
        self.db.add(token)
        return token

    def lookup(self, token_number: str) -> Optional[AppointmentToken]:
        """Find a token; offline placeholders resolve to the token they were replaced by."""
        token = self.db.get(AppointmentToken, token_number)
        if token is not None or not self.is_offline_token(token_number):
            return token

        appointment = self.db.query(Appointment).filter(
            Appointment.offline_token == token_number
        ).first()
        return appointment.token if appointment else None

    def list_tokens(self) -> List[AppointmentToken]:
        return self.db.query(AppointmentToken).order_by(
            AppointmentToken.created_at.desc(),
            AppointmentToken.token_number.desc()
        ).all()

    def mark(self, token_number: str, status: TokenStatus) -> Optional[AppointmentToken]:
        """Stage a token status change; the caller commits."""
        token = self.db.get(AppointmentToken, token_number)
        if token is not None and token.status != status:
            token.status = status
        return token

    def current_count(self) -> CounterSnapshot:
        counter = self.db.get(TokenCounter, self.counter_name)
        count = counter.value if counter else 0
        return CounterSnapshot(
            count=count,
            last_token=self.format_token(count) if count else None,
            next_token=self.format_token(count + 1),
        )
