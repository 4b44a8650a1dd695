import datetime as dt
from typing import Optional

from .base import LedgerSchema
from ..models.token import TokenStatus


class TokenResponse(LedgerSchema):
    token_number: str
    appointment_id: int
    patient_name: str
    phone: Optional[str] = None
    scheduled_at: Optional[dt.datetime] = None
    status: TokenStatus
    created_at: Optional[dt.datetime] = None


class CounterSnapshot(LedgerSchema):
    count: int
    last_token: Optional[str] = None
    next_token: str
