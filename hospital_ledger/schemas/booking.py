import datetime as dt
from typing import List, Optional

from pydantic import Field, field_validator

from .base import LedgerSchema
from ..models.appointment import AppointmentStatus, PaymentMode, PaymentStatus, ServiceType
from ..models.offline_booking import SyncStatus

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

# Labels the booking screens have historically sent
PAYMENT_MODE_LABELS = {
    "pay at hospital": PaymentMode.PAY_AT_HOSPITAL,
    "payathospital": PaymentMode.PAY_AT_HOSPITAL,
    "hospital": PaymentMode.PAY_AT_HOSPITAL,
    "online payment": PaymentMode.ONLINE,
    "online": PaymentMode.ONLINE,
    "cash": PaymentMode.CASH,
    "upi": PaymentMode.UPI,
    "card": PaymentMode.CARD,
}


def parse_payment_mode(value):
    if isinstance(value, str):
        mode = PAYMENT_MODE_LABELS.get(value.strip().lower())
        if mode is not None:
            return mode
    return value


def combine_schedule(date: dt.date, time: str) -> dt.datetime:
    hour, minute = (int(part) for part in time.split(":"))
    return dt.datetime.combine(date, dt.time(hour, minute))


class BookingRequest(LedgerSchema):
    patient_name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=20)
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = Field(None, max_length=20)
    patient_id: Optional[str] = Field(None, max_length=64)
    doctor_id: str = Field(..., min_length=1, max_length=64)
    doctor_name: Optional[str] = None
    service_id: str = Field(..., min_length=1, max_length=64)
    service_name: Optional[str] = None
    service_type: ServiceType = ServiceType.SERVICE
    date: dt.date
    time: str = Field(..., pattern=TIME_PATTERN)
    payment_mode: PaymentMode = PaymentMode.PAY_AT_HOSPITAL
    fees: int = Field(0, ge=0)
    symptoms: Optional[str] = None

    @field_validator("patient_name")
    @classmethod
    def strip_patient_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Patient name is required")
        return v

    @field_validator("payment_mode", mode="before")
    @classmethod
    def normalize_payment_mode(cls, v):
        return parse_payment_mode(v)

    @property
    def scheduled_at(self) -> dt.datetime:
        return combine_schedule(self.date, self.time)


class BookingResult(LedgerSchema):
    success: bool = True
    token_number: str
    appointment_id: Optional[int] = None
    local_id: Optional[int] = None
    status: AppointmentStatus
    payment_status: PaymentStatus
    sync_status: SyncStatus
    invoice_number: Optional[str] = None
    message: str = ""
    warnings: List[str] = []


class OfflineBookingResponse(LedgerSchema):
    id: int
    offline_token: str
    sync_status: SyncStatus
    appointment_id: Optional[int] = None
    token_number: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    synced_at: Optional[dt.datetime] = None


class SyncReport(LedgerSchema):
    synced: int = 0
    failed: int = 0
    pending: int = 0
    online: bool = True
