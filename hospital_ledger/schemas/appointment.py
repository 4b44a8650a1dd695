import datetime as dt
from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from .base import LedgerSchema
from .booking import TIME_PATTERN, combine_schedule, parse_payment_mode
from ..models.appointment import AppointmentStatus, PaymentMode, PaymentStatus, ServiceType


class AppointmentUpdate(LedgerSchema):
    """A staff edit. Also the payload an appointment is recreated from when missing."""
    patient_name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=20)
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = None
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    doctor_name: Optional[str] = None
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    service_type: Optional[ServiceType] = None
    date: Optional[dt.date] = None
    time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    status: Optional[AppointmentStatus] = None
    payment_mode: Optional[PaymentMode] = None
    payment_status: Optional[PaymentStatus] = None
    fees: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None
    token_number: Optional[str] = None
    # Suppresses the counter-payment auto-pay rule for this edit
    payment_override: bool = False

    @field_validator("payment_mode", mode="before")
    @classmethod
    def normalize_payment_mode(cls, v):
        return parse_payment_mode(v)

    @model_validator(mode="after")
    def check_schedule(self):
        if (self.date is None) != (self.time is None):
            raise ValueError("date and time must be given together")
        if self.status == AppointmentStatus.RESCHEDULED and self.date is None:
            raise ValueError("Rescheduling requires a new date and time")
        return self

    @property
    def scheduled_at(self) -> Optional[dt.datetime]:
        if self.date is None or self.time is None:
            return None
        return combine_schedule(self.date, self.time)


class RescheduleRequest(LedgerSchema):
    date: dt.date
    time: str = Field(..., pattern=TIME_PATTERN)


class PaymentStatusUpdate(LedgerSchema):
    payment_status: PaymentStatus


class AppointmentResponse(LedgerSchema):
    id: int
    token_number: Optional[str] = None
    offline_token: Optional[str] = None
    patient_ref: str
    patient_name: str
    phone: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    doctor_ref: str
    doctor_name: Optional[str] = None
    service_ref: str
    service_name: Optional[str] = None
    service_type: ServiceType = ServiceType.SERVICE
    scheduled_at: dt.datetime
    status: AppointmentStatus
    payment_mode: PaymentMode
    payment_status: PaymentStatus
    fees: int
    invoice_id: Optional[int] = None
    invoice_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None


class AppointmentResult(LedgerSchema):
    appointment: AppointmentResponse
    warnings: List[str] = []
