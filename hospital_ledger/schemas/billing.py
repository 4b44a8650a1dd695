import datetime as dt
from typing import List, Optional

from .base import LedgerSchema


class InvoiceItemResponse(LedgerSchema):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    quantity: int = 1
    unit_price: int = 0
    amount: int = 0


class InvoiceResponse(LedgerSchema):
    id: int
    invoice_number: str
    appointment_id: Optional[int] = None
    patient_ref: Optional[str] = None
    patient_name: Optional[str] = None
    service_name: Optional[str] = None
    service_type: Optional[str] = None
    description: Optional[str] = None
    issue_date: Optional[dt.date] = None
    total_amount: int
    status: str
    payment_status: str
    payment_mode: Optional[str] = None
    payment_date: Optional[dt.datetime] = None
    items: List[InvoiceItemResponse] = []


class PaymentResponse(LedgerSchema):
    id: int
    appointment_id: Optional[int] = None
    invoice_id: Optional[int] = None
    amount: int
    method: Optional[str] = None
    status: str
    paid_at: Optional[dt.datetime] = None


class ReconciliationReport(LedgerSchema):
    scanned: int = 0
    corrected: int = 0
