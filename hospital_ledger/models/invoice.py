from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Date, Text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    PAID = "paid"

class InvoicePaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    DRAFT = "draft"
    REFUNDED = "refunded"

# payment_status -> status; anything absent here is left as issued
INVOICE_STATUS_FOR_PAYMENT = {
    InvoicePaymentStatus.PAID.value: InvoiceStatus.PAID.value,
    InvoicePaymentStatus.PENDING.value: InvoiceStatus.DRAFT.value,
    InvoicePaymentStatus.DRAFT.value: InvoiceStatus.DRAFT.value,
}

class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(64), unique=True, nullable=False, index=True)

    # One invoice per appointment; NULL for manually raised invoices
    appointment_id = Column(Integer, ForeignKey("appointments.id"), unique=True, nullable=True)

    patient_ref = Column(String(64), nullable=True, index=True)
    patient_name = Column(String(200), nullable=True)
    patient_phone = Column(String(20), nullable=True)
    doctor_name = Column(String(200), nullable=True)
    service_name = Column(String(200), nullable=True)
    service_type = Column(String(16), nullable=True)  # "Service" | "Test"
    description = Column(Text, nullable=True)

    issue_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    subtotal = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)

    # The two status fields the batch synchronizer keeps aligned
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value)
    payment_status = Column(String(20), nullable=False, default=InvoicePaymentStatus.PENDING.value)
    payment_mode = Column(String(32), nullable=True)
    payment_date = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)
    generated_by = Column(String(64), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    items = relationship("InvoiceItem", back_populates="invoice", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Invoice(id={self.id}, number='{self.invoice_number}', status='{self.status}', payment_status='{self.payment_status}')>"

class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(32), nullable=True)  # "Service" | "Test"
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Integer, nullable=False, default=0)
    amount = Column(Integer, nullable=False, default=0)

    invoice = relationship("Invoice", back_populates="items")
