from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, UniqueConstraint
from sqlalchemy.sql import func
import enum

from ..core.database import Base

class PaymentRecordStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"

class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("appointment_id", "invoice_id", name="uq_payment_appointment_invoice"),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)
    patient_ref = Column(String(64), nullable=True, index=True)

    amount = Column(Integer, nullable=False, default=0)
    method = Column(String(32), nullable=True)  # "Cash" | "UPI" | "Card" | ...
    status = Column(String(20), nullable=False, default=PaymentRecordStatus.PENDING.value)
    description = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Payment(id={self.id}, appointment_id={self.appointment_id}, invoice_id={self.invoice_id}, status='{self.status}')>"
