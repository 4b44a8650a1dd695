from sqlalchemy import Column, Integer, String, DateTime, Text, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class AppointmentStatus(str, enum.Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    ADMITTED = "Admitted"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    RESCHEDULED = "Rescheduled"

class PaymentMode(str, enum.Enum):
    CASH = "Cash"
    UPI = "UPI"
    CARD = "Card"
    PAY_AT_HOSPITAL = "PayAtHospital"
    ONLINE = "Online"

class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    PAID = "Paid"
    REFUNDED = "Refunded"

class ServiceType(str, enum.Enum):
    SERVICE = "Service"
    TEST = "Test"

TERMINAL_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED})

# Modes where the cash desk collects at confirmation
COUNTER_PAYMENT_MODES = frozenset({PaymentMode.CASH, PaymentMode.UPI, PaymentMode.CARD})

class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)

    # Patient
    patient_ref = Column(String(64), nullable=False, index=True)
    patient_name = Column(String(200), nullable=False)
    phone = Column(String(20), nullable=True)
    age = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True)
    symptoms = Column(Text, nullable=True)

    # Doctor and service
    doctor_ref = Column(String(64), nullable=False)
    doctor_name = Column(String(200), nullable=True)
    service_ref = Column(String(64), nullable=False)
    service_name = Column(String(200), nullable=True)
    service_type = Column(SQLEnum(ServiceType), nullable=False, default=ServiceType.SERVICE)

    # Schedule and state
    scheduled_at = Column(DateTime, nullable=False, index=True)
    status = Column(SQLEnum(AppointmentStatus), nullable=False, default=AppointmentStatus.PENDING)
    payment_mode = Column(SQLEnum(PaymentMode), nullable=False, default=PaymentMode.PAY_AT_HOSPITAL)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    fees = Column(Integer, nullable=False, default=0)  # minor units
    notes = Column(Text, nullable=True)

    # Tokens
    token_number = Column(String(32), unique=True, nullable=True, index=True)
    offline_token = Column(String(32), unique=True, nullable=True)

    # Invoice link, set by reconciliation
    invoice_id = Column(Integer, nullable=True)
    invoice_number = Column(String(64), nullable=True)

    # Tracking
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    token = relationship("AppointmentToken", back_populates="appointment", uselist=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Appointment(id={self.id}, token='{self.token_number}', status='{self.status}', payment='{self.payment_status}')>"
