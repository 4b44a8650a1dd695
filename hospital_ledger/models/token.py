from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class TokenStatus(str, enum.Enum):
    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"

class AppointmentToken(Base):
    __tablename__ = "appointment_tokens"

    token_number = Column(String(32), primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)
    patient_name = Column(String(200), nullable=False)
    phone = Column(String(20), nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    status = Column(SQLEnum(TokenStatus), nullable=False, default=TokenStatus.ACTIVE)

    created_at = Column(DateTime, server_default=func.now(), index=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="token")

    def __repr__(self):
        return f"<AppointmentToken(token='{self.token_number}', appointment_id={self.appointment_id}, status='{self.status}')>"

class TokenCounter(Base):
    __tablename__ = "token_counters"

    name = Column(String(64), primary_key=True)
    value = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<TokenCounter(name='{self.name}', value={self.value})>"
