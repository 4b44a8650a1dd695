from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.sql import func
import enum

from ..core.database import QueueBase

class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCED = "synced"

class OfflineBooking(QueueBase):
    """A booking accepted while the authoritative store was unreachable."""
    __tablename__ = "offline_bookings"

    # Autoincrement id doubles as the FIFO replay order
    id = Column(Integer, primary_key=True, autoincrement=True)
    offline_token = Column(String(32), unique=True, nullable=False)
    payload = Column(JSON, nullable=False)
    sync_status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value, index=True)

    # Filled in on replay
    appointment_id = Column(Integer, nullable=True)
    token_number = Column(String(32), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    synced_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<OfflineBooking(id={self.id}, token='{self.offline_token}', sync='{self.sync_status}')>"
