from sqlalchemy.orm import Session
from typing import Optional

from .appointment_service import AppointmentService
from .change_feed import ChangeFeed
from .offline_booking_service import ConnectivityProbe, OfflineBookingService
from .reconciliation_service import ReconciliationService
from .token_service import TokenService


def build_ledger(db: Session, feed: Optional[ChangeFeed] = None) -> AppointmentService:
    """Wire the ledger with its token generator and reconciliation listener."""
    feed = feed or ChangeFeed()
    ledger = AppointmentService(db, TokenService(db), feed)
    ReconciliationService(db, feed).attach(ledger)
    return ledger


def build_booking_service(
    db: Session,
    queue_db: Session,
    feed: Optional[ChangeFeed] = None,
    probe: Optional[ConnectivityProbe] = None,
) -> OfflineBookingService:
    return OfflineBookingService(build_ledger(db, feed), queue_db, probe)
