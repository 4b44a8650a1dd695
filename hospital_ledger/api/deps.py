from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
import logging
import redis

from ..core.config import settings
from ..core.errors import LedgerPermissionError
from ..core.database import get_db, get_queue_db, get_redis
from ..core.security import (
    security, verify_token, AuthenticationError,
    AuthorizationError, TokenPayload
)
from ..services.appointment_service import AppointmentService
from ..services.change_feed import ChangeFeed
from ..services.composition import build_ledger
from ..services.offline_booking_service import OfflineBookingService
from ..services.reconciliation_service import ReconciliationService
from ..services.token_service import TokenService

logger = logging.getLogger(__name__)

async def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[TokenPayload]:
    """Resolve the caller if a valid bearer token was sent; anonymous otherwise."""
    if credentials is None:
        return None

    token_payload = verify_token(credentials.credentials)
    if not token_payload or token_payload.token_type != "access":
        return None
    return token_payload

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    token_payload = verify_token(credentials.credentials)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    if not token_payload.sub:
        raise AuthenticationError("Invalid token payload")

    return token_payload

async def get_staff_user(
    current_user: TokenPayload = Depends(get_current_user)
) -> TokenPayload:
    """Require a staff role (admin, receptionist or doctor)."""
    if not current_user.is_staff:
        raise AuthorizationError("Access denied. Staff role required")
    return current_user

# Services
def get_change_feed(redis_client=Depends(get_redis)) -> ChangeFeed:
    return ChangeFeed(redis_client)

def get_ledger(
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed)
) -> AppointmentService:
    return build_ledger(db, feed)

def get_token_service(db: Session = Depends(get_db)) -> TokenService:
    return TokenService(db)

def get_reconciler(
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed)
) -> ReconciliationService:
    return ReconciliationService(db, feed)

def get_booking_service(
    ledger: AppointmentService = Depends(get_ledger),
    queue_db: Session = Depends(get_queue_db)
) -> OfflineBookingService:
    return OfflineBookingService(ledger, queue_db)

# Rate limiting dependency
async def rate_limit_check(
    request: Request,
    redis_client=Depends(get_redis)
) -> None:
    """Basic rate limiting for the public booking endpoint."""
    client_ip = request.client.host if request.client else "unknown"
    key = f"rate_limit:booking:{client_ip}"

    try:
        current_requests = redis_client.get(key)
        if current_requests is None:
            redis_client.setex(key, settings.BOOKING_RATE_WINDOW_SECONDS, 1)
            return None
        if int(current_requests) >= settings.BOOKING_RATE_LIMIT:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later."
            )
        redis_client.incr(key)
    except redis.RedisError as e:
        # Booking must not block on the rate limiter
        logger.warning(f"Rate limiter unavailable: {str(e)}")


def ensure_staff(current_user: Optional[TokenPayload], operation: str) -> None:
    """Raise LedgerPermissionError for anonymous or patient callers."""
    if current_user is None or not current_user.is_staff:
        raise LedgerPermissionError(
            "Permission denied. Staff role required",
            operation=operation,
            entity=current_user.sub if current_user else None,
        )
