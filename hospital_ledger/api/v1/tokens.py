from fastapi import APIRouter, Depends, HTTPException, status
from typing import Optional
import logging

from ...api.deps import (
    get_token_service, get_current_user_optional, get_staff_user, ensure_staff
)
from ...core.errors import LedgerPermissionError, ServiceResult
from ...core.security import TokenPayload
from ...schemas.token import CounterSnapshot, TokenResponse
from ...services.token_service import TokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tokens", tags=["Tokens"])

@router.get("", response_model=ServiceResult)
async def list_tokens(
    token_service: TokenService = Depends(get_token_service),
    current_user: Optional[TokenPayload] = Depends(get_current_user_optional)
):
    """All issued tokens, newest first."""
    try:
        ensure_staff(current_user, "list_tokens")
    except LedgerPermissionError as e:
        logger.warning(f"{e.message} ({e.context()})")
        return ServiceResult.failed(e.message, empty=[])

    return ServiceResult.ok([
        TokenResponse.model_validate(token).model_dump(by_alias=True, mode="json")
        for token in token_service.list_tokens()
    ])

# Declared before /{token_number} so "counter" is not read as a token
@router.get("/counter", response_model=CounterSnapshot)
async def get_counter(
    token_service: TokenService = Depends(get_token_service),
    _: TokenPayload = Depends(get_staff_user)
):
    """Current value of the token counter."""
    return token_service.current_count()

@router.get("/{token_number}", response_model=TokenResponse)
async def get_token(
    token_number: str,
    token_service: TokenService = Depends(get_token_service)
):
    """Look up a token; offline placeholders resolve to their synced token."""
    token = token_service.lookup(token_number)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Token {token_number} not found"
        )
    return TokenResponse.model_validate(token)
