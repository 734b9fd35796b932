"""Admin-only API endpoints: moderation, discount codes and manual payment confirmation."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status, Depends

from pydantic import BaseModel

from auth import require_admin
from moderation import (
    ModerationDecision,
    InvalidDecisionError,
    InvalidTransitionError,
    ListingNotFoundError
)
from payments import (
    DiscountType,
    TransactionStatus,
    TERMINAL_STATUSES,
    ValidationError,
    NotFoundError,
    ConflictError,
    PersistenceError
)

from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin)]
)

class ModerationRequest(BaseModel):
    status: ModerationDecision
    reason: Optional[str] = None

class CreateDiscountCodeRequest(BaseModel):
    code: str
    type: DiscountType
    value: Decimal
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = None
    is_active: bool = True

class UpdateDiscountCodeRequest(BaseModel):
    code: Optional[str] = None
    type: Optional[DiscountType] = None
    value: Optional[Decimal] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = None
    is_active: Optional[bool] = None

class ConfirmTransactionRequest(BaseModel):
    status: TransactionStatus = TransactionStatus.COMPLETED

def _payment_error(e: Exception) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

@router.patch("/listings/{listing_id}/status")
async def moderate_listing(
    listing_id: UUID,
    body: ModerationRequest,
    admin_id: str = Depends(require_admin),
    services: Services = Depends(get_services)
):
    """Approve or reject a pending listing."""
    try:
        return await services.moderation.moderate(listing_id, body.status, admin_id, body.reason)
    except ListingNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InvalidDecisionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.get("/discount-codes")
async def list_discount_codes(services: Services = Depends(get_services)):
    """Get all discount codes."""
    return await services.discount_codes.list_codes()

@router.post("/discount-codes", status_code=status.HTTP_201_CREATED)
async def create_discount_code(
    body: CreateDiscountCodeRequest,
    admin_id: str = Depends(require_admin),
    services: Services = Depends(get_services)
):
    """Create a discount code."""
    try:
        return await services.discount_codes.create_code(
            created_by_user_id=admin_id,
            **body.model_dump()
        )
    except (ValidationError, ConflictError, PersistenceError) as e:
        raise _payment_error(e)

@router.patch("/discount-codes/{code_id}")
async def update_discount_code(
    code_id: int,
    body: UpdateDiscountCodeRequest,
    services: Services = Depends(get_services)
):
    """Update a discount code. Only supplied fields change."""
    try:
        return await services.discount_codes.update_code(
            code_id, **body.model_dump(exclude_unset=True)
        )
    except (ValidationError, NotFoundError, ConflictError, PersistenceError) as e:
        raise _payment_error(e)

@router.post("/transactions/{transaction_id}/confirm")
async def confirm_transaction(
    transaction_id: UUID,
    body: ConfirmTransactionRequest,
    admin_id: str = Depends(require_admin),
    services: Services = Depends(get_services)
):
    """Settle a pending transaction by hand, e.g. after checking the provider dashboard."""
    if body.status not in TERMINAL_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{body.status.value} is not a terminal status"
        )

    try:
        row = await services.callbacks.confirm_manually(transaction_id, body.status, admin_id)
    except (ValidationError, PersistenceError) as e:
        raise _payment_error(e)

    if row is None:
        try:
            current = await services.ledger.get_transaction(transaction_id)
        except NotFoundError as e:
            raise _payment_error(e)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Transaction is already {current['status']}"
        )
    return row
