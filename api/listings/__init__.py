"""Listings API endpoints."""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status, Security, Depends
from pydantic import BaseModel, ConfigDict, Field

from listings import (
    ListingError,
    ListingNotFoundError,
    ListingPermissionError,
    InvalidListingError,
    InvalidCategoryError,
    InvalidSubcategoryError,
    InvalidPlanError,
    PaymentRequiredError
)
from auth import get_current_user

from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/listings",
    tags=["Listings"]
)

class CreateListingRequest(BaseModel):
    """Request model for publishing a listing."""
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    category_id: Optional[int] = Field(None, alias="categoryId")
    subcategory_id: Optional[int] = Field(None, alias="subcategoryId")
    condition: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    negotiable: bool = False
    tags: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    plan_id: Optional[str] = Field(None, alias="planId")
    transaction_id: Optional[UUID] = Field(None, alias="transactionId")

class UpdateListingRequest(BaseModel):
    """Request model for editing a listing. Only supplied fields change."""
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    category_id: Optional[int] = Field(None, alias="categoryId")
    subcategory_id: Optional[int] = Field(None, alias="subcategoryId")
    condition: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    negotiable: Optional[bool] = None
    tags: Optional[List[str]] = None
    images: Optional[List[str]] = None

def _listing_error(e: ListingError) -> HTTPException:
    """Map a listing error to its HTTP response."""
    if isinstance(e, ListingNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, ListingPermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, InvalidListingError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={'error': "Invalid listing", 'errors': e.errors}
        )
    if isinstance(e, (InvalidCategoryError, InvalidSubcategoryError, InvalidPlanError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, PaymentRequiredError):
        return HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

""" Public Endpoints - No Authentication Required """
@router.get("")
async def list_listings(
    id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(8, ge=1, le=100),
    services: Services = Depends(get_services)
):
    """Get one listing by ``id``, or a page of active listings."""
    try:
        if id is not None:
            return await services.listings.get_listing(id)
        return await services.listings.list_listings(page=page, limit=limit)
    except ListingError as e:
        raise _listing_error(e)
    except Exception as e:
        logger.error(f"Error fetching listings: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch listings"
        )

""" Protected Endpoints - Authentication Required """
@router.get("/mine")
async def my_listings(
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Get all of the caller's listings."""
    return await services.listings.get_user_listings(user_id)

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_listing(
    listing: CreateListingRequest,
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Publish a listing.

    Paid plans need ``transactionId`` of a completed payment for the plan or
    an active subscription to it. New listings wait in ``pending`` until
    moderated.
    """
    fields = listing.model_dump(exclude={'transaction_id'})
    try:
        return await services.listings.publish(user_id, fields, listing.transaction_id)
    except ListingError as e:
        raise _listing_error(e)

@router.put("")
async def update_listing(
    updates: UpdateListingRequest,
    id: UUID = Query(...),
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Edit one of the caller's listings."""
    try:
        return await services.listings.update_listing(
            id, user_id, updates.model_dump(exclude_unset=True)
        )
    except ListingError as e:
        raise _listing_error(e)

@router.delete("")
async def delete_listing(
    id: UUID = Query(...),
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Delete one of the caller's listings."""
    try:
        await services.listings.delete_listing(id, user_id)
    except ListingError as e:
        raise _listing_error(e)
    return {'success': True}
