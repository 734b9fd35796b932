"""Payment history endpoint."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Query, Security, Depends
from fastapi.encoders import jsonable_encoder

from auth import get_current_user

from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/transactions",
    tags=["Transactions"]
)

PAGE_SIZE = 12

@router.get("")
async def list_transactions(
    page: int = Query(1, ge=1),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Get the caller's transactions, newest first, twelve per page.

    Args:
        page: 1-based page number
        start_date: Only transactions created at or after this time
        end_date: Only transactions created at or before this time

    Returns:
        Dict with transactions, total_pages and current_page
    """
    result = await services.ledger.list_for_user(
        user_id,
        page=page,
        limit=PAGE_SIZE,
        start=start_date,
        end=end_date
    )
    return jsonable_encoder(result)
