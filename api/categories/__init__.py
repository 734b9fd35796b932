"""Category lookup endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Depends
from fastapi.responses import JSONResponse

from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Categories"])

@router.get("/categories")
async def list_categories(services: Services = Depends(get_services)):
    """Get all categories ordered by name. Cached by shared caches for an hour."""
    categories = await services.listings.list_categories()
    return JSONResponse(
        content=categories,
        headers={'Cache-Control': 'public, s-maxage=3600, stale-while-revalidate=59'}
    )

@router.get("/subcategories")
async def list_subcategories(
    category_id: Optional[int] = Query(None),
    services: Services = Depends(get_services)
):
    """Get subcategories ordered by name, optionally for one category."""
    return await services.listings.list_subcategories(category_id)
