"""REST API module for the marketplace.

This module provides HTTP endpoints for:
- Starting and tracking payments (Paystack and M-Pesa)
- Discount codes and plan subscriptions
- Media uploads
- Creating and managing listings
- Category lookups and payment history
- Real-time payment confirmation via WebSocket
- Admin moderation and payment confirmation
- System health monitoring
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings_conf
from database import get_pool, close as db_close

from .services import Services, get_services

logger = logging.getLogger(__name__)

# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("Initializing API...")
    app.state.services = Services(await get_pool())

    yield

    # Shutdown
    logger.info("Shutting down API...")
    await app.state.services.close()
    await db_close()

# Create FastAPI app
app = FastAPI(
    title="Kikwetu Marketplace API",
    description="REST API for listing publication, payments and moderation",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings_conf['app_url']],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and include all routers
from .payments import router as payments_router
from .listings import router as listings_router
from .categories import router as categories_router
from .transactions import router as transactions_router
from .media import router as media_router
from .websockets import router as websocket_router
from .admin import router as admin_router
from .system import router as system_router

# Include all routers
app.include_router(payments_router, prefix="/api")
app.include_router(listings_router, prefix="/api")
app.include_router(categories_router, prefix="/api")
app.include_router(transactions_router, prefix="/api")
app.include_router(media_router, prefix="/api")
app.include_router(websocket_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(system_router)

__all__ = ['app', 'Services', 'get_services']
