"""System health endpoint."""

import logging
import time
from datetime import datetime, timezone

import psutil
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..services import Services, get_services

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    tags=["System"]
)

class SystemHealth(BaseModel):
    """Model for system health data."""
    status: str
    database: str
    uptime: float
    cpu_usage: float
    memory_usage: float
    disk_usage: float
    timestamp: datetime

@router.get("/health")
async def health(services: Services = Depends(get_services)) -> SystemHealth:
    """Report service, database and host status.

    The service is ``degraded`` while the database cannot be reached.
    """
    database_status = 'ok'
    try:
        async with services.pool.acquire() as conn:
            await conn.fetchval('SELECT 1')
    except Exception as e:
        logger.error(f"Health check could not reach the database: {e}")
        database_status = 'unavailable'

    return SystemHealth(
        status='ok' if database_status == 'ok' else 'degraded',
        database=database_status,
        uptime=time.time() - psutil.boot_time(),
        cpu_usage=psutil.cpu_percent(),
        memory_usage=psutil.virtual_memory().percent,
        disk_usage=psutil.disk_usage('/').percent,
        timestamp=datetime.now(timezone.utc)
    )
