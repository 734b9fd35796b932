"""Media upload and removal endpoints."""

import logging
from typing import List

from fastapi import APIRouter, Body, File, Form, HTTPException, Security, Depends, UploadFile, status

from auth import get_current_user
from media import MediaError, MediaOwnershipError, StorageError, summarize

from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/upload",
    tags=["Media"]
)

@router.post("")
async def upload_media(
    purpose: str = Form(...),
    references: List[str] = Form(...),
    files: List[UploadFile] = File(default=[]),
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Upload a batch of client-buffered media.

    Args:
        purpose: ``listings`` or ``profiles``
        references: Ordered ``data:``, ``blob:`` or ``http(s)`` references
        files: File parts backing the ``blob:`` references, each named by
            its blob URL

    Returns:
        One result per reference, in order, and a success/failure summary.
        Failed items carry an ``error`` and never a URL.
    """
    blobs = {}
    for upload in files:
        blobs[upload.filename] = (await upload.read(), upload.content_type)

    try:
        results = await services.media.ingest(references, purpose, user_id, blobs)
    except MediaError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return {
        'results': [result.model_dump() for result in results],
        'summary': summarize(results)
    }

@router.delete("/delete")
async def delete_media(
    url: str = Body(..., embed=True),
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Remove a stored media object owned by the caller."""
    try:
        await services.media.delete(url, user_id)
    except MediaOwnershipError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e)
        )
    except MediaError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except StorageError as e:
        logger.error(f"Failed to delete media for user {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Delete failed"
        )

    return {'success': True}
