"""Media ingestion module.

Turns client-buffered media references into durable storage URLs:

- ``data:`` URIs are decoded in place
- ``blob:`` URLs are matched against file parts uploaded with the request
- ``http(s)`` URLs are already durable and pass through untouched
- any other scheme is reported as an error

Each reference is processed independently and concurrently. One bad item
never fails the batch; the result list always has one entry per input, in
input order.
"""

import asyncio
import base64
import binascii
import logging
import re
import secrets
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote_to_bytes

from pydantic import BaseModel

from config import settings_conf

from .images import reencode_image, ImageDecodeError, OUTPUT_MIME, OUTPUT_EXTENSION
from .storage import StorageClient, StorageError

logger = logging.getLogger(__name__)

DATA_URI_PATTERN = re.compile(r'^data:([^;,]*)((?:;[^;,]*)*),(.*)$', re.DOTALL)

IMAGE_TYPES = {
    'image/jpeg': 'jpg',
    'image/png': 'png',
    'image/webp': 'webp',
    'image/gif': 'gif'
}

VIDEO_TYPES = {
    'video/mp4': 'mp4',
    'video/webm': 'webm',
    'video/quicktime': 'mov'
}

# Allowed types and size limit per upload purpose
PURPOSES = {
    'listings': {
        'max_bytes': settings_conf['max_listing_media_bytes'],
        'types': set(IMAGE_TYPES) | set(VIDEO_TYPES)
    },
    'profiles': {
        'max_bytes': settings_conf['max_profile_media_bytes'],
        'types': {'image/jpeg', 'image/png', 'image/webp'}
    }
}

class MediaError(Exception):
    """Base exception for media errors."""
    pass

class MediaRejectedError(MediaError):
    """Raised when a single media item cannot be accepted."""
    pass

class MediaOwnershipError(MediaError):
    """Raised when a user acts on media stored under another user."""
    pass

class PartialFailure(MediaError):
    """Raised by callers that require every item of a batch to resolve."""

    def __init__(self, results: List["MediaResult"]):
        self.results = results
        self.failed = [i for i, result in enumerate(results) if result.error]
        super().__init__(
            f"{len(self.failed)} of {len(results)} media items could not be uploaded"
        )

class MediaResult(BaseModel):
    """Outcome for one media reference. Exactly one of ``url`` or ``error`` is set."""
    url: Optional[str] = None
    filename: Optional[str] = None
    size: Optional[int] = None
    type: Optional[str] = None
    error: Optional[str] = None
    passthrough: bool = False

def is_buffered(reference: str) -> bool:
    """Check whether a reference still points at client-local data."""
    return reference.startswith(('data:', 'blob:'))

def decode_data_uri(reference: str) -> Tuple[bytes, str]:
    """Decode a data URI.

    Returns:
        Tuple of (raw bytes, declared MIME type)

    Raises:
        MediaRejectedError: If the URI is malformed
    """
    match = DATA_URI_PATTERN.match(reference)
    if not match:
        raise MediaRejectedError("Invalid data URL")

    mime, params, payload = match.groups()
    mime = (mime or 'text/plain').strip().lower()

    if ';base64' in params.lower():
        try:
            data = base64.b64decode(re.sub(r'\s', '', payload), validate=True)
        except (binascii.Error, ValueError):
            raise MediaRejectedError("Invalid base64 data in data URL")
    else:
        data = unquote_to_bytes(payload)

    return data, mime

def summarize(results: List[MediaResult]) -> Dict[str, int]:
    """Count successes and failures of a batch."""
    failed = sum(1 for result in results if result.error)
    return {
        'total': len(results),
        'succeeded': len(results) - failed,
        'failed': failed
    }

def require_all_resolved(results: List[MediaResult]) -> List[str]:
    """Get the URLs of a batch, failing if any item has an error.

    Raises:
        PartialFailure: If any item failed
    """
    if any(result.error for result in results):
        raise PartialFailure(results)
    return [result.url for result in results]

def resolved_urls(results: List[MediaResult]) -> List[str]:
    """Get the URLs of the items that resolved, dropping the failures."""
    return [result.url for result in results if not result.error]

class MediaIngestor:
    """Resolves, validates, normalizes and stores media references."""

    def __init__(self, storage: StorageClient, purposes: Optional[Dict] = None,
                 image_quality: Optional[int] = None):
        self.storage = storage
        self.purposes = purposes or PURPOSES
        self.image_quality = image_quality or settings_conf['image_quality']

    async def ingest(
        self,
        references: List[str],
        purpose: str,
        user_id: str,
        blobs: Optional[Dict[str, Tuple[bytes, str]]] = None
    ) -> List[MediaResult]:
        """Ingest a batch of media references.

        Args:
            references: Ordered data:, blob: or http(s) references
            purpose: Upload purpose, also the storage bucket
            user_id: Owner, used to namespace storage paths
            blobs: Uploaded file parts keyed by their blob: URL, as (bytes, MIME)

        Returns:
            One MediaResult per reference, in the same order

        Raises:
            MediaError: If the purpose is unknown
        """
        if purpose not in self.purposes:
            raise MediaError(f"Unknown upload purpose: {purpose}")

        blobs = blobs or {}
        outcomes = await asyncio.gather(
            *(self._ingest_one(reference, purpose, user_id, blobs) for reference in references),
            return_exceptions=True
        )

        results = []
        for reference, outcome in zip(references, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected error ingesting {reference[:64]}: {outcome}")
                outcome = MediaResult(error="Unexpected error processing media")
            results.append(outcome)

        counts = summarize(results)
        logger.info(
            f"Ingested {counts['succeeded']}/{counts['total']} {purpose} items for user {user_id}"
        )
        return results

    def _resolve(self, reference: str, blobs: Dict[str, Tuple[bytes, str]]) -> Tuple[bytes, str]:
        if reference.startswith('data:'):
            return decode_data_uri(reference)

        if reference.startswith('blob:'):
            if reference not in blobs:
                raise MediaRejectedError(f"Could not read blob: {reference}")
            data, mime = blobs[reference]
            return data, (mime or '').split(';')[0].strip().lower()

        raise MediaRejectedError("Unsupported media reference")

    async def _ingest_one(self, reference: str, purpose: str, user_id: str,
                          blobs: Dict[str, Tuple[bytes, str]]) -> MediaResult:
        if reference.startswith(('http://', 'https://')):
            return MediaResult(url=reference, passthrough=True)

        policy = self.purposes[purpose]

        try:
            data, mime = self._resolve(reference, blobs)

            if not data:
                raise MediaRejectedError("Empty file")
            if len(data) > policy['max_bytes']:
                raise MediaRejectedError(
                    f"File too large: {len(data)} bytes (max {policy['max_bytes']})"
                )
            if mime not in policy['types']:
                raise MediaRejectedError(f"Unsupported file type: {mime}")

            if mime in IMAGE_TYPES:
                data = await asyncio.to_thread(reencode_image, data, self.image_quality)
                mime, extension = OUTPUT_MIME, OUTPUT_EXTENSION
            else:
                extension = VIDEO_TYPES[mime]

            filename = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}.{extension}"
            path = f"{purpose}/{user_id}/{filename}"
            url = await asyncio.to_thread(self.storage.upload, purpose, path, data, mime)

        except (MediaRejectedError, ImageDecodeError, StorageError) as e:
            logger.warning(f"Rejected {purpose} media for user {user_id}: {e}")
            return MediaResult(error=str(e))

        return MediaResult(url=url, filename=filename, size=len(data), type=mime)

    async def delete(self, url: str, user_id: str) -> None:
        """Remove a stored media object owned by ``user_id``.

        Objects live at ``<purpose>/<user_id>/<file>`` inside the purpose
        bucket, so ownership is read from the path.

        Raises:
            MediaRejectedError: If the URL is not one of our stored objects
            MediaOwnershipError: If the object belongs to another user
            StorageError: If storage fails to remove it
        """
        located = self.storage.locate(url)
        if located is None:
            raise MediaRejectedError("Not a stored media URL")

        bucket, path = located
        parts = path.split('/')
        if bucket not in self.purposes or len(parts) != 3 or parts[0] != bucket:
            raise MediaRejectedError("Not a stored media URL")
        if parts[1] != str(user_id):
            logger.warning(f"User {user_id} tried to delete {bucket}/{path}")
            raise MediaOwnershipError("Media belongs to another user")

        await asyncio.to_thread(self.storage.delete, bucket, path)

__all__ = [
    'MediaIngestor',
    'MediaResult',
    'MediaError',
    'MediaRejectedError',
    'MediaOwnershipError',
    'PartialFailure',
    'StorageClient',
    'StorageError',
    'PURPOSES',
    'is_buffered',
    'decode_data_uri',
    'summarize',
    'require_all_resolved',
    'resolved_urls'
]
