"""Object storage client for the BaaS storage REST API."""

import logging
from typing import Optional, Tuple
from urllib.parse import quote, unquote

import requests

logger = logging.getLogger(__name__)

class StorageError(Exception):
    """Raised when an object cannot be stored or removed."""
    pass

class StorageClient:
    """Uploads and removes objects in storage buckets and builds their public URLs."""

    def __init__(self, base_url: str, service_key: str, timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f"Bearer {service_key}"
        self.session.headers['apikey'] = service_key

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{quote(path)}"

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Store an object without overwriting an existing one.

        Returns:
            Public URL of the stored object

        Raises:
            StorageError: If the upload fails
        """
        url = f"{self.base_url}/storage/v1/object/{bucket}/{quote(path)}"
        headers = {
            'content-type': content_type,
            'cache-control': 'max-age=3600',
            'x-upsert': 'false'
        }

        try:
            response = self.session.post(url, data=data, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise StorageError(f"Failed to reach storage: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get('message') or response.text
            except ValueError:
                message = response.text
            raise StorageError(f"Upload of {bucket}/{path} failed: {message}")

        logger.info(f"Stored {bucket}/{path} ({len(data)} bytes)")
        return self.public_url(bucket, path)

    def locate(self, url: str) -> Optional[Tuple[str, str]]:
        """Split a public URL issued by this client into ``(bucket, path)``.

        Returns None for URLs that point anywhere else.
        """
        prefix = f"{self.base_url}/storage/v1/object/public/"
        if not url.startswith(prefix):
            return None

        bucket, _, path = url[len(prefix):].partition('/')
        path = unquote(path.split('?', 1)[0])
        if not bucket or not path or '..' in path.split('/'):
            return None
        return bucket, path

    def delete(self, bucket: str, path: str) -> None:
        """Remove a stored object.

        Raises:
            StorageError: If storage refuses or cannot be reached
        """
        url = f"{self.base_url}/storage/v1/object/{bucket}/{quote(path)}"

        try:
            response = self.session.delete(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise StorageError(f"Failed to reach storage: {e}") from e

        if response.status_code >= 400:
            raise StorageError(f"Delete of {bucket}/{path} failed: {response.text}")

        logger.info(f"Deleted {bucket}/{path}")
