"""Image hosting via a Supabase Storage bucket."""
import asyncio
import inspect
import logging
import uuid
from typing import Any, Optional

from supabase import acreate_client

from config import SUPABASE_URL, SUPABASE_KEY, SUPABASE_BUCKET, ALLOWED_IMAGE_EXTENSIONS

logger = logging.getLogger(__name__)

_EXTENSIONS_BY_MIME = {mime: f".{ext}" for ext, mime in ALLOWED_IMAGE_EXTENSIONS.items() if ext != "jpeg"}


class UploadFailed(Exception):
    """The image could not be stored or no public URL was obtained."""


class ImageUploader:
    """Uploads user images so the tool server can fetch them by URL."""

    def __init__(
        self,
        url: Optional[str] = SUPABASE_URL,
        key: Optional[str] = SUPABASE_KEY,
        bucket: str = SUPABASE_BUCKET,
        client: Optional[Any] = None
    ):
        """
        Initialize the uploader. The Supabase client is created on first use.

        Args:
            url: Supabase project URL
            key: Supabase API key
            bucket: Storage bucket holding uploaded images
            client: Pre-built async Supabase client
        """
        self.url = url
        self.key = key
        self.bucket = bucket
        self._client = client
        self._client_lock = asyncio.Lock()

    @property
    def is_configured(self) -> bool:
        return self._client is not None or bool(self.url and self.key)

    async def upload(self, data: bytes, mime_type: str) -> str:
        """
        Store an image and return its public URL.

        Args:
            data: Raw image bytes
            mime_type: Image MIME type

        Returns:
            Dereferenceable URL of the stored image

        Raises:
            UploadFailed: If storage is not configured or the upload fails
        """
        if not self.is_configured:
            raise UploadFailed("SUPABASE_URL and SUPABASE_KEY are not set")

        path = f"uploads/{uuid.uuid4().hex}{_EXTENSIONS_BY_MIME.get(mime_type, '')}"
        try:
            client = await self._get_client()
            bucket = client.storage.from_(self.bucket)
            await bucket.upload(path=path, file=data, file_options={"content-type": mime_type})
            public_url = bucket.get_public_url(path)
            if inspect.isawaitable(public_url):
                public_url = await public_url
        except Exception as e:
            logger.error(f"Error uploading image to bucket {self.bucket}: {e}")
            raise UploadFailed(str(e)) from e

        if not isinstance(public_url, str) or not public_url:
            raise UploadFailed("Storage returned no public URL")

        logger.info(f"Uploaded image ({len(data)} bytes) to {path}")
        return public_url

    async def _get_client(self) -> Any:
        async with self._client_lock:
            if self._client is None:
                self._client = await acreate_client(self.url, self.key)
                logger.info("ImageUploader connected to Supabase")
        return self._client
