import asyncio
import logging
import mimetypes
from typing import List, Optional, Tuple
from urllib.parse import unquote, urlparse

import aiohttp

from lib.error_handler import AppError

logger = logging.getLogger(__name__)

SIGNED_URL_TTL = 3600
# Well under the provider's 15 second webhook timeout
DOWNLOAD_TIMEOUT = aiohttp.ClientTimeout(total=8)
EXTENSIONS = {
    'image/jpeg': 'jpg',
    'image/jpg': 'jpg',
    'image/png': 'png',
    'image/gif': 'gif',
    'image/webp': 'webp',
    'image/heic': 'heic',
}

def extension_for(content_type: Optional[str]) -> str:
    content_type = (content_type or '').split(';')[0].strip().lower()
    if content_type in EXTENSIONS:
        return EXTENSIONS[content_type]
    guessed = mimetypes.guess_extension(content_type) if content_type else None
    return guessed.lstrip('.') if guessed else 'jpg'

class PhotoService:
    def __init__(self, supabase_client, bucket: str, media_auth: Optional[Tuple[str, str]] = None):
        self.supabase = supabase_client
        self.bucket = bucket
        self.media_auth = media_auth

    def _bucket(self):
        return self.supabase.storage.from_(self.bucket)

    async def download(self, media_url: str) -> bytes:
        """Download an MMS attachment from the provider's media URL."""
        headers = {}
        if self.media_auth and self.media_auth[0]:
            headers['Authorization'] = aiohttp.BasicAuth(self.media_auth[0], self.media_auth[1]).encode()

        try:
            async with aiohttp.ClientSession(timeout=DOWNLOAD_TIMEOUT) as session:
                async with session.get(media_url, headers=headers) as response:
                    if response.status != 200:
                        logger.error(f"Failed to download media: HTTP {response.status}")
                        raise AppError(f"Failed to download media (HTTP {response.status})")
                    return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to download media from {media_url}: {e!r}")
            raise AppError(f"Failed to download media: {e!r}")

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        try:
            self._bucket().upload(
                path,
                data,
                file_options={'content-type': content_type, 'upsert': 'true'}
            )
        except Exception as e:
            logger.error(f"Error uploading photo {path}: {str(e)}")
            raise AppError(f"Failed to upload photo: {str(e)}")
        return path

    def remove(self, paths: List[str]) -> None:
        if not paths:
            return
        try:
            self._bucket().remove(paths)
        except Exception as e:
            logger.error(f"Error deleting photos from storage: {str(e)}")

    def signed_url(self, path: str, expires_in: int = SIGNED_URL_TTL) -> Optional[str]:
        try:
            result = self._bucket().create_signed_url(path, expires_in)
        except Exception as e:
            logger.warning(f"Could not sign photo URL for {path}: {str(e)}")
            return None
        return result.get('signedURL') or result.get('signedUrl')

    def extract_storage_path(self, url: str) -> Optional[str]:
        """
        Recover the storage path from a signed or public object URL.

        Expects paths like /storage/v1/object/(sign|public)/<bucket>/<file_path>.
        """
        try:
            path = urlparse(url).path
        except ValueError:
            return None
        if '/object/' not in path:
            return None
        parts = path.split('/object/', 1)[1].split('/')
        bucket_idx = 1 if parts[0] in ('sign', 'public', 'download') else 0
        if len(parts) <= bucket_idx or parts[bucket_idx] != self.bucket:
            return None
        return unquote('/'.join(parts[bucket_idx + 1:]))
