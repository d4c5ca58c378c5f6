"""Object storage gateway.

``upload`` returns the public URL of the stored object. ``download``
streams a URL to a local file: URLs that belong to this store are resolved
to keys and copied directly, anything else is fetched over HTTP. ``delete``
fails soft (logged, returns False) because it is only used for cleanup.
"""

import asyncio
import logging
import shutil
from pathlib import Path

import httpx

from src.config import Settings
from src.exceptions import StorageError

logger = logging.getLogger(__name__)


class BaseStorageService:
    """Shared HTTP download and soft delete behaviour."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http_client = http_client

    def get_public_url(self, storage_key: str) -> str:
        raise NotImplementedError

    def key_from_url(self, url: str) -> str | None:
        """Return the storage key if ``url`` points into this store."""
        raise NotImplementedError

    async def _put_bytes(self, storage_key: str, data: bytes, content_type: str) -> None:
        raise NotImplementedError

    async def _put_file(self, local_path: str, storage_key: str, content_type: str | None) -> None:
        raise NotImplementedError

    async def _get_file(self, storage_key: str, local_path: str) -> None:
        raise NotImplementedError

    async def _remove(self, storage_key: str) -> bool:
        raise NotImplementedError

    async def upload(self, data: bytes, storage_key: str, content_type: str) -> str:
        """Upload bytes and return the public URL."""
        try:
            await self._put_bytes(storage_key, data, content_type)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Upload failed for {storage_key}: {e}") from e
        logger.info(f"Uploaded {storage_key} ({len(data)} bytes)")
        return self.get_public_url(storage_key)

    async def upload_file(self, local_path: str | Path, storage_key: str, content_type: str | None = None) -> str:
        """Upload a local file and return the public URL."""
        try:
            await self._put_file(str(local_path), storage_key, content_type)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Upload failed for {storage_key}: {e}") from e
        logger.info(f"Uploaded {storage_key}")
        return self.get_public_url(storage_key)

    async def download(self, url: str, local_path: str | Path) -> str:
        """Download ``url`` to ``local_path``.

        Raises:
            StorageError: Object missing or network failure
        """
        local_path = str(local_path)
        key = self.key_from_url(url)
        try:
            if key is not None:
                await self._get_file(key, local_path)
            else:
                await self._download_http(url, local_path)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Download failed for {url}: {e}") from e
        return local_path

    async def _download_http(self, url: str, local_path: str) -> None:
        client = self._http_client or httpx.AsyncClient(timeout=self._settings.download_timeout_s)
        try:
            async with client.stream("GET", url, follow_redirects=True) as response:
                if response.status_code != 200:
                    raise StorageError(f"Download failed for {url}: HTTP {response.status_code}")
                with open(local_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        finally:
            if self._http_client is None:
                await client.aclose()

    async def delete(self, url: str) -> bool:
        """Delete an object by URL. Never raises."""
        key = self.key_from_url(url)
        if key is None:
            logger.warning(f"Refusing to delete foreign URL: {url}")
            return False
        try:
            return await self._remove(key)
        except Exception as e:
            logger.warning(f"Failed to delete {key}: {e}")
            return False


class LocalStorageService(BaseStorageService):
    """Local file storage for development without GCS."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings, http_client)
        self.base_path = Path(settings.local_storage_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._url_prefix = f"{settings.public_base_url.rstrip('/')}/api/storage/files/"

    def _get_full_path(self, storage_key: str) -> Path:
        full_path = (self.base_path / storage_key).resolve()
        if not full_path.is_relative_to(self.base_path.resolve()):
            raise StorageError(f"Storage key escapes storage root: {storage_key}")
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path

    def get_public_url(self, storage_key: str) -> str:
        """Get URL for accessing the file."""
        return f"{self._url_prefix}{storage_key}"

    def key_from_url(self, url: str) -> str | None:
        if url.startswith(self._url_prefix):
            return url[len(self._url_prefix):]
        return None

    def get_file_path(self, storage_key: str) -> Path:
        """Get the actual file path for serving."""
        return self._get_full_path(storage_key)

    async def _put_bytes(self, storage_key: str, data: bytes, content_type: str) -> None:
        self._get_full_path(storage_key).write_bytes(data)

    async def _put_file(self, local_path: str, storage_key: str, content_type: str | None) -> None:
        await asyncio.to_thread(shutil.copy, local_path, str(self._get_full_path(storage_key)))

    async def _get_file(self, storage_key: str, local_path: str) -> None:
        full_path = self._get_full_path(storage_key)
        if not full_path.exists():
            raise StorageError(f"Object not found: {storage_key}")
        await asyncio.to_thread(shutil.copy, str(full_path), local_path)

    async def _remove(self, storage_key: str) -> bool:
        full_path = self._get_full_path(storage_key)
        if full_path.exists():
            full_path.unlink()
            return True
        return False


class GCSStorageService(BaseStorageService):
    """Google Cloud Storage service for production.

    The google-cloud-storage client is synchronous; calls run in a thread.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings, http_client)
        from google.cloud import storage

        self._storage = storage
        self._client: storage.Client | None = None
        self._bucket: storage.Bucket | None = None
        self._bucket_name = settings.gcs_bucket_name

    @property
    def client(self):
        if self._client is None:
            if self._settings.gcs_project_id:
                self._client = self._storage.Client(project=self._settings.gcs_project_id)
            else:
                self._client = self._storage.Client()
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self._bucket_name)
        return self._bucket

    def get_public_url(self, storage_key: str) -> str:
        """Get the public URL for a stored file."""
        return f"https://storage.googleapis.com/{self._bucket_name}/{storage_key}"

    def key_from_url(self, url: str) -> str | None:
        for prefix in (
            f"https://storage.googleapis.com/{self._bucket_name}/",
            f"gs://{self._bucket_name}/",
        ):
            if url.startswith(prefix):
                return url[len(prefix):]
        return None

    async def _put_bytes(self, storage_key: str, data: bytes, content_type: str) -> None:
        blob = self.bucket.blob(storage_key)
        await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)

    async def _put_file(self, local_path: str, storage_key: str, content_type: str | None) -> None:
        blob = self.bucket.blob(storage_key)
        if content_type:
            await asyncio.to_thread(blob.upload_from_filename, local_path, content_type=content_type)
        else:
            await asyncio.to_thread(blob.upload_from_filename, local_path)

    async def _get_file(self, storage_key: str, local_path: str) -> None:
        blob = self.bucket.blob(storage_key)
        await asyncio.to_thread(blob.download_to_filename, local_path)

    async def _remove(self, storage_key: str) -> bool:
        blob = self.bucket.blob(storage_key)
        if await asyncio.to_thread(blob.exists):
            await asyncio.to_thread(blob.delete)
            return True
        return False


def create_storage_service(
    settings: Settings, http_client: httpx.AsyncClient | None = None
) -> BaseStorageService:
    """Use LocalStorageService or GCSStorageService based on config."""
    if settings.use_local_storage:
        return LocalStorageService(settings, http_client)
    return GCSStorageService(settings, http_client)
