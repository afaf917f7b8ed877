"""
Public audio assets on Google Cloud Storage.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from app.clients.google_auth import STORAGE_SCOPE, load_credentials
from app.core.errors import AudioStorageError

logger = logging.getLogger(__name__)

_GCS_ERRORS = (gcs_exceptions.GoogleAPIError, OSError, ValueError)


class AudioStorage:
    def __init__(
        self,
        bucket_name: str,
        folder: str = "Autos-ST",
        project_id: Optional[str] = None,
        credentials_file: Optional[str] = None,
        client: Optional[storage.Client] = None,
    ):
        self.bucket_name = bucket_name
        self.folder = folder.strip("/")
        self.project_id = project_id
        self.credentials_file = credentials_file
        self._client = client

    def _get_client(self) -> storage.Client:
        if self._client is None:
            credentials = load_credentials([STORAGE_SCOPE], self.credentials_file)
            self._client = storage.Client(project=self.project_id or None, credentials=credentials)
        return self._client

    def blob_name(self, asset_id: str) -> str:
        return f"{self.folder}/{asset_id}" if self.folder else asset_id

    def public_url(self, asset_id: str) -> str:
        return f"https://storage.googleapis.com/{self.bucket_name}/{self.blob_name(asset_id)}"

    def _upload_sync(self, asset_id: str, data: bytes) -> None:
        blob = self._get_client().bucket(self.bucket_name).blob(self.blob_name(asset_id))
        blob.cache_control = "public, max-age=3600"
        blob.upload_from_string(data, content_type="audio/mpeg")

    async def upload(self, asset_id: str, data: bytes) -> str:
        """Upload mp3 bytes and return the public URL"""
        if not self.bucket_name:
            raise AudioStorageError("GCS bucket not configured", reason="missing_bucket")
        try:
            await asyncio.to_thread(self._upload_sync, asset_id, data)
        except _GCS_ERRORS as e:
            logger.error(f"GCS|upload_failed|asset={asset_id}|error={type(e).__name__}")
            raise AudioStorageError("Audio upload failed", reason=type(e).__name__) from e
        url = self.public_url(asset_id)
        logger.info(f"GCS|uploaded|asset={asset_id}|bytes={len(data)}")
        return url

    def _delete_sync(self, asset_id: str) -> None:
        self._get_client().bucket(self.bucket_name).blob(self.blob_name(asset_id)).delete()

    async def delete(self, asset_id: str) -> bool:
        """Delete an asset; a missing object counts as already deleted"""
        try:
            await asyncio.to_thread(self._delete_sync, asset_id)
        except gcs_exceptions.NotFound:
            logger.info(f"GCS|delete|asset={asset_id}|already_gone")
            return False
        except _GCS_ERRORS as e:
            raise AudioStorageError("Audio delete failed", reason=type(e).__name__) from e
        logger.info(f"GCS|deleted|asset={asset_id}")
        return True

    async def test_connection(self) -> Dict[str, Any]:
        try:
            exists = await asyncio.to_thread(lambda: self._get_client().bucket(self.bucket_name).exists())
        except _GCS_ERRORS as e:
            return {"success": False, "bucket": self.bucket_name, "error": f"{type(e).__name__}: {e}"}
        return {"success": bool(exists), "bucket": self.bucket_name, "folder": self.folder}
