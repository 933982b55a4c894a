from typing import BinaryIO

import requests
from google.api_core import exceptions as gcs_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage

from udin.core.config import get_settings
from udin.core.exceptions import StorageError
from udin.storage.base import StorageBackend

# API errors, credential problems and transport failures all mean "bucket unavailable"
_BACKEND_ERRORS = (gcs_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError, requests.RequestException)


class GCSStorage(StorageBackend):
    def __init__(self) -> None:
        settings = get_settings()
        self.bucket_name = settings.gcs_bucket_name or "udin-documents"
        try:
            self._client = storage.Client()
        except _BACKEND_ERRORS as e:
            raise StorageError(f"Storage client unavailable: {e}") from e
        self._bucket = self._client.bucket(self.bucket_name)

    async def put(self, key: str, body: BinaryIO | bytes, content_type: str | None = None) -> str:
        blob = self._bucket.blob(key)
        try:
            if isinstance(body, bytes):
                blob.upload_from_string(body, content_type=content_type or "application/octet-stream")
            else:
                blob.upload_from_file(body, content_type=content_type or "application/octet-stream")
        except _BACKEND_ERRORS as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        return f"gs://{self.bucket_name}/{key}"

    async def get(self, key: str) -> bytes:
        blob = self._bucket.blob(key)
        try:
            return blob.download_as_bytes()
        except gcs_exceptions.NotFound as e:
            raise FileNotFoundError(key) from e
        except _BACKEND_ERRORS as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    async def delete(self, key: str) -> None:
        blob = self._bucket.blob(key)
        try:
            blob.delete()
        except gcs_exceptions.NotFound:
            return
        except _BACKEND_ERRORS as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e
