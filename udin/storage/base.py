from abc import ABC, abstractmethod
from typing import BinaryIO

from udin.core.config import get_settings


class StorageBackend(ABC):
    """Durable home for document payloads. Failures raise ``StorageError``."""

    @abstractmethod
    async def put(self, key: str, body: BinaryIO | bytes, content_type: str | None = None) -> str:
        """Store file; return path or URI."""
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Retrieve file bytes."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete file; missing keys are ignored."""
        ...


def document_key(user_id: str, file_name: str) -> str:
    return f"documents/{user_id}/{file_name}"


def get_storage() -> StorageBackend:
    settings = get_settings()
    if settings.storage_backend == "gcs":
        from udin.storage.gcs import GCSStorage
        return GCSStorage()
    from udin.storage.local import LocalStorage
    return LocalStorage()
