from abc import ABC, abstractmethod
from typing import BinaryIO


class StorageBackend(ABC):
    @abstractmethod
    async def put(self, key: str, body: BinaryIO | bytes, content_type: str | None = None) -> str:
        """Store file; return path or URI."""
        ...


def get_storage() -> StorageBackend:
    from app.storage.local import LocalStorage
    return LocalStorage()
