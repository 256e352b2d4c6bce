# services/file_store.py
import os
from abc import ABC, abstractmethod
from urllib.parse import unquote, urlparse


class FileStore(ABC):
    @abstractmethod
    def size(self, locator: str) -> int:
        """Size in bytes of the file behind ``locator``."""

    @abstractmethod
    def read(self, locator: str, offset: int, length: int) -> bytes:
        """Read ``length`` bytes starting at ``offset``."""


class LocalFileStore(FileStore):
    """Recordings saved on the local filesystem (plain paths or file:// URIs)."""

    def path_for(self, locator: str) -> str:
        if locator.startswith("file://"):
            return unquote(urlparse(locator).path)
        return locator

    def size(self, locator: str) -> int:
        return os.path.getsize(self.path_for(locator))

    def read(self, locator: str, offset: int, length: int) -> bytes:
        with open(self.path_for(locator), "rb") as f:
            f.seek(offset)
            data = f.read(length)
        if len(data) != length:
            raise IOError(
                f"Short read from {locator}: wanted {length} bytes at {offset}, got {len(data)}"
            )
        return data
