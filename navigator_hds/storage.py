"""
Key-value persistence primitive.

A synchronous string store scoped to one origin/installation. The compartment
store only uses it to scrub keys on cleanup; the vault keeps its encrypted
blobs and metadata in it.
"""
import os
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union
from collections.abc import Iterator
from urllib.parse import quote, unquote

logger = logging.getLogger("navigator.hds.storage")


class KeyValueStore(ABC):
    """Abstract key-value store holding string values."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored at key, or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value at key, replacing any previous value."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key. Removing a missing key is a no-op."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Return a snapshot of all keys."""

    def __contains__(self, key: object) -> bool:
        return self.get(str(key)) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self.keys())

    def size(self, key: str) -> int:
        """Size in bytes of the value stored at key (0 if missing)."""
        value = self.get(key)
        return len(value.encode("utf-8")) if value is not None else 0


class MemoryStorage(KeyValueStore):
    """In-process storage, lost when the process exits."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def __repr__(self) -> str:
        return f'<MemoryStorage keys={len(self._data)}>'

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(
                f"Storage values must be str, got {type(value).__name__}"
            )
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())


class FileStorage(KeyValueStore):
    """Directory-backed storage: one file per key.

    Key names are percent-encoded into file names. Writes go to a temporary
    file in the same directory and are moved into place with ``os.replace``,
    so a crash never leaves a half-written value behind.
    """

    suffix = ".kv"

    def __init__(self, directory: Union[str, Path]):
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f'<FileStorage dir={str(self._dir)!r}>'

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        if not key:
            raise ValueError("Storage key cannot be empty")
        return self._dir / (quote(key, safe="") + self.suffix)

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(
                f"Storage values must be str, got {type(value).__name__}"
            )
        path = self._path(key)
        fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(value)
            os.replace(tmp, path)
        except Exception:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> list[str]:
        return [
            unquote(path.name[:-len(self.suffix)])
            for path in self._dir.iterdir()
            if path.is_file() and path.name.endswith(self.suffix)
        ]

    def size(self, key: str) -> int:
        try:
            return self._path(key).stat().st_size
        except FileNotFoundError:
            return 0
