"""
Key-value persistence substrate.

The workspace core reads and writes opaque text values through this
interface only; nothing here knows about keys or ciphertext.
"""

import os
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Explicit get/put/delete over string keys and string values."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        ...

    def size(self, key: str) -> int:
        """Stored length of a value in bytes, 0 if absent."""
        value = self.get(key)
        return len(value.encode("utf-8")) if value is not None else 0

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryStore(KeyValueStore):
    """In-process store. Used by tests and throwaway sessions."""

    def __init__(self, data: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(data or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class FileStore(KeyValueStore):
    """
    One file per key under a root directory.

    A key "workspace/alice" lives at <root>/workspace/alice.json. Writes go
    to a temporary file first and are moved into place, so a reader never
    sees a half-written value.
    """

    SUFFIX = ".json"

    def __init__(self, root: Path):
        """
        Initialize the file store.

        Args:
            root: Directory holding the store
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        namespace, _, name = key.rpartition("/")
        parts = [quote(p, safe="") for p in namespace.split("/") if p]
        return self.root.joinpath(*parts, quote(name, safe="") + self.SUFFIX)

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def put(self, key: str, value: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self, prefix: str = "") -> list[str]:
        found = []
        for path in self.root.rglob("*" + self.SUFFIX):
            if path.name.startswith(".tmp-"):
                continue
            rel = path.relative_to(self.root)
            parts = [unquote(p) for p in rel.parts[:-1]]
            parts.append(unquote(rel.name[: -len(self.SUFFIX)]))
            key = "/".join(parts)
            if key.startswith(prefix):
                found.append(key)
        return sorted(found)

    def size(self, key: str) -> int:
        try:
            return self._path(key).stat().st_size
        except FileNotFoundError:
            return 0
