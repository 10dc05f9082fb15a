"""Object storage backends addressed by name (``local``, ...)."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Protocol

from taskqueue.errors import JobValidationError

logger = logging.getLogger(__name__)


class StorageBackend(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> str:
        ...

    def get(self, key: str) -> bytes:
        ...


class LocalStorage:
    """Stores objects under ``root`` and serves them as ``{base_url}/i/{key}``."""

    def __init__(self, root: str | Path, base_url: str = "") -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        try:
            path.relative_to(root)
        except ValueError:
            raise JobValidationError(f"invalid storage key: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.debug("stored %s (%s, %s bytes)", key, content_type, len(data))
        return f"{self.base_url}/i/{key}"

    def get(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).exists()


class StorageRegistry:
    def __init__(self, backends: Optional[Dict[str, StorageBackend]] = None) -> None:
        self._backends: Dict[str, StorageBackend] = dict(backends or {})

    def register(self, name: str, backend: StorageBackend) -> None:
        self._backends[name] = backend

    def get(self, name: str) -> StorageBackend:
        backend = self._backends.get(name)
        if backend is None:
            raise JobValidationError(f"unknown storage backend: {name}")
        return backend

    def names(self) -> list[str]:
        return sorted(self._backends)
