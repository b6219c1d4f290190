"""
Local filesystem storage provider for generated invoice documents.
"""
from typing import Optional
from pathlib import Path

import structlog

from ..config import settings
from .provider import StorageProvider


logger = structlog.get_logger(__name__)


class LocalStorageProvider(StorageProvider):
    """Stores documents under ``settings.storage_dir``."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        (self.base_dir / "invoices").mkdir(exist_ok=True)

    def _get_path(self, key: str) -> Path:
        """Get the local filesystem path for a given key."""
        # Remove leading slash and sanitize
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / clean_key

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file first so a failed write never leaves a partial document
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        tmp.replace(path)
        logger.debug("storage_put", key=key, size=len(data), content_type=content_type)

    def get(self, key: str) -> Optional[bytes]:
        path = self._get_path(key)
        if not path.exists():
            return None
        with open(path, "rb") as f:
            return f.read()

    def exists(self, key: str) -> bool:
        return self._get_path(key).exists()

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        if path.exists():
            path.unlink()
