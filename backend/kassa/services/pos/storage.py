"""
Document Storage

Stores generated PDFs and signature images under ``POS_DOCUMENTS_DIR`` and
hands out public URLs rooted at ``POS_DOCUMENTS_BASE_URL``.
"""
import logging
import re
from pathlib import Path
from typing import Optional

from kassa.core.config import settings

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT = re.compile(r"[^a-zA-Z0-9._-]")


def safe_segment(value: str) -> str:
    """Make a value usable as a single storage key segment."""
    return _UNSAFE_SEGMENT.sub("_", value)


class DocumentStorage:
    """Local-directory object store keyed by slash-separated paths."""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or settings.pos_documents_dir)
        self.base_url = (base_url if base_url is not None else settings.pos_documents_base_url or "").rstrip("/")

    def _path(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p and p not in (".", "..")]
        return self.root.joinpath(*parts)

    def public_url(self, key: str) -> str:
        """
        Resolve the URL under which a stored key is served.

        Without a configured base URL the key itself is returned, which the
        API serves from ``/api/v1/pos/documents/{key}``.
        """
        if self.base_url:
            return f"{self.base_url}/{key}"
        return key

    def put(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        """
        Write an object and return its public URL.

        Args:
            key: Storage key such as ``pos/receipts/2026/R-2026-000001.pdf``
            data: Raw bytes
            content_type: MIME type, only logged

        Returns:
            Public URL of the stored object
        """
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Stored {content_type} document {key} ({len(data)} bytes)")
        return self.public_url(key)

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()


def get_document_storage() -> DocumentStorage:
    return DocumentStorage()
