"""Filesystem-backed object storage for uploaded documents.

Objects live under ``<root>/<bucket>/<key>``; keys may contain sub-paths
(e.g. ``<user_id>/kvitto.pdf``) but never escape their bucket.
"""

import logging
from pathlib import Path

from dealerbooks.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class DocumentStorage:
    def __init__(self, root: str = "data/storage"):
        self.root = Path(root)

    def _path(self, bucket: str, key: str) -> Path:
        if not bucket or not key:
            raise ValidationError("Bucket and key are required")
        bucket_dir = (self.root / bucket).resolve()
        path = (bucket_dir / key).resolve()
        if not path.is_relative_to(bucket_dir):
            raise ValidationError(f"Invalid storage key: {key!r}")
        return path

    def save(self, bucket: str, key: str, data: bytes) -> str:
        """Store an object, creating directories as needed. Returns the key."""
        path = self._path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("Stored %d bytes at %s/%s", len(data), bucket, key)
        return key

    def download(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        if not path.is_file():
            raise NotFoundError(f"Could not download file from storage: {bucket}/{key}")
        return path.read_bytes()

    def exists(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).is_file()
