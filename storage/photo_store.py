"""Local content-addressed store for sample photos."""

import hashlib
import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)


def hash_image(data: bytes) -> str:
    """Short SHA-256 digest used for duplicate detection."""
    return hashlib.sha256(data).hexdigest()[:32]


class PhotoStore:
    """Stores image bytes under a directory, keyed by content hash."""

    def __init__(self, root: str = "photos"):
        self.root = Path(root)

    def put(self, data: bytes, filename: str = "photo.jpg") -> str:
        """Write image bytes and return the storage reference."""
        clean_name = re.sub(r"[^a-zA-Z0-9.-]", "_", filename or "photo.jpg")
        ref = f"{hash_image(data)}-{clean_name}"
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / ref).write_bytes(data)
        return ref

    def read(self, ref: str) -> bytes:
        return (self.root / ref).read_bytes()

    def delete(self, ref: str) -> None:
        path = self.root / ref
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning(f"Photo file already gone: {path}")
