"""
File storage service for knowledge-base uploads.

Handles saving, reading and removing source files on the local filesystem.
Files are stored in a mounted volume at UPLOAD_ROOT under kb/.
"""
import re
import uuid
import logging
from pathlib import Path
from typing import Optional
from django.conf import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


def safe_filename(filename: str) -> str:
    """Reduce a client-supplied filename to a safe basename."""
    name = Path(filename).name
    name = re.sub(r'[^A-Za-z0-9._-]+', '_', name).strip('._')
    return name[:120] or 'document'


class FileStorage:
    """
    Simple file storage for uploaded documents.

    Files are stored at: {UPLOAD_ROOT}/kb/{uuid}_{filename}
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root or settings.UPLOAD_ROOT)

    def _ensure_dir(self, path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create storage directory {path}: {e}")
            raise StorageError(f"Cannot create upload directory: {e}")

    def _resolve(self, storage_path: str) -> Path:
        path = (self.root / storage_path).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage path: {storage_path}")
        return path

    def save(self, filename: str, data: bytes) -> str:
        """
        Save bytes under a unique path.

        Returns:
            Relative storage path (e.g., 'kb/3f2a..._manual.pdf')

        Raises:
            StorageError: If the file cannot be written
        """
        storage_path = f"kb/{uuid.uuid4().hex}_{safe_filename(filename)}"
        filepath = self.root / storage_path
        self._ensure_dir(filepath.parent)

        try:
            filepath.write_bytes(data)
            logger.info(f"Saved file: {storage_path} ({len(data)} bytes)")
            return storage_path
        except OSError as e:
            logger.error(f"Failed to save file {storage_path}: {e}")
            raise StorageError(f"Failed to save file: {e}")

    def read(self, storage_path: str) -> bytes:
        """Read a stored file."""
        filepath = self._resolve(storage_path)
        try:
            return filepath.read_bytes()
        except FileNotFoundError:
            raise StorageError(f"File not found: {storage_path}")
        except OSError as e:
            raise StorageError(f"Failed to read file: {e}")

    def exists(self, storage_path: str) -> bool:
        """Check if a file exists in storage."""
        if not storage_path:
            return False
        try:
            return self._resolve(storage_path).exists()
        except StorageError:
            return False

    def delete(self, storage_path: str) -> bool:
        """
        Delete a file from storage.

        Returns:
            True if deleted, False if file didn't exist
        """
        filepath = self._resolve(storage_path)
        try:
            if filepath.exists():
                filepath.unlink()
                logger.info(f"Deleted file: {storage_path}")
                return True
            return False
        except OSError as e:
            logger.error(f"Failed to delete file {storage_path}: {e}")
            raise StorageError(f"Failed to delete file: {e}")
