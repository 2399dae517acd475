"""Uploaded resource files: a blob directory plus a metadata list.

Layout under the configured path:

    files/<name>    raw uploaded bytes
    list.json       [{"name": title, "file": name, "uploaded": iso}, ...], newest first
"""

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path

from .security import validate_file_name

logger = logging.getLogger(__name__)

MIME_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
}

DEFAULT_MIME_TYPE = "application/octet-stream"


class ResourceError(Exception):
    """Raised when a resource operation fails."""

    pass


class ResourceNotFoundError(ResourceError):
    pass


def mime_type_for(file_name: str) -> str:
    """MIME type by file extension."""
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    return MIME_TYPES.get(extension, DEFAULT_MIME_TYPE)


class ResourceStore:
    """Thread-safe store of uploaded resource files."""

    def __init__(self, path: str, max_upload_bytes: int = 20 * 1024 * 1024) -> None:
        self._root = Path(path)
        self._files = self._root / "files"
        self._list_path = self._root / "list.json"
        self._max_upload_bytes = max_upload_bytes
        self._lock = threading.Lock()
        try:
            self._files.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(f"Failed to create resource directory: {e}")

    @property
    def max_upload_bytes(self) -> int:
        return self._max_upload_bytes

    def _read_list(self) -> list[dict]:
        try:
            raw = self._list_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise ResourceError(f"Failed to read resource list: {e}")

        try:
            entries = json.loads(raw)
        except ValueError:
            entries = None
        if not isinstance(entries, list):
            logger.warning("Resource list corrupted, resetting to empty")
            self._write_list([])
            return []
        return entries

    def _write_list(self, entries: list[dict]) -> None:
        tmp_path = self._list_path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
            tmp_path.replace(self._list_path)
        except OSError as e:
            raise ResourceError(f"Failed to write resource list: {e}")

    def _file_path(self, file_name: str | None) -> Path:
        name = validate_file_name(file_name)
        if name is None:
            raise ResourceError(f"Invalid file name: {file_name!r}")
        return self._files / name

    def list(self) -> list[dict]:
        """Metadata of all resources, newest first."""
        with self._lock:
            return self._read_list()

    def upload(self, file_name: str | None, data: bytes, title: str | None = None) -> dict:
        """Store a file and put it at the front of the list.

        Uploading an existing name replaces both the file and its entry.

        Returns:
            The new metadata entry.

        Raises:
            ResourceError: For invalid names, oversized files or write failures.
        """
        path = self._file_path(file_name)
        if len(data) > self._max_upload_bytes:
            raise ResourceError(f"File too large ({len(data)} bytes, limit {self._max_upload_bytes})")

        entry = {
            "name": (title or "").strip() or path.name,
            "file": path.name,
            "uploaded": datetime.now(UTC).isoformat(),
        }
        with self._lock:
            try:
                path.write_bytes(data)
            except OSError as e:
                raise ResourceError(f"Failed to store {path.name}: {e}")
            entries = [e for e in self._read_list() if e.get("file") != path.name]
            entries.insert(0, entry)
            self._write_list(entries)

        logger.info("Stored resource %s (%d bytes)", path.name, len(data))
        return entry

    def get(self, file_name: str | None) -> tuple[bytes, str]:
        """Return (content, MIME type) of a stored file.

        Raises:
            ResourceNotFoundError: If no such file exists.
        """
        path = self._file_path(file_name)
        try:
            return path.read_bytes(), mime_type_for(path.name)
        except FileNotFoundError:
            raise ResourceNotFoundError(f"File not found: {path.name}")
        except OSError as e:
            raise ResourceError(f"Failed to read {path.name}: {e}")

    def delete(self, file_name: str | None) -> bool:
        """Remove a file and its list entry. Returns True if either existed."""
        path = self._file_path(file_name)
        with self._lock:
            existed = path.exists()
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise ResourceError(f"Failed to delete {path.name}: {e}")
            entries = self._read_list()
            remaining = [e for e in entries if e.get("file") != path.name]
            if len(remaining) != len(entries):
                self._write_list(remaining)
                existed = True
        if existed:
            logger.info("Deleted resource %s", path.name)
        return existed
