"""
Local payload cache.

Stores one downloaded payload per tool id, with a sidecar metadata file
recording the version and SHA-256 content hash:

    <cache root>/
        <tool id>/
            <payload file>      (name taken from the payload reference)
            entry.json          {"tool_id", "version", "content_hash", "file_name", "fetched_at"}

Writes go to a temp file in the entry directory and are promoted with an
atomic rename, payload first and sidecar last. An interrupted write
therefore leaves either the previous entry or a payload whose hash does
not match the sidecar, which ``get`` reports as a miss. All access to one
tool id is serialized behind a per-id lock; different ids never wait on
each other.

Example:
    store = CacheStore(Path("~/.local/share/fieldkit/cache").expanduser())
    entry = store.put("reindex", payload_bytes, "1.2.0", file_name="reindex.ps1")
    assert store.get("reindex") == entry
    store.is_stale(entry, descriptor)   # True when the manifest moved on
"""

import hashlib
import json
import logging
import os
import shutil
import stat
import tempfile
import threading
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from pydantic import ValidationError as PydanticValidationError

from fieldkit.core.catalog.exceptions import CacheCorruptionError, CacheWriteError
from fieldkit.core.catalog.models import (
    ID_PATTERN,
    CacheEntry,
    CacheStats,
    ModuleDescriptor,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)

SIDECAR_NAME = "entry.json"
DEFAULT_PAYLOAD_NAME = "payload"


def compute_hash(data: bytes) -> str:
    """SHA-256 of ``data`` as lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def payload_file_name(payload_ref: str) -> str:
    """
    Derive the cached file name from a payload reference.

    Keeps the extension so interpreters that dispatch on it still work.

    Example:
        >>> payload_file_name("https://example.com/tools/Check-Db.ps1?raw=1")
        'Check-Db.ps1'
    """
    path = urlparse(payload_ref).path or payload_ref
    name = PurePosixPath(path.replace("\\", "/")).name
    if not name or name in (".", "..", SIDECAR_NAME):
        return DEFAULT_PAYLOAD_NAME
    return name


class CacheStore:
    """
    Persistent cache of tool payloads keyed by tool id.

    Safe to use from several threads: the engine calls it from worker
    threads while other tools are running.
    """

    def __init__(self, root: Path) -> None:
        """
        Initialize the store.

        Args:
            root: Cache directory (created on first write)
        """
        self.root = Path(root)
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock(self, tool_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[tool_id]

    def _entry_dir(self, tool_id: str) -> Path:
        if not ID_PATTERN.fullmatch(tool_id) or tool_id in (".", ".."):
            raise ValueError(f"Invalid cache key: '{tool_id}'")
        return self.root / tool_id

    def get(self, tool_id: str) -> CacheEntry | None:
        """
        Return the verified cache entry for ``tool_id``.

        The payload hash is recomputed on every read; a mismatch discards
        the entry and is reported as a miss.

        Returns:
            CacheEntry, or None on a miss
        """
        with self._lock(tool_id):
            try:
                return self._load_verified(tool_id)
            except CacheCorruptionError as e:
                logger.warning(f"Discarding corrupt cache entry: {e}")
                self._remove(tool_id)
                return None

    def put(
        self,
        tool_id: str,
        data: bytes,
        version: str,
        *,
        file_name: str | None = None,
    ) -> CacheEntry:
        """
        Store a payload, replacing any previous entry for ``tool_id``.

        Args:
            tool_id: Tool (or module) id
            data: Payload bytes
            version: Version the payload corresponds to
            file_name: Payload file name (defaults to "payload")

        Returns:
            The new CacheEntry

        Raises:
            CacheWriteError: If the payload cannot be written
        """
        name = file_name or DEFAULT_PAYLOAD_NAME
        if name == SIDECAR_NAME or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"Invalid payload file name: '{name}'")

        entry_dir = self._entry_dir(tool_id)
        content_hash = compute_hash(data)

        with self._lock(tool_id):
            tmp_paths: list[Path] = []
            try:
                entry_dir.mkdir(parents=True, exist_ok=True)

                payload_tmp = self._write_temp(entry_dir, data)
                tmp_paths.append(payload_tmp)
                # Payloads are executed directly when no interpreter is configured
                payload_tmp.chmod(
                    payload_tmp.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
                )

                fetched_at = datetime.now(timezone.utc)
                sidecar = {
                    "tool_id": tool_id,
                    "version": version,
                    "content_hash": content_hash,
                    "file_name": name,
                    "fetched_at": fetched_at.isoformat(),
                }
                sidecar_tmp = self._write_temp(
                    entry_dir, json.dumps(sidecar, indent=2).encode("utf-8")
                )
                tmp_paths.append(sidecar_tmp)

                payload_path = entry_dir / name
                payload_tmp.replace(payload_path)
                tmp_paths.remove(payload_tmp)
                sidecar_tmp.replace(entry_dir / SIDECAR_NAME)
                tmp_paths.remove(sidecar_tmp)

                self._remove_stale_payloads(entry_dir, keep=name)
            except OSError as e:
                raise CacheWriteError(
                    tool_id, f"Failed to write payload: {e.strerror or e}", path=str(entry_dir)
                ) from e
            finally:
                for leftover in tmp_paths:
                    leftover.unlink(missing_ok=True)

        logger.debug(
            f"Cached {tool_id} v{version} ({len(data)} bytes, hash: {content_hash[:12]})"
        )
        return CacheEntry(
            tool_id=tool_id,
            version=version,
            local_path=payload_path,
            content_hash=content_hash,
            fetched_at=fetched_at,
            size_bytes=len(data),
        )

    @staticmethod
    def is_stale(entry: CacheEntry, descriptor: ToolDescriptor | ModuleDescriptor) -> bool:
        """True iff the cached version differs from the descriptor's version."""
        return entry.version != descriptor.version

    def evict(self, tool_id: str) -> bool:
        """
        Remove the entry for ``tool_id``.

        Returns:
            True if something was removed
        """
        with self._lock(tool_id):
            removed = self._remove(tool_id)
        if removed:
            logger.info(f"Evicted cache entry: {tool_id}")
        return removed

    def entries(self) -> list[CacheEntry]:
        """Return every verified entry (corrupt entries are discarded)."""
        return [entry for tool_id in self.cached_ids() if (entry := self.get(tool_id))]

    def cached_ids(self) -> list[str]:
        """Ids that have an entry directory, verified or not."""
        if not self.root.exists():
            return []
        return sorted(
            child.name
            for child in self.root.iterdir()
            if child.is_dir() and ID_PATTERN.fullmatch(child.name)
        )

    def orphaned_ids(self, known_ids: Iterable[str]) -> list[str]:
        """Cached ids that are not in ``known_ids`` (e.g. tools removed from the manifest)."""
        known = set(known_ids)
        return [tool_id for tool_id in self.cached_ids() if tool_id not in known]

    def stats(self) -> CacheStats:
        entries = self.entries()
        return CacheStats(
            total_entries=len(entries),
            total_bytes=sum(entry.size_bytes for entry in entries),
            tool_ids=[entry.tool_id for entry in entries],
        )

    def clear(self) -> int:
        """
        Remove every entry.

        Returns:
            Number of entries removed
        """
        removed = 0
        for tool_id in self.cached_ids():
            if self.evict(tool_id):
                removed += 1
        logger.info(f"Cache cleared ({removed} entries)")
        return removed

    def _load_verified(self, tool_id: str) -> CacheEntry | None:
        entry_dir = self._entry_dir(tool_id)
        sidecar_path = entry_dir / SIDECAR_NAME
        if not sidecar_path.exists():
            return None

        try:
            with open(sidecar_path, encoding="utf-8") as f:
                sidecar = json.load(f)
            payload_path = entry_dir / sidecar["file_name"]
            entry = CacheEntry(
                tool_id=tool_id,
                version=sidecar["version"],
                local_path=payload_path,
                content_hash=sidecar["content_hash"],
                fetched_at=sidecar["fetched_at"],
                size_bytes=payload_path.stat().st_size if payload_path.exists() else 0,
            )
        except (OSError, json.JSONDecodeError, KeyError, TypeError, PydanticValidationError) as e:
            raise CacheCorruptionError(tool_id, f"Unreadable sidecar: {e}") from e

        if not payload_path.exists():
            raise CacheCorruptionError(tool_id, "Payload file is missing")

        try:
            actual = hash_file(payload_path)
        except OSError as e:
            raise CacheCorruptionError(tool_id, f"Payload unreadable: {e}") from e

        if actual != entry.content_hash:
            raise CacheCorruptionError(
                tool_id,
                f"Hash mismatch: stored={entry.content_hash[:12]}, computed={actual[:12]}",
            )
        return entry

    def _remove(self, tool_id: str) -> bool:
        entry_dir = self._entry_dir(tool_id)
        if not entry_dir.exists():
            return False
        shutil.rmtree(entry_dir)
        return True

    @staticmethod
    def _write_temp(directory: Path, data: bytes) -> Path:
        with tempfile.NamedTemporaryFile(dir=directory, delete=False, suffix=".tmp") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
            return Path(tmp.name)

    @staticmethod
    def _remove_stale_payloads(entry_dir: Path, keep: str) -> None:
        # A new version may use a different file name.
        for child in entry_dir.iterdir():
            if child.name in (keep, SIDECAR_NAME) or child.suffix == ".tmp":
                continue
            if child.is_file():
                child.unlink(missing_ok=True)
