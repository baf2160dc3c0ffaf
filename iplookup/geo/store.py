"""
Database store: zero or one published reader per database type.

Readers borrow a handle for a single query. Publishing loads the new reader
first and then swaps the slot under a short lock; a superseded reader is
closed once its last borrower returns it.
"""

import time
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

import maxminddb

from ..errors import LoadError
from ..services.prometheus_metrics import prometheus_metrics
from .types import ALL_TYPES, DatabaseType

logger = logging.getLogger("geo.store")

Opener = Callable[[str], Any]


class DatabaseHandle:
    """Loaded reader for one database type"""

    def __init__(self, db_type: DatabaseType, path: Path, reader: Any, mtime: float):
        self.db_type = db_type
        self.path = path
        self.reader = reader
        self.mtime = mtime
        self.loaded_at = time.time()
        # Guarded by the owning store's lock
        self.refs = 0
        self.retired = False
        self.closed = False

    def get(self, ip: str) -> Optional[Dict[str, Any]]:
        return self.reader.get(ip)

    def close(self):
        try:
            self.reader.close()
        except Exception as e:
            logger.warning(f"Failed to close {self.db_type.value} reader: {e}")

    def __repr__(self) -> str:
        return f"<DatabaseHandle {self.db_type.value} {self.path} refs={self.refs}>"


class DatabaseStore:
    """Owns the published handle of every database type"""

    def __init__(self, opener: Optional[Opener] = None, data_dir: Optional[Path] = None):
        self._opener = opener or maxminddb.open_database
        self.data_dir = data_dir
        self._slots: Dict[DatabaseType, DatabaseHandle] = {}
        self._lock = threading.Lock()
        # One writer at a time per type
        self._writers = {t: threading.Lock() for t in ALL_TYPES}

    def get(self, db_type: DatabaseType) -> Optional[DatabaseHandle]:
        """Currently published handle, or None if never loaded"""
        return self._slots.get(db_type)

    @contextmanager
    def borrow(self, db_type: DatabaseType) -> Iterator[Optional[DatabaseHandle]]:
        """Hold the published handle for the duration of one query"""
        with self._lock:
            handle = self._slots.get(db_type)
            if handle is not None:
                handle.refs += 1
        try:
            yield handle
        finally:
            if handle is not None:
                with self._lock:
                    handle.refs -= 1
                    release = self._claim_release(handle)
                if release:
                    handle.close()

    def publish(self, db_type: DatabaseType, path) -> DatabaseHandle:
        """Load a reader from `path` and make it the published handle.

        Raises LoadError when the file cannot be opened; the previously
        published handle stays in place in that case.
        """
        path = Path(path)
        with self._writers[db_type]:
            try:
                mtime = path.stat().st_mtime
                reader = self._opener(str(path))
            except Exception as e:
                logger.error(f"Failed to load {db_type.value} database from {path}: {e}", extra={
                    "component": "geo.store",
                    "event": "load_failed",
                    "database": db_type.value,
                })
                raise LoadError(f"Could not load {db_type.value} database from {path}: {e}") from e

            handle = DatabaseHandle(db_type, path, reader, mtime)
            with self._lock:
                old = self._slots.get(db_type)
                self._slots[db_type] = handle
                release = False
                if old is not None:
                    old.retired = True
                    release = self._claim_release(old)
            if release:
                old.close()

        prometheus_metrics.set_database_loaded(db_type.value, True)
        prometheus_metrics.set_database_last_refresh(db_type.value, handle.loaded_at)
        logger.info(f"{db_type.value} database loaded successfully", extra={
            "component": "geo.store",
            "event": "loaded",
            "database": db_type.value,
            "db_path": str(path),
        })
        return handle

    def _claim_release(self, handle: DatabaseHandle) -> bool:
        # Caller holds self._lock
        if handle.retired and handle.refs == 0 and not handle.closed:
            handle.closed = True
            return True
        return False

    def loaded(self) -> Dict[DatabaseType, bool]:
        return {t: t in self._slots for t in ALL_TYPES}

    def any_loaded(self) -> bool:
        return bool(self._slots)

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per-type status for introspection endpoints"""
        out = {}
        for t in ALL_TYPES:
            handle = self._slots.get(t)
            out[t.value] = {
                "status": "Loaded" if handle else "Not loaded",
                "path": str(handle.path) if handle else None,
                "loaded_at": handle.loaded_at if handle else None,
            }
        return out

    def load_from_disk(self, types: Optional[Iterable[DatabaseType]] = None,
                       only_changed: bool = False) -> Dict[str, str]:
        """Publish canonical database files that exist on disk.

        With only_changed, files whose mtime matches the published handle are
        skipped. Returns an outcome per type: loaded, unchanged, missing or
        error.
        """
        results = {}
        for t in types or ALL_TYPES:
            path = t.canonical_path(self.data_dir)
            if not path.exists():
                if not only_changed:
                    logger.warning(f"{t.value} database not found at {path}")
                results[t.value] = "missing"
                continue

            current = self.get(t)
            if only_changed and current is not None and current.path == path:
                try:
                    if path.stat().st_mtime == current.mtime:
                        results[t.value] = "unchanged"
                        continue
                except OSError:
                    results[t.value] = "missing"
                    continue

            try:
                self.publish(t, path)
                results[t.value] = "loaded"
            except LoadError:
                results[t.value] = "error"
        return results

    def close(self):
        """Retire every handle; readers close once idle"""
        with self._lock:
            handles = list(self._slots.values())
            self._slots.clear()
            to_close = []
            for h in handles:
                h.retired = True
                if self._claim_release(h):
                    to_close.append(h)
        for h in to_close:
            h.close()
        for t in ALL_TYPES:
            prometheus_metrics.set_database_loaded(t.value, False)
