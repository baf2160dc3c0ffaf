"""
Refresh pipeline: download, extract, locate, install and publish the
database archive of each type.

Each type is refreshed independently; a failure for one type is recorded in
the cycle report and never stops the others.
"""

import os
import time
import shutil
import logging
import tarfile
import tempfile
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import maxminddb
import requests

from .. import config
from ..errors import (
    AmbiguousPayloadError,
    ExtractionError,
    GeoLookupError,
    LoadError,
    PayloadNotFoundError,
    TransferError,
)
from ..services.prometheus_metrics import prometheus_metrics
from .store import DatabaseStore
from .types import ALL_TYPES, DatabaseType

logger = logging.getLogger("geo.refresh")

CHUNK_SIZE = 64 * 1024


def redact_url(url: str) -> str:
    """Hide the license key in URLs before they reach logs or reports"""
    parts = urlsplit(url)
    query = [(k, "***" if k == "license_key" and v else v) for k, v in parse_qsl(parts.query, keep_blank_values=True)]
    return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass
class RefreshJob:
    """One refresh attempt for one database type"""
    db_type: DatabaseType
    source_url: str
    work_dir: Optional[Path] = None
    ok: bool = False
    reason: Optional[str] = None
    path: Optional[Path] = None
    started_at: float = field(default_factory=time.time)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database": self.db_type.value,
            "source": redact_url(self.source_url),
            "status": "success" if self.ok else "failed",
            "reason": self.reason,
            "path": str(self.path) if self.path else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RefreshReport:
    jobs: List[RefreshJob] = field(default_factory=list)

    @property
    def status(self) -> str:
        failed = sum(1 for j in self.jobs if not j.ok)
        if failed == 0:
            return "ok"
        if failed == len(self.jobs):
            return "failed"
        return "degraded"

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "databases": [j.to_dict() for j in self.jobs]}


def find_payload(root: Path, extension: str = config.PAYLOAD_EXTENSION,
                 max_depth: int = config.PAYLOAD_SEARCH_DEPTH) -> Path:
    """Depth-first search for the single payload file under `root`"""
    matches = []
    stack = [(Path(root), 0)]
    while stack:
        directory, depth = stack.pop()
        for entry in sorted(directory.iterdir()):
            if entry.is_symlink():
                continue
            if entry.is_dir():
                if depth < max_depth:
                    stack.append((entry, depth + 1))
            elif entry.name.endswith(extension):
                matches.append(entry)

    if not matches:
        raise PayloadNotFoundError(f"Could not find {extension} file in archive")
    if len(matches) > 1:
        names = ", ".join(str(m.relative_to(root)) for m in sorted(matches))
        raise AmbiguousPayloadError(f"Found {len(matches)} {extension} files in archive: {names}")
    return matches[0]


def _extract_tar(archive: Path, dest: Path):
    with tarfile.open(archive, "r:*") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(dest, filter="data")
            return
        root = dest.resolve()
        for member in tar.getmembers():
            target = (dest / member.name).resolve()
            if target != root and root not in target.parents:
                raise ExtractionError(f"Unsafe path in archive: {member.name}")
            if member.issym() or member.islnk():
                raise ExtractionError(f"Links are not allowed in archive: {member.name}")
        tar.extractall(dest)


def extract_archive(archive: Path, dest: Path):
    """Extract a tar(.gz) or zip archive into `dest`"""
    try:
        if zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(dest)
        else:
            _extract_tar(archive, dest)
    except ExtractionError:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
        raise ExtractionError(f"Could not extract {archive.name}: {e}") from e


class RefreshPipeline:
    """Brings every database type up to date from its remote source"""

    def __init__(self, store: Optional[DatabaseStore] = None, data_dir: Optional[Path] = None,
                 scratch_dir: Optional[Path] = None, license_key: Optional[str] = None,
                 timeout: Optional[int] = None, workers: Optional[int] = None,
                 search_depth: Optional[int] = None, session: Optional[requests.Session] = None,
                 opener: Optional[Callable[[str], Any]] = None):
        self.store = store
        self.data_dir = Path(data_dir or (store.data_dir if store and store.data_dir else config.DATA_DIR))
        if scratch_dir is None:
            # SCRATCH_DIR belongs to the configured DATA_DIR; any other data dir gets its own
            scratch_dir = config.SCRATCH_DIR if self.data_dir == config.DATA_DIR else self.data_dir / "tmp"
        self.scratch_dir = Path(scratch_dir)
        self.license_key = config.MAXMIND_LICENSE_KEY if license_key is None else license_key
        self.timeout = timeout or config.DOWNLOAD_TIMEOUT_SEC
        self.workers = max(1, workers or config.REFRESH_WORKERS)
        self.search_depth = config.PAYLOAD_SEARCH_DEPTH if search_depth is None else search_depth
        self.session = session or requests.Session()
        self.opener = opener or maxminddb.open_database
        self._type_locks = {t: threading.Lock() for t in ALL_TYPES}

    def refresh(self, types: Optional[Iterable[DatabaseType]] = None) -> RefreshReport:
        """Refresh the given types (all by default) and report per-type outcomes"""
        types = list(types or ALL_TYPES)
        logger.info("Starting database updates", extra={
            "component": "geo.refresh",
            "databases": [t.value for t in types],
        })

        jobs: Dict[DatabaseType, RefreshJob] = {}
        with ThreadPoolExecutor(max_workers=min(self.workers, len(types)) or 1) as pool:
            futures = {pool.submit(self.refresh_type, t): t for t in types}
            for future in as_completed(futures):
                jobs[futures[future]] = future.result()

        report = RefreshReport(jobs=[jobs[t] for t in types])
        log = logger.info if report.status == "ok" else logger.warning
        log(f"Database update cycle finished: {report.status}", extra={
            "component": "geo.refresh",
            "event": "cycle_finished",
            "status": report.status,
            "failed": [j.db_type.value for j in report.jobs if not j.ok],
        })
        return report

    def refresh_type(self, db_type: DatabaseType) -> RefreshJob:
        """Run one refresh attempt for `db_type`; never raises"""
        job = RefreshJob(db_type=db_type, source_url=db_type.source_url(self.license_key))
        with self._type_locks[db_type]:
            try:
                self._run(job)
                job.ok = True
                logger.info(f"{db_type.value} database updated successfully", extra={
                    "component": "geo.refresh",
                    "event": "updated",
                    "database": db_type.value,
                })
            except GeoLookupError as e:
                job.reason = f"{type(e).__name__}: {e}"
                logger.error(f"Error updating {db_type.value} database: {e}", extra={
                    "component": "geo.refresh",
                    "event": "update_failed",
                    "database": db_type.value,
                    "error_type": type(e).__name__,
                })
            except Exception as e:
                job.reason = f"InternalError: {e}"
                logger.exception(f"Unexpected error updating {db_type.value} database")
            finally:
                job.duration_ms = round((time.time() - job.started_at) * 1000, 2)

        prometheus_metrics.increment_refresh(db_type.value, "success" if job.ok else "failure")
        return job

    def _run(self, job: RefreshJob):
        db_type = job.db_type
        if not config.GEOIP_URLS.get(db_type.value) and not self.license_key:
            raise TransferError("MAXMIND_LICENSE_KEY is not set")

        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        fd, archive_name = tempfile.mkstemp(prefix=f"{db_type.value}-", suffix=".archive", dir=self.scratch_dir)
        os.close(fd)
        archive = Path(archive_name)
        job.work_dir = Path(tempfile.mkdtemp(prefix=f"{db_type.value}-", dir=self.scratch_dir))
        try:
            logger.info(f"Downloading {db_type.value} database...", extra={
                "component": "geo.refresh",
                "source": redact_url(job.source_url),
            })
            self._download(job.source_url, archive)

            logger.info(f"Extracting {db_type.value} database...")
            extract_archive(archive, job.work_dir)
            payload = find_payload(job.work_dir, max_depth=self.search_depth)

            job.path = self._install(db_type, payload)
        finally:
            archive.unlink(missing_ok=True)
            shutil.rmtree(job.work_dir, ignore_errors=True)

    def _download(self, url: str, dest: Path):
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with dest.open("wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as e:
            detail = str(e)
            if self.license_key:
                detail = detail.replace(self.license_key, "***")
            raise TransferError(f"Download failed from {redact_url(url)}: {detail}") from e
        except OSError as e:
            raise TransferError(f"Could not write archive {dest}: {e}") from e

    def _validate(self, path: Path):
        """Open and close the file to check it is a readable database"""
        try:
            reader = self.opener(str(path))
        except Exception as e:
            raise LoadError(f"Downloaded database is not readable: {e}") from e
        reader.close()

    def _stage_file(self, dest: Path, suffix: str) -> Path:
        """Create a uniquely named file next to `dest`, safe across processes"""
        fd, name = tempfile.mkstemp(prefix=f"{dest.name}.", suffix=suffix, dir=dest.parent)
        os.close(fd)
        os.chmod(name, 0o644)
        return Path(name)

    def _install(self, db_type: DatabaseType, payload: Path) -> Path:
        """Copy the payload to its canonical path and publish it"""
        dest = db_type.canonical_path(self.data_dir)
        dest.parent.mkdir(parents=True, exist_ok=True)
        staged = self._stage_file(dest, ".tmp")
        backup: Optional[Path] = None
        try:
            shutil.copyfile(payload, staged)
            if self.store is None:
                self._validate(staged)

            if dest.exists():
                backup = self._stage_file(dest, ".prev")
                shutil.copy2(dest, backup)
            os.replace(staged, dest)

            if self.store is not None:
                try:
                    self.store.publish(db_type, dest)
                except LoadError:
                    # Put the last good file back so a restart still loads it
                    if backup is not None:
                        os.replace(backup, dest)
                    else:
                        dest.unlink(missing_ok=True)
                    raise
        finally:
            staged.unlink(missing_ok=True)
            if backup is not None:
                backup.unlink(missing_ok=True)
        return dest
