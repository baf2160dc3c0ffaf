"""
In-process refresh trigger: at most one refresh cycle at a time, with the
outcome of the last cycle kept for the status endpoint.
"""

import logging
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Dict, Iterable, Optional

from ..geo.refresh import RefreshPipeline
from ..geo.types import DatabaseType

logger = logging.getLogger("services.refresh_jobs")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class RefreshTrigger:
    def __init__(self, pipeline: RefreshPipeline):
        self.pipeline = pipeline
        self._lock = RLock()
        self._running = False
        self._started_at: Optional[str] = None
        self._finished_at: Optional[str] = None
        self._last: Optional[Dict[str, Any]] = None

    def try_start(self) -> bool:
        """Claim the single refresh slot; False if a cycle is running"""
        with self._lock:
            if self._running:
                return False
            self._running = True
            self._started_at = _now()
            return True

    def run(self, types: Optional[Iterable[DatabaseType]] = None):
        """Run a claimed cycle to completion and record its report"""
        try:
            report = self.pipeline.refresh(types)
            summary = report.to_dict()
        except Exception as e:
            logger.exception("Refresh cycle crashed")
            summary = {"status": "failed", "databases": [], "error": str(e)}
        with self._lock:
            self._last = summary
            self._finished_at = _now()
            self._running = False
        return summary

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "running": self._running,
                "started_at": self._started_at,
                "finished_at": self._finished_at,
                "last_cycle": self._last,
            }
