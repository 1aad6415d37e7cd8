"""
Runner Pool - Probes

  /health  answers while the process serves requests
  /ready   every registered readiness check passes

Readiness checks are plain callables returning (ok, detail). The reconciler
registers one reporting the outcome of its last pass.

Usage:
    from core.health import HealthChecker

    checker = HealthChecker()
    checker.register("reconciler", reconciler.health_check)
    checker.check_ready()
    # {"status": "fail", "checks": {"reconciler": {"status": "fail",
    #   "detail": "no reconciliation pass completed yet"}}, "timestamp": "..."}
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger("runner_pool.health")

ReadinessCheck = Callable[[], tuple[bool, str]]


class HealthChecker:

    def __init__(self, clock: Callable[[], float] = time.time):
        self._checks: dict[str, ReadinessCheck] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def register(self, name: str, check: ReadinessCheck) -> None:
        with self._lock:
            self._checks[name] = check

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    def check_health(self) -> dict[str, Any]:
        return {"status": "ok", "timestamp": self._timestamp()}

    def check_ready(self) -> dict[str, Any]:
        """Run every check; a check that raises counts as failed."""
        with self._lock:
            checks = list(self._checks.items())

        results: dict[str, dict[str, str]] = {}
        for name, check in checks:
            try:
                ok, detail = check()
            except Exception as e:
                logger.warning("readiness check %s raised", name, exc_info=True)
                ok, detail = False, f"{type(e).__name__}: {e}"
            results[name] = {"status": "ok" if ok else "fail", "detail": detail}

        ready = all(r["status"] == "ok" for r in results.values())
        return {
            "status": "ok" if ready else "fail",
            "checks": results,
            "timestamp": self._timestamp(),
        }
