"""
Runner Pool - Reconciliation Loop

Drives the fleet toward `minimum_runners` live runners, one pass at a time:

  1. list the pool, keep members on our node inside [min_vmid, max_vmid]
  2. evaluate every member in ascending vmid order (stop / delete)
  3. deficit = minimum_runners - members still present; allocate and
     create that many VMs sequentially
  4. sleep reconcile_interval_seconds, repeat until stopped

A pass never kills the loop: anything escaping it is logged and the next
pass runs after the usual sleep. Creation slots are always isolated from
one another; member failures are isolated when isolate_member_failures is
set, otherwise the first one aborts the rest of the pass.

Usage:
    from controller.reconciler import Reconciler

    reconciler = Reconciler(settings, hypervisor, creation)
    report = reconciler.run_pass()           # one pass, errors propagate
    reconciler.start()                       # background daemon thread
    reconciler.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from controller.allocator import allocate_vmid
from controller.creation import CreationWorkflow
from controller.lifecycle import Hypervisor, LifecycleEngine, MemberState
from core.config import PoolSettings
from core.errors import AllocationExhausted
from core.logging import bind

logger = logging.getLogger("runner_pool.reconciler")


# ═══════════════════════════════════════════════════════════════════
# Pass-local State
# ═══════════════════════════════════════════════════════════════════

@dataclass
class PassSnapshot:
    """State owned by a single pass. Nothing here outlives the pass."""
    now: float
    # vmids still present after evaluation (deleted members excluded)
    members: set[int] = field(default_factory=set)
    # vmids handed out to creation slots during this pass
    reserved: set[int] = field(default_factory=set)

    @property
    def taken(self) -> set[int]:
        return self.members | self.reserved


@dataclass
class PassReport:
    """What one pass observed and did."""
    observed: int = 0
    stopped: list[int] = field(default_factory=list)
    deleted: list[int] = field(default_factory=list)
    created: list[int] = field(default_factory=list)
    member_failures: list[int] = field(default_factory=list)
    slot_failures: list[int] = field(default_factory=list)
    exhausted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "observed": self.observed,
            "stopped": self.stopped,
            "deleted": self.deleted,
            "created": self.created,
            "member_failures": self.member_failures,
            "slot_failures": self.slot_failures,
            "exhausted": self.exhausted,
        }


# ═══════════════════════════════════════════════════════════════════
# Reconciler
# ═══════════════════════════════════════════════════════════════════

class Reconciler:

    def __init__(
        self,
        settings: PoolSettings,
        hypervisor: Hypervisor,
        creation: CreationWorkflow,
        lifecycle: LifecycleEngine | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.hypervisor = hypervisor
        self.creation = creation
        self.lifecycle = lifecycle or LifecycleEngine(
            hypervisor,
            max_age_seconds=settings.max_age_seconds,
            stop_grace_seconds=settings.stop_grace_seconds,
            task_timeout=settings.task_timeout_seconds,
        )
        self._clock = clock

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        # Outcome of the most recent pass, read by the readiness probe
        self.passes = 0
        self.last_pass_at: float | None = None
        self.last_pass_ok = False
        self.last_error = ""
        self.last_report: PassReport | None = None

    # ─── Single pass ──────────────────────────────────────────────

    def fetch_members(self) -> list[dict[str, Any]]:
        """Pool members on our node inside the managed vmid window, by vmid."""
        s = self.settings
        summaries = self.hypervisor.list_pool_members(s.proxmox_pool)
        members = [
            m for m in summaries
            if m.get("node") == s.proxmox_node
            and s.proxmox_min_vmid <= int(m.get("vmid", -1)) <= s.proxmox_max_vmid
        ]
        return sorted(members, key=lambda m: int(m["vmid"]))

    def run_pass(self, now: float | None = None) -> PassReport:
        """
        Run one reconciliation pass and return its report.

        Errors that are not isolated (listing failures, member failures with
        isolation off) propagate to the caller.
        """
        s = self.settings
        snapshot = PassSnapshot(now=self._clock() if now is None else now)
        summaries = self.fetch_members()
        report = PassReport(observed=len(summaries))

        for summary in summaries:
            vmid = int(summary["vmid"])
            try:
                member = self.lifecycle.observe(summary)
                initial = member.state
                final = self.lifecycle.evaluate(member, snapshot.now)
            except Exception:
                if not s.isolate_member_failures:
                    raise
                bind(logger, node=summary.get("node"), vmid=vmid).exception(
                    "failed to evaluate virtual machine"
                )
                report.member_failures.append(vmid)
                snapshot.members.add(vmid)
                continue

            if initial is MemberState.RUNNING and final is not MemberState.RUNNING:
                report.stopped.append(vmid)
            if final is MemberState.ABSENT:
                report.deleted.append(vmid)
                continue
            snapshot.members.add(vmid)

        deficit = max(0, s.minimum_runners - len(snapshot.members))
        if deficit:
            logger.info("runner pool below minimum", extra={
                "structured": {
                    "present": len(snapshot.members),
                    "minimum": s.minimum_runners,
                    "deficit": deficit,
                },
            })

        for _ in range(deficit):
            try:
                vmid = allocate_vmid(snapshot.taken, s.proxmox_min_vmid, s.proxmox_max_vmid)
            except AllocationExhausted as e:
                logger.error("no free vmid, skipping remaining creations", extra={
                    "structured": {"min_vmid": e.min_id, "max_vmid": e.max_id},
                })
                report.exhausted = True
                break

            snapshot.reserved.add(vmid)
            try:
                self.creation.create(vmid)
                report.created.append(vmid)
            except Exception:
                bind(logger, node=s.proxmox_node, vmid=vmid).exception(
                    "failed to create virtual machine"
                )
                report.slot_failures.append(vmid)

        logger.debug("reconciliation pass finished", extra={"structured": report.to_dict()})
        return report

    def run_once(self) -> PassReport | None:
        """One pass behind the pass boundary: never raises, records the outcome."""
        started = self._clock()
        try:
            report = self.run_pass(now=started)
        except Exception as e:
            logger.exception("reconciliation pass failed")
            self._record(started, ok=False, error=f"{type(e).__name__}: {e}")
            return None
        self._record(started, ok=not (report.member_failures or report.slot_failures),
                     report=report)
        return report

    def _record(self, at: float, ok: bool, error: str = "",
                report: PassReport | None = None) -> None:
        with self._lock:
            self.passes += 1
            self.last_pass_at = at
            self.last_pass_ok = ok
            self.last_error = error
            self.last_report = report

    # ─── Loop & thread ────────────────────────────────────────────

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        stop_event = stop_event or self._stop
        interval = self.settings.reconcile_interval_seconds
        logger.info("reconciliation loop started", extra={
            "structured": {"interval_seconds": interval},
        })
        while not stop_event.is_set():
            self.run_once()
            stop_event.wait(interval)
        logger.info("reconciliation loop stopped")

    def start(self) -> threading.Thread:
        """Run the loop in a daemon thread."""
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever, args=(self._stop,),
            name="reconciler", daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        """Ask the loop to exit at the next pass boundary and wait for it."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    # ─── Readiness ────────────────────────────────────────────────

    def health_check(self) -> tuple[bool, str]:
        with self._lock:
            if not self.passes:
                return False, "no reconciliation pass completed yet"
            if not self.last_pass_ok:
                if self.last_error:
                    return False, self.last_error
                report = self.last_report
                return False, (
                    f"{len(report.member_failures)} member and "
                    f"{len(report.slot_failures)} creation failures"
                )
            return True, f"{self.passes} passes, last at {self.last_pass_at:.0f}"
