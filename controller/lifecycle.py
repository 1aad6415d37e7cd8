"""
Runner Pool - Member Lifecycle

Per-member state machine evaluated once per reconciliation pass:

    RUNNING ──(age >= max_age)──► STOPPING ──► STOPPED
    STOPPED ──(age >= grace)────► DELETING ──► ABSENT

A VM that powered itself off after its one job looks exactly like one that
never finished booting; both are reclaimed once the grace period has passed.

The creation time is the `ctime` key of the VM's own `meta` descriptor.
Missing or unparseable ctime reads as 0, i.e. maximally old, so malformed
members get reclaimed rather than leaked.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from controller.properties import PropertyList
from core.logging import bind

logger = logging.getLogger("runner_pool.lifecycle")


class Hypervisor(Protocol):
    """The hypervisor calls the controller depends on (see clients.proxmox)."""

    def list_pool_members(self, pool: str, type: str = "qemu") -> list[dict[str, Any]]: ...

    def qemu_config(self, node: str, vmid: int) -> dict[str, Any]: ...

    def qemu_set_config(self, node: str, vmid: int, changes: dict[str, Any]) -> Any: ...

    def qemu_set_status(self, node: str, vmid: int, status: str) -> str: ...

    def qemu_clone(self, node: str, vmid: int, newid: int, name: str,
                   pool: str | None = None, full: bool = False) -> str: ...

    def qemu_delete(self, node: str, vmid: int) -> str: ...

    def wait_task(self, node: str, upid: str, timeout: float | None = None) -> dict[str, Any]: ...


class MemberState(str, enum.Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DELETING = "deleting"
    ABSENT = "absent"
    # Reported in a status the engine does not act on (paused, suspended, ...)
    OTHER = "other"


@dataclass
class FleetMember:
    """One observed VM inside the managed node / vmid window."""
    vmid: int
    node: str
    status: str
    created_at: int = 0
    name: str = ""

    @property
    def state(self) -> MemberState:
        if self.status == "running":
            return MemberState.RUNNING
        if self.status == "stopped":
            return MemberState.STOPPED
        return MemberState.OTHER

    def age(self, now: float) -> float:
        return now - self.created_at


def creation_time(config: dict[str, Any]) -> int:
    """ctime from a qemu config's meta descriptor, 0 when absent or malformed."""
    return PropertyList.parse(config.get("meta")).get_int("ctime", 0)


class LifecycleEngine:
    """Applies the stop / delete transitions to one member at a time."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        max_age_seconds: int = 1200,
        stop_grace_seconds: int = 120,
        task_timeout: float | None = None,
    ):
        self.hypervisor = hypervisor
        self.max_age_seconds = max_age_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.task_timeout = task_timeout

    def observe(self, summary: dict[str, Any]) -> FleetMember:
        """Build a FleetMember from a pool listing entry plus its config read."""
        vmid = int(summary["vmid"])
        node = summary["node"]
        config = self.hypervisor.qemu_config(node, vmid)
        return FleetMember(
            vmid=vmid,
            node=node,
            status=summary.get("status", ""),
            created_at=creation_time(config),
            name=summary.get("name", ""),
        )

    def evaluate(self, member: FleetMember, now: float) -> MemberState:
        """
        Run this pass's transitions for `member` and return its final state.

        Every issued task is waited on before returning. Hypervisor errors,
        DeadlineExceeded included, propagate to the caller.
        """
        log = bind(logger, node=member.node, vmid=member.vmid)
        age = member.age(now)
        state = member.state

        if state is MemberState.RUNNING and 0 < self.max_age_seconds <= age:
            log.info("stopping virtual machine because of old age", extra={
                "structured": {"age_seconds": int(age), "state": MemberState.STOPPING.value},
            })
            upid = self.hypervisor.qemu_set_status(member.node, member.vmid, "stop")
            self.hypervisor.wait_task(member.node, upid, timeout=self.task_timeout)
            member.status = "stopped"
            state = MemberState.STOPPED

        if state is MemberState.STOPPED and age >= self.stop_grace_seconds:
            log.info("deleting stopped virtual machine", extra={
                "structured": {"age_seconds": int(age), "state": MemberState.DELETING.value},
            })
            upid = self.hypervisor.qemu_delete(member.node, member.vmid)
            self.hypervisor.wait_task(member.node, upid, timeout=self.task_timeout)
            return MemberState.ABSENT

        if state is MemberState.OTHER:
            log.debug("leaving virtual machine alone", extra={
                "structured": {"status": member.status},
            })
        return state
