"""
Runner Pool - In-memory Hypervisor

Stands in for ProxmoxClient in controller tests. Keeps a small VM table,
records every call, and lets a test inject failures per operation / vmid
or make a task never finish.

Usage:
    from fixtures.hypervisor import FakeHypervisor

    hv = FakeHypervisor(node="pve1", pool="gha")
    hv.add_vm(105, status="stopped", ctime=0)
    hv.fail("qemu_delete", vmid=105, error=HypervisorError("delete"))
    hv.hang("qemu_set_status")                   # wait_task raises DeadlineExceeded
    hv.calls_for("qemu_clone")                   # [(node, template, newid, ...)]
"""

from __future__ import annotations

import itertools
from typing import Any

from core.errors import DeadlineExceeded, HypervisorError


class FakeHypervisor:

    def __init__(
        self,
        node: str = "pve1",
        pool: str = "gha",
        template_vmid: int = 9000,
        template_config: dict[str, Any] | None = None,
    ):
        self.node = node
        self.pool = pool
        self.vms: dict[int, dict[str, Any]] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple]] = []
        self._failures: dict[tuple[str, int | None], Exception] = {}
        self._hanging: set[str] = set()
        self._upids = itertools.count(1)

        self.vms[template_vmid] = {
            "node": node,
            "pool": None,
            "status": "stopped",
            "name": "runner-template",
            "config": dict(template_config or {
                "smbios1": "uuid=00000000-0000-4000-8000-000000009000",
                "meta": "creation-qemu=8.1.2,ctime=1600000000",
            }),
        }

    # ─── Test setup ───────────────────────────────────────────────

    def add_vm(
        self,
        vmid: int,
        status: str = "running",
        ctime: int | None = None,
        node: str | None = None,
        pool: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        config = dict(config or {})
        if ctime is not None:
            config.setdefault("meta", f"creation-qemu=8.1.2,ctime={ctime}")
        self.vms[vmid] = {
            "node": node or self.node,
            "pool": pool or self.pool,
            "status": status,
            "name": f"vm-{vmid}",
            "config": config,
        }

    def fail(self, operation: str, vmid: int | None = None,
             error: Exception | None = None) -> None:
        """Make `operation` raise (for one vmid, or for every vmid when None)."""
        self._failures[(operation, vmid)] = error or HypervisorError(operation, "injected")

    def hang(self, operation: str) -> None:
        """Tasks issued by `operation` never stop: wait_task raises DeadlineExceeded."""
        self._hanging.add(operation)

    def calls_for(self, operation: str) -> list[tuple]:
        return [args for op, args in self.calls if op == operation]

    # ─── Internals ────────────────────────────────────────────────

    def _call(self, operation: str, vmid: int | None, *args: Any) -> None:
        self.calls.append((operation, args))
        error = self._failures.get((operation, vmid)) or self._failures.get((operation, None))
        if error is not None:
            raise error

    def _vm(self, node: str, vmid: int) -> dict[str, Any]:
        vm = self.vms.get(vmid)
        if vm is None or vm["node"] != node:
            raise HypervisorError("lookup virtual machine", f"no VM {vmid} on {node}",
                                  status_code=500)
        return vm

    def _task(self, node: str, operation: str, vmid: int) -> str:
        upid = f"UPID:{node}:{next(self._upids):08X}:{operation}:{vmid}:"
        self.tasks[upid] = {"node": node, "operation": operation, "vmid": vmid}
        return upid

    # ─── Hypervisor interface ─────────────────────────────────────

    def list_pool_members(self, pool: str, type: str = "qemu") -> list[dict[str, Any]]:
        self._call("list_pool_members", None, pool, type)
        return [
            {"vmid": vmid, "node": vm["node"], "status": vm["status"],
             "name": vm["name"], "type": "qemu", "id": f"qemu/{vmid}"}
            for vmid, vm in sorted(self.vms.items())
            if vm["pool"] == pool
        ]

    def qemu_config(self, node: str, vmid: int) -> dict[str, Any]:
        self._call("qemu_config", vmid, node, vmid)
        return dict(self._vm(node, vmid)["config"])

    def qemu_set_config(self, node: str, vmid: int, changes: dict[str, Any]) -> None:
        self._call("qemu_set_config", vmid, node, vmid, dict(changes))
        self._vm(node, vmid)["config"].update(changes)

    def qemu_set_status(self, node: str, vmid: int, status: str) -> str:
        self._call("qemu_set_status", vmid, node, vmid, status)
        vm = self._vm(node, vmid)
        vm["status"] = "running" if status == "start" else "stopped"
        return self._task(node, "qemu_set_status", vmid)

    def qemu_clone(self, node: str, vmid: int, newid: int, name: str,
                   pool: str | None = None, full: bool = False) -> str:
        self._call("qemu_clone", newid, node, vmid, newid, name, pool, full)
        template = self._vm(node, vmid)
        if newid in self.vms:
            raise HypervisorError("clone virtual machine", f"VM {newid} already exists",
                                  status_code=500)
        config = {k: v for k, v in template["config"].items() if k != "meta"}
        self.vms[newid] = {
            "node": node, "pool": pool, "status": "stopped", "name": name, "config": config,
        }
        return self._task(node, "qemu_clone", newid)

    def qemu_delete(self, node: str, vmid: int) -> str:
        self._call("qemu_delete", vmid, node, vmid)
        self._vm(node, vmid)
        del self.vms[vmid]
        return self._task(node, "qemu_delete", vmid)

    def task_status(self, node: str, upid: str) -> dict[str, Any]:
        return {"status": "stopped", "exitstatus": "OK", "upid": upid, "node": node}

    def wait_task(self, node: str, upid: str, timeout: float | None = None) -> dict[str, Any]:
        self.calls.append(("wait_task", (node, upid, timeout)))
        task = self.tasks[upid]
        if task["operation"] in self._hanging:
            raise DeadlineExceeded(f"wait for task {upid}", timeout or 0)
        return self.task_status(node, upid)
