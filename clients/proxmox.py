"""
Runner Pool - Proxmox VE Client

Thin synchronous client over the Proxmox VE REST API (httpx). Only the calls
the controller needs: pool listing, qemu config read/write, clone, status
change, delete, and task polling.

Every mutating call returns a task UPID; wait_task() polls it until the task
stops, bounded by a timeout.

Usage:
    from clients.proxmox import ProxmoxClient

    pve = ProxmoxClient("https://pve.example:8006/api2/json", "root@pam!ci=...")
    upid = pve.qemu_set_status("pve1", 105, "stop")
    pve.wait_task("pve1", upid, timeout=300)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from core.errors import DeadlineExceeded, HypervisorError

logger = logging.getLogger("runner_pool.proxmox")


class ProxmoxClient:
    """Proxmox VE API client authenticated with an API token."""

    def __init__(
        self,
        url: str,
        token: str,
        insecure_tls: bool = False,
        timeout: float = 30.0,
        task_timeout: float = 300.0,
        poll_interval: float = 1.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.task_timeout = task_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep_fn
        self._client = httpx.Client(
            base_url=url.rstrip("/"),
            headers={"Authorization": f"PVEAPIToken={token}"},
            verify=not insecure_tls,
            follow_redirects=False,
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """Send one API request and unwrap the {"data": ...} envelope."""
        form = None
        if data is not None:
            # PVE takes form-urlencoded bodies; booleans as 0/1
            form = {k: int(v) if isinstance(v, bool) else v for k, v in data.items() if v is not None}
        try:
            response = self._client.request(method, path, params=params, data=form)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise HypervisorError(
                operation, e.response.text[:200], status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise HypervisorError(operation, str(e)) from e
        try:
            return response.json().get("data")
        except ValueError as e:
            raise HypervisorError(operation, "response is not JSON") from e

    # ── Pools ─────────────────────────────────────────────────

    def list_pool_members(self, pool: str, type: str = "qemu") -> list[dict[str, Any]]:
        """Members of a resource pool: [{"vmid", "node", "status", "name", ...}]."""
        pools = self._request(
            f"list pool {pool}", "GET", "/pools", params={"poolid": pool, "type": type},
        ) or []
        if not pools:
            return []
        return list(pools[0].get("members") or [])

    # ── Tasks ─────────────────────────────────────────────────

    def task_status(self, node: str, upid: str) -> dict[str, Any]:
        return self._request(
            f"task status {upid}", "GET", f"/nodes/{node}/tasks/{upid}/status",
        ) or {}

    def wait_task(self, node: str, upid: str, timeout: float | None = None) -> dict[str, Any]:
        """
        Poll a task until it stops.

        Raises:
            DeadlineExceeded: task still running after `timeout` seconds
            HypervisorError: task stopped with an exit status other than OK
        """
        timeout = self.task_timeout if timeout is None else timeout
        deadline = self._clock() + timeout

        while True:
            status = self.task_status(node, upid)
            if status.get("status") == "stopped":
                exit_status = str(status.get("exitstatus", ""))
                if exit_status != "OK" and not exit_status.startswith("WARNINGS"):
                    raise HypervisorError(f"task {upid}", f"exit status {exit_status or 'unknown'}")
                return status
            if self._clock() >= deadline:
                raise DeadlineExceeded(f"task {upid}", timeout)
            self._sleep(self.poll_interval)

    # ── QEMU ──────────────────────────────────────────────────

    def qemu_clone(
        self,
        node: str,
        vmid: int,
        newid: int,
        name: str,
        pool: str | None = None,
        full: bool = False,
    ) -> str:
        return self._request(
            f"clone {vmid} to {newid}", "POST", f"/nodes/{node}/qemu/{vmid}/clone",
            data={"newid": newid, "name": name, "pool": pool or None, "full": full},
        )

    def qemu_config(self, node: str, vmid: int) -> dict[str, Any]:
        return self._request(
            f"read config of {vmid}", "GET", f"/nodes/{node}/qemu/{vmid}/config",
        ) or {}

    def qemu_set_config(self, node: str, vmid: int, changes: dict[str, Any]) -> Any:
        return self._request(
            f"write config of {vmid}", "PUT", f"/nodes/{node}/qemu/{vmid}/config",
            data=changes,
        )

    def qemu_set_status(self, node: str, vmid: int, status: str) -> str:
        return self._request(
            f"{status} {vmid}", "POST", f"/nodes/{node}/qemu/{vmid}/status/{status}",
        )

    def qemu_delete(self, node: str, vmid: int, purge: bool = True,
                    destroy_unreferenced_disks: bool = True) -> str:
        return self._request(
            f"delete {vmid}", "DELETE", f"/nodes/{node}/qemu/{vmid}",
            params={
                "purge": int(purge),
                "destroy-unreferenced-disks": int(destroy_unreferenced_disks),
            },
        )
