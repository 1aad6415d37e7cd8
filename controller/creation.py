"""
Runner Pool - Creation Workflow

Turns one allocated vmid into a booting runner VM:

  1. clone the template into the pool, wait for the clone task
  2. mint a provisioning token for the runner name
  3. seed the NoCloud URL into smbios1 (base64=1, serial=...) and stamp
     meta ctime when the clone came without one
  4. issue the start task (not waited on)

Each step depends on the previous one. A failure abandons the slot; the
half-built VM is reclaimed later by the grace-period delete.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Callable

from controller.lifecycle import Hypervisor
from controller.properties import PropertyList
from controller.tokens import ProvisioningTokens
from core.config import PoolSettings
from core.logging import bind

logger = logging.getLogger("runner_pool.creation")


def nocloud_serial(seed_url: str) -> str:
    """SMBIOS serial telling cloud-init where its NoCloud seed lives (base64)."""
    return base64.b64encode(f"ds=nocloud;s={seed_url}".encode()).decode("ascii")


class CreationWorkflow:
    """Builds one runner VM per call to create()."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        tokens: ProvisioningTokens,
        settings: PoolSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.hypervisor = hypervisor
        self.tokens = tokens
        self.settings = settings
        self._clock = clock

    def create(self, vmid: int) -> str:
        """
        Clone, seed and start runner `vmid`. Returns the runner name.

        Errors from any step propagate; the caller decides whether the slot
        failure is fatal.
        """
        s = self.settings
        node = s.proxmox_node
        name = s.runner_name(vmid)
        log = bind(logger, node=node, vmid=vmid)

        log.info("cloning template", extra={
            "structured": {"template": s.proxmox_vmid, "full_clone": s.proxmox_full_clone},
        })
        upid = self.hypervisor.qemu_clone(
            node, s.proxmox_vmid, vmid, name,
            pool=s.proxmox_pool, full=s.proxmox_full_clone,
        )
        self.hypervisor.wait_task(node, upid, timeout=s.task_timeout_seconds)

        token = self.tokens.mint(name)
        config = self.hypervisor.qemu_config(node, vmid)
        changes = self.seed_changes(config, s.cloud_init_url(token))
        if changes:
            log.debug("writing virtual machine config", extra={
                "structured": {"keys": sorted(changes)},
            })
            self.hypervisor.qemu_set_config(node, vmid, changes)

        log.info("starting virtual machine")
        self.hypervisor.qemu_set_status(node, vmid, "start")
        return name

    def seed_changes(self, config: dict, seed_url: str) -> dict[str, str]:
        """Descriptors that differ from `config` after seeding; unchanged ones are left out."""
        changes: dict[str, str] = {}

        smbios = PropertyList.parse(config.get("smbios1"))
        seeded = smbios.merged({"base64": 1, "serial": nocloud_serial(seed_url)})
        if seeded != smbios or "smbios1" not in config:
            changes["smbios1"] = seeded.serialize()

        meta = PropertyList.parse(config.get("meta"))
        if meta.get_int("ctime", 0) <= 0:
            stamped = meta.merged({"ctime": int(self._clock())})
            changes["meta"] = stamped.serialize()

        return changes
