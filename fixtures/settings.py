"""
Runner Pool - Test Settings

A complete, valid settings mapping for controller and API tests.

Usage:
    settings = make_settings(minimum_runners=1, proxmox_max_vmid=110)
"""

from __future__ import annotations

from typing import Any

from core.config import PoolSettings

BASE_SETTINGS: dict[str, Any] = {
    "port": 8080,
    "public_url": "http://10.0.0.2:8080",
    "jwt_secret": "test-signing-secret-with-enough-bytes",
    "github_client_id": "Iv1.test",
    "github_installation_id": 42,
    "github_private_key": "/dev/null",
    "github_organization": "example-org",
    "github_runner_group_id": 1,
    "proxmox_url": "https://pve.test:8006/api2/json",
    "proxmox_token": "root@pam!runner=secret",
    "proxmox_node": "pve1",
    "proxmox_pool": "gha",
    "proxmox_vmid": 9000,
    "proxmox_min_vmid": 100,
    "proxmox_max_vmid": 110,
    "labels": "linux,x64",
    "minimum_runners": 1,
}


def make_settings(**overrides: Any) -> PoolSettings:
    return PoolSettings.from_mapping({**BASE_SETTINGS, **overrides})
