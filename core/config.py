"""
Runner Pool - Configuration Loader

Three-tier configuration loading:
  1. Base YAML file (runner_pool.yaml, or RP_CONFIG / --config)
  2. Per-environment overlay file (config/{RP_ENV}.yaml merged over base)
  3. Environment variable overrides (PROXMOX_NODE, MINIMUM_RUNNERS, ...)

YAML keys are the lower-case form of the environment variable names:

    proxmox_node: pve1
    proxmox_min_vmid: 100
    proxmox_max_vmid: 110
    minimum_runners: 2

Usage:
    from core.config import load_settings

    settings = load_settings("runner_pool.yaml")   # raises ConfigurationError

Environment variables:
    RP_ENV          active profile (dev, staging, prod)
    RP_CONFIG_DIR   directory for overlay files (default: config/)
    RP_CONFIG       base config path (default: runner_pool.yaml)
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from core.errors import ConfigurationError
from core.secrets import SecretStore

logger = logging.getLogger("runner_pool.config")

LABELS_PATTERN = re.compile(r"^[a-z0-9_-]+(,[a-z0-9_-]+)*$", re.IGNORECASE)

# Settings read through the SecretStore (env var or {NAME}_FILE mount).
SECRET_KEYS = ("jwt_secret", "proxmox_token")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ═══════════════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PoolSettings:
    """Validated, immutable controller settings."""

    # HTTP surface
    port: int
    public_url: str
    jwt_secret: str = field(repr=False)

    # GitHub
    github_client_id: str
    github_installation_id: int
    github_private_key: str
    github_organization: str
    github_runner_group_id: int

    # Proxmox
    proxmox_url: str
    proxmox_token: str = field(repr=False)
    proxmox_node: str
    proxmox_pool: str
    proxmox_vmid: int
    proxmox_min_vmid: int
    proxmox_max_vmid: int

    # Pool shape
    labels: str
    minimum_runners: int

    host: str = "::"
    github_api_url: str = "https://api.github.com"
    proxmox_insecure_tls: bool = False
    proxmox_full_clone: bool = False
    max_age_seconds: int = 1200
    stop_grace_seconds: int = 120
    reconcile_interval_seconds: float = 5.0
    task_timeout_seconds: float = 300.0
    task_poll_interval_seconds: float = 1.0
    token_ttl_seconds: int = 300
    runner_name_prefix: str = "gha-runner-"
    # empty: the cloud-config bundled with the api package
    user_data_template: str = ""
    isolate_member_failures: bool = True
    log_level: str = "DEBUG"

    @property
    def label_list(self) -> list[str]:
        return [label for label in self.labels.split(",") if label]

    def runner_name(self, vmid: int) -> str:
        return f"{self.runner_name_prefix}{vmid}"

    def cloud_init_url(self, token: str) -> str:
        """NoCloud seed URL for one provisioning token (trailing slash required)."""
        return f"{self.public_url.rstrip('/')}/cloud-init/{token}/"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> PoolSettings:
        """
        Coerce and validate a flat mapping of lower-case keys.

        Raises ConfigurationError listing every problem, not just the first.
        """
        errors: list[str] = []
        values: dict[str, Any] = {}

        for key, (coerce, required, checks) in _FIELDS.items():
            raw_value = raw.get(key)
            if raw_value is None or raw_value == "":
                if required:
                    errors.append(f"{key.upper()} is required")
                continue
            try:
                value = coerce(raw_value)
            except (TypeError, ValueError):
                errors.append(f"{key.upper()} has an invalid value: {raw_value!r}")
                continue
            for check, message in checks:
                if not check(value):
                    errors.append(f"{key.upper()} {message}")
                    break
            else:
                values[key] = value

        if (
            "proxmox_min_vmid" in values
            and "proxmox_max_vmid" in values
            and values["proxmox_min_vmid"] > values["proxmox_max_vmid"]
        ):
            errors.append("PROXMOX_MIN_VMID must be less than or equal to PROXMOX_MAX_VMID")

        if errors:
            raise ConfigurationError(errors)
        return cls(**values)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(value)


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(value)
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(value)
    return int(str(value).strip()) if isinstance(value, str) else int(value)


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(value)
    return float(value)


def _to_str(value: Any) -> str:
    return str(value)


_non_negative = (lambda v: v >= 0, "must be non-negative")
_positive = (lambda v: v > 0, "must be positive")
_vmid = (lambda v: v >= 100, "must be at least 100")
_non_empty = (lambda v: v.strip() != "", "must not be empty")

# key -> (coerce, required, [(check, message), ...])
_FIELDS: dict[str, tuple[Callable[[Any], Any], bool, list]] = {
    "host": (_to_str, False, []),
    "port": (_to_int, True, [_non_negative, (lambda v: v < 2 ** 16, "must be below 65536")]),
    "public_url": (_to_str, True, [_non_empty]),
    "jwt_secret": (_to_str, True, [_non_empty]),
    "github_api_url": (_to_str, False, [_non_empty]),
    "github_client_id": (_to_str, True, [_non_empty]),
    "github_installation_id": (_to_int, True, [_non_negative]),
    "github_private_key": (_to_str, True, [_non_empty]),
    "github_organization": (_to_str, True, [_non_empty]),
    "github_runner_group_id": (_to_int, True, [_non_negative]),
    "proxmox_url": (_to_str, True, [_non_empty]),
    "proxmox_token": (_to_str, True, [_non_empty]),
    "proxmox_insecure_tls": (_to_bool, False, []),
    "proxmox_node": (_to_str, True, [_non_empty]),
    "proxmox_pool": (_to_str, True, [_non_empty]),
    "proxmox_vmid": (_to_int, True, [_vmid]),
    "proxmox_full_clone": (_to_bool, False, []),
    "proxmox_min_vmid": (_to_int, True, [_vmid]),
    "proxmox_max_vmid": (_to_int, True, [_vmid]),
    "labels": (_to_str, True, [(lambda v: bool(LABELS_PATTERN.match(v)),
                                "must be a comma separated list of [a-z0-9_-] labels")]),
    "minimum_runners": (_to_int, True, [_non_negative]),
    "max_age_seconds": (_to_int, False, [_non_negative]),
    "stop_grace_seconds": (_to_int, False, [_non_negative]),
    "reconcile_interval_seconds": (_to_float, False, [_positive]),
    "task_timeout_seconds": (_to_float, False, [_positive]),
    "task_poll_interval_seconds": (_to_float, False, [_positive]),
    "token_ttl_seconds": (_to_int, False, [_positive]),
    "runner_name_prefix": (_to_str, False, [_non_empty]),
    "user_data_template": (_to_str, False, []),
    "isolate_member_failures": (_to_bool, False, []),
    "log_level": (_to_str, False, [(lambda v: isinstance(logging.getLevelName(v.upper()), int),
                                    "must be a logging level name")]),
}


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError([f"cannot read config file {path}: {e}"]) from e
    if not isinstance(data, dict):
        raise ConfigurationError([f"config file {path} must contain a mapping"])
    return {str(k).lower(): v for k, v in data.items()}


def _load_overlay_file(
    env: str = "",
    config_dir: str = "",
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load per-environment overlay file config/{env}.yaml.
    Returns empty dict if no profile is active or the file is missing.
    """
    environ = os.environ if environ is None else environ
    env = env or environ.get("RP_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or environ.get("RP_CONFIG_DIR", "config")
    for path in (Path(config_dir) / f"{env}.yaml", Path(config_dir) / f"{env}.yml"):
        if path.exists():
            overlay = _load_yaml(path)
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(
    environ: Mapping[str, str] | None = None,
    secrets: SecretStore | None = None,
) -> dict[str, Any]:
    """
    Read every known setting from its upper-case environment variable.

    Secret settings also resolve from {NAME}_FILE through the SecretStore.
    Values stay strings; PoolSettings.from_mapping coerces them.
    """
    environ = os.environ if environ is None else environ
    secrets = secrets or SecretStore(environ=environ)
    overrides: dict[str, Any] = {}

    for key in _FIELDS:
        name = key.upper()
        if key in SECRET_KEYS:
            value = secrets.get(name)
            if value:
                overrides[key] = value
        elif name in environ:
            overrides[key] = environ[name]

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load the raw configuration mapping with three-tier merging.

    Priority (highest wins):
      1. Environment variables
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file
    """
    environ = os.environ if environ is None else environ
    base_path = base_path or environ.get("RP_CONFIG", "runner_pool.yaml")

    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        config = _load_yaml(Path(base_path))
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(env=env, config_dir=config_dir, environ=environ)
    if overlay:
        config = deep_merge(config, overlay)

    config = deep_merge(config, _load_env_overrides(environ))
    return config


def load_settings(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    environ: Mapping[str, str] | None = None,
) -> PoolSettings:
    """Load and validate settings. Raises ConfigurationError."""
    raw = load_config(base_path=base_path, env=env, config_dir=config_dir, environ=environ)
    return PoolSettings.from_mapping(raw)
