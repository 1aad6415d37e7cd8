"""
Runner Pool - Secrets

Resolves secrets from the environment, either directly or through a
mounted file:

  1. In-memory cache
  2. Environment variable NAME
  3. File whose path is in NAME_FILE (Docker / Kubernetes secret mounts)

Secrets are NEVER logged or exposed through the HTTP surface.

Usage:
    from core.secrets import SecretStore, read_private_key

    store = SecretStore()
    store.get("JWT_SECRET")
    pem = read_private_key("/run/secrets/github-app.pem")
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Mapping

from core.errors import ConfigurationError

logger = logging.getLogger("runner_pool.secrets")


class SecretStore:
    """Thread-safe secrets lookup with env var + file fallback."""

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = os.environ if environ is None else environ
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, name: str, default: str = "") -> str:
        """Get a secret by name. Returns default when it is set nowhere."""
        with self._lock:
            if name in self._cache:
                return self._cache[name]

        value = self._environ.get(name, "")
        if not value:
            value = self._read_file(name)
        if not value:
            return default

        with self._lock:
            self._cache[name] = value
        return value

    def _read_file(self, name: str) -> str:
        path = self._environ.get(f"{name}_FILE", "")
        if not path:
            return ""
        try:
            with open(path) as f:
                value = f.read().strip()
        except OSError as e:
            raise ConfigurationError([f"{name}_FILE cannot be read: {e.strerror}"]) from e
        logger.debug("Secret %s loaded from file", name)
        return value


def read_private_key(path: str) -> str:
    """Read a PEM private key. Raises ConfigurationError if unreadable or not PEM."""
    try:
        with open(path) as f:
            pem = f.read()
    except OSError as e:
        raise ConfigurationError([f"GITHUB_PRIVATE_KEY cannot be read: {e.strerror}"]) from e
    if "PRIVATE KEY-----" not in pem:
        raise ConfigurationError(["GITHUB_PRIVATE_KEY is not a PEM encoded private key"])
    return pem
