"""
Runner Pool - Provisioning Tokens

Short-lived HS256 JWTs binding one runner name to an expiry. The token is
minted when a VM is created, travels inside the VM's SMBIOS serial and is
presented back on /cloud-init/{token}/user-data.

Single claim, single algorithm, single shared secret. Consumption is not
tracked: a still-valid token can be presented again.
"""

from __future__ import annotations

import time
from typing import Callable

import jwt

from core.errors import TokenInvalid

ALGORITHM = "HS256"


class ProvisioningTokens:
    """Mint and verify provisioning tokens."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def mint(self, name: str) -> str:
        now = int(self._clock())
        payload = {"name": name, "iat": now, "exp": now + self.ttl_seconds}
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> str:
        """
        Return the runner name bound to `token`.

        Raises TokenInvalid for a bad signature, an expired token, a malformed
        token or a missing name claim, without saying which.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "name"]},
            )
        except jwt.PyJWTError as e:
            raise TokenInvalid() from e

        name = claims.get("name")
        if not isinstance(name, str) or not name:
            raise TokenInvalid()
        return name
