"""
Runner Pool - Runner Registration Protocol

Issues a one-time runner credential (GitHub JIT config) for a runner name,
recovering once from a stale registration left under the same name.

A stale registration appears when a VM is destroyed before its runner
deregistered itself (e.g. reclaimed mid-boot by the grace-period delete).

Protocol (at most two issue calls per invocation):
  1. issue(name)
  2. on RegistrationConflict:
       list_by_name(name), keep exact name matches
       exactly one  -> delete it, issue(name) once more
       otherwise    -> ConflictRecoveryAmbiguous, nothing deleted
  3. anything else, or any failure after recovery, propagates
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from core.errors import ConflictRecoveryAmbiguous, RegistrationConflict, RegistrationError
from core.logging import bind

logger = logging.getLogger("runner_pool.registration")


class RegistrationBackend(Protocol):
    """The registration calls the protocol depends on (see clients.github)."""

    def issue(self, name: str, labels: list[str], group_id: int) -> str: ...

    def list_by_name(self, name: str) -> list[dict[str, Any]]: ...

    def delete(self, runner_id: int) -> None: ...


def runner_labels(labels: list[str]) -> list[str]:
    """Label set sent to GitHub: always prefixed with self-hosted."""
    return ["self-hosted", *[label for label in labels if label != "self-hosted"]]


def register_worker(
    backend: RegistrationBackend,
    name: str,
    labels: list[str],
    group_id: int,
) -> str:
    """Return a fresh one-time credential for `name`."""
    log = bind(logger, runner=name)

    try:
        log.debug("issuing runner credential")
        return backend.issue(name, labels, group_id)
    except RegistrationConflict:
        log.info("runner name already registered, recovering stale registration")

    matches = [r for r in backend.list_by_name(name) if r.get("name") == name]
    if len(matches) != 1:
        log.error("cannot recover registration conflict", extra={
            "structured": {"matches": len(matches)},
        })
        raise ConflictRecoveryAmbiguous(name, len(matches))

    stale_id = matches[0].get("id")
    if not isinstance(stale_id, int):
        raise RegistrationError("recover registration conflict", "runner record has no id")
    log.info("deleting stale runner registration", extra={
        "structured": {"runner_id": stale_id},
    })
    backend.delete(stale_id)

    log.debug("issuing runner credential after recovery")
    return backend.issue(name, labels, group_id)
