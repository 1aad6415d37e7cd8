"""
Runner Pool - In-memory Registration Backend

Stands in for GitHubClient. Holds a table of registered runners; issuing a
name that is already registered answers with RegistrationConflict, the way
GitHub answers 409.

Usage:
    backend = FakeRegistrationBackend()
    backend.add_runner("gha-runner-107")         # stale registration
    backend.issue("gha-runner-107", [...], 1)    # RegistrationConflict
"""

from __future__ import annotations

import itertools
from typing import Any

from core.errors import RegistrationConflict, RegistrationError


class FakeRegistrationBackend:

    def __init__(self):
        self.runners: dict[int, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.issue_errors: list[Exception] = []
        self.fail_delete: Exception | None = None
        self._ids = itertools.count(1)

    def add_runner(self, name: str, status: str = "offline") -> int:
        runner_id = next(self._ids)
        self.runners[runner_id] = {"id": runner_id, "name": name, "status": status}
        return runner_id

    def calls_for(self, operation: str) -> list[tuple]:
        return [args for op, args in self.calls if op == operation]

    def issue(self, name: str, labels: list[str], group_id: int) -> str:
        self.calls.append(("issue", (name, list(labels), group_id)))
        if self.issue_errors:
            raise self.issue_errors.pop(0)
        if any(r["name"] == name for r in self.runners.values()):
            raise RegistrationConflict("generate jitconfig", "Already exists", status_code=409)
        runner_id = self.add_runner(name)
        return f"jit-{name}-{runner_id}"

    def list_by_name(self, name: str) -> list[dict[str, Any]]:
        self.calls.append(("list_by_name", (name,)))
        # GitHub's name filter is not guaranteed exact; return prefix matches too
        return [dict(r) for r in self.runners.values() if r["name"].startswith(name)]

    def delete(self, runner_id: int) -> None:
        self.calls.append(("delete", (runner_id,)))
        if self.fail_delete is not None:
            raise self.fail_delete
        if runner_id not in self.runners:
            raise RegistrationError("delete runner", "Not Found", status_code=404)
        del self.runners[runner_id]
