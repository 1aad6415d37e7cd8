"""
Runner Pool - Error Taxonomy

Every failure the controller raises derives from RunnerPoolError so the
reconciliation loop and the HTTP layer can contain errors to one unit of
work (one member, one slot, one request).

    RunnerPoolError
    ├── ConfigurationError          fatal at startup
    ├── RemoteOperationError        hypervisor / registration call failed
    │   ├── HypervisorError
    │   │   └── DeadlineExceeded    task did not stop in time
    │   └── RegistrationError
    │       ├── RegistrationConflict
    │       └── ConflictRecoveryAmbiguous
    ├── AllocationExhausted         no free vmid in range
    └── TokenInvalid                provisioning token rejected
"""

from __future__ import annotations


class RunnerPoolError(Exception):
    """Base class for all controller errors."""


class ConfigurationError(RunnerPoolError):
    """Raised when settings are missing or invalid. Carries every problem found."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("invalid configuration: " + "; ".join(self.errors))


class RemoteOperationError(RunnerPoolError):
    """A call to a remote API failed."""

    def __init__(self, operation: str, detail: str = "", status_code: int | None = None):
        self.operation = operation
        self.detail = detail
        self.status_code = status_code
        message = operation
        if status_code is not None:
            message += f" (HTTP {status_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class HypervisorError(RemoteOperationError):
    """Proxmox API call failed, or a task finished unsuccessfully."""


class DeadlineExceeded(HypervisorError):
    """A hypervisor task did not reach a terminal state within its timeout."""

    def __init__(self, operation: str, timeout: float):
        self.timeout = timeout
        super().__init__(operation, f"not finished after {timeout:g}s")


class RegistrationError(RemoteOperationError):
    """GitHub runner registration API call failed."""


class RegistrationConflict(RegistrationError):
    """A runner with the requested name is already registered."""


class ConflictRecoveryAmbiguous(RegistrationError):
    """Conflict recovery found zero or several runners under one name."""

    def __init__(self, name: str, matches: int):
        self.name = name
        self.matches = matches
        super().__init__(
            "recover registration conflict",
            f"expected exactly one runner named {name!r}, found {matches}",
        )


class AllocationExhausted(RunnerPoolError):
    """Every vmid in the configured range is taken."""

    def __init__(self, min_id: int, max_id: int):
        self.min_id = min_id
        self.max_id = max_id
        super().__init__(f"no free vmid in range [{min_id}, {max_id}]")


class TokenInvalid(RunnerPoolError):
    """Provisioning token failed verification. Deliberately carries no detail."""

    def __init__(self):
        super().__init__("invalid provisioning token")
