"""Error taxonomy for the network control plane.

Every error has a stable ``code`` and a human-readable ``message`` that are
safe to hand to callers. ``details`` holds internal context (tool stderr,
wrapped exception text) for logs only and is never part of ``to_dict()``.
"""

from __future__ import annotations

from typing import Any


class NetplaneError(Exception):
    """Base class for all control plane errors."""

    error_type = "internal"
    default_code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, code: str | None = None, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details
        # Set by the orchestrator when the error ends an action
        self.action_result: Any = None

    def to_dict(self) -> dict[str, str]:
        return {"type": self.error_type, "code": self.code, "message": self.message}

    def __str__(self) -> str:
        return self.message


class ValidationError(NetplaneError):
    """Malformed or out-of-policy input (CIDR, rule, name, VLAN)."""

    error_type = "validation"
    default_code = "VALIDATION_ERROR"


class SubnetOutOfRangeError(ValidationError):
    """Requested subnet is not contained in the parent VPC range."""

    default_code = "SUBNET_CIDR_OUT_OF_RANGE"


class SubnetOverlapError(ValidationError):
    """Requested subnet intersects an existing sibling subnet."""

    default_code = "SUBNET_CIDR_OVERLAP"


class ConflictError(NetplaneError):
    """Duplicate resource or concurrent action on the same resource."""

    error_type = "conflict"
    default_code = "CONFLICT"


class NotFoundError(NetplaneError):
    """A resource required by the operation is absent."""

    error_type = "not_found"
    default_code = "NOT_FOUND"


class ExhaustionError(NetplaneError):
    """No free address (or VLAN tag) left in the pool."""

    error_type = "exhausted"
    default_code = "ADDRESS_EXHAUSTED"


class ExternalToolError(NetplaneError):
    """The switch utility failed or exited with an unexpected status."""

    error_type = "external_tool"
    default_code = "EXTERNAL_TOOL_ERROR"

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        code: str | None = None,
    ):
        super().__init__(message, code=code, details=stderr.strip() or None)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(NetplaneError, TimeoutError):
    """An external command exceeded its deadline and was killed."""

    error_type = "timeout"
    default_code = "COMMAND_TIMEOUT"
    retryable = True

    def __init__(self, message: str, command: list[str] | None = None, timeout: float | None = None):
        super().__init__(message)
        self.command = command or []
        self.timeout = timeout


class PersistenceError(NetplaneError):
    """Writing the durable record failed."""

    error_type = "internal"
    default_code = "PERSIST_FAILED"
