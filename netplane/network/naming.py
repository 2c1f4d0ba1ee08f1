"""Centralized naming conventions for switch-level devices.

All components that construct bridge or port names MUST use these
functions so the orchestrator, rollback and cleanup agree on names.
Linux limits interface names to 15 characters, so tenant ids are hashed
rather than truncated.
"""

import hashlib
import re

from netplane.config import settings
from netplane.errors import ValidationError

TAP_PREFIX = "tap"
GATEWAY_PREFIX = "gw"

_VALID_NAME = re.compile(r"^[a-zA-Z0-9_-]+$")


def sanitize_id(value: str, max_len: int = 0) -> str:
    """Sanitize a string for use in interface names.

    Strips all characters except alphanumeric, underscore, and dash.
    Optionally truncates to max_len if > 0.
    """
    safe = re.sub(r"[^a-zA-Z0-9_-]", "", value)
    if max_len > 0:
        safe = safe[:max_len]
    return safe


def _hashed_name(prefix: str, value: str, max_len: int) -> str:
    """Build ``{prefix}-{hex digest}`` filling the remaining name length.

    The digest is SHA-256 of the full id, so distinct ids map to distinct
    names with negligible collision probability.
    """
    prefix = sanitize_id(prefix)
    room = max_len - len(prefix) - 1
    if room < 8:
        raise ValidationError(
            f"Name prefix '{prefix}' leaves too few characters for a unique suffix",
            code="INVALID_NAME",
        )
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:room]
    return f"{prefix}-{digest}"


def bridge_name(vpc_id: str, prefix: str | None = None, max_len: int | None = None) -> str:
    """Generate the bridge name for a VPC.

    Format: {prefix}-{sha256(vpc_id)} cut to the interface name limit,
    e.g. ``vpc-3f9a0c1d2e7`` for the default prefix.
    """
    return _hashed_name(
        prefix if prefix is not None else settings.bridge_prefix,
        vpc_id,
        max_len if max_len is not None else settings.max_interface_name,
    )


def port_name(port_id: str, max_len: int | None = None) -> str:
    """Generate the switch port name for an instance interface."""
    return _hashed_name(TAP_PREFIX, port_id, max_len or settings.max_interface_name)


def gateway_port_name(subnet_id: str, max_len: int | None = None) -> str:
    """Generate the internal gateway port name for a subnet."""
    return _hashed_name(GATEWAY_PREFIX, subnet_id, max_len or settings.max_interface_name)


def validate_interface_name(name: str, max_len: int | None = None) -> None:
    """Reject names the switch would refuse."""
    limit = max_len or settings.max_interface_name
    if not name:
        raise ValidationError("Interface name cannot be empty", code="INVALID_NAME")
    if len(name) > limit:
        raise ValidationError(
            f"Interface name '{name}' exceeds {limit} characters", code="INVALID_NAME"
        )
    if not _VALID_NAME.match(name):
        raise ValidationError(
            f"Interface name '{name}' may only contain alphanumerics, '-' and '_'",
            code="INVALID_NAME",
        )
