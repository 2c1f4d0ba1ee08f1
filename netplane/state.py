"""Centralized state enums for tenant resources and orchestrator actions."""

from enum import Enum


class VPCState(str, Enum):
    """VPC lifecycle state."""

    PENDING = "pending"  # Bridge being provisioned, record not yet committed
    AVAILABLE = "available"
    DELETING = "deleting"  # Bridge teardown in progress


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"
    ICMP = "icmp"
    ALL = "all"


class RuleAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class PortKind(str, Enum):
    """How a port is realized on the bridge."""

    INTERNAL = "internal"  # OVS-created internal device (gateways)
    PASSTHROUGH = "passthrough"  # Existing tap/veth handed to the bridge


class PortState(str, Enum):
    PENDING = "pending"  # Attached on the switch, worker not yet confirmed
    ATTACHED = "attached"


class ActionState(str, Enum):
    """Orchestrator action phases. COMMITTED and ROLLED_BACK are terminal."""

    VALIDATE = "validate"
    APPLY_NETWORK = "apply_network"
    PERSIST = "persist"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class ActionOutcome(str, Enum):
    """How a terminal action ended."""

    COMMITTED = "committed"
    DEGRADED = "degraded"  # Committed, but a post-commit side effect failed
    ROLLED_BACK = "rolled_back"
