"""OpenFlow entry model and the ovs-ofctl flow grammar.

A flow spec is built by joining the non-empty fields in the fixed order
``table``, ``priority``, ``match``, ``actions``. The security compiler,
rollback and the dump parser all rely on this ordering, so a parsed dump
line rebuilds to the spec that created it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# Fields in dump-flows output that describe the entry, not its match
_STAT_FIELDS = {
    "cookie",
    "duration",
    "n_packets",
    "n_bytes",
    "idle_age",
    "hard_age",
    "idle_timeout",
    "hard_timeout",
    "importance",
}

# Bare flags that can precede the match but are not part of it
_FLAG_TOKENS = {
    "send_flow_rem",
    "reset_counts",
    "check_overlap",
    "no_packet_counts",
    "no_byte_counts",
}

_REPLY_HEADERS = ("NXST_FLOW", "OFPST_FLOW")
_QUOTE = '"'


@dataclass(frozen=True)
class Flow:
    """One match->action entry in a bridge flow table."""

    table: int = 0
    priority: int = 0
    match: str = ""
    actions: str = ""
    # Counters are only populated from dumps and never affect equality
    n_packets: int = field(default=0, compare=False)
    n_bytes: int = field(default=0, compare=False)

    @property
    def spec(self) -> str:
        return build_flow_spec(self)

    @property
    def match_spec(self) -> str:
        return build_match_spec(self)


def _head_fields(flow: Flow) -> list[str]:
    parts: list[str] = []
    if flow.table > 0:
        parts.append(f"table={flow.table}")
    if flow.priority > 0:
        parts.append(f"priority={flow.priority}")
    if flow.match:
        parts.append(flow.match)
    return parts


def build_flow_spec(flow: Flow) -> str:
    """Build an add-flow spec: table, priority, match, actions."""
    parts = _head_fields(flow)
    if flow.actions:
        parts.append(f"actions={flow.actions}")
    return ",".join(parts)


def build_match_spec(flow: Flow) -> str:
    """Build a del-flows spec: table, priority, match (no actions)."""
    return ",".join(_head_fields(flow))


def parse_flow_line(line: str) -> Flow | None:
    """Parse one line of ``ovs-ofctl dump-flows`` output.

    Returns None for headers and blank lines.
    """
    line = line.strip()
    if not line or line.startswith(_REPLY_HEADERS):
        return None

    head, sep, actions = line.partition("actions=")
    if not sep:
        return None

    table = 0
    priority = 0
    n_packets = 0
    n_bytes = 0
    match_parts: list[str] = []

    for token in re.split(r"[,\s]+", head):
        if not token:
            continue
        key, eq, value = token.partition("=")
        if not eq:
            if token not in _FLAG_TOKENS:
                match_parts.append(token)
            continue
        if key == "table":
            table = int(value)
        elif key == "priority":
            priority = int(value)
        elif key == "n_packets":
            n_packets = int(value)
        elif key == "n_bytes":
            n_bytes = int(value)
        elif key in _STAT_FIELDS:
            continue
        else:
            # --names renders port names quoted (in_port="tap-1")
            match_parts.append(f"{key}={value.strip(_QUOTE)}")

    return Flow(
        table=table,
        priority=priority,
        match=",".join(match_parts),
        actions=actions.strip(),
        n_packets=n_packets,
        n_bytes=n_bytes,
    )


def parse_dump_flows(output: str) -> list[Flow]:
    """Parse full ``dump-flows`` output into Flow entries."""
    flows: list[Flow] = []
    for line in output.splitlines():
        flow = parse_flow_line(line)
        if flow is not None:
            flows.append(flow)
    return flows
