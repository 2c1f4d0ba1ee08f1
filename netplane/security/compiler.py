"""Security group rule compilation into OpenFlow entries.

Pipeline on every VPC bridge (fail_mode=secure, so a miss means drop):

    table 0         ARP -> NORMAL; IP from a tenant port carrying its own
                    address -> egress table; IP from a subnet gateway port
                    -> ingress table; any other IP -> drop
    egress table    outbound rules per port (match in_port + nw_src)
    ingress table   inbound rules per port (match nw_dst)

A tenant port is identified by the switch port a packet entered on, so a
forged source address is dropped in table 0 instead of slipping past the
port's egress rules. Per port and per direction the compiler emits the
rules followed by an implicit default deny, so a port with no allow rule
can neither send nor receive IP traffic.

Priority contract per direction:
- deny rules occupy a band above allow rules
- inside each band, rules keep declaration order and get strictly
  decreasing priorities, so the earlier of two same-action rules wins
- the default deny sits below every rule

Callers that need a later rule to win must reorder their rule list.
Security-group sources are expanded to member addresses at compile time;
the result is a snapshot and must be recompiled when membership changes.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Iterable, Sequence
from typing import Protocol as TypingProtocol

from netplane.config import Settings, settings as default_settings
from netplane.errors import ValidationError
from netplane.network.flows import Flow
from netplane.schemas import ANY_CIDR, MAX_PORT, is_security_group_ref
from netplane.state import Direction, Protocol, RuleAction

CLASSIFIER_TABLE = 0
ARP_PRIORITY = 200
PORT_GUARD_PRIORITY = 150
PORT_GUARD_DROP_PRIORITY = 140
PORT_DEFAULT_DENY_PRIORITY = 10
TABLE_MISS_PRIORITY = 1

FULL_PORT_MASK = 0xFFFF

# Resolves a security group id to the private IPs of its member ports
GroupResolver = Callable[[str], Iterable[str]]


class RuleLike(TypingProtocol):
    direction: Direction
    protocol: Protocol
    from_port: int | None
    to_port: int | None
    source: str
    action: RuleAction


def port_range_masks(low: int, high: int) -> list[tuple[int, int]]:
    """Decompose an inclusive port range into (value, mask) prefix blocks."""
    blocks: list[tuple[int, int]] = []
    while low <= high:
        size = low & -low if low else MAX_PORT + 1
        while size > high - low + 1:
            size >>= 1
        blocks.append((low, FULL_PORT_MASK & ~(size - 1)))
        low += size
    return blocks


def _format_tp_dst(value: int, mask: int) -> str:
    if mask == FULL_PORT_MASK:
        return f"tp_dst={value}"
    # ovs-ofctl renders masked transport ports in hex
    return f"tp_dst=0x{value:x}/0x{mask:x}"


def _format_address(value: str) -> str:
    network = ipaddress.ip_network(value, strict=False)
    if network.prefixlen == network.max_prefixlen:
        return str(network.network_address)
    return str(network)


class SecurityRuleCompiler:
    """Turns ordered security group rules into flow entries for one port."""

    def __init__(self, settings: Settings | None = None):
        settings = settings or default_settings
        self.egress_table = settings.egress_table
        self.ingress_table = settings.ingress_table
        self.priority_base = settings.flow_priority_base
        if not CLASSIFIER_TABLE < self.egress_table < self.ingress_table:
            raise ValueError("flow tables must satisfy 0 < egress_table < ingress_table")

    # --- Bridge baseline ---

    def pipeline_flows(self) -> list[Flow]:
        """Flows installed once per bridge, independent of any port."""
        return [
            Flow(table=CLASSIFIER_TABLE, priority=ARP_PRIORITY, match="arp", actions="NORMAL"),
            Flow(table=CLASSIFIER_TABLE, priority=TABLE_MISS_PRIORITY, actions="drop"),
            Flow(table=self.egress_table, priority=TABLE_MISS_PRIORITY, actions="drop"),
            Flow(table=self.ingress_table, priority=TABLE_MISS_PRIORITY, actions="NORMAL"),
        ]

    def gateway_flows(self, gateway_port: str) -> list[Flow]:
        """Entry that lets a subnet gateway port skip egress policy."""
        return [
            Flow(
                table=CLASSIFIER_TABLE,
                priority=PORT_GUARD_PRIORITY,
                match=f"ip,in_port={gateway_port}",
                actions=f"goto_table:{self.ingress_table}",
            )
        ]

    def port_match_specs(self, port_ip: str, in_port: str) -> list[Flow]:
        """Match-only flows that select every compiled entry of a port."""
        return [
            Flow(table=CLASSIFIER_TABLE, match=f"ip,in_port={in_port}"),
            Flow(table=self.egress_table, match=f"ip,in_port={in_port}"),
            Flow(table=self.ingress_table, match=f"ip,nw_dst={port_ip}"),
        ]

    # --- Compilation ---

    def validate_rules(self, rules: Sequence[RuleLike], resolvable_groups: Iterable[str] | None = None) -> None:
        """Check rules can be compiled.

        Args:
            rules: Rules to check
            resolvable_groups: Group ids that may be referenced as a source;
                None skips the reference check
        """
        known = set(resolvable_groups) if resolvable_groups is not None else None
        per_direction = {Direction.INBOUND: 0, Direction.OUTBOUND: 0}
        for rule in rules:
            per_direction[Direction(rule.direction)] += 1
            if is_security_group_ref(rule.source):
                if known is not None and rule.source not in known:
                    raise ValidationError(
                        f"Rule references unknown security group {rule.source}",
                        code="INVALID_RULE",
                    )
            if rule.from_port is not None and Protocol(rule.protocol) not in (Protocol.TCP, Protocol.UDP):
                raise ValidationError(
                    "Port ranges are only valid for tcp and udp rules", code="INVALID_RULE"
                )

        capacity = self.priority_base - PORT_DEFAULT_DENY_PRIORITY
        for direction, count in per_direction.items():
            if count >= capacity:
                raise ValidationError(
                    f"Too many {direction.value} rules ({count}), limit is {capacity - 1}",
                    code="INVALID_RULE",
                )

    def compile(
        self,
        rules: Sequence[RuleLike],
        port_ip: str,
        resolve_group: GroupResolver | None = None,
        *,
        in_port: str,
    ) -> list[Flow]:
        """Compile rules for one port.

        Pure: the same rules (in the same order), port address, switch port
        and group membership always give the same flow list.

        Args:
            rules: Rules of every group on the port, in attachment order
            port_ip: Private address leased to the port
            resolve_group: Maps a group id to its member addresses
            in_port: Switch port name the port's traffic enters on
        """
        self.validate_rules(rules)
        port_ip = _format_address(port_ip)
        flows = self._guard_flows(port_ip, in_port)
        for direction in (Direction.OUTBOUND, Direction.INBOUND):
            selected = [rule for rule in rules if Direction(rule.direction) == direction]
            flows.extend(self._compile_direction(direction, selected, port_ip, in_port, resolve_group))
        return flows

    def _guard_flows(self, port_ip: str, in_port: str) -> list[Flow]:
        # Only the leased address may leave the port
        return [
            Flow(
                table=CLASSIFIER_TABLE,
                priority=PORT_GUARD_PRIORITY,
                match=f"ip,in_port={in_port},nw_src={port_ip}",
                actions=f"goto_table:{self.egress_table}",
            ),
            Flow(
                table=CLASSIFIER_TABLE,
                priority=PORT_GUARD_DROP_PRIORITY,
                match=f"ip,in_port={in_port}",
                actions="drop",
            ),
        ]

    def _compile_direction(
        self,
        direction: Direction,
        rules: list[RuleLike],
        port_ip: str,
        in_port: str,
        resolve_group: GroupResolver | None,
    ) -> list[Flow]:
        if direction == Direction.OUTBOUND:
            table, local_field = self.egress_table, "nw_src"
            allow_action = f"goto_table:{self.ingress_table}"
            default_match = f"ip,in_port={in_port}"
            rule_port: str | None = in_port
        else:
            table, local_field = self.ingress_table, "nw_dst"
            allow_action = "NORMAL"
            default_match = f"ip,nw_dst={port_ip}"
            rule_port = None

        ordered = [r for r in rules if RuleAction(r.action) == RuleAction.DENY]
        ordered += [r for r in rules if RuleAction(r.action) == RuleAction.ALLOW]

        flows: list[Flow] = []
        priority = self.priority_base
        for rule in ordered:
            actions = "drop" if RuleAction(rule.action) == RuleAction.DENY else allow_action
            for match in self._rule_matches(rule, local_field, port_ip, rule_port, resolve_group):
                flows.append(Flow(table=table, priority=priority, match=match, actions=actions))
            # Priority advances even when a group source expands to nothing,
            # so membership changes never shift other rules.
            priority -= 1

        flows.append(
            Flow(table=table, priority=PORT_DEFAULT_DENY_PRIORITY, match=default_match, actions="drop")
        )
        return flows

    def _rule_matches(
        self,
        rule: RuleLike,
        local_field: str,
        port_ip: str,
        in_port: str | None,
        resolve_group: GroupResolver | None,
    ) -> list[str]:
        protocol = Protocol(rule.protocol)
        proto = "ip" if protocol == Protocol.ALL else protocol.value
        remote_field = "nw_dst" if local_field == "nw_src" else "nw_src"

        matches: list[str] = []
        for remote in self._remote_addresses(rule.source, resolve_group):
            fields = {local_field: port_ip}
            if remote is not None:
                fields[remote_field] = remote
            for tp_dst in self._port_matches(rule, protocol):
                parts = [proto]
                # Same field order ovs-ofctl uses when dumping
                if in_port is not None:
                    parts.append(f"in_port={in_port}")
                for name in ("nw_src", "nw_dst"):
                    if name in fields:
                        parts.append(f"{name}={fields[name]}")
                if tp_dst is not None:
                    parts.append(tp_dst)
                matches.append(",".join(parts))
        return matches

    @staticmethod
    def _remote_addresses(source: str, resolve_group: GroupResolver | None) -> list[str | None]:
        if is_security_group_ref(source):
            if resolve_group is None:
                raise ValidationError(
                    f"Rule source {source} needs a group resolver", code="INVALID_RULE"
                )
            return [_format_address(ip) for ip in sorted(set(resolve_group(source)), key=ipaddress.IPv4Address)]
        if source == ANY_CIDR:
            return [None]
        return [_format_address(source)]

    @staticmethod
    def _port_matches(rule: RuleLike, protocol: Protocol) -> list[str | None]:
        if protocol not in (Protocol.TCP, Protocol.UDP) or rule.from_port is None:
            return [None]
        low, high = rule.from_port, rule.to_port if rule.to_port is not None else rule.from_port
        if low == 0 and high == MAX_PORT:
            return [None]
        return [_format_tp_dst(value, mask) for value, mask in port_range_masks(low, high)]
