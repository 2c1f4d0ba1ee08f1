"""Provisioning orchestrator for VPCs, subnets, ports and security groups.

Every mutating operation is an action that moves through

    validate -> apply_network -> persist -> committed
                      \\            \\
                       `-----------`--> rolled_back

Validation failures touch nothing. Each switch change made while applying
registers its compensation on a per-action UndoStack; a failure while
applying or persisting unwinds that stack newest first. Store-only actions
skip apply_network.

Actions on one VPC are serialized by a per-VPC lock held from validate to
the terminal state. A second action on a resource that already has one in
flight is rejected, not queued. The action body runs in its own task, so a
cancelled caller still leaves the action committed or rolled back.

Worker commands are sent after commit. A failed publish does not undo the
commit; it marks the action ``degraded`` and records a warning.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Sequence
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from netplane import allocator
from netplane.config import Settings, settings as default_settings
from netplane.errors import (
    ConflictError,
    NetplaneError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from netplane.events.commands import WorkerCommand, WorkerCommandType
from netplane.events.publisher import WorkerCommandPublisher
from netplane.locks import InFlightRegistry, VPCLockRegistry
from netplane.logging_config import generate_correlation_id, get_correlation_id, set_correlation_id
from netplane.network.flows import Flow
from netplane.network.naming import bridge_name, gateway_port_name, port_name
from netplane.network.ovs import OVSManager, SwitchPort
from netplane.rollback import UndoStack
from netplane.schemas import (
    PortAttach,
    PortOut,
    RouteTableOut,
    SecurityGroupCreate,
    SecurityGroupOut,
    SecurityGroupRuleSpec,
    SecurityGroupUpdate,
    SubnetCreate,
    SubnetOut,
    SubnetUpdate,
    VPCCreate,
    VPCOut,
    VPCPage,
    VPCUpdate,
)
from netplane.security.compiler import CLASSIFIER_TABLE, SecurityRuleCompiler
from netplane.state import ActionOutcome, ActionState, PortKind, PortState, VPCState
from netplane.storage import NetworkStore, new_id, new_security_group_id

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: dict[ActionState, set[ActionState]] = {
    ActionState.VALIDATE: {ActionState.APPLY_NETWORK, ActionState.PERSIST, ActionState.ROLLED_BACK},
    ActionState.APPLY_NETWORK: {ActionState.PERSIST, ActionState.ROLLED_BACK},
    ActionState.PERSIST: {ActionState.COMMITTED, ActionState.ROLLED_BACK},
    ActionState.COMMITTED: set(),
    ActionState.ROLLED_BACK: set(),
}

TERMINAL_STATES = {ActionState.COMMITTED, ActionState.ROLLED_BACK}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActionResult:
    """Record of one orchestrator action."""

    action: str
    resource_key: str
    correlation_id: str
    state: ActionState = ActionState.VALIDATE
    outcome: ActionOutcome | None = None
    value: Any = None
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rollback_errors: list[str] = field(default_factory=list)
    error: dict[str, str] | None = None
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None

    def transition(self, new_state: ActionState) -> None:
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid action transition {self.state.value} -> {new_state.value} for {self.action}"
            )
        logger.debug(f"{self.action} {self.resource_key}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


PostCommit = Callable[[], Awaitable[bool]]


class ActionContext:
    """Per-invocation bookkeeping handed to an action body."""

    def __init__(self, result: ActionResult):
        self.result = result
        self.undo = UndoStack()
        self.post_commit: list[tuple[str, PostCommit]] = []

    def enter(self, state: ActionState) -> None:
        self.result.transition(state)

    async def apply(
        self,
        description: str,
        step: Awaitable[Any],
        compensate: Callable[[], Awaitable[Any]] | None = None,
    ) -> Any:
        value = await step
        self.result.steps.append(description)
        if compensate is not None:
            self.undo.push(description, compensate)
        return value

    def persist(self, description: str, write: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            value = write(*args, **kwargs)
        except NetplaneError:
            raise
        except Exception as e:
            logger.error(f"Failed to persist {description}: {e}")
            raise PersistenceError(f"Failed to persist {description}", details=str(e)) from e
        self.result.steps.append(description)
        return value

    def after_commit(self, description: str, effect: PostCommit) -> None:
        self.post_commit.append((description, effect))


ActionBody = Callable[[ActionContext], Awaitable[Any]]


class GroupMembership:
    """Security group member addresses with pending changes overlaid.

    Used as the compiler's group resolver while an action has not yet
    persisted a membership change.
    """

    def __init__(self, store: NetworkStore):
        self._store = store
        self._added: dict[str, set[str]] = {}
        self._removed: dict[str, set[str]] = {}
        self._dropped: set[str] = set()

    def move(self, ip: str, old_groups: Iterable[str], new_groups: Iterable[str]) -> set[str]:
        """Record a port moving between groups. Returns the groups that changed."""
        old, new = set(old_groups), set(new_groups)
        for gid in old - new:
            self._removed.setdefault(gid, set()).add(ip)
            self._added.get(gid, set()).discard(ip)
        for gid in new - old:
            self._added.setdefault(gid, set()).add(ip)
            self._removed.get(gid, set()).discard(ip)
        return old ^ new

    def drop(self, group_id: str) -> None:
        self._dropped.add(group_id)

    def __call__(self, group_id: str) -> list[str]:
        if group_id in self._dropped:
            return []
        ips = set(self._store.group_member_ips(group_id))
        ips |= self._added.get(group_id, set())
        ips -= self._removed.get(group_id, set())
        return sorted(ips)


class ProvisioningOrchestrator:
    def __init__(
        self,
        switch: OVSManager,
        store: NetworkStore,
        compiler: SecurityRuleCompiler | None = None,
        publisher: WorkerCommandPublisher | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or default_settings
        self._switch = switch
        self._store = store
        self._compiler = compiler or SecurityRuleCompiler(self._settings)
        self._publisher = publisher
        self._locks = VPCLockRegistry()
        self._in_flight = InFlightRegistry()
        self._tasks: set[asyncio.Task] = set()
        self._history: deque[ActionResult] = deque(maxlen=self._settings.action_history_size)

    # --- Action runner ---

    async def _run(self, action: str, resource_key: str, lock_key: str | None, body: ActionBody) -> Any:
        """Run ``body`` as one action under the lock named by ``lock_key``.

        Mutations of an existing VPC lock its id; VPC creation locks the
        owner, so CIDR conflict checks see every concurrent create.
        """
        result = ActionResult(
            action=action,
            resource_key=resource_key,
            correlation_id=get_correlation_id() or generate_correlation_id(),
        )
        task = asyncio.create_task(self._execute(result, lock_key, body), name=f"{action}:{resource_key}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                logger.warning(f"Caller cancelled {action} {resource_key}; action continues to completion")
            raise

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        # Mark the outcome retrieved; results of abandoned actions live in history
        if not task.cancelled():
            task.exception()

    async def _execute(self, result: ActionResult, lock_key: str | None, body: ActionBody) -> Any:
        set_correlation_id(result.correlation_id)
        ctx = ActionContext(result)
        lock = self._locks.hold(lock_key) if lock_key else nullcontext()
        try:
            with self._in_flight.claim(result.resource_key):
                async with lock:
                    try:
                        value = await body(ctx)
                    except (Exception, asyncio.CancelledError) as e:
                        await self._roll_back(ctx, e)
                        raise
                    result.transition(ActionState.COMMITTED)
                    result.outcome = ActionOutcome.COMMITTED
                    result.value = value
        except NetplaneError as e:
            if not result.is_terminal:
                # Rejected before validation started (in-flight conflict)
                result.transition(ActionState.ROLLED_BACK)
                result.outcome = ActionOutcome.ROLLED_BACK
                result.error = e.to_dict()
                self._finish(result)
            e.action_result = result
            raise

        await self._run_post_commit(ctx)
        self._finish(result)
        logger.info(
            f"{result.action} {result.resource_key} committed"
            + (" (degraded)" if result.outcome == ActionOutcome.DEGRADED else "")
        )
        return value

    async def _roll_back(self, ctx: ActionContext, error: BaseException) -> None:
        result = ctx.result
        failed_in = result.state
        if len(ctx.undo):
            logger.warning(f"{result.action} {result.resource_key} failed in {failed_in.value}, rolling back")
        undone, rollback_errors = await ctx.undo.unwind()
        result.rollback_errors.extend(rollback_errors)
        result.steps.extend(f"undo: {step}" for step in undone)
        result.transition(ActionState.ROLLED_BACK)
        result.outcome = ActionOutcome.ROLLED_BACK
        if isinstance(error, NetplaneError):
            result.error = error.to_dict()
        elif isinstance(error, asyncio.CancelledError):
            result.error = {"type": "cancelled", "code": "CANCELLED", "message": "Action was cancelled"}
        else:
            result.error = {"type": "internal", "code": "INTERNAL_ERROR", "message": str(error)}
            logger.exception(f"{result.action} {result.resource_key} failed unexpectedly")
        self._finish(result)
        log = logger.info if failed_in == ActionState.VALIDATE else logger.error
        log(f"{result.action} {result.resource_key} rolled back from {failed_in.value}: {error}")

    async def _run_post_commit(self, ctx: ActionContext) -> None:
        for description, effect in ctx.post_commit:
            try:
                delivered = await effect()
            except Exception as e:
                logger.error(f"Post-commit step '{description}' failed: {e}")
                delivered = False
            if not delivered:
                ctx.result.warnings.append(f"{description} was not delivered")
                ctx.result.outcome = ActionOutcome.DEGRADED

    def _finish(self, result: ActionResult) -> None:
        result.finished_at = _utcnow()
        self._history.append(result)

    def history(self) -> list[ActionResult]:
        """Recent action results, oldest first."""
        return list(self._history)

    async def wait_idle(self) -> None:
        """Wait for every in-flight action to reach a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Lookups ---

    def _require_vpc(self, vpc_id: str, owner_id: str | None = None) -> VPCOut:
        vpc = self._store.get_vpc(vpc_id)
        if vpc is None or (owner_id is not None and vpc.user_id != owner_id):
            raise NotFoundError(f"VPC {vpc_id} not found", code="VPC_NOT_FOUND")
        return vpc

    def _require_available_vpc(self, vpc_id: str) -> VPCOut:
        vpc = self._require_vpc(vpc_id)
        if vpc.state != VPCState.AVAILABLE:
            raise ConflictError(f"VPC {vpc_id} is {vpc.state.value}", code="VPC_NOT_AVAILABLE")
        return vpc

    def _require_subnet(self, subnet_id: str) -> SubnetOut:
        subnet = self._store.get_subnet(subnet_id)
        if subnet is None:
            raise NotFoundError(f"Subnet {subnet_id} not found", code="SUBNET_NOT_FOUND")
        return subnet

    def _require_port(self, port_id: str) -> PortOut:
        port = self._store.get_port(port_id)
        if port is None:
            raise NotFoundError(f"Port {port_id} not found", code="PORT_NOT_FOUND")
        return port

    def _require_group(self, group_id: str) -> SecurityGroupOut:
        group = self._store.get_security_group(group_id)
        if group is None:
            raise NotFoundError(f"Security group {group_id} not found", code="SECURITY_GROUP_NOT_FOUND")
        return group

    def _check_groups_in_vpc(self, vpc_id: str, group_ids: Sequence[str]) -> None:
        if len(set(group_ids)) != len(group_ids):
            raise ValidationError("Security group ids must be unique", code="INVALID_SECURITY_GROUPS")
        known = {group.id for group in self._store.list_security_groups(vpc_id)}
        for gid in group_ids:
            if gid not in known:
                raise NotFoundError(
                    f"Security group {gid} not found in VPC {vpc_id}", code="SECURITY_GROUP_NOT_FOUND"
                )

    def _vpc_cidr_conflict(self, owner_id: str, cidr: str, exclude_id: str | None = None) -> str | None:
        candidate = allocator.parse_cidr(cidr)
        for vpc_id, existing in self._store.list_vpc_cidrs(owner_id, exclude_id=exclude_id).items():
            other = allocator.parse_cidr(existing)
            if other == candidate:
                return vpc_id
            if self._settings.reject_overlapping_vpc_cidrs and allocator.overlaps(other, candidate):
                return vpc_id
        return None

    # --- Switch helpers ---

    def _bridge_name(self, vpc_id: str) -> str:
        return bridge_name(vpc_id, self._settings.bridge_prefix, self._settings.max_interface_name)

    async def _install_pipeline(self, bridge: str) -> None:
        for flow in self._compiler.pipeline_flows():
            await self._switch.apply_flow(bridge, flow)

    async def _provision_bridge(self, bridge: str) -> bool:
        created = await self._switch.ensure_bridge(bridge)
        if self._settings.controller_target:
            await self._switch.set_controller(bridge, self._settings.controller_target)
        await self._install_pipeline(bridge)
        return created

    async def _plumb_port(self, bridge: str, name: str, kind: PortKind, vlan_tag: int) -> None:
        await self._switch.attach_port(bridge, name, kind)
        await self._switch.set_vlan(name, vlan_tag)

    async def _plumb_gateway(self, bridge: str, subnet: SubnetOut) -> None:
        network = allocator.parse_cidr(subnet.cidr_block)
        await self._plumb_port(bridge, subnet.gateway_port, PortKind.INTERNAL, subnet.vlan_tag)
        gateway = allocator.gateway_address(network)
        await self._switch.set_interface_address(subnet.gateway_port, f"{gateway}/{network.prefixlen}")
        for flow in self._compiler.gateway_flows(subnet.gateway_port):
            await self._switch.apply_flow(bridge, flow)

    async def _unplumb_gateway(self, bridge: str, gateway_port: str) -> None:
        # Flows name the port, so they go while it still exists
        if await self._switch.port_exists(gateway_port):
            for flow in self._compiler.gateway_flows(gateway_port):
                await self._switch.remove_flow(bridge, flow, strict=True)
        await self._switch.detach_port(bridge, gateway_port)

    async def _port_flows_on_switch(self, bridge: str, port_ip: str, tap: str) -> list[Flow]:
        egress, ingress = self._settings.egress_table, self._settings.ingress_table
        flows = []
        for flow in await self._switch.list_flows(bridge):
            fields = flow.match.split(",")
            if flow.table in (CLASSIFIER_TABLE, egress) and f"in_port={tap}" in fields:
                flows.append(flow)
            elif flow.table == ingress and f"nw_dst={port_ip}" in fields:
                flows.append(flow)
        return flows

    async def _write_port_flows(self, bridge: str, port_ip: str, tap: str, flows: Sequence[Flow]) -> None:
        """Install ``flows`` for a port, then prune the port's other entries.

        New entries go in before stale ones are removed so the port never
        loses its default deny while being reprogrammed.
        """
        for flow in flows:
            await self._switch.apply_flow(bridge, flow)
        wanted = {(f.table, f.priority, f.match) for f in flows}
        for flow in await self._port_flows_on_switch(bridge, port_ip, tap):
            if (flow.table, flow.priority, flow.match) not in wanted:
                await self._switch.remove_flow(bridge, flow, strict=True)

    async def _clear_port_flows(self, bridge: str, port_ip: str, tap: str) -> None:
        for spec in self._compiler.port_match_specs(port_ip, tap):
            await self._switch.remove_flow(bridge, spec)

    async def _reprogram_port(
        self,
        ctx: ActionContext,
        bridge: str,
        port_id: str,
        port_ip: str,
        tap: str,
        flows: Sequence[Flow],
    ) -> None:
        previous = await self._port_flows_on_switch(bridge, port_ip, tap)
        # Registered before the step so a partial apply is restored as well
        ctx.undo.push(
            f"restore flows of port {port_id}",
            lambda: self._write_port_flows(bridge, port_ip, tap, previous),
        )
        await self._write_port_flows(bridge, port_ip, tap, flows)
        ctx.result.steps.append(f"program {len(flows)} flows for port {port_id}")

    # --- Rule compilation ---

    def _port_rules(
        self,
        group_ids: Sequence[str],
        rule_overrides: dict[str, Sequence[SecurityGroupRuleSpec]] | None = None,
    ) -> list[SecurityGroupRuleSpec]:
        """Rules of a port: its groups in attachment order, each group's rules in order."""
        rule_overrides = rule_overrides or {}
        rules: list[SecurityGroupRuleSpec] = []
        for gid in group_ids:
            if gid in rule_overrides:
                rules.extend(rule_overrides[gid])
                continue
            group = self._store.get_security_group(gid)
            if group is not None:
                rules.extend(group.rule_specs)
        return rules

    def _compile_port(
        self,
        port_ip: str,
        tap: str,
        group_ids: Sequence[str],
        membership: GroupMembership,
        rule_overrides: dict[str, Sequence[SecurityGroupRuleSpec]] | None = None,
    ) -> list[Flow]:
        return self._compiler.compile(
            self._port_rules(group_ids, rule_overrides), port_ip, resolve_group=membership, in_port=tap
        )

    def _dependent_ports(self, changed_groups: Iterable[str], exclude: Iterable[str] = ()) -> list[PortOut]:
        """Ports whose rules name any of the changed groups as a source."""
        referencing: set[str] = set()
        for gid in changed_groups:
            referencing.update(self._store.groups_referencing(gid))
        excluded = set(exclude)
        return [port for port in self._store.ports_in_groups(sorted(referencing)) if port.id not in excluded]

    async def _recompile_ports(
        self,
        ctx: ActionContext,
        bridge: str,
        ports: Iterable[PortOut],
        membership: GroupMembership,
        group_overrides: dict[str, Sequence[str]] | None = None,
        rule_overrides: dict[str, Sequence[SecurityGroupRuleSpec]] | None = None,
    ) -> int:
        group_overrides = group_overrides or {}
        count = 0
        for port in ports:
            group_ids = group_overrides.get(port.id, port.security_group_ids)
            flows = self._compile_port(port.private_ip, port.port_name, group_ids, membership, rule_overrides)
            await self._reprogram_port(ctx, bridge, port.id, port.private_ip, port.port_name, flows)
            count += 1
        return count

    # --- Worker commands ---

    def _publish_later(self, ctx: ActionContext, command: WorkerCommand) -> None:
        if self._publisher is None:
            return

        async def _send() -> bool:
            return await self._publisher.publish(command)

        ctx.after_commit(f"{command.command_type.value} command for port {command.port_id}", _send)

    @staticmethod
    def _port_payload(port: PortOut, subnet: SubnetOut, bridge: str) -> dict[str, Any]:
        network = allocator.parse_cidr(subnet.cidr_block)
        return {
            "bridge": bridge,
            "port_name": port.port_name,
            "private_ip": port.private_ip,
            "prefix_length": network.prefixlen,
            "gateway": str(allocator.gateway_address(network)),
            "vlan_tag": port.vlan_tag,
            "subnet_id": port.subnet_id,
            "vpc_id": port.vpc_id,
            "security_group_ids": list(port.security_group_ids),
        }

    # --- VPCs ---

    async def create_vpc(self, owner_id: str, data: VPCCreate) -> VPCOut:
        vpc_id = new_id()

        async def body(ctx: ActionContext) -> VPCOut:
            cidr = allocator.validate_vpc_cidr(data.cidr_block, self._settings)
            if self._store.get_vpc_by_name(owner_id, data.name) is not None:
                raise ConflictError(f"VPC with name '{data.name}' already exists", code="VPC_ALREADY_EXISTS")
            conflict = self._vpc_cidr_conflict(owner_id, str(cidr))
            if conflict is not None:
                raise ConflictError(
                    f"CIDR block {cidr} conflicts with VPC {conflict}", code="CIDR_CONFLICT"
                )
            bridge = self._bridge_name(vpc_id)

            ctx.enter(ActionState.APPLY_NETWORK)
            # Deleting the bridge also drops its flows and controller
            ctx.undo.push(f"delete bridge {bridge}", lambda: self._switch.delete_bridge(bridge))
            await ctx.apply(f"provision bridge {bridge}", self._provision_bridge(bridge))

            ctx.enter(ActionState.PERSIST)
            return ctx.persist(
                f"VPC {vpc_id}",
                self._store.create_vpc,
                vpc_id,
                owner_id,
                data,
                str(cidr),
                bridge,
                VPCState.AVAILABLE,
            )

        vpc = await self._run("create_vpc", f"vpc:{owner_id}:{data.name}", f"owner:{owner_id}", body)
        logger.info(f"Created VPC {vpc.id} ({vpc.cidr_block}) on bridge {vpc.bridge_name}")
        return vpc

    async def update_vpc(self, vpc_id: str, owner_id: str, data: VPCUpdate) -> VPCOut:
        async def body(ctx: ActionContext) -> VPCOut:
            vpc = self._require_vpc(vpc_id, owner_id)
            changes = data.changes()
            if changes.get("name") is None:
                changes.pop("name", None)
            if "name" in changes and changes["name"] != vpc.name:
                if self._store.get_vpc_by_name(owner_id, changes["name"]) is not None:
                    raise ConflictError(
                        f"VPC with name '{changes['name']}' already exists", code="VPC_ALREADY_EXISTS"
                    )
            ctx.enter(ActionState.PERSIST)
            if not changes:
                return vpc
            return ctx.persist(f"VPC {vpc_id}", self._store.update_vpc, vpc_id, changes)

        return await self._run("update_vpc", f"vpc:{vpc_id}", vpc_id, body)

    async def delete_vpc(self, vpc_id: str, owner_id: str) -> None:
        async def body(ctx: ActionContext) -> None:
            vpc = self._require_vpc(vpc_id, owner_id)
            children = self._store.count_vpc_children(vpc_id)
            # Security groups are deleted with the VPC record
            remaining = {kind: children[kind] for kind in ("subnets", "ports") if children[kind]}
            if remaining:
                listed = ", ".join(f"{n} {kind}" for kind, n in remaining.items())
                raise ConflictError(f"VPC {vpc_id} still has {listed}", code="VPC_NOT_EMPTY")

            async def mark(state: VPCState) -> None:
                self._store.set_vpc_state(vpc_id, state)

            ctx.enter(ActionState.APPLY_NETWORK)
            await ctx.apply(
                f"mark VPC {vpc_id} deleting",
                mark(VPCState.DELETING),
                compensate=lambda: mark(vpc.state),
            )
            await ctx.apply(
                f"delete bridge {vpc.bridge_name}",
                self._switch.delete_bridge(vpc.bridge_name),
                compensate=lambda: self._provision_bridge(vpc.bridge_name),
            )

            ctx.enter(ActionState.PERSIST)
            ctx.persist(f"deletion of VPC {vpc_id}", self._store.delete_vpc, vpc_id)

        await self._run("delete_vpc", f"vpc:{vpc_id}", vpc_id, body)
        logger.info(f"Deleted VPC {vpc_id}")

    def get_vpc(self, vpc_id: str, owner_id: str | None = None) -> VPCOut:
        return self._require_vpc(vpc_id, owner_id)

    def list_vpcs(self, owner_id: str, page: int = 1, page_size: int | None = None) -> VPCPage:
        if page < 1:
            page = 1
        if page_size is None or page_size < 1 or page_size > self._settings.max_page_size:
            page_size = self._settings.default_page_size
        return self._store.list_vpcs(owner_id, page, page_size)

    def list_route_tables(self, vpc_id: str) -> list[RouteTableOut]:
        self._require_vpc(vpc_id)
        return self._store.list_route_tables(vpc_id)

    # --- Subnets ---

    async def create_subnet(self, vpc_id: str, data: SubnetCreate) -> SubnetOut:
        subnet_id = new_id()

        async def body(ctx: ActionContext) -> SubnetOut:
            vpc = self._require_available_vpc(vpc_id)
            if self._store.get_subnet_by_name(vpc_id, data.name) is not None:
                raise ConflictError(
                    f"Subnet with name '{data.name}' already exists in VPC {vpc_id}",
                    code="SUBNET_ALREADY_EXISTS",
                )
            siblings = [subnet.cidr_block for subnet in self._store.list_subnets(vpc_id)]
            cidr = allocator.allocate_subnet(vpc.cidr_block, data.cidr_block, siblings, self._settings)
            used_tags = self._store.used_vlan_tags(vpc_id) | await self._switch.used_vlan_tags(vpc.bridge_name)
            vlan_tag = allocator.allocate_vlan_tag(used_tags, self._settings)
            gateway_port = gateway_port_name(subnet_id, self._settings.max_interface_name)
            pending = SubnetOut(
                id=subnet_id,
                vpc_id=vpc_id,
                name=data.name,
                cidr_block=str(cidr),
                availability_zone=data.availability_zone,
                is_public=data.is_public,
                vlan_tag=vlan_tag,
                gateway_port=gateway_port,
                created_at=_utcnow(),
                updated_at=_utcnow(),
            )

            ctx.enter(ActionState.APPLY_NETWORK)
            ctx.undo.push(
                f"detach gateway port {gateway_port}",
                lambda: self._unplumb_gateway(vpc.bridge_name, gateway_port),
            )
            await ctx.apply(
                f"plumb gateway port {gateway_port} (vlan {vlan_tag})",
                self._plumb_gateway(vpc.bridge_name, pending),
            )

            ctx.enter(ActionState.PERSIST)
            return ctx.persist(
                f"subnet {subnet_id}",
                self._store.create_subnet,
                subnet_id,
                vpc_id,
                data,
                str(cidr),
                vlan_tag,
                gateway_port,
            )

        subnet = await self._run("create_subnet", f"subnet:{vpc_id}:{data.name}", vpc_id, body)
        logger.info(f"Created subnet {subnet.id} ({subnet.cidr_block}, vlan {subnet.vlan_tag}) in VPC {vpc_id}")
        return subnet

    async def update_subnet(self, subnet_id: str, data: SubnetUpdate) -> SubnetOut:
        subnet = self._require_subnet(subnet_id)

        async def body(ctx: ActionContext) -> SubnetOut:
            current = self._require_subnet(subnet_id)
            changes = {key: value for key, value in data.changes().items() if value is not None}
            if "name" in changes and changes["name"] != current.name:
                if self._store.get_subnet_by_name(current.vpc_id, changes["name"]) is not None:
                    raise ConflictError(
                        f"Subnet with name '{changes['name']}' already exists in VPC {current.vpc_id}",
                        code="SUBNET_ALREADY_EXISTS",
                    )
            ctx.enter(ActionState.PERSIST)
            if not changes:
                return current
            return ctx.persist(f"subnet {subnet_id}", self._store.update_subnet, subnet_id, changes)

        return await self._run("update_subnet", f"subnet:{subnet_id}", subnet.vpc_id, body)

    async def delete_subnet(self, subnet_id: str) -> None:
        subnet = self._require_subnet(subnet_id)

        async def body(ctx: ActionContext) -> None:
            current = self._require_subnet(subnet_id)
            vpc = self._require_vpc(current.vpc_id)
            leases = self._store.list_leases(subnet_id)
            if leases:
                raise ConflictError(
                    f"Subnet {subnet_id} still has {len(leases)} leased addresses", code="SUBNET_IN_USE"
                )

            ctx.enter(ActionState.APPLY_NETWORK)
            await ctx.apply(
                f"detach gateway port {current.gateway_port}",
                self._unplumb_gateway(vpc.bridge_name, current.gateway_port),
                compensate=lambda: self._plumb_gateway(vpc.bridge_name, current),
            )

            ctx.enter(ActionState.PERSIST)
            ctx.persist(f"deletion of subnet {subnet_id}", self._store.delete_subnet, subnet_id)

        await self._run("delete_subnet", f"subnet:{subnet_id}", subnet.vpc_id, body)
        logger.info(f"Deleted subnet {subnet_id}")

    def get_subnet(self, subnet_id: str) -> SubnetOut:
        return self._require_subnet(subnet_id)

    def list_subnets(self, vpc_id: str) -> list[SubnetOut]:
        self._require_vpc(vpc_id)
        return self._store.list_subnets(vpc_id)

    # --- Ports ---

    async def attach_port(self, subnet_id: str, data: PortAttach) -> PortOut:
        subnet = self._require_subnet(subnet_id)

        async def body(ctx: ActionContext) -> PortOut:
            current = self._require_subnet(subnet_id)
            vpc = self._require_available_vpc(current.vpc_id)
            if self._store.port_record_exists(data.instance_id):
                raise ConflictError(f"Port {data.instance_id} already exists", code="PORT_ALREADY_EXISTS")
            self._check_groups_in_vpc(vpc.id, data.security_group_ids)

            # Leasing runs under the VPC lock, so the pool is current
            pool = allocator.AddressPool(current.cidr_block, self._store.list_leases(subnet_id))
            private_ip = str(pool.lease(data.instance_id))
            tap = port_name(data.instance_id, self._settings.max_interface_name)

            membership = GroupMembership(self._store)
            changed = membership.move(private_ip, (), data.security_group_ids)
            flows = self._compile_port(private_ip, tap, data.security_group_ids, membership)
            dependents = self._dependent_ports(changed)

            ctx.enter(ActionState.APPLY_NETWORK)
            ctx.undo.push(f"detach port {tap}", lambda: self._switch.detach_port(vpc.bridge_name, tap))
            await ctx.apply(
                f"attach port {tap} (vlan {current.vlan_tag})",
                self._plumb_port(vpc.bridge_name, tap, data.kind, current.vlan_tag),
            )
            await self._reprogram_port(ctx, vpc.bridge_name, data.instance_id, private_ip, tap, flows)
            await self._recompile_ports(ctx, vpc.bridge_name, dependents, membership)

            ctx.enter(ActionState.PERSIST)
            port = ctx.persist(
                f"lease {private_ip} for port {data.instance_id}",
                self._store.create_port,
                current,
                data,
                private_ip,
                tap,
                PortState.PENDING,
            )
            self._publish_later(
                ctx,
                WorkerCommand(
                    command_type=WorkerCommandType.ATTACH_PORT,
                    worker_node_id=data.worker_node_id,
                    port_id=port.id,
                    payload=self._port_payload(port, current, vpc.bridge_name),
                ),
            )
            return port

        port = await self._run("attach_port", f"port:{data.instance_id}", subnet.vpc_id, body)
        logger.info(f"Attached port {port.id} as {port.port_name} with {port.private_ip} in subnet {subnet_id}")
        return port

    async def detach_port(self, port_id: str) -> None:
        port = self._require_port(port_id)

        async def body(ctx: ActionContext) -> None:
            current = self._require_port(port_id)
            subnet = self._require_subnet(current.subnet_id)
            vpc = self._require_vpc(current.vpc_id)
            allocator.release_address(subnet.cidr_block, current.private_ip)

            membership = GroupMembership(self._store)
            changed = membership.move(current.private_ip, current.security_group_ids, ())
            dependents = self._dependent_ports(changed, exclude=[port_id])
            previous = await self._port_flows_on_switch(vpc.bridge_name, current.private_ip, current.port_name)

            ctx.enter(ActionState.APPLY_NETWORK)
            await ctx.apply(
                f"remove flows of port {port_id}",
                self._clear_port_flows(vpc.bridge_name, current.private_ip, current.port_name),
                compensate=lambda: self._write_port_flows(
                    vpc.bridge_name, current.private_ip, current.port_name, previous
                ),
            )
            await ctx.apply(
                f"detach port {current.port_name}",
                self._switch.detach_port(vpc.bridge_name, current.port_name),
                compensate=lambda: self._plumb_port(
                    vpc.bridge_name, current.port_name, PortKind.PASSTHROUGH, current.vlan_tag
                ),
            )
            await self._recompile_ports(ctx, vpc.bridge_name, dependents, membership)

            ctx.enter(ActionState.PERSIST)
            ctx.persist(
                f"release of {current.private_ip} from port {port_id}", self._store.delete_port, port_id
            )
            self._publish_later(
                ctx,
                WorkerCommand(
                    command_type=WorkerCommandType.DETACH_PORT,
                    worker_node_id=current.worker_node_id,
                    port_id=port_id,
                    payload=self._port_payload(current, subnet, vpc.bridge_name),
                ),
            )

        await self._run("detach_port", f"port:{port_id}", port.vpc_id, body)
        logger.info(f"Detached port {port_id} and released {port.private_ip}")

    async def confirm_port(self, port_id: str) -> PortOut:
        """Record that the worker finished plumbing the instance side of a port."""
        port = self._require_port(port_id)

        async def body(ctx: ActionContext) -> PortOut:
            self._require_port(port_id)
            ctx.enter(ActionState.PERSIST)
            return ctx.persist(f"port {port_id} state", self._store.set_port_state, port_id, PortState.ATTACHED)

        return await self._run("confirm_port", f"port:{port_id}", port.vpc_id, body)

    def get_port(self, port_id: str) -> PortOut:
        return self._require_port(port_id)

    def list_ports(self, *, vpc_id: str | None = None, subnet_id: str | None = None) -> list[PortOut]:
        return self._store.list_ports(vpc_id=vpc_id, subnet_id=subnet_id)

    async def set_port_security_groups(self, port_id: str, group_ids: Sequence[str]) -> PortOut:
        port = self._require_port(port_id)
        group_ids = list(group_ids)

        async def body(ctx: ActionContext) -> PortOut:
            current = self._require_port(port_id)
            vpc = self._require_vpc(current.vpc_id)
            self._check_groups_in_vpc(vpc.id, group_ids)
            subnet = self._require_subnet(current.subnet_id)

            membership = GroupMembership(self._store)
            changed = membership.move(current.private_ip, current.security_group_ids, group_ids)
            flows = self._compile_port(current.private_ip, current.port_name, group_ids, membership)
            dependents = self._dependent_ports(changed, exclude=[port_id])

            ctx.enter(ActionState.APPLY_NETWORK)
            await self._reprogram_port(ctx, vpc.bridge_name, port_id, current.private_ip, current.port_name, flows)
            await self._recompile_ports(ctx, vpc.bridge_name, dependents, membership)

            ctx.enter(ActionState.PERSIST)
            updated = ctx.persist(
                f"security groups of port {port_id}", self._store.set_port_groups, port_id, group_ids
            )
            self._publish_later(
                ctx,
                WorkerCommand(
                    command_type=WorkerCommandType.UPDATE_PORT,
                    worker_node_id=updated.worker_node_id,
                    port_id=port_id,
                    payload=self._port_payload(updated, subnet, vpc.bridge_name),
                ),
            )
            return updated

        return await self._run("set_port_security_groups", f"port:{port_id}", port.vpc_id, body)

    # --- Security groups ---

    async def create_security_group(self, vpc_id: str, data: SecurityGroupCreate) -> SecurityGroupOut:
        group_id = new_security_group_id()

        async def body(ctx: ActionContext) -> SecurityGroupOut:
            self._require_available_vpc(vpc_id)
            if self._store.get_security_group_by_name(vpc_id, data.name) is not None:
                raise ConflictError(
                    f"Security group '{data.name}' already exists in VPC {vpc_id}",
                    code="SECURITY_GROUP_ALREADY_EXISTS",
                )
            known = {group.id for group in self._store.list_security_groups(vpc_id)} | {group_id}
            self._compiler.validate_rules(data.rules, resolvable_groups=known)

            # A new group has no members, so nothing is programmed yet
            ctx.enter(ActionState.PERSIST)
            return ctx.persist(
                f"security group {group_id}", self._store.create_security_group, group_id, vpc_id, data
            )

        group = await self._run("create_security_group", f"sg:{vpc_id}:{data.name}", vpc_id, body)
        logger.info(f"Created security group {group.id} with {len(group.rules)} rules in VPC {vpc_id}")
        return group

    async def update_security_group(self, group_id: str, data: SecurityGroupUpdate) -> SecurityGroupOut:
        group = self._require_group(group_id)

        async def body(ctx: ActionContext) -> SecurityGroupOut:
            current = self._require_group(group_id)
            changes = data.changes()
            if changes.get("name") is None:
                changes.pop("name", None)
            if "name" in changes and changes["name"] != current.name:
                if self._store.get_security_group_by_name(current.vpc_id, changes["name"]) is not None:
                    raise ConflictError(
                        f"Security group '{changes['name']}' already exists in VPC {current.vpc_id}",
                        code="SECURITY_GROUP_ALREADY_EXISTS",
                    )
            ctx.enter(ActionState.PERSIST)
            if not changes:
                return current
            return ctx.persist(
                f"security group {group_id}", self._store.update_security_group, group_id, changes
            )

        return await self._run("update_security_group", f"sg:{group_id}", group.vpc_id, body)

    async def replace_security_group_rules(
        self, group_id: str, rules: Sequence[SecurityGroupRuleSpec]
    ) -> SecurityGroupOut:
        group = self._require_group(group_id)
        rules = list(rules)

        async def body(ctx: ActionContext) -> SecurityGroupOut:
            current = self._require_group(group_id)
            vpc = self._require_vpc(current.vpc_id)
            known = {g.id for g in self._store.list_security_groups(vpc.id)}
            self._compiler.validate_rules(rules, resolvable_groups=known)
            members = self._store.ports_in_groups([group_id])

            ctx.enter(ActionState.APPLY_NETWORK)
            count = await self._recompile_ports(
                ctx,
                vpc.bridge_name,
                members,
                GroupMembership(self._store),
                rule_overrides={group_id: rules},
            )
            logger.debug(f"Recompiled {count} ports for security group {group_id}")

            ctx.enter(ActionState.PERSIST)
            return ctx.persist(f"rules of security group {group_id}", self._store.replace_rules, group_id, rules)

        return await self._run("replace_security_group_rules", f"sg:{group_id}", group.vpc_id, body)

    async def delete_security_group(self, group_id: str) -> None:
        """Delete a group and recompile every port it affected.

        Members lose the group's rules (falling back to the default deny
        when it was their only group); ports whose rules named the group as
        a source lose those entries.
        """
        group = self._require_group(group_id)

        async def body(ctx: ActionContext) -> None:
            current = self._require_group(group_id)
            vpc = self._require_vpc(current.vpc_id)
            members = self._store.ports_in_groups([group_id])
            membership = GroupMembership(self._store)
            membership.drop(group_id)
            member_ids = {port.id for port in members}
            dependents = self._dependent_ports([group_id], exclude=member_ids)
            group_overrides = {
                port.id: [gid for gid in port.security_group_ids if gid != group_id] for port in members
            }

            ctx.enter(ActionState.APPLY_NETWORK)
            count = await self._recompile_ports(
                ctx, vpc.bridge_name, [*members, *dependents], membership, group_overrides=group_overrides
            )
            logger.debug(f"Recompiled {count} ports after removing security group {group_id}")

            ctx.enter(ActionState.PERSIST)
            ctx.persist(f"deletion of security group {group_id}", self._store.delete_security_group, group_id)

        await self._run("delete_security_group", f"sg:{group_id}", group.vpc_id, body)
        logger.info(f"Deleted security group {group_id}")

    def get_security_group(self, group_id: str) -> SecurityGroupOut:
        return self._require_group(group_id)

    def list_security_groups(self, vpc_id: str) -> list[SecurityGroupOut]:
        self._require_vpc(vpc_id)
        return self._store.list_security_groups(vpc_id)

    # --- Switch inspection ---

    async def list_bridge_ports(self, vpc_id: str) -> list[SwitchPort]:
        return await self._switch.list_ports(self._require_vpc(vpc_id).bridge_name)

    async def list_bridge_flows(self, vpc_id: str) -> list[Flow]:
        return await self._switch.list_flows(self._require_vpc(vpc_id).bridge_name)
