from __future__ import annotations

import asyncio

import pydantic
import pytest

from netplane.config import Settings
from netplane.errors import (
    ConflictError,
    ExhaustionError,
    ExternalToolError,
    NotFoundError,
    PersistenceError,
    SubnetOverlapError,
    ValidationError,
)
from netplane.events.commands import WorkerCommandType
from netplane.network.ovs import SwitchPort
from netplane.orchestrator import ProvisioningOrchestrator
from netplane.schemas import (
    PortAttach,
    SecurityGroupCreate,
    SecurityGroupRuleSpec,
    SecurityGroupUpdate,
    SubnetCreate,
    SubnetUpdate,
    VPCCreate,
    VPCUpdate,
)
from netplane.state import ActionOutcome, ActionState, PortState, VPCState

OWNER = "user-1"


async def make_vpc(orchestrator, cidr: str = "10.0.0.0/16", name: str = "main", owner: str = OWNER):
    return await orchestrator.create_vpc(owner, VPCCreate(name=name, cidr_block=cidr))


async def make_subnet(orchestrator, vpc, cidr: str = "10.0.1.0/24", name: str = "app"):
    return await orchestrator.create_subnet(
        vpc.id, SubnetCreate(name=name, cidr_block=cidr, availability_zone="az-1")
    )


def port_flow_specs(fake_switch, bridge: str, port) -> list[str]:
    """Sorted specs of the entries that belong to ``port``."""
    specs = []
    for flow in fake_switch.bridges[bridge].flows:
        fields = flow.match.split(",")
        if flow.table in (0, 10) and f"in_port={port.port_name}" in fields:
            specs.append(flow.spec)
        elif flow.table == 20 and f"nw_dst={port.private_ip}" in fields:
            specs.append(flow.spec)
    return sorted(specs)


def closed_port_specs(port) -> list[str]:
    """Entries of a port without any allow rule."""
    tap, ip = port.port_name, port.private_ip
    return sorted([
        f"priority=150,ip,in_port={tap},nw_src={ip},actions=goto_table:10",
        f"priority=140,ip,in_port={tap},actions=drop",
        f"table=10,priority=10,ip,in_port={tap},actions=drop",
        f"table=20,priority=10,ip,nw_dst={ip},actions=drop",
    ])


# --- VPCs ---


@pytest.mark.asyncio
async def test_create_vpc_provisions_bridge_and_pipeline(orchestrator, fake_switch, store) -> None:
    vpc = await make_vpc(orchestrator)

    assert vpc.state == VPCState.AVAILABLE
    assert vpc.cidr_block == "10.0.0.0/16"
    bridge = fake_switch.bridges[vpc.bridge_name]
    assert bridge.options["fail_mode"] == "secure"
    assert fake_switch.flow_specs(vpc.bridge_name) == [
        "priority=200,arp,actions=NORMAL",
        "priority=1,actions=drop",
        "table=10,priority=1,actions=drop",
        "table=20,priority=1,actions=NORMAL",
    ]

    tables = orchestrator.list_route_tables(vpc.id)
    assert len(tables) == 1 and tables[0].is_main
    assert [(r.destination_cidr, r.target_type) for r in tables[0].routes] == [("10.0.0.0/16", "local")]

    result = orchestrator.history()[-1]
    assert result.action == "create_vpc"
    assert result.state == ActionState.COMMITTED
    assert result.outcome == ActionOutcome.COMMITTED


@pytest.mark.asyncio
async def test_create_vpc_registers_controller(fake_switch, ovs, store, compiler, publisher) -> None:
    settings = Settings(database_url="sqlite://", controller_target="tcp:192.0.2.10:6653")
    orchestrator = ProvisioningOrchestrator(ovs, store, compiler, publisher, settings)
    vpc = await make_vpc(orchestrator)
    assert fake_switch.bridges[vpc.bridge_name].controller == "tcp:192.0.2.10:6653"


@pytest.mark.asyncio
async def test_create_vpc_rejects_invalid_cidr_without_touching_switch(orchestrator, fake_switch) -> None:
    with pytest.raises(ValidationError) as exc:
        await make_vpc(orchestrator, cidr="8.8.0.0/16")
    assert exc.value.code == "INVALID_CIDR"
    assert fake_switch.calls == []
    assert exc.value.action_result.state == ActionState.ROLLED_BACK
    assert exc.value.action_result.error["code"] == "INVALID_CIDR"


@pytest.mark.asyncio
async def test_create_vpc_name_and_cidr_conflicts(orchestrator) -> None:
    await make_vpc(orchestrator, cidr="10.0.0.0/16", name="main")

    with pytest.raises(ConflictError) as exc:
        await make_vpc(orchestrator, cidr="10.1.0.0/16", name="main")
    assert exc.value.code == "VPC_ALREADY_EXISTS"

    with pytest.raises(ConflictError) as exc:
        await make_vpc(orchestrator, cidr="10.0.0.0/16", name="other")
    assert exc.value.code == "CIDR_CONFLICT"

    with pytest.raises(ConflictError) as exc:
        await make_vpc(orchestrator, cidr="10.0.128.0/20", name="nested")
    assert exc.value.code == "CIDR_CONFLICT"

    # Another owner has its own address space and names
    await make_vpc(orchestrator, cidr="10.0.0.0/16", name="main", owner="user-2")


@pytest.mark.asyncio
async def test_overlapping_vpcs_allowed_when_configured(fake_switch, ovs, store, compiler, publisher) -> None:
    settings = Settings(database_url="sqlite://", reject_overlapping_vpc_cidrs=False)
    orchestrator = ProvisioningOrchestrator(ovs, store, compiler, publisher, settings)
    await make_vpc(orchestrator, cidr="10.0.0.0/16", name="a")
    await make_vpc(orchestrator, cidr="10.0.128.0/20", name="b")
    with pytest.raises(ConflictError):
        await make_vpc(orchestrator, cidr="10.0.0.0/16", name="c")


@pytest.mark.asyncio
async def test_create_vpc_persist_failure_removes_bridge(orchestrator, fake_switch, ovs, store, monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "create_vpc", boom)

    with pytest.raises(PersistenceError) as exc:
        await make_vpc(orchestrator)

    assert exc.value.code == "PERSIST_FAILED"
    assert exc.value.details == "disk full"
    assert await ovs.list_bridges() == []
    result = exc.value.action_result
    assert result.state == ActionState.ROLLED_BACK
    assert result.outcome == ActionOutcome.ROLLED_BACK
    assert any(step.startswith("undo: delete bridge") for step in result.steps)
    assert result.rollback_errors == []


@pytest.mark.asyncio
async def test_failed_compensation_is_recorded(orchestrator, fake_switch, store, monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "create_vpc", boom)
    fake_switch.fail_when("del-br", stderr="ovs-vsctl: transaction error")

    with pytest.raises(PersistenceError) as exc:
        await make_vpc(orchestrator)

    errors = exc.value.action_result.rollback_errors
    assert len(errors) == 1
    assert errors[0].startswith("delete bridge vpc-")


@pytest.mark.asyncio
async def test_update_vpc_uses_closed_update_struct(orchestrator) -> None:
    vpc = await make_vpc(orchestrator)
    await make_vpc(orchestrator, cidr="10.1.0.0/16", name="taken")

    updated = await orchestrator.update_vpc(vpc.id, OWNER, VPCUpdate(description="prod network"))
    assert updated.description == "prod network"
    assert updated.name == "main"

    with pytest.raises(ConflictError):
        await orchestrator.update_vpc(vpc.id, OWNER, VPCUpdate(name="taken"))
    with pytest.raises(NotFoundError):
        await orchestrator.update_vpc(vpc.id, "user-2", VPCUpdate(name="x"))
    with pytest.raises(pydantic.ValidationError):
        VPCUpdate(cidr_block="10.9.0.0/16")


@pytest.mark.asyncio
async def test_get_and_list_vpcs_with_pagination_clamp(orchestrator) -> None:
    for i in range(3):
        await make_vpc(orchestrator, cidr=f"10.{i}.0.0/16", name=f"vpc-{i}")

    page = orchestrator.list_vpcs(OWNER, page=0, page_size=500)
    assert (page.page, page.page_size, page.total, page.total_pages) == (1, 20, 3, 1)
    assert len(page.items) == 3

    page = orchestrator.list_vpcs(OWNER, page=2, page_size=2)
    assert (page.total, page.total_pages, len(page.items)) == (3, 2, 1)

    assert orchestrator.list_vpcs("user-2").total == 0
    with pytest.raises(NotFoundError):
        orchestrator.get_vpc(page.items[0].id, owner_id="user-2")


@pytest.mark.asyncio
async def test_delete_vpc_requires_empty_vpc(orchestrator, fake_switch, store) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    await orchestrator.create_security_group(vpc.id, SecurityGroupCreate(name="web"))

    with pytest.raises(ConflictError) as exc:
        await orchestrator.delete_vpc(vpc.id, OWNER)
    assert exc.value.code == "VPC_NOT_EMPTY"
    assert vpc.bridge_name in fake_switch.bridges

    await orchestrator.delete_subnet(subnet.id)
    await orchestrator.delete_vpc(vpc.id, OWNER)

    assert vpc.bridge_name not in fake_switch.bridges
    assert store.get_vpc(vpc.id) is None
    assert store.list_route_tables(vpc.id) == []
    assert store.list_security_groups(vpc.id) == []


@pytest.mark.asyncio
async def test_delete_vpc_bridge_failure_restores_state(orchestrator, fake_switch, store) -> None:
    vpc = await make_vpc(orchestrator)
    fake_switch.fail_when("del-br")

    with pytest.raises(ExternalToolError):
        await orchestrator.delete_vpc(vpc.id, OWNER)

    assert store.get_vpc(vpc.id).state == VPCState.AVAILABLE
    assert vpc.bridge_name in fake_switch.bridges


@pytest.mark.asyncio
async def test_vpcs_of_different_owners_provision_in_parallel(orchestrator, fake_switch) -> None:
    reached, release = fake_switch.block_when("add-br")

    first = asyncio.create_task(make_vpc(orchestrator, cidr="10.0.0.0/16", owner="user-a"))
    await reached.wait()
    second = asyncio.create_task(make_vpc(orchestrator, cidr="10.0.0.0/16", owner="user-b"))
    await asyncio.sleep(0.05)
    assert len(fake_switch.commands("add-br")) == 2

    release.set()
    vpcs = await asyncio.gather(first, second)
    assert {vpc.bridge_name for vpc in vpcs} == set(fake_switch.bridges)


@pytest.mark.asyncio
async def test_concurrent_creates_of_one_owner_detect_cidr_conflict(orchestrator, fake_switch) -> None:
    reached, release = fake_switch.block_when("add-br")

    first = asyncio.create_task(make_vpc(orchestrator, cidr="10.9.0.0/16", name="a"))
    await reached.wait()
    second = asyncio.create_task(make_vpc(orchestrator, cidr="10.9.0.0/16", name="b"))
    await asyncio.sleep(0.05)
    # The second create waits for the first instead of validating alongside it
    assert len(fake_switch.commands("add-br")) == 1
    assert not second.done()

    release.set()
    created = await first
    with pytest.raises(ConflictError) as exc:
        await second
    assert exc.value.code == "CIDR_CONFLICT"
    assert [vpc.id for vpc in orchestrator.list_vpcs(OWNER).items] == [created.id]
    assert set(fake_switch.bridges) == {created.bridge_name}


# --- Subnets ---


@pytest.mark.asyncio
async def test_subnet_scenario_overlap_rejected_between_successes(orchestrator, fake_switch) -> None:
    vpc = await make_vpc(orchestrator, cidr="10.3.0.0/16")

    first = await make_subnet(orchestrator, vpc, cidr="10.3.1.0/24", name="a")
    with pytest.raises(SubnetOverlapError):
        await make_subnet(orchestrator, vpc, cidr="10.3.1.128/25", name="b")
    second = await make_subnet(orchestrator, vpc, cidr="10.3.2.0/24", name="c")

    assert [s.cidr_block for s in orchestrator.list_subnets(vpc.id)] == ["10.3.1.0/24", "10.3.2.0/24"]
    assert (first.vlan_tag, second.vlan_tag) == (100, 101)
    assert sorted(await orchestrator.list_bridge_ports(vpc.id), key=lambda p: p.vlan) == [
        SwitchPort(name=first.gateway_port, vlan=100, kind="internal"),
        SwitchPort(name=second.gateway_port, vlan=101, kind="internal"),
    ]
    assert fake_switch.addresses[first.gateway_port] == "10.3.1.1/24"
    assert fake_switch.addresses[second.gateway_port] == "10.3.2.1/24"


@pytest.mark.asyncio
async def test_subnet_must_fit_vpc(orchestrator) -> None:
    vpc = await make_vpc(orchestrator, cidr="10.3.0.0/16")
    with pytest.raises(ValidationError) as exc:
        await make_subnet(orchestrator, vpc, cidr="10.4.1.0/24")
    assert exc.value.code == "SUBNET_CIDR_OUT_OF_RANGE"


@pytest.mark.asyncio
async def test_subnet_vlan_skips_tags_already_on_switch(orchestrator, fake_switch, ovs) -> None:
    vpc = await make_vpc(orchestrator)
    await ovs.attach_port(vpc.bridge_name, "tap-stray")
    await ovs.set_vlan("tap-stray", 100)

    subnet = await make_subnet(orchestrator, vpc)
    assert subnet.vlan_tag == 101


@pytest.mark.asyncio
async def test_subnet_apply_failure_rolls_back_gateway(orchestrator, fake_switch, store) -> None:
    vpc = await make_vpc(orchestrator)
    fake_switch.fail_when("addr replace")

    with pytest.raises(ExternalToolError):
        await make_subnet(orchestrator, vpc)

    assert await orchestrator.list_bridge_ports(vpc.id) == []
    assert orchestrator.list_subnets(vpc.id) == []
    assert orchestrator.history()[-1].state == ActionState.ROLLED_BACK


@pytest.mark.asyncio
async def test_gateway_flow_failure_detaches_gateway(orchestrator, fake_switch) -> None:
    vpc = await make_vpc(orchestrator)
    flows_before = fake_switch.flow_specs(vpc.bridge_name)
    fake_switch.fail_when("actions=goto_table:20")

    with pytest.raises(ExternalToolError):
        await make_subnet(orchestrator, vpc)

    assert await orchestrator.list_bridge_ports(vpc.id) == []
    assert fake_switch.flow_specs(vpc.bridge_name) == flows_before
    assert orchestrator.history()[-1].rollback_errors == []


@pytest.mark.asyncio
async def test_update_and_delete_subnet(orchestrator, fake_switch) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    gateway_pass = f"priority=150,ip,in_port={subnet.gateway_port},actions=goto_table:20"
    assert gateway_pass in fake_switch.flow_specs(vpc.bridge_name)
    await make_subnet(orchestrator, vpc, cidr="10.0.2.0/24", name="db")

    updated = await orchestrator.update_subnet(subnet.id, SubnetUpdate(is_public=True))
    assert updated.is_public
    with pytest.raises(ConflictError):
        await orchestrator.update_subnet(subnet.id, SubnetUpdate(name="db"))

    port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1"))
    with pytest.raises(ConflictError) as exc:
        await orchestrator.delete_subnet(subnet.id)
    assert exc.value.code == "SUBNET_IN_USE"

    await orchestrator.detach_port(port.id)
    await orchestrator.delete_subnet(subnet.id)
    assert fake_switch.port_bridge(subnet.gateway_port) is None
    assert gateway_pass not in fake_switch.flow_specs(vpc.bridge_name)
    with pytest.raises(NotFoundError):
        orchestrator.get_subnet(subnet.id)


# --- Ports ---


@pytest.mark.asyncio
async def test_attach_port_leases_plumbs_and_notifies_worker(orchestrator, fake_switch, publisher) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)

    port = await orchestrator.attach_port(
        subnet.id, PortAttach(instance_id="i-1", name="web-1", worker_node_id="worker-a")
    )

    assert port.private_ip == "10.0.1.2"
    assert port.vlan_tag == subnet.vlan_tag
    assert port.state == PortState.PENDING
    assert fake_switch.port_bridge(port.port_name) == vpc.bridge_name
    assert fake_switch.port_tags[port.port_name] == subnet.vlan_tag
    # No security group: default closed in both directions
    assert port_flow_specs(fake_switch, vpc.bridge_name, port) == closed_port_specs(port)

    [command] = publisher.sent
    assert command.command_type == WorkerCommandType.ATTACH_PORT
    assert command.worker_node_id == "worker-a"
    assert command.payload["bridge"] == vpc.bridge_name
    assert command.payload["gateway"] == "10.0.1.1"
    assert command.payload["prefix_length"] == 24
    assert orchestrator.history()[-1].outcome == ActionOutcome.COMMITTED

    confirmed = await orchestrator.confirm_port(port.id)
    assert confirmed.state == PortState.ATTACHED


@pytest.mark.asyncio
async def test_attach_port_twice_is_conflict(orchestrator) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1"))
    with pytest.raises(ConflictError) as exc:
        await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1"))
    assert exc.value.code == "PORT_ALREADY_EXISTS"


@pytest.mark.asyncio
async def test_attach_port_persist_failure_leaves_no_trace(orchestrator, fake_switch, ovs, store, monkeypatch) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    flows_before = fake_switch.flow_specs(vpc.bridge_name)

    def boom(*args, **kwargs):
        raise RuntimeError("unique constraint failed")

    monkeypatch.setattr(store, "create_port", boom)

    with pytest.raises(PersistenceError):
        await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1"))

    await ovs.ensure_bridge(vpc.bridge_name)
    assert [p.name for p in await ovs.list_ports(vpc.bridge_name)] == [subnet.gateway_port]
    assert fake_switch.flow_specs(vpc.bridge_name) == flows_before
    assert store.list_leases(subnet.id) == {}


@pytest.mark.asyncio
async def test_subnet_exhaustion_and_reuse_after_detach(orchestrator) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc, cidr="10.0.9.0/28")

    ports = [await orchestrator.attach_port(subnet.id, PortAttach(instance_id=f"i-{n}")) for n in range(13)]
    assert [p.private_ip for p in ports] == [f"10.0.9.{host}" for host in range(2, 15)]

    with pytest.raises(ExhaustionError):
        await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-extra"))

    await orchestrator.detach_port(ports[4].id)
    again = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-extra"))
    assert again.private_ip == ports[4].private_ip


@pytest.mark.asyncio
async def test_detach_port_removes_switch_state_and_notifies(orchestrator, fake_switch, publisher, store) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1", worker_node_id="w1"))

    await orchestrator.detach_port(port.id)

    assert fake_switch.port_bridge(port.port_name) is None
    assert port_flow_specs(fake_switch, vpc.bridge_name, port) == []
    assert store.get_port(port.id) is None
    assert [c.command_type for c in publisher.sent] == [
        WorkerCommandType.ATTACH_PORT,
        WorkerCommandType.DETACH_PORT,
    ]
    with pytest.raises(NotFoundError):
        await orchestrator.detach_port(port.id)


@pytest.mark.asyncio
async def test_failed_publish_is_a_degraded_commit(orchestrator, publisher, store) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    publisher.deliver = False

    port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1"))

    result = orchestrator.history()[-1]
    assert result.state == ActionState.COMMITTED
    assert result.outcome == ActionOutcome.DEGRADED
    assert result.warnings == ["attach_port command for port i-1 was not delivered"]
    assert store.get_port(port.id) is not None


@pytest.mark.asyncio
async def test_concurrent_action_on_same_port_is_rejected(orchestrator, fake_switch) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    reached, release = fake_switch.block_when("add-port")

    first = asyncio.create_task(orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1")))
    await reached.wait()

    with pytest.raises(ConflictError) as exc:
        await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1"))
    assert exc.value.code == "ACTION_IN_PROGRESS"
    assert exc.value.action_result.outcome == ActionOutcome.ROLLED_BACK

    release.set()
    port = await first
    assert port.private_ip == "10.0.1.2"


@pytest.mark.asyncio
async def test_actions_in_one_vpc_are_serialized(orchestrator, fake_switch) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    reached, release = fake_switch.block_when("add-port")

    first = asyncio.create_task(orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1")))
    await reached.wait()
    second = asyncio.create_task(orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-2")))
    await asyncio.sleep(0.05)
    assert not second.done()

    release.set()
    ports = await asyncio.gather(first, second)
    assert sorted(p.private_ip for p in ports) == ["10.0.1.2", "10.0.1.3"]


@pytest.mark.asyncio
async def test_cancelled_caller_still_reaches_terminal_state(orchestrator, fake_switch, store) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    reached, release = fake_switch.block_when("add-port")

    caller = asyncio.create_task(orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1")))
    await reached.wait()
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    release.set()
    await orchestrator.wait_idle()

    result = orchestrator.history()[-1]
    assert result.action == "attach_port"
    assert result.state == ActionState.COMMITTED
    port = store.get_port("i-1")
    assert fake_switch.port_bridge(port.port_name) == vpc.bridge_name


# --- Security groups ---


@pytest.mark.asyncio
async def test_deny_declared_after_allow_wins_on_switch(orchestrator, fake_switch) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    group = await orchestrator.create_security_group(
        vpc.id,
        SecurityGroupCreate(
            name="ssh",
            rules=[
                SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=22, to_port=22),
                SecurityGroupRuleSpec(
                    direction="inbound", protocol="tcp", from_port=22, to_port=22,
                    source="10.0.0.0/8", action="deny",
                ),
            ],
        ),
    )
    assert group.id.startswith("sg-")

    port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1", security_group_ids=[group.id]))

    flows = {f.match: f for f in await orchestrator.list_bridge_flows(vpc.id) if f.table == 20}
    deny = flows["tcp,nw_src=10.0.0.0/8,nw_dst=10.0.1.2,tp_dst=22"]
    allow = flows["tcp,nw_dst=10.0.1.2,tp_dst=22"]
    default = flows["ip,nw_dst=10.0.1.2"]
    assert deny.actions == "drop" and allow.actions == "NORMAL" and default.actions == "drop"
    assert deny.priority > allow.priority > default.priority
    assert port.security_group_ids == [group.id]


@pytest.mark.asyncio
async def test_group_source_tracks_membership(orchestrator, fake_switch) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    web = await orchestrator.create_security_group(vpc.id, SecurityGroupCreate(name="web"))
    db = await orchestrator.create_security_group(
        vpc.id,
        SecurityGroupCreate(
            name="db",
            rules=[SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=5432, source=web.id)],
        ),
    )
    db_port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="db-1", security_group_ids=[db.id]))
    # Nobody in web yet: only the default deny
    assert len(port_flow_specs(fake_switch, vpc.bridge_name, db_port)) == 4

    web_port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="web-1", security_group_ids=[web.id]))
    allow = f"table=20,priority=30000,tcp,nw_src={web_port.private_ip},nw_dst={db_port.private_ip},tp_dst=5432,actions=NORMAL"
    assert allow in fake_switch.flow_specs(vpc.bridge_name)

    await orchestrator.detach_port(web_port.id)
    assert allow not in fake_switch.flow_specs(vpc.bridge_name)
    assert len(port_flow_specs(fake_switch, vpc.bridge_name, db_port)) == 4


@pytest.mark.asyncio
async def test_unknown_group_reference_is_rejected(orchestrator) -> None:
    vpc = await make_vpc(orchestrator)
    with pytest.raises(ValidationError) as exc:
        await orchestrator.create_security_group(
            vpc.id,
            SecurityGroupCreate(name="bad", rules=[SecurityGroupRuleSpec(direction="inbound", source="sg-nope")]),
        )
    assert exc.value.code == "INVALID_RULE"


@pytest.mark.asyncio
async def test_attach_with_group_from_other_vpc_is_rejected(orchestrator) -> None:
    vpc = await make_vpc(orchestrator)
    other = await make_vpc(orchestrator, cidr="10.1.0.0/16", name="other")
    subnet = await make_subnet(orchestrator, vpc)
    group = await orchestrator.create_security_group(other.id, SecurityGroupCreate(name="x"))
    with pytest.raises(NotFoundError):
        await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1", security_group_ids=[group.id]))


@pytest.mark.asyncio
async def test_replace_rules_reprograms_members_and_prunes_stale(orchestrator, fake_switch) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    group = await orchestrator.create_security_group(
        vpc.id,
        SecurityGroupCreate(name="web", rules=[SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=80)]),
    )
    port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1", security_group_ids=[group.id]))

    updated = await orchestrator.replace_security_group_rules(
        group.id, [SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=443)]
    )

    assert [r.from_port for r in updated.rules] == [443]
    assert port_flow_specs(fake_switch, vpc.bridge_name, port) == sorted(
        closed_port_specs(port) + ["table=20,priority=30000,tcp,nw_dst=10.0.1.2,tp_dst=443,actions=NORMAL"]
    )


@pytest.mark.asyncio
async def test_replace_rules_apply_failure_restores_flows(orchestrator, fake_switch, store) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    group = await orchestrator.create_security_group(
        vpc.id,
        SecurityGroupCreate(name="web", rules=[SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=80)]),
    )
    port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1", security_group_ids=[group.id]))
    before = port_flow_specs(fake_switch, vpc.bridge_name, port)

    fake_switch.fail_when("tp_dst=443")
    with pytest.raises(ExternalToolError):
        await orchestrator.replace_security_group_rules(
            group.id, [SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=443)]
        )

    assert port_flow_specs(fake_switch, vpc.bridge_name, port) == before
    assert [r.from_port for r in store.get_security_group(group.id).rules] == [80]


@pytest.mark.asyncio
async def test_set_port_security_groups(orchestrator, fake_switch, publisher) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    ssh = await orchestrator.create_security_group(
        vpc.id,
        SecurityGroupCreate(name="ssh", rules=[SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=22)]),
    )
    egress = await orchestrator.create_security_group(
        vpc.id, SecurityGroupCreate(name="egress", rules=[SecurityGroupRuleSpec(direction="outbound")])
    )
    port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="i-1"))

    updated = await orchestrator.set_port_security_groups(port.id, [ssh.id, egress.id])

    assert updated.security_group_ids == [ssh.id, egress.id]
    specs = port_flow_specs(fake_switch, vpc.bridge_name, port)
    assert f"table=10,priority=30000,ip,in_port={port.port_name},nw_src=10.0.1.2,actions=goto_table:20" in specs
    assert "table=20,priority=30000,tcp,nw_dst=10.0.1.2,tp_dst=22,actions=NORMAL" in specs
    assert publisher.sent[-1].command_type == WorkerCommandType.UPDATE_PORT

    with pytest.raises(ValidationError):
        await orchestrator.set_port_security_groups(port.id, [ssh.id, ssh.id])


@pytest.mark.asyncio
async def test_delete_security_group_forces_default_deny(orchestrator, fake_switch, store) -> None:
    vpc = await make_vpc(orchestrator)
    subnet = await make_subnet(orchestrator, vpc)
    web = await orchestrator.create_security_group(
        vpc.id,
        SecurityGroupCreate(name="web", rules=[SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=80)]),
    )
    db = await orchestrator.create_security_group(
        vpc.id,
        SecurityGroupCreate(
            name="db",
            rules=[SecurityGroupRuleSpec(direction="inbound", protocol="tcp", from_port=5432, source=web.id)],
        ),
    )
    web_port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="web-1", security_group_ids=[web.id]))
    db_port = await orchestrator.attach_port(subnet.id, PortAttach(instance_id="db-1", security_group_ids=[db.id]))
    assert len(port_flow_specs(fake_switch, vpc.bridge_name, db_port)) == 5

    await orchestrator.delete_security_group(web.id)

    # Member falls back to the default deny
    assert port_flow_specs(fake_switch, vpc.bridge_name, web_port) == closed_port_specs(web_port)
    assert store.get_port(web_port.id).security_group_ids == []
    # Rules naming the deleted group no longer admit anyone
    assert len(port_flow_specs(fake_switch, vpc.bridge_name, db_port)) == 4
    with pytest.raises(NotFoundError):
        orchestrator.get_security_group(web.id)


@pytest.mark.asyncio
async def test_update_security_group(orchestrator) -> None:
    vpc = await make_vpc(orchestrator)
    group = await orchestrator.create_security_group(vpc.id, SecurityGroupCreate(name="web"))
    await orchestrator.create_security_group(vpc.id, SecurityGroupCreate(name="db"))

    updated = await orchestrator.update_security_group(group.id, SecurityGroupUpdate(description="frontends"))
    assert updated.description == "frontends"
    with pytest.raises(ConflictError):
        await orchestrator.update_security_group(group.id, SecurityGroupUpdate(name="db"))
    with pytest.raises(ConflictError):
        await orchestrator.create_security_group(vpc.id, SecurityGroupCreate(name="db"))
    assert [g.name for g in orchestrator.list_security_groups(vpc.id)] == ["web", "db"]
