from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass, field

import pytest

from netplane.config import Settings
from netplane.db import create_session_factory
from netplane.events.commands import WorkerCommand
from netplane.network.cmd import CommandResult
from netplane.network.flows import Flow, build_flow_spec, parse_flow_line
from netplane.network.ovs import OVSManager
from netplane.orchestrator import ProvisioningOrchestrator
from netplane.security.compiler import SecurityRuleCompiler
from netplane.storage import NetworkStore

L4_PROTOCOLS = {"tcp", "udp", "icmp"}


@dataclass
class FakeBridge:
    name: str
    ports: list[str] = field(default_factory=list)
    flows: list[Flow] = field(default_factory=list)
    options: dict[str, str] = field(default_factory=dict)
    controller: str = ""
    up: bool = False


class FakeSwitch:
    """In-memory stand-in for ovs-vsctl, ovs-ofctl and ip.

    Used as the OVSManager command runner. Only the command shapes the
    manager emits are understood; anything else fails loudly.
    """

    def __init__(self) -> None:
        self.bridges: dict[str, FakeBridge] = {}
        self.port_tags: dict[str, int] = {}
        self.interface_types: dict[str, str] = {}
        self.addresses: dict[str, str] = {}
        self.links_up: set[str] = set()
        self.calls: list[list[str]] = []
        self._failures: list[tuple[str, str]] = []
        self._gates: list[tuple[str, asyncio.Event, asyncio.Event]] = []

    # --- Test controls ---

    def fail_when(self, fragment: str, stderr: str = "simulated failure") -> None:
        """Make every command containing ``fragment`` exit 1."""
        self._failures.append((fragment, stderr))

    def clear_failures(self) -> None:
        self._failures.clear()

    def block_when(self, fragment: str) -> tuple[asyncio.Event, asyncio.Event]:
        """Hold commands containing ``fragment`` until the release event is set.

        Returns (reached, release): ``reached`` is set once a command hits the gate.
        """
        reached, release = asyncio.Event(), asyncio.Event()
        self._gates.append((fragment, reached, release))
        return reached, release

    def commands(self, fragment: str = "") -> list[str]:
        return [" ".join(cmd) for cmd in self.calls if fragment in " ".join(cmd)]

    def flow_specs(self, bridge: str) -> list[str]:
        return [build_flow_spec(flow) for flow in self.bridges[bridge].flows]

    def port_bridge(self, port: str) -> str | None:
        for bridge in self.bridges.values():
            if port in bridge.ports:
                return bridge.name
        return None

    # --- Runner ---

    async def __call__(self, cmd: list[str]) -> CommandResult:
        self.calls.append(list(cmd))
        line = " ".join(cmd)
        for fragment, reached, release in self._gates:
            if fragment in line:
                reached.set()
                await release.wait()
        for fragment, stderr in self._failures:
            if fragment in line:
                return CommandResult(1, "", stderr)

        tool, args = cmd[0], cmd[1:]
        if tool.endswith("ovs-vsctl"):
            return self._vsctl(args)
        if tool.endswith("ovs-ofctl"):
            return self._ofctl(args)
        if tool.endswith("ip"):
            return self._ip(args)
        raise AssertionError(f"Unexpected command: {line}")

    @staticmethod
    def _ok(stdout: str = "") -> CommandResult:
        return CommandResult(0, stdout, "")

    @staticmethod
    def _err(stderr: str, returncode: int = 1) -> CommandResult:
        return CommandResult(returncode, "", stderr)

    def _vsctl(self, args: list[str]) -> CommandResult:
        may_exist = "--may-exist" in args
        if_exists = "--if-exists" in args
        args = [a for a in args if a not in ("--may-exist", "--if-exists")]
        verb = args[0]

        if verb == "br-exists":
            return self._ok() if args[1] in self.bridges else self._err("", returncode=2)
        if verb == "add-br":
            if args[1] in self.bridges and not may_exist:
                return self._err(f'ovs-vsctl: cannot create a bridge named {args[1]} because a bridge named {args[1]} already exists')
            self.bridges.setdefault(args[1], FakeBridge(args[1]))
            return self._ok()
        if verb == "del-br":
            bridge = self.bridges.pop(args[1], None)
            if bridge is None and not if_exists:
                return self._err(f"ovs-vsctl: no bridge named {args[1]}")
            for port in bridge.ports if bridge else []:
                self.port_tags.pop(port, None)
                self.interface_types.pop(port, None)
            return self._ok()
        if verb == "list-br":
            return self._ok("".join(f"{name}\n" for name in sorted(self.bridges)))
        if verb == "set" and args[1] == "bridge":
            bridge = self.bridges[args[2]]
            for pair in args[3:]:
                key, _, value = pair.partition("=")
                bridge.options[key] = value
            return self._ok()
        if verb == "set-controller":
            self.bridges[args[1]].controller = args[2]
            return self._ok()
        if verb == "del-controller":
            self.bridges[args[1]].controller = ""
            return self._ok()
        if verb == "get-controller":
            return self._ok(f"{self.bridges[args[1]].controller}\n")
        if verb == "get-fail-mode":
            return self._ok(f"{self.bridges[args[1]].options.get('fail_mode', '')}\n")
        if verb == "get" and args[1] == "bridge":
            if args[3] == "_uuid":
                return self._ok(f"uuid-{args[2]}\n")
            return self._ok('"0000000000000001"\n')
        if verb == "add-port":
            bridge, port = self.bridges.get(args[1]), args[2]
            if bridge is None:
                return self._err(f"ovs-vsctl: no bridge named {args[1]}")
            owner = self.port_bridge(port)
            if owner is not None:
                if may_exist and owner == bridge.name:
                    return self._ok()
                return self._err(f"ovs-vsctl: cannot create a port named {port} because a port named {port} already exists")
            bridge.ports.append(port)
            self.interface_types[port] = ""
            if "--" in args and "type=internal" in args:
                self.interface_types[port] = "internal"
            return self._ok()
        if verb == "del-port":
            bridge, port = self.bridges.get(args[1]), args[2]
            if bridge is None or port not in bridge.ports:
                return self._ok() if if_exists else self._err(f"ovs-vsctl: no port named {port}")
            bridge.ports.remove(port)
            self.port_tags.pop(port, None)
            self.interface_types.pop(port, None)
            return self._ok()
        if verb == "port-to-br":
            owner = self.port_bridge(args[1])
            if owner is None:
                return self._err(f"ovs-vsctl: no port named {args[1]}")
            return self._ok(f"{owner}\n")
        if verb == "list-ports":
            return self._ok("".join(f"{port}\n" for port in sorted(self.bridges[args[1]].ports)))
        if args[:2] == ["--format=csv", "--columns=name,tag"]:
            rows = ["name,tag"]
            rows += [f"{port},{self.port_tags.get(port) or '[]'}" for port in sorted(self.interface_types)]
            return self._ok("\n".join(rows) + "\n")
        if args[:2] == ["--format=csv", "--columns=name,type"]:
            rows = ["name,type"]
            rows += [f'{port},"{kind}"' for port, kind in sorted(self.interface_types.items())]
            return self._ok("\n".join(rows) + "\n")
        if verb in ("set", "clear", "get") and args[1] == "port":
            port = args[2]
            if self.port_bridge(port) is None:
                return self._err(f'ovs-vsctl: no row "{port}" in table Port')
            if verb == "set":
                self.port_tags[port] = int(args[3].partition("=")[2])
                return self._ok()
            if verb == "clear":
                self.port_tags.pop(port, None)
                return self._ok()
            tag = self.port_tags.get(port)
            return self._ok(f"{tag}\n" if tag else "[]\n")
        raise AssertionError(f"Unexpected ovs-vsctl command: {shlex.join(args)}")

    def _ofctl(self, args: list[str]) -> CommandResult:
        assert args[:2] == ["-O", "OpenFlow13"], args
        args = args[2:]
        strict = "--strict" in args
        args = [a for a in args if a not in ("--strict", "--names")]
        verb, bridge_name = args[0], args[1]
        bridge = self.bridges.get(bridge_name)
        if bridge is None:
            return self._err(f"ovs-ofctl: {bridge_name} is not a bridge or a socket")

        if verb == "add-flow":
            flow = parse_flow_line(args[2])
            for token in flow.match.split(","):
                if token.startswith("in_port=") and token[8:] not in bridge.ports:
                    return self._err(f"ovs-ofctl: {token}: unknown port")
            bridge.flows = [f for f in bridge.flows if _key(f) != _key(flow)]
            bridge.flows.append(flow)
            return self._ok()
        if verb == "del-flows":
            target = parse_flow_line(f"{args[2]} actions=") if len(args) > 2 else Flow()
            if strict:
                bridge.flows = [f for f in bridge.flows if _key(f) != _key(target)]
            else:
                bridge.flows = [f for f in bridge.flows if not _covers(target, f)]
            return self._ok()
        if verb == "dump-flows":
            lines = ["OFPST_FLOW reply (OF1.3) (xid=0x2):"]
            for flow in sorted(bridge.flows, key=lambda f: (f.table, -f.priority, f.match)):
                head = f"priority={flow.priority}" + (f",{_quote_port_names(flow.match)}" if flow.match else "")
                lines.append(
                    f" cookie=0x0, duration=1.234s, table={flow.table}, n_packets=0, n_bytes=0, "
                    f"{head} actions={flow.actions}"
                )
            return self._ok("\n".join(lines) + "\n")
        raise AssertionError(f"Unexpected ovs-ofctl command: {shlex.join(args)}")

    def _ip(self, args: list[str]) -> CommandResult:
        if args[:2] == ["link", "set"]:
            device = args[3]
            if device not in self.bridges and self.port_bridge(device) is None:
                return self._err(f'Cannot find device "{device}"')
            self.links_up.add(device)
            if device in self.bridges:
                self.bridges[device].up = True
            return self._ok()
        if args[:2] == ["addr", "replace"]:
            self.addresses[args[4]] = args[2]
            return self._ok()
        raise AssertionError(f"Unexpected ip command: {shlex.join(args)}")


def _quote_port_names(match: str) -> str:
    return ",".join(
        f'in_port="{token[8:]}"' if token.startswith("in_port=") else token for token in match.split(",")
    )


def _key(flow: Flow) -> tuple[int, int, str]:
    return flow.table, flow.priority, flow.match


def _match_fields(match: str) -> set[str]:
    fields = {token for token in match.split(",") if token}
    if fields & L4_PROTOCOLS:
        fields.add("ip")
    return fields


def _covers(target: Flow, flow: Flow) -> bool:
    """Non-strict del-flows semantics: same table, flow at least as specific."""
    return flow.table == target.table and _match_fields(target.match) <= _match_fields(flow.match)


class FakePublisher:
    """Records worker commands; set ``deliver`` to False to simulate an outage."""

    def __init__(self) -> None:
        self.sent: list[WorkerCommand] = []
        self.deliver = True

    async def publish(self, command: WorkerCommand) -> bool:
        if not self.deliver:
            return False
        self.sent.append(command)
        return True

    async def close(self) -> None:
        pass


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        controller_target="",
        subnet_vlan_base=100,
        subnet_vlan_max=4094,
        action_history_size=50,
    )


@pytest.fixture
def fake_switch() -> FakeSwitch:
    return FakeSwitch()


@pytest.fixture
def ovs(fake_switch: FakeSwitch, test_settings: Settings) -> OVSManager:
    return OVSManager(runner=fake_switch, settings=test_settings)


@pytest.fixture
def store(test_settings: Settings) -> NetworkStore:
    return NetworkStore(create_session_factory(test_settings.database_url, create_tables=True))


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def compiler(test_settings: Settings) -> SecurityRuleCompiler:
    return SecurityRuleCompiler(test_settings)


@pytest.fixture
def orchestrator(
    ovs: OVSManager,
    store: NetworkStore,
    compiler: SecurityRuleCompiler,
    publisher: FakePublisher,
    test_settings: Settings,
) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        switch=ovs,
        store=store,
        compiler=compiler,
        publisher=publisher,
        settings=test_settings,
    )
