"""Open vSwitch topology management for VPC bridges.

This module is the only place that talks to the switch. It wraps
``ovs-vsctl``, ``ovs-ofctl`` and ``ip`` behind idempotent operations:

- Bridges: ensure (create + up + hardening), delete, inspect
- Ports: attach (internal or passthrough), detach, list
- VLAN tags: set/get per port (0 = untagged)
- Flows: add, delete (strict or by match), dump

Every command runs through an injected runner with a hard timeout. The
runner is the seam for swapping the process-exec strategy for a native
OVSDB/OpenFlow client without touching callers.

Existence checks return False/None for absent resources and raise
ExternalToolError for tool failures; callers must not conflate the two.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from netplane.config import Settings, settings as default_settings
from netplane.errors import ExternalToolError, NotFoundError, ValidationError
from netplane.network.cmd import CommandResult, CommandRunner, make_runner
from netplane.network.flows import Flow, build_flow_spec, parse_dump_flows
from netplane.network.naming import validate_interface_name
from netplane.network.ovs_vlan_tags import (
    parse_csv_columns,
    parse_list_ports_output,
    parse_tag_field,
    port_tags_from_ovs_outputs,
)
from netplane.state import PortKind

logger = logging.getLogger(__name__)

# `ovs-vsctl br-exists` exit status for a missing bridge
BR_EXISTS_ABSENT = 2

MAX_VLAN_TAG = 4094


@dataclass
class SwitchPort:
    """A port as currently programmed on a bridge."""

    name: str
    vlan: int = 0
    kind: str = ""  # interface type: "internal", "" (system), "patch", ...


@dataclass
class BridgeInfo:
    """Detailed state of one bridge."""

    name: str
    uuid: str
    datapath_id: str
    controller: str
    fail_mode: str
    ports: list[SwitchPort] = field(default_factory=list)


class OVSManager:
    """Idempotent CRUD over bridges, ports, VLAN tags and flows."""

    def __init__(self, runner: CommandRunner | None = None, settings: Settings | None = None):
        self._settings = settings or default_settings
        self._run = runner or make_runner(self._settings.command_timeout)

    # --- Command helpers ---

    async def _vsctl(self, *args: str) -> CommandResult:
        return await self._run([self._settings.ovs_vsctl_path, *args])

    async def _ofctl(self, verb: str, *args: str, options: tuple[str, ...] = ()) -> CommandResult:
        return await self._run(
            [self._settings.ovs_ofctl_path, "-O", self._settings.openflow_protocol, *options, verb, *args]
        )

    async def _ip(self, *args: str) -> CommandResult:
        return await self._run([self._settings.ip_path, *args])

    @staticmethod
    def _check(result: CommandResult, action: str, cmd_name: str) -> CommandResult:
        if not result.ok:
            logger.error(f"Failed to {action}: {result.stderr.strip()}")
            raise ExternalToolError(
                f"Failed to {action}",
                command=[cmd_name],
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    # --- Bridges ---

    async def bridge_exists(self, name: str) -> bool:
        """Check if a bridge exists.

        Raises:
            ExternalToolError: If ovs-vsctl failed for another reason
        """
        result = await self._vsctl("br-exists", name)
        if result.returncode == 0:
            return True
        if result.returncode == BR_EXISTS_ABSENT:
            return False
        self._check(result, f"check existence of bridge {name}", "ovs-vsctl")
        return False

    async def ensure_bridge(self, name: str) -> bool:
        """Create a bridge if absent, bring it up and apply the hardening profile.

        An existing bridge is a success, and the profile is re-applied so
        repeated calls converge on identical state.

        Returns:
            True if the bridge was created by this call, False if it existed
        """
        validate_interface_name(name, self._settings.max_interface_name)

        created = False
        if not await self.bridge_exists(name):
            self._check(
                await self._vsctl("--may-exist", "add-br", name),
                f"create bridge {name}",
                "ovs-vsctl",
            )
            created = True
            logger.info(f"Created bridge {name}")

        self._check(
            await self._ip("link", "set", "dev", name, "up"),
            f"bring bridge {name} up",
            "ip",
        )

        # The controller owns topology: no L2 loop protocols, drop traffic
        # without an explicit flow, never forward BPDUs.
        self._check(
            await self._vsctl(
                "set", "bridge", name,
                "stp_enable=false",
                "rstp_enable=false",
                "mcast_snooping_enable=false",
                "fail_mode=secure",
                f"protocols={self._settings.openflow_protocol}",
                "other_config:forward-bpdu=false",
            ),
            f"apply hardening profile to bridge {name}",
            "ovs-vsctl",
        )
        return created

    async def delete_bridge(self, name: str) -> bool:
        """Delete a bridge. Deleting an absent bridge is a no-op success.

        Returns:
            True if a bridge was deleted, False if none existed
        """
        if not await self.bridge_exists(name):
            logger.debug(f"Bridge {name} does not exist, nothing to delete")
            return False
        self._check(
            await self._vsctl("--if-exists", "del-br", name),
            f"delete bridge {name}",
            "ovs-vsctl",
        )
        logger.info(f"Deleted bridge {name}")
        return True

    async def list_bridges(self) -> list[str]:
        result = self._check(await self._vsctl("list-br"), "list bridges", "ovs-vsctl")
        return parse_list_ports_output(result.stdout)

    async def set_controller(self, bridge: str, target: str | None) -> None:
        """Register (or with an empty target, remove) the OpenFlow controller."""
        if target:
            self._check(
                await self._vsctl("set-controller", bridge, target),
                f"set controller for bridge {bridge}",
                "ovs-vsctl",
            )
        else:
            self._check(
                await self._vsctl("del-controller", bridge),
                f"remove controller from bridge {bridge}",
                "ovs-vsctl",
            )

    async def get_bridge_info(self, name: str) -> BridgeInfo:
        if not await self.bridge_exists(name):
            raise NotFoundError(f"Bridge {name} does not exist", code="BRIDGE_NOT_FOUND")

        uuid = self._check(
            await self._vsctl("get", "bridge", name, "_uuid"),
            f"get UUID of bridge {name}",
            "ovs-vsctl",
        ).stdout.strip()
        datapath = await self._vsctl("get", "bridge", name, "datapath_id")
        controller = await self._vsctl("get-controller", name)
        fail_mode = await self._vsctl("get-fail-mode", name)

        return BridgeInfo(
            name=name,
            uuid=uuid,
            datapath_id=datapath.stdout.strip().strip('"') if datapath.ok else "",
            controller=controller.stdout.strip() if controller.ok else "",
            fail_mode=fail_mode.stdout.strip() if fail_mode.ok else "",
            ports=await self.list_ports(name),
        )

    # --- Ports ---

    async def attach_port(self, bridge: str, port: str, kind: PortKind | str = PortKind.PASSTHROUGH) -> None:
        """Attach a port to a bridge.

        Internal ports are created by OVS; passthrough ports hand an existing
        device (tap/veth) to the bridge. Re-attaching is a no-op.

        Raises:
            NotFoundError: If the bridge does not exist
        """
        kind = PortKind(kind)
        validate_interface_name(port, self._settings.max_interface_name)
        if not await self.bridge_exists(bridge):
            raise NotFoundError(f"Bridge {bridge} does not exist", code="BRIDGE_NOT_FOUND")

        args = ["--may-exist", "add-port", bridge, port]
        if kind == PortKind.INTERNAL:
            args += ["--", "set", "interface", port, "type=internal"]
        self._check(
            await self._vsctl(*args),
            f"add port {port} to bridge {bridge}",
            "ovs-vsctl",
        )
        logger.info(f"Attached {kind.value} port {port} to bridge {bridge}")

    async def detach_port(self, bridge: str, port: str) -> None:
        """Detach a port. Detaching an absent port is a no-op success."""
        self._check(
            await self._vsctl("--if-exists", "del-port", bridge, port),
            f"delete port {port} from bridge {bridge}",
            "ovs-vsctl",
        )
        logger.info(f"Detached port {port} from bridge {bridge}")

    async def port_bridge(self, port: str) -> str | None:
        """Return the bridge a port is attached to, or None if absent."""
        result = await self._vsctl("port-to-br", port)
        if result.ok:
            return result.stdout.strip()
        if "no port named" in result.stderr:
            return None
        self._check(result, f"look up port {port}", "ovs-vsctl")
        return None

    async def port_exists(self, port: str) -> bool:
        return await self.port_bridge(port) is not None

    async def _port_tags(self, bridge: str) -> dict[str, int]:
        """VLAN tag of every port on the bridge (0 = untagged)."""
        ports_out = self._check(
            await self._vsctl("list-ports", bridge),
            f"list ports of bridge {bridge}",
            "ovs-vsctl",
        ).stdout
        if not parse_list_ports_output(ports_out):
            return {}
        tags_csv = self._check(
            await self._vsctl("--format=csv", "--columns=name,tag", "list", "port"),
            "list port tags",
            "ovs-vsctl",
        ).stdout
        try:
            return port_tags_from_ovs_outputs(
                bridge_list_ports_output=ports_out,
                list_port_name_tag_csv=tags_csv,
            )
        except ValueError as e:
            raise ExternalToolError(
                f"Unexpected port tag output for bridge {bridge}", stderr=str(e)
            ) from e

    async def list_ports(self, bridge: str) -> list[SwitchPort]:
        """List ports on a bridge with their VLAN tag and interface type.

        Raises:
            NotFoundError: If the bridge does not exist
        """
        if not await self.bridge_exists(bridge):
            raise NotFoundError(f"Bridge {bridge} does not exist", code="BRIDGE_NOT_FOUND")

        tags = await self._port_tags(bridge)
        if not tags:
            return []
        types_csv = self._check(
            await self._vsctl("--format=csv", "--columns=name,type", "list", "interface"),
            "list interface types",
            "ovs-vsctl",
        ).stdout
        types = parse_csv_columns(types_csv, "name", "type")
        return [SwitchPort(name=name, vlan=tag, kind=types.get(name, "")) for name, tag in tags.items()]

    async def used_vlan_tags(self, bridge: str) -> set[int]:
        """VLAN tags currently programmed on any port of the bridge."""
        if not await self.bridge_exists(bridge):
            return set()
        return {tag for tag in (await self._port_tags(bridge)).values() if tag > 0}

    # --- VLAN tags ---

    async def set_vlan(self, port: str, tag: int) -> None:
        """Set the access VLAN tag of a port. Tag 0 clears it (untagged)."""
        if not 0 <= tag <= MAX_VLAN_TAG:
            raise ValidationError(f"Invalid VLAN tag: {tag}", code="INVALID_VLAN")
        if tag == 0:
            result = await self._vsctl("clear", "port", port, "tag")
        else:
            result = await self._vsctl("set", "port", port, f"tag={tag}")
        if not result.ok and "no row" in result.stderr:
            raise NotFoundError(f"Port {port} does not exist", code="PORT_NOT_FOUND")
        self._check(result, f"set VLAN {tag} on port {port}", "ovs-vsctl")

    async def get_vlan(self, port: str) -> int:
        """Get the access VLAN tag of a port (0 = untagged).

        Raises:
            NotFoundError: If the port does not exist
        """
        result = await self._vsctl("get", "port", port, "tag")
        if not result.ok and "no row" in result.stderr:
            raise NotFoundError(f"Port {port} does not exist", code="PORT_NOT_FOUND")
        self._check(result, f"get VLAN of port {port}", "ovs-vsctl")
        try:
            return parse_tag_field(result.stdout)
        except ValueError as e:
            raise ExternalToolError(
                f"Invalid VLAN value for port {port}", stderr=str(e)
            ) from e

    # --- Interface addressing ---

    async def set_interface_address(self, device: str, cidr: str) -> None:
        """Assign an address to a device (idempotent) and bring it up."""
        self._check(
            await self._ip("addr", "replace", cidr, "dev", device),
            f"assign {cidr} to {device}",
            "ip",
        )
        self._check(
            await self._ip("link", "set", "dev", device, "up"),
            f"bring {device} up",
            "ip",
        )

    # --- Flows ---

    async def apply_flow(self, bridge: str, flow: Flow) -> None:
        self._check(
            await self._ofctl("add-flow", bridge, build_flow_spec(flow)),
            f"add flow to bridge {bridge}",
            "ovs-ofctl",
        )

    async def remove_flow(self, bridge: str, flow: Flow, strict: bool = False) -> None:
        """Delete flows matching ``flow``.

        Non-strict deletion removes every entry at least as specific as the
        match (priority is ignored by OVS). Strict deletion removes only the
        entry with exactly this table, priority and match.
        """
        # Explicit table, otherwise del-flows sweeps every table for table 0
        if strict:
            head, options = [f"table={flow.table}", f"priority={flow.priority}"], ("--strict",)
        else:
            head, options = [f"table={flow.table}"], ()
        spec = ",".join(head + ([flow.match] if flow.match else []))
        self._check(
            await self._ofctl("del-flows", bridge, spec, options=options),
            f"delete flow from bridge {bridge}",
            "ovs-ofctl",
        )

    async def list_flows(self, bridge: str) -> list[Flow]:
        result = self._check(
            await self._ofctl("dump-flows", bridge, options=("--names",)),
            f"list flows of bridge {bridge}",
            "ovs-ofctl",
        )
        return parse_dump_flows(result.stdout)
