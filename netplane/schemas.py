from __future__ import annotations

import ipaddress
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from netplane.state import Direction, PortKind, PortState, Protocol, RuleAction, VPCState

SECURITY_GROUP_ID_PREFIX = "sg-"
ANY_CIDR = "0.0.0.0/0"
MAX_PORT = 65535


def is_security_group_ref(value: str) -> bool:
    """True if a rule source names a security group rather than a CIDR."""
    return value.startswith(SECURITY_GROUP_ID_PREFIX)


class _ClosedUpdate(BaseModel):
    """Base for update payloads: unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# --- VPC ---


class VPCCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    cidr_block: str
    description: str | None = None


class VPCUpdate(_ClosedUpdate):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None


class VPCOut(BaseModel):
    id: str
    name: str
    cidr_block: str
    description: str | None = None
    user_id: str
    state: VPCState = VPCState.AVAILABLE
    bridge_name: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VPCPage(BaseModel):
    items: list[VPCOut]
    total: int
    page: int
    page_size: int
    total_pages: int


# --- Subnet ---


class SubnetCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    cidr_block: str
    availability_zone: str = Field(min_length=1, max_length=64)
    is_public: bool = False


class SubnetUpdate(_ClosedUpdate):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    is_public: bool | None = None


class SubnetOut(BaseModel):
    id: str
    vpc_id: str
    name: str
    cidr_block: str
    availability_zone: str
    is_public: bool
    vlan_tag: int
    gateway_port: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# --- Security groups ---


class SecurityGroupRuleSpec(BaseModel):
    """One security group rule.

    ``source`` is the remote side of the traffic: the sender for inbound
    rules and the destination for outbound rules. It is either a CIDR
    block or a security group id (``sg-...``).
    """

    direction: Direction
    protocol: Protocol = Protocol.ALL
    from_port: int | None = None
    to_port: int | None = None
    source: str = ANY_CIDR
    action: RuleAction = RuleAction.ALLOW
    description: str | None = None

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @field_validator("source")
    @classmethod
    def _check_source(cls, value: str) -> str:
        value = value.strip()
        if is_security_group_ref(value):
            if len(value) <= len(SECURITY_GROUP_ID_PREFIX):
                raise ValueError("security group reference is empty")
            return value
        try:
            network = ipaddress.ip_network(value, strict=False)
        except ValueError as e:
            raise ValueError(f"source must be a CIDR block or security group id: {value}") from e
        if network.version != 4:
            raise ValueError("only IPv4 sources are supported")
        return str(network)

    @model_validator(mode="before")
    @classmethod
    def _normalize_ports(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        protocol = data.get("protocol", Protocol.ALL)
        if str(getattr(protocol, "value", protocol)) in (Protocol.ICMP.value, Protocol.ALL.value):
            # Port ranges are meaningless without L4 ports
            return {**data, "from_port": None, "to_port": None}
        from_port, to_port = data.get("from_port"), data.get("to_port")
        if from_port is not None and to_port is None:
            return {**data, "to_port": from_port}
        if to_port is not None and from_port is None:
            return {**data, "from_port": to_port}
        return data

    @model_validator(mode="after")
    def _check_ports(self) -> "SecurityGroupRuleSpec":
        if self.from_port is None:
            return self
        if not 0 <= self.from_port <= MAX_PORT or not 0 <= self.to_port <= MAX_PORT:
            raise ValueError(f"ports must be within 0-{MAX_PORT}")
        if self.from_port > self.to_port:
            raise ValueError("from_port must not exceed to_port")
        return self


class SecurityGroupRuleOut(SecurityGroupRuleSpec):
    id: str
    security_group_id: str
    position: int


class SecurityGroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    rules: list[SecurityGroupRuleSpec] = Field(default_factory=list)


class SecurityGroupUpdate(_ClosedUpdate):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None


class SecurityGroupOut(BaseModel):
    id: str
    vpc_id: str
    name: str
    description: str | None = None
    rules: list[SecurityGroupRuleOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def rule_specs(self) -> list[SecurityGroupRuleSpec]:
        return [SecurityGroupRuleSpec.model_validate(rule.model_dump()) for rule in self.rules]


# --- Ports ---


class PortAttach(BaseModel):
    instance_id: str = Field(min_length=1)
    name: str | None = None
    worker_node_id: str | None = None
    security_group_ids: list[str] = Field(default_factory=list)
    kind: PortKind = PortKind.PASSTHROUGH


class PortOut(BaseModel):
    id: str
    name: str
    subnet_id: str
    vpc_id: str
    private_ip: str
    port_name: str
    vlan_tag: int
    state: PortState
    worker_node_id: str | None = None
    security_group_ids: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


# --- Routing ---


class RouteOut(BaseModel):
    id: str
    destination_cidr: str
    target_type: str
    target_id: str
    priority: int

    model_config = ConfigDict(from_attributes=True)


class RouteTableOut(BaseModel):
    id: str
    vpc_id: str
    name: str
    is_main: bool
    routes: list[RouteOut] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
