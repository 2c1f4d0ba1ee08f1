"""Durable records for VPCs, subnets, security groups and ports.

Every method opens its own short-lived session and returns pydantic
schemas, never live ORM rows. Database exceptions propagate unchanged;
the orchestrator decides how to report them.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker

from netplane import models
from netplane.schemas import (
    SECURITY_GROUP_ID_PREFIX,
    PortAttach,
    PortOut,
    RouteTableOut,
    SecurityGroupCreate,
    SecurityGroupOut,
    SecurityGroupRuleSpec,
    SubnetCreate,
    SubnetOut,
    VPCCreate,
    VPCOut,
    VPCPage,
)
from netplane.state import PortState, VPCState

logger = logging.getLogger(__name__)

MAIN_ROUTE_TABLE_NAME = "main"
LOCAL_TARGET = "local"


def new_id() -> str:
    return str(uuid.uuid4())


def new_security_group_id() -> str:
    return f"{SECURITY_GROUP_ID_PREFIX}{uuid.uuid4().hex}"


class NetworkStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    # --- VPCs ---

    def create_vpc(
        self,
        vpc_id: str,
        owner_id: str,
        data: VPCCreate,
        cidr_block: str,
        bridge_name: str,
        state: VPCState = VPCState.AVAILABLE,
    ) -> VPCOut:
        """Insert a VPC with its main route table and local route."""
        with self._session() as session:
            vpc = models.VPC(
                id=vpc_id,
                name=data.name,
                cidr_block=cidr_block,
                description=data.description,
                user_id=owner_id,
                state=state.value,
                bridge_name=bridge_name,
            )
            route_table = models.RouteTable(id=new_id(), name=MAIN_ROUTE_TABLE_NAME, is_main=True)
            route_table.routes.append(
                models.Route(
                    id=new_id(),
                    destination_cidr=cidr_block,
                    target_type=LOCAL_TARGET,
                    target_id=LOCAL_TARGET,
                    priority=0,
                )
            )
            vpc.route_tables.append(route_table)
            session.add(vpc)
            session.commit()
            logger.debug(f"Stored VPC {vpc_id} ({cidr_block})")
            return VPCOut.model_validate(vpc)

    def get_vpc(self, vpc_id: str) -> VPCOut | None:
        with self._session() as session:
            vpc = session.get(models.VPC, vpc_id)
            return VPCOut.model_validate(vpc) if vpc else None

    def get_vpc_by_name(self, owner_id: str, name: str) -> VPCOut | None:
        with self._session() as session:
            vpc = (
                session.query(models.VPC)
                .filter(models.VPC.user_id == owner_id, models.VPC.name == name)
                .first()
            )
            return VPCOut.model_validate(vpc) if vpc else None

    def list_vpcs(self, owner_id: str, page: int, page_size: int) -> VPCPage:
        with self._session() as session:
            query = session.query(models.VPC).filter(models.VPC.user_id == owner_id)
            total = query.count()
            rows = (
                query.order_by(models.VPC.created_at.desc(), models.VPC.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return VPCPage(
                items=[VPCOut.model_validate(row) for row in rows],
                total=total,
                page=page,
                page_size=page_size,
                total_pages=math.ceil(total / page_size) if total else 0,
            )

    def list_vpc_cidrs(self, owner_id: str, exclude_id: str | None = None) -> dict[str, str]:
        """Map of VPC id to CIDR block for every VPC of an owner."""
        with self._session() as session:
            query = session.query(models.VPC.id, models.VPC.cidr_block).filter(
                models.VPC.user_id == owner_id
            )
            if exclude_id is not None:
                query = query.filter(models.VPC.id != exclude_id)
            return {vpc_id: cidr for vpc_id, cidr in query.all()}

    def update_vpc(self, vpc_id: str, changes: dict) -> VPCOut:
        with self._session() as session:
            vpc = session.get(models.VPC, vpc_id)
            if vpc is None:
                raise LookupError(f"VPC {vpc_id} not found")
            for key, value in changes.items():
                setattr(vpc, key, value)
            session.commit()
            return VPCOut.model_validate(vpc)

    def set_vpc_state(self, vpc_id: str, state: VPCState) -> VPCOut:
        return self.update_vpc(vpc_id, {"state": state.value})

    def delete_vpc(self, vpc_id: str) -> bool:
        with self._session() as session:
            vpc = session.get(models.VPC, vpc_id)
            if vpc is None:
                return False
            session.delete(vpc)
            session.commit()
            logger.debug(f"Deleted VPC record {vpc_id}")
            return True

    def count_vpc_children(self, vpc_id: str) -> dict[str, int]:
        """Number of subnets, ports and security groups left in a VPC."""
        with self._session() as session:
            subnets = session.query(models.Subnet).filter(models.Subnet.vpc_id == vpc_id).count()
            ports = (
                session.query(models.Instance)
                .join(models.Subnet, models.Instance.subnet_id == models.Subnet.id)
                .filter(models.Subnet.vpc_id == vpc_id)
                .count()
            )
            groups = (
                session.query(models.SecurityGroup)
                .filter(models.SecurityGroup.vpc_id == vpc_id)
                .count()
            )
            return {"subnets": subnets, "ports": ports, "security_groups": groups}

    def list_route_tables(self, vpc_id: str) -> list[RouteTableOut]:
        with self._session() as session:
            tables = (
                session.query(models.RouteTable)
                .filter(models.RouteTable.vpc_id == vpc_id)
                .order_by(models.RouteTable.is_main.desc(), models.RouteTable.name)
                .all()
            )
            return [RouteTableOut.model_validate(table) for table in tables]

    # --- Subnets ---

    def create_subnet(
        self,
        subnet_id: str,
        vpc_id: str,
        data: SubnetCreate,
        cidr_block: str,
        vlan_tag: int,
        gateway_port: str,
    ) -> SubnetOut:
        with self._session() as session:
            subnet = models.Subnet(
                id=subnet_id,
                vpc_id=vpc_id,
                name=data.name,
                cidr_block=cidr_block,
                availability_zone=data.availability_zone,
                is_public=data.is_public,
                vlan_tag=vlan_tag,
                gateway_port=gateway_port,
            )
            session.add(subnet)
            session.commit()
            logger.debug(f"Stored subnet {subnet_id} ({cidr_block}, vlan {vlan_tag})")
            return SubnetOut.model_validate(subnet)

    def get_subnet(self, subnet_id: str) -> SubnetOut | None:
        with self._session() as session:
            subnet = session.get(models.Subnet, subnet_id)
            return SubnetOut.model_validate(subnet) if subnet else None

    def get_subnet_by_name(self, vpc_id: str, name: str) -> SubnetOut | None:
        with self._session() as session:
            subnet = (
                session.query(models.Subnet)
                .filter(models.Subnet.vpc_id == vpc_id, models.Subnet.name == name)
                .first()
            )
            return SubnetOut.model_validate(subnet) if subnet else None

    def list_subnets(self, vpc_id: str) -> list[SubnetOut]:
        with self._session() as session:
            subnets = (
                session.query(models.Subnet)
                .filter(models.Subnet.vpc_id == vpc_id)
                .order_by(models.Subnet.created_at, models.Subnet.id)
                .all()
            )
            return [SubnetOut.model_validate(subnet) for subnet in subnets]

    def update_subnet(self, subnet_id: str, changes: dict) -> SubnetOut:
        with self._session() as session:
            subnet = session.get(models.Subnet, subnet_id)
            if subnet is None:
                raise LookupError(f"Subnet {subnet_id} not found")
            for key, value in changes.items():
                setattr(subnet, key, value)
            session.commit()
            return SubnetOut.model_validate(subnet)

    def delete_subnet(self, subnet_id: str) -> bool:
        with self._session() as session:
            subnet = session.get(models.Subnet, subnet_id)
            if subnet is None:
                return False
            session.delete(subnet)
            session.commit()
            return True

    def used_vlan_tags(self, vpc_id: str) -> set[int]:
        with self._session() as session:
            rows = session.query(models.Subnet.vlan_tag).filter(models.Subnet.vpc_id == vpc_id).all()
            return {tag for (tag,) in rows}

    # --- Ports and leases ---

    def list_leases(self, subnet_id: str) -> dict[str, str]:
        """Leased private IP -> port id for one subnet."""
        with self._session() as session:
            rows = (
                session.query(models.Instance.private_ip, models.Instance.id)
                .filter(
                    models.Instance.subnet_id == subnet_id,
                    models.Instance.private_ip.is_not(None),
                )
                .all()
            )
            return {ip: port_id for ip, port_id in rows}

    def create_port(
        self,
        subnet: SubnetOut,
        data: PortAttach,
        private_ip: str,
        port_name: str,
        state: PortState = PortState.PENDING,
    ) -> PortOut:
        with self._session() as session:
            instance = models.Instance(
                id=data.instance_id,
                name=data.name or data.instance_id,
                subnet_id=subnet.id,
                private_ip=private_ip,
                port_name=port_name,
                state=state.value,
                worker_node_id=data.worker_node_id,
            )
            for position, group_id in enumerate(data.security_group_ids):
                instance.security_groups.append(
                    models.InstanceSecurityGroup(security_group_id=group_id, position=position)
                )
            session.add(instance)
            session.commit()
            logger.debug(f"Stored port {instance.id} lease {private_ip} in subnet {subnet.id}")
            return self._port_out(session, instance)

    def get_port(self, port_id: str) -> PortOut | None:
        with self._session() as session:
            instance = session.get(models.Instance, port_id)
            if instance is None or instance.subnet_id is None:
                return None
            return self._port_out(session, instance)

    def port_record_exists(self, port_id: str) -> bool:
        with self._session() as session:
            return session.get(models.Instance, port_id) is not None

    def list_ports(self, *, vpc_id: str | None = None, subnet_id: str | None = None) -> list[PortOut]:
        with self._session() as session:
            query = session.query(models.Instance).join(
                models.Subnet, models.Instance.subnet_id == models.Subnet.id
            )
            if vpc_id is not None:
                query = query.filter(models.Subnet.vpc_id == vpc_id)
            if subnet_id is not None:
                query = query.filter(models.Instance.subnet_id == subnet_id)
            instances = query.order_by(models.Instance.created_at, models.Instance.id).all()
            return [self._port_out(session, instance) for instance in instances]

    def set_port_state(self, port_id: str, state: PortState) -> PortOut:
        with self._session() as session:
            instance = session.get(models.Instance, port_id)
            if instance is None:
                raise LookupError(f"Port {port_id} not found")
            instance.state = state.value
            session.commit()
            return self._port_out(session, instance)

    def set_port_groups(self, port_id: str, group_ids: Sequence[str]) -> PortOut:
        with self._session() as session:
            instance = session.get(models.Instance, port_id)
            if instance is None:
                raise LookupError(f"Port {port_id} not found")
            instance.security_groups.clear()
            # Flush the removals before re-adding, the pair is the primary key
            session.flush()
            for position, group_id in enumerate(group_ids):
                instance.security_groups.append(
                    models.InstanceSecurityGroup(security_group_id=group_id, position=position)
                )
            session.commit()
            return self._port_out(session, instance)

    def delete_port(self, port_id: str) -> bool:
        """Drop a port record, releasing its address lease."""
        with self._session() as session:
            instance = session.get(models.Instance, port_id)
            if instance is None:
                return False
            session.delete(instance)
            session.commit()
            return True

    @staticmethod
    def _port_out(session: Session, instance: models.Instance) -> PortOut:
        subnet = session.get(models.Subnet, instance.subnet_id)
        return PortOut(
            id=instance.id,
            name=instance.name,
            subnet_id=subnet.id,
            vpc_id=subnet.vpc_id,
            private_ip=instance.private_ip,
            port_name=instance.port_name,
            vlan_tag=subnet.vlan_tag,
            state=PortState(instance.state),
            worker_node_id=instance.worker_node_id,
            security_group_ids=[m.security_group_id for m in instance.security_groups],
        )

    # --- Security groups ---

    def create_security_group(self, group_id: str, vpc_id: str, data: SecurityGroupCreate) -> SecurityGroupOut:
        with self._session() as session:
            group = models.SecurityGroup(
                id=group_id, vpc_id=vpc_id, name=data.name, description=data.description
            )
            group.rules.extend(self._rule_rows(data.rules))
            session.add(group)
            session.commit()
            logger.debug(f"Stored security group {group_id} with {len(data.rules)} rules")
            return SecurityGroupOut.model_validate(group)

    def get_security_group(self, group_id: str) -> SecurityGroupOut | None:
        with self._session() as session:
            group = session.get(models.SecurityGroup, group_id)
            return SecurityGroupOut.model_validate(group) if group else None

    def get_security_group_by_name(self, vpc_id: str, name: str) -> SecurityGroupOut | None:
        with self._session() as session:
            group = (
                session.query(models.SecurityGroup)
                .filter(models.SecurityGroup.vpc_id == vpc_id, models.SecurityGroup.name == name)
                .first()
            )
            return SecurityGroupOut.model_validate(group) if group else None

    def list_security_groups(self, vpc_id: str) -> list[SecurityGroupOut]:
        with self._session() as session:
            groups = (
                session.query(models.SecurityGroup)
                .filter(models.SecurityGroup.vpc_id == vpc_id)
                .order_by(models.SecurityGroup.created_at, models.SecurityGroup.id)
                .all()
            )
            return [SecurityGroupOut.model_validate(group) for group in groups]

    def update_security_group(self, group_id: str, changes: dict) -> SecurityGroupOut:
        with self._session() as session:
            group = session.get(models.SecurityGroup, group_id)
            if group is None:
                raise LookupError(f"Security group {group_id} not found")
            for key, value in changes.items():
                setattr(group, key, value)
            session.commit()
            return SecurityGroupOut.model_validate(group)

    def replace_rules(self, group_id: str, rules: Sequence[SecurityGroupRuleSpec]) -> SecurityGroupOut:
        with self._session() as session:
            group = session.get(models.SecurityGroup, group_id)
            if group is None:
                raise LookupError(f"Security group {group_id} not found")
            group.rules.clear()
            session.flush()
            group.rules.extend(self._rule_rows(rules))
            session.commit()
            return SecurityGroupOut.model_validate(group)

    def delete_security_group(self, group_id: str) -> bool:
        """Delete a group together with its rules and port memberships."""
        with self._session() as session:
            group = session.get(models.SecurityGroup, group_id)
            if group is None:
                return False
            session.delete(group)
            session.commit()
            return True

    def ports_in_groups(self, group_ids: Iterable[str]) -> list[PortOut]:
        group_ids = list(group_ids)
        if not group_ids:
            return []
        with self._session() as session:
            instances = (
                session.query(models.Instance)
                .join(models.InstanceSecurityGroup)
                .filter(models.InstanceSecurityGroup.security_group_id.in_(group_ids))
                .distinct()
                .order_by(models.Instance.id)
                .all()
            )
            return [self._port_out(session, instance) for instance in instances]

    def groups_referencing(self, group_id: str) -> list[str]:
        """Ids of groups with a rule whose source is the given group."""
        with self._session() as session:
            rows = (
                session.query(models.SecurityGroupRule.security_group_id)
                .filter(models.SecurityGroupRule.source == group_id)
                .distinct()
                .all()
            )
            return sorted(gid for (gid,) in rows)

    def group_member_ips(self, group_id: str) -> list[str]:
        with self._session() as session:
            rows = (
                session.query(models.Instance.private_ip)
                .join(models.InstanceSecurityGroup)
                .filter(
                    models.InstanceSecurityGroup.security_group_id == group_id,
                    models.Instance.private_ip.is_not(None),
                )
                .all()
            )
            return [ip for (ip,) in rows]

    @staticmethod
    def _rule_rows(rules: Sequence[SecurityGroupRuleSpec]) -> list[models.SecurityGroupRule]:
        return [
            models.SecurityGroupRule(
                id=new_id(),
                position=position,
                direction=rule.direction.value,
                protocol=rule.protocol.value,
                from_port=rule.from_port,
                to_port=rule.to_port,
                source=rule.source,
                action=rule.action.value,
                description=rule.description,
            )
            for position, rule in enumerate(rules)
        ]
