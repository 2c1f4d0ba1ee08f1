"""Persisted entities read and written by the control plane.

Migrations are owned by the storage collaborator; these mappings only
describe the columns the control plane uses.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class VPC(TimestampMixin, Base):
    __tablename__ = "vpcs"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_vpcs_user_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    cidr_block: Mapped[str] = mapped_column(String(18))
    description: Mapped[Optional[str]] = mapped_column(Text)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    state: Mapped[str] = mapped_column(String(16), default="available")
    bridge_name: Mapped[str] = mapped_column(String(15), unique=True)

    subnets: Mapped[list["Subnet"]] = relationship(back_populates="vpc")
    security_groups: Mapped[list["SecurityGroup"]] = relationship(
        back_populates="vpc", cascade="all, delete-orphan"
    )
    route_tables: Mapped[list["RouteTable"]] = relationship(
        back_populates="vpc", cascade="all, delete-orphan"
    )


class Subnet(TimestampMixin, Base):
    __tablename__ = "subnets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vpc_id: Mapped[str] = mapped_column(ForeignKey("vpcs.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    cidr_block: Mapped[str] = mapped_column(String(18))
    availability_zone: Mapped[str] = mapped_column(String(64))
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    vlan_tag: Mapped[int] = mapped_column(Integer)
    gateway_port: Mapped[str] = mapped_column(String(15))

    vpc: Mapped[VPC] = relationship(back_populates="subnets")


class RouteTable(TimestampMixin, Base):
    __tablename__ = "route_tables"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vpc_id: Mapped[str] = mapped_column(ForeignKey("vpcs.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    is_main: Mapped[bool] = mapped_column(Boolean, default=False)

    vpc: Mapped[VPC] = relationship(back_populates="route_tables")
    routes: Mapped[list["Route"]] = relationship(
        back_populates="route_table", cascade="all, delete-orphan"
    )


class Route(Base):
    __tablename__ = "routes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    route_table_id: Mapped[str] = mapped_column(
        ForeignKey("route_tables.id", ondelete="CASCADE"), index=True
    )
    destination_cidr: Mapped[str] = mapped_column(String(18))
    target_type: Mapped[str] = mapped_column(String(16))  # local, igw, nat, instance
    target_id: Mapped[str] = mapped_column(String(36))
    priority: Mapped[int] = mapped_column(Integer, default=0)

    route_table: Mapped[RouteTable] = relationship(back_populates="routes")


class SecurityGroup(TimestampMixin, Base):
    __tablename__ = "security_groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vpc_id: Mapped[str] = mapped_column(ForeignKey("vpcs.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)

    vpc: Mapped[VPC] = relationship(back_populates="security_groups")
    rules: Mapped[list["SecurityGroupRule"]] = relationship(
        back_populates="security_group",
        cascade="all, delete-orphan",
        order_by="SecurityGroupRule.position",
    )
    memberships: Mapped[list["InstanceSecurityGroup"]] = relationship(
        back_populates="security_group", cascade="all, delete-orphan"
    )


class SecurityGroupRule(Base):
    __tablename__ = "security_group_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    security_group_id: Mapped[str] = mapped_column(
        ForeignKey("security_groups.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)
    direction: Mapped[str] = mapped_column(String(16))
    protocol: Mapped[str] = mapped_column(String(8))
    from_port: Mapped[Optional[int]] = mapped_column(Integer)
    to_port: Mapped[Optional[int]] = mapped_column(Integer)
    source: Mapped[str] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(String(8), default="allow")
    description: Mapped[Optional[str]] = mapped_column(Text)

    security_group: Mapped[SecurityGroup] = relationship(back_populates="rules")


class Instance(TimestampMixin, Base):
    """Instance network attachment; one row per instance interface (port)."""

    __tablename__ = "instances"
    __table_args__ = (UniqueConstraint("subnet_id", "private_ip", name="uq_instances_subnet_ip"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    subnet_id: Mapped[Optional[str]] = mapped_column(ForeignKey("subnets.id"), index=True)
    private_ip: Mapped[Optional[str]] = mapped_column(String(15))
    public_ip: Mapped[Optional[str]] = mapped_column(String(15))
    port_name: Mapped[Optional[str]] = mapped_column(String(15))
    state: Mapped[str] = mapped_column(String(16), default="pending")
    worker_node_id: Mapped[Optional[str]] = mapped_column(String(64))

    security_groups: Mapped[list["InstanceSecurityGroup"]] = relationship(
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="InstanceSecurityGroup.position",
    )


class InstanceSecurityGroup(Base):
    __tablename__ = "instance_security_groups"

    instance_id: Mapped[str] = mapped_column(
        ForeignKey("instances.id", ondelete="CASCADE"), primary_key=True
    )
    security_group_id: Mapped[str] = mapped_column(
        ForeignKey("security_groups.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)

    instance: Mapped[Instance] = relationship(back_populates="security_groups")
    security_group: Mapped[SecurityGroup] = relationship(back_populates="memberships")
