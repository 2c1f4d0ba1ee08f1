"""Control plane configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Control plane settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="NETPLANE_")

    # Switch tooling
    ovs_vsctl_path: str = "ovs-vsctl"
    ovs_ofctl_path: str = "ovs-ofctl"
    ip_path: str = "ip"
    openflow_protocol: str = "OpenFlow13"

    # Hard deadline for every external command (seconds)
    command_timeout: float = 30.0

    # Interface naming
    bridge_prefix: str = "vpc"
    max_interface_name: int = 15  # IFNAMSIZ - 1

    # Optional OpenFlow controller registered on every VPC bridge,
    # e.g. "tcp:10.0.0.2:6653". Empty means standalone bridges.
    controller_target: str = ""

    # Address space policy
    vpc_min_prefix: int = 16
    vpc_max_prefix: int = 28
    subnet_max_prefix: int = 28
    reject_overlapping_vpc_cidrs: bool = True

    # Subnet-level L2 isolation
    subnet_vlan_base: int = 100
    subnet_vlan_max: int = 4094

    # Flow pipeline
    egress_table: int = 10
    ingress_table: int = 20
    flow_priority_base: int = 30000

    # Storage collaborator
    database_url: str = "sqlite:///./netplane.db"

    # Worker-node command channel
    redis_url: str = "redis://localhost:6379/0"
    worker_command_channel: str = "netplane:worker_commands"
    enable_worker_commands: bool = True

    # Listing
    default_page_size: int = 20
    max_page_size: int = 100

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Orchestrator bookkeeping
    action_history_size: int = 200


settings = Settings()
