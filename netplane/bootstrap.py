"""Wiring of the control plane components.

Components are built once per process and passed to each other
explicitly; nothing below keeps module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from netplane.config import Settings, settings as default_settings
from netplane.db import create_session_factory
from netplane.events.publisher import WorkerCommandPublisher
from netplane.logging_config import setup_logging
from netplane.network.cmd import CommandRunner
from netplane.network.ovs import OVSManager
from netplane.orchestrator import ProvisioningOrchestrator
from netplane.security.compiler import SecurityRuleCompiler
from netplane.storage import NetworkStore

logger = logging.getLogger(__name__)


@dataclass
class ControlPlane:
    settings: Settings
    switch: OVSManager
    store: NetworkStore
    compiler: SecurityRuleCompiler
    publisher: WorkerCommandPublisher
    orchestrator: ProvisioningOrchestrator

    async def close(self) -> None:
        await self.orchestrator.wait_idle()
        await self.publisher.close()


def build_control_plane(
    settings: Settings | None = None,
    *,
    runner: CommandRunner | None = None,
    publisher: WorkerCommandPublisher | None = None,
    create_tables: bool = False,
    configure_logging: bool = False,
) -> ControlPlane:
    """Construct and wire every component.

    Args:
        settings: Settings to use, defaults to the environment-loaded ones
        runner: Command runner for switch tooling, defaults to subprocess execution
        publisher: Worker command publisher, defaults to one on settings.redis_url
        create_tables: Create missing tables (tests and first start only)
        configure_logging: Install the root log handler
    """
    settings = settings or default_settings
    if configure_logging:
        setup_logging(settings.log_level, settings.log_format)

    switch = OVSManager(runner=runner, settings=settings)
    store = NetworkStore(create_session_factory(settings.database_url, create_tables=create_tables))
    compiler = SecurityRuleCompiler(settings)
    publisher = publisher or WorkerCommandPublisher(settings)
    orchestrator = ProvisioningOrchestrator(
        switch=switch,
        store=store,
        compiler=compiler,
        publisher=publisher,
        settings=settings,
    )
    logger.info(
        f"Control plane ready (openflow={settings.openflow_protocol}, "
        f"tables={settings.egress_table}/{settings.ingress_table})"
    )
    return ControlPlane(
        settings=settings,
        switch=switch,
        store=store,
        compiler=compiler,
        publisher=publisher,
        orchestrator=orchestrator,
    )
