"""Publisher for worker commands.

Publishing never raises: failures are logged and reported through the
return value so the orchestrator can record a degraded commit.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from netplane.config import Settings, settings as default_settings
from netplane.events.commands import WorkerCommand

logger = logging.getLogger(__name__)

# Redis operation timeout (seconds)
REDIS_OPERATION_TIMEOUT = 5.0


class WorkerCommandPublisher:
    """Publishes WorkerCommands on a single Redis channel."""

    def __init__(self, settings: Settings | None = None, redis: aioredis.Redis | None = None):
        settings = settings or default_settings
        self._redis_url = settings.redis_url
        self.channel = settings.worker_command_channel
        self.enabled = settings.enable_worker_commands
        self._redis = redis

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = await aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def publish(self, command: WorkerCommand) -> bool:
        """Publish a command. Returns False if it could not be delivered to Redis."""
        if not self.enabled:
            logger.debug(f"Worker commands disabled, skipping {command.command_type.value}")
            return True
        try:
            r = await self._get_redis()
            receivers = await asyncio.wait_for(
                r.publish(self.channel, command.to_json()),
                timeout=REDIS_OPERATION_TIMEOUT,
            )
            logger.debug(
                f"Published worker command {command.command_type.value} "
                f"port={command.port_id} worker={command.worker_node_id} receivers={receivers}"
            )
            return True
        except Exception as e:
            logger.warning(f"Failed to publish worker command {command.command_type.value}: {e}")
            return False

    async def subscribe(self) -> AsyncGenerator[WorkerCommand, None]:
        """Yield commands published on the channel until cancelled."""
        r = await self._get_redis()
        pubsub = r.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info(f"Subscribed to channel {self.channel}")

            while True:
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=1.0,
                    )
                except asyncio.CancelledError:
                    logger.info(f"Subscription cancelled for {self.channel}")
                    break
                except Exception as e:
                    logger.warning(f"Error receiving message from {self.channel}: {e}")
                    await asyncio.sleep(0.1)
                    continue
                if message is None or message["type"] != "message":
                    continue
                try:
                    command = WorkerCommand.from_json(message["data"])
                except (ValueError, TypeError, KeyError) as e:
                    logger.warning(f"Invalid worker command on {self.channel}: {e}")
                    continue
                yield command
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.close()
            logger.info(f"Unsubscribed from channel {self.channel}")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
