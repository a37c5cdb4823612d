"""Outbound status-change events for diners and restaurants.

Delivery is someone else's job; the core only hands events to a gateway.
``SafeNotifier`` makes that hand-off fire-and-forget: failures are logged and
never reach the state transition that produced the event.
"""

import abc
import logging

import redis.asyncio as redis

from tablehold.core.clock import spawn
from tablehold.models import NotificationEvent


logger = logging.getLogger(__name__)


class Notifier(abc.ABC):
    @abc.abstractmethod
    async def notify(self, party_id: str, event: NotificationEvent) -> None: ...


class LoggingNotifier(Notifier):
    """Used when no Redis is configured."""

    async def notify(self, party_id: str, event: NotificationEvent) -> None:
        logger.info("Notify %s: request %s is %s", party_id, event.request_id, event.new_status.value)


class RedisNotifier(Notifier):
    """Publishes events on ``notify:<party id>`` for the push/websocket fan-out."""

    def __init__(self, client: redis.Redis, channel_prefix: str = "notify"):
        self._client = client
        self._prefix = channel_prefix

    def channel(self, party_id: str) -> str:
        return f"{self._prefix}:{party_id}"

    async def notify(self, party_id: str, event: NotificationEvent) -> None:
        await self._client.publish(self.channel(party_id), event.model_dump_json())


class SafeNotifier:
    """Wraps a gateway so callers never wait on, or fail because of, delivery."""

    def __init__(self, gateway: Notifier):
        self.gateway = gateway

    def send(self, party_id: str, event: NotificationEvent) -> None:
        spawn(self._deliver(party_id, event), name=f"notify:{event.request_id}")

    async def _deliver(self, party_id: str, event: NotificationEvent) -> None:
        try:
            await self.gateway.notify(party_id, event)
        except Exception:
            logger.exception(
                "Failed to notify %s about request %s (%s)",
                party_id,
                event.request_id,
                event.new_status.value,
            )
