from dataclasses import dataclass

from fastapi import Request

from tablehold.core import redis_client as redis_module
from tablehold.core.clock import Clock
from tablehold.services.holds import HoldManager
from tablehold.services.lifecycle import LifecycleEngine
from tablehold.services.notifier import Notifier, SafeNotifier
from tablehold.services.store import RequestStore


@dataclass
class Services:
    store: RequestStore
    engine: LifecycleEngine
    holds: HoldManager
    clock: Clock

    async def ping(self) -> None:
        await self.store.ping()
        if redis_module.redis_client is not None:
            await redis_module.redis_client.ping()


def build_services(store: RequestStore, gateway: Notifier, clock: Clock | None = None) -> Services:
    clock = clock or store.clock
    notifier = SafeNotifier(gateway)
    holds = HoldManager(store, notifier, clock)
    engine = LifecycleEngine(store, holds, notifier, clock)
    return Services(store=store, engine=engine, holds=holds, clock=clock)


def get_services(request: Request) -> Services:
    return request.app.state.services
