"""
Wiring of store, gateway client and the components built on them.

Routes depend on ``get_services``; tests override it with a container built
around a MemoryStore and a fake gateway.
"""
import logging
from typing import Awaitable, Callable, Optional

from reecher.billing import DatabasePlanProvider, InMemoryPlanProvider, PlanProvider
from reecher.config import settings
from reecher.controller import ChannelController
from reecher.database import db
from reecher.encryption import get_token_encryption
from reecher.gateway import GatewayClient
from reecher.messaging import MessageSender
from reecher.progress import SyncProgressTracker
from reecher.reaper import Reaper
from reecher.sse import ProgressBroadcaster, progress_broadcaster
from reecher.store import ChannelStore, MemoryStore, PostgresStore
from reecher.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class Services:
    def __init__(
        self,
        store: ChannelStore,
        gateway: GatewayClient,
        plans: PlanProvider,
        broadcaster: Optional[ProgressBroadcaster] = None,
        *,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.plans = plans
        self.tracker = SyncProgressTracker(store, broadcaster)
        self.controller = ChannelController(store, gateway, plans, sleep=sleep)
        self.engine = SyncEngine(store, gateway, self.tracker, sleep=sleep)
        self.sender = MessageSender(store, gateway, sleep=sleep)
        self.reaper = Reaper(store, gateway, plans, self.tracker, self.controller)

    async def close(self) -> None:
        await self.engine.shutdown()
        await self.gateway.close()


def build_services() -> Services:
    gateway = GatewayClient()
    if settings.STORE_BACKEND == "memory":
        logger.warning("STORE_BACKEND=memory: channel state is lost on restart")
        return Services(MemoryStore(), gateway, InMemoryPlanProvider(), progress_broadcaster)
    if settings.STORE_BACKEND != "postgres":
        raise ValueError(f"Unknown STORE_BACKEND {settings.STORE_BACKEND!r}")
    store = PostgresStore(db, get_token_encryption())
    return Services(store, gateway, DatabasePlanProvider(db), progress_broadcaster)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


async def close_services() -> None:
    global _services
    if _services is not None:
        await _services.close()
        _services = None
