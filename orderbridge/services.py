# orderbridge/services.py
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from orderbridge.app_config import Settings
from orderbridge.audit import AuditLog
from orderbridge.channel_lifecycle import ChannelLifecycleManager
from orderbridge.db_connection import DBConnection
from orderbridge.events import EventBus
from orderbridge.keyed_locks import KeyedLocks
from orderbridge.message_bridge import MessageBridge
from orderbridge.moderation import ProfanityFilter
from orderbridge.order_state_machine import OrderStateMachine
from orderbridge.order_store import OrderStore
from orderbridge.platform import MessagingPlatform
from orderbridge.platform_router import PlatformMessageRouter
from orderbridge.room_hub import RoomHub
from orderbridge.token_store import TokenStore
from orderbridge.verification import VerificationDispatcher


@dataclass
class Services:
    settings: Settings
    store: OrderStore
    tokens: TokenStore
    bus: EventBus
    audit: AuditLog
    rooms: RoomHub
    state_machine: OrderStateMachine
    channels: ChannelLifecycleManager
    bridge: MessageBridge
    dispatcher: VerificationDispatcher
    router: PlatformMessageRouter

    def sweep(self) -> int:
        return self.tokens.sweep_expired()


def build_services(
    settings: Settings,
    platform: MessagingPlatform,
    session_factory: Optional[Callable[[], Session]] = None,
    tokens: Optional[TokenStore] = None,
) -> Services:
    """
    Wire every component once, at process start. Subscription order matters:
    the channel manager handles OrderApproved before the dispatcher, so the
    chat channel is bound by the time the delivery link goes out.
    """
    if session_factory is None:
        session_factory = DBConnection(settings).build_db_session_factory()
    store = OrderStore(session_factory)
    tokens = tokens or TokenStore(ttl_seconds=settings.VERIFICATION_TTL_SECONDS)
    bus = EventBus()
    audit = AuditLog(store)
    rooms = RoomHub()

    state_machine = OrderStateMachine(store, bus, KeyedLocks())
    channels = ChannelLifecycleManager(platform, store, state_machine, bus, settings, audit, KeyedLocks())
    bridge = MessageBridge(store, platform, rooms, bus, KeyedLocks())
    dispatcher = VerificationDispatcher(tokens, platform, state_machine, channels, store, bus, settings, audit)
    router = PlatformMessageRouter(
        platform, store, bridge, channels, dispatcher, audit, ProfanityFilter(settings.PROFANITY_WORDS)
    )

    channels.subscribe()
    bridge.subscribe()
    dispatcher.subscribe()

    return Services(
        settings=settings,
        store=store,
        tokens=tokens,
        bus=bus,
        audit=audit,
        rooms=rooms,
        state_machine=state_machine,
        channels=channels,
        bridge=bridge,
        dispatcher=dispatcher,
        router=router,
    )
