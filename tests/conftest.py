import itertools
from decimal import Decimal
from typing import Any, Optional

import pytest

from orderbridge.app_config import Settings
from orderbridge.db_connection import DBConnection
from orderbridge.errors import ExternalTransportError, NotFoundError
from orderbridge.models import Product
from orderbridge.order_store import OrderStore
from orderbridge.platform import ChannelVisibility, Embed, PlatformChannel, PlatformUser
from orderbridge.services import build_services
from orderbridge.token_store import TokenStore

BOT_ID = "999"
OWNER_ID = "1000"
ADMIN_ROLE_ID = "2000"
USER_ID = "123456789"


class FakePlatform:
    """In-memory MessagingPlatform that records every call."""

    def __init__(self) -> None:
        self._ids = itertools.count(5000)
        self.channels: dict[str, PlatformChannel] = {}
        self.visibility: dict[str, ChannelVisibility] = {}
        self.users: dict[str, PlatformUser] = {}
        self.sent: list[tuple[str, Optional[str], Optional[Embed]]] = []
        self.dms: list[tuple[str, Optional[str], Optional[Embed]]] = []
        self.deleted: list[str] = []
        self.deleted_messages: list[tuple[str, str]] = []
        self.timeouts: list[tuple[str, int, Optional[str]]] = []
        self.moderatable = True
        self.fail_create = False
        self.fail_dm = False
        self.fail_delete = False

    @property
    def bot_user_id(self) -> Optional[str]:
        return BOT_ID

    def add_user(self, user_id: str, username: str) -> PlatformUser:
        user = PlatformUser(id=user_id, username=username, tag=f"{username}#0001")
        self.users[user_id] = user
        return user

    def add_channel(self, name: str, topic: Optional[str]) -> PlatformChannel:
        channel = PlatformChannel(id=str(next(self._ids)), name=name, topic=topic)
        self.channels[channel.id] = channel
        return channel

    async def fetch_channel(self, channel_id: str) -> Optional[PlatformChannel]:
        return self.channels.get(channel_id)

    async def create_channel(self, name: str, topic: str, visibility: ChannelVisibility) -> PlatformChannel:
        if self.fail_create:
            raise ExternalTransportError("create_channel failed")
        channel = self.add_channel(name, topic)
        self.visibility[channel.id] = visibility
        return channel

    async def send_message(self, channel_id: str, content: Optional[str] = None,
                           embed: Optional[Embed] = None) -> None:
        if channel_id not in self.channels:
            raise NotFoundError(f"Channel {channel_id} not found.")
        self.sent.append((channel_id, content, embed))

    async def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> None:
        if self.fail_delete:
            raise ExternalTransportError("delete_channel failed")
        if self.channels.pop(channel_id, None) is None:
            raise NotFoundError(f"Channel {channel_id} not found.")
        self.deleted.append(channel_id)

    async def fetch_user(self, user_id: str) -> Optional[PlatformUser]:
        return self.users.get(user_id)

    async def send_direct_message(self, user_id: str, content: Optional[str] = None,
                                  embed: Optional[Embed] = None) -> None:
        if self.fail_dm:
            raise ExternalTransportError("dm failed")
        self.dms.append((user_id, content, embed))

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        self.deleted_messages.append((channel_id, message_id))

    async def timeout_member(self, user_id: str, seconds: int, reason: Optional[str] = None) -> bool:
        if not self.moderatable:
            return False
        self.timeouts.append((user_id, seconds, reason))
        return True

    def messages_in(self, channel_id: str) -> list[str]:
        return [content for cid, content, _ in self.sent if cid == channel_id and content]


class FakeConnection:
    def __init__(self, fail: bool = False) -> None:
        self.received: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.received.append(data)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        OWNER_ID=OWNER_ID,
        ADMIN_ROLE_ID=ADMIN_ROLE_ID,
        GUILD_ID="1",
        SITE_URL="http://shop.test",
        PIX_KEY="pix-key-123",
        DATABASE_URL=f"sqlite:///{tmp_path / 'orderbridge.db'}",
        CHANNEL_DELETE_DELAY_SECONDS=0,
        PROFANITY_WORDS=("badword",),
    )


@pytest.fixture
def store(settings) -> OrderStore:
    store = OrderStore(DBConnection(settings).build_db_session_factory())
    store.create_tables()
    store.add_product(Product(id="p1", name="Netflix Premium", price=Decimal("19.90"), stock=5))
    store.add_product(Product(id="p2", name="Spotify Family", price=Decimal("9.90"), stock=-1))
    store.add_product(Product(id="p3", name="Sold Out Item", price=Decimal("5.00"), stock=0))
    store.find_or_create_account(USER_ID, "alice")
    return store


@pytest.fixture
def platform() -> FakePlatform:
    platform = FakePlatform()
    platform.add_user(USER_ID, "alice")
    return platform


@pytest.fixture
def tokens() -> TokenStore:
    return TokenStore(ttl_seconds=3600)


@pytest.fixture
def services(settings, store, platform, tokens):
    return build_services(settings, platform, session_factory=store.SessionFactory, tokens=tokens)
