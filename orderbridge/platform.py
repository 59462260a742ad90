# orderbridge/platform.py
"""
What the bridge needs from the messaging platform.

Every call can fail; callers decide which failures are best-effort.
"""
from dataclasses import dataclass, field
from typing import Optional, Protocol


@dataclass(frozen=True)
class PlatformChannel:
    id: str
    name: str
    topic: Optional[str] = None


@dataclass(frozen=True)
class PlatformUser:
    id: str
    username: str
    tag: str


@dataclass(frozen=True)
class ChannelVisibility:
    """
    Principals allowed to view a channel. The general audience is always
    denied.
    """
    user_ids: tuple[str, ...] = ()
    role_ids: tuple[str, ...] = ()
    writer_user_ids: tuple[str, ...] = ()


@dataclass
class Embed:
    title: str
    description: str = ""
    url: Optional[str] = None
    color: str = "blue"
    fields: list[tuple[str, str, bool]] = field(default_factory=list)

    def add_field(self, name: str, value: str, inline: bool = False) -> "Embed":
        self.fields.append((name, value, inline))
        return self


class MessagingPlatform(Protocol):
    @property
    def bot_user_id(self) -> Optional[str]: ...

    async def fetch_channel(self, channel_id: str) -> Optional[PlatformChannel]: ...

    async def create_channel(self, name: str, topic: str, visibility: ChannelVisibility) -> PlatformChannel: ...

    async def send_message(self, channel_id: str, content: Optional[str] = None,
                           embed: Optional[Embed] = None) -> None: ...

    async def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> None: ...

    async def fetch_user(self, user_id: str) -> Optional[PlatformUser]: ...

    async def send_direct_message(self, user_id: str, content: Optional[str] = None,
                                  embed: Optional[Embed] = None) -> None: ...

    async def delete_message(self, channel_id: str, message_id: str) -> None: ...

    async def timeout_member(self, user_id: str, seconds: int, reason: Optional[str] = None) -> bool:
        """Mute a guild member. False when the member cannot be moderated."""
        ...
