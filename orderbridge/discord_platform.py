# orderbridge/discord_platform.py
import logging
from datetime import timedelta
from typing import Optional

import discord

from orderbridge.app_config import Settings
from orderbridge.errors import ExternalTransportError, NotFoundError
from orderbridge.platform import ChannelVisibility, Embed, PlatformChannel, PlatformUser

logger = logging.getLogger("orderbridge")

_COLORS = {
    "blue": discord.Color.blue(),
    "green": discord.Color.green(),
    "gold": discord.Color.gold(),
    "orange": discord.Color.orange(),
    "red": discord.Color.red(),
}

_MAX_MESSAGE_LENGTH = 1900


def _clamp_text(text: Optional[str]) -> Optional[str]:
    if text is None or len(text) <= _MAX_MESSAGE_LENGTH:
        return text
    return text[: _MAX_MESSAGE_LENGTH - 1].rstrip() + "…"


def _to_discord_embed(embed: Optional[Embed]) -> Optional[discord.Embed]:
    if embed is None:
        return None
    out = discord.Embed(
        title=embed.title,
        description=embed.description,
        url=embed.url,
        color=_COLORS.get(embed.color, discord.Color.default()),
    )
    for name, value, inline in embed.fields:
        out.add_field(name=name, value=value, inline=inline)
    return out


def _to_channel(channel) -> PlatformChannel:
    return PlatformChannel(
        id=str(channel.id),
        name=getattr(channel, "name", ""),
        topic=getattr(channel, "topic", None),
    )


class DiscordPlatform:
    """discord.py implementation of MessagingPlatform for a single guild."""

    def __init__(self, client: discord.Client, settings: Settings) -> None:
        self.client = client
        self.settings = settings

    @property
    def bot_user_id(self) -> Optional[str]:
        return str(self.client.user.id) if self.client.user else None

    async def _guild(self) -> discord.Guild:
        guild_id = int(self.settings.GUILD_ID)
        guild = self.client.get_guild(guild_id)
        if guild is None:
            guild = await self.client.fetch_guild(guild_id)
        return guild

    async def _raw_channel(self, channel_id: str):
        cid = int(channel_id)
        channel = self.client.get_channel(cid)
        if channel is not None:
            return channel
        try:
            return await self.client.fetch_channel(cid)
        except discord.NotFound:
            return None
        except discord.HTTPException as e:
            raise ExternalTransportError(f"fetch_channel({channel_id}) failed: {e}") from e

    async def fetch_channel(self, channel_id: str) -> Optional[PlatformChannel]:
        channel = await self._raw_channel(channel_id)
        return _to_channel(channel) if channel is not None else None

    async def create_channel(self, name: str, topic: str, visibility: ChannelVisibility) -> PlatformChannel:
        guild = await self._guild()
        overwrites = {guild.default_role: discord.PermissionOverwrite(view_channel=False)}
        for uid in visibility.user_ids:
            overwrites[discord.Object(id=int(uid))] = discord.PermissionOverwrite(
                view_channel=True,
                send_messages=True if uid in visibility.writer_user_ids else None,
            )
        for rid in visibility.role_ids:
            role = guild.get_role(int(rid)) or discord.Object(id=int(rid))
            overwrites[role] = discord.PermissionOverwrite(view_channel=True)
        try:
            channel = await guild.create_text_channel(name=name, topic=topic, overwrites=overwrites)
        except discord.HTTPException as e:
            raise ExternalTransportError(f"create_channel({name}) failed: {e}") from e
        return _to_channel(channel)

    async def send_message(self, channel_id: str, content: Optional[str] = None,
                           embed: Optional[Embed] = None) -> None:
        channel = await self._raw_channel(channel_id)
        if channel is None:
            raise NotFoundError(f"Channel {channel_id} not found.")
        try:
            await channel.send(content=_clamp_text(content), embed=_to_discord_embed(embed))
        except discord.HTTPException as e:
            raise ExternalTransportError(f"send_message({channel_id}) failed: {e}") from e

    async def delete_channel(self, channel_id: str, reason: Optional[str] = None) -> None:
        channel = await self._raw_channel(channel_id)
        if channel is None:
            raise NotFoundError(f"Channel {channel_id} not found.")
        try:
            await channel.delete(reason=reason)
        except discord.HTTPException as e:
            raise ExternalTransportError(f"delete_channel({channel_id}) failed: {e}") from e

    async def fetch_user(self, user_id: str) -> Optional[PlatformUser]:
        try:
            user = await self.client.fetch_user(int(user_id))
        except discord.NotFound:
            return None
        except discord.HTTPException as e:
            raise ExternalTransportError(f"fetch_user({user_id}) failed: {e}") from e
        return PlatformUser(id=str(user.id), username=user.name, tag=str(user))

    async def send_direct_message(self, user_id: str, content: Optional[str] = None,
                                  embed: Optional[Embed] = None) -> None:
        try:
            user = await self.client.fetch_user(int(user_id))
            await user.send(content=_clamp_text(content), embed=_to_discord_embed(embed))
        except discord.NotFound as e:
            raise NotFoundError(f"User {user_id} not found.") from e
        except discord.HTTPException as e:
            raise ExternalTransportError(f"send_direct_message({user_id}) failed: {e}") from e

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        channel = await self._raw_channel(channel_id)
        if channel is None:
            raise NotFoundError(f"Channel {channel_id} not found.")
        try:
            await channel.get_partial_message(int(message_id)).delete()
        except discord.NotFound as e:
            raise NotFoundError(f"Message {message_id} not found.") from e
        except discord.HTTPException as e:
            raise ExternalTransportError(f"delete_message({message_id}) failed: {e}") from e

    async def timeout_member(self, user_id: str, seconds: int, reason: Optional[str] = None) -> bool:
        guild = await self._guild()
        try:
            member = guild.get_member(int(user_id)) or await guild.fetch_member(int(user_id))
            await member.timeout(timedelta(seconds=seconds), reason=reason)
        except discord.NotFound:
            return False
        except discord.Forbidden:
            # owner, higher role or missing permission
            return False
        except discord.HTTPException as e:
            raise ExternalTransportError(f"timeout_member({user_id}) failed: {e}") from e
        return True
