# bot_main.py
"""
Process entry point: discord client + web app + token sweeper, one event loop.

Everything is wired once here (build_services) and shared by the three tasks:

  - the discord client feeds channel messages to PlatformMessageRouter;
  - uvicorn serves server.create_app(services);
  - SweepGuard periodically drops expired verification tokens, so tokens
    whose eviction timer never ran do not pile up.
"""
import asyncio
import logging

import discord
import uvicorn

from orderbridge.app_config import LOG_FORMAT, Settings
from orderbridge.discord_platform import DiscordPlatform
from orderbridge.platform_router import InboundMessage
from orderbridge.services import Services, build_services
from server import create_app

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
)
logger = logging.getLogger("orderbridge")


def _is_admin(member, settings: Settings) -> bool:
    perms = getattr(member, "guild_permissions", None)
    if perms is not None and perms.administrator:
        return True
    roles = getattr(member, "roles", None) or []
    return any(str(r.id) == settings.ADMIN_ROLE_ID for r in roles)


def to_inbound(message: discord.Message, settings: Settings) -> InboundMessage:
    channel = message.channel
    return InboundMessage(
        channel_id=str(channel.id),
        channel_name=getattr(channel, "name", "") or "",
        channel_topic=getattr(channel, "topic", None),
        author_id=str(message.author.id),
        author_name=message.author.name,
        author_tag=str(message.author),
        content=message.content or "",
        author_is_bot=message.author.bot,
        author_is_admin=_is_admin(message.author, settings),
        attachment_urls=tuple(a.url for a in message.attachments),
        message_id=str(message.id),
    )


class SweepGuard:
    def __init__(self, services: Services, interval: float = 60.0):
        self.services = services
        self.interval = interval

    async def run(self) -> None:
        logger.info(f"SweepGuard running (interval={self.interval}s)")
        while True:
            removed = self.services.sweep()
            if removed:
                logger.debug(f"TokenStore sweep: removed {removed} expired tokens")
            await asyncio.sleep(self.interval)


def build_client(settings: Settings) -> discord.Client:
    intents = discord.Intents.default()
    intents.message_content = True
    intents.guilds = True
    intents.members = True
    intents.dm_messages = True
    return discord.Client(intents=intents)


async def amain() -> None:
    settings = Settings.from_env()
    if not settings.DISCORD_TOKEN:
        raise RuntimeError("DISCORD_TOKEN env var is required")

    client = build_client(settings)
    services = build_services(settings, DiscordPlatform(client, settings))
    await asyncio.to_thread(services.store.create_tables)

    @client.event
    async def on_ready():
        logger.info(f"Discord client ready as {client.user}")

    @client.event
    async def on_message(message: discord.Message):
        if message.guild is None:
            return
        try:
            await services.router.handle_message(to_inbound(message, settings))
        except Exception:
            logger.exception(f"Unhandled error routing message in channel {message.channel.id}")

    web = uvicorn.Server(
        uvicorn.Config(create_app(services), host="0.0.0.0", port=settings.PORT, log_level="info")
    )
    guard = SweepGuard(services, interval=settings.SWEEP_INTERVAL_SECONDS)

    async with client:
        await asyncio.gather(
            client.start(settings.DISCORD_TOKEN),
            web.serve(),
            guard.run(),
        )


def main() -> None:
    asyncio.run(amain())


if __name__ == "__main__":
    main()
