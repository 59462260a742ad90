# orderbridge/platform_router.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from orderbridge.audit import AuditLog
from orderbridge.channel_lifecycle import ChannelLifecycleManager
from orderbridge.channel_topics import PaymentTopic, is_site_chat_topic
from orderbridge.errors import ChannelTopicError, OrderBridgeError
from orderbridge.message_bridge import MessageBridge
from orderbridge.models import ActionResult, ContextType, TokenContext
from orderbridge.moderation import MUTE_SECONDS, ProfanityFilter
from orderbridge.order_store import OrderStore
from orderbridge.platform import MessagingPlatform, PlatformUser
from orderbridge.verification import VerificationDispatcher

logger = logging.getLogger("orderbridge")

PAYMENT_CHANNEL_PREFIX = "pagamento-"
BUY_COMMAND = "!comprar"
CONFIRM_COMMAND = "!confirmar"

PROFANITY_WARNING = "Watch your language. You have been muted for 24 hours."


@dataclass(frozen=True)
class InboundMessage:
    channel_id: str
    channel_name: str
    channel_topic: Optional[str]
    author_id: str
    author_name: str
    author_tag: str
    content: str
    author_is_bot: bool = False
    author_is_admin: bool = False
    attachment_urls: tuple[str, ...] = ()
    message_id: Optional[str] = None


class PlatformMessageRouter:
    """
    Entry point for messages posted on the platform. Decides, per channel,
    whether the message is a site-chat turn, a ticket proof of payment or a
    text command. Every message also goes through the profanity filter.
    """

    def __init__(
        self,
        platform: MessagingPlatform,
        store: OrderStore,
        bridge: MessageBridge,
        channels: ChannelLifecycleManager,
        dispatcher: VerificationDispatcher,
        audit: AuditLog,
        profanity: Optional[ProfanityFilter] = None,
    ) -> None:
        self.platform = platform
        self.store = store
        self.bridge = bridge
        self.channels = channels
        self.dispatcher = dispatcher
        self.audit = audit
        self.profanity = profanity or ProfanityFilter()

    async def handle_message(self, msg: InboundMessage) -> None:
        if msg.author_is_bot or msg.author_id == self.platform.bot_user_id:
            return

        site_chat = is_site_chat_topic(msg.channel_topic)
        if site_chat:
            try:
                await self.bridge.handle_platform_message(
                    msg.channel_topic, msg.content, author_id=msg.author_id
                )
            except OrderBridgeError as e:
                logger.error(f"Site chat relay aborted for channel {msg.channel_id}: {e}")

        if await self.moderate(msg) or site_chat:
            return

        if msg.channel_name.startswith(PAYMENT_CHANNEL_PREFIX) and msg.attachment_urls:
            await self._handle_payment_proof(msg)
            return

        command, _, arg = msg.content.strip().partition(" ")
        command = command.lower()
        if command == BUY_COMMAND:
            await self._handle_buy(msg, arg.strip())
        elif command == CONFIRM_COMMAND and msg.channel_name.startswith(PAYMENT_CHANNEL_PREFIX):
            result = await self.confirm_payment(msg.channel_id, None, msg.author_tag, msg.author_is_admin)
            if not result.success:
                await self._reply(msg.channel_id, f"❌ {result.message}")

    async def moderate(self, msg: InboundMessage) -> bool:
        """
        Mute and clean up after a member who used a blocked word.
        Administrators are never muted. Returns True when the message was
        handled as profanity and must not be processed further.
        """
        if not self.profanity.matches(msg.content) or msg.author_is_admin:
            return False

        try:
            await self.platform.send_direct_message(msg.author_id, PROFANITY_WARNING)
        except Exception as e:
            logger.warning(f"Could not warn user {msg.author_id}: {e}")

        try:
            muted = await self.platform.timeout_member(msg.author_id, MUTE_SECONDS, "Inappropriate language.")
        except Exception as e:
            logger.warning(f"Could not mute user {msg.author_id}: {e}")
            muted = False
        if muted:
            await self.audit.record(
                f"MODERATION: {msg.author_tag} (ID: {msg.author_id}) muted for 24h "
                f"for inappropriate language: \"{msg.content}\""
            )
        else:
            await self.audit.record(
                f"MODERATION: could not mute {msg.author_tag} (missing permissions or member not moderatable)."
            )

        if msg.message_id:
            try:
                await self.platform.delete_message(msg.channel_id, msg.message_id)
            except Exception as e:
                logger.warning(f"Could not delete message {msg.message_id} in {msg.channel_id}: {e}")
        return True

    async def confirm_payment(self, channel_id: str, product_id: Optional[str],
                              admin_tag: str, is_admin: bool) -> ActionResult:
        if not is_admin:
            return ActionResult(False, "You are not allowed to confirm payments.")
        return await self.channels.confirm_payment(channel_id, product_id, confirmed_by=admin_tag)

    async def _handle_payment_proof(self, msg: InboundMessage) -> None:
        try:
            route = PaymentTopic.parse(msg.channel_topic)
        except ChannelTopicError as e:
            logger.error(f"Proof of payment ignored in {msg.channel_id}: {e}")
            return

        product = await asyncio.to_thread(self.store.get_product_by_id, route.product_id)
        await self._reply(msg.channel_id, "✅ Proof received! Our staff will review it shortly.")
        await self.dispatcher.request_proof_review(
            {
                "title": "Ticket proof of payment",
                "userTag": msg.author_tag,
                "productName": product.name if product is not None else "Unknown",
                "productPrice": str(product.price) if product is not None else "N/A",
                "imageUrl": msg.attachment_urls[0],
            },
            TokenContext(
                type=ContextType.TICKET,
                channel_id=msg.channel_id,
                user_id=route.user_id,
                product_id=route.product_id,
            ),
        )

    async def _handle_buy(self, msg: InboundMessage, product_id: str) -> None:
        if not product_id:
            await self._reply(msg.channel_id, f"Usage: `{BUY_COMMAND} <product id>`")
            return
        user = PlatformUser(id=msg.author_id, username=msg.author_name, tag=msg.author_tag)
        try:
            channel = await self.channels.open_payment_channel(user, product_id)
        except OrderBridgeError as e:
            await self._reply(msg.channel_id, f"❌ {e}")
            return
        await self._reply(msg.channel_id, f"✅ Your private payment channel is ready: <#{channel.id}>")

    async def _reply(self, channel_id: str, content: str) -> None:
        try:
            await self.platform.send_message(channel_id, content)
        except Exception as e:
            logger.warning(f"Could not reply in channel {channel_id}: {e}")
