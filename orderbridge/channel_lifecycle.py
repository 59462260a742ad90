# orderbridge/channel_lifecycle.py
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from orderbridge.app_config import Settings
from orderbridge.audit import AuditLog
from orderbridge.channel_topics import DeliveryTopic, PaymentTopic, SiteChatTopic
from orderbridge.errors import ChannelTopicError, NotFoundError, OutOfStockError
from orderbridge.events import DeliveryChannelOpened, EventBus, OrderApproved, OrderDeclined, OrderDelivered
from orderbridge.keyed_locks import KeyedLocks
from orderbridge.models import ActionResult, ChatChannel, NoChannel, Order
from orderbridge.order_state_machine import OrderStateMachine
from orderbridge.order_store import OrderStore
from orderbridge.platform import ChannelVisibility, Embed, MessagingPlatform, PlatformChannel, PlatformUser

logger = logging.getLogger("orderbridge")


class ChannelLifecycleManager:
    """
    Turns order transitions into channel operations on the messaging platform.

    Site orders get one chat channel, opened on approval and deleted a short
    while after delivery. Ticket purchases (platform-only, nothing persisted)
    move from a payment channel to a delivery channel; their correlation data
    lives only in the channel topics.
    """

    def __init__(
        self,
        platform: MessagingPlatform,
        store: OrderStore,
        state_machine: OrderStateMachine,
        bus: EventBus,
        settings: Settings,
        audit: AuditLog,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.platform = platform
        self.store = store
        self.state_machine = state_machine
        self.bus = bus
        self.settings = settings
        self.audit = audit
        self.delete_delay = settings.CHANNEL_DELETE_DELAY_SECONDS
        self.locks = locks or KeyedLocks()
        self._pending: set[asyncio.Task] = set()
        # payment channels already confirmed in this process
        self._confirmed_payments: set[str] = set()

    def subscribe(self) -> None:
        self.bus.subscribe(OrderApproved, self._on_order_approved)
        self.bus.subscribe(OrderDeclined, self._on_order_declined)
        self.bus.subscribe(OrderDelivered, self._on_order_delivered)

    def _visibility(self, user_id: str, writable: bool = False, include_bot: bool = False) -> ChannelVisibility:
        user_ids = [str(user_id)]
        bot_id = self.platform.bot_user_id
        if include_bot and bot_id:
            user_ids.append(bot_id)
        return ChannelVisibility(
            user_ids=tuple(user_ids),
            role_ids=(self.settings.ADMIN_ROLE_ID,) if self.settings.ADMIN_ROLE_ID else (),
            writer_user_ids=(str(user_id),) if writable else (),
        )

    # -----------------------
    # Site orders
    # -----------------------

    async def open_chat_channel(self, order: Order) -> PlatformChannel:
        name = f"chat-{order.product_name[:10]}-{order.user_id[-4:]}"
        topic = SiteChatTopic(order_id=order.id, user_id=order.user_id).format()
        channel = await self.platform.create_channel(name, topic, self._visibility(order.user_id, writable=True))
        await self.state_machine.bind_channel(order.id, ChatChannel(channel.id))

        await self._best_effort(
            self.platform.send_message(
                channel.id,
                f"Hello <@{order.user_id}> and <@&{self.settings.ADMIN_ROLE_ID}>! "
                f"This is the chat for your order **{order.product_name}**.",
            ),
            f"greeting in chat channel {channel.id}",
        )
        return channel

    async def _on_order_approved(self, event: OrderApproved) -> None:
        channel = await self.open_chat_channel(event.order)
        await self.audit.record(
            f"SITE: Order {event.order.id} of <@{event.order.user_id}> APPROVED; chat channel #{channel.name} created."
        )

    async def _on_order_declined(self, event: OrderDeclined) -> None:
        order = event.order
        await self._best_effort(
            self.platform.send_direct_message(
                order.user_id,
                f"Your proof of payment for **{order.product_name}** (`{order.id}`) was reviewed and "
                f"**declined**. Please contact support if you think this is a mistake.",
            ),
            f"decline notice to user {order.user_id}",
        )
        await self.audit.record(f"SITE: Order {order.id} of <@{order.user_id}> DECLINED.")

    async def _on_order_delivered(self, event: OrderDelivered) -> None:
        order = event.order
        await self._best_effort(
            self.platform.send_direct_message(
                order.user_id,
                f"Your order **{order.product_name}** (`{order.id}`) was completed and delivered!",
            ),
            f"delivery notice to user {order.user_id}",
        )
        if isinstance(order.channel, ChatChannel):

            async def _unbind() -> None:
                await self.state_machine.bind_channel(order.id, NoChannel())

            self.schedule_deletion(order.channel.channel_id, "Site order delivered.", on_gone=_unbind)
        await self.audit.record(f"SITE: Order {order.id} of <@{order.user_id}> marked as DELIVERED.")

    # -----------------------
    # Ticket purchases
    # -----------------------

    async def open_payment_channel(self, user: PlatformUser, product_id: str) -> PlatformChannel:
        product = await asyncio.to_thread(self.store.get_product_by_id, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found.")
        if not product.in_stock:
            raise OutOfStockError(f"Product {product.name} is out of stock.")

        ticket_id = f"pagamento-{user.username[:10]}-{str(int(time.time() * 1000))[-4:]}"
        topic = PaymentTopic(ticket_id=ticket_id, user_id=user.id, product_id=product.id).format()
        channel = await self.platform.create_channel(ticket_id, topic, self._visibility(user.id, include_bot=True))

        embed = (
            Embed(
                title="🛒 Payment details",
                description=(
                    f"Hi <@{user.id}>! To complete the purchase of **{product.name}**, "
                    f"make the payment and send the proof here."
                ),
                color="gold",
            )
            .add_field("Product", product.name, inline=True)
            .add_field("Amount", f"**R$ {product.price}**", inline=True)
            .add_field("Pix key", f"```{self.settings.PIX_KEY}```")
        )
        await self.platform.send_message(
            channel.id, f"Attention <@&{self.settings.ADMIN_ROLE_ID}>, new order!", embed=embed
        )
        # separate message so the key can be copied on mobile
        await self._best_effort(self.platform.send_message(channel.id, self.settings.PIX_KEY),
                                f"pix key in {channel.id}")
        await self.audit.record(f"TICKET: payment channel #{channel.name} opened for {user.tag} ({product.name}).")
        return channel

    async def confirm_payment(self, channel_id: str, product_id: Optional[str], confirmed_by: str) -> ActionResult:
        """
        Ticket approval. Serialized per payment channel; once a channel is
        confirmed (or gone) every later confirmation is refused, so stock is
        taken and a delivery channel opened at most once.
        """
        async with self.locks.hold(channel_id):
            if channel_id in self._confirmed_payments:
                return ActionResult(False, "Payment already confirmed for this channel.")
            return await self._confirm_payment_locked(channel_id, product_id, confirmed_by)

    async def _confirm_payment_locked(self, channel_id: str, product_id: Optional[str],
                                      confirmed_by: str) -> ActionResult:
        payment_channel = await self._fetch_channel_or_none(channel_id)
        if payment_channel is None or not payment_channel.topic:
            logger.error(f"Payment channel {channel_id} not found or has no topic.")
            return ActionResult(False, "Payment channel not found.")
        try:
            route = PaymentTopic.parse(payment_channel.topic)
        except ChannelTopicError as e:
            logger.error(str(e))
            return ActionResult(False, "User id not found in the payment channel.")

        product_id = product_id or route.product_id
        user = await self.platform.fetch_user(route.user_id)
        if user is None:
            return ActionResult(False, f"User {route.user_id} not found.")

        # from here on the ticket counts as confirmed, even if a later step fails
        self._confirmed_payments.add(channel_id)
        product = await asyncio.to_thread(self.store.get_product_by_id, product_id)
        if product is not None and not product.unlimited:
            await asyncio.to_thread(self.store.decrease_product_stock, product_id)
        product_name = product.name if product is not None else "unknown"

        await self.audit.record(
            f"PAYMENT CONFIRMED: {confirmed_by} confirmed payment for {user.tag} "
            f"(product: {product_name}, id: {product_id})."
        )
        try:
            await self.platform.delete_channel(payment_channel.id, "Payment confirmed. Opening delivery channel.")
        except Exception as e:
            logger.warning(f"Could not delete payment channel {payment_channel.id}: {e}")

        delivery_channel = await self.platform.create_channel(
            f"entrega-{user.username[:20]}",
            DeliveryTopic(user_tag=user.tag, user_id=user.id, product_id=product_id).format(),
            self._visibility(user.id),
        )
        embed = (
            Embed(
                title="📦 Delivery ready",
                description=f"Payment from <@{user.id}> for **{product_name}** was confirmed!",
                color="green",
            )
            .add_field("Action required", f"Deliver the product to <@{user.id}> in this channel.")
        )
        await self._best_effort(
            self.platform.send_message(
                delivery_channel.id, f"Attention, <@&{self.settings.ADMIN_ROLE_ID}>!", embed=embed
            ),
            f"delivery announcement in {delivery_channel.id}",
        )
        await self.bus.publish(
            DeliveryChannelOpened(
                channel_id=delivery_channel.id,
                user_id=user.id,
                product_id=product_id,
                product_name=product_name,
            )
        )
        return ActionResult(True, f"Payment approved for {user.tag}. Delivery channel created.")

    async def reject_payment(self, channel_id: str) -> ActionResult:
        payment_channel = await self._fetch_channel_or_none(channel_id)
        if payment_channel is not None:
            await self._best_effort(
                self.platform.send_message(
                    payment_channel.id,
                    "❌ Your proof of payment was reviewed and **declined**. "
                    "Please send a valid proof or contact support.",
                ),
                f"refusal in {payment_channel.id}",
            )
        name = payment_channel.name if payment_channel is not None else channel_id
        await self.audit.record(f"PAYMENT DECLINED: proof in channel {name} declined via link.")
        return ActionResult(True, f"Payment DECLINED for channel {name}. The user was notified.")

    async def confirm_ticket_delivery(self, channel_id: str, user_id: str, product_name: str) -> ActionResult:
        delivery_channel = await self._fetch_channel_or_none(channel_id)
        if delivery_channel is not None:
            await self._best_effort(
                self.platform.send_message(
                    delivery_channel.id,
                    f"✅ Delivery confirmed! This channel will be deleted in {self.delete_delay} seconds.",
                ),
                f"delivery confirmation in {delivery_channel.id}",
            )
            self.schedule_deletion(delivery_channel.id, "Delivery completed.")

        await self._best_effort(
            self.platform.send_direct_message(
                user_id, f"🎉 Your purchase of **{product_name}** is complete. Thanks for buying with us!"
            ),
            f"delivery notice to user {user_id}",
        )
        name = delivery_channel.name if delivery_channel is not None else "unknown"
        await self.audit.record(f"DELIVERY CONFIRMED (via link): ticket {name}, product {product_name}.")
        return ActionResult(True, f"Delivery for ticket {name} confirmed.")

    # -----------------------
    # Deferred deletion
    # -----------------------

    def schedule_deletion(
        self,
        channel_id: str,
        reason: str,
        on_gone: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(self._delete_later(channel_id, reason, on_gone))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_pending(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _delete_later(
        self,
        channel_id: str,
        reason: str,
        on_gone: Optional[Callable[[], Awaitable[None]]],
    ) -> None:
        await asyncio.sleep(self.delete_delay)
        try:
            await self.platform.delete_channel(channel_id, reason)
        except NotFoundError:
            logger.info(f"Channel {channel_id} was already gone")
        except Exception as e:
            # a leftover channel is acceptable; keep the binding since it still exists
            logger.warning(f"Could not delete channel {channel_id}: {e}")
            return
        if on_gone is not None:
            try:
                await on_gone()
            except Exception:
                logger.exception(f"Cleanup after deleting channel {channel_id} failed")

    # -----------------------
    # Helpers
    # -----------------------

    async def _fetch_channel_or_none(self, channel_id: str) -> Optional[PlatformChannel]:
        try:
            return await self.platform.fetch_channel(channel_id)
        except Exception as e:
            logger.warning(f"Could not fetch channel {channel_id}: {e}")
            return None

    async def _best_effort(self, call: Awaitable, what: str) -> None:
        try:
            await call
        except Exception as e:
            logger.warning(f"Best-effort platform call failed ({what}): {e}")
