# orderbridge/message_bridge.py
import asyncio
import logging
from typing import Optional

from orderbridge.channel_topics import SiteChatTopic, is_site_chat_topic
from orderbridge.errors import NotFoundError, UnauthorizedError
from orderbridge.events import EventBus, MessageAppended, OrderDelivered
from orderbridge.keyed_locks import KeyedLocks
from orderbridge.models import Message, MessageAuthor, NoChannel, Order, utc_now_iso
from orderbridge.order_store import OrderStore
from orderbridge.platform import MessagingPlatform
from orderbridge.room_hub import NEW_MESSAGE_EVENT, RoomConnection, RoomHub

logger = logging.getLogger("orderbridge")

DELIVERED_SYSTEM_MESSAGE = "The order was marked as DELIVERED by the staff. Messages sent here stay on the order for support."


class MessageBridge:
    """
    Keeps one order's transcript in sync between the web room and the bound
    platform channel.

    Every append goes through _append_and_broadcast, which holds the order's
    lock across "append to storage" and "broadcast to the room" so the stored
    order and the broadcast order are the same.
    """

    def __init__(
        self,
        store: OrderStore,
        platform: MessagingPlatform,
        rooms: RoomHub,
        bus: EventBus,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.store = store
        self.platform = platform
        self.rooms = rooms
        self.bus = bus
        self.locks = locks or KeyedLocks()

    def subscribe(self) -> None:
        self.bus.subscribe(OrderDelivered, self._on_order_delivered)

    # -----------------------
    # Inbound
    # -----------------------

    async def handle_web_message(
        self,
        order_id: str,
        user_id: str,
        display_name: str,
        text: str,
        sender: Optional[RoomConnection] = None,
    ) -> Optional[Message]:
        text = (text or "").strip()
        if not text:
            return None

        order = await asyncio.to_thread(self.store.get_order_by_id, order_id, user_id)
        if order is None:
            raise UnauthorizedError(f"Order {order_id} does not belong to user {user_id}.")

        message = await self._append_and_broadcast(order_id, MessageAuthor.USER, text, exclude=sender)
        await self._forward_to_platform(order, display_name, text)
        return message

    async def handle_platform_message(
        self,
        topic: Optional[str],
        content: str,
        author_id: Optional[str] = None,
        author_is_bot: bool = False,
    ) -> Optional[Message]:
        """
        Relay a message posted in a site-chat channel. Channels with other
        topics are ignored; a site-chat topic that does not parse raises
        ChannelTopicError.
        """
        if author_is_bot or (author_id is not None and author_id == self.platform.bot_user_id):
            return None
        if not is_site_chat_topic(topic):
            return None
        content = (content or "").strip()
        if not content:
            return None

        route = SiteChatTopic.parse(topic)
        order = await asyncio.to_thread(self.store.get_order, route.order_id)
        if order is None:
            raise NotFoundError(f"Order {route.order_id} from channel topic not found.")
        if order.user_id != route.user_id:
            raise UnauthorizedError(
                f"Channel topic user {route.user_id} does not own order {route.order_id}."
            )

        return await self._append_and_broadcast(order.id, MessageAuthor.STAFF, content)

    async def post_system_message(self, order_id: str, content: str) -> Message:
        return await self._append_and_broadcast(order_id, MessageAuthor.SYSTEM, content)

    # -----------------------
    # Internals
    # -----------------------

    async def _on_order_delivered(self, event: OrderDelivered) -> None:
        await self.post_system_message(event.order.id, DELIVERED_SYSTEM_MESSAGE)

    async def _append_and_broadcast(
        self,
        order_id: str,
        author: MessageAuthor,
        content: str,
        exclude: Optional[RoomConnection] = None,
    ) -> Message:
        async with self.locks.hold(order_id):
            current = await asyncio.to_thread(self.store.get_order, order_id)
            if current is None:
                raise NotFoundError(f"Order {order_id} not found.")
            timestamp = utc_now_iso()
            if current.messages and current.messages[-1].timestamp > timestamp:
                timestamp = current.messages[-1].timestamp
            message = Message(author=author, content=content, timestamp=timestamp)

            await asyncio.to_thread(self.store.add_message_to_order, order_id, message)
            await self.rooms.broadcast(order_id, NEW_MESSAGE_EVENT, message.to_dict(), exclude=exclude)

        await self.bus.publish(MessageAppended(order_id=order_id, message=message))
        return message

    async def _forward_to_platform(self, order: Order, display_name: str, text: str) -> None:
        if isinstance(order.channel, NoChannel):
            logger.debug(f"Order {order.id} has no bound channel; web message not forwarded")
            return
        channel_id = order.channel.channel_id
        try:
            await self.platform.send_message(channel_id, f"**[SITE] {display_name}:** {text}")
        except Exception as e:
            logger.warning(
                f"Could not forward web message for order {order.id} to channel {channel_id}: {e}"
            )
