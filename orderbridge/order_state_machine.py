# orderbridge/order_state_machine.py
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from orderbridge.errors import InvalidTransitionError, NotFoundError
from orderbridge.events import EventBus, OrderApproved, OrderDeclined, OrderDelivered, ProofSubmitted
from orderbridge.keyed_locks import KeyedLocks
from orderbridge.models import ChannelBinding, Order, OrderStatus
from orderbridge.order_store import OrderStore

logger = logging.getLogger("orderbridge")


# Key   : current status
# Value : statuses reachable from it
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.ANALISE: frozenset({OrderStatus.PENDING_APPROVAL}),
    OrderStatus.PENDING_APPROVAL: frozenset({OrderStatus.APPROVED, OrderStatus.DECLINED}),
    OrderStatus.APPROVED: frozenset({OrderStatus.ENTREGUE}),
    OrderStatus.DECLINED: frozenset(),
    OrderStatus.ENTREGUE: frozenset(),
}

# statuses in which the web chat is open
CHAT_STATUSES = frozenset({OrderStatus.APPROVED, OrderStatus.ENTREGUE})


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def new_site_order_id() -> str:
    return f"order-site-{int(time.time() * 1000)}"


class OrderStateMachine:
    """
    Sole writer of Order.status.

    Each transition is checked and written under the order's lock; the domain
    event is published after the lock is released, and subscriber failures
    never undo the write.
    """

    def __init__(self, store: OrderStore, bus: EventBus, locks: Optional[KeyedLocks] = None) -> None:
        self.store = store
        self.bus = bus
        self.locks = locks or KeyedLocks()

    # -----------------------
    # Reads
    # -----------------------

    async def get_order(self, order_id: str, user_id: str) -> Order:
        order = await asyncio.to_thread(self.store.get_order_by_id, order_id, user_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found.")
        return order

    async def get_status(self, order_id: str, user_id: str) -> Optional[OrderStatus]:
        order = await asyncio.to_thread(self.store.get_order_by_id, order_id, user_id)
        return order.status if order is not None else None

    # -----------------------
    # Writes
    # -----------------------

    async def create_order(self, user_id: str, product_id: str, order_id: Optional[str] = None) -> Order:
        product = await asyncio.to_thread(self.store.get_product_by_id, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found.")
        order = Order(
            id=order_id or new_site_order_id(),
            user_id=str(user_id),
            product_id=product.id,
            product_name=product.name,
            status=OrderStatus.ANALISE,
            created_at=datetime.now(timezone.utc),
        )
        await asyncio.to_thread(self.store.create_order, order)
        logger.info(f"Order {order.id} created for user {user_id} ({product.name})")
        return order

    async def submit_proof(self, order_id: str, user_id: str, receipt_url: str,
                           submitted_by: Optional[str] = None) -> Order:
        order = await self._transition(order_id, user_id, OrderStatus.PENDING_APPROVAL, receipt_url=receipt_url)
        await self.bus.publish(ProofSubmitted(order=order, submitted_by=submitted_by or user_id))
        return order

    async def approve(self, order_id: str, user_id: str) -> Order:
        order = await self._transition(order_id, user_id, OrderStatus.APPROVED)
        await self.bus.publish(OrderApproved(order=order))
        return await self.get_order(order_id, user_id)

    async def reject(self, order_id: str, user_id: str) -> Order:
        order = await self._transition(order_id, user_id, OrderStatus.DECLINED)
        await self.bus.publish(OrderDeclined(order=order))
        return order

    async def mark_delivered(self, order_id: str, user_id: str) -> Order:
        order = await self._transition(order_id, user_id, OrderStatus.ENTREGUE)
        await self.bus.publish(OrderDelivered(order=order))
        return await self.get_order(order_id, user_id)

    async def bind_channel(self, order_id: str, channel: ChannelBinding) -> Order:
        async with self.locks.hold(order_id):
            return await asyncio.to_thread(self.store.bind_order_channel, order_id, channel)

    async def _transition(self, order_id: str, user_id: str, target: OrderStatus,
                          receipt_url: Optional[str] = None) -> Order:
        async with self.locks.hold(order_id):
            order = await self.get_order(order_id, user_id)
            if not is_valid_transition(order.status, target):
                raise InvalidTransitionError(order_id, order.status.value, target.value)
            updated = await asyncio.to_thread(
                self.store.update_order_status, order_id, target, receipt_url
            )
        logger.info(f"Order {order_id}: {order.status.value} -> {target.value}")
        return updated
