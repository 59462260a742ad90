# orderbridge/order_store.py
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from orderbridge import entities
from orderbridge.entities import Base
from orderbridge.errors import NotFoundError
from orderbridge.models import (
    ChannelBinding,
    Message,
    NoChannel,
    Order,
    OrderStatus,
    Product,
    binding_from_columns,
)

logger = logging.getLogger("orderbridge")


def _to_order(row: entities.Order) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        product_id=row.product_id,
        product_name=row.product_name,
        status=OrderStatus(row.status),
        created_at=row.created_at,
        receipt_url=row.receipt_url,
        channel=binding_from_columns(row.channel_kind, row.channel_id),
        messages=[Message.from_dict(m) for m in (row.messages or [])],
    )


def _to_product(row: entities.Product) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        price=row.price,
        stock=row.stock,
        description=row.description,
        emoji=row.emoji,
    )


class OrderStore:
    """
    Storage collaborator: simple parameterized reads and narrow writes.

    Every method opens and closes its own session. Callers on the event loop
    reach it through asyncio.to_thread.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.SessionFactory = session_factory

    def create_tables(self) -> None:
        session = self.SessionFactory()
        try:
            Base.metadata.create_all(session.get_bind())
            logger.info("[DB] tables checked/created")
        finally:
            session.close()

    # -----------------------
    # Products
    # -----------------------

    def get_products(self) -> list[Product]:
        session = self.SessionFactory()
        try:
            rows = session.scalars(
                select(entities.Product).where(
                    or_(entities.Product.stock > 0, entities.Product.stock == -1)
                )
            ).all()
            return [_to_product(r) for r in rows]
        finally:
            session.close()

    def get_product_by_id(self, product_id: str) -> Optional[Product]:
        session = self.SessionFactory()
        try:
            row = session.get(entities.Product, str(product_id))
            return _to_product(row) if row is not None else None
        finally:
            session.close()

    def add_product(self, product: Product) -> Product:
        session = self.SessionFactory()
        try:
            session.add(
                entities.Product(
                    id=product.id,
                    name=product.name,
                    price=product.price,
                    description=product.description,
                    emoji=product.emoji,
                    stock=product.stock,
                )
            )
            session.commit()
            return product
        finally:
            session.close()

    def decrease_product_stock(self, product_id: str) -> bool:
        """
        Single guarded decrement. Unlimited (-1) and exhausted (0) stock are
        left untouched. Returns True when a unit was taken.
        """
        session = self.SessionFactory()
        try:
            result = session.execute(
                update(entities.Product)
                .where(entities.Product.id == str(product_id))
                .where(entities.Product.stock > 0)
                .values(stock=entities.Product.stock - 1)
            )
            session.commit()
            return result.rowcount > 0
        finally:
            session.close()

    # -----------------------
    # Accounts
    # -----------------------

    def find_or_create_account(self, user_id: str, username: str, avatar: Optional[str] = None,
                               discriminator: Optional[str] = None) -> None:
        session = self.SessionFactory()
        try:
            account = session.get(entities.Account, str(user_id))
            if account is None:
                session.add(
                    entities.Account(
                        id=str(user_id),
                        username=username,
                        discriminator=discriminator,
                        avatar=avatar,
                        verified_at=datetime.now(timezone.utc),
                    )
                )
            else:
                account.username = username
                account.avatar = avatar
            session.commit()
        finally:
            session.close()

    # -----------------------
    # Orders
    # -----------------------

    def create_order(self, order: Order) -> Order:
        session = self.SessionFactory()
        try:
            session.add(
                entities.Order(
                    id=order.id,
                    user_id=order.user_id,
                    product_id=order.product_id,
                    product_name=order.product_name,
                    status=order.status.value,
                    created_at=order.created_at,
                    receipt_url=order.receipt_url,
                    channel_kind=order.channel.kind,
                    channel_id=order.channel.channel_id,
                    messages=[m.to_dict() for m in order.messages],
                )
            )
            session.commit()
            return order
        finally:
            session.close()

    def get_order_by_id(self, order_id: str, user_id: str) -> Optional[Order]:
        """Owner-scoped lookup: returns None when the order is not the user's."""
        session = self.SessionFactory()
        try:
            row = session.scalars(
                select(entities.Order)
                .where(entities.Order.id == str(order_id))
                .where(entities.Order.user_id == str(user_id))
            ).one_or_none()
            return _to_order(row) if row is not None else None
        finally:
            session.close()

    def get_order(self, order_id: str) -> Optional[Order]:
        session = self.SessionFactory()
        try:
            row = session.get(entities.Order, str(order_id))
            return _to_order(row) if row is not None else None
        finally:
            session.close()

    def get_orders_by_user_id(self, user_id: str) -> list[Order]:
        session = self.SessionFactory()
        try:
            rows = session.scalars(
                select(entities.Order)
                .where(entities.Order.user_id == str(user_id))
                .order_by(entities.Order.created_at.desc())
            ).all()
            return [_to_order(r) for r in rows]
        finally:
            session.close()

    def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        receipt_url: Optional[str] = None,
        channel: Optional[ChannelBinding] = None,
    ) -> Order:
        session = self.SessionFactory()
        try:
            row = session.get(entities.Order, str(order_id), with_for_update=True)
            if row is None:
                raise NotFoundError(f"Order {order_id} not found.")
            row.status = status.value
            if receipt_url:
                row.receipt_url = receipt_url
            if channel is not None:
                row.channel_kind = channel.kind
                row.channel_id = channel.channel_id
            session.commit()
            return _to_order(row)
        finally:
            session.close()

    def bind_order_channel(self, order_id: str, channel: ChannelBinding) -> Order:
        session = self.SessionFactory()
        try:
            row = session.get(entities.Order, str(order_id), with_for_update=True)
            if row is None:
                raise NotFoundError(f"Order {order_id} not found.")
            channel = channel or NoChannel()
            row.channel_kind = channel.kind
            row.channel_id = channel.channel_id
            session.commit()
            return _to_order(row)
        finally:
            session.close()

    def add_message_to_order(self, order_id: str, message: Message) -> Order:
        """Appends to the transcript; earlier entries are never rewritten."""
        session = self.SessionFactory()
        try:
            row = session.get(entities.Order, str(order_id), with_for_update=True)
            if row is None:
                raise NotFoundError(f"Order {order_id} not found.")
            # new list so the JSON column is flagged dirty
            row.messages = list(row.messages or []) + [message.to_dict()]
            session.commit()
            return _to_order(row)
        finally:
            session.close()

    # -----------------------
    # Audit
    # -----------------------

    def add_audit_log(self, message: str) -> None:
        session = self.SessionFactory()
        try:
            session.add(entities.AuditLog(message=message))
            session.commit()
        finally:
            session.close()
