# orderbridge/channel_topics.py
"""
Correlation metadata carried in channel topics.

The text formats are the wire contract with channels that already exist on
the server, so they must not change:

    payment   Ticket: <ticketId> | User: <userId> | ProductID: <productId>
    site chat Chat do Pedido do Site | OrderID: <orderId> | UserID: <userId>
    delivery  Canal de entrega para <userTag> (ID: <userId>) | Produto: <productId>

parse() is strict: anything that does not match raises ChannelTopicError.
"""
import re
from dataclasses import dataclass
from typing import Optional

from orderbridge.errors import ChannelTopicError

SITE_CHAT_PREFIX = "Chat do Pedido do Site"

_PAYMENT_RE = re.compile(
    r"Ticket: (?P<ticket_id>\S+) \| User: (?P<user_id>\d+) \| ProductID: (?P<product_id>\S+)"
)
_SITE_CHAT_RE = re.compile(
    re.escape(SITE_CHAT_PREFIX) + r" \| OrderID: (?P<order_id>\S+) \| UserID: (?P<user_id>\d+)"
)
_DELIVERY_RE = re.compile(
    r"Canal de entrega para (?P<user_tag>.+) \(ID: (?P<user_id>\d+)\) \| Produto: (?P<product_id>\S+)"
)


def _match(pattern: re.Pattern, topic: Optional[str], what: str) -> re.Match:
    m = pattern.fullmatch((topic or "").strip())
    if m is None:
        raise ChannelTopicError(f"Channel topic is not a {what} topic: {topic!r}")
    return m


@dataclass(frozen=True)
class PaymentTopic:
    ticket_id: str
    user_id: str
    product_id: str

    def format(self) -> str:
        return f"Ticket: {self.ticket_id} | User: {self.user_id} | ProductID: {self.product_id}"

    @classmethod
    def parse(cls, topic: Optional[str]) -> "PaymentTopic":
        m = _match(_PAYMENT_RE, topic, "payment")
        return cls(**m.groupdict())


@dataclass(frozen=True)
class SiteChatTopic:
    order_id: str
    user_id: str

    def format(self) -> str:
        return f"{SITE_CHAT_PREFIX} | OrderID: {self.order_id} | UserID: {self.user_id}"

    @classmethod
    def parse(cls, topic: Optional[str]) -> "SiteChatTopic":
        m = _match(_SITE_CHAT_RE, topic, "site chat")
        return cls(**m.groupdict())


@dataclass(frozen=True)
class DeliveryTopic:
    user_tag: str
    user_id: str
    product_id: str

    def format(self) -> str:
        return f"Canal de entrega para {self.user_tag} (ID: {self.user_id}) | Produto: {self.product_id}"

    @classmethod
    def parse(cls, topic: Optional[str]) -> "DeliveryTopic":
        m = _match(_DELIVERY_RE, topic, "delivery")
        return cls(**m.groupdict())


def is_site_chat_topic(topic: Optional[str]) -> bool:
    return bool(topic) and topic.startswith(SITE_CHAT_PREFIX)
