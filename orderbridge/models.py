# orderbridge/models.py
"""
Domain records shared by the bridge components.

These are plain values: they are built from storage rows (or parsed channel
topics) at the edge and never hold a database session.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union


class OrderStatus(str, Enum):
    ANALISE = "analise"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    DECLINED = "declined"
    ENTREGUE = "entregue"


class MessageAuthor(str, Enum):
    USER = "user"
    STAFF = "staff"
    SYSTEM = "system"


class TokenAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    DELIVER = "deliver"


class ContextType(str, Enum):
    TICKET = "ticket"
    SITE = "site"


# -----------------------
# Channel binding
# -----------------------

@dataclass(frozen=True)
class NoChannel:
    kind = "none"
    channel_id = None


@dataclass(frozen=True)
class PaymentChannel:
    channel_id: str
    kind = "payment"


@dataclass(frozen=True)
class DeliveryChannel:
    channel_id: str
    kind = "delivery"


@dataclass(frozen=True)
class ChatChannel:
    channel_id: str
    kind = "chat"


ChannelBinding = Union[NoChannel, PaymentChannel, DeliveryChannel, ChatChannel]

_BINDING_BY_KIND = {
    "payment": PaymentChannel,
    "delivery": DeliveryChannel,
    "chat": ChatChannel,
}


def binding_from_columns(kind: Optional[str], channel_id: Optional[str]) -> ChannelBinding:
    if not kind or kind == "none" or not channel_id:
        return NoChannel()
    cls = _BINDING_BY_KIND.get(kind)
    if cls is None:
        raise ValueError(f"Unknown channel kind: {kind}")
    return cls(channel_id)


# -----------------------
# Transcript / orders
# -----------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class Message:
    author: MessageAuthor
    content: str
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "author": self.author.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            author=MessageAuthor(data["author"]),
            content=str(data.get("content") or ""),
            timestamp=str(data["timestamp"]),
        )


@dataclass
class Order:
    id: str
    user_id: str
    product_id: str
    product_name: str
    status: OrderStatus
    created_at: datetime
    receipt_url: Optional[str] = None
    channel: ChannelBinding = field(default_factory=NoChannel)
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "productId": self.product_id,
            "productName": self.product_name,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "receiptUrl": self.receipt_url,
            "channelKind": self.channel.kind,
            "channelId": self.channel.channel_id,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: Decimal
    stock: int
    description: Optional[str] = None
    emoji: Optional[str] = None

    @property
    def unlimited(self) -> bool:
        return self.stock == -1

    @property
    def in_stock(self) -> bool:
        return self.stock == -1 or self.stock > 0


# -----------------------
# Verification
# -----------------------

@dataclass(frozen=True)
class TokenContext:
    type: ContextType
    order_id: Optional[str] = None
    channel_id: Optional[str] = None
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None


@dataclass(frozen=True)
class VerificationToken:
    id: str
    context: TokenContext
    details: dict[str, Any]
    expires_at: float
    action: Optional[TokenAction] = None


@dataclass(frozen=True)
class ActionResult:
    success: bool
    message: str
