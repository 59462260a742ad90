import pytest

from orderbridge.channel_topics import (
    DeliveryTopic,
    PaymentTopic,
    SiteChatTopic,
    is_site_chat_topic,
)
from orderbridge.errors import ChannelTopicError


def test_payment_topic_format_and_parse():
    topic = PaymentTopic(ticket_id="pagamento-alice-1234", user_id="123", product_id="p1")
    text = topic.format()
    assert text == "Ticket: pagamento-alice-1234 | User: 123 | ProductID: p1"
    assert PaymentTopic.parse(text) == topic


def test_site_chat_topic_format_and_parse():
    topic = SiteChatTopic(order_id="order-site-1700000000000", user_id="555")
    text = topic.format()
    assert text == "Chat do Pedido do Site | OrderID: order-site-1700000000000 | UserID: 555"
    assert SiteChatTopic.parse(text) == topic
    assert is_site_chat_topic(text)


def test_delivery_topic_allows_spaces_in_tag():
    text = "Canal de entrega para alice smith#0001 (ID: 77) | Produto: p9"
    topic = DeliveryTopic.parse(text)
    assert topic.user_tag == "alice smith#0001"
    assert topic.user_id == "77"
    assert topic.product_id == "p9"
    assert topic.format() == text


@pytest.mark.parametrize(
    "text",
    [
        None,
        "",
        "Ticket: t | User: abc | ProductID: p1",
        "Ticket: t | User: 1 | ProductID:",
        "Ticket: t | User: 1 | ProductID: p1 | extra",
        "random channel description",
    ],
)
def test_payment_topic_rejects_malformed(text):
    with pytest.raises(ChannelTopicError):
        PaymentTopic.parse(text)


def test_site_chat_topic_rejects_partial_match():
    with pytest.raises(ChannelTopicError):
        SiteChatTopic.parse("Chat do Pedido do Site | OrderID: o1")
    with pytest.raises(ChannelTopicError):
        SiteChatTopic.parse("Chat do Pedido do Site | OrderID: o1 | UserID: not-a-number")


def test_is_site_chat_topic():
    assert not is_site_chat_topic(None)
    assert not is_site_chat_topic("Ticket: t | User: 1 | ProductID: p1")
