import asyncio

import pytest

from orderbridge.channel_topics import DeliveryTopic, PaymentTopic, SiteChatTopic
from orderbridge.errors import NotFoundError, OutOfStockError
from orderbridge.models import ChatChannel, NoChannel, OrderStatus

from conftest import ADMIN_ROLE_ID, BOT_ID, OWNER_ID, USER_ID


async def _approved_order(services, order_id="order-site-1"):
    await services.state_machine.create_order(USER_ID, "p1", order_id=order_id)
    await services.state_machine.submit_proof(order_id, USER_ID, "http://img/r.png")
    return await services.state_machine.approve(order_id, USER_ID)


def test_approval_opens_private_chat_channel(services, platform):
    order = asyncio.run(_approved_order(services))

    assert isinstance(order.channel, ChatChannel)
    channel = platform.channels[order.channel.channel_id]
    assert channel.name == f"chat-Netflix Pr-{USER_ID[-4:]}"
    assert SiteChatTopic.parse(channel.topic) == SiteChatTopic(order_id=order.id, user_id=USER_ID)

    visibility = platform.visibility[channel.id]
    assert visibility.user_ids == (USER_ID,)
    assert visibility.role_ids == (ADMIN_ROLE_ID,)
    assert visibility.writer_user_ids == (USER_ID,)
    assert any("Netflix Premium" in m for m in platform.messages_in(channel.id))


def test_approval_survives_channel_creation_failure(services, platform, store):
    platform.fail_create = True
    order = asyncio.run(_approved_order(services))

    assert order.status == OrderStatus.APPROVED
    assert isinstance(order.channel, NoChannel)
    assert store.get_order(order.id).status == OrderStatus.APPROVED


def test_decline_sends_dm_to_buyer(services, platform):
    async def scenario():
        await services.state_machine.create_order(USER_ID, "p1", order_id="order-site-1")
        await services.state_machine.submit_proof("order-site-1", USER_ID, "http://img/r.png")
        await services.state_machine.reject("order-site-1", USER_ID)

    asyncio.run(scenario())
    buyer_dms = [content for uid, content, _ in platform.dms if uid == USER_ID]
    assert len(buyer_dms) == 1
    assert "declined" in buyer_dms[0]


def test_delivery_deletes_chat_channel_and_clears_binding(services, platform, store):
    async def scenario():
        order = await _approved_order(services)
        await services.state_machine.mark_delivered(order.id, USER_ID)
        await services.channels.wait_pending()
        return order

    order = asyncio.run(scenario())
    assert order.channel.channel_id in platform.deleted
    stored = store.get_order(order.id)
    assert stored.status == OrderStatus.ENTREGUE
    assert isinstance(stored.channel, NoChannel)
    assert any("delivered" in (content or "") for uid, content, _ in platform.dms if uid == USER_ID)


def test_failed_deletion_keeps_binding(services, platform, store):
    async def scenario():
        order = await _approved_order(services)
        platform.fail_delete = True
        await services.state_machine.mark_delivered(order.id, USER_ID)
        await services.channels.wait_pending()
        return order

    order = asyncio.run(scenario())
    assert store.get_order(order.id).channel == order.channel


def test_channel_already_gone_still_clears_binding(services, platform, store):
    async def scenario():
        order = await _approved_order(services)
        # deleted by hand on the server
        platform.channels.pop(order.channel.channel_id)
        await services.state_machine.mark_delivered(order.id, USER_ID)
        await services.channels.wait_pending()
        return order

    order = asyncio.run(scenario())
    assert isinstance(store.get_order(order.id).channel, NoChannel)


# -----------------------
# Ticket flow
# -----------------------


def test_open_payment_channel(services, platform):
    user = platform.users[USER_ID]
    channel = asyncio.run(services.channels.open_payment_channel(user, "p1"))

    assert channel.name.startswith("pagamento-alice-")
    route = PaymentTopic.parse(channel.topic)
    assert route.user_id == USER_ID
    assert route.product_id == "p1"
    assert route.ticket_id == channel.name
    assert BOT_ID in platform.visibility[channel.id].user_ids
    assert "pix-key-123" in platform.messages_in(channel.id)
    embeds = [embed for cid, _, embed in platform.sent if cid == channel.id and embed is not None]
    assert embeds and embeds[0].title.endswith("Payment details")


def test_open_payment_channel_refuses_out_of_stock_and_unknown(services, platform):
    user = platform.users[USER_ID]
    with pytest.raises(OutOfStockError):
        asyncio.run(services.channels.open_payment_channel(user, "p3"))
    with pytest.raises(NotFoundError):
        asyncio.run(services.channels.open_payment_channel(user, "missing"))
    assert platform.channels == {}


def test_confirm_payment_moves_ticket_to_delivery_channel(services, platform, store, tokens):
    user = platform.users[USER_ID]

    async def scenario():
        channel = await services.channels.open_payment_channel(user, "p1")
        result = await services.channels.confirm_payment(channel.id, None, confirmed_by="staff#0001")
        return channel, result

    payment_channel, result = asyncio.run(scenario())

    assert result.success
    assert payment_channel.id in platform.deleted
    assert store.get_product_by_id("p1").stock == 4

    delivery = [c for c in platform.channels.values() if c.name.startswith("entrega-")]
    assert len(delivery) == 1
    route = DeliveryTopic.parse(delivery[0].topic)
    assert route.user_id == USER_ID
    assert route.product_id == "p1"

    # the operator got a mark-as-delivered link
    assert len(tokens) == 1
    operator_dms = [embed for uid, _, embed in platform.dms if uid == OWNER_ID]
    assert operator_dms and operator_dms[-1].url.startswith("http://shop.test/verify/")


def test_confirm_payment_unlimited_stock_untouched(services, platform, store):
    user = platform.users[USER_ID]

    async def scenario():
        channel = await services.channels.open_payment_channel(user, "p2")
        return await services.channels.confirm_payment(channel.id, None, confirmed_by="staff")

    assert asyncio.run(scenario()).success
    assert store.get_product_by_id("p2").stock == -1


def test_confirm_payment_with_bad_topic_fails_closed(services, platform):
    channel = platform.add_channel("pagamento-x-0000", "not a payment topic")
    result = asyncio.run(services.channels.confirm_payment(channel.id, None, confirmed_by="staff"))
    assert not result.success
    assert platform.deleted == []
    assert channel.id in platform.channels


def test_confirm_ticket_delivery(services, platform):
    channel = platform.add_channel("entrega-alice", "Canal de entrega para alice#0001 (ID: 1) | Produto: p1")

    async def scenario():
        result = await services.channels.confirm_ticket_delivery(channel.id, USER_ID, "Netflix Premium")
        await services.channels.wait_pending()
        return result

    result = asyncio.run(scenario())
    assert result.success
    assert channel.id in platform.deleted
    assert any("Netflix Premium" in (content or "") for uid, content, _ in platform.dms if uid == USER_ID)


def test_overlapping_confirmations_apply_once(services, platform, store, tokens):
    user = platform.users[USER_ID]

    async def scenario():
        channel = await services.channels.open_payment_channel(user, "p1")
        results = await asyncio.gather(
            services.channels.confirm_payment(channel.id, None, confirmed_by="operator (link)"),
            services.channels.confirm_payment(channel.id, None, confirmed_by="staff#0001"),
        )
        return results

    results = asyncio.run(scenario())
    assert sorted(r.success for r in results) == [False, True]
    assert store.get_product_by_id("p1").stock == 4
    assert len([c for c in platform.channels.values() if c.name.startswith("entrega-")]) == 1
    assert len(tokens) == 1


def test_confirmation_refused_after_failed_channel_delete(services, platform, store):
    user = platform.users[USER_ID]

    async def scenario():
        channel = await services.channels.open_payment_channel(user, "p1")
        platform.fail_delete = True
        first = await services.channels.confirm_payment(channel.id, None, confirmed_by="staff")
        second = await services.channels.confirm_payment(channel.id, None, confirmed_by="staff")
        return channel, first, second

    channel, first, second = asyncio.run(scenario())
    # payment channel is still there, but the ticket was already confirmed
    assert channel.id in platform.channels
    assert first.success
    assert not second.success
    assert second.message == "Payment already confirmed for this channel."
    assert store.get_product_by_id("p1").stock == 4
