"""HTTP and websocket surface, exercised through FastAPI's TestClient."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from orderbridge.models import OrderStatus
from server import SessionUser, create_app, current_user, current_ws_user

from conftest import OWNER_ID, USER_ID

ALICE = SessionUser(id=USER_ID, username="alice", tag="alice#0001")


@pytest.fixture
def app(services):
    app = create_app(services)
    app.dependency_overrides[current_user] = lambda: ALICE
    app.dependency_overrides[current_ws_user] = lambda: ALICE
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def _operator_token(platform) -> str:
    url = [e.url for uid, _, e in platform.dms if uid == OWNER_ID and e is not None][-1]
    return url.rsplit("/", 1)[1]


def _create_and_upload(client) -> str:
    res = client.post("/order/create/p1")
    assert res.status_code == 200
    order_id = res.json()["orderId"]
    assert order_id.startswith("order-site-")
    res = client.post(f"/order/upload/{order_id}", json={"receipt_url": "http://img/r.png"})
    assert res.status_code == 200
    assert res.json()["status"] == "pending_approval"
    return order_id


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_products_lists_only_available(client):
    products = client.get("/products").json()["products"]
    assert {p["id"] for p in products} == {"p1", "p2"}


def test_routes_require_login(services):
    with TestClient(create_app(services)) as anonymous:
        assert anonymous.get("/pedidos").status_code == 401
        assert anonymous.post("/order/create/p1").status_code == 401


def test_create_order_unknown_or_sold_out_product(client):
    assert client.post("/order/create/missing").status_code == 404
    assert client.post("/order/create/p3").status_code == 409


def test_upload_twice_is_conflict(client):
    order_id = _create_and_upload(client)
    res = client.post(f"/order/upload/{order_id}", json={"receipt_url": "http://img/again.png"})
    assert res.status_code == 409


def test_status_and_chat_gate(client):
    order_id = _create_and_upload(client)
    assert client.get(f"/order/status/{order_id}").json() == {"status": "pending_approval"}
    assert client.get(f"/order/chat/{order_id}").status_code == 403
    assert client.get("/order/status/order-site-0").status_code == 404


def test_verification_pages_and_actions(client, platform, store):
    order_id = _create_and_upload(client)
    token = _operator_token(platform)

    page = client.get(f"/verify/{token}")
    assert page.status_code == 200
    assert 'value="approve"' in page.text
    assert f"/verify/action/{token}" in page.text
    assert "alice#0001" in page.text

    done = client.post(f"/verify/action/{token}", data={"action": "approve"})
    assert done.status_code == 200
    assert "APPROVED" in done.text
    assert store.get_order(order_id).status == OrderStatus.APPROVED

    again = client.post(f"/verify/action/{token}", data={"action": "approve"})
    assert again.status_code == 404
    assert "Invalid or expired verification link." in again.text
    assert client.get(f"/verify/{token}").status_code == 404

    deliver = _operator_token(platform)
    page = client.get(f"/verify/{deliver}")
    assert 'value="deliver"' in page.text
    done = client.post(f"/verify/action/{deliver}", data={"action": "deliver"})
    assert done.status_code == 200

    chat = client.get(f"/order/chat/{order_id}").json()
    assert chat["status"] == "entregue"
    assert [m["author"] for m in chat["messages"]] == ["system"]


def test_unknown_action_renders_failure(client, platform):
    _create_and_upload(client)
    token = _operator_token(platform)
    res = client.post(f"/verify/action/{token}", data={"action": "explode"})
    assert res.status_code == 400
    assert "Unknown action." in res.text


def test_my_orders(client):
    order_id = _create_and_upload(client)
    orders = client.get("/pedidos").json()["orders"]
    assert [o["id"] for o in orders] == [order_id]
    assert orders[0]["productName"] == "Netflix Premium"


def test_websocket_chat(client, services, platform):
    order_id = _create_and_upload(client)
    client.post(f"/verify/action/{_operator_token(platform)}", data={"action": "approve"})

    with client.websocket_connect(f"/ws/orders/{order_id}") as ws:
        history = ws.receive_json()
        assert history == {"event": "history", "data": []}

        ws.send_json({"text": "hello staff"})
        ack = ws.receive_json()
        assert ack["event"] == "message_ack"
        assert ack["data"]["content"] == "hello staff"

    order = services.store.get_order(order_id)
    assert [m.content for m in order.messages] == ["hello staff"]
    assert "**[SITE] alice:** hello staff" in platform.messages_in(order.channel.channel_id)


def test_websocket_survives_malformed_frames(client, services, platform):
    order_id = _create_and_upload(client)
    client.post(f"/verify/action/{_operator_token(platform)}", data={"action": "approve"})

    with client.websocket_connect(f"/ws/orders/{order_id}") as ws:
        ws.receive_json()
        for frame in ("not json", "[1, 2]", '{"wrong": 1}'):
            ws.send_text(frame)
            assert ws.receive_json() == {"event": "error", "data": "Invalid message."}

        ws.send_json({"text": "still here"})
        ack = ws.receive_json()
        assert ack["event"] == "message_ack"
        assert ack["data"]["content"] == "still here"

    assert [m.content for m in services.store.get_order(order_id).messages] == ["still here"]


def test_websocket_refused_before_approval(client):
    order_id = _create_and_upload(client)
    with client.websocket_connect(f"/ws/orders/{order_id}") as ws:
        message = ws.receive()
        assert message["type"] == "websocket.close"
        assert message["code"] == 4403
