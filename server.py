import asyncio
import json
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware

from orderbridge.errors import (
    InvalidTransitionError,
    NotFoundError,
    OrderBridgeError,
    OutOfStockError,
    UnauthorizedError,
)
from orderbridge.models import ActionResult
from orderbridge.order_state_machine import CHAT_STATUSES
from orderbridge.pages import render_action_result, render_mark_delivery, render_verify_receipt
from orderbridge.services import Services
from orderbridge.verification import INVALID_LINK_MESSAGE, MARK_DELIVERY_FORM

logger = logging.getLogger("orderbridge")

# websocket close code for "not your order / chat not open"
WS_FORBIDDEN = 4403


class SessionUser(BaseModel):
    id: str
    username: str
    tag: Optional[str] = None
    avatar: Optional[str] = None


class ReceiptUpload(BaseModel):
    receipt_url: str


class ChatMessageIn(BaseModel):
    text: str


def _session_user(session: dict) -> Optional[SessionUser]:
    data = session.get("discord_user")
    if not data:
        return None
    return SessionUser(**data)


def current_user(request: Request) -> SessionUser:
    """The logged-in user, as stored in the session by the login flow."""
    user = _session_user(request.session)
    if user is None:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return user


def current_ws_user(websocket: WebSocket) -> Optional[SessionUser]:
    return _session_user(websocket.session)


def _http_error(e: OrderBridgeError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UnauthorizedError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, (InvalidTransitionError, OutOfStockError)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="orderbridge")
    app.add_middleware(SessionMiddleware, secret_key=services.settings.SESSION_SECRET)
    app.state.services = services

    store = services.store
    orders = services.state_machine
    dispatcher = services.dispatcher

    @app.get("/health")
    async def health():
        return {"status": "ok", "pending_tokens": len(services.tokens)}

    # -----------------------
    # Verification links (always HTML)
    # -----------------------

    @app.get("/verify/{token_id}", response_class=HTMLResponse)
    async def verify_page(token_id: str):
        page = dispatcher.describe(token_id)
        if page is None:
            return HTMLResponse(render_action_result(ActionResult(False, INVALID_LINK_MESSAGE)), status_code=404)
        if page.form == MARK_DELIVERY_FORM:
            return HTMLResponse(render_mark_delivery(page))
        return HTMLResponse(render_verify_receipt(page))

    @app.post("/verify/action/{token_id}", response_class=HTMLResponse)
    async def verify_action(token_id: str, action: str = Form(default="")):
        result = await dispatcher.apply(token_id, action)
        if result.success:
            status_code = 200
        elif result.message == INVALID_LINK_MESSAGE:
            status_code = 404
        else:
            status_code = 400
        return HTMLResponse(render_action_result(result), status_code=status_code)

    # -----------------------
    # Site orders
    # -----------------------

    @app.get("/products")
    async def list_products():
        products = await asyncio.to_thread(store.get_products)
        return {
            "products": [
                {
                    "id": p.id,
                    "name": p.name,
                    "price": str(p.price),
                    "description": p.description,
                    "emoji": p.emoji,
                    "stock": p.stock,
                }
                for p in products
            ]
        }

    @app.post("/order/create/{product_id}")
    async def create_order(product_id: str, user: SessionUser = Depends(current_user)):
        product = await asyncio.to_thread(store.get_product_by_id, product_id)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found.")
        if not product.in_stock:
            raise HTTPException(status_code=409, detail="Product is out of stock.")
        await asyncio.to_thread(store.find_or_create_account, user.id, user.username, user.avatar)
        try:
            order = await orders.create_order(user.id, product_id)
        except OrderBridgeError as e:
            raise _http_error(e)
        return {"success": True, "orderId": order.id}

    @app.post("/order/upload/{order_id}")
    async def upload_receipt(order_id: str, body: ReceiptUpload, user: SessionUser = Depends(current_user)):
        if not body.receipt_url.strip():
            raise HTTPException(status_code=400, detail="receipt_url is required.")
        try:
            order = await orders.submit_proof(
                order_id, user.id, body.receipt_url.strip(), submitted_by=user.tag or user.username
            )
        except OrderBridgeError as e:
            raise _http_error(e)
        return {"success": True, "status": order.status.value}

    @app.get("/order/status/{order_id}")
    async def order_status(order_id: str, user: SessionUser = Depends(current_user)):
        status = await orders.get_status(order_id, user.id)
        if status is None:
            raise HTTPException(status_code=404, detail="Order not found.")
        return {"status": status.value}

    @app.get("/order/chat/{order_id}")
    async def order_chat(order_id: str, user: SessionUser = Depends(current_user)):
        try:
            order = await orders.get_order(order_id, user.id)
        except OrderBridgeError as e:
            raise _http_error(e)
        if order.status not in CHAT_STATUSES:
            raise HTTPException(status_code=403, detail="The chat for this order is not open.")
        return {
            "orderId": order.id,
            "productName": order.product_name,
            "status": order.status.value,
            "messages": [m.to_dict() for m in order.messages],
        }

    @app.get("/pedidos")
    async def my_orders(user: SessionUser = Depends(current_user)):
        rows = await asyncio.to_thread(store.get_orders_by_user_id, user.id)
        return {"orders": [o.to_dict() for o in rows]}

    # -----------------------
    # Live chat
    # -----------------------

    @app.websocket("/ws/orders/{order_id}")
    async def order_room(websocket: WebSocket, order_id: str,
                         user: Optional[SessionUser] = Depends(current_ws_user)):
        await websocket.accept()
        order = None
        if user is not None:
            order = await asyncio.to_thread(store.get_order_by_id, order_id, user.id)
        if order is None or order.status not in CHAT_STATUSES:
            await websocket.close(code=WS_FORBIDDEN)
            return

        services.rooms.join(order_id, websocket)
        try:
            await websocket.send_json({"event": "history", "data": [m.to_dict() for m in order.messages]})
            while True:
                raw = await websocket.receive_text()
                try:
                    msg = ChatMessageIn(**json.loads(raw))
                except (TypeError, ValueError):
                    await websocket.send_json({"event": "error", "data": "Invalid message."})
                    continue
                try:
                    message = await services.bridge.handle_web_message(
                        order_id, user.id, user.username, msg.text, sender=websocket
                    )
                except OrderBridgeError as e:
                    await websocket.send_json({"event": "error", "data": str(e)})
                    continue
                if message is not None:
                    # the sender is excluded from the broadcast; echo back as an ack
                    await websocket.send_json({"event": "message_ack", "data": message.to_dict()})
        except WebSocketDisconnect:
            logger.debug(f"websocket left room {order_id}")
        finally:
            services.rooms.leave(order_id, websocket)

    return app
