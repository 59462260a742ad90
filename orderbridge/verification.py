# orderbridge/verification.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from orderbridge.app_config import Settings
from orderbridge.audit import AuditLog
from orderbridge.channel_lifecycle import ChannelLifecycleManager
from orderbridge.errors import ExpiredCapabilityError, OrderBridgeError
from orderbridge.events import DeliveryChannelOpened, EventBus, OrderApproved, ProofSubmitted
from orderbridge.models import (
    ActionResult,
    ChatChannel,
    ContextType,
    TokenAction,
    TokenContext,
    VerificationToken,
)
from orderbridge.order_state_machine import OrderStateMachine
from orderbridge.order_store import OrderStore
from orderbridge.platform import Embed, MessagingPlatform
from orderbridge.token_store import TokenStore

logger = logging.getLogger("orderbridge")

INVALID_LINK_MESSAGE = "Invalid or expired verification link."

VERIFY_RECEIPT_FORM = "verify-receipt"
MARK_DELIVERY_FORM = "mark-delivery"


@dataclass(frozen=True)
class VerificationPage:
    token_id: str
    form: str
    details: dict[str, Any]


class VerificationDispatcher:
    """
    Hands a decision to the human operator and applies it when the link comes
    back.

    Tokens are minted here and resolved here. apply() resolves (and so
    deletes) the token before doing anything else, which makes a second
    submission of the same link a harmless "invalid or expired".
    """

    def __init__(
        self,
        tokens: TokenStore,
        platform: MessagingPlatform,
        state_machine: OrderStateMachine,
        channels: ChannelLifecycleManager,
        store: OrderStore,
        bus: EventBus,
        settings: Settings,
        audit: AuditLog,
    ) -> None:
        self.tokens = tokens
        self.platform = platform
        self.state_machine = state_machine
        self.channels = channels
        self.store = store
        self.bus = bus
        self.settings = settings
        self.audit = audit

    def subscribe(self) -> None:
        self.bus.subscribe(ProofSubmitted, self._on_proof_submitted)
        self.bus.subscribe(OrderApproved, self._on_order_approved)
        self.bus.subscribe(DeliveryChannelOpened, self._on_delivery_channel_opened)

    # -----------------------
    # Outbound: ask the operator
    # -----------------------

    async def request_proof_review(self, details: dict[str, Any], context: TokenContext) -> str:
        token_id = self.tokens.issue(context, details)
        embed = Embed(
            title="🔎 New proof of payment to review (click here)",
            url=self.settings.verification_url(token_id),
            description="A new proof of payment was submitted and needs your attention.\n\n**Click here to review**",
            color="orange",
        )
        await self._notify_operator(embed, "VERIFICATION: proof review notice sent to the operator.")
        return token_id

    async def request_delivery_confirmation(self, context: TokenContext) -> str:
        token_id = self.tokens.issue(
            context,
            {"productName": context.product_name},
            action=TokenAction.DELIVER,
        )
        embed = Embed(
            title="📦 Mark order as delivered (click here)",
            url=self.settings.verification_url(token_id),
            description=(
                "An order was approved and is ready to be marked as delivered.\n\n"
                f"**Product:** {context.product_name}"
            ),
            color="green",
        )
        await self._notify_operator(embed, "DELIVERY: mark-as-delivered notice sent to the operator.")
        return token_id

    async def _notify_operator(self, embed: Embed, audit_line: str) -> None:
        # single attempt; the token stays valid even if the DM is lost
        try:
            await self.platform.send_direct_message(self.settings.OWNER_ID, embed=embed)
        except Exception as e:
            logger.warning(f"Could not notify the operator ({embed.title}): {e}")
            return
        await self.audit.record(audit_line)

    # -----------------------
    # Inbound: the link
    # -----------------------

    def describe(self, token_id: str) -> Optional[VerificationPage]:
        token = self.tokens.peek(token_id)
        if token is None:
            return None
        form = MARK_DELIVERY_FORM if token.action == TokenAction.DELIVER else VERIFY_RECEIPT_FORM
        return VerificationPage(token_id=token_id, form=form, details=dict(token.details))

    async def apply(self, token_id: str, submitted_action: Optional[str] = None) -> ActionResult:
        try:
            token = self._consume(token_id)
        except ExpiredCapabilityError:
            return ActionResult(False, INVALID_LINK_MESSAGE)

        action = token.action
        if action is None:
            try:
                action = TokenAction((submitted_action or "").strip().lower())
            except ValueError:
                action = None
            if action not in (TokenAction.APPROVE, TokenAction.REJECT):
                return ActionResult(False, "Unknown action.")

        try:
            return await self._dispatch(action, token.context)
        except OrderBridgeError as e:
            logger.info(f"Verification action {action.value} refused: {e}")
            return ActionResult(False, str(e))
        except Exception:
            logger.exception(f"Verification action {action.value} failed")
            return ActionResult(False, "Internal error while applying the action.")

    def _consume(self, token_id: str) -> VerificationToken:
        token = self.tokens.resolve(token_id)
        if token is None:
            raise ExpiredCapabilityError(token_id)
        return token

    async def _dispatch(self, action: TokenAction, context: TokenContext) -> ActionResult:
        if context.type == ContextType.SITE:
            if action == TokenAction.APPROVE:
                order = await self.state_machine.approve(context.order_id, context.user_id)
                if isinstance(order.channel, ChatChannel):
                    return ActionResult(True, f"Site order {order.id} APPROVED. Chat channel created.")
                return ActionResult(
                    True, f"Site order {order.id} APPROVED, but the chat channel could not be created."
                )
            if action == TokenAction.REJECT:
                order = await self.state_machine.reject(context.order_id, context.user_id)
                return ActionResult(True, f"Site order {order.id} DECLINED. The user will be notified on the site.")
            if action == TokenAction.DELIVER:
                order = await self.state_machine.mark_delivered(context.order_id, context.user_id)
                return ActionResult(True, f"Site order {order.id} marked as DELIVERED.")

        elif context.type == ContextType.TICKET:
            if action == TokenAction.APPROVE:
                return await self.channels.confirm_payment(
                    context.channel_id, context.product_id, confirmed_by="operator (verification link)"
                )
            if action == TokenAction.REJECT:
                return await self.channels.reject_payment(context.channel_id)
            if action == TokenAction.DELIVER:
                return await self.channels.confirm_ticket_delivery(
                    context.channel_id, context.user_id, context.product_name or "unknown"
                )

        return ActionResult(False, "Unknown action.")

    # -----------------------
    # Event subscribers
    # -----------------------

    async def _on_proof_submitted(self, event: ProofSubmitted) -> None:
        order = event.order
        product = await asyncio.to_thread(self.store.get_product_by_id, order.product_id)
        details = {
            "title": "Site proof of payment",
            "userTag": event.submitted_by,
            "productName": product.name if product is not None else order.product_name,
            "productPrice": str(product.price) if product is not None else "N/A",
            "imageUrl": order.receipt_url,
        }
        context = TokenContext(
            type=ContextType.SITE,
            order_id=order.id,
            user_id=order.user_id,
            product_id=order.product_id,
        )
        await self.request_proof_review(details, context)

    async def _on_order_approved(self, event: OrderApproved) -> None:
        order = event.order
        await self.request_delivery_confirmation(
            TokenContext(
                type=ContextType.SITE,
                order_id=order.id,
                user_id=order.user_id,
                product_name=order.product_name,
            )
        )

    async def _on_delivery_channel_opened(self, event: DeliveryChannelOpened) -> None:
        await self.request_delivery_confirmation(
            TokenContext(
                type=ContextType.TICKET,
                channel_id=event.channel_id,
                user_id=event.user_id,
                product_id=event.product_id,
                product_name=event.product_name,
            )
        )
