from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from app.fsm.cart import CartItem, OrderContext
from app.fsm.states import ConversationState
from app.models.conversation import Conversation
from app.services import catalog
from app.services.agent_settings import AgentSettings, get_agent_settings

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5


@dataclass
class CartOperationResult:
    success: bool
    message: str
    new_state: ConversationState | None = None
    order_context: OrderContext | None = None
    requires_payment_link: bool = False

    @classmethod
    def ok(
        cls,
        message: str,
        state: ConversationState,
        context: OrderContext,
        *,
        requires_payment_link: bool = False,
    ) -> "CartOperationResult":
        return cls(
            success=True,
            message=message,
            new_state=state,
            order_context=context,
            requires_payment_link=requires_payment_link,
        )

    @classmethod
    def fail(cls, message: str, context: OrderContext | None = None) -> "CartOperationResult":
        return cls(success=False, message=message, order_context=context)


class ConversationStateMachine:
    """Cart mutations and state transitions for one tenant conversation.

    Every successful operation writes ``conversation.state`` and
    ``conversation.cart`` in the same commit. Failed operations leave both
    untouched.

    Mutations re-read the row first, so a write made by another session
    (a payment confirmation, say) is never overwritten with a stale copy.
    """

    def __init__(self, db: Session, settings: AgentSettings | None = None) -> None:
        self.db = db
        self._settings = settings

    def settings_for(self, conversation: Conversation) -> AgentSettings:
        if self._settings is None:
            self._settings = get_agent_settings(self.db, conversation.tenant_id)
        return self._settings

    def _reload(self, conversation: Conversation) -> None:
        # another worker may have written the row since this session read it
        self.db.refresh(conversation, with_for_update=True)

    def get_state(self, conversation: Conversation) -> ConversationState:
        return ConversationState.from_value(conversation.state)

    def get_order_context(self, conversation: Conversation) -> OrderContext:
        return OrderContext.from_document(conversation.cart)

    def save(
        self,
        conversation: Conversation,
        context: OrderContext,
        state: ConversationState | None = None,
    ) -> None:
        context.recalculate_totals()
        conversation.cart = context.to_document()
        if state is not None:
            conversation.state = state.value
        self.db.add(conversation)
        self.db.commit()

    def transition(self, conversation: Conversation, state: ConversationState) -> None:
        previous = conversation.state
        conversation.state = state.value
        self.db.add(conversation)
        self.db.commit()
        logger.info("Conversation %s state %s -> %s", conversation.id, previous, state.value)

    # cart operations

    def add_to_cart(self, conversation: Conversation, product_id: int | None, quantity: int) -> CartOperationResult:
        self._reload(conversation)
        state = self.get_state(conversation)
        context = self.get_order_context(conversation)

        if not state.can_add_to_cart:
            return CartOperationResult.fail(
                "Cannot add items in the current state. Please complete or cancel your current order first.",
                context,
            )
        if quantity < 1:
            return CartOperationResult.fail("Please tell me how many you would like (at least 1).", context)

        product = catalog.find_by_id(self.db, product_id)
        if product is None or not product.is_active:
            return CartOperationResult.fail("Sorry, I couldn't find that product.", context)
        if product.tenant_id != conversation.tenant_id:
            return CartOperationResult.fail("This product is not available from this store.", context)
        if not catalog.is_available(product, quantity):
            return CartOperationResult.fail(
                f"Sorry, we only have {product.quantity} of {product.name} in stock.",
                context,
            )

        context.add_item(
            CartItem.create(
                product_id=product.id,
                product_name=product.name,
                quantity=quantity,
                unit_price=Decimal(product.price),
            )
        )
        new_state = state if state.is_ordering else ConversationState.ADDING_TO_CART
        self.save(conversation, context, new_state)
        logger.info("Added product=%s qty=%s to conversation %s", product.id, quantity, conversation.id)
        return CartOperationResult.ok(f"Added {quantity}x {product.name} to your cart!", new_state, context)

    def add_to_cart_by_name(self, conversation: Conversation, product_name: str, quantity: int) -> CartOperationResult:
        products = catalog.find_active_by_tenant(self.db, conversation.tenant_id)
        product = catalog.match_product(products, product_name)
        if product is None:
            message = f'I couldn\'t find "{product_name}".'
            if products:
                message += " Here are our available products:\n"
                for entry in products[:MAX_SUGGESTIONS]:
                    message += f"- {entry.name}\n"
            return CartOperationResult.fail(message, self.get_order_context(conversation))
        return self.add_to_cart(conversation, product.id, quantity)

    def update_item_quantity(self, conversation: Conversation, item_index: int, quantity: int) -> CartOperationResult:
        self._reload(conversation)
        state = self.get_state(conversation)
        context = self.get_order_context(conversation)

        if context.confirmed:
            return CartOperationResult.fail(
                "Your order has already been confirmed and can no longer be changed.",
                context,
            )
        if not 0 <= item_index < len(context.items):
            return CartOperationResult.fail("Item not found in cart.", context)

        item = context.items[item_index]
        if quantity <= 0:
            context.remove_item(item_index)
            new_state = ConversationState.BROWSING if context.is_empty else state
            self.save(conversation, context, new_state)
            return CartOperationResult.ok(f"Removed {item.product_name} from your cart.", new_state, context)

        product = catalog.find_by_id(self.db, item.product_id)
        if product is not None and not catalog.is_available(product, quantity):
            return CartOperationResult.fail(
                f"Sorry, we only have {product.quantity} of {item.product_name} available.",
                context,
            )

        context.update_item_quantity(item_index, quantity)
        self.save(conversation, context, state)
        return CartOperationResult.ok(f"Updated {item.product_name} quantity to {quantity}.", state, context)

    def remove_item(self, conversation: Conversation, item_index: int) -> CartOperationResult:
        return self.update_item_quantity(conversation, item_index, 0)

    def apply_discount(self, conversation: Conversation, item_index: int, percent: Decimal | int) -> CartOperationResult:
        self._reload(conversation)
        state = self.get_state(conversation)
        context = self.get_order_context(conversation)
        settings = self.settings_for(conversation)
        percent = Decimal(percent)

        if not settings.negotiation_enabled:
            return CartOperationResult.fail("Sorry, our prices are fixed and we cannot offer discounts.", context)
        if percent > settings.max_discount_percent:
            return CartOperationResult.fail(
                f"Sorry, the maximum discount I can offer is {settings.max_discount_percent}%.",
                context,
            )
        if percent < 0:
            return CartOperationResult.fail("Sorry, that is not a valid discount.", context)
        if context.confirmed:
            return CartOperationResult.fail(
                "Your order has already been confirmed and can no longer be changed.",
                context,
            )
        if not 0 <= item_index < len(context.items):
            return CartOperationResult.fail("Item not found in cart.", context)

        item = context.items[item_index]
        item.discount_percent = percent
        context.recalculate_totals()
        self.save(conversation, context, state)
        return CartOperationResult.ok(f"Applied {percent}% discount to {item.product_name}!", state, context)

    # checkout

    def request_delivery_address(self, conversation: Conversation) -> CartOperationResult:
        self._reload(conversation)
        context = self.get_order_context(conversation)
        if context.is_empty:
            return CartOperationResult.fail("Your cart is empty. Please add some items first!", context)
        if context.confirmed:
            return CartOperationResult.fail(
                "Your order has already been confirmed and can no longer be changed.",
                context,
            )
        new_state = ConversationState.COLLECTING_ADDRESS
        self.save(conversation, context, new_state)
        return CartOperationResult.ok(
            "Great! Where should we deliver? Please share your full address.",
            new_state,
            context,
        )

    def set_delivery_address(
        self,
        conversation: Conversation,
        address: str,
        area: str | None = None,
    ) -> CartOperationResult:
        self._reload(conversation)
        context = self.get_order_context(conversation)
        settings = self.settings_for(conversation)

        if context.is_empty:
            return CartOperationResult.fail("Your cart is empty. Please add some items first!", context)
        if context.confirmed:
            return CartOperationResult.fail(
                "Your order has already been confirmed and can no longer be changed.",
                context,
            )
        address = (address or "").strip()
        if not address:
            return CartOperationResult.fail("Please provide your delivery address first.", context)

        area = (area or "").strip() or settings.detect_area(address)
        context.delivery_address = address
        context.delivery_area = area
        context.delivery_fee = settings.resolve_delivery_fee(area)
        new_state = ConversationState.COLLECTING_ADDRESS
        self.save(conversation, context, new_state)
        return CartOperationResult.ok(f"Delivery address set to: {address}", new_state, context)

    def prepare_for_confirmation(self, conversation: Conversation) -> CartOperationResult:
        self._reload(conversation)
        context = self.get_order_context(conversation)

        if context.is_empty:
            return CartOperationResult.fail("Your cart is empty. Please add some items first!", context)
        if not context.delivery_address or not context.delivery_address.strip():
            return CartOperationResult.fail("Please provide your delivery address first.", context)
        if context.confirmed:
            return CartOperationResult.fail(
                "Your order has already been confirmed and can no longer be changed.",
                context,
            )

        new_state = ConversationState.CONFIRMING_ORDER
        self.save(conversation, context, new_state)
        message = (
            context.summary()
            + f"\n\n*Delivery to:* {context.delivery_address}"
            + "\n\nPlease confirm this order by saying *YES* or *CONFIRM*."
        )
        return CartOperationResult.ok(message, new_state, context)

    def confirm_order(self, conversation: Conversation) -> CartOperationResult:
        self._reload(conversation)
        state = self.get_state(conversation)
        context = self.get_order_context(conversation)

        if state != ConversationState.CONFIRMING_ORDER or not context.is_ready_for_confirmation():
            return CartOperationResult.fail("Please review your order first before confirming.", context)

        context.confirmed = True
        new_state = ConversationState.AWAITING_PAYMENT
        self.save(conversation, context, new_state)
        logger.info("Order confirmed for conversation %s total=%s", conversation.id, context.grand_total)
        return CartOperationResult.ok(
            "Order confirmed! I'll send you a payment link shortly.",
            new_state,
            context,
            requires_payment_link=True,
        )

    def cancel_order(self, conversation: Conversation) -> CartOperationResult:
        self._reload(conversation)
        context = self.get_order_context(conversation)
        if self.get_state(conversation) == ConversationState.COMPLETED:
            # paid carts are frozen
            return CartOperationResult.fail(
                "This order has already been paid and can no longer be cancelled. "
                "Please contact the store if you need help with it.",
                context,
            )
        context.clear()
        context.confirmed = False
        context.delivery_address = None
        context.delivery_area = None
        context.delivery_fee = None
        context.payment_link = None
        new_state = ConversationState.BROWSING
        self.save(conversation, context, new_state)
        logger.info("Order cancelled for conversation %s", conversation.id)
        return CartOperationResult.ok(
            "Your order has been cancelled. Is there anything else I can help you with?",
            new_state,
            context,
        )

    def complete_order(
        self,
        conversation: Conversation,
        order_reference: str,
        order_id: int | None = None,
    ) -> CartOperationResult:
        self._reload(conversation)
        context = self.get_order_context(conversation)
        context.order_reference = order_reference
        conversation.mark_as_converted(order_id)
        new_state = ConversationState.COMPLETED
        self.save(conversation, context, new_state)
        logger.info("Conversation %s completed with order %s", conversation.id, order_reference)
        return CartOperationResult.ok(
            f"Payment received! Thank you for your order. Your invoice number is {order_reference}",
            new_state,
            context,
        )
