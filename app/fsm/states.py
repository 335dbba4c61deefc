from __future__ import annotations

from enum import Enum


class ConversationState(str, Enum):
    GREETING = "greeting"
    BROWSING = "browsing"
    PRODUCT_INQUIRY = "product_inquiry"
    ADDING_TO_CART = "adding_to_cart"
    COLLECTING_ADDRESS = "collecting_address"
    CONFIRMING_ORDER = "confirming_order"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"
    HANDED_OFF = "handed_off"
    ABANDONED = "abandoned"

    @classmethod
    def from_value(cls, value: str | None) -> "ConversationState":
        """Unknown or missing values fall back to GREETING."""
        if not value:
            return cls.GREETING
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.GREETING

    @property
    def can_add_to_cart(self) -> bool:
        return self in _CAN_ADD_TO_CART

    @property
    def is_active(self) -> bool:
        return self not in _TERMINAL

    @property
    def is_ordering(self) -> bool:
        return self in _ORDERING


_CAN_ADD_TO_CART = frozenset(
    {
        ConversationState.GREETING,
        ConversationState.BROWSING,
        ConversationState.PRODUCT_INQUIRY,
        ConversationState.ADDING_TO_CART,
    }
)
_TERMINAL = frozenset(
    {
        ConversationState.COMPLETED,
        ConversationState.ABANDONED,
        ConversationState.HANDED_OFF,
    }
)
_ORDERING = frozenset(
    {
        ConversationState.ADDING_TO_CART,
        ConversationState.COLLECTING_ADDRESS,
        ConversationState.CONFIRMING_ORDER,
    }
)
