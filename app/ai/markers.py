"""Action markers embedded in assistant text.

Grammar (case-insensitive, brackets literal)::

    [ADD_TO_CART: "<name>", <int>]
    [SET_ADDRESS: "<address>"]
    [CONFIRM_ORDER]
    [CANCEL_ORDER]
    [APPLY_DISCOUNT: <int>%?]
    [HANDOFF]  |  [HANDOFF: "<reason>"]

Anything that does not match one of these exactly stays in the text as-is.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal

from app.ai.schema import AgentResponse
from app.fsm.engine import CartOperationResult, ConversationStateMachine
from app.fsm.states import ConversationState
from app.models.conversation import Conversation

logger = logging.getLogger(__name__)

ADD_TO_CART = "ADD_TO_CART"
SET_ADDRESS = "SET_ADDRESS"
CONFIRM_ORDER = "CONFIRM_ORDER"
CANCEL_ORDER = "CANCEL_ORDER"
APPLY_DISCOUNT = "APPLY_DISCOUNT"
HANDOFF = "HANDOFF"

DEFAULT_HANDOFF_REASON = "Customer requested human assistance"

MARKER_PATTERNS: dict[str, re.Pattern[str]] = {
    ADD_TO_CART: re.compile(r'\[ADD_TO_CART:\s*"([^"]+)"\s*,\s*(\d+)\]', re.IGNORECASE),
    SET_ADDRESS: re.compile(r'\[SET_ADDRESS:\s*"([^"]+)"\]', re.IGNORECASE),
    CONFIRM_ORDER: re.compile(r"\[CONFIRM_ORDER\]", re.IGNORECASE),
    CANCEL_ORDER: re.compile(r"\[CANCEL_ORDER\]", re.IGNORECASE),
    APPLY_DISCOUNT: re.compile(r"\[APPLY_DISCOUNT:\s*(\d+)%?\]", re.IGNORECASE),
    HANDOFF: re.compile(r'\[HANDOFF(?::\s*"([^"]+)")?\]', re.IGNORECASE),
}

_HORIZONTAL_SPACE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class Marker:
    kind: str
    start: int
    end: int
    raw: str
    args: tuple[str | None, ...] = ()


def parse_markers(text: str) -> list[Marker]:
    """All well-formed markers in ``text``, in textual order."""
    markers = [
        Marker(kind=kind, start=match.start(), end=match.end(), raw=match.group(0), args=match.groups())
        for kind, pattern in MARKER_PATTERNS.items()
        for match in pattern.finditer(text or "")
    ]
    return sorted(markers, key=lambda marker: marker.start)


def collapse_whitespace(text: str) -> str:
    lines = [_HORIZONTAL_SPACE.sub(" ", line).strip() for line in (text or "").split("\n")]
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


class CommandExtractor:
    """Executes markers against the state machine and rewrites the reply text.

    Successful markers are removed. A failed operation replaces its marker
    with the failure message so the customer learns what went wrong.
    """

    def __init__(self, state_machine: ConversationStateMachine) -> None:
        self.state_machine = state_machine

    def apply(self, conversation: Conversation, text: str, response: AgentResponse | None = None) -> AgentResponse:
        response = response or AgentResponse()
        pieces: list[str] = []
        cursor = 0
        address_set = False

        for marker in parse_markers(text):
            if marker.start < cursor:
                continue
            pieces.append(text[cursor:marker.start])
            cursor = marker.end
            try:
                replacement = self._execute(conversation, marker, response, address_set=address_set)
            except Exception:
                # the turn still gets answered, the marker is dropped
                logger.exception("Failed to execute %s marker for conversation %s", marker.kind, conversation.id)
                self.state_machine.db.rollback()
                replacement = ""
            if (
                marker.kind == SET_ADDRESS
                and self.state_machine.get_state(conversation) == ConversationState.CONFIRMING_ORDER
            ):
                address_set = True
            pieces.append(replacement)

        pieces.append(text[cursor:])
        response.message = collapse_whitespace("".join(pieces))
        response.order_context = self.state_machine.get_order_context(conversation)
        return response

    def _execute(
        self,
        conversation: Conversation,
        marker: Marker,
        response: AgentResponse,
        *,
        address_set: bool,
    ) -> str:
        logger.info("Executing %s marker for conversation %s", marker.kind, conversation.id)

        if marker.kind == ADD_TO_CART:
            name, quantity = marker.args
            result = self.state_machine.add_to_cart_by_name(conversation, name.strip(), int(quantity))
            return self._outcome(result, response)

        if marker.kind == SET_ADDRESS:
            result = self.state_machine.set_delivery_address(conversation, marker.args[0], None)
            if not result.success:
                return self._outcome(result, response)
            self._track(result, response)
            prepared = self.state_machine.prepare_for_confirmation(conversation)
            self._track(prepared, response)
            return f"\n\n{prepared.message}\n\n"

        if marker.kind == CONFIRM_ORDER:
            if address_set:
                # the customer has to see the summary before it can be confirmed
                return ""
            result = self.state_machine.confirm_order(conversation)
            if result.requires_payment_link:
                response.requires_payment_link = True
            return self._outcome(result, response)

        if marker.kind == CANCEL_ORDER:
            result = self.state_machine.cancel_order(conversation)
            response.requires_payment_link = False
            return self._outcome(result, response)

        if marker.kind == APPLY_DISCOUNT:
            context = self.state_machine.get_order_context(conversation)
            if context.is_empty:
                return ""
            result = self.state_machine.apply_discount(
                conversation, len(context.items) - 1, Decimal(marker.args[0])
            )
            return self._outcome(result, response)

        if marker.kind == HANDOFF:
            reason = (marker.args[0] or "").strip() or DEFAULT_HANDOFF_REASON
            response.hand_off(reason)
            return ""

        return marker.raw

    def _outcome(self, result: CartOperationResult, response: AgentResponse) -> str:
        if result.success:
            self._track(result, response)
            return ""
        return f"\n{result.message}\n"

    @staticmethod
    def _track(result: CartOperationResult, response: AgentResponse) -> None:
        if result.success and result.new_state is not None:
            response.new_state = result.new_state
