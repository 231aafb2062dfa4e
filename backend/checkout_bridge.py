"""
Checkout Bridge
Drives one purchase through order creation, the hosted checkout widget and
verification

    IDLE -> ORDER_CREATED -> CHECKOUT_OPEN -> VERIFYING -> DONE | FAILED

VERIFYING is entered as soon as the widget reports a payment, before the
verification call starts, so a late dismiss from the widget is ignored
instead of resetting a purchase that is being recorded.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from api_client import GymApiClient
from client_cache import RequestDeduplicator
from config import settings

logger = logging.getLogger(__name__)


class CheckoutState(str, enum.Enum):
    IDLE = "idle"
    ORDER_CREATED = "order_created"
    CHECKOUT_OPEN = "checkout_open"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS = {
    CheckoutState.IDLE: {CheckoutState.ORDER_CREATED, CheckoutState.FAILED},
    CheckoutState.ORDER_CREATED: {CheckoutState.CHECKOUT_OPEN, CheckoutState.IDLE, CheckoutState.FAILED},
    CheckoutState.CHECKOUT_OPEN: {CheckoutState.VERIFYING, CheckoutState.IDLE, CheckoutState.FAILED},
    CheckoutState.VERIFYING: {CheckoutState.DONE, CheckoutState.FAILED},
    CheckoutState.DONE: {CheckoutState.IDLE},
    CheckoutState.FAILED: {CheckoutState.IDLE},
}


class InvalidCheckoutTransition(Exception):
    pass


@dataclass(frozen=True)
class CheckoutResult:
    """What the widget hands back after a successful payment"""
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class CheckoutWidget(Protocol):
    async def load_script(self, url: str) -> None:
        ...

    async def open(self, options: Dict[str, Any]) -> Optional[CheckoutResult]:
        """Show the hosted checkout. None means the user closed it without paying."""
        ...


class CheckoutBridge:
    def __init__(
        self,
        api: GymApiClient,
        widget: CheckoutWidget,
        deduplicator: Optional[RequestDeduplicator] = None,
        script_url: Optional[str] = None,
        gym_name: str = "",
    ):
        self.api = api
        self.widget = widget
        self.deduplicator = deduplicator or api.deduplicator
        self.script_url = script_url or settings.RAZORPAY_CHECKOUT_URL
        self.gym_name = gym_name
        self._state = CheckoutState.IDLE
        self._script_loaded = False
        self.error: Optional[str] = None

    @property
    def state(self) -> CheckoutState:
        return self._state

    def _transition(self, new_state: CheckoutState):
        if new_state not in TRANSITIONS[self._state]:
            raise InvalidCheckoutTransition(f"{self._state.value} -> {new_state.value}")
        logger.debug(f"Checkout {self._state.value} -> {new_state.value}")
        self._state = new_state

    async def ensure_script_loaded(self):
        """Load the checkout script once; concurrent callers share the same load"""
        if self._script_loaded:
            return

        async def load():
            await self.widget.load_script(self.script_url)
            self._script_loaded = True

        await self.deduplicator.run(f"script:{self.script_url}", load)

    def dismiss(self) -> bool:
        """
        Widget closed by the user. Returns True when the flow was reset.
        Ignored once a payment is being verified or has finished.
        """
        if self._state in (CheckoutState.ORDER_CREATED, CheckoutState.CHECKOUT_OPEN):
            self._transition(CheckoutState.IDLE)
            return True
        logger.debug(f"Dismiss ignored in state {self._state.value}")
        return False

    def reset(self):
        if self._state in (CheckoutState.DONE, CheckoutState.FAILED):
            self._transition(CheckoutState.IDLE)
        self.error = None

    def _fail(self, message: str):
        self.error = message
        self._transition(CheckoutState.FAILED)

    async def purchase(self, intent: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Run a purchase end to end.

        Returns:
            The verification result, or None when the user dismissed checkout.

        Raises:
            Whatever the API client raised for order creation or verification;
            the bridge is left in FAILED with error set.
        """
        if self._state != CheckoutState.IDLE:
            raise InvalidCheckoutTransition(f"purchase started in state {self._state.value}")
        self.error = None

        try:
            await self.ensure_script_loaded()
            order = await self.api.create_order(intent)
        except Exception as e:
            self._fail(getattr(e, "message", "Failed to create payment order"))
            raise
        self._transition(CheckoutState.ORDER_CREATED)

        options = {
            "key": order["keyId"],
            "amount": order["amount"],
            "currency": order["currency"],
            "order_id": order["orderId"],
            "name": self.gym_name,
            "prefill": {
                "name": intent.get("memberName", ""),
                "contact": intent.get("memberPhone", ""),
            },
        }
        self._transition(CheckoutState.CHECKOUT_OPEN)
        result = await self.widget.open(options)

        if result is None:
            self.dismiss()
            return None
        if self._state != CheckoutState.CHECKOUT_OPEN:
            # Dismissed from the widget's own callback while open() was settling
            return None

        self._transition(CheckoutState.VERIFYING)
        try:
            verification = await self.api.verify_payment({
                "razorpay_order_id": result.razorpay_order_id,
                "razorpay_payment_id": result.razorpay_payment_id,
                "razorpay_signature": result.razorpay_signature,
                **intent,
            })
        except Exception as e:
            self._fail(getattr(e, "message", "Payment verification failed"))
            raise

        self._transition(CheckoutState.DONE)
        return verification
