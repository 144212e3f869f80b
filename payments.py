"""
Mock payment gateways

Stands in for M-Pesa STK push and card payment intents. ``initiate`` links a
fresh correlation id to the order and schedules a simulated gateway callback
that reports back through ``OrderService.record_payment_result``. The wait
happens on a timer thread; nothing is locked meanwhile.
"""
import logging
import random
import re
import secrets
import string
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import settings
from errors import ValidationError
from orders import OrderService, PaymentAck
from schemas import User

logger = logging.getLogger(__name__)

OUTCOMES = ("success", "failure", "random")
RECEIPT_ALPHABET = string.ascii_uppercase + string.digits

# STK query result codes as reported by Daraja.
RESULT_SUCCESS = "0"
RESULT_FAILED = "1"
RESULT_PENDING = "1037"
RESULT_UNKNOWN = "1032"

Scheduler = Callable[[float, Callable[[], None]], Any]


def timer_schedule(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


def normalize_msisdn(phone: str) -> str:
    """Return ``phone`` as 254XXXXXXXXX."""
    number = re.sub(r"\s+", "", phone or "")
    if number.startswith("+254"):
        number = number[1:]
    elif number.startswith("0"):
        number = "254" + number[1:]
    elif not number.startswith("254"):
        number = "254" + number
    if not re.fullmatch(r"254\d{9}", number):
        raise ValidationError(f"Invalid phone number: {phone}")
    return number


def parse_stk_callback(body: Dict[str, Any]) -> tuple[str, bool, Optional[str], str]:
    """Extract (checkout request id, succeeded, receipt, description) from a Daraja callback."""
    callback = (body.get("Body") or {}).get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict) or not callback.get("CheckoutRequestID"):
        raise ValidationError("Invalid callback data")
    succeeded = str(callback.get("ResultCode")) == RESULT_SUCCESS
    receipt = None
    for item in (callback.get("CallbackMetadata") or {}).get("Item", []):
        if item.get("Name") == "MpesaReceiptNumber":
            receipt = item.get("Value")
    return callback["CheckoutRequestID"], succeeded, receipt, callback.get("ResultDesc", "")


@dataclass
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str
    order_number: str
    phone: str
    amount: float


@dataclass
class PaymentIntent:
    id: str
    client_secret: str
    amount: int  # cents
    currency: str
    order_number: str


class PaymentSimulator:
    def __init__(self, orders: OrderService, delay: float = settings.MPESA_MOCK_DELAY,
                 outcome: str = settings.MPESA_MOCK_OUTCOME, schedule: Scheduler = timer_schedule,
                 rng: Optional[random.Random] = None):
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown mock outcome {outcome!r}, expected one of {OUTCOMES}")
        self.orders = orders
        self.delay = delay
        self.outcome = outcome
        self.schedule = schedule
        self.rng = rng or random.Random()

    def initiate(self, order_ref: str, amount: float, phone_or_token: Optional[str], user: User,
                 method: str = "mpesa", prefix: str = "ws_CO_") -> str:
        """Start a mock payment for order ``order_ref`` and return its correlation id."""
        order = self.orders.get_by_number(order_ref, user)
        if amount <= 0:
            raise ValidationError("Invalid amount")
        if abs(amount - order.total) >= 0.01:
            raise ValidationError(f"Amount {amount:.2f} does not match order total {order.total:.2f}")

        correlation_id = f"{prefix}{uuid.uuid4().hex}"
        self.orders.attach_payment(order_ref, user, correlation_id, method)
        logger.info("Mock %s payment initiated for %s (%.2f via %s), callback in %.1fs",
                    method, order_ref, amount, phone_or_token or "-", self.delay)
        self.schedule(self.delay, lambda: self._fire(correlation_id))
        return correlation_id

    def complete(self, correlation_id: str, succeeded: Optional[bool] = None) -> PaymentAck:
        """Deliver the simulated gateway result for ``correlation_id``."""
        if succeeded is None:
            succeeded = self._decide()
        receipt = self._receipt() if succeeded else None
        return self.orders.record_payment_result(correlation_id, succeeded, receipt)

    def _fire(self, correlation_id: str):
        try:
            ack = self.complete(correlation_id)
        except Exception:
            logger.exception("Mock payment callback failed for %s", correlation_id)
            return
        if not ack.matched:
            logger.warning("Mock payment callback found no order for %s", correlation_id)

    def _decide(self) -> bool:
        if self.outcome == "random":
            return self.rng.random() < 0.5
        return self.outcome == "success"

    def _receipt(self) -> str:
        return "OGH" + "".join(self.rng.choice(RECEIPT_ALPHABET) for _ in range(7))

    # --- M-Pesa ---

    def stk_push(self, order_number: str, amount: float, phone: str, user: User) -> StkPushResult:
        msisdn = normalize_msisdn(phone)
        checkout_id = self.initiate(order_number, amount, msisdn, user, method="mpesa")
        merchant_id = f"{self.rng.randint(0, 99999)}-{int(time.time() * 1000)}-1"
        return StkPushResult(checkout_request_id=checkout_id, merchant_request_id=merchant_id,
                             order_number=order_number, phone=msisdn, amount=amount)

    def query_status(self, correlation_id: str) -> Dict[str, str]:
        order = self.orders.orders.get_by_correlation(correlation_id)
        if order is None:
            return {"result_code": RESULT_UNKNOWN, "result_desc": "Request cancelled by user"}
        if order.payment_status == "completed":
            return {"result_code": RESULT_SUCCESS,
                    "result_desc": "The service request has been accepted successfully"}
        if order.payment_status == "failed":
            return {"result_code": RESULT_FAILED,
                    "result_desc": "The balance is insufficient for the transaction"}
        return {"result_code": RESULT_PENDING, "result_desc": "DS timeout user cannot be reached"}

    # --- Card ---

    def create_intent(self, order_number: str, amount: float, user: User, currency: str = "usd") -> PaymentIntent:
        intent_id = self.initiate(order_number, amount, None, user, method="card", prefix="pi_")
        return PaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{secrets.token_hex(12)}",
            amount=int(round(amount * 100)),
            currency=currency,
            order_number=order_number,
        )
