"""
Order lifecycle

Creates orders against the catalog, moves them through their status flow
and records payment outcomes reported by the gateway. Emails, customer
notifications and events are side effects: their failures are logged and
never undo the order write.
"""
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database

import events
from coupons import CouponService
from database import next_sequence, now_utc
from errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    InvalidStatusError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from mailer import Mailer, order_confirmation_email, order_status_email
from repositories import NotificationRepository, OrderRepository, ProductRepository
from schemas import (
    ORDER_FLOW,
    ORDER_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    TERMINAL_STATUSES,
    Notification,
    Order,
    OrderItem,
    User,
)

logger = logging.getLogger(__name__)

TAX_RATE = 0.08
FLAT_SHIPPING = 10.00

TIMELINE_LABELS = {
    "pending": "Order Placed",
    "confirmed": "Confirmed",
    "processing": "Processing",
    "shipped": "Shipped",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
}

# (title, message) per notification type; {number} is the order number.
NOTIFICATION_TEXT = {
    "order_placed": ("Order Placed Successfully", "Your order {number} has been placed successfully."),
    "order_confirmed": ("Order Confirmed", "Your order {number} has been confirmed and is being prepared."),
    "order_processing": ("Order Processing", "Your order {number} is being processed."),
    "order_shipped": ("Order Shipped", "Your order {number} has been shipped and is on its way!"),
    "order_delivered": ("Order Delivered", "Your order {number} has been delivered. Enjoy your purchase!"),
    "order_cancelled": ("Order Cancelled", "Your order {number} has been cancelled."),
    "payment_completed": ("Payment Received", "Payment for order {number} was received. Thank you!"),
    "payment_failed": ("Payment Failed", "Payment for order {number} failed and the order was cancelled."),
}


@dataclass
class LineRequest:
    product_id: str
    quantity: int
    unit_price_hint: Optional[float] = None


@dataclass
class PaymentAck:
    """Outcome of a payment callback.

    ``matched`` is False when no order carries the correlation id; ``applied``
    is True only when this call changed the order.
    """

    matched: bool
    applied: bool
    order: Optional[Order] = None


def check_transition(current: str, requested: str):
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(current, requested)
    if requested == "cancelled":
        return
    if ORDER_FLOW.index(requested) <= ORDER_FLOW.index(current):
        raise InvalidTransitionError(current, requested)


def build_timeline(order: Order) -> List[Dict[str, Any]]:
    reached = ORDER_FLOW.index(order.status) if order.status in ORDER_FLOW else 0
    timeline = []
    for index, status in enumerate(ORDER_FLOW):
        completed = order.status != "cancelled" and index <= reached
        if status == "pending":
            completed, date = True, order.created_at
        elif status == "confirmed" and order.paid_at:
            date = order.paid_at
        else:
            date = order.updated_at if completed else None
        timeline.append({
            "status": status,
            "label": TIMELINE_LABELS[status],
            "completed": completed,
            "date": date,
            "active": order.status == status,
        })
    if order.status == "cancelled":
        timeline.append({
            "status": "cancelled",
            "label": TIMELINE_LABELS["cancelled"],
            "completed": True,
            "date": order.updated_at,
            "active": True,
        })
    return timeline


class OrderService:
    def __init__(self, db: Database, mailer: Optional[Mailer] = None, bus: Optional[events.EventBus] = None):
        self.db = db
        self.products = ProductRepository(db)
        self.orders = OrderRepository(db)
        self.notifications = NotificationRepository(db)
        self.coupons = CouponService(db)
        self.mailer = mailer or Mailer.from_settings()
        self.bus = bus or events.bus

    # --- Creation ---

    def create_order(self, user: User, items: List[LineRequest], shipping_address: str,
                     payment_method: str, coupon_code: Optional[str] = None) -> Order:
        if not items:
            raise ValidationError("Order must contain at least one item")
        if not shipping_address or not shipping_address.strip():
            raise ValidationError("Shipping address is required")
        if not payment_method:
            raise ValidationError("Payment method is required")

        quantities: Dict[str, int] = OrderedDict()
        hints: Dict[str, float] = {}
        for item in items:
            if item.quantity < 1:
                raise ValidationError(f"Quantity must be positive for product {item.product_id}")
            quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
            if item.unit_price_hint is not None:
                hints[item.product_id] = item.unit_price_hint

        catalog = self.products.get_many(list(quantities))
        lines: List[OrderItem] = []
        for product_id, quantity in quantities.items():
            product = catalog.get(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            if product.stock < quantity:
                raise InsufficientStockError(product_id, product.name, product.stock, quantity)
            hint = hints.get(product_id)
            if hint is not None and abs(hint - product.price) >= 0.01:
                logger.warning("Price hint %.2f for %s differs from catalog price %.2f; using catalog",
                               hint, product.name, product.price)
            lines.append(OrderItem(product_id=product_id, name=product.name,
                                   price=product.price, quantity=quantity))

        subtotal = round(sum(line.line_total for line in lines), 2)
        discount, applied_code = 0.0, None
        if coupon_code:
            quote = self.coupons.validate(coupon_code, subtotal)
            discount, applied_code = quote.discount, quote.coupon.code

        reserved: List[OrderItem] = []
        coupon_taken = False
        try:
            for line in lines:
                if not self.products.reserve_stock(line.product_id, line.quantity):
                    current = self.products.get(line.product_id)
                    available = current.stock if current else 0
                    raise InsufficientStockError(line.product_id, line.name, available, line.quantity)
                reserved.append(line)
            if applied_code:
                self.coupons.apply(applied_code)
                coupon_taken = True
            order = self.orders.insert(Order(
                order_number=self._next_order_number(),
                user_id=user.id,
                customer_name=user.name,
                customer_email=user.email,
                items=lines,
                subtotal=subtotal,
                coupon_code=applied_code,
                coupon_discount=discount,
                total=round(max(0.0, subtotal - discount), 2),
                status="pending",
                payment_status="pending",
                shipping_address=shipping_address.strip(),
                payment_method=payment_method,
            ))
        except Exception:
            self._roll_back(reserved, applied_code if coupon_taken else None)
            raise

        logger.info("New order created: %s (%d items, total %.2f)", order.order_number, len(lines), order.total)
        self._notify(order, "order_placed")
        self._email(order, order_confirmation_email)
        self.bus.publish(events.ORDER_CREATED, self._event_payload(order))
        return order

    def _next_order_number(self) -> str:
        seq = next_sequence(self.db, "order_number")
        return f"ORD-{now_utc():%Y%m%d}-{seq:06d}"

    def _roll_back(self, reserved: List[OrderItem], coupon_code: Optional[str]):
        for line in reserved:
            try:
                self.products.release_stock(line.product_id, line.quantity)
            except Exception:
                logger.exception("Could not restore %d units of %s", line.quantity, line.product_id)
        if coupon_code:
            try:
                self.coupons.release(coupon_code)
            except Exception:
                logger.exception("Could not release coupon %s", coupon_code)

    def _restock(self, order: Order):
        for item in order.items:
            self.products.release_stock(item.product_id, item.quantity)
        logger.info("Stock restored for cancelled order %s", order.order_number)

    # --- Status ---

    def update_order_status(self, order_id: str, new_status: str) -> Order:
        if new_status not in ORDER_STATUSES:
            raise InvalidStatusError(new_status)
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if order.status == new_status:
            return order
        check_transition(order.status, new_status)

        fields: Dict[str, Any] = {"status": new_status}
        if new_status == "shipped" and not order.tracking_number:
            fields["tracking_number"] = f"TRK-{uuid.uuid4().hex[:12].upper()}"
        updated = self.orders.compare_and_set_status(order.id, order.status, fields)
        if updated is None:
            raise ConflictError("Order was modified concurrently, reload and try again")
        if new_status == "cancelled":
            self._restock(updated)

        logger.info("Order %s status updated: %s -> %s", updated.order_number, order.status, new_status)
        self._notify(updated, f"order_{new_status}")
        self._email(updated, order_status_email)
        self.bus.publish(events.ORDER_STATUS_CHANGED, self._event_payload(updated, previous_status=order.status))
        return updated

    # --- Payments ---

    def attach_payment(self, order_number: str, user: User, correlation_id: str, payment_method: str) -> Order:
        """Link a gateway round trip to a pending order owned by ``user``."""
        order = self.orders.get_by_number(order_number)
        if order is None:
            raise NotFoundError("Order", order_number)
        self._check_access(order, user)
        if order.status != "pending" or order.payment_status != "pending":
            raise ConflictError(f"Order {order_number} is not awaiting payment")
        updated = self.orders.attach_correlation(order_number, correlation_id, payment_method)
        if updated is None:
            raise ConflictError(f"Order {order_number} is not awaiting payment")
        return updated

    def record_payment_result(self, correlation_id: str, succeeded: bool,
                              receipt_id: Optional[str] = None) -> PaymentAck:
        """Apply a gateway outcome to the order carrying ``correlation_id``.

        Safe to call repeatedly: once the payment status is terminal, later
        results leave the order untouched.
        """
        outcome = "completed" if succeeded else "failed"
        for _ in range(3):
            order = self.orders.get_by_correlation(correlation_id)
            if order is None:
                logger.warning("Payment result for unknown correlation id %s ignored", correlation_id)
                return PaymentAck(matched=False, applied=False)
            if order.payment_status in TERMINAL_PAYMENT_STATUSES:
                if order.payment_status != outcome:
                    logger.warning("Conflicting payment result for order %s: already %s, got %s; ignoring",
                                   order.order_number, order.payment_status, outcome)
                return PaymentAck(matched=True, applied=False, order=order)

            fields: Dict[str, Any] = {"payment_status": outcome}
            if succeeded:
                fields.update(payment_receipt=receipt_id, paid_at=now_utc())
                if order.status == "pending":
                    fields["status"] = "confirmed"
            elif order.status not in TERMINAL_STATUSES:
                fields["status"] = "cancelled"

            updated = self.orders.settle_payment(correlation_id, order.status, fields)
            if updated is not None:
                break
        else:
            raise ConflictError(f"Order for {correlation_id} kept changing, payment result not applied")

        if succeeded and updated.status != "confirmed":
            logger.warning("Payment completed for order %s in status %s", updated.order_number, updated.status)
        if order.status != "cancelled" and updated.status == "cancelled":
            self._restock(updated)

        logger.info("Payment %s for order %s (receipt %s)", outcome, updated.order_number, receipt_id)
        self._notify(updated, f"payment_{outcome}")
        self._email(updated, order_status_email)
        self.bus.publish(events.ORDER_PAYMENT_RECORDED, self._event_payload(updated, previous_status=order.status))
        return PaymentAck(matched=True, applied=True, order=updated)

    # --- Queries ---

    def get_order(self, order_id: str, viewer: Optional[User] = None) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if viewer is not None:
            self._check_access(order, viewer)
        return order

    def get_by_number(self, order_number: str, viewer: Optional[User] = None) -> Order:
        order = self.orders.get_by_number(order_number)
        if order is None:
            raise NotFoundError("Order", order_number)
        if viewer is not None:
            self._check_access(order, viewer)
        return order

    def list_orders(self) -> List[Order]:
        return self.orders.list_all()

    def list_user_orders(self, user: User) -> List[Order]:
        return self.orders.list_for_user(user.id)

    def tracking(self, order_id: str, viewer: User) -> Dict[str, Any]:
        order = self.get_order(order_id, viewer)
        return {"order": order, "timeline": build_timeline(order)}

    def render_invoice(self, order_number: str, viewer: User) -> str:
        order = self.get_by_number(order_number, viewer)
        tax = round(order.total * TAX_RATE, 2)
        grand_total = round(order.total + tax + FLAT_SHIPPING, 2)
        created = f"{order.created_at:%Y-%m-%d}" if order.created_at else ""
        lines = [
            "INVOICE",
            "-------",
            f"Order Number: {order.order_number}",
            f"Date: {created}",
            "",
            f"Customer: {order.customer_name}",
            f"Email: {order.customer_email}",
            "",
            "Items:",
        ]
        for index, item in enumerate(order.items, start=1):
            lines.append(f"{index}. {item.name} x {item.quantity} - ${item.line_total:.2f}")
        lines.append("")
        if order.coupon_discount:
            lines.append(f"Discount ({order.coupon_code}): -${order.coupon_discount:.2f}")
        lines += [
            f"Subtotal: ${order.total:.2f}",
            f"Tax ({TAX_RATE:.0%}): ${tax:.2f}",
            f"Shipping: ${FLAT_SHIPPING:.2f}",
            f"Total: ${grand_total:.2f}",
            "",
            "Shipping Address:",
            order.shipping_address,
            "",
            f"Payment Method: {order.payment_method}",
            f"Payment Status: {order.payment_status}",
        ]
        if order.payment_receipt:
            lines.append(f"Payment Receipt: {order.payment_receipt}")
        lines += [f"Order Status: {order.status}", "", "Thank you for your business!"]
        return "\n".join(lines) + "\n"

    # --- Side effects ---

    def _check_access(self, order: Order, user: User):
        if order.user_id != user.id and not user.is_staff:
            raise AuthorizationError()

    def _best_effort(self, what: str, fn: Callable, *args):
        try:
            fn(*args)
        except Exception:
            logger.exception("Failed to %s", what)

    def _notify(self, order: Order, kind: str):
        title, message = NOTIFICATION_TEXT[kind]
        notification = Notification(
            user_id=order.user_id,
            type=kind,
            title=title,
            message=message.format(number=order.order_number),
            link="/dashboard/orders",
        )
        self._best_effort(f"notify user {order.user_id}", self.notifications.add, notification)

    def _email(self, order: Order, template: Callable[[Order], tuple]):
        subject, body = template(order)
        self._best_effort(f"email {order.customer_email}", self.mailer.send, order.customer_email, subject, body)

    def _event_payload(self, order: Order, previous_status: Optional[str] = None) -> Dict[str, Any]:
        payload = {
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": order.user_id,
            "status": order.status,
            "payment_status": order.payment_status,
        }
        if previous_status is not None:
            payload["previous_status"] = previous_status
        return payload
