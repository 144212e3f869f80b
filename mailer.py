"""
Email delivery

Plain-text order emails sent over SMTP. With no SMTP_HOST configured the
mailer only logs what it would have sent.
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

import settings
from errors import ExternalServiceError
from schemas import Order

logger = logging.getLogger(__name__)

STATUS_HEADLINES = {
    "pending": "We have received your order",
    "confirmed": "Your order has been confirmed",
    "processing": "Your order is being processed",
    "shipped": "Your order is on its way",
    "delivered": "Your order has been delivered",
    "cancelled": "Your order has been cancelled",
}


class Mailer:
    def __init__(self, host: Optional[str] = None, port: int = 587, user: Optional[str] = None,
                 password: Optional[str] = None, sender: str = settings.EMAIL_FROM):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    @classmethod
    def from_settings(cls) -> "Mailer":
        return cls(settings.SMTP_HOST, settings.SMTP_PORT, settings.SMTP_USER,
                   settings.SMTP_PASSWORD, settings.EMAIL_FROM)

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def send(self, to: str, subject: str, body: str) -> bool:
        """Send one email. Returns False when delivery is disabled.

        Raises ExternalServiceError when the SMTP server rejects or is unreachable.
        """
        if not self.enabled:
            logger.info("Email disabled, skipping '%s' to %s", subject, to)
            return False
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ExternalServiceError("SMTP", str(e))
        logger.info("Email '%s' sent to %s", subject, to)
        return True


def order_confirmation_email(order: Order) -> tuple[str, str]:
    lines = [f"Hi {order.customer_name},", "", f"Thank you for your order {order.order_number}.", ""]
    for item in order.items:
        lines.append(f"  {item.name} x {item.quantity}  ${item.line_total:.2f}")
    if order.coupon_discount:
        lines.append(f"  Discount ({order.coupon_code})  -${order.coupon_discount:.2f}")
    lines += [
        "",
        f"Total: ${order.total:.2f}",
        f"Shipping to: {order.shipping_address}",
        f"Payment method: {order.payment_method}",
    ]
    return f"Order confirmation - {order.order_number}", "\n".join(lines)


def order_status_email(order: Order) -> tuple[str, str]:
    headline = STATUS_HEADLINES.get(order.status, f"Order status: {order.status}")
    lines = [f"Hi {order.customer_name},", "", f"{headline} ({order.order_number})."]
    if order.tracking_number:
        lines.append(f"Tracking number: {order.tracking_number}")
    return f"{headline} - {order.order_number}", "\n".join(lines)
