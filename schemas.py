"""
Database Schemas for the storefront

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").
The Mongo ``_id`` is exposed as the string field ``_id``.
"""
from datetime import datetime
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
UserRole = Literal["customer", "moderator", "admin"]
DiscountType = Literal["percentage", "fixed"]

ORDER_STATUSES: Tuple[str, ...] = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")
# Forward path of an order; "cancelled" sits outside it.
ORDER_FLOW: Tuple[str, ...] = ("pending", "confirmed", "processing", "shipped", "delivered")
TERMINAL_STATUSES = frozenset({"delivered", "cancelled"})
TERMINAL_PAYMENT_STATUSES = frozenset({"completed", "failed", "refunded"})


class Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, alias="_id")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class User(Document):
    name: str
    email: str
    password_hash: Optional[str] = None
    role: UserRole = "customer"
    avatar: Optional[str] = None
    token: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in ("admin", "moderator")


class Product(Document):
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    category: str
    stock: int = Field(0, ge=0)
    image: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0, description="Unit price at time of purchase")
    quantity: int = Field(..., ge=1)

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)


class Order(Document):
    order_number: str
    user_id: str
    customer_name: str
    customer_email: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    coupon_discount: float = 0.0
    total: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    shipping_address: str
    payment_method: str
    payment_correlation_id: Optional[str] = None
    payment_receipt: Optional[str] = None
    paid_at: Optional[datetime] = None
    tracking_number: Optional[str] = None


class Coupon(Document):
    code: str
    description: Optional[str] = None
    discount_type: DiscountType = "percentage"
    discount_value: float = Field(..., gt=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    used_count: int = Field(0, ge=0)
    expiry_date: Optional[datetime] = None
    is_active: bool = True


class WishlistItem(Document):
    user_id: str
    product_id: str


class Rating(Document):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None


class Testimonial(Document):
    user_id: Optional[str] = None
    name: str
    email: str
    role: str = "Customer"
    comment: str
    rating: int = Field(..., ge=1, le=5)
    is_approved: bool = False
    is_visible: bool = True


class Message(Document):
    sender_id: str
    receiver_id: str
    message: str
    type: str = "chat"
    is_read: bool = False


class Notification(Document):
    user_id: str
    type: str
    title: str
    message: str
    link: Optional[str] = None
    is_read: bool = False
