"""
Coupon validation and discount maths.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database

from database import as_utc, now_utc
from errors import (
    ConflictError,
    CouponNotFoundError,
    ExpiredCouponError,
    InactiveCouponError,
    MinimumPurchaseError,
    NotFoundError,
    UsageLimitExceededError,
    ValidationError,
)
from repositories import CouponRepository
from schemas import Coupon

logger = logging.getLogger(__name__)


@dataclass
class CouponQuote:
    coupon: Coupon
    discount: float
    final_total: float


def compute_discount(coupon: Coupon, order_total: float) -> float:
    if coupon.discount_type == "percentage":
        discount = order_total * coupon.discount_value / 100
        if coupon.max_discount is not None and discount > coupon.max_discount:
            discount = coupon.max_discount
    else:
        discount = coupon.discount_value
    return round(min(discount, order_total), 2)


def check_coupon(coupon: Coupon, order_total: float):
    """Raise the first rule ``coupon`` breaks for ``order_total``."""
    if not coupon.is_active:
        raise InactiveCouponError(coupon.code)
    expiry = as_utc(coupon.expiry_date)
    if expiry is not None and expiry < now_utc():
        raise ExpiredCouponError(coupon.code)
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise UsageLimitExceededError(coupon.code, coupon.usage_limit)
    if order_total < coupon.min_purchase:
        raise MinimumPurchaseError(coupon.code, coupon.min_purchase)


class CouponService:
    def __init__(self, db: Database):
        self.coupons = CouponRepository(db)

    def validate(self, code: str, order_total: float) -> CouponQuote:
        if not code or not code.strip():
            raise ValidationError("Coupon code is required")
        if order_total < 0:
            raise ValidationError("Order total must not be negative")
        coupon = self.coupons.get_by_code(code)
        if coupon is None:
            raise CouponNotFoundError(code)
        check_coupon(coupon, order_total)
        discount = compute_discount(coupon, order_total)
        final_total = round(max(0.0, order_total - discount), 2)
        return CouponQuote(coupon=coupon, discount=discount, final_total=final_total)

    def apply(self, code: str) -> Coupon:
        """Record one use of the coupon."""
        coupon = self.coupons.get_by_code(code)
        if coupon is None:
            raise CouponNotFoundError(code)
        updated = self.coupons.increment_usage(coupon.code)
        if updated is None:
            raise UsageLimitExceededError(coupon.code, coupon.usage_limit or 0)
        logger.info("Coupon %s used (%d/%s)", updated.code, updated.used_count, updated.usage_limit)
        return updated

    def release(self, code: str):
        """Give back one use, e.g. when the order that took it is rolled back."""
        self.coupons.decrement_usage(code)

    def list_all(self) -> List[Coupon]:
        return self.coupons.list_all()

    def list_active(self) -> List[Coupon]:
        return self.coupons.list_active()

    def create(self, coupon: Coupon) -> Coupon:
        coupon = coupon.model_copy(update={"expiry_date": as_utc(coupon.expiry_date), "used_count": 0})
        created = self.coupons.create(coupon)
        logger.info("Coupon %s created", created.code)
        return created

    def update(self, coupon_id: str, fields: Dict[str, Any]) -> Coupon:
        """Change coupon settings.

        The merged coupon must still be valid, and a new usage_limit may not
        drop below the uses already recorded.
        """
        current = self.coupons.get(coupon_id)
        if current is None:
            raise NotFoundError("Coupon", coupon_id)
        fields = {k: v for k, v in fields.items() if k not in ("id", "code", "used_count")}
        if "expiry_date" in fields:
            fields["expiry_date"] = as_utc(fields["expiry_date"])
        try:
            Coupon.model_validate({**current.model_dump(), **fields})
        except PydanticValidationError as e:
            problem = e.errors()[0]
            field = ".".join(str(p) for p in problem.get("loc", ()))
            raise ValidationError(f"{field}: {problem.get('msg')}")

        guard = None
        limit = fields.get("usage_limit")
        if limit is not None:
            if current.used_count > limit:
                raise ValidationError(f"Usage limit {limit} is below the {current.used_count} uses already recorded")
            guard = {"used_count": {"$lte": limit}}
        coupon = self.coupons.update(coupon_id, fields, guard=guard)
        if coupon is None:
            if self.coupons.get(coupon_id) is None:
                raise NotFoundError("Coupon", coupon_id)
            raise ConflictError("Coupon was used concurrently, reload and try again")
        return coupon

    def delete(self, coupon_id: str):
        if not self.coupons.delete(coupon_id):
            raise NotFoundError("Coupon", coupon_id)
