"""
Typed repositories over the MongoDB collections.

Routes and services work with the entities from ``schemas``; raw documents
and ObjectIds stay inside this module.
"""
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import now_utc, oid, stringify_id
from errors import ConflictError
from schemas import Coupon, Notification, Order, Product

PRODUCT_SORTS = {
    "price_asc": [("price", ASCENDING)],
    "price_desc": [("price", DESCENDING)],
    "name_asc": [("name", ASCENDING)],
    "newest": [("created_at", DESCENDING)],
}


def _insert(collection, entity) -> Dict[str, Any]:
    doc = entity.model_dump(exclude={"id"})
    doc["created_at"] = doc.get("created_at") or now_utc()
    doc["updated_at"] = now_utc()
    res = collection.insert_one(doc)
    doc["_id"] = res.inserted_id
    return stringify_id(doc)


class ProductRepository:
    """Catalog store: products with price and stock."""

    def __init__(self, db: Database):
        self.collection = db["product"]

    def _load(self, doc) -> Optional[Product]:
        return Product.model_validate(stringify_id(doc)) if doc else None

    def get(self, product_id: str) -> Optional[Product]:
        return self._load(self.collection.find_one({"_id": oid(product_id)}))

    def get_many(self, product_ids: List[str]) -> Dict[str, Product]:
        docs = self.collection.find({"_id": {"$in": [oid(p) for p in product_ids]}})
        return {str(d["_id"]): self._load(d) for d in docs}

    def list(self, category: Optional[str] = None, min_price: Optional[float] = None,
             max_price: Optional[float] = None, in_stock: bool = False,
             sort_by: Optional[str] = None) -> List[Product]:
        filt: Dict[str, Any] = {}
        if category:
            filt["category"] = category
        price_cond = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        if price_cond:
            filt["price"] = price_cond
        if in_stock:
            filt["stock"] = {"$gt": 0}
        sort = PRODUCT_SORTS.get(sort_by or "newest", PRODUCT_SORTS["newest"])
        return [self._load(d) for d in self.collection.find(filt).sort(sort)]

    def create(self, product: Product) -> Product:
        return Product.model_validate(_insert(self.collection, product))

    def update(self, product_id: str, fields: Dict[str, Any]) -> Optional[Product]:
        doc = self.collection.find_one_and_update(
            {"_id": oid(product_id)},
            {"$set": {**fields, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def delete(self, product_id: str) -> bool:
        return self.collection.delete_one({"_id": oid(product_id)}).deleted_count == 1

    def reserve_stock(self, product_id: str, quantity: int) -> bool:
        """Decrement stock only if it still covers ``quantity``."""
        res = self.collection.update_one(
            {"_id": oid(product_id), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": now_utc()}},
        )
        return res.modified_count == 1

    def release_stock(self, product_id: str, quantity: int):
        self.collection.update_one(
            {"_id": oid(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": now_utc()}},
        )


class OrderRepository:
    """Order store. Line items are embedded, so they live and die with the order."""

    def __init__(self, db: Database):
        self.collection = db["order"]

    def _load(self, doc) -> Optional[Order]:
        return Order.model_validate(stringify_id(doc)) if doc else None

    def insert(self, order: Order) -> Order:
        try:
            return Order.model_validate(_insert(self.collection, order))
        except DuplicateKeyError:
            raise ConflictError(f"Order number already exists: {order.order_number}")

    def get(self, order_id: str) -> Optional[Order]:
        return self._load(self.collection.find_one({"_id": oid(order_id)}))

    def get_by_number(self, order_number: str) -> Optional[Order]:
        return self._load(self.collection.find_one({"order_number": order_number}))

    def get_by_correlation(self, correlation_id: str) -> Optional[Order]:
        return self._load(self.collection.find_one({"payment_correlation_id": correlation_id}))

    def list_all(self) -> List[Order]:
        return [self._load(d) for d in self.collection.find().sort("created_at", DESCENDING)]

    def list_for_user(self, user_id: str) -> List[Order]:
        cur = self.collection.find({"user_id": user_id}).sort("created_at", DESCENDING)
        return [self._load(d) for d in cur]

    def compare_and_set_status(self, order_id: str, expected: str, fields: Dict[str, Any]) -> Optional[Order]:
        """Apply ``fields`` only while the order still has status ``expected``."""
        doc = self.collection.find_one_and_update(
            {"_id": oid(order_id), "status": expected},
            {"$set": {**fields, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def settle_payment(self, correlation_id: str, expected_status: str, fields: Dict[str, Any]) -> Optional[Order]:
        """Record a payment outcome on the order still awaiting one in ``expected_status``."""
        doc = self.collection.find_one_and_update(
            {"payment_correlation_id": correlation_id, "payment_status": "pending", "status": expected_status},
            {"$set": {**fields, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def attach_correlation(self, order_number: str, correlation_id: str, payment_method: str) -> Optional[Order]:
        doc = self.collection.find_one_and_update(
            {"order_number": order_number, "payment_status": "pending", "status": "pending"},
            {"$set": {
                "payment_correlation_id": correlation_id,
                "payment_method": payment_method,
                "updated_at": now_utc(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)


class CouponRepository:
    # Optimistic retries for used_count bumps before giving up.
    MAX_CAS_ATTEMPTS = 5

    def __init__(self, db: Database):
        self.collection = db["coupon"]

    def _load(self, doc) -> Optional[Coupon]:
        return Coupon.model_validate(stringify_id(doc)) if doc else None

    def get(self, coupon_id: str) -> Optional[Coupon]:
        return self._load(self.collection.find_one({"_id": oid(coupon_id)}))

    def get_by_code(self, code: str) -> Optional[Coupon]:
        return self._load(self.collection.find_one({"code": code.strip().upper()}))

    def list_all(self) -> List[Coupon]:
        return [self._load(d) for d in self.collection.find().sort("created_at", DESCENDING)]

    def list_active(self) -> List[Coupon]:
        # Mongo stores naive UTC; compare against the same.
        now = now_utc().replace(tzinfo=None)
        cur = self.collection.find({
            "is_active": True,
            "$or": [{"expiry_date": None}, {"expiry_date": {"$gt": now}}],
        }).sort("created_at", DESCENDING)
        return [self._load(d) for d in cur]

    def create(self, coupon: Coupon) -> Coupon:
        coupon = coupon.model_copy(update={"code": coupon.code.strip().upper()})
        if self.collection.find_one({"code": coupon.code}, {"_id": 1}):
            raise ConflictError("Coupon code already exists")
        try:
            return Coupon.model_validate(_insert(self.collection, coupon))
        except DuplicateKeyError:
            raise ConflictError("Coupon code already exists")

    def update(self, coupon_id: str, fields: Dict[str, Any],
               guard: Optional[Dict[str, Any]] = None) -> Optional[Coupon]:
        """Apply ``fields``; with ``guard`` only while the stored coupon also matches it."""
        doc = self.collection.find_one_and_update(
            {"_id": oid(coupon_id), **(guard or {})},
            {"$set": {**fields, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def delete(self, coupon_id: str) -> bool:
        return self.collection.delete_one({"_id": oid(coupon_id)}).deleted_count == 1

    def increment_usage(self, code: str) -> Optional[Coupon]:
        """Bump used_count without passing usage_limit.

        Returns the updated coupon, or None when the limit is already reached.
        """
        code = code.strip().upper()
        for _ in range(self.MAX_CAS_ATTEMPTS):
            current = self.get_by_code(code)
            if current is None:
                return None
            if current.usage_limit is not None and current.used_count >= current.usage_limit:
                return None
            doc = self.collection.find_one_and_update(
                {"code": code, "used_count": current.used_count},
                {"$inc": {"used_count": 1}, "$set": {"updated_at": now_utc()}},
                return_document=ReturnDocument.AFTER,
            )
            if doc:
                return self._load(doc)
        raise ConflictError(f"Coupon {code} is being used concurrently, try again")

    def decrement_usage(self, code: str):
        self.collection.update_one(
            {"code": code.strip().upper(), "used_count": {"$gt": 0}},
            {"$inc": {"used_count": -1}, "$set": {"updated_at": now_utc()}},
        )


class NotificationRepository:
    """Persisted notification store keyed by user id."""

    def __init__(self, db: Database):
        self.collection = db["notification"]

    def _load(self, doc) -> Optional[Notification]:
        return Notification.model_validate(stringify_id(doc)) if doc else None

    def add(self, notification: Notification) -> Notification:
        return Notification.model_validate(_insert(self.collection, notification))

    def list_for_user(self, user_id: str, limit: int = 10, unread_only: bool = False) -> List[Notification]:
        filt: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            filt["is_read"] = False
        cur = self.collection.find(filt).sort("created_at", DESCENDING).limit(limit)
        return [self._load(d) for d in cur]

    def unread_count(self, user_id: str) -> int:
        return self.collection.count_documents({"user_id": user_id, "is_read": False})

    def mark_read(self, notification_id: str, user_id: str) -> Optional[Notification]:
        doc = self.collection.find_one_and_update(
            {"_id": oid(notification_id), "user_id": user_id},
            {"$set": {"is_read": True, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._load(doc)

    def mark_all_read(self, user_id: str) -> int:
        res = self.collection.update_many(
            {"user_id": user_id, "is_read": False},
            {"$set": {"is_read": True, "updated_at": now_utc()}},
        )
        return res.modified_count

    def delete(self, notification_id: str, user_id: str) -> bool:
        res = self.collection.delete_one({"_id": oid(notification_id), "user_id": user_id})
        return res.deleted_count == 1
