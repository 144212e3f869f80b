import hashlib
import logging
import secrets
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, field_validator
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import events
import settings
from coupons import CouponService
from database import create_document, get_db, get_documents, now_utc, oid, stringify_id
from errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StorefrontError,
    ValidationError,
)
from mailer import Mailer
from orders import LineRequest, OrderService
from payments import PaymentSimulator, parse_stk_callback
from repositories import NotificationRepository, ProductRepository
from schemas import Coupon, Message, Notification, Product, Rating, Testimonial, User, WishlistItem

settings.configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def create_indexes():
    if database.db is None:
        return
    database.ensure_indexes(database.db)
    logger.info("Indexes ensured on %s", database.db.name)

# ---------------------- Errors ----------------------


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": str(exc), "error_type": type(exc).__name__},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": str(exc.detail), "error_type": "HTTPException"},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return JSONResponse(
        status_code=400,
        content={"message": "; ".join(problems) or "Invalid request", "error_type": "ValidationError"},
    )

# ---------------------- Dependencies ----------------------

mailer = Mailer.from_settings()


def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def get_mailer() -> Mailer:
    return mailer


def get_event_bus() -> events.EventBus:
    return events.bus


def get_order_service(db: Database = Depends(get_db), mailer: Mailer = Depends(get_mailer),
                      bus: events.EventBus = Depends(get_event_bus)) -> OrderService:
    return OrderService(db, mailer=mailer, bus=bus)


def get_payment_simulator(orders: OrderService = Depends(get_order_service)) -> PaymentSimulator:
    return PaymentSimulator(orders)


def get_coupon_service(db: Database = Depends(get_db)) -> CouponService:
    return CouponService(db)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


def _user_from_token(db: Database, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    doc = db["user"].find_one({"token": token})
    return User.model_validate(stringify_id(doc)) if doc else None


def current_user(authorization: Optional[str] = Header(default=None),
                 db: Database = Depends(get_db)) -> User:
    user = _user_from_token(db, _bearer(authorization))
    if user is None:
        raise AuthenticationError()
    return user


def optional_user(authorization: Optional[str] = Header(default=None),
                  db: Database = Depends(get_db)) -> Optional[User]:
    return _user_from_token(db, _bearer(authorization))


def require_staff(user: User = Depends(current_user)) -> User:
    if not user.is_staff:
        raise AuthorizationError()
    return user


def require_admin(user: User = Depends(current_user)) -> User:
    if user.role != "admin":
        raise AuthorizationError()
    return user


def public_user(user: User) -> Dict[str, Any]:
    return {"_id": user.id, "name": user.name, "email": user.email, "role": user.role, "avatar": user.avatar}

# ---------------------- Models ----------------------


class RegisterBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)


class LoginBody(BaseModel):
    email: str
    password: str


class ProductBody(BaseModel):
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    category: str
    stock: int = Field(0, ge=0)
    image: Optional[str] = None


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None


class OrderLineBody(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: Optional[float] = Field(None, ge=0, description="Price the client displayed")


class AddressBody(BaseModel):
    street: str
    city: str
    state: str = ""
    zip_code: str = ""
    country: str

    def flatten(self) -> str:
        region = " ".join(p for p in (self.state, self.zip_code) if p)
        return ", ".join(p for p in (self.street, self.city, region, self.country) if p)


class CreateOrderBody(BaseModel):
    items: List[OrderLineBody] = Field(..., min_length=1)
    shipping_address: Union[str, AddressBody]
    payment_method: str = Field(..., min_length=1)
    coupon_code: Optional[str] = None


class StatusBody(BaseModel):
    status: str


class StkPushBody(BaseModel):
    phone_number: str
    amount: float
    order_number: str


class StkQueryBody(BaseModel):
    checkout_request_id: str


class PaymentIntentBody(BaseModel):
    order_number: str
    amount: float
    currency: str = "usd"


class CouponValidateBody(BaseModel):
    code: str
    order_total: float = Field(..., gt=0)


class CouponApplyBody(BaseModel):
    code: str


class CouponBody(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = None
    discount_type: str = Field("percentage", pattern="^(percentage|fixed)$")
    discount_value: float = Field(..., gt=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    expiry_date: Optional[datetime] = None
    is_active: bool = True


class CouponUpdateBody(BaseModel):
    description: Optional[str] = None
    discount_type: Optional[str] = Field(None, pattern="^(percentage|fixed)$")
    discount_value: Optional[float] = Field(None, gt=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    expiry_date: Optional[datetime] = None
    is_active: Optional[bool] = None

    # Optional only so they can be left out; an explicit null is rejected.
    @field_validator("discount_type", "discount_value", "min_purchase", "is_active")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("must not be null")
        return value


class WishlistBody(BaseModel):
    product_id: str


class RatingBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None


class TestimonialBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    role: Optional[str] = None
    comment: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)


class MessageBody(BaseModel):
    receiver_id: str
    message: str = Field(..., min_length=1)


class NotificationBody(BaseModel):
    user_id: str
    type: str
    title: str
    message: str
    link: Optional[str] = None


class SeedBody(BaseModel):
    admin_email: Optional[str] = None

# ---------------------- Root & Health ----------------------


@app.get("/")
def read_root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "running",
        "database": "not available",
        "database_name": None,
        "collections": [],
    }
    if database.db is not None:
        response["database_name"] = database.db.name
        try:
            response["collections"] = database.db.list_collection_names()
            response["database"] = "connected"
        except Exception as e:
            response["database"] = f"connected but error: {str(e)[:80]}"
    return response

# ---------------------- Auth ----------------------


@app.post("/auth/register", status_code=201)
def register(body: RegisterBody, db: Database = Depends(get_db)):
    email = body.email.strip().lower()
    if db["user"].find_one({"email": email}):
        raise ConflictError("User already exists")
    user = User(name=body.name, email=email, password_hash=hash_password(body.password))
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ConflictError("User already exists")
    logger.info("User registered: %s", email)
    return {"message": "User registered successfully", "user": {"_id": user_id, "name": user.name, "email": email}}


@app.post("/auth/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    doc = db["user"].find_one({"email": body.email.strip().lower()})
    if not doc or doc.get("password_hash") != hash_password(body.password):
        raise AuthenticationError("Invalid credentials")
    token = secrets.token_hex(16)
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"token": token, "updated_at": now_utc()}})
    user = User.model_validate(stringify_id(doc))
    return {"token": token, "user": public_user(user)}


@app.get("/auth/me")
def me(user: User = Depends(current_user)):
    return public_user(user)

# ---------------------- Products ----------------------


def _rating_stats(db: Database, product_ids: List[str]) -> Dict[str, Dict[str, float]]:
    scores: Dict[str, List[int]] = defaultdict(list)
    for r in db["rating"].find({"product_id": {"$in": product_ids}}, {"product_id": 1, "rating": 1}):
        scores[r["product_id"]].append(r["rating"])
    return {
        pid: {"average_rating": round(sum(vals) / len(vals), 1), "total_ratings": len(vals)}
        for pid, vals in scores.items()
    }


@app.get("/products")
def list_products(category: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, min_rating: Optional[float] = None,
                  in_stock: bool = False, sort_by: Optional[str] = None,
                  db: Database = Depends(get_db)):
    products = ProductRepository(db).list(category=category, min_price=min_price, max_price=max_price,
                                          in_stock=in_stock, sort_by=sort_by)
    stats = _rating_stats(db, [p.id for p in products])
    out = []
    for p in products:
        s = stats.get(p.id, {"average_rating": 0, "total_ratings": 0})
        if min_rating is not None and s["average_rating"] < min_rating:
            continue
        out.append({**p.model_dump(by_alias=True), **s})
    return out


@app.get("/products/stats/dashboard")
def dashboard_stats(admin: User = Depends(require_admin), db: Database = Depends(get_db)):
    products = ProductRepository(db).list()
    categories: Dict[str, Dict[str, float]] = {}
    for p in products:
        c = categories.setdefault(p.category, {"count": 0, "total_value": 0.0})
        c["count"] += 1
        c["total_value"] = round(c["total_value"] + p.price * p.stock, 2)
    total = len(products)
    return {
        "total_products": total,
        "total_value": round(sum(p.price * p.stock for p in products), 2),
        "low_stock_count": sum(1 for p in products if p.stock < 10),
        "out_of_stock_count": sum(1 for p in products if p.stock == 0),
        "in_stock_count": sum(1 for p in products if p.stock > 0),
        "avg_price": round(sum(p.price for p in products) / total, 2) if total else 0,
        "category_breakdown": categories,
    }


@app.get("/products/{pid}")
def get_product(pid: str, db: Database = Depends(get_db)):
    product = ProductRepository(db).get(pid)
    if product is None:
        raise NotFoundError("Product", pid)
    return product


@app.post("/products", status_code=201)
def create_product(body: ProductBody, admin: User = Depends(require_admin), db: Database = Depends(get_db)):
    product = ProductRepository(db).create(Product(**body.model_dump()))
    logger.info("Product created: %s", product.name)
    return {"message": "Product created successfully", "product": product}


@app.put("/products/{pid}")
def update_product(pid: str, body: ProductUpdateBody, admin: User = Depends(require_admin),
                   db: Database = Depends(get_db)):
    fields = body.model_dump(exclude_none=True)
    if not fields:
        raise ValidationError("Nothing to update")
    product = ProductRepository(db).update(pid, fields)
    if product is None:
        raise NotFoundError("Product", pid)
    return {"message": "Product updated successfully", "product": product}


@app.delete("/products/{pid}")
def delete_product(pid: str, admin: User = Depends(require_admin), db: Database = Depends(get_db)):
    if not ProductRepository(db).delete(pid):
        raise NotFoundError("Product", pid)
    return {"message": "Product deleted successfully"}

# ---------------------- Orders ----------------------


@app.post("/orders/create", status_code=201)
def create_order(body: CreateOrderBody, user: User = Depends(current_user),
                 orders: OrderService = Depends(get_order_service)):
    address = body.shipping_address
    if isinstance(address, AddressBody):
        address = address.flatten()
    order = orders.create_order(
        user,
        [LineRequest(i.product_id, i.quantity, i.unit_price) for i in body.items],
        address,
        body.payment_method,
        coupon_code=body.coupon_code,
    )
    return {"message": "Order created successfully", "order_number": order.order_number, "order": order}


@app.get("/orders")
def list_orders(staff: User = Depends(require_staff), orders: OrderService = Depends(get_order_service)):
    return orders.list_orders()


@app.get("/orders/my-orders")
def my_orders(user: User = Depends(current_user), orders: OrderService = Depends(get_order_service)):
    return orders.list_user_orders(user)


@app.get("/orders/{order_id}/tracking")
def order_tracking(order_id: str, user: User = Depends(current_user),
                   orders: OrderService = Depends(get_order_service)):
    return orders.tracking(order_id, user)


@app.get("/orders/{order_number}/invoice", response_class=PlainTextResponse)
def order_invoice(order_number: str, user: User = Depends(current_user),
                  orders: OrderService = Depends(get_order_service)):
    text = orders.render_invoice(order_number, user)
    return PlainTextResponse(
        text,
        headers={"Content-Disposition": f"attachment; filename=invoice-{order_number}.txt"},
    )


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusBody, admin: User = Depends(require_admin),
                        orders: OrderService = Depends(get_order_service)):
    order = orders.update_order_status(order_id, body.status)
    return {"message": "Order status updated successfully", "order": order}

# ---------------------- Payments (mock M-Pesa / card) ----------------------


@app.post("/mpesa/stkpush")
def mpesa_stk_push(body: StkPushBody, user: User = Depends(current_user),
                   payments: PaymentSimulator = Depends(get_payment_simulator)):
    result = payments.stk_push(body.order_number, body.amount, body.phone_number, user)
    return {
        "success": True,
        "message": "STK push sent successfully (MOCK MODE)",
        "checkout_request_id": result.checkout_request_id,
        "merchant_request_id": result.merchant_request_id,
        "response_code": "0",
        "customer_message": "Success. Request accepted for processing",
        "mock_mode": True,
    }


@app.post("/mpesa/query")
def mpesa_query(body: StkQueryBody, user: User = Depends(current_user),
                payments: PaymentSimulator = Depends(get_payment_simulator)):
    return {"success": True, **payments.query_status(body.checkout_request_id), "mock_mode": True}


@app.post("/mpesa/callback")
def mpesa_callback(body: Dict[str, Any], orders: OrderService = Depends(get_order_service)):
    checkout_id, succeeded, receipt, description = parse_stk_callback(body)
    logger.info("M-Pesa callback for %s: %s", checkout_id, description or ("success" if succeeded else "failed"))
    try:
        orders.record_payment_result(checkout_id, succeeded, receipt)
    except Exception:
        # The gateway retries anything but a success answer.
        logger.exception("Failed to record M-Pesa result for %s", checkout_id)
    return {"ResultCode": 0, "ResultDesc": "Success"}


@app.post("/payments/create-intent")
def create_payment_intent(body: PaymentIntentBody, user: User = Depends(current_user),
                          payments: PaymentSimulator = Depends(get_payment_simulator)):
    intent = payments.create_intent(body.order_number, body.amount, user, currency=body.currency)
    return {
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
        "amount": intent.amount,
        "currency": intent.currency,
    }

# ---------------------- Coupons ----------------------


@app.post("/coupons/validate")
def validate_coupon(body: CouponValidateBody, coupons: CouponService = Depends(get_coupon_service)):
    quote = coupons.validate(body.code, body.order_total)
    c = quote.coupon
    return {
        "valid": True,
        "coupon": {
            "_id": c.id,
            "code": c.code,
            "description": c.description,
            "discount_type": c.discount_type,
            "discount_value": c.discount_value,
        },
        "discount": quote.discount,
        "final_total": quote.final_total,
    }


@app.post("/coupons/apply")
def apply_coupon(body: CouponApplyBody, user: User = Depends(current_user),
                 coupons: CouponService = Depends(get_coupon_service)):
    return {"message": "Coupon applied successfully", "coupon": coupons.apply(body.code)}


@app.get("/coupons/active")
def active_coupons(coupons: CouponService = Depends(get_coupon_service)):
    return [
        c.model_dump(by_alias=True, include={"code", "description", "discount_type", "discount_value",
                                             "min_purchase", "expiry_date"})
        for c in coupons.list_active()
    ]


@app.get("/coupons")
def list_coupons(admin: User = Depends(require_admin), coupons: CouponService = Depends(get_coupon_service)):
    return coupons.list_all()


@app.post("/coupons", status_code=201)
def create_coupon(body: CouponBody, admin: User = Depends(require_admin),
                  coupons: CouponService = Depends(get_coupon_service)):
    coupon = coupons.create(Coupon(**body.model_dump()))
    return {"message": "Coupon created successfully", "coupon": coupon}


@app.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, body: CouponUpdateBody, admin: User = Depends(require_admin),
                  coupons: CouponService = Depends(get_coupon_service)):
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("Nothing to update")
    return {"message": "Coupon updated successfully", "coupon": coupons.update(coupon_id, fields)}


@app.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, admin: User = Depends(require_admin),
                  coupons: CouponService = Depends(get_coupon_service)):
    coupons.delete(coupon_id)
    return {"message": "Coupon deleted successfully"}

# ---------------------- Wishlist ----------------------


@app.get("/wishlist")
def get_wishlist(user: User = Depends(current_user), db: Database = Depends(get_db)):
    entries = get_documents(db, "wishlist", {"user_id": user.id})
    products = ProductRepository(db).get_many([e["product_id"] for e in entries])
    return [{**e, "product": products.get(e["product_id"])} for e in entries]


@app.post("/wishlist", status_code=201)
def add_to_wishlist(body: WishlistBody, user: User = Depends(current_user), db: Database = Depends(get_db)):
    product = ProductRepository(db).get(body.product_id)
    if product is None:
        raise NotFoundError("Product", body.product_id)
    if db["wishlist"].find_one({"user_id": user.id, "product_id": body.product_id}):
        raise ConflictError("Product already in wishlist")
    try:
        entry_id = create_document(db, "wishlist", WishlistItem(user_id=user.id, product_id=body.product_id))
    except DuplicateKeyError:
        raise ConflictError("Product already in wishlist")
    return {"_id": entry_id, "user_id": user.id, "product_id": body.product_id, "product": product}


@app.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user: User = Depends(current_user), db: Database = Depends(get_db)):
    res = db["wishlist"].delete_one({"user_id": user.id, "product_id": product_id})
    if res.deleted_count == 0:
        raise NotFoundError("Wishlist item", product_id)
    return {"message": "Removed from wishlist"}


@app.delete("/wishlist")
def clear_wishlist(user: User = Depends(current_user), db: Database = Depends(get_db)):
    db["wishlist"].delete_many({"user_id": user.id})
    return {"message": "Wishlist cleared"}

# ---------------------- Ratings ----------------------


@app.get("/ratings/{product_id}")
def product_ratings(product_id: str, db: Database = Depends(get_db)):
    ratings = get_documents(db, "rating", {"product_id": product_id})
    authors = {
        str(u["_id"]): u.get("name")
        for u in db["user"].find({"_id": {"$in": [oid(r["user_id"]) for r in ratings]}}, {"name": 1})
    }
    return [{**r, "user_name": authors.get(r["user_id"])} for r in ratings]


@app.post("/ratings/{product_id}", status_code=201)
def rate_product(product_id: str, body: RatingBody, user: User = Depends(current_user),
                 db: Database = Depends(get_db)):
    if ProductRepository(db).get(product_id) is None:
        raise NotFoundError("Product", product_id)
    if db["rating"].find_one({"product_id": product_id, "user_id": user.id}):
        raise ConflictError("You have already rated this product")
    rating = Rating(product_id=product_id, user_id=user.id, rating=body.rating, review=body.review)
    try:
        rating_id = create_document(db, "rating", rating)
    except DuplicateKeyError:
        raise ConflictError("You have already rated this product")
    return rating.model_copy(update={"id": rating_id})


@app.get("/ratings/{product_id}/stats")
def product_rating_stats(product_id: str, db: Database = Depends(get_db)):
    return _rating_stats(db, [product_id]).get(product_id, {"average_rating": 0, "total_ratings": 0})

# ---------------------- Testimonials ----------------------


@app.post("/testimonials", status_code=201)
def submit_testimonial(body: TestimonialBody, user: Optional[User] = Depends(optional_user),
                       db: Database = Depends(get_db)):
    testimonial = Testimonial(user_id=user.id if user else None, name=body.name, email=body.email,
                              role=body.role or "Customer", comment=body.comment, rating=body.rating)
    testimonial_id = create_document(db, "testimonial", testimonial)
    return {
        "message": "Thank you for your testimonial! It will be reviewed and published soon.",
        "testimonial": {"_id": testimonial_id, "name": body.name, "rating": body.rating, "comment": body.comment},
    }


@app.get("/testimonials")
def approved_testimonials(limit: int = Query(10, ge=1, le=100), db: Database = Depends(get_db)):
    items = get_documents(db, "testimonial", {"is_approved": True, "is_visible": True}, limit=limit)
    public = [{k: t.get(k) for k in ("_id", "name", "role", "comment", "rating", "created_at")} for t in items]
    return {"total": len(public), "testimonials": public}


@app.get("/testimonials/all")
def all_testimonials(approved: Optional[bool] = None, visible: Optional[bool] = None,
                     admin: User = Depends(require_admin), db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {}
    if approved is not None:
        filt["is_approved"] = approved
    if visible is not None:
        filt["is_visible"] = visible
    items = get_documents(db, "testimonial", filt)
    return {"total": len(items), "testimonials": items}


@app.get("/testimonials/pending-count")
def pending_testimonials(admin: User = Depends(require_admin), db: Database = Depends(get_db)):
    return {"pending_count": db["testimonial"].count_documents({"is_approved": False})}


def _update_testimonial(db: Database, testimonial_id: str, update: Dict[str, Any]) -> Dict[str, Any]:
    doc = db["testimonial"].find_one_and_update(
        {"_id": oid(testimonial_id)}, update, return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise NotFoundError("Testimonial", testimonial_id)
    return stringify_id(doc)


@app.patch("/testimonials/{testimonial_id}/approve")
def approve_testimonial(testimonial_id: str, admin: User = Depends(require_admin),
                        db: Database = Depends(get_db)):
    t = _update_testimonial(db, testimonial_id, {"$set": {"is_approved": True, "updated_at": now_utc()}})
    return {"message": "Testimonial approved successfully", "testimonial": t}


@app.patch("/testimonials/{testimonial_id}/visibility")
def toggle_testimonial(testimonial_id: str, admin: User = Depends(require_admin),
                       db: Database = Depends(get_db)):
    current = db["testimonial"].find_one({"_id": oid(testimonial_id)}, {"is_visible": 1})
    if current is None:
        raise NotFoundError("Testimonial", testimonial_id)
    visible = not current.get("is_visible", True)
    t = _update_testimonial(db, testimonial_id, {"$set": {"is_visible": visible, "updated_at": now_utc()}})
    return {"message": f"Testimonial {'shown' if visible else 'hidden'} successfully", "testimonial": t}


@app.delete("/testimonials/{testimonial_id}")
def delete_testimonial(testimonial_id: str, admin: User = Depends(require_admin), db: Database = Depends(get_db)):
    if db["testimonial"].delete_one({"_id": oid(testimonial_id)}).deleted_count == 0:
        raise NotFoundError("Testimonial", testimonial_id)
    return {"message": "Testimonial deleted successfully"}

# ---------------------- Messages ----------------------


@app.get("/messages/conversations")
def conversations(user: User = Depends(current_user), db: Database = Depends(get_db)):
    involved = get_documents(db, "message", {"$or": [{"sender_id": user.id}, {"receiver_id": user.id}]})
    latest: Dict[str, Dict[str, Any]] = {}
    for msg in involved:
        partner = msg["receiver_id"] if msg["sender_id"] == user.id else msg["sender_id"]
        latest.setdefault(partner, msg)
    partners = {
        str(u["_id"]): u
        for u in db["user"].find({"_id": {"$in": [oid(p) for p in latest]}})
    }
    out = []
    for partner_id, msg in latest.items():
        doc = partners.get(partner_id)
        out.append({
            "user_id": partner_id,
            "user": public_user(User.model_validate(stringify_id(doc))) if doc else None,
            "last_message": msg,
            "unread_count": db["message"].count_documents(
                {"sender_id": partner_id, "receiver_id": user.id, "is_read": False}),
        })
    return out


@app.get("/messages/conversation/{user_id}")
def conversation(user_id: str, user: User = Depends(current_user), db: Database = Depends(get_db)):
    return get_documents(db, "message", {"$or": [
        {"sender_id": user.id, "receiver_id": user_id},
        {"sender_id": user_id, "receiver_id": user.id},
    ]}, newest_first=False)


@app.post("/messages/send", status_code=201)
def send_message(body: MessageBody, user: User = Depends(current_user), db: Database = Depends(get_db),
                 mailer: Mailer = Depends(get_mailer)):
    receiver = db["user"].find_one({"_id": oid(body.receiver_id)})
    if receiver is None:
        raise NotFoundError("User", body.receiver_id)
    message = Message(sender_id=user.id, receiver_id=body.receiver_id, message=body.message)
    message_id = create_document(db, "message", message)
    try:
        mailer.send(receiver["email"], f"New message from {user.name}",
                    f"{user.name} ({user.email}) wrote:\n\n{body.message}\n\nLog in to your dashboard to reply.")
    except Exception:
        logger.exception("Failed to email message notification to %s", receiver["email"])
    return message.model_copy(update={"id": message_id})


@app.patch("/messages/read/{user_id}")
def mark_messages_read(user_id: str, user: User = Depends(current_user), db: Database = Depends(get_db)):
    res = db["message"].update_many(
        {"sender_id": user_id, "receiver_id": user.id, "is_read": False},
        {"$set": {"is_read": True, "updated_at": now_utc()}},
    )
    return {"message": "Messages marked as read", "updated": res.modified_count}


@app.get("/messages/users")
def chat_users(staff: User = Depends(require_staff), db: Database = Depends(get_db)):
    docs = get_documents(db, "user", {"role": "customer"})
    return [public_user(User.model_validate(d)) for d in docs]

# ---------------------- Notifications ----------------------


@app.get("/notifications")
def list_notifications(limit: int = Query(10, ge=1, le=100), unread_only: bool = False,
                       user: User = Depends(current_user), db: Database = Depends(get_db)):
    repo = NotificationRepository(db)
    return {
        "data": repo.list_for_user(user.id, limit=limit, unread_only=unread_only),
        "unread_count": repo.unread_count(user.id),
    }


@app.post("/notifications", status_code=201)
def create_notification(body: NotificationBody, admin: User = Depends(require_admin),
                        db: Database = Depends(get_db)):
    return NotificationRepository(db).add(Notification(**body.model_dump()))


@app.patch("/notifications/read-all")
def mark_all_notifications_read(user: User = Depends(current_user), db: Database = Depends(get_db)):
    updated = NotificationRepository(db).mark_all_read(user.id)
    return {"message": "All notifications marked as read", "updated": updated}


@app.patch("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, user: User = Depends(current_user),
                           db: Database = Depends(get_db)):
    notification = NotificationRepository(db).mark_read(notification_id, user.id)
    if notification is None:
        raise NotFoundError("Notification", notification_id)
    return notification


@app.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, user: User = Depends(current_user),
                        db: Database = Depends(get_db)):
    if not NotificationRepository(db).delete(notification_id, user.id):
        raise NotFoundError("Notification", notification_id)
    return {"message": "Notification deleted"}

# ---------------------- Seed Demo Data ----------------------


@app.post("/admin/seed")
def seed(body: Optional[SeedBody] = None, x_admin_key: Optional[str] = Header(None),
         db: Database = Depends(get_db)):
    if x_admin_key != settings.ADMIN_KEY:
        raise AuthenticationError()
    database.ensure_indexes(db)
    products = ProductRepository(db)
    if db["product"].count_documents({}) == 0:
        for i in range(1, 13):
            products.create(Product(
                name=f"Premium Gadget {i}",
                description="A modern, minimalist gadget with premium build.",
                price=49.99 + i * 5,
                category="electronics" if i <= 8 else "home",
                stock=50,
                image=f"https://picsum.photos/seed/gadget{i}/600/400",
            ))
    if db["coupon"].count_documents({}) == 0:
        CouponService(db).create(Coupon(code="WELCOME10", description="10% off your first order",
                                        discount_type="percentage", discount_value=10, max_discount=25))
    promoted = None
    if body and body.admin_email:
        res = db["user"].update_one({"email": body.admin_email.strip().lower()},
                                    {"$set": {"role": "admin", "updated_at": now_utc()}})
        promoted = body.admin_email if res.matched_count else None
    return {"ok": True, "promoted_admin": promoted}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
