"""Tests for the HTTP API."""

import mongomock
import pytest
from fastapi.testclient import TestClient

import settings
from conftest import auth


@pytest.fixture
def lamp(make_product):
    return make_product("Lamp", price=12.5, stock=4, category="home")


def place_order(api_client, user, product, quantity=2, **extra):
    body = {
        "items": [{"product_id": product.id, "quantity": quantity}],
        "shipping_address": {"street": "1 Main St", "city": "Nairobi", "country": "Kenya"},
        "payment_method": "mpesa",
        **extra,
    }
    return api_client.post("/orders/create", json=body, headers=auth(user))


class TestHealth:
    def test_root(self, api_client):
        assert api_client.get("/").json() == {"message": "Storefront API running"}

    def test_unknown_route_uses_error_shape(self, api_client):
        res = api_client.get("/nowhere")
        assert res.status_code == 404
        assert res.json()["error_type"] == "HTTPException"


class TestAuth:
    def test_register_login_me(self, api_client):
        res = api_client.post("/auth/register",
                              json={"name": "Dana", "email": "Dana@Example.com", "password": "secret1"})
        assert res.status_code == 201
        assert res.json()["user"]["email"] == "dana@example.com"

        res = api_client.post("/auth/login", json={"email": "dana@example.com", "password": "secret1"})
        assert res.status_code == 200
        token = res.json()["token"]

        me = api_client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json()["name"] == "Dana"
        assert me.json()["role"] == "customer"

    def test_duplicate_registration(self, api_client):
        body = {"name": "Dana", "email": "dana@example.com", "password": "secret1"}
        api_client.post("/auth/register", json=body)
        res = api_client.post("/auth/register", json=body)
        assert res.status_code == 409

    def test_bad_password(self, api_client):
        api_client.post("/auth/register", json={"name": "Dana", "email": "dana@example.com", "password": "secret1"})
        res = api_client.post("/auth/login", json={"email": "dana@example.com", "password": "wrong!"})
        assert res.status_code == 401
        assert res.json() == {"message": "Invalid credentials", "error_type": "AuthenticationError"}

    def test_missing_token(self, api_client):
        res = api_client.get("/auth/me")
        assert res.status_code == 401

    def test_short_password_is_400(self, api_client):
        res = api_client.post("/auth/register", json={"name": "Dana", "email": "d@e.com", "password": "x"})
        assert res.status_code == 400
        assert res.json()["error_type"] == "ValidationError"


class TestProducts:
    def test_list_with_ratings(self, api_client, lamp, make_product, customer):
        make_product("Desk", price=80, stock=0, category="office")
        api_client.post(f"/ratings/{lamp.id}", json={"rating": 4}, headers=auth(customer))

        res = api_client.get("/products", params={"in_stock": True})
        assert [p["name"] for p in res.json()] == ["Lamp"]
        assert res.json()[0]["average_rating"] == 4.0
        assert res.json()[0]["total_ratings"] == 1

        res = api_client.get("/products", params={"sort_by": "price_desc"})
        assert [p["name"] for p in res.json()] == ["Desk", "Lamp"]

    def test_get_one(self, api_client, lamp):
        res = api_client.get(f"/products/{lamp.id}")
        assert res.json()["_id"] == lamp.id
        assert api_client.get("/products/64b7f0c2a1b2c3d4e5f60718").status_code == 404
        assert api_client.get("/products/not-an-id").status_code == 400

    def test_admin_crud(self, api_client, admin):
        res = api_client.post("/products", json={"name": "Mug", "price": 5, "category": "home", "stock": 3},
                              headers=auth(admin))
        assert res.status_code == 201
        pid = res.json()["product"]["_id"]

        res = api_client.put(f"/products/{pid}", json={"stock": 9}, headers=auth(admin))
        assert res.json()["product"]["stock"] == 9

        assert api_client.delete(f"/products/{pid}", headers=auth(admin)).status_code == 200
        assert api_client.delete(f"/products/{pid}", headers=auth(admin)).status_code == 404

    def test_customer_cannot_create(self, api_client, customer):
        res = api_client.post("/products", json={"name": "Mug", "price": 5, "category": "home"},
                              headers=auth(customer))
        assert res.status_code == 403

    def test_dashboard_stats(self, api_client, lamp, admin):
        stats = api_client.get("/products/stats/dashboard", headers=auth(admin)).json()
        assert stats["total_products"] == 1
        assert stats["total_value"] == 50.0
        assert stats["category_breakdown"]["home"]["count"] == 1

    def test_dashboard_is_admin_only(self, api_client, make_user):
        res = api_client.get("/products/stats/dashboard", headers=auth(make_user("Mod", role="moderator")))
        assert res.status_code == 403


class TestOrders:
    def test_create(self, api_client, customer, lamp, db):
        res = place_order(api_client, customer, lamp)

        assert res.status_code == 201
        data = res.json()
        assert data["order_number"].startswith("ORD-")
        assert data["order"]["total"] == 25.0
        assert data["order"]["shipping_address"] == "1 Main St, Nairobi, Kenya"
        assert db["product"].find_one({"name": "Lamp"})["stock"] == 2

    def test_insufficient_stock(self, api_client, customer, lamp):
        res = place_order(api_client, customer, lamp, quantity=5)
        assert res.status_code == 400
        assert res.json()["message"] == 'Insufficient stock for "Lamp". Only 4 units available.'

    def test_empty_items(self, api_client, customer):
        res = api_client.post("/orders/create", json={"items": [], "shipping_address": "x", "payment_method": "card"},
                              headers=auth(customer))
        assert res.status_code == 400

    def test_with_coupon(self, api_client, customer, lamp, make_coupon):
        make_coupon("FIVE", discount_type="fixed", discount_value=5)
        res = place_order(api_client, customer, lamp, coupon_code="five")
        assert res.json()["order"]["total"] == 20.0
        assert res.json()["order"]["coupon_code"] == "FIVE"

    def test_listing(self, api_client, customer, admin, lamp):
        place_order(api_client, customer, lamp, quantity=1)
        assert len(api_client.get("/orders/my-orders", headers=auth(customer)).json()) == 1
        assert len(api_client.get("/orders", headers=auth(admin)).json()) == 1
        assert api_client.get("/orders", headers=auth(customer)).status_code == 403

    def test_status_update_and_tracking(self, api_client, customer, admin, lamp):
        order = place_order(api_client, customer, lamp).json()["order"]

        res = api_client.patch(f"/orders/{order['_id']}/status", json={"status": "shipped"}, headers=auth(admin))
        assert res.status_code == 200
        assert res.json()["order"]["tracking_number"].startswith("TRK-")

        tracking = api_client.get(f"/orders/{order['_id']}/tracking", headers=auth(customer)).json()
        assert tracking["order"]["status"] == "shipped"
        assert [s["active"] for s in tracking["timeline"]] == [False, False, False, True, False]

        res = api_client.patch(f"/orders/{order['_id']}/status", json={"status": "pending"}, headers=auth(admin))
        assert res.status_code == 409

    def test_bad_status(self, api_client, customer, admin, lamp):
        order = place_order(api_client, customer, lamp).json()["order"]
        res = api_client.patch(f"/orders/{order['_id']}/status", json={"status": "bogus"}, headers=auth(admin))
        assert res.status_code == 400
        assert res.json()["error_type"] == "InvalidStatusError"

    def test_tracking_other_customer(self, api_client, customer, make_user, lamp):
        order = place_order(api_client, customer, lamp).json()["order"]
        res = api_client.get(f"/orders/{order['_id']}/tracking", headers=auth(make_user("Mallory")))
        assert res.status_code == 403

    def test_invoice(self, api_client, customer, lamp):
        number = place_order(api_client, customer, lamp).json()["order_number"]
        res = api_client.get(f"/orders/{number}/invoice", headers=auth(customer))
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/plain")
        assert f"invoice-{number}.txt" in res.headers["content-disposition"]
        assert "Lamp x 2 - $25.00" in res.text


class TestPayments:
    def test_stk_push_then_callback_fires(self, api_client, customer, lamp, scheduler):
        number = place_order(api_client, customer, lamp).json()["order_number"]
        res = api_client.post("/mpesa/stkpush", json={"phone_number": "0712345678", "amount": 25.0,
                                                      "order_number": number}, headers=auth(customer))
        assert res.status_code == 200
        cid = res.json()["checkout_request_id"]

        query = api_client.post("/mpesa/query", json={"checkout_request_id": cid}, headers=auth(customer))
        assert query.json()["result_code"] == "1037"

        scheduler.run_all()

        query = api_client.post("/mpesa/query", json={"checkout_request_id": cid}, headers=auth(customer))
        assert query.json()["result_code"] == "0"
        orders = api_client.get("/orders/my-orders", headers=auth(customer)).json()
        assert orders[0]["status"] == "confirmed"
        assert orders[0]["payment_status"] == "completed"

    def test_gateway_callback(self, api_client, customer, lamp, scheduler):
        number = place_order(api_client, customer, lamp).json()["order_number"]
        cid = api_client.post("/mpesa/stkpush", json={"phone_number": "0712345678", "amount": 25.0,
                                                      "order_number": number},
                              headers=auth(customer)).json()["checkout_request_id"]
        body = {"Body": {"stkCallback": {
            "CheckoutRequestID": cid,
            "ResultCode": 0,
            "ResultDesc": "ok",
            "CallbackMetadata": {"Item": [{"Name": "MpesaReceiptNumber", "Value": "R1"}]},
        }}}

        for _ in range(2):
            res = api_client.post("/mpesa/callback", json=body)
            assert res.json() == {"ResultCode": 0, "ResultDesc": "Success"}

        order = api_client.get("/orders/my-orders", headers=auth(customer)).json()[0]
        assert order["payment_receipt"] == "R1"
        assert order["status"] == "confirmed"

    def test_callback_for_unknown_order_is_acknowledged(self, api_client):
        body = {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_missing", "ResultCode": 1}}}
        assert api_client.post("/mpesa/callback", json=body).json()["ResultCode"] == 0

    def test_malformed_callback(self, api_client):
        res = api_client.post("/mpesa/callback", json={"nothing": True})
        assert res.status_code == 400
        assert res.json()["message"] == "Invalid callback data"

    def test_amount_mismatch(self, api_client, customer, lamp):
        number = place_order(api_client, customer, lamp).json()["order_number"]
        res = api_client.post("/mpesa/stkpush", json={"phone_number": "0712345678", "amount": 1.0,
                                                      "order_number": number}, headers=auth(customer))
        assert res.status_code == 400

    def test_card_intent(self, api_client, customer, lamp):
        number = place_order(api_client, customer, lamp).json()["order_number"]
        res = api_client.post("/payments/create-intent", json={"order_number": number, "amount": 25.0},
                              headers=auth(customer))
        assert res.json()["amount"] == 2500
        assert res.json()["payment_intent_id"].startswith("pi_")


class TestCoupons:
    def test_validate(self, api_client, make_coupon):
        make_coupon("SAVE20", discount_value=20, max_discount=10)
        res = api_client.post("/coupons/validate", json={"code": "save20", "order_total": 100})
        assert res.json()["discount"] == 10
        assert res.json()["final_total"] == 90
        assert res.json()["valid"] is True

    def test_validate_unknown(self, api_client):
        res = api_client.post("/coupons/validate", json={"code": "NOPE", "order_total": 100})
        assert res.status_code == 404
        assert res.json()["message"] == "Invalid coupon code"

    def test_validate_minimum(self, api_client, make_coupon):
        make_coupon("BIG", min_purchase=50)
        res = api_client.post("/coupons/validate", json={"code": "BIG", "order_total": 20})
        assert res.status_code == 400

    def test_apply(self, api_client, customer, make_coupon):
        make_coupon("ONCE", usage_limit=1)
        res = api_client.post("/coupons/apply", json={"code": "ONCE"}, headers=auth(customer))
        assert res.json()["coupon"]["used_count"] == 1
        res = api_client.post("/coupons/apply", json={"code": "ONCE"}, headers=auth(customer))
        assert res.status_code == 400

    def test_admin_crud_and_active(self, api_client, admin):
        res = api_client.post("/coupons", json={"code": "spring", "discount_value": 10}, headers=auth(admin))
        assert res.status_code == 201
        coupon_id = res.json()["coupon"]["_id"]
        assert res.json()["coupon"]["code"] == "SPRING"

        dup = api_client.post("/coupons", json={"code": "SPRING", "discount_value": 5}, headers=auth(admin))
        assert dup.status_code == 409

        assert [c["code"] for c in api_client.get("/coupons/active").json()] == ["SPRING"]

        res = api_client.put(f"/coupons/{coupon_id}", json={"is_active": False}, headers=auth(admin))
        assert res.json()["coupon"]["is_active"] is False
        assert api_client.get("/coupons/active").json() == []

        assert len(api_client.get("/coupons", headers=auth(admin)).json()) == 1
        assert api_client.delete(f"/coupons/{coupon_id}", headers=auth(admin)).status_code == 200
        assert api_client.delete(f"/coupons/{coupon_id}", headers=auth(admin)).status_code == 404


    @pytest.mark.parametrize("body", [{"discount_value": None}, {"is_active": None}])
    def test_update_rejects_null(self, api_client, admin, make_coupon, body):
        coupon = make_coupon("SPRING", discount_value=10)
        res = api_client.put(f"/coupons/{coupon.id}", json=body, headers=auth(admin))
        assert res.status_code == 400
        assert res.json()["error_type"] == "ValidationError"

        res = api_client.post("/coupons/validate", json={"code": "SPRING", "order_total": 50})
        assert res.json()["discount"] == 5

    def test_usage_limit_below_uses(self, api_client, admin, make_coupon):
        coupon = make_coupon("BUSY", usage_limit=5, used_count=3)
        res = api_client.put(f"/coupons/{coupon.id}", json={"usage_limit": 1}, headers=auth(admin))
        assert res.status_code == 400
        listed = api_client.get("/coupons", headers=auth(admin)).json()
        assert (listed[0]["used_count"], listed[0]["usage_limit"]) == (3, 5)

    def test_duplicate_code_on_database_without_indexes(self, api_client):
        from main import app, get_db

        bare = mongomock.MongoClient()["no_indexes"]
        bare["user"].insert_one({"name": "Root", "email": "root@example.com", "role": "admin", "token": "t0k"})
        app.dependency_overrides[get_db] = lambda: bare
        headers = {"Authorization": "Bearer t0k"}

        first = api_client.post("/coupons", json={"code": "dup", "discount_value": 10}, headers=headers)
        second = api_client.post("/coupons", json={"code": "DUP", "discount_value": 5}, headers=headers)

        assert (first.status_code, second.status_code) == (201, 409)
        assert bare["coupon"].count_documents({"code": "DUP"}) == 1


def test_startup_creates_unique_indexes(monkeypatch):
    import database
    from main import app

    bare = mongomock.MongoClient()["fresh"]
    monkeypatch.setattr(database, "db", bare)
    with TestClient(app):
        pass

    assert bare["coupon"].index_information()["code_1"]["unique"] is True
    assert bare["user"].index_information()["email_1"]["unique"] is True
    assert bare["order"].index_information()["order_number_1"]["unique"] is True



class TestWishlistAndRatings:
    def test_wishlist(self, api_client, customer, lamp):
        res = api_client.post("/wishlist", json={"product_id": lamp.id}, headers=auth(customer))
        assert res.status_code == 201
        again = api_client.post("/wishlist", json={"product_id": lamp.id}, headers=auth(customer))
        assert again.status_code == 409

        items = api_client.get("/wishlist", headers=auth(customer)).json()
        assert items[0]["product"]["name"] == "Lamp"

        assert api_client.delete(f"/wishlist/{lamp.id}", headers=auth(customer)).status_code == 200
        assert api_client.delete(f"/wishlist/{lamp.id}", headers=auth(customer)).status_code == 404

    def test_wishlist_unknown_product(self, api_client, customer):
        res = api_client.post("/wishlist", json={"product_id": "64b7f0c2a1b2c3d4e5f60718"}, headers=auth(customer))
        assert res.status_code == 404

    def test_ratings(self, api_client, customer, make_user, lamp):
        api_client.post(f"/ratings/{lamp.id}", json={"rating": 5, "review": "Bright"}, headers=auth(customer))
        api_client.post(f"/ratings/{lamp.id}", json={"rating": 2}, headers=auth(make_user("Bob")))
        again = api_client.post(f"/ratings/{lamp.id}", json={"rating": 1}, headers=auth(customer))
        assert again.status_code == 409

        stats = api_client.get(f"/ratings/{lamp.id}/stats").json()
        assert stats == {"average_rating": 3.5, "total_ratings": 2}
        names = sorted(r["user_name"] for r in api_client.get(f"/ratings/{lamp.id}").json())
        assert names == ["Alice", "Bob"]

    def test_rating_out_of_range(self, api_client, customer, lamp):
        res = api_client.post(f"/ratings/{lamp.id}", json={"rating": 6}, headers=auth(customer))
        assert res.status_code == 400


class TestTestimonials:
    def test_moderation_flow(self, api_client, admin):
        body = {"name": "Eve", "email": "eve@example.com", "comment": "Great shop", "rating": 5}
        res = api_client.post("/testimonials", json=body)
        assert res.status_code == 201
        tid = res.json()["testimonial"]["_id"]

        assert api_client.get("/testimonials").json()["total"] == 0
        assert api_client.get("/testimonials/pending-count", headers=auth(admin)).json() == {"pending_count": 1}

        api_client.patch(f"/testimonials/{tid}/approve", headers=auth(admin))
        public = api_client.get("/testimonials").json()
        assert public["total"] == 1
        assert "email" not in public["testimonials"][0]

        res = api_client.patch(f"/testimonials/{tid}/visibility", headers=auth(admin))
        assert res.json()["testimonial"]["is_visible"] is False
        assert api_client.get("/testimonials").json()["total"] == 0

        assert api_client.get("/testimonials/all", headers=auth(admin)).json()["total"] == 1
        assert api_client.delete(f"/testimonials/{tid}", headers=auth(admin)).status_code == 200
        assert api_client.patch(f"/testimonials/{tid}/approve", headers=auth(admin)).status_code == 404


class TestMessages:
    def test_conversation(self, api_client, customer, admin, mailer):
        res = api_client.post("/messages/send", json={"receiver_id": admin.id, "message": "Where is my order?"},
                              headers=auth(customer))
        assert res.status_code == 201
        assert mailer.sent[-1][0] == admin.email

        api_client.post("/messages/send", json={"receiver_id": customer.id, "message": "On its way"},
                        headers=auth(admin))

        thread = api_client.get(f"/messages/conversation/{admin.id}", headers=auth(customer)).json()
        assert [m["message"] for m in thread] == ["Where is my order?", "On its way"]

        convs = api_client.get("/messages/conversations", headers=auth(admin)).json()
        assert convs[0]["user_id"] == customer.id
        assert convs[0]["unread_count"] == 1

        res = api_client.patch(f"/messages/read/{customer.id}", headers=auth(admin))
        assert res.json()["updated"] == 1

        users = api_client.get("/messages/users", headers=auth(admin)).json()
        assert [u["email"] for u in users] == [customer.email]

    def test_unknown_receiver(self, api_client, customer):
        res = api_client.post("/messages/send", json={"receiver_id": "64b7f0c2a1b2c3d4e5f60718", "message": "hi"},
                              headers=auth(customer))
        assert res.status_code == 404


class TestNotifications:
    def test_order_creates_notification(self, api_client, customer, lamp):
        place_order(api_client, customer, lamp)
        res = api_client.get("/notifications", headers=auth(customer)).json()
        assert res["unread_count"] == 1
        assert res["data"][0]["type"] == "order_placed"

        nid = res["data"][0]["_id"]
        assert api_client.patch(f"/notifications/{nid}/read", headers=auth(customer)).json()["is_read"] is True
        assert api_client.get("/notifications", headers=auth(customer)).json()["unread_count"] == 0
        assert api_client.delete(f"/notifications/{nid}", headers=auth(customer)).status_code == 200

    def test_admin_broadcast_and_read_all(self, api_client, customer, admin):
        for title in ("Sale", "New arrivals"):
            res = api_client.post("/notifications", json={"user_id": customer.id, "type": "promo",
                                                          "title": title, "message": "Check it out"},
                                  headers=auth(admin))
            assert res.status_code == 201

        res = api_client.patch("/notifications/read-all", headers=auth(customer))
        assert res.json()["updated"] == 2

    def test_cannot_touch_others(self, api_client, customer, admin, make_user):
        nid = api_client.post("/notifications", json={"user_id": customer.id, "type": "promo",
                                                      "title": "Sale", "message": "Check it out"},
                              headers=auth(admin)).json()["_id"]
        res = api_client.delete(f"/notifications/{nid}", headers=auth(make_user("Mallory")))
        assert res.status_code == 404


class TestSeed:
    def test_requires_key(self, api_client):
        assert api_client.post("/admin/seed").status_code == 401

    def test_seeds_once_and_promotes(self, api_client, customer, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_KEY", "k")
        res = api_client.post("/admin/seed", json={"admin_email": customer.email}, headers={"X-Admin-Key": "k"})
        assert res.json() == {"ok": True, "promoted_admin": customer.email}
        api_client.post("/admin/seed", headers={"X-Admin-Key": "k"})

        assert len(api_client.get("/products").json()) == 12
        assert [c["code"] for c in api_client.get("/coupons/active").json()] == ["WELCOME10"]
        assert api_client.get("/auth/me", headers=auth(customer)).json()["role"] == "admin"
