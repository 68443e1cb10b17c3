"""
API tests

Tests cover:
- Response envelope for success, app errors and validation errors
- Auth on order, booking and admin routes
- Order creation per kind
- Slot locking over HTTP (201 then 409)
- Webhook signature, inline processing and duplicate acknowledgement
- Health probes
"""

import json

import pytest

from gully.config import settings
from gully.models import OrderHistory, OrderStatus, PaymentWebhookEvent
from gully.utils.security import compute_hmac_sha256

from conftest import auth_headers

WEBHOOK_SECRET = "whsec_api_test"


@pytest.fixture
def player(factory):
    return factory.user(email="player@example.com")


@pytest.fixture
def headers(player):
    return auth_headers(player.id)


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "razorpay_webhook_secret", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


def captured_webhook(order_id, amount=50000, payment_id="pay_api_1"):
    body = json.dumps({
        "entity": "event",
        "event": "payment.captured",
        "payload": {"payment": {"entity": {
            "id": payment_id, "order_id": order_id, "status": "captured", "amount": amount, "method": "card",
        }}},
    }).encode()
    return body, {"X-Razorpay-Signature": compute_hmac_sha256(body, WEBHOOK_SECRET)}


class TestEnvelope:
    def test_root_and_liveness(self, client):
        assert client.get("/").json()["status"] == "running"

        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readiness_reports_database(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["checks"]["database"]["status"] == "up"
        assert body["checks"]["worker"]["enabled"] is False

    def test_request_id_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_missing_token_is_401(self, client):
        response = client.post("/api/orders/tournament", json={"tournament_id": "t1", "amount": 100})

        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Authentication token missing"}

    def test_bad_token_is_401(self, client):
        response = client.get("/api/orders/history", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_validation_error_is_400_with_errors(self, client, headers):
        response = client.post("/api/orders/tournament", json={"tournament_id": "t1", "amount": -5}, headers=headers)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert any(error.startswith("amount") for error in body["errors"])

    def test_app_error_envelope(self, client, headers):
        response = client.post("/api/orders/tournament", json={"tournament_id": "nope", "amount": 100}, headers=headers)

        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Tournament not found"}


class TestOrderRoutes:
    def test_every_kind_has_a_route(self, client):
        paths = {route.path for route in client.app.routes}

        for kind in ("tournament", "banner", "sponsor", "shop", "venue", "individual", "booking"):
            assert f"/api/orders/{kind}" in paths

    def test_create_tournament_order(self, client, headers, factory, gateway, db):
        tournament = factory.tournament()

        response = client.post(
            "/api/orders/tournament",
            json={"tournament_id": tournament.id, "amount": "500.00", "payment_mode": "upi"},
            headers=headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Tournament order created successfully"
        assert body["data"]["order"]["id"] == gateway.orders[0]["id"]
        assert body["data"]["order"]["amount"] == 50000

        db.expire_all()
        history = db.query(OrderHistory).one()
        assert history.status == OrderStatus.PENDING.value

    def test_package_required_for_subscription(self, client, headers, factory):
        shop = factory.shop()

        response = client.post("/api/orders/shop", json={"shop_id": shop.id, "amount": 999}, headers=headers)

        assert response.status_code == 400

    def test_gateway_not_configured_is_502(self, client, headers, factory, monkeypatch):
        from gully.services.razorpay_client import get_razorpay_client

        client.app.dependency_overrides.pop(get_razorpay_client)
        monkeypatch.setattr(settings, "razorpay_key_id", "")
        tournament = factory.tournament()

        response = client.post(
            "/api/orders/tournament", json={"tournament_id": tournament.id, "amount": 100}, headers=headers
        )

        assert response.status_code == 502
        assert response.json()["success"] is False

    def test_history_lists_own_orders(self, client, headers, factory):
        tournament = factory.tournament()
        for _ in range(2):
            client.post("/api/orders/tournament", json={"tournament_id": tournament.id, "amount": 100}, headers=headers)

        response = client.get("/api/orders/history?page_size=1", headers=headers)

        data = response.json()["data"]
        assert data["total"] == 2
        assert data["total_pages"] == 2
        assert len(data["items"]) == 1

    def test_purge_requires_admin(self, client, headers):
        response = client.delete("/api/orders/history/some-id", headers=headers)

        assert response.status_code == 403

    def test_admin_purges_user_history(self, client, headers, player, factory):
        admin = factory.user(email="admin@example.com", role="admin")
        tournament = factory.tournament()
        client.post("/api/orders/tournament", json={"tournament_id": tournament.id, "amount": 100}, headers=headers)

        response = client.delete(f"/api/orders/history/user/{player.id}", headers=auth_headers(admin.id, role="admin"))

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": 1}


class TestBookingRoutes:
    def _lock_body(self, venue_id, play_date, session_id="sess-1"):
        return {
            "venue_id": venue_id,
            "sport": "cricket",
            "session_id": session_id,
            "dates": [{"date": play_date.isoformat(), "time_slots": [{"start_time": "9:00", "end_time": "10:00"}]}],
        }

    def test_lock_then_conflict(self, client, headers, factory, play_date):
        venue = factory.venue()
        other = factory.user(email="other@example.com")

        first = client.post("/api/bookings/lock", json=self._lock_body(venue.id, play_date), headers=headers)
        second = client.post(
            "/api/bookings/lock", json=self._lock_body(venue.id, play_date, "sess-2"), headers=auth_headers(other.id)
        )

        assert first.status_code == 201
        booking = first.json()["data"]
        assert booking["is_locked"] is True
        assert booking["scheduled_dates"][0]["time_slots"][0]["start_time"] == "09:00"

        assert second.status_code == 409
        assert second.json()["details"]["conflicts"][0]["booking_id"] == booking["id"]

    def test_invalid_time_range_rejected(self, client, headers, factory, play_date):
        venue = factory.venue()
        body = self._lock_body(venue.id, play_date)
        body["dates"][0]["time_slots"][0] = {"start_time": "11:00", "end_time": "10:00"}

        response = client.post("/api/bookings/lock", json=body, headers=headers)

        assert response.status_code == 400

    def test_availability_and_release(self, client, headers, factory, play_date):
        venue = factory.venue()
        booking_id = client.post(
            "/api/bookings/lock", json=self._lock_body(venue.id, play_date), headers=headers
        ).json()["data"]["id"]

        params = {"venue_id": venue.id, "sport": "cricket", "date": play_date.isoformat()}
        booked = client.get("/api/bookings/availability", params=params, headers=headers).json()["data"]
        assert [slot["booking_id"] for slot in booked] == [booking_id]

        released = client.post(f"/api/bookings/{booking_id}/release", headers=headers)
        assert released.json()["data"]["booking_status"] == "cancelled"
        assert client.get("/api/bookings/availability", params=params, headers=headers).json()["data"] == []

    def test_other_users_booking_forbidden(self, client, headers, factory, play_date):
        venue = factory.venue()
        other = factory.user(email="other@example.com")
        booking_id = client.post(
            "/api/bookings/lock", json=self._lock_body(venue.id, play_date), headers=headers
        ).json()["data"]["id"]

        response = client.get(f"/api/bookings/{booking_id}", headers=auth_headers(other.id))

        assert response.status_code == 403


class TestWebhookRoute:
    def test_invalid_signature_is_401(self, client, webhook_secret, db):
        body, _ = captured_webhook("order_X")

        response = client.post(
            "/api/payments/webhook", content=body, headers={"X-Razorpay-Signature": "bad"}
        )

        assert response.status_code == 401
        assert db.query(PaymentWebhookEvent).count() == 0

    def test_invalid_payload_is_400(self, client, webhook_secret):
        body = b"{not json"
        response = client.post(
            "/api/payments/webhook",
            content=body,
            headers={"X-Razorpay-Signature": compute_hmac_sha256(body, WEBHOOK_SECRET)},
        )

        assert response.status_code == 400

    def test_unrecognised_event_is_acknowledged(self, client, webhook_secret, db):
        body = json.dumps({"entity": "event", "event": "account.updated", "payload": {}}).encode()

        response = client.post(
            "/api/payments/webhook",
            content=body,
            headers={"X-Razorpay-Signature": compute_hmac_sha256(body, WEBHOOK_SECRET)},
        )

        assert response.status_code == 200
        assert response.json()["data"]["action"] == "ignored"
        assert db.query(PaymentWebhookEvent).count() == 0

    def test_captured_webhook_settles_order(self, client, webhook_secret, headers, factory, db):
        tournament = factory.tournament()
        order_id = client.post(
            "/api/orders/tournament", json={"tournament_id": tournament.id, "amount": 500}, headers=headers
        ).json()["data"]["order"]["id"]
        body, webhook_headers = captured_webhook(order_id)
        webhook_headers["X-Razorpay-Event-Id"] = "evt_api_1"

        first = client.post("/api/payments/webhook", content=body, headers=webhook_headers)
        second = client.post("/api/payments/webhook", content=body, headers=webhook_headers)

        assert first.status_code == 200
        assert first.json()["data"]["action"] == "applied"
        assert first.json()["data"]["duplicate"] is False
        assert second.status_code == 200
        assert second.json()["data"]["duplicate"] is True

        db.expire_all()
        assert db.query(OrderHistory).one().status == OrderStatus.SUCCESSFUL.value

    def test_early_webhook_acknowledged_and_queued(self, client, webhook_secret, db):
        body, webhook_headers = captured_webhook("order_NOT_YET")

        response = client.post("/api/payments/webhook", content=body, headers=webhook_headers)

        assert response.status_code == 200
        assert response.json()["data"]["action"] == "order_not_found"
        db.expire_all()
        assert db.query(PaymentWebhookEvent).one().status == "retrying"

    def test_webhook_events_admin_only(self, client, headers, factory):
        admin = factory.user(email="admin@example.com", role="admin")

        assert client.get("/api/payments/webhook-events", headers=headers).status_code == 403
        response = client.get("/api/payments/webhook-events", headers=auth_headers(admin.id, role="admin"))
        assert response.status_code == 200
        assert response.json()["data"] == []


class TestPayoutRoutes:
    def test_admin_creates_payout(self, client, factory, gateway):
        admin = factory.user(email="admin@example.com", role="admin")
        venue = factory.venue()
        body = {
            "idempotency_key": "settle-api-0001",
            "beneficiary_type": "venue",
            "beneficiary_id": venue.id,
            "amount": "250.00",
        }

        created = client.post("/api/payouts", json=body, headers=auth_headers(admin.id, role="admin"))
        repeated = client.post("/api/payouts", json=body, headers=auth_headers(admin.id, role="admin"))

        assert created.status_code == 201
        assert created.json()["data"]["status"] == "processing"
        assert repeated.status_code == 409
        assert len(gateway.payouts) == 1

    def test_player_cannot_create_payout(self, client, headers, factory):
        venue = factory.venue()

        response = client.post("/api/payouts", json={
            "idempotency_key": "settle-api-0002",
            "beneficiary_type": "venue",
            "beneficiary_id": venue.id,
            "amount": 10,
        }, headers=headers)

        assert response.status_code == 403

    def test_retry_of_processing_payout_is_400(self, client, factory):
        admin_headers = auth_headers(factory.user(email="admin@example.com", role="admin").id, role="admin")
        venue = factory.venue()
        payout_id = client.post("/api/payouts", json={
            "idempotency_key": "settle-api-0003",
            "beneficiary_type": "venue",
            "beneficiary_id": venue.id,
            "amount": 10,
        }, headers=admin_headers).json()["data"]["id"]

        response = client.post(f"/api/payouts/{payout_id}/retry", headers=admin_headers)

        assert response.status_code == 400
        assert client.get(f"/api/payouts/{payout_id}", headers=admin_headers).json()["data"]["id"] == payout_id
