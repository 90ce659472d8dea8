"""
API surface tests: authentication, role gates, locations and health.

Verifies:
- Every staff route refuses anonymous callers with 401
- Operators get 403 from admin-only routes
- Login, logout and /me behave as a session lifecycle
- Location administration and payment-method configuration
"""

import pytest

from gemach.models import AuditLog, SessionToken
from gemach.services import location_service, session_service, transaction_service

PASSWORD = "Password123"


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def get_auth_token(client, username, password):
    return client.post("/api/auth/login", json={"username": username, "password": password}).json.get("token")


class TestUnauthenticatedAccess:

    @pytest.mark.parametrize("method,path", [
        ("get", "/api/transactions"),
        ("get", "/api/transactions/1"),
        ("patch", "/api/transactions/1/return"),
        ("post", "/api/deposits/1/confirm"),
        ("post", "/api/deposits/bulk-confirm"),
        ("get", "/api/deposits/pending"),
        ("get", "/api/deposits/location/1"),
        ("get", "/api/deposits/transaction/1"),
        ("post", "/api/deposits/setup-request"),
        ("post", "/api/deposits/1/approve"),
        ("post", "/api/deposits/1/charge"),
        ("post", "/api/deposits/1/decline"),
        ("post", "/api/locations/1/inventory"),
        ("put", "/api/locations/1/inventory"),
        ("delete", "/api/locations/1/inventory/blue"),
        ("post", "/api/locations"),
        ("patch", "/api/locations/1"),
        ("delete", "/api/locations/1"),
        ("put", "/api/locations/1/pin"),
        ("get", "/api/locations/payment-methods"),
        ("put", "/api/locations/payment-methods/cash"),
        ("get", "/api/reports/deposits"),
        ("get", "/api/reports/reconciliation"),
        ("get", "/api/audit-trail"),
        ("get", "/api/auth/me"),
        ("post", "/api/auth/users"),
    ])
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method)(path, json={})
        assert resp.status_code == 401

    def test_invalid_token_on_borrower_route(self, client, db_session, location):
        resp = client.post(
            "/api/deposits/initiate",
            json={"locationId": location.id, "borrowerName": "Rivka", "method": "cash"},
            headers=auth_headers("not-a-token"),
        )
        assert resp.status_code == 401


class TestAdminOnly:

    @pytest.mark.parametrize("method,path", [
        ("post", "/api/locations"),
        ("delete", "/api/locations/1"),
        ("put", "/api/locations/payment-methods/cash"),
        ("get", "/api/audit-trail"),
        ("post", "/api/auth/users"),
    ])
    def test_operator_forbidden(self, client, operator_headers, method, path):
        resp = getattr(client, method)(path, json={}, headers=operator_headers)
        assert resp.status_code == 403


class TestAuth:

    def test_login_and_me(self, client, operator_user):
        resp = client.post("/api/auth/login", json={"username": "operator", "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json["user"]["role"] == "operator"
        assert resp.json["expires_at"].endswith("Z")

        me = client.get("/api/auth/me", headers=auth_headers(resp.json["token"]))
        assert me.status_code == 200
        assert me.json["user"]["username"] == "operator"

    def test_login_by_email(self, client, operator_user):
        resp = client.post("/api/auth/login", json={"email": "operator@gemach.test", "password": PASSWORD})
        assert resp.status_code == 200

    def test_wrong_password(self, client, operator_user):
        resp = client.post("/api/auth/login", json={"username": "operator", "password": "Wrong12345"})
        assert resp.status_code == 401
        assert resp.json["error"] == "Invalid credentials"

    def test_missing_fields(self, client, db_session):
        assert client.post("/api/auth/login", json={"username": "operator"}).status_code == 400

    def test_logout_revokes_token(self, client, operator_user):
        token = get_auth_token(client, "operator", PASSWORD)
        assert client.post("/api/auth/logout", headers=auth_headers(token)).status_code == 200
        assert client.get("/api/auth/me", headers=auth_headers(token)).status_code == 401
        assert client.post("/api/auth/logout", headers=auth_headers(token)).status_code == 401

    def test_deactivated_user_loses_session(self, client, db_session, operator_user):
        token = get_auth_token(client, "operator", PASSWORD)
        operator_user.is_active = False
        db_session.commit()
        assert client.get("/api/auth/me", headers=auth_headers(token)).status_code == 401
        session = db_session.query(SessionToken).one()
        assert session.is_revoked is True
        assert session.revoked_reason == "User account deactivated"

    def test_admin_creates_operator(self, client, location, admin_headers):
        resp = client.post("/api/auth/users", json={
            "username": "new_op",
            "email": "new_op@gemach.test",
            "password": "Str0ngPassword",
            "locationId": location.id,
        }, headers=admin_headers)
        assert resp.status_code == 201
        assert resp.json["user"]["location_id"] == location.id

    @pytest.mark.parametrize("body,code", [
        ({"username": "weak", "password": "short1"}, "WEAK_PASSWORD"),
        ({"username": "nolocation", "password": "Str0ngPassword"}, "INVALID_ARGUMENT"),
        ({"username": "admin", "password": "Str0ngPassword", "role": "admin"}, "INVALID_ARGUMENT"),
        ({"username": "x", "password": "Str0ngPassword", "role": "borrower"}, "INVALID_ARGUMENT"),
    ])
    def test_create_user_rejected(self, client, location, admin_headers, body, code):
        if body["username"] == "weak":
            body = {**body, "locationId": location.id}
        resp = client.post("/api/auth/users", json=body, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json["code"] == code


class TestHealth:

    def test_degraded_without_provider_keys(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json["status"] == "degraded"
        assert resp.json["checks"]["database"]["status"] == "healthy"
        assert resp.json["checks"]["providers"]["details"]["cash"] is True


class TestLocations:

    def test_public_listing_hides_inactive(self, client, location, other_location):
        other_location.is_active = False
        resp = client.get("/api/locations")
        assert [loc["location_code"] for loc in resp.json["locations"]] == ["LKW"]
        resp = client.get("/api/locations?includeInactive=true")
        assert len(resp.json["locations"]) == 2

    def test_pin_hash_never_exposed(self, client, location):
        resp = client.get(f"/api/locations/{location.id}")
        assert resp.json["location"]["has_operator_pin"] is True
        assert "operator_pin_hash" not in resp.json["location"]

    def test_admin_creates_location(self, client, db_session, admin_headers):
        resp = client.post("/api/locations", json={
            "name": "Passaic Gemach",
            "locationCode": "psc",
            "depositAmount": 25,
            "paymentMethods": ["cash", "stripe"],
        }, headers=admin_headers)
        assert resp.status_code == 201
        assert resp.json["location"]["location_code"] == "PSC"
        assert db_session.query(AuditLog).filter_by(action="location_created").count() == 1

        dup = client.post("/api/locations", json={"name": "Other", "locationCode": "PSC"}, headers=admin_headers)
        assert dup.status_code == 400

    def test_unknown_method_rejected(self, client, db_session, admin_headers):
        resp = client.post("/api/locations", json={
            "name": "Passaic Gemach", "locationCode": "PSC", "paymentMethods": ["bitcoin"],
        }, headers=admin_headers)
        assert resp.status_code == 400

    def test_operator_updates_contact_only(self, client, location, operator_headers):
        resp = client.patch(f"/api/locations/{location.id}", json={"contactPerson": "Sara"}, headers=operator_headers)
        assert resp.status_code == 200
        assert resp.json["location"]["contact_person"] == "Sara"

        resp = client.patch(f"/api/locations/{location.id}", json={"depositAmount": 50}, headers=operator_headers)
        assert resp.status_code == 403
        assert location.deposit_amount == 20

    def test_operator_cannot_update_other_location(self, client, other_location, operator_headers):
        resp = client.patch(f"/api/locations/{other_location.id}", json={"phone": "555"}, headers=operator_headers)
        assert resp.status_code == 403

    def test_delete_in_use_location(self, client, location, other_location, admin_headers):
        transaction_service.create_transaction(location.id, "Rivka")
        assert client.delete(f"/api/locations/{location.id}", headers=admin_headers).status_code == 409
        assert client.delete(f"/api/locations/{other_location.id}", headers=admin_headers).status_code == 200

    def test_change_pin(self, client, location, operator_headers):
        resp = client.put(f"/api/locations/{location.id}/pin", json={"pin": "98"}, headers=operator_headers)
        assert resp.status_code == 400
        resp = client.put(f"/api/locations/{location.id}/pin", json={"pin": "9876"}, headers=operator_headers)
        assert resp.status_code == 200
        assert location_service.verify_operator_pin(location.id, "9876") is True
        assert location_service.verify_operator_pin(location.id, "4321") is False

    def test_inactive_location_pin_never_verifies(self, db_session, location):
        location.is_active = False
        db_session.commit()
        assert location_service.verify_operator_pin(location.id, "4321") is False


class TestPaymentMethodConfig:

    def test_admin_configures_global_method(self, client, admin_headers):
        resp = client.put("/api/locations/payment-methods/stripe", json={
            "displayName": "Credit card",
            "processingFeeBps": 290,
            "fixedFeeCents": 30,
        }, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["payment_method"]["fixed_fee_cents"] == 30

        listed = client.get("/api/locations/payment-methods", headers=admin_headers)
        assert [m["name"] for m in listed.json["payment_methods"]] == ["stripe"]

    def test_operator_toggles_available_method(self, client, location, admin_actor, operator_headers):
        location_service.upsert_payment_method("paypal", actor=admin_actor, is_available_to_locations=True)
        resp = client.put(
            f"/api/locations/{location.id}/payment-methods/paypal",
            json={"enabled": True, "customProcessingFeeBps": 250},
            headers=operator_headers,
        )
        assert resp.status_code == 200
        assert resp.json["payment_method"]["custom_processing_fee_bps"] == 250

    def test_operator_blocked_from_unavailable_method(self, client, location, admin_actor, operator_headers):
        location_service.upsert_payment_method("paypal", actor=admin_actor)
        resp = client.put(
            f"/api/locations/{location.id}/payment-methods/paypal",
            json={"enabled": True},
            headers=operator_headers,
        )
        assert resp.status_code == 409

    def test_unknown_global_method(self, client, admin_headers):
        resp = client.put("/api/locations/payment-methods/bitcoin", json={}, headers=admin_headers)
        assert resp.status_code == 400


class TestSessions:

    def test_idle_session_is_revoked(self, db_session, operator_user):
        session, token = session_service.create_session(operator_user.id)
        session.last_used_at = session.last_used_at - session_service.SESSION_IDLE_TIMEOUT * 2
        db_session.commit()
        assert session_service.validate_session(token) is None
        assert session.revoked_reason == "Idle timeout"

    def test_token_is_stored_hashed(self, db_session, operator_user):
        session, token = session_service.create_session(operator_user.id)
        assert session.token_hash != token
        assert session.token_hash == session_service.hash_token(token)
