"""
Pay-later (saved card) tests.

Verifies:
- Setup creates a hold and a borrower status link
- A saved card resolves exactly once: charged or released
- Requires-action and declined charges are recoverable states, not errors
- Stale setups expire
"""

from datetime import timedelta

import pytest

from gemach.errors import ForbiddenError, InvalidStateError, ProviderError, UnsupportedMethodError
from gemach.models import AuditLog, Payment, Transaction
from gemach.services import deposit_service, inventory_service, pay_later_service
from gemach.time_utils import utcnow


def _setup(location, actor=None, color=None):
    return pay_later_service.create_setup_request(
        location.id,
        "Chana Weiss",
        email="chana@example.com",
        phone="555-0102",
        color=color,
        actor=actor,
    )


def _card_saved(db_session, location, actor=None):
    """Setup request whose card the borrower has completed."""
    result = _setup(location, actor)
    tx = db_session.get(Transaction, result.transaction_id)
    pay_later_service.handle_setup_intent_succeeded(tx.stripe_setup_intent_id, "pm_card_visa")
    return tx


class TestSetup:

    def test_setup_request(self, db_session, location, operator_actor, fake_providers):
        result = _setup(location, operator_actor)
        tx = db_session.get(Transaction, result.transaction_id)

        assert tx.pay_later_status == "CARD_SETUP_PENDING"
        assert tx.amount_planned_cents == 2000
        assert tx.stripe_customer_id == "cus_test_1"
        assert tx.stripe_setup_intent_id == "seti_test_2"
        hold = db_session.get(Payment, result.payment_id)
        assert hold.kind == "hold"
        assert hold.status == "pending"
        assert result.client_secret == "seti_secret"
        assert fake_providers.stripe.called("setup_card")[0][1] == "Chana Weiss"

    def test_status_token(self, db_session, location):
        result = _setup(location)
        tx = pay_later_service.get_transaction_by_token(result.transaction_id, result.status_token)
        assert tx is not None
        assert tx.status_token_hash != result.status_token
        assert pay_later_service.get_transaction_by_token(result.transaction_id, "wrong") is None
        later = utcnow() + timedelta(days=31)
        assert pay_later_service.get_transaction_by_token(result.transaction_id, result.status_token, now=later) is None

    def test_setup_takes_stock(self, db_session, stocked):
        _setup(stocked, color="red")
        assert inventory_service.get_quantity(stocked.id, "red") == 0

    def test_card_required_at_location(self, db_session, other_location, admin_actor):
        with pytest.raises(UnsupportedMethodError):
            _setup(other_location, admin_actor)
        assert db_session.query(Transaction).count() == 0

    def test_other_operator_cannot_create(self, db_session, location, other_actor):
        with pytest.raises(ForbiddenError):
            _setup(location, other_actor)

    def test_card_saved(self, db_session, location, fake_providers):
        tx = _card_saved(db_session, location)
        assert tx.pay_later_status == "CARD_SETUP_COMPLETE"
        assert tx.stripe_payment_method_id == "pm_card_visa"
        hold = db_session.query(Payment).filter_by(transaction_id=tx.id, kind="hold").one()
        assert hold.status == "completed"
        assert fake_providers.stripe.called("set_default_payment_method") == [
            ("set_default_payment_method", "cus_test_1", "pm_card_visa")
        ]

    def test_setup_event_replay_is_noop(self, db_session, location):
        tx = _card_saved(db_session, location)
        pay_later_service.handle_setup_intent_succeeded(tx.stripe_setup_intent_id, "pm_other")
        assert tx.stripe_payment_method_id == "pm_card_visa"
        assert db_session.query(AuditLog).filter_by(action="card_setup_complete").count() == 1

    def test_approve_once(self, db_session, location, operator_actor):
        tx = _card_saved(db_session, location)
        assert pay_later_service.approve(tx.id, operator_actor).pay_later_status == "APPROVED"
        with pytest.raises(InvalidStateError):
            pay_later_service.approve(tx.id, operator_actor)


class TestCharge:

    def test_charge_succeeds(self, db_session, location, operator_actor, fake_providers):
        tx = _card_saved(db_session, location)
        result = pay_later_service.charge_card(tx.id, operator_actor)

        assert result.success is True
        assert result.status == "CHARGED"
        assert tx.pay_later_status == "CHARGED"
        assert tx.charge_attempts == 1
        charge = db_session.get(Payment, result.payment_id)
        assert charge.kind == "charge"
        assert charge.status == "completed"
        assert charge.deposit_amount_cents == 2000
        assert fake_providers.stripe.called("charge_saved_card")[0][4] == f"{tx.id}_charge_1"

    def test_charged_is_terminal(self, db_session, location, operator_actor):
        tx = _card_saved(db_session, location)
        pay_later_service.charge_card(tx.id, operator_actor)
        with pytest.raises(InvalidStateError):
            pay_later_service.charge_card(tx.id, operator_actor)
        with pytest.raises(InvalidStateError):
            pay_later_service.decline_card(tx.id, "late", operator_actor)

    def test_requires_action_then_retry(self, db_session, location, operator_actor, fake_providers):
        tx = _card_saved(db_session, location)
        fake_providers.stripe.charge_status = "requires_action"

        result = pay_later_service.charge_card(tx.id, operator_actor)
        assert result.success is False
        assert result.requires_action is True
        assert result.client_secret == "pi_charge_secret"
        assert tx.pay_later_status == "CHARGE_REQUIRES_ACTION"

        fake_providers.stripe.charge_status = "succeeded"
        result = pay_later_service.charge_card(tx.id, operator_actor)
        assert result.success is True
        assert fake_providers.stripe.called("charge_saved_card")[1][4] == f"{tx.id}_charge_2"

    def test_declined_card(self, db_session, location, operator_actor, fake_providers):
        tx = _card_saved(db_session, location)
        fake_providers.stripe.decline_charges("card_declined")

        result = pay_later_service.charge_card(tx.id, operator_actor)

        assert result.success is False
        assert result.status == "CHARGE_FAILED"
        assert result.error_code == "card_declined"
        assert tx.pay_later_status == "CHARGE_FAILED"
        assert tx.charge_error_code == "card_declined"
        assert db_session.query(Payment).filter_by(transaction_id=tx.id, kind="charge").count() == 0
        with pytest.raises(InvalidStateError):
            pay_later_service.charge_card(tx.id, operator_actor)

    def test_processing_settles_by_event(self, db_session, location, operator_actor, fake_providers):
        tx = _card_saved(db_session, location)
        fake_providers.stripe.charge_status = "processing"
        result = pay_later_service.charge_card(tx.id, operator_actor)
        assert result.status == "CHARGE_ATTEMPTED"

        pay_later_service.handle_payment_intent_succeeded(result.payment_intent_id)
        assert tx.pay_later_status == "CHARGED"
        pay_later_service.handle_payment_intent_succeeded(result.payment_intent_id)
        assert db_session.query(Payment).filter_by(transaction_id=tx.id, kind="charge").count() == 1

    def test_borrower_cannot_charge(self, db_session, location, borrower_actor):
        tx = _card_saved(db_session, location)
        with pytest.raises(ForbiddenError):
            pay_later_service.charge_card(tx.id, borrower_actor)
        assert tx.pay_later_status == "CARD_SETUP_COMPLETE"

    def test_other_operator_cannot_charge(self, db_session, location, other_actor):
        tx = _card_saved(db_session, location)
        with pytest.raises(ForbiddenError):
            pay_later_service.charge_card(tx.id, other_actor)


class TestDecline:

    def test_decline_releases_hold(self, db_session, location, operator_actor, fake_providers):
        tx = _card_saved(db_session, location)
        declined = pay_later_service.decline_card(tx.id, "Returned in good condition", operator_actor)

        assert declined.pay_later_status == "DECLINED"
        assert "Returned in good condition" in declined.notes
        assert fake_providers.stripe.called("release_hold") == [("release_hold", "seti_test_2")]
        with pytest.raises(InvalidStateError):
            pay_later_service.charge_card(tx.id, operator_actor)
        with pytest.raises(InvalidStateError):
            pay_later_service.decline_card(tx.id, None, operator_actor)

    def test_completed_hold_stays_completed(self, db_session, location, operator_actor):
        tx = _card_saved(db_session, location)
        pay_later_service.decline_card(tx.id, None, operator_actor)

        hold = db_session.query(Payment).filter_by(transaction_id=tx.id, kind="hold").one()
        assert hold.status == "completed"
        assert hold.payment_data["released"] is True
        assert hold.payment_data["release_reason"] == "declined"

    def test_pending_hold_fails_on_decline(self, db_session, location, operator_actor):
        result = _setup(location)
        pay_later_service.decline_card(result.transaction_id, None, operator_actor)

        hold = db_session.get(Payment, result.payment_id)
        assert hold.status == "failed"
        assert hold.failure_reason == "declined"

    def test_decline_after_failed_charge(self, db_session, location, operator_actor, fake_providers):
        tx = _card_saved(db_session, location)
        fake_providers.stripe.decline_charges()
        pay_later_service.charge_card(tx.id, operator_actor)
        assert pay_later_service.decline_card(tx.id, None, operator_actor).pay_later_status == "DECLINED"

    def test_release_failure_is_audited(self, db_session, location, operator_actor, fake_providers):
        tx = _card_saved(db_session, location)
        fake_providers.stripe.release_error = ProviderError("stripe", "setup intent already canceled")
        declined = pay_later_service.decline_card(tx.id, None, operator_actor)
        assert declined.pay_later_status == "DECLINED"
        assert db_session.query(AuditLog).filter_by(action="hold_release_failed", entity_id=tx.id).count() == 1

    def test_return_releases_pending_card(self, db_session, location, operator_actor, fake_providers):
        tx = _card_saved(db_session, location)
        result = deposit_service.process_return(tx.id, operator_actor)
        assert result.card_resolution == "released"
        assert result.refund.bookkeeping_only is True
        assert result.transaction.pay_later_status == "DECLINED"
        assert len(fake_providers.stripe.called("release_hold")) == 1


class TestExpiry:

    def test_stale_setup_expires(self, db_session, location, fake_providers):
        result = _setup(location)
        assert pay_later_service.expire_stale_requests() == 0

        expired = pay_later_service.expire_stale_requests(now=utcnow() + timedelta(days=31))

        assert expired == 1
        tx = db_session.get(Transaction, result.transaction_id)
        assert tx.pay_later_status == "EXPIRED"
        assert db_session.get(Payment, result.payment_id).status == "failed"
        assert len(fake_providers.stripe.called("release_hold")) == 1

    def test_completed_setup_does_not_expire(self, db_session, location):
        _card_saved(db_session, location)
        assert pay_later_service.expire_stale_requests(now=utcnow() + timedelta(days=31)) == 0


class TestPayLaterApi:

    def test_setup_charge_over_http(self, client, db_session, location, operator_headers):
        resp = client.post("/api/deposits/setup-request", json={
            "locationId": location.id,
            "borrowerName": "Chana Weiss",
            "borrowerEmail": "chana@example.com",
        }, headers=operator_headers)
        assert resp.status_code == 201
        transaction_id = resp.json["transactionId"]
        token = resp.json["statusToken"]

        resp = client.get(f"/api/deposits/status/{transaction_id}?token={token}")
        assert resp.status_code == 200
        assert resp.json["status"] == "CARD_SETUP_PENDING"

        tx = db_session.get(Transaction, transaction_id)
        pay_later_service.handle_setup_intent_succeeded(tx.stripe_setup_intent_id, "pm_card_visa")

        resp = client.post(f"/api/deposits/{transaction_id}/charge", headers=operator_headers)
        assert resp.status_code == 200
        assert resp.json["success"] is True

    def test_status_link_wrong_token(self, client, location):
        result = _setup(location)
        resp = client.get(f"/api/deposits/status/{result.transaction_id}?token=nope")
        assert resp.status_code == 404

    def test_declined_charge_is_200(self, client, db_session, location, operator_headers, fake_providers):
        tx = _card_saved(db_session, location)
        fake_providers.stripe.decline_charges()
        resp = client.post(f"/api/deposits/{tx.id}/charge", headers=operator_headers)
        assert resp.status_code == 200
        assert resp.json["success"] is False
        assert resp.json["errorCode"] == "card_declined"

    def test_charge_declined_transaction_is_409(self, client, db_session, location, operator_actor, operator_headers):
        tx = _card_saved(db_session, location)
        pay_later_service.decline_card(tx.id, None, operator_actor)
        resp = client.post(f"/api/deposits/{tx.id}/charge", headers=operator_headers)
        assert resp.status_code == 409
