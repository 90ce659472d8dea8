"""
Webhook endpoint tests.

Verifies:
- Signatures are checked on the raw body; failures are 400
- A redelivered event changes nothing
- Setup, charge and refund events reach the right service
"""

import json

from sqlalchemy.exc import OperationalError

from gemach.models import AuditLog, Payment, Transaction, WebhookEvent
from gemach.services import deposit_service, pay_later_service

STRIPE_HEADERS = {"Stripe-Signature": "t=1,v1=valid", "Content-Type": "application/json"}
PAYPAL_HEADERS = {"PAYPAL-TRANSMISSION-SIG": "valid", "Content-Type": "application/json"}


def _stripe_event(event_id, event_type, obj):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


def _post_stripe(client, event_id, event_type, obj):
    return client.post("/api/webhooks/stripe", data=_stripe_event(event_id, event_type, obj), headers=STRIPE_HEADERS)


def _post_paypal(client, body):
    return client.post("/api/webhooks/paypal", data=json.dumps(body), headers=PAYPAL_HEADERS)


def _capture_event(event_id, event_type, order_id, capture_id="CAP-1", status="COMPLETED", reason=None):
    resource = {
        "id": capture_id,
        "status": status,
        "amount": {"currency_code": "USD", "value": "20.90"},
        "supplementary_data": {"related_ids": {"order_id": order_id}},
    }
    if reason:
        resource["status_details"] = {"reason": reason}
    return {"id": event_id, "event_type": event_type, "resource": resource}


def _stripe_deposit(location):
    return deposit_service.initiate_deposit({"location_id": location.id, "borrower_name": "Leah Katz"}, "stripe")


class TestStripeWebhook:

    def test_bad_signature(self, client, db_session, location):
        resp = client.post(
            "/api/webhooks/stripe",
            data=_stripe_event("evt_1", "payment_intent.succeeded", {"id": "pi_test_1"}),
            headers={"Stripe-Signature": "t=1,v1=forged"},
        )
        assert resp.status_code == 400
        assert db_session.query(WebhookEvent).count() == 0

    def test_missing_signature(self, client, db_session):
        resp = client.post("/api/webhooks/stripe", data="{}")
        assert resp.status_code == 400

    def test_payment_succeeded(self, client, db_session, location):
        result = _stripe_deposit(location)
        resp = _post_stripe(client, "evt_1", "payment_intent.succeeded", {"id": "pi_test_1", "amount_received": 2060})

        assert resp.status_code == 200
        assert resp.json["handled"] is True
        assert resp.json["outcome"]["status"] == "completed"
        payment = db_session.get(Payment, result.payment_id)
        assert payment.status == "completed"
        assert db_session.get(Transaction, result.transaction_id).deposit_payment_method == "stripe"

    def test_redelivery_is_idempotent(self, client, db_session, location):
        result = _stripe_deposit(location)
        first = _post_stripe(client, "evt_1", "payment_intent.succeeded", {"id": "pi_test_1"})
        second = _post_stripe(client, "evt_1", "payment_intent.succeeded", {"id": "pi_test_1"})

        assert first.json["duplicate"] is False
        assert second.status_code == 200
        assert second.json["duplicate"] is True
        assert db_session.query(WebhookEvent).filter_by(event_id="evt_1").count() == 1
        audits = db_session.query(AuditLog).filter_by(action="payment_status_synced", entity_id=result.payment_id)
        assert audits.count() == 1

    def test_payment_failed_schedules_retry(self, client, db_session, location):
        result = _stripe_deposit(location)
        resp = _post_stripe(client, "evt_1", "payment_intent.payment_failed", {
            "id": "pi_test_1",
            "last_payment_error": {"code": "card_declined", "decline_code": "insufficient_funds", "message": "Declined"},
        })
        assert resp.status_code == 200
        assert resp.json["outcome"]["retry_scheduled"] is True
        assert db_session.get(Payment, result.payment_id).status == "pending_retry"

    def test_unknown_intent_is_acknowledged(self, client, db_session):
        resp = _post_stripe(client, "evt_1", "payment_intent.succeeded", {"id": "pi_nobody"})
        assert resp.status_code == 200
        assert resp.json["handled"] is False

    def test_unhandled_type_is_stored(self, client, db_session):
        resp = _post_stripe(client, "evt_9", "customer.created", {"id": "cus_1"})
        assert resp.status_code == 200
        assert resp.json["handled"] is False
        assert db_session.query(WebhookEvent).filter_by(event_id="evt_9").count() == 1

    def test_setup_intent_succeeded(self, client, db_session, location):
        result = pay_later_service.create_setup_request(location.id, "Chana Weiss")
        resp = _post_stripe(client, "evt_1", "setup_intent.succeeded", {"id": "seti_test_2", "payment_method": "pm_card_visa"})

        assert resp.json["handled"] is True
        tx = db_session.get(Transaction, result.transaction_id)
        assert tx.pay_later_status == "CARD_SETUP_COMPLETE"
        assert tx.stripe_payment_method_id == "pm_card_visa"

    def test_failed_handler_lets_redelivery_apply(self, client, db_session, location, monkeypatch):
        result = pay_later_service.create_setup_request(location.id, "Chana Weiss")
        real_handler = pay_later_service.handle_setup_intent_succeeded

        def flaky(setup_intent_id, payment_method_id):
            raise OperationalError("UPDATE transactions", {}, Exception("database is locked"))

        monkeypatch.setattr(pay_later_service, "handle_setup_intent_succeeded", flaky)
        obj = {"id": "seti_test_2", "payment_method": "pm_card_visa"}
        resp = _post_stripe(client, "evt_1", "setup_intent.succeeded", obj)
        assert resp.status_code == 500
        assert db_session.query(WebhookEvent).filter_by(event_id="evt_1").count() == 0

        monkeypatch.setattr(pay_later_service, "handle_setup_intent_succeeded", real_handler)
        resp = _post_stripe(client, "evt_1", "setup_intent.succeeded", obj)

        assert resp.status_code == 200
        assert resp.json["duplicate"] is False
        assert resp.json["handled"] is True
        assert db_session.get(Transaction, result.transaction_id).pay_later_status == "CARD_SETUP_COMPLETE"

    def test_saved_card_charge_event(self, client, db_session, location, operator_actor, fake_providers):
        result = pay_later_service.create_setup_request(location.id, "Chana Weiss")
        tx = db_session.get(Transaction, result.transaction_id)
        pay_later_service.handle_setup_intent_succeeded(tx.stripe_setup_intent_id, "pm_card_visa")
        fake_providers.stripe.charge_status = "processing"
        charge = pay_later_service.charge_card(tx.id, operator_actor)

        resp = _post_stripe(client, "evt_7", "payment_intent.succeeded", {"id": charge.payment_intent_id})

        assert resp.json["handled"] is True
        assert tx.pay_later_status == "CHARGED"

    def test_dashboard_refund_is_recorded_once(self, client, db_session, location):
        result = _stripe_deposit(location)
        _post_stripe(client, "evt_1", "payment_intent.succeeded", {"id": "pi_test_1"})
        refund_obj = {
            "id": "ch_1",
            "payment_intent": "pi_test_1",
            "amount_refunded": 2000,
            "refunds": {"data": [{"id": "re_dash_1"}]},
        }

        resp = _post_stripe(client, "evt_2", "charge.refunded", refund_obj)
        assert resp.json["handled"] is True
        _post_stripe(client, "evt_3", "charge.refunded", refund_obj)

        refunds = db_session.query(Payment).filter_by(transaction_id=result.transaction_id, kind="refund").all()
        assert len(refunds) == 1
        assert refunds[0].deposit_amount_cents == -2000
        assert refunds[0].external_payment_id == "re_dash_1"
        assert refunds[0].refund_of_payment_id == result.payment_id


class TestPayPalWebhook:

    def test_bad_signature(self, client, db_session):
        resp = client.post(
            "/api/webhooks/paypal",
            data=json.dumps(_capture_event("WH-1", "PAYMENT.CAPTURE.COMPLETED", "ORDER-1")),
            headers={"PAYPAL-TRANSMISSION-SIG": "forged"},
        )
        assert resp.status_code == 400

    def test_capture_completed(self, client, db_session, location):
        result = deposit_service.initiate_deposit({"location_id": location.id, "borrower_name": "Leah"}, "paypal")
        resp = _post_paypal(client, _capture_event("WH-1", "PAYMENT.CAPTURE.COMPLETED", "ORDER-1", capture_id="CAP-77"))

        assert resp.status_code == 200
        payment = db_session.get(Payment, result.payment_id)
        assert payment.status == "completed"
        assert payment.payment_data["capture_id"] == "CAP-77"

    def test_capture_denied_needs_review(self, client, db_session, location):
        result = deposit_service.initiate_deposit({"location_id": location.id, "borrower_name": "Leah"}, "paypal")
        resp = _post_paypal(client, _capture_event("WH-1", "PAYMENT.CAPTURE.DENIED", "ORDER-1", status="DECLINED"))

        assert resp.json["outcome"]["manual_review"] is True
        assert db_session.get(Payment, result.payment_id).status == "failed"

    def test_capture_refunded(self, client, db_session, location):
        result = deposit_service.initiate_deposit({"location_id": location.id, "borrower_name": "Leah"}, "paypal")
        _post_paypal(client, _capture_event("WH-1", "PAYMENT.CAPTURE.COMPLETED", "ORDER-1", capture_id="CAP-77"))

        resp = _post_paypal(client, {
            "id": "WH-2",
            "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {
                "id": "REF-1",
                "amount": {"currency_code": "USD", "value": "20.00"},
                "links": [{"rel": "up", "href": "https://api.paypal.test/v2/payments/captures/CAP-77"}],
            },
        })

        assert resp.json["handled"] is True
        refund = db_session.query(Payment).filter_by(transaction_id=result.transaction_id, kind="refund").one()
        assert refund.deposit_amount_cents == -2000
        assert refund.payment_provider == "paypal"
