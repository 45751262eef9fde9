"""
HTTP contract tests for the payments endpoints.
"""
from unittest import mock

import pytest
from rest_framework.test import APIClient

from payments.exceptions import AuthFailure, PushFailure
from payments.models import Payment, PaymentStatus
from payments.mpesa_utils import MpesaClient

pytestmark = pytest.mark.django_db


@pytest.fixture
def api():
    return APIClient()


@pytest.fixture
def daraja(push_ack):
    """Patch both Daraja calls on MpesaClient."""
    with mock.patch.object(MpesaClient, "get_access_token", return_value="tok") as token, \
            mock.patch.object(MpesaClient, "initiate_push", return_value=push_ack) as push:
        yield mock.Mock(get_access_token=token, initiate_push=push)


class TestStkPush:

    def test_success(self, api, daraja, push_ack):
        response = api.post("/mpesa/stkpush", {"phone": "254712345678", "amount": 50}, format="json")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["data"] == push_ack
        payment = Payment.objects.get(pk=body["payment_id"])
        assert payment.status == PaymentStatus.PENDING
        assert payment.checkout_request_id == push_ack["CheckoutRequestID"]

    def test_trailing_slash_is_accepted(self, api, daraja):
        response = api.post("/mpesa/stkpush/", {"phone": "254712345678", "amount": 50}, format="json")
        assert response.status_code == 200

    def test_validation_error(self, api, daraja):
        response = api.post("/mpesa/stkpush", {"phone": "0712345678", "amount": 0}, format="json")

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert set(body["details"]) == {"phone", "amount"}
        daraja.get_access_token.assert_not_called()

    def test_auth_failure(self, api, daraja):
        daraja.get_access_token.side_effect = AuthFailure("denied", 401, {"errorMessage": "Invalid"})

        response = api.post("/mpesa/stkpush", {"phone": "254712345678", "amount": 50}, format="json")

        assert response.status_code == 500
        body = response.json()
        assert body["status"] == "error"
        assert body["message"] == "Failed to get access token"
        assert body["details"]["status_code"] == 401

    def test_push_failure(self, api, daraja):
        provider_body = {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}
        daraja.initiate_push.side_effect = PushFailure("failed", 400, provider_body)

        response = api.post("/mpesa/stkpush", {"phone": "254712345678", "amount": 50}, format="json")

        assert response.status_code == 500
        assert response.json() == {
            "status": "error",
            "message": "STK Push initiation failed",
            "details": provider_body,
        }
        assert Payment.objects.count() == 0


class TestCallback:

    @pytest.mark.parametrize("url", ["/callback", "/mpesa/callback", "/mpesa/callback/"])
    def test_success_callback_is_acknowledged(self, api, url, pending_payment, make_callback, success_items):
        response = api.post(url, make_callback(items=success_items), format="json")

        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
        pending_payment.refresh_from_db()
        assert pending_payment.status == PaymentStatus.COMPLETED

    def test_empty_json_body_still_returns_200(self, api):
        response = api.post("/mpesa/callback", {}, format="json")

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 1

    def test_no_body_at_all_returns_200(self, api):
        response = api.post("/mpesa/callback", data="", content_type="application/json")

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 1

    def test_malformed_json_returns_200(self, api):
        response = api.post("/mpesa/callback", data="{not json", content_type="application/json")

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 1

    def test_json_array_returns_200(self, api):
        response = api.post("/mpesa/callback", [1, 2, 3], format="json")

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 1

    def test_unexpected_error_returns_200(self, api, make_callback):
        with mock.patch("payments.views.CallbackReconciler.reconcile", side_effect=RuntimeError("bug")):
            response = api.post("/mpesa/callback", make_callback(), format="json")

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 1

    def test_callbacks_are_logged(self, api, make_callback):
        api.post("/mpesa/callback", make_callback(), format="json")

        response = api.get("/mpesa/callbacks")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["count"] == 1
        assert body["callbacks"][0]["data"] == make_callback()


class TestPaymentStatus:

    def test_known_payment(self, api, pending_payment, make_callback):
        api.post("/mpesa/callback", make_callback(items=[
            {"Name": "MpesaReceiptNumber", "Value": "ABC123"},
            {"Name": "Amount", "Value": 100},
        ]), format="json")

        response = api.get("/mpesa/payment-status/ws_1")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == PaymentStatus.COMPLETED
        assert body["receipt"] == "ABC123"
        assert body["phone"] == "254712345678"
        assert body["amount"] == "100.00"
        assert body["paid_at"] is not None

    def test_unknown_payment(self, api):
        response = api.get("/mpesa/payment-status/ws_unknown")

        assert response.status_code == 404
        assert response.json() == {"status": "not_found"}


class TestPaymentAdminEndpoints:

    def test_create_and_list(self, api):
        response = api.post("/mpesa/payments", {"phone_number": "254712345678", "amount": "20"}, format="json")

        assert response.status_code == 201
        assert response.json()["status"] == PaymentStatus.PENDING

        listing = api.get("/mpesa/payments").json()
        assert len(listing) == 1
        assert listing[0]["amount"] == "20.00"

    def test_create_validates_input(self, api):
        response = api.post("/mpesa/payments", {"phone_number": "123", "amount": "0"}, format="json")

        assert response.status_code == 400
        assert set(response.json()) == {"phone_number", "amount"}

    def test_list_filters_by_status(self, api, pending_payment):
        Payment.objects.create(checkout_request_id="ws_2", status=PaymentStatus.FAILED)

        listing = api.get("/mpesa/payments", {"status": "failed"}).json()

        assert [p["checkout_request_id"] for p in listing] == ["ws_2"]

    def test_retrieve_update_delete(self, api, pending_payment):
        url = f"/mpesa/payments/{pending_payment.pk}"

        assert api.get(url).json()["checkout_request_id"] == "ws_1"

        response = api.patch(url, {"amount": "75"}, format="json")
        assert response.status_code == 200
        assert response.json()["amount"] == "75.00"

        response = api.delete(url)
        assert response.status_code == 200
        assert not Payment.objects.filter(pk=pending_payment.pk).exists()

    def test_missing_payment(self, api):
        assert api.get("/mpesa/payments/999").status_code == 404
        assert api.patch("/mpesa/payments/999", {"amount": "5"}, format="json").status_code == 404
        assert api.delete("/mpesa/payments/999").status_code == 404

    @pytest.mark.parametrize("terminal", [PaymentStatus.COMPLETED, PaymentStatus.FAILED])
    def test_terminal_status_cannot_be_reopened(self, api, pending_payment, terminal):
        Payment.objects.filter(pk=pending_payment.pk).update(status=terminal)

        response = api.patch(f"/mpesa/payments/{pending_payment.pk}", {"status": PaymentStatus.PENDING}, format="json")

        assert response.status_code == 400
        assert "status" in response.json()
        pending_payment.refresh_from_db()
        assert pending_payment.status == terminal

    def test_completing_by_hand_stamps_paid_at(self, api, pending_payment):
        response = api.patch(f"/mpesa/payments/{pending_payment.pk}", {"status": PaymentStatus.COMPLETED}, format="json")

        assert response.status_code == 200
        assert response.json()["status"] == PaymentStatus.COMPLETED
        assert response.json()["paid_at"] is not None

    def test_same_terminal_status_is_accepted(self, api, pending_payment):
        Payment.objects.filter(pk=pending_payment.pk).update(status=PaymentStatus.COMPLETED)

        response = api.patch(
            f"/mpesa/payments/{pending_payment.pk}",
            {"status": PaymentStatus.COMPLETED, "amount": "60"},
            format="json",
        )

        assert response.status_code == 200
        assert response.json()["amount"] == "60.00"
