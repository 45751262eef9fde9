"""
Pytest configuration and fixtures for the stkpay tests.
"""
from unittest import mock

import pytest
from django.core.cache import cache

from payments.conf import get_mpesa_config
from payments.models import Payment, PaymentStatus


@pytest.fixture(autouse=True)
def mpesa_settings(settings):
    """Deterministic sandbox credentials and a clean cache for every test."""
    settings.MPESA_CONSUMER_KEY = "test-consumer-key"
    settings.MPESA_CONSUMER_SECRET = "test-consumer-secret"
    settings.MPESA_SHORTCODE = "174379"
    settings.MPESA_PASSKEY = "test-passkey"
    settings.MPESA_CALLBACK_URL = "https://example.com/mpesa/callback"
    settings.MPESA_ENV = "sandbox"
    settings.MPESA_BASE_URL = ""
    settings.MPESA_TIMEOUT = 30
    settings.MPESA_CALLBACK_LOG_TTL = 3600
    get_mpesa_config.cache_clear()
    cache.clear()
    yield settings
    get_mpesa_config.cache_clear()
    cache.clear()


@pytest.fixture
def mpesa_config():
    return get_mpesa_config()


@pytest.fixture
def fake_response():
    """Factory for objects that quack like requests.Response."""
    def _make(status_code=200, body=None, text=None):
        response = mock.Mock()
        response.status_code = status_code
        response.ok = 200 <= status_code < 400
        if body is None:
            response.json.side_effect = ValueError("No JSON object could be decoded")
            response.text = text or ""
        else:
            response.json.return_value = body
            response.text = text or str(body)
        return response
    return _make


@pytest.fixture
def push_ack():
    return {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }


@pytest.fixture
def pending_payment(db):
    return Payment.objects.create(
        merchant_request_id="29115-34620561-1",
        checkout_request_id="ws_1",
        phone_number="254712345678",
        amount="50.00",
        status=PaymentStatus.PENDING,
    )


def build_callback(checkout_id="ws_1", merchant_id="29115-34620561-1",
                   result_code=0, result_desc="The service request is processed successfully.",
                   items=None):
    callback = {}
    if merchant_id is not None:
        callback["MerchantRequestID"] = merchant_id
    if checkout_id is not None:
        callback["CheckoutRequestID"] = checkout_id
    if result_code is not None:
        callback["ResultCode"] = result_code
    if result_desc is not None:
        callback["ResultDesc"] = result_desc
    if items is not None:
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def make_callback():
    return build_callback


@pytest.fixture
def success_items():
    return [
        {"Name": "Amount", "Value": 100},
        {"Name": "MpesaReceiptNumber", "Value": "ABC123"},
        {"Name": "Balance"},
        {"Name": "TransactionDate", "Value": 20191219102115},
        {"Name": "PhoneNumber", "Value": 254712345678},
    ]
