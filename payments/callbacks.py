"""
STK Push callback handling.

Safaricom POSTs the outcome of every push to the callback URL, at least once
and in no guaranteed order. The envelope looks like::

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...",
        "CheckoutRequestID": "ws_CO_...",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": 1.0},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254708374149}
        ]}
    }}}

Every field is treated as optional. Reconciliation never raises: problems
are reported through a ``Rejected`` outcome so the endpoint can still
acknowledge the provider.
"""
import datetime
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.core.cache import cache
from django.db import DatabaseError
from django.utils import timezone

from .conf import get_mpesa_config
from .exceptions import RejectionReason
from .models import Payment, PaymentStatus
from .store import PaymentStore

logger = logging.getLogger(__name__)

CALLBACK_LOG_CACHE_KEY = 'mpesa_callback_log'
TRANSACTION_DATE_FORMAT = '%Y%m%d%H%M%S'


def _optional_str(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


INT32_MIN, INT32_MAX = -2**31, 2**31 - 1
# Payment.amount is DecimalField(max_digits=10)
AMOUNT_MAX_DIGITS = 10


def _optional_int(value):
    """Int in the signed 32-bit range the result_code column holds, else None."""
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not INT32_MIN <= number <= INT32_MAX:
        return None
    return number


def parse_amount(value):
    """Decimal amount rounded to cents, or None when missing, unparseable, not positive or too large to store."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value)).quantize(Decimal('0.01'))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    if len(amount.as_tuple().digits) > AMOUNT_MAX_DIGITS:
        return None
    return amount


def parse_transaction_date(value):
    """Aware datetime from a 'YYYYMMDDHHmmss' value (East Africa Time), or None."""
    if value is None:
        return None
    try:
        naive = datetime.datetime.strptime(str(value), TRANSACTION_DATE_FORMAT)
    except ValueError:
        logger.warning("Unparseable TransactionDate in callback", extra={'value': value})
        return None
    return timezone.make_aware(naive)


def flatten_metadata(callback_metadata):
    """
    Turn CallbackMetadata.Item ([{Name, Value}, ...]) into a dict.
    Items missing a Name or a Value are skipped.
    """
    if not isinstance(callback_metadata, dict):
        return {}
    items = callback_metadata.get('Item')
    if not isinstance(items, list):
        return {}

    metadata = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get('Name')
        if not name or 'Value' not in item:
            continue
        metadata[str(name)] = item['Value']
    return metadata


@dataclass
class StkCallback:
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def succeeded(self):
        return self.result_code == 0

    @classmethod
    def from_payload(cls, data):
        """
        Decode ``Body.stkCallback``. Returns None when that object is absent
        or empty; otherwise a (possibly partial) StkCallback.
        """
        if not isinstance(data, dict):
            return None
        body = data.get('Body')
        if not isinstance(body, dict):
            return None
        callback = body.get('stkCallback')
        if not isinstance(callback, dict) or not callback:
            return None

        return cls(
            merchant_request_id=_optional_str(callback.get('MerchantRequestID')),
            checkout_request_id=_optional_str(callback.get('CheckoutRequestID')),
            result_code=_optional_int(callback.get('ResultCode')),
            result_desc=_optional_str(callback.get('ResultDesc')),
            metadata=flatten_metadata(callback.get('CallbackMetadata')),
        )


@dataclass
class Accepted:
    payment_id: int
    status: str
    result_code: int = 0
    result_desc: str = "Accepted"


@dataclass
class Rejected:
    reason: RejectionReason
    message: str
    result_code: int = 1

    @property
    def result_desc(self):
        return f"{self.reason.value}: {self.message}"


class CallbackReconciler:
    """
    Applies a callback to its payment record.

    PENDING moves to COMPLETED (ResultCode 0) or FAILED (anything else).
    Terminal records keep their status; repeated callbacks only fill in
    fields that are still empty or unchanged.
    """

    def __init__(self, store=None):
        self.store = store or PaymentStore()

    def reconcile(self, payload):
        callback = StkCallback.from_payload(payload)
        if callback is None:
            logger.warning("Invalid M-Pesa callback structure", extra={'callback_data': payload})
            return Rejected(RejectionReason.INVALID_PAYLOAD, "Invalid callback structure")

        logger.info(
            "M-Pesa callback received",
            extra={
                'merchant_request_id': callback.merchant_request_id,
                'checkout_request_id': callback.checkout_request_id,
                'result_code': callback.result_code,
                'callback_data': payload,
            },
        )

        fields = self.fields_for(callback, payload)
        try:
            payment = self._apply(callback, fields)
        except (DatabaseError, Payment.DoesNotExist, InvalidOperation, OverflowError, ValueError):
            logger.exception(
                "Failed to store M-Pesa callback",
                extra={
                    'merchant_request_id': callback.merchant_request_id,
                    'checkout_request_id': callback.checkout_request_id,
                    'callback_data': payload,
                },
            )
            return Rejected(RejectionReason.STORAGE_ERROR, "Callback could not be stored")

        logger.info(
            "Payment reconciled",
            extra={
                'payment_id': payment.pk,
                'checkout_request_id': payment.checkout_request_id,
                'status': payment.status,
            },
        )
        return Accepted(payment_id=payment.pk, status=payment.status)

    def fields_for(self, callback, payload):
        metadata = callback.metadata
        fields = {
            'merchant_request_id': callback.merchant_request_id,
            'checkout_request_id': callback.checkout_request_id,
            'result_code': callback.result_code,
            'result_desc': callback.result_desc,
            'amount': parse_amount(metadata.get('Amount')),
            'transaction_date': parse_transaction_date(metadata.get('TransactionDate')),
            'phone_number': _optional_str(metadata.get('PhoneNumber')),
            'raw_response': payload,
        }
        if callback.succeeded:
            fields['status'] = PaymentStatus.COMPLETED
            fields['mpesa_receipt_number'] = _optional_str(metadata.get('MpesaReceiptNumber'))
            fields['paid_at'] = timezone.now()
        else:
            fields['status'] = PaymentStatus.FAILED
            fields['failure_reason'] = callback.result_desc or "Unknown failure"
        return fields

    def _apply(self, callback, fields):
        checkout_id = callback.checkout_request_id
        merchant_id = callback.merchant_request_id

        if checkout_id:
            if merchant_id and not self._has_checkout_id(checkout_id):
                # Initiation may have stored the merchant id without a checkout id
                orphan = self._find_by_merchant_id(merchant_id)
                if orphan is not None and orphan.checkout_request_id is None:
                    return self.store.merge(orphan.pk, fields)
            return self.store.upsert_by_checkout_id(checkout_id, fields)

        if merchant_id:
            payment = self._find_by_merchant_id(merchant_id)
            if payment is not None:
                return self.store.merge(payment.pk, fields)

        logger.warning(
            "No payment matches callback, recording a new one",
            extra={'merchant_request_id': merchant_id, 'checkout_request_id': checkout_id},
        )
        return self.store.create(**{k: v for k, v in fields.items() if v is not None})

    def _has_checkout_id(self, checkout_request_id):
        try:
            self.store.find_by_checkout_id(checkout_request_id)
        except Payment.DoesNotExist:
            return False
        return True

    def _find_by_merchant_id(self, merchant_request_id):
        try:
            return self.store.find_by_merchant_request_id(merchant_request_id)
        except Payment.DoesNotExist:
            return None


def record_callback(data, ttl=None):
    """Append a raw callback body to the short-lived callback log."""
    ttl = ttl or get_mpesa_config().callback_log_ttl
    now = timezone.now()
    callbacks = _prune(cache.get(CALLBACK_LOG_CACHE_KEY, []), now, ttl)
    callbacks.append({
        'data': data,
        'timestamp': now.timestamp(),
        'received_at': now.isoformat(),
    })
    cache.set(CALLBACK_LOG_CACHE_KEY, callbacks, timeout=ttl)


def recent_callbacks(ttl=None):
    """Callbacks received within the last ``ttl`` seconds, oldest first."""
    ttl = ttl or get_mpesa_config().callback_log_ttl
    callbacks = _prune(cache.get(CALLBACK_LOG_CACHE_KEY, []), timezone.now(), ttl)
    cache.set(CALLBACK_LOG_CACHE_KEY, callbacks, timeout=ttl)
    return [{'data': c['data'], 'received_at': c['received_at']} for c in callbacks]


def _prune(callbacks, now, ttl):
    cutoff = now.timestamp() - ttl
    return [c for c in callbacks if c['timestamp'] > cutoff]
