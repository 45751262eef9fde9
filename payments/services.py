import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from .conf import get_mpesa_config
from .exceptions import AuthFailure, PushFailure, UpstreamAuthError, UpstreamPushError, ValidationError
from .models import PaymentStatus
from .mpesa_utils import MpesaClient, StkPushRequest, get_cached_access_token
from .serializers import StkPushRequestSerializer
from .store import PaymentStore

logger = logging.getLogger(__name__)


@dataclass
class InitiationResult:
    payment_id: int
    response: Any


@dataclass
class PaymentStatusView:
    status: str
    paid_at: Optional[datetime]
    receipt: Optional[str]
    phone: Optional[str]
    amount: Optional[Decimal]


class PaymentInitiationService:
    """
    Validates a push request, sends it to Daraja and records the PENDING payment.
    """

    def __init__(self, client=None, store=None, config=None):
        self.config = config or get_mpesa_config()
        self.client = client or MpesaClient(self.config)
        self.store = store or PaymentStore()

    def initiate(self, phone, amount, account_ref=None, desc=None):
        serializer = StkPushRequestSerializer(data={
            'phone': phone,
            'amount': amount,
            'account_ref': account_ref or '',
            'desc': desc or '',
        })
        if not serializer.is_valid():
            raise ValidationError("Invalid STK Push request", details=serializer.errors)
        data = serializer.validated_data

        push_request = StkPushRequest(
            phone=data['phone'],
            amount=data['amount'],
            account_reference=data.get('account_ref') or f"PAYMENT_{int(time.time())}",
            description=data.get('desc') or "Payment",
        )

        try:
            token = get_cached_access_token(self.client)
        except AuthFailure as exc:
            raise UpstreamAuthError(
                "Failed to get access token",
                details={'status_code': exc.status_code, 'body': exc.body},
            ) from exc

        try:
            response = self.client.initiate_push(token, push_request)
        except PushFailure as exc:
            raise UpstreamPushError("STK Push initiation failed", details=exc.response) from exc

        merchant_request_id = response.get("MerchantRequestID")
        checkout_request_id = response.get("CheckoutRequestID")
        if not checkout_request_id:
            logger.warning(
                "STK Push accepted without a CheckoutRequestID",
                extra={'response': response},
            )

        fields = {
            'merchant_request_id': merchant_request_id,
            'phone_number': push_request.phone,
            'amount': push_request.amount,
            'account_reference': push_request.account_reference,
            'description': push_request.description,
            'status': PaymentStatus.PENDING,
            'raw_response': response,
        }
        if checkout_request_id:
            # A callback may already have landed for this id
            payment = self.store.upsert_by_checkout_id(checkout_request_id, fields)
        else:
            payment = self.store.create(**fields)

        logger.info(
            "STK Push initiated",
            extra={
                'payment_id': payment.pk,
                'merchant_request_id': merchant_request_id,
                'checkout_request_id': checkout_request_id,
            },
        )
        return InitiationResult(payment_id=payment.pk, response=response)


class StatusQueryService:

    def __init__(self, store=None):
        self.store = store or PaymentStore()

    def get_status(self, checkout_request_id):
        """Raises Payment.DoesNotExist for an unknown id."""
        payment = self.store.find_by_checkout_id(checkout_request_id)
        return PaymentStatusView(
            status=payment.status,
            paid_at=payment.paid_at,
            receipt=payment.mpesa_receipt_number,
            phone=payment.phone_number,
            amount=payment.amount,
        )
