import logging

from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.exceptions import ParseError, UnsupportedMediaType
from rest_framework.response import Response
from rest_framework.views import APIView

from .callbacks import CallbackReconciler, recent_callbacks, record_callback
from .exceptions import UpstreamAuthError, UpstreamPushError, ValidationError
from .models import Payment
from .serializers import (
    PaymentCreateSerializer,
    PaymentSerializer,
    PaymentStatusSerializer,
    PaymentUpdateSerializer,
)
from .services import PaymentInitiationService, StatusQueryService

logger = logging.getLogger(__name__)


@api_view(['POST'])
def initiate_stk_push(request):
    """
    Initiates an STK push to the customer's phone.
    Expects JSON: {
        "phone": "2547XXXXXXXX",
        "amount": 10,
        "account_ref": "PaymentRef",   (optional)
        "desc": "Payment"              (optional)
    }
    """
    data = request.data if isinstance(request.data, dict) else {}
    try:
        result = PaymentInitiationService().initiate(
            phone=data.get('phone'),
            amount=data.get('amount'),
            account_ref=data.get('account_ref'),
            desc=data.get('desc'),
        )
    except ValidationError as exc:
        return Response(
            {"status": "error", "message": exc.message, "details": exc.details},
            status=status.HTTP_400_BAD_REQUEST
        )
    except (UpstreamAuthError, UpstreamPushError) as exc:
        logger.error("STK Push initiation failed", extra={'error': exc.message, 'details': exc.details})
        return Response(
            {"status": "error", "message": exc.message, "details": exc.details},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    return Response({
        "status": "success",
        "message": "STK Push initiated successfully",
        "data": result.response,
        "payment_id": result.payment_id,
    }, status=status.HTTP_200_OK)


@api_view(['POST'])
def mpesa_callback(request):
    """
    Handles the M-Pesa STK push callback.
    Always answers 200 so Safaricom does not keep retrying; ResultCode 1
    tells it the callback was received but could not be applied.
    """
    try:
        data = request.data
    except (ParseError, UnsupportedMediaType) as exc:
        logger.warning("Unreadable M-Pesa callback body", extra={'error': str(exc)})
        data = {}

    try:
        record_callback(data)
    except Exception:
        logger.exception("Could not append callback to the callback log")

    try:
        outcome = CallbackReconciler().reconcile(data)
    except Exception:
        logger.exception("Unexpected error while reconciling callback", extra={'callback_data': data})
        return Response(
            {"ResultCode": 1, "ResultDesc": "Callback received but could not be processed"},
            status=status.HTTP_200_OK
        )

    return Response(
        {"ResultCode": outcome.result_code, "ResultDesc": outcome.result_desc},
        status=status.HTTP_200_OK
    )


@api_view(['GET'])
def payment_status(request, checkout_request_id):
    try:
        view = StatusQueryService().get_status(checkout_request_id)
    except Payment.DoesNotExist:
        return Response({"status": "not_found"}, status=status.HTTP_404_NOT_FOUND)
    return Response(PaymentStatusSerializer(view).data, status=status.HTTP_200_OK)


@api_view(['GET'])
def callback_log(request):
    """Raw callbacks received recently, for debugging integrations."""
    callbacks = recent_callbacks()
    return Response({
        "status": "success",
        "count": len(callbacks),
        "callbacks": callbacks,
    })


class PaymentList(APIView):
    """
    Administrative listing and manual entry of payments.
    """
    def get(self, request):
        payments = Payment.objects.all()
        payment_status_filter = request.query_params.get('status')
        if payment_status_filter:
            payments = payments.filter(status=payment_status_filter.upper())
        return Response(PaymentSerializer(payments, many=True).data)

    def post(self, request):
        serializer = PaymentCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        payment = serializer.save()
        logger.info("Payment created manually", extra={'payment_id': payment.pk})
        return Response(PaymentSerializer(payment).data, status=status.HTTP_201_CREATED)


class PaymentDetail(APIView):

    def get_object(self, pk):
        return Payment.objects.filter(pk=pk).first()

    def get(self, request, pk):
        payment = self.get_object(pk)
        if payment is None:
            return Response({'error': 'Not found'}, status=status.HTTP_404_NOT_FOUND)
        return Response(PaymentSerializer(payment).data)

    def put(self, request, pk):
        return self._update(request, pk)

    def patch(self, request, pk):
        return self._update(request, pk)

    def delete(self, request, pk):
        payment = self.get_object(pk)
        if payment is None:
            return Response({'error': 'Not found'}, status=status.HTTP_404_NOT_FOUND)
        payment.delete()
        logger.info("Payment deleted", extra={'payment_id': pk})
        return Response({'message': 'Deleted successfully'})

    def _update(self, request, pk):
        payment = self.get_object(pk)
        if payment is None:
            return Response({'error': 'Not found'}, status=status.HTTP_404_NOT_FOUND)
        serializer = PaymentUpdateSerializer(payment, data=request.data, partial=True)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        payment = serializer.save()
        logger.info("Payment updated manually", extra={'payment_id': pk})
        return Response(PaymentSerializer(payment).data)
