from decimal import Decimal

from django.utils import timezone
from rest_framework import serializers

from .models import Payment, PaymentStatus

PHONE_REGEX = r'^2547\d{8}$'
PHONE_ERROR = "Phone number must be in the format 2547XXXXXXXX."


def validate_subscriber_number(value):
    # 2547 followed by eight zeros is not an assignable line
    if value[4:] == "0" * 8:
        raise serializers.ValidationError(PHONE_ERROR)
    return value


class StkPushRequestSerializer(serializers.Serializer):
    """
    Validates an STK Push request. Field names match the public JSON body.
    """
    phone = serializers.RegexField(
        PHONE_REGEX,
        validators=[validate_subscriber_number],
        error_messages={'invalid': PHONE_ERROR},
    )
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal('1'))
    account_ref = serializers.CharField(max_length=50, required=False, allow_blank=True)
    desc = serializers.CharField(max_length=255, required=False, allow_blank=True)


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            'id',
            'merchant_request_id',
            'checkout_request_id',
            'phone_number',
            'amount',
            'account_reference',
            'description',
            'status',
            'result_code',
            'result_desc',
            'mpesa_receipt_number',
            'transaction_date',
            'failure_reason',
            'paid_at',
            'raw_response',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class PaymentCreateSerializer(serializers.ModelSerializer):
    """Manual (administrative) payment entry, always stored PENDING."""
    phone_number = serializers.RegexField(
        PHONE_REGEX,
        validators=[validate_subscriber_number],
        error_messages={'invalid': PHONE_ERROR},
    )
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal('1'))

    class Meta:
        model = Payment
        fields = ['phone_number', 'amount', 'account_reference', 'description']

    def create(self, validated_data):
        return Payment.objects.create(status=PaymentStatus.PENDING, **validated_data)


class PaymentUpdateSerializer(serializers.ModelSerializer):
    """Administrative correction. Status follows the same one-way lifecycle as callbacks."""
    amount = serializers.DecimalField(
        max_digits=10, decimal_places=2, min_value=Decimal('1'), required=False
    )

    class Meta:
        model = Payment
        fields = ['status', 'amount']
        extra_kwargs = {'status': {'required': False}}

    def validate_status(self, value):
        if self.instance is not None and self.instance.is_terminal and value != self.instance.status:
            raise serializers.ValidationError(
                f"Payment is already {self.instance.status} and cannot move to {value}."
            )
        return value

    def update(self, instance, validated_data):
        if validated_data.get('status') == PaymentStatus.COMPLETED and instance.paid_at is None:
            validated_data['paid_at'] = timezone.now()
        return super().update(instance, validated_data)


class PaymentStatusSerializer(serializers.Serializer):
    status = serializers.CharField()
    paid_at = serializers.DateTimeField(allow_null=True)
    receipt = serializers.CharField(allow_null=True)
    phone = serializers.CharField(allow_null=True)
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, allow_null=True)
