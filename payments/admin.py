from django.contrib import admin
from .models import Payment

@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = (
        'phone_number',
        'amount',
        'status',
        'checkout_request_id',
        'merchant_request_id',
        'mpesa_receipt_number',
        'transaction_date',
        'paid_at',
        'created_at',
    )
    list_filter = (
        'status',
        'created_at',
        'paid_at',
    )
    search_fields = (
        'phone_number',
        'mpesa_receipt_number',
        'checkout_request_id',
        'merchant_request_id',
    )
    readonly_fields = ('raw_response', 'created_at', 'updated_at')
