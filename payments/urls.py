from django.urls import re_path
from .views import (
    PaymentDetail,
    PaymentList,
    callback_log,
    initiate_stk_push,
    mpesa_callback,
    payment_status,
)

urlpatterns = [
    re_path(r'^mpesa/stkpush/?$', initiate_stk_push, name='initiate-stk-push'),
    re_path(r'^mpesa/callback/?$', mpesa_callback, name='mpesa-callback'),
    re_path(r'^callback/?$', mpesa_callback, name='callback'),
    re_path(
        r'^mpesa/payment-status/(?P<checkout_request_id>[^/]+)/?$',
        payment_status,
        name='payment-status',
    ),
    re_path(r'^mpesa/callbacks/?$', callback_log, name='callback-log'),
    re_path(r'^mpesa/payments/?$', PaymentList.as_view(), name='payment-list'),
    re_path(r'^mpesa/payments/(?P<pk>\d+)/?$', PaymentDetail.as_view(), name='payment-detail'),
]
