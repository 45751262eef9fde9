import logging

from django.db import IntegrityError, transaction
from django.db.models import Case, F, Q, Value, When
from django.utils import timezone

from .models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

# Fields describing how a payment ended. Written only while the stored row is
# still PENDING, or when the incoming status matches the stored one, so a
# COMPLETED row never picks up a failure reason and vice versa.
OUTCOME_FIELDS = ('mpesa_receipt_number', 'failure_reason', 'result_code', 'result_desc')


class PaymentStore:
    """
    Persistence for Payment rows.

    Merges are single conditional UPDATE statements: an incoming None never
    replaces a stored value, and status only ever leaves PENDING.
    """

    def create(self, **fields):
        return Payment.objects.create(**fields)

    def find_by_id(self, pk):
        return Payment.objects.get(pk=pk)

    def find_by_checkout_id(self, checkout_request_id):
        return Payment.objects.get(checkout_request_id=checkout_request_id)

    def find_by_merchant_request_id(self, merchant_request_id):
        # merchant_request_id is not unique; the newest row wins
        payment = (
            Payment.objects.filter(merchant_request_id=merchant_request_id)
            .order_by('-created_at', '-id')
            .first()
        )
        if payment is None:
            raise Payment.DoesNotExist(
                f"No payment with merchant_request_id={merchant_request_id!r}"
            )
        return payment

    def upsert_by_checkout_id(self, checkout_request_id, fields):
        """
        Merge ``fields`` into the row holding ``checkout_request_id``, or
        insert it when none exists.

        The unique constraint on checkout_request_id arbitrates concurrent
        inserts: the loser of the race gets an IntegrityError and merges
        into the winner's row instead.
        """
        lookup = Payment.objects.filter(checkout_request_id=checkout_request_id)
        if self._apply(lookup, fields):
            return self.find_by_checkout_id(checkout_request_id)

        values = {name: value for name, value in fields.items() if value is not None}
        values['checkout_request_id'] = checkout_request_id
        try:
            with transaction.atomic():
                return Payment.objects.create(**values)
        except IntegrityError:
            logger.info(
                "Concurrent insert for checkout_request_id, merging instead",
                extra={'checkout_request_id': checkout_request_id},
            )
            if not self._apply(lookup, fields):
                raise
            return self.find_by_checkout_id(checkout_request_id)

    def merge(self, pk, fields):
        """Merge ``fields`` into an existing row identified by primary key."""
        if not self._apply(Payment.objects.filter(pk=pk), fields):
            raise Payment.DoesNotExist(f"No payment with id={pk!r}")
        return self.find_by_id(pk)

    def _apply(self, queryset, fields):
        return queryset.update(**self._merge_expressions(fields)) > 0

    def _merge_expressions(self, fields):
        incoming_status = fields.get('status')
        outcome_guard = None
        if incoming_status is not None:
            outcome_guard = Q(status=PaymentStatus.PENDING) | Q(status=incoming_status)

        updates = {'updated_at': timezone.now()}
        for name, value in fields.items():
            if value is None:
                continue
            if name == 'status':
                updates[name] = self._guarded(name, value, Q(status=PaymentStatus.PENDING))
            elif name == 'paid_at':
                updates[name] = self._guarded(name, value, Q(status=PaymentStatus.PENDING))
            elif name in OUTCOME_FIELDS and outcome_guard is not None:
                updates[name] = self._guarded(name, value, outcome_guard)
            else:
                updates[name] = value
        return updates

    @staticmethod
    def _guarded(name, value, condition):
        field = Payment._meta.get_field(name)
        return Case(
            When(condition, then=Value(value, output_field=field)),
            default=F(name),
            output_field=field,
        )
