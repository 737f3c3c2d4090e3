"""
Bill payment posting.

A payment settles some or all of a posted bill's remaining balance. Each bill
settled gets its own two-line journal entry (AP against the payment account);
a batch run groups those entries under one consolidated BillPayment.
"""
import logging
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction

from core.accounting_defaults import get_ap_account
from core.exceptions import ConfigurationError, PartialBatchFailure, PersistenceError, persistence_step
from core.ledger_services import PostingLine, post_journal_entry
from core.models import Bill, BillPayment, BillPaymentAllocation, JournalEntry
from core.utils import from_cents, to_cents, to_decimal

logger = logging.getLogger(__name__)


def ensure_single_vendor(bills) -> None:
    """A batch payment is written to one payee; reject mixed-vendor selections."""
    vendor_ids = {bill.vendor_id for bill in bills}
    if len(vendor_ids) > 1:
        raise ValidationError("All bills in a batch payment must belong to the same vendor.")


def _check_payment_account(bill: Bill, payment_account) -> None:
    if payment_account is None:
        raise ValidationError("A payment account is required.")
    if payment_account.business_id != bill.business_id:
        raise ValidationError(f"Payment account {payment_account} does not belong to this business.")


def _payment_lines(bill: Bill, ap_account, payment_account, amount: Decimal) -> list[PostingLine]:
    zero = Decimal("0.00")
    ref = bill.reference_number or f"Bill #{bill.id}"
    if bill.is_credit:
        # Vendor credit: money comes back into the payment account.
        return [
            PostingLine(account=payment_account, debit=amount, project_id=bill.project_id, memo=f"Refund - {ref}"),
            PostingLine(account=ap_account, credit=amount, project_id=bill.project_id, memo=f"AP - {ref} (Credit)"),
        ]
    return [
        PostingLine(account=ap_account, debit=amount, credit=zero, project_id=bill.project_id, memo=f"AP - {ref}"),
        PostingLine(account=payment_account, credit=amount, project_id=bill.project_id, memo=f"Payment - {ref}"),
    ]


def _apply_payment(bill: Bill, payment_account, payment_date, amount, memo: str, user):
    """
    Post one bill's payment entry and advance amount_paid. Runs inside the
    caller's transaction; returns (locked bill, amount applied, entry).
    """
    bill = Bill.objects.select_for_update().select_related("business").get(pk=bill.pk)
    if bill.is_reversal:
        raise ValidationError(f"Bill {bill} is a reversal and cannot be paid.")
    if bill.status != Bill.Status.POSTED:
        raise ValidationError(f"Bill {bill} is {bill.status}; only posted bills can be paid.")
    _check_payment_account(bill, payment_account)

    remaining_cents = to_cents(bill.remaining_balance)
    amount_cents = remaining_cents if amount in (None, "") else to_cents(to_decimal(amount, field="payment amount"))
    if amount_cents <= 0:
        raise ValidationError(f"Payment amount for bill {bill} must be greater than zero.")
    if amount_cents > remaining_cents:
        raise ValidationError(
            f"Payment amount {from_cents(amount_cents)} exceeds the remaining balance "
            f"{from_cents(remaining_cents)} of bill {bill}."
        )

    applied = from_cents(amount_cents)
    ap_account = get_ap_account(bill.business)
    with persistence_step("post bill payment journal entry", bill):
        entry = post_journal_entry(
            bill.business,
            source_type=JournalEntry.SourceType.BILL_PAYMENT,
            source_id=bill.id,
            entry_date=payment_date,
            description=memo or f"Payment for Bill {bill.reference_number or f'#{bill.id}'}",
            lines=_payment_lines(bill, ap_account, payment_account, applied),
            user=user,
        )

    paid_cents = to_cents(bill.amount_paid) + amount_cents
    bill.amount_paid = from_cents(paid_cents)
    if paid_cents >= abs(to_cents(bill.total_amount)):
        bill.status = Bill.Status.PAID
    with persistence_step("update bill amount paid", bill):
        bill.save(update_fields=["amount_paid", "status", "updated_at"])
    return bill, applied, entry


def _signed(bill: Bill, amount: Decimal) -> Decimal:
    return -amount if bill.is_credit else amount


@transaction.atomic
def pay_bill(
    bill: Bill,
    payment_account,
    payment_date,
    amount=None,
    memo: str = "",
    user=None,
    check_number: str = "",
) -> BillPayment:
    """
    Pay a single posted bill. ``amount`` defaults to the remaining balance.
    The bill becomes paid once amount_paid reaches its absolute total.
    """
    bill, applied, entry = _apply_payment(bill, payment_account, payment_date, amount, memo, user)
    with persistence_step("record bill payment", bill):
        payment = BillPayment.objects.create(
            business=bill.business,
            vendor_id=bill.vendor_id,
            payment_account=payment_account,
            project_id=bill.project_id,
            payment_date=payment_date,
            total_amount=_signed(bill, applied),
            memo=(memo or "")[:255],
            check_number=check_number or "",
            created_by=user,
        )
        BillPaymentAllocation.objects.create(
            bill_payment=payment,
            bill=bill,
            amount_allocated=applied,
            journal_entry=entry,
        )

    logger.info(
        "bills.payment_posted bill=%s amount=%s amount_paid=%s status=%s",
        bill.id,
        applied,
        bill.amount_paid,
        bill.status,
    )
    return payment


def pay_bills(
    bills,
    payment_account,
    payment_date,
    memo: str = "",
    user=None,
    check_number: str = "",
) -> BillPayment | None:
    """
    Pay the full remaining balance of every bill, one after another.

    Each bill commits on its own: a failure on one bill does not undo the
    bills paid before it, and the remaining bills are still attempted.
    Failures are collected and raised together as PartialBatchFailure once
    the whole list has been processed.
    """
    bills = list(bills)
    if not bills:
        raise ValidationError("Select at least one bill to pay.")
    first = bills[0]

    with persistence_step("create consolidated bill payment", first):
        payment = BillPayment.objects.create(
            business_id=first.business_id,
            vendor_id=first.vendor_id,
            payment_account=payment_account,
            project_id=first.project_id,
            payment_date=payment_date,
            total_amount=Decimal("0.00"),
            memo=(memo or "")[:255],
            check_number=check_number or "",
            created_by=user,
        )

    succeeded = []
    failures = []
    total_cents = 0
    for bill in bills:
        try:
            with transaction.atomic():
                paid_bill, applied, entry = _apply_payment(bill, payment_account, payment_date, None, memo, user)
                with persistence_step("record bill payment allocation", paid_bill):
                    BillPaymentAllocation.objects.create(
                        bill_payment=payment,
                        bill=paid_bill,
                        amount_allocated=applied,
                        journal_entry=entry,
                    )
        except (ValidationError, ConfigurationError, PersistenceError, Bill.DoesNotExist) as exc:
            message = "; ".join(exc.messages) if isinstance(exc, ValidationError) else str(exc)
            failures.append((bill, message))
            logger.warning("bills.batch_payment_failed bill=%s error=%s", bill.pk, message)
            continue
        succeeded.append(paid_bill)
        total_cents += to_cents(_signed(paid_bill, applied))

    if succeeded:
        payment.total_amount = from_cents(total_cents)
        with persistence_step("update consolidated bill payment", payment):
            payment.save(update_fields=["total_amount"])
    else:
        with persistence_step("drop empty bill payment", payment):
            payment.delete()
        payment = None

    logger.info(
        "bills.batch_payment_posted paid=%s failed=%s total=%s",
        len(succeeded),
        len(failures),
        from_cents(total_cents),
    )
    if failures:
        raise PartialBatchFailure(failures, succeeded=succeeded, payment=payment)
    return payment
