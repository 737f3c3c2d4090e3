from datetime import date
from decimal import Decimal

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.test import TestCase

from core.accounting_defaults import configure_default_settings, ensure_default_accounts
from core.accounting_posting import create_bill, post_bill
from core.exceptions import PartialBatchFailure
from core.models import Account, Bill, BillPayment, BillPaymentAllocation, Business, JournalEntry, Vendor
from core.services.bill_payments import ensure_single_vendor, pay_bill, pay_bills


class BillPaymentTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="bookkeeper", password="pass")
        self.business = Business.objects.create(name="Ridge Builders", owner_user=self.user)
        self.accounts = ensure_default_accounts(self.business)
        configure_default_settings(self.business)
        self.vendor = Vendor.objects.create(business=self.business, name="Concrete Co")
        self.cash = self.accounts["cash"]
        self.pay_date = date(2024, 4, 2)

    def _posted_bill(self, amount, ref="B-1", vendor=None):
        bill = create_bill(
            self.business,
            {"vendor_id": (vendor or self.vendor).id, "bill_date": date(2024, 3, 1), "reference_number": ref},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": amount}],
        )
        post_bill(bill)
        bill.refresh_from_db()
        return bill

    def _reload(self, bill):
        return Bill.objects.get(pk=bill.pk)


class BillPaymentTests(BillPaymentTestCase):
    def test_partial_then_final_payment(self):
        bill = self._posted_bill("1000.00")

        pay_bill(bill, self.cash, self.pay_date, amount="400.00")
        bill = self._reload(bill)
        self.assertEqual(bill.amount_paid, Decimal("400.00"))
        self.assertEqual(bill.status, Bill.Status.POSTED)
        self.assertEqual(bill.remaining_balance, Decimal("600.00"))

        pay_bill(bill, self.cash, self.pay_date, amount="600.00")
        bill = self._reload(bill)
        self.assertEqual(bill.amount_paid, Decimal("1000.00"))
        self.assertEqual(bill.status, Bill.Status.PAID)

    def test_payment_entry_debits_ap_and_credits_cash(self):
        bill = self._posted_bill("250.00")
        payment = pay_bill(bill, self.cash, self.pay_date)
        entry = JournalEntry.objects.get(source_type=JournalEntry.SourceType.BILL_PAYMENT, source_id=bill.id)
        lines = {line.account_id: (line.debit, line.credit) for line in entry.lines.all()}
        self.assertEqual(lines[self.accounts["ap"].id], (Decimal("250.00"), Decimal("0.00")))
        self.assertEqual(lines[self.cash.id], (Decimal("0.00"), Decimal("250.00")))
        self.assertEqual(payment.total_amount, Decimal("250.00"))
        allocation = payment.allocations.get()
        self.assertEqual(allocation.journal_entry_id, entry.id)

    def test_vendor_credit_refund_flips_direction(self):
        credit = self._posted_bill("-200.00", ref="CR-9")
        payment = pay_bill(credit, self.cash, self.pay_date, amount="200.00")

        entry = JournalEntry.objects.get(source_type=JournalEntry.SourceType.BILL_PAYMENT, source_id=credit.id)
        lines = {line.account_id: (line.debit, line.credit, line.memo) for line in entry.lines.all()}
        self.assertEqual(lines[self.cash.id], (Decimal("200.00"), Decimal("0.00"), "Refund - CR-9"))
        self.assertEqual(lines[self.accounts["ap"].id], (Decimal("0.00"), Decimal("200.00"), "AP - CR-9 (Credit)"))
        self.assertEqual(payment.total_amount, Decimal("-200.00"))
        self.assertEqual(self._reload(credit).status, Bill.Status.PAID)

    def test_overpayment_rejected_and_nothing_written(self):
        bill = self._posted_bill("100.00")
        with self.assertRaises(ValidationError):
            pay_bill(bill, self.cash, self.pay_date, amount="100.01")
        self.assertEqual(self._reload(bill).amount_paid, Decimal("0.00"))
        self.assertFalse(BillPayment.objects.exists())

    def test_non_positive_amount_rejected(self):
        bill = self._posted_bill("100.00")
        for amount in ("0", "-5.00"):
            with self.assertRaises(ValidationError):
                pay_bill(bill, self.cash, self.pay_date, amount=amount)

    def test_draft_bill_cannot_be_paid(self):
        bill = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 3, 1)},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "50.00"}],
        )
        with self.assertRaises(ValidationError):
            pay_bill(bill, self.cash, self.pay_date)

    def test_payment_account_must_belong_to_business(self):
        other_user = User.objects.create_user(username="other", password="pass")
        other = Business.objects.create(name="Other Co", owner_user=other_user)
        foreign_cash = Account.objects.create(business=other, code="1010", name="Bank", type=Account.AccountType.ASSET)
        bill = self._posted_bill("75.00")
        with self.assertRaises(ValidationError):
            pay_bill(bill, foreign_cash, self.pay_date)

    def test_amount_paid_never_decreases(self):
        bill = self._posted_bill("90.00")
        seen = []
        for amount in ("10.00", "30.00", "50.00"):
            pay_bill(bill, self.cash, self.pay_date, amount=amount)
            seen.append(self._reload(bill).amount_paid)
        self.assertEqual(seen, sorted(seen))
        self.assertEqual(seen[-1], Decimal("90.00"))


class BatchPaymentTests(BillPaymentTestCase):
    def test_batch_pays_every_bill_under_one_signed_payment(self):
        first = self._posted_bill("500.00", ref="B-1")
        credit = self._posted_bill("-200.00", ref="CR-1")

        payment = pay_bills([first, credit], self.cash, self.pay_date, memo="April run")

        self.assertEqual(payment.total_amount, Decimal("300.00"))
        self.assertEqual(payment.allocations.count(), 2)
        self.assertEqual(self._reload(first).status, Bill.Status.PAID)
        self.assertEqual(self._reload(credit).status, Bill.Status.PAID)

    def test_partial_failure_keeps_successful_bills(self):
        first = self._posted_bill("100.00", ref="B-1")
        draft = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 3, 1), "reference_number": "B-2"},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "40.00"}],
        )
        last = self._posted_bill("60.00", ref="B-3")

        with self.assertRaises(PartialBatchFailure) as ctx:
            pay_bills([first, draft, last], self.cash, self.pay_date)

        failure = ctx.exception
        self.assertEqual([bill.pk for bill, _ in failure.failures], [draft.pk])
        self.assertEqual({bill.pk for bill in failure.succeeded}, {first.pk, last.pk})
        self.assertEqual(self._reload(first).status, Bill.Status.PAID)
        self.assertEqual(self._reload(last).status, Bill.Status.PAID)
        self.assertEqual(self._reload(draft).status, Bill.Status.DRAFT)
        self.assertEqual(failure.payment.total_amount, Decimal("160.00"))
        self.assertEqual(
            JournalEntry.objects.filter(source_type=JournalEntry.SourceType.BILL_PAYMENT).count(),
            2,
        )

    def test_batch_with_no_successes_leaves_no_payment(self):
        paid = self._posted_bill("20.00")
        pay_bill(paid, self.cash, self.pay_date)
        BillPayment.objects.all().delete()

        with self.assertRaises(PartialBatchFailure) as ctx:
            pay_bills([paid], self.cash, self.pay_date)
        self.assertIsNone(ctx.exception.payment)
        self.assertFalse(BillPayment.objects.exists())
        self.assertFalse(BillPaymentAllocation.objects.exists())

    def test_mixed_vendors_rejected(self):
        other_vendor = Vendor.objects.create(business=self.business, name="Steel Supply")
        bills = [self._posted_bill("10.00"), self._posted_bill("10.00", ref="S-1", vendor=other_vendor)]
        with self.assertRaises(ValidationError):
            ensure_single_vendor(bills)

    def test_empty_batch_rejected(self):
        with self.assertRaises(ValidationError):
            pay_bills([], self.cash, self.pay_date)
