from datetime import date
from decimal import Decimal
from unittest import mock

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.db import DatabaseError
from django.test import TestCase

from core.accounting_defaults import configure_default_settings, ensure_default_accounts
from core.accounting_posting import (
    approve_bill,
    create_bill,
    delete_bill_with_journal_entries,
    post_bill,
    reject_bill,
    update_bill,
)
from core.exceptions import ConfigurationError, PersistenceError
from core.models import (
    AccountingSettings,
    Bill,
    BillLine,
    BillPayment,
    Business,
    CostCode,
    JournalEntry,
    JournalLine,
    Project,
    Vendor,
)
from core.services.bank_reconciliation import load_reconcilable_transactions
from core.services.bill_payments import pay_bill, pay_bills


class BillLedgerTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username="pm", password="pass", first_name="Pat", last_name="Lee"
        )
        self.business = Business.objects.create(name="Ridge Builders", currency="USD", owner_user=self.user)
        self.accounts = ensure_default_accounts(self.business)
        configure_default_settings(self.business)
        self.vendor = Vendor.objects.create(business=self.business, name="Lumber Yard")
        self.project = Project.objects.create(business=self.business, name="Maple St Remodel")
        self.cost_code = CostCode.objects.create(business=self.business, code="06-100", name="Framing")

    def _bill(self, lines=None, **header):
        data = {"vendor_id": self.vendor.id, "bill_date": date(2024, 3, 5), "reference_number": "INV-77"}
        data.update(header)
        if lines is None:
            lines = [
                {"line_type": "job_cost", "cost_code_id": self.cost_code.id, "amount": "600.00"},
                {"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "400.00"},
            ]
        return create_bill(self.business, data, lines, user=self.user)

    def _entry_lines(self, entry):
        return [(line.account_id, line.debit, line.credit) for line in entry.lines.order_by("line_number")]


class CreateBillTests(BillLedgerTestCase):
    def test_create_bill_totals_lines_and_starts_as_draft(self):
        bill = self._bill()
        self.assertEqual(bill.status, Bill.Status.DRAFT)
        self.assertEqual(bill.total_amount, Decimal("1000.00"))
        self.assertEqual(bill.lines.count(), 2)
        self.assertEqual(JournalEntry.objects.count(), 0)

    def test_amount_defaults_to_quantity_times_unit_cost(self):
        bill = self._bill(
            lines=[
                {
                    "line_type": "expense",
                    "account_id": self.accounts["expense"].id,
                    "quantity": "3",
                    "unit_cost": "12.50",
                }
            ]
        )
        self.assertEqual(bill.total_amount, Decimal("37.50"))

    def test_expense_line_requires_account(self):
        with self.assertRaises(ValidationError):
            self._bill(lines=[{"line_type": "expense", "amount": "10.00"}])
        self.assertFalse(Bill.objects.exists())

    def test_job_cost_line_requires_cost_code(self):
        with self.assertRaises(ValidationError):
            self._bill(lines=[{"line_type": "job_cost", "amount": "10.00"}])

    def test_vendor_from_other_business_rejected(self):
        other_user = User.objects.create_user(username="other", password="pass")
        other = Business.objects.create(name="Other Co", owner_user=other_user)
        foreign_vendor = Vendor.objects.create(business=other, name="Elsewhere")
        with self.assertRaises(ValidationError):
            self._bill(vendor_id=foreign_vendor.id)


class PostBillTests(BillLedgerTestCase):
    def test_job_cost_and_expense_lines_post_against_wip_expense_and_ap(self):
        bill = self._bill()
        entry = post_bill(bill, user=self.user)

        self.assertEqual(
            self._entry_lines(entry),
            [
                (self.accounts["wip"].id, Decimal("600.00"), Decimal("0.00")),
                (self.accounts["expense"].id, Decimal("400.00"), Decimal("0.00")),
                (self.accounts["ap"].id, Decimal("0.00"), Decimal("1000.00")),
            ],
        )
        self.assertEqual(entry.source_type, JournalEntry.SourceType.BILL)
        self.assertEqual(entry.source_id, bill.id)
        self.assertEqual(entry.description, "Bill from vendor - Ref: INV-77")
        bill.refresh_from_db()
        self.assertEqual(bill.status, Bill.Status.POSTED)

    def test_job_cost_line_carries_cost_code_and_project(self):
        bill = self._bill(project_id=self.project.id)
        entry = post_bill(bill)
        wip_line = entry.lines.get(account=self.accounts["wip"])
        self.assertEqual(wip_line.cost_code_id, self.cost_code.id)
        self.assertEqual(wip_line.project_id, self.project.id)

    def test_every_posted_entry_balances(self):
        self._bill()
        post_bill(self._bill(reference_number="INV-78"))
        credit = self._bill(
            lines=[{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "-300.00"}],
            reference_number="CR-1",
        )
        post_bill(credit)
        for entry in JournalEntry.objects.all():
            debits = sum(line.debit for line in entry.lines.all())
            credits = sum(line.credit for line in entry.lines.all())
            self.assertEqual(debits, credits)

    def test_vendor_credit_flips_sides(self):
        bill = self._bill(
            lines=[{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "-300.00"}],
            reference_number="CR-1",
        )
        entry = post_bill(bill)
        self.assertEqual(entry.description, "Bill Credit from vendor - Ref: CR-1")
        self.assertEqual(
            self._entry_lines(entry),
            [
                (self.accounts["expense"].id, Decimal("0.00"), Decimal("300.00")),
                (self.accounts["ap"].id, Decimal("300.00"), Decimal("0.00")),
            ],
        )
        self.assertEqual(entry.lines.get(account=self.accounts["ap"]).memo, "AP - CR-1 (Credit)")

    def test_zero_lines_are_skipped(self):
        bill = self._bill(
            lines=[
                {"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "250.00"},
                {"line_type": "job_cost", "amount": "0"},
            ]
        )
        entry = post_bill(bill)
        self.assertEqual(entry.lines.count(), 2)

    def test_missing_ap_account_raises_configuration_error(self):
        AccountingSettings.objects.filter(business=self.business).update(ap_account=None)
        bill = self._bill()
        with self.assertRaises(ConfigurationError):
            post_bill(bill)
        bill.refresh_from_db()
        self.assertEqual(bill.status, Bill.Status.DRAFT)
        self.assertFalse(JournalEntry.objects.exists())

    def test_missing_wip_account_only_matters_for_job_cost_lines(self):
        AccountingSettings.objects.filter(business=self.business).update(wip_account=None)
        expense_only = self._bill(
            lines=[{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "80.00"}]
        )
        post_bill(expense_only)

        with self.assertRaises(ConfigurationError):
            post_bill(self._bill(reference_number="INV-79"))

    def test_total_out_of_step_with_lines_is_rejected(self):
        bill = self._bill()
        Bill.objects.filter(pk=bill.pk).update(total_amount=Decimal("999.00"))
        with self.assertRaises(ValidationError):
            post_bill(bill)
        self.assertFalse(JournalEntry.objects.exists())

    def test_only_drafts_can_be_posted(self):
        bill = self._bill()
        post_bill(bill)
        with self.assertRaises(ValidationError):
            post_bill(bill)
        self.assertEqual(JournalEntry.objects.count(), 1)

    def test_database_failure_names_the_step(self):
        bill = self._bill()
        with mock.patch("core.accounting_posting.post_journal_entry", side_effect=DatabaseError("disk full")):
            with self.assertRaises(PersistenceError) as ctx, self.assertLogs("core.exceptions", level="ERROR") as logs:
                post_bill(bill)
        self.assertIn("step='post bill journal entry'", logs.output[0])
        self.assertEqual(ctx.exception.step, "post bill journal entry")
        bill.refresh_from_db()
        self.assertEqual(bill.status, Bill.Status.DRAFT)


class ApproveRejectTests(BillLedgerTestCase):
    def test_approve_prepends_attributed_note_and_posts(self):
        bill = self._bill(notes="Delivered Tuesday")
        entry = approve_bill(bill, user=self.user, notes="Looks good")
        bill.refresh_from_db()
        self.assertEqual(bill.notes, "Pat Lee: Looks good\n\nDelivered Tuesday")
        self.assertEqual(bill.status, Bill.Status.POSTED)
        self.assertEqual(entry.source_id, bill.id)

    def test_approve_without_note_leaves_notes_alone(self):
        bill = self._bill(notes="Delivered Tuesday")
        approve_bill(bill, user=self.user, notes="   ")
        bill.refresh_from_db()
        self.assertEqual(bill.notes, "Delivered Tuesday")

    def test_reject_voids_draft_without_ledger_impact(self):
        bill = self._bill()
        reject_bill(bill, user=self.user, notes="Wrong job")
        bill.refresh_from_db()
        self.assertEqual(bill.status, Bill.Status.VOID)
        self.assertEqual(bill.notes, "Pat Lee: Wrong job")
        self.assertFalse(JournalEntry.objects.exists())

    def test_note_from_user_without_name_is_unknown_user(self):
        nameless = User.objects.create_user(username="anon", password="pass")
        bill = self._bill()
        reject_bill(bill, user=nameless, notes="Duplicate")
        bill.refresh_from_db()
        self.assertEqual(bill.notes, "Unknown User: Duplicate")

    def test_posted_bill_cannot_be_rejected(self):
        bill = self._bill()
        post_bill(bill)
        with self.assertRaises(ValidationError):
            reject_bill(bill, user=self.user, notes="Too late")
        bill.refresh_from_db()
        self.assertEqual(bill.status, Bill.Status.POSTED)
        self.assertNotIn("Too late", bill.notes)

    def test_void_bill_cannot_be_rejected_again(self):
        bill = self._bill()
        reject_bill(bill, user=self.user, notes="Duplicate")
        with self.assertRaises(ValidationError):
            reject_bill(Bill.objects.get(pk=bill.pk), user=self.user, notes="Again")

    def test_stale_draft_cannot_be_approved_twice(self):
        bill = self._bill()
        approve_bill(bill, user=self.user)
        with self.assertRaises(ValidationError):
            approve_bill(bill, user=self.user, notes="Second look")
        self.assertEqual(JournalEntry.objects.count(), 1)


class UpdateBillTests(BillLedgerTestCase):
    def test_update_replaces_lines_and_total(self):
        bill = self._bill()
        first_line = bill.lines.first()
        update_bill(
            bill,
            {"reference_number": "INV-77b"},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "125.00"}],
            deleted_line_ids=[first_line.id],
        )
        bill.refresh_from_db()
        self.assertEqual(bill.reference_number, "INV-77b")
        self.assertEqual(bill.total_amount, Decimal("125.00"))
        self.assertEqual(list(bill.lines.values_list("amount", flat=True)), [Decimal("125.00")])

    def test_editing_posted_bill_returns_it_to_draft_and_keeps_old_entry(self):
        bill = self._bill()
        entry = post_bill(bill)
        with self.assertLogs("core.accounting_posting", level="WARNING") as logs:
            update_bill(
                bill,
                {},
                [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "900.00"}],
            )
        expected = f"bills.posted_bill_edited bill={bill.id} journal_entries=[{entry.id}]"
        self.assertTrue(any(expected in message for message in logs.output))
        bill.refresh_from_db()
        self.assertEqual(bill.status, Bill.Status.DRAFT)
        self.assertTrue(JournalEntry.objects.filter(pk=entry.pk).exists())

    def test_paid_bill_cannot_be_edited(self):
        bill = self._bill()
        post_bill(bill)
        pay_bill(bill, self.accounts["cash"], date(2024, 3, 20))
        with self.assertRaises(ValidationError):
            update_bill(bill, {}, [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "1"}])

    def test_deleted_line_ids_must_belong_to_bill(self):
        bill = self._bill()
        other = self._bill(reference_number="INV-80")
        with self.assertRaises(ValidationError):
            update_bill(
                bill,
                {},
                [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "5.00"}],
                deleted_line_ids=[other.lines.first().id],
            )
        self.assertEqual(bill.lines.count(), 2)


    def test_stale_draft_of_voided_bill_cannot_be_edited(self):
        bill = self._bill()
        reject_bill(Bill.objects.get(pk=bill.pk), user=self.user)
        self.assertEqual(bill.status, Bill.Status.DRAFT)
        with self.assertRaises(ValidationError):
            update_bill(bill, {}, [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "5.00"}])
        self.assertEqual(Bill.objects.get(pk=bill.pk).status, Bill.Status.VOID)


class DeleteBillTests(BillLedgerTestCase):
    def test_delete_removes_bill_entries_and_payment_entries(self):
        bill = self._bill()
        post_bill(bill)
        pay_bill(bill, self.accounts["cash"], date(2024, 3, 20), amount="250.00")
        keep = self._bill(reference_number="INV-81")
        kept_entry = post_bill(keep)

        counts = delete_bill_with_journal_entries(bill)

        self.assertEqual(counts, {"bills": 1, "journal_entries": 2})
        self.assertFalse(Bill.objects.filter(pk=bill.pk).exists())
        self.assertFalse(BillLine.objects.filter(bill_id=bill.pk).exists())
        self.assertEqual(list(JournalEntry.objects.values_list("id", flat=True)), [kept_entry.id])
        self.assertEqual(JournalLine.objects.filter(journal_entry=kept_entry).count(), 3)
        self.assertFalse(BillPayment.objects.exists())

    def test_delete_takes_bill_out_of_shared_payment(self):
        first = self._bill()
        second = self._bill(reference_number="INV-82")
        post_bill(first)
        post_bill(second)
        payment = pay_bills([first, second], self.accounts["cash"], date(2024, 3, 20))
        self.assertEqual(payment.total_amount, Decimal("2000.00"))

        delete_bill_with_journal_entries(first)

        payment.refresh_from_db()
        self.assertEqual(payment.total_amount, Decimal("1000.00"))
        self.assertEqual(list(payment.allocations.values_list("bill_id", flat=True)), [second.id])
        rows = load_reconcilable_transactions(self.business, self.accounts["cash"])
        self.assertEqual([(row.key, row.amount) for row in rows], [(f"bill_payment:{payment.id}", Decimal("1000.00"))])
