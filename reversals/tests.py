import json
from datetime import date
from decimal import Decimal

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.test import Client, TestCase
from django.urls import reverse

from core.accounting_defaults import configure_default_settings, ensure_default_accounts
from core.accounting_posting import create_bill, delete_bill_with_journal_entries, post_bill
from core.ledger_services import get_account_balance
from core.models import Bill, Business, CostCode, JournalEntry, Vendor
from core.services.bill_payments import pay_bill
from reversals.services.bill_corrections import correct_bill


class BillCorrectionTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username="controller", password="pass", first_name="Sam", last_name="Ortiz"
        )
        self.business = Business.objects.create(name="Ridge Builders", owner_user=self.user)
        self.accounts = ensure_default_accounts(self.business)
        configure_default_settings(self.business)
        self.vendor = Vendor.objects.create(business=self.business, name="Electric Supply")
        self.cost_code = CostCode.objects.create(business=self.business, code="16-000", name="Electrical")
        self.bill = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 6, 3), "reference_number": "ES-501"},
            [
                {"line_type": "job_cost", "cost_code_id": self.cost_code.id, "amount": "600.00", "memo": "Wire"},
                {"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "400.00"},
            ],
        )
        self.entry = post_bill(self.bill, user=self.user)
        self.bill.refresh_from_db()

    def _corrected_lines(self, amount="900.00"):
        return [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": amount}]

    def test_reversing_entry_mirrors_original(self):
        result = correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)

        (reversing,) = result.reversing_entries
        self.assertTrue(reversing.is_reversal)
        self.assertEqual(reversing.reverses_id, self.entry.id)
        self.assertEqual(reversing.source_id, result.reversing_bill.id)
        original_lines = list(self.entry.lines.order_by("line_number"))
        mirrored_lines = list(reversing.lines.order_by("line_number"))
        self.assertEqual(len(original_lines), len(mirrored_lines))
        for original, mirrored in zip(original_lines, mirrored_lines):
            self.assertEqual(mirrored.account_id, original.account_id)
            self.assertEqual(mirrored.debit, original.credit)
            self.assertEqual(mirrored.credit, original.debit)
            self.assertEqual(mirrored.project_id, original.project_id)
            self.assertEqual(mirrored.cost_code_id, original.cost_code_id)
            self.assertEqual(mirrored.reverses_line_id, original.id)

        self.entry.refresh_from_db()
        self.assertEqual(self.entry.reversed_by_id, reversing.id)
        self.assertIsNotNone(self.entry.reversed_at)

    def test_ledger_effect_is_cancelled(self):
        correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)
        self.assertEqual(get_account_balance(self.accounts["ap"]), Decimal("0.00"))
        self.assertEqual(get_account_balance(self.accounts["wip"]), Decimal("0.00"))
        self.assertEqual(get_account_balance(self.accounts["expense"]), Decimal("0.00"))

    def test_original_is_marked_reversed_and_reversal_bill_negated(self):
        result = correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)

        original = Bill.objects.get(pk=self.bill.pk)
        self.assertEqual(original.status, Bill.Status.REVERSED)
        self.assertEqual(original.total_amount, Decimal("1000.00"))
        self.assertEqual(original.reversed_by_id, result.reversing_bill.id)

        reversing = result.reversing_bill
        self.assertTrue(reversing.is_reversal)
        self.assertEqual(reversing.reverses_id, original.id)
        self.assertEqual(reversing.total_amount, Decimal("-1000.00"))
        amounts = list(reversing.lines.order_by("line_number").values_list("amount", flat=True))
        self.assertEqual(amounts, [Decimal("-600.00"), Decimal("-400.00")])
        self.assertEqual(reversing.lines.order_by("line_number").first().memo, "REVERSAL: Wire")

    def test_corrected_bill_is_new_draft_with_reason(self):
        result = correct_bill(
            self.bill, {"reference_number": "ES-501A"}, self._corrected_lines(), reason="Wrong quantity", user=self.user
        )
        corrected = result.corrected_bill
        self.assertEqual(corrected.status, Bill.Status.DRAFT)
        self.assertEqual(corrected.vendor_id, self.vendor.id)
        self.assertEqual(corrected.total_amount, Decimal("900.00"))
        self.assertEqual(corrected.reference_number, "ES-501A")
        self.assertTrue(corrected.notes.startswith("Sam Ortiz: Correction of bill"))
        self.assertIn("Wrong quantity", corrected.notes)

    def test_reversal_bill_cannot_be_posted_paid_or_corrected(self):
        result = correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)
        with self.assertRaises(ValidationError):
            post_bill(result.reversing_bill)
        with self.assertRaises(ValidationError):
            pay_bill(result.reversing_bill, self.accounts["cash"], date(2024, 6, 10))
        with self.assertRaises(ValidationError):
            correct_bill(result.reversing_bill, {}, self._corrected_lines())

    def test_bill_can_only_be_corrected_once(self):
        correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)
        with self.assertRaises(ValidationError):
            correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)

    def test_stale_copy_of_corrected_bill_cannot_be_corrected(self):
        stale = Bill.objects.get(pk=self.bill.pk)
        correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)
        self.assertEqual(stale.status, Bill.Status.POSTED)
        with self.assertRaises(ValidationError):
            correct_bill(stale, {}, self._corrected_lines(), user=self.user)
        self.assertEqual(Bill.objects.count(), 3)

    def test_paid_bill_cannot_be_corrected(self):
        pay_bill(self.bill, self.accounts["cash"], date(2024, 6, 10), amount="100.00")
        with self.assertRaises(ValidationError):
            correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)
        self.assertEqual(Bill.objects.get(pk=self.bill.pk).status, Bill.Status.POSTED)

    def test_invalid_corrected_lines_roll_back_everything(self):
        with self.assertRaises(ValidationError):
            correct_bill(self.bill, {}, [{"line_type": "expense", "amount": "10.00"}], user=self.user)
        self.assertEqual(Bill.objects.get(pk=self.bill.pk).status, Bill.Status.POSTED)
        self.assertEqual(Bill.objects.count(), 1)
        self.assertEqual(JournalEntry.objects.count(), 1)

    def test_delete_removes_whole_reversal_chain(self):
        result = correct_bill(self.bill, {}, self._corrected_lines(), user=self.user)
        counts = delete_bill_with_journal_entries(self.bill)
        self.assertEqual(counts, {"bills": 2, "journal_entries": 2})
        self.assertEqual(list(Bill.objects.values_list("id", flat=True)), [result.corrected_bill.id])
        self.assertFalse(JournalEntry.objects.exists())


class BillCorrectionAPITests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="apiuser", password="pass")
        self.business = Business.objects.create(name="API Co", owner_user=self.user)
        self.accounts = ensure_default_accounts(self.business)
        configure_default_settings(self.business)
        self.vendor = Vendor.objects.create(business=self.business, name="Roofing Ltd")
        self.bill = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 6, 3), "reference_number": "RF-9"},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "250.00"}],
        )
        post_bill(self.bill)
        self.client = Client()
        self.client.force_login(self.user)

    def _post(self, bill_id, payload):
        return self.client.post(
            reverse("api_bill_correct", args=[bill_id]), data=json.dumps(payload), content_type="application/json"
        )

    def test_correct_endpoint(self):
        resp = self._post(
            self.bill.id,
            {
                "corrected_bill": {
                    "reference_number": "RF-9b",
                    "lines": [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "200.00"}],
                },
                "reason": "Price changed",
            },
        )
        self.assertEqual(resp.status_code, 201)
        data = resp.json()
        self.assertEqual(data["original"]["status"], "reversed")
        self.assertEqual(data["reversing_bill"]["total_amount"], "-250.00")
        self.assertEqual(data["corrected_bill"]["total_amount"], "200.00")
        self.assertEqual(data["corrected_bill"]["status"], "draft")
        self.assertEqual(len(data["reversing_entries"]), 1)

    def test_correcting_draft_is_400(self):
        draft = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 6, 3)},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "5.00"}],
        )
        resp = self._post(draft.id, {"corrected_bill": {"lines": []}})
        self.assertEqual(resp.status_code, 400)

    def test_unknown_bill_is_404(self):
        resp = self._post(999999, {"corrected_bill": {}})
        self.assertEqual(resp.status_code, 404)
