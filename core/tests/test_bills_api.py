import json
from datetime import date
from decimal import Decimal

from django.contrib.auth.models import User
from django.test import Client, TestCase
from django.urls import reverse

from core.accounting_defaults import configure_default_settings, ensure_default_accounts
from core.accounting_posting import create_bill, post_bill
from core.models import AccountingSettings, Bill, Business, JournalEntry, Vendor


class BillsAPITests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(
            username="apiuser", password="pass", first_name="Dana", last_name="Cruz"
        )
        self.business = Business.objects.create(name="API Co", currency="USD", owner_user=self.user)
        self.accounts = ensure_default_accounts(self.business)
        configure_default_settings(self.business)
        self.vendor = Vendor.objects.create(business=self.business, name="Drywall Inc")
        self.client = Client()
        self.client.force_login(self.user)

    def _post(self, url, payload=None):
        return self.client.post(url, data=json.dumps(payload or {}), content_type="application/json")

    def _bill_payload(self, amount="300.00", **extra):
        payload = {
            "vendor_id": self.vendor.id,
            "bill_date": "2024-05-01",
            "reference_number": "DW-1",
            "lines": [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": amount}],
        }
        payload.update(extra)
        return payload

    def _posted_bill(self, amount="300.00", ref="DW-1"):
        bill = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 5, 1), "reference_number": ref},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": amount}],
        )
        post_bill(bill)
        return bill

    def test_create_then_approve(self):
        resp = self._post(reverse("api_bill_create"), self._bill_payload())
        self.assertEqual(resp.status_code, 201)
        bill = resp.json()["bill"]
        self.assertEqual(bill["status"], "draft")
        self.assertEqual(bill["total_amount"], "300.00")

        resp = self._post(reverse("api_bill_approve", args=[bill["id"]]), {"notes": "OK to pay"})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["bill"]["status"], "posted")
        self.assertEqual(data["bill"]["notes"], "Dana Cruz: OK to pay")
        self.assertTrue(JournalEntry.objects.filter(pk=data["journal_entry_id"]).exists())

    def test_create_with_invalid_line_is_400(self):
        payload = self._bill_payload()
        payload["lines"] = [{"line_type": "expense", "amount": "10.00"}]
        resp = self._post(reverse("api_bill_create"), payload)
        self.assertEqual(resp.status_code, 400)
        self.assertIn("account", resp.json()["error"])

    def test_camel_case_payload_is_not_accepted(self):
        payload = self._bill_payload()
        payload["vendorId"] = payload.pop("vendor_id")
        resp = self._post(reverse("api_bill_create"), payload)
        self.assertEqual(resp.status_code, 400)

    def test_missing_ap_account_is_409(self):
        AccountingSettings.objects.filter(business=self.business).update(ap_account=None)
        bill = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 5, 1)},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "10.00"}],
        )
        resp = self._post(reverse("api_bill_approve", args=[bill.id]))
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["code"], "configuration")

    def test_update_and_reject(self):
        bill = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 5, 1)},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "10.00"}],
        )
        resp = self._post(
            reverse("api_bill_update", args=[bill.id]),
            {
                "terms": "Net 30",
                "lines": [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "15.00"}],
                "deleted_line_ids": [bill.lines.first().id],
            },
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["bill"]["total_amount"], "15.00")
        self.assertEqual(resp.json()["bill"]["terms"], "Net 30")

        resp = self._post(reverse("api_bill_reject", args=[bill.id]), {"notes": "Duplicate"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["bill"]["status"], "void")

    def test_pay_single_bill(self):
        bill = self._posted_bill()
        resp = self._post(
            reverse("api_bill_pay", args=[bill.id]),
            {"payment_account_id": self.accounts["cash"].id, "payment_date": "2024-05-20", "amount": "100.00"},
        )
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["bill"]["amount_paid"], "100.00")
        self.assertEqual(data["bill"]["remaining_balance"], "200.00")
        self.assertEqual(data["bill"]["status"], "posted")

    def test_overpayment_is_400(self):
        bill = self._posted_bill()
        resp = self._post(
            reverse("api_bill_pay", args=[bill.id]),
            {"payment_account_id": self.accounts["cash"].id, "amount": "300.01"},
        )
        self.assertEqual(resp.status_code, 400)

    def test_non_finite_payment_amount_is_400(self):
        bill = self._posted_bill()
        for amount in ("NaN", "Infinity", "-Infinity"):
            resp = self._post(
                reverse("api_bill_pay", args=[bill.id]),
                {"payment_account_id": self.accounts["cash"].id, "payment_date": "2024-05-20", "amount": amount},
            )
            self.assertEqual(resp.status_code, 400)
            self.assertIn("payment amount", resp.json()["error"])
        bill.refresh_from_db()
        self.assertEqual(bill.amount_paid, Decimal("0.00"))

    def test_non_finite_line_amount_is_400(self):
        for amount in ("NaN", "Infinity"):
            resp = self._post(reverse("api_bill_create"), self._bill_payload(amount=amount))
            self.assertEqual(resp.status_code, 400)
        self.assertFalse(Bill.objects.exists())

    def test_batch_payment(self):
        first = self._posted_bill("100.00", ref="DW-1")
        second = self._posted_bill("50.00", ref="DW-2")
        resp = self._post(
            reverse("api_bills_pay_batch"),
            {"bill_ids": [first.id, second.id], "payment_account_id": self.accounts["cash"].id},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["total_amount"], "150.00")

    def test_batch_partial_failure_is_207(self):
        paid = self._posted_bill("100.00", ref="DW-1")
        draft = create_bill(
            self.business,
            {"vendor_id": self.vendor.id, "bill_date": date(2024, 5, 1), "reference_number": "DW-2"},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "10.00"}],
        )
        resp = self._post(
            reverse("api_bills_pay_batch"),
            {"bill_ids": [paid.id, draft.id], "payment_account_id": self.accounts["cash"].id},
        )
        self.assertEqual(resp.status_code, 207)
        data = resp.json()
        self.assertEqual(data["paid_bill_ids"], [paid.id])
        self.assertEqual([failure["bill_id"] for failure in data["failures"]], [draft.id])
        self.assertEqual(Bill.objects.get(pk=paid.pk).status, Bill.Status.PAID)

    def test_batch_with_mixed_vendors_is_400(self):
        first = self._posted_bill("100.00", ref="DW-1")
        other_vendor = Vendor.objects.create(business=self.business, name="Paint Pros")
        second = create_bill(
            self.business,
            {"vendor_id": other_vendor.id, "bill_date": date(2024, 5, 1)},
            [{"line_type": "expense", "account_id": self.accounts["expense"].id, "amount": "10.00"}],
        )
        post_bill(second)
        resp = self._post(
            reverse("api_bills_pay_batch"),
            {"bill_ids": [first.id, second.id], "payment_account_id": self.accounts["cash"].id},
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(Bill.objects.get(pk=first.pk).amount_paid, Decimal("0.00"))

    def test_delete_bill(self):
        bill = self._posted_bill()
        resp = self._post(reverse("api_bill_delete", args=[bill.id]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["deleted"], {"bills": 1, "journal_entries": 1})
        self.assertFalse(JournalEntry.objects.exists())

    def test_other_business_bill_is_404(self):
        other_user = User.objects.create_user(username="other", password="pass")
        other = Business.objects.create(name="Other Co", owner_user=other_user)
        other_vendor = Vendor.objects.create(business=other, name="Elsewhere")
        foreign = Bill.objects.create(business=other, vendor=other_vendor, total_amount=Decimal("5.00"))
        resp = self.client.get(reverse("api_bill_detail", args=[foreign.id]))
        self.assertEqual(resp.status_code, 404)

    def test_user_without_business_is_401(self):
        loner = User.objects.create_user(username="loner", password="pass")
        client = Client()
        client.force_login(loner)
        resp = client.post(
            reverse("api_bill_create"), data=json.dumps(self._bill_payload()), content_type="application/json"
        )
        self.assertEqual(resp.status_code, 401)

    def test_login_required(self):
        resp = Client().get(reverse("api_bill_detail", args=[1]))
        self.assertEqual(resp.status_code, 302)
