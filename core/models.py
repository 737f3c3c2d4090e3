from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

if TYPE_CHECKING:
    from django.db.models import Manager


MONEY = {"max_digits": 14, "decimal_places": 2}


class Business(models.Model):
    name = models.CharField(max_length=255, unique=True)
    currency = models.CharField(max_length=3, default="USD")
    owner_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="businesses",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "Businesses"

    def __str__(self):
        return self.name


class Vendor(models.Model):
    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="vendors",
    )
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True, null=True)
    phone = models.CharField(max_length=50, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]
        constraints = [
            models.UniqueConstraint(
                fields=["business", "name"],
                name="uniq_vendor_per_business_name",
            )
        ]

    def __str__(self):
        return self.name


class Project(models.Model):
    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="projects",
    )
    name = models.CharField(max_length=255)
    address = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class CostCode(models.Model):
    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="cost_codes",
    )
    code = models.CharField(max_length=20)
    name = models.CharField(max_length=255)

    class Meta:
        ordering = ["code"]
        constraints = [
            models.UniqueConstraint(
                fields=["business", "code"],
                name="unique_cost_code_per_business",
            )
        ]

    def __str__(self):
        return f"{self.code} – {self.name}"


class Account(models.Model):
    class AccountType(models.TextChoices):
        ASSET = "ASSET", "Asset"
        LIABILITY = "LIABILITY", "Liability"
        EQUITY = "EQUITY", "Equity"
        REVENUE = "REVENUE", "Revenue"
        EXPENSE = "EXPENSE", "Expense"

    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="accounts",
    )
    code = models.CharField(
        max_length=20,
        blank=True,
        help_text="Optional short code like 1010, 2010, etc.",
    )
    name = models.CharField(max_length=255)
    type = models.CharField(
        max_length=10,
        choices=AccountType.choices,
    )
    is_active = models.BooleanField(default=True)
    description = models.TextField(blank=True)

    class Meta:
        ordering = ["type", "code", "name"]
        constraints = [
            models.UniqueConstraint(
                fields=["business", "code"],
                name="unique_account_code_per_business",
            )
        ]

    def save(self, *args, **kwargs):
        if self.pk:
            stored_type = (
                Account.objects.filter(pk=self.pk).values_list("type", flat=True).first()
            )
            if stored_type and stored_type != self.type:
                raise ValidationError(
                    f"Account {self} cannot change type from {stored_type} to {self.type}."
                )
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.code} – {self.name}" if self.code else self.name

    if TYPE_CHECKING:
        id: int


class AccountingSettings(models.Model):
    """Per-business posting accounts used by the bill and payment engines."""

    business = models.OneToOneField(
        Business,
        on_delete=models.CASCADE,
        related_name="accounting_settings",
    )
    ap_account = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
        help_text="Accounts Payable liability account.",
    )
    wip_account = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
        help_text="Work in Progress account for job-cost lines.",
    )
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "Accounting settings"

    def __str__(self):
        return f"Accounting settings – {self.business}"


class JournalEntry(models.Model):
    class SourceType(models.TextChoices):
        BILL = "bill", "Bill"
        BILL_PAYMENT = "bill_payment", "Bill payment"
        CHECK = "check", "Check"
        DEPOSIT = "deposit", "Deposit"
        CREDIT_CARD = "credit_card", "Credit card"
        MANUAL = "manual", "Manual"

    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="journal_entries",
    )
    source_type = models.CharField(
        max_length=20,
        choices=SourceType.choices,
        default=SourceType.MANUAL,
        db_index=True,
    )
    source_id = models.PositiveBigIntegerField(null=True, blank=True, db_index=True)
    entry_date = models.DateField(db_index=True)
    description = models.CharField(max_length=255)
    is_reversal = models.BooleanField(default=False)
    reverses = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="reversal_entries",
    )
    reversed_by = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    reversed_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-entry_date", "-id"]
        indexes = [
            models.Index(fields=["source_type", "source_id"], name="je_source_idx"),
        ]

    def check_balance(self):
        from .utils import to_cents

        total_debit = 0
        total_credit = 0
        for line in self.lines.all():
            total_debit += to_cents(line.debit)
            total_credit += to_cents(line.credit)
        if total_debit != total_credit:
            raise ValidationError(
                f"Unbalanced journal entry (debits={Decimal(total_debit) / 100}, "
                f"credits={Decimal(total_credit) / 100})."
            )
        if total_debit == 0:
            raise ValidationError("Journal entry has no value.")

    def __str__(self):
        return f"{self.entry_date} – {self.description}"

    if TYPE_CHECKING:
        id: int
        lines: Manager["JournalLine"]


class JournalLine(models.Model):
    journal_entry = models.ForeignKey(
        JournalEntry,
        on_delete=models.CASCADE,
        related_name="lines",
    )
    line_number = models.PositiveIntegerField(default=1)
    account = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        related_name="journal_lines",
    )
    debit = models.DecimalField(**MONEY, default=Decimal("0.00"))
    credit = models.DecimalField(**MONEY, default=Decimal("0.00"))
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="journal_lines",
    )
    cost_code = models.ForeignKey(
        CostCode,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="journal_lines",
    )
    memo = models.CharField(max_length=255, blank=True)
    is_reversal = models.BooleanField(default=False)
    reverses_line = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    reconciled = models.BooleanField(default=False)
    reconciliation = models.ForeignKey(
        "core.BankReconciliation",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="journal_lines",
    )
    reconciliation_date = models.DateField(null=True, blank=True)

    class Meta:
        ordering = ["journal_entry_id", "line_number", "id"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(debit__gte=0) & models.Q(credit__gte=0),
                name="jl_non_negative",
            ),
            models.CheckConstraint(
                condition=models.Q(debit=0) | models.Q(credit=0),
                name="jl_single_side",
            ),
        ]

    def __str__(self):
        side = f"Dr {self.debit}" if self.debit else f"Cr {self.credit}"
        return f"{self.account} {side}"


class Bill(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        POSTED = "posted", "Posted"
        PAID = "paid", "Paid"
        VOID = "void", "Void"
        REVERSED = "reversed", "Reversed"

    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="bills",
    )
    vendor = models.ForeignKey(
        Vendor,
        on_delete=models.PROTECT,
        related_name="bills",
    )
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="bills",
    )
    bill_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(null=True, blank=True)
    terms = models.CharField(max_length=50, blank=True)
    reference_number = models.CharField(max_length=100, blank=True)
    notes = models.TextField(blank=True)
    total_amount = models.DecimalField(**MONEY, default=Decimal("0.00"))
    amount_paid = models.DecimalField(**MONEY, default=Decimal("0.00"))
    status = models.CharField(
        max_length=10,
        choices=Status.choices,
        default=Status.DRAFT,
        db_index=True,
    )
    is_reversal = models.BooleanField(default=False)
    reverses = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="reversal_bills",
    )
    reversed_by = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    reversed_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-bill_date", "-id"]

    @property
    def is_credit(self) -> bool:
        return (self.total_amount or Decimal("0.00")) < 0

    @property
    def remaining_balance(self) -> Decimal:
        return abs(self.total_amount or Decimal("0.00")) - (self.amount_paid or Decimal("0.00"))

    def __str__(self):
        ref = self.reference_number or f"#{self.pk}"
        return f"Bill {ref} – {self.vendor} – {self.total_amount}"

    if TYPE_CHECKING:
        id: int
        lines: Manager["BillLine"]


class BillLine(models.Model):
    class LineType(models.TextChoices):
        JOB_COST = "job_cost", "Job cost"
        EXPENSE = "expense", "Expense"

    bill = models.ForeignKey(
        Bill,
        on_delete=models.CASCADE,
        related_name="lines",
    )
    line_number = models.PositiveIntegerField(default=1)
    line_type = models.CharField(
        max_length=10,
        choices=LineType.choices,
        default=LineType.EXPENSE,
    )
    account = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="bill_lines",
    )
    cost_code = models.ForeignKey(
        CostCode,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="bill_lines",
    )
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="bill_lines",
    )
    quantity = models.DecimalField(max_digits=14, decimal_places=4, default=Decimal("1"))
    unit_cost = models.DecimalField(**MONEY, default=Decimal("0.00"))
    amount = models.DecimalField(**MONEY, default=Decimal("0.00"))
    memo = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["bill_id", "line_number", "id"]

    def __str__(self):
        return f"{self.get_line_type_display()} {self.amount}"


class ReconcilableMixin(models.Model):
    """Fields shared by every document that can be cleared on a bank statement."""

    reconciled = models.BooleanField(default=False)
    reconciliation = models.ForeignKey(
        "core.BankReconciliation",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    reconciliation_date = models.DateField(null=True, blank=True)

    class Meta:
        abstract = True


class Check(ReconcilableMixin):
    class Status(models.TextChoices):
        POSTED = "posted", "Posted"
        VOID = "void", "Void"

    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="checks",
    )
    bank_account = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        related_name="checks",
    )
    check_number = models.CharField(max_length=30, blank=True)
    check_date = models.DateField()
    payee = models.CharField(max_length=255, blank=True)
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="checks",
    )
    amount = models.DecimalField(**MONEY)
    memo = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.POSTED)
    is_reversal = models.BooleanField(default=False)
    reversed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["check_date", "id"]

    def __str__(self):
        number = f"#{self.check_number} " if self.check_number else ""
        return f"Check {number}{self.payee} {self.amount}"


class Deposit(ReconcilableMixin):
    class Status(models.TextChoices):
        POSTED = "posted", "Posted"
        VOID = "void", "Void"

    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="deposits",
    )
    bank_account = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        related_name="deposits",
    )
    deposit_date = models.DateField()
    source = models.CharField(max_length=255, blank=True)
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="deposits",
    )
    amount = models.DecimalField(**MONEY)
    memo = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.POSTED)
    is_reversal = models.BooleanField(default=False)
    reversed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["deposit_date", "id"]

    def __str__(self):
        return f"Deposit {self.source} {self.amount}"


class BillPayment(ReconcilableMixin):
    """
    One cash movement settling one or more bills of a single vendor.
    total_amount is signed: positive when money leaves the payment account,
    negative when a vendor credit is refunded into it.
    """

    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="bill_payments",
    )
    vendor = models.ForeignKey(
        Vendor,
        on_delete=models.PROTECT,
        related_name="bill_payments",
    )
    payment_account = models.ForeignKey(
        Account,
        on_delete=models.PROTECT,
        related_name="bill_payments",
    )
    project = models.ForeignKey(
        Project,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="bill_payments",
    )
    payment_date = models.DateField()
    total_amount = models.DecimalField(**MONEY, default=Decimal("0.00"))
    memo = models.CharField(max_length=255, blank=True)
    check_number = models.CharField(max_length=30, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["payment_date", "id"]

    def __str__(self):
        return f"Payment to {self.vendor} {self.total_amount}"

    if TYPE_CHECKING:
        allocations: Manager["BillPaymentAllocation"]


class BillPaymentAllocation(models.Model):
    bill_payment = models.ForeignKey(
        BillPayment,
        on_delete=models.CASCADE,
        related_name="allocations",
    )
    bill = models.ForeignKey(
        Bill,
        on_delete=models.CASCADE,
        related_name="payment_allocations",
    )
    amount_allocated = models.DecimalField(**MONEY)
    journal_entry = models.ForeignKey(
        JournalEntry,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    class Meta:
        ordering = ["id"]

    def __str__(self):
        return f"{self.bill} ← {self.amount_allocated}"


class BankReconciliation(models.Model):
    class Status(models.TextChoices):
        IN_PROGRESS = "in_progress", "In progress"
        COMPLETED = "completed", "Completed"

    business = models.ForeignKey(
        Business,
        on_delete=models.CASCADE,
        related_name="bank_reconciliations",
    )
    bank_account = models.ForeignKey(
        Account,
        on_delete=models.CASCADE,
        related_name="bank_reconciliations",
    )
    project = models.ForeignKey(
        Project,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="bank_reconciliations",
    )
    statement_date = models.DateField()
    statement_beginning_balance = models.DecimalField(**MONEY, default=Decimal("0.00"))
    # Empty until the user enters the statement's ending balance.
    statement_ending_balance = models.DecimalField(**MONEY, null=True, blank=True)
    reconciled_balance = models.DecimalField(**MONEY, default=Decimal("0.00"))
    difference = models.DecimalField(**MONEY, default=Decimal("0.00"))
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.IN_PROGRESS,
        db_index=True,
    )
    checked_transaction_ids = models.JSONField(default=list, blank=True)
    notes = models.TextField(blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    completed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-statement_date", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["bank_account", "project"],
                condition=models.Q(status="in_progress"),
                name="uniq_in_progress_reco_per_account_project",
            )
        ]

    def __str__(self):
        return f"{self.bank_account.name} {self.statement_date} ({self.status})"

    if TYPE_CHECKING:
        id: int
        bank_account_id: int
        project_id: Optional[int]
