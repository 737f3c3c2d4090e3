"""
Bank Reconciliation Store

Loads the transactions that can be cleared against a bank statement and
persists reconciliation records for one (bank account, project) pair:
saving in-progress work, completing, undoing and discarding.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from core.exceptions import persistence_step
from core.models import BankReconciliation, BillPayment, Check, Deposit, JournalEntry, JournalLine
from core.utils import end_of_following_month, end_of_month, from_cents, to_cents

logger = logging.getLogger(__name__)


KIND_CHECK = "check"
KIND_DEPOSIT = "deposit"
KIND_BILL_PAYMENT = "bill_payment"
KIND_JOURNAL_ENTRY = "journal_entry"

RECONCILABLE_MODELS = {
    KIND_CHECK: Check,
    KIND_DEPOSIT: Deposit,
    KIND_BILL_PAYMENT: BillPayment,
    KIND_JOURNAL_ENTRY: JournalLine,
}

UNRECONCILED = {"reconciled": False, "reconciliation": None, "reconciliation_date": None}


@dataclass(frozen=True)
class ReconcilableTransaction:
    """
    One cash movement on the bank account, as the reconciliation screen sees it.
    ``amount`` is always positive; ``is_deposit`` gives the direction.
    """

    kind: str
    id: int
    date: date
    amount: Decimal
    is_deposit: bool
    payee: str = ""
    reference: str = ""
    reconciled: bool = False
    reconciliation_id: Optional[int] = None
    reconciliation_date: Optional[date] = None
    orphaned: bool = False

    @property
    def key(self) -> str:
        return transaction_key(self.kind, self.id)


def transaction_key(kind: str, pk) -> str:
    return f"{kind}:{pk}"


@dataclass(frozen=True)
class ReconciliationBalance:
    cleared_deposits: Decimal
    cleared_payments: Decimal
    calculated_ending: Decimal
    difference: Decimal


def compute_reconciliation_balance(
    beginning_balance,
    transactions: Iterable[ReconcilableTransaction],
    checked_ids,
    ending_balance,
) -> ReconciliationBalance:
    """
    calculated ending = beginning + cleared deposits - cleared checks/payments
    difference = calculated ending - statement ending balance
    """
    checked = set(checked_ids)
    deposits = 0
    payments = 0
    for tx in transactions:
        if tx.key not in checked:
            continue
        if tx.is_deposit:
            deposits += to_cents(tx.amount)
        else:
            payments += to_cents(tx.amount)
    calculated = to_cents(beginning_balance) + deposits - payments
    return ReconciliationBalance(
        cleared_deposits=from_cents(deposits),
        cleared_payments=from_cents(payments),
        calculated_ending=from_cents(calculated),
        difference=from_cents(calculated - to_cents(ending_balance)),
    )


def is_within_tolerance(difference) -> bool:
    tolerance = to_cents(getattr(settings, "RECONCILIATION_TOLERANCE", "0.01"))
    return abs(to_cents(difference)) < tolerance


def _for_pair(queryset, project):
    if project is None:
        return queryset.filter(project__isnull=True)
    return queryset.filter(project=project)


def _reconciliations(business, bank_account, project):
    return _for_pair(
        BankReconciliation.objects.filter(business=business, bank_account=bank_account),
        project,
    )


def last_completed_reconciliation(business, bank_account, project=None) -> BankReconciliation | None:
    return (
        _reconciliations(business, bank_account, project)
        .filter(status=BankReconciliation.Status.COMPLETED)
        .order_by("-statement_date", "-id")
        .first()
    )


def get_in_progress_reconciliation(business, bank_account, project=None) -> BankReconciliation | None:
    return (
        _reconciliations(business, bank_account, project)
        .filter(status=BankReconciliation.Status.IN_PROGRESS)
        .order_by("-updated_at", "-id")
        .first()
    )


def default_statement_date(last_statement_date: date | None, today: date | None = None) -> date:
    """End of the month after the last completed statement, else end of this month."""
    if last_statement_date:
        return end_of_following_month(last_statement_date)
    return end_of_month(today or timezone.localdate())


def _effective_state(obj, valid_ids: set[int]):
    """(reconciled, orphaned) for a stored record; orphans count as unreconciled."""
    if not obj.reconciled:
        return False, False
    if obj.reconciliation_id and obj.reconciliation_id in valid_ids:
        return True, False
    return False, True


def _collect(rows, valid_ids, cutoff, include_reconciled, build):
    result = []
    for obj in rows:
        reconciled, orphaned = _effective_state(obj, valid_ids)
        tx = build(obj, reconciled, orphaned)
        if tx is None:
            continue
        if reconciled:
            if include_reconciled:
                result.append(tx)
            continue
        if cutoff and tx.date <= cutoff:
            continue
        result.append(tx)
    return result


def _reconciliation_fields(obj, reconciled: bool, orphaned: bool) -> dict:
    return {
        "reconciled": reconciled,
        "reconciliation_id": obj.reconciliation_id if reconciled else None,
        "reconciliation_date": obj.reconciliation_date if reconciled else None,
        "orphaned": orphaned,
    }


def load_reconcilable_transactions(
    business, bank_account, project=None, *, include_reconciled: bool = False
) -> list[ReconcilableTransaction]:
    """
    Posted, non-reversed checks, deposits, bill payments and manual journal
    lines on ``bank_account`` for the project scope (no project means only
    records without one).

    A record flagged reconciled against a reconciliation that no longer
    exists for this pair is reported as unreconciled with ``orphaned`` set.
    Unreconciled records dated on or before the last completed statement
    date are left out.
    """
    valid_ids = set(_reconciliations(business, bank_account, project).values_list("id", flat=True))
    last_completed = last_completed_reconciliation(business, bank_account, project)
    cutoff = last_completed.statement_date if last_completed else None

    checks = _for_pair(
        Check.objects.filter(
            business=business,
            bank_account=bank_account,
            status=Check.Status.POSTED,
            is_reversal=False,
            reversed_at__isnull=True,
        ),
        project,
    )
    deposits = _for_pair(
        Deposit.objects.filter(
            business=business,
            bank_account=bank_account,
            status=Deposit.Status.POSTED,
            is_reversal=False,
            reversed_at__isnull=True,
        ),
        project,
    )
    payments = _for_pair(
        BillPayment.objects.filter(business=business, payment_account=bank_account).select_related("vendor"),
        project,
    )
    journal_lines = _for_pair(
        JournalLine.objects.filter(
            journal_entry__business=business,
            journal_entry__source_type=JournalEntry.SourceType.MANUAL,
            journal_entry__is_reversal=False,
            journal_entry__reversed_by__isnull=True,
            account=bank_account,
        ).select_related("journal_entry"),
        project,
    )

    def build_check(obj, reconciled, orphaned):
        return ReconcilableTransaction(
            kind=KIND_CHECK,
            id=obj.id,
            date=obj.check_date,
            amount=abs(obj.amount),
            is_deposit=False,
            payee=obj.payee,
            reference=obj.check_number,
            **_reconciliation_fields(obj, reconciled, orphaned),
        )

    def build_deposit(obj, reconciled, orphaned):
        return ReconcilableTransaction(
            kind=KIND_DEPOSIT,
            id=obj.id,
            date=obj.deposit_date,
            amount=abs(obj.amount),
            is_deposit=True,
            payee=obj.source,
            reference=obj.memo,
            **_reconciliation_fields(obj, reconciled, orphaned),
        )

    def build_payment(obj, reconciled, orphaned):
        if to_cents(obj.total_amount) == 0:
            return None
        return ReconcilableTransaction(
            kind=KIND_BILL_PAYMENT,
            id=obj.id,
            date=obj.payment_date,
            amount=abs(obj.total_amount),
            # A negative payment is a vendor refund coming back into the account.
            is_deposit=obj.total_amount < 0,
            payee=obj.vendor.name,
            reference=obj.check_number,
            **_reconciliation_fields(obj, reconciled, orphaned),
        )

    def build_journal_line(obj, reconciled, orphaned):
        if to_cents(obj.debit) == 0 and to_cents(obj.credit) == 0:
            return None
        is_deposit = to_cents(obj.debit) > 0
        return ReconcilableTransaction(
            kind=KIND_JOURNAL_ENTRY,
            id=obj.id,
            date=obj.journal_entry.entry_date,
            amount=obj.debit if is_deposit else obj.credit,
            is_deposit=is_deposit,
            payee=obj.journal_entry.description or "Journal Entry",
            reference="JE",
            **_reconciliation_fields(obj, reconciled, orphaned),
        )

    transactions = (
        _collect(checks, valid_ids, cutoff, include_reconciled, build_check)
        + _collect(deposits, valid_ids, cutoff, include_reconciled, build_deposit)
        + _collect(payments, valid_ids, cutoff, include_reconciled, build_payment)
        + _collect(journal_lines, valid_ids, cutoff, include_reconciled, build_journal_line)
    )
    transactions.sort(key=lambda tx: (tx.date, tx.kind, tx.id))
    return transactions


def _require_pair_owner(business, bank_account, project) -> None:
    if bank_account.business_id != business.id:
        raise ValidationError("Bank account does not belong to this business.")
    if project is not None and project.business_id != business.id:
        raise ValidationError("Project does not belong to this business.")


def save_in_progress(
    business,
    bank_account,
    project=None,
    *,
    statement_date: date,
    beginning_balance,
    ending_balance,
    checked_ids,
    notes: str = "",
    reconciled_balance=None,
    difference=None,
) -> BankReconciliation:
    """Write the session fields to the pair's in-progress record, creating it if absent."""
    _require_pair_owner(business, bank_account, project)
    if statement_date is None:
        raise ValidationError("Statement date is required.")

    fields = {
        "statement_date": statement_date,
        "statement_beginning_balance": from_cents(to_cents(beginning_balance)),
        "statement_ending_balance": None if ending_balance is None else from_cents(to_cents(ending_balance)),
        "checked_transaction_ids": sorted(set(checked_ids)),
        "notes": notes or "",
    }
    if reconciled_balance is not None:
        fields["reconciled_balance"] = from_cents(to_cents(reconciled_balance))
    if difference is not None:
        fields["difference"] = from_cents(to_cents(difference))

    with transaction.atomic(), persistence_step("save in-progress reconciliation", bank_account):
        reconciliation = (
            _reconciliations(business, bank_account, project)
            .select_for_update()
            .filter(status=BankReconciliation.Status.IN_PROGRESS)
            .first()
        )
        if reconciliation is None:
            reconciliation = BankReconciliation.objects.create(
                business=business,
                bank_account=bank_account,
                project=project,
                status=BankReconciliation.Status.IN_PROGRESS,
                **fields,
            )
        else:
            for name, value in fields.items():
                setattr(reconciliation, name, value)
            reconciliation.save(update_fields=[*fields.keys(), "updated_at"])

    logger.debug(
        "reconciliation.progress_saved reconciliation=%s checked=%s",
        reconciliation.id,
        len(fields["checked_transaction_ids"]),
    )
    return reconciliation


def _set_reconciled(kind: str, ids, values: dict) -> int:
    if not ids:
        return 0
    return RECONCILABLE_MODELS[kind].objects.filter(id__in=ids).update(**values)


@transaction.atomic
def complete_reconciliation(
    business,
    bank_account,
    project=None,
    *,
    statement_date: date,
    beginning_balance,
    ending_balance,
    checked_ids,
    notes: str = "",
    user=None,
) -> BankReconciliation:
    """
    Finalize the statement period. The difference must be within tolerance.

    Only records whose reconciled flag has to change are written: checked
    records are tagged with the new reconciliation, unchecked orphans are
    cleared.
    """
    _require_pair_owner(business, bank_account, project)
    if statement_date is None:
        raise ValidationError("Statement date is required.")
    if ending_balance in (None, ""):
        raise ValidationError("Statement ending balance is required.")

    checked = set(checked_ids)
    transactions = load_reconcilable_transactions(business, bank_account, project)
    balance = compute_reconciliation_balance(beginning_balance, transactions, checked, ending_balance)
    if not is_within_tolerance(balance.difference):
        raise ValidationError(
            f"Cannot finish reconciliation: difference is {balance.difference}, it must be 0.00."
        )
    unknown = checked - {tx.key for tx in transactions}
    if unknown:
        logger.warning(
            "reconciliation.unknown_checked_ids bank_account=%s keys=%s", bank_account.id, sorted(unknown)
        )

    with persistence_step("complete reconciliation", bank_account):
        reconciliation = (
            _reconciliations(business, bank_account, project)
            .select_for_update()
            .filter(status=BankReconciliation.Status.IN_PROGRESS)
            .first()
        ) or BankReconciliation(business=business, bank_account=bank_account, project=project)
        reconciliation.statement_date = statement_date
        reconciliation.statement_beginning_balance = from_cents(to_cents(beginning_balance))
        reconciliation.statement_ending_balance = from_cents(to_cents(ending_balance))
        reconciliation.reconciled_balance = balance.calculated_ending
        reconciliation.difference = Decimal("0.00")
        reconciliation.status = BankReconciliation.Status.COMPLETED
        reconciliation.checked_transaction_ids = sorted(checked - unknown)
        reconciliation.notes = notes or ""
        reconciliation.completed_at = timezone.now()
        reconciliation.completed_by = user
        reconciliation.save()

    to_reconcile = {kind: [] for kind in RECONCILABLE_MODELS}
    to_clear = {kind: [] for kind in RECONCILABLE_MODELS}
    for tx in transactions:
        desired = tx.key in checked
        if desired and not tx.reconciled:
            to_reconcile[tx.kind].append(tx.id)
        elif not desired and (tx.reconciled or tx.orphaned):
            to_clear[tx.kind].append(tx.id)

    reconciled_count = 0
    with persistence_step("mark transactions reconciled", reconciliation):
        for kind in RECONCILABLE_MODELS:
            reconciled_count += _set_reconciled(
                kind,
                to_reconcile[kind],
                {"reconciled": True, "reconciliation": reconciliation, "reconciliation_date": statement_date},
            )
            _set_reconciled(kind, to_clear[kind], UNRECONCILED)

    logger.info(
        "reconciliation.completed reconciliation=%s bank_account=%s statement_date=%s reconciled=%s",
        reconciliation.id,
        bank_account.id,
        statement_date.isoformat(),
        reconciled_count,
    )
    return reconciliation


def _unreconcile_tagged(reconciliation: BankReconciliation) -> dict:
    counts = {}
    for kind, model in RECONCILABLE_MODELS.items():
        counts[kind] = model.objects.filter(reconciliation=reconciliation).update(**UNRECONCILED)
    return counts


def _require_owned(business, reconciliation: BankReconciliation) -> None:
    if reconciliation.business_id != business.id:
        raise ValidationError("Reconciliation does not belong to this business.")


@transaction.atomic
def undo_reconciliation(business, reconciliation: BankReconciliation) -> dict:
    """
    Remove the most recent completed reconciliation of its pair and unreconcile
    exactly the records tagged with it. Any in-progress record for the pair is
    re-seeded with the new last completed ending balance.
    """
    _require_owned(business, reconciliation)
    if reconciliation.status != BankReconciliation.Status.COMPLETED:
        raise ValidationError("Only completed reconciliations can be undone.")
    bank_account = reconciliation.bank_account
    project = reconciliation.project
    latest = last_completed_reconciliation(business, bank_account, project)
    if latest is None or latest.id != reconciliation.id:
        raise ValidationError(
            "Only the most recent completed reconciliation for this account can be undone."
        )

    reconciliation_id = reconciliation.id
    with persistence_step("unreconcile transactions", reconciliation):
        counts = _unreconcile_tagged(reconciliation)
    with persistence_step("delete reconciliation", reconciliation):
        reconciliation.delete()

    previous = last_completed_reconciliation(business, bank_account, project)
    beginning = previous.statement_ending_balance if previous else Decimal("0.00")
    with persistence_step("re-seed in-progress beginning balance", bank_account):
        _reconciliations(business, bank_account, project).filter(
            status=BankReconciliation.Status.IN_PROGRESS
        ).update(statement_beginning_balance=beginning, updated_at=timezone.now())

    logger.info(
        "reconciliation.undone reconciliation=%s bank_account=%s counts=%s",
        reconciliation_id,
        bank_account.id,
        counts,
    )
    return counts


@transaction.atomic
def discard_reconciliation(business, reconciliation: BankReconciliation) -> dict:
    """Delete an in-progress reconciliation and release anything tagged to it."""
    _require_owned(business, reconciliation)
    if reconciliation.status != BankReconciliation.Status.IN_PROGRESS:
        raise ValidationError("Only in-progress reconciliations can be discarded.")
    reconciliation_id = reconciliation.id
    with persistence_step("discard reconciliation", reconciliation):
        counts = _unreconcile_tagged(reconciliation)
        reconciliation.delete()
    logger.info("reconciliation.discarded reconciliation=%s counts=%s", reconciliation_id, counts)
    return counts


def reconciliation_history(business, bank_account, project=None):
    return _reconciliations(business, bank_account, project).select_related("completed_by").order_by(
        "-statement_date", "-id"
    )
