from dataclasses import dataclass
from decimal import Decimal

from django.db.models import Sum
from django.utils import timezone

from .models import Account, JournalEntry, JournalLine


def get_account_balance(account: Account) -> Decimal:
    """
    Compute the live balance for an account using all journal lines.
    Assets/Expenses return debit - credit; everything else uses credit - debit.
    """
    agg = JournalLine.objects.filter(account=account).aggregate(
        debit_sum=Sum("debit"),
        credit_sum=Sum("credit"),
    )
    debit = agg["debit_sum"] or Decimal("0")
    credit = agg["credit_sum"] or Decimal("0")

    if account.type in (Account.AccountType.ASSET, Account.AccountType.EXPENSE):
        return debit - credit
    return credit - debit


@dataclass
class PostingLine:
    account: Account
    debit: Decimal = Decimal("0.00")
    credit: Decimal = Decimal("0.00")
    project_id: int | None = None
    cost_code_id: int | None = None
    memo: str = ""


def post_journal_entry(
    business,
    *,
    source_type: str,
    source_id: int | None,
    entry_date,
    description: str,
    lines: list[PostingLine],
    user=None,
) -> JournalEntry:
    """
    Write one journal entry and its numbered lines, then verify it balances.
    Callers run this inside their own transaction so an unbalanced entry
    rolls back with the rest of the operation.
    """
    entry = JournalEntry.objects.create(
        business=business,
        source_type=source_type,
        source_id=source_id,
        entry_date=entry_date,
        description=description[:255],
        created_by=user,
    )
    JournalLine.objects.bulk_create(
        [
            JournalLine(
                journal_entry=entry,
                line_number=index,
                account=line.account,
                debit=line.debit,
                credit=line.credit,
                project_id=line.project_id,
                cost_code_id=line.cost_code_id,
                memo=(line.memo or "")[:255],
            )
            for index, line in enumerate(lines, start=1)
        ]
    )
    entry.check_balance()
    return entry


def mirror_journal_entry(entry: JournalEntry, *, source_id: int | None, user=None) -> JournalEntry:
    """
    Create the reversing twin of ``entry``: same accounts and dimensions with
    debit and credit swapped, linked both ways. The original lines are not
    touched apart from the reversal link on the entry header.
    """
    reversing = JournalEntry.objects.create(
        business=entry.business,
        source_type=entry.source_type,
        source_id=source_id,
        entry_date=entry.entry_date,
        description=f"REVERSAL: {entry.description}"[:255],
        is_reversal=True,
        reverses=entry,
        created_by=user,
    )
    JournalLine.objects.bulk_create(
        [
            JournalLine(
                journal_entry=reversing,
                line_number=index,
                account_id=line.account_id,
                debit=line.credit,
                credit=line.debit,
                project_id=line.project_id,
                cost_code_id=line.cost_code_id,
                memo=f"REVERSAL: {line.memo or ''}"[:255],
                is_reversal=True,
                reverses_line=line,
            )
            for index, line in enumerate(entry.lines.order_by("line_number", "id"), start=1)
        ]
    )
    reversing.check_balance()

    entry.reversed_by = reversing
    entry.reversed_at = timezone.now()
    entry.save(update_fields=["reversed_by", "reversed_at"])
    return reversing
