"""
Bill correction: reverse a posted bill and open a corrected replacement.

The original bill keeps every field it had; it is only marked reversed. A
reversing bill with negated lines and mirrored journal entries cancels its
ledger effect, and the corrected bill starts over as a new draft.
"""
import logging
from dataclasses import dataclass, field

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from core.accounting_posting import create_bill
from core.exceptions import persistence_step
from core.ledger_services import mirror_journal_entry
from core.models import Bill, BillLine, JournalEntry
from core.utils import prepend_note, to_cents

logger = logging.getLogger(__name__)


@dataclass
class BillCorrection:
    original: Bill
    reversing_bill: Bill
    corrected_bill: Bill
    reversing_entries: list[JournalEntry] = field(default_factory=list)


def _check_correctable(bill: Bill) -> None:
    if bill.is_reversal:
        raise ValidationError(f"Bill {bill} is itself a reversal and cannot be corrected.")
    if bill.status == Bill.Status.REVERSED or bill.reversed_by_id:
        raise ValidationError(f"Bill {bill} has already been reversed.")
    if bill.status != Bill.Status.POSTED:
        raise ValidationError(f"Bill {bill} is {bill.status}; only posted bills can be corrected.")
    if to_cents(bill.amount_paid) > 0:
        raise ValidationError(f"Bill {bill} has payments applied; reverse the payments first.")


def _create_reversing_bill(original: Bill, user) -> Bill:
    reversing = Bill.objects.create(
        business=original.business,
        vendor=original.vendor,
        project=original.project,
        bill_date=original.bill_date,
        due_date=original.due_date,
        terms=original.terms,
        reference_number=original.reference_number,
        notes=f"REVERSAL of bill {original.reference_number or f'#{original.id}'}",
        total_amount=-original.total_amount,
        status=Bill.Status.POSTED,
        is_reversal=True,
        reverses=original,
        created_by=user,
    )
    BillLine.objects.bulk_create(
        [
            BillLine(
                bill=reversing,
                line_number=line.line_number,
                line_type=line.line_type,
                account_id=line.account_id,
                cost_code_id=line.cost_code_id,
                project_id=line.project_id,
                quantity=-line.quantity,
                unit_cost=line.unit_cost,
                amount=-line.amount,
                memo=f"REVERSAL: {line.memo or ''}"[:255],
            )
            for line in original.lines.all()
        ]
    )
    return reversing


@transaction.atomic
def correct_bill(bill: Bill, corrected_data: dict, corrected_lines, reason: str | None = None, user=None) -> BillCorrection:
    """
    Reverse ``bill`` and create its corrected replacement in one transaction.

    Any database failure is raised as PersistenceError naming the step that
    failed; nothing is retried.
    """
    original = Bill.objects.select_for_update().select_related("business", "vendor").get(pk=bill.pk)
    _check_correctable(original)

    with persistence_step("mark original bill reversed", original):
        original.status = Bill.Status.REVERSED
        original.reversed_at = timezone.now()
        original.save(update_fields=["status", "reversed_at", "updated_at"])

    with persistence_step("create reversing bill", original):
        reversing_bill = _create_reversing_bill(original, user)
        original.reversed_by = reversing_bill
        original.save(update_fields=["reversed_by", "updated_at"])

    reversing_entries = []
    entries = JournalEntry.objects.filter(
        business=original.business,
        source_type=JournalEntry.SourceType.BILL,
        source_id=original.id,
        is_reversal=False,
        reversed_by__isnull=True,
    ).order_by("id")
    for entry in entries:
        with persistence_step("mirror bill journal entry", original):
            reversing_entries.append(mirror_journal_entry(entry, source_id=reversing_bill.id, user=user))

    data = {"vendor_id": original.vendor_id, "project_id": original.project_id}
    data.update(corrected_data or {})
    with persistence_step("create corrected bill", original):
        corrected_bill = create_bill(original.business, data, corrected_lines, user=user)
        if reason and reason.strip():
            corrected_bill.notes = prepend_note(corrected_bill.notes, user, f"Correction of bill {original}: {reason}")
            corrected_bill.save(update_fields=["notes", "updated_at"])

    logger.info(
        "bills.corrected bill=%s reversing_bill=%s corrected_bill=%s reversing_entries=%s",
        original.id,
        reversing_bill.id,
        corrected_bill.id,
        [entry.id for entry in reversing_entries],
    )
    return BillCorrection(
        original=original,
        reversing_bill=reversing_bill,
        corrected_bill=corrected_bill,
        reversing_entries=reversing_entries,
    )
