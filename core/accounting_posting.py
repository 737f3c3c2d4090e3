import logging
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import Q
from django.utils.dateparse import parse_date

from core.accounting_defaults import get_ap_account, get_wip_account
from core.exceptions import persistence_step
from core.ledger_services import PostingLine, post_journal_entry
from core.models import (
    Account,
    Bill,
    BillLine,
    BillPayment,
    BillPaymentAllocation,
    CostCode,
    JournalEntry,
    Project,
    Vendor,
)
from core.utils import from_cents, prepend_note, to_cents, to_decimal

logger = logging.getLogger(__name__)

HEADER_FIELDS = ("bill_date", "due_date", "terms", "reference_number", "notes")
NOT_EDITABLE_STATUSES = {Bill.Status.PAID, Bill.Status.VOID, Bill.Status.REVERSED}


def _as_date(value, *, field: str, required: bool = False):
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required.")
        return None
    if hasattr(value, "year"):
        return value
    parsed = parse_date(str(value))
    if parsed is None:
        raise ValidationError(f"Invalid {field}: {value!r}.")
    return parsed


def _owned(model, business, pk, *, label: str):
    if pk in (None, ""):
        return None
    obj = model.objects.filter(business=business, pk=pk).first()
    if obj is None:
        raise ValidationError(f"{label} {pk} does not belong to this business.")
    return obj


def _apply_header(bill: Bill, business, bill_data: dict) -> None:
    vendor_id = bill_data.get("vendor_id", bill.vendor_id if bill.pk else None)
    vendor = _owned(Vendor, business, vendor_id, label="Vendor")
    if vendor is None:
        raise ValidationError("A vendor is required.")
    bill.vendor = vendor
    if "project_id" in bill_data or not bill.pk:
        bill.project = _owned(Project, business, bill_data.get("project_id"), label="Project")

    for field in HEADER_FIELDS:
        if field not in bill_data:
            continue
        value = bill_data[field]
        if field in ("bill_date", "due_date"):
            value = _as_date(value, field=field, required=field == "bill_date")
        else:
            value = value or ""
        setattr(bill, field, value)


def _build_lines(business, lines) -> list[BillLine]:
    """
    Validate caller line data and return unsaved BillLine objects.
    A line with a nonzero amount must name its target: a cost code for job
    cost lines, an account for expense lines.
    """
    if not lines:
        raise ValidationError("A bill needs at least one line.")

    built = []
    for index, data in enumerate(lines, start=1):
        line_type = data.get("line_type") or BillLine.LineType.EXPENSE
        if line_type not in BillLine.LineType.values:
            raise ValidationError(f"Line {index}: unknown line type {line_type!r}.")

        quantity = to_decimal(data.get("quantity", 1), field=f"line {index} quantity")
        unit_cost = to_decimal(data.get("unit_cost", 0) or 0, field=f"line {index} unit cost")
        raw_amount = data.get("amount")
        amount = (
            to_decimal(raw_amount, field=f"line {index} amount")
            if raw_amount not in (None, "")
            else quantity * unit_cost
        )
        amount = from_cents(to_cents(amount))

        account = _owned(Account, business, data.get("account_id"), label=f"Line {index}: account")
        cost_code = _owned(CostCode, business, data.get("cost_code_id"), label=f"Line {index}: cost code")
        project = _owned(Project, business, data.get("project_id"), label=f"Line {index}: project")

        if amount != 0:
            if line_type == BillLine.LineType.JOB_COST and cost_code is None:
                raise ValidationError(f"Line {index}: a cost code is required for job cost lines.")
            if line_type == BillLine.LineType.EXPENSE and account is None:
                raise ValidationError(f"Line {index}: an account is required for expense lines.")

        built.append(
            BillLine(
                line_number=index,
                line_type=line_type,
                account=account,
                cost_code=cost_code,
                project=project,
                quantity=quantity,
                unit_cost=unit_cost,
                amount=amount,
                memo=(data.get("memo") or "")[:255],
            )
        )
    return built


def _lines_total(lines: list[BillLine]) -> Decimal:
    return from_cents(sum(to_cents(line.amount) for line in lines))


def _save_lines(bill: Bill, lines: list[BillLine]) -> None:
    for line in lines:
        line.bill = bill
    BillLine.objects.bulk_create(lines)


@transaction.atomic
def create_bill(business, bill_data: dict, lines, user=None) -> Bill:
    """Create a draft bill; the total always comes from the lines."""
    bill = Bill(business=business, created_by=user, status=Bill.Status.DRAFT)
    _apply_header(bill, business, bill_data)
    built_lines = _build_lines(business, lines)
    bill.total_amount = _lines_total(built_lines)

    with persistence_step("create bill", bill):
        bill.save()
        _save_lines(bill, built_lines)

    logger.info("bills.created bill=%s business=%s total=%s", bill.id, business.id, bill.total_amount)
    return bill


def _bill_description(bill: Bill) -> str:
    kind = "Bill Credit" if bill.is_credit else "Bill"
    return f"{kind} from vendor - Ref: {bill.reference_number or 'N/A'}"


def build_bill_posting_lines(bill: Bill, lines: list[BillLine]) -> list[PostingLine]:
    """
    One posting line per nonzero bill line (WIP for job cost, the line's own
    account for expenses), closed by a single AP line for the bill total.
    Negative amounts flip the side.
    """
    ap_account = get_ap_account(bill.business)
    wip_account = None
    if any(line.line_type == BillLine.LineType.JOB_COST for line in lines):
        wip_account = get_wip_account(bill.business)

    posting_lines = []
    for line in lines:
        cents = to_cents(line.amount)
        if cents == 0:
            continue
        if line.line_type == BillLine.LineType.JOB_COST:
            account = wip_account
        else:
            account = line.account
            if account is None:
                raise ValidationError(f"Line {line.line_number}: expense account not selected.")
        amount = from_cents(abs(cents))
        is_credit_line = cents < 0
        posting_lines.append(
            PostingLine(
                account=account,
                debit=Decimal("0.00") if is_credit_line else amount,
                credit=amount if is_credit_line else Decimal("0.00"),
                project_id=line.project_id or bill.project_id,
                cost_code_id=line.cost_code_id,
                memo=line.memo,
            )
        )

    total_cents = sum(to_cents(line.amount) for line in lines)
    if total_cents != to_cents(bill.total_amount):
        raise ValidationError(
            f"Bill {bill} total {bill.total_amount} does not match its lines ({from_cents(total_cents)})."
        )
    if total_cents == 0:
        raise ValidationError(f"Bill {bill} has no value to post.")

    total = from_cents(abs(total_cents))
    posting_lines.append(
        PostingLine(
            account=ap_account,
            debit=total if bill.is_credit else Decimal("0.00"),
            credit=Decimal("0.00") if bill.is_credit else total,
            project_id=bill.project_id,
            memo=f"AP - {bill.reference_number or 'Bill'}{' (Credit)' if bill.is_credit else ''}",
        )
    )
    return posting_lines


@transaction.atomic
def post_bill(bill: Bill, user=None) -> JournalEntry:
    """Post a draft bill to the general ledger and mark it posted."""
    bill = Bill.objects.select_for_update().select_related("business").get(pk=bill.pk)
    if bill.status != Bill.Status.DRAFT:
        raise ValidationError(f"Bill {bill} is {bill.status}; only draft bills can be posted.")
    if bill.is_reversal:
        raise ValidationError(f"Bill {bill} is a reversal and cannot be posted again.")

    lines = list(bill.lines.all())
    posting_lines = build_bill_posting_lines(bill, lines)

    with persistence_step("post bill journal entry", bill):
        entry = post_journal_entry(
            bill.business,
            source_type=JournalEntry.SourceType.BILL,
            source_id=bill.id,
            entry_date=bill.bill_date,
            description=_bill_description(bill),
            lines=posting_lines,
            user=user,
        )
    with persistence_step("mark bill posted", bill):
        bill.status = Bill.Status.POSTED
        bill.save(update_fields=["status", "updated_at"])

    logger.info("bills.posted bill=%s journal_entry=%s total=%s", bill.id, entry.id, bill.total_amount)
    return entry


@transaction.atomic
def approve_bill(bill: Bill, user=None, notes: str | None = None) -> JournalEntry:
    """Record the approver's note (if any) and post the bill."""
    bill = Bill.objects.select_for_update().get(pk=bill.pk)
    if notes and notes.strip():
        bill.notes = prepend_note(bill.notes, user, notes)
        with persistence_step("save approval note", bill):
            bill.save(update_fields=["notes", "updated_at"])
    return post_bill(bill, user=user)


@transaction.atomic
def reject_bill(bill: Bill, user=None, notes: str | None = None) -> Bill:
    """Void a bill that has not reached the ledger. No journal impact."""
    bill = Bill.objects.select_for_update().get(pk=bill.pk)
    if bill.status != Bill.Status.DRAFT or bill.is_reversal:
        raise ValidationError(f"Bill {bill} is {bill.status} and cannot be rejected.")
    bill.status = Bill.Status.VOID
    bill.notes = prepend_note(bill.notes, user, notes)
    with persistence_step("reject bill", bill):
        bill.save(update_fields=["status", "notes", "updated_at"])
    logger.info("bills.rejected bill=%s", bill.id)
    return bill


@transaction.atomic
def update_bill(bill: Bill, bill_data: dict, lines, deleted_line_ids=(), user=None) -> Bill:
    """
    Replace a bill's header and lines and send it back to draft for review.

    Posted bills may be edited too. Their existing journal entry is left in
    place, so approving the edited bill posts a second, independent entry.
    """
    bill = Bill.objects.select_for_update().get(pk=bill.pk)
    if bill.status in NOT_EDITABLE_STATUSES or bill.is_reversal:
        raise ValidationError(f"Bill {bill} is {bill.status} and cannot be edited.")

    deleted_line_ids = {int(pk) for pk in deleted_line_ids or ()}
    if deleted_line_ids:
        own_ids = set(bill.lines.values_list("id", flat=True))
        unknown = deleted_line_ids - own_ids
        if unknown:
            raise ValidationError(f"Lines {sorted(unknown)} do not belong to bill {bill}.")

    was_posted = bill.status == Bill.Status.POSTED
    _apply_header(bill, bill.business, bill_data)
    built_lines = _build_lines(bill.business, lines)
    bill.total_amount = _lines_total(built_lines)
    bill.status = Bill.Status.DRAFT

    with persistence_step("update bill", bill):
        bill.save()
        bill.lines.all().delete()
        _save_lines(bill, built_lines)

    if was_posted:
        logger.warning(
            "bills.posted_bill_edited bill=%s journal_entries=%s",
            bill.id,
            list(
                JournalEntry.objects.filter(source_type=JournalEntry.SourceType.BILL, source_id=bill.id).values_list(
                    "id", flat=True
                )
            ),
        )
    logger.info("bills.updated bill=%s total=%s", bill.id, bill.total_amount)
    return bill


def _release_payment_allocations(bill_ids) -> int:
    """
    Take the deleted bills' allocations out of their payments' signed totals.
    Payments left without allocations are deleted. Returns that count.
    """
    allocations = BillPaymentAllocation.objects.filter(bill_id__in=bill_ids).select_related("bill")
    released = {}
    for allocation in allocations:
        cents = to_cents(allocation.amount_allocated)
        released.setdefault(allocation.bill_payment_id, 0)
        released[allocation.bill_payment_id] += -cents if allocation.bill.is_credit else cents

    deleted = 0
    for payment in BillPayment.objects.select_for_update().filter(id__in=released):
        if not payment.allocations.exclude(bill_id__in=bill_ids).exists():
            payment.delete()
            deleted += 1
            continue
        payment.total_amount = from_cents(to_cents(payment.total_amount) - released[payment.id])
        payment.save(update_fields=["total_amount"])
    return deleted


def _bill_journal_entries(bill_ids):
    return JournalEntry.objects.filter(
        Q(source_type=JournalEntry.SourceType.BILL) | Q(source_type=JournalEntry.SourceType.BILL_PAYMENT),
        source_id__in=bill_ids,
    )


@transaction.atomic
def delete_bill_with_journal_entries(bill: Bill) -> dict:
    """
    Administrative deletion: the bill, its lines, payment allocations and
    every journal entry it produced, including entries in its reversal chain.
    """
    bill_ids = {bill.id}
    bill_ids.update(Bill.objects.filter(reverses=bill).values_list("id", flat=True))

    entry_ids = set(_bill_journal_entries(bill_ids).values_list("id", flat=True))
    frontier = set(entry_ids)
    while frontier:
        linked = set(
            JournalEntry.objects.filter(Q(reverses_id__in=frontier) | Q(reversed_by_id__in=frontier)).values_list(
                "id", flat=True
            )
        )
        frontier = linked - entry_ids
        entry_ids |= frontier

    with persistence_step("delete bill journal entries", bill):
        BillPaymentAllocation.objects.filter(bill_id__in=bill_ids).update(journal_entry=None)
        JournalEntry.objects.filter(id__in=entry_ids).update(reverses=None, reversed_by=None)
        entries_deleted, _ = JournalEntry.objects.filter(id__in=entry_ids).delete()
    with persistence_step("release bill payments", bill):
        payments_deleted = _release_payment_allocations(bill_ids)
    with persistence_step("delete bill", bill):
        Bill.objects.filter(reversed_by_id__in=bill_ids).update(reversed_by=None)
        Bill.objects.filter(reverses_id__in=bill_ids).update(reverses=None)
        bills_deleted = Bill.objects.filter(id__in=bill_ids).delete()[1].get("core.Bill", 0)

    logger.info(
        "bills.deleted bill=%s journal_entries=%s bills=%s payments_deleted=%s",
        bill.id,
        len(entry_ids),
        bills_deleted,
        payments_deleted,
    )
    return {"bills": bills_deleted, "journal_entries": len(entry_ids)}
