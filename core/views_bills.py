import json
import logging

from django.contrib.auth.decorators import login_required
from django.http import HttpRequest, JsonResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.dateparse import parse_date
from django.views.decorators.http import require_GET, require_POST

from core.accounting_posting import (
    approve_bill,
    create_bill,
    delete_bill_with_journal_entries,
    reject_bill,
    update_bill,
)
from core.exceptions import LEDGER_ERRORS
from core.models import Account, Bill
from core.services.bill_payments import ensure_single_vendor, pay_bill, pay_bills
from core.utils import business_required, ledger_error_response, serialize_money

logger = logging.getLogger(__name__)

BILL_FIELDS = ("vendor_id", "project_id", "bill_date", "due_date", "terms", "reference_number", "notes")


def _json_error(message, status=400):
    return JsonResponse({"detail": message, "error": message}, status=status)


def _parse_json(request):
    try:
        return json.loads(request.body.decode("utf-8") or "{}")
    except Exception:
        return None


def _serialize_bill(bill: Bill) -> dict:
    return {
        "id": bill.id,
        "vendor_id": bill.vendor_id,
        "vendor_name": bill.vendor.name,
        "project_id": bill.project_id,
        "bill_date": bill.bill_date.isoformat() if bill.bill_date else None,
        "due_date": bill.due_date.isoformat() if bill.due_date else None,
        "terms": bill.terms,
        "reference_number": bill.reference_number,
        "notes": bill.notes,
        "total_amount": serialize_money(bill.total_amount),
        "amount_paid": serialize_money(bill.amount_paid),
        "remaining_balance": serialize_money(bill.remaining_balance),
        "status": bill.status,
        "is_reversal": bill.is_reversal,
        "reverses_id": bill.reverses_id,
        "reversed_by_id": bill.reversed_by_id,
        "lines": [
            {
                "id": line.id,
                "line_number": line.line_number,
                "line_type": line.line_type,
                "account_id": line.account_id,
                "cost_code_id": line.cost_code_id,
                "project_id": line.project_id,
                "quantity": str(line.quantity),
                "unit_cost": serialize_money(line.unit_cost),
                "amount": serialize_money(line.amount),
                "memo": line.memo,
            }
            for line in bill.lines.all()
        ],
    }


def _bill_data(body: dict) -> dict:
    return {field: body[field] for field in BILL_FIELDS if field in body}


def _get_bill(business, bill_id: int) -> Bill:
    return get_object_or_404(Bill.objects.select_related("vendor"), pk=bill_id, business=business)


def _payment_target(business, body: dict):
    account_id = body.get("payment_account_id")
    if not account_id:
        return None, None, _json_error("payment_account_id is required")
    account = Account.objects.filter(business=business, pk=account_id).first()
    if account is None:
        return None, None, _json_error("Payment account not found", status=404)
    raw_date = body.get("payment_date")
    payment_date = parse_date(raw_date) if raw_date else timezone.localdate()
    if payment_date is None:
        return None, None, _json_error("Invalid payment_date")
    return account, payment_date, None


@login_required
@require_POST
@business_required
def api_bill_create(request: HttpRequest, business):
    body = _parse_json(request)
    if body is None:
        return _json_error("Invalid JSON payload")
    try:
        bill = create_bill(business, _bill_data(body), body.get("lines") or [], user=request.user)
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    return JsonResponse({"bill": _serialize_bill(bill)}, status=201)


@login_required
@require_GET
@business_required
def api_bill_detail(request: HttpRequest, bill_id: int, business):
    return JsonResponse({"bill": _serialize_bill(_get_bill(business, bill_id))})


@login_required
@require_POST
@business_required
def api_bill_update(request: HttpRequest, bill_id: int, business):
    bill = _get_bill(business, bill_id)
    body = _parse_json(request)
    if body is None:
        return _json_error("Invalid JSON payload")
    try:
        bill = update_bill(
            bill,
            _bill_data(body),
            body.get("lines") or [],
            deleted_line_ids=body.get("deleted_line_ids") or [],
            user=request.user,
        )
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    except (TypeError, ValueError):
        return _json_error("deleted_line_ids must be a list of ids")
    return JsonResponse({"bill": _serialize_bill(_get_bill(business, bill.id))})


@login_required
@require_POST
@business_required
def api_bill_approve(request: HttpRequest, bill_id: int, business):
    bill = _get_bill(business, bill_id)
    body = _parse_json(request) or {}
    try:
        entry = approve_bill(bill, user=request.user, notes=body.get("notes"))
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    return JsonResponse(
        {"ok": True, "journal_entry_id": entry.id, "bill": _serialize_bill(_get_bill(business, bill_id))}
    )


@login_required
@require_POST
@business_required
def api_bill_reject(request: HttpRequest, bill_id: int, business):
    bill = _get_bill(business, bill_id)
    body = _parse_json(request) or {}
    try:
        bill = reject_bill(bill, user=request.user, notes=body.get("notes"))
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    return JsonResponse({"ok": True, "bill": _serialize_bill(bill)})


@login_required
@require_POST
@business_required
def api_bill_pay(request: HttpRequest, bill_id: int, business):
    bill = _get_bill(business, bill_id)
    body = _parse_json(request)
    if body is None:
        return _json_error("Invalid JSON payload")
    account, payment_date, error = _payment_target(business, body)
    if error:
        return error
    try:
        payment = pay_bill(
            bill,
            account,
            payment_date,
            amount=body.get("amount"),
            memo=body.get("memo") or "",
            user=request.user,
            check_number=body.get("check_number") or "",
        )
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    return JsonResponse(
        {
            "ok": True,
            "bill_payment_id": payment.id,
            "total_amount": serialize_money(payment.total_amount),
            "bill": _serialize_bill(_get_bill(business, bill_id)),
        }
    )


@login_required
@require_POST
@business_required
def api_bills_pay_batch(request: HttpRequest, business):
    body = _parse_json(request)
    if body is None:
        return _json_error("Invalid JSON payload")
    try:
        bill_ids = [int(pk) for pk in body.get("bill_ids") or []]
    except (TypeError, ValueError):
        return _json_error("bill_ids must be a list of ids")
    if not bill_ids:
        return _json_error("Select at least one bill to pay.")
    bills_by_id = {bill.id: bill for bill in Bill.objects.filter(business=business, pk__in=bill_ids)}
    missing = [pk for pk in bill_ids if pk not in bills_by_id]
    if missing:
        return _json_error(f"Bills not found: {missing}", status=404)
    bills = [bills_by_id[pk] for pk in bill_ids]

    account, payment_date, error = _payment_target(business, body)
    if error:
        return error
    try:
        ensure_single_vendor(bills)
        payment = pay_bills(
            bills,
            account,
            payment_date,
            memo=body.get("memo") or "",
            user=request.user,
            check_number=body.get("check_number") or "",
        )
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    return JsonResponse(
        {
            "ok": True,
            "bill_payment_id": payment.id,
            "total_amount": serialize_money(payment.total_amount),
            "paid_bill_ids": [bill.id for bill in bills],
        }
    )


@login_required
@require_POST
@business_required
def api_bill_delete(request: HttpRequest, bill_id: int, business):
    bill = _get_bill(business, bill_id)
    try:
        counts = delete_bill_with_journal_entries(bill)
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    logger.info("bills.deleted_via_api bill=%s user=%s", bill_id, request.user.pk)
    return JsonResponse({"ok": True, "deleted": counts})
