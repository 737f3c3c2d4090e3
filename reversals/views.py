from __future__ import annotations

import json
from decimal import Decimal

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_POST

from core.exceptions import LEDGER_ERRORS
from core.models import Bill, JournalEntry
from core.utils import get_current_business, ledger_error_response
from reversals.services.bill_corrections import correct_bill

BILL_FIELDS = ("vendor_id", "project_id", "bill_date", "due_date", "terms", "reference_number", "notes")


def _json_from_body(request):
    try:
        return json.loads(request.body.decode("utf-8") or "{}")
    except Exception:
        return None


def _serialize_money(value: Decimal | None) -> str:
    return f"{Decimal(value or Decimal('0.00')):.2f}"


def _serialize_bill_summary(bill: Bill) -> dict:
    return {
        "id": bill.id,
        "reference_number": bill.reference_number,
        "status": bill.status,
        "total_amount": _serialize_money(bill.total_amount),
        "is_reversal": bill.is_reversal,
        "reverses_id": bill.reverses_id,
        "reversed_by_id": bill.reversed_by_id,
        "notes": bill.notes,
    }


def _serialize_entry(entry: JournalEntry) -> dict:
    return {
        "id": entry.id,
        "description": entry.description,
        "entry_date": entry.entry_date.isoformat(),
        "reverses_id": entry.reverses_id,
        "lines": [
            {
                "account_id": line.account_id,
                "debit": _serialize_money(line.debit),
                "credit": _serialize_money(line.credit),
                "memo": line.memo,
            }
            for line in entry.lines.all()
        ],
    }


@login_required
@require_POST
def api_bill_correct(request, bill_id: int):
    business = get_current_business(request.user)
    if business is None:
        return JsonResponse({"error": "No business context"}, status=400)

    bill = Bill.objects.filter(business=business, pk=bill_id).select_related("vendor").first()
    if not bill:
        return JsonResponse({"error": "Not found"}, status=404)

    payload = _json_from_body(request)
    if payload is None:
        return JsonResponse({"error": "Invalid JSON payload"}, status=400)
    corrected = payload.get("corrected_bill") or {}
    corrected_data = {field: corrected[field] for field in BILL_FIELDS if field in corrected}

    try:
        result = correct_bill(
            bill,
            corrected_data,
            corrected.get("lines") or [],
            reason=payload.get("reason"),
            user=request.user,
        )
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)

    return JsonResponse(
        {
            "ok": True,
            "original": _serialize_bill_summary(result.original),
            "reversing_bill": _serialize_bill_summary(result.reversing_bill),
            "reversing_entries": [_serialize_entry(entry) for entry in result.reversing_entries],
            "corrected_bill": _serialize_bill_summary(result.corrected_bill),
        },
        status=201,
    )
