import json
import logging

from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import HttpRequest, JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET, require_POST
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import LEDGER_ERRORS
from core.models import Account, BankReconciliation, Project
from core.serializers import BankReconciliationSerializer
from core.services.bank_reconciliation import last_completed_reconciliation, reconciliation_history
from core.services.reconciliation_session import ReconciliationSession
from core.utils import get_current_business, ledger_error_response

logger = logging.getLogger(__name__)


def _json_error(message, status=400, code: str | None = None):
    payload = {"detail": message, "error": message}
    if code:
        payload["code"] = code
    return JsonResponse(payload, status=status)


def _parse_json(request):
    try:
        return json.loads(request.body.decode("utf-8") or "{}")
    except Exception:
        return None


def _ensure_business(request):
    business = get_current_business(request.user)
    if business is None:
        return None, JsonResponse({"error": "No business selected"}, status=401)
    return business, None


def _resolve_pair(business, params):
    """(bank_account, project) from request params; raises Http404 for foreign ids."""
    account_id = params.get("bank_account_id")
    if not account_id:
        raise ValidationError("bank_account_id is required")
    bank_account = get_object_or_404(
        Account, pk=account_id, business=business, type=Account.AccountType.ASSET
    )
    project_id = params.get("project_id")
    project = get_object_or_404(Project, pk=project_id, business=business) if project_id else None
    return bank_account, project


def _open_session(request, business, params) -> ReconciliationSession:
    bank_account, project = _resolve_pair(business, params)
    session = ReconciliationSession(business, request.user)
    session.select_bank_account(bank_account, project)
    return session


def _apply_session_fields(session: ReconciliationSession, body: dict) -> None:
    if "statement_date" in body:
        session.set_statement_date(body["statement_date"])
    if "ending_balance" in body:
        session.set_ending_balance(body["ending_balance"])
    if "notes" in body:
        session.set_notes(body["notes"] or "")
    if "hide_after" in body:
        session.set_hide_after(body["hide_after"])
    if "checked_transaction_ids" in body:
        desired = body["checked_transaction_ids"] or []
        if not isinstance(desired, list):
            raise ValidationError("checked_transaction_ids must be a list")
        for key in sorted(set(desired) ^ set(session.checked_ids)):
            session.toggle_transaction(str(key))


def _session_payload(session: ReconciliationSession) -> dict:
    payload = session.to_dict()
    last = last_completed_reconciliation(session.business, session.bank_account, session.project)
    payload["last_completed_reconciliation_id"] = last.id if last else None
    return payload


@login_required
@require_GET
def api_reconciliation_session(request: HttpRequest):
    business, error = _ensure_business(request)
    if error:
        return error
    try:
        session = _open_session(request, business, request.GET)
        session.set_hide_after(request.GET.get("hide_after"))
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    return JsonResponse(_session_payload(session))


@login_required
@require_POST
def api_reconciliation_session_save(request: HttpRequest):
    business, error = _ensure_business(request)
    if error:
        return error
    body = _parse_json(request)
    if body is None:
        return _json_error("Invalid JSON payload")
    try:
        session = _open_session(request, business, body)
        _apply_session_fields(session, body)
        record = session.save_progress()
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    payload = _session_payload(session)
    payload["saved"] = record is not None
    return JsonResponse(payload)


@login_required
@require_POST
def api_reconciliation_session_finish(request: HttpRequest):
    business, error = _ensure_business(request)
    if error:
        return error
    body = _parse_json(request)
    if body is None:
        return _json_error("Invalid JSON payload")
    try:
        session = _open_session(request, business, body)
        _apply_session_fields(session, body)
        result = session.finish(confirm=bool(body.get("confirm")))
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)

    if result.requires_confirmation:
        # Keep the user's work while they decide.
        session.save_progress()
        return JsonResponse(
            {
                "ok": False,
                "requires_confirmation": True,
                "warning": (
                    f"{len(result.unmatched)} transaction(s) are neither reconciled nor checked "
                    "although the difference is already zero."
                ),
                "unmatched_transaction_ids": [tx.key for tx in result.unmatched],
                "session": _session_payload(session),
            }
        )
    return JsonResponse(
        {
            "ok": True,
            "reconciliation": BankReconciliationSerializer(result.reconciliation).data,
            "session": _session_payload(session),
        }
    )


@login_required
@require_POST
def api_reconciliation_undo(request: HttpRequest, reconciliation_id: int):
    business, error = _ensure_business(request)
    if error:
        return error
    reconciliation = get_object_or_404(BankReconciliation, pk=reconciliation_id, business=business)
    session = ReconciliationSession(business, request.user)
    try:
        counts = session.undo(reconciliation)
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    return JsonResponse({"ok": True, "unreconciled": counts})


@login_required
@require_POST
def api_reconciliation_discard(request: HttpRequest, reconciliation_id: int):
    business, error = _ensure_business(request)
    if error:
        return error
    reconciliation = get_object_or_404(BankReconciliation, pk=reconciliation_id, business=business)
    if reconciliation.status != BankReconciliation.Status.IN_PROGRESS:
        return _json_error("Only in-progress reconciliations can be discarded.")
    session = ReconciliationSession(business, request.user)
    try:
        session.select_bank_account(reconciliation.bank_account, reconciliation.project)
        counts = session.discard()
    except LEDGER_ERRORS as exc:
        return ledger_error_response(exc)
    return JsonResponse({"ok": True, "unreconciled": counts})


class ReconciliationHistoryView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        business = get_current_business(request.user)
        if business is None:
            return Response({"detail": "Business not found."}, status=status.HTTP_404_NOT_FOUND)
        try:
            bank_account, project = _resolve_pair(business, request.query_params)
        except ValidationError as exc:
            return Response({"detail": "; ".join(exc.messages)}, status=status.HTTP_400_BAD_REQUEST)
        records = reconciliation_history(business, bank_account, project)
        return Response({"results": BankReconciliationSerializer(records, many=True).data})
