import calendar
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import wraps

from django.core.exceptions import ValidationError
from django.http import JsonResponse

CENT = Decimal("0.01")


def get_current_business(user):
    """
    Return the primary Business for this user, or None.

    Ownership resolution beyond "the business this user owns" lives outside
    this app; if a user owns several businesses the oldest one wins.
    """
    if not user or not getattr(user, "is_authenticated", False):
        return None
    from .models import Business  # local import to avoid circular deps

    return Business.objects.filter(owner_user=user).order_by("id").first()


def business_required(view_func):
    """Decorator for JSON views that need the current user's Business."""

    @wraps(view_func)
    def _wrapped(request, *args, **kwargs):
        business = get_current_business(request.user)
        if not business:
            return JsonResponse({"error": "No business selected"}, status=401)
        return view_func(request, *args, business=business, **kwargs)

    return _wrapped


def to_decimal(value, *, field: str = "amount") -> Decimal:
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid {field}: {value!r}.") from exc
    # NaN and Infinity parse but cannot be quantized to cents.
    if not result.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}.")
    return result


def quantize_money(value) -> Decimal:
    return to_decimal(value or Decimal("0.00")).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value) -> int:
    """Money as an integer number of cents; all balance checks compare these."""
    return int(quantize_money(value) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def serialize_money(value) -> str:
    return f"{quantize_money(value):.2f}"


def end_of_month(day: date) -> date:
    _, last_day = calendar.monthrange(day.year, day.month)
    return date(day.year, day.month, last_day)


def end_of_following_month(day: date) -> date:
    year, month = (day.year + 1, 1) if day.month == 12 else (day.year, day.month + 1)
    return end_of_month(date(year, month, 1))


def user_display_name(user) -> str:
    if user is None:
        return "Unknown User"
    full_name = f"{user.first_name or ''} {user.last_name or ''}".strip()
    return full_name or "Unknown User"


def prepend_note(existing: str, user, text: str | None) -> str:
    """
    Attribute a new note to the user and put it above older notes.
    Prior notes are kept verbatim; blank input leaves notes untouched.
    """
    if not text or not text.strip():
        return existing or ""
    new_note = f"{user_display_name(user)}: {text.strip()}"
    if existing and existing.strip():
        return f"{new_note}\n\n{existing}"
    return new_note


def ledger_error_response(exc: Exception) -> JsonResponse:
    """Map a ledger engine exception to the JSON error shape the API returns."""
    from .exceptions import ConfigurationError, PartialBatchFailure, PersistenceError

    if isinstance(exc, ValidationError):
        message = "; ".join(exc.messages)
        return JsonResponse({"error": message, "detail": message}, status=400)
    if isinstance(exc, ConfigurationError):
        return JsonResponse({"error": str(exc), "code": "configuration"}, status=409)
    if isinstance(exc, PartialBatchFailure):
        return JsonResponse(
            {
                "error": str(exc),
                "failures": [{"bill_id": bill.pk, "error": message} for bill, message in exc.failures],
                "paid_bill_ids": [bill.pk for bill in exc.succeeded],
                "bill_payment_id": exc.payment.pk if exc.payment is not None else None,
            },
            status=207,
        )
    if isinstance(exc, PersistenceError):
        return JsonResponse({"error": str(exc), "step": exc.step}, status=500)
    raise exc
