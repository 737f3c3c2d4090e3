"""
Interactive bank reconciliation session.

One session works on one (bank account, project) pair at a time. Every field
setter updates the session and rebuilds an immutable pending snapshot; the
autosave writes only that snapshot, so several edits inside the debounce
window always persist their latest values.

States:
    UNSELECTED  no bank account chosen yet
    EDITABLE    beginning balance fixed, statement fields open
    LOCKED      reviewing the matched set; balance fields frozen

Finishing returns the session to EDITABLE for the next statement period.
"""
import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.utils import timezone
from django.utils.dateparse import parse_date

from core.models import BankReconciliation
from core.services import bank_reconciliation as store
from core.services.autosave import AutosaveScheduler
from core.services.bank_reconciliation import (
    ReconcilableTransaction,
    ReconciliationBalance,
    compute_reconciliation_balance,
    is_within_tolerance,
)
from core.services.subscriptions import SubscriptionRegistry
from core.utils import from_cents, to_cents, to_decimal

logger = logging.getLogger(__name__)

__all__ = [
    "FinishResult",
    "PendingWrite",
    "ReconciliationSession",
    "SessionState",
    "compute_reconciliation_balance",
]

EVENT_SAVED = "reconciliation.saved"
EVENT_COMPLETED = "reconciliation.completed"
EVENT_UNDONE = "reconciliation.undone"
EVENT_DISCARDED = "reconciliation.discarded"
EVENT_LOADED = "reconciliation.transactions_loaded"


class SessionState(enum.Enum):
    UNSELECTED = "unselected"
    EDITABLE = "editable"
    LOCKED = "locked"


@dataclass(frozen=True)
class PendingWrite:
    """What the next save will write. Replaced wholesale on every edit."""

    statement_date: Optional[date] = None
    beginning_balance: Decimal = Decimal("0.00")
    ending_balance: Optional[Decimal] = None
    notes: str = ""
    checked_ids: frozenset = field(default_factory=frozenset)

    @property
    def is_meaningful(self) -> bool:
        return bool(self.checked_ids) or self.ending_balance is not None or bool(self.notes.strip())


@dataclass
class FinishResult:
    completed: bool
    requires_confirmation: bool = False
    reconciliation: Optional[BankReconciliation] = None
    unmatched: list = field(default_factory=list)


def _as_money(value, *, field_name: str) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    return from_cents(to_cents(to_decimal(value, field=field_name)))


def _as_date(value, *, field_name: str) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    parsed = parse_date(str(value))
    if parsed is None:
        raise ValidationError(f"Invalid {field_name}: {value!r}.")
    return parsed


class ReconciliationSession:
    def __init__(
        self,
        business,
        user=None,
        *,
        subscriptions: Optional[SubscriptionRegistry] = None,
        clock=None,
        autosave_delay: Optional[float] = None,
    ):
        self.business = business
        self.user = user
        self.subscriptions = subscriptions if subscriptions is not None else SubscriptionRegistry()
        if autosave_delay is None:
            autosave_delay = getattr(settings, "RECONCILIATION_AUTOSAVE_DELAY_SECONDS", 3)
        self.autosave = AutosaveScheduler(self._autosave, autosave_delay, clock=clock)

        self.state = SessionState.UNSELECTED
        self.bank_account = None
        self.project = None
        self.transactions: list[ReconcilableTransaction] = []
        self.hide_after: Optional[date] = None
        self.reconciliation_id: Optional[int] = None
        self._pending = PendingWrite()
        self._persisted: Optional[PendingWrite] = None
        self._restored = False

    # -- read side -----------------------------------------------------

    @property
    def statement_date(self) -> Optional[date]:
        return self._pending.statement_date

    @property
    def beginning_balance(self) -> Decimal:
        return self._pending.beginning_balance

    @property
    def ending_balance(self) -> Optional[Decimal]:
        return self._pending.ending_balance

    @property
    def notes(self) -> str:
        return self._pending.notes

    @property
    def checked_ids(self) -> frozenset:
        return self._pending.checked_ids

    @property
    def pending_write(self) -> PendingWrite:
        return self._pending

    @property
    def is_restored(self) -> bool:
        return self._restored

    @property
    def visible_transactions(self) -> list[ReconcilableTransaction]:
        return [
            tx
            for tx in self.transactions
            if not tx.reconciled and (self.hide_after is None or tx.date <= self.hide_after)
        ]

    @property
    def balance(self) -> ReconciliationBalance:
        return compute_reconciliation_balance(
            self.beginning_balance,
            self.transactions,
            self.checked_ids,
            self.ending_balance or Decimal("0.00"),
        )

    @property
    def difference(self) -> Decimal:
        return self.balance.difference

    # -- account selection and restore ---------------------------------

    def select_bank_account(self, bank_account, project=None) -> None:
        if bank_account.business_id != self.business.id:
            raise ValidationError("Bank account does not belong to this business.")
        if project is not None and project.business_id != self.business.id:
            raise ValidationError("Project does not belong to this business.")
        if self.bank_account is not None:
            self._flush_before_leaving()

        self.bank_account = bank_account
        self.project = project
        self.reconciliation_id = None
        self.hide_after = None
        self._restored = False
        self._persisted = None
        self.autosave.cancel()

        last = store.last_completed_reconciliation(self.business, bank_account, project)
        beginning = last.statement_ending_balance if last else Decimal("0.00")
        self._pending = PendingWrite(beginning_balance=from_cents(to_cents(beginning)))
        self.state = SessionState.EDITABLE
        self.reload_transactions()
        self.load_in_progress()

    def reload_transactions(self) -> None:
        self.transactions = store.load_reconcilable_transactions(self.business, self.bank_account, self.project)
        self.subscriptions.notify(EVENT_LOADED, session=self, count=len(self.transactions))

    def load_in_progress(self) -> Optional[BankReconciliation]:
        """
        Restore the pair's saved in-progress record, or default the statement
        date. Autosave stays disabled until this has run.
        """
        self._require_selected()
        record = store.get_in_progress_reconciliation(self.business, self.bank_account, self.project)
        if record is not None:
            self.reconciliation_id = record.id
            self._pending = replace(
                self._pending,
                statement_date=record.statement_date,
                ending_balance=record.statement_ending_balance,
                notes=record.notes or "",
                checked_ids=frozenset(record.checked_transaction_ids or ()),
            )
            self._persisted = self._pending
        else:
            last = store.last_completed_reconciliation(self.business, self.bank_account, self.project)
            self._pending = replace(
                self._pending,
                statement_date=store.default_statement_date(
                    last.statement_date if last else None, timezone.localdate()
                ),
            )
        self._restored = True
        return record

    # -- edits ---------------------------------------------------------

    def toggle_transaction(self, key: str) -> bool:
        """Flip one transaction's cleared flag. Returns the new flag."""
        self._require_selected()
        known = {tx.key: tx for tx in self.transactions}
        tx = known.get(key)
        checked = set(self.checked_ids)
        if tx is None and key not in checked:
            raise ValidationError(f"Transaction {key} is not available for this reconciliation.")
        if tx is not None and tx.reconciled:
            raise ValidationError(f"Transaction {key} is already reconciled.")
        if key in checked:
            checked.remove(key)
        else:
            checked.add(key)
        self._update(checked_ids=frozenset(checked), autosave=True)
        return key in checked

    def select_all_visible(self, checked: bool = True) -> None:
        self._require_selected()
        keys = {tx.key for tx in self.visible_transactions}
        current = set(self.checked_ids)
        current = current | keys if checked else current - keys
        self._update(checked_ids=frozenset(current), autosave=True)

    def set_ending_balance(self, value) -> None:
        self._require_unlocked()
        self._update(ending_balance=_as_money(value, field_name="ending balance"), autosave=True)

    def set_statement_date(self, value) -> None:
        self._require_unlocked()
        statement_date = _as_date(value, field_name="statement date")
        if statement_date is None:
            raise ValidationError("Statement date is required.")
        self._update(statement_date=statement_date)

    def set_notes(self, text: str) -> None:
        self._require_selected()
        self._update(notes=text or "", autosave=True)

    def set_hide_after(self, value) -> None:
        self._require_selected()
        self.hide_after = _as_date(value, field_name="hide after date")

    # -- persistence ---------------------------------------------------

    def save_progress(self) -> Optional[BankReconciliation]:
        self._require_selected()
        self.autosave.cancel()
        return self._write(self._pending)

    def tick(self) -> bool:
        return self.autosave.tick()

    def on_page_hide(self) -> bool:
        return self.autosave.flush()

    def close(self) -> None:
        self.autosave.flush()
        self.subscriptions.clear()

    def _autosave(self) -> None:
        self._write(self._pending)

    def _write(self, snapshot: PendingWrite) -> Optional[BankReconciliation]:
        # A blank session must never overwrite a saved one.
        if not self._restored or self.bank_account is None or not snapshot.is_meaningful:
            return None
        balance = compute_reconciliation_balance(
            snapshot.beginning_balance,
            self.transactions,
            snapshot.checked_ids,
            snapshot.ending_balance or Decimal("0.00"),
        )
        record = store.save_in_progress(
            self.business,
            self.bank_account,
            self.project,
            statement_date=snapshot.statement_date,
            beginning_balance=snapshot.beginning_balance,
            ending_balance=snapshot.ending_balance,
            checked_ids=snapshot.checked_ids,
            notes=snapshot.notes,
            reconciled_balance=balance.calculated_ending,
            difference=balance.difference if snapshot.ending_balance is not None else None,
        )
        self.reconciliation_id = record.id
        self._persisted = snapshot
        self.subscriptions.notify(EVENT_SAVED, session=self, reconciliation=record)
        return record

    def _flush_before_leaving(self) -> None:
        """Save pending work for the current pair with balance edits reverted."""
        if not self.autosave.pending:
            return
        self.autosave.cancel()
        self._write(self._with_persisted_balances(self._pending))

    def _with_persisted_balances(self, snapshot: PendingWrite) -> PendingWrite:
        persisted = self._persisted
        return replace(
            snapshot,
            ending_balance=persisted.ending_balance if persisted else None,
            statement_date=persisted.statement_date if persisted else snapshot.statement_date,
        )

    # -- review and finish ---------------------------------------------

    def begin_review(self) -> None:
        self._require_selected()
        self.state = SessionState.LOCKED

    def cancel_review(self) -> None:
        """Leave review; unsaved balance edits are dropped, the checked set stays."""
        if self.state != SessionState.LOCKED:
            return
        self._pending = self._with_persisted_balances(self._pending)
        self.state = SessionState.EDITABLE

    def unmatched_visible(self) -> list[ReconcilableTransaction]:
        checked = self.checked_ids
        return [tx for tx in self.visible_transactions if tx.key not in checked]

    def finish(self, confirm: bool = False) -> FinishResult:
        """
        Complete the statement period. Requires a zero difference; when
        visible transactions are still unmatched the caller has to confirm.
        """
        self._require_selected()
        if self.ending_balance is None:
            raise ValidationError("Enter the statement ending balance before finishing.")
        if self.statement_date is None:
            raise ValidationError("Statement date is required.")
        difference = self.difference
        if not is_within_tolerance(difference):
            raise ValidationError(f"Cannot finish reconciliation: difference is {difference}, it must be 0.00.")

        unmatched = self.unmatched_visible()
        if unmatched and not confirm:
            logger.info(
                "reconciliation.finish_needs_confirmation bank_account=%s unmatched=%s",
                self.bank_account.id,
                len(unmatched),
            )
            return FinishResult(completed=False, requires_confirmation=True, unmatched=unmatched)

        self.autosave.cancel()
        record = store.complete_reconciliation(
            self.business,
            self.bank_account,
            self.project,
            statement_date=self.statement_date,
            beginning_balance=self.beginning_balance,
            ending_balance=self.ending_balance,
            checked_ids=self.checked_ids,
            notes=self.notes,
            user=self.user,
        )
        self._start_next_period(record)
        self.subscriptions.notify(EVENT_COMPLETED, session=self, reconciliation=record)
        return FinishResult(completed=True, reconciliation=record, unmatched=unmatched)

    def _start_next_period(self, completed: BankReconciliation) -> None:
        self.reconciliation_id = None
        self._persisted = None
        self.hide_after = None
        self._pending = PendingWrite(
            beginning_balance=completed.statement_ending_balance,
            statement_date=store.default_statement_date(completed.statement_date),
        )
        self.state = SessionState.EDITABLE
        self._restored = True
        self.reload_transactions()

    # -- undo and discard ----------------------------------------------

    def undo(self, reconciliation: BankReconciliation) -> dict:
        """Undo the latest completed reconciliation and reload its account."""
        reconciliation_id = reconciliation.id
        counts = store.undo_reconciliation(self.business, reconciliation)
        if (
            self.bank_account is not None
            and self.bank_account.id == reconciliation.bank_account_id
            and (self.project.id if self.project else None) == reconciliation.project_id
        ):
            self.autosave.cancel()
            bank_account, project = self.bank_account, self.project
            self.bank_account = None
            self.select_bank_account(bank_account, project)
        self.subscriptions.notify(EVENT_UNDONE, session=self, reconciliation_id=reconciliation_id, counts=counts)
        return counts

    def discard(self) -> dict:
        """Throw away the in-progress record for the current pair."""
        self._require_selected()
        self.autosave.cancel()
        record = store.get_in_progress_reconciliation(self.business, self.bank_account, self.project)
        counts = store.discard_reconciliation(self.business, record) if record is not None else {}
        bank_account, project = self.bank_account, self.project
        self.bank_account = None
        self.select_bank_account(bank_account, project)
        self.subscriptions.notify(EVENT_DISCARDED, session=self, counts=counts)
        return counts

    # -- helpers -------------------------------------------------------

    def _update(self, *, autosave: bool = False, **changes) -> None:
        self._pending = replace(self._pending, **changes)
        if autosave:
            self.autosave.schedule()

    def _require_selected(self) -> None:
        if self.state == SessionState.UNSELECTED or self.bank_account is None:
            raise ValidationError("Select a bank account first.")

    def _require_unlocked(self) -> None:
        self._require_selected()
        if self.state == SessionState.LOCKED:
            raise ValidationError("Balances are locked while the reconciliation is under review.")

    def to_dict(self) -> dict:
        balance = self.balance
        visible = {tx.key for tx in self.visible_transactions}
        return {
            "state": self.state.value,
            "bank_account_id": self.bank_account.id if self.bank_account else None,
            "project_id": self.project.id if self.project else None,
            "reconciliation_id": self.reconciliation_id,
            "statement_date": self.statement_date.isoformat() if self.statement_date else None,
            "beginning_balance": f"{self.beginning_balance:.2f}",
            "ending_balance": f"{self.ending_balance:.2f}" if self.ending_balance is not None else None,
            "notes": self.notes,
            "checked_transaction_ids": sorted(self.checked_ids),
            "hide_after": self.hide_after.isoformat() if self.hide_after else None,
            "cleared_deposits": f"{balance.cleared_deposits:.2f}",
            "cleared_payments": f"{balance.cleared_payments:.2f}",
            "calculated_ending": f"{balance.calculated_ending:.2f}",
            "difference": f"{balance.difference:.2f}",
            "transactions": [
                {
                    "key": tx.key,
                    "kind": tx.kind,
                    "id": tx.id,
                    "date": tx.date.isoformat(),
                    "amount": f"{tx.amount:.2f}",
                    "is_deposit": tx.is_deposit,
                    "payee": tx.payee,
                    "reference": tx.reference,
                    "reconciled": tx.reconciled,
                    "orphaned": tx.orphaned,
                    "visible": tx.key in visible,
                }
                for tx in self.transactions
            ],
        }
