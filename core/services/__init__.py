# Ledger services: payments, bank reconciliation store and session
from .autosave import AutosaveScheduler
from .subscriptions import SubscriptionRegistry

__all__ = ["AutosaveScheduler", "SubscriptionRegistry"]
