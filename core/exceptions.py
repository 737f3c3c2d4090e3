"""
Errors raised by the posting, payment and reconciliation engines.

Input problems use django.core.exceptions.ValidationError; the classes here
cover the cases a caller has to treat differently from bad input.
"""
import logging
from contextlib import contextmanager

from django.core.exceptions import ValidationError
from django.db import DatabaseError

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """A posting account (AP/WIP) is not set in Accounting Settings."""


class PersistenceError(Exception):
    """
    A database write failed partway through a multi-step ledger operation.

    ``step`` names the step that failed so the operator can see how far the
    operation got before it was rolled back.
    """

    def __init__(self, message: str, *, step: str, document=None):
        super().__init__(message)
        self.step = step
        self.document = document

    def __str__(self):
        base = super().__str__()
        if self.document is not None:
            return f"{base} (step: {self.step}, document: {self.document})"
        return f"{base} (step: {self.step})"


class PartialBatchFailure(Exception):
    """
    Some bills in a batch payment failed. Bills that were paid before or after
    a failure stay paid; ``failures`` lists (bill, message) for the rest.
    """

    def __init__(self, failures, succeeded=None, payment=None):
        self.failures = list(failures)
        self.succeeded = list(succeeded or [])
        self.payment = payment
        details = "; ".join(f"{bill}: {message}" for bill, message in self.failures)
        super().__init__(
            f"{len(self.failures)} of {len(self.failures) + len(self.succeeded)} "
            f"bill payments failed: {details}"
        )


@contextmanager
def persistence_step(step: str, document=None):
    """Re-raise database failures inside ``step`` as PersistenceError."""
    try:
        yield
    except DatabaseError as exc:
        logger.error("ledger.persistence_failed step=%r document=%s", step, document)
        raise PersistenceError(str(exc) or exc.__class__.__name__, step=step, document=document) from exc


# Everything the API layer turns into a JSON error response.
LEDGER_ERRORS = (ValidationError, ConfigurationError, PartialBatchFailure, PersistenceError)
