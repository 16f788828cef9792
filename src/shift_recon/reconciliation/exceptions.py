"""Error types raised by the reconciliation engine."""

import logging

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Base class for reconciliation errors."""


class ConfigurationParseError(ReconciliationError):
    """Cabinet window configuration could not be parsed.

    Never escapes the parsing boundary: the parser logs it and returns
    empty windows.
    """


class FetchError(ReconciliationError):
    """The record source failed for one cabinet."""

    def __init__(self, message: str, cabinet_id=None):
        super().__init__(message)
        self.cabinet_id = cabinet_id


class ManualMatchError(ReconciliationError):
    """A manual match or unmatch request referenced unknown or consumed records."""


class InvariantViolation(ReconciliationError):
    """A programming-level defect, such as a negative window or a double-consumed record."""


def report_invariant_violation(message: str) -> None:
    """Log an invariant violation and raise it when assertions are enabled.

    Args:
        message: Description of the violated invariant.

    Raises:
        InvariantViolation: Unless Python runs with -O.
    """
    logger.error(f"Invariant violation: {message}")
    if __debug__:
        raise InvariantViolation(message)
