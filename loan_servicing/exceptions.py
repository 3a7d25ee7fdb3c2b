"""
Error taxonomy for the loan servicing engine.

Callers abort the payment or reversal workflow on any of these; the unit of
work they were raised from has already been rolled back.
"""


class LoanServicingError(Exception):
    """Base class for all engine errors"""


class NotFoundError(LoanServicingError, LookupError):
    """A loan, transaction or client account does not exist"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class ValidationError(LoanServicingError, ValueError):
    """Rejected input: non-positive amounts, currency mismatch, double reversal, etc."""


class StorageError(LoanServicingError):
    """A schedule, wallet or transaction read/write failed inside a unit of work"""

    def __init__(self, message: str, cause: Exception = None):
        self.cause = cause
        super().__init__(message)
