"""
Payment Allocation Module

Applies an incoming payment to a loan's installment schedule oldest-due
first, and undoes a previously applied payment newest-due first.

``allocate_payment`` and ``reverse_payment`` are pure: they take a snapshot
of schedule rows and return updated copies. ``PaymentAllocator`` reads the
snapshot, runs them, and writes the result back as one unit of work under
the loan's lock.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from typing import List, Optional

from .currency import Money, Currency, min_money
from .storage import StorageInterface, unit_of_work
from .schedule import ScheduleEntry, ScheduleStatus, ScheduleStore
from .loans import LoanManager
from .audit import AuditTrail, AuditEventType
from .locking import LoanLockRegistry
from .exceptions import ValidationError
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


@dataclass(frozen=True)
class RowChange:
    """Effect of one allocation or reversal step on one installment"""
    entry_id: str
    installment_number: int
    due_date: date
    amount: Money                    # applied, or reversed
    previous_amount_paid: Money
    new_amount_paid: Money
    previous_status: ScheduleStatus
    new_status: ScheduleStatus

    def to_dict(self) -> dict:
        return {
            'entry_id': self.entry_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount.amount),
            'previous_amount_paid': str(self.previous_amount_paid.amount),
            'new_amount_paid': str(self.new_amount_paid.amount),
            'previous_status': self.previous_status.value,
            'new_status': self.new_status.value,
        }


@dataclass
class AllocationResult:
    """Outcome of applying one payment"""
    payment_amount: Money
    residual: Money                  # Could not be absorbed; belongs in the client wallet
    changes: List[RowChange] = field(default_factory=list)
    entries: List[ScheduleEntry] = field(default_factory=list)  # Updated rows only

    @property
    def applied(self) -> Money:
        return self.payment_amount - self.residual

    @property
    def has_residual(self) -> bool:
        return self.residual.is_positive()


@dataclass
class ReversalResult:
    """Outcome of undoing one payment"""
    amount: Money
    unapplied: Money                 # Exceeded everything paid; dropped
    changes: List[RowChange] = field(default_factory=list)
    entries: List[ScheduleEntry] = field(default_factory=list)

    @property
    def reversed(self) -> Money:
        return self.amount - self.unapplied


def _check_amount(amount: Money, currency: Optional[Currency], what: str) -> None:
    if not isinstance(amount, Money):
        raise ValidationError(f"{what} must be a Money amount")
    if not amount.is_positive():
        raise ValidationError(f"{what} must be positive, got {amount.to_string()}")
    if currency is not None and amount.currency != currency:
        raise ValidationError(f"{what} is in {amount.currency.code}, schedule is in {currency.code}")


def _schedule_currency(entries: List[ScheduleEntry]) -> Optional[Currency]:
    return entries[0].currency if entries else None


def allocate_payment(entries: List[ScheduleEntry], payment_amount: Money) -> AllocationResult:
    """
    Distribute a payment over unpaid installments, earliest due date first.

    Args:
        entries: Schedule snapshot; rows already PAID are ignored
        payment_amount: Positive amount to distribute

    Returns:
        AllocationResult with the updated rows and the residual. The sum of
        applied amounts plus the residual is exactly ``payment_amount``.
    """
    _check_amount(payment_amount, _schedule_currency(entries), "Payment amount")

    pending = sorted(
        (e for e in entries if e.status != ScheduleStatus.PAID),
        key=lambda e: e.sort_key
    )

    remaining = payment_amount
    result = AllocationResult(payment_amount=payment_amount, residual=remaining)

    for entry in pending:
        if not remaining.is_positive():
            break

        applied = min_money(remaining, entry.outstanding)
        updated = replace(entry, amount_paid=entry.amount_paid + applied)

        result.entries.append(updated)
        result.changes.append(RowChange(
            entry_id=entry.id,
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            amount=applied,
            previous_amount_paid=entry.amount_paid,
            new_amount_paid=updated.amount_paid,
            previous_status=entry.status,
            new_status=updated.status,
        ))
        remaining = remaining - applied

    result.residual = remaining
    return result


def reverse_payment(entries: List[ScheduleEntry], amount_to_reverse: Money) -> ReversalResult:
    """
    Take an amount back off paid and partial installments, latest due date first.

    Args:
        entries: Schedule snapshot; rows with nothing paid are ignored
        amount_to_reverse: Positive amount, normally the original payment

    Returns:
        ReversalResult with the updated rows. Any amount beyond what the
        schedule holds is reported as ``unapplied`` and otherwise dropped.
    """
    _check_amount(amount_to_reverse, _schedule_currency(entries), "Reversal amount")

    reversible = sorted(
        (e for e in entries
         if e.status in (ScheduleStatus.PAID, ScheduleStatus.PARTIAL) and e.amount_paid.is_positive()),
        key=lambda e: e.sort_key,
        reverse=True
    )

    remaining = amount_to_reverse
    result = ReversalResult(amount=amount_to_reverse, unapplied=remaining)

    for entry in reversible:
        if not remaining.is_positive():
            break

        reverse_amount = min_money(remaining, entry.amount_paid)
        updated = replace(entry, amount_paid=entry.amount_paid - reverse_amount)

        result.entries.append(updated)
        result.changes.append(RowChange(
            entry_id=entry.id,
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            amount=reverse_amount,
            previous_amount_paid=entry.amount_paid,
            new_amount_paid=updated.amount_paid,
            previous_status=entry.status,
            new_status=updated.status,
        ))
        remaining = remaining - reverse_amount

    result.unapplied = remaining
    return result


class PaymentAllocator:
    """
    Applies and reverses payments against stored schedules.

    Each call holds the loan's lock and runs as a single unit of work: either
    every touched row is written or none is.
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_store: ScheduleStore,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        loan_locks: Optional[LoanLockRegistry] = None
    ):
        self.storage = storage
        self.schedule_store = schedule_store
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.loan_locks = loan_locks or LoanLockRegistry()

    def allocate(self, loan_id: str, payment_amount: Money, user_id: Optional[str] = None) -> AllocationResult:
        """
        Apply a payment to a loan's outstanding installments

        Args:
            loan_id: Loan to pay
            payment_amount: Positive amount in the loan's currency
            user_id: User recording the payment, for the audit trail

        Returns:
            AllocationResult; a positive residual must be deposited to the
            client's wallet by the caller

        Raises:
            NotFoundError: Loan does not exist
            ValidationError: Non-positive amount or wrong currency
            StorageError: A read or write failed; nothing was applied
        """
        _check_amount(payment_amount, None, "Payment amount")

        with self.loan_locks.hold(loan_id):
            with unit_of_work(self.storage, f"Allocation to loan {loan_id}"):
                loan = self.loan_manager.require_loan(loan_id)
                _check_amount(payment_amount, loan.currency, "Payment amount")

                snapshot = self.schedule_store.get_outstanding_entries(loan_id)
                result = allocate_payment(snapshot, payment_amount)

                for entry in result.entries:
                    self.schedule_store.save_entry(entry)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_ALLOCATED,
                    entity_type="loan",
                    entity_id=loan_id,
                    user_id=user_id,
                    metadata={
                        "payment_amount": payment_amount.to_string(),
                        "residual": result.residual.to_string(),
                        "changes": [c.to_dict() for c in result.changes],
                    }
                )

        log_action(
            logger, "info",
            f"Allocated {result.applied.to_string()} of {payment_amount.to_string()} "
            f"across {len(result.changes)} installment(s)",
            user_id=user_id, action="allocate", resource=f"loan:{loan_id}",
            extra={"residual": str(result.residual.amount)}
        )
        return result

    def reverse(self, loan_id: str, amount_to_reverse: Money, user_id: Optional[str] = None) -> ReversalResult:
        """
        Undo a previously applied payment, latest due installments first

        Args:
            loan_id: Loan the payment was applied to
            amount_to_reverse: The original payment amount
            user_id: User reverting the payment, for the audit trail

        Returns:
            ReversalResult

        Raises:
            NotFoundError: Loan does not exist
            ValidationError: Non-positive amount or wrong currency
            StorageError: A read or write failed; nothing was reversed
        """
        _check_amount(amount_to_reverse, None, "Reversal amount")

        with self.loan_locks.hold(loan_id):
            with unit_of_work(self.storage, f"Reversal on loan {loan_id}"):
                loan = self.loan_manager.require_loan(loan_id)
                _check_amount(amount_to_reverse, loan.currency, "Reversal amount")

                snapshot = self.schedule_store.get_reversible_entries(loan_id)
                result = reverse_payment(snapshot, amount_to_reverse)

                for entry in result.entries:
                    self.schedule_store.save_entry(entry)

                self.audit_trail.log_event(
                    event_type=AuditEventType.ALLOCATION_REVERSED,
                    entity_type="loan",
                    entity_id=loan_id,
                    user_id=user_id,
                    metadata={
                        "amount": amount_to_reverse.to_string(),
                        "unapplied": result.unapplied.to_string(),
                        "changes": [c.to_dict() for c in result.changes],
                    }
                )

        if result.unapplied.is_positive():
            log_action(
                logger, "warning",
                f"Reversal exceeded paid installments; {result.unapplied.to_string()} not reversed",
                user_id=user_id, action="reverse", resource=f"loan:{loan_id}"
            )
        log_action(
            logger, "info",
            f"Reversed {result.reversed.to_string()} across {len(result.changes)} installment(s)",
            user_id=user_id, action="reverse", resource=f"loan:{loan_id}"
        )
        return result
