"""
Installment Schedule Module

One ScheduleEntry per due date of a loan. Entries are created in bulk when a
loan is originated and afterwards only mutated by the allocation and
reversal engines. An entry's status is never stored independently: it is
always derived from amount_paid through derive_status().
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord


class ScheduleStatus(Enum):
    """Repayment state of a single installment"""
    PENDING = "pending"    # nothing paid
    PARTIAL = "partial"    # something paid, less than total due
    PAID = "paid"          # fully covered


Amount = Union[Money, Decimal]


def _as_decimal(value: Amount) -> Decimal:
    return value.amount if isinstance(value, Money) else value


def derive_status(amount_paid: Amount, total_due: Amount) -> ScheduleStatus:
    """
    The single source of truth for installment status.

    A fully covered installment is PAID, including one whose total due is
    zero; otherwise anything above zero is PARTIAL and zero is PENDING.
    """
    paid = _as_decimal(amount_paid)
    due = _as_decimal(total_due)

    if paid >= due:
        return ScheduleStatus.PAID
    if paid > Decimal('0'):
        return ScheduleStatus.PARTIAL
    return ScheduleStatus.PENDING


@dataclass
class ScheduleEntry(StorageRecord):
    """Single installment of a loan's repayment schedule"""
    loan_id: str
    installment_number: int
    due_date: date
    principal_due: Money
    interest_due: Money
    total_due: Money
    amount_paid: Money = None

    def __post_init__(self):
        currency = self.total_due.currency
        if self.amount_paid is None:
            self.amount_paid = Money.zero(currency)

        for name in ('principal_due', 'interest_due', 'amount_paid'):
            if getattr(self, name).currency != currency:
                raise ValueError(f"Installment {name} currency must match total due currency")

        if self.total_due.is_negative() or self.principal_due.is_negative() or self.interest_due.is_negative():
            raise ValueError("Installment due amounts must be non-negative")
        if self.amount_paid.is_negative() or self.amount_paid > self.total_due:
            raise ValueError(
                f"Amount paid {self.amount_paid.to_string()} outside 0..{self.total_due.to_string()}"
            )

    @property
    def currency(self) -> Currency:
        return self.total_due.currency

    @property
    def status(self) -> ScheduleStatus:
        return derive_status(self.amount_paid, self.total_due)

    @property
    def outstanding(self) -> Money:
        """Amount still owed on this installment"""
        return self.total_due - self.amount_paid

    @property
    def sort_key(self):
        return (self.due_date, self.installment_number, self.id)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_due': str(self.principal_due.amount),
            'interest_due': str(self.interest_due.amount),
            'total_due': str(self.total_due.amount),
            'amount_paid': str(self.amount_paid.amount),
            'currency': self.currency.code,
            # Informational only; recomputed on load
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ScheduleEntry':
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_due=money('principal_due'),
            interest_due=money('interest_due'),
            total_due=money('total_due'),
            amount_paid=money('amount_paid'),
        )


class ScheduleStore:
    """
    Durable, ordered installment rows per loan.

    Ordering is by due date, then installment number, then row id, so that
    two rows never compare equal.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "loan_schedule"):
        self.storage = storage
        self.table_name = table_name

    def create_entries(self, entries: List[ScheduleEntry]) -> None:
        """Bulk-create the rows of a newly originated loan"""
        with self.storage.atomic():
            for entry in entries:
                self.storage.save(self.table_name, entry.id, entry.to_dict())

    def save_entry(self, entry: ScheduleEntry) -> None:
        entry.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, entry.id, entry.to_dict())

    def get_entry(self, entry_id: str) -> Optional[ScheduleEntry]:
        data = self.storage.load(self.table_name, entry_id)
        if data:
            return ScheduleEntry.from_dict(data)
        return None

    def get_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        """All rows of a loan, earliest due first"""
        rows = [ScheduleEntry.from_dict(data)
                for data in self.storage.find(self.table_name, {'loan_id': loan_id})]
        rows.sort(key=lambda e: e.sort_key)
        return rows

    def get_outstanding_entries(self, loan_id: str) -> List[ScheduleEntry]:
        """Rows not yet paid, earliest due first (allocation order)"""
        return [e for e in self.get_schedule(loan_id) if e.status != ScheduleStatus.PAID]

    def get_reversible_entries(self, loan_id: str) -> List[ScheduleEntry]:
        """Paid or partial rows with money on them, latest due first (reversal order)"""
        rows = [
            e for e in self.get_schedule(loan_id)
            if e.status in (ScheduleStatus.PAID, ScheduleStatus.PARTIAL)
            and e.amount_paid.is_positive()
        ]
        rows.reverse()
        return rows

    def outstanding_balance(self, loan_id: str, currency: Currency) -> Money:
        """Sum of what is still owed across the whole schedule"""
        total = Money.zero(currency)
        for entry in self.get_schedule(loan_id):
            total = total + entry.outstanding
        return total

    def delete_schedule(self, loan_id: str) -> int:
        """Remove all rows of a loan (used only when a loan is deleted)"""
        removed = 0
        with self.storage.atomic():
            for data in self.storage.find(self.table_name, {'loan_id': loan_id}):
                if self.storage.delete(self.table_name, data['id']):
                    removed += 1
        return removed
