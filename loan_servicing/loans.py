"""
Loan Module

Loan records and origination. Originating a loan bulk-creates its
installment schedule using flat interest, so that the schedule's total due
always equals principal plus total scheduled interest before any payment is
ever allocated against it.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import calendar
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .schedule import ScheduleEntry, ScheduleStore
from .exceptions import NotFoundError, ValidationError
from .logging_config import get_logger


logger = get_logger(__name__)


class RepaymentFrequency(Enum):
    """How often installments fall due"""
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"

    @property
    def periods_per_year(self) -> int:
        return {
            RepaymentFrequency.MONTHLY: 12,
            RepaymentFrequency.WEEKLY: 52,
            RepaymentFrequency.BIWEEKLY: 26,
        }[self]


@dataclass
class Loan(StorageRecord):
    """Loan with flat-rate terms"""
    client_id: str
    loan_number: str
    principal: Money
    interest_rate: Decimal              # Annual percent, e.g. 15 for 15% p.a.
    term_months: int
    repayment_frequency: RepaymentFrequency
    start_date: date
    total_interest: Money = None
    draw_down_balance: Money = None     # Excess funds available to pay this loan

    def __post_init__(self):
        currency = self.principal.currency
        if self.total_interest is None:
            self.total_interest = calculate_flat_interest(self.principal, self.interest_rate, self.term_months)
        if self.draw_down_balance is None:
            self.draw_down_balance = Money.zero(currency)

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def total_repayable(self) -> Money:
        return self.principal + self.total_interest

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'client_id': self.client_id,
            'loan_number': self.loan_number,
            'principal': str(self.principal.amount),
            'currency': self.currency.code,
            'interest_rate': str(self.interest_rate),
            'term_months': self.term_months,
            'repayment_frequency': self.repayment_frequency.value,
            'start_date': self.start_date.isoformat(),
            'total_interest': str(self.total_interest.amount),
            'draw_down_balance': str(self.draw_down_balance.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Loan':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            client_id=data['client_id'],
            loan_number=data['loan_number'],
            principal=Money(Decimal(data['principal']), currency),
            interest_rate=Decimal(data['interest_rate']),
            term_months=data['term_months'],
            repayment_frequency=RepaymentFrequency(data['repayment_frequency']),
            start_date=date.fromisoformat(data['start_date']),
            total_interest=Money(Decimal(data['total_interest']), currency),
            draw_down_balance=Money(Decimal(data['draw_down_balance']), currency),
        )


def calculate_flat_interest(principal: Money, annual_rate: Decimal, term_months: int) -> Money:
    """Flat interest: principal * rate% * months / 12"""
    interest = principal.amount * Decimal(str(annual_rate)) * Decimal(term_months) / Decimal('1200')
    return Money(interest, principal.currency)


def installment_count(term_months: int, frequency: RepaymentFrequency) -> int:
    """Number of installments over the term, at least one"""
    periods = Decimal(term_months) * Decimal(frequency.periods_per_year) / Decimal('12')
    return max(1, int(periods.quantize(Decimal('1'), rounding=ROUND_HALF_UP)))


def _add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(start_date: date, frequency: RepaymentFrequency, number: int) -> date:
    """Due date of installment ``number`` (1-based), one period per installment after start"""
    if frequency == RepaymentFrequency.MONTHLY:
        return _add_months(start_date, number)
    if frequency == RepaymentFrequency.WEEKLY:
        return start_date + timedelta(days=7 * number)
    return start_date + timedelta(days=14 * number)


def _split(total: Money, parts: int) -> List[Money]:
    """Equal shares rounded down to the currency unit; the last share absorbs the remainder"""
    share = Money(
        (total.amount / Decimal(parts)).quantize(total.currency.quantum, rounding=ROUND_DOWN),
        total.currency
    )
    shares = [share] * (parts - 1)
    allocated = Money.zero(total.currency)
    for s in shares:
        allocated = allocated + s
    shares.append(total - allocated)
    return shares


def build_schedule(loan: Loan) -> List[ScheduleEntry]:
    """Flat-rate installment rows whose total due sums to principal + interest exactly"""
    count = installment_count(loan.term_months, loan.repayment_frequency)
    principal_parts = _split(loan.principal, count)
    interest_parts = _split(loan.total_interest, count)
    now = datetime.now(timezone.utc)

    entries = []
    for number, (principal_due, interest_due) in enumerate(zip(principal_parts, interest_parts), start=1):
        entries.append(ScheduleEntry(
            id=f"{loan.id}_{number}",
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            installment_number=number,
            due_date=due_date_for(loan.start_date, loan.repayment_frequency, number),
            principal_due=principal_due,
            interest_due=interest_due,
            total_due=principal_due + interest_due,
        ))
    return entries


class LoanManager:
    """
    Creates loans together with their schedules and manages draw-down funds
    """

    def __init__(self, storage: StorageInterface, schedule_store: ScheduleStore, audit_trail: AuditTrail):
        self.storage = storage
        self.schedule_store = schedule_store
        self.audit_trail = audit_trail
        self.loans_table = "loans"

    def create_loan(
        self,
        client_id: str,
        principal: Money,
        interest_rate: Decimal,
        term_months: int,
        repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY,
        start_date: Optional[date] = None,
        created_by: Optional[str] = None
    ) -> Loan:
        """
        Originate a loan and bulk-create its installment schedule

        Args:
            client_id: Borrower
            principal: Amount lent
            interest_rate: Annual flat rate in percent
            term_months: Term length in months
            repayment_frequency: Installment frequency
            start_date: Disbursement date; first installment is one period later
            created_by: User originating the loan

        Returns:
            Created Loan
        """
        if not principal.is_positive():
            raise ValidationError("Principal must be positive")
        if term_months <= 0:
            raise ValidationError("Term must be at least one month")
        interest_rate = Decimal(str(interest_rate))
        if interest_rate < Decimal('0'):
            raise ValidationError("Interest rate cannot be negative")

        now = datetime.now(timezone.utc)
        loan_id = str(uuid.uuid4())
        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            client_id=client_id,
            loan_number=f"LN-{loan_id[:8].upper()}",
            principal=principal,
            interest_rate=interest_rate,
            term_months=term_months,
            repayment_frequency=repayment_frequency,
            start_date=start_date or now.date(),
        )
        entries = build_schedule(loan)

        with self.storage.atomic():
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            self.schedule_store.create_entries(entries)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=created_by,
                metadata={
                    "client_id": client_id,
                    "principal": principal.to_string(),
                    "interest_rate": interest_rate,
                    "term_months": term_months,
                    "installments": len(entries),
                    "total_repayable": loan.total_repayable.to_string(),
                }
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=created_by,
                metadata={
                    "installments": len(entries),
                    "first_due_date": entries[0].due_date.isoformat(),
                    "last_due_date": entries[-1].due_date.isoformat(),
                }
            )

        logger.info("Created loan %s with %d installments", loan.loan_number, len(entries))
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def get_client_loans(self, client_id: str) -> List[Loan]:
        """All loans of a client, oldest first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {'client_id': client_id})]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def get_balance(self, loan_id: str) -> Money:
        """Outstanding balance across the loan's schedule"""
        loan = self.require_loan(loan_id)
        return self.schedule_store.outstanding_balance(loan_id, loan.currency)

    def save_loan(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def get_draw_down_sources(self, currency: Currency) -> List[Loan]:
        """Loans holding draw-down funds in ``currency``, largest balance first"""
        loans = [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]
        sources = [l for l in loans if l.currency == currency and l.draw_down_balance.is_positive()]
        sources.sort(key=lambda l: (-l.draw_down_balance.amount, l.loan_number, l.id))
        return sources

    def total_draw_down_balance(self, currency: Currency) -> Money:
        """Draw-down funds pooled across every loan"""
        total = Money.zero(currency)
        for loan in self.get_draw_down_sources(currency):
            total = total + loan.draw_down_balance
        return total

    def add_draw_down_funds(self, loan_id: str, amount: Money) -> Loan:
        """Credit excess funds to a loan's draw-down balance"""
        if not amount.is_positive():
            raise ValidationError("Draw down amount must be positive")
        with self.storage.atomic():
            loan = self.require_loan(loan_id)
            if amount.currency != loan.currency:
                raise ValidationError(f"Expected {loan.currency.code}, got {amount.currency.code}")
            loan.draw_down_balance = loan.draw_down_balance + amount
            self.save_loan(loan)
        return loan
