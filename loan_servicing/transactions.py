"""
Loan Transactions Module

Immutable records of money moving onto a loan, and the workflows that
create them: recording a repayment, paying from a loan's own or the pooled
draw-down funds, paying from the client's wallet, posting fees, and
reverting a payment. Every payment workflow allocates through the shared
PaymentAllocator and routes any residual to the client's wallet inside the
same unit of work.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import time
import uuid

from .currency import Money, Currency, min_money
from .storage import StorageInterface, StorageRecord, unit_of_work
from .audit import AuditTrail, AuditEventType
from .loans import Loan, LoanManager
from .allocation import PaymentAllocator, AllocationResult, ReversalResult
from .wallet import WalletManager, WalletTransaction
from .locking import LoanLockRegistry, ClientLockRegistry
from .exceptions import NotFoundError, ValidationError
from .logging_config import get_logger, log_action


logger = get_logger(__name__)


class LoanTransactionType(Enum):
    """Kinds of money moving onto a loan"""
    REPAYMENT = "repayment"
    DRAW_DOWN_PAYMENT = "draw_down_payment"
    FEE = "fee"                             # Charged to the loan, never allocated

    @property
    def is_allocated(self) -> bool:
        return self != LoanTransactionType.FEE


class PaymentMethod(Enum):
    CASH = "cash"
    MPESA = "mpesa"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CHEQUE = "cheque"
    CARD = "card"
    DRAW_DOWN = "draw_down"                 # From the loan's draw-down balance
    CLIENT_DRAW_DOWN = "client_draw_down"   # From the client's wallet


class FeeType(Enum):
    PROCESSING = "processing_fee"
    ADMINISTRATION = "administration_fee"
    LATE_PAYMENT = "late_fee"
    PENALTY = "penalty_fee"
    APPRAISAL = "appraisal_fee"
    LEGAL = "legal_fee"
    INSURANCE = "insurance_fee"
    OTHER = "other_fee"


@dataclass
class LoanTransaction(StorageRecord):
    """A payment against a loan; only its reversal fields ever change"""
    loan_id: str
    amount: Money
    transaction_type: LoanTransactionType
    transaction_date: datetime
    payment_method: PaymentMethod
    receipt_number: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    residual_amount: Money = None       # Part of amount routed to the client wallet
    is_reverted: bool = False
    reverted_at: Optional[datetime] = None
    reverted_by: Optional[str] = None
    reversal_reason: Optional[str] = None

    def __post_init__(self):
        if self.residual_amount is None:
            self.residual_amount = Money.zero(self.amount.currency)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'transaction_type': self.transaction_type.value,
            'transaction_date': self.transaction_date.isoformat(),
            'payment_method': self.payment_method.value,
            'receipt_number': self.receipt_number,
            'notes': self.notes,
            'created_by': self.created_by,
            'residual_amount': str(self.residual_amount.amount),
            'is_reverted': self.is_reverted,
            'reverted_at': self.reverted_at.isoformat() if self.reverted_at else None,
            'reverted_by': self.reverted_by,
            'reversal_reason': self.reversal_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LoanTransaction':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), currency),
            transaction_type=LoanTransactionType(data['transaction_type']),
            transaction_date=datetime.fromisoformat(data['transaction_date']),
            payment_method=PaymentMethod(data['payment_method']),
            receipt_number=data.get('receipt_number'),
            notes=data.get('notes'),
            created_by=data.get('created_by'),
            residual_amount=Money(Decimal(data.get('residual_amount', '0')), currency),
            is_reverted=data.get('is_reverted', False),
            reverted_at=datetime.fromisoformat(data['reverted_at']) if data.get('reverted_at') else None,
            reverted_by=data.get('reverted_by'),
            reversal_reason=data.get('reversal_reason'),
        )


@dataclass
class PaymentOutcome:
    """What recording one payment did"""
    transaction: LoanTransaction
    allocation: AllocationResult
    wallet_entry: Optional[WalletTransaction] = None


@dataclass
class ReversionOutcome:
    transaction: LoanTransaction
    reversal: Optional[ReversalResult] = None    # None for fees, which were never allocated


def _receipt(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}"


class PaymentService:
    """
    Payment recording and reversal workflows over one storage backend.

    Lock order is always loan, then client, then the storage unit of work.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        allocator: PaymentAllocator,
        wallet_manager: WalletManager,
        audit_trail: AuditTrail,
        loan_locks: Optional[LoanLockRegistry] = None,
        client_locks: Optional[ClientLockRegistry] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.allocator = allocator
        self.wallet_manager = wallet_manager
        self.audit_trail = audit_trail
        self.loan_locks = loan_locks or allocator.loan_locks
        self.client_locks = client_locks or wallet_manager.client_locks

        self.transactions_table = "loan_transactions"

    def record_payment(
        self,
        loan_id: str,
        amount: Money,
        transaction_type: LoanTransactionType = LoanTransactionType.REPAYMENT,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        receipt_number: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
        transaction_date: Optional[datetime] = None
    ) -> PaymentOutcome:
        """
        Record a repayment and allocate it to the loan's schedule

        Args:
            loan_id: Loan being repaid
            amount: Positive amount received
            transaction_type: Kind of payment being recorded
            payment_method: How the money arrived
            receipt_number: External receipt, e.g. an M-Pesa code
            notes: Free text
            created_by: User recording the payment
            transaction_date: When the money was received (defaults to now)

        Returns:
            PaymentOutcome with the stored transaction, the allocation and
            the wallet deposit made for any residual
        """
        _require_positive(amount)
        if not transaction_type.is_allocated:
            raise ValidationError(f"{transaction_type.value} transactions are not allocated; use post_fee")

        def build(loan: Loan) -> LoanTransaction:
            return self._new_transaction(
                loan, amount, transaction_type, payment_method,
                receipt_number, notes, created_by, transaction_date
            )

        return self._apply_payment(loan_id, build, created_by)

    def draw_down_payment(
        self,
        loan_id: str,
        amount: Money,
        notes: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> PaymentOutcome:
        """Pay a loan out of its own draw-down balance"""
        _require_positive(amount)

        def build(loan: Loan) -> LoanTransaction:
            if amount.currency != loan.currency:
                raise ValidationError(f"Expected {loan.currency.code}, got {amount.currency.code}")
            if amount > loan.draw_down_balance:
                raise ValidationError(
                    f"Amount exceeds available draw down balance of {loan.draw_down_balance.to_string()}"
                )
            loan.draw_down_balance = loan.draw_down_balance - amount
            self.loan_manager.save_loan(loan)

            return self._new_transaction(
                loan, amount, LoanTransactionType.DRAW_DOWN_PAYMENT, PaymentMethod.DRAW_DOWN,
                _receipt("DD"), notes or f"Draw down payment of {amount.to_string()}", created_by
            )

        return self._apply_payment(loan_id, build, created_by, AuditEventType.DRAW_DOWN_PAYMENT)

    def client_draw_down_payment(
        self,
        client_id: str,
        target_loan_id: str,
        amount: Money,
        notes: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> PaymentOutcome:
        """Pay one of a client's loans out of the client's wallet"""
        _require_positive(amount)

        def build(loan: Loan) -> LoanTransaction:
            if loan.client_id != client_id:
                raise ValidationError(f"Loan {loan.loan_number} does not belong to client {client_id}")
            if amount.currency != loan.currency:
                raise ValidationError(f"Expected {loan.currency.code}, got {amount.currency.code}")
            self.wallet_manager.debit_for_loan_payment(
                client_id, amount, loan.id,
                notes=f"Payment to loan {loan.loan_number}", created_by=created_by
            )
            return self._new_transaction(
                loan, amount, LoanTransactionType.DRAW_DOWN_PAYMENT, PaymentMethod.CLIENT_DRAW_DOWN,
                _receipt("CDD"), notes or f"Client draw down payment of {amount.to_string()}", created_by
            )

        return self._apply_payment(target_loan_id, build, created_by, AuditEventType.DRAW_DOWN_PAYMENT)

    def global_draw_down_payment(
        self,
        target_loan_id: str,
        amount: Money,
        notes: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> PaymentOutcome:
        """
        Pay a loan out of the draw-down funds pooled across all loans

        Funds are taken from the loans with the largest draw-down balance
        first; each deduction is audited against its source loan.
        """
        _require_positive(amount)

        def build(loan: Loan) -> LoanTransaction:
            if amount.currency != loan.currency:
                raise ValidationError(f"Expected {loan.currency.code}, got {amount.currency.code}")

            sources = self.loan_manager.get_draw_down_sources(amount.currency)
            pooled = Money.zero(amount.currency)
            for source in sources:
                pooled = pooled + source.draw_down_balance
            if amount > pooled:
                raise ValidationError(f"Amount exceeds available draw down balance of {pooled.to_string()}")

            remaining = amount
            for source in sources:
                if not remaining.is_positive():
                    break
                deducted = min_money(remaining, source.draw_down_balance)
                source.draw_down_balance = source.draw_down_balance - deducted
                self.loan_manager.save_loan(source)
                self.audit_trail.log_event(
                    event_type=AuditEventType.DRAW_DOWN_TRANSFER,
                    entity_type="loan",
                    entity_id=source.id,
                    user_id=created_by,
                    metadata={
                        "target_loan_id": loan.id,
                        "amount": deducted.to_string(),
                        "draw_down_balance": source.draw_down_balance.to_string(),
                    }
                )
                remaining = remaining - deducted

            return self._new_transaction(
                loan, amount, LoanTransactionType.DRAW_DOWN_PAYMENT, PaymentMethod.DRAW_DOWN,
                _receipt("DD"), notes or f"Draw down payment of {amount.to_string()}", created_by
            )

        return self._apply_payment(target_loan_id, build, created_by, AuditEventType.DRAW_DOWN_PAYMENT)

    def post_fee(
        self,
        loan_id: str,
        amount: Money,
        fee_type: FeeType,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        receipt_number: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> LoanTransaction:
        """Record a fee against a loan; the schedule is not touched"""
        _require_positive(amount)

        with self.loan_locks.hold(loan_id):
            with unit_of_work(self.storage, f"Fee on loan {loan_id}"):
                loan = self.loan_manager.require_loan(loan_id)
                transaction = self._new_transaction(
                    loan, amount, LoanTransactionType.FEE, payment_method, receipt_number,
                    f"{fee_type.value}: {notes or ''}".strip(), created_by
                )
                self._save_transaction(transaction)

                self.audit_trail.log_event(
                    event_type=AuditEventType.FEE_POSTED,
                    entity_type="loan_transaction",
                    entity_id=transaction.id,
                    user_id=created_by,
                    metadata={
                        "loan_id": loan.id,
                        "fee_type": fee_type.value,
                        "amount": amount.to_string(),
                    }
                )

        log_action(logger, "info", f"Posted {fee_type.value} of {amount.to_string()}",
                   user_id=created_by, action="post_fee", resource=f"loan:{loan_id}")
        return transaction

    def revert_payment(self, transaction_id: str, reason: str,
                       reverted_by: Optional[str] = None) -> ReversionOutcome:
        """
        Mark a payment reverted and take its amount back off the schedule

        Payments whose allocation overflowed into the client wallet are
        refused: reversal never touches the wallet, so undoing them would
        pull the overflow off other installments. Fees were never allocated
        and are only marked reverted.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to revert a payment")

        transaction = self.require_transaction(transaction_id)

        with self.loan_locks.hold(transaction.loan_id):
            with unit_of_work(self.storage, f"Revert of transaction {transaction_id}"):
                # Re-read under the lock so two reverts cannot both pass the check
                transaction = self.require_transaction(transaction_id)
                if transaction.is_reverted:
                    raise ValidationError(f"Transaction {transaction_id} is already reverted")
                if transaction.residual_amount.is_positive():
                    raise ValidationError(
                        f"Transaction {transaction_id} routed {transaction.residual_amount.to_string()} "
                        f"to the client wallet and cannot be reverted automatically"
                    )

                now = datetime.now(timezone.utc)
                transaction.is_reverted = True
                transaction.reverted_at = now
                transaction.reverted_by = reverted_by
                transaction.reversal_reason = reason.strip()
                transaction.updated_at = now
                self._save_transaction(transaction)

                reversal = None
                if transaction.transaction_type.is_allocated:
                    reversal = self.allocator.reverse(transaction.loan_id, transaction.amount, user_id=reverted_by)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_REVERTED,
                    entity_type="loan_transaction",
                    entity_id=transaction.id,
                    user_id=reverted_by,
                    metadata={
                        "loan_id": transaction.loan_id,
                        "amount": transaction.amount.to_string(),
                        "reason": transaction.reversal_reason,
                    }
                )

        log_action(logger, "info", f"Reverted payment of {transaction.amount.to_string()}",
                   user_id=reverted_by, action="revert", resource=f"loan_transaction:{transaction.id}")
        return ReversionOutcome(transaction=transaction, reversal=reversal)

    def get_transaction(self, transaction_id: str) -> Optional[LoanTransaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return LoanTransaction.from_dict(data)
        return None

    def require_transaction(self, transaction_id: str) -> LoanTransaction:
        transaction = self.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError("transaction", transaction_id)
        return transaction

    def get_loan_transactions(self, loan_id: str) -> List[LoanTransaction]:
        """Transactions of a loan, newest first"""
        transactions = [LoanTransaction.from_dict(data)
                        for data in self.storage.find(self.transactions_table, {'loan_id': loan_id})]
        transactions.sort(key=lambda t: (t.transaction_date, t.created_at), reverse=True)
        return transactions

    def _apply_payment(self, loan_id: str, build, created_by: Optional[str],
                       event_type: AuditEventType = AuditEventType.PAYMENT_RECORDED) -> PaymentOutcome:
        loan = self.loan_manager.require_loan(loan_id)

        with self.loan_locks.hold(loan.id):
            with self.client_locks.hold(loan.client_id):
                with unit_of_work(self.storage, f"Payment to loan {loan_id}"):
                    loan = self.loan_manager.require_loan(loan_id)
                    transaction = build(loan)
                    self._save_transaction(transaction)

                    allocation = self.allocator.allocate(loan.id, transaction.amount, user_id=created_by)

                    wallet_entry = None
                    if allocation.has_residual:
                        wallet_entry = self.wallet_manager.deposit(
                            loan.client_id, allocation.residual, loan_id=loan.id,
                            notes=f"Overpayment on loan {loan.loan_number}",
                            created_by=created_by
                        )
                        transaction.residual_amount = allocation.residual
                        self._save_transaction(transaction)

                    self.audit_trail.log_event(
                        event_type=event_type,
                        entity_type="loan_transaction",
                        entity_id=transaction.id,
                        user_id=created_by,
                        metadata={
                            "loan_id": loan.id,
                            "amount": transaction.amount.to_string(),
                            "payment_method": transaction.payment_method,
                            "residual": allocation.residual.to_string(),
                        }
                    )

        log_action(logger, "info", f"Recorded {transaction.transaction_type.value} of {transaction.amount.to_string()}",
                   user_id=created_by, action="record_payment", resource=f"loan:{loan.id}")
        return PaymentOutcome(transaction=transaction, allocation=allocation, wallet_entry=wallet_entry)

    def _new_transaction(self, loan: Loan, amount: Money, transaction_type: LoanTransactionType,
                         payment_method: PaymentMethod, receipt_number: Optional[str],
                         notes: Optional[str], created_by: Optional[str],
                         transaction_date: Optional[datetime] = None) -> LoanTransaction:
        if amount.currency != loan.currency:
            raise ValidationError(f"Expected {loan.currency.code}, got {amount.currency.code}")
        now = datetime.now(timezone.utc)
        if transaction_date is not None and transaction_date.tzinfo is None:
            transaction_date = transaction_date.replace(tzinfo=timezone.utc)
        return LoanTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=amount,
            transaction_type=transaction_type,
            transaction_date=transaction_date or now,
            payment_method=payment_method,
            receipt_number=receipt_number,
            notes=notes,
            created_by=created_by,
        )

    def _save_transaction(self, transaction: LoanTransaction) -> None:
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())


def _require_positive(amount: Money) -> None:
    if not isinstance(amount, Money) or not amount.is_positive():
        raise ValidationError("Payment amount must be positive")
