"""
Client Wallet Module

Per-client, per-currency balances holding payment amounts that exceeded
every outstanding installment, plus an append-only ledger of every movement
with the balance before and after it.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord, unit_of_work
from .audit import AuditTrail, AuditEventType
from .locking import ClientLockRegistry
from .exceptions import ValidationError
from .logging_config import get_logger


logger = get_logger(__name__)


class WalletTransactionType(Enum):
    """Kinds of wallet movement"""
    DEPOSIT = "deposit"              # Payment overflow, credited
    WITHDRAWAL = "withdrawal"        # Cash paid out to the client
    LOAN_PAYMENT = "loan_payment"    # Used to pay a loan
    FEE_DEDUCTION = "fee_deduction"  # Fee taken from the balance

    @property
    def is_credit(self) -> bool:
        return self == WalletTransactionType.DEPOSIT


@dataclass
class ClientAccount(StorageRecord):
    """A client's wallet"""
    client_id: str
    balance: Money

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'client_id': self.client_id,
            'balance': str(self.balance.amount),
            'currency': self.balance.currency.code,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ClientAccount':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            client_id=data['client_id'],
            balance=Money(Decimal(data['balance']), Currency[data['currency']]),
        )


@dataclass
class WalletTransaction(StorageRecord):
    """Immutable ledger entry; amount is negative for debits"""
    client_account_id: str
    amount: Money
    transaction_type: WalletTransactionType
    previous_balance: Money
    new_balance: Money
    loan_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'client_account_id': self.client_account_id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'transaction_type': self.transaction_type.value,
            'previous_balance': str(self.previous_balance.amount),
            'new_balance': str(self.new_balance.amount),
            'loan_id': self.loan_id,
            'notes': self.notes,
            'created_by': self.created_by,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'WalletTransaction':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            client_account_id=data['client_account_id'],
            amount=Money(Decimal(data['amount']), currency),
            transaction_type=WalletTransactionType(data['transaction_type']),
            previous_balance=Money(Decimal(data['previous_balance']), currency),
            new_balance=Money(Decimal(data['new_balance']), currency),
            loan_id=data.get('loan_id'),
            notes=data.get('notes'),
            created_by=data.get('created_by'),
        )


class WalletManager:
    """
    Client wallet balances and their ledger.

    A client holds one wallet per currency; each movement lands in the
    wallet of its amount's currency. ``currency`` is the wallet read when a
    caller does not name one.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        client_locks: Optional[ClientLockRegistry] = None,
        currency: Currency = Currency.KES
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.client_locks = client_locks or ClientLockRegistry()
        self.currency = currency

        self.accounts_table = "client_accounts"
        self.transactions_table = "client_account_transactions"

    def get_account(self, client_id: str, currency: Optional[Currency] = None) -> Optional[ClientAccount]:
        currency = currency or self.currency
        found = self.storage.find(self.accounts_table, {'client_id': client_id, 'currency': currency.code})
        if found:
            return ClientAccount.from_dict(found[0])
        return None

    def get_accounts(self, client_id: str) -> List[ClientAccount]:
        """Every wallet of a client, one per currency"""
        return [ClientAccount.from_dict(data)
                for data in self.storage.find(self.accounts_table, {'client_id': client_id})]

    def get_or_create_account(self, client_id: str, currency: Optional[Currency] = None) -> ClientAccount:
        """Get a client's wallet, opening an empty one on first access"""
        currency = currency or self.currency
        with self.client_locks.hold(client_id):
            account = self.get_account(client_id, currency)
            if account:
                return account

            now = datetime.now(timezone.utc)
            account = ClientAccount(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                client_id=client_id,
                balance=Money.zero(currency),
            )
            self.storage.save(self.accounts_table, account.id, account.to_dict())
            return account

    def get_balance(self, client_id: str, currency: Optional[Currency] = None) -> Money:
        currency = currency or self.currency
        account = self.get_account(client_id, currency)
        return account.balance if account else Money.zero(currency)

    def deposit(self, client_id: str, amount: Money, loan_id: Optional[str] = None,
                notes: Optional[str] = None, created_by: Optional[str] = None) -> WalletTransaction:
        """Credit a client's wallet, e.g. with a payment's residual"""
        return self._post(client_id, amount, WalletTransactionType.DEPOSIT, loan_id, notes, created_by)

    def withdraw(self, client_id: str, amount: Money, notes: Optional[str] = None,
                 created_by: Optional[str] = None) -> WalletTransaction:
        """Pay out part of a client's wallet"""
        return self._post(client_id, amount, WalletTransactionType.WITHDRAWAL, None, notes, created_by)

    def debit_for_loan_payment(self, client_id: str, amount: Money, loan_id: str,
                               notes: Optional[str] = None,
                               created_by: Optional[str] = None) -> WalletTransaction:
        """Take funds from a client's wallet to pay one of their loans"""
        return self._post(client_id, amount, WalletTransactionType.LOAN_PAYMENT, loan_id, notes, created_by)

    def deduct_fee(self, client_id: str, amount: Money, loan_id: Optional[str] = None,
                   notes: Optional[str] = None, created_by: Optional[str] = None) -> WalletTransaction:
        return self._post(client_id, amount, WalletTransactionType.FEE_DEDUCTION, loan_id, notes, created_by)

    def get_transactions(self, client_id: str, currency: Optional[Currency] = None) -> List[WalletTransaction]:
        """Ledger of a client's wallet, newest first"""
        account = self.get_account(client_id, currency)
        if not account:
            return []
        entries = [WalletTransaction.from_dict(data) for data in
                   self.storage.find(self.transactions_table, {'client_account_id': account.id})]
        entries.sort(key=lambda t: t.created_at, reverse=True)
        return entries

    def _post(self, client_id: str, amount: Money, transaction_type: WalletTransactionType,
              loan_id: Optional[str], notes: Optional[str], created_by: Optional[str]) -> WalletTransaction:
        if not isinstance(amount, Money) or not amount.is_positive():
            raise ValidationError("Wallet amount must be positive")

        with self.client_locks.hold(client_id):
            with unit_of_work(self.storage, f"Wallet {transaction_type.value} for client {client_id}"):
                account = self.get_or_create_account(client_id, amount.currency)
                previous_balance = account.balance

                if transaction_type.is_credit:
                    signed = amount
                else:
                    if amount > previous_balance:
                        raise ValidationError(
                            f"Insufficient wallet balance: {previous_balance.to_string()} available, "
                            f"{amount.to_string()} requested"
                        )
                    signed = -amount

                now = datetime.now(timezone.utc)
                account.balance = previous_balance + signed
                account.updated_at = now
                self.storage.save(self.accounts_table, account.id, account.to_dict())

                entry = WalletTransaction(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    client_account_id=account.id,
                    amount=signed,
                    transaction_type=transaction_type,
                    previous_balance=previous_balance,
                    new_balance=account.balance,
                    loan_id=loan_id,
                    notes=notes,
                    created_by=created_by,
                )
                self.storage.save(self.transactions_table, entry.id, entry.to_dict())

                self.audit_trail.log_event(
                    event_type=(AuditEventType.WALLET_DEPOSIT if transaction_type.is_credit
                                else AuditEventType.WALLET_WITHDRAWAL),
                    entity_type="client_account",
                    entity_id=account.id,
                    user_id=created_by,
                    metadata={
                        "client_id": client_id,
                        "transaction_type": transaction_type,
                        "amount": signed.to_string(),
                        "new_balance": account.balance.to_string(),
                        "loan_id": loan_id,
                    }
                )

        logger.info("Wallet %s of %s for client %s", transaction_type.value, amount.to_string(), client_id)
        return entry
