"""
FastAPI REST API Module

Thin HTTP surface over the payment workflows: loan creation, schedule
queries, recording and reverting payments, draw-down payments and client
wallets. Authentication and role checks happen in front of this service.
"""

from datetime import datetime, timezone, date
from typing import Optional
from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import uvicorn

from .config import LoanServicingConfig, get_config
from .currency import Money, Currency, decimal_from_string
from .storage import storage_from_url
from .audit import AuditTrail
from .schedule import ScheduleStore
from .loans import LoanManager, RepaymentFrequency
from .allocation import PaymentAllocator
from .wallet import WalletManager
from .transactions import PaymentService, PaymentMethod, PaymentOutcome, FeeType
from .locking import LoanLockRegistry, ClientLockRegistry
from .exceptions import LoanServicingError, NotFoundError, ValidationError, StorageError
from .logging_config import setup_logging


# Pydantic models for API requests
class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: Optional[str] = Field(None, description="Currency code; defaults to the loan's currency, or the configured one")

    def to_money(self, default_currency: Currency) -> Money:
        try:
            currency = Currency[self.currency] if self.currency else default_currency
        except KeyError:
            raise ValidationError(f"Unsupported currency: {self.currency}")
        try:
            return Money(decimal_from_string(self.amount), currency)
        except ValueError as e:
            raise ValidationError(str(e))


class CreateLoanRequest(BaseModel):
    client_id: str
    principal: MoneyModel
    interest_rate: str = Field(..., description="Annual flat rate in percent")
    term_months: int = Field(..., gt=0)
    repayment_frequency: str = "monthly"
    start_date: Optional[date] = None


class RecordPaymentRequest(BaseModel):
    amount: MoneyModel
    payment_method: str = "cash"
    receipt_number: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    transaction_date: Optional[datetime] = None


class DrawDownPaymentRequest(BaseModel):
    amount: MoneyModel
    notes: Optional[str] = None
    created_by: Optional[str] = None


class ClientDrawDownPaymentRequest(DrawDownPaymentRequest):
    target_loan_id: str


class DrawDownFundsRequest(BaseModel):
    amount: MoneyModel


class PostFeeRequest(BaseModel):
    amount: MoneyModel
    fee_type: str
    payment_method: str = "cash"
    receipt_number: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None


class RevertPaymentRequest(BaseModel):
    reason: str
    reverted_by: Optional[str] = None


class WithdrawRequest(BaseModel):
    amount: MoneyModel
    notes: Optional[str] = None
    created_by: Optional[str] = None


class LoanServicingSystem:
    """All engine components wired over one storage backend"""

    def __init__(self, config: Optional[LoanServicingConfig] = None):
        self.config = config or get_config()
        self.currency = Currency[self.config.default_currency]

        self.storage = storage_from_url(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.loan_locks = LoanLockRegistry(timeout=self.config.lock_timeout_seconds)
        self.client_locks = ClientLockRegistry(timeout=self.config.lock_timeout_seconds)

        self.schedule_store = ScheduleStore(self.storage)
        self.loan_manager = LoanManager(self.storage, self.schedule_store, self.audit_trail)
        self.allocator = PaymentAllocator(
            self.storage, self.schedule_store, self.loan_manager,
            self.audit_trail, self.loan_locks
        )
        self.wallet_manager = WalletManager(
            self.storage, self.audit_trail, self.client_locks, self.currency
        )
        self.payment_service = PaymentService(
            self.storage, self.loan_manager, self.allocator, self.wallet_manager,
            self.audit_trail, self.loan_locks, self.client_locks
        )


_system: Optional[LoanServicingSystem] = None


def get_system() -> LoanServicingSystem:
    global _system
    if _system is None:
        _system = LoanServicingSystem()
    return _system


app = FastAPI(
    title="Loan Servicing API",
    description="Installment allocation and reversal for microfinance loans",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(error: LoanServicingError) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, StorageError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


def _enum(enum_type, value: str):
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(f"Unsupported {enum_type.__name__}: {value}")


def _currency(code: Optional[str], default: Currency) -> Currency:
    if not code:
        return default
    try:
        return Currency[code]
    except KeyError:
        raise ValidationError(f"Unsupported currency: {code}")


def _loan_currency(system: LoanServicingSystem, loan_id: str) -> Currency:
    """Amounts sent for a loan default to the loan's own currency"""
    return system.loan_manager.require_loan(loan_id).currency


def _money(value: Money) -> dict:
    return {"amount": str(value.amount), "currency": value.currency.code}


def _payment_response(outcome: PaymentOutcome) -> dict:
    return {
        "transaction_id": outcome.transaction.id,
        "receipt_number": outcome.transaction.receipt_number,
        "applied": _money(outcome.allocation.applied),
        "residual": _money(outcome.allocation.residual),
        "installments": [change.to_dict() for change in outcome.allocation.changes],
        "wallet_transaction_id": outcome.wallet_entry.id if outcome.wallet_entry else None,
    }


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/loans", status_code=status.HTTP_201_CREATED)
def create_loan(request: CreateLoanRequest, system: LoanServicingSystem = Depends(get_system)):
    """Create a loan and its repayment schedule"""
    try:
        try:
            interest_rate = decimal_from_string(request.interest_rate)
        except ValueError as e:
            raise ValidationError(str(e))
        loan = system.loan_manager.create_loan(
            client_id=request.client_id,
            principal=request.principal.to_money(system.currency),
            interest_rate=interest_rate,
            term_months=request.term_months,
            repayment_frequency=_enum(RepaymentFrequency, request.repayment_frequency),
            start_date=request.start_date,
        )
    except LoanServicingError as e:
        raise _http_error(e)

    return {"loan_id": loan.id, "loan_number": loan.loan_number, "message": "Loan created successfully"}


@app.get("/loans/{loan_id}")
def get_loan(loan_id: str, system: LoanServicingSystem = Depends(get_system)):
    """Loan terms and outstanding balance"""
    try:
        loan = system.loan_manager.require_loan(loan_id)
        balance = system.loan_manager.get_balance(loan_id)
    except LoanServicingError as e:
        raise _http_error(e)

    return {
        "id": loan.id,
        "loan_number": loan.loan_number,
        "client_id": loan.client_id,
        "principal": _money(loan.principal),
        "total_interest": _money(loan.total_interest),
        "balance": _money(balance),
        "draw_down_balance": _money(loan.draw_down_balance),
        "repayment_frequency": loan.repayment_frequency.value,
    }


@app.get("/loans/{loan_id}/schedule")
def get_schedule(loan_id: str, system: LoanServicingSystem = Depends(get_system)):
    """Repayment schedule, earliest due first"""
    try:
        system.loan_manager.require_loan(loan_id)
    except LoanServicingError as e:
        raise _http_error(e)

    return [
        {
            "id": entry.id,
            "installment_number": entry.installment_number,
            "due_date": entry.due_date.isoformat(),
            "principal_due": str(entry.principal_due.amount),
            "interest_due": str(entry.interest_due.amount),
            "total_due": str(entry.total_due.amount),
            "amount_paid": str(entry.amount_paid.amount),
            "status": entry.status.value,
        }
        for entry in system.schedule_store.get_schedule(loan_id)
    ]


@app.post("/loans/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def record_payment(loan_id: str, request: RecordPaymentRequest,
                   system: LoanServicingSystem = Depends(get_system)):
    """Record a repayment and allocate it"""
    try:
        outcome = system.payment_service.record_payment(
            loan_id=loan_id,
            amount=request.amount.to_money(_loan_currency(system, loan_id)),
            payment_method=_enum(PaymentMethod, request.payment_method),
            receipt_number=request.receipt_number,
            notes=request.notes,
            created_by=request.created_by,
            transaction_date=request.transaction_date,
        )
    except LoanServicingError as e:
        raise _http_error(e)
    return _payment_response(outcome)


@app.post("/loans/{loan_id}/draw-down-funds")
def add_draw_down_funds(loan_id: str, request: DrawDownFundsRequest,
                        system: LoanServicingSystem = Depends(get_system)):
    """Credit a loan's draw-down balance"""
    try:
        loan = system.loan_manager.add_draw_down_funds(
            loan_id, request.amount.to_money(_loan_currency(system, loan_id))
        )
    except LoanServicingError as e:
        raise _http_error(e)
    return {"loan_id": loan.id, "draw_down_balance": _money(loan.draw_down_balance)}


@app.post("/loans/{loan_id}/draw-down-payments", status_code=status.HTTP_201_CREATED)
def draw_down_payment(loan_id: str, request: DrawDownPaymentRequest,
                      system: LoanServicingSystem = Depends(get_system)):
    """Pay a loan from its draw-down balance"""
    try:
        outcome = system.payment_service.draw_down_payment(
            loan_id=loan_id,
            amount=request.amount.to_money(_loan_currency(system, loan_id)),
            notes=request.notes,
            created_by=request.created_by,
        )
    except LoanServicingError as e:
        raise _http_error(e)
    return _payment_response(outcome)


@app.post("/loans/{loan_id}/global-draw-down-payments", status_code=status.HTTP_201_CREATED)
def global_draw_down_payment(loan_id: str, request: DrawDownPaymentRequest,
                             system: LoanServicingSystem = Depends(get_system)):
    """Pay a loan from the draw-down funds pooled across all loans"""
    try:
        outcome = system.payment_service.global_draw_down_payment(
            target_loan_id=loan_id,
            amount=request.amount.to_money(_loan_currency(system, loan_id)),
            notes=request.notes,
            created_by=request.created_by,
        )
    except LoanServicingError as e:
        raise _http_error(e)
    return _payment_response(outcome)


@app.get("/draw-down-balance")
def get_pooled_draw_down_balance(currency: Optional[str] = None,
                                 system: LoanServicingSystem = Depends(get_system)):
    """Draw-down funds available across all loans"""
    try:
        pool_currency = _currency(currency, system.currency)
    except LoanServicingError as e:
        raise _http_error(e)
    return {"draw_down_balance": _money(system.loan_manager.total_draw_down_balance(pool_currency))}


@app.post("/loans/{loan_id}/fees", status_code=status.HTTP_201_CREATED)
def post_fee(loan_id: str, request: PostFeeRequest, system: LoanServicingSystem = Depends(get_system)):
    """Charge a fee to a loan"""
    try:
        transaction = system.payment_service.post_fee(
            loan_id=loan_id,
            amount=request.amount.to_money(_loan_currency(system, loan_id)),
            fee_type=_enum(FeeType, request.fee_type),
            payment_method=_enum(PaymentMethod, request.payment_method),
            receipt_number=request.receipt_number,
            notes=request.notes,
            created_by=request.created_by,
        )
    except LoanServicingError as e:
        raise _http_error(e)
    return {"transaction_id": transaction.id, "notes": transaction.notes}


@app.get("/loans/{loan_id}/transactions")
def get_loan_transactions(loan_id: str, system: LoanServicingSystem = Depends(get_system)):
    """Payment history, newest first"""
    try:
        system.loan_manager.require_loan(loan_id)
    except LoanServicingError as e:
        raise _http_error(e)

    return [
        {
            "id": t.id,
            "amount": _money(t.amount),
            "transaction_type": t.transaction_type.value,
            "transaction_date": t.transaction_date.isoformat(),
            "payment_method": t.payment_method.value,
            "receipt_number": t.receipt_number,
            "is_reverted": t.is_reverted,
            "reversal_reason": t.reversal_reason,
        }
        for t in system.payment_service.get_loan_transactions(loan_id)
    ]


@app.post("/transactions/{transaction_id}/revert")
def revert_payment(transaction_id: str, request: RevertPaymentRequest,
                   system: LoanServicingSystem = Depends(get_system)):
    """Revert a payment and undo its allocation"""
    try:
        outcome = system.payment_service.revert_payment(
            transaction_id, request.reason, reverted_by=request.reverted_by
        )
    except LoanServicingError as e:
        raise _http_error(e)

    reversal = outcome.reversal
    zero = _money(Money.zero(outcome.transaction.amount.currency))
    return {
        "transaction_id": outcome.transaction.id,
        "reversed": _money(reversal.reversed) if reversal else zero,
        "unapplied": _money(reversal.unapplied) if reversal else zero,
        "installments": [change.to_dict() for change in reversal.changes] if reversal else [],
        "message": "Payment reverted successfully",
    }


@app.get("/clients/{client_id}/wallet")
def get_wallet(client_id: str, currency: Optional[str] = None,
               system: LoanServicingSystem = Depends(get_system)):
    """Wallet balance and ledger in one currency, newest first"""
    try:
        wallet_currency = _currency(currency, system.currency)
    except LoanServicingError as e:
        raise _http_error(e)

    return {
        "client_id": client_id,
        "balance": _money(system.wallet_manager.get_balance(client_id, wallet_currency)),
        "transactions": [
            {
                "id": t.id,
                "amount": str(t.amount.amount),
                "transaction_type": t.transaction_type.value,
                "previous_balance": str(t.previous_balance.amount),
                "new_balance": str(t.new_balance.amount),
                "loan_id": t.loan_id,
                "notes": t.notes,
                "created_at": t.created_at.isoformat(),
            }
            for t in system.wallet_manager.get_transactions(client_id, wallet_currency)
        ],
    }


@app.post("/clients/{client_id}/wallet/withdrawals", status_code=status.HTTP_201_CREATED)
def withdraw(client_id: str, request: WithdrawRequest, system: LoanServicingSystem = Depends(get_system)):
    """Pay out part of a client's wallet"""
    try:
        entry = system.wallet_manager.withdraw(
            client_id, request.amount.to_money(system.currency),
            notes=request.notes, created_by=request.created_by
        )
    except LoanServicingError as e:
        raise _http_error(e)
    return {"wallet_transaction_id": entry.id, "new_balance": str(entry.new_balance.amount)}


@app.post("/clients/{client_id}/draw-down-payments", status_code=status.HTTP_201_CREATED)
def client_draw_down_payment(client_id: str, request: ClientDrawDownPaymentRequest,
                             system: LoanServicingSystem = Depends(get_system)):
    """Pay one of a client's loans from the client's wallet"""
    try:
        outcome = system.payment_service.client_draw_down_payment(
            client_id=client_id,
            target_loan_id=request.target_loan_id,
            amount=request.amount.to_money(_loan_currency(system, request.target_loan_id)),
            notes=request.notes,
            created_by=request.created_by,
        )
    except LoanServicingError as e:
        raise _http_error(e)
    return _payment_response(outcome)


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    uvicorn.run(
        "loan_servicing.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
