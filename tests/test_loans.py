"""
Test suite for loans module

Tests flat-interest origination and schedule generation. The schedule must
always sum exactly to principal plus interest.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.currency import Money, Currency
from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.schedule import ScheduleStore, ScheduleStatus
from loan_servicing.loans import (
    LoanManager, RepaymentFrequency, calculate_flat_interest, installment_count, due_date_for
)
from loan_servicing.exceptions import NotFoundError, ValidationError


def kes(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.KES)


class TestFlatInterest:

    def test_one_year(self):
        assert calculate_flat_interest(kes(10000), Decimal('12'), 12) == kes(1200)

    def test_six_months(self):
        assert calculate_flat_interest(kes(10000), Decimal('12'), 6) == kes(600)

    def test_zero_rate(self):
        assert calculate_flat_interest(kes(10000), Decimal('0'), 12) == kes(0)


class TestInstallmentCount:

    def test_monthly(self):
        assert installment_count(12, RepaymentFrequency.MONTHLY) == 12

    def test_weekly(self):
        assert installment_count(3, RepaymentFrequency.WEEKLY) == 13

    def test_biweekly(self):
        assert installment_count(6, RepaymentFrequency.BIWEEKLY) == 13


class TestDueDates:

    def test_monthly_clamps_to_month_end(self):
        assert due_date_for(date(2024, 1, 31), RepaymentFrequency.MONTHLY, 1) == date(2024, 2, 29)
        assert due_date_for(date(2024, 1, 31), RepaymentFrequency.MONTHLY, 3) == date(2024, 4, 30)

    def test_monthly_crosses_year(self):
        assert due_date_for(date(2024, 11, 15), RepaymentFrequency.MONTHLY, 3) == date(2025, 2, 15)

    def test_weekly(self):
        assert due_date_for(date(2024, 1, 1), RepaymentFrequency.WEEKLY, 2) == date(2024, 1, 15)


class TestLoanManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.schedule_store = ScheduleStore(self.storage)
        self.loan_manager = LoanManager(self.storage, self.schedule_store, self.audit)

    def test_create_loan_builds_schedule(self):
        loan = self.loan_manager.create_loan(
            client_id="CLIENT1",
            principal=kes(10000),
            interest_rate=Decimal('15'),
            term_months=3,
            start_date=date(2024, 1, 10),
        )

        assert loan.loan_number.startswith("LN-")
        assert loan.total_interest == kes(375)
        assert loan.draw_down_balance == kes(0)

        schedule = self.schedule_store.get_schedule(loan.id)
        assert [e.due_date for e in schedule] == [date(2024, 2, 10), date(2024, 3, 10), date(2024, 4, 10)]
        assert all(e.status == ScheduleStatus.PENDING for e in schedule)

        total = kes(0)
        for entry in schedule:
            total = total + entry.total_due
        assert total == loan.total_repayable

    def test_remainder_goes_to_last_installment(self):
        loan = self.loan_manager.create_loan("CLIENT1", kes(1000), Decimal('0'), 3)
        schedule = self.schedule_store.get_schedule(loan.id)
        assert [e.principal_due for e in schedule] == [kes('333.33'), kes('333.33'), kes('333.34')]

    def test_no_minor_unit_currency(self):
        principal = Money(Decimal('100000'), Currency.UGX)
        loan = self.loan_manager.create_loan("CLIENT1", principal, Decimal('10'), 3)
        schedule = self.schedule_store.get_schedule(loan.id)
        assert [e.principal_due.amount for e in schedule] == [Decimal('33333'), Decimal('33333'), Decimal('33334')]

    def test_balance(self):
        loan = self.loan_manager.create_loan("CLIENT1", kes(1200), Decimal('0'), 12)
        assert self.loan_manager.get_balance(loan.id) == kes(1200)

    def test_loan_round_trips_through_storage(self):
        loan = self.loan_manager.create_loan(
            "CLIENT1", kes(5000), Decimal('12.5'), 6, RepaymentFrequency.WEEKLY, date(2024, 6, 1)
        )
        loaded = self.loan_manager.get_loan(loan.id)
        assert loaded.principal == loan.principal
        assert loaded.interest_rate == Decimal('12.5')
        assert loaded.repayment_frequency == RepaymentFrequency.WEEKLY
        assert loaded.start_date == date(2024, 6, 1)

    def test_client_loans(self):
        first = self.loan_manager.create_loan("CLIENT1", kes(100), Decimal('0'), 1)
        second = self.loan_manager.create_loan("CLIENT1", kes(200), Decimal('0'), 1)
        self.loan_manager.create_loan("CLIENT2", kes(300), Decimal('0'), 1)
        assert {l.id for l in self.loan_manager.get_client_loans("CLIENT1")} == {first.id, second.id}

    def test_invalid_terms(self):
        with pytest.raises(ValidationError):
            self.loan_manager.create_loan("CLIENT1", kes(0), Decimal('10'), 12)
        with pytest.raises(ValidationError):
            self.loan_manager.create_loan("CLIENT1", kes(100), Decimal('10'), 0)
        with pytest.raises(ValidationError):
            self.loan_manager.create_loan("CLIENT1", kes(100), Decimal('-1'), 12)

    def test_missing_loan(self):
        assert self.loan_manager.get_loan("nope") is None
        with pytest.raises(NotFoundError):
            self.loan_manager.require_loan("nope")

    def test_draw_down_funds(self):
        loan = self.loan_manager.create_loan("CLIENT1", kes(1000), Decimal('0'), 2)
        self.loan_manager.add_draw_down_funds(loan.id, kes(250))
        self.loan_manager.add_draw_down_funds(loan.id, kes(50))
        assert self.loan_manager.get_loan(loan.id).draw_down_balance == kes(300)

        with pytest.raises(ValidationError):
            self.loan_manager.add_draw_down_funds(loan.id, kes(0))

    def test_draw_down_sources_largest_first(self):
        first = self.loan_manager.create_loan("CLIENT1", kes(1000), Decimal('0'), 2)
        second = self.loan_manager.create_loan("CLIENT2", kes(1000), Decimal('0'), 2)
        self.loan_manager.create_loan("CLIENT3", kes(1000), Decimal('0'), 2)
        foreign = self.loan_manager.create_loan("CLIENT4", Money(Decimal('1000'), Currency.UGX), Decimal('0'), 2)
        self.loan_manager.add_draw_down_funds(first.id, kes(100))
        self.loan_manager.add_draw_down_funds(second.id, kes(400))
        self.loan_manager.add_draw_down_funds(foreign.id, Money(Decimal('9000'), Currency.UGX))

        sources = self.loan_manager.get_draw_down_sources(Currency.KES)
        assert [l.id for l in sources] == [second.id, first.id]
        assert self.loan_manager.total_draw_down_balance(Currency.KES) == kes(500)
        assert self.loan_manager.total_draw_down_balance(Currency.TZS) == Money.zero(Currency.TZS)

    def test_origination_is_audited(self):
        loan = self.loan_manager.create_loan("CLIENT1", kes(1000), Decimal('10'), 2, created_by="officer")
        events = self.audit.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [AuditEventType.LOAN_CREATED, AuditEventType.SCHEDULE_CREATED]
        assert events[0].user_id == "officer"
