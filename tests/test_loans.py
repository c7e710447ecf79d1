"""
Test suite for loans module

Tests loan creation, simple interest totals, payment recording and status
transitions, installment payments through accounts, ownership scoping,
queries and totals. All financial math must be precise.
"""

import threading

import pytest
from decimal import Decimal
from datetime import datetime, date, timezone, timedelta

from obligations.storage import InMemoryStorage
from obligations.audit import AuditTrail, AuditEventType
from obligations.accounts import AccountLedger
from obligations.journal import TransactionJournal, EntryType
from obligations.loans import (
    LoanLedger, LoanType, LoanStatus, new_loan, calculate_total_amount
)
from obligations.errors import ValidationError, NotFoundError, ConcurrencyError, ConsistencyFailure


NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
T0 = datetime(2024, 1, 10, 9, 30, tzinfo=timezone.utc)


class TestLoanFactory:
    """Test new_loan validation and derived fields"""

    def test_total_with_interest(self):
        """Test principal=1000, rate=5 gives total 1050"""
        loan = new_loan("alice", "Bob", LoanType.LENT, Decimal("1000.00"), T0, interest_rate=Decimal("5"))

        assert loan.total_amount == Decimal("1050.00")
        assert loan.remaining_amount == Decimal("1050.00")
        assert loan.paid_amount == Decimal("0.00")
        assert loan.status == LoanStatus.ACTIVE

    def test_total_without_interest_equals_principal(self):
        loan = new_loan("alice", "Bob", LoanType.BORROWED, "250.00", T0)
        assert loan.total_amount == loan.principal_amount == Decimal("250.00")

    def test_zero_rate_equals_principal(self):
        assert calculate_total_amount(Decimal("100.00"), Decimal("0")) == Decimal("100.00")

    def test_interest_rounds_half_up(self):
        assert calculate_total_amount(Decimal("10.01"), Decimal("2.5")) == Decimal("10.26")

    def test_naive_loan_date_treated_as_utc(self):
        loan = new_loan("alice", "Bob", LoanType.LENT, "10.00", datetime(2024, 1, 1))
        assert loan.loan_date.tzinfo is not None

    @pytest.mark.parametrize("kwargs, field", [
        ({"principal_amount": Decimal("0")}, "principal_amount"),
        ({"principal_amount": Decimal("-5")}, "principal_amount"),
        ({"principal_amount": None}, "principal_amount"),
        ({"loan_date": None}, "loan_date"),
        ({"loan_type": None}, "loan_type"),
        ({"person_name": ""}, "person_name"),
        ({"person_name": "x" * 101}, "person_name"),
        ({"phone_number": "1" * 21}, "phone_number"),
        ({"notes": "n" * 501}, "notes"),
        ({"interest_rate": Decimal("-1")}, "interest_rate"),
    ])
    def test_validation(self, kwargs, field):
        """Test that invalid input is rejected with the offending field"""
        args = {
            "owner_id": "alice",
            "person_name": "Bob",
            "loan_type": LoanType.LENT,
            "principal_amount": Decimal("100.00"),
            "loan_date": T0,
        }
        args.update(kwargs)

        with pytest.raises(ValidationError) as exc_info:
            new_loan(**args)
        assert exc_info.value.field == field

    def test_derived_predicates(self):
        loan = new_loan("alice", "Bob", LoanType.LENT, Decimal("200.00"), T0)
        assert loan.percentage_paid == Decimal("0.00")
        assert not loan.is_fully_paid

        loan.paid_amount = Decimal("50.00")
        assert loan.percentage_paid == Decimal("25.00")


class TestLoanLedger:
    """Test LoanLedger operations"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.accounts = AccountLedger(self.storage, self.audit_trail)
        self.journal = TransactionJournal(self.storage, self.accounts, self.audit_trail)
        self.ledger = LoanLedger(
            self.storage, self.audit_trail, self.accounts, self.journal,
            clock=lambda: NOW
        )
        self.loan = self.ledger.create_loan(
            "alice", "Bob", LoanType.LENT, Decimal("1000.00"), T0, interest_rate=Decimal("5")
        )

    def test_create_loan_persists_and_audits(self):
        loaded = self.ledger.get_loan("alice", self.loan.id)

        assert loaded.total_amount == Decimal("1050.00")
        assert loaded.remaining_amount == Decimal("1050.00")
        assert loaded.status == LoanStatus.ACTIVE
        assert loaded.owner_id == "alice"
        assert loaded.reminder_enabled

        events = self.audit_trail.get_events_for_entity("loan", self.loan.id)
        assert events[0].event_type == AuditEventType.LOAN_CREATED

    def test_full_payment_pays_off(self):
        """Test paying exactly the remaining amount"""
        loan = self.ledger.record_payment("alice", self.loan.id, Decimal("1050.00"))

        assert loan.paid_amount == Decimal("1050.00")
        assert loan.remaining_amount == Decimal("0.00")
        assert loan.status == LoanStatus.PAID_OFF
        assert loan.last_payment_date == NOW
        assert loan.is_fully_paid

        event_types = [e.event_type for e in self.audit_trail.get_events_for_entity("loan", loan.id)]
        assert AuditEventType.LOAN_PAID_OFF in event_types

    def test_partial_payment(self):
        loan = self.ledger.record_payment("alice", self.loan.id, Decimal("500.00"))

        assert loan.paid_amount == Decimal("500.00")
        assert loan.remaining_amount == Decimal("550.00")
        assert loan.status == LoanStatus.PARTIALLY_PAID

    def test_zero_payment_leaves_status(self):
        loan = self.ledger.record_payment("alice", self.loan.id, Decimal("0"))

        assert loan.status == LoanStatus.ACTIVE
        assert loan.remaining_amount == Decimal("1050.00")

    def test_overpayment_goes_negative(self):
        """Test that remaining may go below zero rather than being clamped"""
        loan = self.ledger.record_payment("alice", self.loan.id, Decimal("1100.00"))

        assert loan.remaining_amount == Decimal("-50.00")
        assert loan.status == LoanStatus.PAID_OFF

    def test_negative_payment_rejected(self):
        with pytest.raises(ValidationError):
            self.ledger.record_payment("alice", self.loan.id, Decimal("-1.00"))

    def test_remaining_invariant_across_payments(self):
        for amount in ("100.10", "200.20", "0", "749.70"):
            loan = self.ledger.record_payment("alice", self.loan.id, amount)
            assert loan.remaining_amount == loan.total_amount - loan.paid_amount
            assert (loan.status == LoanStatus.PAID_OFF) == (loan.remaining_amount <= 0)
        assert loan.status == LoanStatus.PAID_OFF

    def test_overdue_only_while_active(self):
        """Test that a partially paid loan past due is not reported overdue"""
        loan = self.ledger.create_loan(
            "alice", "Carol", LoanType.LENT, Decimal("100.00"), T0,
            due_date=NOW - timedelta(days=1)
        )
        assert loan.is_overdue(NOW)
        assert [overdue.id for overdue in self.ledger.get_overdue_loans("alice")] == [loan.id]

        loan = self.ledger.record_payment("alice", loan.id, Decimal("10.00"))
        assert loan.status == LoanStatus.PARTIALLY_PAID
        assert not loan.is_overdue(NOW)
        assert self.ledger.get_overdue_loans("alice") == []

    def test_foreign_loan_is_not_found(self):
        """Test that every id-scoped operation hides other owners' loans"""
        for operation in (
            lambda: self.ledger.get_loan("bob", self.loan.id),
            lambda: self.ledger.record_payment("bob", self.loan.id, Decimal("1.00")),
            lambda: self.ledger.update_loan("bob", self.loan.id, notes="mine now"),
            lambda: self.ledger.mark_urgent("bob", self.loan.id),
            lambda: self.ledger.delete_loan("bob", self.loan.id),
        ):
            with pytest.raises(NotFoundError) as exc_info:
                operation()
            assert str(exc_info.value) == f"Loan {self.loan.id} not found"

        loan = self.ledger.get_loan("alice", self.loan.id)
        assert loan.paid_amount == Decimal("0.00")
        assert not loan.is_urgent

    def test_update_loan(self):
        """Test that updates overwrite fields without re-deriving totals"""
        due = NOW + timedelta(days=30)
        loan = self.ledger.update_loan(
            "alice", self.loan.id,
            person_name="Robert", principal_amount=Decimal("2000.00"),
            due_date=due, status="overdue"
        )

        assert loan.person_name == "Robert"
        assert loan.principal_amount == Decimal("2000.00")
        assert loan.total_amount == Decimal("1050.00")
        assert loan.remaining_amount == Decimal("1050.00")
        assert loan.due_date == due
        assert loan.status == LoanStatus.OVERDUE
        assert loan.version == 2

    def test_update_rejects_immutable_fields(self):
        with pytest.raises(ValidationError) as exc_info:
            self.ledger.update_loan("alice", self.loan.id, loan_type=LoanType.BORROWED)
        assert exc_info.value.field == "loan_type"

        with pytest.raises(ValidationError) as exc_info:
            self.ledger.update_loan("alice", self.loan.id, owner_id="bob")
        assert exc_info.value.field == "owner_id"
        with pytest.raises(ValidationError) as exc_info:
            self.ledger.update_loan("alice", self.loan.id, loan_id="other")
        assert exc_info.value.field == "loan_id"
        with pytest.raises(ValidationError):
            self.ledger.update_loan("alice", self.loan.id, status="bogus")

        assert self.ledger.get_loan("alice", self.loan.id).loan_type == LoanType.LENT

    def test_plain_dates_become_midnight_utc(self):
        """Test that calendar dates and ISO strings are accepted for loan dates"""
        loan = self.ledger.create_loan(
            "alice", "Carol", LoanType.LENT, Decimal("100.00"), date(2024, 1, 1),
            due_date="2024-06-30T00:00:00"
        )
        assert loan.loan_date == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert loan.due_date == datetime(2024, 6, 30, tzinfo=timezone.utc)

        updated = self.ledger.update_loan("alice", loan.id, due_date=date(2024, 7, 15))
        assert updated.due_date == datetime(2024, 7, 15, tzinfo=timezone.utc)
        assert self.ledger.get_loan("alice", loan.id).due_date == datetime(2024, 7, 15, tzinfo=timezone.utc)

    @pytest.mark.parametrize("bad_date", [42, "not-a-date", Decimal("1")])
    def test_invalid_dates_rejected(self, bad_date):
        with pytest.raises(ValidationError) as exc_info:
            self.ledger.create_loan("alice", "Carol", LoanType.LENT, Decimal("100.00"), bad_date)
        assert exc_info.value.field == "loan_date"

        with pytest.raises(ValidationError) as exc_info:
            self.ledger.update_loan("alice", self.loan.id, due_date=bad_date)
        assert exc_info.value.field == "due_date"
        assert self.ledger.get_loan("alice", self.loan.id).due_date is None

    def test_urgency_toggle(self):
        assert self.ledger.mark_urgent("alice", self.loan.id).is_urgent
        assert [loan.id for loan in self.ledger.get_urgent_loans("alice")] == [self.loan.id]

        loan = self.ledger.mark_not_urgent("alice", self.loan.id)
        assert not loan.is_urgent
        assert loan.remaining_amount == Decimal("1050.00")
        assert self.ledger.get_urgent_loans("alice") == []

    def test_delete_loan(self):
        self.ledger.delete_loan("alice", self.loan.id)

        with pytest.raises(NotFoundError):
            self.ledger.get_loan("alice", self.loan.id)
        event_types = [e.event_type for e in self.audit_trail.get_events_for_entity("loan", self.loan.id)]
        assert event_types[-1] == AuditEventType.LOAN_DELETED

    def test_stale_write_raises_concurrency_error(self):
        """Test that a write based on an outdated read is refused"""
        stale = self.ledger.get_loan("alice", self.loan.id)
        self.ledger.record_payment("alice", self.loan.id, Decimal("100.00"))

        stale.paid_amount = Decimal("999.00")
        with pytest.raises(ConcurrencyError) as exc_info:
            self.ledger._save_loan(stale)
        assert isinstance(exc_info.value, ConsistencyFailure)
        assert self.ledger.get_loan("alice", self.loan.id).paid_amount == Decimal("100.00")

    def test_concurrent_payments_are_not_lost(self):
        """Test that payments from many threads all land"""
        def pay():
            for _ in range(5):
                self.ledger.record_payment("alice", self.loan.id, Decimal("1.00"))

        threads = [threading.Thread(target=pay) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        loan = self.ledger.get_loan("alice", self.loan.id)
        assert loan.paid_amount == Decimal("40.00")
        assert loan.remaining_amount == Decimal("1010.00")
        assert loan.version == 41


class TestInstallmentPayments:
    """Test installment payments that move money through an account"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.accounts = AccountLedger(self.storage, self.audit_trail)
        self.journal = TransactionJournal(self.storage, self.accounts, self.audit_trail)
        self.ledger = LoanLedger(
            self.storage, self.audit_trail, self.accounts, self.journal,
            clock=lambda: NOW
        )
        self.account = self.accounts.open_account("alice", "Checking", opening_balance=Decimal("300.00"))

    def test_lent_installment_credits_account(self):
        loan = self.ledger.create_loan("alice", "Bob", LoanType.LENT, Decimal("500.00"), T0)

        receipt = self.ledger.record_installment_payment(
            "alice", loan.id, self.account.id, Decimal("200.00"), note="First installment"
        )

        assert receipt.remaining_balance == Decimal("300.00")
        assert receipt.currency == "USD"
        assert receipt.paid_at == NOW
        assert self.accounts.get_balance("alice", self.account.id) == Decimal("500.00")

        entries = self.journal.list_entries("alice")
        assert len(entries) == 1
        assert entries[0].entry_type == EntryType.INCOME
        assert entries[0].id == receipt.journal_entry_id

        assert self.ledger.get_loan("alice", loan.id).status == LoanStatus.PARTIALLY_PAID
        assert [i.id for i in self.ledger.get_loan_installments("alice", loan.id)] == [receipt.id]

    def test_borrowed_installment_debits_account(self):
        loan = self.ledger.create_loan("alice", "Bank", LoanType.BORROWED, Decimal("250.00"), T0)
        paid_at = datetime(2024, 3, 1, tzinfo=timezone.utc)

        receipt = self.ledger.record_installment_payment(
            "alice", loan.id, self.account.id, Decimal("250.00"), paid_at=paid_at
        )

        assert receipt.remaining_balance == Decimal("0.00")
        assert self.accounts.get_balance("alice", self.account.id) == Decimal("50.00")
        assert self.journal.list_entries("alice")[0].entry_type == EntryType.EXPENSE

        loan = self.ledger.get_loan("alice", loan.id)
        assert loan.status == LoanStatus.PAID_OFF
        assert loan.last_payment_date == paid_at

    def test_borrowed_installment_requires_balance(self):
        loan = self.ledger.create_loan("alice", "Bank", LoanType.BORROWED, Decimal("1000.00"), T0)

        with pytest.raises(ValidationError) as exc_info:
            self.ledger.record_installment_payment("alice", loan.id, self.account.id, Decimal("300.01"))
        assert "Insufficient balance" in str(exc_info.value)

        assert self.ledger.get_loan("alice", loan.id).paid_amount == Decimal("0.00")
        assert self.accounts.get_balance("alice", self.account.id) == Decimal("300.00")

    def test_foreign_account_rejected(self):
        loan = self.ledger.create_loan("alice", "Bob", LoanType.LENT, Decimal("500.00"), T0)
        bobs = self.accounts.open_account("bob", "Bob Checking")

        with pytest.raises(NotFoundError):
            self.ledger.record_installment_payment("alice", loan.id, bobs.id, Decimal("10.00"))

    def test_journal_failure_rolls_back_everything(self, monkeypatch):
        """Test that a failed journal append undoes the loan and balance changes"""
        loan = self.ledger.create_loan("alice", "Bob", LoanType.LENT, Decimal("500.00"), T0)
        events_before = self.audit_trail.count_events()

        def failing_append(owner_id, entry):
            raise RuntimeError("journal unavailable")

        monkeypatch.setattr(self.journal, "append", failing_append)

        with pytest.raises(RuntimeError):
            self.ledger.record_installment_payment("alice", loan.id, self.account.id, Decimal("100.00"))

        loan = self.ledger.get_loan("alice", loan.id)
        assert loan.paid_amount == Decimal("0.00")
        assert loan.status == LoanStatus.ACTIVE
        assert self.accounts.get_balance("alice", self.account.id) == Decimal("300.00")
        assert self.ledger.get_loan_installments("alice", loan.id) == []
        assert self.audit_trail.count_events() == events_before

    def test_zero_installment_rejected(self):
        loan = self.ledger.create_loan("alice", "Bob", LoanType.LENT, Decimal("500.00"), T0)
        with pytest.raises(ValidationError):
            self.ledger.record_installment_payment("alice", loan.id, self.account.id, Decimal("0"))


class TestLoanQueries:
    """Test owner-scoped queries and totals"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = LoanLedger(self.storage, self.audit_trail, clock=lambda: NOW)

        self.lent_bob = self.ledger.create_loan(
            "alice", "Bob Smith", LoanType.LENT, Decimal("1000.00"), T0,
            due_date=NOW + timedelta(days=3)
        )
        self.lent_carol = self.ledger.create_loan(
            "alice", "Carol", LoanType.LENT, Decimal("200.00"), T0 + timedelta(days=20),
            due_date=NOW + timedelta(days=30),
            next_reminder_date=NOW - timedelta(hours=1)
        )
        self.borrowed = self.ledger.create_loan(
            "alice", "bobby tables", LoanType.BORROWED, Decimal("300.00"), T0,
            due_date=NOW - timedelta(days=2),
            next_reminder_date=NOW + timedelta(days=1)
        )
        self.other_owner = self.ledger.create_loan(
            "dave", "Bob", LoanType.LENT, Decimal("5000.00"), T0
        )

    def test_list_loans_with_paging(self):
        ids = [loan.id for loan in self.ledger.list_loans("alice")]
        assert ids == [self.lent_bob.id, self.lent_carol.id, self.borrowed.id]
        assert [loan.id for loan in self.ledger.list_loans("alice", limit=1, offset=1)] == [self.lent_carol.id]

    def test_filters_by_type_and_status(self):
        self.ledger.record_payment("alice", self.lent_carol.id, Decimal("50.00"))

        assert len(self.ledger.get_loans_by_type("alice", LoanType.LENT)) == 2
        assert [loan.id for loan in self.ledger.get_loans_by_status("alice", LoanStatus.PARTIALLY_PAID)] == \
            [self.lent_carol.id]
        active_lent = self.ledger.get_loans_by_type_and_status("alice", LoanType.LENT, LoanStatus.ACTIVE)
        assert [loan.id for loan in active_lent] == [self.lent_bob.id]

    def test_due_soon_window(self):
        due = self.ledger.get_loans_due_soon("alice", days_ahead=7)
        assert [loan.id for loan in due] == [self.lent_bob.id]
        assert len(self.ledger.get_loans_due_soon("alice", days_ahead=30)) == 2

    def test_reminders_due(self):
        due = self.ledger.get_loans_with_reminders_due("alice")
        assert [loan.id for loan in due] == [self.lent_carol.id]

        self.ledger.update_loan("alice", self.lent_carol.id, reminder_enabled=False)
        assert self.ledger.get_loans_with_reminders_due("alice") == []

    def test_search_by_person_name(self):
        found = self.ledger.search_loans_by_person_name("alice", "BOB")
        assert {loan.id for loan in found} == {self.lent_bob.id, self.borrowed.id}

        lent_only = self.ledger.search_loans_by_person_name("alice", "bob", LoanType.LENT)
        assert [loan.id for loan in lent_only] == [self.lent_bob.id]

    def test_date_ranges(self):
        by_loan_date = self.ledger.get_loans_by_date_range("alice", T0, T0 + timedelta(days=1))
        assert {loan.id for loan in by_loan_date} == {self.lent_bob.id, self.borrowed.id}

        by_due = self.ledger.get_loans_by_due_date_range(
            "alice", NOW - timedelta(days=2), NOW + timedelta(days=3)
        )
        assert {loan.id for loan in by_due} == {self.lent_bob.id, self.borrowed.id}

    def test_principal_range(self):
        found = self.ledger.get_loans_by_principal_range("alice", "200.00", "300.00")
        assert {loan.id for loan in found} == {self.lent_carol.id, self.borrowed.id}

    def test_loans_by_account(self):
        loan = self.ledger.create_loan("alice", "Erin", LoanType.LENT, Decimal("10.00"), T0, account_id="acc-1")
        assert [loan.id for loan in self.ledger.get_loans_by_account("alice", "acc-1")] == [loan.id]
        assert self.ledger.get_loans_by_account("alice", "acc-1", LoanType.BORROWED) == []

    def test_totals(self):
        """Test principal-based totals and net position"""
        self.ledger.record_payment("alice", self.lent_carol.id, Decimal("200.00"))
        self.ledger.record_payment("alice", self.borrowed.id, Decimal("30.00"))

        assert self.ledger.total_amount_lent("alice") == Decimal("1200.00")
        assert self.ledger.total_amount_borrowed("alice") == Decimal("300.00")
        assert self.ledger.net_loan_position("alice") == Decimal("900.00")
        assert self.ledger.total_lent_by_status("alice", LoanStatus.PAID_OFF) == Decimal("200.00")
        assert self.ledger.total_borrowed_by_status("alice", LoanStatus.PARTIALLY_PAID) == Decimal("300.00")
        assert self.ledger.total_repaid("alice", LoanType.LENT) == Decimal("200.00")
        assert self.ledger.total_repaid("alice", LoanType.BORROWED) == Decimal("30.00")

    def test_empty_owner_totals(self):
        assert self.ledger.total_amount_lent("nobody") == Decimal("0.00")
        assert self.ledger.net_loan_position("nobody") == Decimal("0.00")
