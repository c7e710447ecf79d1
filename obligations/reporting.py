"""
Reporting Module

Read-only summaries over loans, recurring expenses and account balances
for dashboards and net-worth views. Nothing here mutates state.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any
from enum import Enum

from .clock import Clock, utc_now, ensure_utc
from .config import get_config
from .currency import ZERO
from .accounts import AccountLedger
from .loans import LoanLedger, Loan, LoanType, LoanStatus
from .recurring import RecurringExpenseScheduler, RecurringExpense, ExpenseStatus


def _serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


@dataclass
class LoanSummaryReport:
    """Loan totals for one owner"""
    owner_id: str
    generated_at: datetime
    total_lent: Decimal
    total_borrowed: Decimal
    total_repaid_to_owner: Decimal   # Paid back on LENT loans
    total_repaid_by_owner: Decimal   # Paid back on BORROWED loans
    net_position: Decimal
    active_lent_count: int
    active_borrowed_count: int
    overdue_count: int

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class RecurringSummaryReport:
    """Recurring expense totals for one owner"""
    owner_id: str
    generated_at: datetime
    monthly_total: Decimal
    active_total: Decimal
    due_today_count: int
    overdue_count: int
    due_soon_count: int
    auto_pay_count: int

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class LoanTypeSummary:
    """Totals and counts for one loan direction"""
    loan_type: LoanType
    total_amount: Decimal
    total_paid: Decimal
    remaining_amount: Decimal
    loan_count: int
    active_count: int
    overdue_count: int


@dataclass
class PersonLoanSummary:
    """Loans with one counterparty, both directions combined"""
    person_name: str
    total_lent: Decimal
    total_borrowed: Decimal
    net_position: Decimal
    total_repaid: Decimal
    active_loan_count: int
    overdue_loan_count: int

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class NetWorthReport:
    """Account balances combined with the net loan position"""
    owner_id: str
    generated_at: datetime
    account_balances: Decimal
    total_lent: Decimal
    total_borrowed: Decimal
    net_loan_position: Decimal
    net_worth: Decimal
    overdue_loan_count: int
    active_loan_count: int = 0
    loans_by_type: List[LoanTypeSummary] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class UpcomingObligations:
    """Loans and recurring expenses falling due within a window"""
    owner_id: str
    days_ahead: int
    loans: List[Loan] = field(default_factory=list)
    expenses: List[RecurringExpense] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.loans) + len(self.expenses)


class ObligationReporter:
    """
    Composes the loan ledger, scheduler and account ledger into summaries
    """

    def __init__(
        self,
        loan_ledger: LoanLedger,
        scheduler: RecurringExpenseScheduler,
        account_ledger: Optional[AccountLedger] = None,
        clock: Optional[Clock] = None
    ):
        self.loan_ledger = loan_ledger
        self.scheduler = scheduler
        self.account_ledger = account_ledger
        self.clock = clock or utc_now

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def loan_summary(self, owner_id: str, now: Optional[datetime] = None) -> LoanSummaryReport:
        """
        Generate loan totals, active counts per direction and overdue count
        """
        now = ensure_utc(now) or self._now()
        ledger = self.loan_ledger

        total_lent = ledger.total_amount_lent(owner_id)
        total_borrowed = ledger.total_amount_borrowed(owner_id)

        return LoanSummaryReport(
            owner_id=owner_id,
            generated_at=now,
            total_lent=total_lent,
            total_borrowed=total_borrowed,
            total_repaid_to_owner=ledger.total_repaid(owner_id, LoanType.LENT),
            total_repaid_by_owner=ledger.total_repaid(owner_id, LoanType.BORROWED),
            net_position=total_lent - total_borrowed,
            active_lent_count=len(ledger.get_loans_by_type_and_status(owner_id, LoanType.LENT, LoanStatus.ACTIVE)),
            active_borrowed_count=len(ledger.get_loans_by_type_and_status(owner_id, LoanType.BORROWED, LoanStatus.ACTIVE)),
            overdue_count=len(ledger.get_overdue_loans(owner_id, now))
        )

    def recurring_summary(self, owner_id: str, today: Optional[date] = None,
                          days_ahead: Optional[int] = None) -> RecurringSummaryReport:
        """
        Generate recurring totals and due/overdue/auto-pay counts
        """
        now = self._now()
        today = today or now.date()
        scheduler = self.scheduler

        auto_pay = [
            e for e in scheduler.get_auto_pay_expenses(owner_id)
            if e.status == ExpenseStatus.ACTIVE
        ]

        return RecurringSummaryReport(
            owner_id=owner_id,
            generated_at=now,
            monthly_total=scheduler.total_monthly_recurring(owner_id),
            active_total=scheduler.total_recurring(owner_id),
            due_today_count=len(scheduler.get_expenses_due_today(owner_id, today)),
            overdue_count=len(scheduler.get_overdue_expenses(owner_id, today)),
            due_soon_count=len(scheduler.get_expenses_due_soon(owner_id, days_ahead, today)),
            auto_pay_count=len(auto_pay)
        )

    def net_worth(self, owner_id: str) -> NetWorthReport:
        """
        Sum of account balances plus the net loan position, with a
        breakdown per loan direction
        """
        now = self._now()
        balances = self.account_ledger.total_balance(owner_id) if self.account_ledger else ZERO
        total_lent = self.loan_ledger.total_amount_lent(owner_id)
        total_borrowed = self.loan_ledger.total_amount_borrowed(owner_id)
        net_loans = total_lent - total_borrowed
        loans = self.loan_ledger.list_loans(owner_id)

        by_type = []
        for loan_type in LoanType:
            of_type = [loan for loan in loans if loan.loan_type == loan_type]
            if not of_type:
                continue
            by_type.append(LoanTypeSummary(
                loan_type=loan_type,
                total_amount=sum((loan.principal_amount for loan in of_type), ZERO),
                total_paid=sum((loan.paid_amount for loan in of_type), ZERO),
                remaining_amount=sum((loan.remaining_amount for loan in of_type), ZERO),
                loan_count=len(of_type),
                active_count=sum(1 for loan in of_type if loan.status == LoanStatus.ACTIVE),
                overdue_count=sum(1 for loan in of_type if loan.is_overdue(now))
            ))

        return NetWorthReport(
            owner_id=owner_id,
            generated_at=now,
            account_balances=balances,
            total_lent=total_lent,
            total_borrowed=total_borrowed,
            net_loan_position=net_loans,
            net_worth=balances + net_loans,
            overdue_loan_count=sum(1 for loan in loans if loan.is_overdue(now)),
            active_loan_count=sum(1 for loan in loans if loan.status == LoanStatus.ACTIVE),
            loans_by_type=by_type
        )

    def loans_by_person(self, owner_id: str) -> List[PersonLoanSummary]:
        """
        Group an owner's loans by counterparty name

        Names are matched case-insensitively after trimming; the first
        spelling seen is reported. Results are sorted by name.
        """
        now = self._now()
        groups: Dict[str, List[Loan]] = {}
        for loan in self.loan_ledger.list_loans(owner_id):
            groups.setdefault(loan.person_name.strip().lower(), []).append(loan)

        summaries = []
        for key in sorted(groups):
            loans = groups[key]
            lent = sum((loan.principal_amount for loan in loans if loan.loan_type == LoanType.LENT), ZERO)
            borrowed = sum((loan.principal_amount for loan in loans
                            if loan.loan_type == LoanType.BORROWED), ZERO)
            summaries.append(PersonLoanSummary(
                person_name=loans[0].person_name,
                total_lent=lent,
                total_borrowed=borrowed,
                net_position=lent - borrowed,
                total_repaid=sum((loan.paid_amount for loan in loans), ZERO),
                active_loan_count=sum(1 for loan in loans if loan.status == LoanStatus.ACTIVE),
                overdue_loan_count=sum(1 for loan in loans if loan.is_overdue(now))
            ))
        return summaries

    def upcoming_obligations(self, owner_id: str,
                             days_ahead: Optional[int] = None) -> UpcomingObligations:
        """Loans and expenses due within the next days_ahead days"""
        if days_ahead is None:
            days_ahead = get_config().default_due_soon_days
        now = self._now()
        return UpcomingObligations(
            owner_id=owner_id,
            days_ahead=days_ahead,
            loans=self.loan_ledger.get_loans_due_soon(owner_id, days_ahead, now),
            expenses=self.scheduler.get_expenses_due_soon(owner_id, days_ahead, now.date())
        )
