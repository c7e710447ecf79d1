"""
Recurring Expense Module

Schedules repeating bills. Marking an expense paid appends one EXPENSE
journal entry, debits the funding account and advances the next due date
from the previous due date, all as a single unit of work.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import calendar
import uuid

from .clock import Clock, utc_now, ensure_utc, start_of_day, to_date, parse_datetime, parse_date
from .config import get_config
from .currency import AmountLike, ZERO, to_amount
from .errors import ValidationError, NotFoundError, ConsistencyFailure, ObligationError
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountLedger
from .journal import TransactionJournal, EntryType, new_journal_entry
from .logging_config import get_logger, log_action


class Frequency(Enum):
    """How often a recurring expense falls due"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class ExpenseStatus(Enum):
    """Recurring expense lifecycle states"""
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


DEFAULT_REMINDER_DAYS_BEFORE = 3

_TEXT_LIMITS = {
    'name': 100,
    'description': 500,
    'provider': 200,
    'reference_number': 100,
    'notes': 500,
}


def _add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance_due_date(current: date, frequency: Frequency) -> date:
    """
    Advance a due date by exactly one period of the frequency

    Jan 31 + 1 month lands on Feb 28 (Feb 29 in leap years) and
    Feb 29 + 1 year lands on Feb 28.
    """
    if frequency == Frequency.DAILY:
        return current + timedelta(days=1)
    elif frequency == Frequency.WEEKLY:
        return current + timedelta(days=7)
    elif frequency == Frequency.MONTHLY:
        return _add_months(current, 1)
    elif frequency == Frequency.QUARTERLY:
        return _add_months(current, 3)
    elif frequency == Frequency.YEARLY:
        return _add_months(current, 12)
    else:
        raise ValueError(f"Unsupported frequency: {frequency}")


@dataclass
class RecurringExpense(StorageRecord):
    """Repeating bill paid from one account"""
    owner_id: str
    name: str
    amount: Decimal
    frequency: Frequency
    account_id: str
    start_date: date
    next_due_date: Optional[date]
    status: ExpenseStatus = ExpenseStatus.ACTIVE
    end_date: Optional[date] = None
    last_paid_date: Optional[date] = None
    category_id: Optional[str] = None
    description: Optional[str] = None
    provider: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    is_auto_pay: bool = False
    reminder_days_before: int = DEFAULT_REMINDER_DAYS_BEFORE
    version: int = 1

    def is_due_today(self, today: date) -> bool:
        return self.next_due_date is not None and self.next_due_date == today

    def is_overdue(self, today: date) -> bool:
        return (
            self.next_due_date is not None
            and self.next_due_date < today
            and self.status == ExpenseStatus.ACTIVE
        )

    def is_due_soon(self, today: date) -> bool:
        """Inside the reminder window and not yet overdue"""
        if self.next_due_date is None:
            return False
        reminder_date = self.next_due_date - timedelta(days=self.reminder_days_before)
        return today > reminder_date and not self.is_overdue(today)


def _validate_text(field_name: str, value: Optional[str]) -> None:
    limit = _TEXT_LIMITS[field_name]
    if value is not None and len(value) > limit:
        raise ValidationError(
            f"{field_name.replace('_', ' ').capitalize()} must not exceed {limit} characters",
            field=field_name
        )


def _positive_amount(value: AmountLike) -> Decimal:
    if value is None:
        raise ValidationError("Amount is required", field="amount")
    try:
        amount = to_amount(value)
    except ValueError as e:
        raise ValidationError(str(e), field="amount") from e
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than 0", field="amount")
    return amount


def _reminder_days(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("Reminder days before must be a non-negative integer",
                              field="reminder_days_before")
    return value


def new_recurring_expense(
    owner_id: str,
    name: str,
    amount: AmountLike,
    frequency: Frequency,
    account_id: str,
    start_date: date,
    end_date: Optional[date] = None,
    next_due_date: Optional[date] = None,
    category_id: Optional[str] = None,
    description: Optional[str] = None,
    provider: Optional[str] = None,
    reference_number: Optional[str] = None,
    notes: Optional[str] = None,
    is_auto_pay: bool = False,
    reminder_days_before: Optional[int] = None,
    now: Optional[datetime] = None
) -> RecurringExpense:
    """
    Build a validated, unsaved ACTIVE recurring expense.

    Without an explicit next_due_date the first due date is one period
    after start_date, never on it.

    Raises:
        ValidationError: If a required field is missing or invalid
    """
    if not owner_id:
        raise ValidationError("Owner is required", field="owner_id")
    if not name or not name.strip():
        raise ValidationError("Name is required", field="name")
    if not isinstance(frequency, Frequency):
        raise ValidationError("Frequency is required", field="frequency")
    if not account_id:
        raise ValidationError("Account is required", field="account_id")
    if start_date is None:
        raise ValidationError("Start date is required", field="start_date")
    start_date = to_date(start_date, "start_date")
    end_date = to_date(end_date, "end_date")
    next_due_date = to_date(next_due_date, "next_due_date")
    if end_date is not None and end_date < start_date:
        raise ValidationError("End date cannot be before start date", field="end_date")

    name = name.strip()
    for field_name, value in (('name', name), ('description', description), ('provider', provider),
                              ('reference_number', reference_number), ('notes', notes)):
        _validate_text(field_name, value)

    now = now or utc_now()
    return RecurringExpense(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        owner_id=owner_id,
        name=name,
        amount=_positive_amount(amount),
        frequency=frequency,
        account_id=account_id,
        start_date=start_date,
        next_due_date=next_due_date or advance_due_date(start_date, frequency),
        status=ExpenseStatus.ACTIVE,
        end_date=end_date,
        category_id=category_id,
        description=description,
        provider=provider,
        reference_number=reference_number,
        notes=notes,
        is_auto_pay=bool(is_auto_pay),
        reminder_days_before=_reminder_days(
            get_config().default_reminder_days_before if reminder_days_before is None
            else reminder_days_before
        )
    )


_DATE_FIELDS = {'start_date', 'end_date', 'next_due_date', 'last_paid_date'}
_MUTABLE_FIELDS = (
    set(_TEXT_LIMITS) | _DATE_FIELDS |
    {'amount', 'frequency', 'account_id', 'category_id', 'status', 'is_auto_pay', 'reminder_days_before'}
)


class RecurringExpenseScheduler:
    """
    Manages recurring expenses and their settlement for each owner
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_ledger: AccountLedger,
        journal: TransactionJournal,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.account_ledger = account_ledger
        self.journal = journal
        self.audit_trail = audit_trail
        self.clock = clock or utc_now
        self.table_name = "recurring_expenses"
        self.logger = get_logger("obligations.recurring")

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _today(self) -> date:
        return self._now().date()

    def create_expense(
        self,
        owner_id: str,
        name: str,
        amount: AmountLike,
        frequency: Frequency,
        account_id: str,
        start_date: date,
        **details
    ) -> RecurringExpense:
        """
        Create a new recurring expense

        Args:
            owner_id: Owner of the expense
            name: Bill name
            amount: Amount charged each period, must be positive
            frequency: Billing frequency
            account_id: Account the bill is paid from; must belong to the owner
            start_date: First day of the schedule
            **details: end_date, next_due_date, category_id, description,
                provider, reference_number, notes, is_auto_pay,
                reminder_days_before

        Returns:
            Created RecurringExpense
        """
        expense = new_recurring_expense(
            owner_id=owner_id,
            name=name,
            amount=amount,
            frequency=frequency,
            account_id=account_id,
            start_date=start_date,
            now=self._now(),
            **details
        )

        with self.storage.atomic():
            # Raises NotFoundError for unknown or foreign accounts
            self.account_ledger.get_account(owner_id, account_id)
            self._save_expense(expense, is_new=True)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_CREATED,
                entity_type="recurring_expense",
                entity_id=expense.id,
                metadata={
                    "name": expense.name,
                    "amount": expense.amount,
                    "frequency": expense.frequency,
                    "account_id": account_id,
                    "next_due_date": expense.next_due_date
                },
                owner_id=owner_id
            )

        log_action(
            self.logger, "info", f"Recurring expense created: {expense.name}",
            owner_id=owner_id, action="create_expense", resource=f"recurring_expense:{expense.id}"
        )
        return expense

    def update_expense(self, owner_id: str, expense_id: str, /, **changes) -> RecurringExpense:
        """
        Overwrite mutable fields of a recurring expense.
        The next due date changes only when supplied.
        """
        for name in changes:
            if name not in _MUTABLE_FIELDS:
                raise ValidationError(f"Field {name} cannot be updated", field=name)

        with self.storage.atomic():
            expense = self.get_expense(owner_id, expense_id)
            if changes.get('account_id'):
                self.account_ledger.get_account(owner_id, changes['account_id'])

            for name, value in changes.items():
                setattr(expense, name, self._coerce_field(name, value))
            if expense.end_date is not None and expense.end_date < expense.start_date:
                raise ValidationError("End date cannot be before start date", field="end_date")
            expense.updated_at = self._now()

            self._save_expense(expense)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_UPDATED,
                entity_type="recurring_expense",
                entity_id=expense.id,
                metadata={"fields": sorted(changes)},
                owner_id=owner_id
            )

        return expense

    def _coerce_field(self, name: str, value: Any) -> Any:
        if name in _TEXT_LIMITS:
            if name == 'name' and (not value or not value.strip()):
                raise ValidationError("Name is required", field=name)
            _validate_text(name, value)
            return value
        if name == 'amount':
            return _positive_amount(value)
        if name == 'frequency':
            try:
                return value if isinstance(value, Frequency) else Frequency(value)
            except ValueError as e:
                raise ValidationError(f"Invalid frequency: {value}", field=name) from e
        if name == 'status':
            try:
                return value if isinstance(value, ExpenseStatus) else ExpenseStatus(value)
            except ValueError as e:
                raise ValidationError(f"Invalid expense status: {value}", field=name) from e
        if name in ('start_date', 'account_id') and not value:
            raise ValidationError(f"{name.replace('_', ' ').capitalize()} is required", field=name)
        if name in _DATE_FIELDS:
            return to_date(value, name)
        if name == 'reminder_days_before':
            return _reminder_days(value)
        if name == 'is_auto_pay':
            return bool(value)
        return value

    def mark_as_paid(self, owner_id: str, expense_id: str,
                     paid_on: Optional[date] = None) -> RecurringExpense:
        """
        Settle the current period of a recurring expense

        Appends the journal entry, debits the account, stamps the paid date
        and advances the next due date from the previous one. Either every
        step is applied or none is.

        Args:
            owner_id: Owner of the expense
            expense_id: Expense to settle
            paid_on: Day the payment is booked on, defaults to today

        Raises:
            ValidationError: If paid_on is not a date
            NotFoundError: If the expense does not exist or is foreign
            ConsistencyFailure: If a settlement step failed; nothing was changed
        """
        paid_on = to_date(paid_on, "paid_on") or self._today()

        with self.storage.atomic():
            expense = self.get_expense(owner_id, expense_id)
            previous_due = expense.next_due_date
            try:
                self._settle(expense, paid_on)
            except ConsistencyFailure:
                raise
            except Exception as e:
                log_action(
                    self.logger, "error", f"Recurring expense settlement failed: {e}",
                    owner_id=owner_id, action="mark_as_paid",
                    resource=f"recurring_expense:{expense_id}"
                )
                raise ConsistencyFailure(
                    f"Could not mark recurring expense {expense_id} as paid: {e}",
                    entity_type="recurring_expense",
                    entity_id=expense_id
                ) from e

        log_action(
            self.logger, "info", f"Recurring expense paid: {expense.name}",
            owner_id=owner_id, action="mark_as_paid", resource=f"recurring_expense:{expense.id}",
            extra={
                "amount": str(expense.amount),
                "previous_due_date": previous_due.isoformat() if previous_due else None,
                "next_due_date": expense.next_due_date.isoformat()
            }
        )
        return expense

    def _settle(self, expense: RecurringExpense, today: date) -> None:
        owner_id = expense.owner_id

        entry = self.journal.append(owner_id, new_journal_entry(
            owner_id=owner_id,
            entry_type=EntryType.EXPENSE,
            amount=expense.amount,
            account_id=expense.account_id,
            description=f"Recurring payment: {expense.name}",
            timestamp=start_of_day(today),
            category_id=expense.category_id,
            notes=f"Auto-generated from recurring expense: {expense.name}",
            reference_number=expense.reference_number,
            is_recurring=True,
            recurring_frequency=expense.frequency.value
        ))
        new_balance = self.account_ledger.debit(owner_id, expense.account_id, expense.amount)

        previous_due = expense.next_due_date or expense.start_date
        expense.last_paid_date = today
        expense.next_due_date = advance_due_date(previous_due, expense.frequency)
        expense.updated_at = self._now()
        self._save_expense(expense)

        self.audit_trail.log_event(
            event_type=AuditEventType.EXPENSE_PAID,
            entity_type="recurring_expense",
            entity_id=expense.id,
            metadata={
                "amount": expense.amount,
                "journal_entry_id": entry.id,
                "account_balance": new_balance,
                "previous_due_date": previous_due,
                "next_due_date": expense.next_due_date
            },
            owner_id=owner_id
        )

    def pause(self, owner_id: str, expense_id: str) -> RecurringExpense:
        """Pause an expense; pausing a paused expense is a no-op"""
        return self._set_status(owner_id, expense_id, ExpenseStatus.PAUSED)

    def resume(self, owner_id: str, expense_id: str) -> RecurringExpense:
        return self._set_status(owner_id, expense_id, ExpenseStatus.ACTIVE)

    def cancel(self, owner_id: str, expense_id: str) -> RecurringExpense:
        return self._set_status(owner_id, expense_id, ExpenseStatus.CANCELLED)

    def _set_status(self, owner_id: str, expense_id: str, status: ExpenseStatus) -> RecurringExpense:
        with self.storage.atomic():
            expense = self.get_expense(owner_id, expense_id)
            old_status = expense.status
            expense.status = status
            expense.updated_at = self._now()
            self._save_expense(expense)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_STATUS_CHANGED,
                entity_type="recurring_expense",
                entity_id=expense.id,
                metadata={"old_status": old_status, "new_status": status},
                owner_id=owner_id
            )
        return expense

    def delete_expense(self, owner_id: str, expense_id: str) -> None:
        """Permanently remove a recurring expense"""
        with self.storage.atomic():
            expense = self.get_expense(owner_id, expense_id)
            self.storage.delete(self.table_name, expense.id)
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_DELETED,
                entity_type="recurring_expense",
                entity_id=expense.id,
                metadata={"name": expense.name},
                owner_id=owner_id
            )

    def process_due_auto_payments(self, owner_id: str, today: Optional[date] = None) -> int:
        """
        Settle every auto-pay expense due today

        Each expense is settled in its own unit of work; a failure is logged
        and does not stop the remaining ones.

        Returns:
            Number of expenses due today, auto-pay or not
        """
        today = to_date(today, "today") or self._today()
        due = self.get_expenses_due_today(owner_id, today)
        paid = 0
        for expense in due:
            if not expense.is_auto_pay:
                continue
            try:
                self.mark_as_paid(owner_id, expense.id, paid_on=today)
                paid += 1
            except ObligationError as e:
                log_action(
                    self.logger, "warning", f"Auto-payment skipped: {e}",
                    owner_id=owner_id, action="process_due_auto_payments",
                    resource=f"recurring_expense:{expense.id}"
                )

        log_action(
            self.logger, "info", f"Processed {len(due)} due recurring expenses",
            owner_id=owner_id, action="process_due_auto_payments",
            extra={"due": len(due), "paid": paid}
        )
        return len(due)

    # Queries

    def get_expense(self, owner_id: str, expense_id: str) -> RecurringExpense:
        """Get an expense by ID; foreign expenses are reported as missing"""
        data = self.storage.load(self.table_name, expense_id) if expense_id else None
        if not data or data.get('owner_id') != owner_id:
            raise NotFoundError("recurring_expense", expense_id)
        return self._expense_from_dict(data)

    def _owner_expenses(self, owner_id: str, **filters) -> List[RecurringExpense]:
        filters['owner_id'] = owner_id
        expenses = [self._expense_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        expenses.sort(key=lambda e: e.created_at)
        return expenses

    def list_expenses(self, owner_id: str, limit: Optional[int] = None,
                      offset: int = 0) -> List[RecurringExpense]:
        expenses = self._owner_expenses(owner_id)[offset:]
        if limit is not None:
            expenses = expenses[:limit]
        return expenses

    def get_expenses_by_status(self, owner_id: str, status: ExpenseStatus) -> List[RecurringExpense]:
        return self._owner_expenses(owner_id, status=status.value)

    def get_expenses_by_frequency(self, owner_id: str, frequency: Frequency) -> List[RecurringExpense]:
        return self._owner_expenses(owner_id, frequency=frequency.value)

    def get_expenses_due_today(self, owner_id: str, today: Optional[date] = None) -> List[RecurringExpense]:
        """ACTIVE expenses whose next due date is today"""
        today = to_date(today, "today") or self._today()
        return [
            e for e in self._owner_expenses(owner_id, status=ExpenseStatus.ACTIVE.value)
            if e.is_due_today(today)
        ]

    def get_overdue_expenses(self, owner_id: str, today: Optional[date] = None) -> List[RecurringExpense]:
        today = to_date(today, "today") or self._today()
        return [e for e in self._owner_expenses(owner_id) if e.is_overdue(today)]

    def get_expenses_due_soon(self, owner_id: str, days_ahead: Optional[int] = None,
                              today: Optional[date] = None) -> List[RecurringExpense]:
        """ACTIVE expenses due between today and today + days_ahead, inclusive"""
        if days_ahead is None:
            days_ahead = get_config().default_due_soon_days
        today = to_date(today, "today") or self._today()
        horizon = today + timedelta(days=days_ahead)
        return [
            e for e in self._owner_expenses(owner_id, status=ExpenseStatus.ACTIVE.value)
            if e.next_due_date is not None and today <= e.next_due_date <= horizon
        ]

    def get_auto_pay_expenses(self, owner_id: str) -> List[RecurringExpense]:
        return self._owner_expenses(owner_id, is_auto_pay=True)

    def get_expenses_by_account(self, owner_id: str, account_id: str,
                                status: Optional[ExpenseStatus] = None) -> List[RecurringExpense]:
        if status:
            return self._owner_expenses(owner_id, account_id=account_id, status=status.value)
        return self._owner_expenses(owner_id, account_id=account_id)

    def search_expenses_by_name(self, owner_id: str, fragment: str) -> List[RecurringExpense]:
        needle = (fragment or "").lower()
        return [e for e in self._owner_expenses(owner_id) if needle in e.name.lower()]

    def search_expenses_by_provider(self, owner_id: str, fragment: str) -> List[RecurringExpense]:
        needle = (fragment or "").lower()
        return [
            e for e in self._owner_expenses(owner_id)
            if e.provider is not None and needle in e.provider.lower()
        ]

    def get_expenses_by_amount_range(self, owner_id: str, min_amount: AmountLike,
                                     max_amount: AmountLike,
                                     account_id: Optional[str] = None) -> List[RecurringExpense]:
        try:
            low, high = to_amount(min_amount), to_amount(max_amount)
        except ValueError as e:
            raise ValidationError(str(e), field="amount") from e
        expenses = self._owner_expenses(owner_id, account_id=account_id) if account_id \
            else self._owner_expenses(owner_id)
        return [e for e in expenses if low <= e.amount <= high]

    def get_expenses_by_reference_number(self, owner_id: str,
                                         reference_number: str) -> List[RecurringExpense]:
        return self._owner_expenses(owner_id, reference_number=reference_number)

    # Totals

    def _active_total(self, owner_id: str, account_id: Optional[str] = None,
                      frequency: Optional[Frequency] = None) -> Decimal:
        filters = {'status': ExpenseStatus.ACTIVE.value}
        if account_id:
            filters['account_id'] = account_id
        if frequency:
            filters['frequency'] = frequency.value
        return sum((e.amount for e in self._owner_expenses(owner_id, **filters)), ZERO)

    def total_monthly_recurring(self, owner_id: str, account_id: Optional[str] = None) -> Decimal:
        """Sum of ACTIVE MONTHLY amounts"""
        return self._active_total(owner_id, account_id, Frequency.MONTHLY)

    def total_recurring_by_frequency(self, owner_id: str, frequency: Frequency,
                                     account_id: Optional[str] = None) -> Decimal:
        return self._active_total(owner_id, account_id, frequency)

    def total_recurring(self, owner_id: str, account_id: Optional[str] = None) -> Decimal:
        """Sum of all ACTIVE amounts regardless of frequency"""
        return self._active_total(owner_id, account_id)

    # Persistence

    def _save_expense(self, expense: RecurringExpense, is_new: bool = False) -> None:
        """Save with a version check; bumps the version on updates"""
        expected_version = None
        if not is_new:
            expected_version = expense.version
            expense.version += 1
        self.storage.save_versioned(self.table_name, expense.id, expense.to_dict(), expected_version)

    def _expense_from_dict(self, data: Dict) -> RecurringExpense:
        """Convert dictionary to RecurringExpense"""
        return RecurringExpense(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            name=data['name'],
            amount=Decimal(data['amount']),
            frequency=Frequency(data['frequency']),
            account_id=data['account_id'],
            start_date=parse_date(data['start_date']),
            next_due_date=parse_date(data.get('next_due_date')),
            status=ExpenseStatus(data['status']),
            end_date=parse_date(data.get('end_date')),
            last_paid_date=parse_date(data.get('last_paid_date')),
            category_id=data.get('category_id'),
            description=data.get('description'),
            provider=data.get('provider'),
            reference_number=data.get('reference_number'),
            notes=data.get('notes'),
            is_auto_pay=data.get('is_auto_pay', False),
            reminder_days_before=data.get('reminder_days_before', DEFAULT_REMINDER_DAYS_BEFORE),
            version=data.get('version', 1)
        )
