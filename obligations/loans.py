"""
Loan Module

Tracks money lent to or borrowed from a named counterparty. Handles loan
creation with single-period simple interest, payment recording with status
transitions, installment payments that move money through an account, and
the owner-scoped queries and totals used by dashboards.
"""

from decimal import Decimal
from datetime import datetime, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .clock import Clock, utc_now, ensure_utc, parse_datetime
from .config import get_config
from .currency import AmountLike, ZERO, HUNDRED, quantize, to_amount
from .errors import ValidationError, NotFoundError
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountLedger
from .journal import TransactionJournal, EntryType, new_journal_entry
from .logging_config import get_logger, log_action


class LoanType(Enum):
    """Direction of a loan, fixed at creation"""
    LENT = "lent"            # Owner gave money to the counterparty
    BORROWED = "borrowed"    # Owner received money from the counterparty


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    PARTIALLY_PAID = "partially_paid"
    PAID_OFF = "paid_off"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


PERSON_NAME_MAX_LENGTH = 100
PHONE_NUMBER_MAX_LENGTH = 20
EMAIL_MAX_LENGTH = 100
DESCRIPTION_MAX_LENGTH = 500
NOTES_MAX_LENGTH = 500

_TEXT_LIMITS = {
    'person_name': PERSON_NAME_MAX_LENGTH,
    'phone_number': PHONE_NUMBER_MAX_LENGTH,
    'email': EMAIL_MAX_LENGTH,
    'description': DESCRIPTION_MAX_LENGTH,
    'notes': NOTES_MAX_LENGTH,
}


@dataclass
class Loan(StorageRecord):
    """
    Lend/borrow agreement between the owner and a counterparty.

    remaining_amount == total_amount - paid_amount after every payment.
    """
    owner_id: str
    person_name: str
    loan_type: LoanType
    principal_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    loan_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    interest_rate: Optional[Decimal] = None  # Percentage, e.g. 5 for 5%
    due_date: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    account_id: Optional[str] = None
    is_urgent: bool = False
    reminder_enabled: bool = True
    next_reminder_date: Optional[datetime] = None
    version: int = 1

    @property
    def percentage_paid(self) -> Decimal:
        """Share of the total already paid, 0 when the total is zero"""
        if self.total_amount == ZERO:
            return ZERO
        return quantize(self.paid_amount / self.total_amount * HUNDRED)

    @property
    def is_fully_paid(self) -> bool:
        return self.remaining_amount <= ZERO

    def is_overdue(self, now: datetime) -> bool:
        """
        Past due date while still ACTIVE. A PARTIALLY_PAID loan past its
        due date is not reported as overdue.
        """
        return (
            self.due_date is not None
            and self.due_date < now
            and self.status == LoanStatus.ACTIVE
        )


@dataclass
class LoanInstallment(StorageRecord):
    """Receipt for a payment that moved money through an account"""
    loan_id: str
    owner_id: str
    account_id: str
    amount: Decimal
    currency: str
    paid_at: datetime
    remaining_balance: Decimal
    journal_entry_id: str
    note: Optional[str] = None


def calculate_total_amount(principal_amount: Decimal, interest_rate: Optional[Decimal]) -> Decimal:
    """Simple interest applied once: principal + principal * rate / 100"""
    if interest_rate is not None and interest_rate > ZERO:
        return quantize(principal_amount + principal_amount * interest_rate / HUNDRED)
    return principal_amount


def _validate_text(field_name: str, value: Optional[str]) -> None:
    limit = _TEXT_LIMITS[field_name]
    if value is not None and len(value) > limit:
        raise ValidationError(
            f"{field_name.replace('_', ' ').capitalize()} must not exceed {limit} characters",
            field=field_name
        )


def _amount(value: AmountLike, field_name: str) -> Decimal:
    try:
        return to_amount(value)
    except ValueError as e:
        raise ValidationError(str(e), field=field_name) from e


def _rate(value: Optional[AmountLike]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        rate = to_amount(value, 4)
    except ValueError as e:
        raise ValidationError(str(e), field="interest_rate") from e
    if rate < ZERO:
        raise ValidationError("Interest rate cannot be negative", field="interest_rate")
    return rate


def new_loan(
    owner_id: str,
    person_name: str,
    loan_type: LoanType,
    principal_amount: AmountLike,
    loan_date: datetime,
    interest_rate: Optional[AmountLike] = None,
    due_date: Optional[datetime] = None,
    phone_number: Optional[str] = None,
    email: Optional[str] = None,
    description: Optional[str] = None,
    notes: Optional[str] = None,
    account_id: Optional[str] = None,
    is_urgent: bool = False,
    reminder_enabled: bool = True,
    next_reminder_date: Optional[datetime] = None,
    now: Optional[datetime] = None
) -> Loan:
    """
    Build a validated, unsaved ACTIVE loan with derived totals

    Raises:
        ValidationError: If a required field is missing or invalid
    """
    if not owner_id:
        raise ValidationError("Owner is required", field="owner_id")
    if not person_name or not person_name.strip():
        raise ValidationError("Person name is required", field="person_name")
    if not isinstance(loan_type, LoanType):
        raise ValidationError("Loan type is required", field="loan_type")
    if loan_date is None:
        raise ValidationError("Loan date is required", field="loan_date")
    if principal_amount is None:
        raise ValidationError("Principal amount is required", field="principal_amount")

    person_name = person_name.strip()
    for field_name, value in (('person_name', person_name), ('phone_number', phone_number),
                              ('email', email), ('description', description), ('notes', notes)):
        _validate_text(field_name, value)

    principal = _amount(principal_amount, "principal_amount")
    if principal <= ZERO:
        raise ValidationError("Principal amount must be greater than 0", field="principal_amount")
    rate = _rate(interest_rate)

    total = calculate_total_amount(principal, rate)
    now = now or utc_now()

    return Loan(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        owner_id=owner_id,
        person_name=person_name,
        loan_type=loan_type,
        principal_amount=principal,
        total_amount=total,
        paid_amount=ZERO,
        remaining_amount=total,
        loan_date=ensure_utc(loan_date, "loan_date"),
        status=LoanStatus.ACTIVE,
        interest_rate=rate,
        due_date=ensure_utc(due_date, "due_date"),
        phone_number=phone_number,
        email=email,
        description=description,
        notes=notes,
        account_id=account_id,
        is_urgent=is_urgent,
        reminder_enabled=reminder_enabled,
        next_reminder_date=ensure_utc(next_reminder_date, "next_reminder_date")
    )


_IMMUTABLE_FIELDS = {'id', 'owner_id', 'created_at', 'updated_at', 'version'}
_AMOUNT_FIELDS = {'principal_amount', 'total_amount', 'paid_amount', 'remaining_amount'}
_DATETIME_FIELDS = {'loan_date', 'due_date', 'last_payment_date', 'next_reminder_date'}
_MUTABLE_FIELDS = (
    set(_TEXT_LIMITS) | _AMOUNT_FIELDS | _DATETIME_FIELDS |
    {'interest_rate', 'status', 'is_urgent', 'reminder_enabled', 'account_id'}
)


class LoanLedger:
    """
    Manages loans from creation through payoff for each owner
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        account_ledger: Optional[AccountLedger] = None,
        journal: Optional[TransactionJournal] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.account_ledger = account_ledger
        self.journal = journal
        self.clock = clock or utc_now
        self.loans_table = "loans"
        self.installments_table = "loan_installments"
        self.logger = get_logger("obligations.loans")

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def create_loan(
        self,
        owner_id: str,
        person_name: str,
        loan_type: LoanType,
        principal_amount: AmountLike,
        loan_date: datetime,
        interest_rate: Optional[AmountLike] = None,
        due_date: Optional[datetime] = None,
        **details
    ) -> Loan:
        """
        Create a new loan

        Args:
            owner_id: Owner of the loan
            person_name: Counterparty name
            loan_type: LENT or BORROWED
            principal_amount: Amount lent or borrowed, must be positive
            loan_date: When the money changed hands
            interest_rate: Optional percentage applied once to the principal
            due_date: Optional repayment date
            **details: phone_number, email, description, notes, account_id,
                is_urgent, reminder_enabled, next_reminder_date

        Returns:
            Created Loan
        """
        if details.get('account_id') and self.account_ledger:
            # Raises NotFoundError for foreign accounts
            self.account_ledger.get_account(owner_id, details['account_id'])

        loan = new_loan(
            owner_id=owner_id,
            person_name=person_name,
            loan_type=loan_type,
            principal_amount=principal_amount,
            loan_date=loan_date,
            interest_rate=interest_rate,
            due_date=due_date,
            now=self._now(),
            **details
        )

        with self.storage.atomic():
            self._save_loan(loan, is_new=True)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "person_name": loan.person_name,
                    "loan_type": loan.loan_type,
                    "principal_amount": loan.principal_amount,
                    "interest_rate": loan.interest_rate,
                    "total_amount": loan.total_amount
                },
                owner_id=owner_id
            )

        log_action(
            self.logger, "info", f"Loan created: {loan.loan_type.value} {loan.total_amount}",
            owner_id=owner_id, action="create_loan", resource=f"loan:{loan.id}"
        )
        return loan

    def update_loan(self, owner_id: str, loan_id: str, /, **changes) -> Loan:
        """
        Overwrite mutable fields of a loan.

        Totals are NOT re-derived from a changed principal or rate; callers
        doing full updates keep the amounts consistent themselves.

        Raises:
            ValidationError: On an unknown or immutable field, or a loan type change
            NotFoundError: If the loan does not exist or is foreign
        """
        if 'loan_type' in changes:
            raise ValidationError("Loan type cannot be changed after creation", field="loan_type")
        for name in changes:
            if name in _IMMUTABLE_FIELDS or name not in _MUTABLE_FIELDS:
                raise ValidationError(f"Field {name} cannot be updated", field=name)

        with self.storage.atomic():
            loan = self.get_loan(owner_id, loan_id)
            if changes.get('account_id') and self.account_ledger:
                self.account_ledger.get_account(owner_id, changes['account_id'])

            for name, value in changes.items():
                setattr(loan, name, self._coerce_field(name, value))
            loan.updated_at = self._now()

            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_UPDATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"fields": sorted(changes)},
                owner_id=owner_id
            )

        return loan

    def _coerce_field(self, name: str, value: Any) -> Any:
        if name in _TEXT_LIMITS:
            if name == 'person_name' and (not value or not value.strip()):
                raise ValidationError("Person name is required", field=name)
            _validate_text(name, value)
            return value
        if name in _AMOUNT_FIELDS:
            if value is None:
                raise ValidationError(f"{name} is required", field=name)
            amount = _amount(value, name)
            if name == 'principal_amount' and amount <= ZERO:
                raise ValidationError("Principal amount must be greater than 0", field=name)
            return amount
        if name == 'interest_rate':
            return _rate(value)
        if name in _DATETIME_FIELDS:
            if name == 'loan_date' and value is None:
                raise ValidationError("Loan date is required", field=name)
            return ensure_utc(value, name)
        if name == 'status':
            try:
                return value if isinstance(value, LoanStatus) else LoanStatus(value)
            except ValueError as e:
                raise ValidationError(f"Invalid loan status: {value}", field=name) from e
        if name in ('is_urgent', 'reminder_enabled'):
            return bool(value)
        return value

    def record_payment(self, owner_id: str, loan_id: str, amount: AmountLike) -> Loan:
        """
        Record a payment against a loan without moving money

        A zero amount is accepted and leaves the status unchanged. Payments
        beyond the remaining amount are accepted and drive it negative.

        Returns:
            Updated Loan
        """
        payment = self._payment_amount(amount, allow_zero=True)

        with self.storage.atomic():
            loan = self.get_loan(owner_id, loan_id)
            old_status = self._apply_payment(loan, payment, self._now())
            self._save_loan(loan)
            self._audit_payment(loan, payment, old_status)

        log_action(
            self.logger, "info", f"Loan payment recorded: {payment}",
            owner_id=owner_id, action="record_payment", resource=f"loan:{loan.id}",
            extra={"remaining_amount": str(loan.remaining_amount), "status": loan.status.value}
        )
        return loan

    def record_installment_payment(
        self,
        owner_id: str,
        loan_id: str,
        account_id: str,
        amount: AmountLike,
        paid_at: Optional[datetime] = None,
        note: Optional[str] = None
    ) -> LoanInstallment:
        """
        Record a payment and move the money through an account

        Money lent comes back into the account; money borrowed is paid out
        of it, which requires a sufficient balance. The loan update, balance
        change, journal entry and receipt are applied as one unit.

        Returns:
            LoanInstallment receipt
        """
        if self.account_ledger is None or self.journal is None:
            raise RuntimeError("Installment payments require an account ledger and a journal")

        payment = self._payment_amount(amount, allow_zero=False)
        if note is not None:
            _validate_text('notes', note)
        paid_at = ensure_utc(paid_at, "paid_at") or self._now()

        with self.storage.atomic():
            loan = self.get_loan(owner_id, loan_id)
            account = self.account_ledger.get_account(owner_id, account_id)

            if loan.loan_type == LoanType.BORROWED and account.balance < payment:
                raise ValidationError(
                    f"Insufficient balance in account '{account.name}'. "
                    f"Available: {account.balance}, Required: {payment}",
                    field="amount"
                )

            old_status = self._apply_payment(loan, payment, paid_at)
            self._save_loan(loan)

            if loan.loan_type == LoanType.LENT:
                self.account_ledger.credit(owner_id, account_id, payment)
                entry_type = EntryType.INCOME
                description = f"Loan repayment from {loan.person_name}"
            else:
                self.account_ledger.debit(owner_id, account_id, payment)
                entry_type = EntryType.EXPENSE
                description = f"Loan repayment to {loan.person_name}"

            entry = self.journal.append(owner_id, new_journal_entry(
                owner_id=owner_id,
                entry_type=entry_type,
                amount=payment,
                account_id=account_id,
                description=description,
                timestamp=paid_at,
                notes=note
            ))

            now = self._now()
            installment = LoanInstallment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                owner_id=owner_id,
                account_id=account_id,
                amount=payment,
                currency=account.currency.code,
                paid_at=paid_at,
                remaining_balance=loan.remaining_amount,
                journal_entry_id=entry.id,
                note=note
            )
            self.storage.save(self.installments_table, installment.id, installment.to_dict())
            self._audit_payment(loan, payment, old_status, account_id=account_id)

        log_action(
            self.logger, "info", f"Loan installment applied: {payment}",
            owner_id=owner_id, action="record_installment_payment", resource=f"loan:{loan.id}",
            extra={"account_id": account_id, "remaining_amount": str(loan.remaining_amount)}
        )
        return installment

    def get_loan_installments(self, owner_id: str, loan_id: str) -> List[LoanInstallment]:
        """Installment receipts for a loan, oldest first"""
        self.get_loan(owner_id, loan_id)
        records = self.storage.find(self.installments_table, {"loan_id": loan_id})
        installments = [self._installment_from_dict(data) for data in records]
        installments.sort(key=lambda i: i.paid_at)
        return installments

    def _payment_amount(self, amount: AmountLike, allow_zero: bool) -> Decimal:
        if amount is None:
            raise ValidationError("Payment amount is required", field="amount")
        payment = _amount(amount, "amount")
        if payment < ZERO or (payment == ZERO and not allow_zero):
            raise ValidationError("Payment amount must be positive", field="amount")
        return payment

    def _apply_payment(self, loan: Loan, amount: Decimal, paid_at: datetime) -> LoanStatus:
        """Accumulate a payment and apply the status rule; returns the previous status"""
        old_status = loan.status
        loan.paid_amount = loan.paid_amount + amount
        loan.remaining_amount = loan.total_amount - loan.paid_amount
        loan.last_payment_date = paid_at
        loan.updated_at = self._now()

        if loan.remaining_amount <= ZERO:
            loan.status = LoanStatus.PAID_OFF
        elif loan.paid_amount > ZERO:
            loan.status = LoanStatus.PARTIALLY_PAID

        return old_status

    def _audit_payment(self, loan: Loan, amount: Decimal, old_status: LoanStatus,
                       account_id: Optional[str] = None) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "amount": amount,
                "paid_amount": loan.paid_amount,
                "remaining_amount": loan.remaining_amount,
                "account_id": account_id
            },
            owner_id=loan.owner_id
        )
        if loan.status == LoanStatus.PAID_OFF and old_status != LoanStatus.PAID_OFF:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAID_OFF,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"total_amount": loan.total_amount, "paid_amount": loan.paid_amount},
                owner_id=loan.owner_id
            )

    def mark_urgent(self, owner_id: str, loan_id: str) -> Loan:
        """Flag a loan as urgent"""
        return self._set_urgency(owner_id, loan_id, True)

    def mark_not_urgent(self, owner_id: str, loan_id: str) -> Loan:
        """Clear the urgent flag"""
        return self._set_urgency(owner_id, loan_id, False)

    def _set_urgency(self, owner_id: str, loan_id: str, is_urgent: bool) -> Loan:
        with self.storage.atomic():
            loan = self.get_loan(owner_id, loan_id)
            loan.is_urgent = is_urgent
            loan.updated_at = self._now()
            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_URGENCY_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"is_urgent": is_urgent},
                owner_id=owner_id
            )
        return loan

    def delete_loan(self, owner_id: str, loan_id: str) -> None:
        """Permanently remove a loan"""
        with self.storage.atomic():
            loan = self.get_loan(owner_id, loan_id)
            self.storage.delete(self.loans_table, loan.id)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DELETED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"person_name": loan.person_name, "loan_type": loan.loan_type},
                owner_id=owner_id
            )

        log_action(
            self.logger, "info", "Loan deleted",
            owner_id=owner_id, action="delete_loan", resource=f"loan:{loan_id}"
        )

    # Queries

    def get_loan(self, owner_id: str, loan_id: str) -> Loan:
        """Get a loan by ID; foreign loans are reported as missing"""
        data = self.storage.load(self.loans_table, loan_id) if loan_id else None
        if not data or data.get('owner_id') != owner_id:
            log_action(
                self.logger, "debug", "Loan lookup rejected",
                owner_id=owner_id, action="get_loan", resource=f"loan:{loan_id}"
            )
            raise NotFoundError("loan", loan_id)
        return self._loan_from_dict(data)

    def _owner_loans(self, owner_id: str, **filters) -> List[Loan]:
        filters['owner_id'] = owner_id
        loans = [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def list_loans(self, owner_id: str, limit: Optional[int] = None, offset: int = 0) -> List[Loan]:
        """All loans of an owner, oldest first"""
        loans = self._owner_loans(owner_id)[offset:]
        if limit is not None:
            loans = loans[:limit]
        return loans

    def get_loans_by_status(self, owner_id: str, status: LoanStatus) -> List[Loan]:
        return self._owner_loans(owner_id, status=status.value)

    def get_loans_by_type(self, owner_id: str, loan_type: LoanType) -> List[Loan]:
        return self._owner_loans(owner_id, loan_type=loan_type.value)

    def get_loans_by_type_and_status(self, owner_id: str, loan_type: LoanType,
                                     status: LoanStatus) -> List[Loan]:
        return self._owner_loans(owner_id, loan_type=loan_type.value, status=status.value)

    def get_overdue_loans(self, owner_id: str, now: Optional[datetime] = None) -> List[Loan]:
        """ACTIVE loans whose due date has passed"""
        now = ensure_utc(now) or self._now()
        return [loan for loan in self._owner_loans(owner_id) if loan.is_overdue(now)]

    def get_loans_due_soon(self, owner_id: str, days_ahead: Optional[int] = None,
                           now: Optional[datetime] = None) -> List[Loan]:
        """ACTIVE loans due between now and now + days_ahead, inclusive"""
        if days_ahead is None:
            days_ahead = get_config().default_due_soon_days
        now = ensure_utc(now) or self._now()
        horizon = now + timedelta(days=days_ahead)
        return [
            loan for loan in self._owner_loans(owner_id, status=LoanStatus.ACTIVE.value)
            if loan.due_date is not None and now <= loan.due_date <= horizon
        ]

    def get_loans_with_reminders_due(self, owner_id: str,
                                     now: Optional[datetime] = None) -> List[Loan]:
        """Loans with reminders enabled whose reminder date has arrived"""
        now = ensure_utc(now) or self._now()
        return [
            loan for loan in self._owner_loans(owner_id)
            if loan.reminder_enabled and loan.next_reminder_date is not None and loan.next_reminder_date <= now
        ]

    def get_urgent_loans(self, owner_id: str) -> List[Loan]:
        return self._owner_loans(owner_id, is_urgent=True)

    def get_loans_by_account(self, owner_id: str, account_id: str,
                             loan_type: Optional[LoanType] = None) -> List[Loan]:
        if loan_type:
            return self._owner_loans(owner_id, account_id=account_id, loan_type=loan_type.value)
        return self._owner_loans(owner_id, account_id=account_id)

    def search_loans_by_person_name(self, owner_id: str, fragment: str,
                                    loan_type: Optional[LoanType] = None) -> List[Loan]:
        """Case-insensitive substring match on the counterparty name"""
        needle = (fragment or "").lower()
        loans = self.get_loans_by_type(owner_id, loan_type) if loan_type else self._owner_loans(owner_id)
        return [loan for loan in loans if needle in loan.person_name.lower()]

    def get_loans_by_date_range(self, owner_id: str, start: datetime, end: datetime) -> List[Loan]:
        """Loans whose loan date falls within [start, end]"""
        start, end = ensure_utc(start), ensure_utc(end)
        return [loan for loan in self._owner_loans(owner_id) if start <= loan.loan_date <= end]

    def get_loans_by_due_date_range(self, owner_id: str, start: datetime, end: datetime) -> List[Loan]:
        """Loans whose due date falls within [start, end]"""
        start, end = ensure_utc(start), ensure_utc(end)
        return [
            loan for loan in self._owner_loans(owner_id)
            if loan.due_date is not None and start <= loan.due_date <= end
        ]

    def get_loans_by_principal_range(self, owner_id: str, min_amount: AmountLike,
                                     max_amount: AmountLike) -> List[Loan]:
        low, high = _amount(min_amount, "min_amount"), _amount(max_amount, "max_amount")
        return [loan for loan in self._owner_loans(owner_id) if low <= loan.principal_amount <= high]

    # Totals

    def _sum_principal(self, loans: List[Loan]) -> Decimal:
        return sum((loan.principal_amount for loan in loans), ZERO)

    def total_amount_lent(self, owner_id: str) -> Decimal:
        """Sum of principal across LENT loans"""
        return self._sum_principal(self.get_loans_by_type(owner_id, LoanType.LENT))

    def total_amount_borrowed(self, owner_id: str) -> Decimal:
        """Sum of principal across BORROWED loans"""
        return self._sum_principal(self.get_loans_by_type(owner_id, LoanType.BORROWED))

    def net_loan_position(self, owner_id: str) -> Decimal:
        """Lent minus borrowed"""
        return self.total_amount_lent(owner_id) - self.total_amount_borrowed(owner_id)

    def total_lent_by_status(self, owner_id: str, status: LoanStatus) -> Decimal:
        return self._sum_principal(self.get_loans_by_type_and_status(owner_id, LoanType.LENT, status))

    def total_borrowed_by_status(self, owner_id: str, status: LoanStatus) -> Decimal:
        return self._sum_principal(self.get_loans_by_type_and_status(owner_id, LoanType.BORROWED, status))

    def total_repaid(self, owner_id: str, loan_type: LoanType) -> Decimal:
        """Sum of paid amounts across loans of one direction"""
        return sum((loan.paid_amount for loan in self.get_loans_by_type(owner_id, loan_type)), ZERO)

    # Persistence

    def _save_loan(self, loan: Loan, is_new: bool = False) -> None:
        """Save with a version check; bumps the version on updates"""
        expected_version = None
        if not is_new:
            expected_version = loan.version
            loan.version += 1
        self.storage.save_versioned(self.loans_table, loan.id, loan.to_dict(), expected_version)

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to Loan"""
        interest_rate = None
        if data.get('interest_rate') is not None:
            interest_rate = Decimal(data['interest_rate'])

        return Loan(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            person_name=data['person_name'],
            loan_type=LoanType(data['loan_type']),
            principal_amount=Decimal(data['principal_amount']),
            total_amount=Decimal(data['total_amount']),
            paid_amount=Decimal(data['paid_amount']),
            remaining_amount=Decimal(data['remaining_amount']),
            loan_date=parse_datetime(data['loan_date']),
            status=LoanStatus(data['status']),
            interest_rate=interest_rate,
            due_date=parse_datetime(data.get('due_date')),
            last_payment_date=parse_datetime(data.get('last_payment_date')),
            phone_number=data.get('phone_number'),
            email=data.get('email'),
            description=data.get('description'),
            notes=data.get('notes'),
            account_id=data.get('account_id'),
            is_urgent=data.get('is_urgent', False),
            reminder_enabled=data.get('reminder_enabled', True),
            next_reminder_date=parse_datetime(data.get('next_reminder_date')),
            version=data.get('version', 1)
        )

    def _installment_from_dict(self, data: Dict) -> LoanInstallment:
        return LoanInstallment(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            owner_id=data['owner_id'],
            account_id=data['account_id'],
            amount=Decimal(data['amount']),
            currency=data['currency'],
            paid_at=parse_datetime(data['paid_at']),
            remaining_balance=Decimal(data['remaining_balance']),
            journal_entry_id=data['journal_entry_id'],
            note=data.get('note')
        )
