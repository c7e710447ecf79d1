"""
Human-readable labels for the obligation enums.

Domain enums carry only their stable value; presentation layers look the
label up here.
"""

from enum import Enum

from .journal import EntryType
from .loans import LoanType, LoanStatus
from .recurring import Frequency, ExpenseStatus

LOAN_TYPE_LABELS = {
    LoanType.LENT: "Lent Money",
    LoanType.BORROWED: "Borrowed Money",
}

LOAN_STATUS_LABELS = {
    LoanStatus.ACTIVE: "Active",
    LoanStatus.PARTIALLY_PAID: "Partially Paid",
    LoanStatus.PAID_OFF: "Paid Off",
    LoanStatus.OVERDUE: "Overdue",
    LoanStatus.CANCELLED: "Cancelled",
}

FREQUENCY_LABELS = {
    Frequency.DAILY: "Daily",
    Frequency.WEEKLY: "Weekly",
    Frequency.MONTHLY: "Monthly",
    Frequency.QUARTERLY: "Quarterly",
    Frequency.YEARLY: "Yearly",
}

EXPENSE_STATUS_LABELS = {
    ExpenseStatus.ACTIVE: "Active",
    ExpenseStatus.PAUSED: "Paused",
    ExpenseStatus.CANCELLED: "Cancelled",
    ExpenseStatus.COMPLETED: "Completed",
}

ENTRY_TYPE_LABELS = {
    EntryType.INCOME: "Income",
    EntryType.EXPENSE: "Expense",
    EntryType.TRANSFER: "Transfer",
}

_TABLES = {
    LoanType: LOAN_TYPE_LABELS,
    LoanStatus: LOAN_STATUS_LABELS,
    Frequency: FREQUENCY_LABELS,
    ExpenseStatus: EXPENSE_STATUS_LABELS,
    EntryType: ENTRY_TYPE_LABELS,
}


def label_for(member: Enum) -> str:
    """Display label for any obligation enum member"""
    table = _TABLES.get(type(member))
    if table is None:
        raise KeyError(f"No labels registered for {type(member).__name__}")
    return table[member]
