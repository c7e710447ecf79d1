"""
Transaction Journal Module

Append-only log of monetary movements. Loan installments and recurring
expense settlements each leave exactly one entry here.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .clock import ensure_utc
from .currency import AmountLike, ZERO, to_amount
from .errors import ValidationError, NotFoundError
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountLedger
from .logging_config import get_logger, log_action


class EntryType(Enum):
    """Direction of a journal entry"""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


@dataclass
class JournalEntry(StorageRecord):
    """
    Single monetary movement against an account
    """
    owner_id: str
    entry_type: EntryType
    amount: Decimal
    account_id: str
    timestamp: datetime
    description: str
    category_id: Optional[str] = None
    notes: Optional[str] = None
    reference_number: Optional[str] = None
    is_recurring: bool = False
    recurring_frequency: Optional[str] = None  # Frequency value for recurring entries

    @classmethod
    def from_dict(cls, data: Dict) -> 'JournalEntry':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        data['entry_type'] = EntryType(data['entry_type'])
        data['amount'] = Decimal(data['amount'])
        return cls(**data)


def new_journal_entry(
    owner_id: str,
    entry_type: EntryType,
    amount: AmountLike,
    account_id: str,
    description: str,
    timestamp: Optional[datetime] = None,
    category_id: Optional[str] = None,
    notes: Optional[str] = None,
    reference_number: Optional[str] = None,
    is_recurring: bool = False,
    recurring_frequency: Optional[str] = None
) -> JournalEntry:
    """Build an unsaved journal entry with a fresh id"""
    try:
        amount = to_amount(amount)
    except ValueError as e:
        raise ValidationError(str(e), field="amount") from e
    if amount <= ZERO:
        raise ValidationError("Journal entry amount must be positive", field="amount")
    if not account_id:
        raise ValidationError("Account is required", field="account_id")

    now = datetime.now(timezone.utc)
    return JournalEntry(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        owner_id=owner_id,
        entry_type=entry_type,
        amount=amount,
        account_id=account_id,
        timestamp=ensure_utc(timestamp, "timestamp") or now,
        description=description,
        category_id=category_id,
        notes=notes,
        reference_number=reference_number,
        is_recurring=is_recurring,
        recurring_frequency=recurring_frequency
    )


class TransactionJournal:
    """
    Append-only journal of income, expense and transfer entries
    """

    def __init__(self, storage: StorageInterface, account_ledger: AccountLedger,
                 audit_trail: AuditTrail):
        self.storage = storage
        self.account_ledger = account_ledger
        self.audit_trail = audit_trail
        self.table_name = "journal_entries"
        self.logger = get_logger("obligations.journal")

    def append(self, owner_id: str, entry: JournalEntry) -> JournalEntry:
        """
        Append an entry to the journal

        Args:
            owner_id: Owner appending the entry
            entry: Entry built with new_journal_entry()

        Returns:
            The stored entry

        Raises:
            ValidationError: If the entry belongs to another owner
            NotFoundError: If the account does not belong to the owner
        """
        if entry.owner_id != owner_id:
            raise ValidationError("Journal entry owner does not match caller", field="owner_id")

        # Raises NotFoundError for unknown or foreign accounts
        self.account_ledger.get_account(owner_id, entry.account_id)

        with self.storage.atomic():
            self.storage.save_versioned(self.table_name, entry.id, entry.to_dict(), None)
            self.audit_trail.log_event(
                event_type=AuditEventType.JOURNAL_ENTRY_APPENDED,
                entity_type="journal_entry",
                entity_id=entry.id,
                metadata={
                    "entry_type": entry.entry_type,
                    "amount": entry.amount,
                    "account_id": entry.account_id,
                    "reference_number": entry.reference_number
                },
                owner_id=owner_id
            )

        log_action(
            self.logger, "info", f"Journal entry appended: {entry.description}",
            owner_id=owner_id, action="append_entry", resource=f"journal_entry:{entry.id}",
            extra={"entry_type": entry.entry_type.value, "amount": str(entry.amount)}
        )
        return entry

    def get_entry(self, owner_id: str, entry_id: str) -> JournalEntry:
        """Get a journal entry by ID; foreign entries are reported as missing"""
        data = self.storage.load(self.table_name, entry_id) if entry_id else None
        if not data or data.get('owner_id') != owner_id:
            raise NotFoundError("journal_entry", entry_id)
        return JournalEntry.from_dict(data)

    def list_entries(
        self,
        owner_id: str,
        account_id: Optional[str] = None,
        entry_type: Optional[EntryType] = None
    ) -> List[JournalEntry]:
        """
        List an owner's entries in timestamp order

        Args:
            owner_id: Owner whose entries to list
            account_id: Only entries against this account
            entry_type: Only entries of this type
        """
        filters = {"owner_id": owner_id}
        if account_id:
            filters["account_id"] = account_id
        if entry_type:
            filters["entry_type"] = entry_type.value

        entries = [JournalEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        entries.sort(key=lambda e: (e.timestamp, e.created_at))
        return entries
