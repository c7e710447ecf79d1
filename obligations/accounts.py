"""
Account Ledger Module

Owns the decimal balance of each money account. Loans and recurring
expenses move money only through debit() and credit(), which validate
ownership and write the new balance with a version check.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import uuid

from .config import get_config
from .currency import Currency, AmountLike, ZERO, to_amount
from .errors import ValidationError, NotFoundError
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action


@dataclass
class Account(StorageRecord):
    """Money account holding a single running balance"""
    owner_id: str
    name: str
    currency: Currency
    balance: Decimal = ZERO
    version: int = 1


class AccountLedger:
    """
    Manages accounts and their balances
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.accounts_table = "accounts"
        self.logger = get_logger("obligations.accounts")

    def open_account(
        self,
        owner_id: str,
        name: str,
        currency: Optional[Currency] = None,
        opening_balance: AmountLike = ZERO
    ) -> Account:
        """
        Open a new account

        Args:
            owner_id: ID of account owner
            name: Account name
            currency: Account currency, defaults to the configured currency
            opening_balance: Starting balance, may be zero

        Returns:
            Created Account object
        """
        if not owner_id:
            raise ValidationError("Owner is required", field="owner_id")
        if not name or not name.strip():
            raise ValidationError("Account name is required", field="name")
        currency = currency or Currency[get_config().default_currency]

        try:
            balance = to_amount(opening_balance, currency.precision)
        except ValueError as e:
            raise ValidationError(str(e), field="opening_balance") from e
        if balance < ZERO:
            raise ValidationError("Opening balance cannot be negative", field="opening_balance")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            name=name.strip(),
            currency=currency,
            balance=balance
        )

        with self.storage.atomic():
            self.storage.save_versioned(self.accounts_table, account.id,
                                        self._account_to_dict(account), None)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "name": account.name,
                    "currency": currency.code,
                    "opening_balance": balance
                },
                owner_id=owner_id
            )

        log_action(
            self.logger, "info", f"Account opened: {account.name}",
            owner_id=owner_id, action="open_account", resource=f"account:{account.id}"
        )
        return account

    def get_account(self, owner_id: str, account_id: str) -> Account:
        """Get account by ID; foreign accounts are reported as missing"""
        account_dict = self.storage.load(self.accounts_table, account_id) if account_id else None
        if not account_dict or account_dict.get('owner_id') != owner_id:
            raise NotFoundError("account", account_id)
        return self._account_from_dict(account_dict)

    def list_accounts(self, owner_id: str) -> List[Account]:
        """Get all accounts for an owner"""
        accounts_data = self.storage.find(self.accounts_table, {"owner_id": owner_id})
        accounts = [self._account_from_dict(data) for data in accounts_data]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def get_balance(self, owner_id: str, account_id: str) -> Decimal:
        """Get current balance of an account"""
        return self.get_account(owner_id, account_id).balance

    def total_balance(self, owner_id: str) -> Decimal:
        """Sum of the balances of every account the owner holds"""
        return sum((a.balance for a in self.list_accounts(owner_id)), ZERO)

    def debit(self, owner_id: str, account_id: str, amount: AmountLike) -> Decimal:
        """
        Subtract an amount from an account. Balances may go negative.

        Returns:
            Updated balance
        """
        return self._apply(owner_id, account_id, amount, debit=True)

    def credit(self, owner_id: str, account_id: str, amount: AmountLike) -> Decimal:
        """
        Add an amount to an account

        Returns:
            Updated balance
        """
        return self._apply(owner_id, account_id, amount, debit=False)

    def _apply(self, owner_id: str, account_id: str, amount: AmountLike, debit: bool) -> Decimal:
        account = self.get_account(owner_id, account_id)

        try:
            amount = to_amount(amount, account.currency.precision)
        except ValueError as e:
            raise ValidationError(str(e), field="amount") from e
        if amount <= ZERO:
            raise ValidationError("Amount must be positive", field="amount")

        old_balance = account.balance
        expected_version = account.version
        account.balance = old_balance - amount if debit else old_balance + amount
        account.version += 1
        account.updated_at = datetime.now(timezone.utc)

        with self.storage.atomic():
            self.storage.save_versioned(self.accounts_table, account.id,
                                        self._account_to_dict(account), expected_version)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_DEBITED if debit else AuditEventType.ACCOUNT_CREDITED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "amount": amount,
                    "old_balance": old_balance,
                    "new_balance": account.balance
                },
                owner_id=owner_id
            )

        log_action(
            self.logger, "debug",
            f"Account {'debited' if debit else 'credited'}: {amount}",
            owner_id=owner_id, action="debit" if debit else "credit",
            resource=f"account:{account.id}",
            extra={"new_balance": str(account.balance)}
        )
        return account.balance

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['currency'] = account.currency.code
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            name=data['name'],
            currency=Currency[data['currency']],
            balance=Decimal(data['balance']),
            version=data.get('version', 1)
        )
