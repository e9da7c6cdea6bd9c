"""
Account Management Module

Holds the customer's accounts: one current account and at most one
investment account per owner. The balance stored here is written only by
the Ledger; everything else treats it as read-only.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import InvalidAccount
from .logging_config import get_logger, log_action


class AccountKind(Enum):
    """Kinds of customer account"""
    CURRENT = "current"          # Day-to-day deposits, withdrawals and transfers
    INVESTMENT = "investment"    # Funds trades and holds positions


@dataclass
class Account(StorageRecord):
    """Customer account with its ledger-maintained balance"""
    owner_id: str
    kind: AccountKind
    currency: Currency
    balance: Money

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValueError("Balance currency must match account currency")

    @property
    def is_investment(self) -> bool:
        return self.kind == AccountKind.INVESTMENT


class AccountManager:
    """
    Opens and looks up accounts. Stands in for the onboarding collaborator:
    accounts are created once and never deleted.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        default_currency: Currency = Currency.BRL
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.default_currency = default_currency
        self.table_name = "accounts"
        self.logger = get_logger("wealth_core.accounts")

    def open_account(
        self,
        owner_id: str,
        kind: AccountKind,
        currency: Optional[Currency] = None
    ) -> Account:
        """
        Open a new account with a zero balance

        Raises:
            InvalidAccount: If the owner already has an account of this kind
        """
        if not owner_id:
            raise InvalidAccount("Owner id is required")

        currency = currency or self.default_currency

        with self.storage.atomic():
            if self.find_owner_account(owner_id, kind):
                raise InvalidAccount(
                    f"Owner {owner_id} already has a {kind.value} account",
                    owner_id=owner_id, kind=kind.value
                )

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                kind=kind,
                currency=currency,
                balance=Money.zero(currency)
            )
            self.save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                metadata={"owner_id": owner_id, "kind": kind.value, "currency": currency.code},
                user_id=owner_id
            )

        log_action(
            self.logger, "info", f"Account opened: {kind.value}",
            user_id=owner_id, action="open_account", resource=f"account:{account.id}"
        )
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def require_account(self, account_id: str, kind: Optional[AccountKind] = None) -> Account:
        """
        Get an account, failing if it is unknown or of the wrong kind

        Raises:
            InvalidAccount: Unknown id or kind mismatch
        """
        account = self.get_account(account_id)
        if not account:
            raise InvalidAccount(f"Account {account_id} not found", account_id=account_id)
        if kind is not None and account.kind != kind:
            raise InvalidAccount(
                f"Account {account_id} is a {account.kind.value} account, "
                f"{kind.value} required",
                account_id=account_id
            )
        return account

    def get_owner_accounts(self, owner_id: str) -> List[Account]:
        """Get all accounts for an owner"""
        records = self.storage.find(self.table_name, {"owner_id": owner_id})
        return [self._account_from_dict(data) for data in records]

    def find_owner_account(self, owner_id: str, kind: AccountKind) -> Optional[Account]:
        """Get the owner's account of the given kind, if any"""
        records = self.storage.find(self.table_name, {"owner_id": owner_id, "kind": kind.value})
        if records:
            return self._account_from_dict(records[0])
        return None

    def save_account(self, account: Account) -> None:
        """Persist an account; balance changes must come from the Ledger"""
        self.storage.save(self.table_name, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        return {
            'id': account.id,
            'created_at': account.created_at.isoformat(),
            'updated_at': account.updated_at.isoformat(),
            'owner_id': account.owner_id,
            'kind': account.kind.value,
            'currency': account.currency.code,
            'balance': str(account.balance.amount)
        }

    def _account_from_dict(self, data: Dict) -> Account:
        currency = Currency[data['currency']]
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            kind=AccountKind(data['kind']),
            currency=currency,
            balance=Money(Decimal(data['balance']), currency)
        )
