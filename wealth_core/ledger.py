"""
Account Ledger

Owns account balances and the append-only transaction history. Every
mutation updates the balance and appends its transaction record inside one
atomic storage scope, under the lock of each account involved, so callers
see both or neither. Transactions are never modified or deleted; a
correction is a new compensating transaction.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union
import uuid

from .currency import Money, Currency, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import Account, AccountManager
from .locking import AccountLockManager
from .exceptions import InvalidAmount, InsufficientFunds, InvalidAccount
from .logging_config import get_logger, log_action

AmountLike = Union[Money, Decimal, int, str]


def as_utc(moment: datetime) -> datetime:
    """Read a naive datetime as UTC; aware datetimes pass through unchanged"""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class TransactionKind(Enum):
    """Kinds of ledger transaction"""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRANSFER = "transfer"
    BUY = "buy"
    SELL = "sell"


class Direction(Enum):
    """Effect of a transaction on its account's balance"""
    CREDIT = "credit"
    DEBIT = "debit"


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger record. ``amount`` is always positive; ``direction``
    says whether it was added to or taken from the balance.
    """
    account_id: str
    kind: TransactionKind
    direction: Direction
    amount: Money
    timestamp: datetime
    description: str
    sequence: int
    counterparty_account_id: Optional[str] = None
    transfer_id: Optional[str] = None
    asset_id: Optional[str] = None
    quantity: Optional[Decimal] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")

        if self.kind in (TransactionKind.BUY, TransactionKind.SELL):
            if not self.asset_id:
                raise ValueError("Trade transactions must reference an asset")
            if self.quantity is None or self.quantity <= 0:
                raise ValueError("Trade transactions must carry a positive quantity")

    @property
    def signed_amount(self) -> Money:
        """Amount with the sign of its effect on the balance"""
        if self.direction == Direction.DEBIT:
            return -self.amount
        return self.amount

    @property
    def is_credit(self) -> bool:
        return self.direction == Direction.CREDIT

    def metadata_decimal(self, key: str) -> Optional[Decimal]:
        """Read a numeric metadata value recorded at settlement"""
        value = self.metadata.get(key)
        if value is None:
            return None
        return Decimal(value)


@dataclass
class TransactionFilter:
    """Optional constraints for transaction history queries"""
    kinds: Optional[Sequence[TransactionKind]] = None
    start: Optional[datetime] = None   # inclusive
    end: Optional[datetime] = None     # inclusive
    asset_id: Optional[str] = None
    ascending: bool = False
    limit: Optional[int] = None

    def __post_init__(self):
        if self.start is not None:
            self.start = as_utc(self.start)
        if self.end is not None:
            self.end = as_utc(self.end)

    def matches(self, transaction: Transaction) -> bool:
        if self.kinds is not None and transaction.kind not in self.kinds:
            return False
        if self.start is not None and transaction.timestamp < self.start:
            return False
        if self.end is not None and transaction.timestamp > self.end:
            return False
        if self.asset_id is not None and transaction.asset_id != self.asset_id:
            return False
        return True


class TransactionHistory:
    """
    Lazy, restartable view of an account's transactions.

    Nothing is read until iteration starts, and every new iteration reads
    the store again, so a history object always reflects the latest
    committed state.
    """

    def __init__(self, ledger: 'Ledger', account_id: str, filter: Optional[TransactionFilter] = None):
        self._ledger = ledger
        self.account_id = account_id
        self.filter = filter or TransactionFilter()

    def __iter__(self) -> Iterator[Transaction]:
        records = self._ledger._load_account_records(self.account_id)
        records.sort(
            key=lambda r: (datetime.fromisoformat(r['timestamp']), r['sequence']),
            reverse=not self.filter.ascending
        )

        yielded = 0
        for record in records:
            if self.filter.limit is not None and yielded >= self.filter.limit:
                return
            transaction = self._ledger._transaction_from_dict(record)
            if self.filter.matches(transaction):
                yielded += 1
                yield transaction

    def to_list(self) -> List[Transaction]:
        return list(self)

    def first(self) -> Optional[Transaction]:
        return next(iter(self), None)

    def count(self) -> int:
        return sum(1 for _ in self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Ledger:
    """
    Balance keeper for deposits, withdrawals, transfers and trade postings.
    A balance never goes negative as a direct effect of a ledger operation.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        audit_trail: AuditTrail,
        locks: Optional[AccountLockManager] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.audit_trail = audit_trail
        self.locks = locks or AccountLockManager()
        self.clock = clock or _utcnow
        self.table_name = "transactions"
        self.logger = get_logger("wealth_core.ledger")
        self._last_posted: Optional[Tuple[str, int]] = None

    def deposit(self, account_id: str, amount: AmountLike, description: Optional[str] = None) -> Transaction:
        """
        Credit an account

        Raises:
            InvalidAmount: amount <= 0
            InvalidAccount: unknown account
        """
        with self.locks.hold(account_id), self.storage.atomic():
            account = self.account_manager.require_account(account_id)
            money = self._coerce_amount(amount, account.currency)
            transaction = self._post(
                account, TransactionKind.DEPOSIT, Direction.CREDIT, money,
                description or "Deposit"
            )
            self._audit(AuditEventType.DEPOSIT_POSTED, transaction)

        self._log_posted(transaction)
        return transaction

    def withdraw(self, account_id: str, amount: AmountLike, description: Optional[str] = None) -> Transaction:
        """
        Debit an account

        Raises:
            InvalidAmount: amount <= 0
            InsufficientFunds: amount > balance
            InvalidAccount: unknown account
        """
        with self.locks.hold(account_id), self.storage.atomic():
            account = self.account_manager.require_account(account_id)
            money = self._coerce_amount(amount, account.currency)
            self._ensure_funds(account, money)
            transaction = self._post(
                account, TransactionKind.WITHDRAW, Direction.DEBIT, money,
                description or "Withdrawal"
            )
            self._audit(AuditEventType.WITHDRAWAL_POSTED, transaction)

        self._log_posted(transaction)
        return transaction

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> Tuple[Transaction, Transaction]:
        """
        Move funds between two accounts

        Returns:
            (debit on the source, credit on the destination), sharing one transfer_id

        Raises:
            InvalidAccount: same account, unknown id, or currency mismatch
            InvalidAmount: amount <= 0
            InsufficientFunds: amount > balance of the source
        """
        if from_account_id == to_account_id:
            raise InvalidAccount("Cannot transfer to the same account", account_id=from_account_id)

        with self.locks.hold(from_account_id, to_account_id), self.storage.atomic():
            source = self.account_manager.require_account(from_account_id)
            destination = self.account_manager.require_account(to_account_id)
            if source.currency != destination.currency:
                raise InvalidAccount(
                    f"Cannot transfer {source.currency.code} to a {destination.currency.code} account"
                )

            money = self._coerce_amount(amount, source.currency)
            self._ensure_funds(source, money)

            transfer_id = str(uuid.uuid4())
            description = description or "Transfer"
            debit = self._post(
                source, TransactionKind.TRANSFER, Direction.DEBIT, money, description,
                counterparty_account_id=destination.id, transfer_id=transfer_id
            )
            credit = self._post(
                destination, TransactionKind.TRANSFER, Direction.CREDIT, money, description,
                counterparty_account_id=source.id, transfer_id=transfer_id
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_POSTED,
                entity_type="transfer",
                entity_id=transfer_id,
                metadata={
                    "from_account": source.id,
                    "to_account": destination.id,
                    "amount": money.amount,
                    "debit_transaction": debit.id,
                    "credit_transaction": credit.id
                }
            )

        log_action(
            self.logger, "info", f"Transfer posted: {money.to_string()}",
            action="transfer", resource=f"transfer:{transfer_id}",
            extra={"from_account": source.id, "to_account": destination.id, "amount": str(money.amount)}
        )
        return debit, credit

    def debit_for_trade(
        self,
        account_id: str,
        amount: AmountLike,
        asset_id: str,
        quantity: Decimal,
        description: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Transaction:
        """Post the cash leg of a purchase as a ``buy`` debit"""
        with self.locks.hold(account_id), self.storage.atomic():
            account = self.account_manager.require_account(account_id)
            money = self._coerce_amount(amount, account.currency)
            self._ensure_funds(account, money)
            transaction = self._post(
                account, TransactionKind.BUY, Direction.DEBIT, money, description,
                asset_id=asset_id, quantity=quantity, metadata=metadata
            )
            self._audit(AuditEventType.TRADE_POSTED, transaction)

        self._log_posted(transaction)
        return transaction

    def credit_for_trade(
        self,
        account_id: str,
        amount: AmountLike,
        asset_id: str,
        quantity: Decimal,
        description: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Transaction:
        """Post the net proceeds of a sale as a ``sell`` credit"""
        with self.locks.hold(account_id), self.storage.atomic():
            account = self.account_manager.require_account(account_id)
            money = self._coerce_amount(amount, account.currency)
            transaction = self._post(
                account, TransactionKind.SELL, Direction.CREDIT, money, description,
                asset_id=asset_id, quantity=quantity, metadata=metadata
            )
            self._audit(AuditEventType.TRADE_POSTED, transaction)

        self._log_posted(transaction)
        return transaction

    def get_balance(self, account_id: str) -> Money:
        """Current committed balance"""
        return self.account_manager.require_account(account_id).balance

    def get_transactions(
        self,
        account_id: str,
        filter: Optional[TransactionFilter] = None
    ) -> TransactionHistory:
        """Transactions of an account, newest first unless the filter says otherwise"""
        self.account_manager.require_account(account_id)
        return TransactionHistory(self, account_id, filter)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def recompute_balance(self, account_id: str) -> Money:
        """Balance rebuilt from the signed amounts of every transaction"""
        account = self.account_manager.require_account(account_id)
        total = Money.zero(account.currency)
        for transaction in TransactionHistory(self, account_id, TransactionFilter(ascending=True)):
            total = total + transaction.signed_amount
        return total

    def verify_balance(self, account_id: str) -> bool:
        """True when the stored balance matches the transaction history"""
        with self.locks.hold(account_id):
            return self.get_balance(account_id) == self.recompute_balance(account_id)

    def _coerce_amount(self, amount: AmountLike, currency: Currency) -> Money:
        if isinstance(amount, Money):
            if amount.currency != currency:
                raise InvalidAmount(
                    f"Amount in {amount.currency.code} does not match account currency {currency.code}"
                )
            money = amount
        else:
            try:
                money = Money(to_decimal(amount), currency)
            except ValueError as e:
                raise InvalidAmount(str(e), amount=amount)

        if not money.is_positive():
            raise InvalidAmount(f"Amount must be positive, got {money.to_string()}", amount=money.amount)
        return money

    def _ensure_funds(self, account: Account, amount: Money) -> None:
        if amount > account.balance:
            raise InsufficientFunds(
                f"Insufficient funds: available {account.balance.to_string()}, "
                f"requested {amount.to_string()}",
                account_id=account.id, balance=account.balance.amount, requested=amount.amount
            )

    def _post(
        self,
        account: Account,
        kind: TransactionKind,
        direction: Direction,
        amount: Money,
        description: str,
        counterparty_account_id: Optional[str] = None,
        transfer_id: Optional[str] = None,
        asset_id: Optional[str] = None,
        quantity: Optional[Decimal] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> Transaction:
        """Apply one balance change and append its record; caller holds lock and scope"""
        timestamp = as_utc(self.clock())

        if direction == Direction.DEBIT:
            new_balance = account.balance - amount
        else:
            new_balance = account.balance + amount
        if new_balance.is_negative():
            raise InsufficientFunds(f"Posting would overdraw account {account.id}", account_id=account.id)

        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=timestamp,
            updated_at=timestamp,
            account_id=account.id,
            kind=kind,
            direction=direction,
            amount=amount,
            timestamp=timestamp,
            description=description,
            sequence=self._next_sequence(),
            counterparty_account_id=counterparty_account_id,
            transfer_id=transfer_id,
            asset_id=asset_id,
            quantity=quantity,
            metadata=dict(metadata or {})
        )
        self.storage.save(self.table_name, transaction.id, self._transaction_to_dict(transaction))
        self._last_posted = (transaction.id, transaction.sequence)

        account.balance = new_balance
        account.updated_at = timestamp
        self.account_manager.save_account(account)

        return transaction

    def _next_sequence(self) -> int:
        # Transactions are never deleted, so the count is the last sequence
        if self._last_posted is not None and self.storage.exists(self.table_name, self._last_posted[0]):
            return self._last_posted[1] + 1
        return self.storage.count(self.table_name) + 1

    def _audit(self, event_type: AuditEventType, transaction: Transaction) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={
                "account_id": transaction.account_id,
                "kind": transaction.kind.value,
                "direction": transaction.direction.value,
                "amount": transaction.amount.amount,
                "asset_id": transaction.asset_id,
                "quantity": transaction.quantity
            }
        )

    def _log_posted(self, transaction: Transaction) -> None:
        log_action(
            self.logger, "info", f"{transaction.kind.value.capitalize()} posted: {transaction.amount.to_string()}",
            action=transaction.kind.value, resource=f"transaction:{transaction.id}",
            extra={
                "account_id": transaction.account_id,
                "direction": transaction.direction.value,
                "amount": str(transaction.amount.amount)
            }
        )

    def _load_account_records(self, account_id: str) -> List[Dict]:
        return self.storage.find(self.table_name, {"account_id": account_id})

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        return {
            'id': transaction.id,
            'created_at': transaction.created_at.isoformat(),
            'updated_at': transaction.updated_at.isoformat(),
            'account_id': transaction.account_id,
            'kind': transaction.kind.value,
            'direction': transaction.direction.value,
            'amount': str(transaction.amount.amount),
            'currency': transaction.amount.currency.code,
            'timestamp': transaction.timestamp.isoformat(),
            'description': transaction.description,
            'sequence': transaction.sequence,
            'counterparty_account_id': transaction.counterparty_account_id,
            'transfer_id': transaction.transfer_id,
            'asset_id': transaction.asset_id,
            'quantity': str(transaction.quantity) if transaction.quantity is not None else None,
            'metadata': transaction.metadata
        }

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        quantity = None
        if data.get('quantity') is not None:
            quantity = Decimal(data['quantity'])

        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            kind=TransactionKind(data['kind']),
            direction=Direction(data['direction']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            timestamp=datetime.fromisoformat(data['timestamp']),
            description=data['description'],
            sequence=data['sequence'],
            counterparty_account_id=data.get('counterparty_account_id'),
            transfer_id=data.get('transfer_id'),
            asset_id=data.get('asset_id'),
            quantity=quantity,
            metadata=data.get('metadata') or {}
        )
