"""
Position Tracking Module

Per-(account, asset) holdings with weighted-average cost basis. Buying
re-averages the cost; selling only reduces quantity. A position sold down to
zero is kept as closed, with its average cost frozen at the last value.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from .currency import to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .locking import AccountLockManager
from .exceptions import InvalidAmount, InsufficientPosition
from .logging_config import get_logger, log_action


@dataclass
class Position(StorageRecord):
    """Quantity held of one asset in one investment account"""
    account_id: str
    asset_id: str
    quantity: Decimal
    average_cost: Decimal

    def __post_init__(self):
        if self.quantity < 0:
            raise ValueError("Position quantity cannot be negative")
        if self.average_cost < 0:
            raise ValueError("Average cost cannot be negative")

    @property
    def is_open(self) -> bool:
        return self.quantity > 0

    @property
    def invested_value(self) -> Decimal:
        return self.quantity * self.average_cost

    def market_value(self, price: Decimal) -> Decimal:
        return self.quantity * price


@dataclass(frozen=True)
class PositionSnapshot:
    """State of a position before a mutation; ``position`` is None if it did not exist"""
    account_id: str
    asset_id: str
    position: Optional[Position]


def position_key(account_id: str, asset_id: str) -> str:
    return f"{account_id}:{asset_id}"


def _positive(value, field_name: str) -> Decimal:
    try:
        decimal_value = to_decimal(value)
    except ValueError as e:
        raise InvalidAmount(str(e), **{field_name: value})
    if decimal_value <= 0:
        raise InvalidAmount(f"{field_name} must be positive, got {decimal_value}", **{field_name: decimal_value})
    return decimal_value


class PositionTracker:
    """Maintains positions; every mutation runs under the account lock in one atomic scope"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        locks: Optional[AccountLockManager] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks or AccountLockManager()
        self.table_name = "positions"
        self.logger = get_logger("wealth_core.positions")

    def apply_buy(self, account_id: str, asset_id: str, quantity, unit_price) -> Position:
        """
        Add quantity at unit_price and re-average the cost basis

        new_avg = (old_qty * old_avg + quantity * unit_price) / (old_qty + quantity)

        Raises:
            InvalidAmount: quantity <= 0 or unit_price < 0
        """
        quantity = _positive(quantity, "quantity")
        try:
            unit_price = to_decimal(unit_price)
        except ValueError as e:
            raise InvalidAmount(str(e), unit_price=unit_price)
        if unit_price < 0:
            raise InvalidAmount(f"unit_price cannot be negative, got {unit_price}", unit_price=unit_price)

        with self.locks.hold(account_id), self.storage.atomic():
            now = datetime.now(timezone.utc)
            position = self.get_position(account_id, asset_id)

            if position is None:
                position = Position(
                    id=position_key(account_id, asset_id),
                    created_at=now,
                    updated_at=now,
                    account_id=account_id,
                    asset_id=asset_id,
                    quantity=quantity,
                    average_cost=unit_price
                )
            else:
                new_quantity = position.quantity + quantity
                position.average_cost = (
                    position.quantity * position.average_cost + quantity * unit_price
                ) / new_quantity
                position.quantity = new_quantity
                position.updated_at = now

            self._save(position)
            self._audit(AuditEventType.POSITION_UPDATED, position, {"side": "buy", "delta": quantity})

        log_action(
            self.logger, "info", f"Position increased: {asset_id}",
            action="apply_buy", resource=f"position:{position.id}",
            extra={"quantity": str(position.quantity), "average_cost": str(position.average_cost)}
        )
        return position

    def apply_sell(self, account_id: str, asset_id: str, quantity, current_price) -> Decimal:
        """
        Remove quantity from a position; the average cost is unchanged

        Returns:
            Realized gain per unit, current_price - average_cost (may be negative)

        Raises:
            InvalidAmount: quantity <= 0
            InsufficientPosition: quantity exceeds the quantity held
        """
        quantity = _positive(quantity, "quantity")
        current_price = to_decimal(current_price)

        with self.locks.hold(account_id), self.storage.atomic():
            position = self.get_position(account_id, asset_id)
            held = position.quantity if position else Decimal('0')
            if quantity > held:
                raise InsufficientPosition(
                    f"Cannot sell {quantity} of {asset_id}: only {held} held",
                    account_id=account_id, asset_id=asset_id, held=held, requested=quantity
                )

            position.quantity = held - quantity
            position.updated_at = datetime.now(timezone.utc)
            self._save(position)
            self._audit(AuditEventType.POSITION_UPDATED, position, {"side": "sell", "delta": -quantity})

        log_action(
            self.logger, "info", f"Position reduced: {asset_id}",
            action="apply_sell", resource=f"position:{position.id}",
            extra={"quantity": str(position.quantity)}
        )
        return current_price - position.average_cost

    def get_position(self, account_id: str, asset_id: str) -> Optional[Position]:
        """None when the account never held the asset"""
        data = self.storage.load(self.table_name, position_key(account_id, asset_id))
        if data:
            return self._position_from_dict(data)
        return None

    def list_positions(self, account_id: str, include_closed: bool = False) -> List[Position]:
        records = self.storage.find(self.table_name, {"account_id": account_id})
        positions = [self._position_from_dict(data) for data in records]
        if not include_closed:
            positions = [p for p in positions if p.is_open]
        positions.sort(key=lambda p: p.asset_id)
        return positions

    def snapshot(self, account_id: str, asset_id: str) -> PositionSnapshot:
        return PositionSnapshot(account_id, asset_id, self.get_position(account_id, asset_id))

    def restore(self, snapshot: PositionSnapshot) -> None:
        """Compensating write: put a position back to a previously captured state"""
        key = position_key(snapshot.account_id, snapshot.asset_id)
        with self.locks.hold(snapshot.account_id), self.storage.atomic():
            if snapshot.position is None:
                self.storage.delete(self.table_name, key)
            else:
                self._save(snapshot.position)

            self.audit_trail.log_event(
                event_type=AuditEventType.POSITION_RESTORED,
                entity_type="position",
                entity_id=key,
                metadata={"existed": snapshot.position is not None}
            )

        log_action(
            self.logger, "warning", f"Position restored: {snapshot.asset_id}",
            action="restore_position", resource=f"position:{key}"
        )

    def _save(self, position: Position) -> None:
        self.storage.save(self.table_name, position.id, self._position_to_dict(position))

    def _audit(self, event_type: AuditEventType, position: Position, details: Dict) -> None:
        metadata = {
            "account_id": position.account_id,
            "asset_id": position.asset_id,
            "quantity": position.quantity,
            "average_cost": position.average_cost
        }
        metadata.update(details)
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="position",
            entity_id=position.id,
            metadata=metadata
        )

    def _position_to_dict(self, position: Position) -> Dict:
        return {
            'id': position.id,
            'created_at': position.created_at.isoformat(),
            'updated_at': position.updated_at.isoformat(),
            'account_id': position.account_id,
            'asset_id': position.asset_id,
            'quantity': str(position.quantity),
            'average_cost': str(position.average_cost)
        }

    def _position_from_dict(self, data: Dict) -> Position:
        return Position(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            asset_id=data['asset_id'],
            quantity=Decimal(data['quantity']),
            average_cost=Decimal(data['average_cost'])
        )
