"""
Trading Engine

Validates and settles buy and sell orders for investment accounts. An order
moves PENDING -> SETTLED or PENDING -> REJECTED. Settlement holds the
account lock from validation to the last write and applies the position
change and the ledger posting in one atomic storage scope; if the ledger
step fails the position is put back from its snapshot before the scope
rolls back.
"""

from datetime import datetime
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Union
import uuid

from .currency import Money, Currency, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import Account, AccountKind, AccountManager
from .ledger import Ledger
from .positions import PositionTracker
from .fees import FeeTaxCalculator, BuyQuote, SellQuote
from .market_data import Asset, AssetKind, MarketDataProvider
from .locking import AccountLockManager
from .exceptions import (
    WealthCoreError, InvalidAmount, InsufficientFunds, InsufficientPosition,
    BelowMinimumInvestment, error_code
)
from .logging_config import get_logger, log_action


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderState(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    SETTLED = "settled"
    REJECTED = "rejected"


@dataclass
class Order(StorageRecord):
    """Request to buy or sell an asset, with its settlement outcome"""
    account_id: str
    asset_id: str
    side: OrderSide
    quantity: Optional[Decimal]
    state: OrderState = OrderState.PENDING
    unit_price: Optional[Decimal] = None
    gross_value: Optional[Money] = None
    fee: Optional[Money] = None
    tax: Optional[Money] = None
    net_value: Optional[Money] = None          # total cost for buys, proceeds for sells
    realized_gain: Optional[Money] = None      # sells only
    transaction_id: Optional[str] = None
    rejection_code: Optional[str] = None
    rejection_reason: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.state == OrderState.SETTLED

    @property
    def is_rejected(self) -> bool:
        return self.state == OrderState.REJECTED


@dataclass(frozen=True)
class TradePreview:
    """Outcome a trade would have at the current price, computed without side effects"""
    side: OrderSide
    account_id: str
    asset: Asset
    quantity: Decimal
    unit_price: Decimal
    quote: Union[BuyQuote, SellQuote]
    average_cost: Decimal
    balance_after: Money

    @property
    def gross_value(self) -> Money:
        return self.quote.gross_value

    @property
    def fee(self) -> Money:
        return self.quote.fee

    @property
    def tax(self) -> Money:
        if isinstance(self.quote, SellQuote):
            return self.quote.tax
        return Money.zero(self.quote.fee.currency)

    @property
    def realized_gain(self) -> Optional[Money]:
        if isinstance(self.quote, SellQuote):
            return self.quote.gain_amount
        return None

    @property
    def cash_amount(self) -> Money:
        """Amount debited for a buy or credited for a sell"""
        if isinstance(self.quote, BuyQuote):
            return self.quote.total_cost
        return self.quote.net_value


class TradingEngine:
    """Buys and sells assets against an investment account's cash balance"""

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        ledger: Ledger,
        positions: PositionTracker,
        calculator: FeeTaxCalculator,
        market_data: MarketDataProvider,
        audit_trail: AuditTrail,
        locks: Optional[AccountLockManager] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.positions = positions
        self.calculator = calculator
        self.market_data = market_data
        self.audit_trail = audit_trail
        self.locks = locks or ledger.locks
        self.table_name = "orders"
        self.logger = get_logger("wealth_core.trading")

    def buy(self, account_id: str, asset_id: str, quantity) -> Order:
        """
        Buy quantity of an asset at its current price

        Raises:
            InvalidAccount: Unknown or non-investment account
            InvalidAmount: quantity <= 0
            AssetNotFound: Unknown asset
            BelowMinimumInvestment: Fixed income gross value under the asset minimum
            InsufficientFunds: Total cost exceeds the cash balance
        """
        order = self._new_order(account_id, asset_id, OrderSide.BUY, quantity)

        try:
            with self.locks.hold(account_id):
                preview = self.preview_buy(account_id, asset_id, quantity)
                with self.storage.atomic():
                    self._settle_buy(order, preview)
        except WealthCoreError as e:
            self._reject_order(order, e)
            raise

        self._log_settled(order)
        return order

    def sell(self, account_id: str, asset_id: str, quantity) -> Order:
        """
        Sell quantity of a held asset at its current price

        Raises:
            InvalidAccount: Unknown or non-investment account
            InvalidAmount: quantity <= 0
            AssetNotFound: Unknown asset
            InsufficientPosition: quantity exceeds the quantity held
        """
        order = self._new_order(account_id, asset_id, OrderSide.SELL, quantity)

        try:
            with self.locks.hold(account_id):
                preview = self.preview_sell(account_id, asset_id, quantity)
                with self.storage.atomic():
                    self._settle_sell(order, preview)
        except WealthCoreError as e:
            self._reject_order(order, e)
            raise

        self._log_settled(order)
        return order

    def preview_buy(self, account_id: str, asset_id: str, quantity) -> TradePreview:
        """Quote a purchase and run every validation, without mutating anything"""
        account, quantity, asset = self._validate_request(account_id, asset_id, quantity)
        unit_price = self.market_data.current_price(asset.id)
        gross = self._gross_value(account, quantity, unit_price)

        if asset.kind == AssetKind.FIXED_INCOME and asset.min_investment is not None:
            if gross.amount < asset.min_investment:
                raise BelowMinimumInvestment(
                    f"Minimum investment for {asset.symbol} is {asset.min_investment}, "
                    f"order value is {gross.amount}",
                    asset_id=asset.id, min_investment=asset.min_investment, gross_value=gross.amount
                )

        quote = self.calculator.quote_buy(asset.kind, gross)
        if quote.total_cost > account.balance:
            raise InsufficientFunds(
                f"Insufficient funds: available {account.balance.to_string()}, "
                f"required {quote.total_cost.to_string()}",
                account_id=account.id, balance=account.balance.amount, requested=quote.total_cost.amount
            )

        position = self.positions.get_position(account.id, asset.id)
        held = position.quantity if position else Decimal('0')
        held_cost = position.average_cost if position else Decimal('0')
        average_cost = (held * held_cost + quantity * unit_price) / (held + quantity)

        return TradePreview(
            side=OrderSide.BUY,
            account_id=account.id,
            asset=asset,
            quantity=quantity,
            unit_price=unit_price,
            quote=quote,
            average_cost=average_cost,
            balance_after=account.balance - quote.total_cost
        )

    def preview_sell(self, account_id: str, asset_id: str, quantity) -> TradePreview:
        """Quote a sale and run every validation, without mutating anything"""
        account, quantity, asset = self._validate_request(account_id, asset_id, quantity)

        position = self.positions.get_position(account.id, asset.id)
        held = position.quantity if position else Decimal('0')
        if quantity > held:
            raise InsufficientPosition(
                f"Cannot sell {quantity} of {asset.symbol}: only {held} held",
                account_id=account.id, asset_id=asset.id, held=held, requested=quantity
            )

        unit_price = self.market_data.current_price(asset.id)
        gross = self._gross_value(account, quantity, unit_price)
        gain = Money((unit_price - position.average_cost) * quantity, account.currency)
        quote = self.calculator.quote_sell(asset.kind, gross, gain)

        if not quote.net_value.is_positive():
            raise InvalidAmount(
                f"Sale proceeds after fees and taxes are {quote.net_value.to_string()}",
                net_value=quote.net_value.amount
            )

        return TradePreview(
            side=OrderSide.SELL,
            account_id=account.id,
            asset=asset,
            quantity=quantity,
            unit_price=unit_price,
            quote=quote,
            average_cost=position.average_cost,
            balance_after=account.balance + quote.net_value
        )

    def get_order(self, order_id: str) -> Optional[Order]:
        data = self.storage.load(self.table_name, order_id)
        if data:
            return self._order_from_dict(data)
        return None

    def list_orders(self, account_id: str, state: Optional[OrderState] = None) -> List[Order]:
        """Orders of an account, newest first"""
        filters = {"account_id": account_id}
        if state is not None:
            filters["state"] = state.value
        orders = [self._order_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    def _validate_request(self, account_id: str, asset_id: str, quantity):
        account = self.account_manager.require_account(account_id, AccountKind.INVESTMENT)
        quantity = self._parse_quantity(quantity)
        asset = self.market_data.get_asset(asset_id)
        return account, quantity, asset

    def _parse_quantity(self, quantity) -> Decimal:
        try:
            value = to_decimal(quantity)
        except ValueError as e:
            raise InvalidAmount(str(e), quantity=quantity)
        if value <= 0:
            raise InvalidAmount(f"Quantity must be positive, got {value}", quantity=value)
        return value

    def _gross_value(self, account: Account, quantity: Decimal, unit_price: Decimal) -> Money:
        gross = Money(quantity * unit_price, account.currency)
        if not gross.is_positive():
            raise InvalidAmount(
                f"Order value {gross.to_string()} is not positive",
                quantity=quantity, unit_price=unit_price
            )
        return gross

    def _settle_buy(self, order: Order, preview: TradePreview) -> None:
        quote = preview.quote
        snapshot = self.positions.snapshot(order.account_id, preview.asset.id)

        position = self.positions.apply_buy(
            order.account_id, preview.asset.id, preview.quantity, preview.unit_price
        )
        try:
            transaction = self.ledger.debit_for_trade(
                order.account_id,
                quote.total_cost,
                asset_id=preview.asset.id,
                quantity=preview.quantity,
                description=f"Buy {preview.quantity} {preview.asset.symbol}",
                metadata=self._trade_metadata(order, preview, position.average_cost)
            )
        except Exception:
            self.positions.restore(snapshot)
            raise

        self._mark_settled(order, preview, transaction.id)

    def _settle_sell(self, order: Order, preview: TradePreview) -> None:
        quote = preview.quote
        snapshot = self.positions.snapshot(order.account_id, preview.asset.id)

        self.positions.apply_sell(order.account_id, preview.asset.id, preview.quantity, preview.unit_price)
        try:
            transaction = self.ledger.credit_for_trade(
                order.account_id,
                quote.net_value,
                asset_id=preview.asset.id,
                quantity=preview.quantity,
                description=f"Sell {preview.quantity} {preview.asset.symbol}",
                metadata=self._trade_metadata(order, preview, preview.average_cost)
            )
        except Exception:
            self.positions.restore(snapshot)
            raise

        self._mark_settled(order, preview, transaction.id)

    def _trade_metadata(self, order: Order, preview: TradePreview, average_cost: Decimal) -> Dict[str, str]:
        metadata = {
            "order_id": order.id,
            "asset_kind": preview.asset.kind.value,
            "unit_price": str(preview.unit_price),
            "gross_value": str(preview.gross_value.amount),
            "fee": str(preview.fee.amount),
            "tax": str(preview.tax.amount),
            "average_cost": str(average_cost)
        }
        if preview.realized_gain is not None:
            metadata["realized_gain"] = str(preview.realized_gain.amount)
        return metadata

    def _mark_settled(self, order: Order, preview: TradePreview, transaction_id: str) -> None:
        order.state = OrderState.SETTLED
        order.quantity = preview.quantity
        order.unit_price = preview.unit_price
        order.gross_value = preview.gross_value
        order.fee = preview.fee
        order.tax = preview.tax
        order.net_value = preview.cash_amount
        order.realized_gain = preview.realized_gain
        order.transaction_id = transaction_id
        order.updated_at = self.ledger.clock()
        self._save_order(order)

        self.audit_trail.log_event(
            event_type=AuditEventType.ORDER_SETTLED,
            entity_type="order",
            entity_id=order.id,
            metadata={
                "account_id": order.account_id,
                "asset_id": order.asset_id,
                "side": order.side.value,
                "quantity": order.quantity,
                "unit_price": order.unit_price,
                "net_value": order.net_value.amount,
                "transaction_id": transaction_id
            }
        )

    def _reject_order(self, order: Order, error: WealthCoreError) -> None:
        """Mark order as rejected and keep it for history"""
        order.state = OrderState.REJECTED
        order.rejection_code = error_code(error)
        order.rejection_reason = error.message
        order.updated_at = self.ledger.clock()
        self._save_order(order)

        log_action(
            self.logger, "warning", f"Order rejected: {error.message}",
            action=f"{order.side.value}_rejected", resource=f"order:{order.id}",
            extra={"account_id": order.account_id, "asset_id": order.asset_id, "code": order.rejection_code}
        )

    def _log_settled(self, order: Order) -> None:
        log_action(
            self.logger, "info", f"Order settled: {order.side.value} {order.quantity} {order.asset_id}",
            action=order.side.value, resource=f"order:{order.id}",
            extra={
                "account_id": order.account_id,
                "unit_price": str(order.unit_price),
                "net_value": str(order.net_value.amount)
            }
        )

    def _new_order(self, account_id: str, asset_id: str, side: OrderSide, quantity) -> Order:
        try:
            requested = to_decimal(quantity)
        except ValueError:
            requested = None

        now = self.ledger.clock()
        return Order(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            asset_id=asset_id,
            side=side,
            quantity=requested
        )

    def _save_order(self, order: Order) -> None:
        self.storage.save(self.table_name, order.id, self._order_to_dict(order))

    def _order_to_dict(self, order: Order) -> Dict:
        def money(value: Optional[Money]) -> Optional[str]:
            return str(value.amount) if value is not None else None

        def decimal(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        currency = order.gross_value.currency.code if order.gross_value is not None else None
        return {
            'id': order.id,
            'created_at': order.created_at.isoformat(),
            'updated_at': order.updated_at.isoformat(),
            'account_id': order.account_id,
            'asset_id': order.asset_id,
            'side': order.side.value,
            'quantity': decimal(order.quantity),
            'state': order.state.value,
            'unit_price': decimal(order.unit_price),
            'currency': currency,
            'gross_value': money(order.gross_value),
            'fee': money(order.fee),
            'tax': money(order.tax),
            'net_value': money(order.net_value),
            'realized_gain': money(order.realized_gain),
            'transaction_id': order.transaction_id,
            'rejection_code': order.rejection_code,
            'rejection_reason': order.rejection_reason
        }

    def _order_from_dict(self, data: Dict) -> Order:
        currency = Currency[data['currency']] if data.get('currency') else None

        def money(key: str) -> Optional[Money]:
            if data.get(key) is None or currency is None:
                return None
            return Money(Decimal(data[key]), currency)

        def decimal(key: str) -> Optional[Decimal]:
            return Decimal(data[key]) if data.get(key) is not None else None

        return Order(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            asset_id=data['asset_id'],
            side=OrderSide(data['side']),
            quantity=decimal('quantity'),
            state=OrderState(data['state']),
            unit_price=decimal('unit_price'),
            gross_value=money('gross_value'),
            fee=money('fee'),
            tax=money('tax'),
            net_value=money('net_value'),
            realized_gain=money('realized_gain'),
            transaction_id=data.get('transaction_id'),
            rejection_code=data.get('rejection_code'),
            rejection_reason=data.get('rejection_reason')
        )
