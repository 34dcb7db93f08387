"""Simulated broker: order/position ledger, tick evaluation and account math."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from core.market_metadata import format_price, get_contract_size, get_pip_value, normalize_instrument

from .errors import InvalidOrderState, OrderRejected, UnknownOrder
from .models import (
    AccountView,
    Candle,
    ChartMarker,
    EngineEvent,
    OrderKind,
    OrderStatus,
    PositionView,
    PriceQuote,
    iso_utc,
)

logger = logging.getLogger(__name__)

DEFAULT_SPREAD_PIPS = 1.5
DEFAULT_COMMISSION_PER_LOT = 7.0
DEFAULT_LEVERAGE = 100.0
DEFAULT_STARTING_BALANCE = 100_000.0
_LOT_STEP_DECIMALS = 2


@dataclass
class _OrderState:
    order_id: str
    kind: OrderKind
    entry_price: float
    lot_size: float
    entry_time: int
    commission: float
    stop_loss: float | None = None
    take_profit: float | None = None
    status: OrderStatus = OrderStatus.PENDING
    exit_time: int | None = None
    exit_price: float | None = None
    gross_pnl: float | None = None
    realized_pnl: float | None = None
    exit_reason: str | None = None
    parent_id: str | None = None
    tags: list[str] = field(default_factory=list)
    note: str | None = None
    playbook: str | None = None

    @property
    def is_long(self) -> bool:
        return self.kind.is_long

    def to_view(self) -> PositionView:
        return PositionView(
            order_id=self.order_id,
            kind=self.kind.value,
            side=self.kind.side,
            status=self.status.value,
            entry_price=float(self.entry_price),
            lot_size=float(self.lot_size),
            stop_loss=None if self.stop_loss is None else float(self.stop_loss),
            take_profit=None if self.take_profit is None else float(self.take_profit),
            entry_time=int(self.entry_time),
            commission=float(self.commission),
            exit_time=self.exit_time,
            exit_price=self.exit_price,
            gross_pnl=self.gross_pnl,
            realized_pnl=self.realized_pnl,
            exit_reason=self.exit_reason,
            parent_id=self.parent_id,
            tags=tuple(self.tags),
            note=self.note,
            playbook=self.playbook,
        )

    def to_record(self) -> dict[str, Any]:
        return self.to_view().to_dict()

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "_OrderState":
        def _opt_float(key: str) -> float | None:
            value = record.get(key)
            return None if value in (None, "") else float(value)

        def _opt_int(key: str) -> int | None:
            value = record.get(key)
            return None if value in (None, "") else int(value)

        return cls(
            order_id=str(record["order_id"]),
            kind=OrderKind.from_value(record["kind"]),
            entry_price=float(record["entry_price"]),
            lot_size=float(record["lot_size"]),
            entry_time=int(record["entry_time"]),
            commission=float(record.get("commission") or 0.0),
            stop_loss=_opt_float("stop_loss"),
            take_profit=_opt_float("take_profit"),
            status=OrderStatus(str(record.get("status") or OrderStatus.PENDING.value).upper()),
            exit_time=_opt_int("exit_time"),
            exit_price=_opt_float("exit_price"),
            gross_pnl=_opt_float("gross_pnl"),
            realized_pnl=_opt_float("realized_pnl"),
            exit_reason=record.get("exit_reason"),
            parent_id=record.get("parent_id"),
            tags=[str(item) for item in (record.get("tags") or [])],
            note=record.get("note"),
            playbook=record.get("playbook"),
        )


class TradingEngine:
    """
    Owns the order ledger and the account for one instrument.

    Orders move Pending -> Open -> Closed. Closed records are frozen. The
    account (unrealized P&L, used margin, equity, free margin) is derived from
    the ledger and the latest quote and recomputed on every tick and after
    every command.
    """

    def __init__(
        self,
        instrument: str,
        *,
        starting_balance: float = DEFAULT_STARTING_BALANCE,
        leverage: float = DEFAULT_LEVERAGE,
        spread_pips: float = DEFAULT_SPREAD_PIPS,
        commission_per_lot: float = DEFAULT_COMMISSION_PER_LOT,
        contract_size: float | None = None,
    ):
        if leverage <= 0:
            raise ValueError("leverage must be positive")
        if spread_pips < 0:
            raise ValueError("spread_pips must not be negative")
        if commission_per_lot < 0:
            raise ValueError("commission_per_lot must not be negative")
        self.instrument = normalize_instrument(instrument)
        self.pip_value = float(get_pip_value(self.instrument))
        self.contract_size = float(contract_size) if contract_size else float(get_contract_size(self.instrument))
        self.spread_pips = float(spread_pips)
        self.commission_per_lot = float(commission_per_lot)
        self.starting_balance = float(starting_balance)
        self._balance = float(starting_balance)
        self._leverage = float(leverage)
        self._orders: list[_OrderState] = []
        self._by_id: dict[str, _OrderState] = {}
        self._order_seq = 0
        self._quote: PriceQuote | None = None
        self._recent_events: list[EngineEvent] = []
        self._account = self._compute_account()

    # ---- read access ----

    @property
    def account(self) -> AccountView:
        return self._account

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def leverage(self) -> float:
        return self._leverage

    @property
    def quote(self) -> PriceQuote | None:
        return self._quote

    @property
    def recent_events(self) -> tuple[EngineEvent, ...]:
        return tuple(self._recent_events)

    def positions(self, status: OrderStatus | str | None = None) -> tuple[PositionView, ...]:
        if status is None:
            return tuple(order.to_view() for order in self._orders)
        wanted = OrderStatus(str(getattr(status, "value", status)).upper())
        return tuple(order.to_view() for order in self._orders if order.status == wanted)

    def get(self, order_id: str) -> PositionView:
        return self._require(order_id).to_view()

    def margin_for(self, lot_size: float, price: float) -> float:
        return float(lot_size) * self.contract_size * float(price) / self._leverage

    def quote_for(self, candle: Candle) -> PriceQuote:
        bid = float(candle.close)
        return PriceQuote(time=int(candle.time), bid=bid, ask=bid + self.spread_pips * self.pip_value)

    # ---- tick evaluation ----

    def on_tick(self, candle: Candle) -> tuple[EngineEvent, ...]:
        """Evaluate pending triggers and stop/target exits against ``candle``, then refresh the account."""
        self._recent_events.clear()
        quote = self.quote_for(candle)
        self._quote = quote

        for order in self._orders:
            if order.status == OrderStatus.PENDING:
                if self._pending_triggered(order, quote):
                    order.status = OrderStatus.OPEN
                    order.entry_time = quote.time
                    self._emit("ORDER_TRIGGERED", quote.time, order, price=order.entry_price)
                    logger.info(
                        "Triggered %s %s at %s",
                        order.order_id,
                        order.kind.value,
                        format_price(self.instrument, order.entry_price),
                    )
            elif order.status == OrderStatus.OPEN and order.entry_time < quote.time:
                # Orders filled on this candle are first checked for exits on the next one.
                exit_price, reason = self._exit_level(order, quote)
                if exit_price is not None:
                    self._close(order, exit_price, quote.time, reason)

        self._refresh_account()
        return tuple(self._recent_events)

    @staticmethod
    def _pending_triggered(order: _OrderState, quote: PriceQuote) -> bool:
        entry = order.entry_price
        if order.kind == OrderKind.BUY_LIMIT:
            return quote.ask <= entry
        if order.kind == OrderKind.SELL_LIMIT:
            return quote.bid >= entry
        if order.kind == OrderKind.BUY_STOP:
            return quote.ask >= entry
        if order.kind == OrderKind.SELL_STOP:
            return quote.bid <= entry
        return False

    @staticmethod
    def _exit_level(order: _OrderState, quote: PriceQuote) -> tuple[float | None, str | None]:
        # Stop loss wins when both levels are crossed in the same tick.
        if order.is_long:
            if order.stop_loss is not None and quote.bid <= order.stop_loss:
                return order.stop_loss, "SL"
            if order.take_profit is not None and quote.bid >= order.take_profit:
                return order.take_profit, "TP"
        else:
            if order.stop_loss is not None and quote.ask >= order.stop_loss:
                return order.stop_loss, "SL"
            if order.take_profit is not None and quote.ask <= order.take_profit:
                return order.take_profit, "TP"
        return None, None

    # ---- commands ----

    def place_order(
        self,
        kind: OrderKind | str,
        lot_size: float,
        price: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        *,
        tags: Iterable[str] | None = None,
        note: str | None = None,
        playbook: str | None = None,
    ) -> PositionView:
        """
        Insert a new order. Market kinds open immediately at ``price``; limit
        and stop kinds wait as Pending. Raises :class:`OrderRejected` without
        touching the ledger when the margin check fails.
        """
        order_kind = OrderKind.from_value(kind)
        lots = float(lot_size)
        entry = float(price)
        if self._quote is None:
            raise OrderRejected("no_market_quote")
        if lots <= 0:
            raise OrderRejected("invalid_lot_size")
        if entry <= 0:
            raise OrderRejected("invalid_price")

        required = self.margin_for(lots, entry)
        free_margin = self._account.free_margin
        if required > free_margin:
            logger.warning(
                "Rejected %s %.2f lots: margin %.2f exceeds free margin %.2f",
                order_kind.value,
                lots,
                required,
                free_margin,
            )
            raise OrderRejected("insufficient_margin", required_margin=required, free_margin=free_margin)

        order = _OrderState(
            order_id=self._next_order_id(),
            kind=order_kind,
            entry_price=entry,
            lot_size=lots,
            entry_time=self._quote.time,
            commission=self.commission_per_lot * lots,
            stop_loss=None if stop_loss is None else float(stop_loss),
            take_profit=None if take_profit is None else float(take_profit),
            status=OrderStatus.PENDING if order_kind.is_pending else OrderStatus.OPEN,
            tags=[str(item) for item in (tags or [])],
            note=note,
            playbook=playbook,
        )
        self._insert(order)
        self._emit("ORDER_ACCEPTED", order.entry_time, order, price=entry)
        logger.info(
            "Accepted %s %s %.2f lots @ %s (%s)",
            order.order_id,
            order_kind.value,
            lots,
            format_price(self.instrument, entry),
            order.status.value,
        )
        self._refresh_account()
        return order.to_view()

    def close_position(self, order_id: str) -> PositionView:
        order = self._require_open(order_id)
        quote = self._require_quote()
        self._close(order, self._exit_quote(order, quote), quote.time, "MANUAL")
        self._refresh_account()
        return order.to_view()

    def close_all(self) -> tuple[PositionView, ...]:
        closed = [self.close_position(order.order_id) for order in list(self._orders) if order.status == OrderStatus.OPEN]
        return tuple(closed)

    def partial_close(self, order_id: str) -> PositionView:
        """
        Close half of an open position at the current quote.

        The closed half becomes its own Closed record (``parent_id`` points to
        the original) with a pro-rated share of the commission. Returns that
        record. A position too small to split is closed in full.
        """
        order = self._require_open(order_id)
        quote = self._require_quote()
        close_lots = round(order.lot_size / 2.0, _LOT_STEP_DECIMALS)
        remain_lots = round(order.lot_size - close_lots, _LOT_STEP_DECIMALS)
        if close_lots <= 0 or remain_lots <= 0:
            return self.close_position(order_id)

        closed_commission = order.commission * close_lots / order.lot_size
        child = _OrderState(
            order_id=self._next_order_id(),
            kind=order.kind,
            entry_price=order.entry_price,
            lot_size=close_lots,
            entry_time=order.entry_time,
            commission=closed_commission,
            stop_loss=order.stop_loss,
            take_profit=order.take_profit,
            status=OrderStatus.OPEN,
            parent_id=order.order_id,
            tags=list(order.tags),
            note=order.note,
            playbook=order.playbook,
        )
        order.lot_size = remain_lots
        order.commission -= closed_commission
        self._insert(child)
        self._close(child, self._exit_quote(child, quote), quote.time, "PARTIAL")
        self._refresh_account()
        return child.to_view()

    def move_to_breakeven(self, order_id: str) -> PositionView:
        order = self._require_open(order_id)
        order.stop_loss = order.entry_price
        self._emit("STOP_MOVED", self._event_time(), order, price=order.stop_loss, reason="breakeven")
        return order.to_view()

    def annotate(
        self,
        order_id: str,
        *,
        tags: Iterable[str] | None = None,
        note: str | None = None,
        playbook: str | None = None,
    ) -> PositionView:
        order = self._require(order_id)
        if order.status == OrderStatus.CLOSED:
            raise InvalidOrderState(f"{order_id} is closed and can no longer change")
        if tags is not None:
            order.tags = [str(item).strip() for item in tags if str(item).strip()]
        if note is not None:
            order.note = note
        if playbook is not None:
            order.playbook = playbook
        return order.to_view()

    def reset_balance(self, amount: float) -> AccountView:
        if amount <= 0:
            raise ValueError("balance must be positive")
        self._balance = float(amount)
        self.starting_balance = float(amount)
        return self._refresh_account()

    def set_leverage(self, leverage: float) -> AccountView:
        if leverage <= 0:
            raise ValueError("leverage must be positive")
        self._leverage = float(leverage)
        return self._refresh_account()

    # ---- chart output ----

    def markers(self) -> list[ChartMarker]:
        markers: list[ChartMarker] = []
        for order in self._orders:
            if order.status == OrderStatus.PENDING:
                continue
            long_side = order.is_long
            if order.parent_id is None:
                markers.append(
                    ChartMarker(
                        time=order.entry_time,
                        order_id=order.order_id,
                        position="belowBar" if long_side else "aboveBar",
                        shape="arrowUp" if long_side else "arrowDown",
                        text=f"{order.kind.value.upper()} @ {format_price(self.instrument, order.entry_price)}",
                    )
                )
            if order.status == OrderStatus.CLOSED and order.exit_time is not None and order.exit_price is not None:
                pnl = float(order.realized_pnl or 0.0)
                markers.append(
                    ChartMarker(
                        time=order.exit_time,
                        order_id=order.order_id,
                        position="aboveBar" if long_side else "belowBar",
                        shape="circle",
                        text=f"EXIT @ {format_price(self.instrument, order.exit_price)} (${pnl:,.2f})",
                        profitable=pnl > 0,
                    )
                )
        markers.sort(key=lambda item: item.time)
        return markers

    # ---- persistence ----

    def to_state(self) -> dict[str, Any]:
        return {
            "instrument": self.instrument,
            "balance": float(self._balance),
            "starting_balance": float(self.starting_balance),
            "leverage": float(self._leverage),
            "order_seq": int(self._order_seq),
            "positions": [order.to_record() for order in self._orders],
            "account": self._account.to_dict(),
        }

    def restore_state(self, state: dict[str, Any]) -> None:
        """Replace the ledger with a serialized one; the account is re-derived, not trusted."""
        instrument = normalize_instrument(str(state.get("instrument") or self.instrument))
        if instrument != self.instrument:
            raise ValueError(f"Session state is for {instrument}, engine trades {self.instrument}")
        orders = [_OrderState.from_record(item) for item in (state.get("positions") or [])]
        self._orders = orders
        self._by_id = {order.order_id: order for order in orders}
        self._balance = float(state.get("balance", self._balance))
        self.starting_balance = float(state.get("starting_balance", self.starting_balance))
        leverage = float(state.get("leverage", self._leverage))
        if leverage > 0:
            self._leverage = leverage
        highest = max((self._seq_of(order.order_id) for order in orders), default=0)
        self._order_seq = max(int(state.get("order_seq", 0)), highest)
        self._refresh_account()

    # ---- internals ----

    def _close(self, order: _OrderState, exit_price: float, exit_time: int, reason: str) -> None:
        gross = self._raw_pnl(order, exit_price, order.lot_size)
        net = gross - order.commission
        self._balance += net
        order.status = OrderStatus.CLOSED
        order.exit_time = int(exit_time)
        order.exit_price = float(exit_price)
        order.gross_pnl = float(gross)
        order.realized_pnl = float(net)
        order.exit_reason = reason
        self._emit("POSITION_CLOSED", exit_time, order, price=exit_price, reason=reason)
        logger.info(
            "Closed %s (%s) at %s: net %.2f",
            order.order_id,
            reason,
            format_price(self.instrument, exit_price),
            net,
        )

    def _raw_pnl(self, order: _OrderState, exit_price: float, lots: float) -> float:
        units = float(lots) * self.contract_size
        if order.is_long:
            return (float(exit_price) - order.entry_price) * units
        return (order.entry_price - float(exit_price)) * units

    @staticmethod
    def _exit_quote(order: _OrderState, quote: PriceQuote) -> float:
        return quote.bid if order.is_long else quote.ask

    def _compute_account(self) -> AccountView:
        unrealized = 0.0
        used_margin = 0.0
        for order in self._orders:
            if order.status != OrderStatus.OPEN:
                continue
            if self._quote is not None:
                unrealized += self._raw_pnl(order, self._exit_quote(order, self._quote), order.lot_size)
            unrealized -= order.commission
            used_margin += self.margin_for(order.lot_size, order.entry_price)
        equity = self._balance + unrealized
        return AccountView(
            balance=float(self._balance),
            equity=float(equity),
            unrealized_pnl=float(unrealized),
            used_margin=float(used_margin),
            free_margin=float(equity - used_margin),
            leverage=float(self._leverage),
        )

    def _refresh_account(self) -> AccountView:
        self._account = self._compute_account()
        return self._account

    def _insert(self, order: _OrderState) -> None:
        self._orders.append(order)
        self._by_id[order.order_id] = order

    def _require(self, order_id: str) -> _OrderState:
        order = self._by_id.get(str(order_id))
        if order is None:
            raise UnknownOrder(str(order_id))
        return order

    def _require_open(self, order_id: str) -> _OrderState:
        order = self._require(order_id)
        if order.status != OrderStatus.OPEN:
            raise InvalidOrderState(f"{order_id} is {order.status.value}, expected OPEN")
        return order

    def _require_quote(self) -> PriceQuote:
        if self._quote is None:
            raise InvalidOrderState("No market quote yet")
        return self._quote

    def _event_time(self) -> int:
        return 0 if self._quote is None else self._quote.time

    def _emit(
        self,
        event_type: str,
        time_s: int,
        order: _OrderState,
        *,
        price: float | None = None,
        reason: str | None = None,
    ) -> None:
        self._recent_events.append(
            EngineEvent(
                event_type=event_type,
                time=int(time_s),
                order_id=order.order_id,
                price=price,
                lot_size=float(order.lot_size),
                reason=reason,
            )
        )

    def _next_order_id(self) -> str:
        self._order_seq += 1
        return f"O{self._order_seq:06d}"

    @staticmethod
    def _seq_of(order_id: str) -> int:
        digits = order_id.lstrip("O")
        return int(digits) if digits.isdigit() else 0

    def __repr__(self) -> str:
        quote_time = None if self._quote is None else iso_utc(self._quote.time)
        return f"TradingEngine({self.instrument}, orders={len(self._orders)}, at={quote_time})"
