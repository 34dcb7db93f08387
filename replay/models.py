"""Candle containers, order enums and read-only views shared across the sandbox."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

MINUTE_S = 60
_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)


def iso_utc(value: Any) -> Optional[str]:
    """Serialize datetime-like values (or epoch seconds) to ISO8601 UTC string when possible."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (int, np.integer)):
        return pd.Timestamp(int(value), unit="s", tz="UTC").isoformat().replace("+00:00", "Z")
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat().replace("+00:00", "Z")
        except TypeError:
            return str(value)
    return str(value)


def parse_datetime(value: Any | None) -> datetime | None:
    if value in (None, "", "None"):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    normalized = str(value).replace("Z", "+00:00")
    dt_value = datetime.fromisoformat(normalized)
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


def datetime_to_s(value: datetime) -> int:
    dt_value = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
    delta = dt_value - _EPOCH_UTC
    return int(delta.days * 86400 + delta.seconds)


def floor_minute(value: int) -> int:
    return (int(value) // MINUTE_S) * MINUTE_S


@dataclass(frozen=True)
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": int(self.time),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
        }


@dataclass(frozen=True)
class CandleSlice:
    """Immutable columnar candle container (epoch seconds, minute aligned)."""

    instrument: str
    time: np.ndarray
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray

    @classmethod
    def empty(cls, instrument: str) -> "CandleSlice":
        empty_float = np.asarray([], dtype=np.float64)
        return cls(
            instrument=instrument,
            time=np.asarray([], dtype=np.int64),
            open=empty_float,
            high=empty_float,
            low=empty_float,
            close=empty_float,
        )

    @classmethod
    def from_candles(cls, instrument: str, candles: Iterable[Candle]) -> "CandleSlice":
        items = list(candles)
        if not items:
            return cls.empty(instrument)
        return cls(
            instrument=instrument,
            time=np.asarray([item.time for item in items], dtype=np.int64),
            open=np.asarray([item.open for item in items], dtype=np.float64),
            high=np.asarray([item.high for item in items], dtype=np.float64),
            low=np.asarray([item.low for item in items], dtype=np.float64),
            close=np.asarray([item.close for item in items], dtype=np.float64),
        )

    @property
    def rows(self) -> int:
        return int(self.time.size)

    @property
    def first_time(self) -> int | None:
        return None if self.rows == 0 else int(self.time[0])

    @property
    def last_time(self) -> int | None:
        return None if self.rows == 0 else int(self.time[-1])

    def contains_time(self, time_s: int) -> bool:
        if self.rows == 0:
            return False
        return int(self.time[0]) <= int(time_s) <= int(self.time[-1])

    def index_at_or_before(self, time_s: int) -> int:
        """Row index of the last candle whose time is <= time_s, or -1."""
        return int(np.searchsorted(self.time, int(time_s), side="right")) - 1

    def candle(self, row_index: int) -> Candle:
        return Candle(
            time=int(self.time[row_index]),
            open=float(self.open[row_index]),
            high=float(self.high[row_index]),
            low=float(self.low[row_index]),
            close=float(self.close[row_index]),
        )

    def candle_at(self, time_s: int) -> Candle | None:
        idx = self.index_at_or_before(time_s)
        if idx < 0:
            return None
        return self.candle(idx)

    def slice_by_index(self, start_idx: int, end_idx: int) -> CandleSlice:
        start = max(0, int(start_idx))
        end = min(self.rows, int(end_idx))
        if end < start:
            end = start
        return CandleSlice(
            instrument=self.instrument,
            time=self.time[start:end],
            open=self.open[start:end],
            high=self.high[start:end],
            low=self.low[start:end],
            close=self.close[start:end],
        )

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "time": pd.to_datetime(self.time, unit="s", utc=True),
                "open": self.open,
                "high": self.high,
                "low": self.low,
                "close": self.close,
            }
        )


class OrderKind(str, Enum):
    BUY = "buy"
    SELL = "sell"
    BUY_LIMIT = "buy_limit"
    SELL_LIMIT = "sell_limit"
    BUY_STOP = "buy_stop"
    SELL_STOP = "sell_stop"

    @classmethod
    def from_value(cls, value: Any) -> "OrderKind":
        try:
            return cls(str(getattr(value, "value", value)).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported order kind: {value}") from exc

    @property
    def is_long(self) -> bool:
        return self.value.startswith("buy")

    @property
    def is_pending(self) -> bool:
        return self not in (OrderKind.BUY, OrderKind.SELL)

    @property
    def side(self) -> str:
        return "LONG" if self.is_long else "SHORT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class PriceQuote:
    time: int
    bid: float
    ask: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": iso_utc(self.time),
            "bid": float(self.bid),
            "ask": float(self.ask),
        }


@dataclass(frozen=True)
class AccountView:
    balance: float
    equity: float
    unrealized_pnl: float
    used_margin: float
    free_margin: float
    leverage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "balance": float(self.balance),
            "equity": float(self.equity),
            "unrealized_pnl": float(self.unrealized_pnl),
            "used_margin": float(self.used_margin),
            "free_margin": float(self.free_margin),
            "leverage": float(self.leverage),
        }


@dataclass(frozen=True)
class PositionView:
    order_id: str
    kind: str
    side: str
    status: str
    entry_price: float
    lot_size: float
    stop_loss: float | None
    take_profit: float | None
    entry_time: int
    commission: float
    exit_time: int | None = None
    exit_price: float | None = None
    gross_pnl: float | None = None
    realized_pnl: float | None = None
    exit_reason: str | None = None
    parent_id: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)
    note: str | None = None
    playbook: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "kind": self.kind,
            "side": self.side,
            "status": self.status,
            "entry_price": float(self.entry_price),
            "lot_size": float(self.lot_size),
            "stop_loss": None if self.stop_loss is None else float(self.stop_loss),
            "take_profit": None if self.take_profit is None else float(self.take_profit),
            "entry_time": int(self.entry_time),
            "commission": float(self.commission),
            "exit_time": None if self.exit_time is None else int(self.exit_time),
            "exit_price": None if self.exit_price is None else float(self.exit_price),
            "gross_pnl": None if self.gross_pnl is None else float(self.gross_pnl),
            "realized_pnl": None if self.realized_pnl is None else float(self.realized_pnl),
            "exit_reason": self.exit_reason,
            "parent_id": self.parent_id,
            "tags": list(self.tags),
            "note": self.note,
            "playbook": self.playbook,
        }


@dataclass(frozen=True)
class EngineEvent:
    event_type: str
    time: int
    order_id: str | None = None
    price: float | None = None
    lot_size: float | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "time": iso_utc(self.time),
            "order_id": self.order_id,
            "price": None if self.price is None else float(self.price),
            "lot_size": None if self.lot_size is None else float(self.lot_size),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ChartMarker:
    time: int
    order_id: str
    position: str  # "belowBar" | "aboveBar"
    shape: str  # "arrowUp" | "arrowDown" | "circle"
    text: str
    profitable: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": int(self.time),
            "order_id": self.order_id,
            "position": self.position,
            "shape": self.shape,
            "text": self.text,
            "profitable": self.profitable,
        }
