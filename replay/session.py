"""Composition root: one replay session wiring clock, charts, broker and drawings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np

from core.market_metadata import get_pip_value, normalize_instrument, normalize_timeframe, round_price

from .annotations import AnnotationLayer, CoordinateMapper, Drawing, LinearCoordinateMapper
from .calendar import CalendarEvent, generate_events, visible_events
from .clock import ManualTicker, ReloadRequest, ReplayClock, Ticker
from .config import MAX_CHARTS, ReplayConfig
from .errors import HistoryLoadError
from .feed import CandleSource, SyntheticFeed
from .models import AccountView, CandleSlice, ChartMarker, OrderKind, PositionView, datetime_to_s, iso_utc, parse_datetime
from .resampler import ResampleCache
from .stats import build_performance_summary
from .store import SessionStore, drawings_key, session_key
from .trading import TradingEngine

logger = logging.getLogger(__name__)

STATE_VERSION = 1
MIN_LOT_SIZE = 0.01

KEY_BINDINGS: dict[str, str] = {
    "Space": "toggle_play",
    "ArrowRight": "step_forward",
    "ArrowLeft": "step_back",
    "KeyB": "buy",
    "KeyS": "sell",
    "KeyC": "close_all",
}


@dataclass
class EngineState:
    """Serializable snapshot of a session's ledger, account and cursor."""

    instrument: str
    current_time: int
    timeframe: str
    speed: float
    balance: float
    starting_balance: float
    leverage: float
    order_seq: int = 0
    positions: list[dict[str, Any]] = field(default_factory=list)
    account: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def capture(cls, engine: TradingEngine, clock: ReplayClock) -> "EngineState":
        ledger = engine.to_state()
        return cls(
            instrument=engine.instrument,
            current_time=clock.current_time,
            timeframe=clock.timeframe,
            speed=clock.speed,
            balance=float(ledger["balance"]),
            starting_balance=float(ledger["starting_balance"]),
            leverage=float(ledger["leverage"]),
            order_seq=int(ledger["order_seq"]),
            positions=list(ledger["positions"]),
            account=dict(ledger["account"]),
        )

    def ledger(self) -> dict[str, Any]:
        return {
            "instrument": self.instrument,
            "balance": self.balance,
            "starting_balance": self.starting_balance,
            "leverage": self.leverage,
            "order_seq": self.order_seq,
            "positions": self.positions,
        }

    def serialize(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "instrument": self.instrument,
            "current_time": iso_utc(self.current_time),
            "timeframe": self.timeframe,
            "speed": float(self.speed),
            "balance": float(self.balance),
            "starting_balance": float(self.starting_balance),
            "leverage": float(self.leverage),
            "order_seq": int(self.order_seq),
            "positions": list(self.positions),
            "account": dict(self.account),
        }

    @classmethod
    def deserialize(cls, payload: dict[str, Any]) -> "EngineState":
        if not isinstance(payload, dict):
            raise ValueError("Session state must be a JSON object")
        version = int(payload.get("version", STATE_VERSION))
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported session state version: {version}")
        current = parse_datetime(payload.get("current_time"))
        if current is None:
            raise ValueError("current_time is required")
        positions = payload.get("positions") or []
        if not isinstance(positions, list):
            raise ValueError("positions must be a list")
        return cls(
            instrument=normalize_instrument(str(payload.get("instrument") or "")),
            current_time=datetime_to_s(current),
            timeframe=normalize_timeframe(str(payload.get("timeframe") or "1h")),
            speed=float(payload.get("speed", 1.0)),
            balance=float(payload["balance"]),
            starting_balance=float(payload.get("starting_balance", payload["balance"])),
            leverage=float(payload.get("leverage", 100.0)),
            order_seq=int(payload.get("order_seq", 0)),
            positions=[dict(item) for item in positions],
            account=dict(payload.get("account") or {}),
        )


@dataclass
class OrderTicket:
    """
    Order entry form state: fixed lots or risk-percent sizing, with stop and
    target expressed in pips from the entry price. Zero pips means no level.
    """

    kind: OrderKind = OrderKind.BUY
    sizing: str = "risk"
    lot_size: float = 1.0
    risk_percent: float = 1.0
    sl_pips: float = 20.0
    tp_pips: float = 40.0
    pending_price: float | None = None

    def __post_init__(self) -> None:
        self.kind = OrderKind.from_value(self.kind)
        if self.sizing not in ("lots", "risk"):
            raise ValueError("sizing must be 'lots' or 'risk'")

    def lots_for(self, balance: float, pip_size: float, contract_size: float) -> float:
        if self.sizing == "lots" or self.sl_pips <= 0:
            return round(float(self.lot_size), 2)
        risk_amount = float(balance) * self.risk_percent / 100.0
        pip_value_per_lot = pip_size * contract_size
        lots = round(risk_amount / (self.sl_pips * pip_value_per_lot), 2)
        return max(lots, MIN_LOT_SIZE)

    def levels_for(self, kind: OrderKind, entry: float, pip_size: float) -> tuple[float | None, float | None]:
        direction = 1.0 if kind.is_long else -1.0
        stop = entry - direction * self.sl_pips * pip_size if self.sl_pips > 0 else None
        target = entry + direction * self.tp_pips * pip_size if self.tp_pips > 0 else None
        return stop, target


@dataclass
class ChartPane:
    chart_id: int
    timeframe: str

    def to_dict(self) -> dict[str, Any]:
        return {"chart_id": self.chart_id, "timeframe": self.timeframe}


class ReplaySession:
    """
    Owns one clock, one trading engine per instrument, the chart panes and
    the annotation layer, and routes every UI command to the component that
    owns the affected state.
    """

    def __init__(
        self,
        config: ReplayConfig,
        *,
        feed: CandleSource | None = None,
        ticker: Ticker | None = None,
        store: SessionStore | None = None,
        mapper: CoordinateMapper | None = None,
    ):
        self.config = config
        self.feed = feed or SyntheticFeed(seed=config.seed)
        self.ticker = ticker or ManualTicker()
        self.store = store or SessionStore(config.cache_dir)
        self.ticket = OrderTicket()

        candles = self._load(config.instrument, datetime_to_s(config.start_utc))
        self.cache = ResampleCache(candles)
        self.clock = ReplayClock(
            candles,
            self.ticker,
            window_days=config.window_days,
            timeframe=config.timeframe,
            speed=config.speed,
            start_time=self._warmup_time(candles),
        )
        self.engine = self._new_engine(candles.instrument)
        self.charts = [ChartPane(chart_id=idx + 1, timeframe=tf) for idx, tf in enumerate(config.charts)]
        self.annotations = AnnotationLayer(
            candles.instrument,
            mapper or self._default_mapper(candles),
            hit_tolerance_px=config.hit_tolerance_px,
        )
        self.calendar_events: list[CalendarEvent] = generate_events(
            datetime_to_s(config.start_utc),
            seed=config.seed,
        )

        self.clock.subscribe(self._on_time)
        self.clock.subscribe_window(self.cache.reset)
        self.engine.on_tick(self.clock.current_candle())

    # ---- read access ----

    @property
    def instrument(self) -> str:
        return self.engine.instrument

    @property
    def current_time(self) -> int:
        return self.clock.current_time

    @property
    def is_playing(self) -> bool:
        return self.clock.is_playing

    @property
    def account(self) -> AccountView:
        return self.engine.account

    def positions(self) -> tuple[PositionView, ...]:
        return self.engine.positions()

    def markers(self) -> list[ChartMarker]:
        return self.engine.markers()

    def drawings(self) -> tuple[Drawing, ...]:
        return self.annotations.drawings()

    def news(self) -> list[CalendarEvent]:
        return visible_events(self.calendar_events, self.clock.current_time)

    def visible_series(self, chart_id: int | None = None) -> CandleSlice:
        pane = self._pane(chart_id)
        return self.cache.visible(pane.timeframe, self.clock.current_time)

    def performance_summary(self) -> dict[str, Any]:
        return build_performance_summary(self.engine.positions(), self.engine.account)

    def snapshot(self) -> dict[str, Any]:
        quote = self.engine.quote
        return {
            "instrument": self.instrument,
            "current_time": iso_utc(self.clock.current_time),
            "playing": self.clock.is_playing,
            "speed": self.clock.speed,
            "timeframe": self.clock.timeframe,
            "quote": None if quote is None else quote.to_dict(),
            "account": self.engine.account.to_dict(),
            "positions": [item.to_dict() for item in self.engine.positions()],
            "events": [event.to_dict() for event in self.engine.recent_events],
            "drawings": self.annotations.to_dict()["drawings"],
            "charts": [pane.to_dict() for pane in self.charts],
        }

    # ---- playback ----

    def play(self) -> None:
        self.clock.set_playing(True)

    def pause(self) -> None:
        self.clock.set_playing(False)

    def toggle_play(self) -> bool:
        return self.clock.toggle_playing()

    def step_forward(self, steps: int = 1) -> int:
        return self.clock.advance(abs(int(steps)))

    def step_back(self, steps: int = 1) -> int:
        return self.clock.advance(-abs(int(steps)))

    def set_speed(self, speed: float) -> None:
        self.clock.set_speed(speed)

    def set_timeframe(self, timeframe: str) -> None:
        """Change the primary chart's timeframe, which also sets the step size."""
        self.clock.set_timeframe(timeframe)
        self.charts[0].timeframe = self.clock.timeframe

    def jump_to(self, timestamp: Any) -> ReloadRequest | None:
        """
        Move the cursor to ``timestamp``. A target outside the loaded window is
        fetched from the feed and applied; a failed fetch leaves the cursor
        where it was and re-raises :class:`HistoryLoadError`.
        """
        if isinstance(timestamp, (int, np.integer)):
            target = int(timestamp)
        else:
            parsed = parse_datetime(timestamp)
            if parsed is None:
                raise ValueError("A jump target is required")
            target = datetime_to_s(parsed)
        request = self.clock.jump_to(target)
        if request is not None:
            self.fulfil_reload(request)
        return request

    def fulfil_reload(self, request: ReloadRequest) -> bool:
        try:
            candles = self.feed.load(request.instrument, request.start_time, request.window_days)
        except HistoryLoadError:
            self.clock.fail_reload(request)
            raise
        return self.clock.complete_reload(request, candles)

    # ---- charts ----

    def add_chart(self, timeframe: str = "5m") -> ChartPane:
        if len(self.charts) >= MAX_CHARTS:
            raise ValueError(f"At most {MAX_CHARTS} charts are supported")
        pane = ChartPane(chart_id=max(item.chart_id for item in self.charts) + 1, timeframe=normalize_timeframe(timeframe))
        self.charts.append(pane)
        return pane

    def remove_chart(self, chart_id: int) -> bool:
        if len(self.charts) <= 1:
            return False
        before = len(self.charts)
        self.charts = [pane for pane in self.charts if pane.chart_id != chart_id]
        return len(self.charts) != before

    def set_chart_timeframe(self, chart_id: int, timeframe: str) -> None:
        pane = self._pane(chart_id)
        if pane is self.charts[0]:
            self.set_timeframe(timeframe)
        else:
            pane.timeframe = normalize_timeframe(timeframe)

    def fit_viewport(self, width: float, height: float, *, bars: int = 100, chart_id: int | None = None) -> LinearCoordinateMapper:
        """Point the annotation layer at a viewport showing the last ``bars`` visible bars."""
        mapper = self._viewport_for(self.visible_series(chart_id), width, height, bars)
        self.annotations.set_mapper(mapper)
        return mapper

    # ---- trading ----

    def place_order(
        self,
        kind: OrderKind | str | None = None,
        *,
        price: float | None = None,
        lots: float | None = None,
        tags: list[str] | None = None,
        note: str | None = None,
        playbook: str | None = None,
    ) -> PositionView:
        """
        Place an order sized and bracketed by the ticket. Market orders fill at
        the current ask (buys) or bid (sells); pending orders need a price,
        taken from ``price`` or the ticket's pending price.
        """
        order_kind = OrderKind.from_value(kind) if kind is not None else self.ticket.kind
        quote = self.engine.quote
        if quote is None:
            quote = self.engine.quote_for(self.clock.current_candle())
        if order_kind.is_pending:
            entry = price if price is not None else self.ticket.pending_price
            if entry is None:
                raise ValueError(f"{order_kind.value} requires a price")
        else:
            entry = price if price is not None else (quote.ask if order_kind.is_long else quote.bid)
        entry = float(entry)

        pip_size = get_pip_value(self.instrument)
        size = float(lots) if lots is not None else self.ticket.lots_for(
            self.engine.balance, pip_size, self.engine.contract_size
        )
        stop, target = self.ticket.levels_for(order_kind, entry, pip_size)
        return self.engine.place_order(
            order_kind,
            size,
            entry,
            None if stop is None else round_price(self.instrument, stop),
            None if target is None else round_price(self.instrument, target),
            tags=tags,
            note=note,
            playbook=playbook,
        )

    def close_position(self, order_id: str) -> PositionView:
        return self.engine.close_position(order_id)

    def close_all(self) -> tuple[PositionView, ...]:
        return self.engine.close_all()

    def partial_close(self, order_id: str) -> PositionView:
        return self.engine.partial_close(order_id)

    def move_to_breakeven(self, order_id: str) -> PositionView:
        return self.engine.move_to_breakeven(order_id)

    # ---- keyboard ----

    def handle_key(self, code: str) -> bool:
        """Run the command bound to a key code. Keys are ignored mid-draw or mid-drag."""
        action = KEY_BINDINGS.get(code)
        if action is None:
            return False
        if self.annotations.preview is not None or self.annotations.dragging is not None:
            return False
        handlers: dict[str, Callable[[], Any]] = {
            "toggle_play": self.toggle_play,
            "step_forward": self.step_forward,
            "step_back": self.step_back,
            "buy": lambda: self.place_order(OrderKind.BUY),
            "sell": lambda: self.place_order(OrderKind.SELL),
            "close_all": self.close_all,
        }
        handlers[action]()
        return True

    # ---- instruments and persistence ----

    def switch_instrument(self, instrument: str) -> None:
        """Save the current instrument's state and load another from the configured start."""
        normalized = normalize_instrument(instrument)
        if normalized == self.instrument:
            return
        self.pause()
        self.save()
        candles = self._load(normalized, datetime_to_s(self.config.start_utc))
        self.engine = self._new_engine(normalized)
        self.annotations.set_instrument(normalized)
        self.clock.load_window(candles, self._warmup_time(candles))
        self.annotations.set_mapper(self._default_mapper(candles))
        self.restore()
        logger.info("Switched to %s", normalized)

    def save(self) -> None:
        state = EngineState.capture(self.engine, self.clock)
        self.store.set(session_key(self.instrument), state.serialize())
        self.store.set(drawings_key(self.instrument), self.annotations.to_dict())

    def restore(self) -> bool:
        """Load cached ledger and drawings for the current instrument. Returns False when nothing usable was cached."""
        drawings = self.store.get(drawings_key(self.instrument))
        if drawings is not None:
            self.annotations.load(drawings)

        payload = self.store.get(session_key(self.instrument))
        if payload is None:
            return False
        try:
            state = EngineState.deserialize(payload)
            self.engine.restore_state(state.ledger())
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring cached session for %s: %s", self.instrument, exc)
            return False

        self.clock.set_timeframe(state.timeframe)
        self.charts[0].timeframe = self.clock.timeframe
        self.clock.set_speed(state.speed)
        before = self.clock.current_time
        try:
            self.jump_to(state.current_time)
        except HistoryLoadError as exc:
            logger.warning("Could not restore cursor %s: %s", iso_utc(state.current_time), exc)
        if self.clock.current_time == before:
            # A move already ticked the engine through the time listener.
            self.engine.on_tick(self.clock.current_candle())
        logger.info("Restored %s orders for %s", len(state.positions), self.instrument)
        return True

    def reset(self) -> None:
        """Drop the cached ledger for the current instrument and start a fresh account."""
        self.store.delete(session_key(self.instrument))
        self.engine = self._new_engine(self.instrument)
        self.engine.on_tick(self.clock.current_candle())

    # ---- internals ----

    def _on_time(self, _time_s: int) -> None:
        self.engine.on_tick(self.clock.current_candle())

    def _load(self, instrument: str, start_s: int) -> CandleSlice:
        candles = self.feed.load(instrument, start_s, self.config.window_days)
        if candles.rows == 0:
            raise HistoryLoadError(f"No candles for {instrument} from {iso_utc(start_s)}")
        return candles

    def _warmup_time(self, candles: CandleSlice) -> int:
        return int(candles.time[min(self.config.warmup_bars, candles.rows - 1)])

    def _new_engine(self, instrument: str) -> TradingEngine:
        return TradingEngine(
            instrument,
            starting_balance=self.config.starting_balance,
            leverage=self.config.leverage,
            spread_pips=self.config.spread_pips,
            commission_per_lot=self.config.commission_per_lot,
            contract_size=self.config.contract_size,
        )

    def _pane(self, chart_id: int | None) -> ChartPane:
        if chart_id is None:
            return self.charts[0]
        for pane in self.charts:
            if pane.chart_id == chart_id:
                return pane
        raise KeyError(f"Unknown chart id: {chart_id}")

    def _default_mapper(self, candles: CandleSlice) -> LinearCoordinateMapper:
        visible = self.cache.visible(self.clock.timeframe, self.clock.current_time) if self.cache.candles is candles else candles
        return self._viewport_for(visible, 1000.0, 600.0, 100)

    @staticmethod
    def _viewport_for(series: CandleSlice, width: float, height: float, bars: int) -> LinearCoordinateMapper:
        tail = series.slice_by_index(max(0, series.rows - int(bars)), series.rows)
        if tail.rows == 0:
            raise ValueError("Cannot fit a viewport to an empty series")
        high = float(np.max(tail.high))
        low = float(np.min(tail.low))
        pad = (high - low) * 0.1 or abs(high) * 0.001 or 1.0
        left = int(tail.time[0])
        right = int(tail.time[-1])
        if right <= left:
            right = left + 60
        return LinearCoordinateMapper(
            time_left=left,
            time_right=right,
            price_top=high + pad,
            price_bottom=low - pad,
            width=float(width),
            height=float(height),
        )
