"""Replay clock over a loaded minute-candle window, with pluggable tickers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from core.market_metadata import normalize_timeframe, timeframe_minutes

from .errors import HistoryLoadError
from .models import MINUTE_S, Candle, CandleSlice, floor_minute, iso_utc

logger = logging.getLogger(__name__)

MIN_SPEED = 1.0
MAX_SPEED = 100.0

TickCallback = Callable[[], None]
TimeListener = Callable[[int], None]
WindowListener = Callable[[CandleSlice], None]


class Ticker(Protocol):
    """Source of periodic playback ticks."""

    @property
    def running(self) -> bool:
        ...

    def start(self, interval_s: float, on_tick: TickCallback) -> None:
        ...

    def stop(self) -> None:
        ...


class ManualTicker:
    """Deterministic ticker: ticks fire only when ``fire`` is called."""

    def __init__(self) -> None:
        self.interval_s: float | None = None
        self._on_tick: TickCallback | None = None

    @property
    def running(self) -> bool:
        return self._on_tick is not None

    def start(self, interval_s: float, on_tick: TickCallback) -> None:
        self.interval_s = float(interval_s)
        self._on_tick = on_tick

    def stop(self) -> None:
        self._on_tick = None

    def fire(self, count: int = 1) -> int:
        """Deliver up to ``count`` ticks; returns how many were delivered before the ticker stopped."""
        fired = 0
        for _ in range(int(count)):
            callback = self._on_tick
            if callback is None:
                break
            callback()
            fired += 1
        return fired


class AsyncioTicker:
    """Ticker driven by an asyncio event loop; callbacks run on the loop thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._interval_s = 0.0
        self._on_tick: TickCallback | None = None

    @property
    def running(self) -> bool:
        return self._on_tick is not None

    def start(self, interval_s: float, on_tick: TickCallback) -> None:
        self.stop()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._interval_s = max(0.0, float(interval_s))
        self._on_tick = on_tick
        self._handle = self._loop.call_later(self._interval_s, self._fire)

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._on_tick = None

    def _fire(self) -> None:
        self._handle = None
        callback = self._on_tick
        if callback is None:
            return
        callback()
        # The callback may have stopped or restarted the ticker.
        if self._on_tick is callback and self._handle is None and self._loop is not None:
            self._handle = self._loop.call_later(self._interval_s, self._fire)


@dataclass(frozen=True)
class ReloadRequest:
    """A jump target outside the loaded window; the caller must fetch a new window."""

    seq: int
    instrument: str
    start_time: int
    window_days: int
    target_time: int

    def to_dict(self) -> dict[str, object]:
        return {
            "seq": self.seq,
            "instrument": self.instrument,
            "start_time": iso_utc(self.start_time),
            "window_days": self.window_days,
            "target_time": iso_utc(self.target_time),
        }


class ReplayClock:
    """
    Owns the simulated "now" over a window of minute candles.

    The cursor is always minute aligned and inside [first loaded, last loaded].
    Automatic playback advances one minute per tick, at ``speed`` ticks per
    second; manual steps move by whole bars of the active timeframe.
    """

    def __init__(
        self,
        candles: CandleSlice,
        ticker: Ticker,
        *,
        window_days: int,
        timeframe: str = "1h",
        speed: float = 1.0,
        start_time: int | None = None,
    ):
        if candles.rows == 0:
            raise ValueError("ReplayClock requires a non-empty candle window")
        self._ticker = ticker
        self._candles = candles
        self.window_days = int(window_days)
        self._timeframe = normalize_timeframe(timeframe)
        self._speed = self._clamp_speed(speed)
        self._playing = False
        self._current_time = self._clamp_time(candles.first_time if start_time is None else start_time)
        self._reload_seq = 0
        self._pending_reload: ReloadRequest | None = None
        self._time_listeners: list[TimeListener] = []
        self._window_listeners: list[WindowListener] = []

    # ---- read access ----

    @property
    def candles(self) -> CandleSlice:
        return self._candles

    @property
    def instrument(self) -> str:
        return self._candles.instrument

    @property
    def current_time(self) -> int:
        return self._current_time

    @property
    def first_loaded(self) -> int:
        return int(self._candles.time[0])

    @property
    def last_loaded(self) -> int:
        return int(self._candles.time[-1])

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def speed(self) -> float:
        return self._speed

    @property
    def interval_s(self) -> float:
        return 1.0 / self._speed

    @property
    def timeframe(self) -> str:
        return self._timeframe

    @property
    def pending_reload(self) -> ReloadRequest | None:
        return self._pending_reload

    def current_candle(self) -> Candle:
        candle = self._candles.candle_at(self._current_time)
        if candle is None:
            raise RuntimeError("Replay cursor is before the loaded window")
        return candle

    def subscribe(self, listener: TimeListener) -> None:
        self._time_listeners.append(listener)

    def subscribe_window(self, listener: WindowListener) -> None:
        self._window_listeners.append(listener)

    # ---- playback ----

    def set_timeframe(self, timeframe: str) -> None:
        self._timeframe = normalize_timeframe(timeframe)

    def set_speed(self, speed: float) -> None:
        self._speed = self._clamp_speed(speed)
        if self._playing:
            self._ticker.start(self.interval_s, self._on_tick)

    def set_playing(self, playing: bool) -> None:
        if playing == self._playing:
            return
        self._playing = bool(playing)
        if self._playing:
            self._ticker.start(self.interval_s, self._on_tick)
            logger.info("Playback started at %sx from %s", self._speed, iso_utc(self._current_time))
        else:
            self._ticker.stop()
            logger.info("Playback paused at %s", iso_utc(self._current_time))

    def toggle_playing(self) -> bool:
        self.set_playing(not self._playing)
        return self._playing

    def advance(self, steps: int) -> int:
        """Move the cursor by ``steps`` bars of the active timeframe (negative steps go back)."""
        delta = int(steps) * timeframe_minutes(self._timeframe) * MINUTE_S
        if delta == 0:
            return self._current_time
        self._move_to(self._current_time + delta)
        return self._current_time

    def jump_to(self, timestamp: int) -> Optional[ReloadRequest]:
        """
        Put the cursor at ``timestamp`` (floored to the minute).

        Inside the loaded window the move happens immediately and ``None`` is
        returned. Outside it, a :class:`ReloadRequest` is returned and the
        cursor stays put until :meth:`complete_reload` applies a new window.
        Each new request supersedes any earlier one.
        """
        target = floor_minute(timestamp)
        if self.first_loaded <= target <= self.last_loaded:
            self._pending_reload = None
            self._move_to(target)
            return None

        self._reload_seq += 1
        request = ReloadRequest(
            seq=self._reload_seq,
            instrument=self.instrument,
            start_time=target,
            window_days=self.window_days,
            target_time=target,
        )
        self._pending_reload = request
        logger.info("Jump to %s is outside the loaded window; reload #%s requested", iso_utc(target), request.seq)
        return request

    def complete_reload(self, request: ReloadRequest, candles: CandleSlice) -> bool:
        """Apply a fetched window. Stale requests are dropped and return False."""
        if self._pending_reload is None or request.seq != self._pending_reload.seq:
            logger.info("Dropping stale reload #%s", request.seq)
            return False
        if candles.rows == 0 or not candles.contains_time(request.target_time):
            self._pending_reload = None
            raise HistoryLoadError(f"Reloaded window does not cover {iso_utc(request.target_time)}")
        self._pending_reload = None
        self.load_window(candles, request.target_time)
        return True

    def fail_reload(self, request: ReloadRequest) -> None:
        if self._pending_reload is not None and request.seq == self._pending_reload.seq:
            self._pending_reload = None
            logger.warning("Reload #%s failed; cursor stays at %s", request.seq, iso_utc(self._current_time))

    def load_window(self, candles: CandleSlice, start_time: int | None = None) -> None:
        if candles.rows == 0:
            raise HistoryLoadError("Cannot load an empty candle window")
        self._candles = candles
        for listener in list(self._window_listeners):
            listener(candles)
        self._current_time = -1
        self._move_to(candles.first_time if start_time is None else start_time)

    # ---- internals ----

    def _on_tick(self) -> None:
        next_time = self._current_time + MINUTE_S
        if next_time >= self.last_loaded:
            self._move_to(self.last_loaded)
            self.set_playing(False)
            logger.info("Reached end of loaded data; playback stopped")
            return
        self._move_to(next_time)

    def _move_to(self, target: int) -> None:
        clamped = self._clamp_time(target)
        if clamped == self._current_time:
            return
        self._current_time = clamped
        if self._playing and clamped >= self.last_loaded:
            self.set_playing(False)
        for listener in list(self._time_listeners):
            listener(clamped)

    def _clamp_time(self, value: int) -> int:
        aligned = floor_minute(value)
        return min(max(aligned, self.first_loaded), self.last_loaded)

    @staticmethod
    def _clamp_speed(value: float) -> float:
        return min(max(float(value), MIN_SPEED), MAX_SPEED)
