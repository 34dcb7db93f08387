"""Synthetic minute-candle feed standing in for live market-data acquisition."""

from __future__ import annotations

import hashlib
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Protocol

import numpy as np

from core.market_metadata import get_instrument_class, normalize_instrument

from .errors import HistoryLoadError
from .models import MINUTE_S, CandleSlice, datetime_to_s, floor_minute

logger = logging.getLogger(__name__)

_MINUTES_PER_DAY = 24 * 60
_REGIME_MINUTES = 240
_MOMENTUM_DECAY = 0.98
_MAX_WINDOW_DAYS = 3660
_DEFAULT_CACHE_WINDOWS = 8


class CandleSource(Protocol):
    def load(self, instrument: str, start_utc: datetime | int, window_days: int) -> CandleSlice:
        """Return an ordered, gapless run of one-minute candles."""
        ...


def _base_price(instrument: str) -> float:
    instrument_class = get_instrument_class(instrument)
    if instrument.startswith("XAU_"):
        return 2000.0
    if instrument_class == "JPY":
        return 140.0
    if instrument_class == "METAL":
        return 25.0
    if instrument_class == "ENERGY":
        return 75.0
    if instrument_class == "CRYPTO":
        return 30_000.0
    if instrument_class == "INDEX":
        return 15_000.0
    return 1.08


def _base_volatility(instrument: str) -> float:
    instrument_class = get_instrument_class(instrument)
    if instrument.startswith("XAU_"):
        return 0.4
    if instrument_class == "JPY":
        return 0.05
    if instrument_class == "METAL":
        return 0.02
    if instrument_class == "ENERGY":
        return 0.03
    if instrument_class == "CRYPTO":
        return 15.0
    if instrument_class == "INDEX":
        return 5.0
    return 0.00015


def _session_multiplier(times_s: np.ndarray) -> np.ndarray:
    hours = (times_s // 3600) % 24
    multiplier = np.full(times_s.shape, 0.5, dtype=np.float64)
    multiplier[(hours >= 8) & (hours < 17)] = 1.8  # London
    multiplier[(hours >= 13) & (hours < 21)] = 2.2  # New York
    return multiplier


def _window_seed(instrument: str, start_s: int, seed: int | None) -> int:
    key = f"{instrument}|{start_s}|{'' if seed is None else int(seed)}"
    return int(hashlib.sha1(key.encode("utf-8")).hexdigest()[:16], 16)


def generate_candles(instrument: str, start_s: int, window_days: int, seed: int | None = None) -> CandleSlice:
    """
    Build ``window_days`` of one-minute candles starting at ``start_s``.

    Volatility follows the trading session of each minute. Every 240 minutes a
    new drift and breakout momentum are drawn; momentum then decays by 2% per
    minute. Output is deterministic for a given (instrument, start, seed).
    """
    count = int(window_days) * _MINUTES_PER_DAY
    rng = np.random.default_rng(_window_seed(instrument, start_s, seed))

    index = np.arange(count, dtype=np.int64)
    times = int(start_s) + index * MINUTE_S
    volatility = _base_volatility(instrument) * _session_multiplier(times)

    regime = index // _REGIME_MINUTES
    regime_starts = np.arange(0, count, _REGIME_MINUTES)
    drift = (rng.random(regime_starts.size) - 0.5) * (volatility[regime_starts] * 0.2)
    momentum_start = (rng.random(regime_starts.size) - 0.5) * 5.0
    momentum = momentum_start[regime] * np.power(_MOMENTUM_DECAY, index - regime * _REGIME_MINUTES)

    noise = (rng.random(count) - 0.5) * volatility
    move = noise + drift[regime] + momentum * 0.01 * volatility

    base = _base_price(instrument)
    close = base + np.cumsum(move)
    open_ = np.r_[base, close[:-1]]
    high = np.maximum(open_, close) + rng.random(count) * (volatility * 0.6)
    low = np.minimum(open_, close) - rng.random(count) * (volatility * 0.6)

    return CandleSlice(
        instrument=instrument,
        time=times,
        open=open_,
        high=high,
        low=low,
        close=close,
    )


class SyntheticFeed:
    """Generate and cache synthetic windows keyed by (instrument, start, days)."""

    def __init__(self, seed: int | None = None, max_cached_windows: int = _DEFAULT_CACHE_WINDOWS):
        self.seed = seed
        self.max_cached_windows = max(0, int(max_cached_windows))
        self._windows: OrderedDict[tuple[str, int, int], CandleSlice] = OrderedDict()

    def load(self, instrument: str, start_utc: datetime | int, window_days: int) -> CandleSlice:
        try:
            normalized = normalize_instrument(instrument)
        except ValueError as exc:
            raise HistoryLoadError(str(exc)) from exc
        days = int(window_days)
        if days <= 0 or days > _MAX_WINDOW_DAYS:
            raise HistoryLoadError(f"window_days must be between 1 and {_MAX_WINDOW_DAYS}, got {window_days}")

        start_s = floor_minute(start_utc if isinstance(start_utc, int) else datetime_to_s(start_utc))
        key = (normalized, start_s, days)
        frame = self._windows.get(key)
        if frame is not None:
            self._windows.move_to_end(key)
            return frame

        frame = generate_candles(normalized, start_s, days, seed=self.seed)
        for name in ("time", "open", "high", "low", "close"):
            getattr(frame, name).setflags(write=False)
        logger.info("Generated %s minute candles for %s from %s", frame.rows, normalized, start_s)

        if self.max_cached_windows:
            self._windows[key] = frame
            while len(self._windows) > self.max_cached_windows:
                evicted, _ = self._windows.popitem(last=False)
                logger.debug("Evicted cached window %s", evicted)
        return frame

    def evict_instrument(self, instrument: str) -> None:
        normalized = normalize_instrument(instrument)
        for key in [key for key in self._windows if key[0] == normalized]:
            del self._windows[key]
