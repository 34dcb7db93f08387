"""Minute-candle aggregation into chart timeframes."""

from __future__ import annotations

import logging

import numpy as np

from core.market_metadata import timeframe_minutes

from .models import MINUTE_S, CandleSlice

logger = logging.getLogger(__name__)


def bucket_start(time_s: int, granularity_minutes: int) -> int:
    step = int(granularity_minutes) * MINUTE_S
    return (int(time_s) // step) * step


def resample(candles: CandleSlice, granularity_minutes: int) -> CandleSlice:
    """
    Aggregate minute candles into buckets of ``granularity_minutes``.

    Buckets start at ``floor(time / step) * step``. Within a bucket the first
    open is kept, high/low are the extremes and close is the latest close.
    The trailing bucket is always emitted, even when it is still forming.
    Granularity 1 returns the input unchanged.
    """
    granularity = int(granularity_minutes)
    if granularity <= 0:
        raise ValueError("granularity_minutes must be positive")
    if granularity == 1 or candles.rows == 0:
        return candles

    step = granularity * MINUTE_S
    buckets = (candles.time // step) * step
    # Input is time-ordered, so bucket ids are non-decreasing and every change starts a new bar.
    starts = np.flatnonzero(np.r_[True, buckets[1:] != buckets[:-1]])
    ends = np.r_[starts[1:], candles.rows] - 1

    return CandleSlice(
        instrument=candles.instrument,
        time=buckets[starts].astype(np.int64),
        open=candles.open[starts],
        high=np.maximum.reduceat(candles.high, starts),
        low=np.minimum.reduceat(candles.low, starts),
        close=candles.close[ends],
    )


def visible_series(candles: CandleSlice, granularity_minutes: int, now_s: int) -> CandleSlice:
    """Resample only the minutes at or before ``now_s``; nothing past the replay cursor leaks in."""
    cutoff = candles.index_at_or_before(now_s) + 1
    return resample(candles.slice_by_index(0, cutoff), granularity_minutes)


class ResampleCache:
    """
    Memoised visible series for one loaded window.

    The window is resampled once per granularity. Per cursor position only the
    still-forming bar is rebuilt from the minutes between its bucket start and
    the cursor, so a tick costs O(granularity) instead of O(window).
    """

    def __init__(self, candles: CandleSlice):
        self._candles = candles
        self._full: dict[int, CandleSlice] = {}

    @property
    def candles(self) -> CandleSlice:
        return self._candles

    def reset(self, candles: CandleSlice) -> None:
        self._candles = candles
        self._full.clear()

    def full(self, granularity_minutes: int) -> CandleSlice:
        granularity = int(granularity_minutes)
        frame = self._full.get(granularity)
        if frame is None:
            frame = resample(self._candles, granularity)
            self._full[granularity] = frame
            logger.debug(
                "Resampled %s rows of %s to %s bars at %sm",
                self._candles.rows,
                self._candles.instrument,
                frame.rows,
                granularity,
            )
        return frame

    def visible(self, timeframe: str | int, now_s: int) -> CandleSlice:
        granularity = timeframe if isinstance(timeframe, int) else timeframe_minutes(timeframe)
        minutes = self._candles
        cutoff = minutes.index_at_or_before(now_s) + 1
        if cutoff <= 0:
            return CandleSlice.empty(minutes.instrument)
        if granularity == 1:
            return minutes.slice_by_index(0, cutoff)

        full = self.full(granularity)
        current_bucket = bucket_start(int(minutes.time[cutoff - 1]), granularity)
        bar_index = int(np.searchsorted(full.time, current_bucket, side="left"))
        first_minute = int(np.searchsorted(minutes.time, current_bucket, side="left"))
        forming = resample(minutes.slice_by_index(first_minute, cutoff), granularity)
        completed = full.slice_by_index(0, bar_index)
        return CandleSlice(
            instrument=minutes.instrument,
            time=np.concatenate([completed.time, forming.time]),
            open=np.concatenate([completed.open, forming.open]),
            high=np.concatenate([completed.high, forming.high]),
            low=np.concatenate([completed.low, forming.low]),
            close=np.concatenate([completed.close, forming.close]),
        )
