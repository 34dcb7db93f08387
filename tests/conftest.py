from __future__ import annotations

import numpy as np
import pytest

from replay.annotations import LinearCoordinateMapper
from replay.clock import ManualTicker
from replay.models import Candle, CandleSlice

# 2023-01-01T00:00:00Z
T0 = 1_672_531_200


def make_slice(closes, *, start: int = T0, instrument: str = "EUR_USD", wick: float = 0.0002) -> CandleSlice:
    """Minute candles whose opens chain from the previous close."""
    close = np.asarray(closes, dtype=np.float64)
    open_ = np.r_[close[0], close[:-1]]
    return CandleSlice(
        instrument=instrument,
        time=start + np.arange(close.size, dtype=np.int64) * 60,
        open=open_,
        high=np.maximum(open_, close) + wick,
        low=np.minimum(open_, close) - wick,
        close=close,
    )


def bar(time_s: int, price: float) -> Candle:
    return Candle(time=time_s, open=price, high=price, low=price, close=price)


@pytest.fixture
def random_walk() -> CandleSlice:
    rng = np.random.default_rng(7)
    closes = 1.08 + np.cumsum((rng.random(600) - 0.5) * 0.0004)
    return make_slice(closes)


@pytest.fixture
def flat_window() -> CandleSlice:
    return make_slice(np.full(300, 1.08))


@pytest.fixture
def manual_ticker() -> ManualTicker:
    return ManualTicker()


@pytest.fixture
def mapper() -> LinearCoordinateMapper:
    # One pixel is one second horizontally and one price unit vertically.
    return LinearCoordinateMapper(
        time_left=0,
        time_right=1000,
        price_top=1000.0,
        price_bottom=0.0,
        width=1000.0,
        height=1000.0,
    )
