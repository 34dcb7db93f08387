from __future__ import annotations

from datetime import datetime, timezone

import numpy as np
import pytest

from conftest import T0
from replay.errors import HistoryLoadError
from replay.feed import SyntheticFeed, generate_candles


def test_window_is_gapless_minute_series():
    candles = SyntheticFeed(seed=1).load("EURUSD", T0, 2)

    assert candles.instrument == "EUR_USD"
    assert candles.rows == 2 * 1440
    assert candles.time[0] == T0
    assert np.all(np.diff(candles.time) == 60)
    assert np.all(candles.time % 60 == 0)


def test_ohlc_envelope_holds():
    candles = generate_candles("XAU_USD", T0, 1, seed=3)

    assert np.all(candles.low <= np.minimum(candles.open, candles.close))
    assert np.all(candles.high >= np.maximum(candles.open, candles.close))
    assert np.all(candles.open[1:] == candles.close[:-1])
    assert candles.open[0] == 2000.0


@pytest.mark.parametrize("instrument, base", [("USD_JPY", 140.0), ("GBP_USD", 1.08)])
def test_base_price_by_instrument(instrument, base):
    assert generate_candles(instrument, T0, 1).open[0] == base


def test_generation_is_deterministic_per_seed():
    first = generate_candles("EUR_USD", T0, 1, seed=42)
    again = generate_candles("EUR_USD", T0, 1, seed=42)
    other = generate_candles("EUR_USD", T0, 1, seed=43)

    np.testing.assert_array_equal(first.close, again.close)
    assert not np.array_equal(first.close, other.close)


def test_new_york_session_is_more_volatile_than_asia():
    candles = generate_candles("EUR_USD", T0, 20, seed=5)
    hours = (candles.time // 3600) % 24
    ranges = candles.high - candles.low

    assert ranges[(hours >= 14) & (hours < 17)].mean() > ranges[hours < 6].mean() * 2


def test_start_is_floored_and_accepts_datetimes():
    feed = SyntheticFeed(seed=1)
    from_dt = feed.load("EUR_USD", datetime(2023, 1, 1, tzinfo=timezone.utc), 1)
    from_int = feed.load("EUR_USD", T0 + 30, 1)

    assert from_dt is from_int


def test_windows_are_cached_and_read_only():
    feed = SyntheticFeed(seed=1, max_cached_windows=1)
    first = feed.load("EUR_USD", T0, 1)

    assert feed.load("EUR_USD", T0, 1) is first
    with pytest.raises(ValueError):
        first.close[0] = 0.0

    feed.load("GBP_USD", T0, 1)
    assert feed.load("EUR_USD", T0, 1) is not first


def test_evict_instrument():
    feed = SyntheticFeed(seed=1)
    first = feed.load("EUR_USD", T0, 1)
    feed.evict_instrument("eurusd")
    assert feed.load("EUR_USD", T0, 1) is not first


@pytest.mark.parametrize("instrument, days", [("not a pair", 1), ("EUR_USD", 0), ("EUR_USD", 5000)])
def test_bad_requests_raise_history_load_error(instrument, days):
    with pytest.raises(HistoryLoadError):
        SyntheticFeed().load(instrument, T0, days)
