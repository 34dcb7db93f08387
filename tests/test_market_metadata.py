from __future__ import annotations

import pytest

from core.market_metadata import (
    format_price,
    get_contract_size,
    get_instrument_class,
    get_pip_value,
    normalize_instrument,
    normalize_timeframe,
    timeframe_minutes,
)


@pytest.mark.parametrize(
    "raw, expected",
    [("eurusd", "EUR_USD"), ("eur/usd", "EUR_USD"), ("gold", "XAU_USD"), ("us30", "US30_USD"), ("btc-usd", "BTC_USD")],
)
def test_normalize_instrument(raw, expected):
    assert normalize_instrument(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "EURUSDX"])
def test_normalize_instrument_rejects_garbage(raw):
    with pytest.raises(ValueError):
        normalize_instrument(raw)


@pytest.mark.parametrize("raw, expected", [("H1", "1h"), ("m15", "15m"), ("daily", "1d"), ("4h", "4h")])
def test_normalize_timeframe(raw, expected):
    assert normalize_timeframe(raw) == expected


def test_timeframe_minutes():
    assert [timeframe_minutes(tf) for tf in ("1m", "5m", "15m", "1h", "4h", "1d")] == [1, 5, 15, 60, 240, 1440]
    with pytest.raises(ValueError):
        timeframe_minutes("2h")


@pytest.mark.parametrize(
    "instrument, klass, pip, contract",
    [
        ("EUR_USD", "FX", 0.0001, 100_000.0),
        ("USD_JPY", "JPY", 0.01, 100_000.0),
        ("XAU_USD", "METAL", 0.01, 100.0),
        ("WTICO_USD", "ENERGY", 0.01, 1_000.0),
        ("BTC_USD", "CRYPTO", 1.0, 1.0),
        ("NAS100_USD", "INDEX", 1.0, 1.0),
    ],
)
def test_instrument_policies(instrument, klass, pip, contract):
    assert get_instrument_class(instrument) == klass
    assert get_pip_value(instrument) == pip
    assert get_contract_size(instrument) == contract


def test_format_price_uses_precision():
    assert format_price("EUR_USD", 1.08) == "1.08000"
    assert format_price("USD_JPY", 140.1234) == "140.123"
    assert format_price("XAU_USD", 2000) == "2,000.00"
