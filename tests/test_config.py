from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from replay.config import ReplayConfig


def test_defaults():
    config = ReplayConfig()

    assert config.instrument == "EUR_USD"
    assert config.start_utc == datetime(2023, 1, 1, tzinfo=timezone.utc)
    assert config.window_days == 180
    assert config.warmup_bars == 1000
    assert config.leverage == 100.0
    assert config.spread_pips == 1.5
    assert config.commission_per_lot == 7.0
    assert config.contract_size is None
    assert config.charts == ["1h"]
    assert config.cache_dir == Path(".replay_cache")


def test_from_dict_normalises_values():
    config = ReplayConfig.from_dict(
        {
            "instrument": "gold",
            "start_utc": "2024-03-01T00:00:00Z",
            "timeframe": "H4",
            "charts": ["h4", "m5", "15m"],
            "seed": "9",
            "contract_size": 100,
        }
    )

    assert config.instrument == "XAU_USD"
    assert config.start_utc == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert config.timeframe == "4h"
    assert config.charts == ["4h", "5m", "15m"]
    assert config.seed == 9
    assert config.contract_size == 100.0


def test_charts_default_to_timeframe():
    assert ReplayConfig.from_dict({"timeframe": "15m"}).charts == ["15m"]


@pytest.mark.parametrize(
    "payload, field_name",
    [
        ({"speed": 150}, "speed"),
        ({"leverage": 0}, "leverage"),
        ({"window_days": 0}, "window_days"),
        ({"charts": ["1m", "5m", "15m", "1h", "4h"]}, "charts"),
        ({"charts": "1h"}, "charts"),
        ({"hit_tolerance_px": -1}, "hit_tolerance_px"),
    ],
)
def test_invalid_values_name_the_field(payload, field_name):
    with pytest.raises(ValueError, match=field_name):
        ReplayConfig.from_dict(payload)


def test_rejects_non_object():
    with pytest.raises(ValueError):
        ReplayConfig.from_dict(["EUR_USD"])


def test_from_path_resolves_cache_dir(tmp_path):
    config_path = tmp_path / "replay.json"
    config_path.write_text(json.dumps({"instrument": "GBPUSD", "cache_dir": "state"}), encoding="utf-8")

    config = ReplayConfig.from_path(config_path)

    assert config.cache_dir == (tmp_path / "state").resolve()
    assert config.instrument == "GBP_USD"


def test_to_dict_round_trip():
    config = ReplayConfig(instrument="USDJPY", seed=3, charts=["1h", "5m"])
    again = ReplayConfig.from_dict(config.to_dict())
    assert again == config


def test_primary_chart_follows_timeframe():
    config = ReplayConfig(timeframe="1h", charts=["5m", "15m"])

    assert config.charts == ["1h", "15m"]
    assert ReplayConfig(timeframe="4h").charts == ["4h"]
