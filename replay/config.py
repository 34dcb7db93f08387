"""Session configuration loaded from JSON."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from core.market_metadata import normalize_instrument, normalize_timeframe

from .clock import MAX_SPEED, MIN_SPEED
from .models import iso_utc, parse_datetime

MAX_CHARTS = 4


@dataclass
class ReplayConfig:
    instrument: str = "EUR_USD"
    start_utc: datetime = field(default_factory=lambda: datetime(2023, 1, 1, tzinfo=timezone.utc))
    window_days: int = 180
    warmup_bars: int = 1000
    timeframe: str = "1h"
    starting_balance: float = 100_000.0
    leverage: float = 100.0
    spread_pips: float = 1.5
    commission_per_lot: float = 7.0
    contract_size: float | None = None
    speed: float = 1.0
    hit_tolerance_px: float = 10.0
    cache_dir: Path = field(default_factory=lambda: Path(".replay_cache"))
    seed: int | None = None
    charts: list[str] = field(default_factory=lambda: ["1h"])

    def __post_init__(self) -> None:
        self.instrument = normalize_instrument(self.instrument)
        self.timeframe = normalize_timeframe(self.timeframe)
        self.charts = [normalize_timeframe(item) for item in (self.charts or [self.timeframe])]
        # The first chart is the primary one; its timeframe sets the step size.
        self.charts[0] = self.timeframe
        self.cache_dir = Path(self.cache_dir)
        if self.window_days <= 0:
            raise ValueError("window_days must be positive")
        if self.warmup_bars < 0:
            raise ValueError("warmup_bars must not be negative")
        if self.starting_balance <= 0:
            raise ValueError("starting_balance must be positive")
        if self.leverage <= 0:
            raise ValueError("leverage must be positive")
        if self.spread_pips < 0:
            raise ValueError("spread_pips must not be negative")
        if self.commission_per_lot < 0:
            raise ValueError("commission_per_lot must not be negative")
        if self.contract_size is not None and self.contract_size <= 0:
            raise ValueError("contract_size must be positive when set")
        if not MIN_SPEED <= self.speed <= MAX_SPEED:
            raise ValueError(f"speed must be between {MIN_SPEED:g} and {MAX_SPEED:g}")
        if self.hit_tolerance_px <= 0:
            raise ValueError("hit_tolerance_px must be positive")
        if len(self.charts) > MAX_CHARTS:
            raise ValueError(f"charts supports at most {MAX_CHARTS} entries")

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ReplayConfig":
        if not isinstance(payload, dict):
            raise ValueError("Replay config must be a JSON object")
        defaults = cls()
        charts_raw = payload.get("charts")
        if charts_raw is not None and not isinstance(charts_raw, list):
            raise ValueError("charts must be a list of timeframes")
        start = parse_datetime(payload.get("start_utc"))
        contract_size = payload.get("contract_size")
        seed = payload.get("seed")
        return cls(
            instrument=str(payload.get("instrument") or defaults.instrument),
            start_utc=start or defaults.start_utc,
            window_days=int(payload.get("window_days", defaults.window_days)),
            warmup_bars=int(payload.get("warmup_bars", defaults.warmup_bars)),
            timeframe=str(payload.get("timeframe") or defaults.timeframe),
            starting_balance=float(payload.get("starting_balance", defaults.starting_balance)),
            leverage=float(payload.get("leverage", defaults.leverage)),
            spread_pips=float(payload.get("spread_pips", defaults.spread_pips)),
            commission_per_lot=float(payload.get("commission_per_lot", defaults.commission_per_lot)),
            contract_size=None if contract_size is None else float(contract_size),
            speed=float(payload.get("speed", defaults.speed)),
            hit_tolerance_px=float(payload.get("hit_tolerance_px", defaults.hit_tolerance_px)),
            cache_dir=Path(payload.get("cache_dir") or defaults.cache_dir),
            seed=None if seed is None else int(seed),
            charts=[str(item) for item in charts_raw] if charts_raw else [str(payload.get("timeframe") or defaults.timeframe)],
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "ReplayConfig":
        config_path = Path(path)
        payload = json.loads(config_path.read_text(encoding="utf-8"))
        config = cls.from_dict(payload)
        if not config.cache_dir.is_absolute():
            config.cache_dir = (config_path.parent / config.cache_dir).resolve()
        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "instrument": self.instrument,
            "start_utc": iso_utc(self.start_utc),
            "window_days": int(self.window_days),
            "warmup_bars": int(self.warmup_bars),
            "timeframe": self.timeframe,
            "starting_balance": float(self.starting_balance),
            "leverage": float(self.leverage),
            "spread_pips": float(self.spread_pips),
            "commission_per_lot": float(self.commission_per_lot),
            "contract_size": None if self.contract_size is None else float(self.contract_size),
            "speed": float(self.speed),
            "hit_tolerance_px": float(self.hit_tolerance_px),
            "cache_dir": str(self.cache_dir),
            "seed": self.seed,
            "charts": list(self.charts),
        }
