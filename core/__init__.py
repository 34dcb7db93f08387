"""Core utilities shared by the replay sandbox."""

from .logging_setup import ReplayTimeFilter, attach_replay_clock, setup_logging, teardown_logging
from .market_metadata import (
    DEFAULT_CONTRACT_SIZE,
    INSTRUMENT_ALIASES,
    SUPPORTED_TIMEFRAMES,
    TIMEFRAME_ALIASES,
    TIMEFRAME_MINUTES,
    format_price,
    get_contract_size,
    get_instrument_class,
    get_pip_value,
    get_price_precision,
    normalize_instrument,
    normalize_timeframe,
    resolve_instrument_alias,
    round_price,
    timeframe_minutes,
)

__all__ = [
    "setup_logging",
    "attach_replay_clock",
    "ReplayTimeFilter",
    "teardown_logging",
    "DEFAULT_CONTRACT_SIZE",
    "INSTRUMENT_ALIASES",
    "TIMEFRAME_ALIASES",
    "TIMEFRAME_MINUTES",
    "SUPPORTED_TIMEFRAMES",
    "resolve_instrument_alias",
    "normalize_instrument",
    "normalize_timeframe",
    "timeframe_minutes",
    "get_price_precision",
    "get_instrument_class",
    "get_pip_value",
    "get_contract_size",
    "round_price",
    "format_price",
]
