"""Shared market metadata and normalization helpers."""

from __future__ import annotations

import re

# User-facing aliases for common symbols.
INSTRUMENT_ALIASES: dict[str, str] = {
    "GOLD": "XAU_USD",
    "SILVER": "XAG_USD",
    "OIL": "WTICO_USD",
    "WTI": "WTICO_USD",
    "BTC": "BTC_USD",
    "ETH": "ETH_USD",
    "SOL": "SOL_USD",
    "US30": "US30_USD",
    "NAS100": "NAS100_USD",
    "SPX500": "SPX500_USD",
    "GER40": "DE30_EUR",
    "UK100": "UK100_GBP",
}

# Canonical chart timeframes and their length in minutes.
TIMEFRAME_MINUTES: dict[str, int] = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "1h": 60,
    "4h": 240,
    "1d": 1440,
}

TIMEFRAME_ALIASES: dict[str, str] = {
    "m1": "1m",
    "m5": "5m",
    "m15": "15m",
    "h1": "1h",
    "60m": "1h",
    "h4": "4h",
    "240m": "4h",
    "d": "1d",
    "d1": "1d",
    "daily": "1d",
}

SUPPORTED_TIMEFRAMES = tuple(TIMEFRAME_MINUTES)

DEFAULT_CONTRACT_SIZE = 100_000.0

_PAIR_RE = re.compile(r"^[A-Z0-9]{3,}_[A-Z0-9]{3,}$")
_INDEX_PREFIXES = ("US30_", "NAS100_", "SPX500_", "DE30_", "UK100_")


def resolve_instrument_alias(raw: str) -> str:
    """Resolve user alias to canonical instrument if available."""
    key = raw.strip().upper()
    return INSTRUMENT_ALIASES.get(key, key)


def normalize_instrument(raw: str, *, allow_aliases: bool = True) -> str:
    """
    Normalize user input to canonical instrument format.

    Examples:
    - eurusd -> EUR_USD
    - eur/usd -> EUR_USD
    - gold -> XAU_USD
    """
    if not raw or not raw.strip():
        raise ValueError("Instrument is required.")

    normalized = raw.strip().upper().replace("/", "_").replace("-", "_")
    normalized = normalized.replace(" ", "")

    if allow_aliases:
        normalized = resolve_instrument_alias(normalized)

    if "_" not in normalized and len(normalized) == 6 and normalized.isalnum():
        normalized = f"{normalized[:3]}_{normalized[3:]}"

    if not _PAIR_RE.match(normalized):
        raise ValueError(f"Invalid instrument format: {raw}")

    return normalized


def normalize_timeframe(raw: str) -> str:
    """Normalize timeframe aliases to canonical form (1m/5m/15m/1h/4h/1d)."""
    if not raw or not raw.strip():
        raise ValueError("Timeframe is required.")

    key = raw.strip().lower()
    if key in TIMEFRAME_MINUTES:
        return key
    if key in TIMEFRAME_ALIASES:
        return TIMEFRAME_ALIASES[key]

    raise ValueError(
        f"Unsupported timeframe: {raw}. "
        "Supported: 1m, 5m, 15m, 1h, 4h, 1d."
    )


def timeframe_minutes(timeframe: str) -> int:
    """Length of one bar of the timeframe, in minutes."""
    return TIMEFRAME_MINUTES[normalize_timeframe(timeframe)]


def get_instrument_class(instrument: str) -> str:
    """Classify instrument for precision and sizing policies."""
    inst = normalize_instrument(instrument, allow_aliases=True)
    if inst.startswith("XAU_") or inst.startswith("XAG_"):
        return "METAL"
    if inst.startswith("WTICO_") or inst.startswith("BRENT_"):
        return "ENERGY"
    if inst.startswith("BTC_") or inst.startswith("ETH_") or inst.startswith("SOL_"):
        return "CRYPTO"
    if inst.startswith(_INDEX_PREFIXES):
        return "INDEX"
    if inst.endswith("_JPY"):
        return "JPY"
    return "FX"


def get_price_precision(instrument: str) -> int:
    """Get display precision by instrument class."""
    instrument_class = get_instrument_class(instrument)
    if instrument_class == "JPY":
        return 3
    if instrument_class in {"METAL", "ENERGY", "CRYPTO"}:
        return 2
    if instrument_class == "INDEX":
        return 1
    return 5


def get_pip_value(instrument: str) -> float:
    """Get pip size (price increment) for instrument."""
    instrument_class = get_instrument_class(instrument)
    if instrument_class in {"JPY", "METAL", "ENERGY"}:
        return 0.01
    if instrument_class in {"CRYPTO", "INDEX"}:
        return 1.0
    return 0.0001


def get_contract_size(instrument: str) -> float:
    """Units of the instrument represented by one standard lot."""
    instrument_class = get_instrument_class(instrument)
    if instrument_class == "METAL":
        return 100.0
    if instrument_class == "ENERGY":
        return 1_000.0
    if instrument_class in {"CRYPTO", "INDEX"}:
        return 1.0
    return DEFAULT_CONTRACT_SIZE


def round_price(instrument: str, value: float) -> float:
    """Round price using instrument-aware precision."""
    return round(float(value), get_price_precision(instrument))


def format_price(instrument: str, value: float) -> str:
    """Format price string using instrument-aware precision."""
    precision = get_price_precision(instrument)
    return f"{float(value):,.{precision}f}"
