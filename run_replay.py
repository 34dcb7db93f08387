"""CLI for the market replay sandbox: headless playback, resampling and session reports."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from core.logging_setup import attach_replay_clock, setup_logging  # noqa: E402
from core.market_metadata import normalize_instrument, normalize_timeframe, timeframe_minutes  # noqa: E402
from replay import (  # noqa: E402
    AsyncioTicker,
    HistoryLoadError,
    ManualTicker,
    ReplayConfig,
    ReplaySession,
    SyntheticFeed,
    resample,
)
from replay.models import iso_utc  # noqa: E402
from replay.store import json_default  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Market replay and trade-simulation sandbox CLI")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-dir", help="Directory for the rotating replay.log (default: ./logs)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    play_parser = subparsers.add_parser("play", help="Restore the cached session, auto-play and save it again")
    play_parser.add_argument("--config", required=True, help="Path to the replay JSON config")
    play_parser.add_argument("--ticks", type=int, default=60, help="Number of one-minute ticks to play")
    play_parser.add_argument("--speed", type=float, help="Override playback speed (1-100)")
    play_parser.add_argument("--realtime", action="store_true", help="Drive playback from an asyncio timer")

    resample_parser = subparsers.add_parser("resample", help="Write a resampled synthetic series as CSV")
    resample_parser.add_argument("--instrument", required=True, help="Instrument, e.g. EURUSD or XAU_USD")
    resample_parser.add_argument("--start", required=True, help="UTC start date (YYYY-MM-DD)")
    resample_parser.add_argument("--days", type=int, default=7, help="Window length in days")
    resample_parser.add_argument("--timeframe", default="1h", help="Target timeframe (1m/5m/15m/1h/4h/1d)")
    resample_parser.add_argument("--seed", type=int, help="Optional generator seed")
    resample_parser.add_argument("--out", required=True, help="Output CSV path")

    report_parser = subparsers.add_parser("report", help="Print the performance summary of the cached session")
    report_parser.add_argument("--config", required=True, help="Path to the replay JSON config")

    return parser.parse_args(argv)


def _parse_date(date_str: str) -> datetime:
    return datetime.strptime(date_str, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def _load_session(config_path: Path, **kwargs) -> ReplaySession:
    config = ReplayConfig.from_path(config_path)
    session = ReplaySession(config, **kwargs)
    attach_replay_clock(lambda: iso_utc(session.current_time))
    session.restore()
    return session


async def _play_realtime(session: ReplaySession, ticks: int) -> int:
    played = 0

    def _count(_time_s: int) -> None:
        nonlocal played
        played += 1
        if played >= ticks:
            session.pause()

    session.clock.subscribe(_count)
    session.play()
    while session.is_playing:
        await asyncio.sleep(min(0.05, session.clock.interval_s))
    return played


def _run_play(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("config does not exist: %s", config_path)
        return 2
    if args.ticks <= 0:
        logger.error("--ticks must be positive")
        return 2

    ticker = AsyncioTicker() if args.realtime else ManualTicker()
    try:
        session = _load_session(config_path, ticker=ticker)
        if args.speed is not None:
            session.set_speed(args.speed)
        if args.realtime:
            played = asyncio.run(_play_realtime(session, args.ticks))
        else:
            session.play()
            played = ticker.fire(args.ticks)
            session.pause()
        session.save()
    except (ValueError, HistoryLoadError) as exc:
        logger.error(str(exc))
        return 3

    logger.info("Played %s ticks; cursor at %s", played, session.snapshot()["current_time"])
    print(json.dumps(session.account.to_dict(), indent=2, default=json_default))
    return 0


def _run_resample(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    try:
        instrument = normalize_instrument(args.instrument)
        timeframe = normalize_timeframe(args.timeframe)
        start = _parse_date(args.start)
        candles = SyntheticFeed(seed=args.seed).load(instrument, start, args.days)
    except (ValueError, HistoryLoadError) as exc:
        logger.error(str(exc))
        return 4

    frame = resample(candles, timeframe_minutes(timeframe)).to_dataframe()
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(out_path, index=False)
    logger.info("Wrote %s %s bars for %s to %s", len(frame), timeframe, instrument, out_path)
    return 0


def _run_report(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("config does not exist: %s", config_path)
        return 2

    try:
        session = _load_session(config_path)
    except (ValueError, HistoryLoadError) as exc:
        logger.error(str(exc))
        return 3

    summary = session.performance_summary()
    print(json.dumps(summary, indent=2, default=json_default))
    trade_summary = summary.get("trade_summary", {})
    logger.info("Closed trades: %s", trade_summary.get("closed_trades"))
    logger.info("Net P&L: %s", trade_summary.get("net_pnl"))
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "play":
        return _run_play(args)
    if args.command == "resample":
        return _run_resample(args)
    if args.command == "report":
        return _run_report(args)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level, logs_dir=args.log_dir)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
