from __future__ import annotations

import json

import pandas as pd
import pytest

import run_replay
from core.logging_setup import teardown_logging


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    yield tmp_path
    teardown_logging()


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        run_replay.main(argv)
    return excinfo.value.code


def _write_config(path):
    path.write_text(
        json.dumps({"instrument": "EURUSD", "window_days": 2, "warmup_bars": 120, "seed": 5, "cache_dir": "cache"}),
        encoding="utf-8",
    )
    return path


def test_resample_writes_csv(workdir):
    out_path = workdir / "out" / "eur_1h.csv"

    code = _run(
        ["resample", "--instrument", "eurusd", "--start", "2023-01-02", "--days", "1", "--timeframe", "H1", "--seed", "3", "--out", str(out_path)]
    )

    assert code == 0
    frame = pd.read_csv(out_path)
    assert list(frame.columns) == ["time", "open", "high", "low", "close"]
    assert len(frame) == 24
    assert (workdir / "logs").is_dir()


def test_resample_rejects_unknown_timeframe(workdir):
    code = _run(["resample", "--instrument", "EUR_USD", "--start", "2023-01-02", "--timeframe", "2h", "--out", "x.csv"])
    assert code == 4


def test_missing_config_exits_with_2(workdir):
    assert _run(["play", "--config", str(workdir / "nope.json")]) == 2
    assert _run(["report", "--config", str(workdir / "nope.json")]) == 2


def test_play_saves_session_then_report_reads_it(workdir, capsys):
    config_path = _write_config(workdir / "replay.json")

    assert _run(["--log-level", "WARNING", "play", "--config", str(config_path), "--ticks", "30"]) == 0
    account = json.loads(capsys.readouterr().out)
    assert account["balance"] == pytest.approx(100_000.0)
    assert (workdir / "cache" / "session_EUR_USD.json").exists()

    assert _run(["--log-level", "WARNING", "report", "--config", str(config_path)]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["trade_summary"]["closed_trades"] == 0
    assert summary["account"]["balance"] == pytest.approx(100_000.0)


def test_play_log_lines_carry_replay_time(workdir):
    config_path = _write_config(workdir / "replay.json")
    log_dir = workdir / "run-logs"

    assert _run(["--log-dir", str(log_dir), "play", "--config", str(config_path), "--ticks", "5"]) == 0
    teardown_logging()

    text = (log_dir / "replay.log").read_text(encoding="utf-8")
    assert "| 2023-01-01T02:05:00Z | run_replay | Played 5 ticks" in text
