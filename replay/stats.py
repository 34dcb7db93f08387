"""Performance summary over the closed trades of a session ledger."""

from __future__ import annotations

from typing import Any, Iterable, Optional

import pandas as pd

from .models import AccountView, OrderStatus, PositionView, iso_utc

TRADE_COLUMNS = (
    "order_id",
    "kind",
    "side",
    "lot_size",
    "entry_time_utc",
    "exit_time_utc",
    "entry_price",
    "exit_price",
    "commission",
    "gross_pnl",
    "realized_pnl",
    "exit_reason",
    "playbook",
)


def _safe_float(value: Any) -> Optional[float]:
    try:
        if pd.isna(value):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _profit_factor(series: pd.Series) -> Optional[float]:
    if series.empty:
        return None
    wins = float(series[series > 0].sum())
    losses = float(series[series < 0].sum())
    if losses == 0:
        return None if wins == 0 else float("inf")
    return float(wins / abs(losses))


def _max_drawdown(series: pd.Series) -> float:
    if series.empty:
        return 0.0
    equity = series.fillna(0.0).astype(float).cumsum()
    return float((equity - equity.cummax()).min())


def closed_trades_frame(positions: Iterable[PositionView]) -> pd.DataFrame:
    """Closed records as a DataFrame ordered by exit time."""
    rows = [
        {
            "order_id": item.order_id,
            "kind": item.kind,
            "side": item.side,
            "lot_size": item.lot_size,
            "entry_time_utc": item.entry_time,
            "exit_time_utc": item.exit_time,
            "entry_price": item.entry_price,
            "exit_price": item.exit_price,
            "commission": item.commission,
            "gross_pnl": item.gross_pnl,
            "realized_pnl": item.realized_pnl,
            "exit_reason": item.exit_reason,
            "playbook": item.playbook or None,
        }
        for item in positions
        if item.status == OrderStatus.CLOSED.value
    ]
    df = pd.DataFrame(rows, columns=list(TRADE_COLUMNS))
    if df.empty:
        return df
    df["entry_time_utc"] = pd.to_datetime(df["entry_time_utc"], unit="s", utc=True)
    df["exit_time_utc"] = pd.to_datetime(df["exit_time_utc"], unit="s", utc=True)
    df["realized_pnl"] = pd.to_numeric(df["realized_pnl"], errors="coerce").fillna(0.0)
    return df.sort_values(["exit_time_utc", "order_id"]).reset_index(drop=True)


def _playbook_metrics(df: pd.DataFrame) -> list[dict[str, Any]]:
    tagged = df[df["playbook"].notna()]
    if tagged.empty:
        return []
    rows: list[dict[str, Any]] = []
    for playbook, grp in tagged.groupby("playbook"):
        pnl = grp["realized_pnl"]
        rows.append(
            {
                "playbook": str(playbook),
                "trades": int(len(grp)),
                "wins": int((pnl > 0).sum()),
                "net_pnl": float(pnl.sum()),
                "profit_factor": _profit_factor(pnl),
            }
        )
    rows.sort(key=lambda row: (row["net_pnl"], row["playbook"]), reverse=True)
    return rows


def build_performance_summary(
    positions: Iterable[PositionView],
    account: AccountView | None = None,
) -> dict[str, Any]:
    items = list(positions)
    df = closed_trades_frame(items)
    pnl = df["realized_pnl"] if not df.empty else pd.Series(dtype=float)
    closed_count = int(len(df))
    wins = int((pnl > 0).sum())
    losses = int((pnl < 0).sum())
    playbooks = _playbook_metrics(df) if closed_count else []

    summary: dict[str, Any] = {
        "trade_summary": {
            "closed_trades": closed_count,
            "open_positions": sum(1 for item in items if item.status == OrderStatus.OPEN.value),
            "pending_orders": sum(1 for item in items if item.status == OrderStatus.PENDING.value),
            "wins": wins,
            "losses": losses,
            "win_rate": (wins / closed_count) if closed_count > 0 else None,
            "profit_factor": _profit_factor(pnl) if closed_count > 0 else None,
            "net_pnl": float(pnl.sum()) if closed_count > 0 else 0.0,
            "average_pnl": _safe_float(pnl.mean()) if closed_count > 0 else None,
            "total_commission": float(df["commission"].sum()) if closed_count > 0 else 0.0,
            "max_drawdown": _max_drawdown(pnl),
        },
        "best_playbook": playbooks[0]["playbook"] if playbooks else None,
        "playbooks": playbooks,
        "first_exit_utc": iso_utc(df["exit_time_utc"].iloc[0]) if closed_count else None,
        "last_exit_utc": iso_utc(df["exit_time_utc"].iloc[-1]) if closed_count else None,
    }
    if account is not None:
        summary["account"] = account.to_dict()
    return summary
