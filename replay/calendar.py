"""Synthetic economic-calendar events and the cursor-relative visible list."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable

import numpy as np

from .models import iso_utc

logger = logging.getLogger(__name__)

DEFAULT_SPAN_DAYS = 30
DEFAULT_HORIZON_S = 3 * 24 * 3600
_MIN_GAP_H = 4.0
_MAX_GAP_H = 8.0

EVENT_TEMPLATES: tuple[tuple[str, str], ...] = (
    ("CPI Data Release", "high"),
    ("NFP Report", "high"),
    ("FOMC Statement", "high"),
    ("Retail Sales", "medium"),
    ("Unemployment Claims", "medium"),
    ("Bond Auction", "low"),
    ("Trade Balance", "medium"),
)


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    time: int
    title: str
    impact: str
    currency: str = "USD"
    forecast: str | None = None
    actual: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "time": iso_utc(self.time),
            "title": self.title,
            "impact": self.impact,
            "currency": self.currency,
            "forecast": self.forecast,
            "actual": self.actual,
        }


def generate_events(
    start_s: int,
    *,
    span_days: int = DEFAULT_SPAN_DAYS,
    currency: str = "USD",
    seed: int | None = None,
) -> list[CalendarEvent]:
    """One event every 4-8 hours from ``start_s`` for ``span_days``; deterministic per (start, seed)."""
    key = f"calendar|{int(start_s)}|{'' if seed is None else int(seed)}"
    rng = np.random.default_rng(int(hashlib.sha1(key.encode("utf-8")).hexdigest()[:16], 16))
    end_s = int(start_s) + int(span_days) * 24 * 3600

    events: list[CalendarEvent] = []
    cursor = float(start_s)
    while True:
        cursor += (_MIN_GAP_H + rng.random() * (_MAX_GAP_H - _MIN_GAP_H)) * 3600.0
        if cursor >= end_s:
            break
        title, impact = EVENT_TEMPLATES[int(rng.integers(len(EVENT_TEMPLATES)))]
        events.append(
            CalendarEvent(
                event_id=f"E{len(events) + 1:05d}",
                time=int(cursor),
                title=title,
                impact=impact,
                currency=currency,
                forecast=f"{rng.random() * 5:.1f}%",
                actual=f"{rng.random() * 5:.1f}%",
            )
        )
    logger.debug("Generated %s calendar events from %s", len(events), iso_utc(int(start_s)))
    return events


def visible_events(
    events: Iterable[CalendarEvent],
    now_s: int,
    horizon_s: int = DEFAULT_HORIZON_S,
) -> list[CalendarEvent]:
    """
    Events within ``horizon_s`` of the cursor, newest first. Events still in
    the simulated future keep their forecast but have no actual yet.
    """
    now = int(now_s)
    selected = []
    for event in events:
        if abs(event.time - now) >= horizon_s:
            continue
        selected.append(event if event.time <= now else replace(event, actual=None))
    selected.sort(key=lambda item: item.time, reverse=True)
    return selected
