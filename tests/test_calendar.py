from __future__ import annotations

import numpy as np

from conftest import T0
from replay.calendar import EVENT_TEMPLATES, CalendarEvent, generate_events, visible_events


def test_events_are_spaced_four_to_eight_hours_apart():
    events = generate_events(T0, seed=11)
    times = np.asarray([event.time for event in events])

    assert times[0] - T0 >= 4 * 3600 - 1
    gaps = np.diff(times)
    assert gaps.min() >= 4 * 3600 - 1
    assert gaps.max() <= 8 * 3600 + 1
    assert times[-1] < T0 + 30 * 86_400
    assert 85 <= len(events) <= 185


def test_events_use_known_templates_and_are_deterministic():
    events = generate_events(T0, seed=11)
    assert events == generate_events(T0, seed=11)
    assert events != generate_events(T0, seed=12)

    templates = set(EVENT_TEMPLATES)
    assert all((event.title, event.impact) in templates for event in events)
    assert all(event.forecast.endswith("%") for event in events)


def _event(event_id: str, offset_h: float) -> CalendarEvent:
    return CalendarEvent(
        event_id=event_id,
        time=int(T0 + offset_h * 3600),
        title="CPI Data Release",
        impact="high",
        forecast="3.1%",
        actual="3.4%",
    )


def test_visible_events_are_near_the_cursor_newest_first():
    events = [_event("a", -80), _event("b", -10), _event("c", 5), _event("d", 71), _event("e", 73)]

    visible = visible_events(events, T0)

    assert [event.event_id for event in visible] == ["d", "c", "b"]


def test_future_events_hide_their_actual():
    visible = visible_events([_event("past", -1), _event("future", 1)], T0)

    by_id = {event.event_id: event for event in visible}
    assert by_id["past"].actual == "3.4%"
    assert by_id["future"].actual is None
    assert by_id["future"].forecast == "3.1%"
