"""Chart drawings: shapes, screen/domain mapping, hit-testing and drag editing."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Optional, Protocol, Union

from core.market_metadata import normalize_instrument

logger = logging.getLogger(__name__)

DEFAULT_HIT_TOLERANCE_PX = 10.0
FIB_RATIOS = (0.0, 0.236, 0.382, 0.5, 0.618, 0.786, 1.0)
# Domain prices live on a fixed decimal grid so a drag and its reverse cancel exactly.
PRICE_DECIMALS = 10

Pixel = tuple[float, float]


class DrawingKind(str, Enum):
    LINE = "line"
    BOX = "box"
    FIB = "fib"
    LONG_RISK_BOX = "long_risk_box"
    SHORT_RISK_BOX = "short_risk_box"

    @classmethod
    def from_value(cls, value: Any) -> "DrawingKind":
        raw = str(getattr(value, "value", value)).strip().lower()
        aliases = {
            "long": cls.LONG_RISK_BOX,
            "longriskbox": cls.LONG_RISK_BOX,
            "short": cls.SHORT_RISK_BOX,
            "shortriskbox": cls.SHORT_RISK_BOX,
        }
        if raw in aliases:
            return aliases[raw]
        try:
            return cls(raw)
        except ValueError as exc:
            raise ValueError(f"Unsupported drawing kind: {value}") from exc


@dataclass(frozen=True)
class DomainPoint:
    time: int
    price: float

    def shifted(self, delta_time: int, delta_price: float) -> "DomainPoint":
        return DomainPoint(
            time=self.time + int(delta_time),
            price=round(self.price + float(delta_price), PRICE_DECIMALS),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"time": int(self.time), "price": float(self.price)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DomainPoint":
        return cls(time=int(payload["time"]), price=float(payload["price"]))


@dataclass(frozen=True)
class LineDrawing:
    drawing_id: str
    p1: DomainPoint
    p2: DomainPoint

    @property
    def kind(self) -> DrawingKind:
        return DrawingKind.LINE


@dataclass(frozen=True)
class BoxDrawing:
    drawing_id: str
    p1: DomainPoint
    p2: DomainPoint

    @property
    def kind(self) -> DrawingKind:
        return DrawingKind.BOX


@dataclass(frozen=True)
class FibDrawing:
    drawing_id: str
    p1: DomainPoint
    p2: DomainPoint

    @property
    def kind(self) -> DrawingKind:
        return DrawingKind.FIB

    def levels(self) -> list[tuple[float, float]]:
        """(ratio, price) pairs measured from p1 towards p2."""
        span = self.p2.price - self.p1.price
        return [(ratio, self.p1.price + span * ratio) for ratio in FIB_RATIOS]


@dataclass(frozen=True)
class RiskBoxDrawing:
    """Entry at p1, target at p2.price; the stop mirrors the target distance on the other side."""

    drawing_id: str
    p1: DomainPoint
    p2: DomainPoint
    is_long: bool = True

    @property
    def kind(self) -> DrawingKind:
        return DrawingKind.LONG_RISK_BOX if self.is_long else DrawingKind.SHORT_RISK_BOX

    @property
    def entry_price(self) -> float:
        return self.p1.price

    @property
    def target_price(self) -> float:
        return self.p2.price

    @property
    def stop_price(self) -> float:
        distance = abs(self.p2.price - self.p1.price)
        return self.p1.price - distance if self.is_long else self.p1.price + distance

    @property
    def reward_risk(self) -> float | None:
        risk = abs(self.stop_price - self.entry_price)
        if risk == 0:
            return None
        return abs(self.target_price - self.entry_price) / risk


Drawing = Union[LineDrawing, BoxDrawing, FibDrawing, RiskBoxDrawing]


def make_drawing(kind: DrawingKind | str, drawing_id: str, p1: DomainPoint, p2: DomainPoint) -> Drawing:
    drawing_kind = DrawingKind.from_value(kind)
    if drawing_kind == DrawingKind.LINE:
        return LineDrawing(drawing_id, p1, p2)
    if drawing_kind == DrawingKind.BOX:
        return BoxDrawing(drawing_id, p1, p2)
    if drawing_kind == DrawingKind.FIB:
        return FibDrawing(drawing_id, p1, p2)
    return RiskBoxDrawing(drawing_id, p1, p2, is_long=drawing_kind == DrawingKind.LONG_RISK_BOX)


def translate(drawing: Drawing, delta_time: int, delta_price: float) -> Drawing:
    return replace(
        drawing,
        p1=drawing.p1.shifted(delta_time, delta_price),
        p2=drawing.p2.shifted(delta_time, delta_price),
    )


def is_degenerate(drawing: Drawing) -> bool:
    if isinstance(drawing, LineDrawing):
        return drawing.p1 == drawing.p2
    if isinstance(drawing, FibDrawing):
        return drawing.p1.price == drawing.p2.price
    return drawing.p1.time == drawing.p2.time or drawing.p1.price == drawing.p2.price


def drawing_to_dict(drawing: Drawing) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": drawing.drawing_id,
        "kind": drawing.kind.value,
        "p1": drawing.p1.to_dict(),
        "p2": drawing.p2.to_dict(),
    }
    if isinstance(drawing, FibDrawing):
        payload["levels"] = [{"ratio": ratio, "price": price} for ratio, price in drawing.levels()]
    elif isinstance(drawing, RiskBoxDrawing):
        payload["stop_price"] = drawing.stop_price
        payload["target_price"] = drawing.target_price
        payload["reward_risk"] = drawing.reward_risk
    return payload


def drawing_from_dict(payload: dict[str, Any]) -> Drawing:
    return make_drawing(
        payload["kind"],
        str(payload["id"]),
        DomainPoint.from_dict(payload["p1"]),
        DomainPoint.from_dict(payload["p2"]),
    )


class CoordinateMapper(Protocol):
    def to_domain(self, pixel: Pixel) -> Optional[DomainPoint]:
        ...

    def to_pixel(self, point: DomainPoint) -> Optional[Pixel]:
        ...


@dataclass(frozen=True)
class LinearCoordinateMapper:
    """
    Linear viewport: time runs left to right over ``width`` pixels and price
    runs top to bottom over ``height`` pixels. Points outside the viewport map
    to ``None`` when ``clip`` is set, mirroring a chart scale that has no
    coordinate for off-screen values.
    """

    time_left: int
    time_right: int
    price_top: float
    price_bottom: float
    width: float
    height: float
    clip: bool = False

    def __post_init__(self) -> None:
        if self.time_right <= self.time_left:
            raise ValueError("time_right must be after time_left")
        if self.price_top == self.price_bottom:
            raise ValueError("price_top and price_bottom must differ")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("viewport width and height must be positive")

    def to_domain(self, pixel: Pixel) -> Optional[DomainPoint]:
        x, y = float(pixel[0]), float(pixel[1])
        if self.clip and not (0.0 <= x <= self.width and 0.0 <= y <= self.height):
            return None
        seconds_per_px = (self.time_right - self.time_left) / self.width
        price_per_px = (self.price_bottom - self.price_top) / self.height
        return DomainPoint(
            time=int(round(self.time_left + x * seconds_per_px)),
            price=round(self.price_top + y * price_per_px, PRICE_DECIMALS),
        )

    def to_pixel(self, point: DomainPoint) -> Optional[Pixel]:
        if self.clip and not (self.time_left <= point.time <= self.time_right):
            return None
        x = (point.time - self.time_left) * self.width / (self.time_right - self.time_left)
        y = (point.price - self.price_top) * self.height / (self.price_bottom - self.price_top)
        return (x, y)


def _segment_distance(px: float, py: float, a: Pixel, b: Pixel) -> float:
    ax, ay = a
    bx, by = b
    length_sq = (bx - ax) ** 2 + (by - ay) ** 2
    t = 0.0 if length_sq == 0 else max(0.0, min(1.0, ((px - ax) * (bx - ax) + (py - ay) * (by - ay)) / length_sq))
    return math.hypot(px - (ax + t * (bx - ax)), py - (ay + t * (by - ay)))


@dataclass
class _DragState:
    original: Drawing
    anchor: DomainPoint
    working: Drawing


class AnnotationLayer:
    """
    Owns the drawings of every instrument and the in-progress draw/drag
    interaction for the active one.

    Drawing is two-click: the first click fixes p1, pointer moves update a
    preview, the second click fixes p2 and commits. Shapes with no extent are
    dropped on commit.
    """

    def __init__(
        self,
        instrument: str,
        mapper: CoordinateMapper,
        *,
        hit_tolerance_px: float = DEFAULT_HIT_TOLERANCE_PX,
    ):
        self.instrument = normalize_instrument(instrument)
        self.mapper = mapper
        self.hit_tolerance_px = float(hit_tolerance_px)
        self._drawings: dict[str, list[Drawing]] = {}
        self._seq = 0
        self._armed_kind: DrawingKind | None = None
        self._preview: Drawing | None = None
        self._drag: _DragState | None = None
        self.hovered_id: str | None = None

    # ---- read access ----

    def drawings(self, instrument: str | None = None) -> tuple[Drawing, ...]:
        key = self.instrument if instrument is None else normalize_instrument(instrument)
        return tuple(self._drawings.get(key, ()))

    def get(self, drawing_id: str) -> Drawing | None:
        for drawing in self._drawings.get(self.instrument, ()):
            if drawing.drawing_id == drawing_id:
                return drawing
        return None

    @property
    def armed_kind(self) -> DrawingKind | None:
        return self._armed_kind

    @property
    def preview(self) -> Drawing | None:
        return self._preview

    @property
    def dragging(self) -> Drawing | None:
        return None if self._drag is None else self._drag.working

    def set_instrument(self, instrument: str) -> None:
        self.cancel_draw()
        self.cancel_drag()
        self.hovered_id = None
        self.instrument = normalize_instrument(instrument)

    def set_mapper(self, mapper: CoordinateMapper) -> None:
        self.mapper = mapper

    # ---- drawing ----

    def begin_draw(self, kind: DrawingKind | str) -> None:
        self.cancel_drag()
        self._armed_kind = DrawingKind.from_value(kind)
        self._preview = None

    def cancel_draw(self) -> None:
        self._armed_kind = None
        self._preview = None

    def click(self, pixel: Pixel) -> Drawing | None:
        """Feed a click while draw mode is armed. Returns the committed drawing on the second click."""
        if self._armed_kind is None:
            return None
        point = self.mapper.to_domain(pixel)
        if point is None:
            return None
        if self._preview is None:
            self._preview = make_drawing(self._armed_kind, self._peek_id(), point, point)
            return None
        candidate = replace(self._preview, p2=point)
        self.cancel_draw()
        return self._commit(candidate)

    def pointer_move(self, pixel: Pixel) -> None:
        if self._drag is not None:
            self.update_drag(pixel)
            return
        if self._preview is not None:
            point = self.mapper.to_domain(pixel)
            if point is not None:
                self._preview = replace(self._preview, p2=point)
            return
        if self._armed_kind is None:
            self.hovered_id = self.hit_test(pixel)

    def _commit(self, candidate: Drawing) -> Drawing | None:
        if is_degenerate(candidate):
            logger.debug("Discarded degenerate %s drawing", candidate.kind.value)
            return None
        drawing = replace(candidate, drawing_id=self._next_id())
        self._drawings.setdefault(self.instrument, []).append(drawing)
        logger.debug("Committed %s %s on %s", drawing.kind.value, drawing.drawing_id, self.instrument)
        return drawing

    # ---- hit testing ----

    def hit_test(self, pixel: Pixel) -> str | None:
        """Id of the topmost drawing under ``pixel``, or None."""
        px, py = float(pixel[0]), float(pixel[1])
        for drawing in reversed(self._drawings.get(self.instrument, [])):
            if self._hits(drawing, px, py):
                return drawing.drawing_id
        return None

    def _hits(self, drawing: Drawing, px: float, py: float) -> bool:
        a = self.mapper.to_pixel(drawing.p1)
        b = self.mapper.to_pixel(drawing.p2)
        if a is None or b is None:
            return False
        if isinstance(drawing, (LineDrawing, FibDrawing)):
            return _segment_distance(px, py, a, b) < self.hit_tolerance_px
        if isinstance(drawing, RiskBoxDrawing):
            stop = self.mapper.to_pixel(DomainPoint(drawing.p1.time, drawing.stop_price))
            if stop is None:
                return False
            ys = (a[1], b[1], stop[1])
            return min(a[0], b[0]) <= px <= max(a[0], b[0]) and min(ys) <= py <= max(ys)
        return min(a[0], b[0]) <= px <= max(a[0], b[0]) and min(a[1], b[1]) <= py <= max(a[1], b[1])

    # ---- dragging ----

    def begin_drag(self, drawing_id: str, pixel: Pixel) -> bool:
        drawing = self.get(drawing_id)
        anchor = self.mapper.to_domain(pixel)
        if drawing is None or anchor is None:
            return False
        self.cancel_draw()
        self._drag = _DragState(original=drawing, anchor=anchor, working=drawing)
        return True

    def update_drag(self, pixel: Pixel) -> Drawing | None:
        if self._drag is None:
            return None
        point = self.mapper.to_domain(pixel)
        if point is None:
            return self._drag.working
        state = self._drag
        state.working = translate(state.original, point.time - state.anchor.time, point.price - state.anchor.price)
        return state.working

    def end_drag(self) -> Drawing | None:
        state = self._drag
        self._drag = None
        if state is None:
            return None
        items = self._drawings.get(self.instrument, [])
        for idx, drawing in enumerate(items):
            if drawing.drawing_id == state.original.drawing_id:
                items[idx] = state.working
                return state.working
        return None

    def cancel_drag(self) -> None:
        self._drag = None

    # ---- management ----

    def remove(self, drawing_id: str) -> bool:
        items = self._drawings.get(self.instrument, [])
        for idx, drawing in enumerate(items):
            if drawing.drawing_id == drawing_id:
                del items[idx]
                if self._drag is not None and self._drag.original.drawing_id == drawing_id:
                    self._drag = None
                if self.hovered_id == drawing_id:
                    self.hovered_id = None
                return True
        return False

    def clear(self) -> None:
        self.cancel_drag()
        self._drawings.pop(self.instrument, None)
        self.hovered_id = None

    def to_dict(self, instrument: str | None = None) -> dict[str, Any]:
        key = self.instrument if instrument is None else normalize_instrument(instrument)
        return {
            "instrument": key,
            "drawings": [drawing_to_dict(drawing) for drawing in self._drawings.get(key, [])],
        }

    def load(self, payload: dict[str, Any]) -> int:
        """Replace one instrument's drawings with a serialized set; returns how many were loaded."""
        key = normalize_instrument(str(payload.get("instrument") or self.instrument))
        loaded = self._parse_items(payload.get("drawings") or [])
        self._drawings[key] = loaded
        return len(loaded)

    def _parse_items(self, items: Iterable[dict[str, Any]]) -> list[Drawing]:
        loaded: list[Drawing] = []
        for item in items:
            try:
                drawing = drawing_from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable drawing %s: %s", item, exc)
                continue
            if is_degenerate(drawing):
                continue
            loaded.append(drawing)
            digits = drawing.drawing_id.lstrip("D")
            if digits.isdigit():
                self._seq = max(self._seq, int(digits))
        return loaded

    def _peek_id(self) -> str:
        return f"D{self._seq + 1:06d}"

    def _next_id(self) -> str:
        self._seq += 1
        return f"D{self._seq:06d}"
