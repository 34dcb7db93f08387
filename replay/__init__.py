"""Market replay and trade-simulation sandbox."""

from .annotations import (
    AnnotationLayer,
    BoxDrawing,
    CoordinateMapper,
    DomainPoint,
    DrawingKind,
    FibDrawing,
    LinearCoordinateMapper,
    LineDrawing,
    RiskBoxDrawing,
)
from .calendar import CalendarEvent, generate_events, visible_events
from .clock import AsyncioTicker, ManualTicker, ReloadRequest, ReplayClock, Ticker
from .config import ReplayConfig
from .errors import HistoryLoadError, InvalidOrderState, OrderRejected, ReplayError, UnknownOrder
from .feed import CandleSource, SyntheticFeed, generate_candles
from .models import (
    AccountView,
    Candle,
    CandleSlice,
    ChartMarker,
    EngineEvent,
    OrderKind,
    OrderStatus,
    PositionView,
    PriceQuote,
)
from .resampler import ResampleCache, resample, visible_series
from .session import KEY_BINDINGS, EngineState, OrderTicket, ReplaySession
from .stats import build_performance_summary
from .store import SessionStore
from .trading import TradingEngine

__all__ = [
    "AnnotationLayer",
    "BoxDrawing",
    "CoordinateMapper",
    "DomainPoint",
    "DrawingKind",
    "FibDrawing",
    "LinearCoordinateMapper",
    "LineDrawing",
    "RiskBoxDrawing",
    "CalendarEvent",
    "generate_events",
    "visible_events",
    "AsyncioTicker",
    "ManualTicker",
    "ReloadRequest",
    "ReplayClock",
    "Ticker",
    "ReplayConfig",
    "ReplayError",
    "OrderRejected",
    "UnknownOrder",
    "InvalidOrderState",
    "HistoryLoadError",
    "CandleSource",
    "SyntheticFeed",
    "generate_candles",
    "Candle",
    "CandleSlice",
    "OrderKind",
    "OrderStatus",
    "PriceQuote",
    "AccountView",
    "PositionView",
    "EngineEvent",
    "ChartMarker",
    "resample",
    "visible_series",
    "ResampleCache",
    "KEY_BINDINGS",
    "EngineState",
    "OrderTicket",
    "ReplaySession",
    "build_performance_summary",
    "SessionStore",
    "TradingEngine",
]
