"""Exceptions raised by the replay sandbox."""

from __future__ import annotations


class ReplayError(Exception):
    """Base class for replay sandbox errors."""


class OrderRejected(ReplayError):
    """Placement refused by account policy; the ledger was not touched."""

    def __init__(self, reason: str, required_margin: float | None = None, free_margin: float | None = None):
        message = reason
        if required_margin is not None and free_margin is not None:
            message = f"{reason}: required {required_margin:.2f}, available {free_margin:.2f}"
        super().__init__(message)
        self.reason = reason
        self.required_margin = required_margin
        self.free_margin = free_margin


class UnknownOrder(ReplayError, KeyError):
    def __init__(self, order_id: str):
        super().__init__(order_id)
        self.order_id = order_id

    def __str__(self) -> str:
        return f"Unknown order id: {self.order_id}"


class InvalidOrderState(ReplayError):
    """Command not allowed in the order's current lifecycle state."""


class HistoryLoadError(ReplayError):
    """The candle feed could not produce the requested window."""
