from __future__ import annotations

import pytest

from conftest import T0, bar
from replay.errors import InvalidOrderState, OrderRejected, UnknownOrder
from replay.models import OrderKind, OrderStatus
from replay.trading import TradingEngine


def _engine(**kwargs) -> TradingEngine:
    engine = TradingEngine("EUR_USD", **kwargs)
    engine.on_tick(bar(T0, 1.0800))
    return engine


def _tick(engine: TradingEngine, minute: int, price: float):
    return engine.on_tick(bar(T0 + minute * 60, price))


def test_quote_adds_spread_to_bid():
    engine = _engine()
    quote = engine.quote
    assert quote.bid == pytest.approx(1.0800)
    assert quote.ask == pytest.approx(1.08015)


def test_market_order_opens_immediately():
    engine = _engine()
    view = engine.place_order("buy", 1.0, 1.0800, 1.0780, 1.0840)

    assert view.status == OrderStatus.OPEN.value
    assert view.order_id == "O000001"
    assert view.entry_time == T0
    assert view.commission == pytest.approx(7.0)
    assert view.side == "LONG"


def test_stop_loss_closes_long_at_stop_price():
    engine = _engine()
    order = engine.place_order("buy", 1.0, 1.0800, 1.0780)

    _tick(engine, 1, 1.0790)
    assert engine.get(order.order_id).status == OrderStatus.OPEN.value
    events = _tick(engine, 2, 1.0780)

    closed = engine.get(order.order_id)
    assert closed.status == OrderStatus.CLOSED.value
    assert closed.exit_price == pytest.approx(1.0780)
    assert closed.exit_reason == "SL"
    assert closed.exit_time == T0 + 120
    assert closed.realized_pnl == pytest.approx(-207.0)
    assert engine.balance == pytest.approx(100_000.0 - 207.0)
    assert [event.event_type for event in events] == ["POSITION_CLOSED"]


def test_take_profit_closes_short_on_ask():
    engine = _engine(commission_per_lot=0.0)
    order = engine.place_order("sell", 2.0, 1.0800, None, 1.0780)

    # ask = 1.07815, still above the target
    _tick(engine, 1, 1.0780)
    assert engine.get(order.order_id).status == OrderStatus.OPEN.value

    _tick(engine, 2, 1.0778)
    closed = engine.get(order.order_id)
    assert closed.exit_reason == "TP"
    assert closed.realized_pnl == pytest.approx(400.0)


def test_short_stop_uses_ask():
    engine = _engine()
    order = engine.place_order("sell", 1.0, 1.0800, 1.0820)

    _tick(engine, 1, 1.0819)

    closed = engine.get(order.order_id)
    assert closed.exit_reason == "SL"
    assert closed.realized_pnl == pytest.approx(-207.0)


def test_stop_has_priority_over_target_in_same_tick():
    engine = _engine()
    order = engine.place_order("buy", 1.0, 1.0800, 1.0790, 1.0780)

    _tick(engine, 1, 1.0785)

    assert engine.get(order.order_id).exit_reason == "SL"


def test_buy_limit_fills_at_quoted_price():
    engine = _engine()
    order = engine.place_order("buy_limit", 1.0, 1.0750)
    assert order.status == OrderStatus.PENDING.value

    _tick(engine, 1, 1.0760)
    assert engine.get(order.order_id).status == OrderStatus.PENDING.value

    events = _tick(engine, 2, 1.0740)
    filled = engine.get(order.order_id)
    assert filled.status == OrderStatus.OPEN.value
    assert filled.entry_price == 1.0750
    assert filled.entry_time == T0 + 120
    assert [event.event_type for event in events] == ["ORDER_TRIGGERED"]


@pytest.mark.parametrize(
    "kind, entry, untouched, touched",
    [
        ("sell_limit", 1.0850, 1.0840, 1.0851),
        ("buy_stop", 1.0850, 1.0840, 1.0849),
        ("sell_stop", 1.0750, 1.0760, 1.0750),
    ],
)
def test_pending_trigger_rules(kind, entry, untouched, touched):
    engine = _engine()
    order = engine.place_order(kind, 1.0, entry)

    _tick(engine, 1, untouched)
    assert engine.get(order.order_id).status == OrderStatus.PENDING.value
    _tick(engine, 2, touched)
    assert engine.get(order.order_id).status == OrderStatus.OPEN.value
    assert engine.get(order.order_id).entry_price == entry


def test_pending_orders_hold_no_margin():
    engine = _engine()
    engine.place_order("buy_limit", 5.0, 1.0700)
    assert engine.account.used_margin == 0.0


def test_insufficient_margin_rejects_without_mutation():
    engine = _engine(starting_balance=10_000.0)
    before_account = engine.account
    before_positions = engine.positions()

    with pytest.raises(OrderRejected) as excinfo:
        engine.place_order("buy", 50.0, 1.0)

    assert excinfo.value.reason == "insufficient_margin"
    assert excinfo.value.required_margin == pytest.approx(50_000.0)
    assert excinfo.value.free_margin == pytest.approx(10_000.0)
    assert engine.positions() == before_positions == ()
    assert engine.account == before_account

    # the sequence was not consumed either
    assert engine.place_order("buy", 1.0, 1.08).order_id == "O000001"


@pytest.mark.parametrize("lots, price, reason", [(0.0, 1.08, "invalid_lot_size"), (1.0, 0.0, "invalid_price")])
def test_invalid_placements_are_rejected(lots, price, reason):
    engine = _engine()
    with pytest.raises(OrderRejected) as excinfo:
        engine.place_order("buy", lots, price)
    assert excinfo.value.reason == reason


def test_order_needs_a_quote():
    engine = TradingEngine("EUR_USD")
    with pytest.raises(OrderRejected):
        engine.place_order("buy", 1.0, 1.08)


def test_account_refresh_tracks_floating_pnl():
    engine = _engine()
    engine.place_order("buy", 1.0, 1.0800)

    _tick(engine, 1, 1.0810)

    account = engine.account
    assert account.unrealized_pnl == pytest.approx(93.0)
    assert account.used_margin == pytest.approx(1080.0)
    assert account.equity == pytest.approx(100_093.0)
    assert account.free_margin == pytest.approx(100_093.0 - 1080.0)


@pytest.mark.parametrize(
    "kind, exit_price, positive",
    [("buy", 1.0820, True), ("buy", 1.0780, False), ("sell", 1.0780, True), ("sell", 1.0820, False)],
)
def test_realized_sign_follows_price_direction(kind, exit_price, positive):
    engine = _engine(commission_per_lot=0.0, spread_pips=0.0)
    order = engine.place_order(kind, 1.0, 1.0800)
    _tick(engine, 1, exit_price)

    closed = engine.close_position(order.order_id)

    assert (closed.realized_pnl > 0) is positive
    assert (closed.gross_pnl > 0) is positive


def test_manual_close_uses_bid_for_long_and_ask_for_short():
    engine = _engine()
    long_order = engine.place_order("buy", 1.0, 1.0800)
    short_order = engine.place_order("sell", 1.0, 1.0800)
    _tick(engine, 1, 1.0810)

    assert engine.close_position(long_order.order_id).exit_price == pytest.approx(1.0810)
    assert engine.close_position(short_order.order_id).exit_price == pytest.approx(1.08115)
    assert engine.account.used_margin == 0.0


def test_closed_records_never_change():
    engine = _engine()
    order = engine.place_order("buy", 1.0, 1.0800, 1.0790)
    _tick(engine, 1, 1.0785)
    snapshot = engine.get(order.order_id)

    _tick(engine, 2, 1.0700)
    _tick(engine, 3, 1.0900)
    with pytest.raises(InvalidOrderState):
        engine.close_position(order.order_id)
    with pytest.raises(InvalidOrderState):
        engine.partial_close(order.order_id)
    with pytest.raises(InvalidOrderState):
        engine.move_to_breakeven(order.order_id)
    with pytest.raises(InvalidOrderState):
        engine.annotate(order.order_id, note="too late")

    assert engine.get(order.order_id) == snapshot


def test_partial_close_splits_position():
    engine = _engine()
    order = engine.place_order("buy", 1.0, 1.0800, tags=["london"], playbook="breakout")
    _tick(engine, 1, 1.0810)

    closed_half = engine.partial_close(order.order_id)
    remainder = engine.get(order.order_id)

    assert closed_half.status == OrderStatus.CLOSED.value
    assert closed_half.parent_id == order.order_id
    assert closed_half.lot_size == pytest.approx(0.5)
    assert closed_half.exit_reason == "PARTIAL"
    assert closed_half.commission == pytest.approx(3.5)
    assert closed_half.realized_pnl == pytest.approx(46.5)
    assert closed_half.playbook == "breakout"

    assert remainder.status == OrderStatus.OPEN.value
    assert remainder.lot_size == pytest.approx(0.5)
    assert remainder.commission == pytest.approx(3.5)
    assert engine.balance == pytest.approx(100_046.5)
    assert engine.account.used_margin == pytest.approx(540.0)


def test_partial_close_requires_open_position():
    engine = _engine()
    pending = engine.place_order("buy_limit", 1.0, 1.07)
    with pytest.raises(InvalidOrderState):
        engine.partial_close(pending.order_id)


def test_move_to_breakeven():
    engine = _engine()
    order = engine.place_order("buy", 1.0, 1.0800, 1.0780)
    pending = engine.place_order("buy_limit", 1.0, 1.0700, 1.0690)

    assert engine.move_to_breakeven(order.order_id).stop_loss == 1.0800
    with pytest.raises(InvalidOrderState):
        engine.move_to_breakeven(pending.order_id)

    _tick(engine, 1, 1.0799)
    assert engine.get(order.order_id).exit_reason == "SL"
    assert engine.get(order.order_id).realized_pnl == pytest.approx(-7.0)


def test_close_all_only_touches_open_positions():
    engine = _engine()
    engine.place_order("buy", 1.0, 1.0800)
    engine.place_order("sell", 1.0, 1.0800)
    pending = engine.place_order("sell_limit", 1.0, 1.0900)

    closed = engine.close_all()

    assert len(closed) == 2
    assert engine.get(pending.order_id).status == OrderStatus.PENDING.value


def test_unknown_order_is_a_key_error():
    engine = _engine()
    with pytest.raises(KeyError):
        engine.close_position("O999999")
    with pytest.raises(UnknownOrder):
        engine.get("nope")


def test_annotate_updates_journal_fields():
    engine = _engine()
    order = engine.place_order("buy_limit", 1.0, 1.07)

    view = engine.annotate(order.order_id, tags=["fomc", " "], note="fade the spike", playbook="reversal")

    assert view.tags == ("fomc",)
    assert view.note == "fade the spike"
    assert view.playbook == "reversal"


def test_reset_balance_and_leverage():
    engine = _engine()
    engine.place_order("buy", 1.0, 1.0800)

    assert engine.set_leverage(50).used_margin == pytest.approx(2160.0)
    assert engine.reset_balance(20_000).balance == 20_000
    with pytest.raises(ValueError):
        engine.set_leverage(0)


def test_markers_are_sorted_and_describe_exits():
    engine = _engine()
    order = engine.place_order("buy", 1.0, 1.0800, None, 1.0810)
    engine.place_order("sell_limit", 1.0, 1.0900)
    _tick(engine, 5, 1.0812)

    markers = engine.markers()

    assert [marker.time for marker in markers] == sorted(marker.time for marker in markers)
    entry, exit_marker = markers
    assert entry.order_id == order.order_id
    assert entry.shape == "arrowUp"
    assert entry.position == "belowBar"
    assert exit_marker.shape == "circle"
    assert exit_marker.profitable is True


def test_state_round_trip_preserves_ledger():
    engine = _engine()
    engine.place_order("buy", 1.0, 1.0800, 1.0700, tags=["a"])
    closed = engine.place_order("sell", 1.0, 1.0800)
    engine.close_position(closed.order_id)
    engine.place_order("buy_stop", 1.0, 1.0900)

    restored = TradingEngine("EUR_USD")
    restored.restore_state(engine.to_state())
    restored.on_tick(bar(T0, 1.0800))

    assert restored.positions() == engine.positions()
    assert restored.balance == pytest.approx(engine.balance)
    assert restored.place_order("buy", 0.1, 1.08).order_id == "O000004"


def test_restore_rejects_other_instrument():
    engine = _engine()
    with pytest.raises(ValueError):
        TradingEngine("GBP_USD").restore_state(engine.to_state())


def test_repeated_tick_does_not_stop_out_a_fresh_fill():
    engine = _engine()
    order = engine.place_order("buy_limit", 1.0, 1.0750, 1.0720)

    _tick(engine, 1, 1.0700)
    _tick(engine, 1, 1.0700)

    assert engine.get(order.order_id).status == OrderStatus.OPEN.value
    closed = _tick(engine, 2, 1.0700)
    assert [event.event_type for event in closed] == ["POSITION_CLOSED"]
    assert engine.get(order.order_id).exit_reason == "SL"


def test_order_kind_members_are_accepted():
    engine = _engine()
    view = engine.place_order(OrderKind.SELL_STOP, 0.5, 1.0750)

    assert view.kind == "sell_stop"
    assert OrderKind.from_value(OrderKind.BUY) is OrderKind.BUY
    assert OrderKind.from_value(" Buy_Limit ") is OrderKind.BUY_LIMIT
