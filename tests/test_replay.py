import copy

from signal_tracker.evaluator import apply_tick, check_invariants, evaluated_state, replay
from signal_tracker.models import ACTIVE, PARTIAL, STOPPED, UPDATE, PriceObservation, new_signal


def _sig(targets=(10, 12, 15), sl=8.0, direction="LONG"):
    return new_signal(
        direction=direction,
        pair="ETH/USDT",
        targets=list(targets),
        stop_loss=sl,
        entry_min=9.0,
        entry_max=9.5,
        signal_id="sig-r",
        created_at_ms=0,
    )


def _o(ts: int, price: float) -> PriceObservation:
    return PriceObservation(price=price, observed_at_ms=ts)


def test_replay_after_edit_reaches_two_targets():
    s = _sig()
    apply_tick(s, _o(1_000, 9))
    apply_tick(s, _o(2_000, 11))
    assert s.reached_count == 1
    assert s.targets[0].reached_at_ms == 2_000

    s.price_history[0] = _o(1_000, 13)
    replay(s)

    assert s.reached_count == 2
    assert s.status == PARTIAL
    assert [t.reached_at_ms for t in s.targets] == [1_000, 1_000, None]
    assert s.current_price == 11
    check_invariants(s)


def test_replay_halts_on_stop_loss():
    s = _sig(sl=9.5)
    s.price_history = [_o(1_000, 11), _o(2_000, 7)]
    replay(s)
    assert s.status == STOPPED
    assert s.reached_count == 1
    assert s.current_price == 7


def test_replay_ignores_observations_after_stop():
    s = _sig(sl=9.5)
    s.price_history = [_o(3_000, 20), _o(1_000, 9), _o(2_000, 11)]
    replay(s)
    # t=1000 stops the walk before the TP-reaching prices
    assert s.status == STOPPED
    assert s.reached_count == 0
    # current price follows insertion order
    assert s.current_price == 11


def test_replay_is_idempotent():
    s = _sig()
    s.price_history = [_o(2_000, 12.5), _o(1_000, 10.2), _o(3_000, 9.1)]
    once = evaluated_state(replay(s))
    twice = evaluated_state(replay(s))
    assert once == twice


def test_replay_is_insertion_order_invariant():
    obs = [_o(1_000, 10.5), _o(2_000, 12.1), _o(3_000, 7.9)]

    forward = _sig()
    for o in obs:
        apply_tick(forward, o)

    reversed_insert = _sig()
    reversed_insert.price_history = list(reversed(obs))
    replay(reversed_insert)

    chronological = _sig()
    chronological.price_history = list(obs)
    replay(chronological)

    fwd_targets = [(t.reached, t.reached_at_ms) for t in forward.targets]
    assert [(t.reached, t.reached_at_ms) for t in reversed_insert.targets] == fwd_targets
    assert [(t.reached, t.reached_at_ms) for t in chronological.targets] == fwd_targets
    assert reversed_insert.status == chronological.status == forward.status == STOPPED


def test_equal_timestamps_break_ties_by_insertion():
    a = _sig(sl=9.5)
    a.price_history = [_o(1_000, 11), _o(1_000, 9)]
    replay(a)
    assert a.status == STOPPED
    assert a.reached_count == 1

    b = _sig(sl=9.5)
    b.price_history = [_o(1_000, 9), _o(1_000, 11)]
    replay(b)
    assert b.status == STOPPED
    assert b.reached_count == 0


def test_replay_reopens_stopped_signal_when_history_changes():
    s = _sig(sl=9.5)
    apply_tick(s, _o(1_000, 9))
    assert s.status == STOPPED

    del s.price_history[0]
    replay(s)
    assert s.status == ACTIVE
    assert s.current_price is None
    assert all(not t.reached for t in s.targets)


def test_replay_logs_recompute_entry():
    s = _sig()
    s.price_history = [_o(1_000, 10)]
    before = copy.deepcopy(s.updates)
    replay(s, at_ms=5_000)
    new = s.updates[len(before):]
    assert new[0].type == UPDATE
    assert new[0].timestamp_ms == 5_000
    assert "1 price point" in new[0].message
