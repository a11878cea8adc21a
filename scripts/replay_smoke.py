from __future__ import annotations

from signal_tracker.evaluator import apply_tick, evaluated_state, replay
from signal_tracker.models import PriceObservation, new_signal
from signal_tracker.winrate import score


def make(direction="LONG", targets=(10, 12, 15), sl=8.0):
    return new_signal(
        direction=direction,
        pair="BTC/USDT",
        targets=list(targets),
        stop_loss=sl,
        entry_min=9.0,
        entry_max=9.5,
        signal_id="smoke",
        created_at_ms=0,
    )


def obs(ts: int, price: float) -> PriceObservation:
    return PriceObservation(price=price, observed_at_ms=ts)


def show(name: str, sig) -> None:
    reached = [i + 1 for i, t in enumerate(sig.targets) if t.reached]
    print(f"{name}: status={sig.status} reached=TP{reached} score={score(sig)} current={sig.current_price}")


def main():
    # A: long, TP1 then a jump through TP2 and TP3
    a = make()
    apply_tick(a, obs(1, 10))
    show("A tick 10", a)
    apply_tick(a, obs(2, 15))
    show("A tick 15", a)

    # B: short, price lands on the stop loss
    b = make("SHORT", targets=(90,), sl=105)
    apply_tick(b, obs(1, 105))
    show("B tick 105", b)

    # C: edit first observation then replay
    c = make()
    apply_tick(c, obs(1, 9))
    apply_tick(c, obs(2, 11))
    c.price_history[0] = obs(1, 13)
    replay(c)
    show("C replay", c)

    # D: replay halts on the stop loss
    d = make(sl=9.5)
    d.price_history = [obs(1, 11), obs(2, 7)]
    replay(d)
    show("D replay", d)

    print("replay idempotent:", evaluated_state(replay(c)) == evaluated_state(replay(c)))


if __name__ == "__main__":
    main()
