from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from numbers import Real
from typing import List, Optional

from .errors import InvalidObservation
from .models import (
    ACTIVE,
    COMPLETED,
    PARTIAL,
    SL_HIT,
    STATUSES,
    STOPPED,
    TP_REACHED,
    UPDATE,
    PriceObservation,
    Signal,
    SignalUpdate,
    format_price,
)

log = logging.getLogger("evaluator")


@dataclass(frozen=True)
class TickResult:
    signal: Signal
    newly_reached: int
    stop_loss_hit: bool


def validate_price(price) -> float:
    if isinstance(price, bool) or not isinstance(price, Real):
        raise InvalidObservation(f"price must be a number, got {price!r}")
    p = float(price)
    if not math.isfinite(p) or p <= 0:
        raise InvalidObservation(f"price must be a finite positive number, got {price!r}")
    return p


def target_hit(is_long: bool, price: float, level: float) -> bool:
    return price >= level if is_long else price <= level


def stop_loss_hit(is_long: bool, price: float, stop_loss: float) -> bool:
    return price <= stop_loss if is_long else price >= stop_loss


def derive_status(reached_count: int, total_targets: int, sl_hit: bool = False) -> str:
    if sl_hit:
        return STOPPED
    if reached_count == 0:
        return ACTIVE
    if reached_count == total_targets:
        return COMPLETED
    return PARTIAL


def _reach_targets(signal: Signal, obs: PriceObservation) -> int:
    """Mark every unreached target the price crosses; returns how many flipped."""
    reached = 0
    for i, target in enumerate(signal.targets):
        if target.reached:
            continue
        if target_hit(signal.is_long, obs.price, target.level):
            target.reached = True
            target.reached_at_ms = obs.observed_at_ms
            reached += 1
            signal.updates.append(SignalUpdate(
                message=f"TP{i + 1} reached at price {format_price(obs.price)}",
                type=TP_REACHED,
                timestamp_ms=obs.observed_at_ms,
            ))
    signal.reached_count += reached
    return reached


def _mark_stopped(signal: Signal, obs: PriceObservation) -> None:
    signal.status = STOPPED
    signal.updates.append(SignalUpdate(
        message=f"Stop loss hit at price {format_price(obs.price)}",
        type=SL_HIT,
        timestamp_ms=obs.observed_at_ms,
    ))


def apply_tick(signal: Signal, obs: PriceObservation) -> TickResult:
    """Apply one new observation to the signal in place.

    The observation is always appended and becomes ``current_price``.
    A STOPPED signal keeps its targets and status untouched.
    """
    price = validate_price(obs.price)
    if price != obs.price:
        obs = PriceObservation(price=price, observed_at_ms=obs.observed_at_ms)

    signal.price_history.append(obs)
    signal.current_price = obs.price

    if signal.status == STOPPED:
        return TickResult(signal=signal, newly_reached=0, stop_loss_hit=False)

    newly = _reach_targets(signal, obs)
    signal.status = derive_status(signal.reached_count, len(signal.targets))

    hit = stop_loss_hit(signal.is_long, obs.price, signal.stop_loss)
    if hit:
        _mark_stopped(signal, obs)

    return TickResult(signal=signal, newly_reached=newly, stop_loss_hit=hit)


def reset(signal: Signal) -> None:
    for target in signal.targets:
        target.reached = False
        target.reached_at_ms = None
    signal.reached_count = 0
    signal.status = ACTIVE


def replay(signal: Signal, *, at_ms: Optional[int] = None) -> Signal:
    """Rebuild targets, reached count and status from the stored history.

    Observations are walked in time order (stable on insertion order);
    the walk halts at the first stop-loss breach. Storage order of
    ``price_history`` is left as is.
    """
    reset(signal)
    ordered = signal.sorted_history()
    ts = at_ms if at_ms is not None else (ordered[-1].observed_at_ms if ordered else signal.updated_at_ms)
    signal.updates.append(SignalUpdate(
        message=f"Recomputed from {len(ordered)} price point(s)",
        type=UPDATE,
        timestamp_ms=ts,
    ))

    processed = 0
    for obs in ordered:
        processed += 1
        _reach_targets(signal, obs)
        signal.status = derive_status(signal.reached_count, len(signal.targets))
        if stop_loss_hit(signal.is_long, obs.price, signal.stop_loss):
            _mark_stopped(signal, obs)
            break

    signal.current_price = signal.price_history[-1].price if signal.price_history else None
    log.debug(
        "replay_done id=%s observations=%d processed=%d reached=%d status=%s",
        signal.id, len(ordered), processed, signal.reached_count, signal.status,
    )
    return signal


def check_invariants(signal: Signal) -> None:
    reached = sum(1 for t in signal.targets if t.reached)
    assert signal.reached_count == reached, (
        f"signal {signal.id}: reached_count={signal.reached_count} but {reached} target(s) reached"
    )
    assert 0 <= signal.reached_count <= len(signal.targets), f"signal {signal.id}: reached_count out of range"
    assert signal.status in STATUSES, f"signal {signal.id}: unknown status {signal.status!r}"
    if signal.status == COMPLETED:
        assert signal.reached_count == len(signal.targets), f"signal {signal.id}: COMPLETED with open targets"
    for t in signal.targets:
        assert t.reached == (t.reached_at_ms is not None), f"signal {signal.id}: reached/reached_at mismatch"


def evaluated_state(signal: Signal) -> tuple:
    """Snapshot of everything the evaluator derives, for comparisons."""
    targets: List[tuple] = [(t.level, t.reached, t.reached_at_ms) for t in signal.targets]
    return (tuple(targets), signal.reached_count, signal.status, signal.current_price)
