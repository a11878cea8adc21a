from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Union

from .errors import InvalidObservation, InvalidSignal, PersistenceConflict
from .evaluator import apply_tick, check_invariants, derive_status, replay, validate_price
from .models import (
    SL_HIT,
    STOPPED,
    TP_REACHED,
    PriceObservation,
    Signal,
    SignalUpdate,
    is_evaluable,
    now_ms,
)
from .store import SignalStore

log = logging.getLogger("service")

Timestamp = Union[int, float, datetime, None]


@dataclass(frozen=True)
class ApplyResult:
    signal: Signal
    newly_reached: int
    skipped: bool = False


def to_ms(ts: Timestamp, clock: Callable[[], int]) -> int:
    if ts is None:
        return clock()
    if isinstance(ts, datetime):
        return int(ts.timestamp() * 1000)
    if isinstance(ts, bool) or not isinstance(ts, (int, float)):
        raise InvalidObservation(f"timestamp must be epoch milliseconds or datetime, got {ts!r}")
    return int(ts)


class SignalService:
    """Load -> evaluate -> save as one unit per signal.

    Work on the same signal id is serialized by an in-process lock; a
    version conflict from the store is retried once against fresh state.
    """

    def __init__(self, store: SignalStore, *, alerts=None, clock: Callable[[], int] = now_ms):
        self.store = store
        self.alerts = alerts
        self.clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, signal_id: str) -> asyncio.Lock:
        lock = self._locks.get(signal_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[signal_id] = lock
        return lock

    async def create_signal(self, signal: Signal) -> Signal:
        check_invariants(signal)
        saved = await self.store.insert(signal)
        log.info("signal_created id=%s pair=%s direction=%s targets=%d", saved.id, saved.pair, saved.direction, len(saved.targets))
        return saved

    async def get(self, signal_id: str) -> Signal:
        return await self.store.get(signal_id)

    async def delete_signal(self, signal_id: str) -> None:
        async with self._lock_for(signal_id):
            await self.store.delete(signal_id)
        log.info("signal_deleted id=%s", signal_id)

    async def _mutate(self, signal_id: str, fn: Callable[[Signal], object]):
        """Run ``fn`` on freshly loaded state and persist; returns (signal, fn result, new updates)."""
        lock = self._lock_for(signal_id)
        async with lock:
            for attempt in (1, 2):
                signal = await self.store.get(signal_id)
                before = len(signal.updates)
                out = fn(signal)
                if out is None:
                    return signal, None, []
                check_invariants(signal)
                signal.updated_at_ms = self.clock()
                try:
                    await self.store.save(signal)
                except PersistenceConflict as e:
                    if attempt == 2:
                        raise
                    log.warning("persistence_conflict id=%s retrying err=%s", signal_id, e)
                    continue
                return signal, out, signal.updates[before:]

    async def _dispatch(self, signal: Signal, updates: List[SignalUpdate]) -> None:
        if self.alerts is None or not updates:
            return
        try:
            await self.alerts.dispatch(signal, updates)
        except Exception as e:
            log.exception("alert_dispatch_failed id=%s err=%s", signal.id, e)

    async def apply_observation(
        self,
        signal_id: str,
        price,
        timestamp: Timestamp = None,
        *,
        require_evaluable: bool = False,
    ) -> ApplyResult:
        """Tick one price into a signal.

        ``require_evaluable`` is the scheduled path: signals that left
        ACTIVE/PARTIAL since they were listed are skipped untouched.
        """
        obs = PriceObservation(price=validate_price(price), observed_at_ms=to_ms(timestamp, self.clock))

        def _tick(signal: Signal):
            if require_evaluable and not is_evaluable(signal.status):
                return None
            return apply_tick(signal, obs)

        signal, result, updates = await self._mutate(signal_id, _tick)
        if result is None:
            log.debug("tick_skipped id=%s status=%s", signal_id, signal.status)
            return ApplyResult(signal=signal, newly_reached=0, skipped=True)

        if result.newly_reached > 0:
            log.info("targets_reached id=%s pair=%s price=%s count=%d status=%s",
                     signal.id, signal.pair, obs.price, result.newly_reached, signal.status)
        if result.stop_loss_hit:
            log.info("stop_loss_hit id=%s pair=%s price=%s", signal.id, signal.pair, obs.price)
        log.info("price_updated id=%s pair=%s price=%s status=%s history=%d",
                 signal.id, signal.pair, obs.price, signal.status, len(signal.price_history))

        await self._dispatch(signal, updates)
        return ApplyResult(signal=signal, newly_reached=result.newly_reached)

    # manual entry is a tick with a caller-chosen timestamp
    add_price = apply_observation

    async def replay_from_history(self, signal_id: str) -> Signal:
        prior = {}

        def _replay(signal: Signal):
            prior.update(_outcome(signal))
            return replay(signal, at_ms=self.clock())

        signal, _, updates = await self._mutate(signal_id, _replay)
        updates = _changed_outcomes(signal, updates, prior)
        log.info("signal_replayed id=%s observations=%d reached=%d status=%s",
                 signal.id, len(signal.price_history), signal.reached_count, signal.status)
        await self._dispatch(signal, updates)
        return signal

    async def edit_price(self, signal_id: str, index: int, *, price=None, timestamp: Timestamp = None) -> Signal:
        """Rewrite one stored observation (by storage index) and replay."""
        new_price = validate_price(price) if price is not None else None
        new_ts = to_ms(timestamp, self.clock) if timestamp is not None else None

        prior = {}

        def _edit(signal: Signal):
            _check_index(signal, index)
            prior.update(_outcome(signal))
            old = signal.price_history[index]
            signal.price_history[index] = PriceObservation(
                price=new_price if new_price is not None else old.price,
                observed_at_ms=new_ts if new_ts is not None else old.observed_at_ms,
            )
            return replay(signal, at_ms=self.clock())

        signal, _, updates = await self._mutate(signal_id, _edit)
        updates = _changed_outcomes(signal, updates, prior)
        log.info("price_edited id=%s index=%d status=%s reached=%d", signal_id, index, signal.status, signal.reached_count)
        await self._dispatch(signal, updates)
        return signal

    async def delete_price(self, signal_id: str, index: int) -> Signal:
        prior = {}

        def _delete(signal: Signal):
            _check_index(signal, index)
            prior.update(_outcome(signal))
            del signal.price_history[index]
            return replay(signal, at_ms=self.clock())

        signal, _, updates = await self._mutate(signal_id, _delete)
        updates = _changed_outcomes(signal, updates, prior)
        log.info("price_deleted id=%s index=%d status=%s reached=%d", signal_id, index, signal.status, signal.reached_count)
        await self._dispatch(signal, updates)
        return signal

    async def mark_target_reached(self, signal_id: str, index: int, timestamp: Timestamp = None) -> Signal:
        """Flag one target reached by hand, without a price observation.

        Already-reached targets are left as is (no write). A STOPPED
        signal keeps its status. A later replay recomputes targets from
        price history only, so a manual mark does not survive it.
        """
        at_ms = to_ms(timestamp, self.clock)

        def _mark(signal: Signal):
            if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(signal.targets):
                raise InvalidSignal(f"target index {index!r} out of range for signal {signal.id}")
            target = signal.targets[index]
            if target.reached:
                return None
            target.reached = True
            target.reached_at_ms = at_ms
            signal.reached_count += 1
            if signal.status != STOPPED:
                signal.status = derive_status(signal.reached_count, len(signal.targets))
            signal.updates.append(SignalUpdate(
                message=f"TP{index + 1} marked reached manually",
                type=TP_REACHED,
                timestamp_ms=at_ms,
            ))
            return signal

        signal, out, updates = await self._mutate(signal_id, _mark)
        if out is None:
            log.debug("target_already_reached id=%s index=%d", signal_id, index)
            return signal
        log.info("target_marked id=%s index=%d reached=%d status=%s", signal_id, index, signal.reached_count, signal.status)
        await self._dispatch(signal, updates)
        return signal


def _outcome(signal: Signal) -> dict:
    return {
        "reached": {i for i, t in enumerate(signal.targets) if t.reached},
        "stopped": signal.status == STOPPED,
    }


def _changed_outcomes(signal: Signal, updates: List[SignalUpdate], prior: dict) -> List[SignalUpdate]:
    """Drop replay entries that restate an outcome already alerted before the replay."""
    fresh = {f"TP{i + 1} " for i, t in enumerate(signal.targets) if t.reached and i not in prior["reached"]}
    out = []
    for u in updates:
        if u.type == TP_REACHED and any(u.message.startswith(p) for p in fresh):
            out.append(u)
        elif u.type == SL_HIT and not prior["stopped"]:
            out.append(u)
    return out


def _check_index(signal: Signal, index: int) -> None:
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(signal.price_history):
        raise InvalidObservation(f"price history index {index!r} out of range for signal {signal.id}")
