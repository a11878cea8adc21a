import asyncio

import pytest

from signal_tracker.errors import InvalidObservation, InvalidSignal, PersistenceConflict, SignalNotFound
from signal_tracker.models import COMPLETED, PARTIAL, STOPPED, new_signal
from signal_tracker.service import SignalService
from signal_tracker.store import MemorySignalStore


class _Clock:
    def __init__(self, start: int = 1_000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


class _RecordingAlerts:
    def __init__(self):
        self.events = []

    async def dispatch(self, signal, updates):
        self.events.extend((signal.id, u.type) for u in updates)
        return len(updates)


class _FlakyStore(MemorySignalStore):
    """Raises PersistenceConflict on the first ``conflicts`` saves."""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.saves = 0

    async def save(self, signal):
        self.saves += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise PersistenceConflict(signal.id, signal.version, signal.version + 1)
        return await super().save(signal)


def _sig(signal_id="s1", sl=8.0):
    return new_signal(
        direction="LONG",
        pair="btc_usdt",
        targets=[10, 12, 15],
        stop_loss=sl,
        entry_min=9,
        entry_max=9.5,
        signal_id=signal_id,
        created_at_ms=0,
    )


def _service(store=None, alerts=None):
    store = store or MemorySignalStore()
    return SignalService(store, alerts=alerts, clock=_Clock()), store


def test_apply_observation_persists_tick():
    async def _run():
        svc, store = _service()
        await svc.create_signal(_sig())
        res = await svc.apply_observation("s1", 10, timestamp=5_000)
        assert res.newly_reached == 1
        stored = await store.get("s1")
        assert stored.status == PARTIAL
        assert stored.pair == "BTC/USDT"
        assert stored.targets[0].reached_at_ms == 5_000
        assert stored.version == 2

        res = await svc.apply_observation("s1", 15)
        assert res.newly_reached == 2
        assert (await store.get("s1")).status == COMPLETED

    asyncio.run(_run())


def test_invalid_price_rejected_before_load():
    async def _run():
        svc, store = _service()
        await svc.create_signal(_sig())
        with pytest.raises(InvalidObservation):
            await svc.apply_observation("s1", -3)
        stored = await store.get("s1")
        assert stored.price_history == []
        assert stored.version == 1

    asyncio.run(_run())


def test_unknown_signal_is_not_found():
    async def _run():
        svc, _ = _service()
        with pytest.raises(SignalNotFound) as ei:
            await svc.apply_observation("missing", 10)
        assert ei.value.to_dict()["kind"] == "NotFound"

    asyncio.run(_run())


def test_scheduled_path_skips_terminal_signals():
    async def _run():
        svc, store = _service()
        await svc.create_signal(_sig())
        await svc.apply_observation("s1", 7)
        res = await svc.apply_observation("s1", 20, require_evaluable=True)
        assert res.skipped
        stored = await store.get("s1")
        assert stored.status == STOPPED
        assert len(stored.price_history) == 1

    asyncio.run(_run())


def test_manual_path_records_price_on_stopped_signal():
    async def _run():
        svc, store = _service()
        await svc.create_signal(_sig())
        await svc.apply_observation("s1", 7)
        res = await svc.add_price("s1", 20, 9_000)
        assert not res.skipped
        assert res.newly_reached == 0
        stored = await store.get("s1")
        assert stored.status == STOPPED
        assert stored.current_price == 20
        assert len(stored.price_history) == 2

    asyncio.run(_run())


def test_edit_price_replays_history():
    async def _run():
        svc, store = _service()
        await svc.create_signal(_sig())
        await svc.add_price("s1", 9, 1_000)
        await svc.add_price("s1", 11, 2_000)
        sig = await svc.edit_price("s1", 0, price=13)
        assert sig.reached_count == 2
        assert sig.status == PARTIAL
        assert [t.reached_at_ms for t in sig.targets] == [1_000, 1_000, None]
        assert (await store.get("s1")).reached_count == 2

    asyncio.run(_run())


def test_delete_price_replays_and_can_reopen():
    async def _run():
        svc, _ = _service()
        await svc.create_signal(_sig(sl=9.5))
        await svc.add_price("s1", 11, 1_000)
        await svc.add_price("s1", 7, 2_000)
        assert (await svc.get("s1")).status == STOPPED

        sig = await svc.delete_price("s1", 1)
        assert sig.status == PARTIAL
        assert sig.current_price == 11

        with pytest.raises(InvalidObservation):
            await svc.delete_price("s1", 5)

    asyncio.run(_run())


def test_conflict_retried_once():
    async def _run():
        store = _FlakyStore(conflicts=1)
        svc, _ = _service(store)
        await svc.create_signal(_sig())
        res = await svc.apply_observation("s1", 10)
        assert res.newly_reached == 1
        assert store.saves == 2
        assert len((await store.get("s1")).price_history) == 1

    asyncio.run(_run())


def test_repeated_conflict_surfaces():
    async def _run():
        store = _FlakyStore(conflicts=2)
        svc, _ = _service(store)
        await svc.create_signal(_sig())
        with pytest.raises(PersistenceConflict):
            await svc.apply_observation("s1", 10)
        assert (await store.get("s1")).price_history == []

    asyncio.run(_run())


def test_concurrent_ticks_on_same_signal_are_serialized():
    async def _run():
        svc, store = _service()
        await svc.create_signal(_sig())
        await asyncio.gather(*[svc.apply_observation("s1", 9 + i * 0.1, 1_000 + i) for i in range(10)])
        stored = await store.get("s1")
        assert len(stored.price_history) == 10
        assert stored.version == 11

    asyncio.run(_run())


def test_alerts_receive_new_updates_only():
    async def _run():
        alerts = _RecordingAlerts()
        svc, _ = _service(alerts=alerts)
        await svc.create_signal(_sig())
        await svc.apply_observation("s1", 10)
        await svc.apply_observation("s1", 12)
        await svc.apply_observation("s1", 7)
        assert alerts.events == [("s1", "TP_REACHED"), ("s1", "TP_REACHED"), ("s1", "SL_HIT")]

    asyncio.run(_run())


def test_replay_alerts_only_on_changed_outcomes():
    async def _run():
        alerts = _RecordingAlerts()
        svc, _ = _service(alerts=alerts)
        await svc.create_signal(_sig())
        await svc.add_price("s1", 12.5, 1_000)
        await svc.add_price("s1", 11, 2_000)
        alerts.events.clear()

        await svc.delete_price("s1", 1)
        await svc.replay_from_history("s1")
        assert alerts.events == []

        sig = await svc.edit_price("s1", 0, price=16)
        assert sig.reached_count == 3
        assert alerts.events == [("s1", "TP_REACHED")]
        assert sig.updates[-1].message == "TP3 reached at price 16"

        alerts.events.clear()
        sig = await svc.edit_price("s1", 0, price=7)
        assert sig.status == STOPPED
        assert alerts.events == [("s1", "SL_HIT")]

        alerts.events.clear()
        await svc.edit_price("s1", 0, price=6)
        assert alerts.events == []

    asyncio.run(_run())


def test_mark_target_reached_keeps_count_and_status():
    async def _run():
        alerts = _RecordingAlerts()
        svc, store = _service(alerts=alerts)
        await svc.create_signal(_sig())

        sig = await svc.mark_target_reached("s1", 1, 5_000)
        assert sig.reached_count == 1
        assert sig.status == PARTIAL
        assert sig.targets[1].reached_at_ms == 5_000
        assert sig.updates[-1].message == "TP2 marked reached manually"
        assert alerts.events == [("s1", "TP_REACHED")]
        version = (await store.get("s1")).version

        await svc.mark_target_reached("s1", 1)
        assert (await store.get("s1")).version == version
        assert len(alerts.events) == 1

        await svc.mark_target_reached("s1", 0)
        sig = await svc.mark_target_reached("s1", 2)
        assert sig.reached_count == 3
        assert sig.status == COMPLETED

        with pytest.raises(InvalidSignal):
            await svc.mark_target_reached("s1", 3)

    asyncio.run(_run())


def test_mark_target_reached_on_stopped_signal_stays_stopped():
    async def _run():
        svc, _ = _service()
        await svc.create_signal(_sig())
        await svc.apply_observation("s1", 7)
        sig = await svc.mark_target_reached("s1", 0)
        assert sig.status == STOPPED
        assert sig.reached_count == 1

    asyncio.run(_run())
