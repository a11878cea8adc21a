from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import ProviderUnavailable, SignalTrackerError
from .models import SignalRef, normalize_pair
from .service import SignalService
from .store import SignalStore

log = logging.getLogger("scheduler")

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class PassReport:
    signals: int = 0
    pairs: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    unpriced_pairs: List[str] = field(default_factory=list)


class PriceScheduler:
    """Owned handle for the recurring price pass.

    ``start`` schedules the loop on the running event loop; ``stop``
    prevents further passes and lets an in-flight pass finish.
    """

    def __init__(
        self,
        service: SignalService,
        store: SignalStore,
        provider,
        *,
        interval_s: float = 5.0,
        start_delay_s: float = 2.0,
        max_concurrency: int = 20,
        fetch_timeout_s: float = 10.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.service = service
        self.store = store
        self.provider = provider
        self.interval_s = float(interval_s)
        self.start_delay_s = float(start_delay_s)
        self.fetch_timeout_s = float(fetch_timeout_s)
        self.sleep = sleep
        self._sem = asyncio.Semaphore(max(1, int(max_concurrency)))
        self._done = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.passes = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            log.warning("scheduler_already_running")
            return self._task
        self._done.clear()
        log.info("scheduler_start interval=%.1fs start_delay=%.1fs", self.interval_s, self.start_delay_s)
        self._task = asyncio.get_running_loop().create_task(self.run_forever())
        return self._task

    def request_stop(self) -> None:
        self._done.set()

    async def stop(self) -> None:
        """Halt future passes; waits for the current one to complete."""
        self._done.set()
        task = self._task
        if task is not None and not task.done():
            await task
        self._task = None
        log.info("scheduler_stopped passes=%d", self.passes)

    async def _wait(self, seconds: float) -> None:
        if seconds <= 0 or self._done.is_set():
            return
        sleeper = asyncio.ensure_future(self.sleep(seconds))
        stopper = asyncio.ensure_future(self._done.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, stopper):
                if not fut.done():
                    fut.cancel()

    async def run_forever(self) -> None:
        await self._wait(self.start_delay_s)
        while not self._done.is_set():
            try:
                await self.run_pass()
            except Exception as e:
                # A broken pass must not kill the timer.
                log.exception("pass_failed err=%s", e)
            await self._wait(self.interval_s)

    async def run_pass(self) -> PassReport:
        self.passes += 1
        report = PassReport()
        refs = await self.store.list_evaluable()
        report.signals = len(refs)
        if not refs:
            log.debug("no_active_signals")
            return report

        by_pair: Dict[str, List[SignalRef]] = {}
        for ref in refs:
            by_pair.setdefault(normalize_pair(ref.pair), []).append(ref)
        report.pairs = len([p for p in by_pair if p])
        log.info("pass_start signals=%d pairs=%d", report.signals, report.pairs)

        for ref in by_pair.pop("", []):
            report.failed += 1
            log.warning("signal_skipped id=%s err=missing trading pair", ref.id)

        pairs = list(by_pair)
        prices = await asyncio.gather(*[self._fetch(p) for p in pairs])
        priced = {p: px for p, px in zip(pairs, prices) if px is not None}
        report.unpriced_pairs = [p for p in pairs if p not in priced]
        for p in report.unpriced_pairs:
            report.skipped += len(by_pair[p])

        jobs = [self._evaluate(ref, priced[p]) for p in priced for ref in by_pair[p]]
        outcomes = await asyncio.gather(*jobs)
        for outcome in outcomes:
            if outcome == "ok":
                report.updated += 1
            elif outcome == "skipped":
                report.skipped += 1
            else:
                report.failed += 1

        log.info("pass_done signals=%d pairs=%d updated=%d skipped=%d failed=%d",
                 report.signals, report.pairs, report.updated, report.skipped, report.failed)
        return report

    async def _fetch(self, pair: str) -> Optional[float]:
        try:
            async with self._sem:
                return await asyncio.wait_for(self.provider.fetch_price(pair), self.fetch_timeout_s)
        except ProviderUnavailable as e:
            log.warning("provider_unavailable pair=%s err=%s", pair, e.reason)
        except asyncio.TimeoutError:
            log.warning("provider_unavailable pair=%s err=timeout after %.1fs", pair, self.fetch_timeout_s)
        except Exception as e:
            log.warning("provider_unavailable pair=%s err=%r", pair, e)
        return None

    async def _evaluate(self, ref: SignalRef, price: float) -> str:
        try:
            async with self._sem:
                result = await self.service.apply_observation(ref.id, price, require_evaluable=True)
            return "skipped" if result.skipped else "ok"
        except SignalTrackerError as e:
            log.warning("signal_update_failed id=%s pair=%s kind=%s err=%s", ref.id, ref.pair, e.kind, e.message)
        except Exception as e:
            log.exception("signal_update_failed id=%s pair=%s err=%s", ref.id, ref.pair, e)
        return "failed"
