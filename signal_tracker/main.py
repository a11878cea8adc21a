from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal as os_signal
import sys
from typing import Optional

from .alerts import AlertDispatcher
from .config import Config, default_config, load_config
from .errors import SignalTrackerError
from .models import Signal, new_signal
from .providers.mexc import MexcPriceProvider
from .scheduler import PriceScheduler
from .service import SignalService
from .store import MemorySignalStore, SignalStore, SqliteSignalStore
from .winrate import score


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_store(cfg: Config) -> SignalStore:
    if cfg.store.type == "memory":
        return MemorySignalStore()
    return SqliteSignalStore(cfg.store.path)


def build_provider(cfg: Config) -> MexcPriceProvider:
    if (cfg.provider.type or "mexc").lower() != "mexc":
        raise ValueError(f"Unsupported price provider: {cfg.provider.type}")
    return MexcPriceProvider(cfg.provider.base_url, timeout_s=cfg.provider.timeout_s)


def _dump(signal: Signal) -> str:
    doc = signal.to_dict()
    doc["score"] = score(signal)
    return json.dumps(doc, indent=2, sort_keys=True)


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Signal Tracker - trade signal price evaluation")
    p.add_argument("--config", help="Path to YAML config (defaults apply when omitted)")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the price scheduler until interrupted")

    c = sub.add_parser("create", help="Create a new signal")
    c.add_argument("--direction", required=True, choices=["LONG", "SHORT", "long", "short"])
    c.add_argument("--pair", required=True, help="BASE/QUOTE, e.g. BTC/USDT")
    c.add_argument("--targets", required=True, help="Comma separated target levels, nearest first")
    c.add_argument("--stop-loss", required=True, type=float)
    c.add_argument("--entry-min", required=True, type=float)
    c.add_argument("--entry-max", required=True, type=float)
    c.add_argument("--channel", default="")

    s = sub.add_parser("show", help="Print a signal as JSON")
    s.add_argument("signal_id")

    r = sub.add_parser("replay", help="Recompute a signal from its price history")
    r.add_argument("signal_id")

    price = sub.add_parser("price", help="Manual price history operations")
    psub = price.add_subparsers(dest="price_command", required=True)
    pa = psub.add_parser("add")
    pa.add_argument("signal_id")
    pa.add_argument("price", type=float)
    pa.add_argument("--timestamp-ms", type=int, default=None)
    pe = psub.add_parser("edit")
    pe.add_argument("signal_id")
    pe.add_argument("index", type=int)
    pe.add_argument("--price", type=float, default=None)
    pe.add_argument("--timestamp-ms", type=int, default=None)
    pd = psub.add_parser("delete")
    pd.add_argument("signal_id")
    pd.add_argument("index", type=int)

    t = sub.add_parser("target", help="Manual target operations")
    tsub = t.add_subparsers(dest="target_command", required=True)
    tr = tsub.add_parser("reach", help="Mark a target reached by hand")
    tr.add_argument("signal_id")
    tr.add_argument("index", type=int, help="0-based target index")
    tr.add_argument("--timestamp-ms", type=int, default=None)
    return p


async def _run_scheduler(cfg: Config, service: SignalService, store: SignalStore) -> None:
    provider = build_provider(cfg)
    scheduler = PriceScheduler(
        service,
        store,
        provider,
        interval_s=cfg.scheduler.interval_s,
        start_delay_s=cfg.scheduler.start_delay_s,
        max_concurrency=cfg.scheduler.max_concurrency,
        fetch_timeout_s=cfg.provider.timeout_s * 2,
    )
    loop = asyncio.get_running_loop()
    for sig in (os_signal.SIGINT, os_signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.request_stop)
        except (NotImplementedError, RuntimeError):
            pass  # not supported on this platform; KeyboardInterrupt still works
    task = scheduler.start()
    try:
        await task
    finally:
        await scheduler.stop()
        # Close shared REST session cleanly.
        await provider.close()


async def _dispatch(args, cfg: Config) -> Optional[str]:
    store = build_store(cfg)
    service = SignalService(store, alerts=AlertDispatcher(cfg))
    try:
        if args.command == "run":
            if not cfg.scheduler.enabled:
                logging.getLogger("main").warning("scheduler disabled in config; nothing to run")
                return None
            await _run_scheduler(cfg, service, store)
            return None
        if args.command == "create":
            sig = new_signal(
                direction=args.direction,
                pair=args.pair,
                targets=[float(x) for x in args.targets.split(",") if x.strip()],
                stop_loss=args.stop_loss,
                entry_min=args.entry_min,
                entry_max=args.entry_max,
                channel_name=args.channel,
            )
            return _dump(await service.create_signal(sig))
        if args.command == "show":
            return _dump(await service.get(args.signal_id))
        if args.command == "replay":
            return _dump(await service.replay_from_history(args.signal_id))
        if args.command == "target":
            return _dump(await service.mark_target_reached(args.signal_id, args.index, args.timestamp_ms))
        if args.price_command == "add":
            res = await service.add_price(args.signal_id, args.price, args.timestamp_ms)
            print(f"{res.newly_reached} target(s) reached", file=sys.stderr)
            return _dump(res.signal)
        if args.price_command == "edit":
            return _dump(await service.edit_price(args.signal_id, args.index, price=args.price, timestamp=args.timestamp_ms))
        return _dump(await service.delete_price(args.signal_id, args.index))
    finally:
        await store.close()


def main(argv=None) -> int:
    args = _parser().parse_args(argv)
    cfg = load_config(args.config) if args.config else default_config()
    _setup_logging(cfg.app.log_level)

    try:
        out = asyncio.run(_dispatch(args, cfg))
        if out:
            print(out)
        return 0
    except KeyboardInterrupt:
        return 0
    except SignalTrackerError as e:
        print(json.dumps({"error": e.to_dict()}), file=sys.stderr)
        return 2
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
