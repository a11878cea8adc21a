from __future__ import annotations

import logging
from typing import Iterable

from .config import Config
from .formatters import format_event
from .models import SL_HIT, TP_REACHED, Signal, SignalUpdate
from .notifier.telegram import TelegramNotifier
from .notifier.webhook import WebhookNotifier

log = logging.getLogger("alerts")


class AlertDispatcher:
    """Fans lifecycle updates out to Telegram and the webhook."""

    def __init__(self, cfg: Config):
        self.cfg = cfg
        self.tg = TelegramNotifier(
            token=cfg.telegram.token if cfg.telegram.enabled else "",
            chat_ids=cfg.telegram.chat_ids,
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
        )
        self.webhook = WebhookNotifier(
            enabled=cfg.webhook.enabled,
            url=cfg.webhook.url,
            secret=cfg.webhook.secret,
            timeout_s=cfg.webhook.timeout_s,
            headers=cfg.webhook.headers or {},
        )

    def enabled(self) -> bool:
        return self.tg.enabled() or (self.webhook.enabled and bool(self.webhook.url))

    def wants(self, update: SignalUpdate) -> bool:
        if update.type == TP_REACHED:
            return bool(self.cfg.alerts.notify_tp)
        if update.type == SL_HIT:
            return bool(self.cfg.alerts.notify_sl)
        return False

    async def dispatch(self, signal: Signal, updates: Iterable[SignalUpdate]) -> int:
        if not self.enabled():
            return 0
        parse_mode = getattr(self.cfg.alerts, "parse_mode", "HTML") or "HTML"
        sent = 0
        for update in updates:
            if not self.wants(update):
                continue
            sent += 1
            log.info("alert signal=%s pair=%s event=%s", signal.id, signal.pair, update.type)
            if self.webhook.enabled:
                await self.webhook.send_event(signal, update)
            if self.tg.enabled():
                await self.tg.send(format_event(signal, update, self.cfg.alerts), parse_mode=parse_mode)
        return sent
