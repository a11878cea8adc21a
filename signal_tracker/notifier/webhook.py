from __future__ import annotations

import logging
from typing import Any, Dict

import aiohttp

from ..models import Signal, SignalUpdate
from ..winrate import score

log = logging.getLogger("webhook")


def event_payload(signal: Signal, update: SignalUpdate, secret: str = "") -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "signal_id": signal.id,
        "pair": signal.pair,
        "direction": signal.direction,
        "event": update.type,
        "message": update.message,
        "timestamp_ms": update.timestamp_ms,
        "status": signal.status,
        "reached_count": signal.reached_count,
        "targets": len(signal.targets),
        "current_price": signal.current_price,
        "score": score(signal),
    }
    if secret:
        payload["secret"] = secret
    return payload


class WebhookNotifier:
    def __init__(self, *, enabled: bool, url: str, secret: str, timeout_s: int, headers: dict):
        self.enabled = bool(enabled)
        self.url = url or ""
        self.secret = secret or ""
        self.timeout_s = int(timeout_s) if timeout_s is not None else 10
        self.headers = headers or {}

    async def send_event(self, signal: Signal, update: SignalUpdate) -> None:
        if not self.enabled or not self.url:
            return
        payload = event_payload(signal, update, self.secret)
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload, headers=self.headers) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        log.warning("webhook_bad_status status=%s body=%s", resp.status, text[:200])
        except Exception as e:
            # Log but do not crash
            log.warning("webhook_post_failed signal=%s event=%s err=%s", signal.id, update.type, e)
