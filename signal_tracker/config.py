from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import os
import yaml


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _csv_env(env_key: str) -> Optional[List[str]]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class AppConfig:
    name: str = "Signal Tracker"
    log_level: str = "INFO"


@dataclass
class StoreConfig:
    type: str = "sqlite"  # sqlite | memory
    path: str = "signals.db"


@dataclass
class ProviderConfig:
    type: str = "mexc"
    base_url: str = "https://contract.mexc.com/api/v1"
    timeout_s: float = 5.0


@dataclass
class SchedulerConfig:
    enabled: bool = True
    interval_s: float = 5.0
    start_delay_s: float = 2.0
    max_concurrency: int = 20


@dataclass
class TelegramConfig:
    enabled: bool = False
    token: str = ""
    chat_ids: List[str] = None
    disable_web_page_preview: bool = True


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    secret: str = ""
    timeout_s: int = 10
    headers: Dict[str, str] = None


@dataclass
class AlertsConfig:
    parse_mode: str = "HTML"  # HTML | MarkdownV2
    notify_tp: bool = True
    notify_sl: bool = True
    footer: str = ""


@dataclass
class Config:
    app: AppConfig
    store: StoreConfig
    provider: ProviderConfig
    scheduler: SchedulerConfig
    telegram: TelegramConfig
    webhook: WebhookConfig
    alerts: AlertsConfig


def default_config() -> Config:
    return _finalize(Config(
        app=AppConfig(),
        store=StoreConfig(),
        provider=ProviderConfig(),
        scheduler=SchedulerConfig(),
        telegram=TelegramConfig(),
        webhook=WebhookConfig(),
        alerts=AlertsConfig(),
    ))


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    cfg = Config(
        app=AppConfig(**raw.get("app", {})),
        store=StoreConfig(**raw.get("store", {})),
        provider=ProviderConfig(**raw.get("provider", {})),
        scheduler=SchedulerConfig(**raw.get("scheduler", {})),
        telegram=TelegramConfig(**raw.get("telegram", {})),
        webhook=WebhookConfig(**raw.get("webhook", {})),
        alerts=AlertsConfig(**raw.get("alerts", {})),
    )
    return _finalize(cfg)


def _finalize(cfg: Config) -> Config:
    # env overrides (useful on servers)
    cfg.store.path = _env_override(cfg.store.path, "SIGNAL_DB_PATH")
    cfg.provider.base_url = _env_override(cfg.provider.base_url, "MEXC_BASE_URL")
    cfg.scheduler.interval_s = float(_env_override(float(cfg.scheduler.interval_s), "PRICE_INTERVAL_S"))

    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    if cfg.telegram.chat_ids is None:
        cfg.telegram.chat_ids = []
    # Allow TELEGRAM_CHAT_IDS="id1,id2"
    chat_env = _csv_env("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = chat_env

    cfg.webhook.secret = _env_override(cfg.webhook.secret, "WEBHOOK_SECRET")
    cfg.webhook.url = _env_override(cfg.webhook.url, "WEBHOOK_URL")
    if cfg.webhook.headers is None:
        cfg.webhook.headers = {}

    if cfg.scheduler.interval_s <= 0:
        raise ValueError("scheduler.interval_s must be positive")
    if cfg.store.type not in ("sqlite", "memory"):
        raise ValueError(f"Unsupported store type: {cfg.store.type}")
    return cfg
