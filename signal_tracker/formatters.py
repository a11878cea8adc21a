from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import List, Optional

from .models import SL_HIT, TP_REACHED, Signal, SignalUpdate, format_price
from .winrate import score


def _fmt_ms(ts_ms: int, tz=timezone.utc) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    return f"<b>{escaped}</b>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return format_price(val)


def _targets_line(signal: Signal) -> str:
    parts = []
    for i, t in enumerate(signal.targets):
        mark = "✅" if t.reached else "·"
        parts.append(f"TP{i + 1} {_fmt_price(t.level)} {mark}")
    return " | ".join(parts)


def _headline(update: SignalUpdate) -> str:
    if update.type == TP_REACHED:
        return "TARGET REACHED"
    if update.type == SL_HIT:
        return "STOP LOSS HIT"
    return "SIGNAL UPDATE"


def format_event(signal: Signal, update: SignalUpdate, cfg) -> str:
    """Format one lifecycle update of a signal for a Telegram alert."""
    parse_mode = (getattr(cfg, "parse_mode", "HTML") or "HTML").upper()
    pipe = "\\|" if parse_mode == "MARKDOWNV2" else "|"

    header = f"{signal.pair} {signal.direction}"
    if signal.channel_name:
        header += f" ({signal.channel_name})"

    lines: List[str] = [
        f"{_bold(_headline(update), parse_mode)}  {pipe}  {_bold(header, parse_mode)}",
        _escape_text(update.message, parse_mode),
        "",
        _escape_text(f"Time: {_fmt_ms(update.timestamp_ms)}", parse_mode),
        _escape_text(f"Entry: {_fmt_price(signal.entry_min)} - {_fmt_price(signal.entry_max)} | SL: {_fmt_price(signal.stop_loss)}", parse_mode),
        _escape_text(_targets_line(signal), parse_mode),
        _escape_text(f"Status: {signal.status} | Reached: {signal.reached_count}/{len(signal.targets)} | Score: {score(signal):.1f}", parse_mode),
    ]

    footer = (getattr(cfg, "footer", "") or "").strip()
    if footer:
        lines.append("")
        lines.append(_escape_text(footer, parse_mode))

    return "\n".join(lines)
