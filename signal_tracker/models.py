from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import InvalidSignal

LONG = "LONG"
SHORT = "SHORT"
DIRECTIONS = (LONG, SHORT)

ACTIVE = "ACTIVE"
PARTIAL = "PARTIAL"
COMPLETED = "COMPLETED"
STOPPED = "STOPPED"
STATUSES = (ACTIVE, PARTIAL, COMPLETED, STOPPED)
EVALUABLE_STATUSES = (ACTIVE, PARTIAL)

TP_REACHED = "TP_REACHED"
SL_HIT = "SL_HIT"
UPDATE = "UPDATE"


def now_ms() -> int:
    return int(time.time() * 1000)


def is_evaluable(status: str) -> bool:
    """True for statuses the scheduled poller keeps feeding prices to."""
    return status in EVALUABLE_STATUSES


def format_price(price: float) -> str:
    """Full-precision text for a price: 104523.5 -> '104523.5', 10.0 -> '10'."""
    p = float(price)
    if p.is_integer() and abs(p) < 1e16:
        return str(int(p))
    return repr(p)


def normalize_pair(pair: Optional[str]) -> str:
    """Canonical BASE/QUOTE form: 'btc_usdt', 'BTC-USDT' -> 'BTC/USDT'."""
    p = (pair or "").strip().upper()
    for sep in ("_", "-", ":"):
        p = p.replace(sep, "/")
    return p


@dataclass
class Target:
    level: float
    reached: bool = False
    reached_at_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "reached": self.reached, "reached_at_ms": self.reached_at_ms}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Target":
        reached_at = d.get("reached_at_ms")
        return cls(
            level=float(d["level"]),
            reached=bool(d.get("reached", False)),
            reached_at_ms=int(reached_at) if reached_at is not None else None,
        )


@dataclass(frozen=True)
class PriceObservation:
    price: float
    observed_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {"price": self.price, "observed_at_ms": self.observed_at_ms}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PriceObservation":
        return cls(price=float(d["price"]), observed_at_ms=int(d["observed_at_ms"]))


@dataclass(frozen=True)
class SignalUpdate:
    message: str
    type: str  # TP_REACHED | SL_HIT | UPDATE
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "type": self.type, "timestamp_ms": self.timestamp_ms}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SignalUpdate":
        return cls(message=str(d["message"]), type=str(d["type"]), timestamp_ms=int(d["timestamp_ms"]))


@dataclass
class Signal:
    id: str
    direction: str  # LONG or SHORT
    pair: str
    targets: List[Target]
    stop_loss: float
    entry_min: float
    entry_max: float
    user_entry: Optional[float] = None
    symbol: str = ""
    channel_name: str = ""
    leverage: Optional[str] = None
    price_history: List[PriceObservation] = field(default_factory=list)
    current_price: Optional[float] = None
    reached_count: int = 0
    status: str = ACTIVE
    updates: List[SignalUpdate] = field(default_factory=list)
    created_at_ms: int = 0
    updated_at_ms: int = 0
    # bumped by the store on every successful save
    version: int = 0

    @property
    def is_long(self) -> bool:
        return self.direction == LONG

    def sorted_history(self) -> List[PriceObservation]:
        """Observations by time, insertion order kept for equal timestamps."""
        return sorted(self.price_history, key=lambda o: o.observed_at_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction,
            "pair": self.pair,
            "symbol": self.symbol,
            "channel_name": self.channel_name,
            "leverage": self.leverage,
            "entry": {"min": self.entry_min, "max": self.entry_max, "user_entry": self.user_entry},
            "targets": [t.to_dict() for t in self.targets],
            "stop_loss": self.stop_loss,
            "price_history": [o.to_dict() for o in self.price_history],
            "current_price": self.current_price,
            "reached_count": self.reached_count,
            "status": self.status,
            "updates": [u.to_dict() for u in self.updates],
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Signal":
        entry = d.get("entry") or {}
        user_entry = entry.get("user_entry")
        current = d.get("current_price")
        return cls(
            id=str(d["id"]),
            direction=str(d["direction"]),
            pair=str(d["pair"]),
            symbol=str(d.get("symbol") or ""),
            channel_name=str(d.get("channel_name") or ""),
            leverage=d.get("leverage"),
            entry_min=float(entry.get("min", 0.0)),
            entry_max=float(entry.get("max", 0.0)),
            user_entry=float(user_entry) if user_entry is not None else None,
            targets=[Target.from_dict(t) for t in d.get("targets") or []],
            stop_loss=float(d["stop_loss"]),
            price_history=[PriceObservation.from_dict(o) for o in d.get("price_history") or []],
            current_price=float(current) if current is not None else None,
            reached_count=int(d.get("reached_count", 0)),
            status=str(d.get("status") or ACTIVE),
            updates=[SignalUpdate.from_dict(u) for u in d.get("updates") or []],
            created_at_ms=int(d.get("created_at_ms", 0)),
            updated_at_ms=int(d.get("updated_at_ms", 0)),
            version=int(d.get("version", 0)),
        )


@dataclass(frozen=True)
class SignalRef:
    """Reduced projection the scheduler uses to group signals by pair."""

    id: str
    pair: str
    status: str
    direction: str


def new_signal(
    *,
    direction: str,
    pair: str,
    targets: List[float],
    stop_loss: float,
    entry_min: float,
    entry_max: float,
    user_entry: Optional[float] = None,
    symbol: str = "",
    channel_name: str = "",
    leverage: Optional[str] = None,
    signal_id: Optional[str] = None,
    created_at_ms: Optional[int] = None,
) -> Signal:
    """Build a fresh ACTIVE signal with every target unreached."""
    direction = (direction or "").strip().upper()
    if direction not in DIRECTIONS:
        raise InvalidSignal(f"direction must be LONG or SHORT, got {direction!r}")
    if not targets:
        raise InvalidSignal("at least one target is required")
    levels = [float(x) for x in targets]
    if any(lv <= 0 for lv in levels) or float(stop_loss) <= 0:
        raise InvalidSignal("target levels and stop loss must be positive")
    norm_pair = normalize_pair(pair)
    if not norm_pair:
        raise InvalidSignal("pair is required")

    ts = int(created_at_ms) if created_at_ms is not None else now_ms()
    return Signal(
        id=signal_id or uuid.uuid4().hex[:24],
        direction=direction,
        pair=norm_pair,
        symbol=symbol or norm_pair.split("/")[0],
        channel_name=channel_name,
        leverage=leverage,
        targets=[Target(level=lv) for lv in levels],
        stop_loss=float(stop_loss),
        entry_min=float(entry_min),
        entry_max=float(entry_max),
        user_entry=float(user_entry) if user_entry is not None else None,
        created_at_ms=ts,
        updated_at_ms=ts,
    )
