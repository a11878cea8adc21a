from __future__ import annotations

from typing import Iterable

from .models import Signal

# Score by highest reached target index: TP1, TP2, TP3 and beyond.
TIER_SCORES = (0.3, 0.6, 1.0)


def score(signal: Signal) -> float:
    """Win-rate credit driven by the highest-index reached target, not the count."""
    highest = -1
    for i, target in enumerate(signal.targets or []):
        if target.reached:
            highest = i
    if highest < 0:
        return 0.0
    return TIER_SCORES[min(highest, len(TIER_SCORES) - 1)]


def is_win(signal: Signal) -> bool:
    return score(signal) > 0


def aggregate_score(signals: Iterable[Signal]) -> float:
    scores = [score(s) for s in signals]
    if not scores:
        return 0.0
    return sum(scores) / len(scores)
