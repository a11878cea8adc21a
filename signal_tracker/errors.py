from __future__ import annotations

from typing import Dict

INVALID_OBSERVATION = "InvalidObservation"
INVALID_SIGNAL = "InvalidSignal"
NOT_FOUND = "NotFound"
PROVIDER_UNAVAILABLE = "ProviderUnavailable"
PERSISTENCE_CONFLICT = "PersistenceConflict"


class SignalTrackerError(Exception):
    """Base for every error surfaced to callers; carries a stable kind."""

    kind = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class InvalidObservation(SignalTrackerError):
    kind = INVALID_OBSERVATION


class InvalidSignal(SignalTrackerError):
    kind = INVALID_SIGNAL


class SignalNotFound(SignalTrackerError):
    kind = NOT_FOUND

    def __init__(self, signal_id: str):
        super().__init__(f"Signal not found: {signal_id}")
        self.signal_id = signal_id


class ProviderUnavailable(SignalTrackerError):
    kind = PROVIDER_UNAVAILABLE

    def __init__(self, pair: str, reason: str):
        super().__init__(f"Price unavailable for {pair}: {reason}")
        self.pair = pair
        self.reason = reason


class PersistenceConflict(SignalTrackerError):
    kind = PERSISTENCE_CONFLICT

    def __init__(self, signal_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Signal {signal_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.signal_id = signal_id
        self.expected_version = expected_version
        self.actual_version = actual_version
