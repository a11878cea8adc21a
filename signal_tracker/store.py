from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from typing import Dict, List, Optional

from .errors import PersistenceConflict, SignalNotFound
from .models import EVALUABLE_STATUSES, Signal, SignalRef

log = logging.getLogger("store")


class SignalStore:
    """Document store for signals.

    ``save`` is last-write-wins guarded by a version check: the stored
    version must equal ``signal.version`` or PersistenceConflict is raised.
    On success the signal's version is bumped in place.
    """

    async def insert(self, signal: Signal) -> Signal:
        raise NotImplementedError

    async def get(self, signal_id: str) -> Signal:
        raise NotImplementedError

    async def save(self, signal: Signal) -> Signal:
        raise NotImplementedError

    async def delete(self, signal_id: str) -> None:
        raise NotImplementedError

    async def list_evaluable(self) -> List[SignalRef]:
        raise NotImplementedError

    async def list_all(self) -> List[Signal]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemorySignalStore(SignalStore):
    """Keeps serialized documents so callers never share mutable state."""

    def __init__(self) -> None:
        self._docs: Dict[str, dict] = {}

    async def insert(self, signal: Signal) -> Signal:
        if signal.id in self._docs:
            raise ValueError(f"duplicate signal id: {signal.id}")
        signal.version = 1
        self._docs[signal.id] = signal.to_dict()
        return signal

    async def get(self, signal_id: str) -> Signal:
        doc = self._docs.get(signal_id)
        if doc is None:
            raise SignalNotFound(signal_id)
        return Signal.from_dict(doc)

    async def save(self, signal: Signal) -> Signal:
        doc = self._docs.get(signal.id)
        if doc is None:
            raise SignalNotFound(signal.id)
        if int(doc["version"]) != signal.version:
            raise PersistenceConflict(signal.id, signal.version, int(doc["version"]))
        signal.version += 1
        self._docs[signal.id] = signal.to_dict()
        return signal

    async def delete(self, signal_id: str) -> None:
        if self._docs.pop(signal_id, None) is None:
            raise SignalNotFound(signal_id)

    async def list_evaluable(self) -> List[SignalRef]:
        return [
            SignalRef(id=d["id"], pair=d["pair"], status=d["status"], direction=d["direction"])
            for d in self._docs.values()
            if d["status"] in EVALUABLE_STATUSES
        ]

    async def list_all(self) -> List[Signal]:
        return [Signal.from_dict(d) for d in self._docs.values()]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS signals (
    id TEXT PRIMARY KEY,
    pair TEXT NOT NULL,
    direction TEXT NOT NULL,
    status TEXT NOT NULL,
    version INTEGER NOT NULL,
    created_at_ms INTEGER NOT NULL,
    doc TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_signals_status ON signals (status, created_at_ms);
"""


class SqliteSignalStore(SignalStore):
    """Signal documents as JSON rows in SQLite; blocking calls run in a worker thread."""

    def __init__(self, path: str = "signals.db") -> None:
        self.path = path
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(path, check_same_thread=False)
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        log.info("store_open path=%s", path)

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("store is closed")
        return self._conn

    @staticmethod
    def _dumps(signal: Signal) -> str:
        return json.dumps(signal.to_dict(), separators=(",", ":"), ensure_ascii=True)

    def _insert(self, signal: Signal) -> Signal:
        signal.version = 1
        with self._lock:
            conn = self._db()
            try:
                conn.execute(
                    "INSERT INTO signals (id, pair, direction, status, version, created_at_ms, doc) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (signal.id, signal.pair, signal.direction, signal.status, signal.version,
                     signal.created_at_ms, self._dumps(signal)),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                signal.version = 0
                raise ValueError(f"duplicate signal id: {signal.id}") from e
        return signal

    def _get(self, signal_id: str) -> Signal:
        with self._lock:
            row = self._db().execute("SELECT doc, version FROM signals WHERE id = ?", (signal_id,)).fetchone()
        if row is None:
            raise SignalNotFound(signal_id)
        signal = Signal.from_dict(json.loads(row[0]))
        signal.version = int(row[1])
        return signal

    def _save(self, signal: Signal) -> Signal:
        expected = signal.version
        signal.version = expected + 1
        doc = self._dumps(signal)
        with self._lock:
            conn = self._db()
            cur = conn.execute(
                "UPDATE signals SET pair = ?, direction = ?, status = ?, version = ?, doc = ? "
                "WHERE id = ? AND version = ?",
                (signal.pair, signal.direction, signal.status, signal.version, doc, signal.id, expected),
            )
            if cur.rowcount == 1:
                conn.commit()
                return signal
            conn.rollback()
            row = conn.execute("SELECT version FROM signals WHERE id = ?", (signal.id,)).fetchone()
        signal.version = expected
        if row is None:
            raise SignalNotFound(signal.id)
        raise PersistenceConflict(signal.id, expected, int(row[0]))

    def _delete(self, signal_id: str) -> None:
        with self._lock:
            conn = self._db()
            cur = conn.execute("DELETE FROM signals WHERE id = ?", (signal_id,))
            conn.commit()
        if cur.rowcount == 0:
            raise SignalNotFound(signal_id)

    def _list_evaluable(self) -> List[SignalRef]:
        marks = ",".join("?" for _ in EVALUABLE_STATUSES)
        with self._lock:
            rows = self._db().execute(
                f"SELECT id, pair, status, direction FROM signals WHERE status IN ({marks}) "
                "ORDER BY created_at_ms ASC",
                EVALUABLE_STATUSES,
            ).fetchall()
        return [SignalRef(id=r[0], pair=r[1], status=r[2], direction=r[3]) for r in rows]

    def _list_all(self) -> List[Signal]:
        with self._lock:
            rows = self._db().execute("SELECT doc, version FROM signals ORDER BY created_at_ms DESC").fetchall()
        out = []
        for doc, version in rows:
            s = Signal.from_dict(json.loads(doc))
            s.version = int(version)
            out.append(s)
        return out

    async def insert(self, signal: Signal) -> Signal:
        return await asyncio.to_thread(self._insert, signal)

    async def get(self, signal_id: str) -> Signal:
        return await asyncio.to_thread(self._get, signal_id)

    async def save(self, signal: Signal) -> Signal:
        return await asyncio.to_thread(self._save, signal)

    async def delete(self, signal_id: str) -> None:
        await asyncio.to_thread(self._delete, signal_id)

    async def list_evaluable(self) -> List[SignalRef]:
        return await asyncio.to_thread(self._list_evaluable)

    async def list_all(self) -> List[Signal]:
        return await asyncio.to_thread(self._list_all)

    async def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
