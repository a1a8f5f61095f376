from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from services.api.logging_config import get_logger

logger = get_logger("eventlog")

DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS tx_log(
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  id TEXT NOT NULL UNIQUE,
  kind TEXT NOT NULL,
  ts TEXT NOT NULL,
  payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nullifiers(
  nullifier TEXT PRIMARY KEY,
  commitment TEXT NOT NULL,
  spent_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS leaves(
  idx INTEGER PRIMARY KEY,
  commitment TEXT NOT NULL,
  leaf TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS claimed_signatures(
  signature TEXT PRIMARY KEY,
  payment_id TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics(
  epoch INTEGER PRIMARY KEY,
  issued_count INTEGER NOT NULL DEFAULT 0,
  verified_count INTEGER NOT NULL DEFAULT 0,
  refunded_count INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT NOT NULL
);
"""

KINDS = ("ProofIssued", "PaymentVerified", "PaymentRefunded", "PaymentExpired")


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _epoch() -> int:
    # minute buckets
    return int(datetime.now(timezone.utc).timestamp()) // 60


class EventLog:
    """
    Append-only SQLite journal of proof issuance and payment transitions.

    Derived tables (nullifiers, leaves, claimed_signatures, metrics) are a
    projection of tx_log and can be rebuilt with `replay()`. Restoring them at
    start-up is what lets double-spend protection survive a restart.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._init()

    # ---------- storage ----------
    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        cx = sqlite3.connect(self.db_path)
        try:
            with cx:
                yield cx
        finally:
            cx.close()

    def _init(self) -> None:
        with self._conn() as cx:
            cx.executescript(DDL)

    # ---------- metrics & events ----------
    def _touch_metrics(self, cx: sqlite3.Connection, epoch: int) -> None:
        now = _now()
        cx.execute(
            "INSERT OR IGNORE INTO metrics(epoch,issued_count,verified_count,refunded_count,updated_at) "
            "VALUES(?,?,?,?,?)",
            (epoch, 0, 0, 0, now),
        )
        cx.execute("UPDATE metrics SET updated_at=? WHERE epoch=?", (now, epoch))

    def apply_event_row(self, cx: sqlite3.Connection, kind: str, payload: Dict[str, Any]) -> None:
        epoch = int(payload.get("epoch") or _epoch())

        if kind == "ProofIssued":
            cx.execute(
                "INSERT OR IGNORE INTO nullifiers(nullifier, commitment, spent_at) VALUES(?,?,?)",
                (payload["nullifier"], payload["commitment"], payload.get("ts") or _now()),
            )
            (count,) = cx.execute("SELECT COUNT(*) FROM leaves").fetchone()
            cx.execute(
                "INSERT INTO leaves(idx, commitment, leaf) VALUES(?,?,?)",
                (count, payload["commitment"], payload["leaf"]),
            )
            self._touch_metrics(cx, epoch)
            cx.execute("UPDATE metrics SET issued_count = issued_count + 1 WHERE epoch=?", (epoch,))
            return

        if kind == "PaymentVerified":
            cx.execute(
                "INSERT OR IGNORE INTO claimed_signatures(signature, payment_id) VALUES(?,?)",
                (payload["signature"], payload["payment_id"]),
            )
            self._touch_metrics(cx, epoch)
            cx.execute("UPDATE metrics SET verified_count = verified_count + 1 WHERE epoch=?", (epoch,))
            return

        if kind == "PaymentRefunded":
            self._touch_metrics(cx, epoch)
            cx.execute("UPDATE metrics SET refunded_count = refunded_count + 1 WHERE epoch=?", (epoch,))
            return

        if kind == "PaymentExpired":
            return

        raise ValueError(f"Unknown event kind: {kind}")

    def append_event(self, kind: str, **payload) -> str:
        event_id = payload.get("event_id") or str(uuid.uuid4())
        ts = payload.get("ts") or _now()
        row = {"event_id": event_id, "kind": kind, "ts": ts, "epoch": payload.get("epoch") or _epoch(), **payload}
        blob = json.dumps(row, separators=(",", ":"))
        with self._conn() as cx:
            if cx.execute("SELECT 1 FROM tx_log WHERE id=?", (event_id,)).fetchone():
                return event_id
            cx.execute("INSERT INTO tx_log(id,kind,ts,payload) VALUES(?,?,?,?)", (event_id, kind, ts, blob))
            self.apply_event_row(cx, kind, row)
        return event_id

    def record_issue(self, *, nullifier: str, commitment: str, leaf: str, proof_id: str) -> None:
        self.append_event("ProofIssued", nullifier=nullifier, commitment=commitment, leaf=leaf, proof_id=proof_id)

    def replay(self) -> int:
        with self._conn() as cx:
            cx.execute("DELETE FROM nullifiers")
            cx.execute("DELETE FROM leaves")
            cx.execute("DELETE FROM claimed_signatures")
            cx.execute("DELETE FROM metrics")
            rows = cx.execute("SELECT kind, payload FROM tx_log ORDER BY seq ASC").fetchall()
            n = 0
            for kind, payload in rows:
                self.apply_event_row(cx, kind, json.loads(payload))
                n += 1
        logger.info(f"replayed {n} events from {self.db_path}")
        return n

    # ---------- projections ----------
    def nullifier_entries(self) -> List[Tuple[str, Optional[str]]]:
        with self._conn() as cx:
            return [(n, c) for n, c in cx.execute("SELECT nullifier, commitment FROM nullifiers")]

    def leaf_commitments(self) -> List[str]:
        with self._conn() as cx:
            return [c for (c,) in cx.execute("SELECT commitment FROM leaves ORDER BY idx ASC")]

    def claimed_signatures(self) -> Dict[str, str]:
        with self._conn() as cx:
            return dict(cx.execute("SELECT signature, payment_id FROM claimed_signatures").fetchall())

    def metrics_all(self) -> List[Tuple[int, int, int, int, str]]:
        with self._conn() as cx:
            return cx.execute(
                "SELECT epoch, issued_count, verified_count, refunded_count, updated_at FROM metrics ORDER BY epoch"
            ).fetchall()


__all__ = ["EventLog", "KINDS"]
