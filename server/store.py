"""Request ledger storage for the oracle.

SQLite-backed: one row per request id (JSON record) plus one judge-pool row
per request id, both keyed by the same AUTOINCREMENT id space.

Connections run in autocommit mode; callers group writes with
``transaction()``, which nests via SAVEPOINTs so an engine call and any
re-entrant call made during a transfer roll back together.
"""

import json
import threading
from contextlib import contextmanager

from protocol import Phase
from server.db import connect, savepoint
from server.judge_pool import JudgePool
from server.ledger import Request, RequestTerms


class RequestStore:
    """SQLite-backed request ledger + judge pools."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = connect(db_path)
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS requests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                phase TEXT NOT NULL,
                requester TEXT NOT NULL,
                record TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_phase ON requests(phase)")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS judge_pools (
                request_id INTEGER PRIMARY KEY,
                judges TEXT NOT NULL DEFAULT '[]'
            )
        """)

    @contextmanager
    def transaction(self):
        with self._lock, savepoint(self.db):
            yield

    def create(self, terms: RequestTerms, now: int) -> Request:
        """Insert a new request in the commit phase. Returns it with its id assigned."""
        with self.transaction():
            cursor = self.db.execute(
                "INSERT INTO requests (phase, requester, record, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (Phase.COMMIT.value, terms.requester, "{}", now, now),
            )
            request = Request.open(cursor.lastrowid, terms, now)
            self.db.execute(
                "INSERT INTO judge_pools (request_id, judges) VALUES (?, '[]')",
                (request.id,),
            )
            self.save(request, now)
        return request

    def get(self, request_id: int) -> Request | None:
        row = self.db.execute("SELECT record FROM requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            return None
        return Request.from_dict(json.loads(row["record"]))

    def save(self, request: Request, now: int | None = None) -> bool:
        updated_at = now if now is not None else request.created_at
        cursor = self.db.execute(
            "UPDATE requests SET phase = ?, record = ?, updated_at = MAX(updated_at, ?) WHERE id = ?",
            (request.phase.value, json.dumps(request.to_dict()), updated_at, request.id),
        )
        return cursor.rowcount > 0

    def list_by_phase(self, phase: Phase | None = None, limit: int = 50) -> list[Request]:
        """List requests, newest first, optionally filtered by phase."""
        if phase is None:
            rows = self.db.execute(
                "SELECT record FROM requests ORDER BY id DESC LIMIT ?", (limit,),
            ).fetchall()
        else:
            rows = self.db.execute(
                "SELECT record FROM requests WHERE phase = ? ORDER BY id DESC LIMIT ?",
                (phase.value, limit),
            ).fetchall()
        return [Request.from_dict(json.loads(r["record"])) for r in rows]

    def count(self) -> int:
        row = self.db.execute("SELECT COUNT(*) AS n FROM requests").fetchone()
        return row["n"]

    def get_pool(self, request_id: int) -> JudgePool:
        row = self.db.execute(
            "SELECT judges FROM judge_pools WHERE request_id = ?", (request_id,),
        ).fetchone()
        if not row:
            return JudgePool()
        return JudgePool(json.loads(row["judges"]))

    def save_pool(self, request_id: int, pool: JudgePool):
        self.db.execute(
            "INSERT INTO judge_pools (request_id, judges) VALUES (?, ?) "
            "ON CONFLICT(request_id) DO UPDATE SET judges = excluded.judges",
            (request_id, json.dumps(pool.members())),
        )

    def close(self):
        self.db.close()
