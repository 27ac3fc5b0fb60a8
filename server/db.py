"""SQLite helpers shared by the ledger store and the simulated custody backend."""

import itertools
import sqlite3
from contextlib import contextmanager

_savepoint_ids = itertools.count(1)


def connect(db_path: str = ":memory:") -> sqlite3.Connection:
    """Open an autocommit connection; writes are grouped with ``savepoint``."""
    db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA journal_mode=WAL")
    return db


@contextmanager
def savepoint(db: sqlite3.Connection):
    """Run the block inside a (possibly nested) SAVEPOINT. Rolls back on any exception."""
    name = f"sp_{next(_savepoint_ids)}"
    db.execute(f"SAVEPOINT {name}")
    try:
        yield
    except BaseException:
        db.execute(f"ROLLBACK TO SAVEPOINT {name}")
        db.execute(f"RELEASE SAVEPOINT {name}")
        raise
    db.execute(f"RELEASE SAVEPOINT {name}")
