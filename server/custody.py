"""Value transfer backends for the oracle.

Two asset lanes per request (reward, bond). Each lane is either the native
currency or a named fungible token. The engine only ever calls
``pull(lane, payer, amount)`` and ``push(lane, payee, amount)``; whatever
custody mechanism sits behind them is the backend's business.

StubCustody records transfers in memory and always succeeds.
SimCustody tracks real balances in SQLite (insufficient funds, refusing
payees, full transfer log) for development and integration tests.
"""

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass

from protocol import CUSTODY_ACCOUNT, LANE_NATIVE, LANE_TOKEN
from server.db import connect, savepoint

logger = logging.getLogger("oracle.custody")


@dataclass(frozen=True)
class Lane:
    """An asset lane: the native currency, or a fungible token identified by ``asset``."""
    kind: str = LANE_NATIVE
    asset: str = ""

    def __post_init__(self):
        if self.kind not in (LANE_NATIVE, LANE_TOKEN):
            raise ValueError(f"Invalid lane kind: {self.kind}")
        if self.kind == LANE_TOKEN and not self.asset:
            raise ValueError("Token lane requires an asset identifier")
        if self.kind == LANE_NATIVE and self.asset:
            raise ValueError("Native lane takes no asset identifier")

    @classmethod
    def native(cls) -> "Lane":
        return cls(LANE_NATIVE)

    @classmethod
    def token(cls, asset: str) -> "Lane":
        return cls(LANE_TOKEN, asset)

    @classmethod
    def parse(cls, text: str) -> "Lane":
        """Parse 'native' or 'token:<asset>'."""
        if text == LANE_NATIVE:
            return cls.native()
        prefix = LANE_TOKEN + ":"
        if text.startswith(prefix):
            return cls.token(text[len(prefix):])
        raise ValueError(f"Invalid lane: {text!r}")

    @property
    def is_native(self) -> bool:
        return self.kind == LANE_NATIVE

    def __str__(self) -> str:
        if self.is_native:
            return LANE_NATIVE
        return f"{LANE_TOKEN}:{self.asset}"


class TransferRejected(Exception):
    """Raised by a backend when a pull or push cannot be carried out."""


class TransferAdapter(ABC):
    """Abstract custody backend. The engine injects one of these."""

    @abstractmethod
    def pull(self, lane: Lane, payer: str, amount: int) -> None:
        """Move ``amount`` of the lane's asset from ``payer`` into custody."""
        ...

    @abstractmethod
    def push(self, lane: Lane, payee: str, amount: int) -> None:
        """Move ``amount`` out of custody to ``payee``. Zero is a no-op."""
        ...

    @abstractmethod
    def balance_of(self, lane: Lane, account: str) -> int:
        ...

    @contextmanager
    def atomic(self):
        """Group transfers so a failure undoes the group. Backends without
        rollback support simply run the block."""
        yield


class StubCustody(TransferAdapter):
    """No-op backend for testing. All operations succeed immediately."""

    def __init__(self):
        self.pulls: list[dict] = []
        self.pushes: list[dict] = []

    def pull(self, lane: Lane, payer: str, amount: int) -> None:
        self.pulls.append({"lane": str(lane), "from": payer, "amount": amount})

    def push(self, lane: Lane, payee: str, amount: int) -> None:
        if amount == 0:
            return
        self.pushes.append({"lane": str(lane), "to": payee, "amount": amount})

    def balance_of(self, lane: Lane, account: str) -> int:
        lane_key = str(lane)
        if account == CUSTODY_ACCOUNT:
            pulled = sum(p["amount"] for p in self.pulls if p["lane"] == lane_key)
            pushed = sum(p["amount"] for p in self.pushes if p["lane"] == lane_key)
            return pulled - pushed
        received = sum(p["amount"] for p in self.pushes if p["lane"] == lane_key and p["to"] == account)
        paid = sum(p["amount"] for p in self.pulls if p["lane"] == lane_key and p["from"] == account)
        return received - paid

    @contextmanager
    def atomic(self):
        n_pulls, n_pushes = len(self.pulls), len(self.pushes)
        try:
            yield
        except BaseException:
            del self.pulls[n_pulls:]
            del self.pushes[n_pushes:]
            raise


class SimCustody(TransferAdapter):
    """Simulated custody for development/integration testing.

    Tracks real balances per (lane, account) in SQLite. Enforces:
    - Insufficient balance errors on both pull (payer) and push (custody)
    - Payees that refuse incoming transfers (``refusing``)
    - Full transfer log with deterministic hashes

    Usage:
        sim = SimCustody()
        sim.fund(Lane.native(), "alice", 10 * UNITS_PER_TOKEN)
        sim.pull(Lane.native(), "alice", 5)
        sim.push(Lane.native(), "bob", 5)
    """

    def __init__(self, db_path: str = ":memory:"):
        self._db = connect(db_path)
        self._lock = threading.RLock()
        self._tx_counter = 0
        self.refusing: set[str] = set()
        self._init_db()

    def _init_db(self):
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_balances (
                lane TEXT NOT NULL,
                account TEXT NOT NULL,
                balance TEXT NOT NULL DEFAULT '0',
                PRIMARY KEY (lane, account)
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transfers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                lane TEXT NOT NULL,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount TEXT NOT NULL,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)

    def _get_balance(self, lane: str, account: str) -> int:
        row = self._db.execute(
            "SELECT balance FROM sim_balances WHERE lane = ? AND account = ?",
            (lane, account),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def _set_balance(self, lane: str, account: str, amount: int):
        self._db.execute(
            "INSERT INTO sim_balances (lane, account, balance) VALUES (?, ?, ?) "
            "ON CONFLICT(lane, account) DO UPDATE SET balance = excluded.balance",
            (lane, account, str(amount)),
        )

    def _record_tx(self, lane: str, from_acc: str, to_acc: str, amount: int, tx_type: str) -> str:
        self._tx_counter += 1
        tx_hash = hashlib.sha256(
            f"{self._tx_counter}:{lane}:{from_acc}:{to_acc}:{amount}".encode(),
        ).hexdigest()
        self._db.execute(
            "INSERT INTO sim_transfers (hash, lane, from_account, to_account, amount, tx_type, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_hash, lane, from_acc, to_acc, str(amount), tx_type, time.time()),
        )
        return tx_hash

    def _move(self, lane: str, from_acc: str, to_acc: str, amount: int, tx_type: str):
        balance = self._get_balance(lane, from_acc)
        if balance < amount:
            raise TransferRejected(
                f"Insufficient {lane} balance: {from_acc} has {balance}, needs {amount}"
            )
        with savepoint(self._db):
            self._set_balance(lane, from_acc, balance - amount)
            self._set_balance(lane, to_acc, self._get_balance(lane, to_acc) + amount)
            self._record_tx(lane, from_acc, to_acc, amount, tx_type)

    # --- TransferAdapter interface ---

    def pull(self, lane: Lane, payer: str, amount: int) -> None:
        if amount < 0:
            raise TransferRejected(f"Negative amount: {amount}")
        if amount == 0:
            return
        with self._lock:
            self._move(str(lane), payer, CUSTODY_ACCOUNT, amount, "pull")
        logger.debug("pull %s %s from %s", amount, lane, payer)

    def push(self, lane: Lane, payee: str, amount: int) -> None:
        if amount < 0:
            raise TransferRejected(f"Negative amount: {amount}")
        if amount == 0:
            return
        if payee in self.refusing:
            raise TransferRejected(f"Payee {payee} refused {amount} {lane}")
        with self._lock:
            self._move(str(lane), CUSTODY_ACCOUNT, payee, amount, "push")
        logger.debug("push %s %s to %s", amount, lane, payee)

    def balance_of(self, lane: Lane, account: str) -> int:
        with self._lock:
            return self._get_balance(str(lane), account)

    @contextmanager
    def atomic(self):
        with self._lock, savepoint(self._db):
            yield

    # --- SimCustody-only methods (for test setup) ---

    def fund(self, lane: Lane, account: str, amount: int):
        """Credit an account with funds (simulates an external deposit)."""
        with self._lock:
            key = str(lane)
            self._set_balance(key, account, self._get_balance(key, account) + amount)
            self._record_tx(key, "faucet", account, amount, "fund")

    def get_transfers(self, account: str = "") -> list[dict]:
        """Transfer log, optionally filtered to transfers touching ``account``."""
        with self._lock:
            if account:
                rows = self._db.execute(
                    "SELECT * FROM sim_transfers WHERE from_account = ? OR to_account = ? ORDER BY id",
                    (account, account),
                ).fetchall()
            else:
                rows = self._db.execute("SELECT * FROM sim_transfers ORDER BY id").fetchall()
            return [dict(r) for r in rows]

    def close(self):
        self._db.close()
