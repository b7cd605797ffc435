"""
Per-agent rolling spend counters.

Trackers are persisted in SQLite. Every read-check-write runs inside
BudgetStore.transaction(), which holds a per-agent lock and a BEGIN
IMMEDIATE transaction, so two approvals can never both pass a cap check
against the same stale counters.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional

from .config import DEFAULT_DATA_DIR, DEFAULT_HOLD_TTL_SECONDS, DEFAULT_MAX_LEDGER_ENTRIES, AccordConfig
from .storage import ensure_private_dir, harden_sqlite_files


DEFAULT_BUDGET_DIR = DEFAULT_DATA_DIR / "budgets"


def day_start(now: datetime) -> datetime:
    """Start of the UTC calendar day containing `now`."""
    utc = now.astimezone(timezone.utc)
    return datetime(utc.year, utc.month, utc.day, tzinfo=timezone.utc)


def week_start(now: datetime) -> datetime:
    """Start of the ISO week (Monday 00:00 UTC) containing `now`."""
    start = day_start(now)
    return start - timedelta(days=start.weekday())


def month_start(now: datetime) -> datetime:
    utc = now.astimezone(timezone.utc)
    return datetime(utc.year, utc.month, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class BudgetTransaction:
    """A single approved spend."""

    request_id: str
    agent_id: str
    policy_id: str
    amount: int
    timestamp: datetime
    tx_hash: Optional[str] = None
    chain: Optional[str] = None
    method: Optional[str] = None


@dataclass(frozen=True)
class BudgetHold:
    """Amount reserved by an approved request that has not executed yet."""

    request_id: str
    agent_id: str
    policy_id: str
    amount: int
    created_at: datetime


@dataclass(frozen=True)
class BudgetCheckResult:
    allowed: bool
    remaining_daily: int
    remaining_weekly: int
    remaining_monthly: int
    violated_rule: Optional[str] = None
    violated_actual: Optional[str] = None
    violated_limit: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining_daily": self.remaining_daily,
            "remaining_weekly": self.remaining_weekly,
            "remaining_monthly": self.remaining_monthly,
            "violated_rule": self.violated_rule,
            "violated_actual": self.violated_actual,
            "violated_limit": self.violated_limit,
        }


@dataclass
class AgentBudgetTracker:
    """Spend counters for one agent."""

    agent_id: str
    last_reset_daily: datetime
    last_reset_weekly: datetime
    last_reset_monthly: datetime
    daily_spent: int = 0
    weekly_spent: int = 0
    monthly_spent: int = 0
    transactions: list[BudgetTransaction] = field(default_factory=list)
    holds: dict[str, BudgetHold] = field(default_factory=dict)
    paid_policy_ids: set[str] = field(default_factory=set)
    _unsaved: list[BudgetTransaction] = field(default_factory=list, repr=False)

    @classmethod
    def fresh(cls, agent_id: str, now: datetime) -> AgentBudgetTracker:
        return cls(
            agent_id=agent_id,
            last_reset_daily=day_start(now),
            last_reset_weekly=week_start(now),
            last_reset_monthly=month_start(now),
        )

    @property
    def held_amount(self) -> int:
        return sum(h.amount for h in self.holds.values())

    def apply_resets(self, now: datetime) -> list[str]:
        """
        Zero each window whose boundary `now` has crossed.

        Windows are tested independently; repeated calls with the same
        `now` change nothing after the first.
        """
        reset: list[str] = []
        boundary = day_start(now)
        if self.last_reset_daily < boundary:
            self.daily_spent = 0
            self.last_reset_daily = boundary
            reset.append("daily")
        boundary = week_start(now)
        if self.last_reset_weekly < boundary:
            self.weekly_spent = 0
            self.last_reset_weekly = boundary
            reset.append("weekly")
        boundary = month_start(now)
        if self.last_reset_monthly < boundary:
            self.monthly_spent = 0
            self.last_reset_monthly = boundary
            reset.append("monthly")
        return reset

    def place_hold(self, hold: BudgetHold) -> None:
        if hold.amount < 0:
            raise ValueError("Hold amount must be non-negative")
        self.holds[hold.request_id] = hold

    def release_hold(self, request_id: str) -> Optional[BudgetHold]:
        return self.holds.pop(request_id, None)

    def expire_holds(self, cutoff: datetime) -> list[BudgetHold]:
        """Drop holds placed before `cutoff` and return them."""
        stale = [h for h in self.holds.values() if h.created_at < cutoff]
        for hold in stale:
            del self.holds[hold.request_id]
        return stale

    def record_spend(self, tx: BudgetTransaction, now: datetime) -> None:
        if tx.amount <= 0:
            raise ValueError("Spend amount must be positive")
        self.apply_resets(now)
        self.daily_spent += tx.amount
        self.weekly_spent += tx.amount
        self.monthly_spent += tx.amount
        self.transactions.append(tx)
        self.paid_policy_ids.add(tx.policy_id)
        self._unsaved.append(tx)


class LedgerTransaction:
    """Handle yielded by BudgetStore.transaction()."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        tracker: AgentBudgetTracker,
        expired_holds: Optional[list[BudgetHold]] = None,
    ):
        self._conn = conn
        self.tracker = tracker
        self.expired_holds = expired_holds or []

    def is_recorded(self, request_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM recorded_executions WHERE request_id = ?",
            (request_id,),
        ).fetchone()
        return row is not None

    def mark_recorded(self, request_id: str, policy_id: str, recorded_at: datetime) -> None:
        self._conn.execute(
            """
            INSERT OR IGNORE INTO recorded_executions (request_id, agent_id, policy_id, recorded_at)
            VALUES (?, ?, ?, ?)
            """,
            (request_id, self.tracker.agent_id, policy_id, recorded_at.isoformat()),
        )


class BudgetStore:
    """SQLite-backed owner of every agent's budget tracker."""

    def __init__(
        self,
        budget_dir: Optional[Path] = None,
        max_ledger_entries: int = DEFAULT_MAX_LEDGER_ENTRIES,
        hold_ttl_seconds: int = DEFAULT_HOLD_TTL_SECONDS,
    ):
        if hold_ttl_seconds <= 0:
            raise ValueError("hold_ttl_seconds must be positive")
        self.budget_dir = budget_dir or DEFAULT_BUDGET_DIR
        ensure_private_dir(self.budget_dir)
        self.db_path = self.budget_dir / "budget.sqlite3"
        self.max_ledger_entries = max_ledger_entries
        self.hold_ttl = timedelta(seconds=hold_ttl_seconds)
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._init_db()

    @classmethod
    def from_config(cls, config: AccordConfig) -> BudgetStore:
        return cls(
            budget_dir=config.budget_dir,
            max_ledger_entries=config.max_ledger_entries,
            hold_ttl_seconds=config.hold_ttl_seconds,
        )

    def _lock_for(self, agent_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(agent_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[agent_id] = lock
            return lock

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS budget_trackers (
                    agent_id TEXT PRIMARY KEY,
                    daily_spent INTEGER NOT NULL DEFAULT 0,
                    weekly_spent INTEGER NOT NULL DEFAULT 0,
                    monthly_spent INTEGER NOT NULL DEFAULT 0,
                    last_reset_daily TEXT NOT NULL,
                    last_reset_weekly TEXT NOT NULL,
                    last_reset_monthly TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS budget_transactions (
                    request_id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    policy_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    tx_hash TEXT,
                    chain TEXT,
                    method TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_budget_transactions_agent
                ON budget_transactions (agent_id, timestamp)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS budget_holds (
                    request_id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    policy_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recorded_executions (
                    request_id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    policy_id TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                )
                """
            )
        harden_sqlite_files(self.db_path)

    @contextmanager
    def transaction(self, agent_id: str, now: datetime) -> Iterator[LedgerTransaction]:
        """
        Own `agent_id`'s tracker for the duration of the block.

        Pending window resets are applied on load and holds older than the
        hold TTL are dropped. Changes are written back on clean exit and
        rolled back if the block raises.
        """
        with self._lock_for(agent_id), closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                tracker = self._load(conn, agent_id, now)
                tracker.apply_resets(now)
                expired = tracker.expire_holds(now - self.hold_ttl)
                handle = LedgerTransaction(conn, tracker, expired)
                yield handle
                self._save(conn, tracker)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def get_tracker(self, agent_id: str, now: Optional[datetime] = None) -> AgentBudgetTracker:
        """Load an agent's tracker with pending resets applied."""
        with self.transaction(agent_id, now or datetime.now(timezone.utc)) as txn:
            return txn.tracker

    def agent_for_request(self, request_id: str) -> Optional[str]:
        """Agent that holds or has recorded `request_id`, if any."""
        with closing(self._connect()) as conn:
            for table in ("budget_holds", "recorded_executions"):
                row = conn.execute(
                    f"SELECT agent_id FROM {table} WHERE request_id = ?",
                    (request_id,),
                ).fetchone()
                if row is not None:
                    return row["agent_id"]
        return None

    def recent_transactions(self, agent_id: str, limit: int = 50) -> list[BudgetTransaction]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT * FROM budget_transactions
                WHERE agent_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                (agent_id, limit),
            ).fetchall()
        return [self._row_to_tx(r) for r in reversed(rows)]

    def reset(self, agent_id: str, now: Optional[datetime] = None) -> AgentBudgetTracker:
        """Zero an agent's counters and holds (e.g. after a policy change).

        Ledger rows are kept for audit.
        """
        now = now or datetime.now(timezone.utc)
        with self.transaction(agent_id, now) as txn:
            tracker = txn.tracker
            tracker.daily_spent = tracker.weekly_spent = tracker.monthly_spent = 0
            tracker.last_reset_daily = day_start(now)
            tracker.last_reset_weekly = week_start(now)
            tracker.last_reset_monthly = month_start(now)
            tracker.holds.clear()
            return tracker

    def _load(self, conn: sqlite3.Connection, agent_id: str, now: datetime) -> AgentBudgetTracker:
        row = conn.execute(
            "SELECT * FROM budget_trackers WHERE agent_id = ?",
            (agent_id,),
        ).fetchone()
        if row is None:
            tracker = AgentBudgetTracker.fresh(agent_id, now)
            conn.execute(
                """
                INSERT INTO budget_trackers (
                    agent_id, daily_spent, weekly_spent, monthly_spent,
                    last_reset_daily, last_reset_weekly, last_reset_monthly
                ) VALUES (?, 0, 0, 0, ?, ?, ?)
                """,
                (
                    agent_id,
                    tracker.last_reset_daily.isoformat(),
                    tracker.last_reset_weekly.isoformat(),
                    tracker.last_reset_monthly.isoformat(),
                ),
            )
            return tracker

        tx_rows = conn.execute(
            """
            SELECT * FROM budget_transactions
            WHERE agent_id = ?
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
            """,
            (agent_id, self.max_ledger_entries),
        ).fetchall()
        hold_rows = conn.execute(
            "SELECT * FROM budget_holds WHERE agent_id = ?",
            (agent_id,),
        ).fetchall()
        paid_rows = conn.execute(
            "SELECT DISTINCT policy_id FROM budget_transactions WHERE agent_id = ?",
            (agent_id,),
        ).fetchall()

        return AgentBudgetTracker(
            agent_id=agent_id,
            daily_spent=row["daily_spent"],
            weekly_spent=row["weekly_spent"],
            monthly_spent=row["monthly_spent"],
            last_reset_daily=datetime.fromisoformat(row["last_reset_daily"]),
            last_reset_weekly=datetime.fromisoformat(row["last_reset_weekly"]),
            last_reset_monthly=datetime.fromisoformat(row["last_reset_monthly"]),
            transactions=[self._row_to_tx(r) for r in reversed(tx_rows)],
            holds={
                r["request_id"]: BudgetHold(
                    request_id=r["request_id"],
                    agent_id=r["agent_id"],
                    policy_id=r["policy_id"],
                    amount=r["amount"],
                    created_at=datetime.fromisoformat(r["created_at"]),
                )
                for r in hold_rows
            },
            paid_policy_ids={r["policy_id"] for r in paid_rows},
        )

    def _save(self, conn: sqlite3.Connection, tracker: AgentBudgetTracker) -> None:
        if min(tracker.daily_spent, tracker.weekly_spent, tracker.monthly_spent) < 0:
            raise ValueError(f"Budget counters for {tracker.agent_id} would go negative")
        conn.execute(
            """
            UPDATE budget_trackers
            SET daily_spent = ?, weekly_spent = ?, monthly_spent = ?,
                last_reset_daily = ?, last_reset_weekly = ?, last_reset_monthly = ?
            WHERE agent_id = ?
            """,
            (
                tracker.daily_spent,
                tracker.weekly_spent,
                tracker.monthly_spent,
                tracker.last_reset_daily.isoformat(),
                tracker.last_reset_weekly.isoformat(),
                tracker.last_reset_monthly.isoformat(),
                tracker.agent_id,
            ),
        )
        for tx in tracker._unsaved:
            conn.execute(
                """
                INSERT OR IGNORE INTO budget_transactions (
                    request_id, agent_id, policy_id, amount, timestamp, tx_hash, chain, method
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tx.request_id,
                    tx.agent_id,
                    tx.policy_id,
                    tx.amount,
                    tx.timestamp.isoformat(),
                    tx.tx_hash,
                    tx.chain,
                    tx.method,
                ),
            )
        tracker._unsaved.clear()
        conn.execute("DELETE FROM budget_holds WHERE agent_id = ?", (tracker.agent_id,))
        for hold in tracker.holds.values():
            conn.execute(
                """
                INSERT INTO budget_holds (request_id, agent_id, policy_id, amount, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    hold.request_id,
                    hold.agent_id,
                    hold.policy_id,
                    hold.amount,
                    hold.created_at.isoformat(),
                ),
            )
        if len(tracker.transactions) > self.max_ledger_entries:
            del tracker.transactions[: -self.max_ledger_entries]

    def _row_to_tx(self, row: sqlite3.Row) -> BudgetTransaction:
        return BudgetTransaction(
            request_id=row["request_id"],
            agent_id=row["agent_id"],
            policy_id=row["policy_id"],
            amount=row["amount"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            tx_hash=row["tx_hash"],
            chain=row["chain"],
            method=row["method"],
        )
