"""
Governance SQLite Database

aiosqlite-backed store for proposals, per-proposal snapshots, vote records
and the execution queue.

Concurrency model:
  - One connection per engine instance, opened with manual transactions.
  - transaction() serializes coroutines sharing the connection with an
    asyncio.Lock and opens BEGIN IMMEDIATE, so writers in other processes
    serialize on SQLite's reserved lock.
  - Status transitions are compare-and-set updates
    (``UPDATE ... WHERE id = ? AND status = ?``); callers inspect the
    returned boolean instead of re-reading.
  - Tallies move with SQL-side increments, never read-modify-write.

Amounts are stored as INTEGER base units (AMOUNT_SCALE per token).
"""

import asyncio
import json
from contextlib import asynccontextmanager
from decimal import Decimal, ROUND_DOWN
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from .constants import AMOUNT_DECIMALS, AMOUNT_SCALE
from .exceptions import StorageError
from .logger import get_logger

logger = get_logger(__name__)


# Columns a status transition may set alongside the new status.
_PROPOSAL_AUDIT_COLUMNS = frozenset({
    "executed_at", "executed_by", "vetoed_at", "vetoed_by",
    "veto_reason", "cancelled_at", "finalized_at",
})
_QUEUE_AUDIT_COLUMNS = frozenset({
    "executed_at", "executed_by", "vetoed_at", "vetoed_by",
    "veto_reason", "expired_at", "failure_reason",
})
_TALLY_COLUMNS = frozenset({"votes_for", "votes_against", "votes_abstain"})


def to_units(amount: Decimal, rounding: str = ROUND_DOWN) -> int:
    """Convert a token amount to integer base units."""
    return int((Decimal(amount) * AMOUNT_SCALE).to_integral_value(rounding=rounding))


def from_units(units: Optional[int]) -> Decimal:
    """Convert integer base units back to a token amount."""
    return Decimal(units or 0).scaleb(-AMOUNT_DECIMALS)


def _set_clause(fields: Dict[str, Any], allowed: frozenset) -> str:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot set columns {sorted(unknown)}")
    return "".join(f", {column} = ?" for column in fields)


class GovernanceDatabase:
    """
    Async SQLite persistence for the governance engine.

    Data-access methods run on the shared connection and must be called
    inside ``async with db.transaction():``.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @staticmethod
    async def create(db_path: str = ":memory:") -> "GovernanceDatabase":
        """Open (and initialise) the governance database."""
        self = GovernanceDatabase(db_path)

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.connection = await aiosqlite.connect(db_path, isolation_level=None, timeout=30)
        self.connection.row_factory = aiosqlite.Row

        if db_path != ":memory:":
            await self.connection.execute("PRAGMA journal_mode=WAL")
        await self.connection.execute("PRAGMA foreign_keys=ON")

        await self._init_schema()

        logger.info(f"Governance database initialized: {db_path}")
        return self

    async def _init_schema(self):
        """Create tables if they don't exist"""
        schema = """
        CREATE TABLE IF NOT EXISTS counters (
            name TEXT PRIMARY KEY,
            value INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS proposals (
            id INTEGER PRIMARY KEY,
            code TEXT UNIQUE NOT NULL,
            proposal_type TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL,
            discussion_url TEXT,
            proposer TEXT NOT NULL,
            action_payload TEXT NOT NULL,
            status TEXT NOT NULL,
            config_version INTEGER NOT NULL,
            snapshot_block INTEGER NOT NULL,
            total_supply INTEGER NOT NULL,
            quorum_required INTEGER NOT NULL,
            votes_for INTEGER NOT NULL DEFAULT 0,
            votes_against INTEGER NOT NULL DEFAULT 0,
            votes_abstain INTEGER NOT NULL DEFAULT 0,
            total_voters INTEGER NOT NULL DEFAULT 0,
            voting_starts_at REAL NOT NULL,
            voting_ends_at REAL NOT NULL,
            timelock_ends_at REAL NOT NULL,
            execution_deadline REAL NOT NULL,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            finalized_at REAL,
            executed_at REAL,
            executed_by TEXT,
            vetoed_at REAL,
            vetoed_by TEXT,
            veto_reason TEXT,
            cancelled_at REAL,
            CHECK (voting_starts_at < voting_ends_at),
            CHECK (voting_ends_at < timelock_ends_at),
            CHECK (timelock_ends_at < execution_deadline)
        );

        CREATE TABLE IF NOT EXISTS snapshot_entries (
            proposal_id INTEGER NOT NULL REFERENCES proposals(id),
            holder TEXT NOT NULL,
            balance INTEGER NOT NULL,
            voting_weight INTEGER NOT NULL,
            snapshot_block INTEGER NOT NULL,
            PRIMARY KEY (proposal_id, holder)
        );

        CREATE TABLE IF NOT EXISTS votes (
            proposal_id INTEGER NOT NULL REFERENCES proposals(id),
            voter TEXT NOT NULL,
            choice TEXT NOT NULL,
            weight INTEGER NOT NULL,
            previous_choice TEXT,
            cast_at REAL NOT NULL,
            changed_at REAL,
            PRIMARY KEY (proposal_id, voter)
        );

        CREATE TABLE IF NOT EXISTS execution_queue (
            proposal_id INTEGER PRIMARY KEY REFERENCES proposals(id),
            action_type TEXT NOT NULL,
            action_payload TEXT NOT NULL,
            timelock_ends_at REAL NOT NULL,
            execution_deadline REAL NOT NULL,
            status TEXT NOT NULL,
            queued_at REAL NOT NULL,
            executed_at REAL,
            executed_by TEXT,
            vetoed_at REAL,
            vetoed_by TEXT,
            veto_reason TEXT,
            expired_at REAL,
            failure_reason TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status);
        CREATE INDEX IF NOT EXISTS idx_proposals_voting_end ON proposals(status, voting_ends_at);
        CREATE INDEX IF NOT EXISTS idx_proposals_type_executed ON proposals(proposal_type, status, executed_at);
        CREATE INDEX IF NOT EXISTS idx_queue_deadline ON execution_queue(status, execution_deadline);
        """

        await self.connection.executescript(schema)

    async def close(self):
        """Close database connection"""
        if self.connection:
            await self.connection.close()
            self.connection = None
            logger.info(f"Governance database closed: {self.db_path}")

    # ── Transactions ──────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self, readonly: bool = False):
        """
        Run the enclosed block as one SQLite transaction.

        Commits on success, rolls back on any exception. Unexpected
        sqlite errors are re-raised as StorageError.
        """
        if self.connection is None:
            raise StorageError("Governance database is closed")
        async with self._lock:
            try:
                await self.connection.execute("BEGIN" if readonly else "BEGIN IMMEDIATE")
                yield self
                await self.connection.execute("COMMIT")
            except BaseException as e:
                if self.connection.in_transaction:
                    await self.connection.execute("ROLLBACK")
                if isinstance(e, aiosqlite.Error):
                    raise StorageError(f"Governance database error: {e}") from e
                raise

    async def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        cursor = await self.connection.execute(query, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        cursor = await self.connection.execute(query, params)
        rows = await cursor.fetchall()
        await cursor.close()
        return list(rows)

    async def _update(self, query: str, params: Sequence[Any]) -> int:
        cursor = await self.connection.execute(query, params)
        count = cursor.rowcount
        await cursor.close()
        return count

    # ── Counters ──────────────────────────────────────────────────────

    async def next_sequence(self, name: str) -> int:
        """Increment and return the named counter."""
        await self.connection.execute(
            "INSERT INTO counters (name, value) VALUES (?, 1) "
            "ON CONFLICT(name) DO UPDATE SET value = value + 1",
            (name,),
        )
        row = await self._fetchone("SELECT value FROM counters WHERE name = ?", (name,))
        return row["value"]

    async def get_sequence(self, name: str) -> int:
        row = await self._fetchone("SELECT value FROM counters WHERE name = ?", (name,))
        return row["value"] if row else 0

    # ── Proposals ─────────────────────────────────────────────────────

    async def insert_proposal(self, record: Dict[str, Any]):
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        await self.connection.execute(
            f"INSERT INTO proposals ({columns}) VALUES ({placeholders})",
            tuple(record.values()),
        )

    async def get_proposal(self, proposal_id: int) -> Optional[aiosqlite.Row]:
        return await self._fetchone("SELECT * FROM proposals WHERE id = ?", (proposal_id,))

    async def get_proposal_by_code(self, code: str) -> Optional[aiosqlite.Row]:
        return await self._fetchone("SELECT * FROM proposals WHERE code = ?", (code,))

    async def count_proposals(
        self,
        statuses: Optional[Iterable[str]] = None,
        proposal_type: Optional[str] = None,
    ) -> int:
        where, params = self._proposal_filter(statuses, proposal_type)
        row = await self._fetchone(f"SELECT COUNT(*) AS n FROM proposals{where}", params)
        return row["n"]

    async def list_proposals(
        self,
        statuses: Optional[Iterable[str]] = None,
        proposal_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[aiosqlite.Row]:
        where, params = self._proposal_filter(statuses, proposal_type)
        return await self._fetchall(
            f"SELECT * FROM proposals{where} ORDER BY id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )

    @staticmethod
    def _proposal_filter(statuses, proposal_type):
        clauses, params = [], []
        if statuses is not None:
            statuses = list(statuses)
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if proposal_type is not None:
            clauses.append("proposal_type = ?")
            params.append(proposal_type)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def last_executed_at(self, proposal_type: str, status: str) -> Optional[float]:
        """Most recent executed_at among proposals of *proposal_type* in *status*."""
        row = await self._fetchone(
            "SELECT MAX(executed_at) AS last FROM proposals "
            "WHERE proposal_type = ? AND status = ?",
            (proposal_type, status),
        )
        return row["last"] if row else None

    async def transition_proposal(
        self,
        proposal_id: int,
        expected: str,
        new: str,
        now: float,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-set the proposal status.

        Returns:
            False if the proposal was not in *expected* status.
        """
        extra = _set_clause(fields, _PROPOSAL_AUDIT_COLUMNS)
        count = await self._update(
            f"UPDATE proposals SET status = ?, updated_at = ?{extra} "
            "WHERE id = ? AND status = ?",
            (new, now, *fields.values(), proposal_id, expected),
        )
        return count == 1

    async def apply_vote_delta(
        self,
        proposal_id: int,
        deltas: Dict[str, int],
        new_voters: int,
        expected_status: str,
        now: float,
    ) -> bool:
        """
        Atomically adjust tally columns while the proposal is still in
        *expected_status*.

        Args:
            deltas: tally column → signed base-unit change
            new_voters: 1 for a first vote, 0 for a change
        """
        unknown = set(deltas) - _TALLY_COLUMNS
        if unknown:
            raise ValueError(f"Not tally columns: {sorted(unknown)}")
        extra = "".join(f", {column} = {column} + ?" for column in deltas)
        count = await self._update(
            f"UPDATE proposals SET total_voters = total_voters + ?, updated_at = ?{extra} "
            "WHERE id = ? AND status = ?",
            (new_voters, now, *deltas.values(), proposal_id, expected_status),
        )
        return count == 1

    async def get_due_proposals(self, status: str, now: float) -> List[aiosqlite.Row]:
        """Proposals in *status* whose voting window ended at or before *now*."""
        return await self._fetchall(
            "SELECT * FROM proposals WHERE status = ? AND voting_ends_at <= ? ORDER BY id",
            (status, now),
        )

    async def get_unqueued_proposals(self, status: str) -> List[aiosqlite.Row]:
        """Proposals in *status* that have no execution queue item."""
        return await self._fetchall(
            "SELECT p.* FROM proposals p "
            "LEFT JOIN execution_queue q ON q.proposal_id = p.id "
            "WHERE p.status = ? AND q.proposal_id IS NULL ORDER BY p.id",
            (status,),
        )

    # ── Snapshots ─────────────────────────────────────────────────────

    async def insert_snapshot_entries(self, entries: Iterable[Dict[str, Any]]):
        await self.connection.executemany(
            "INSERT INTO snapshot_entries "
            "(proposal_id, holder, balance, voting_weight, snapshot_block) "
            "VALUES (:proposal_id, :holder, :balance, :voting_weight, :snapshot_block)",
            list(entries),
        )

    async def get_snapshot_entry(self, proposal_id: int, holder: str) -> Optional[aiosqlite.Row]:
        return await self._fetchone(
            "SELECT * FROM snapshot_entries WHERE proposal_id = ? AND holder = ?",
            (proposal_id, holder),
        )

    async def get_snapshot_entries(self, proposal_id: int) -> List[aiosqlite.Row]:
        return await self._fetchall(
            "SELECT * FROM snapshot_entries WHERE proposal_id = ? ORDER BY holder",
            (proposal_id,),
        )

    async def get_snapshot_total(self, proposal_id: int) -> int:
        row = await self._fetchone(
            "SELECT COALESCE(SUM(voting_weight), 0) AS total "
            "FROM snapshot_entries WHERE proposal_id = ?",
            (proposal_id,),
        )
        return row["total"]

    # ── Votes ─────────────────────────────────────────────────────────

    async def get_vote(self, proposal_id: int, voter: str) -> Optional[aiosqlite.Row]:
        return await self._fetchone(
            "SELECT * FROM votes WHERE proposal_id = ? AND voter = ?",
            (proposal_id, voter),
        )

    async def get_votes(self, proposal_id: int) -> List[aiosqlite.Row]:
        return await self._fetchall(
            "SELECT * FROM votes WHERE proposal_id = ? ORDER BY cast_at, voter",
            (proposal_id,),
        )

    async def upsert_vote(
        self,
        proposal_id: int,
        voter: str,
        choice: str,
        weight: int,
        now: float,
    ):
        """Insert the voter's record, or overwrite it keeping the old choice."""
        await self.connection.execute(
            """
            INSERT INTO votes (proposal_id, voter, choice, weight, cast_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(proposal_id, voter) DO UPDATE SET
                previous_choice = votes.choice,
                choice = excluded.choice,
                weight = excluded.weight,
                changed_at = excluded.cast_at
            """,
            (proposal_id, voter, choice, weight, now),
        )

    # ── Execution queue ───────────────────────────────────────────────

    async def insert_execution_item(self, record: Dict[str, Any]):
        record = dict(record)
        record["action_payload"] = json.dumps(record["action_payload"], sort_keys=True)
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        await self.connection.execute(
            f"INSERT INTO execution_queue ({columns}) VALUES ({placeholders})",
            tuple(record.values()),
        )

    async def get_execution_item(self, proposal_id: int) -> Optional[aiosqlite.Row]:
        return await self._fetchone(
            "SELECT * FROM execution_queue WHERE proposal_id = ?", (proposal_id,)
        )

    async def transition_execution_item(
        self,
        proposal_id: int,
        expected: str,
        new: str,
        **fields: Any,
    ) -> bool:
        """Compare-and-set the queue item status."""
        extra = _set_clause(fields, _QUEUE_AUDIT_COLUMNS)
        count = await self._update(
            f"UPDATE execution_queue SET status = ?{extra} "
            "WHERE proposal_id = ? AND status = ?",
            (new, *fields.values(), proposal_id, expected),
        )
        return count == 1

    async def set_execution_failure(self, proposal_id: int, reason: str):
        await self.connection.execute(
            "UPDATE execution_queue SET failure_reason = ? WHERE proposal_id = ?",
            (reason, proposal_id),
        )

    async def get_due_execution_items(self, status: str, now: float) -> List[aiosqlite.Row]:
        """Queue items in *status* whose execution deadline is at or before *now*."""
        return await self._fetchall(
            "SELECT * FROM execution_queue "
            "WHERE status = ? AND execution_deadline <= ? ORDER BY proposal_id",
            (status, now),
        )


def decode_payload(raw: Optional[str]) -> Dict[str, Any]:
    return json.loads(raw) if raw else {}
