"""
Voting Power Snapshots

A snapshot is a bulk copy of every holder's balance taken while a
proposal is being created, inside the same transaction that inserts the
proposal. Entries are never added to or edited afterwards, whatever
happens to the live ledger.

The copy is only as consistent as one list_all_holders() read: holders
that appear after that read are not included.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from ..database_sqlite import GovernanceDatabase, from_units, to_units
from ..logger import get_logger
from ..oracle import HolderBalance

logger = get_logger(__name__)


@dataclass(frozen=True)
class SnapshotEntry:
    """One holder's balance and voting weight at proposal creation."""
    proposal_id: int
    holder: str
    balance: Decimal
    voting_weight: Decimal
    snapshot_block: int

    @classmethod
    def from_row(cls, row) -> "SnapshotEntry":
        return cls(
            proposal_id=row["proposal_id"],
            holder=row["holder"],
            balance=from_units(row["balance"]),
            voting_weight=from_units(row["voting_weight"]),
            snapshot_block=row["snapshot_block"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "holder": self.holder,
            "balance": str(self.balance),
            "votingWeight": str(self.voting_weight),
            "snapshotBlock": self.snapshot_block,
        }


class SnapshotStore:
    """
    Append-only snapshot storage.

    capture() and weight_of() run inside the caller's transaction;
    get_snapshot() opens its own read transaction.
    """

    def __init__(self, db: GovernanceDatabase):
        self.db = db

    async def capture(
        self,
        proposal_id: int,
        holders: Sequence[HolderBalance],
        snapshot_block: int,
    ) -> List[SnapshotEntry]:
        rows = []
        for holder in holders:
            if holder.balance <= 0:
                continue
            rows.append({
                "proposal_id": proposal_id,
                "holder": holder.holder,
                "balance": to_units(holder.balance),
                "voting_weight": to_units(holder.effective_weight),
                "snapshot_block": snapshot_block,
            })
        await self.db.insert_snapshot_entries(rows)
        logger.debug(f"Snapshot for proposal #{proposal_id}: {len(rows)} holders")
        return [SnapshotEntry.from_row(row) for row in rows]

    async def weight_of(self, proposal_id: int, holder: str) -> Decimal:
        """Snapshotted weight of *holder*, zero if they held nothing."""
        row = await self.db.get_snapshot_entry(proposal_id, holder)
        return from_units(row["voting_weight"]) if row else Decimal("0")

    async def get_entry(self, proposal_id: int, holder: str) -> Optional[SnapshotEntry]:
        async with self.db.transaction(readonly=True):
            row = await self.db.get_snapshot_entry(proposal_id, holder)
        return SnapshotEntry.from_row(row) if row else None

    async def get_snapshot(self, proposal_id: int) -> List[SnapshotEntry]:
        async with self.db.transaction(readonly=True):
            rows = await self.db.get_snapshot_entries(proposal_id)
        return [SnapshotEntry.from_row(row) for row in rows]

    async def total_weight(self, proposal_id: int) -> Decimal:
        async with self.db.transaction(readonly=True):
            units = await self.db.get_snapshot_total(proposal_id)
        return from_units(units)
