"""
Snapshot-Weighted Voting Engine

Implements:
  - Vote types: For / Against / Abstain (abstain counts toward quorum)
  - Weight = the voter's snapshotted weight for the proposal
    (no snapshot entry → weight 0, the vote is still recorded)
  - Vote changes: only the latest choice counts; the previous weight is
    moved out of its old bucket in the same atomic SQL update
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..database_sqlite import GovernanceDatabase, from_units, to_units
from ..exceptions import (
    InvalidProposalError,
    InvalidStatusForOperationError,
    VotingWindowClosedError,
)
from ..logger import get_logger
from .proposals import ProposalStatus, fetch_proposal
from .snapshot import SnapshotStore

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  VOTE DATA
# ══════════════════════════════════════════════════════════════════════

class Vote(str, Enum):
    """Vote choice."""
    FOR = "FOR"
    AGAINST = "AGAINST"
    ABSTAIN = "ABSTAIN"

    @property
    def column(self) -> str:
        """Tally column on the proposals table."""
        return f"votes_{self.value.lower()}"

    @classmethod
    def parse(cls, value: Union["Vote", str]) -> "Vote":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise InvalidProposalError(
                f"Unknown vote choice {value!r}; expected one of "
                f"{[v.value for v in cls]}"
            ) from None


@dataclass(frozen=True)
class VoteRecord:
    """A voter's current vote on a proposal."""
    proposal_id: int
    voter: str
    choice: Vote
    weight: Decimal
    cast_at: float
    previous_choice: Optional[Vote] = None
    changed_at: Optional[float] = None

    @classmethod
    def from_row(cls, row) -> "VoteRecord":
        return cls(
            proposal_id=row["proposal_id"],
            voter=row["voter"],
            choice=Vote(row["choice"]),
            weight=from_units(row["weight"]),
            cast_at=row["cast_at"],
            previous_choice=Vote(row["previous_choice"]) if row["previous_choice"] else None,
            changed_at=row["changed_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "voter": self.voter,
            "choice": self.choice.value,
            "weight": str(self.weight),
            "castAt": self.cast_at,
            "previousChoice": self.previous_choice.value if self.previous_choice else None,
            "changedAt": self.changed_at,
        }


@dataclass
class VotingResult:
    """Aggregated tally for a proposal."""
    proposal_id: int
    code: str
    status: ProposalStatus
    quorum_required: Decimal
    votes_for: Decimal = field(default_factory=lambda: Decimal("0"))
    votes_against: Decimal = field(default_factory=lambda: Decimal("0"))
    votes_abstain: Decimal = field(default_factory=lambda: Decimal("0"))
    total_voters: int = 0
    votes: List[VoteRecord] = field(default_factory=list)

    @property
    def total_votes(self) -> Decimal:
        """Total weight that participated (including abstain)."""
        return self.votes_for + self.votes_against + self.votes_abstain

    @property
    def quorum_met(self) -> bool:
        return self.total_votes >= self.quorum_required

    @property
    def approval_rate(self) -> Decimal:
        """Share of non-abstain weight that is FOR."""
        decisive = self.votes_for + self.votes_against
        if decisive <= 0:
            return Decimal("0")
        return self.votes_for / decisive

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "code": self.code,
            "status": self.status.name,
            "votesFor": str(self.votes_for),
            "votesAgainst": str(self.votes_against),
            "votesAbstain": str(self.votes_abstain),
            "totalVotes": str(self.total_votes),
            "totalVoters": self.total_voters,
            "quorumRequired": str(self.quorum_required),
            "quorumMet": self.quorum_met,
            "approvalRate": str(self.approval_rate),
            "votes": [v.to_dict() for v in self.votes],
        }


# ══════════════════════════════════════════════════════════════════════
#  VOTING ENGINE
# ══════════════════════════════════════════════════════════════════════

class VotingEngine:
    """
    Records votes and keeps proposal tallies.

    Responsibilities:
        - Accept votes while the proposal is ACTIVE and inside
          [voting_starts_at, voting_ends_at)
        - Weight each vote from the proposal's snapshot
        - Move weight between tally buckets on a vote change
    """

    def __init__(
        self,
        db: GovernanceDatabase,
        snapshots: Optional[SnapshotStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.snapshots = snapshots or SnapshotStore(db)
        self.clock = clock

    # ── Cast vote ─────────────────────────────────────────────────────

    async def cast_vote(
        self,
        proposal_ref: Union[int, str],
        voter: str,
        choice: Union[Vote, str],
    ) -> VoteRecord:
        """
        Cast or change *voter*'s vote.

        Raises:
            ProposalNotFoundError, InvalidStatusForOperationError,
            VotingWindowClosedError, InvalidProposalError
        """
        choice = Vote.parse(choice)
        if not voter:
            raise InvalidProposalError("Voter identity is required")

        async with self.db.transaction():
            proposal = await fetch_proposal(self.db, proposal_ref)
            if not proposal.is_votable:
                raise InvalidStatusForOperationError(
                    f"Voting requires ACTIVE status; {proposal.code} is {proposal.status.name}",
                    current=proposal.status.name,
                    expected=ProposalStatus.ACTIVE.name,
                )
            now = self.clock()
            if not proposal.voting_open(now):
                raise VotingWindowClosedError(
                    proposal.code, proposal.voting_starts_at, proposal.voting_ends_at, now
                )

            weight = to_units(await self.snapshots.weight_of(proposal.id, voter))
            existing = await self.db.get_vote(proposal.id, voter)

            deltas: Dict[str, int] = {}
            if existing is not None:
                old_column = Vote(existing["choice"]).column
                deltas[old_column] = -existing["weight"]
            deltas[choice.column] = deltas.get(choice.column, 0) + weight
            deltas = {column: delta for column, delta in deltas.items() if delta}

            applied = await self.db.apply_vote_delta(
                proposal.id,
                deltas,
                new_voters=0 if existing is not None else 1,
                expected_status=ProposalStatus.ACTIVE.name,
                now=now,
            )
            if not applied:
                raise InvalidStatusForOperationError(
                    f"{proposal.code} left ACTIVE before the vote was counted",
                    expected=ProposalStatus.ACTIVE.name,
                )
            await self.db.upsert_vote(proposal.id, voter, choice.value, weight, now)
            record = VoteRecord.from_row(await self.db.get_vote(proposal.id, voter))

        if record.previous_choice is None:
            logger.info(
                f"Vote on {proposal.code}: {voter} {choice.value} ({record.weight} tokens)"
            )
        else:
            logger.info(
                f"Vote on {proposal.code}: {voter} "
                f"{record.previous_choice.value} → {choice.value} ({record.weight} tokens)"
            )
        return record

    # ── Queries ───────────────────────────────────────────────────────

    async def get_vote_results(self, proposal_ref: Union[int, str]) -> VotingResult:
        async with self.db.transaction(readonly=True):
            proposal = await fetch_proposal(self.db, proposal_ref)
            rows = await self.db.get_votes(proposal.id)
        return VotingResult(
            proposal_id=proposal.id,
            code=proposal.code,
            status=proposal.status,
            quorum_required=proposal.quorum_required,
            votes_for=proposal.votes_for,
            votes_against=proposal.votes_against,
            votes_abstain=proposal.votes_abstain,
            total_voters=proposal.total_voters,
            votes=[VoteRecord.from_row(row) for row in rows],
        )

    async def get_user_vote(
        self,
        proposal_ref: Union[int, str],
        voter: str,
    ) -> Optional[VoteRecord]:
        async with self.db.transaction(readonly=True):
            proposal = await fetch_proposal(self.db, proposal_ref)
            row = await self.db.get_vote(proposal.id, voter)
        return VoteRecord.from_row(row) if row else None
