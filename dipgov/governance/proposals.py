"""
Governance Proposals

Defines proposal types, lifecycle states, the Proposal record, and the
ProposalService that creates, looks up, lists and cancels proposals.

Lifecycle:

    DRAFT → ACTIVE → {PASSED | REJECTED | QUORUM_NOT_MET | CANCELLED}
    PASSED → TIMELOCK → {EXECUTED | VETOED | EXPIRED}

Every persisted transition is a compare-and-set on the expected prior
status. Proposal objects are read-only views of a row.
"""

import json
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_UP
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Union

from ..config import GovernanceConfig
from ..constants import GOVERNANCE_DEFAULT_PAGE_SIZE, GOVERNANCE_MAX_PAGE_SIZE
from ..database_sqlite import GovernanceDatabase, decode_payload, from_units, to_units
from ..exceptions import (
    CooldownActiveError,
    InsufficientBalanceError,
    InvalidProposalError,
    InvalidStatusForOperationError,
    ProposalLifecycleError,
    ProposalNotFoundError,
    QuorumOracleUnavailableError,
    TooManyActiveProposalsError,
)
from ..logger import get_logger
from ..notifications import EventType, GovernanceEvent, NotificationSink, emit_safely
from ..oracle import BalanceOracle
from .snapshot import SnapshotStore

logger = get_logger(__name__)

PROPOSAL_SEQUENCE = "proposal"


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ProposalType(IntEnum):
    """Category of governance proposal."""
    PARAMETER_CHANGE = 1      # Fee / limit adjustments (cooldown-bearing)
    NEW_POOL = 2
    POOL_DEPRECATION = 3
    TREASURY_SPEND = 4
    EMERGENCY_ACTION = 5
    PROTOCOL_UPGRADE = 6


class ProposalStatus(IntEnum):
    """Lifecycle stage."""
    DRAFT = 0
    ACTIVE = 1            # Voting open
    PASSED = 2            # For > Against with quorum, not yet queued
    REJECTED = 3
    QUORUM_NOT_MET = 4
    CANCELLED = 5         # Withdrawn by proposer while ACTIVE
    TIMELOCK = 6          # Queued, waiting for timelock / execution
    EXECUTED = 7
    VETOED = 8
    EXPIRED = 9           # Execution deadline passed while queued


# Valid forward transitions
_VALID_TRANSITIONS: Dict[ProposalStatus, set] = {
    ProposalStatus.DRAFT:          {ProposalStatus.ACTIVE, ProposalStatus.CANCELLED},
    ProposalStatus.ACTIVE:         {ProposalStatus.PASSED, ProposalStatus.REJECTED,
                                    ProposalStatus.QUORUM_NOT_MET, ProposalStatus.CANCELLED},
    ProposalStatus.PASSED:         {ProposalStatus.TIMELOCK},
    ProposalStatus.TIMELOCK:       {ProposalStatus.EXECUTED, ProposalStatus.VETOED,
                                    ProposalStatus.EXPIRED},
    # Terminal states: no further transitions
    ProposalStatus.REJECTED:       set(),
    ProposalStatus.QUORUM_NOT_MET: set(),
    ProposalStatus.CANCELLED:      set(),
    ProposalStatus.EXECUTED:       set(),
    ProposalStatus.VETOED:         set(),
    ProposalStatus.EXPIRED:        set(),
}

TERMINAL_STATUSES = frozenset(s for s, allowed in _VALID_TRANSITIONS.items() if not allowed)
OPEN_STATUSES = (ProposalStatus.DRAFT, ProposalStatus.ACTIVE)


def validate_transition(old: ProposalStatus, new: ProposalStatus):
    """Raise ProposalLifecycleError unless *old* → *new* is a legal edge."""
    allowed = _VALID_TRANSITIONS.get(old, set())
    if new not in allowed:
        raise ProposalLifecycleError(
            f"Cannot transition from {old.name} → {new.name}. "
            f"Allowed: {sorted(s.name for s in allowed)}",
            current=old.name,
            expected=new.name,
        )


def coerce_type(proposal_type: Union[ProposalType, str, int]) -> ProposalType:
    if isinstance(proposal_type, ProposalType):
        return proposal_type
    try:
        if isinstance(proposal_type, int):
            return ProposalType(proposal_type)
        return ProposalType[str(proposal_type).upper()]
    except (KeyError, ValueError):
        raise InvalidProposalError(f"Unknown proposal type: {proposal_type!r}") from None


def coerce_status(status: Union[ProposalStatus, str, int]) -> ProposalStatus:
    if isinstance(status, ProposalStatus):
        return status
    try:
        if isinstance(status, int):
            return ProposalStatus(status)
        return ProposalStatus[str(status).upper()]
    except (KeyError, ValueError):
        raise InvalidProposalError(f"Unknown proposal status: {status!r}") from None


# ══════════════════════════════════════════════════════════════════════
#  PROPOSAL
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Proposal:
    """
    Governance proposal as persisted.

    Fields:
        id:                 Sequence number (never reused)
        code:               Human-readable id, e.g. ``DIP-12``
        quorum_required:    total_supply × quorum% / 100, fixed at creation
        snapshot_block:     Logical snapshot marker (equals id)
        voting_starts_at:   Timing fields are frozen at creation:
        voting_ends_at:       starts < ends < timelock_ends < deadline
        timelock_ends_at:
        execution_deadline:
    """
    id: int
    code: str
    proposal_type: ProposalType
    title: str
    description: str
    proposer: str
    status: ProposalStatus
    config_version: int
    snapshot_block: int
    total_supply: Decimal
    quorum_required: Decimal
    voting_starts_at: float
    voting_ends_at: float
    timelock_ends_at: float
    execution_deadline: float
    created_at: float
    updated_at: float
    action_payload: Dict[str, Any] = field(default_factory=dict)
    discussion_url: Optional[str] = None
    votes_for: Decimal = field(default_factory=lambda: Decimal("0"))
    votes_against: Decimal = field(default_factory=lambda: Decimal("0"))
    votes_abstain: Decimal = field(default_factory=lambda: Decimal("0"))
    total_voters: int = 0
    finalized_at: Optional[float] = None
    executed_at: Optional[float] = None
    executed_by: Optional[str] = None
    vetoed_at: Optional[float] = None
    vetoed_by: Optional[str] = None
    veto_reason: Optional[str] = None
    cancelled_at: Optional[float] = None

    # ── Properties ────────────────────────────────────────────────────

    @property
    def total_cast(self) -> Decimal:
        return self.votes_for + self.votes_against + self.votes_abstain

    @property
    def quorum_met(self) -> bool:
        return self.total_cast >= self.quorum_required

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_votable(self) -> bool:
        return self.status == ProposalStatus.ACTIVE

    def voting_open(self, now: float) -> bool:
        return self.voting_starts_at <= now < self.voting_ends_at

    def event(self, event_type: EventType, timestamp: float, **data: Any) -> GovernanceEvent:
        """Build a notification addressed to the proposer."""
        return GovernanceEvent(
            proposal_id=self.code,
            type=event_type,
            recipient=self.proposer,
            data={"title": self.title, "status": self.status.name, **data},
            timestamp=timestamp,
        )

    # ── Serialization ─────────────────────────────────────────────────

    @classmethod
    def from_row(cls, row) -> "Proposal":
        return cls(
            id=row["id"],
            code=row["code"],
            proposal_type=ProposalType[row["proposal_type"]],
            title=row["title"],
            description=row["description"],
            proposer=row["proposer"],
            status=ProposalStatus[row["status"]],
            config_version=row["config_version"],
            snapshot_block=row["snapshot_block"],
            total_supply=from_units(row["total_supply"]),
            quorum_required=from_units(row["quorum_required"]),
            voting_starts_at=row["voting_starts_at"],
            voting_ends_at=row["voting_ends_at"],
            timelock_ends_at=row["timelock_ends_at"],
            execution_deadline=row["execution_deadline"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            action_payload=decode_payload(row["action_payload"]),
            discussion_url=row["discussion_url"],
            votes_for=from_units(row["votes_for"]),
            votes_against=from_units(row["votes_against"]),
            votes_abstain=from_units(row["votes_abstain"]),
            total_voters=row["total_voters"],
            finalized_at=row["finalized_at"],
            executed_at=row["executed_at"],
            executed_by=row["executed_by"],
            vetoed_at=row["vetoed_at"],
            vetoed_by=row["vetoed_by"],
            veto_reason=row["veto_reason"],
            cancelled_at=row["cancelled_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "proposalType": self.proposal_type.name,
            "title": self.title,
            "description": self.description,
            "discussionUrl": self.discussion_url,
            "proposer": self.proposer,
            "actionPayload": self.action_payload,
            "status": self.status.name,
            "configVersion": self.config_version,
            "snapshotBlock": self.snapshot_block,
            "totalSupply": str(self.total_supply),
            "quorumRequired": str(self.quorum_required),
            "quorumMet": self.quorum_met,
            "votesFor": str(self.votes_for),
            "votesAgainst": str(self.votes_against),
            "votesAbstain": str(self.votes_abstain),
            "totalVoters": self.total_voters,
            "votingStartsAt": self.voting_starts_at,
            "votingEndsAt": self.voting_ends_at,
            "timelockEndsAt": self.timelock_ends_at,
            "executionDeadline": self.execution_deadline,
            "createdAt": self.created_at,
            "finalizedAt": self.finalized_at,
            "executedAt": self.executed_at,
            "executedBy": self.executed_by,
            "vetoedAt": self.vetoed_at,
            "vetoedBy": self.vetoed_by,
            "vetoReason": self.veto_reason,
            "cancelledAt": self.cancelled_at,
        }

    def __repr__(self) -> str:
        return (
            f"<Proposal {self.code} '{self.title}' "
            f"type={self.proposal_type.name} status={self.status.name}>"
        )


@dataclass
class ProposalPage:
    """One page of a proposal listing, newest first."""
    items: List[Proposal]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [p.to_dict() for p in self.items],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "totalPages": self.total_pages,
        }


async def fetch_proposal(db: GovernanceDatabase, proposal_ref: Union[int, str]) -> Proposal:
    """
    Load a proposal by sequence number or code inside the caller's
    transaction.

    Raises:
        ProposalNotFoundError
    """
    row = None
    if isinstance(proposal_ref, int):
        row = await db.get_proposal(proposal_ref)
    elif isinstance(proposal_ref, str) and proposal_ref.isdigit():
        row = await db.get_proposal(int(proposal_ref))
    elif isinstance(proposal_ref, str):
        row = await db.get_proposal_by_code(proposal_ref.upper())
    if row is None:
        raise ProposalNotFoundError(proposal_ref)
    return Proposal.from_row(row)


# ══════════════════════════════════════════════════════════════════════
#  SERVICE
# ══════════════════════════════════════════════════════════════════════

class ProposalService:
    """
    Proposal creation, lookup and cancellation.

    Creation checks, in order: proposer balance ≥ threshold, open
    (DRAFT + ACTIVE) proposals below the cap, and for PARAMETER_CHANGE
    no execution inside the cooldown window. The cap and cooldown are
    re-checked inside the write transaction that assigns the sequence
    number, so a failed creation consumes no number.
    """

    def __init__(
        self,
        db: GovernanceDatabase,
        oracle: BalanceOracle,
        config: GovernanceConfig,
        snapshots: Optional[SnapshotStore] = None,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.oracle = oracle
        self.config = config
        self.snapshots = snapshots or SnapshotStore(db)
        self.sink = sink
        self.clock = clock

    # ── Creation ──────────────────────────────────────────────────────

    async def create_proposal(
        self,
        proposer: str,
        proposal_type: Union[ProposalType, str],
        title: str,
        description: str,
        action_payload: Optional[Dict[str, Any]] = None,
        discussion_url: Optional[str] = None,
    ) -> Proposal:
        """
        Validate eligibility, snapshot balances and persist an ACTIVE
        proposal.

        Raises:
            InvalidProposalError, InsufficientBalanceError,
            TooManyActiveProposalsError, CooldownActiveError,
            QuorumOracleUnavailableError
        """
        proposal_type = coerce_type(proposal_type)
        action_payload = self._validate_input(proposer, title, description, action_payload)
        config = self.config
        type_config = config.for_type(proposal_type)

        try:
            balance = await self.oracle.get_balance(proposer)
        except Exception as e:
            raise QuorumOracleUnavailableError(
                f"Balance oracle failed reading {proposer}: {e}"
            ) from e
        if balance < config.proposal_threshold:
            raise InsufficientBalanceError(proposer, balance, config.proposal_threshold)

        async with self.db.transaction(readonly=True):
            await self._check_capacity(config, proposal_type, self.clock())

        try:
            total_supply = await self.oracle.get_total_supply()
            holders = await self.oracle.list_all_holders()
        except Exception as e:
            raise QuorumOracleUnavailableError(
                f"Balance oracle failed during snapshot: {e}"
            ) from e

        snapshot_sum = sum((h.effective_weight for h in holders if h.balance > 0), Decimal("0"))
        if snapshot_sum != total_supply:
            logger.warning(
                f"Snapshot weight {snapshot_sum} differs from total supply {total_supply}"
            )

        quorum_required = total_supply * type_config.quorum_percentage / Decimal("100")

        async with self.db.transaction():
            now = self.clock()
            await self._check_capacity(config, proposal_type, now)

            proposal_id = await self.db.next_sequence(PROPOSAL_SEQUENCE)
            voting_ends_at = now + type_config.voting_period_seconds
            timelock_ends_at = voting_ends_at + type_config.timelock_seconds
            record = {
                "id": proposal_id,
                "code": f"{config.proposal_prefix}-{proposal_id}",
                "proposal_type": proposal_type.name,
                "title": title,
                "description": description,
                "discussion_url": discussion_url,
                "proposer": proposer,
                "action_payload": json.dumps(action_payload, sort_keys=True),
                "status": ProposalStatus.ACTIVE.name,
                "config_version": config.version,
                "snapshot_block": proposal_id,
                "total_supply": to_units(total_supply),
                "quorum_required": to_units(quorum_required, rounding=ROUND_UP),
                "voting_starts_at": now,
                "voting_ends_at": voting_ends_at,
                "timelock_ends_at": timelock_ends_at,
                "execution_deadline": timelock_ends_at + type_config.execution_window_seconds,
                "created_at": now,
                "updated_at": now,
            }
            await self.db.insert_proposal(record)
            await self.snapshots.capture(proposal_id, holders, snapshot_block=proposal_id)
            proposal = Proposal.from_row(await self.db.get_proposal(proposal_id))

        logger.info(
            f"Proposal {proposal.code} ({proposal.title}) created by {proposer}: "
            f"{proposal.proposal_type.name}, quorum {proposal.quorum_required} tokens, "
            f"voting until {proposal.voting_ends_at:.0f}"
        )
        await emit_safely(self.sink, proposal.event(
            EventType.PROPOSAL_CREATED, now,
            proposalType=proposal.proposal_type.name,
            votingEndsAt=proposal.voting_ends_at,
        ))
        return proposal

    @staticmethod
    def _validate_input(proposer, title, description, action_payload) -> Dict[str, Any]:
        if not proposer:
            raise InvalidProposalError("Proposer identity is required")
        if not title or not title.strip():
            raise InvalidProposalError("Proposal title cannot be empty")
        if not description or not description.strip():
            raise InvalidProposalError("Proposal description cannot be empty")
        if action_payload is None:
            return {}
        if not isinstance(action_payload, dict):
            raise InvalidProposalError("Action payload must be a mapping")
        try:
            json.dumps(action_payload)
        except (TypeError, ValueError) as e:
            raise InvalidProposalError(f"Action payload is not serializable: {e}") from e
        return action_payload

    async def _check_capacity(
        self,
        config: GovernanceConfig,
        proposal_type: ProposalType,
        now: float,
    ):
        """Open-proposal cap and parameter-change cooldown (in a transaction)."""
        open_count = await self.db.count_proposals([s.name for s in OPEN_STATUSES])
        if open_count >= config.max_active_proposals:
            raise TooManyActiveProposalsError(open_count, config.max_active_proposals)

        if proposal_type == ProposalType.PARAMETER_CHANGE:
            last = await self.db.last_executed_at(
                proposal_type.name, ProposalStatus.EXECUTED.name
            )
            if last is not None and now - last < config.parameter_cooldown_seconds:
                raise CooldownActiveError(
                    proposal_type.name, last + config.parameter_cooldown_seconds
                )

    # ── Queries ───────────────────────────────────────────────────────

    async def get_proposal(self, proposal_ref: Union[int, str]) -> Proposal:
        async with self.db.transaction(readonly=True):
            return await fetch_proposal(self.db, proposal_ref)

    async def list_proposals(
        self,
        status: Optional[Union[ProposalStatus, str]] = None,
        proposal_type: Optional[Union[ProposalType, str]] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ProposalPage:
        """Newest-first page of proposals; *limit* is capped at max_page_size."""
        page = max(1, int(page))
        limit = GOVERNANCE_DEFAULT_PAGE_SIZE if limit is None else int(limit)
        limit = min(max(1, limit), GOVERNANCE_MAX_PAGE_SIZE)
        statuses = [coerce_status(status).name] if status is not None else None
        type_name = coerce_type(proposal_type).name if proposal_type is not None else None

        async with self.db.transaction(readonly=True):
            total = await self.db.count_proposals(statuses, type_name)
            rows = await self.db.list_proposals(
                statuses, type_name, limit=limit, offset=(page - 1) * limit
            )
        return ProposalPage(
            items=[Proposal.from_row(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel_proposal(self, proposal_ref: Union[int, str], requester: str) -> Proposal:
        """
        ACTIVE → CANCELLED, proposer only.

        Raises:
            ProposalNotFoundError, InvalidStatusForOperationError
        """
        async with self.db.transaction():
            proposal = await fetch_proposal(self.db, proposal_ref)
            if proposal.status != ProposalStatus.ACTIVE:
                raise InvalidStatusForOperationError(
                    f"Only ACTIVE proposals can be cancelled; "
                    f"{proposal.code} is {proposal.status.name}",
                    current=proposal.status.name,
                    expected=ProposalStatus.ACTIVE.name,
                )
            if requester != proposal.proposer:
                raise InvalidStatusForOperationError(
                    f"Only the proposer {proposal.proposer} can cancel {proposal.code}",
                    current=proposal.status.name,
                    expected=ProposalStatus.ACTIVE.name,
                )
            validate_transition(proposal.status, ProposalStatus.CANCELLED)
            now = self.clock()
            updated = await self.db.transition_proposal(
                proposal.id, ProposalStatus.ACTIVE.name, ProposalStatus.CANCELLED.name,
                now, cancelled_at=now,
            )
            if not updated:
                raise InvalidStatusForOperationError(
                    f"{proposal.code} left ACTIVE before it could be cancelled",
                    expected=ProposalStatus.ACTIVE.name,
                )
            proposal = await fetch_proposal(self.db, proposal.id)

        logger.info(
            f"Proposal {proposal.code}: ACTIVE → CANCELLED | withdrawn by {requester}"
        )
        return proposal
