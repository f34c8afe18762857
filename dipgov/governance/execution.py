"""
Timelock Execution Engine

Implements:
  - Execution queue: one item per PASSED proposal carrying copies of
    timelock_ends_at / execution_deadline and the action payload
  - Execute: any identity, once the timelock has elapsed and before the
    deadline; the payload is then handed to the executor registered for
    the proposal type
  - Veto: privileged cancellation of a TIMELOCK proposal with a reason
  - Expiry: PENDING items past their deadline become EXPIRED

The queue item and the proposal move together inside one transaction,
each through its own compare-and-set.
"""

import inspect
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Dict, Optional, Union

from ..config import GovernanceConfig
from ..constants import GOVERNANCE_GRACE_PERIOD_HOURS, SECONDS_PER_HOUR
from ..database_sqlite import GovernanceDatabase, decode_payload
from ..exceptions import (
    ExecutionDeadlinePassedError,
    InvalidProposalError,
    InvalidStatusForOperationError,
    TimelockNotElapsedError,
)
from ..logger import get_logger
from ..notifications import EventType, NotificationSink, emit_safely
from .proposals import (
    Proposal,
    ProposalStatus,
    ProposalType,
    coerce_type,
    fetch_proposal,
    validate_transition,
)

logger = get_logger(__name__)

# fn(proposal) → result; may be a coroutine function
ActionExecutor = Callable[[Proposal], Any]


class ExecutionStatus(IntEnum):
    """Status of an execution queue item."""
    PENDING = 0     # Waiting for timelock / execution
    EXECUTED = 1
    VETOED = 2
    EXPIRED = 3     # Execution deadline passed while pending


@dataclass
class ExecutionQueueItem:
    """
    A queued governance action awaiting execution.

    Attributes:
        proposal_id:         Associated proposal (one item per proposal)
        action_type:         Proposal type name handed to the executor
        timelock_ends_at:    Earliest execution time
        execution_deadline:  Latest execution time
        failure_reason:      Executor error, if the hand-off raised
    """
    proposal_id: int
    action_type: str
    action_payload: Dict[str, Any]
    timelock_ends_at: float
    execution_deadline: float
    status: ExecutionStatus
    queued_at: float
    executed_at: Optional[float] = None
    executed_by: Optional[str] = None
    vetoed_at: Optional[float] = None
    vetoed_by: Optional[str] = None
    veto_reason: Optional[str] = None
    expired_at: Optional[float] = None
    failure_reason: Optional[str] = None

    def is_ready(self, now: float) -> bool:
        """Can be executed at *now*?"""
        return (
            self.status == ExecutionStatus.PENDING
            and self.timelock_ends_at <= now <= self.execution_deadline
        )

    def is_expired(self, now: float) -> bool:
        return self.status == ExecutionStatus.PENDING and now >= self.execution_deadline

    def time_remaining(self, now: float) -> float:
        """Seconds until the timelock ends (0 if already past)."""
        return max(0.0, self.timelock_ends_at - now)

    def in_grace_period(
        self,
        now: float,
        grace_period_seconds: float = GOVERNANCE_GRACE_PERIOD_HOURS * SECONDS_PER_HOUR,
    ) -> bool:
        """Pending and inside the final grace window before the deadline."""
        return (
            self.status == ExecutionStatus.PENDING
            and self.execution_deadline - grace_period_seconds <= now < self.execution_deadline
        )

    @classmethod
    def from_row(cls, row) -> "ExecutionQueueItem":
        return cls(
            proposal_id=row["proposal_id"],
            action_type=row["action_type"],
            action_payload=decode_payload(row["action_payload"]),
            timelock_ends_at=row["timelock_ends_at"],
            execution_deadline=row["execution_deadline"],
            status=ExecutionStatus[row["status"]],
            queued_at=row["queued_at"],
            executed_at=row["executed_at"],
            executed_by=row["executed_by"],
            vetoed_at=row["vetoed_at"],
            vetoed_by=row["vetoed_by"],
            veto_reason=row["veto_reason"],
            expired_at=row["expired_at"],
            failure_reason=row["failure_reason"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "actionType": self.action_type,
            "actionPayload": self.action_payload,
            "timelockEndsAt": self.timelock_ends_at,
            "executionDeadline": self.execution_deadline,
            "status": self.status.name,
            "queuedAt": self.queued_at,
            "executedAt": self.executed_at,
            "executedBy": self.executed_by,
            "vetoedAt": self.vetoed_at,
            "vetoedBy": self.vetoed_by,
            "vetoReason": self.veto_reason,
            "expiredAt": self.expired_at,
            "failureReason": self.failure_reason,
        }


class ExecutionEngine:
    """
    Queue, execute, veto and expire passed proposals.

    Executors are registered per proposal type. The engine has no
    rollback path for what an executor does: a raising executor is
    logged and its message stored as the item's failure_reason, while
    the proposal stays EXECUTED.
    """

    def __init__(
        self,
        db: GovernanceDatabase,
        config: GovernanceConfig,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.config = config
        self.sink = sink
        self.clock = clock
        self._executors: Dict[ProposalType, ActionExecutor] = {}

    def register_executor(
        self,
        proposal_type: Union[ProposalType, str],
        executor_fn: ActionExecutor,
    ):
        """Register the action executor for a proposal type."""
        self._executors[coerce_type(proposal_type)] = executor_fn

    # ── Queue ─────────────────────────────────────────────────────────

    async def queue_execution(self, proposal_ref: Union[int, str]) -> ExecutionQueueItem:
        """
        PASSED → TIMELOCK, creating the PENDING queue item.

        Raises:
            ProposalNotFoundError, InvalidStatusForOperationError
        """
        async with self.db.transaction():
            proposal = await fetch_proposal(self.db, proposal_ref)
            if proposal.status != ProposalStatus.PASSED:
                raise InvalidStatusForOperationError(
                    f"Only PASSED proposals can be queued; "
                    f"{proposal.code} is {proposal.status.name}",
                    current=proposal.status.name,
                    expected=ProposalStatus.PASSED.name,
                )
            if await self.db.get_execution_item(proposal.id) is not None:
                raise InvalidStatusForOperationError(
                    f"{proposal.code} already has an execution queue item",
                    current=proposal.status.name,
                )
            validate_transition(proposal.status, ProposalStatus.TIMELOCK)

            now = self.clock()
            await self.db.insert_execution_item({
                "proposal_id": proposal.id,
                "action_type": proposal.proposal_type.name,
                "action_payload": proposal.action_payload,
                "timelock_ends_at": proposal.timelock_ends_at,
                "execution_deadline": proposal.execution_deadline,
                "status": ExecutionStatus.PENDING.name,
                "queued_at": now,
            })
            moved = await self.db.transition_proposal(
                proposal.id, ProposalStatus.PASSED.name, ProposalStatus.TIMELOCK.name, now,
            )
            if not moved:
                raise InvalidStatusForOperationError(
                    f"{proposal.code} left PASSED before it could be queued",
                    expected=ProposalStatus.PASSED.name,
                )
            item = ExecutionQueueItem.from_row(await self.db.get_execution_item(proposal.id))

        logger.info(
            f"Proposal {proposal.code}: PASSED → TIMELOCK | "
            f"executable {item.timelock_ends_at:.0f}..{item.execution_deadline:.0f}"
        )
        return item

    # ── Execute ───────────────────────────────────────────────────────

    async def execute(self, proposal_ref: Union[int, str], executor: str) -> ExecutionQueueItem:
        """
        Execute a queued proposal.

        Checks:
            1. A PENDING queue item exists
            2. now ≥ timelock_ends_at
            3. now ≤ execution_deadline
        Then marks item and proposal EXECUTED and hands off the payload.

        Raises:
            ProposalNotFoundError, InvalidStatusForOperationError,
            TimelockNotElapsedError, ExecutionDeadlinePassedError
        """
        if not executor:
            raise InvalidProposalError("Executor identity is required")

        async with self.db.transaction():
            proposal = await fetch_proposal(self.db, proposal_ref)
            row = await self.db.get_execution_item(proposal.id)
            item = ExecutionQueueItem.from_row(row) if row else None
            if item is None or item.status != ExecutionStatus.PENDING:
                raise InvalidStatusForOperationError(
                    f"{proposal.code} has no pending execution "
                    f"(proposal={proposal.status.name}, "
                    f"queue={item.status.name if item else 'NONE'})",
                    current=proposal.status.name,
                    expected=ProposalStatus.TIMELOCK.name,
                )
            now = self.clock()
            if now < item.timelock_ends_at:
                raise TimelockNotElapsedError(proposal.code, item.timelock_ends_at, now)
            if now > item.execution_deadline:
                raise ExecutionDeadlinePassedError(proposal.code, item.execution_deadline)
            validate_transition(proposal.status, ProposalStatus.EXECUTED)

            await self._transition_both(
                proposal, ExecutionStatus.EXECUTED, ProposalStatus.EXECUTED, now,
                executed_at=now, executed_by=executor,
            )
            proposal = await fetch_proposal(self.db, proposal.id)

        logger.info(
            f"Proposal {proposal.code}: TIMELOCK → EXECUTED | by {executor}"
        )

        failure = await self._hand_off(proposal)
        if failure is not None:
            async with self.db.transaction():
                await self.db.set_execution_failure(proposal.id, failure)

        await emit_safely(self.sink, proposal.event(
            EventType.PROPOSAL_EXECUTED, now,
            executedBy=executor,
            failureReason=failure,
        ))
        return await self.get_execution_item(proposal.id)

    async def _hand_off(self, proposal: Proposal) -> Optional[str]:
        """Run the registered executor; returns the failure message, if any."""
        fn = self._executors.get(proposal.proposal_type)
        if fn is None:
            logger.info(
                f"No executor registered for {proposal.proposal_type.name}; "
                f"{proposal.code} payload recorded only"
            )
            return None
        try:
            result = fn(proposal)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Executor for {proposal.code} failed")
            return f"{type(e).__name__}: {e}"
        return None

    # ── Veto ──────────────────────────────────────────────────────────

    async def veto(self, proposal_ref: Union[int, str], vetoer: str, reason: str) -> Proposal:
        """
        TIMELOCK → VETOED with a recorded reason.

        Veto authority is checked by the caller.

        Raises:
            InvalidProposalError, ProposalNotFoundError,
            InvalidStatusForOperationError
        """
        if not vetoer:
            raise InvalidProposalError("Vetoer identity is required")
        if not reason or not reason.strip():
            raise InvalidProposalError("Veto reason is required")

        async with self.db.transaction():
            proposal = await fetch_proposal(self.db, proposal_ref)
            if proposal.status != ProposalStatus.TIMELOCK:
                raise InvalidStatusForOperationError(
                    f"Veto requires TIMELOCK status; {proposal.code} is {proposal.status.name}",
                    current=proposal.status.name,
                    expected=ProposalStatus.TIMELOCK.name,
                )
            validate_transition(proposal.status, ProposalStatus.VETOED)
            now = self.clock()
            await self._transition_both(
                proposal, ExecutionStatus.VETOED, ProposalStatus.VETOED, now,
                vetoed_at=now, vetoed_by=vetoer, veto_reason=reason,
            )
            proposal = await fetch_proposal(self.db, proposal.id)

        logger.warning(
            f"Proposal {proposal.code}: TIMELOCK → VETOED | by {vetoer}: {reason}"
        )
        await emit_safely(self.sink, proposal.event(
            EventType.PROPOSAL_VETOED, now, vetoedBy=vetoer, reason=reason,
        ))
        return proposal

    # ── Expiry ────────────────────────────────────────────────────────

    async def expire(self, proposal_id: int) -> Proposal:
        """
        PENDING → EXPIRED for an item past its deadline.

        Raises:
            InvalidStatusForOperationError if the item is no longer
            pending or its deadline has not passed
        """
        async with self.db.transaction():
            proposal = await fetch_proposal(self.db, proposal_id)
            row = await self.db.get_execution_item(proposal.id)
            now = self.clock()
            if row is None or not ExecutionQueueItem.from_row(row).is_expired(now):
                raise InvalidStatusForOperationError(
                    f"{proposal.code} has no pending execution past its deadline",
                    current=proposal.status.name,
                )
            validate_transition(proposal.status, ProposalStatus.EXPIRED)
            await self._transition_both(
                proposal, ExecutionStatus.EXPIRED, ProposalStatus.EXPIRED, now,
                expired_at=now,
            )
            proposal = await fetch_proposal(self.db, proposal.id)

        logger.info(f"Proposal {proposal.code}: TIMELOCK → EXPIRED")
        await emit_safely(self.sink, proposal.event(
            EventType.PROPOSAL_EXPIRED, now,
            executionDeadline=proposal.execution_deadline,
        ))
        return proposal

    async def _transition_both(
        self,
        proposal: Proposal,
        item_status: ExecutionStatus,
        proposal_status: ProposalStatus,
        now: float,
        **fields: Any,
    ):
        """Compare-and-set the queue item and the proposal out of PENDING/TIMELOCK."""
        item_fields = dict(fields)
        proposal_fields = {k: v for k, v in fields.items() if k != "expired_at"}

        moved = await self.db.transition_execution_item(
            proposal.id, ExecutionStatus.PENDING.name, item_status.name, **item_fields,
        )
        if not moved:
            raise InvalidStatusForOperationError(
                f"Execution item for {proposal.code} is no longer PENDING",
                expected=ExecutionStatus.PENDING.name,
            )
        moved = await self.db.transition_proposal(
            proposal.id, ProposalStatus.TIMELOCK.name, proposal_status.name, now,
            **proposal_fields,
        )
        if not moved:
            raise InvalidStatusForOperationError(
                f"{proposal.code} is no longer in TIMELOCK",
                current=proposal.status.name,
                expected=ProposalStatus.TIMELOCK.name,
            )

    # ── Queries ───────────────────────────────────────────────────────

    async def get_execution_item(
        self,
        proposal_ref: Union[int, str],
    ) -> Optional[ExecutionQueueItem]:
        async with self.db.transaction(readonly=True):
            proposal = await fetch_proposal(self.db, proposal_ref)
            row = await self.db.get_execution_item(proposal.id)
        return ExecutionQueueItem.from_row(row) if row else None

    def in_grace_period(self, item: ExecutionQueueItem) -> bool:
        return item.in_grace_period(self.clock(), self.config.grace_period_seconds)

    def __repr__(self) -> str:
        return f"<ExecutionEngine executors={sorted(t.name for t in self._executors)}>"
