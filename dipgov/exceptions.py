"""
DIP Governance Exceptions

Every rejected governance operation raises a subclass of GovernanceError.
Messages name the precondition that failed and, where meaningful, the
value that would satisfy it.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class GovernanceError(Exception):
    """Base exception for the governance engine."""

    code = "GOVERNANCE_ERROR"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class InvalidProposalError(GovernanceError):
    """Raised when caller-supplied proposal, vote or veto data is invalid."""

    code = "INVALID_INPUT"


class StorageError(GovernanceError):
    """Raised when the governance database fails unexpectedly."""

    code = "STORAGE_ERROR"


class InsufficientBalanceError(GovernanceError):
    """Proposer balance is below the proposal creation threshold."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(self, holder: str, balance: Decimal, threshold: Decimal):
        self.holder = holder
        self.balance = balance
        self.threshold = threshold
        super().__init__(
            f"Proposal creation requires {threshold} tokens, "
            f"{holder} has {balance}"
        )


class TooManyActiveProposalsError(GovernanceError):
    """The Draft+Active proposal cap has been reached."""

    code = "TOO_MANY_ACTIVE_PROPOSALS"

    def __init__(self, active: int, maximum: int):
        self.active = active
        self.maximum = maximum
        super().__init__(
            f"Maximum {maximum} draft/active proposals allowed, "
            f"{active} currently open"
        )


class CooldownActiveError(GovernanceError):
    """A parameter change executed too recently."""

    code = "COOLDOWN_ACTIVE"

    def __init__(self, proposal_type: str, available_at: float):
        self.proposal_type = proposal_type
        self.available_at = available_at
        super().__init__(
            f"{proposal_type} cooldown active: next proposal allowed "
            f"at {available_at:.0f}"
        )


class ProposalNotFoundError(GovernanceError):
    code = "PROPOSAL_NOT_FOUND"

    def __init__(self, proposal_ref: Any):
        self.proposal_ref = proposal_ref
        super().__init__(f"Proposal {proposal_ref} not found")


class InvalidStatusForOperationError(GovernanceError):
    """
    A status precondition failed, or a conditional update matched no row
    because the transition already happened elsewhere.
    """

    code = "INVALID_STATUS_FOR_OPERATION"

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        expected: Optional[str] = None,
    ):
        self.current = current
        self.expected = expected
        super().__init__(message)


class ProposalLifecycleError(InvalidStatusForOperationError):
    """Raised on illegal state transitions of an in-memory Proposal."""


class TimelockNotElapsedError(GovernanceError):
    code = "TIMELOCK_NOT_ELAPSED"

    def __init__(self, proposal_code: str, timelock_ends_at: float, now: float):
        self.timelock_ends_at = timelock_ends_at
        self.remaining = max(0.0, timelock_ends_at - now)
        super().__init__(
            f"Timelock for {proposal_code} ends at {timelock_ends_at:.0f} "
            f"(remaining={self.remaining:.0f}s)"
        )


class ExecutionDeadlinePassedError(GovernanceError):
    code = "EXECUTION_DEADLINE_PASSED"

    def __init__(self, proposal_code: str, execution_deadline: float):
        self.execution_deadline = execution_deadline
        super().__init__(
            f"Execution deadline for {proposal_code} passed at "
            f"{execution_deadline:.0f}"
        )


class VotingWindowClosedError(GovernanceError):
    code = "VOTING_WINDOW_CLOSED"

    def __init__(self, proposal_code: str, starts_at: float, ends_at: float, now: float):
        self.starts_at = starts_at
        self.ends_at = ends_at
        super().__init__(
            f"Voting on {proposal_code} is open from {starts_at:.0f} "
            f"until {ends_at:.0f} (now={now:.0f})"
        )


class QuorumOracleUnavailableError(GovernanceError):
    """The balance oracle failed while a proposal was being created."""

    code = "QUORUM_ORACLE_UNAVAILABLE"
