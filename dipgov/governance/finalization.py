"""
Finalization Scheduler

One pass (run_once) does three scans:

  1. ACTIVE proposals whose voting window has ended are finalized:
       total cast < quorum  → QUORUM_NOT_MET
       for > against        → PASSED, then queued into TIMELOCK
       otherwise            → REJECTED
  2. PASSED proposals left without a queue item by an earlier failed
     queue attempt are queued again.
  3. PENDING queue items past their execution deadline are expired.

Every proposal is handled in its own transaction through a
compare-and-set, so overlapping passes are safe and a proposal that
already moved is skipped. One proposal's failure is logged and recorded
in the report; the rest of the scan continues.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..constants import DIPGOV_SCHEDULER_INTERVAL
from ..database_sqlite import GovernanceDatabase
from ..logger import get_logger
from ..notifications import EventType, NotificationSink, emit_safely
from ..scheduler import PeriodicJob
from .execution import ExecutionEngine, ExecutionStatus
from .proposals import Proposal, ProposalStatus, fetch_proposal, validate_transition

logger = get_logger(__name__)


@dataclass
class FinalizationReport:
    """Outcome of one scheduler pass, by proposal code."""
    started_at: float
    passed: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    quorum_not_met: List[str] = field(default_factory=list)
    queued: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def finalized(self) -> int:
        return len(self.passed) + len(self.rejected) + len(self.quorum_not_met)

    def record_error(self, proposal_ref: Any, stage: str, error: Exception):
        self.errors.append({
            "proposal": str(proposal_ref),
            "stage": stage,
            "error": f"{type(error).__name__}: {error}",
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "passed": self.passed,
            "rejected": self.rejected,
            "quorumNotMet": self.quorum_not_met,
            "queued": self.queued,
            "expired": self.expired,
            "errors": self.errors,
        }


def decide_outcome(proposal: Proposal) -> ProposalStatus:
    """Final status for a proposal whose voting window has ended."""
    if proposal.total_cast < proposal.quorum_required:
        return ProposalStatus.QUORUM_NOT_MET
    if proposal.votes_for > proposal.votes_against:
        return ProposalStatus.PASSED
    return ProposalStatus.REJECTED


class FinalizationScheduler:
    """Drives ended votes and stale queue items to their next state."""

    def __init__(
        self,
        db: GovernanceDatabase,
        execution: ExecutionEngine,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
        interval_seconds: float = float(DIPGOV_SCHEDULER_INTERVAL),
    ):
        self.db = db
        self.execution = execution
        self.sink = sink
        self.clock = clock
        self.job = PeriodicJob("governance-finalization", self.run_once, interval_seconds)
        self.last_report: Optional[FinalizationReport] = None

    async def start(self):
        await self.job.start()

    async def stop(self):
        await self.job.stop()

    async def run_once(self) -> FinalizationReport:
        """Run one full finalization pass."""
        now = self.clock()
        report = FinalizationReport(started_at=now)

        await self._finalize_ended_votes(report, now)
        await self._retry_unqueued(report)
        await self._expire_stale(report, now)

        if report.finalized or report.queued or report.expired or report.errors:
            logger.info(
                f"Finalization pass: {len(report.passed)} passed, "
                f"{len(report.rejected)} rejected, "
                f"{len(report.quorum_not_met)} quorum not met, "
                f"{len(report.queued)} queued, {len(report.expired)} expired, "
                f"{len(report.errors)} errors"
            )
        self.last_report = report
        return report

    # ── Voting finalization ───────────────────────────────────────────

    async def _finalize_ended_votes(self, report: FinalizationReport, now: float):
        async with self.db.transaction(readonly=True):
            rows = await self.db.get_due_proposals(ProposalStatus.ACTIVE.name, now)

        for row in rows:
            code = row["code"]
            try:
                proposal = await self.finalize_proposal(row["id"], now)
            except Exception as e:
                logger.exception(f"Finalizing {code} failed")
                report.record_error(code, "finalize", e)
                continue
            if proposal is None:
                continue

            if proposal.status == ProposalStatus.QUORUM_NOT_MET:
                report.quorum_not_met.append(code)
                continue
            if proposal.status == ProposalStatus.REJECTED:
                report.rejected.append(code)
                continue

            report.passed.append(code)
            try:
                await self.execution.queue_execution(proposal.id)
                report.queued.append(code)
            except Exception as e:
                logger.exception(f"Queueing {code} failed; it stays PASSED for retry")
                report.record_error(code, "queue", e)

    async def finalize_proposal(self, proposal_id: int, now: float) -> Optional[Proposal]:
        """
        Move one ended ACTIVE proposal to its outcome.

        Returns:
            The finalized proposal, or None if it was no longer eligible.
        """
        async with self.db.transaction():
            proposal = await fetch_proposal(self.db, proposal_id)
            if proposal.status != ProposalStatus.ACTIVE or proposal.voting_ends_at > now:
                return None
            outcome = decide_outcome(proposal)
            validate_transition(proposal.status, outcome)
            moved = await self.db.transition_proposal(
                proposal.id, ProposalStatus.ACTIVE.name, outcome.name, now,
                finalized_at=now,
            )
            if not moved:
                return None
            proposal = await fetch_proposal(self.db, proposal.id)

        logger.info(
            f"Proposal {proposal.code}: ACTIVE → {outcome.name} | "
            f"for={proposal.votes_for} against={proposal.votes_against} "
            f"abstain={proposal.votes_abstain} quorum={proposal.quorum_required}"
        )

        event_type = (
            EventType.PROPOSAL_PASSED if outcome == ProposalStatus.PASSED
            else EventType.PROPOSAL_REJECTED
        )
        await emit_safely(self.sink, proposal.event(
            event_type, now,
            outcome=outcome.name,
            votesFor=str(proposal.votes_for),
            votesAgainst=str(proposal.votes_against),
            votesAbstain=str(proposal.votes_abstain),
            quorumRequired=str(proposal.quorum_required),
        ))
        return proposal

    # ── Queue retry ───────────────────────────────────────────────────

    async def _retry_unqueued(self, report: FinalizationReport):
        async with self.db.transaction(readonly=True):
            rows = await self.db.get_unqueued_proposals(ProposalStatus.PASSED.name)

        for row in rows:
            code = row["code"]
            if code in report.passed:
                # Just failed in this pass; wait for the next one.
                continue
            try:
                await self.execution.queue_execution(row["id"])
                report.queued.append(code)
                logger.info(f"Proposal {code} queued on retry")
            except Exception as e:
                logger.exception(f"Retry queueing {code} failed")
                report.record_error(code, "queue", e)

    # ── Execution expiry ──────────────────────────────────────────────

    async def _expire_stale(self, report: FinalizationReport, now: float):
        async with self.db.transaction(readonly=True):
            rows = await self.db.get_due_execution_items(ExecutionStatus.PENDING.name, now)

        for row in rows:
            proposal_id = row["proposal_id"]
            try:
                proposal = await self.execution.expire(proposal_id)
                report.expired.append(proposal.code)
            except Exception as e:
                logger.exception(f"Expiring proposal #{proposal_id} failed")
                report.record_error(proposal_id, "expire", e)
