"""
Governance Engine

Facade wiring the database, balance oracle, config, snapshot store,
voting, execution and finalization services into one object.

    engine = await GovernanceEngine.open(oracle)
    proposal = await engine.create_proposal(alice, ProposalType.NEW_POOL, ...)
    await engine.cast_vote(proposal.id, bob, Vote.FOR)
    await engine.start_scheduler()
    ...
    await engine.close()
"""

import time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from ..config import GovernanceConfig, load_config
from ..constants import (
    DIPGOV_DATABASE_PATH,
    DIPGOV_SCHEDULER_INTERVAL,
    DIPGOV_WEBHOOK_TIMEOUT,
    DIPGOV_WEBHOOK_URL,
)
from ..database_sqlite import GovernanceDatabase
from ..logger import get_logger
from ..notifications import LoggingNotificationSink, NotificationSink, WebhookNotificationSink
from ..oracle import BalanceOracle
from .execution import ActionExecutor, ExecutionEngine, ExecutionQueueItem
from .finalization import FinalizationReport, FinalizationScheduler
from .proposals import Proposal, ProposalPage, ProposalService, ProposalStatus, ProposalType
from .snapshot import SnapshotEntry, SnapshotStore
from .voting import Vote, VoteRecord, VotingEngine, VotingResult

logger = get_logger(__name__)

ProposalRef = Union[int, str]


class GovernanceEngine:
    """
    Proposal and timelock execution engine.

    Holds no governance state of its own: every operation goes through
    the database, so several engines (API path, scheduler path) may share
    one database file.
    """

    def __init__(
        self,
        db: GovernanceDatabase,
        oracle: BalanceOracle,
        config: Optional[GovernanceConfig] = None,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
        scheduler_interval: Optional[float] = None,
    ):
        self.db = db
        self.oracle = oracle
        self.config = config or GovernanceConfig()
        self.config.validate()
        self.sink = sink
        self.clock = clock

        self.snapshots = SnapshotStore(db)
        self.proposals = ProposalService(
            db, oracle, self.config, snapshots=self.snapshots, sink=sink, clock=clock,
        )
        self.voting = VotingEngine(db, snapshots=self.snapshots, clock=clock)
        self.execution = ExecutionEngine(db, self.config, sink=sink, clock=clock)
        self.finalization = FinalizationScheduler(
            db, self.execution, sink=sink, clock=clock,
            interval_seconds=scheduler_interval or float(DIPGOV_SCHEDULER_INTERVAL),
        )

    @classmethod
    async def open(
        cls,
        oracle: BalanceOracle,
        db_path: Optional[str] = None,
        config: Optional[GovernanceConfig] = None,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], float] = time.time,
    ) -> "GovernanceEngine":
        """
        Open an engine using .env settings for anything not supplied:
        DIPGOV_DATABASE_PATH, DIPGOV_CONFIG, DIPGOV_WEBHOOK_URL.
        """
        db = await GovernanceDatabase.create(db_path or str(DIPGOV_DATABASE_PATH))
        if config is None:
            config = load_config()
        if sink is None:
            if DIPGOV_WEBHOOK_URL:
                sink = WebhookNotificationSink(
                    str(DIPGOV_WEBHOOK_URL), timeout=float(DIPGOV_WEBHOOK_TIMEOUT)
                )
            else:
                sink = LoggingNotificationSink()
        engine = cls(db, oracle, config=config, sink=sink, clock=clock)
        logger.info(
            f"Governance engine ready (config v{config.version}, db={db.db_path})"
        )
        return engine

    async def close(self):
        await self.finalization.stop()
        if self.sink is not None:
            await self.sink.close()
        await self.db.close()

    async def __aenter__(self) -> "GovernanceEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ── Config ────────────────────────────────────────────────────────

    def get_governance_config(self) -> GovernanceConfig:
        return self.config

    def update_config(self, config: GovernanceConfig):
        """
        Switch to a new config version. Existing proposals keep the
        timing and quorum they were created with.
        """
        config.validate()
        self.config = config
        self.proposals.config = config
        self.execution.config = config
        logger.info(f"Governance config switched to v{config.version}")

    # ── Proposals ─────────────────────────────────────────────────────

    async def create_proposal(
        self,
        proposer: str,
        proposal_type: Union[ProposalType, str],
        title: str,
        description: str,
        action_payload: Optional[Dict[str, Any]] = None,
        discussion_url: Optional[str] = None,
    ) -> Proposal:
        return await self.proposals.create_proposal(
            proposer, proposal_type, title, description,
            action_payload=action_payload, discussion_url=discussion_url,
        )

    async def get_proposal(self, proposal_ref: ProposalRef) -> Proposal:
        return await self.proposals.get_proposal(proposal_ref)

    async def list_proposals(
        self,
        status: Optional[Union[ProposalStatus, str]] = None,
        proposal_type: Optional[Union[ProposalType, str]] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ProposalPage:
        return await self.proposals.list_proposals(status, proposal_type, page, limit)

    async def cancel_proposal(self, proposal_ref: ProposalRef, requester: str) -> Proposal:
        return await self.proposals.cancel_proposal(proposal_ref, requester)

    async def get_snapshot(self, proposal_ref: ProposalRef) -> List[SnapshotEntry]:
        proposal = await self.get_proposal(proposal_ref)
        return await self.snapshots.get_snapshot(proposal.id)

    async def get_snapshot_total(self, proposal_ref: ProposalRef) -> Decimal:
        proposal = await self.get_proposal(proposal_ref)
        return await self.snapshots.total_weight(proposal.id)

    # ── Voting ────────────────────────────────────────────────────────

    async def cast_vote(
        self,
        proposal_ref: ProposalRef,
        voter: str,
        choice: Union[Vote, str],
    ) -> VoteRecord:
        return await self.voting.cast_vote(proposal_ref, voter, choice)

    async def get_vote_results(self, proposal_ref: ProposalRef) -> VotingResult:
        return await self.voting.get_vote_results(proposal_ref)

    async def get_user_vote(self, proposal_ref: ProposalRef, voter: str) -> Optional[VoteRecord]:
        return await self.voting.get_user_vote(proposal_ref, voter)

    # ── Execution ─────────────────────────────────────────────────────

    def register_executor(self, proposal_type: Union[ProposalType, str], executor_fn: ActionExecutor):
        self.execution.register_executor(proposal_type, executor_fn)

    async def queue_execution(self, proposal_ref: ProposalRef) -> ExecutionQueueItem:
        return await self.execution.queue_execution(proposal_ref)

    async def execute(self, proposal_ref: ProposalRef, executor: str) -> ExecutionQueueItem:
        return await self.execution.execute(proposal_ref, executor)

    async def veto(self, proposal_ref: ProposalRef, vetoer: str, reason: str) -> Proposal:
        return await self.execution.veto(proposal_ref, vetoer, reason)

    async def get_execution_item(self, proposal_ref: ProposalRef) -> Optional[ExecutionQueueItem]:
        return await self.execution.get_execution_item(proposal_ref)

    # ── Scheduler ─────────────────────────────────────────────────────

    async def run_finalization(self) -> FinalizationReport:
        """Run one finalization / expiry pass now."""
        return await self.finalization.run_once()

    async def start_scheduler(self):
        await self.finalization.start()

    async def stop_scheduler(self):
        await self.finalization.stop()

    def __repr__(self) -> str:
        return f"<GovernanceEngine db={self.db.db_path} config=v{self.config.version}>"
