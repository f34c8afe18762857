"""
DIP Governance: proposals, voting and timelock execution

Provides:
  - ProposalType / ProposalStatus / Proposal / ProposalService   (proposals.py)
  - SnapshotEntry / SnapshotStore                                (snapshot.py)
  - Vote / VoteRecord / VotingResult / VotingEngine              (voting.py)
  - ExecutionStatus / ExecutionQueueItem / ExecutionEngine       (execution.py)
  - FinalizationScheduler / FinalizationReport                   (finalization.py)
  - GovernanceEngine                                             (engine.py)
"""

from .proposals import (
    Proposal,
    ProposalPage,
    ProposalService,
    ProposalStatus,
    ProposalType,
)
from .snapshot import SnapshotEntry, SnapshotStore
from .voting import (
    Vote,
    VoteRecord,
    VotingEngine,
    VotingResult,
)
from .execution import (
    ExecutionEngine,
    ExecutionQueueItem,
    ExecutionStatus,
)
from .finalization import FinalizationReport, FinalizationScheduler
from .engine import GovernanceEngine

__all__ = [
    # Proposals
    "Proposal",
    "ProposalPage",
    "ProposalService",
    "ProposalStatus",
    "ProposalType",
    # Snapshots
    "SnapshotEntry",
    "SnapshotStore",
    # Voting
    "Vote",
    "VoteRecord",
    "VotingEngine",
    "VotingResult",
    # Execution
    "ExecutionEngine",
    "ExecutionQueueItem",
    "ExecutionStatus",
    # Finalization
    "FinalizationReport",
    "FinalizationScheduler",
    # Facade
    "GovernanceEngine",
]
