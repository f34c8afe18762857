"""
DIP Governance Package

Proposal, voting and timelock execution engine for token-holder
governance. Core imports are lazily loaded; for direct module access,
import from submodules:

    from dipgov.governance import GovernanceEngine, ProposalType, Vote
    from dipgov.oracle import TokenLedger
    from dipgov.exceptions import InsufficientBalanceError
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy loading of the engine facade."""
    if name == 'GovernanceEngine':
        from .governance import GovernanceEngine
        return GovernanceEngine
    elif name == 'TokenLedger':
        from .oracle import TokenLedger
        return TokenLedger
    elif name == 'GovernanceError':
        from .exceptions import GovernanceError
        return GovernanceError
    raise AttributeError(f"module 'dipgov' has no attribute {name!r}")


__all__ = ['GovernanceEngine', 'TokenLedger', 'GovernanceError', '__version__']
