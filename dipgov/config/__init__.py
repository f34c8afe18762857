"""
DIP Governance Configuration

Loads governance.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    GovernanceConfig,
    ProposalTypeConfig,
    load_config,
)

__all__ = [
    "GovernanceConfig",
    "ProposalTypeConfig",
    "load_config",
]
