"""
DIP Governance TOML Configuration Loader

Loads governance.toml with environment variable overrides. The config is a
versioned set of per-type parameters (quorum, voting period, timelock,
execution window) plus global creation limits. Proposals copy the values
they need at creation, so loading a new version never changes proposals
that already exist.

Example governance.toml:

    version = 2
    proposal_threshold = "250"
    max_active_proposals = 12
    parameter_cooldown_days = 7

    [types.TREASURY_SPEND]
    quorum_percentage = "30"
    voting_period_days = 5
    timelock_hours = 72

Environment variable mapping:
    proposal_threshold     → DIPGOV_PROPOSAL_THRESHOLD
    max_active_proposals   → DIPGOV_MAX_ACTIVE_PROPOSALS
    parameter_cooldown     → DIPGOV_PARAMETER_COOLDOWN_DAYS
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Union

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from ..constants import (
    DIPGOV_CONFIG,
    GOVERNANCE_EXECUTION_WINDOW_DAYS,
    GOVERNANCE_GRACE_PERIOD_HOURS,
    GOVERNANCE_MAX_ACTIVE_PROPOSALS,
    GOVERNANCE_PARAMETER_COOLDOWN_DAYS,
    GOVERNANCE_PROPOSAL_PREFIX,
    GOVERNANCE_PROPOSAL_THRESHOLD,
    GOVERNANCE_TYPE_DEFAULTS,
    SECONDS_PER_DAY,
    SECONDS_PER_HOUR,
)
from ..logger import get_logger

logger = get_logger(__name__)


def _decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"{name} must be a decimal number, got {value!r}") from e


def _seconds(data: Dict[str, Any], base: str, unit_key: str, unit_seconds: int, default: int) -> int:
    """Read ``<base>_seconds`` if present, else ``<base>_<unit>`` scaled."""
    if f"{base}_seconds" in data:
        return int(data[f"{base}_seconds"])
    if unit_key in data:
        return int(Decimal(str(data[unit_key])) * unit_seconds)
    return default


def _type_name(proposal_type: Union[str, Any]) -> str:
    return getattr(proposal_type, "name", str(proposal_type))


# ---------------------------------------------------------------------------
# Per-type section
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProposalTypeConfig:
    """[types.<NAME>] section."""
    quorum_percentage: Decimal
    voting_period_seconds: int
    timelock_seconds: int
    execution_window_seconds: int = GOVERNANCE_EXECUTION_WINDOW_DAYS * SECONDS_PER_DAY

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: "ProposalTypeConfig") -> "ProposalTypeConfig":
        return cls(
            quorum_percentage=_decimal(
                data.get("quorum_percentage", base.quorum_percentage), "quorum_percentage"
            ),
            voting_period_seconds=_seconds(
                data, "voting_period", "voting_period_days", SECONDS_PER_DAY,
                base.voting_period_seconds,
            ),
            timelock_seconds=_seconds(
                data, "timelock", "timelock_hours", SECONDS_PER_HOUR,
                base.timelock_seconds,
            ),
            execution_window_seconds=_seconds(
                data, "execution_window", "execution_window_days", SECONDS_PER_DAY,
                base.execution_window_seconds,
            ),
        )

    def validate(self, name: str) -> None:
        if not Decimal("0") < self.quorum_percentage <= Decimal("100"):
            raise ValueError(f"{name}: quorum_percentage must be in (0, 100]")
        if self.voting_period_seconds <= 0:
            raise ValueError(f"{name}: voting period must be positive")
        if self.timelock_seconds <= 0:
            raise ValueError(f"{name}: timelock must be positive")
        if self.execution_window_seconds <= 0:
            raise ValueError(f"{name}: execution window must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quorum_percentage": str(self.quorum_percentage),
            "voting_period_seconds": self.voting_period_seconds,
            "timelock_seconds": self.timelock_seconds,
            "execution_window_seconds": self.execution_window_seconds,
        }


def _default_types() -> Dict[str, ProposalTypeConfig]:
    return {
        name: ProposalTypeConfig(
            quorum_percentage=values["quorum_percentage"],
            voting_period_seconds=values["voting_period_days"] * SECONDS_PER_DAY,
            timelock_seconds=values["timelock_hours"] * SECONDS_PER_HOUR,
        )
        for name, values in GOVERNANCE_TYPE_DEFAULTS.items()
    }


# -----------------------------------------------------------------------
# Top-level governance config
# -----------------------------------------------------------------------

@dataclass
class GovernanceConfig:
    """
    Versioned governance parameters.

    Read by every engine operation. Proposal timing fields and quorum are
    frozen copies taken at creation time.
    """
    version: int = 1
    types: Dict[str, ProposalTypeConfig] = field(default_factory=_default_types)
    proposal_threshold: Decimal = GOVERNANCE_PROPOSAL_THRESHOLD
    max_active_proposals: int = GOVERNANCE_MAX_ACTIVE_PROPOSALS
    parameter_cooldown_seconds: int = GOVERNANCE_PARAMETER_COOLDOWN_DAYS * SECONDS_PER_DAY
    grace_period_seconds: int = GOVERNANCE_GRACE_PERIOD_HOURS * SECONDS_PER_HOUR
    proposal_prefix: str = GOVERNANCE_PROPOSAL_PREFIX

    def __post_init__(self):
        # Codes are looked up upper-cased
        self.proposal_prefix = str(self.proposal_prefix).strip().upper()

    # --- lookups ----------------------------------------------------------

    def for_type(self, proposal_type) -> ProposalTypeConfig:
        name = _type_name(proposal_type)
        try:
            return self.types[name]
        except KeyError:
            raise ValueError(f"No governance parameters for proposal type {name}") from None

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GovernanceConfig":
        """Create GovernanceConfig from a parsed TOML dict."""
        types = _default_types()
        for name, section in data.get("types", {}).items():
            name = name.upper()
            if name not in types:
                raise ValueError(f"Unknown proposal type in config: {name}")
            types[name] = ProposalTypeConfig.from_dict(section, types[name])

        defaults = cls()
        return cls(
            version=int(data.get("version", defaults.version)),
            types=types,
            proposal_threshold=_decimal(
                data.get("proposal_threshold", defaults.proposal_threshold),
                "proposal_threshold",
            ),
            max_active_proposals=int(
                data.get("max_active_proposals", defaults.max_active_proposals)
            ),
            parameter_cooldown_seconds=_seconds(
                data, "parameter_cooldown", "parameter_cooldown_days", SECONDS_PER_DAY,
                defaults.parameter_cooldown_seconds,
            ),
            grace_period_seconds=_seconds(
                data, "grace_period", "grace_period_hours", SECONDS_PER_HOUR,
                defaults.grace_period_seconds,
            ),
            proposal_prefix=data.get("proposal_prefix", defaults.proposal_prefix),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "GovernanceConfig":
        """
        Load configuration from a TOML file.

        A missing file is not an error: defaults (with env overrides) apply.
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s; using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            cfg.validate()
            return cfg

        with open(path, "rb") as f:
            raw = tomllib.load(f)

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        cfg.validate()
        logger.info(f"Governance config v{cfg.version} loaded from {config_path}")
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides."""
        if v := os.environ.get("DIPGOV_PROPOSAL_THRESHOLD"):
            self.proposal_threshold = _decimal(v, "DIPGOV_PROPOSAL_THRESHOLD")
        if v := os.environ.get("DIPGOV_MAX_ACTIVE_PROPOSALS"):
            self.max_active_proposals = int(v)
        if v := os.environ.get("DIPGOV_PARAMETER_COOLDOWN_DAYS"):
            self.parameter_cooldown_seconds = int(Decimal(v) * SECONDS_PER_DAY)

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate every section.

        Raises:
            ValueError: on invalid config
        """
        if self.version < 1:
            raise ValueError("version must be >= 1")
        if self.proposal_threshold < 0:
            raise ValueError("proposal_threshold must be >= 0")
        if self.max_active_proposals < 1:
            raise ValueError("max_active_proposals must be >= 1")
        if self.parameter_cooldown_seconds < 0:
            raise ValueError("parameter cooldown must be >= 0")
        if self.grace_period_seconds < 0:
            raise ValueError("grace period must be >= 0")
        if not self.proposal_prefix:
            raise ValueError("proposal_prefix cannot be empty")
        for name, type_cfg in self.types.items():
            type_cfg.validate(name)
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "proposal_threshold": str(self.proposal_threshold),
            "max_active_proposals": self.max_active_proposals,
            "parameter_cooldown_seconds": self.parameter_cooldown_seconds,
            "grace_period_seconds": self.grace_period_seconds,
            "proposal_prefix": self.proposal_prefix,
            "types": {name: t.to_dict() for name, t in self.types.items()},
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> GovernanceConfig:
    """
    Load governance configuration.

    Resolution order:
        1. Explicit *path* argument
        2. DIPGOV_CONFIG env var
        3. DIPGOV_CONFIG in .env (default ./governance.toml)
        4. Defaults (with env overrides) if that file is missing
    """
    if path is None:
        path = os.environ.get("DIPGOV_CONFIG") or str(DIPGOV_CONFIG)

    return GovernanceConfig.from_file(path)
