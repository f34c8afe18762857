"""
Governance Configuration Test Suite

Coverage:
  - Published per-type defaults
  - TOML loading (days/hours and raw-seconds keys), missing file
  - Environment overrides and load_config resolution
  - Validation failures
"""

import os
import subprocess
import sys
from decimal import Decimal

import pytest

from conftest import ROOT
from dipgov.config import GovernanceConfig, ProposalTypeConfig, load_config
from dipgov.config import loader
from dipgov.constants import SECONDS_PER_DAY, SECONDS_PER_HOUR
from dipgov.governance import ProposalType


class TestDefaults:
    """Defaults match the published governance parameters."""

    @pytest.mark.parametrize("proposal_type,quorum,voting_days,timelock_hours", [
        (ProposalType.PARAMETER_CHANGE, "10", 5, 48),
        (ProposalType.NEW_POOL, "15", 5, 48),
        (ProposalType.POOL_DEPRECATION, "20", 5, 48),
        (ProposalType.TREASURY_SPEND, "25", 5, 72),
        (ProposalType.EMERGENCY_ACTION, "5", 1, 1),
        (ProposalType.PROTOCOL_UPGRADE, "20", 7, 96),
    ])
    def test_type_defaults(self, proposal_type, quorum, voting_days, timelock_hours):
        cfg = GovernanceConfig().for_type(proposal_type)
        assert cfg.quorum_percentage == Decimal(quorum)
        assert cfg.voting_period_seconds == voting_days * SECONDS_PER_DAY
        assert cfg.timelock_seconds == timelock_hours * SECONDS_PER_HOUR
        assert cfg.execution_window_seconds == 7 * SECONDS_PER_DAY

    def test_global_defaults(self):
        cfg = GovernanceConfig()
        assert cfg.version == 1
        assert cfg.proposal_threshold == Decimal("100")
        assert cfg.max_active_proposals == 10
        assert cfg.parameter_cooldown_seconds == 7 * SECONDS_PER_DAY
        assert cfg.grace_period_seconds == 48 * SECONDS_PER_HOUR
        assert cfg.proposal_prefix == "DIP"
        assert cfg.validate() is True

    def test_for_type_accepts_name(self):
        assert GovernanceConfig().for_type("NEW_POOL") == GovernanceConfig().for_type(
            ProposalType.NEW_POOL
        )

    def test_for_type_unknown(self):
        with pytest.raises(ValueError):
            GovernanceConfig().for_type("AIRDROP")


class TestTomlLoading:
    """from_file / from_dict."""

    def test_from_file(self, tmp_path):
        path = tmp_path / "governance.toml"
        path.write_text(
            'version = 3\n'
            'proposal_threshold = "250"\n'
            'max_active_proposals = 4\n'
            'parameter_cooldown_days = 2\n'
            '\n'
            '[types.TREASURY_SPEND]\n'
            'quorum_percentage = "30"\n'
            'voting_period_days = 3\n'
            'timelock_hours = 24\n'
            '\n'
            '[types.new_pool]\n'
            'timelock_seconds = 600\n'
        )
        cfg = GovernanceConfig.from_file(str(path))
        assert cfg.version == 3
        assert cfg.proposal_threshold == Decimal("250")
        assert cfg.max_active_proposals == 4
        assert cfg.parameter_cooldown_seconds == 2 * SECONDS_PER_DAY

        treasury = cfg.for_type(ProposalType.TREASURY_SPEND)
        assert treasury.quorum_percentage == Decimal("30")
        assert treasury.voting_period_seconds == 3 * SECONDS_PER_DAY
        assert treasury.timelock_seconds == 24 * SECONDS_PER_HOUR

        pool = cfg.for_type(ProposalType.NEW_POOL)
        assert pool.timelock_seconds == 600
        assert pool.quorum_percentage == Decimal("15")

    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = GovernanceConfig.from_file(str(tmp_path / "absent.toml"))
        assert cfg.to_dict() == GovernanceConfig().to_dict()

    def test_unknown_type_section(self):
        with pytest.raises(ValueError):
            GovernanceConfig.from_dict({"types": {"AIRDROP": {"quorum_percentage": "5"}}})

    def test_to_dict_roundtrip_fields(self):
        data = GovernanceConfig().to_dict()
        assert data["types"]["EMERGENCY_ACTION"]["timelock_seconds"] == SECONDS_PER_HOUR
        assert data["proposal_threshold"] == "100"


class TestEnvironment:
    """DIPGOV_* overrides and load_config resolution."""

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DIPGOV_PROPOSAL_THRESHOLD", "500")
        monkeypatch.setenv("DIPGOV_MAX_ACTIVE_PROPOSALS", "3")
        monkeypatch.setenv("DIPGOV_PARAMETER_COOLDOWN_DAYS", "1")
        cfg = GovernanceConfig.from_file(str(tmp_path / "absent.toml"))
        assert cfg.proposal_threshold == Decimal("500")
        assert cfg.max_active_proposals == 3
        assert cfg.parameter_cooldown_seconds == SECONDS_PER_DAY

    def test_load_config_from_env_path(self, monkeypatch, tmp_path):
        path = tmp_path / "custom.toml"
        path.write_text("version = 7\n")
        monkeypatch.setenv("DIPGOV_CONFIG", str(path))
        assert load_config().version == 7

    def test_load_config_explicit_path_wins(self, monkeypatch, tmp_path):
        env_path = tmp_path / "env.toml"
        env_path.write_text("version = 7\n")
        explicit = tmp_path / "explicit.toml"
        explicit.write_text("version = 9\n")
        monkeypatch.setenv("DIPGOV_CONFIG", str(env_path))
        assert load_config(str(explicit)).version == 9


class TestValidation:
    """validate() rejects unusable parameters."""

    @pytest.mark.parametrize("quorum", ["0", "-5", "100.5"])
    def test_bad_quorum(self, quorum):
        with pytest.raises(ValueError):
            ProposalTypeConfig(Decimal(quorum), SECONDS_PER_DAY, SECONDS_PER_HOUR).validate("X")

    @pytest.mark.parametrize("voting,timelock,window", [
        (0, 3600, 3600),
        (3600, 0, 3600),
        (3600, 3600, 0),
    ])
    def test_non_positive_durations(self, voting, timelock, window):
        with pytest.raises(ValueError):
            ProposalTypeConfig(Decimal("10"), voting, timelock, window).validate("X")

    def test_bad_globals(self):
        with pytest.raises(ValueError):
            GovernanceConfig(max_active_proposals=0).validate()
        with pytest.raises(ValueError):
            GovernanceConfig(proposal_threshold=Decimal("-1")).validate()
        with pytest.raises(ValueError):
            GovernanceConfig(proposal_prefix="").validate()

    def test_invalid_file_rejected(self, tmp_path):
        path = tmp_path / "governance.toml"
        path.write_text('[types.NEW_POOL]\nquorum_percentage = "0"\n')
        with pytest.raises(ValueError):
            GovernanceConfig.from_file(str(path))

    def test_engine_rejects_invalid_config(self):
        from dipgov.governance import GovernanceEngine
        with pytest.raises(ValueError):
            GovernanceEngine(db=None, oracle=None, config=GovernanceConfig(max_active_proposals=0))


class TestDotenvConfigPath:
    """DIPGOV_CONFIG set in .env selects the TOML file."""

    def test_dotenv_config_path(self, tmp_path):
        (tmp_path / ".env").write_text("DIPGOV_CONFIG=custom.toml\nLOG_LEVEL=WARNING\n")
        (tmp_path / "custom.toml").write_text("version = 7\n")

        env = {k: v for k, v in os.environ.items() if k != "DIPGOV_CONFIG"}
        env["PYTHONPATH"] = ROOT + os.pathsep + env.get("PYTHONPATH", "")
        result = subprocess.run(
            [sys.executable, "-c",
             "from dipgov.config import load_config; "
             "print('config version', load_config().version)"],
            cwd=tmp_path, env=env, capture_output=True, text=True, timeout=60,
        )
        assert result.returncode == 0, result.stderr
        assert "config version 7" in result.stdout

    def test_environment_beats_dotenv(self, monkeypatch, tmp_path):
        monkeypatch.setattr(loader, "DIPGOV_CONFIG", "from-dotenv.toml")
        path = tmp_path / "env.toml"
        path.write_text("version = 4\n")
        monkeypatch.setenv("DIPGOV_CONFIG", str(path))
        assert load_config().version == 4

    def test_dotenv_value_used_without_environment(self, monkeypatch, tmp_path):
        path = tmp_path / "dotenv.toml"
        path.write_text("version = 5\n")
        monkeypatch.delenv("DIPGOV_CONFIG", raising=False)
        monkeypatch.setattr(loader, "DIPGOV_CONFIG", str(path))
        assert load_config().version == 5


class TestProposalPrefix:
    """Prefixes are stored upper-case."""

    def test_prefix_normalized(self):
        assert GovernanceConfig(proposal_prefix="gov").proposal_prefix == "GOV"
        assert GovernanceConfig.from_dict({"proposal_prefix": "dao"}).proposal_prefix == "DAO"
