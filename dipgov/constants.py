"""
DIP Governance Constants

This module consolidates the global constants and environment configuration
used throughout the governance engine. Constants are organized by category
for easy reference and maintenance.
"""
import ast
from decimal import Decimal
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

ENGINE_DEFAULTS = {
    'DIPGOV_DATABASE_PATH':            './data/governance.db',
    'DIPGOV_CONFIG':                   'governance.toml',
    'DIPGOV_SCHEDULER_INTERVAL':       '300',
    'DIPGOV_WEBHOOK_URL':              '',
    'DIPGOV_WEBHOOK_TIMEOUT':          '5.0',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    __hash__ = int.__hash__


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = ENGINE_DEFAULTS | LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)


# ==================================================================================
# AMOUNTS
# ==================================================================================
# Token amounts are persisted as integer base units so that tally
# increments stay exact inside SQL. 8 decimal places.
AMOUNT_DECIMALS = 8
AMOUNT_SCALE = 10 ** AMOUNT_DECIMALS


# ==================================================================================
# GOVERNANCE PARAMETERS
# ==================================================================================
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400

GOVERNANCE_PROPOSAL_PREFIX = 'DIP'
GOVERNANCE_PROPOSAL_THRESHOLD = Decimal('100')      # Minimum balance to propose
GOVERNANCE_MAX_ACTIVE_PROPOSALS = 10                # Draft + Active at once
GOVERNANCE_PARAMETER_COOLDOWN_DAYS = 7
GOVERNANCE_EXECUTION_WINDOW_DAYS = 7
GOVERNANCE_GRACE_PERIOD_HOURS = 48                  # Warning window before deadline

# Per-type defaults: quorum %, voting period (days), timelock (hours)
GOVERNANCE_TYPE_DEFAULTS = {
    'PARAMETER_CHANGE': {'quorum_percentage': Decimal('10'), 'voting_period_days': 5, 'timelock_hours': 48},
    'NEW_POOL':         {'quorum_percentage': Decimal('15'), 'voting_period_days': 5, 'timelock_hours': 48},
    'POOL_DEPRECATION': {'quorum_percentage': Decimal('20'), 'voting_period_days': 5, 'timelock_hours': 48},
    'TREASURY_SPEND':   {'quorum_percentage': Decimal('25'), 'voting_period_days': 5, 'timelock_hours': 72},
    # A zero-length timelock would collapse votingEndsAt == timelockEndsAt
    'EMERGENCY_ACTION': {'quorum_percentage': Decimal('5'),  'voting_period_days': 1, 'timelock_hours': 1},
    'PROTOCOL_UPGRADE': {'quorum_percentage': Decimal('20'), 'voting_period_days': 7, 'timelock_hours': 96},
}

# Proposal listing
GOVERNANCE_DEFAULT_PAGE_SIZE = 20
GOVERNANCE_MAX_PAGE_SIZE = 50
