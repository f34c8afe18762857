"""
Shared fixtures for the governance test suites.

Every engine runs on an in-memory aiosqlite database with a controllable
clock, so voting windows, timelocks and deadlines are crossed by
advancing the clock instead of sleeping.
"""

import os
import sys
from decimal import Decimal

import pytest
import pytest_asyncio

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from dipgov.config import GovernanceConfig
from dipgov.constants import SECONDS_PER_DAY, SECONDS_PER_HOUR
from dipgov.database_sqlite import GovernanceDatabase
from dipgov.governance import GovernanceEngine
from dipgov.notifications import InMemoryNotificationSink
from dipgov.oracle import TokenLedger

# ── Holders ───────────────────────────────────────────────────────────
ALICE = "0xPQ" + "A1" * 32      # proposer
BOB = "0xPQ" + "B2" * 32
CAROL = "0xPQ" + "C3" * 32
DAVE = "0xPQ" + "D4" * 32
EVE = "0xPQ" + "E5" * 32
FRANK = "0xPQ" + "F6" * 32
WHALE = "0xPQ" + "99" * 32
POOR = "0xPQ" + "0A" * 32       # below the proposal threshold
GUARDIAN = "0xPQ" + "GG" * 32

# Total supply 1,000,000 → PARAMETER_CHANGE quorum (10%) = 100,000
BALANCES = {
    ALICE: Decimal("100000"),
    BOB: Decimal("60000"),
    CAROL: Decimal("30000"),
    DAVE: Decimal("70000"),
    EVE: Decimal("20000"),
    FRANK: Decimal("15000"),
    WHALE: Decimal("704960"),
    POOR: Decimal("40"),
}
TOTAL_SUPPLY = Decimal("1000000")

START_TIME = 1_700_000_000.0


class FakeClock:
    """Callable clock advanced explicitly by tests."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 0, hours: float = 0, days: float = 0) -> float:
        self.now += seconds + hours * SECONDS_PER_HOUR + days * SECONDS_PER_DAY
        return self.now

    def set(self, timestamp: float) -> float:
        self.now = timestamp
        return self.now


async def _create_engine(ledger, clock, sink=None, config=None, db_path=":memory:"):
    """Create an engine on a real aiosqlite database."""
    db = await GovernanceDatabase.create(db_path)
    return GovernanceEngine(
        db, ledger, config=config or GovernanceConfig(), sink=sink, clock=clock,
    )


async def make_proposal(engine, proposal_type="PARAMETER_CHANGE", proposer=ALICE, **kwargs):
    kwargs.setdefault("title", "Raise swap fee")
    kwargs.setdefault("description", "Raise the base swap fee from 0.30% to 0.35%")
    kwargs.setdefault("action_payload", {"key": "swap_fee_bps", "value": 35})
    return await engine.create_proposal(proposer, proposal_type, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return TokenLedger(BALANCES)


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest_asyncio.fixture
async def engine(ledger, clock, sink):
    engine = await _create_engine(ledger, clock, sink=sink)
    yield engine
    await engine.close()
