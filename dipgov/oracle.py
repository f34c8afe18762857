"""
Balance Oracle

Read-only view of the governance token ledger, consumed by the engine to
size quorum, check the proposal threshold, and take per-proposal
snapshots:

  - get_balance(holder)   → Decimal
  - get_total_supply()    → Decimal
  - list_all_holders()    → [HolderBalance]   (snapshot time only)

TokenLedger is an in-process ledger implementing the oracle, used for
local development and tests. Production deployments supply their own
BalanceOracle subclass backed by the real balance store.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .logger import get_logger

logger = get_logger(__name__)


class LedgerError(Exception):
    """Invalid ledger mutation (negative amount, overdraft)."""


@dataclass(frozen=True)
class HolderBalance:
    """One holder's balance and effective voting weight."""
    holder: str
    balance: Decimal
    voting_weight: Optional[Decimal] = None

    @property
    def effective_weight(self) -> Decimal:
        return self.balance if self.voting_weight is None else self.voting_weight

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holder": self.holder,
            "balance": str(self.balance),
            "votingWeight": str(self.effective_weight),
        }


class BalanceOracle(ABC):
    """Read-only balance provider."""

    @abstractmethod
    async def get_balance(self, holder: str) -> Decimal:
        ...

    @abstractmethod
    async def get_total_supply(self) -> Decimal:
        ...

    @abstractmethod
    async def list_all_holders(self) -> List[HolderBalance]:
        ...


class TokenLedger(BalanceOracle):
    """
    In-memory token ledger.

    Mutations are synchronous; reads follow the async oracle interface.
    Holders whose balance drops to zero are removed from the holder set.
    """

    def __init__(self, balances: Optional[Dict[str, Decimal]] = None):
        self._balances: Dict[str, Decimal] = {}
        for holder, amount in (balances or {}).items():
            self.mint(holder, Decimal(amount))

    # ── Mutations ─────────────────────────────────────────────────────

    def mint(self, holder: str, amount: Decimal) -> None:
        if not holder:
            raise LedgerError("Holder identity is required")
        if amount <= 0:
            raise LedgerError("Mint amount must be positive")
        self._balances[holder] = self._balances.get(holder, Decimal("0")) + amount

    def burn(self, holder: str, amount: Decimal) -> None:
        self._debit(holder, amount)

    def transfer(self, sender: str, recipient: str, amount: Decimal) -> None:
        if sender == recipient:
            raise LedgerError("Cannot transfer to self")
        self._debit(sender, amount)
        self.mint(recipient, amount)
        logger.debug(f"Ledger transfer: {sender} → {recipient} ({amount})")

    def _debit(self, holder: str, amount: Decimal) -> None:
        if amount <= 0:
            raise LedgerError("Amount must be positive")
        balance = self._balances.get(holder, Decimal("0"))
        if balance < amount:
            raise LedgerError(f"{holder} has {balance}, needs {amount}")
        remaining = balance - amount
        if remaining == 0:
            del self._balances[holder]
        else:
            self._balances[holder] = remaining

    # ── Oracle interface ──────────────────────────────────────────────

    async def get_balance(self, holder: str) -> Decimal:
        return self._balances.get(holder, Decimal("0"))

    async def get_total_supply(self) -> Decimal:
        return sum(self._balances.values(), Decimal("0"))

    async def list_all_holders(self) -> List[HolderBalance]:
        return [
            HolderBalance(holder=holder, balance=balance)
            for holder, balance in sorted(self._balances.items())
        ]

    def __repr__(self) -> str:
        return f"<TokenLedger holders={len(self._balances)}>"
