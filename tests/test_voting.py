"""
Voting & Snapshot Test Suite

Coverage:
  - Snapshot taken at creation: sum equals total supply, immune to later
    ledger changes, zero weight for holders that appear afterwards
  - Voting window [voting_starts_at, voting_ends_at)
  - Vote changes: only the latest choice counts, no double counting
  - Concurrent voters: no lost tally updates
  - Vote results and per-voter lookups
"""

import asyncio
from decimal import Decimal

import pytest

from conftest import (
    ALICE,
    BALANCES,
    BOB,
    CAROL,
    DAVE,
    EVE,
    FRANK,
    TOTAL_SUPPLY,
    WHALE,
    make_proposal,
)
from dipgov.exceptions import (
    InvalidProposalError,
    InvalidStatusForOperationError,
    ProposalNotFoundError,
    VotingWindowClosedError,
)
from dipgov.governance import Vote, VoteRecord
from dipgov.oracle import HolderBalance

NEWCOMER = "0xPQ" + "EE" * 32


class TestVoteChoice:
    """Vote enum parsing and tally column mapping."""

    def test_parse(self):
        assert Vote.parse("for") == Vote.FOR
        assert Vote.parse(Vote.AGAINST) == Vote.AGAINST
        assert Vote.parse("Abstain") == Vote.ABSTAIN

    def test_parse_unknown(self):
        with pytest.raises(InvalidProposalError):
            Vote.parse("maybe")

    def test_columns(self):
        assert Vote.FOR.column == "votes_for"
        assert Vote.AGAINST.column == "votes_against"
        assert Vote.ABSTAIN.column == "votes_abstain"


class TestSnapshot:
    """Per-proposal balance snapshot."""

    @pytest.mark.asyncio
    async def test_snapshot_sums_to_total_supply(self, engine):
        p = await make_proposal(engine)
        entries = await engine.get_snapshot(p.id)
        assert len(entries) == len(BALANCES)
        assert sum(e.voting_weight for e in entries) == TOTAL_SUPPLY
        assert await engine.get_snapshot_total(p.id) == p.total_supply
        assert all(e.snapshot_block == p.snapshot_block for e in entries)

    @pytest.mark.asyncio
    async def test_snapshot_unchanged_by_ledger_mutation(self, engine, ledger):
        p = await make_proposal(engine)
        before = await engine.get_snapshot(p.id)

        ledger.transfer(BOB, NEWCOMER, Decimal("60000"))
        ledger.mint(CAROL, Decimal("5000"))

        after = await engine.get_snapshot(p.id)
        assert after == before
        by_holder = {e.holder: e for e in after}
        assert by_holder[BOB].voting_weight == Decimal("60000")
        assert NEWCOMER not in by_holder

    @pytest.mark.asyncio
    async def test_later_proposal_sees_new_balances(self, engine, ledger):
        first = await make_proposal(engine)
        ledger.transfer(BOB, NEWCOMER, Decimal("10000"))
        second = await make_proposal(engine, "NEW_POOL")

        old = {e.holder: e.voting_weight for e in await engine.get_snapshot(first.id)}
        new = {e.holder: e.voting_weight for e in await engine.get_snapshot(second.id)}
        assert old[BOB] == Decimal("60000")
        assert new[BOB] == Decimal("50000")
        assert new[NEWCOMER] == Decimal("10000")

    @pytest.mark.asyncio
    async def test_entry_to_dict(self, engine):
        p = await make_proposal(engine)
        entry = await engine.snapshots.get_entry(p.id, BOB)
        assert entry.to_dict()["votingWeight"] == "60000.00000000"
        assert await engine.snapshots.get_entry(p.id, NEWCOMER) is None

    def test_holder_effective_weight(self):
        assert HolderBalance(BOB, Decimal("5")).effective_weight == Decimal("5")
        assert HolderBalance(BOB, Decimal("5"), Decimal("7")).effective_weight == Decimal("7")


class TestCastVote:
    """Vote casting against the snapshot."""

    @pytest.mark.asyncio
    async def test_first_vote(self, engine, clock):
        p = await make_proposal(engine)
        record = await engine.cast_vote(p.id, BOB, Vote.FOR)
        assert isinstance(record, VoteRecord)
        assert record.weight == Decimal("60000")
        assert record.choice == Vote.FOR
        assert record.previous_choice is None
        assert record.cast_at == clock.now

        reloaded = await engine.get_proposal(p.id)
        assert reloaded.votes_for == Decimal("60000")
        assert reloaded.total_voters == 1

    @pytest.mark.asyncio
    async def test_vote_by_code(self, engine):
        p = await make_proposal(engine)
        await engine.cast_vote(p.code, CAROL, "against")
        assert (await engine.get_proposal(p.id)).votes_against == Decimal("30000")

    @pytest.mark.asyncio
    async def test_weight_uses_snapshot_not_live_balance(self, engine, ledger):
        p = await make_proposal(engine)
        ledger.transfer(BOB, NEWCOMER, Decimal("60000"))

        bob = await engine.cast_vote(p.id, BOB, Vote.FOR)
        newcomer = await engine.cast_vote(p.id, NEWCOMER, Vote.FOR)
        assert bob.weight == Decimal("60000")
        assert newcomer.weight == Decimal("0")

        reloaded = await engine.get_proposal(p.id)
        assert reloaded.votes_for == Decimal("60000")
        assert reloaded.total_voters == 2

    @pytest.mark.asyncio
    async def test_change_vote_moves_weight(self, engine, clock):
        p = await make_proposal(engine)
        await engine.cast_vote(p.id, BOB, Vote.FOR)
        clock.advance(hours=2)
        record = await engine.cast_vote(p.id, BOB, Vote.AGAINST)

        assert record.choice == Vote.AGAINST
        assert record.previous_choice == Vote.FOR
        assert record.changed_at == clock.now

        reloaded = await engine.get_proposal(p.id)
        assert reloaded.votes_for == Decimal("0")
        assert reloaded.votes_against == Decimal("60000")
        assert reloaded.total_voters == 1

    @pytest.mark.asyncio
    async def test_many_changes_never_double_count(self, engine):
        p = await make_proposal(engine)
        for choice in [Vote.FOR, Vote.ABSTAIN, Vote.AGAINST, Vote.FOR, Vote.ABSTAIN]:
            await engine.cast_vote(p.id, BOB, choice)
        reloaded = await engine.get_proposal(p.id)
        assert reloaded.votes_abstain == Decimal("60000")
        assert reloaded.votes_for == Decimal("0")
        assert reloaded.votes_against == Decimal("0")
        assert reloaded.total_cast == Decimal("60000")

    @pytest.mark.asyncio
    async def test_recast_same_choice_is_noop_on_tally(self, engine):
        p = await make_proposal(engine)
        await engine.cast_vote(p.id, BOB, Vote.FOR)
        await engine.cast_vote(p.id, BOB, Vote.FOR)
        reloaded = await engine.get_proposal(p.id)
        assert reloaded.votes_for == Decimal("60000")
        assert reloaded.total_voters == 1

    @pytest.mark.asyncio
    async def test_vote_after_window_closed(self, engine, clock):
        p = await make_proposal(engine)
        clock.set(p.voting_ends_at)
        with pytest.raises(VotingWindowClosedError) as exc:
            await engine.cast_vote(p.id, BOB, Vote.FOR)
        assert exc.value.ends_at == p.voting_ends_at

    @pytest.mark.asyncio
    async def test_vote_just_before_close(self, engine, clock):
        p = await make_proposal(engine)
        clock.set(p.voting_ends_at - 1)
        await engine.cast_vote(p.id, BOB, Vote.FOR)

    @pytest.mark.asyncio
    async def test_vote_on_unknown_proposal(self, engine):
        with pytest.raises(ProposalNotFoundError):
            await engine.cast_vote(42, BOB, Vote.FOR)

    @pytest.mark.asyncio
    async def test_vote_after_finalization(self, engine, clock):
        p = await make_proposal(engine)
        clock.set(p.voting_ends_at)
        await engine.run_finalization()
        clock.set(p.voting_starts_at + 1)
        with pytest.raises(InvalidStatusForOperationError):
            await engine.cast_vote(p.id, BOB, Vote.FOR)

    @pytest.mark.asyncio
    async def test_empty_voter_rejected(self, engine):
        p = await make_proposal(engine)
        with pytest.raises(InvalidProposalError):
            await engine.cast_vote(p.id, "", Vote.FOR)


class TestConcurrentVoting:
    """Tally updates under concurrent voters."""

    @pytest.mark.asyncio
    async def test_concurrent_distinct_voters(self, engine):
        p = await make_proposal(engine)
        await asyncio.gather(
            engine.cast_vote(p.id, BOB, Vote.FOR),
            engine.cast_vote(p.id, CAROL, Vote.AGAINST),
            engine.cast_vote(p.id, DAVE, Vote.FOR),
            engine.cast_vote(p.id, EVE, Vote.ABSTAIN),
            engine.cast_vote(p.id, FRANK, Vote.AGAINST),
            engine.cast_vote(p.id, WHALE, Vote.FOR),
        )
        reloaded = await engine.get_proposal(p.id)
        assert reloaded.votes_for == Decimal("834960")
        assert reloaded.votes_against == Decimal("45000")
        assert reloaded.votes_abstain == Decimal("20000")
        assert reloaded.total_voters == 6

    @pytest.mark.asyncio
    async def test_concurrent_changes_by_one_voter(self, engine):
        p = await make_proposal(engine)
        choices = [Vote.FOR, Vote.AGAINST, Vote.ABSTAIN] * 4
        await asyncio.gather(*[engine.cast_vote(p.id, BOB, c) for c in choices])

        reloaded = await engine.get_proposal(p.id)
        final = await engine.get_user_vote(p.id, BOB)
        assert reloaded.total_cast == Decimal("60000")
        assert getattr(reloaded, final.choice.column) == Decimal("60000")
        assert reloaded.total_voters == 1


class TestVoteResults:
    """get_vote_results / get_user_vote."""

    @pytest.mark.asyncio
    async def test_results(self, engine):
        p = await make_proposal(engine)
        await engine.cast_vote(p.id, BOB, Vote.FOR)
        await engine.cast_vote(p.id, CAROL, Vote.AGAINST)
        await engine.cast_vote(p.id, EVE, Vote.ABSTAIN)

        result = await engine.get_vote_results(p.code)
        assert result.total_votes == Decimal("110000")
        assert result.total_voters == 3
        assert result.quorum_met is True
        assert result.approval_rate == Decimal("60000") / Decimal("90000")
        assert {v.voter for v in result.votes} == {BOB, CAROL, EVE}

        data = result.to_dict()
        assert data["quorumMet"] is True
        assert data["code"] == "DIP-1"
        assert len(data["votes"]) == 3

    @pytest.mark.asyncio
    async def test_user_vote(self, engine):
        p = await make_proposal(engine)
        assert await engine.get_user_vote(p.id, BOB) is None
        await engine.cast_vote(p.id, BOB, Vote.ABSTAIN)
        record = await engine.get_user_vote(p.id, BOB)
        assert record.choice == Vote.ABSTAIN
        assert record.to_dict()["choice"] == "ABSTAIN"

    @pytest.mark.asyncio
    async def test_proposer_may_vote(self, engine):
        p = await make_proposal(engine)
        record = await engine.cast_vote(p.id, ALICE, Vote.FOR)
        assert record.weight == Decimal("100000")
