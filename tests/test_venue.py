"""Unit tests for the per-venue guarantee engine."""

from __future__ import annotations

import pytest

from conftest import ADMIN, MONTH, OPERATOR, OWNER
from guarantee.errors import (
    AuthorizationError,
    InsufficientResourceError,
    NoShortfallError,
    NotFoundError,
    NotVenueOwnerError,
    StateError,
    TransferError,
    ValidationError,
)
from guarantee.venue import EnginePhase, PerformanceSummary


@pytest.fixture
def fee_venue(ctx, make_venue, make_underwriters):
    """Engine roster u1 (600) / u2 (400) with a funded escrow of 100."""
    engine = make_venue(promised=1000)
    make_underwriters({"u1": 600, "u2": 400})
    engine.add_underwriter(OPERATOR, "u1", 600)
    engine.add_underwriter(OPERATOR, "u2", 400)
    engine.set_fee_amount(OWNER, 100)
    engine.deposit_fee(OWNER)
    return engine


class TestRoles:
    """Admin-managed operator set."""

    def test_admin_adds_operator(self, assigned_venue) -> None:
        assigned_venue.add_operator(ADMIN, "op_2")
        report = assigned_venue.submit_monthly_report("op_2", 900)
        assert report.month == 1

    def test_non_admin_cannot_manage_operators(self, ctx, assigned_venue) -> None:
        with pytest.raises(AuthorizationError):
            assigned_venue.add_operator(OPERATOR, "op_2")
        assert not ctx.roles.is_operator("op_2")

    def test_admin_cannot_be_removed(self, ctx, assigned_venue) -> None:
        assert ctx.roles.admin == ADMIN
        with pytest.raises(StateError):
            assigned_venue.remove_operator(ADMIN, ADMIN)
        assert ctx.roles.is_operator(ADMIN)

    def test_removed_operator_loses_access(self, assigned_venue) -> None:
        assigned_venue.remove_operator(ADMIN, OPERATOR)
        with pytest.raises(AuthorizationError):
            assigned_venue.submit_monthly_report(OPERATOR, 900)

    def test_roles_are_shared_across_venues(self, ctx, assigned_venue, make_venue) -> None:
        other = make_venue(promised=500, owner="owner_b")
        assigned_venue.add_operator(ADMIN, "op_2")
        assert other.roles is assigned_venue.roles
        assert other.submit_monthly_report("op_2", 500).month == 1


class TestAssembling:
    """Roster building and escrow funding."""

    def test_add_underwriter_accumulates_stake(self, assigned_venue) -> None:
        roster = assigned_venue.roster()
        assert [(e.underwriter_id, e.stake, e.approved, e.fee_claimed) for e in roster] == [
            ("alice", 600, True, False),
            ("bob", 300, True, False),
        ]
        assert assigned_venue.total_stake == 900

    def test_add_underwriter_requires_operator(self, assigned_venue, make_underwriters) -> None:
        make_underwriters({"carol": 100})
        with pytest.raises(AuthorizationError):
            assigned_venue.add_underwriter(OWNER, "carol", 100)

    def test_add_underwriter_requires_registration(self, assigned_venue) -> None:
        with pytest.raises(AuthorizationError):
            assigned_venue.add_underwriter(OPERATOR, "ghost", 100)

    def test_duplicate_roster_entry_rejected(self, assigned_venue) -> None:
        with pytest.raises(StateError):
            assigned_venue.add_underwriter(OPERATOR, "alice", 100)
        assert assigned_venue.total_stake == 900

    def test_fee_is_owner_only(self, assigned_venue) -> None:
        with pytest.raises(NotVenueOwnerError):
            assigned_venue.set_fee_amount(OPERATOR, 100)

    def test_deposit_requires_configured_fee(self, assigned_venue) -> None:
        with pytest.raises(ValidationError):
            assigned_venue.deposit_fee(OWNER)

    def test_deposit_requires_roster(self, make_venue) -> None:
        engine = make_venue(promised=100, owner="owner_b")
        engine.set_fee_amount("owner_b", 10)
        with pytest.raises(StateError):
            engine.deposit_fee("owner_b")

    def test_deposit_pulls_fee_into_escrow(self, ctx, fee_venue) -> None:
        assert fee_venue.escrow_balance == 100
        assert ctx.asset.balance_of(fee_venue.address) == 100

    def test_deposit_without_allowance_fails_cleanly(self, ctx, assigned_venue) -> None:
        assigned_venue.set_fee_amount(OWNER, 50)
        ctx.asset.approve(OWNER, assigned_venue.address, 0)
        with pytest.raises(TransferError):
            assigned_venue.deposit_fee(OWNER)
        assert assigned_venue.escrow_balance == 0
        assert assigned_venue.fee_deposited == 0

    def test_fee_and_roster_frozen_after_deposit(self, fee_venue, make_underwriters) -> None:
        make_underwriters({"carol": 100})
        with pytest.raises(StateError):
            fee_venue.set_fee_amount(OWNER, 200)
        with pytest.raises(StateError):
            fee_venue.add_underwriter(OPERATOR, "carol", 100)
        with pytest.raises(StateError):
            fee_venue.deposit_fee(OWNER)


class TestReporting:
    """Monthly reports and liability processing."""

    def test_reports_advance_one_month_each(self, assigned_venue) -> None:
        first = assigned_venue.submit_monthly_report(OPERATOR, 900)
        second = assigned_venue.submit_monthly_report(OPERATOR, 1000)

        assert (first.month, first.missing_revenue) == (1, 0)
        assert (second.month, second.missing_revenue) == (2, 0)
        assert assigned_venue.current_month == 3
        assert assigned_venue.phase == EnginePhase.REPORTING

    def test_reports_require_operator(self, assigned_venue) -> None:
        with pytest.raises(AuthorizationError):
            assigned_venue.submit_monthly_report(OWNER, 900)
        assert assigned_venue.current_month == 1

    def test_shortfall_settles_once(self, ctx, assigned_venue) -> None:
        """Month 2 misses 90; stakes 600/300 pay 60/30 and a repeat call fails."""
        vid = assigned_venue.venue_id
        assigned_venue.submit_monthly_report(OPERATOR, 900)
        report = assigned_venue.submit_monthly_report(OPERATOR, 810)
        assert report.missing_revenue == 90

        receipt = assigned_venue.process_liability(OPERATOR, 2)

        assert [s.share for s in receipt.shares] == [60, 30]
        assert ctx.ledger.position("alice").locked == 540
        assert ctx.ledger.position("bob").locked == 270
        assert assigned_venue.report(2).liability_paid

        with pytest.raises(StateError):
            assigned_venue.process_liability(OPERATOR, 2)
        assert ctx.ledger.position("alice").locked == 540
        assert ctx.registry.vault_of(vid).balance() == 90

    def test_month_without_shortfall(self, assigned_venue) -> None:
        assigned_venue.submit_monthly_report(OPERATOR, 900)
        with pytest.raises(NoShortfallError):
            assigned_venue.process_liability(OPERATOR, 1)

    def test_unknown_month(self, assigned_venue) -> None:
        with pytest.raises(NotFoundError):
            assigned_venue.process_liability(OPERATOR, 5)

    def test_performance_summary(self, assigned_venue) -> None:
        assigned_venue.submit_monthly_report(OPERATOR, 900)
        assigned_venue.submit_monthly_report(OPERATOR, 810)
        assigned_venue.process_liability(OPERATOR, 2)

        assert assigned_venue.get_performance_summary() == PerformanceSummary(1800, 1710, 90, 90)

    def test_summary_counts_only_settled_amount(self, ctx, assigned_venue) -> None:
        """A 91 shortfall over 600/300 settles 60 + 30; the unit lost to flooring is not counted as paid."""
        assigned_venue.submit_monthly_report(OPERATOR, 809)
        receipt = assigned_venue.process_liability(OPERATOR, 1)

        assert receipt.residual == 1
        assert assigned_venue.get_performance_summary() == PerformanceSummary(900, 809, 91, 90)
        assert ctx.registry.vault_of(assigned_venue.venue_id).balance() == 90

    def test_owner_deposit_is_independent_of_reports(self, ctx, assigned_venue) -> None:
        vid = assigned_venue.venue_id
        assigned_venue.owner_deposit_revenue(OWNER, 1, 10)
        assigned_venue.submit_monthly_report(OPERATOR, 900)

        assert ctx.registry.vault_of(vid).balance() == 10
        assert assigned_venue.owner_deposits == {1: 10}
        assert assigned_venue.report(1).actual_revenue == 900

    def test_owner_deposit_is_owner_only(self, assigned_venue) -> None:
        with pytest.raises(NotVenueOwnerError):
            assigned_venue.owner_deposit_revenue(OPERATOR, 1, 10)


class TestFees:
    """Escrow distribution and self-service claims."""

    def test_distribute_pays_proportionally_once(self, ctx, cfg, fee_venue) -> None:
        """Escrow 100 at 60%/40% pays 57/38 after the 5% protocol cut."""
        ctx.clock.advance(12 * MONTH)
        payouts = fee_venue.distribute_fees(OPERATOR)

        assert payouts == {"u1": 57, "u2": 38}
        assert ctx.asset.balance_of(cfg.treasury_address) == 5
        assert fee_venue.fees_distributed
        assert fee_venue.escrow_balance == 0
        assert fee_venue.phase == EnginePhase.FEES_DISTRIBUTED

        with pytest.raises(StateError):
            fee_venue.distribute_fees(OPERATOR)
        assert ctx.asset.balance_of("u1") == 57

    def test_distribute_requires_operator(self, fee_venue) -> None:
        with pytest.raises(AuthorizationError):
            fee_venue.distribute_fees(OWNER)

    def test_distribute_requires_escrow(self, ctx, assigned_venue) -> None:
        ctx.clock.advance(12 * MONTH)
        with pytest.raises(InsufficientResourceError):
            assigned_venue.distribute_fees(OPERATOR)

    def test_claim_before_maturity_rejected(self, fee_venue) -> None:
        fee_venue.submit_monthly_report(OPERATOR, 1000)
        with pytest.raises(StateError):
            fee_venue.claim_fee("u1")
        assert not fee_venue.fee_claimed("u1")

    def test_claims_after_maturity(self, ctx, fee_venue) -> None:
        ctx.clock.advance(12 * MONTH)
        assert fee_venue.is_matured()
        assert fee_venue.phase == EnginePhase.MATURED

        assert fee_venue.claim_fee("u1") == 57
        with pytest.raises(StateError):
            fee_venue.claim_fee("u1")
        assert not fee_venue.fees_distributed

        assert fee_venue.claim_fee("u2") == 38
        assert fee_venue.fees_distributed

    def test_claim_then_distribute_pays_the_rest(self, ctx, fee_venue) -> None:
        ctx.clock.advance(12 * MONTH)
        fee_venue.claim_fee("u1")

        assert fee_venue.distribute_fees(OPERATOR) == {"u2": 38}
        assert ctx.asset.balance_of("u1") == 57

    def test_non_member_cannot_claim(self, ctx, fee_venue) -> None:
        ctx.clock.advance(12 * MONTH)
        with pytest.raises(AuthorizationError):
            fee_venue.claim_fee("mallory")

    def test_distribute_before_maturity_rejected(self, ctx, assigned_venue) -> None:
        """An open shortfall must stay chargeable, so the escrow cannot be paid out early."""
        assigned_venue.set_fee_amount(OWNER, 90)
        assigned_venue.deposit_fee(OWNER)
        assigned_venue.submit_monthly_report(OPERATOR, 810)

        with pytest.raises(StateError):
            assigned_venue.distribute_fees(OPERATOR)
        assert not assigned_venue.fees_distributed
        assert assigned_venue.escrow_balance == 90
        assert ctx.asset.balance_of("alice") == 0

        assert assigned_venue.process_liability(OPERATOR, 1).paid == 90
        assert ctx.ledger.position("alice").locked == 540

    def test_distribution_closes_reporting(self, ctx, assigned_venue) -> None:
        assigned_venue.set_fee_amount(OWNER, 90)
        assigned_venue.deposit_fee(OWNER)
        assigned_venue.submit_monthly_report(OPERATOR, 810)
        ctx.clock.advance(12 * MONTH)
        assert assigned_venue.phase == EnginePhase.MATURED
        assigned_venue.distribute_fees(OPERATOR)

        with pytest.raises(StateError):
            assigned_venue.submit_monthly_report(OPERATOR, 900)
        with pytest.raises(StateError):
            assigned_venue.process_liability(OPERATOR, 1)
        assert not assigned_venue.report(1).liability_paid

    def test_truncation_residual_is_tracked(self, ctx, make_venue, make_underwriters) -> None:
        engine = make_venue(promised=300, owner="owner_b")
        make_underwriters({"x": 100, "y": 100, "z": 100})
        for uw in ("x", "y", "z"):
            engine.add_underwriter(OPERATOR, uw, 100)
        engine.set_fee_amount("owner_b", 100)
        engine.deposit_fee("owner_b")

        ctx.clock.advance(12 * MONTH)
        engine.distribute_fees(OPERATOR)

        assert engine.fee_paid == 99
        assert engine.fee_residual == 1
        assert ctx.asset.balance_of(engine.address) == 1


class TestPhase:
    def test_new_engine_is_assembling(self, assigned_venue) -> None:
        assert assigned_venue.phase == EnginePhase.ASSEMBLING
        assert not assigned_venue.is_matured()

    def test_maturity_follows_late_assignment(self, ctx, make_venue, make_underwriters) -> None:
        """Assigned three months after creation, the venue matures with the ledger at month 15."""
        engine = make_venue(promised=900)
        make_underwriters({"alice": 600, "bob": 300})
        engine.add_underwriter(OPERATOR, "alice", 600)
        engine.add_underwriter(OPERATOR, "bob", 300)
        engine.set_fee_amount(OWNER, 100)
        engine.deposit_fee(OWNER)

        ctx.clock.advance(3 * MONTH)
        ctx.ledger.assign_to_venue(OWNER, engine.venue_id, ["alice", "bob"], [600, 300], 100)
        ctx.clock.advance(9 * MONTH)

        assert engine.maturity_time() == 15 * MONTH
        assert not engine.is_matured()
        assert not ctx.ledger.is_matured(engine.venue_id)
        with pytest.raises(StateError):
            engine.claim_fee("alice")
        with pytest.raises(StateError):
            engine.distribute_fees(OPERATOR)

        engine.submit_monthly_report(OPERATOR, 810)
        assert engine.process_liability(OPERATOR, 1).paid == 90

        ctx.clock.advance(3 * MONTH)
        assert engine.is_matured()
        assert ctx.ledger.is_matured(engine.venue_id)
        assert engine.claim_fee("alice") == 63

    def test_unassigned_engine_matures_from_creation(self, ctx, fee_venue) -> None:
        assert fee_venue.maturity_time() == 12 * MONTH
        ctx.clock.advance(12 * MONTH - 1)
        assert not fee_venue.is_matured()
        ctx.clock.advance(1)
        assert fee_venue.is_matured()
