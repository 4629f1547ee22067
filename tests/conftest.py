"""
Shared fixtures for the guarantee protocol tests.

Every test gets a fresh deployment (clock at 0, empty ledger) with one
extra operator besides the admin, plus helpers that build funded venues and
underwriters without going through the random samplers.
"""

from typing import Callable, Dict, List

import pytest

from guarantee.config import ProtocolConfig
from guarantee.factory import ProtocolContext, VenueFactory, build_context
from guarantee.venue import VenueGuaranteeEngine

ADMIN = "sys_admin"
OPERATOR = "op_1"
OWNER = "owner_a"
MONTH = 30 * 86_400


@pytest.fixture
def cfg() -> ProtocolConfig:
    return ProtocolConfig(protocol_fee_bps=500)


@pytest.fixture
def ctx(cfg: ProtocolConfig) -> ProtocolContext:
    return build_context(cfg, operators={OPERATOR})


@pytest.fixture
def factory(ctx: ProtocolContext) -> VenueFactory:
    return VenueFactory(ctx)


@pytest.fixture
def make_venue(ctx: ProtocolContext, factory: VenueFactory) -> Callable[..., VenueGuaranteeEngine]:
    """Create a venue whose owner holds `owner_balance` and has approved both ledger and engine."""

    def _make(promised: int, months: int = 12, owner: str = OWNER, owner_balance: int = 100_000) -> VenueGuaranteeEngine:
        engine = factory.create_venue(owner=owner, promised_revenue=promised, total_months=months)
        ctx.asset.mint(owner, owner_balance)
        ctx.asset.approve(owner, ctx.ledger.address, owner_balance)
        ctx.asset.approve(owner, engine.address, owner_balance)
        return engine

    return _make


@pytest.fixture
def make_underwriters(factory: VenueFactory) -> Callable[[Dict[str, int]], List[str]]:
    def _make(stakes: Dict[str, int]) -> List[str]:
        return [factory.create_underwriter(stake=amount, underwriter_id=uw) for uw, amount in stakes.items()]

    return _make


@pytest.fixture
def assigned_venue(ctx, make_venue, make_underwriters) -> VenueGuaranteeEngine:
    """Venue promising 900/month backed by alice (600) and bob (300), ledger fee 100."""
    engine = make_venue(promised=900)
    make_underwriters({"alice": 600, "bob": 300})
    ctx.ledger.assign_to_venue(OWNER, engine.venue_id, ["alice", "bob"], [600, 300], 100)
    engine.add_underwriter(OPERATOR, "alice", 600)
    engine.add_underwriter(OPERATOR, "bob", 300)
    return engine
