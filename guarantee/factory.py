from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
import math
import numpy as np

from .config import ProtocolConfig
from .core import Clock, CollateralAsset, Event, EventLog, Journal, RevenueVault, RoleConfig, VenueRegistry
from .ledger import UnderwriterPoolLedger
from .venue import VenueGuaranteeEngine

@dataclass
class ProtocolContext:
    cfg: ProtocolConfig
    clock: Clock
    journal: Journal
    log: EventLog
    asset: CollateralAsset
    registry: VenueRegistry
    roles: RoleConfig
    ledger: UnderwriterPoolLedger
    engines: Dict[str, VenueGuaranteeEngine] = field(default_factory=dict)

def build_context(cfg: ProtocolConfig, *, start_time: int = 0, operators: Optional[Set[str]] = None) -> ProtocolContext:
    clock = Clock(start_time)
    journal = Journal()
    log = EventLog(maxlen=cfg.event_log_maxlen)
    journal.register(log)
    asset = CollateralAsset()
    journal.register(asset)
    roles = RoleConfig(cfg.admin_address, operators)
    journal.register(roles)
    registry = VenueRegistry()
    ledger = UnderwriterPoolLedger(cfg, clock, journal, asset, registry, log)
    return ProtocolContext(
        cfg=cfg, clock=clock, journal=journal, log=log, asset=asset,
        registry=registry, roles=roles, ledger=ledger,
    )

class VenueFactory:
    def __init__(self, ctx: ProtocolContext) -> None:
        self.ctx = ctx
        self.cfg = ctx.cfg
        self.underwriter_counter = 0
        self.owner_counter = 0
        self.venue_counter = 0

    def _new_underwriter_id(self) -> str:
        self.underwriter_counter += 1
        return f"uw_{self.underwriter_counter:04d}"

    def _new_owner_id(self) -> str:
        self.owner_counter += 1
        return f"owner_{self.owner_counter:04d}"

    def _new_venue_id(self) -> str:
        self.venue_counter += 1
        return f"venue_{self.venue_counter:04d}"

    def sample_stake(self) -> int:
        return max(1, int(np.random.exponential(self.cfg.underwriter_stake_mean)))

    def sample_promised_revenue(self) -> int:
        mean = self.cfg.promised_revenue_mean
        return max(1, int(np.random.lognormal(math.log(mean), 0.25)))

    def create_underwriter(self, stake: Optional[int] = None, underwriter_id: Optional[str] = None) -> str:
        uw = underwriter_id or self._new_underwriter_id()
        self.deposit_stake(uw, stake if stake is not None else self.sample_stake())
        return uw

    def deposit_stake(self, underwriter: str, amount: int) -> None:
        """Mint `amount` to the underwriter and post it as stake in the ledger."""
        asset, ledger = self.ctx.asset, self.ctx.ledger
        asset.mint(underwriter, amount)
        asset.approve(underwriter, ledger.address, asset.allowance(underwriter, ledger.address) + amount)
        ledger.register(underwriter, amount)

    def top_up(self, underwriter: str, required_available: int) -> None:
        pos = self.ctx.ledger.position(underwriter)
        if pos.available < required_available:
            self.deposit_stake(underwriter, required_available - pos.available)

    def fund_owner(self, owner: str, amount: int) -> None:
        if amount > 0:
            self.ctx.asset.mint(owner, amount)

    def create_venue(
        self,
        owner: Optional[str] = None,
        promised_revenue: Optional[int] = None,
        total_months: Optional[int] = None,
    ) -> VenueGuaranteeEngine:
        ctx = self.ctx
        venue_id = self._new_venue_id()
        owner = owner or self._new_owner_id()
        promised = promised_revenue if promised_revenue is not None else self.sample_promised_revenue()
        months = total_months if total_months is not None else self.cfg.contract_months
        vault = RevenueVault(f"vault:{venue_id}", ctx.asset, promised, months)
        ctx.registry.register_venue(venue_id, owner, vault)
        engine = VenueGuaranteeEngine(
            ctx.cfg, venue_id, ctx.roles, ctx.clock, ctx.journal,
            ctx.asset, ctx.registry, ctx.ledger, ctx.log,
        )
        ctx.engines[venue_id] = engine
        ctx.log.add(Event(ctx.clock.now, "VENUE_REGISTERED", actor_id=owner, venue_id=venue_id,
                          amount=promised, meta={"months": months}))
        return engine

    def sample_roster(self, k: int, exclude: Optional[Set[str]] = None) -> List[str]:
        """
        Pick k distinct underwriters, favouring those with more available stake.
        Underwriters with nothing free keep a unit weight so k picks always exist.
        """
        ledger = self.ctx.ledger
        candidates = [uw for uw in ledger.underwriters if not exclude or uw not in exclude]
        if len(candidates) < k:
            for _ in range(k - len(candidates)):
                candidates.append(self.create_underwriter())
        weights = np.array([ledger.position(uw).available for uw in candidates], dtype=float) + 1.0
        idx = np.random.choice(len(candidates), size=k, replace=False, p=weights / weights.sum())
        return [candidates[i] for i in idx]
