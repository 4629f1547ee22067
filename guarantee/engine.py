from __future__ import annotations
from typing import Dict, List
import logging
import math
import numpy as np
import random

from .config import ProtocolConfig
from .core import Event
from .errors import ProtocolError
from .factory import VenueFactory, build_context
from .metrics import MetricsStore
from .venue import EnginePhase, VenueGuaranteeEngine

logger = logging.getLogger(__name__)

class SimulationEngine:
    """
    Period-stepped scenario driver. One tick is one reporting month: every
    open venue earns and deposits revenue, the operator reports it, any
    shortfall is settled against the roster's stake, and matured venues pay
    out their fees and release stake.
    """

    def __init__(self, cfg: ProtocolConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.ctx = build_context(cfg)
        self.log = self.ctx.log
        self.ledger = self.ctx.ledger
        self.metrics = MetricsStore()
        self.factory = VenueFactory(self.ctx)
        self.operator = cfg.admin_address

        self.venues: Dict[str, VenueGuaranteeEngine] = self.ctx.engines
        self._liability_failures: int = 0
        self._bootstrap()

    def _bootstrap(self) -> None:
        for _ in range(self.cfg.initial_underwriters):
            self.factory.create_underwriter()
        for _ in range(self.cfg.initial_venues):
            self.add_venue()
        self.snapshot_metrics()

    def add_venue(self) -> str:
        cfg = self.cfg
        engine = self.factory.create_venue()
        venue_id = engine.venue_id
        owner = self.ctx.registry.owner_of(venue_id)
        promised = engine.expected_revenue

        k = cfg.underwriters_per_venue
        required = math.ceil(promised * cfg.stake_coverage_ratio)
        per_underwriter = math.ceil(required / k)
        roster = self.factory.sample_roster(k)
        for uw in roster:
            self.factory.top_up(uw, per_underwriter)
        amounts = [per_underwriter] * k

        fee = max(1, int(promised * cfg.fee_rate_of_promise))
        self.factory.fund_owner(owner, int(promised * cfg.owner_initial_balance_multiple))
        asset = self.ctx.asset
        asset.approve(owner, self.ledger.address, fee)
        self.ledger.assign_to_venue(owner, venue_id, roster, amounts, fee)

        for uw, amount in zip(roster, amounts):
            engine.add_underwriter(self.operator, uw, amount)
        engine.set_fee_amount(owner, fee)
        asset.approve(owner, engine.address, asset.balance_of(owner))
        engine.deposit_fee(owner)
        logger.info("venue online venue=%s promised=%d roster=%s", venue_id, promised, ",".join(roster))
        return venue_id

    def _draw_revenue(self, promised: int) -> int:
        if self.rng.random() < self.cfg.shortfall_prob:
            miss = min(1.0, float(np.random.exponential(self.cfg.shortfall_depth)))
            return max(0, int(promised * (1.0 - miss)))
        upside = abs(float(np.random.normal(0.0, self.cfg.revenue_volatility)))
        return int(promised * (1.0 + upside))

    def _run_month(self, engine: VenueGuaranteeEngine) -> None:
        owner = self.ctx.registry.owner_of(engine.venue_id)
        month = engine.current_month
        actual = self._draw_revenue(engine.expected_revenue)
        if actual > 0:
            # venue earnings arrive with the owner before they are passed to the vault
            self.factory.fund_owner(owner, actual)
            self.ctx.asset.approve(owner, engine.address, self.ctx.asset.allowance(owner, engine.address) + actual)
            engine.owner_deposit_revenue(owner, month, actual)
        report = engine.submit_monthly_report(self.operator, actual)
        settled = 0
        if report.missing_revenue > 0:
            try:
                receipt = engine.process_liability(self.operator, month)
                settled = receipt.paid
            except ProtocolError as exc:
                self._liability_failures += 1
                logger.warning("liability failed venue=%s month=%d missing=%d: %s",
                               engine.venue_id, month, report.missing_revenue, exc)
                self.log.add(Event(self.ctx.clock.now, "LIABILITY_FAILED", venue_id=engine.venue_id,
                                   amount=report.missing_revenue, meta={"month": month, "reason": str(exc)}))
        self.metrics.add_report({
            "tick": self.tick,
            "venue_id": engine.venue_id,
            "month": month,
            "expected_revenue": report.expected_revenue,
            "actual_revenue": report.actual_revenue,
            "missing_revenue": report.missing_revenue,
            "settled": settled,
        })

    def _close_matured(self, engine: VenueGuaranteeEngine) -> None:
        venue_id = engine.venue_id
        if not engine.fees_distributed and engine.escrow_balance > 0:
            engine.distribute_fees(self.operator)
        for uw in self.ledger.roster(venue_id):
            if not self.ledger.has_claimed(venue_id, uw):
                self.ledger.claim_fee(uw, venue_id)

    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.tick += 1
            for engine in list(self.venues.values()):
                vault = self.ctx.registry.vault_of(engine.venue_id)
                if engine.current_month <= vault.total_months() and not engine.fees_distributed:
                    self._run_month(engine)
            self.ctx.clock.advance(self.cfg.period_length_seconds)
            for engine in list(self.venues.values()):
                if engine.is_matured() and self.ledger.assignments[engine.venue_id].active:
                    self._close_matured(engine)
            self.snapshot_metrics()

    def run_to_maturity(self) -> None:
        months = max(
            (self.ctx.registry.vault_of(vid).total_months() for vid in self.venues),
            default=0,
        )
        remaining = max(0, months - self.tick)
        self.step(remaining)

    def check_invariants(self) -> List[str]:
        problems = self.ledger.check_invariants()
        asset = self.ctx.asset
        if sum(asset.balances.values()) != asset.total_supply:
            problems.append("collateral balances do not sum to total supply")
        custody = sum(rec.total_stake for rec in self.ledger.underwriters.values())
        custody += sum(a.fee - a.fee_paid for a in self.ledger.assignments.values())
        if asset.balance_of(self.ledger.address) != custody:
            problems.append(
                f"ledger holds {asset.balance_of(self.ledger.address)} but accounts for {custody}"
            )
        for vid, engine in self.venues.items():
            if asset.balance_of(engine.address) != engine.escrow_balance:
                problems.append(f"{vid}: escrow balance {engine.escrow_balance} != engine holdings")
        return problems

    def snapshot_metrics(self) -> None:
        stride = int(self.cfg.metrics_stride or 0)
        if stride <= 0 or self.tick % stride != 0:
            return
        ledger = self.ledger
        asset = self.ctx.asset
        venue_rows = []
        for vid, engine in self.venues.items():
            a = ledger.assignments.get(vid)
            summary = engine.get_performance_summary()
            venue_rows.append({
                "tick": self.tick,
                "venue_id": vid,
                "phase": engine.phase.value,
                "months_reported": engine.current_month - 1,
                "total_expected": summary.total_expected,
                "total_collected": summary.total_collected,
                "shortfall": summary.shortfall,
                "liability_paid": summary.total_liability_paid,
                "stake_committed": a.total_stake_committed if a else 0,
                "settlement_residual": a.settlement_residual if a else 0,
                "escrow_balance": engine.escrow_balance,
                "vault_balance": self.ctx.registry.vault_of(vid).balance(),
            })
        self.metrics.add_venue_rows(venue_rows)

        records = ledger.underwriters.values()
        self.metrics.add_protocol({
            "tick": self.tick,
            "timestamp": self.ctx.clock.now,
            "num_venues": len(self.venues),
            "num_underwriters": len(ledger.underwriters),
            "stake_total": sum(r.total_stake for r in records),
            "stake_available": sum(r.available_stake for r in records),
            "stake_locked": sum(r.locked_stake for r in records),
            "liability_settled_total": sum(a.liability_settled for a in ledger.assignments.values()),
            "settlement_residual_total": sum(a.settlement_residual for a in ledger.assignments.values()),
            "liability_failures": self._liability_failures,
            "treasury_balance": asset.balance_of(self.cfg.treasury_address),
            "venues_matured": sum(1 for e in self.venues.values() if e.is_matured()),
            "venues_fees_distributed": sum(
                1 for e in self.venues.values() if e.phase == EnginePhase.FEES_DISTRIBUTED
            ),
        })
