from __future__ import annotations
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, NamedTuple
import logging

from .config import ProtocolConfig
from .core import (
    Clock,
    CollateralAsset,
    Event,
    EventLog,
    Journal,
    Journaled,
    RoleConfig,
    VenueRegistry,
    nonreentrant,
    require_amount,
)
from .errors import (
    AuthorizationError,
    InsufficientResourceError,
    NoShortfallError,
    NotFoundError,
    NotVenueOwnerError,
    StateError,
    TransferError,
    ValidationError,
)
from .ledger import SettlementReceipt, UnderwriterPoolLedger

logger = logging.getLogger(__name__)

class EnginePhase(str, Enum):
    ASSEMBLING = "assembling"
    REPORTING = "reporting"
    MATURED = "matured"
    FEES_DISTRIBUTED = "fees_distributed"

@dataclass
class MonthlyReport:
    month: int
    expected_revenue: int
    actual_revenue: int
    missing_revenue: int
    liability_paid: bool = False
    timestamp: int = 0

@dataclass
class RosterEntry:
    underwriter_id: str
    stake: int
    approved: bool = True
    fee_claimed: bool = False

class PerformanceSummary(NamedTuple):
    total_expected: int
    total_collected: int
    shortfall: int
    total_liability_paid: int

class VenueGuaranteeEngine(Journaled):
    """
    Guarantee state machine of a single venue: monthly reports, shortfall
    settlement through the pool ledger, and the underwriters' fee escrow.

    Reports are numbered from 1 and each call to `submit_monthly_report`
    advances exactly one month. A month's shortfall is settled at most once and
    the escrow is distributed at most once for the whole venue.
    """

    _journal_fields = (
        "current_month",
        "reports",
        "total_expected",
        "total_collected",
        "total_liability_paid",
        "roster_order",
        "roster_entries",
        "total_stake",
        "fee_amount",
        "fee_deposited",
        "escrow_balance",
        "fee_paid",
        "fee_residual",
        "fees_distributed",
        "owner_deposits",
    )

    def __init__(
        self,
        cfg: ProtocolConfig,
        venue_id: str,
        roles: RoleConfig,
        clock: Clock,
        journal: Journal,
        asset: CollateralAsset,
        registry: VenueRegistry,
        ledger: UnderwriterPoolLedger,
        log: EventLog,
    ) -> None:
        self.cfg = cfg
        self.venue_id = venue_id
        self.address = f"engine:{venue_id}"
        self.roles = roles
        self.clock = clock
        self.journal = journal
        self.asset = asset
        self.registry = registry
        self.ledger = ledger
        self.log = log

        vault = registry.vault_of(venue_id)
        self.expected_revenue: int = vault.promised_revenue()
        self.start_time: int = clock.now
        self.duration: int = vault.total_months() * cfg.period_length_seconds

        self.current_month: int = 1
        self.reports: Dict[int, MonthlyReport] = {}
        self.total_expected: int = 0
        self.total_collected: int = 0
        self.total_liability_paid: int = 0

        self.roster_order: List[str] = []
        self.roster_entries: Dict[str, RosterEntry] = {}
        self.total_stake: int = 0

        self.fee_amount: int = 0
        self.fee_deposited: int = 0
        self.escrow_balance: int = 0
        self.fee_paid: int = 0
        self.fee_residual: int = 0
        self.fees_distributed: bool = False
        self.owner_deposits: Dict[int, int] = {}

        self._entered = False
        registry.attach_engine(venue_id, self.address)
        journal.register(self)

    # -- helpers -------------------------------------------------------

    def _require_owner(self, caller: str) -> None:
        if caller != self.registry.owner_of(self.venue_id):
            raise NotVenueOwnerError(f"{caller} does not own venue {self.venue_id}")

    def _require_open(self, action: str) -> None:
        if self.fees_distributed:
            raise StateError(f"venue {self.venue_id} fees already distributed; cannot {action}")

    def _pay(self, to: str, amount: int) -> None:
        if amount <= 0:
            return
        if not self.asset.transfer(self.address, to, amount):
            raise TransferError(f"transfer of {amount} from {self.address} to {to} failed")

    def _pay_fee_share(self, entry: RosterEntry) -> int:
        gross = self.fee_deposited * entry.stake // self.total_stake
        cut = self.cfg.protocol_cut(gross)
        net = gross - cut
        entry.fee_claimed = True
        self.escrow_balance -= gross
        self.fee_paid += gross
        self._pay(entry.underwriter_id, net)
        self._pay(self.cfg.treasury_address, cut)
        self.log.add(Event(self.clock.now, "ENGINE_FEE_PAID", venue_id=self.venue_id,
                           underwriter_id=entry.underwriter_id, amount=net, meta={"protocol_cut": cut}))
        return net

    def _close_distribution_if_done(self) -> None:
        if all(e.fee_claimed for e in self.roster_entries.values() if e.approved):
            self.fees_distributed = True
            self.fee_residual = self.escrow_balance
            self.log.add(Event(self.clock.now, "FEES_DISTRIBUTED", venue_id=self.venue_id,
                               amount=self.fee_paid, meta={"residual": self.fee_residual}))

    # -- roles ---------------------------------------------------------

    @nonreentrant
    def add_operator(self, caller: str, who: str) -> None:
        self.roles.add_operator(caller, who)
        self.log.add(Event(self.clock.now, "OPERATOR_ADDED", actor_id=caller, venue_id=self.venue_id,
                           meta={"operator": who}))

    @nonreentrant
    def remove_operator(self, caller: str, who: str) -> None:
        self.roles.remove_operator(caller, who)
        self.log.add(Event(self.clock.now, "OPERATOR_REMOVED", actor_id=caller, venue_id=self.venue_id,
                           meta={"operator": who}))

    # -- assembling ----------------------------------------------------

    @nonreentrant
    def set_fee_amount(self, caller: str, amount: int) -> None:
        self._require_owner(caller)
        require_amount(amount, "fee", allow_zero=True)
        if self.fee_deposited:
            raise StateError("fee already deposited into escrow")
        self.fee_amount = amount
        self.log.add(Event(self.clock.now, "FEE_SET", actor_id=caller, venue_id=self.venue_id, amount=amount))

    @nonreentrant
    def add_underwriter(self, caller: str, underwriter: str, stake: int) -> None:
        self.roles.require_operator(caller)
        if not self.ledger.is_registered(underwriter):
            raise AuthorizationError(f"{underwriter} is not registered in the pool ledger")
        if underwriter in self.roster_entries:
            raise StateError(f"{underwriter} is already on the roster of {self.venue_id}")
        require_amount(stake, "stake")
        self._require_open("add underwriters")
        if self.fee_deposited:
            raise StateError("roster is frozen once the fee escrow is funded")
        self.roster_order.append(underwriter)
        self.roster_entries[underwriter] = RosterEntry(underwriter_id=underwriter, stake=stake)
        self.total_stake += stake
        self.log.add(Event(self.clock.now, "ROSTER_UNDERWRITER_ADDED", actor_id=caller, venue_id=self.venue_id,
                           underwriter_id=underwriter, amount=stake))
        logger.debug("roster add venue=%s underwriter=%s stake=%d total=%d",
                     self.venue_id, underwriter, stake, self.total_stake)

    @nonreentrant
    def deposit_fee(self, caller: str) -> int:
        self._require_owner(caller)
        if self.fee_amount <= 0:
            raise ValidationError("fee amount is not configured")
        if not self.roster_order:
            raise StateError("cannot fund escrow without underwriters on the roster")
        if self.fee_deposited:
            raise StateError("fee already deposited into escrow")
        amount = self.fee_amount
        if not self.asset.transfer_from(self.address, caller, self.address, amount):
            raise TransferError(f"transfer of {amount} from {caller} into escrow failed")
        self.fee_deposited = amount
        self.escrow_balance += amount
        self.log.add(Event(self.clock.now, "FEE_DEPOSITED", actor_id=caller, venue_id=self.venue_id, amount=amount))
        logger.info("fee escrowed venue=%s amount=%d", self.venue_id, amount)
        return self.escrow_balance

    # -- reporting -----------------------------------------------------

    @nonreentrant
    def submit_monthly_report(self, caller: str, actual_revenue: int) -> MonthlyReport:
        self.roles.require_operator(caller)
        require_amount(actual_revenue, "actual_revenue", allow_zero=True)
        self._require_open("submit reports")
        month = self.current_month
        missing = max(0, self.expected_revenue - actual_revenue)
        report = MonthlyReport(
            month=month,
            expected_revenue=self.expected_revenue,
            actual_revenue=actual_revenue,
            missing_revenue=missing,
            timestamp=self.clock.now,
        )
        self.reports[month] = report
        self.total_expected += self.expected_revenue
        self.total_collected += actual_revenue
        self.current_month += 1
        self.log.add(Event(self.clock.now, "REPORT_SUBMITTED", actor_id=caller, venue_id=self.venue_id,
                           amount=actual_revenue, meta={"month": month, "missing": missing}))
        logger.info("report venue=%s month=%d expected=%d actual=%d missing=%d",
                    self.venue_id, month, self.expected_revenue, actual_revenue, missing)
        return replace(report)

    @nonreentrant
    def process_liability(self, caller: str, month: int) -> SettlementReceipt:
        self.roles.require_operator(caller)
        report = self.reports.get(month)
        if report is None:
            raise NotFoundError(f"no report for month {month} of venue {self.venue_id}")
        if report.missing_revenue <= 0:
            raise NoShortfallError(f"month {month} of venue {self.venue_id} met its promise")
        if report.liability_paid:
            raise StateError(f"liability for month {month} of venue {self.venue_id} already settled")
        self._require_open("settle liabilities")
        report.liability_paid = True
        receipt = self.ledger.settle_liability(self.address, self.venue_id, report.missing_revenue)
        # floor residual of the split stays unpaid and is not counted here
        self.total_liability_paid += receipt.paid
        self.log.add(Event(self.clock.now, "LIABILITY_PROCESSED", actor_id=caller, venue_id=self.venue_id,
                           amount=report.missing_revenue, meta={"month": month, "paid": receipt.paid}))
        return receipt

    @nonreentrant
    def owner_deposit_revenue(self, caller: str, month: int, amount: int) -> None:
        # Recorded separately from the operator's report; the two are never reconciled here.
        self._require_owner(caller)
        require_amount(month, "month")
        require_amount(amount)
        vault_address = self.registry.vault_address_of(self.venue_id)
        if not self.asset.transfer_from(self.address, caller, vault_address, amount):
            raise TransferError(f"revenue deposit of {amount} from {caller} to {vault_address} failed")
        self.owner_deposits[month] = self.owner_deposits.get(month, 0) + amount
        self.log.add(Event(self.clock.now, "REVENUE_DEPOSITED", actor_id=caller, venue_id=self.venue_id,
                           amount=amount, meta={"month": month}))

    # -- fees ----------------------------------------------------------

    @nonreentrant
    def distribute_fees(self, caller: str) -> Dict[str, int]:
        self.roles.require_operator(caller)
        if self.fees_distributed:
            raise StateError(f"fees of venue {self.venue_id} already distributed")
        if not self.is_matured():
            raise StateError(f"venue {self.venue_id} contract period has not elapsed")
        if self.escrow_balance <= 0:
            raise InsufficientResourceError(f"escrow of venue {self.venue_id} is empty")
        payouts: Dict[str, int] = {}
        for uw in self.roster_order:
            entry = self.roster_entries[uw]
            if entry.approved and not entry.fee_claimed:
                payouts[uw] = self._pay_fee_share(entry)
        self._close_distribution_if_done()
        logger.info("fees distributed venue=%s recipients=%d paid=%d residual=%d",
                    self.venue_id, len(payouts), self.fee_paid, self.fee_residual)
        return payouts

    @nonreentrant
    def claim_fee(self, caller: str) -> int:
        entry = self.roster_entries.get(caller)
        if entry is None or not entry.approved:
            raise AuthorizationError(f"{caller} is not an approved underwriter of {self.venue_id}")
        if entry.fee_claimed:
            raise StateError(f"{caller} already received the fee of {self.venue_id}")
        if not self.is_matured():
            raise StateError(f"venue {self.venue_id} contract period has not elapsed")
        if self.escrow_balance <= 0:
            raise InsufficientResourceError(f"escrow of venue {self.venue_id} is empty")
        net = self._pay_fee_share(entry)
        self._close_distribution_if_done()
        logger.info("fee claimed venue=%s underwriter=%s net=%d", self.venue_id, caller, net)
        return net

    # -- queries -------------------------------------------------------

    def maturity_time(self) -> int:
        """End of the contract term; the ledger assignment's end date once one exists."""
        end_date = self.ledger.end_date_of(self.venue_id)
        if end_date is not None:
            return end_date
        return self.start_time + self.duration

    def is_matured(self) -> bool:
        return self.clock.now >= self.maturity_time()

    @property
    def phase(self) -> EnginePhase:
        if self.fees_distributed:
            return EnginePhase.FEES_DISTRIBUTED
        if self.is_matured():
            return EnginePhase.MATURED
        if self.reports:
            return EnginePhase.REPORTING
        return EnginePhase.ASSEMBLING

    def report(self, month: int) -> MonthlyReport:
        r = self.reports.get(month)
        if r is None:
            raise NotFoundError(f"no report for month {month} of venue {self.venue_id}")
        return replace(r)

    def roster(self) -> List[RosterEntry]:
        return [replace(self.roster_entries[uw]) for uw in self.roster_order]

    def fee_claimed(self, underwriter: str) -> bool:
        entry = self.roster_entries.get(underwriter)
        return bool(entry and entry.fee_claimed)

    def get_performance_summary(self) -> PerformanceSummary:
        return PerformanceSummary(
            total_expected=self.total_expected,
            total_collected=self.total_collected,
            shortfall=self.total_expected - self.total_collected,
            total_liability_paid=self.total_liability_paid,
        )
