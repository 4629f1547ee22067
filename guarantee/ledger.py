from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Dict, List, NamedTuple, Optional, Sequence, Set, Tuple
import logging

from .config import ProtocolConfig
from .core import (
    Clock,
    CollateralAsset,
    Event,
    EventLog,
    Journal,
    Journaled,
    VenueRegistry,
    format_stake,
    nonreentrant,
    require_amount,
)
from .errors import (
    AuthorizationError,
    InsufficientResourceError,
    NotFoundError,
    NotVenueOwnerError,
    StateError,
    TransferError,
    ValidationError,
)

logger = logging.getLogger(__name__)

StakeKey = Tuple[str, str]  # (venue_id, underwriter_id)

# -----------------------------
# Records
# -----------------------------
@dataclass
class UnderwriterRecord:
    total_stake: int = 0
    available_stake: int = 0
    locked_stake: int = 0

class StakePosition(NamedTuple):
    total: int
    available: int
    locked: int

@dataclass
class VenueAssignment:
    venue_id: str
    roster: List[str]
    total_stake_committed: int
    initial_stake_committed: int
    fee: int
    promised_revenue: int
    end_date: int
    active: bool = True
    liability_settled: int = 0
    settlement_residual: int = 0
    fee_paid: int = 0
    fee_residual: int = 0
    claims: int = 0

@dataclass(frozen=True)
class SettlementShare:
    underwriter_id: str
    share: int

@dataclass
class SettlementReceipt:
    venue_id: str
    missing_amount: int
    shares: List[SettlementShare] = field(default_factory=list)

    @property
    def paid(self) -> int:
        return sum(s.share for s in self.shares)

    @property
    def residual(self) -> int:
        return self.missing_amount - self.paid


# -----------------------------
# Ledger
# -----------------------------
class UnderwriterPoolLedger(Journaled):
    """
    Global collateral book. Every change to an underwriter's stake triple goes
    through this class; per-venue commitments live in a table keyed by
    (venue_id, underwriter_id) next to an ordered roster per venue.
    """

    _journal_fields = ("underwriters", "assignments", "venue_stakes", "initial_stakes", "fee_claimed")

    def __init__(
        self,
        cfg: ProtocolConfig,
        clock: Clock,
        journal: Journal,
        asset: CollateralAsset,
        registry: VenueRegistry,
        log: EventLog,
    ) -> None:
        self.cfg = cfg
        self.address = cfg.ledger_address
        self.clock = clock
        self.journal = journal
        self.asset = asset
        self.registry = registry
        self.log = log

        self.underwriters: Dict[str, UnderwriterRecord] = {}
        self.assignments: Dict[str, VenueAssignment] = {}
        self.venue_stakes: Dict[StakeKey, int] = {}
        self.initial_stakes: Dict[StakeKey, int] = {}
        self.fee_claimed: Set[StakeKey] = set()

        self._entered = False
        journal.register(self)

    def _debug_stake_change(self, underwriter: str, action: str, amount: int,
                            before: StakePosition, rec: UnderwriterRecord) -> None:
        if not self.cfg.debug_stake or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[STAKE] underwriter=%s action=%s amount=%d before={ %s } after={ %s }",
            underwriter,
            action,
            amount,
            format_stake(*before),
            format_stake(rec.total_stake, rec.available_stake, rec.locked_stake),
        )

    def _pay(self, to: str, amount: int) -> None:
        if amount <= 0:
            return
        if not self.asset.transfer(self.address, to, amount):
            raise TransferError(f"transfer of {amount} from {self.address} to {to} failed")

    def _pull(self, owner: str, amount: int) -> None:
        if amount <= 0:
            return
        if not self.asset.transfer_from(self.address, owner, self.address, amount):
            raise TransferError(f"transfer of {amount} from {owner} to {self.address} failed")

    def _record(self, underwriter: str) -> UnderwriterRecord:
        rec = self.underwriters.get(underwriter)
        if rec is None:
            raise AuthorizationError(f"{underwriter} is not a registered underwriter")
        return rec

    def _assignment(self, venue_id: str) -> VenueAssignment:
        if not self.registry.venue_exists(venue_id):
            raise NotFoundError(f"unknown venue {venue_id}")
        a = self.assignments.get(venue_id)
        if a is None:
            raise NotFoundError(f"venue {venue_id} has no underwriting assignment")
        return a

    # -- stake deposits ------------------------------------------------

    @nonreentrant
    def register(self, caller: str, amount: int) -> StakePosition:
        if amount == 0:
            raise ValidationError("stake deposit must be non-zero")
        require_amount(amount)
        self._pull(caller, amount)
        rec = self.underwriters.get(caller)
        if rec is None:
            rec = UnderwriterRecord()
            self.underwriters[caller] = rec
            self.log.add(Event(self.clock.now, "UNDERWRITER_REGISTERED", actor_id=caller,
                               underwriter_id=caller, amount=amount))
        before = self.position(caller)
        rec.total_stake += amount
        rec.available_stake += amount
        self._debug_stake_change(caller, "register", amount, before, rec)
        self.log.add(Event(self.clock.now, "STAKE_DEPOSITED", actor_id=caller, underwriter_id=caller, amount=amount))
        logger.info("stake deposited underwriter=%s amount=%d total=%d", caller, amount, rec.total_stake)
        return self.position(caller)

    @nonreentrant
    def withdraw(self, caller: str, amount: int) -> StakePosition:
        require_amount(amount)
        rec = self._record(caller)
        if amount > rec.available_stake:
            raise InsufficientResourceError(
                f"{caller} requested {amount} but only {rec.available_stake} is available"
            )
        before = self.position(caller)
        rec.total_stake -= amount
        rec.available_stake -= amount
        self._pay(caller, amount)
        self._debug_stake_change(caller, "withdraw", amount, before, rec)
        self.log.add(Event(self.clock.now, "STAKE_WITHDRAWN", actor_id=caller, underwriter_id=caller, amount=amount))
        logger.info("stake withdrawn underwriter=%s amount=%d total=%d", caller, amount, rec.total_stake)
        return self.position(caller)

    # -- venue assignment ----------------------------------------------

    @nonreentrant
    def assign_to_venue(
        self,
        caller: str,
        venue_id: str,
        underwriters: Sequence[str],
        amounts: Sequence[int],
        fee: int,
    ) -> VenueAssignment:
        if not self.registry.venue_exists(venue_id):
            raise NotFoundError(f"unknown venue {venue_id}")
        if caller != self.registry.owner_of(venue_id):
            raise NotVenueOwnerError(f"{caller} does not own venue {venue_id}")
        if venue_id in self.assignments:
            raise StateError(f"venue {venue_id} already has an underwriting assignment")
        if len(underwriters) != len(amounts):
            raise ValidationError(
                f"{len(underwriters)} underwriters but {len(amounts)} stake amounts"
            )
        if len(underwriters) < self.cfg.min_underwriters:
            raise ValidationError(
                f"at least {self.cfg.min_underwriters} underwriters required, got {len(underwriters)}"
            )
        if len(set(underwriters)) != len(underwriters):
            raise ValidationError("an underwriter may appear only once per assignment")
        require_amount(fee, "fee", allow_zero=True)

        total = 0
        for uw, amount in zip(underwriters, amounts):
            require_amount(amount, f"stake for {uw}")
            rec = self._record(uw)
            if amount > rec.available_stake:
                raise InsufficientResourceError(
                    f"{uw} has {rec.available_stake} available, {amount} requested"
                )
            total += amount

        vault = self.registry.vault_of(venue_id)
        promised = vault.promised_revenue()
        if total < promised:
            raise InsufficientResourceError(
                f"committed stake {total} is below promised revenue {promised}"
            )

        self._pull(caller, fee)

        for uw, amount in zip(underwriters, amounts):
            rec = self.underwriters[uw]
            before = self.position(uw)
            rec.available_stake -= amount
            rec.locked_stake += amount
            self.venue_stakes[(venue_id, uw)] = amount
            self.initial_stakes[(venue_id, uw)] = amount
            self._debug_stake_change(uw, f"lock:{venue_id}", amount, before, rec)

        end_date = self.clock.now + vault.total_months() * self.cfg.period_length_seconds
        assignment = VenueAssignment(
            venue_id=venue_id,
            roster=list(underwriters),
            total_stake_committed=total,
            initial_stake_committed=total,
            fee=fee,
            promised_revenue=promised,
            end_date=end_date,
        )
        self.assignments[venue_id] = assignment
        self.log.add(Event(self.clock.now, "VENUE_ASSIGNED", actor_id=caller, venue_id=venue_id, amount=total,
                           meta={"underwriters": list(underwriters), "fee": fee, "end_date": end_date}))
        logger.info("venue assigned venue=%s underwriters=%d committed=%d promised=%d fee=%d",
                    venue_id, len(underwriters), total, promised, fee)
        return replace(assignment, roster=list(assignment.roster))

    # -- liability -----------------------------------------------------

    @nonreentrant
    def settle_liability(self, caller: str, venue_id: str, missing_amount: int) -> SettlementReceipt:
        require_amount(missing_amount, "missing_amount")
        a = self._assignment(venue_id)
        if caller != self.registry.engine_address_of(venue_id):
            raise AuthorizationError(f"{caller} is not the guarantee engine of venue {venue_id}")
        if not a.active:
            raise StateError(f"assignment for venue {venue_id} is not active")
        if self.clock.now >= a.end_date:
            raise StateError(f"venue {venue_id} has matured; settlement is closed")

        vault_address = self.registry.vault_address_of(venue_id)
        committed = a.total_stake_committed
        receipt = SettlementReceipt(venue_id=venue_id, missing_amount=missing_amount)
        for uw in a.roster:
            key = (venue_id, uw)
            stake = self.venue_stakes.get(key, 0)
            share = missing_amount * stake // committed if committed > 0 else 0
            if share > stake:
                raise InsufficientResourceError(
                    f"{uw} owes {share} on venue {venue_id} but only {stake} is locked there"
                )
            rec = self.underwriters[uw]
            before = self.position(uw)
            rec.locked_stake -= share
            rec.total_stake -= share
            self.venue_stakes[key] = stake - share
            a.total_stake_committed -= share
            self._debug_stake_change(uw, f"settle:{venue_id}", share, before, rec)
            receipt.shares.append(SettlementShare(uw, share))
            self._pay(vault_address, share)

        a.liability_settled += receipt.paid
        a.settlement_residual += receipt.residual
        self.log.add(Event(self.clock.now, "LIABILITY_SETTLED", actor_id=caller, venue_id=venue_id,
                           amount=receipt.paid, meta={"missing": missing_amount, "residual": receipt.residual}))
        logger.info("liability settled venue=%s missing=%d paid=%d residual=%d",
                    venue_id, missing_amount, receipt.paid, receipt.residual)
        return receipt

    # -- maturity ------------------------------------------------------

    @nonreentrant
    def claim_fee(self, caller: str, venue_id: str) -> int:
        a = self._assignment(venue_id)
        key = (venue_id, caller)
        if key not in self.initial_stakes:
            raise AuthorizationError(f"{caller} does not underwrite venue {venue_id}")
        if self.clock.now < a.end_date:
            raise StateError(f"venue {venue_id} matures at {a.end_date}, now {self.clock.now}")
        if key in self.fee_claimed:
            raise StateError(f"{caller} already claimed the fee of venue {venue_id}")

        rec = self.underwriters[caller]
        before = self.position(caller)
        released = self.venue_stakes.get(key, 0)
        rec.locked_stake -= released
        rec.available_stake += released
        self.venue_stakes[key] = 0
        a.total_stake_committed -= released
        self._debug_stake_change(caller, f"release:{venue_id}", released, before, rec)

        gross = a.fee * self.initial_stakes[key] // a.initial_stake_committed
        cut = self.cfg.protocol_cut(gross)
        net = gross - cut
        self.fee_claimed.add(key)
        a.fee_paid += gross
        a.claims += 1
        if a.claims == len(a.roster):
            a.active = False
            a.fee_residual = a.fee - a.fee_paid
        self._pay(caller, net)
        self._pay(self.cfg.treasury_address, cut)
        self.log.add(Event(self.clock.now, "FEE_CLAIMED", actor_id=caller, venue_id=venue_id,
                           underwriter_id=caller, amount=net, meta={"released": released, "protocol_cut": cut}))
        logger.info("fee claimed venue=%s underwriter=%s net=%d cut=%d released=%d",
                    venue_id, caller, net, cut, released)
        return net

    # -- queries -------------------------------------------------------

    def is_registered(self, underwriter: str) -> bool:
        return underwriter in self.underwriters

    def position(self, underwriter: str) -> StakePosition:
        rec = self.underwriters.get(underwriter)
        if rec is None:
            raise NotFoundError(f"{underwriter} is not a registered underwriter")
        return StakePosition(rec.total_stake, rec.available_stake, rec.locked_stake)

    def stake_at(self, venue_id: str, underwriter: str) -> int:
        return int(self.venue_stakes.get((venue_id, underwriter), 0))

    def roster(self, venue_id: str) -> List[str]:
        a = self.assignments.get(venue_id)
        return list(a.roster) if a is not None else []

    def assignment(self, venue_id: str) -> VenueAssignment:
        a = self._assignment(venue_id)
        return replace(a, roster=list(a.roster))

    def end_date_of(self, venue_id: str) -> Optional[int]:
        a = self.assignments.get(venue_id)
        return a.end_date if a is not None else None

    def is_matured(self, venue_id: str) -> bool:
        return self.clock.now >= self._assignment(venue_id).end_date

    def has_claimed(self, venue_id: str, underwriter: str) -> bool:
        return (venue_id, underwriter) in self.fee_claimed

    def check_invariants(self) -> List[str]:
        problems: List[str] = []
        for uw, rec in self.underwriters.items():
            if rec.available_stake < 0 or rec.locked_stake < 0:
                problems.append(f"{uw}: negative stake component")
            if rec.total_stake != rec.available_stake + rec.locked_stake:
                problems.append(f"{uw}: total != available + locked")
            committed = sum(v for (_, u), v in self.venue_stakes.items() if u == uw)
            if committed != rec.locked_stake:
                problems.append(f"{uw}: locked {rec.locked_stake} != venue commitments {committed}")
        for vid, a in self.assignments.items():
            roster_sum = sum(self.venue_stakes.get((vid, uw), 0) for uw in a.roster)
            if roster_sum != a.total_stake_committed:
                problems.append(f"{vid}: roster stakes {roster_sum} != committed {a.total_stake_committed}")
        return problems
