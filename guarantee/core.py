from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple
from collections import deque
import copy
import functools
import logging

from .errors import (
    AuthorizationError,
    NotFoundError,
    ReentrancyError,
    StateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

def format_stake(total: int, available: int, locked: int) -> str:
    return f"total:{total}, available:{available}, locked:{locked}"

def require_amount(amount: int, name: str = "amount", *, allow_zero: bool = False) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"{name} must be an integer, got {type(amount).__name__}")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got {amount}")
    return amount

# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    timestamp: int
    event_type: str
    actor_id: Optional[str] = None
    venue_id: Optional[str] = None
    underwriter_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    """
    Append-only event history. Journal snapshots are the (added, evicted)
    counters, so a rollback pops the events appended since and puts back the
    ones a bounded log pushed out meanwhile.
    """

    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)
        self.added: int = 0
        self._evicted: deque = deque(maxlen=256)
        self._evicted_count: int = 0

    def add(self, e: Event) -> None:
        if self.events and len(self.events) == self.events.maxlen:
            self._evicted.append(self.events[0])
            self._evicted_count += 1
        self.events.append(e)
        self.added += 1

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]

    def snapshot(self) -> Tuple[int, int]:
        return self.added, self._evicted_count

    def restore(self, state: Tuple[int, int]) -> None:
        added, evicted = state
        for _ in range(min(self.added - added, len(self.events))):
            self.events.pop()
        for _ in range(self._evicted_count - evicted):
            self.events.appendleft(self._evicted.pop())
        self.added, self._evicted_count = added, evicted


# -----------------------------
# Time
# -----------------------------
class Clock:
    """Seconds-resolution clock shared by every component of one deployment."""

    def __init__(self, start: int = 0) -> None:
        self.now: int = int(start)

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValidationError("clock cannot move backwards")
        self.now += int(seconds)
        return self.now


# -----------------------------
# Unit of work
# -----------------------------
class Journaled:
    """Mixin for components whose listed attributes roll back with the journal."""

    _journal_fields: Tuple[str, ...] = ()

    def snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._journal_fields}

    def restore(self, state: dict) -> None:
        for name, value in state.items():
            setattr(self, name, value)

class Journal:
    """
    Runs nested operations as one atomic unit. The outermost `atomic()` block
    snapshots every registered participant and restores them all if an
    exception escapes; inner blocks join the outer one.
    """

    def __init__(self) -> None:
        self._participants: List[object] = []
        self._depth: int = 0

    def register(self, participant: object) -> None:
        self._participants.append(participant)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return
        saved = [(p, p.snapshot()) for p in self._participants]
        self._depth = 1
        try:
            yield
        except BaseException:
            for p, state in saved:
                p.restore(state)
            logger.debug("rolled back %d participants", len(saved))
            raise
        finally:
            self._depth = 0

def nonreentrant(method: Callable) -> Callable:
    """Reject re-entry into the same component instance and run the call atomically."""

    @functools.wraps(method)
    def guarded(self, *args, **kwargs):
        if self._entered:
            raise ReentrancyError(f"{type(self).__name__}.{method.__name__}: re-entrant call rejected")
        self._entered = True
        try:
            with self.journal.atomic():
                return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return guarded


# -----------------------------
# Roles
# -----------------------------
class RoleConfig(Journaled):
    """Admin and operator identities, passed by reference to every engine."""

    _journal_fields = ("operators",)

    def __init__(self, admin: str, operators: Optional[Set[str]] = None) -> None:
        self._admin = admin
        self.operators: Set[str] = {admin}
        self.operators.update(operators or ())

    @property
    def admin(self) -> str:
        return self._admin

    def is_operator(self, who: str) -> bool:
        return who in self.operators

    def require_admin(self, caller: str) -> None:
        if caller != self._admin:
            raise AuthorizationError(f"{caller} is not the admin")

    def require_operator(self, caller: str) -> None:
        if caller not in self.operators:
            raise AuthorizationError(f"{caller} is not an operator")

    def add_operator(self, caller: str, who: str) -> None:
        self.require_admin(caller)
        if who in self.operators:
            raise StateError(f"{who} is already an operator")
        self.operators.add(who)

    def remove_operator(self, caller: str, who: str) -> None:
        self.require_admin(caller)
        if who == self._admin:
            raise StateError("the admin cannot be removed from the operators")
        if who not in self.operators:
            raise NotFoundError(f"{who} is not an operator")
        self.operators.discard(who)


# -----------------------------
# External collaborators
# -----------------------------
ReceiveHook = Callable[[str, str, int], None]

class CollateralAsset(Journaled):
    """
    Fungible collateral token. Transfers report failure by returning False;
    receive hooks fire after an inbound transfer has been applied.
    """

    _journal_fields = ("balances", "allowances", "total_supply")

    def __init__(self, symbol: str = "USD") -> None:
        self.symbol = symbol
        self.total_supply: int = 0
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}
        self._receive_hooks: Dict[str, List[ReceiveHook]] = {}

    def balance_of(self, who: str) -> int:
        return int(self.balances.get(who, 0))

    def allowance(self, owner: str, spender: str) -> int:
        return int(self.allowances.get((owner, spender), 0))

    def mint(self, to: str, amount: int) -> None:
        require_amount(amount)
        self.balances[to] = self.balance_of(to) + amount
        self.total_supply += amount

    def approve(self, owner: str, spender: str, amount: int) -> None:
        require_amount(amount, allow_zero=True)
        self.allowances[(owner, spender)] = amount

    def add_receive_hook(self, who: str, hook: ReceiveHook) -> None:
        self._receive_hooks.setdefault(who, []).append(hook)

    def _move(self, sender: str, to: str, amount: int) -> bool:
        if amount < 0 or self.balance_of(sender) < amount:
            return False
        self.balances[sender] = self.balance_of(sender) - amount
        self.balances[to] = self.balance_of(to) + amount
        for hook in self._receive_hooks.get(to, ()):
            hook(sender, to, amount)
        return True

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        return self._move(sender, to, amount)

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> bool:
        allowed = self.allowance(owner, spender)
        if allowed < amount or self.balance_of(owner) < amount:
            return False
        self.allowances[(owner, spender)] = allowed - amount
        return self._move(owner, to, amount)

class RevenueVault:
    """Investor-facing vault of one venue; only its promise and term are read here."""

    def __init__(self, address: str, asset: CollateralAsset, promised_revenue: int, total_months: int) -> None:
        require_amount(promised_revenue, "promised_revenue")
        require_amount(total_months, "total_months")
        self.address = address
        self.asset = asset
        self._promised_revenue = promised_revenue
        self._total_months = total_months

    def promised_revenue(self) -> int:
        return self._promised_revenue

    def total_months(self) -> int:
        return self._total_months

    def balance(self) -> int:
        return self.asset.balance_of(self.address)

@dataclass
class VenueRecord:
    venue_id: str
    owner: str
    vault: RevenueVault
    engine_address: Optional[str] = None

class VenueRegistry:
    def __init__(self) -> None:
        self.venues: Dict[str, VenueRecord] = {}

    def register_venue(self, venue_id: str, owner: str, vault: RevenueVault) -> VenueRecord:
        if venue_id in self.venues:
            raise StateError(f"venue {venue_id} already registered")
        rec = VenueRecord(venue_id=venue_id, owner=owner, vault=vault)
        self.venues[venue_id] = rec
        return rec

    def attach_engine(self, venue_id: str, engine_address: str) -> None:
        rec = self._get(venue_id)
        if rec.engine_address is not None:
            raise StateError(f"venue {venue_id} already has a guarantee engine")
        rec.engine_address = engine_address

    def _get(self, venue_id: str) -> VenueRecord:
        rec = self.venues.get(venue_id)
        if rec is None:
            raise NotFoundError(f"unknown venue {venue_id}")
        return rec

    def venue_exists(self, venue_id: str) -> bool:
        return venue_id in self.venues

    def owner_of(self, venue_id: str) -> str:
        return self._get(venue_id).owner

    def vault_of(self, venue_id: str) -> RevenueVault:
        return self._get(venue_id).vault

    def vault_address_of(self, venue_id: str) -> str:
        return self._get(venue_id).vault.address

    def engine_address_of(self, venue_id: str) -> Optional[str]:
        return self._get(venue_id).engine_address
