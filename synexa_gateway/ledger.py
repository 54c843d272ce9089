"""Credit and daily-quota admission.

Admission is two-phase. ``check_and_reserve`` places an in-memory hold that
counts against the account's credits and daily cap; ``commit`` turns the hold
into a persisted debit once the upstream call succeeded, ``release`` drops it
otherwise. Nothing is written for a call that did not succeed.

All read-modify-write sequences for one account run under that account's
lock. Different accounts never contend.
"""
import logging
import threading
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from synexa_gateway.repository import AccountRepository, AccountSnapshot, UsageDelta

logger = logging.getLogger(__name__)


class Feature(str, Enum):
    CHAT = "chat"
    IMAGE = "image"
    VIDEO = "video"


class Plan(str, Enum):
    FREE = "FREE"
    PRO_MONTHLY = "PRO_MONTHLY"
    PRO_YEARLY = "PRO_YEARLY"


class DenialReason(str, Enum):
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"


_LIMIT_MESSAGES = {
    Feature.CHAT: "Daily chat limit reached. Please upgrade to Pro for unlimited chat.",
    Feature.IMAGE: "Daily image limit reached. Please upgrade to Pro for unlimited images.",
    Feature.VIDEO: "Daily video limit reached. Please upgrade to Pro for unlimited videos.",
}
_CREDITS_MESSAGE = "Insufficient credits. Please purchase more credits or upgrade your plan."

PAID_PLANS = frozenset({Plan.PRO_MONTHLY.value, Plan.PRO_YEARLY.value})


class AdmissionDenied(Exception):
    """The account may not use the feature right now."""

    def __init__(self, reason: DenialReason, feature: Feature):
        self.reason = reason
        self.feature = feature
        if reason == DenialReason.INSUFFICIENT_CREDITS:
            self.message = _CREDITS_MESSAGE
        else:
            self.message = _LIMIT_MESSAGES[feature]
        super().__init__(self.message)

    def to_response(self) -> dict:
        return {"code": self.reason.value, "feature": self.feature.value, "message": self.message}


class LedgerError(RuntimeError):
    """The persisted account state disagrees with the ledger's expectations."""


@dataclass(frozen=True)
class Reservation:
    id: str
    account_id: str
    feature: Feature
    cost: int
    expires_at: Optional[datetime] = None


class UsageLedger:
    def __init__(
        self,
        repository: AccountRepository,
        costs: Dict[Feature, int],
        free_limits: Dict[Feature, int],
        clock: Callable[[], datetime] = datetime.utcnow,
        low_credits_threshold: int = 20,
        near_limit_ratio: float = 0.8,
        hold_ttl_seconds: float = 300.0,
    ):
        self.repository = repository
        self.costs = dict(costs)
        self.free_limits = dict(free_limits)
        self.clock = clock
        self.low_credits_threshold = low_credits_threshold
        self.near_limit_ratio = near_limit_ratio
        self.hold_ttl = timedelta(seconds=hold_ttl_seconds)
        # A lock lives as long as some caller still holds it
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._holds: Dict[str, Dict[str, Reservation]] = {}

    @classmethod
    def from_settings(cls, repository: AccountRepository, settings, clock: Optional[Callable[[], datetime]] = None):
        return cls(
            repository,
            costs={
                Feature.CHAT: settings.credit_cost_chat,
                Feature.IMAGE: settings.credit_cost_image,
                Feature.VIDEO: settings.credit_cost_video,
            },
            free_limits={
                Feature.CHAT: settings.free_daily_chat_limit,
                Feature.IMAGE: settings.free_daily_image_limit,
                Feature.VIDEO: settings.free_daily_video_limit,
            },
            clock=clock or datetime.utcnow,
            low_credits_threshold=settings.low_credits_threshold,
            near_limit_ratio=settings.near_limit_ratio,
            hold_ttl_seconds=settings.ledger_hold_ttl_seconds,
        )

    def cost_of(self, feature: Feature) -> int:
        return self.costs[feature]

    def plan_limit(self, plan: str, feature: Feature) -> Optional[int]:
        """Daily cap for ``feature`` on ``plan``; None means unlimited."""
        if plan in PAID_PLANS:
            return None
        return self.free_limits[feature]

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def _load(self, account_id: str) -> AccountSnapshot:
        account = self.repository.get_account(account_id)
        if account is None:
            raise LedgerError(f"Account {account_id} not found")
        return account

    def _purge_expired(self, account_id: str) -> None:
        """Drop holds whose call can no longer be running. Caller holds the account lock."""
        holds = self._holds.get(account_id)
        if not holds:
            return
        now = self.clock()
        for reservation_id, reservation in list(holds.items()):
            if reservation.expires_at is not None and reservation.expires_at <= now:
                del holds[reservation_id]
                logger.warning("Expired %s hold %s for %s was never settled; dropping it",
                               reservation.feature.value, reservation_id, account_id)
        if not holds:
            self._holds.pop(account_id, None)

    def _held(self, account_id: str, feature: Optional[Feature] = None):
        """(credits, count) currently held for the account, optionally for one feature."""
        self._purge_expired(account_id)
        holds = self._holds.get(account_id, {}).values()
        credits = sum(h.cost for h in holds)
        count = sum(1 for h in holds if feature is None or h.feature == feature)
        return credits, count

    def reset_if_new_day(self, account_id: str) -> bool:
        """Zero the daily counters if they belong to an earlier day. Idempotent."""
        with self._lock_for(account_id):
            return self.repository.reset_daily(account_id, self.clock())

    def check_and_reserve(self, account_id: str, feature: Feature, cost: Optional[int] = None) -> Reservation:
        """Admit one use of ``feature`` or raise AdmissionDenied.

        Credits are checked before the daily cap.
        """
        feature = Feature(feature)
        cost = self.cost_of(feature) if cost is None else cost
        with self._lock_for(account_id):
            self.repository.reset_daily(account_id, self.clock())
            account = self._load(account_id)
            held_credits, _ = self._held(account_id)
            _, held_count = self._held(account_id, feature)

            if account.credits - held_credits < cost:
                logger.info("Denied %s for %s: insufficient credits (%d, %d held)",
                            feature.value, account_id, account.credits, held_credits)
                raise AdmissionDenied(DenialReason.INSUFFICIENT_CREDITS, feature)

            limit = self.plan_limit(account.plan, feature)
            if limit is not None and account.usage.get(feature.value, 0) + held_count >= limit:
                logger.info("Denied %s for %s: daily limit %d reached", feature.value, account_id, limit)
                raise AdmissionDenied(DenialReason.DAILY_LIMIT_REACHED, feature)

            reservation = Reservation(
                id=uuid.uuid4().hex,
                account_id=account_id,
                feature=feature,
                cost=cost,
                expires_at=self.clock() + self.hold_ttl,
            )
            self._holds.setdefault(account_id, {})[reservation.id] = reservation
            return reservation

    def commit(self, reservation: Reservation) -> None:
        """Persist the debit for a successful call and drop its hold."""
        with self._lock_for(reservation.account_id):
            holds = self._holds.get(reservation.account_id, {})
            if reservation.id not in holds:
                raise LedgerError(f"Reservation {reservation.id} is not active")
            del holds[reservation.id]
            if not holds:
                self._holds.pop(reservation.account_id, None)
            applied = self.repository.update_usage(
                reservation.account_id,
                UsageDelta(feature=reservation.feature.value, credits=reservation.cost),
            )
        if not applied:
            raise LedgerError(
                f"Could not debit {reservation.cost} credits from account {reservation.account_id}"
            )

    def release(self, reservation: Reservation) -> bool:
        """Drop a hold without persisting anything. Returns False if it was already gone."""
        with self._lock_for(reservation.account_id):
            holds = self._holds.get(reservation.account_id, {})
            released = holds.pop(reservation.id, None) is not None
            if not holds:
                self._holds.pop(reservation.account_id, None)
            return released

    def account_status(self, account_id: str) -> dict:
        """Plan, credits, today's usage, limits and warnings for display."""
        with self._lock_for(account_id):
            self.repository.reset_daily(account_id, self.clock())
            account = self._load(account_id)

        limits = {}
        near_limit = {}
        for feature in Feature:
            limit = self.plan_limit(account.plan, feature)
            used = account.usage.get(feature.value, 0)
            limits[feature.value] = {"maxPerDay": limit}
            near_limit[feature.value] = limit is not None and used >= limit * self.near_limit_ratio

        usage = {feature.value: account.usage.get(feature.value, 0) for feature in Feature}
        return {
            "plan": account.plan,
            "credits": account.credits,
            "dailyUsage": usage,
            "usageToday": usage,
            "limits": limits,
            "warnings": {
                "lowCredits": account.credits < self.low_credits_threshold,
                "nearDailyLimit": near_limit,
            },
        }
