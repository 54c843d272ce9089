"""Account persistence.

The ledger only needs a narrow interface: read an account, apply a usage delta
and reset the daily counters. ``get_or_create_account`` and
``list_workspaces`` serve the auth dependency and the gateway's workspace hint.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from synexa_gateway.models import Account, Workspace

logger = logging.getLogger(__name__)

_USAGE_COLUMNS = {
    "chat": Account.daily_usage_chat,
    "image": Account.daily_usage_image,
    "video": Account.daily_usage_video,
}


@dataclass(frozen=True)
class AccountSnapshot:
    id: str
    plan: str
    credits: int
    usage: Dict[str, int] = field(default_factory=dict)
    reset_at: Optional[datetime] = None


@dataclass(frozen=True)
class WorkspaceInfo:
    id: str
    name: str


@dataclass(frozen=True)
class UsageDelta:
    """Debit ``credits`` and add ``count`` to the feature's daily counter."""

    feature: str
    credits: int
    count: int = 1


class AccountRepository(ABC):
    """Read/write interface the ledger depends on."""

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[AccountSnapshot]:
        pass

    @abstractmethod
    def update_usage(self, account_id: str, delta: UsageDelta) -> bool:
        """Apply ``delta`` atomically. Returns False if credits would go negative."""
        pass

    @abstractmethod
    def reset_daily(self, account_id: str, now: datetime) -> bool:
        """Zero the daily counters if they belong to an earlier day than ``now``.

        Returns True only when a reset actually happened; a second call on the
        same day is a no-op.
        """
        pass

    @abstractmethod
    def get_or_create_account(self, account_id: str, initial_credits: int, plan: str = "FREE") -> AccountSnapshot:
        pass

    @abstractmethod
    def list_workspaces(self, account_id: str) -> List[WorkspaceInfo]:
        pass


def _snapshot(account: Account) -> AccountSnapshot:
    return AccountSnapshot(
        id=account.id,
        plan=account.plan,
        credits=account.credits,
        usage={
            "chat": account.daily_usage_chat or 0,
            "image": account.daily_usage_image or 0,
            "video": account.daily_usage_video or 0,
        },
        reset_at=account.daily_usage_reset_at,
    )


def start_of_day(now: datetime) -> datetime:
    return datetime(now.year, now.month, now.day)


class SqlAlchemyAccountRepository(AccountRepository):
    """AccountRepository backed by the SQLAlchemy ``accounts`` table."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_account(self, account_id: str) -> Optional[AccountSnapshot]:
        with self._session() as db:
            account = db.query(Account).filter(Account.id == account_id).first()
            return _snapshot(account) if account else None

    def update_usage(self, account_id: str, delta: UsageDelta) -> bool:
        column = _USAGE_COLUMNS[delta.feature]
        with self._session() as db:
            updated = (
                db.query(Account)
                .filter(Account.id == account_id, Account.credits >= delta.credits)
                .update(
                    {
                        Account.credits: Account.credits - delta.credits,
                        column: column + delta.count,
                        Account.updated_at: datetime.utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        return updated == 1

    def reset_daily(self, account_id: str, now: datetime) -> bool:
        with self._session() as db:
            updated = (
                db.query(Account)
                .filter(
                    Account.id == account_id,
                    or_(
                        Account.daily_usage_reset_at.is_(None),
                        Account.daily_usage_reset_at < start_of_day(now),
                    ),
                )
                .update(
                    {
                        Account.daily_usage_chat: 0,
                        Account.daily_usage_image: 0,
                        Account.daily_usage_video: 0,
                        Account.daily_usage_reset_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        if updated:
            logger.info("Daily usage reset for account %s", account_id)
        return updated == 1

    def get_or_create_account(self, account_id: str, initial_credits: int, plan: str = "FREE") -> AccountSnapshot:
        with self._session() as db:
            account = db.query(Account).filter(Account.id == account_id).first()
            if account:
                return _snapshot(account)
            account = Account(
                id=account_id,
                plan=plan,
                credits=initial_credits,
            )
            db.add(account)
            try:
                db.commit()
            except IntegrityError:
                # Another request created it first
                db.rollback()
                account = db.query(Account).filter(Account.id == account_id).one()
                return _snapshot(account)
            db.refresh(account)
            logger.info("Created account %s on plan %s with %d credits", account_id, plan, initial_credits)
            return _snapshot(account)

    def list_workspaces(self, account_id: str) -> List[WorkspaceInfo]:
        with self._session() as db:
            rows = (
                db.query(Workspace)
                .filter(Workspace.account_id == account_id)
                .order_by(Workspace.created_at, Workspace.id)
                .all()
            )
            return [WorkspaceInfo(id=w.id, name=w.name) for w in rows]
