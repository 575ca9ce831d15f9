"""
Plan status lookup for the billing collaborator.

The core never decides when to bill. It only asks ``plan_status(user_id)``
to gate live-mode upgrades and trial-expiry teardown.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from reecher.config import settings
from reecher.database import Database
from reecher.models import PlanStatus

logger = logging.getLogger(__name__)

_PAID_PLANS = {"paid", "basic", "premium", "pro", "monthly", "yearly"}


def resolve_plan(
    payment_plan: Optional[str],
    trial_expires_at: Optional[datetime],
    now: Optional[datetime] = None,
    signed_up_at: Optional[datetime] = None,
) -> PlanStatus:
    """Collapse profile billing columns into trial/paid/expired.

    Without an explicit trial end, the trial runs TRIAL_DAYS from sign-up.
    """
    if payment_plan and payment_plan.strip().lower() in _PAID_PLANS:
        return PlanStatus.PAID
    now = now or datetime.now(timezone.utc)
    if trial_expires_at is None and signed_up_at is not None:
        trial_expires_at = signed_up_at + timedelta(days=settings.TRIAL_DAYS)
    if trial_expires_at is not None and trial_expires_at <= now:
        return PlanStatus.EXPIRED
    return PlanStatus.TRIAL


class PlanProvider(ABC):
    @abstractmethod
    async def plan_status(self, user_id: str) -> PlanStatus:
        ...


class DatabasePlanProvider(PlanProvider):
    """Reads the billing columns the payment flow maintains on ``profiles``."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def plan_status(self, user_id: str) -> PlanStatus:
        row = await self._db.fetchrow(
            "SELECT payment_plan, trial_expires_at, created_at FROM profiles WHERE id::text = $1",
            user_id,
        )
        if row is None:
            logger.warning("[BILLING] No profile row for user %s, assuming trial", user_id)
            return PlanStatus.TRIAL
        return resolve_plan(row["payment_plan"], row["trial_expires_at"], signed_up_at=row["created_at"])


class InMemoryPlanProvider(PlanProvider):
    """Static plan table for local runs and tests. Unknown users are on trial."""

    def __init__(self, plans: Optional[Dict[str, PlanStatus]] = None, default: PlanStatus = PlanStatus.TRIAL) -> None:
        self.plans: Dict[str, PlanStatus] = dict(plans or {})
        self.default = default

    def set_plan(self, user_id: str, plan: PlanStatus) -> None:
        self.plans[user_id] = plan

    async def plan_status(self, user_id: str) -> PlanStatus:
        return self.plans.get(user_id, self.default)
