"""Plan entitlements and monthly usage limits.

Entitlements are owned elsewhere and only read here.  Usage is one row per
``(user_id, assessment_id)``; the monthly count is the number of rows tagged
with the current ``YYYY-MM`` period.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Protocol

from .errors import NotEntitledError
from .models import utc_now
from .storage import UsageStore, normalize_database_url, psycopg


logger = logging.getLogger("uvicorn.error")

VIDEO_ANALYSIS = "video_analysis"
SIMULATOR_SCENARIO = "simulator_scenario"
LEARNING_BYTES = "learning_bytes"
CAPABILITIES = (VIDEO_ANALYSIS, SIMULATOR_SCENARIO, LEARNING_BYTES)

FREE_TRIAL_PLAN = "free_trial"

# None means unlimited.
PLAN_LIMITS: Dict[str, Dict[str, Optional[int]]] = {
    FREE_TRIAL_PLAN: {VIDEO_ANALYSIS: 2, SIMULATOR_SCENARIO: 2, LEARNING_BYTES: 2},
    "basic": {VIDEO_ANALYSIS: 7, SIMULATOR_SCENARIO: 5, LEARNING_BYTES: 30},
    "pro": {VIDEO_ANALYSIS: None, SIMULATOR_SCENARIO: 20, LEARNING_BYTES: None},
    "enterprise": {VIDEO_ANALYSIS: None, SIMULATOR_SCENARIO: None, LEARNING_BYTES: None},
}


def period_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


@dataclass(frozen=True)
class PlanEntitlement:
    plan_name: str
    is_active: bool = True
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    monthly_limits: Mapping[str, Optional[int]] = field(default_factory=dict)

    @classmethod
    def for_plan(cls, plan_name: str, **kwargs) -> "PlanEntitlement":
        limits = PLAN_LIMITS.get(plan_name, PLAN_LIMITS[FREE_TRIAL_PLAN])
        return cls(plan_name=plan_name, monthly_limits=dict(limits), **kwargs)

    def is_trial_expired(self, now: datetime) -> bool:
        if self.plan_name != FREE_TRIAL_PLAN or self.trial_ends_at is None:
            return False
        return now > self.trial_ends_at

    def limit_for(self, capability: str) -> Optional[int]:
        if capability not in self.monthly_limits:
            # A capability the plan does not list is not granted.
            return 0
        return self.monthly_limits[capability]


class EntitlementProvider(Protocol):
    def get_entitlement(self, user_id: str) -> Optional[PlanEntitlement]:
        pass


class InMemoryEntitlementProvider:
    def __init__(
        self,
        plans: Optional[Mapping[str, PlanEntitlement]] = None,
        default: Optional[PlanEntitlement] = None,
    ) -> None:
        self._plans: Dict[str, PlanEntitlement] = dict(plans or {})
        self._default = default
        self._lock = threading.Lock()

    def set_plan(self, user_id: str, plan: PlanEntitlement) -> None:
        with self._lock:
            self._plans[user_id] = plan

    def get_entitlement(self, user_id: str) -> Optional[PlanEntitlement]:
        with self._lock:
            return self._plans.get(user_id, self._default)


class PostgresEntitlementProvider:
    """Reads the externally owned ``user_plans`` table."""

    def __init__(self, database_url: str) -> None:
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL is set.")
        self._database_url = normalize_database_url(database_url)

    def get_entitlement(self, user_id: str) -> Optional[PlanEntitlement]:
        with psycopg.connect(self._database_url, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT plan_name, is_active, trial_started_at, trial_ends_at
                    FROM user_plans
                    WHERE user_id = %s
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
        if row is None:
            return None
        plan_name, is_active, trial_started_at, trial_ends_at = row
        return PlanEntitlement.for_plan(
            plan_name,
            is_active=bool(is_active),
            trial_started_at=trial_started_at,
            trial_ends_at=trial_ends_at,
        )


def build_entitlement_provider(database_url: str = "", default_plan: Optional[str] = None) -> EntitlementProvider:
    if database_url:
        return PostgresEntitlementProvider(database_url=database_url)
    default = PlanEntitlement.for_plan(default_plan) if default_plan else None
    return InMemoryEntitlementProvider(default=default)


class UsageGate:
    def __init__(
        self,
        entitlements: EntitlementProvider,
        usage_store: UsageStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._entitlements = entitlements
        self._usage = usage_store
        self._clock = clock

    def _denial_reason(self, user_id: str, capability: str) -> tuple[Optional[str], Optional[int], str]:
        now = self._clock()
        period = period_key(now)
        plan = self._entitlements.get_entitlement(user_id)
        if plan is None or not plan.is_active:
            return "no active plan", None, period
        if plan.is_trial_expired(now):
            return "trial expired", None, period
        limit = plan.limit_for(capability)
        if limit is None:
            return None, None, period
        used = self._usage.count_usage(user_id, capability, period)
        if used >= limit:
            return f"monthly limit of {limit} reached", limit, period
        return None, limit, period

    def may_consume(self, user_id: str, capability: str = VIDEO_ANALYSIS) -> bool:
        reason, _, _ = self._denial_reason(user_id, capability)
        return reason is None

    def require(self, user_id: str, capability: str = VIDEO_ANALYSIS) -> None:
        reason, _, period = self._denial_reason(user_id, capability)
        if reason is not None:
            logger.info(
                "user_id=%s capability=%s period=%s usage_denied reason=%s",
                user_id,
                capability,
                period,
                reason,
            )
            raise NotEntitledError(user_id, capability, reason)

    def usage_summary(self, user_id: str, capability: str = VIDEO_ANALYSIS) -> dict:
        reason, _, period = self._denial_reason(user_id, capability)
        plan = self._entitlements.get_entitlement(user_id)
        return {
            "user_id": user_id,
            "capability": capability,
            "period_key": period,
            "used": self._usage.count_usage(user_id, capability, period),
            "limit": plan.limit_for(capability) if plan is not None else 0,
            "may_consume": reason is None,
        }

    def record_consumption(
        self,
        user_id: str,
        assessment_id: str,
        capability: str = VIDEO_ANALYSIS,
    ) -> bool:
        """Record one unit against the current month.

        Returns ``True`` when the unit is recorded or was already recorded for
        this assessment, ``False`` when the monthly limit is exhausted.
        """
        period = period_key(self._clock())
        plan = self._entitlements.get_entitlement(user_id)
        limit = plan.limit_for(capability) if plan is not None else 0
        recorded = self._usage.consume_if_below(user_id, assessment_id, capability, period, limit)
        logger.info(
            "user_id=%s assessment_id=%s capability=%s period=%s usage_recorded=%s",
            user_id,
            assessment_id,
            capability,
            period,
            recorded,
        )
        return recorded

    def release_consumption(self, user_id: str, assessment_id: str) -> bool:
        """Undo a unit recorded for an assessment that did not reach ``completed``."""
        released = self._usage.release(user_id, assessment_id)
        logger.warning(
            "user_id=%s assessment_id=%s usage_released=%s",
            user_id,
            assessment_id,
            released,
        )
        return released
