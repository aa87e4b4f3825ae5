"""
Goal tracking

Compound-interest projections toward a savings target, plus the lifecycle
of the singleton goal record.
"""

import asyncio
import logging
import math
from typing import Any, Dict, Optional

from sentinel.core.audit import AuditLog
from sentinel.core.models import Goal, GoalStatus, utcnow

logger = logging.getLogger(__name__)

# Bound on the one-day corrections applied to the closed-form estimate
MAX_ROUNDING_STEPS = 2


def _daily_rate(apy: float) -> float:
    return apy / 100 / 365


def _daily_growth(apy: float) -> float:
    """Continuous growth per day, ``ln(1 + apy/100/365)``."""
    return math.log1p(_daily_rate(apy))


def _check_finite(**values: float) -> None:
    for name, value in values.items():
        if value is None or math.isnan(value):
            raise ValueError(f"Invalid {name}: {value}")


def project_balance(current: float, apy: float, days: float) -> float:
    """Balance after ``days`` of daily compounding at ``apy`` percent."""
    _check_finite(current=current, apy=apy, days=days)
    if days < 0:
        raise ValueError(f"Invalid days: {days}")
    if days == 0:
        return current
    if _daily_rate(apy) <= -1:
        return 0.0
    # exp/log1p keeps tiny rates exact where (1 + rate) would round to 1.0
    return current * math.exp(days * _daily_growth(apy))


def calculate_days_to_goal(current: float, target: float, apy: float) -> float:
    """
    Days of daily compounding needed to grow ``current`` to ``target``.

    Returns 0 when the target is already met and ``math.inf`` when it can
    never be met (non-positive APY, an empty balance, or a daily rate too
    small to register in floating point).
    """
    _check_finite(current=current, target=target, apy=apy)
    if current < 0:
        raise ValueError(f"Invalid current balance: {current}")
    if target <= 0:
        raise ValueError(f"Invalid target: {target}")

    if current >= target:
        return 0
    if apy <= 0 or current == 0:
        return math.inf

    if 1 + _daily_rate(apy) == 1.0:
        return math.inf
    estimate = math.log(target / current) / _daily_growth(apy)
    if not math.isfinite(estimate):
        return math.inf

    days = math.ceil(estimate)
    # Float rounding can put the estimate one day off either way
    for _ in range(MAX_ROUNDING_STEPS):
        if project_balance(current, apy, days) >= target:
            break
        days += 1
    for _ in range(MAX_ROUNDING_STEPS):
        if days <= 1 or project_balance(current, apy, days - 1) < target:
            break
        days -= 1
    return days


def calculate_compound_earnings(principal: float, apy: float, days: int) -> Dict[str, float]:
    """Projected earnings on ``principal`` over ``days``."""
    future_balance = project_balance(principal, apy, days)
    earnings = future_balance - principal
    return {
        "future_balance": future_balance,
        "earnings": earnings,
        "roi": (earnings / principal * 100) if principal > 0 else 0.0,
        "days": days,
        "daily_earning": (earnings / days) if days > 0 else 0.0,
    }


class GoalTracker:
    """
    Maintains the singleton savings goal.

    ``update_goal`` is called once per balance check. Once a goal is
    achieved it stays achieved until ``set_target`` installs a higher target,
    while ``current_balance`` keeps tracking the wallet. A reading that drops
    an achieved goal below its target is logged and audited as
    GOAL_BELOW_TARGET, once per drop.

    Args:
        store: ``Database`` or ``SupabaseStore``; None keeps the goal in memory
        audit: Audit trail
        target_balance: Target used when no goal exists yet
        default_apy: APY assumed when none is supplied
        timeout: Seconds allowed per store call
    """

    AGENT_NAME = "GoalTracker"

    calculate_days_to_goal = staticmethod(calculate_days_to_goal)
    project_balance = staticmethod(project_balance)
    calculate_compound_earnings = staticmethod(calculate_compound_earnings)

    def __init__(
        self,
        store: Optional[Any],
        audit: AuditLog,
        target_balance: float = 1.0,
        default_apy: float = 7.0,
        goal_id: str = "primary",
        timeout: float = 5.0,
    ):
        if target_balance <= 0:
            raise ValueError(f"Invalid target balance: {target_balance}")
        self.store = store
        self.audit = audit
        self.target_balance = target_balance
        self.default_apy = default_apy
        self.goal_id = goal_id
        self.timeout = timeout
        self._goal: Optional[Goal] = None
        self._loaded = False

    async def get_active_goal(self) -> Optional[Goal]:
        """The current goal record, loaded from the store on first use."""
        if not self._loaded and self.store is not None:
            try:
                stored = await asyncio.wait_for(self.store.get_goal(self.goal_id), timeout=self.timeout)
            except Exception as e:
                # Retried on the next call
                logger.warning(f"Could not load goal {self.goal_id}: {e!r}")
                return self._goal
            self._loaded = True
            if stored is not None:
                self._goal = stored
                self.target_balance = stored.target_balance
        return self._goal

    async def update_goal(self, current_balance: float, current_apy: Optional[float] = None) -> Goal:
        """
        Recompute and upsert the goal for a fresh balance reading.

        Identical inputs produce the same record (apart from ``updated_at``).
        """
        apy = self.default_apy if current_apy is None else current_apy
        existing = await self.get_active_goal()
        target = existing.target_balance if existing else self.target_balance

        if existing is not None and existing.is_achieved:
            status, days = GoalStatus.ACHIEVED, 0
        else:
            days = calculate_days_to_goal(current_balance, target, apy)
            if current_balance >= target:
                status = GoalStatus.ACHIEVED
            elif existing is not None and existing.status == GoalStatus.PAUSED:
                status = GoalStatus.PAUSED
            else:
                status = GoalStatus.ACTIVE

        goal = Goal(
            target_balance=target,
            current_balance=current_balance,
            target_apy=apy,
            days_to_goal=days,
            status=status,
            goal_id=self.goal_id,
            created_at=existing.created_at if existing else utcnow(),
            updated_at=utcnow(),
        )

        newly_achieved = status == GoalStatus.ACHIEVED and (existing is None or not existing.is_achieved)
        dropped_below = (
            existing is not None
            and existing.is_achieved
            and existing.current_balance >= target > current_balance
        )
        await self._save(goal)

        if dropped_below:
            logger.warning(f"Achieved goal now below target: {current_balance:.4f} / {target:.4f} SOL")
            await self.audit.record(self.AGENT_NAME, "GOAL_BELOW_TARGET", {
                "target_balance": target,
                "current_balance": current_balance,
            })

        if newly_achieved:
            logger.info(f"Goal achieved: {current_balance:.4f} / {target:.4f} SOL")
            await self.audit.record(self.AGENT_NAME, "GOAL_ACHIEVED", {
                "target_balance": target,
                "current_balance": current_balance,
            })
        elif math.isinf(days):
            logger.info(f"Goal {target} SOL unreachable at {apy:.2f}% APY from {current_balance:.4f} SOL")
        else:
            logger.info(f"Goal progress: {current_balance:.4f} / {target:.4f} SOL, {days} days at {apy:.2f}% APY")
        return goal

    async def set_target(self, target_balance: float, target_apy: Optional[float] = None) -> Goal:
        """
        Install a new target.

        A target no higher than an already achieved goal's target is
        ignored; a higher one starts a new goal lifetime.
        """
        if target_balance <= 0 or math.isnan(target_balance):
            raise ValueError(f"Invalid target balance: {target_balance}")

        existing = await self.get_active_goal()
        if existing is not None and existing.is_achieved and target_balance <= existing.target_balance:
            logger.warning(
                f"Goal of {existing.target_balance} SOL already achieved; "
                f"ignoring target {target_balance} SOL"
            )
            return existing

        current = existing.current_balance if existing else 0.0
        apy = target_apy if target_apy is not None else (existing.target_apy if existing else self.default_apy)
        restart = existing is None or existing.is_achieved

        goal = Goal(
            target_balance=target_balance,
            current_balance=current,
            target_apy=apy,
            days_to_goal=calculate_days_to_goal(current, target_balance, apy),
            status=GoalStatus.ACHIEVED if current >= target_balance else GoalStatus.ACTIVE,
            goal_id=self.goal_id,
            created_at=utcnow() if restart else existing.created_at,
            updated_at=utcnow(),
        )
        self.target_balance = target_balance
        await self._save(goal)

        logger.info(f"Goal target set to {target_balance} SOL")
        await self.audit.record(self.AGENT_NAME, "GOAL_SET", {
            "target_balance": target_balance,
            "target_apy": apy,
            "new_lifetime": restart,
        })
        return goal

    async def log_progress(self, balance: float, earned_today: float, apy: float) -> None:
        goal = await self.get_active_goal()
        target = goal.target_balance if goal else self.target_balance
        days = calculate_days_to_goal(balance, target, apy)
        await self.audit.record(self.AGENT_NAME, "GOAL_PROGRESS", {
            "balance": balance,
            "earned_today": earned_today,
            "apy": apy,
            "target_balance": target,
            "progress_pct": round(min(balance / target, 1.0) * 100, 2),
            "days_to_goal": None if math.isinf(days) else days,
        })

    async def _save(self, goal: Goal) -> None:
        self._goal = goal
        self._loaded = True
        if self.store is None:
            return
        try:
            await asyncio.wait_for(self.store.upsert_goal(goal), timeout=self.timeout)
        except Exception as e:
            logger.warning(f"Goal upsert failed: {e!r}")
