"""Core agent loop for Sentinel - check, scan, decide, execute, track."""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_DOWN
from time import monotonic
from typing import Any, Dict, List, Optional, Sequence

from sentinel.core.audit import AuditLog
from sentinel.core.models import (
    FilterCriteria,
    Goal,
    OpportunityType,
    StrategyAction,
    StrategyDecision,
    WalletState,
    YieldOpportunity,
    utcnow,
)
from sentinel.monitoring.balance_monitor import BalanceMonitor
from sentinel.trading.goals import GoalTracker
from sentinel.trading.oracle import DecisionOracle
from sentinel.trading.scanner import OpportunityAggregator
from sentinel.trading.transaction_executor import ExecutionResult, ExecutionStatus, TradeExecutor
from sentinel.logging_config import get_activity_logger

logger = logging.getLogger(__name__)
activity_logger = get_activity_logger()


ACTION_TYPES = {
    StrategyAction.STAKE: {OpportunityType.STAKING},
    StrategyAction.DEPLOY: {OpportunityType.LENDING, OpportunityType.LIQUIDITY, OpportunityType.FARMING},
}


def select_opportunity(
    action: StrategyAction,
    candidates: Sequence[YieldOpportunity],
) -> Optional[YieldOpportunity]:
    """
    Pick the opportunity an action applies to.

    Candidates are expected best-first. STAKE takes staking positions,
    DEPLOY lending/liquidity/farming, SWAP anything. Executable candidates
    (those carrying an ``output_mint``) win over the rest.
    """
    if action == StrategyAction.HOLD:
        return None
    allowed = ACTION_TYPES.get(action)
    matching = [opp for opp in candidates if allowed is None or opp.type in allowed]
    if not matching:
        return None
    for opp in matching:
        if opp.details.get("output_mint"):
            return opp
    return matching[0]


@dataclass
class TickContext:
    """
    Explicit inputs of one tick.

    ``apy_estimate`` is the APY used for goal projection, carried over from
    the previous tick. ``stop_event`` is checked between steps.
    """
    tick: int
    apy_estimate: float
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: datetime = field(default_factory=utcnow)


@dataclass
class TickResult:
    tick: int
    balance: float
    apy_estimate: float
    opportunities: int = 0
    decision: Optional[StrategyDecision] = None
    execution: Optional[ExecutionResult] = None
    goal: Optional[Goal] = None
    skipped: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def action(self) -> str:
        if self.error:
            return "error"
        if self.skipped:
            return f"skipped:{self.skipped}"
        return self.decision.action.value if self.decision else "none"


class Orchestrator:
    """
    Main control loop that composes every Sentinel component.

    Each tick:
    1. Reads the wallet balance
    2. Scans and filters opportunities (if the balance is worth acting on)
    3. Consults the decision oracle
    4. Executes the decision, if it calls for a trade
    5. Updates the savings goal

    Ticks never overlap: the scheduled loop and manual triggers share a lock.
    A failing step resolves to a safe default; ``run_tick`` does not raise.
    """

    DEFAULT_TICK_INTERVAL = 300  # seconds

    def __init__(
        self,
        address: str,
        balance_monitor: BalanceMonitor,
        aggregator: OpportunityAggregator,
        oracle: DecisionOracle,
        executor: TradeExecutor,
        goal_tracker: GoalTracker,
        audit: AuditLog,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        min_activity_balance: float = 0.05,
        trade_amount_sol: float = 0.1,
        min_reserve_sol: float = 0.01,
        filter_criteria: Optional[FilterCriteria] = None,
        execution_enabled: bool = True,
        initial_apy: float = 7.0,
    ):
        self.address = address
        self.balance_monitor = balance_monitor
        self.aggregator = aggregator
        self.oracle = oracle
        self.executor = executor
        self.goal_tracker = goal_tracker
        self.audit = audit
        self.tick_interval = tick_interval
        self.min_activity_balance = min_activity_balance
        self.trade_amount_sol = trade_amount_sol
        self.min_reserve_sol = min_reserve_sol
        self.filter_criteria = filter_criteria
        self.execution_enabled = execution_enabled

        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._running = False
        self._tick = 0
        self._apy_estimate = initial_apy
        self._last_result: Optional[TickResult] = None
        self._progress_day: Optional[date] = None
        self._day_start_balance: Optional[float] = None

        logger.info(
            f"Orchestrator initialized: tick_interval={tick_interval}s, "
            f"min_activity_balance={min_activity_balance} SOL, "
            f"trade_amount={trade_amount_sol} SOL, execution={'on' if execution_enabled else 'off'}"
        )

    @property
    def apy_estimate(self) -> float:
        return self._apy_estimate

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """
        Run ticks at ``tick_interval`` until ``stop()`` is called.

        The stop request is honoured between ticks; a tick in progress
        finishes first.
        """
        self._running = True
        self._stop_event.clear()
        logger.info("Sentinel agent starting...")
        await self.audit.record("Orchestrator", "AGENT_STARTED", {
            "address": self.address,
            "tick_interval": self.tick_interval,
        })

        try:
            while not self._stop_event.is_set():
                await self.run_tick()
                if self._stop_event.is_set():
                    break
                logger.info(f"Waiting {self.tick_interval}s until next tick...")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Agent loop cancelled")
            raise
        finally:
            self._running = False
            await self.executor.wait_in_flight()
            await self.audit.drain()
            logger.info("Sentinel agent stopped")

    def stop(self):
        """Stop the loop after the current tick."""
        logger.info("Stopping agent loop...")
        self._stop_event.set()

    def set_apy_estimate(self, apy: float):
        """Override the APY used for goal projection from the next tick on."""
        if apy is None or math.isnan(apy) or math.isinf(apy) or apy < 0:
            raise ValueError(f"Invalid APY estimate: {apy}")
        logger.info(f"APY estimate set to {apy:.2f}%")
        self._apy_estimate = apy

    def trade_amount(self, balance: float) -> float:
        """Amount to commit: the configured size, capped to keep the reserve."""
        amount = min(self.trade_amount_sol, balance - self.min_reserve_sol)
        if amount <= 0:
            return 0.0
        return float(Decimal(str(amount)).quantize(Decimal("0.000000001"), rounding=ROUND_DOWN))

    async def check_balance(self) -> float:
        """Read the balance now and refresh the goal with it."""
        async with self._lock:
            balance = await self.balance_monitor.check()
            if self.balance_monitor.has_reading:
                await self._track_goal(balance, self._apy_estimate)
            return balance

    async def scan_once(self) -> List[YieldOpportunity]:
        """One scan outside the schedule, filtered by the configured criteria."""
        opportunities = await self.aggregator.scan_all()
        return self.aggregator.filter(opportunities, self.filter_criteria)

    async def run_tick(self, context: Optional[TickContext] = None) -> TickResult:
        """Run one full tick. Waits for any tick already in progress."""
        async with self._lock:
            if context is None:
                self._tick += 1
                context = TickContext(
                    tick=self._tick,
                    apy_estimate=self._apy_estimate,
                    stop_event=self._stop_event,
                )
            start = monotonic()
            logger.info("=" * 60)
            logger.info(f"Starting tick {context.tick}...")

            try:
                result = await self._run(context)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in tick {context.tick}: {e}", exc_info=True)
                activity_logger.log_error(
                    component="Orchestrator",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    tick=context.tick,
                )
                await self.audit.record("Orchestrator", "TICK_FAILED", {
                    "tick": context.tick,
                    "error": str(e),
                    "error_type": type(e).__name__,
                })
                result = TickResult(
                    tick=context.tick,
                    balance=self.balance_monitor.last_known,
                    apy_estimate=context.apy_estimate,
                    error=str(e),
                )

            result.duration = monotonic() - start
            self._apy_estimate = result.apy_estimate
            self._last_result = result
            activity_logger.log_tick(result.tick, result.balance, result.action, result.duration)
            return result

    async def _run(self, context: TickContext) -> TickResult:
        balance = await self.balance_monitor.check()
        result = TickResult(tick=context.tick, balance=balance, apy_estimate=context.apy_estimate)

        if balance < self.min_activity_balance:
            logger.info(f"Balance {balance:.4f} SOL below {self.min_activity_balance} SOL - idling")
            await self.audit.record("Orchestrator", "IDLE", {
                "balance": balance,
                "threshold": self.min_activity_balance,
            })
            result.skipped = "low_balance"
        elif context.stop_event.is_set():
            result.skipped = "stopping"
        else:
            await self._decide_and_execute(context, balance, result)

        if self.balance_monitor.has_reading:
            result.goal = await self._track_goal(balance, result.apy_estimate)
        else:
            logger.warning("No balance reading yet; goal left unchanged")
        return result

    async def _decide_and_execute(self, context: TickContext, balance: float, result: TickResult):
        opportunities = await self.aggregator.scan_all()
        candidates = self.aggregator.filter(opportunities, self.filter_criteria)
        result.opportunities = len(candidates)
        if not candidates:
            logger.info("No opportunities passed the filter")
            result.skipped = "no_opportunities"
            return

        if context.stop_event.is_set():
            result.skipped = "stopping"
            return

        wallet = WalletState(address=self.address, balance_sol=balance)
        decision = await self.oracle.consult(candidates, wallet)
        result.decision = decision

        if decision.action == StrategyAction.HOLD:
            return

        selected = select_opportunity(decision.action, candidates)
        amount = self.trade_amount(balance)
        skip_reason = None
        if not self.execution_enabled:
            skip_reason = "execution disabled"
        elif selected is None:
            skip_reason = f"no {decision.action.value} candidate"
        elif amount <= 0:
            skip_reason = f"balance {balance} SOL within reserve {self.min_reserve_sol} SOL"

        if skip_reason:
            logger.info(f"{decision.action.value} not executed: {skip_reason}")
            await self.audit.record("Orchestrator", "EXECUTION_SKIPPED", {
                "action": decision.action.value,
                "reason": skip_reason,
                "selected": selected.summary() if selected else None,
            })
            return

        execution = await self.executor.execute(selected, amount)
        result.execution = execution
        if execution.status == ExecutionStatus.CONFIRMED:
            result.apy_estimate = selected.apy

    async def _track_goal(self, balance: float, apy: float) -> Optional[Goal]:
        try:
            goal = await self.goal_tracker.update_goal(balance, apy)
        except Exception as e:
            logger.error(f"Goal update failed: {e}")
            return None

        today = utcnow().date()
        if self._progress_day != today:
            if self._progress_day is not None and self._day_start_balance is not None:
                await self.goal_tracker.log_progress(balance, balance - self._day_start_balance, apy)
            self._progress_day = today
            self._day_start_balance = balance
        return goal

    def get_status(self) -> Dict[str, Any]:
        last = self._last_result
        return {
            "running": self._running,
            "address": self.address,
            "ticks": self._tick,
            "tick_interval": self.tick_interval,
            "apy_estimate": self._apy_estimate,
            "last_known_balance": self.balance_monitor.last_known,
            "read_only": self.executor.is_read_only,
            "last_tick": {
                "tick": last.tick,
                "action": last.action,
                "balance": last.balance,
                "duration_seconds": round(last.duration, 3),
            } if last else None,
        }
