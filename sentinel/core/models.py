"""Domain types shared by the scanners, oracle, executor and goal tracker."""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union


class OpportunityType(str, Enum):
    STAKING = "staking"
    LENDING = "lending"
    LIQUIDITY = "liquidity"
    FARMING = "farming"


class RiskLevel(str, Enum):
    """Risk buckets, ordered low < medium < high."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}


class StrategyAction(str, Enum):
    SWAP = "SWAP"
    STAKE = "STAKE"
    DEPLOY = "DEPLOY"
    HOLD = "HOLD"


class GoalStatus(str, Enum):
    ACTIVE = "active"
    ACHIEVED = "achieved"
    PAUSED = "paused"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WalletState:
    """Snapshot of the watched wallet, taken once per tick."""
    address: str
    balance_sol: float

    def __post_init__(self):
        if self.balance_sol < 0:
            raise ValueError(f"Invalid balance: {self.balance_sol}")

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "balance_sol": self.balance_sol}


@dataclass(frozen=True)
class YieldOpportunity:
    """
    A yield-bearing position discovered by a protocol scanner.

    Attributes:
        protocol: Protocol name (e.g. "Marinade")
        name: Human readable product name
        type: Kind of position (staking, lending, liquidity, farming)
        apy: Annual percentage yield, as a percent
        tvl: Total value locked in USD
        risk: Risk bucket
        contract_address: Program or vault address, if known
        details: Adapter-specific extras (e.g. ``output_mint`` for execution)
    """
    protocol: str
    name: str
    type: OpportunityType
    apy: float
    tvl: float
    risk: RiskLevel
    contract_address: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        # Coerce plain strings so adapters can pass raw values
        object.__setattr__(self, "type", OpportunityType(self.type))
        object.__setattr__(self, "risk", RiskLevel(self.risk))
        for attr in ("apy", "tvl"):
            value = float(getattr(self, attr))
            if math.isnan(value) or math.isinf(value) or value < 0:
                raise ValueError(f"Invalid {attr}: {value}")
            object.__setattr__(self, attr, value)

    def summary(self) -> Dict[str, Any]:
        """Bounded description, safe to send to the oracle."""
        return {
            "protocol": self.protocol,
            "name": self.name,
            "type": self.type.value,
            "apy": round(self.apy, 4),
            "tvl": round(self.tvl, 2),
            "risk": self.risk.value,
        }


@dataclass(frozen=True)
class FilterCriteria:
    """Filter descriptor; ``None`` fields impose no constraint."""
    min_apy: Optional[float] = None
    max_risk: Optional[RiskLevel] = None
    min_tvl: Optional[float] = None
    types: Optional[FrozenSet[OpportunityType]] = None

    def __post_init__(self):
        if self.max_risk is not None:
            object.__setattr__(self, "max_risk", RiskLevel(self.max_risk))
        if self.types is not None:
            object.__setattr__(self, "types", frozenset(OpportunityType(t) for t in self.types))

    def matches(self, opportunity: YieldOpportunity) -> bool:
        if self.min_apy is not None and opportunity.apy < self.min_apy:
            return False
        if self.min_tvl is not None and opportunity.tvl < self.min_tvl:
            return False
        if self.max_risk is not None and opportunity.risk.rank > self.max_risk.rank:
            return False
        if self.types is not None and opportunity.type not in self.types:
            return False
        return True


@dataclass(frozen=True)
class StrategyDecision:
    advice: str
    pathway: str
    action: StrategyAction

    def to_dict(self) -> Dict[str, Any]:
        return {"advice": self.advice, "pathway": self.pathway, "action": self.action.value}


FAIL_SAFE_DECISION = StrategyDecision(
    advice="<provider unavailable>",
    pathway="",
    action=StrategyAction.HOLD,
)


@dataclass(frozen=True)
class Valid:
    decision: StrategyDecision


@dataclass(frozen=True)
class Invalid:
    reason: str


DecisionResult = Union[Valid, Invalid]


@dataclass
class Goal:
    """
    The savings goal record.

    ``days_to_goal`` is ``math.inf`` when the goal cannot be reached at the
    current APY. ``current_balance`` is always the latest reading; an
    ACHIEVED goal keeps its status even if that reading later falls below
    ``target_balance``.
    """
    target_balance: float
    current_balance: float
    target_apy: float
    days_to_goal: float
    status: GoalStatus
    goal_id: str = "primary"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.status = GoalStatus(self.status)
        if self.target_balance <= 0:
            raise ValueError(f"Invalid target balance: {self.target_balance}")
        if self.current_balance < 0:
            raise ValueError(f"Invalid current balance: {self.current_balance}")

    @property
    def is_achieved(self) -> bool:
        return self.status == GoalStatus.ACHIEVED


@dataclass(frozen=True)
class AgentAction:
    agent_name: str
    action_type: str
    details: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)
