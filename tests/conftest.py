"""
Pytest configuration and shared fixtures for Sentinel testing.
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from hypothesis import settings, Verbosity

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sentinel.core.audit import AuditLog
from sentinel.core.models import AgentAction, Goal, YieldOpportunity


# ============================================================================
# Hypothesis Configuration
# ============================================================================

settings.register_profile("default", max_examples=100, deadline=None)
settings.register_profile("ci", max_examples=1000, deadline=None)
settings.register_profile("dev", max_examples=20, verbosity=Verbosity.verbose)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


# ============================================================================
# In-memory store
# ============================================================================

class MemoryStore:
    """Store with the Database interface that keeps everything in lists."""

    def __init__(self):
        self.actions: List[AgentAction] = []
        self.yield_reports: List[Dict[str, Any]] = []
        self.goals: Dict[str, Goal] = {}
        self.upserts = 0

    async def insert_action(self, action: AgentAction) -> None:
        self.actions.append(action)

    async def insert_yield_reports(self, rows: List[Dict[str, Any]]) -> None:
        self.yield_reports.extend(rows)

    async def upsert_goal(self, goal: Goal) -> Goal:
        self.upserts += 1
        self.goals[goal.goal_id] = goal
        return goal

    async def get_goal(self, goal_id: str = "primary") -> Optional[Goal]:
        return self.goals.get(goal_id)

    async def get_recent_actions(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [
            {"agent_name": a.agent_name, "action_type": a.action_type, "details": a.details}
            for a in reversed(self.actions[-limit:])
        ]

    async def get_recent_yield_reports(self, limit: int = 50) -> List[Dict[str, Any]]:
        return list(reversed(self.yield_reports[-limit:]))

    async def close(self) -> None:
        pass

    def action_types(self) -> List[str]:
        return [a.action_type for a in self.actions]

    def actions_of(self, action_type: str) -> List[AgentAction]:
        return [a for a in self.actions if a.action_type == action_type]


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def audit(memory_store):
    """AuditLog writing into the in-memory store."""
    return AuditLog(memory_store, timeout=1.0)


# ============================================================================
# Opportunity factory
# ============================================================================

@pytest.fixture
def make_opportunity():
    """Factory for YieldOpportunity objects with sensible defaults."""
    def _make(
        protocol: str = "Marinade",
        name: str = "mSOL Liquid Staking",
        type: str = "staking",
        apy: float = 7.0,
        tvl: float = 1_000_000.0,
        risk: str = "low",
        **details,
    ) -> YieldOpportunity:
        return YieldOpportunity(
            protocol=protocol,
            name=name,
            type=type,
            apy=apy,
            tvl=tvl,
            risk=risk,
            details=details,
        )
    return _make
