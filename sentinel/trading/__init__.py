"""
Trading Logic

Core trading functionality:
- Opportunity scanning and aggregation
- Strategy decisions
- Trade execution
- Goal tracking
- Main agent loop
"""

from .scanner import OpportunityScanner, OpportunityAggregator
from .goals import GoalTracker
from .oracle import DecisionOracle
from .transaction_executor import TradeExecutor, ExecutionResult, ExecutionStatus
from .loop import Orchestrator, TickContext, TickResult

__all__ = [
    'OpportunityScanner',
    'OpportunityAggregator',
    'GoalTracker',
    'DecisionOracle',
    'TradeExecutor',
    'ExecutionResult',
    'ExecutionStatus',
    'Orchestrator',
    'TickContext',
    'TickResult',
]
