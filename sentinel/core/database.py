"""
SQLite store for the Sentinel agent.

Holds the three logical stores the agent writes:
- agent_actions: append-only audit trail, one row per lifecycle event
- yield_reports: append-only snapshot of every discovered opportunity
- goals: one mutable row per goal id, upserted on every balance check

Rows in the append-only tables are never updated or deleted. Reporting
surfaces read them with the ``get_recent_*`` helpers.

Location: DATABASE_PATH (local to the deployment)
"""

import asyncio
import json
import math
import sqlite3
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from contextlib import contextmanager

from sentinel.core.models import AgentAction, Goal, YieldOpportunity, utcnow

logger = logging.getLogger(__name__)


def _days_to_column(days: float) -> Optional[float]:
    # JSON and PostgREST cannot carry infinity; NULL means unreachable
    return None if math.isinf(days) else float(days)


def _days_from_column(value: Optional[float]) -> float:
    return math.inf if value is None else float(value)


def goal_to_row(goal: Goal) -> Dict[str, Any]:
    return {
        "id": goal.goal_id,
        "target_sol": goal.target_balance,
        "current_sol": goal.current_balance,
        "target_apy": goal.target_apy,
        "days_to_goal": _days_to_column(goal.days_to_goal),
        "status": goal.status.value,
        "created_at": goal.created_at.isoformat(),
        "updated_at": goal.updated_at.isoformat(),
    }


def goal_from_row(row: Dict[str, Any]) -> Goal:
    return Goal(
        goal_id=row["id"],
        target_balance=float(row["target_sol"]),
        current_balance=float(row["current_sol"]),
        target_apy=float(row["target_apy"]),
        days_to_goal=_days_from_column(row.get("days_to_goal")),
        status=row["status"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def yield_report_row(opportunity: YieldOpportunity, chain: str = "Solana") -> Dict[str, Any]:
    return {
        "protocol": opportunity.protocol,
        "name": opportunity.name,
        "type": opportunity.type.value,
        "chain": chain,
        "apy": opportunity.apy,
        "tvl": opportunity.tvl,
        "risk": opportunity.risk.value,
        "created_at": utcnow().isoformat(),
    }


class Database:
    """
    SQLite database manager.

    All public methods are coroutines; the blocking sqlite work runs in a
    worker thread so audit writes never stall the event loop.
    """

    def __init__(self, db_path: str = "config/sentinel.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()
        logger.info(f"Database initialized: {self.db_path}")

    @contextmanager
    def get_connection(self):
        """Get database connection with automatic commit/rollback."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=10.0)
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def _init_schema(self):
        with self.get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS agent_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_name TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    details TEXT DEFAULT '{}',
                    created_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS yield_reports (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    protocol TEXT NOT NULL,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    chain TEXT NOT NULL,
                    apy REAL NOT NULL,
                    tvl REAL NOT NULL,
                    risk TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS goals (
                    id TEXT PRIMARY KEY,
                    target_sol REAL NOT NULL,
                    current_sol REAL NOT NULL,
                    target_apy REAL NOT NULL,
                    days_to_goal REAL,
                    status TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_actions_created ON agent_actions(created_at)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_reports_created ON yield_reports(created_at)"
            )

    # ------------------------------------------------------------------
    # Append-only stores
    # ------------------------------------------------------------------

    async def insert_action(self, action: AgentAction) -> None:
        await asyncio.to_thread(self._insert_action, action)

    def _insert_action(self, action: AgentAction) -> None:
        with self.get_connection() as conn:
            conn.execute(
                "INSERT INTO agent_actions (agent_name, action_type, details, created_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    action.agent_name,
                    action.action_type,
                    json.dumps(action.details, default=str),
                    action.timestamp.isoformat(),
                ),
            )

    async def insert_yield_reports(self, rows: List[Dict[str, Any]]) -> None:
        await asyncio.to_thread(self._insert_yield_reports, rows)

    def _insert_yield_reports(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        with self.get_connection() as conn:
            conn.executemany(
                "INSERT INTO yield_reports (protocol, name, type, chain, apy, tvl, risk, created_at) "
                "VALUES (:protocol, :name, :type, :chain, :apy, :tvl, :risk, :created_at)",
                rows,
            )

    async def get_recent_actions(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_recent_actions, limit)

    def _get_recent_actions(self, limit: int) -> List[Dict[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT agent_name, action_type, details, created_at FROM agent_actions "
                "ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            {
                "agent_name": row["agent_name"],
                "action_type": row["action_type"],
                "details": json.loads(row["details"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def get_recent_yield_reports(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_recent_yield_reports, limit)

    def _get_recent_yield_reports(self, limit: int) -> List[Dict[str, Any]]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT protocol, name, type, chain, apy, tvl, risk, created_at "
                "FROM yield_reports ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------

    async def upsert_goal(self, goal: Goal) -> Goal:
        await asyncio.to_thread(self._upsert_goal, goal)
        return goal

    def _upsert_goal(self, goal: Goal) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO goals (id, target_sol, current_sol, target_apy, days_to_goal,
                                   status, created_at, updated_at)
                VALUES (:id, :target_sol, :current_sol, :target_apy, :days_to_goal,
                        :status, :created_at, :updated_at)
                ON CONFLICT(id) DO UPDATE SET
                    target_sol = excluded.target_sol,
                    current_sol = excluded.current_sol,
                    target_apy = excluded.target_apy,
                    days_to_goal = excluded.days_to_goal,
                    status = excluded.status,
                    created_at = excluded.created_at,
                    updated_at = excluded.updated_at
                """,
                goal_to_row(goal),
            )

    async def get_goal(self, goal_id: str = "primary") -> Optional[Goal]:
        return await asyncio.to_thread(self._get_goal, goal_id)

    def _get_goal(self, goal_id: str) -> Optional[Goal]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM goals WHERE id = ?", (goal_id,)).fetchone()
        return goal_from_row(dict(row)) if row else None

    async def close(self) -> None:
        # Connections are per-call; nothing to release
        return None
