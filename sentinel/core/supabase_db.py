"""
Supabase database adapter.

Talks to the Supabase REST endpoint (PostgREST) with httpx. Provides the
same interface as the SQLite ``Database`` class. Table provisioning is
done on the Supabase side; this client only inserts, upserts and reads.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from sentinel.core.database import goal_from_row, goal_to_row
from sentinel.core.models import AgentAction, Goal

logger = logging.getLogger(__name__)


class SupabaseStore:
    """
    Supabase client for the agent_actions, yield_reports and goals tables.
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            url: Project URL (e.g. https://xyz.supabase.co)
            key: Service or anon key
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        if not url or not key:
            raise ValueError("Supabase URL and key are required")

        self.url = url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=f"{self.url}/rest/v1",
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        logger.info(f"SupabaseStore initialized: {self.url}")

    async def _insert(self, table: str, payload: Any) -> None:
        try:
            response = await self.client.post(
                f"/{table}",
                json=payload,
                headers={"Prefer": "return=minimal"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Supabase insert failed: {table} - {e}")
            raise

    async def insert_action(self, action: AgentAction) -> None:
        await self._insert("agent_actions", {
            "agent_name": action.agent_name,
            "action_type": action.action_type,
            "details": action.details,
            "created_at": action.timestamp.isoformat(),
        })

    async def insert_yield_reports(self, rows: List[Dict[str, Any]]) -> None:
        if rows:
            await self._insert("yield_reports", rows)

    async def upsert_goal(self, goal: Goal) -> Goal:
        try:
            response = await self.client.post(
                "/goals",
                params={"on_conflict": "id"},
                json=goal_to_row(goal),
                headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Supabase goal upsert failed: {e}")
            raise
        return goal

    async def get_goal(self, goal_id: str = "primary") -> Optional[Goal]:
        rows = await self._select("goals", {"id": f"eq.{goal_id}", "limit": "1"})
        return goal_from_row(rows[0]) if rows else None

    async def get_recent_actions(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self._select("agent_actions", {
            "select": "agent_name,action_type,details,created_at",
            "order": "created_at.desc",
            "limit": str(limit),
        })

    async def get_recent_yield_reports(self, limit: int = 50) -> List[Dict[str, Any]]:
        return await self._select("yield_reports", {
            "select": "protocol,name,type,chain,apy,tvl,risk,created_at",
            "order": "created_at.desc",
            "limit": str(limit),
        })

    async def _select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        try:
            response = await self.client.get(f"/{table}", params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.error(f"Supabase query failed: {table} - {e}")
            raise

    async def close(self) -> None:
        await self.client.aclose()
