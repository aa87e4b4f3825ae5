"""
Audit trail writer.

Every component reports lifecycle events through ``AuditLog``. Each write
runs as a background task bounded by a timeout; callers wait at most a short
grace period for it and failures are swallowed with a local warning, so a
slow or broken store never stalls the decision and execution path.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, Set

from sentinel.core.database import yield_report_row
from sentinel.core.models import AgentAction, YieldOpportunity

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Fire-and-forget writer for the append-only ``agent_actions`` and
    ``yield_reports`` stores.

    Args:
        store: ``Database`` or ``SupabaseStore``; ``None`` keeps events in
            the local log only
        timeout: Seconds allowed for a single write
        wait: Seconds a caller waits for its write before moving on. While
            earlier writes are still outstanding the caller does not wait.
    """

    def __init__(self, store=None, timeout: float = 5.0, chain: str = "Solana", wait: float = 0.05):
        self.store = store
        self.timeout = timeout
        self.chain = chain
        self.wait = wait
        self.failed_writes = 0
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending_writes(self) -> int:
        return sum(1 for task in self._pending if not task.done())

    async def record(
        self,
        agent_name: str,
        action_type: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Append one event. Returns True if the row was persisted before the
        caller stopped waiting.
        """
        action = AgentAction(agent_name=agent_name, action_type=action_type, details=dict(details or {}))
        logger.debug(f"[{agent_name}] {action_type}: {action.details}")

        if self.store is None:
            return False
        return await self._submit(lambda: self.store.insert_action(action), f"{agent_name}/{action_type}")

    async def record_yield_reports(self, opportunities: Iterable[YieldOpportunity]) -> bool:
        rows = [yield_report_row(opp, self.chain) for opp in opportunities]
        if self.store is None or not rows:
            return False
        return await self._submit(lambda: self.store.insert_yield_reports(rows), f"yield_reports[{len(rows)}]")

    async def drain(self) -> None:
        """Wait for every outstanding write to finish or time out."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _submit(self, write, label: str) -> bool:
        backlog = self.pending_writes > 0
        task = asyncio.create_task(self._write(write, label), name=f"audit:{label}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        if backlog or self.wait <= 0:
            return False
        done, _ = await asyncio.wait({task}, timeout=self.wait)
        return task in done and task.result()

    async def _write(self, write, label: str) -> bool:
        try:
            await asyncio.wait_for(write(), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            self.failed_writes += 1
            logger.warning(f"Audit write timed out after {self.timeout}s: {label}")
        except Exception as e:
            self.failed_writes += 1
            logger.warning(f"Audit write failed ({label}): {e}")
        return False
