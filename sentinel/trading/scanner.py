"""Opportunity scanners and the aggregator that fans out to them."""

import asyncio
import logging
from abc import ABC, abstractmethod
from time import monotonic
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp

from sentinel.core.audit import AuditLog
from sentinel.core.models import FilterCriteria, YieldOpportunity
from sentinel.logging_config import get_activity_logger

logger = logging.getLogger(__name__)
activity_logger = get_activity_logger()


class ScannerError(Exception):
    """Raised inside an adapter when its source returns unusable data."""
    pass


class OpportunityScanner(ABC):
    """
    Base class for protocol adapters.

    Subclasses implement ``fetch()`` (network) and ``parse()`` (pure
    mapping into ``YieldOpportunity``). ``collect()`` runs both and raises
    on failure so the aggregator can record it; ``scan()`` wraps ``collect()``
    for standalone use and never propagates an exception.

    Results are point-in-time estimates, not firm quotes.
    """

    name = "scanner"

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    def get_name(self) -> str:
        return self.name

    async def collect(self) -> List[YieldOpportunity]:
        """Fetch and parse once. Raises on any failure; the aggregator audits it."""
        payload = await self.fetch()
        opportunities = self.parse(payload)
        for opp in opportunities:
            logger.debug(f"Found: {opp.protocol} {opp.name} - {opp.apy:.2f}% APY")
        return opportunities

    async def scan(self) -> List[YieldOpportunity]:
        """Standalone scan; any failure yields an empty list."""
        logger.info(f"Scanning {self.get_name()}...")
        try:
            return await self.collect()
        except Exception as e:
            logger.warning(f"{self.get_name()} scan failed: {e!r}")
            return []

    @abstractmethod
    async def fetch(self) -> Any:
        """Fetch the raw payload from the protocol endpoint."""

    @abstractmethod
    def parse(self, payload: Any) -> List[YieldOpportunity]:
        """Map a raw payload into opportunities. May raise on malformed bodies."""

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET a JSON document; non-200 responses raise ScannerError."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, params=params) as response:
                if response.status != 200:
                    raise ScannerError(f"{url} returned HTTP {response.status}")
                return await response.json(content_type=None)


def sort_by_apy_desc(opportunities: Iterable[YieldOpportunity]) -> List[YieldOpportunity]:
    """
    Sort by APY (highest first), ties by protocol name ascending.

    The sort is stable, so full ties keep their input order.
    """
    return sorted(opportunities, key=lambda opp: (-opp.apy, opp.protocol))


def filter_opportunities(
    opportunities: Sequence[YieldOpportunity],
    criteria: Optional[FilterCriteria],
) -> List[YieldOpportunity]:
    """Order-preserving subset of ``opportunities`` that satisfy ``criteria``."""
    if criteria is None:
        return list(opportunities)
    return [opp for opp in opportunities if criteria.matches(opp)]


class OpportunityAggregator:
    """
    Runs every registered scanner concurrently and merges the results.

    Each scanner gets its own timeout; the whole fan-out is bounded by
    ``deadline``. Scanners still pending at the deadline are cancelled and
    their results discarded. One failing adapter never affects the others.
    """

    AGENT_NAME = "OpportunityAggregator"

    def __init__(
        self,
        scanners: List[OpportunityScanner],
        audit: AuditLog,
        scanner_timeout: float = 10.0,
        deadline: float = 30.0,
    ):
        self.scanners = list(scanners)
        self.audit = audit
        self.scanner_timeout = scanner_timeout
        self.deadline = deadline
        logger.info(
            f"OpportunityAggregator initialized with {len(self.scanners)} scanners: "
            f"{', '.join(s.get_name() for s in self.scanners)}"
        )

    async def scan_all(self) -> List[YieldOpportunity]:
        """
        Scan all protocols and return opportunities sorted by APY.

        Returns:
            Union of every successful scanner's results, possibly empty
        """
        start = monotonic()
        if not self.scanners:
            logger.warning("No scanners registered")
            return []

        tasks = [
            asyncio.create_task(self._run_scanner(scanner), name=f"scan:{scanner.get_name()}")
            for scanner in self.scanners
        ]
        done, pending = await asyncio.wait(tasks, timeout=self.deadline)

        for task in pending:
            task.cancel()

        collected: List[YieldOpportunity] = []
        failures: List[Tuple[str, str]] = []

        # Walk in registration order so the merge is deterministic
        for scanner, task in zip(self.scanners, tasks):
            if task in pending:
                failures.append((scanner.get_name(), f"abandoned at {self.deadline}s scan deadline"))
                continue
            if task.cancelled():
                failures.append((scanner.get_name(), "cancelled"))
                continue
            error = task.exception()
            if error is not None:
                reason = "timed out" if isinstance(error, asyncio.TimeoutError) else repr(error)
                failures.append((scanner.get_name(), reason))
                continue
            collected.extend(task.result())

        for scanner_name, reason in failures:
            logger.warning(f"Scanner {scanner_name} failed: {reason}")
            await self.audit.record(self.AGENT_NAME, "SCAN_FAILED", {
                "scanner": scanner_name,
                "reason": reason,
            })

        ranked = sort_by_apy_desc(collected)
        duration = monotonic() - start
        activity_logger.log_scan(len(self.scanners), len(failures), len(ranked), duration)

        if ranked:
            logger.info(f"Found {len(ranked)} opportunities. Top 5:")
            for i, opp in enumerate(ranked[:5], 1):
                logger.info(f"{i}. {opp.protocol} - {opp.name}: {opp.apy:.2f}% APY ({opp.risk.value} risk)")
            await self.audit.record_yield_reports(ranked)

        await self.audit.record(self.AGENT_NAME, "OPPORTUNITY_SCAN", {
            "scanners": len(self.scanners),
            "failed": [name for name, _ in failures],
            "found": len(ranked),
            "best": ranked[0].summary() if ranked else None,
            "duration_seconds": round(duration, 3),
        })
        return ranked

    async def _run_scanner(self, scanner: OpportunityScanner) -> List[YieldOpportunity]:
        logger.info(f"Scanning {scanner.get_name()}...")
        return await asyncio.wait_for(scanner.collect(), timeout=self.scanner_timeout)

    @staticmethod
    def filter(
        opportunities: Sequence[YieldOpportunity],
        criteria: Optional[FilterCriteria],
    ) -> List[YieldOpportunity]:
        return filter_opportunities(opportunities, criteria)
