"""
DefiLlama yields scanner

Covers Solana protocols that have no dedicated adapter by reading the
public DefiLlama pools feed.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sentinel.core.models import OpportunityType, RiskLevel, YieldOpportunity
from sentinel.trading.scanner import OpportunityScanner, ScannerError

logger = logging.getLogger(__name__)


DEFILLAMA_POOLS_URL = "https://yields.llama.fi/pools"

PROJECT_TYPES = {
    "marinade-liquid-staking": OpportunityType.STAKING,
    "jito-liquid-staking": OpportunityType.STAKING,
    "jupiter-staked-sol": OpportunityType.STAKING,
    "sanctum-infinity": OpportunityType.STAKING,
    "blazestake": OpportunityType.STAKING,
    "marginfi": OpportunityType.LENDING,
    "marginfi-lending": OpportunityType.LENDING,
    "kamino-lend": OpportunityType.LENDING,
    "save": OpportunityType.LENDING,
    "solend": OpportunityType.LENDING,
    "drift-protocol": OpportunityType.LENDING,
    "orca-dex": OpportunityType.LIQUIDITY,
    "raydium-amm": OpportunityType.LIQUIDITY,
    "meteora-dlmm": OpportunityType.LIQUIDITY,
    "kamino-liquidity": OpportunityType.LIQUIDITY,
}


def project_type(project: str) -> OpportunityType:
    """Opportunity type for a DefiLlama project slug."""
    if project in PROJECT_TYPES:
        return PROJECT_TYPES[project]
    if "staking" in project or "staked" in project:
        return OpportunityType.STAKING
    if "lend" in project:
        return OpportunityType.LENDING
    if any(marker in project for marker in ("dex", "amm", "clmm", "dlmm", "liquidity")):
        return OpportunityType.LIQUIDITY
    return OpportunityType.FARMING


def pool_risk(pool: Dict[str, Any]) -> RiskLevel:
    if pool.get("ilRisk") == "yes":
        return RiskLevel.HIGH
    if pool.get("exposure") == "multi":
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class DefiLlamaScanner(OpportunityScanner):
    """
    Scanner over the DefiLlama yields feed.

    Args:
        chain: Chain name as DefiLlama spells it
        projects: Optional allow-list of project slugs
        min_pool_tvl: Pools below this TVL (USD) are skipped as noise
    """

    name = "defillama"

    def __init__(
        self,
        timeout: float = 10.0,
        chain: str = "Solana",
        projects: Optional[Iterable[str]] = None,
        min_pool_tvl: float = 100_000.0,
        url: str = DEFILLAMA_POOLS_URL,
    ):
        super().__init__(timeout)
        self.chain = chain
        self.projects = frozenset(projects) if projects else None
        self.min_pool_tvl = min_pool_tvl
        self.url = url

    async def fetch(self) -> Any:
        return await self._get_json(self.url)

    def parse(self, payload: Any) -> List[YieldOpportunity]:
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise ScannerError("DefiLlama response has no pool list")

        opportunities = []
        for pool in payload["data"]:
            if not isinstance(pool, dict) or pool.get("chain") != self.chain:
                continue
            project = pool.get("project") or ""
            if self.projects is not None and project not in self.projects:
                continue
            apy, tvl = pool.get("apy"), pool.get("tvlUsd")
            if apy is None or tvl is None or tvl < self.min_pool_tvl:
                continue
            try:
                opportunities.append(YieldOpportunity(
                    protocol=project,
                    name=str(pool.get("symbol") or project),
                    type=project_type(project),
                    apy=apy,
                    tvl=tvl,
                    risk=pool_risk(pool),
                    contract_address=None,
                    details={
                        "pool": pool.get("pool"),
                        "apy_base": pool.get("apyBase"),
                        "apy_reward": pool.get("apyReward"),
                        "underlying_tokens": pool.get("underlyingTokens") or [],
                        "stablecoin": bool(pool.get("stablecoin")),
                    },
                ))
            except (TypeError, ValueError) as e:
                logger.debug(f"Skipping DefiLlama pool {pool.get('pool')}: {e}")

        logger.info(f"DefiLlama: {len(opportunities)} {self.chain} pools")
        return opportunities
