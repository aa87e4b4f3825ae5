"""
Kamino Finance scanner

Maps live Kamino liquidity strategies into opportunities.
"""

import logging
from typing import Any, Dict, List, Optional

from sentinel.core.models import OpportunityType, RiskLevel, YieldOpportunity
from sentinel.trading.scanner import OpportunityScanner, ScannerError

logger = logging.getLogger(__name__)


KAMINO_API = "https://api.kamino.finance"

STABLECOINS = {"USDC", "USDT", "PYUSD", "USDS", "UXD", "USDH", "EURC", "FDUSD"}
SOL_PEGGED = {"SOL", "WSOL", "MSOL", "JITOSOL", "BSOL", "JUPSOL", "INF", "HSOL", "BONKSOL", "JSOL", "STSOL"}

# Kamino's own classification, when present
STRATEGY_TYPE_RISK = {
    "STABLE": RiskLevel.LOW,
    "PEGGED": RiskLevel.MEDIUM,
    "NON_PEGGED": RiskLevel.HIGH,
}


def classify_pair(token_a: str, token_b: str, strategy_type: Optional[str] = None) -> RiskLevel:
    """Stable pairs are low risk, pegged pairs medium, anything else high."""
    if strategy_type and strategy_type.upper() in STRATEGY_TYPE_RISK:
        return STRATEGY_TYPE_RISK[strategy_type.upper()]
    a, b = token_a.upper(), token_b.upper()
    if a in STABLECOINS and b in STABLECOINS:
        return RiskLevel.LOW
    if a in SOL_PEGGED and b in SOL_PEGGED:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def _extract_apy(item: Dict[str, Any]) -> Optional[float]:
    """APY as a percent. Kamino reports fractions (0.12 == 12%)."""
    apy = item.get("apy")
    if isinstance(apy, dict):
        vault = apy.get("vault")
        if isinstance(vault, dict) and vault.get("totalApy") is not None:
            return float(vault["totalApy"]) * 100
        if apy.get("totalApy") is not None:
            return float(apy["totalApy"]) * 100
        return None
    if apy is None:
        return None
    return float(apy) * 100


class KaminoScanner(OpportunityScanner):
    """Scanner for Kamino liquidity vault strategies."""

    name = "kamino"

    def __init__(self, timeout: float = 10.0, api_base: str = KAMINO_API):
        super().__init__(timeout)
        self.api_base = api_base

    async def fetch(self) -> Any:
        return await self._get_json(
            f"{self.api_base}/strategies/metrics",
            params={"env": "mainnet-beta", "status": "LIVE"},
        )

    def parse(self, payload: Any) -> List[YieldOpportunity]:
        if isinstance(payload, dict):
            payload = payload.get("strategies", payload.get("data"))
        if not isinstance(payload, list):
            raise ScannerError("Kamino metrics response is not a list")

        opportunities = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            try:
                opportunity = self._parse_strategy(item)
            except (TypeError, ValueError, KeyError) as e:
                logger.debug(f"Skipping Kamino strategy {item.get('strategy')}: {e}")
                continue
            if opportunity is not None:
                opportunities.append(opportunity)

        logger.info(f"Kamino: {len(opportunities)} live strategies")
        return opportunities

    def _parse_strategy(self, item: Dict[str, Any]) -> Optional[YieldOpportunity]:
        apy = _extract_apy(item)
        tvl = item.get("totalValueLocked", item.get("tvl"))
        if apy is None or tvl is None:
            return None

        token_a = str(item.get("tokenA") or "?")
        token_b = str(item.get("tokenB") or "?")
        details = {
            "token_a": token_a,
            "token_b": token_b,
            "token_a_mint": item.get("tokenAMint"),
            "token_b_mint": item.get("tokenBMint"),
        }
        # Strategy share tokens are routable through Jupiter
        if item.get("sharesMint"):
            details["output_mint"] = item["sharesMint"]

        return YieldOpportunity(
            protocol="Kamino",
            name=f"{token_a}-{token_b} Vault",
            type=OpportunityType.LIQUIDITY,
            apy=apy,
            tvl=float(tvl),
            risk=classify_pair(token_a, token_b, item.get("strategyType")),
            contract_address=item.get("strategy"),
            details=details,
        )
