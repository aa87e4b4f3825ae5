"""
Marinade Finance scanner

Reports the mSOL liquid staking yield. Staking is executed by swapping
SOL into mSOL through Jupiter, so the opportunity carries the mSOL mint.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from sentinel.core.models import OpportunityType, RiskLevel, YieldOpportunity
from sentinel.trading.scanner import OpportunityScanner, ScannerError

logger = logging.getLogger(__name__)


MARINADE_PROGRAM_ID = "MarBmsSgKXdrN1egZf5sqe1TMai9K1rChYNDJgjq7aD"
MSOL_MINT = "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So"

MARINADE_API = "https://api.marinade.finance"

# Used when the APY endpoint is unavailable; Marinade typically pays 7-9%
ESTIMATED_APY = 8.2

# USD denominated TVL fields, in order of preference
TVL_USD_FIELDS = ("total_virtual_staked_usd", "total_usd", "tvl_usd")


class MarinadeScanner(OpportunityScanner):
    """Scanner for Marinade mSOL liquid staking."""

    name = "marinade"

    def __init__(self, timeout: float = 10.0, api_base: str = MARINADE_API):
        super().__init__(timeout)
        self.api_base = api_base

    async def fetch(self) -> Dict[str, Any]:
        tlv, apy = await asyncio.gather(
            self._get_json(f"{self.api_base}/tlv"),
            self._fetch_apy(),
        )
        return {"tlv": tlv, "apy": apy}

    async def _fetch_apy(self) -> Optional[float]:
        try:
            data = await self._get_json(f"{self.api_base}/msol/apy/30d")
            # Reported as a fraction (0.072 == 7.2%)
            return float(data["value"]) * 100
        except Exception as e:
            logger.debug(f"Marinade APY unavailable, using estimate {ESTIMATED_APY}%: {e!r}")
            return None

    def parse(self, payload: Dict[str, Any]) -> List[YieldOpportunity]:
        tlv = payload.get("tlv")
        if not isinstance(tlv, dict):
            raise ScannerError("Marinade TLV response is not an object")

        tvl = None
        for field_name in TVL_USD_FIELDS:
            value = tlv.get(field_name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                tvl = float(value)
                break
        if tvl is None:
            raise ScannerError("Marinade TLV response has no USD total")

        apy = payload.get("apy")
        apy_source = "api"
        if apy is None or apy < 0:
            apy = ESTIMATED_APY
            apy_source = "estimate"

        return [
            YieldOpportunity(
                protocol="Marinade",
                name="mSOL Liquid Staking",
                type=OpportunityType.STAKING,
                apy=apy,
                tvl=tvl,
                risk=RiskLevel.LOW,
                contract_address=MARINADE_PROGRAM_ID,
                details={
                    "description": "Stake SOL to receive liquid mSOL tokens that earn staking rewards",
                    "output_mint": MSOL_MINT,
                    "apy_source": apy_source,
                    "min_deposit": 0.01,
                    "withdrawal_time": "Instant (via liquidity pool) or 2-3 epochs (unstake)",
                },
            )
        ]
