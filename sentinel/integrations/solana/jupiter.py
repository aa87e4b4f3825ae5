"""
Jupiter Aggregator client

Quotes SOL -> token routes and builds unsigned swap transactions.
Signing and broadcasting stay with the trade executor.

Uses the api.jup.ag endpoints; a free API key from https://portal.jup.ag
avoids the public endpoint's platform fee.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


JUPITER_API_BASE = "https://api.jup.ag"
SOL_MINT = "So11111111111111111111111111111111111111112"


class JupiterError(Exception):
    """Quote or swap-build request failed."""
    pass


@dataclass
class SwapQuote:
    """A route quote. ``raw`` is echoed back verbatim to build the swap."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact: float
    route_plan: List[Dict[str, Any]]
    raw: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "in_amount": self.in_amount,
            "out_amount": self.out_amount,
            "price_impact": self.price_impact,
            "hops": len(self.route_plan),
        }


class JupiterClient:
    """
    Async wrapper for the Jupiter swap API.

    Args:
        api_key: Optional Jupiter API key, sent as ``x-api-key``
        timeout: Seconds allowed per request
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        api_base: str = JUPITER_API_BASE,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")
        if not api_key:
            logger.warning(
                "Jupiter API key not provided. Using public endpoint with platform fee. "
                "Get a free API key at https://portal.jup.ag"
            )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.request(method, f"{self.api_base}{path}", **kwargs) as response:
                    if response.status != 200:
                        body = await response.text()
                        raise JupiterError(f"Jupiter {path} returned HTTP {response.status}: {body[:200]}")
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise JupiterError(f"Jupiter {path} request failed: {e}") from e
        if not isinstance(data, dict):
            raise JupiterError(f"Jupiter {path} returned a non-object body")
        return data

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount_lamports: int,
        slippage_bps: int = 50,
    ) -> SwapQuote:
        """
        Get the best route for swapping ``amount_lamports`` of ``input_mint``.

        Raises:
            JupiterError: If the request fails or the quote is unusable
        """
        logger.info(f"Getting quote for {amount_lamports} {input_mint} -> {output_mint}")
        data = await self._request("GET", "/swap/v1/quote", params={
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount_lamports)),
            "slippageBps": str(int(slippage_bps)),
        })

        try:
            quote = SwapQuote(
                input_mint=data.get("inputMint", input_mint),
                output_mint=data.get("outputMint", output_mint),
                in_amount=int(data.get("inAmount", amount_lamports)),
                out_amount=int(data["outAmount"]),
                price_impact=float(data.get("priceImpactPct") or 0),
                route_plan=list(data.get("routePlan") or []),
                raw=data,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise JupiterError(f"Malformed Jupiter quote: {e}") from e

        if quote.out_amount <= 0:
            raise JupiterError("Jupiter quote has no output")

        logger.info(f"Quote: {quote.in_amount} -> {quote.out_amount} (impact: {quote.price_impact}%)")
        return quote

    async def build_swap_transaction(self, quote: SwapQuote, user_public_key: str) -> str:
        """
        Request an unsigned versioned transaction for ``quote``.

        Returns:
            The base64 encoded transaction

        Raises:
            JupiterError: If the request fails or no transaction is returned
        """
        data = await self._request("POST", "/swap/v1/swap", json={
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        })
        swap_transaction = data.get("swapTransaction")
        if not swap_transaction:
            raise JupiterError("No swap transaction returned from Jupiter")
        return swap_transaction
