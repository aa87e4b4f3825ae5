"""Balance monitor - reads the custodial SOL balance once per tick."""

import asyncio
import logging
from decimal import Decimal, ROUND_DOWN

from solders.pubkey import Pubkey
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed

from sentinel.core.audit import AuditLog

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
_SOL_QUANTUM = Decimal("0.000000001")


def lamports_to_sol(lamports: int) -> float:
    """Convert lamports to SOL with fixed 1e-9 precision."""
    if lamports < 0:
        raise ValueError(f"Invalid lamports: {lamports}")
    sol = (Decimal(int(lamports)) / Decimal(LAMPORTS_PER_SOL)).quantize(_SOL_QUANTUM, rounding=ROUND_DOWN)
    return float(sol)


class BalanceMonitor:
    """
    Reads the watched wallet's balance.

    ``check()`` never raises: on an RPC failure it returns the last
    known-good balance and records a DEGRADED event.
    """

    AGENT_NAME = "BalanceMonitor"

    def __init__(
        self,
        rpc_client: AsyncClient,
        address: Pubkey,
        audit: AuditLog,
        timeout: float = 10.0,
    ):
        self.rpc_client = rpc_client
        self.address = address
        self.audit = audit
        self.timeout = timeout
        self.last_known: float = 0.0
        self._has_reading = False

    @property
    def has_reading(self) -> bool:
        """True once any balance query has succeeded."""
        return self._has_reading

    async def check(self) -> float:
        """Return the current balance in SOL."""
        try:
            response = await asyncio.wait_for(
                self.rpc_client.get_balance(self.address, commitment=Confirmed),
                timeout=self.timeout,
            )
            balance = lamports_to_sol(response.value)
        except Exception as e:
            logger.warning(
                f"Balance query failed for {self.address}: {e!r}; "
                f"using last known balance {self.last_known:.9f} SOL"
            )
            await self.audit.record(self.AGENT_NAME, "DEGRADED", {
                "address": str(self.address),
                "error": str(e) or type(e).__name__,
                "fallback_balance": self.last_known,
                "has_reading": self._has_reading,
            })
            return self.last_known

        self.last_known = balance
        self._has_reading = True
        logger.info(f"Current balance: {balance:.4f} SOL")

        await self.audit.record(self.AGENT_NAME, "BALANCE_CHECK", {
            "address": str(self.address),
            "balance": balance,
        })
        return balance
