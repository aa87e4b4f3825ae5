"""
Trade Executor for the Sentinel agent

Moves SOL into a selected opportunity:
- Jupiter quote and unsigned transaction build
- Local signing (the keypair never leaves this module)
- A single broadcast, then bounded confirmation polling
- Read-only mode when no signing key is configured

The transaction signature is known before broadcast. An ambiguous broadcast
failure is resolved by querying that signature's status; the transaction is
never sent twice.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, Optional, Set

from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from solana.rpc.async_api import AsyncClient
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts

from sentinel.core.audit import AuditLog
from sentinel.core.models import YieldOpportunity, utcnow
from sentinel.integrations.solana.jupiter import SOL_MINT, JupiterClient, SwapQuote
from sentinel.monitoring.balance_monitor import LAMPORTS_PER_SOL
from sentinel.logging_config import get_activity_logger

logger = logging.getLogger(__name__)
activity_logger = get_activity_logger()


class ExecutionStatus(str, Enum):
    CONFIRMED = "confirmed"
    READ_ONLY = "read_only"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


@dataclass
class ExecutionResult:
    """
    Outcome of one ``TradeExecutor.execute`` call.

    ``stage`` names the step that failed (route, amount, quote, build, sign,
    broadcast, confirm). ``signature`` is set once the transaction is signed.
    """
    status: ExecutionStatus
    opportunity: YieldOpportunity
    signature: Optional[str] = None
    quote: Optional[SwapQuote] = None
    error: Optional[str] = None
    stage: Optional[str] = None
    confirmation_attempts: int = 0
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "protocol": self.opportunity.protocol,
            "name": self.opportunity.name,
            "apy": self.opportunity.apy,
            "signature": self.signature,
            "quote": self.quote.to_dict() if self.quote else None,
            "error": self.error,
            "stage": self.stage,
            "confirmation_attempts": self.confirmation_attempts,
        }


class ErrorHandler:
    """
    Classifies broadcast errors.

    Only an error response from the RPC node proves the transaction was
    rejected. Anything else (transport failures wrapped in
    ``SolanaRpcException``, timeouts, dropped connections) leaves it unknown
    whether the signed bytes reached the cluster, so the signature must be
    checked before anything is decided.
    """

    REJECTION_ERRORS = (RPCException,)

    @staticmethod
    def is_ambiguous(error: BaseException) -> bool:
        return not isinstance(error, ErrorHandler.REJECTION_ERRORS)


def sol_to_lamports(amount_sol: float) -> int:
    lamports = (Decimal(str(amount_sol)) * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN)
    return int(lamports)


class TradeExecutor:
    """
    Executes a capital-moving transaction for a selected opportunity.

    Args:
        rpc_client: Solana RPC client
        jupiter: Jupiter quote and swap-build client
        signer: Signing keypair, or None for read-only mode
        audit: Audit trail
        slippage_bps: Slippage tolerance in basis points
        confirmation_retries: Number of confirmation polls after broadcast
        confirmation_interval: Seconds between polls
        rpc_timeout: Seconds allowed per RPC call
    """

    AGENT_NAME = "TradeExecutor"

    def __init__(
        self,
        rpc_client: AsyncClient,
        jupiter: JupiterClient,
        signer: Optional[Keypair],
        audit: AuditLog,
        slippage_bps: int = 50,
        confirmation_retries: int = 2,
        confirmation_interval: float = 2.0,
        rpc_timeout: float = 10.0,
    ):
        self.rpc_client = rpc_client
        self.jupiter = jupiter
        self._signer = signer
        self.audit = audit
        self.slippage_bps = slippage_bps
        self.confirmation_retries = confirmation_retries
        self.confirmation_interval = confirmation_interval
        self.rpc_timeout = rpc_timeout
        self._read_only_logged = False
        self._in_flight: Set[asyncio.Task] = set()

        logger.info(
            f"TradeExecutor initialized: "
            f"mode={'read-only' if signer is None else 'signing'}, "
            f"slippage={slippage_bps}bps, "
            f"confirmation_retries={confirmation_retries}"
        )

    @property
    def is_read_only(self) -> bool:
        return self._signer is None

    async def execute(self, opportunity: YieldOpportunity, amount_sol: float) -> ExecutionResult:
        """
        Quote, build, sign, broadcast and confirm one trade.

        Never raises; failures come back as a ``failed`` result with the
        failing ``stage``.
        """
        if self._signer is None:
            if not self._read_only_logged:
                self._read_only_logged = True
                logger.warning("No signing key configured - trades are skipped (READ-ONLY mode)")
                await self.audit.record(self.AGENT_NAME, "READ_ONLY_MODE", {
                    "protocol": opportunity.protocol,
                    "name": opportunity.name,
                })
            return ExecutionResult(status=ExecutionStatus.READ_ONLY, opportunity=opportunity)

        output_mint = opportunity.details.get("output_mint")
        if not output_mint:
            return await self._fail(opportunity, "route", f"No executable route for {opportunity.protocol} {opportunity.name}")

        lamports = sol_to_lamports(amount_sol) if amount_sol > 0 else 0
        if lamports <= 0:
            return await self._fail(opportunity, "amount", f"Invalid trade amount: {amount_sol} SOL")

        try:
            quote = await self.jupiter.get_quote(SOL_MINT, output_mint, lamports, self.slippage_bps)
        except Exception as e:
            return await self._fail(opportunity, "quote", str(e))

        try:
            unsigned = await self.jupiter.build_swap_transaction(quote, str(self._signer.pubkey()))
        except Exception as e:
            return await self._fail(opportunity, "build", str(e), quote=quote)

        try:
            transaction = self.sign_transaction(unsigned)
        except Exception as e:
            return await self._fail(opportunity, "sign", str(e), quote=quote)

        signature = transaction.signatures[0]
        logger.info(f"Broadcasting {amount_sol} SOL -> {opportunity.protocol} {opportunity.name}: {signature}")

        # From here on the transaction may be live: finish even if the tick is cancelled
        task = asyncio.ensure_future(self._broadcast_and_confirm(opportunity, quote, transaction, signature))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    def sign_transaction(self, unsigned_b64: str) -> VersionedTransaction:
        """Decode a base64 versioned transaction and sign it with the local key."""
        raw = VersionedTransaction.from_bytes(base64.b64decode(unsigned_b64))
        return VersionedTransaction(raw.message, [self._signer])

    async def wait_in_flight(self) -> None:
        """Wait for shielded broadcasts that outlived a cancelled tick."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def _broadcast_and_confirm(
        self,
        opportunity: YieldOpportunity,
        quote: SwapQuote,
        transaction: VersionedTransaction,
        signature: Signature,
    ) -> ExecutionResult:
        try:
            await asyncio.wait_for(
                self.rpc_client.send_raw_transaction(
                    bytes(transaction),
                    opts=TxOpts(skip_preflight=True, max_retries=2),
                ),
                timeout=self.rpc_timeout,
            )
        except Exception as e:
            if not ErrorHandler.is_ambiguous(e):
                return await self._fail(opportunity, "broadcast", str(e) or type(e).__name__,
                                        quote=quote, signature=str(signature))
            logger.warning(f"Broadcast outcome unknown ({e!r}); checking status of {signature}")

        return await self._confirm(opportunity, quote, signature)

    async def _confirm(
        self,
        opportunity: YieldOpportunity,
        quote: SwapQuote,
        signature: Signature,
    ) -> ExecutionResult:
        attempts = 0
        for attempt in range(self.confirmation_retries):
            await asyncio.sleep(self.confirmation_interval)
            attempts = attempt + 1
            try:
                response = await asyncio.wait_for(
                    self.rpc_client.get_signature_statuses([signature]),
                    timeout=self.rpc_timeout,
                )
            except Exception as e:
                logger.debug(f"Error checking confirmation (attempt {attempts}): {e}")
                continue

            status = response.value[0] if response.value else None
            if status is None:
                continue
            if status.err:
                return await self._fail(opportunity, "confirm", f"Transaction failed: {status.err}",
                                        quote=quote, signature=str(signature), attempts=attempts)
            if status.confirmation_status in (
                TransactionConfirmationStatus.Confirmed,
                TransactionConfirmationStatus.Finalized,
            ):
                result = ExecutionResult(
                    status=ExecutionStatus.CONFIRMED,
                    opportunity=opportunity,
                    signature=str(signature),
                    quote=quote,
                    confirmation_attempts=attempts,
                )
                logger.info(f"Transaction confirmed: {signature}")
                activity_logger.log_execution(opportunity.protocol, result.status.value, signature=str(signature))
                await self.audit.record(self.AGENT_NAME, "TRADE_EXECUTION", result.to_dict())
                return result

        result = ExecutionResult(
            status=ExecutionStatus.UNCONFIRMED,
            opportunity=opportunity,
            signature=str(signature),
            quote=quote,
            confirmation_attempts=attempts,
        )
        logger.warning(f"Transaction not confirmed after {attempts} checks: {signature}")
        activity_logger.log_execution(opportunity.protocol, result.status.value, signature=str(signature))
        await self.audit.record(self.AGENT_NAME, "TRADE_EXECUTION", result.to_dict())
        return result

    async def _fail(
        self,
        opportunity: YieldOpportunity,
        stage: str,
        error: str,
        quote: Optional[SwapQuote] = None,
        signature: Optional[str] = None,
        attempts: int = 0,
    ) -> ExecutionResult:
        result = ExecutionResult(
            status=ExecutionStatus.FAILED,
            opportunity=opportunity,
            signature=signature,
            quote=quote,
            error=error,
            stage=stage,
            confirmation_attempts=attempts,
        )
        logger.error(f"Execution failed at {stage} for {opportunity.protocol} {opportunity.name}: {error}")
        activity_logger.log_execution(opportunity.protocol, result.status.value, signature=signature, error=error)
        await self.audit.record(self.AGENT_NAME, "EXECUTION_FAILED", result.to_dict())
        return result
