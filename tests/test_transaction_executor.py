"""
Unit tests for TradeExecutor

Tests read-only mode, the quote/build/sign/broadcast/confirm pipeline,
ambiguous broadcast handling and cancellation shielding.
"""

import asyncio
import base64
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from sentinel.integrations.solana.jupiter import SOL_MINT, JupiterError, SwapQuote
from sentinel.integrations.solana.marinade import MSOL_MINT
from sentinel.trading.transaction_executor import (
    ErrorHandler,
    ExecutionStatus,
    TradeExecutor,
    sol_to_lamports,
)


def unsigned_transaction(payer: Keypair) -> str:
    """Base64 unsigned versioned transaction, as Jupiter returns it."""
    message = MessageV0.try_compile(
        payer=payer.pubkey(),
        instructions=[transfer(TransferParams(
            from_pubkey=payer.pubkey(),
            to_pubkey=Keypair().pubkey(),
            lamports=1_000,
        ))],
        address_lookup_table_accounts=[],
        recent_blockhash=Hash.default(),
    )
    tx = VersionedTransaction.populate(message, [Signature.default()])
    return base64.b64encode(bytes(tx)).decode()


def status_response(confirmation_status=TransactionConfirmationStatus.Confirmed, err=None):
    status = Mock()
    status.confirmation_status = confirmation_status
    status.err = err
    response = Mock()
    response.value = [status]
    return response


def transport_failure(error: Exception) -> SolanaRpcException:
    """A transport error as solana-py's async HTTP provider wraps it."""
    return SolanaRpcException(error, AsyncMock(), Mock(), Mock())


class TestErrorHandler:
    """Broadcast error classification."""

    def test_timeout_is_ambiguous(self):
        assert ErrorHandler.is_ambiguous(asyncio.TimeoutError()) is True

    def test_dropped_connection_is_ambiguous(self):
        assert ErrorHandler.is_ambiguous(httpx.RemoteProtocolError("Server disconnected")) is True
        assert ErrorHandler.is_ambiguous(httpx.ReadError("")) is True

    def test_wrapped_transport_error_is_ambiguous(self):
        error = transport_failure(httpx.RemoteProtocolError("Server disconnected"))
        assert ErrorHandler.is_ambiguous(error) is True

    def test_unrecognised_message_is_ambiguous(self):
        assert ErrorHandler.is_ambiguous(Exception("something odd happened")) is True

    def test_rpc_rejection_is_definite(self):
        assert ErrorHandler.is_ambiguous(RPCException("Transaction simulation failed: insufficient funds")) is False


class TestSolToLamports:

    def test_exact(self):
        assert sol_to_lamports(0.1) == 100_000_000
        assert sol_to_lamports(1.000000001) == 1_000_000_001

    def test_rounds_down(self):
        assert sol_to_lamports(0.0000000019) == 1


class TestTradeExecutor:
    """TradeExecutor pipeline."""

    @pytest.fixture
    def signer(self):
        return Keypair()

    @pytest.fixture
    def mock_rpc_client(self):
        client = AsyncMock()
        client.send_raw_transaction.return_value = Mock()
        client.get_signature_statuses.return_value = status_response()
        return client

    @pytest.fixture
    def mock_jupiter(self, signer):
        jupiter = AsyncMock()
        jupiter.get_quote.return_value = SwapQuote(
            input_mint=SOL_MINT,
            output_mint=MSOL_MINT,
            in_amount=100_000_000,
            out_amount=86_000_000,
            price_impact=0.0,
            route_plan=[],
            raw={"outAmount": "86000000"},
        )
        jupiter.build_swap_transaction.return_value = unsigned_transaction(signer)
        return jupiter

    @pytest.fixture
    def executor(self, mock_rpc_client, mock_jupiter, signer, audit):
        return TradeExecutor(
            mock_rpc_client,
            mock_jupiter,
            signer,
            audit,
            confirmation_retries=2,
            confirmation_interval=0,
        )

    @pytest.fixture
    def staking(self, make_opportunity):
        return make_opportunity(output_mint=MSOL_MINT)

    @pytest.mark.asyncio
    async def test_read_only_makes_no_calls(self, mock_rpc_client, mock_jupiter, audit, memory_store, staking):
        executor = TradeExecutor(mock_rpc_client, mock_jupiter, None, audit)

        first = await executor.execute(staking, 0.1)
        second = await executor.execute(staking, 0.1)

        assert first.status == ExecutionStatus.READ_ONLY
        assert second.status == ExecutionStatus.READ_ONLY
        assert mock_rpc_client.mock_calls == []
        assert mock_jupiter.mock_calls == []
        assert memory_store.action_types().count("READ_ONLY_MODE") == 1

    @pytest.mark.asyncio
    async def test_confirmed(self, executor, mock_rpc_client, mock_jupiter, signer, memory_store, staking):
        result = await executor.execute(staking, 0.1)

        assert result.status == ExecutionStatus.CONFIRMED
        assert result.success
        assert result.confirmation_attempts == 1
        mock_jupiter.get_quote.assert_awaited_once_with(SOL_MINT, MSOL_MINT, 100_000_000, 50)
        mock_jupiter.build_swap_transaction.assert_awaited_once_with(
            mock_jupiter.get_quote.return_value, str(signer.pubkey())
        )
        mock_rpc_client.send_raw_transaction.assert_awaited_once()

        sent = VersionedTransaction.from_bytes(mock_rpc_client.send_raw_transaction.call_args.args[0])
        assert str(sent.signatures[0]) == result.signature
        assert memory_store.actions_of("TRADE_EXECUTION")[0].details["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_missing_output_mint_fails_at_route(self, executor, mock_rpc_client, mock_jupiter, make_opportunity):
        result = await executor.execute(make_opportunity(), 0.1)

        assert result.status == ExecutionStatus.FAILED
        assert result.stage == "route"
        assert mock_jupiter.mock_calls == []
        assert mock_rpc_client.mock_calls == []

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, executor, mock_jupiter, staking):
        result = await executor.execute(staking, 0)
        assert result.stage == "amount"
        mock_jupiter.get_quote.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_quote_failure(self, executor, mock_jupiter, mock_rpc_client, memory_store, staking):
        mock_jupiter.get_quote.side_effect = JupiterError("No route found")

        result = await executor.execute(staking, 0.1)

        assert result.status == ExecutionStatus.FAILED
        assert result.stage == "quote"
        assert "No route" in result.error
        mock_rpc_client.send_raw_transaction.assert_not_awaited()
        assert memory_store.actions_of("EXECUTION_FAILED")[0].details["stage"] == "quote"

    @pytest.mark.asyncio
    async def test_build_failure(self, executor, mock_jupiter, staking):
        mock_jupiter.build_swap_transaction.side_effect = JupiterError("HTTP 500")
        result = await executor.execute(staking, 0.1)
        assert result.stage == "build"

    @pytest.mark.asyncio
    async def test_sign_failure_for_foreign_payer(self, executor, mock_jupiter, mock_rpc_client, staking):
        mock_jupiter.build_swap_transaction.return_value = unsigned_transaction(Keypair())

        result = await executor.execute(staking, 0.1)

        assert result.stage == "sign"
        mock_rpc_client.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("make_error", [
        lambda: asyncio.TimeoutError(),
        lambda: httpx.RemoteProtocolError("Server disconnected without sending a response."),
        lambda: httpx.ReadError(""),
        lambda: transport_failure(httpx.RemoteProtocolError("Server disconnected")),
    ], ids=["timeout", "remote-protocol", "read-error", "wrapped-transport"])
    async def test_uncertain_broadcast_checks_status(self, executor, mock_rpc_client, staking, make_error):
        mock_rpc_client.send_raw_transaction.side_effect = make_error()

        result = await executor.execute(staking, 0.1)

        assert result.status == ExecutionStatus.CONFIRMED
        assert mock_rpc_client.send_raw_transaction.await_count == 1
        (signatures,), _ = mock_rpc_client.get_signature_statuses.call_args
        assert str(signatures[0]) == result.signature

    @pytest.mark.asyncio
    async def test_definite_broadcast_failure(self, executor, mock_rpc_client, staking):
        mock_rpc_client.send_raw_transaction.side_effect = RPCException("Transaction simulation failed: insufficient funds")

        result = await executor.execute(staking, 0.1)

        assert result.status == ExecutionStatus.FAILED
        assert result.stage == "broadcast"
        assert result.signature is not None
        mock_rpc_client.get_signature_statuses.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_chain_error(self, executor, mock_rpc_client, staking):
        mock_rpc_client.get_signature_statuses.return_value = status_response(err="InstructionError")

        result = await executor.execute(staking, 0.1)

        assert result.status == ExecutionStatus.FAILED
        assert result.stage == "confirm"

    @pytest.mark.asyncio
    async def test_unconfirmed_after_bounded_polling(self, executor, mock_rpc_client, memory_store, staking):
        response = Mock()
        response.value = [None]
        mock_rpc_client.get_signature_statuses.return_value = response

        result = await executor.execute(staking, 0.1)

        assert result.status == ExecutionStatus.UNCONFIRMED
        assert result.confirmation_attempts == 2
        assert mock_rpc_client.get_signature_statuses.await_count == 2
        assert mock_rpc_client.send_raw_transaction.await_count == 1
        assert memory_store.actions_of("TRADE_EXECUTION")[0].details["status"] == "unconfirmed"

    @pytest.mark.asyncio
    async def test_processed_is_not_confirmed(self, executor, mock_rpc_client, staking):
        mock_rpc_client.get_signature_statuses.return_value = status_response(
            TransactionConfirmationStatus.Processed
        )
        result = await executor.execute(staking, 0.1)
        assert result.status == ExecutionStatus.UNCONFIRMED

    @pytest.mark.asyncio
    async def test_broadcast_survives_cancellation(self, mock_rpc_client, mock_jupiter, signer, audit, memory_store, staking):
        broadcast = asyncio.Event()

        async def send(*args, **kwargs):
            broadcast.set()
            return Mock()

        mock_rpc_client.send_raw_transaction.side_effect = send
        executor = TradeExecutor(
            mock_rpc_client, mock_jupiter, signer, audit,
            confirmation_retries=2, confirmation_interval=0.05,
        )

        task = asyncio.create_task(executor.execute(staking, 0.1))
        await broadcast.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await executor.wait_in_flight()
        await audit.drain()

        mock_rpc_client.get_signature_statuses.assert_awaited()
        assert memory_store.actions_of("TRADE_EXECUTION")[0].details["status"] == "confirmed"
