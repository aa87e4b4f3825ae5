"""
Tests for the decision oracle and its reply parser.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, strategies as st

from sentinel.core.models import FAIL_SAFE_DECISION, Invalid, StrategyAction, Valid, WalletState
from sentinel.trading.oracle import DecisionOracle, build_prompt, parse_strategy_decision


WALLET = WalletState(address="Wallet1111", balance_sol=1.5)


class TestParseStrategyDecision:

    def test_valid_reply(self):
        result = parse_strategy_decision(json.dumps({
            "advice": "Stake idle SOL",
            "pathway": "SOL -> mSOL",
            "action": "STAKE",
        }))

        assert isinstance(result, Valid)
        assert result.decision.action == StrategyAction.STAKE
        assert result.decision.pathway == "SOL -> mSOL"

    def test_action_is_normalised(self):
        result = parse_strategy_decision('{"advice": "", "pathway": "", "action": "  deploy "}')
        assert isinstance(result, Valid)
        assert result.decision.action == StrategyAction.DEPLOY

    def test_markdown_fenced_reply(self):
        content = 'Here you go:\n```json\n{"advice": "a", "pathway": "b", "action": "HOLD"}\n```'
        result = parse_strategy_decision(content)
        assert isinstance(result, Valid)
        assert result.decision.action == StrategyAction.HOLD

    def test_missing_action(self):
        result = parse_strategy_decision('{"advice": "x", "pathway": "y"}')
        assert isinstance(result, Invalid)
        assert "action" in result.reason

    def test_unknown_action(self):
        result = parse_strategy_decision('{"advice": "x", "pathway": "y", "action": "YOLO"}')
        assert isinstance(result, Invalid)
        assert "YOLO" in result.reason

    def test_wrong_type(self):
        result = parse_strategy_decision('{"advice": 3, "pathway": "y", "action": "HOLD"}')
        assert isinstance(result, Invalid)

    def test_not_json(self):
        assert isinstance(parse_strategy_decision("I think you should stake."), Invalid)

    def test_array_reply(self):
        assert isinstance(parse_strategy_decision('[{"action": "HOLD"}]'), Invalid)

    def test_empty_and_none(self):
        assert isinstance(parse_strategy_decision(""), Invalid)
        assert isinstance(parse_strategy_decision(None), Invalid)

    @given(st.text())
    def test_never_raises(self, content):
        result = parse_strategy_decision(content)
        assert isinstance(result, (Valid, Invalid))


class TestBuildPrompt:

    def test_only_top_n_summaries(self, make_opportunity):
        opps = [make_opportunity(protocol=f"P{i}", apy=10 - i, secret="x") for i in range(8)]
        payload = json.loads(build_prompt(opps, WALLET, top_n=5))

        assert len(payload["opportunities"]) == 5
        assert payload["opportunities"][0]["protocol"] == "P0"
        assert set(payload["opportunities"][0]) == {"protocol", "name", "type", "apy", "tvl", "risk"}
        assert payload["wallet"] == {"address": "Wallet1111", "balance_sol": 1.5}


class TestDecisionOracle:

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.name = "test:model"
        client.complete = AsyncMock(
            return_value='{"advice": "Stake it", "pathway": "SOL -> mSOL", "action": "STAKE"}'
        )
        return client

    @pytest.mark.asyncio
    async def test_consult_valid(self, client, audit, memory_store, make_opportunity):
        oracle = DecisionOracle(client, audit)
        decision = await oracle.consult([make_opportunity()], WALLET)

        assert decision.action == StrategyAction.STAKE
        client.complete.assert_awaited_once()
        assert memory_store.action_types() == ["BRAIN_THINKING", "STRATEGY_DECISION"]
        assert memory_store.actions_of("STRATEGY_DECISION")[0].details["valid"] is True

    @pytest.mark.asyncio
    async def test_invalid_reply_holds(self, client, audit, memory_store, make_opportunity):
        client.complete.return_value = '{"advice": "x", "pathway": "y", "action": "BUY"}'
        decision = await DecisionOracle(client, audit).consult([make_opportunity()], WALLET)

        assert decision == FAIL_SAFE_DECISION
        details = memory_store.actions_of("STRATEGY_DECISION")[0].details
        assert details["valid"] is False
        assert "BUY" in details["reason"]

    @pytest.mark.asyncio
    async def test_provider_error_holds(self, client, audit, make_opportunity):
        client.complete.side_effect = RuntimeError("503 Service Unavailable")
        decision = await DecisionOracle(client, audit).consult([make_opportunity()], WALLET)
        assert decision == FAIL_SAFE_DECISION

    @pytest.mark.asyncio
    async def test_timeout_holds(self, client, audit, make_opportunity):
        async def slow(*args):
            await asyncio.sleep(5)

        client.complete = slow
        decision = await DecisionOracle(client, audit, timeout=0.05).consult([make_opportunity()], WALLET)
        assert decision.action == StrategyAction.HOLD
        assert decision.advice == "<provider unavailable>"

    @pytest.mark.asyncio
    async def test_offline_makes_no_call(self, audit, memory_store, make_opportunity):
        oracle = DecisionOracle(None, audit)
        decision = await oracle.consult([make_opportunity()], WALLET)

        assert oracle.is_offline
        assert decision == FAIL_SAFE_DECISION
        assert memory_store.action_types() == ["STRATEGY_DECISION"]
        assert memory_store.actions[0].details["offline"] is True
