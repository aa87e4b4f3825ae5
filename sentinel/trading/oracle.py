"""
Decision oracle

Asks an external reasoning model what to do with the current opportunities
and validates its reply against a closed schema. Anything that does not
validate resolves to HOLD.
"""

import asyncio
import json
import logging
from typing import Any, Optional, Sequence

from sentinel.core.audit import AuditLog
from sentinel.core.models import (
    FAIL_SAFE_DECISION,
    DecisionResult,
    Invalid,
    StrategyAction,
    StrategyDecision,
    Valid,
    WalletState,
    YieldOpportunity,
)
from sentinel.logging_config import get_activity_logger

logger = logging.getLogger(__name__)
activity_logger = get_activity_logger()


SYSTEM_PROMPT = """You are the strategy oracle of an autonomous Solana yield agent.
You receive the wallet state and the best yield opportunities currently available.
Pick at most one action for this cycle. Prefer capital preservation: choose HOLD
unless an opportunity clearly improves the expected yield at acceptable risk.

Reply with a single JSON object and nothing else:
{"advice": "<one or two sentences>", "pathway": "<the concrete steps>", "action": "SWAP|STAKE|DEPLOY|HOLD"}

STAKE moves SOL into liquid staking. DEPLOY moves SOL into a lending or liquidity
position. SWAP exchanges SOL for the best opportunity's token. HOLD does nothing."""


def _extract_json(content: str) -> str:
    """Strip markdown code fences or surrounding prose from a reply."""
    if "```json" in content:
        start = content.find("```json") + 7
        end = content.find("```", start)
        return content[start:end if end >= 0 else None].strip()
    if "```" in content:
        start = content.find("```") + 3
        end = content.find("```", start)
        return content[start:end if end >= 0 else None].strip()
    start = content.find("{")
    end = content.rfind("}") + 1
    if start >= 0 and end > start:
        return content[start:end]
    return content


def parse_strategy_decision(content: Any) -> DecisionResult:
    """
    Validate a raw oracle reply.

    The reply must be a JSON object with string ``advice``, ``pathway`` and
    ``action`` fields, where ``action`` is one of SWAP, STAKE, DEPLOY, HOLD
    (case and surrounding whitespace are ignored). Never raises.
    """
    if not isinstance(content, str) or not content.strip():
        return Invalid("empty reply")

    try:
        data = json.loads(_extract_json(content))
    except (json.JSONDecodeError, ValueError) as e:
        return Invalid(f"reply is not JSON: {e}")

    if not isinstance(data, dict):
        return Invalid("reply is not a JSON object")

    for key in ("advice", "pathway", "action"):
        if key not in data:
            return Invalid(f"missing field: {key}")
        if not isinstance(data[key], str):
            return Invalid(f"field {key} is not a string")

    action = data["action"].strip().upper()
    try:
        strategy_action = StrategyAction(action)
    except ValueError:
        return Invalid(f"unknown action: {data['action']!r}")

    return Valid(StrategyDecision(
        advice=data["advice"],
        pathway=data["pathway"],
        action=strategy_action,
    ))


def build_prompt(
    opportunities: Sequence[YieldOpportunity],
    wallet_state: WalletState,
    top_n: int = 5,
) -> str:
    """User prompt carrying the wallet state and the top-N summaries only."""
    payload = {
        "wallet": wallet_state.to_dict(),
        "opportunities": [opp.summary() for opp in list(opportunities)[:top_n]],
    }
    return json.dumps(payload, indent=2)


class DecisionOracle:
    """
    Consults the completion endpoint once per tick.

    Args:
        client: Completion client (``complete(system, user) -> str``), or
            None to run offline
        audit: Audit trail
        timeout: Seconds allowed for the call
        top_n: Number of opportunities described to the model
    """

    AGENT_NAME = "DecisionOracle"

    def __init__(
        self,
        client: Optional[Any],
        audit: AuditLog,
        timeout: float = 30.0,
        top_n: int = 5,
    ):
        self.client = client
        self.audit = audit
        self.timeout = timeout
        self.top_n = top_n

    @property
    def is_offline(self) -> bool:
        return self.client is None

    async def consult(
        self,
        opportunities: Sequence[YieldOpportunity],
        wallet_state: WalletState,
    ) -> StrategyDecision:
        """Return a validated decision, or the fail-safe HOLD."""
        if self.client is None:
            await self.audit.record(self.AGENT_NAME, "STRATEGY_DECISION", {
                "decision": FAIL_SAFE_DECISION.to_dict(),
                "valid": False,
                "offline": True,
            })
            activity_logger.log_decision(FAIL_SAFE_DECISION.action.value, "offline", valid=False)
            return FAIL_SAFE_DECISION

        prompt = build_prompt(opportunities, wallet_state, self.top_n)
        await self.audit.record(self.AGENT_NAME, "BRAIN_THINKING", {
            "provider": getattr(self.client, "name", type(self.client).__name__),
            "opportunities": min(len(opportunities), self.top_n),
            "balance_sol": wallet_state.balance_sol,
        })

        result = await self._ask(prompt)

        if isinstance(result, Valid):
            decision = result.decision
            logger.info(f"Oracle decision: {decision.action.value} - {decision.advice}")
            details = {"decision": decision.to_dict(), "valid": True}
        else:
            decision = FAIL_SAFE_DECISION
            logger.warning(f"Oracle reply rejected ({result.reason}), holding")
            details = {"decision": decision.to_dict(), "valid": False, "reason": result.reason}

        await self.audit.record(self.AGENT_NAME, "STRATEGY_DECISION", details)
        activity_logger.log_decision(decision.action.value, decision.advice, valid=isinstance(result, Valid))
        return decision

    async def _ask(self, prompt: str) -> DecisionResult:
        try:
            content = await asyncio.wait_for(
                self.client.complete(SYSTEM_PROMPT, prompt),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Oracle timed out after {self.timeout}s")
            return Invalid("timeout")
        except Exception as e:
            logger.error(f"Oracle call failed: {e}")
            return Invalid(f"provider error: {e}")
        return parse_strategy_decision(content)
