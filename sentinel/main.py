"""
Yield Sentinel - autonomous Solana yield agent

Command line entry point:

    yield-sentinel run       run ticks until interrupted
    yield-sentinel tick      run a single tick
    yield-sentinel balance   read the wallet balance and refresh the goal
    yield-sentinel scan      scan and print opportunities
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from solana.rpc.async_api import AsyncClient

from sentinel.core.audit import AuditLog
from sentinel.core.config import EnvironmentConfig, check_startup_requirements
from sentinel.core.database import Database
from sentinel.core.provider import build_completion_client
from sentinel.core.supabase_db import SupabaseStore
from sentinel.core.wallet import resolve_address, resolve_signer
from sentinel.integrations.solana.defillama import DefiLlamaScanner
from sentinel.integrations.solana.jupiter import JupiterClient
from sentinel.integrations.solana.kamino import KaminoScanner
from sentinel.integrations.solana.marinade import MarinadeScanner
from sentinel.logging_config import setup_logging
from sentinel.monitoring.balance_monitor import BalanceMonitor
from sentinel.trading.goals import GoalTracker
from sentinel.trading.loop import Orchestrator
from sentinel.trading.oracle import DecisionOracle
from sentinel.trading.scanner import OpportunityAggregator, OpportunityScanner
from sentinel.trading.transaction_executor import TradeExecutor

logger = logging.getLogger(__name__)


def build_store(config: EnvironmentConfig):
    backend = config.get_storage_backend()
    if backend == "supabase":
        return SupabaseStore(
            config.get("SUPABASE_URL"),
            config.get("SUPABASE_KEY"),
            timeout=config.get_persistence_timeout(),
        )
    return Database(config.get("DATABASE_PATH"))


def build_scanners(config: EnvironmentConfig) -> List[OpportunityScanner]:
    timeout = config.get_scanner_timeout()
    scanners: List[OpportunityScanner] = []
    if config.is_scanner_enabled("marinade"):
        scanners.append(MarinadeScanner(timeout=timeout))
    if config.is_scanner_enabled("kamino"):
        scanners.append(KaminoScanner(timeout=timeout))
    if config.is_scanner_enabled("defillama"):
        scanners.append(DefiLlamaScanner(
            timeout=timeout,
            chain=config.get("DEFILLAMA_CHAIN", "Solana"),
            projects=config.get_defillama_projects(),
        ))
    return scanners


class SentinelAgent:
    """Wires every component from configuration and owns their resources."""

    def __init__(self, config: EnvironmentConfig):
        self.config = config

        signer = resolve_signer(config.get("WALLET_PRIVATE_KEY"))
        self.address = resolve_address(signer, config.get("WALLET_ADDRESS"))

        self.store = build_store(config)
        self.audit = AuditLog(self.store, timeout=config.get_persistence_timeout())
        self.rpc_client = AsyncClient(config.get("SOLANA_RPC_URL"), timeout=config.get_rpc_timeout())

        balance_monitor = BalanceMonitor(
            self.rpc_client,
            self.address,
            self.audit,
            timeout=config.get_rpc_timeout(),
        )
        aggregator = OpportunityAggregator(
            build_scanners(config),
            self.audit,
            scanner_timeout=config.get_scanner_timeout(),
            deadline=config.get_scan_deadline(),
        )
        oracle = DecisionOracle(
            build_completion_client(config),
            self.audit,
            timeout=config.get_oracle_timeout(),
            top_n=config.get_oracle_top_n(),
        )
        executor = TradeExecutor(
            self.rpc_client,
            JupiterClient(api_key=config.get("JUPITER_API_KEY"), timeout=config.get_rpc_timeout()),
            signer,
            self.audit,
            slippage_bps=config.get_slippage_bps(),
            confirmation_retries=config.get_confirmation_retries(),
            confirmation_interval=config.get_confirmation_interval(),
            rpc_timeout=config.get_rpc_timeout(),
        )
        goal_tracker = GoalTracker(
            self.store,
            self.audit,
            target_balance=config.get_goal_target_sol(),
            default_apy=config.get_goal_assumed_apy(),
            timeout=config.get_persistence_timeout(),
        )

        self.orchestrator = Orchestrator(
            str(self.address),
            balance_monitor,
            aggregator,
            oracle,
            executor,
            goal_tracker,
            self.audit,
            tick_interval=config.get_tick_interval(),
            min_activity_balance=config.get_min_activity_balance(),
            trade_amount_sol=config.get_trade_amount_sol(),
            min_reserve_sol=config.get_min_reserve_sol(),
            filter_criteria=config.get_filter_criteria(),
            execution_enabled=config.is_execution_enabled(),
            initial_apy=config.get_goal_assumed_apy(),
        )

    async def close(self):
        """Cleanup resources."""
        try:
            await self.rpc_client.close()
        except Exception as e:
            logger.error(f"Error closing RPC client: {e}")
        await self.audit.drain()
        await self.store.close()
        logger.info("Cleanup complete")


async def run_forever(agent: SentinelAgent):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, agent.orchestrator.stop)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            pass
    await agent.orchestrator.start()


async def run_command(command: str, config: EnvironmentConfig) -> int:
    agent = SentinelAgent(config)
    try:
        if command == "run":
            await run_forever(agent)
        elif command == "tick":
            result = await agent.orchestrator.run_tick()
            print(f"Tick {result.tick}: balance={result.balance:.9f} SOL action={result.action}")
            if result.execution:
                print(f"Execution: {result.execution.status.value} {result.execution.signature or ''}")
            if result.goal:
                print(f"Goal: {result.goal.current_balance:.4f}/{result.goal.target_balance} SOL, "
                      f"{result.goal.days_to_goal} days, {result.goal.status.value}")
            return 1 if result.error else 0
        elif command == "balance":
            balance = await agent.orchestrator.check_balance()
            print(f"{agent.address}: {balance:.9f} SOL")
        elif command == "scan":
            opportunities = await agent.orchestrator.scan_once()
            if not opportunities:
                print("No opportunities found")
            for i, opp in enumerate(opportunities, 1):
                print(f"{i:3}. {opp.protocol:<28} {opp.name:<32} {opp.type.value:<10} "
                      f"{opp.apy:8.2f}% APY  TVL ${opp.tvl:,.0f}  {opp.risk.value} risk")
        return 0
    finally:
        await agent.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="yield-sentinel",
        description="Autonomous Solana yield agent",
    )
    parser.add_argument("command", choices=["run", "tick", "balance", "scan"], nargs="?", default="run")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point."""
    args = parse_args(argv)

    # Exits with status 1 on missing configuration, before anything starts
    config = check_startup_requirements(args.env_file)

    setup_logging(
        log_dir=config.get("LOG_DIR", "logs"),
        log_level=config.get("LOG_LEVEL", "INFO"),
        console_level=config.get("CONSOLE_LOG_LEVEL", "INFO"),
        enable_compression=True,
        compress_after_days=7,
        retention_days=30,
    )
    logger.info(f"Network: {config.get_network()}")

    try:
        return asyncio.run(run_command(args.command, config))
    except ValueError as e:
        logger.error(f"Failed to initialize agent: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Agent stopped")
        return 0


if __name__ == "__main__":
    sys.exit(main())
