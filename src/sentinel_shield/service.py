"""
Service entry point.

Wires configuration, journal, analyzer, executor, connection manager, chain
watcher and HTTP endpoint together and runs until SIGINT/SIGTERM. Every
started component hands back a disposer; all of them run on shutdown.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Any, Awaitable, Callable

import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3

from sentinel_shield.api.client import EmergencyPauseClient
from sentinel_shield.api.server import ShieldApi
from sentinel_shield.config import ShieldConfig
from sentinel_shield.data.collectors.chain_watcher import ChainWatcher
from sentinel_shield.data.collectors.monitor_connection import ConnectionManager
from sentinel_shield.errors import ConfigurationError, LifecycleError
from sentinel_shield.inference.alerts import Notifier
from sentinel_shield.inference.chain import PauseChain, Web3PauseChain
from sentinel_shield.inference.executor import ActionExecutor, PauseExecutor
from sentinel_shield.inference.pipeline import ProtectionPipeline
from sentinel_shield.log import configure_logging
from sentinel_shield.models.decision import DecisionEngine
from sentinel_shield.models.heuristics import AttackerRegistry, TransactionAnalyzer
from sentinel_shield.persistence.journal import EventJournal
from sentinel_shield.persistence.store import create_store
from sentinel_shield.registry.lifecycle import ProtectionRegistry
from sentinel_shield.registry.scanner import SourceVerificationScanner


logger = structlog.get_logger()


Disposer = Callable[[], Awaitable[Any]]


class ShieldService:
    """Owns every long-lived component of a running instance."""

    def __init__(
        self,
        config: ShieldConfig,
        persist: bool = True,
        blacklist: list[str] | None = None,
    ):
        self.config = config
        self.notifier = Notifier()
        self.journal = EventJournal(
            create_store(config.journal.db_path if persist else None),
            config.journal,
        )

        self.chain: PauseChain | None = None
        if config.executor.rpc_url and config.executor.private_key:
            self.chain = Web3PauseChain(
                config.executor.rpc_url,
                config.executor.private_key,
                guardian_address=config.watcher.guardian_address,
            )

        self.scanner = SourceVerificationScanner(config.scanner) if config.scanner.etherscan_api_key else None
        self.registry = ProtectionRegistry(chain=self.chain, scanner=self.scanner)

        self.remote_client: EmergencyPauseClient | None = None
        executor: ActionExecutor | None = None
        if config.executor.mode == "remote":
            self.remote_client = EmergencyPauseClient(
                config.executor.api_url,
                config.executor.api_key or "",
                timeout=config.executor.request_timeout,
            )
            executor = self.remote_client
        elif self.chain is not None:
            executor = PauseExecutor(
                self.chain,
                confirmation_timeout=config.executor.confirmation_timeout,
                on_state_change=self.registry.apply_paused_state,
            )

        analyzer = TransactionAnalyzer(
            attackers=AttackerRegistry(blacklist or ()),
            config=config.analyzer,
            decision_engine=DecisionEngine(config.thresholds),
        )
        self.pipeline = ProtectionPipeline(
            analyzer=analyzer,
            journal=self.journal,
            registry=self.registry,
            executor=executor,
            notifier=self.notifier,
            auto_pause=config.executor.auto_pause,
        )

        self.connection = ConnectionManager(config.connection, notifier=self.notifier)
        self.connection.on_message(self.pipeline.handle_message)

        self.watcher: ChainWatcher | None = None
        watcher_cfg = config.watcher
        if config.executor.rpc_url and (
            watcher_cfg.registry_address or watcher_cfg.guardian_address or watcher_cfg.enable_block_scan
        ):
            w3 = self.chain.w3 if isinstance(self.chain, Web3PauseChain) else AsyncWeb3(
                AsyncHTTPProvider(config.executor.rpc_url)
            )
            self.watcher = ChainWatcher(w3, watcher_cfg, is_monitored=self.registry.is_monitored)
            self.watcher.on_event(self.pipeline.on_chain_event)
            self.watcher.on_transaction(self.pipeline.on_chain_transaction)
            self.pipeline.on_init(self.watcher.set_start_block)

        self.api: ShieldApi | None = None
        if config.api.api_key:
            self.api = ShieldApi(self.pipeline, config.api, status_provider=self.status)

        self._disposers: list[Disposer] = []

    def status(self) -> dict[str, Any]:
        status: dict[str, Any] = {"connection": self.connection.get_stats()}
        if self.watcher is not None:
            status["watcher"] = self.watcher.get_stats()
        if isinstance(self.pipeline.executor, PauseExecutor):
            status["executor"] = self.pipeline.executor.get_stats()
        return status

    async def start(self, contracts: list[str] | None = None) -> None:
        self.journal.load()

        for address in contracts or []:
            try:
                await self.registry.register(address)
            except LifecycleError as e:
                logger.error("contract_registration_failed", contract=address, error=str(e))

        if self.watcher is not None:
            self.registry.seed(await self.watcher.load_protected_contracts())
            await self.registry.refresh_all()

        self._disposers.append(await self.connection.connect())
        if self.watcher is not None:
            self._disposers.append(await self.watcher.watch())
        if self.api is not None:
            self._disposers.append(await self.api.start())
        if self.scanner is not None:
            self._disposers.append(self.scanner.close)
        if self.remote_client is not None:
            self._disposers.append(self.remote_client.close)

        logger.info(
            "shield_started",
            contracts=len(self.registry),
            executor=self.config.executor.mode if self.pipeline.executor else None,
            auto_pause=self.pipeline.auto_pause,
            thresholds=self.config.thresholds.to_dict(),
        )

    async def stop(self) -> None:
        while self._disposers:
            disposer = self._disposers.pop()
            try:
                await disposer()
            except Exception as e:
                logger.error("shutdown_step_failed", error=str(e))
        logger.info("shield_stopped", stats=self.pipeline.get_stats())


async def run(service: ShieldService, contracts: list[str] | None = None) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await service.start(contracts)
        await stop.wait()
    finally:
        await service.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Smart-contract threat detection and autonomous pause")
    parser.add_argument("--ws-url", help="Monitoring service websocket URL")
    parser.add_argument("--rpc-url", help="Ethereum RPC URL")
    parser.add_argument("--db-path", help="Journal database path")
    parser.add_argument("--no-persist", action="store_true", help="Keep the journal in memory only")
    parser.add_argument("--contract", action="append", default=[], help="Contract to protect (repeatable)")
    parser.add_argument("--blacklist", action="append", default=[], help="Known attacker address (repeatable)")
    parser.add_argument("--executor", choices=["direct", "remote"], help="Pause execution mode")
    parser.add_argument("--no-auto-pause", action="store_true", help="Alert only, never pause")
    parser.add_argument("--enable-block-scan", action="store_true", help="Analyze every block for monitored contracts")
    parser.add_argument("--api-port", type=int, help="HTTP endpoint port")
    parser.add_argument("--log-level", help="Log level")
    parser.add_argument("--json-logs", action="store_true", help="Render logs as JSON")
    return parser


def config_from_args(args: argparse.Namespace) -> ShieldConfig:
    config = ShieldConfig.from_env()
    if args.ws_url:
        config.connection.ws_url = args.ws_url
    if args.rpc_url:
        config.executor.rpc_url = args.rpc_url
    if args.db_path:
        config.journal.db_path = args.db_path
    if args.executor:
        config.executor.mode = args.executor
    if args.no_auto_pause:
        config.executor.auto_pause = False
    if args.enable_block_scan:
        config.watcher.enable_block_scan = True
    if args.api_port:
        config.api.port = args.api_port
    if args.log_level:
        config.log_level = args.log_level
    if args.json_logs:
        config.json_logs = True
    return config


def main():
    """Main entry point for the sentinel-shield service."""
    args = build_parser().parse_args()

    try:
        config = config_from_args(args)
        config.validate()
    except ConfigurationError as e:
        raise SystemExit(f"configuration error: {e}")

    configure_logging(config.log_level, config.json_logs)
    service = ShieldService(config, persist=not args.no_persist, blacklist=args.blacklist)
    asyncio.run(run(service, args.contract))


if __name__ == "__main__":
    main()
