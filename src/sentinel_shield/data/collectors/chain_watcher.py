from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable

import structlog
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from sentinel_shield.config import WatcherConfig
from sentinel_shield.data.adapters import event_from_pause_log, event_from_registration_log
from sentinel_shield.events import ThreatEvent
from sentinel_shield.inference.chain import GUARDIAN_ABI, REGISTRY_ABI
from sentinel_shield.models.heuristics import ObservedReceipt, ObservedTransaction


logger = structlog.get_logger()


EventCallback = Callable[[ThreatEvent], Any]
TransactionCallback = Callable[[ObservedTransaction, "ObservedReceipt | None", str], Any]
Disposer = Callable[[], Awaitable[None]]


class ChainWatcher:
    """Polls registry and guardian logs, and optionally scans blocks.

    Block scanning hands every transaction sent to a monitored contract to
    the transaction callback. It is off unless ``enable_block_scan`` is set.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        config: WatcherConfig | None = None,
        is_monitored: Callable[[str], bool] = lambda address: False,
        max_blocks_per_poll: int = 500,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.w3 = w3
        self.config = config or WatcherConfig()
        self.is_monitored = is_monitored
        self.max_blocks_per_poll = max_blocks_per_poll
        self._sleep = sleep
        self._event_callbacks: list[EventCallback] = []
        self._tx_callbacks: list[TransactionCallback] = []
        self._task: asyncio.Task | None = None
        self.last_block: int | None = None
        self._stats = {"polls": 0, "logs": 0, "blocks_scanned": 0, "transactions": 0, "errors": 0}

        self._registry = (
            w3.eth.contract(address=Web3.to_checksum_address(self.config.registry_address), abi=REGISTRY_ABI)
            if self.config.registry_address
            else None
        )
        self._guardian = (
            w3.eth.contract(address=Web3.to_checksum_address(self.config.guardian_address), abi=GUARDIAN_ABI)
            if self.config.guardian_address
            else None
        )

    def on_event(self, callback: EventCallback) -> None:
        self._event_callbacks.append(callback)

    def on_transaction(self, callback: TransactionCallback) -> None:
        self._tx_callbacks.append(callback)

    def set_start_block(self, block_number: int) -> None:
        """Resume after ``block_number`` (e.g. from a monitoring INIT)."""
        if self.last_block is None or block_number > self.last_block:
            self.last_block = block_number

    async def load_protected_contracts(self, page_size: int = 100) -> list[dict[str, Any]]:
        """Active registrations already on the registry, for seeding at startup.

        Read failures are logged and yield whatever was collected so far.
        """
        if self._registry is None:
            return []

        contracts: list[dict[str, Any]] = []
        try:
            count = int(await self._registry.functions.getProtectedCount().call())
            for offset in range(0, count, page_size):
                addresses = await self._registry.functions.getProtectedContracts(offset, page_size).call()
                for address in addresses:
                    registration = await self._registry.functions.getRegistration(address).call()
                    is_active, _stake, _registered_at, owner = registration[:4]
                    if is_active:
                        contracts.append({"address": address, "owner": owner})
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
            self._stats["errors"] += 1
            logger.warning("protected_contracts_load_failed", error=str(e), loaded=len(contracts))
            return contracts

        logger.info("protected_contracts_loaded", registered=count, active=len(contracts))
        return contracts

    async def watch(self) -> Disposer:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._poll_loop())
            logger.info(
                "chain_watcher_started",
                registry=self.config.registry_address,
                guardian=self.config.guardian_address,
                block_scan=self.config.enable_block_scan,
            )
        return self.stop

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
            logger.info("chain_watcher_stopped", stats=self._stats)

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
                self._stats["errors"] += 1
                logger.warning("chain_poll_failed", error=str(e))
            await self._sleep(self.config.poll_interval)

    async def poll_once(self) -> int:
        """Process blocks after ``last_block`` up to head. Returns blocks covered."""
        self._stats["polls"] += 1
        head = await self.w3.eth.block_number
        if self.last_block is None:
            self.last_block = head
            return 0
        if head <= self.last_block:
            return 0

        from_block = self.last_block + 1
        to_block = min(head, self.last_block + self.max_blocks_per_poll)

        await self._poll_logs(from_block, to_block)
        if self.config.enable_block_scan:
            for number in range(from_block, to_block + 1):
                await self._scan_block(number)

        self.last_block = to_block
        return to_block - from_block + 1

    async def _poll_logs(self, from_block: int, to_block: int) -> None:
        if self._registry is not None:
            logs = await self._registry.events.ContractRegistered.get_logs(from_block=from_block, to_block=to_block)
            for log in logs:
                await self._emit(event_from_registration_log(log))

        if self._guardian is not None:
            logs = await self._guardian.events.EmergencyPauseTriggered.get_logs(
                from_block=from_block, to_block=to_block
            )
            for log in logs:
                await self._emit(event_from_pause_log(log))

    async def _scan_block(self, number: int) -> None:
        block = await self.w3.eth.get_block(number, full_transactions=True)
        self._stats["blocks_scanned"] += 1
        for raw in block.get("transactions", []):
            target = raw.get("to")
            if not target or not self.is_monitored(target):
                continue

            tx = ObservedTransaction.from_tx_data(raw)
            try:
                receipt = ObservedReceipt.from_receipt(await self.w3.eth.get_transaction_receipt(raw["hash"]))
            except (Web3Exception, ValueError) as e:
                logger.debug("receipt_fetch_failed", tx_hash=tx.hash, error=str(e))
                receipt = None

            self._stats["transactions"] += 1
            for callback in self._tx_callbacks:
                await self._call(callback, tx, receipt, target)

    async def _emit(self, event: ThreatEvent) -> None:
        self._stats["logs"] += 1
        for callback in self._event_callbacks:
            await self._call(callback, event)

    async def _call(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("watcher_callback_error", error=str(e))

    def get_stats(self) -> dict[str, Any]:
        return {**self._stats, "last_block": self.last_block}
