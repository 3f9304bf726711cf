"""
Per-contract protection lifecycle.

    UNREGISTERED -> SCANNING -> REGISTERED -> PROTECTED <-> PAUSED

A failed scan still reaches REGISTERED, flagged reduced-confidence.
REGISTERED -> PROTECTED needs a read-only confirmation that the executor
identity holds the pauser role. PROTECTED <-> PAUSED follows on-chain reads
only; this system never unpauses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

import structlog
from web3 import Web3
from web3.exceptions import Web3Exception

from sentinel_shield.errors import LifecycleError, ScanUnavailable
from sentinel_shield.events import MonitoredContract, ThreatEvent
from sentinel_shield.inference.chain import PauseChain
from sentinel_shield.registry.scanner import ContractScanner, ScanResult


logger = structlog.get_logger()


class ProtectionState(Enum):
    UNREGISTERED = "unregistered"
    SCANNING = "scanning"
    REGISTERED = "registered"
    PROTECTED = "protected"
    PAUSED = "paused"


_TRANSITIONS = {
    ProtectionState.UNREGISTERED: {ProtectionState.SCANNING, ProtectionState.REGISTERED},
    ProtectionState.SCANNING: {ProtectionState.REGISTERED, ProtectionState.UNREGISTERED},
    ProtectionState.REGISTERED: {ProtectionState.PROTECTED, ProtectionState.UNREGISTERED},
    ProtectionState.PROTECTED: {ProtectionState.PAUSED, ProtectionState.REGISTERED, ProtectionState.UNREGISTERED},
    ProtectionState.PAUSED: {ProtectionState.PROTECTED, ProtectionState.UNREGISTERED},
}


@dataclass
class ContractLifecycle:
    address: str
    owner: str = ""
    state: ProtectionState = ProtectionState.UNREGISTERED
    scan: ScanResult | None = None
    reduced_confidence: bool = False
    contract: MonitoredContract | None = None
    history: list[ProtectionState] = field(default_factory=list)

    def transition(self, target: ProtectionState) -> None:
        if target is self.state:
            return
        if target not in _TRANSITIONS[self.state]:
            raise LifecycleError(f"{self.address}: {self.state.value} -> {target.value} is not allowed")
        logger.info("lifecycle_transition", contract=self.address, source=self.state.value, target=target.value)
        self.history.append(self.state)
        self.state = target

    @property
    def is_monitored(self) -> bool:
        return self.state in (ProtectionState.REGISTERED, ProtectionState.PROTECTED, ProtectionState.PAUSED)

    def to_dict(self) -> dict[str, Any]:
        data = self.contract.to_dict() if self.contract else {"address": self.address}
        data.update({
            "state": self.state.value,
            "reducedConfidence": self.reduced_confidence,
            "scan": self.scan.to_dict() if self.scan else None,
        })
        return data


class ProtectionRegistry:
    """Owns every ContractLifecycle, keyed by lower-cased address."""

    def __init__(self, chain: PauseChain | None = None, scanner: ContractScanner | None = None):
        self.chain = chain
        self.scanner = scanner
        self._contracts: dict[str, ContractLifecycle] = {}

    @staticmethod
    def _key(address: str) -> str:
        return address.lower()

    def get(self, address: str) -> ContractLifecycle | None:
        return self._contracts.get(self._key(address))

    def require(self, address: str) -> ContractLifecycle:
        lifecycle = self.get(address)
        if lifecycle is None:
            raise LifecycleError(f"{address} is not registered")
        return lifecycle

    def is_monitored(self, address: str | None) -> bool:
        if not address:
            return False
        lifecycle = self.get(address)
        return lifecycle is not None and lifecycle.is_monitored

    @property
    def lifecycles(self) -> list[ContractLifecycle]:
        return list(self._contracts.values())

    @property
    def contracts(self) -> list[MonitoredContract]:
        return [lc.contract for lc in self._contracts.values() if lc.contract is not None]

    async def register(self, address: str, owner: str = "") -> ContractLifecycle:
        if not Web3.is_address(address):
            raise LifecycleError(f"Invalid contract address: {address}")

        lifecycle = self.get(address)
        if lifecycle is not None and lifecycle.is_monitored:
            return lifecycle
        lifecycle = ContractLifecycle(address=Web3.to_checksum_address(address), owner=owner)
        self._contracts[self._key(address)] = lifecycle

        lifecycle.transition(ProtectionState.SCANNING)
        if self.scanner is None:
            lifecycle.reduced_confidence = True
        else:
            try:
                lifecycle.scan = await self.scanner.scan(lifecycle.address)
            except ScanUnavailable as e:
                lifecycle.reduced_confidence = True
                logger.warning("scan_unavailable", contract=lifecycle.address, reason=str(e))

        self._admit(lifecycle)
        await self.check_permission(lifecycle.address)
        return lifecycle

    def adopt(self, address: str, owner: str = "") -> ContractLifecycle:
        """Track a contract already registered elsewhere (chain log or INIT), skipping the scan."""
        lifecycle = self.get(address)
        if lifecycle is not None and lifecycle.is_monitored:
            return lifecycle
        lifecycle = ContractLifecycle(address=address, owner=owner, reduced_confidence=True)
        self._contracts[self._key(address)] = lifecycle
        self._admit(lifecycle)
        return lifecycle

    def _admit(self, lifecycle: ContractLifecycle) -> None:
        lifecycle.transition(ProtectionState.REGISTERED)
        lifecycle.contract = MonitoredContract(address=lifecycle.address, owner=lifecycle.owner)

    def seed(self, contracts: Iterable[Any]) -> list[ContractLifecycle]:
        """Adopt a contract list from a monitoring service INIT or the on-chain registry."""
        adopted = []
        for entry in contracts:
            if isinstance(entry, str):
                address, owner = entry, ""
            elif isinstance(entry, dict):
                address = entry.get("address") or entry.get("contractAddress") or ""
                owner = entry.get("owner", "")
            else:
                continue
            if Web3.is_address(address):
                adopted.append(self.adopt(address, owner))
        logger.info("registry_seeded", contracts=len(adopted))
        return adopted

    async def check_permission(self, address: str) -> bool:
        """Read-only pauser role check; promotes REGISTERED to PROTECTED."""
        lifecycle = self.require(address)
        if self.chain is None:
            return False
        try:
            granted = await self.chain.has_pauser_role(lifecycle.address)
        except (Web3Exception, ValueError, OSError) as e:
            logger.warning("role_check_failed", contract=lifecycle.address, error=str(e))
            return False

        if not granted:
            if lifecycle.state is ProtectionState.PROTECTED:
                lifecycle.transition(ProtectionState.REGISTERED)
            logger.warning("pauser_role_missing", contract=lifecycle.address, executor=self.chain.executor_identity)
            return False

        if lifecycle.state is ProtectionState.REGISTERED:
            lifecycle.transition(ProtectionState.PROTECTED)
        await self.refresh(lifecycle.address)
        return True

    async def refresh(self, address: str) -> bool | None:
        """Re-read the paused flag from chain."""
        lifecycle = self.get(address)
        if lifecycle is None or self.chain is None:
            return None
        try:
            paused = await self.chain.is_paused(lifecycle.address)
        except (Web3Exception, ValueError, OSError) as e:
            logger.warning("paused_state_refresh_failed", contract=lifecycle.address, error=str(e))
            return None
        self.apply_paused_state(lifecycle.address, paused)
        return paused

    async def refresh_all(self) -> None:
        for lifecycle in self.lifecycles:
            if lifecycle.state is ProtectionState.REGISTERED:
                await self.check_permission(lifecycle.address)
            elif lifecycle.is_monitored:
                await self.refresh(lifecycle.address)

    def apply_paused_state(self, address: str, paused: bool) -> None:
        """Record an authoritative on-chain paused reading."""
        lifecycle = self.get(address)
        if lifecycle is None or lifecycle.contract is None:
            return
        lifecycle.contract.is_paused = paused
        if paused and lifecycle.state is ProtectionState.PROTECTED:
            lifecycle.transition(ProtectionState.PAUSED)
        elif not paused and lifecycle.state is ProtectionState.PAUSED:
            lifecycle.transition(ProtectionState.PROTECTED)

    def deregister(self, address: str) -> None:
        lifecycle = self.require(address)
        lifecycle.transition(ProtectionState.UNREGISTERED)
        del self._contracts[self._key(address)]
        logger.info("contract_deregistered", contract=lifecycle.address)

    def record_event(self, event: ThreatEvent) -> None:
        lifecycle = self.get(event.contract_address) if event.contract_address else None
        if lifecycle is not None and lifecycle.contract is not None:
            lifecycle.contract.record_event(event)

    def __len__(self) -> int:
        return len(self._contracts)
