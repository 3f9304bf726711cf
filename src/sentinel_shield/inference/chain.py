"""
On-chain access to the pause primitive.

Two submission routes are supported: through a guardian contract's
``emergencyPause(target, vulnHash)`` when a guardian address is configured,
or directly through the target's ``pause()``. The paused state is always
read from the target's ``paused()`` view.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog
from eth_account import Account
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TimeExhausted


logger = structlog.get_logger()


PAUSER_ROLE = Web3.keccak(text="PAUSER_ROLE")
DEFAULT_VULNERABILITY_REFERENCE = Web3.keccak(text="sentinel_auto_pause").to_0x_hex()

PAUSABLE_ABI = [
    {"type": "function", "name": "paused", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "function", "name": "pause", "stateMutability": "nonpayable", "inputs": [], "outputs": []},
    {"type": "function", "name": "unpause", "stateMutability": "nonpayable", "inputs": [], "outputs": []},
    {"type": "function", "name": "hasRole", "stateMutability": "view",
     "inputs": [{"name": "role", "type": "bytes32"}, {"name": "account", "type": "address"}],
     "outputs": [{"name": "", "type": "bool"}]},
]

GUARDIAN_ABI = [
    {"type": "function", "name": "emergencyPause", "stateMutability": "nonpayable",
     "inputs": [{"name": "target", "type": "address"}, {"name": "vulnHash", "type": "bytes32"}],
     "outputs": []},
    {"type": "function", "name": "isPaused", "stateMutability": "view",
     "inputs": [{"name": "target", "type": "address"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "event", "name": "EmergencyPauseTriggered", "anonymous": False,
     "inputs": [
         {"name": "target", "type": "address", "indexed": True},
         {"name": "vulnHash", "type": "bytes32", "indexed": True},
         {"name": "expiresAt", "type": "uint256", "indexed": False},
         {"name": "sentinel", "type": "address", "indexed": True},
     ]},
]

REGISTRY_ABI = [
    {"type": "event", "name": "ContractRegistered", "anonymous": False,
     "inputs": [
         {"name": "contractAddr", "type": "address", "indexed": True},
         {"name": "owner", "type": "address", "indexed": True},
         {"name": "stake", "type": "uint256", "indexed": False},
     ]},
    {"type": "function", "name": "getProtectedCount", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "getProtectedContracts", "stateMutability": "view",
     "inputs": [{"name": "offset", "type": "uint256"}, {"name": "limit", "type": "uint256"}],
     "outputs": [{"name": "", "type": "address[]"}]},
    {"type": "function", "name": "getRegistration", "stateMutability": "view",
     "inputs": [{"name": "contractAddr", "type": "address"}],
     "outputs": [{"name": "", "type": "tuple", "components": [
         {"name": "isActive", "type": "bool"},
         {"name": "stakedAmount", "type": "uint256"},
         {"name": "registeredAt", "type": "uint256"},
         {"name": "owner", "type": "address"},
         {"name": "metadata", "type": "string"},
     ]}]},
]


def vulnerability_reference(label: str | bytes | None = None) -> str:
    """32-byte hex reference identifying the vulnerability behind a pause."""
    if label is None:
        return DEFAULT_VULNERABILITY_REFERENCE
    if isinstance(label, bytes):
        if len(label) == 32:
            return HexBytes(label).to_0x_hex()
        return Web3.keccak(label).to_0x_hex()
    if label.startswith("0x") and len(label) == 66:
        return label.lower()
    return Web3.keccak(text=label).to_0x_hex()


def is_vulnerability_reference(value: Any) -> bool:
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 66:
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


class PauseChain(ABC):
    """What the executor and lifecycle need from the chain."""

    @property
    @abstractmethod
    def executor_identity(self) -> str:
        """Address that must hold the pauser role on protected contracts."""

    @abstractmethod
    async def is_paused(self, contract_address: str) -> bool:
        pass

    @abstractmethod
    async def has_pauser_role(self, contract_address: str) -> bool:
        pass

    @abstractmethod
    async def submit_pause(self, contract_address: str, vuln_reference: str) -> str:
        """Sign and send the pause call; returns the transaction hash."""

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> bool | None:
        """True if mined successfully, False if reverted, None if still pending."""


class Web3PauseChain(PauseChain):
    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        guardian_address: str | None = None,
        gas_limit: int = 100_000,
        w3: AsyncWeb3 | None = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.guardian_address = Web3.to_checksum_address(guardian_address) if guardian_address else None
        self.gas_limit = gas_limit
        self._chain_id: int | None = None

    @property
    def executor_identity(self) -> str:
        return self.guardian_address or self.account.address

    def _pausable(self, contract_address: str) -> Any:
        return self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=PAUSABLE_ABI)

    def _guardian(self) -> Any:
        return self.w3.eth.contract(address=self.guardian_address, abi=GUARDIAN_ABI)

    async def is_paused(self, contract_address: str) -> bool:
        return bool(await self._pausable(contract_address).functions.paused().call())

    async def has_pauser_role(self, contract_address: str) -> bool:
        contract = self._pausable(contract_address)
        return bool(await contract.functions.hasRole(PAUSER_ROLE, self.executor_identity).call())

    async def submit_pause(self, contract_address: str, vuln_reference: str) -> str:
        if self._chain_id is None:
            self._chain_id = await self.w3.eth.chain_id

        if self.guardian_address:
            fn = self._guardian().functions.emergencyPause(
                Web3.to_checksum_address(contract_address),
                HexBytes(vuln_reference),
            )
        else:
            fn = self._pausable(contract_address).functions.pause()

        tx = await fn.build_transaction({
            "from": self.account.address,
            "nonce": await self.w3.eth.get_transaction_count(self.account.address, "pending"),
            "chainId": self._chain_id,
            "gas": self.gas_limit,
        })
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info("pause_submitted", contract=contract_address, tx_hash=tx_hash.to_0x_hex())
        return tx_hash.to_0x_hex()

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> bool | None:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(HexBytes(tx_hash), timeout=timeout)
        except TimeExhausted:
            return None
        return receipt["status"] == 1
