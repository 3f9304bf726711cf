from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import aiohttp
import structlog

from sentinel_shield.config import ScannerConfig
from sentinel_shield.errors import ScanUnavailable


logger = structlog.get_logger()


@dataclass(frozen=True)
class ScanResult:
    address: str
    contract_name: str
    source_code: str
    implementation: str | None = None

    @property
    def source_length(self) -> int:
        return len(self.source_code)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "contractName": self.contract_name,
            "sourceLength": self.source_length,
            "implementation": self.implementation,
        }


def parse_source_code(source_code: str) -> str:
    """Flatten multi-file standard-json sources into one text."""
    text = source_code.strip()
    if text.startswith("{{") and text.endswith("}}"):
        text = text[1:-1]
    if not (text.startswith("{") and "sources" in text):
        return source_code
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return source_code

    sources = parsed.get("sources")
    if not isinstance(sources, dict):
        return source_code
    parts = []
    for path, entry in sources.items():
        content = entry.get("content", "") if isinstance(entry, dict) else str(entry)
        parts.append(f"// File: {path}\n{content}")
    return "\n\n".join(parts)


class ContractScanner(ABC):
    @abstractmethod
    async def scan(self, contract_address: str) -> ScanResult:
        """Raises ScanUnavailable when the contract cannot be scanned."""


class SourceVerificationScanner(ContractScanner):
    """Checks an Etherscan-style explorer for verified source code."""

    cache_ttl = 300.0

    def __init__(self, config: ScannerConfig | None = None, session: aiohttp.ClientSession | None = None):
        self.config = config or ScannerConfig()
        self._session = session
        self._owns_session = session is None
        self._cache: dict[str, tuple[ScanResult, float]] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
            self._owns_session = True
        return self._session

    async def scan(self, contract_address: str, follow_proxy: bool = True) -> ScanResult:
        cache_key = f"{self.config.chain_id}:{contract_address.lower()}"
        cached = self._cache.get(cache_key)
        if cached and time.monotonic() - cached[1] < self.cache_ttl:
            logger.debug("scan_cache_hit", contract=contract_address)
            return cached[0]

        if not self.config.etherscan_api_key:
            raise ScanUnavailable("No explorer API key configured")

        params = {
            "chainid": str(self.config.chain_id),
            "module": "contract",
            "action": "getsourcecode",
            "address": contract_address,
            "apikey": self.config.etherscan_api_key,
        }
        session = await self._get_session()
        try:
            async with session.get(self.config.etherscan_url, params=params) as resp:
                if resp.status != 200:
                    raise ScanUnavailable(f"Explorer returned HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ScanUnavailable(f"Explorer request failed: {e}") from e

        result = (data.get("result") or [None])[0] if data.get("status") == "1" else None
        if not isinstance(result, dict):
            raise ScanUnavailable(data.get("message") or "Contract source code not verified")

        raw_source = (result.get("SourceCode") or "").strip()
        implementation = result.get("Implementation") or None
        if not raw_source:
            if implementation and follow_proxy:
                logger.info("scan_following_proxy", contract=contract_address, implementation=implementation)
                inner = await self.scan(implementation, follow_proxy=False)
                scan = ScanResult(contract_address, inner.contract_name, inner.source_code, implementation)
                self._cache[cache_key] = (scan, time.monotonic())
                return scan
            raise ScanUnavailable("Contract source code not verified")

        scan = ScanResult(
            address=contract_address,
            contract_name=result.get("ContractName", ""),
            source_code=parse_source_code(raw_source),
            implementation=implementation,
        )
        self._cache[cache_key] = (scan, time.monotonic())
        logger.info("scan_complete", contract=contract_address, name=scan.contract_name, length=scan.source_length)
        return scan

    def clear_cache(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
