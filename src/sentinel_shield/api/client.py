from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
import structlog

from sentinel_shield.errors import ActionError, CredentialRejected, SubmissionFailed, classify_pause_error
from sentinel_shield.inference.chain import vulnerability_reference
from sentinel_shield.inference.executor import ActionExecutor, PauseResult


logger = structlog.get_logger()


class EmergencyPauseClient(ActionExecutor):
    """Executes pauses through a sentinel node's emergency-pause endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        source: str = "sentinel-shield",
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.source = source
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def execute_pause(self, contract_address: str, vuln_reference: str | None = None) -> PauseResult:
        vuln_ref = vulnerability_reference(vuln_reference)
        payload = {"target": contract_address, "vulnHash": vuln_ref, "source": self.source}
        session = await self._get_session()

        try:
            async with session.post(
                f"{self.api_url}/emergency-pause",
                json=payload,
                headers={"X-API-Key": self.api_key},
            ) as resp:
                status = resp.status
                data: Any = None if status == 401 else await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            return self._failed(SubmissionFailed(f"emergency-pause request failed: {e}", contract_address, vuln_ref))

        if status == 401:
            return self._failed(CredentialRejected("sentinel node rejected the API key", contract_address, vuln_ref))
        if not isinstance(data, dict):
            return self._failed(
                SubmissionFailed(f"unexpected response body (HTTP {status})", contract_address, vuln_ref)
            )

        result = PauseResult.from_dict(data)
        if not result.success and result.error and not result.failure_class:
            error = classify_pause_error(Exception(result.error), contract_address, vuln_ref)
            result = PauseResult.from_error(error, result.tx_hash)

        logger.info(
            "pause_request_completed",
            contract=contract_address,
            success=result.success,
            already_paused=result.already_paused,
            tx_hash=result.tx_hash,
            failure_class=result.failure_class,
        )
        return result

    def _failed(self, error: ActionError) -> PauseResult:
        logger.error("pause_request_failed", **error.to_dict())
        return PauseResult.from_error(error)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
