from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import structlog
from web3.exceptions import Web3Exception

from sentinel_shield.errors import (
    ActionError,
    AlreadyPaused,
    SubmissionFailed,
    classify_pause_error,
)
from sentinel_shield.inference.chain import PauseChain, vulnerability_reference


logger = structlog.get_logger()


StateChangeCallback = Callable[[str, bool], None]


@dataclass(frozen=True)
class PauseResult:
    success: bool
    already_paused: bool = False
    tx_hash: str | None = None
    error: str | None = None
    failure_class: str | None = None
    pending: bool = False
    confirmed_paused: bool | None = None

    @classmethod
    def from_error(cls, error: ActionError, tx_hash: str | None = None) -> PauseResult:
        if isinstance(error, AlreadyPaused):
            return cls(success=True, already_paused=True, tx_hash=tx_hash, confirmed_paused=True)
        return cls(
            success=False,
            tx_hash=tx_hash,
            error=str(error),
            failure_class=error.failure_class,
        )

    @property
    def triggered(self) -> bool:
        """True only when our own transaction performed the pause."""
        return self.success and not self.already_paused and self.tx_hash is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.tx_hash:
            data["txHash"] = self.tx_hash
        if self.already_paused:
            data["alreadyPaused"] = True
        if self.error:
            data["error"] = self.error
            data["failureClass"] = self.failure_class
        if self.pending:
            data["pending"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PauseResult:
        return cls(
            success=bool(data.get("success")),
            already_paused=bool(data.get("alreadyPaused")),
            tx_hash=data.get("txHash"),
            error=data.get("error"),
            failure_class=data.get("failureClass"),
            pending=bool(data.get("pending")),
        )


class ActionExecutor(ABC):
    @abstractmethod
    async def execute_pause(self, contract_address: str, vuln_reference: str | None = None) -> PauseResult:
        pass


class PauseExecutor(ActionExecutor):
    """Invokes the pause primitive at most once per active threat.

    The paused state is read immediately before acting; an already paused
    contract never gets a second transaction. Concurrent requests for the
    same contract share one in-flight attempt. A submitted transaction that
    has not been mined yet is remembered per contract and re-checked instead
    of submitting another one. Failures are classified but never retried
    here.
    """

    def __init__(
        self,
        chain: PauseChain,
        confirmation_timeout: float = 120.0,
        on_state_change: StateChangeCallback | None = None,
        pending_recheck_timeout: float = 1.0,
    ):
        self.chain = chain
        self.confirmation_timeout = confirmation_timeout
        self.pending_recheck_timeout = pending_recheck_timeout
        self.on_state_change = on_state_change
        self._in_flight: dict[str, asyncio.Future[PauseResult]] = {}
        self._pending: dict[str, str] = {}
        self._stats = {
            "requests": 0,
            "submitted": 0,
            "already_paused": 0,
            "failed": 0,
            "pending": 0,
        }

    async def execute_pause(self, contract_address: str, vuln_reference: str | None = None) -> PauseResult:
        self._stats["requests"] += 1
        key = contract_address.lower()
        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug("pause_request_joined", contract=contract_address)
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(self._execute(contract_address, vulnerability_reference(vuln_reference)))
        self._in_flight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._in_flight.pop(key, None)
            else:
                task.add_done_callback(lambda _: self._in_flight.pop(key, None))

    async def _execute(self, contract_address: str, vuln_ref: str) -> PauseResult:
        key = contract_address.lower()
        pending_tx = self._pending.get(key)
        if pending_tx is not None:
            result = await self._confirm(contract_address, vuln_ref, pending_tx, self.pending_recheck_timeout)
            if key in self._pending or result.success:
                return result
            logger.info("pending_pause_resolved", contract=contract_address, tx_hash=pending_tx)

        try:
            paused = await self.chain.is_paused(contract_address)
        except (Web3Exception, ValueError, OSError) as e:
            return self._failed(SubmissionFailed(f"paused() read failed: {e}", contract_address, vuln_ref))

        self._state_changed(contract_address, paused)
        if paused:
            self._stats["already_paused"] += 1
            logger.info("pause_skipped_already_paused", contract=contract_address)
            return PauseResult(success=True, already_paused=True, confirmed_paused=True)

        try:
            tx_hash = await self.chain.submit_pause(contract_address, vuln_ref)
        except (ActionError, Web3Exception, ValueError, OSError) as e:
            error = classify_pause_error(e, contract_address, vuln_ref)
            if isinstance(error, AlreadyPaused):
                return await self._lost_race(contract_address)
            return self._failed(error)

        self._stats["submitted"] += 1
        self._pending[key] = tx_hash
        return await self._confirm(contract_address, vuln_ref, tx_hash, self.confirmation_timeout)

    async def _confirm(self, contract_address: str, vuln_ref: str, tx_hash: str, timeout: float) -> PauseResult:
        # The pending entry is dropped only once the transaction is known mined or reverted
        try:
            mined = await self.chain.wait_for_receipt(tx_hash, timeout)
        except (ActionError, Web3Exception, ValueError, OSError) as e:
            return self._failed(classify_pause_error(e, contract_address, vuln_ref), tx_hash)

        if mined is None:
            self._stats["pending"] += 1
            logger.warning("pause_confirmation_pending", contract=contract_address, tx_hash=tx_hash)
            return PauseResult(success=False, tx_hash=tx_hash, pending=True)

        self._pending.pop(contract_address.lower(), None)
        confirmed = await self._refresh(contract_address)
        if not mined:
            if confirmed:
                # Reverted because someone else paused first
                self._stats["already_paused"] += 1
                return PauseResult(success=True, already_paused=True, tx_hash=tx_hash, confirmed_paused=True)
            return self._failed(
                SubmissionFailed("pause transaction reverted", contract_address, vuln_ref),
                tx_hash,
            )

        logger.info("pause_confirmed", contract=contract_address, tx_hash=tx_hash, paused=confirmed)
        return PauseResult(success=True, tx_hash=tx_hash, confirmed_paused=confirmed)

    def pending_transaction(self, contract_address: str) -> str | None:
        return self._pending.get(contract_address.lower())

    async def _lost_race(self, contract_address: str) -> PauseResult:
        self._stats["already_paused"] += 1
        logger.info("pause_race_lost", contract=contract_address)
        confirmed = await self._refresh(contract_address)
        return PauseResult(success=True, already_paused=True, confirmed_paused=confirmed)

    async def _refresh(self, contract_address: str) -> bool | None:
        try:
            paused = await self.chain.is_paused(contract_address)
        except (Web3Exception, ValueError, OSError) as e:
            logger.warning("paused_state_refresh_failed", contract=contract_address, error=str(e))
            return None
        self._state_changed(contract_address, paused)
        return paused

    def _state_changed(self, contract_address: str, paused: bool) -> None:
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(contract_address, paused)
        except Exception as e:
            logger.error("state_change_callback_error", error=str(e))

    def _failed(self, error: ActionError, tx_hash: str | None = None) -> PauseResult:
        self._stats["failed"] += 1
        logger.error("pause_failed", tx_hash=tx_hash, **error.to_dict())
        return PauseResult.from_error(error, tx_hash)

    def get_stats(self) -> dict[str, int]:
        return self._stats.copy()
