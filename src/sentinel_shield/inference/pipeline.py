"""
Threat detection and response pipeline.

    adapter -> analyzer -> decision -> (PAUSE) executor -> journal -> notices

Every inbound event, whether analyzed locally, pushed by the monitoring
service or read from chain logs, ends up in the journal exactly once.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from typing import Any, Callable, Iterable

import structlog

from sentinel_shield.data.adapters import (
    MessageType,
    ServerMessage,
    event_from_analysis,
    event_from_message,
)
from sentinel_shield.events import ActionTaken, EventType, ResponseAction, ThreatEvent, ThreatLevel, now_ms
from sentinel_shield.inference.alerts import Notice, NoticeKind, Notifier
from sentinel_shield.inference.chain import vulnerability_reference
from sentinel_shield.inference.executor import ActionExecutor, PauseResult
from sentinel_shield.models.heuristics import (
    AttackerRegistry,
    ContractContext,
    FraudAnalysis,
    FraudFactor,
    ObservedReceipt,
    ObservedTransaction,
    TransactionAnalyzer,
)
from sentinel_shield.persistence.journal import EventJournal
from sentinel_shield.registry.lifecycle import ProtectionRegistry


logger = structlog.get_logger()


class ExternalScorer(ABC):
    """Opaque scorer that may contribute extra factors."""

    @abstractmethod
    async def score(
        self,
        tx: ObservedTransaction,
        receipt: ObservedReceipt | None,
        context: ContractContext,
    ) -> Iterable[FraudFactor]:
        pass


class SenderActivity:
    """Per-sender transaction counts over a sliding window."""

    def __init__(self, window: float = 60.0, max_senders: int = 10_000, clock: Any = time.monotonic):
        self.window = window
        self.max_senders = max_senders
        self._clock = clock
        self._seen: OrderedDict[str, deque[float]] = OrderedDict()

    def record(self, sender: str) -> int:
        key = sender.lower()
        now = self._clock()
        times = self._seen.pop(key, None) or deque()
        while times and now - times[0] > self.window:
            times.popleft()
        times.append(now)
        self._seen[key] = times
        while len(self._seen) > self.max_senders:
            self._seen.popitem(last=False)
        return len(times)


_ALERT_LEVELS = {ThreatLevel.HIGH, ThreatLevel.CRITICAL}


class ProtectionPipeline:
    def __init__(
        self,
        analyzer: TransactionAnalyzer,
        journal: EventJournal,
        registry: ProtectionRegistry,
        executor: ActionExecutor | None = None,
        notifier: Notifier | None = None,
        external_scorer: ExternalScorer | None = None,
        auto_pause: bool = True,
        sender_activity: SenderActivity | None = None,
    ):
        self.analyzer = analyzer
        self.journal = journal
        self.registry = registry
        self.executor = executor
        self.notifier = notifier or Notifier()
        self.external_scorer = external_scorer
        self.auto_pause = auto_pause
        self.sender_activity = sender_activity or SenderActivity()
        self.last_block: int | None = None
        self._init_callbacks: list[Callable[[int], None]] = []
        self._stats = {
            "transactions_analyzed": 0,
            "threats_detected": 0,
            "auto_pauses": 0,
            "pause_failures": 0,
            "remote_events": 0,
            "chain_events": 0,
        }

    def on_init(self, callback: Callable[[int], None]) -> None:
        """Called with the last observed block height from INIT."""
        self._init_callbacks.append(callback)

    @property
    def attackers(self) -> AttackerRegistry:
        return self.analyzer.attackers

    def blacklist(self, address: str) -> None:
        self.attackers.add(address)
        logger.info("attacker_blacklisted", address=address)

    def unblacklist(self, address: str) -> None:
        self.attackers.discard(address)
        logger.info("attacker_unblacklisted", address=address)

    async def process_transaction(
        self,
        tx: ObservedTransaction,
        receipt: ObservedReceipt | None,
        contract_address: str,
    ) -> ThreatEvent | None:
        """Analyze one transaction against a protected contract."""
        context = ContractContext(
            address=contract_address,
            sender_recent_tx_count=self.sender_activity.record(tx.from_address) if tx.from_address else None,
        )
        extra = await self._external_factors(tx, receipt, context)
        analysis = self.analyzer.analyze(tx, receipt, context, extra_factors=extra)
        self._stats["transactions_analyzed"] += 1

        logger.debug(
            "transaction_analyzed",
            tx_hash=tx.hash,
            contract=contract_address,
            score=analysis.score,
            factors=analysis.factor_types,
        )
        if analysis.level is ThreatLevel.NONE:
            return None

        event = event_from_analysis(tx, analysis, contract_address)
        if analysis.recommended_action is not ResponseAction.MONITOR:
            event = event.with_action(ActionTaken.ALERT)
        self._record(event)
        self._stats["threats_detected"] += 1

        if event.level in _ALERT_LEVELS:
            self._notify_threat(event)

        if analysis.recommended_action is ResponseAction.PAUSE:
            return await self._respond(event, tx, analysis)
        return event

    async def _external_factors(
        self,
        tx: ObservedTransaction,
        receipt: ObservedReceipt | None,
        context: ContractContext,
    ) -> list[FraudFactor]:
        if self.external_scorer is None:
            return []
        try:
            return list(await self.external_scorer.score(tx, receipt, context))
        except Exception as e:
            logger.warning("external_scorer_failed", tx_hash=tx.hash, error=str(e))
            return []

    async def _respond(self, event: ThreatEvent, tx: ObservedTransaction, analysis: FraudAnalysis) -> ThreatEvent:
        if not self.auto_pause or self.executor is None:
            logger.warning("auto_pause_disabled", contract=event.contract_address, score=analysis.score)
            return event

        vuln_ref = vulnerability_reference(f"{tx.hash}:{','.join(analysis.factor_types)}")
        result = await self.executor.execute_pause(event.contract_address, vuln_ref)
        return await self._apply_result(event, tx, result, vuln_ref)

    async def _apply_result(
        self,
        event: ThreatEvent,
        tx: ObservedTransaction,
        result: PauseResult,
        vuln_ref: str,
    ) -> ThreatEvent:
        if result.confirmed_paused is None and result.success:
            await self.registry.refresh(event.contract_address)
        self._announce(event.contract_address, result, {"vuln_hash": vuln_ref, "event_id": event.id})

        if not result.triggered:
            return event
        self._stats["auto_pauses"] += 1
        self.attackers.add(tx.from_address)
        return self.journal.set_action(event.id, ActionTaken.PAUSE_TRIGGERED) or event.with_action(
            ActionTaken.PAUSE_TRIGGERED
        )

    async def request_pause(self, contract_address: str, vuln_ref: str, source: str = "operator") -> PauseResult:
        """Operator or peer initiated pause, outside the scoring path."""
        if self.executor is None:
            return PauseResult(success=False, error="No executor configured", failure_class="NotConfigured")

        result = await self.executor.execute_pause(contract_address, vuln_ref)
        if result.triggered:
            self._record(
                ThreatEvent(
                    id=f"pause-{result.tx_hash}",
                    timestamp=now_ms(),
                    level=ThreatLevel.CRITICAL,
                    contract_address=contract_address,
                    transaction_hash=result.tx_hash or "",
                    origin_address=source,
                    details=f"Emergency pause requested by {source}",
                    confidence=1.0,
                    action_taken=ActionTaken.PAUSE_TRIGGERED,
                    event_type=EventType.PAUSE_TRIGGERED,
                )
            )
        self._announce(contract_address, result, {"vuln_hash": vuln_ref, "source": source})
        return result

    def _announce(self, contract_address: str, result: PauseResult, context: dict[str, Any]) -> None:
        """Apply the confirmed paused state and tell the operator how the pause went."""
        if result.confirmed_paused is not None:
            self.registry.apply_paused_state(contract_address, result.confirmed_paused)

        context = {"contract": contract_address, **context}
        if result.triggered:
            notice = Notice(
                NoticeKind.PAUSE_TRIGGERED,
                f"Contract {contract_address} paused",
                context={**context, "tx_hash": result.tx_hash},
            )
        elif result.already_paused:
            notice = Notice(NoticeKind.ALREADY_PAUSED, f"Contract {contract_address} already paused", context=context)
        else:
            self._stats["pause_failures"] += 1
            notice = Notice(
                NoticeKind.PAUSE_FAILED,
                f"Pause of {contract_address} failed: {result.error or 'confirmation pending'}",
                context={
                    **context,
                    "failure_class": result.failure_class,
                    "tx_hash": result.tx_hash,
                    "pending": result.pending,
                },
            )
        self.notifier.notify(notice)

    async def handle_message(self, data: dict[str, Any]) -> ThreatEvent | None:
        """Consumer for monitoring-service messages."""
        message = ServerMessage.parse(data)
        if message is None:
            return None

        if message.type is MessageType.INIT:
            self.registry.seed(message.contracts)
            if message.last_block is not None:
                self.last_block = message.last_block
                for callback in self._init_callbacks:
                    callback(message.last_block)
            await self.registry.refresh_all()
            return None

        event = event_from_message(message)
        if event is None:
            return None
        self._stats["remote_events"] += 1
        return await self._ingest(event)

    async def on_chain_event(self, event: ThreatEvent) -> ThreatEvent | None:
        self._stats["chain_events"] += 1
        return await self._ingest(event)

    async def on_chain_transaction(
        self,
        tx: ObservedTransaction,
        receipt: ObservedReceipt | None,
        contract_address: str,
    ) -> ThreatEvent | None:
        return await self.process_transaction(tx, receipt, contract_address)

    async def _ingest(self, event: ThreatEvent) -> ThreatEvent | None:
        if event.event_type is EventType.REGISTRATION and event.contract_address:
            if not self.registry.is_monitored(event.contract_address):
                self.registry.adopt(event.contract_address, event.origin_address)
                await self.registry.check_permission(event.contract_address)

        if not self._record(event):
            return None

        if event.event_type in (EventType.PAUSE_TRIGGERED, EventType.PAUSE_LIFTED):
            await self.registry.refresh(event.contract_address)
            if event.event_type is EventType.PAUSE_TRIGGERED:
                self.notifier.notify(
                    Notice(
                        NoticeKind.PAUSE_TRIGGERED,
                        f"Contract {event.contract_address} paused",
                        context={"contract": event.contract_address, "tx_hash": event.transaction_hash},
                    )
                )
        elif event.event_type in (EventType.EXPLOIT_ATTEMPT, EventType.SUSPICIOUS_TX):
            self._stats["threats_detected"] += 1
            if event.action_taken is ActionTaken.PAUSE_TRIGGERED:
                self.attackers.add(event.origin_address)
                await self.registry.refresh(event.contract_address)
            if event.level in _ALERT_LEVELS:
                self._notify_threat(event)
        return event

    def _record(self, event: ThreatEvent) -> bool:
        added = self.journal.add(event)
        if added:
            self.registry.record_event(event)
        return added

    def _notify_threat(self, event: ThreatEvent) -> None:
        self.notifier.notify(
            Notice(
                NoticeKind.THREAT,
                f"{event.level.value} threat on {event.contract_address}: {event.details}",
                context={"contract": event.contract_address, "tx_hash": event.transaction_hash, "event_id": event.id},
            )
        )

    def threat_summary(self) -> dict[str, int]:
        events = self.journal.events
        summary = {level.value.lower(): 0 for level in ThreatLevel if level is not ThreatLevel.NONE}
        for event in events:
            if event.level is not ThreatLevel.NONE:
                summary[event.level.value.lower()] += 1
        summary["total"] = len(events)
        summary["paused_contracts"] = sum(1 for c in self.registry.contracts if c.is_paused)
        summary["monitored_contracts"] = len(self.registry.contracts)
        return summary

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "known_attackers": len(self.attackers),
            "last_block": self.last_block,
        }
