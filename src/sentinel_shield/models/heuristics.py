from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping

from hexbytes import HexBytes
from web3 import Web3

from sentinel_shield.events import ResponseAction, ThreatLevel, now_ms
from sentinel_shield.models.decision import DecisionEngine


FLASH_LOAN_SELECTORS = {
    "0x6318967b",  # flashLoan
    "0xefefaba7",  # flashLoan (Aave)
    "0xc42079f9",  # flash (Balancer)
    "0xab9c4b5d",  # flashLoan (Aave v3)
    "0x6b07c94f",  # flashLoanSimple
}

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

DEFAULT_WEIGHTS = {
    "VERY_LARGE_TRANSFER": 50,
    "LARGE_TRANSFER": 25,
    "VERY_HIGH_GAS": 25,
    "HIGH_GAS": 10,
    "FLASH_LOAN": 40,
    "MASS_TRANSFER": 50,
    "MULTIPLE_TRANSFERS": 20,
    "REENTRANCY_PATTERN": 30,
    "KNOWN_ATTACKER": 100,
    "RAPID_TRANSACTIONS": 15,
}


def _hex(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return HexBytes(value).to_0x_hex()
    return str(value)


def _int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value or 0)
    return int(value)


@dataclass
class ObservedTransaction:
    hash: str
    from_address: str
    to_address: str | None
    value: int  # wei
    input_data: str
    gas: int = 0

    @classmethod
    def from_tx_data(cls, tx: Mapping[str, Any]) -> ObservedTransaction:
        return cls(
            hash=_hex(tx.get("hash")),
            from_address=str(tx.get("from") or ""),
            to_address=tx.get("to"),
            value=_int(tx.get("value")),
            input_data=_hex(tx.get("input")) or "0x",
            gas=_int(tx.get("gas")),
        )

    @property
    def value_native(self) -> Decimal:
        return Web3.from_wei(self.value, "ether")

    @property
    def selector(self) -> str | None:
        if len(self.input_data) >= 10:
            return self.input_data[:10].lower()
        return None


@dataclass
class ReceiptLog:
    address: str
    topics: list[str]

    @classmethod
    def from_log(cls, log: Mapping[str, Any]) -> ReceiptLog:
        return cls(
            address=str(log.get("address") or ""),
            topics=[_hex(t).lower() for t in (log.get("topics") or [])],
        )


@dataclass
class ObservedReceipt:
    gas_used: int
    status: bool
    logs: list[ReceiptLog] | None

    @classmethod
    def from_receipt(cls, receipt: Mapping[str, Any]) -> ObservedReceipt:
        raw_logs = receipt.get("logs")
        return cls(
            gas_used=_int(receipt.get("gasUsed")),
            status=bool(_int(receipt.get("status", 1))),
            logs=[ReceiptLog.from_log(log) for log in raw_logs] if raw_logs is not None else None,
        )


@dataclass
class ContractContext:
    """What the analyzer knows about the protected contract."""
    address: str
    sender_recent_tx_count: int | None = None


class AttackerRegistry:
    """Addresses previously confirmed as attackers.

    Owned by the pipeline and passed to the analyzer; the analyzer only reads.
    """

    def __init__(self, addresses: Iterable[str] = ()):
        self._addresses: set[str] = {a.lower() for a in addresses}

    def add(self, address: str) -> None:
        if address:
            self._addresses.add(address.lower())

    def discard(self, address: str) -> None:
        self._addresses.discard(address.lower())

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._addresses

    def __len__(self) -> int:
        return len(self._addresses)

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._addresses)


@dataclass(frozen=True)
class AnalyzerConfig:
    weights: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    large_transfer_native: Decimal = Decimal(50)
    very_large_transfer_native: Decimal = Decimal(500)
    high_gas: int = 1_000_000
    very_high_gas: int = 5_000_000
    multiple_transfers: int = 3
    mass_transfers: int = 10
    reentrancy_calls: int = 3
    rapid_tx_count: int = 5
    flash_loan_selectors: frozenset[str] = frozenset(FLASH_LOAN_SELECTORS)

    def weight(self, factor_type: str) -> int:
        return int(self.weights.get(factor_type, DEFAULT_WEIGHTS.get(factor_type, 0)))


@dataclass(frozen=True)
class FraudFactor:
    type: str
    weight: int
    description: str
    evidence: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "weight": self.weight,
            "description": self.description,
            "evidence": self.evidence,
        }


@dataclass(frozen=True)
class FraudAnalysis:
    score: int
    level: ThreatLevel
    factors: tuple[FraudFactor, ...]
    recommended_action: ResponseAction
    confidence: float
    timestamp: int
    raw_score: int = 0

    @property
    def factor_types(self) -> list[str]:
        return [f.type for f in self.factors]

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "level": self.level.value,
            "factors": [f.to_dict() for f in self.factors],
            "recommendedAction": self.recommended_action.value,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
        }


def confidence_for(factor_count: int) -> float:
    return min(0.5 + 0.15 * factor_count, 0.99)


class TransactionAnalyzer:
    """Weighted heuristic scoring of a single transaction.

    Deterministic given its inputs and the attacker registry. Missing
    receipt or logs never raise; the dependent factors are simply skipped.
    """

    def __init__(
        self,
        attackers: AttackerRegistry | None = None,
        config: AnalyzerConfig | None = None,
        decision_engine: DecisionEngine | None = None,
    ):
        self.attackers = attackers if attackers is not None else AttackerRegistry()
        self.config = config or AnalyzerConfig()
        self.decision_engine = decision_engine or DecisionEngine()

    def analyze(
        self,
        tx: ObservedTransaction,
        receipt: ObservedReceipt | None,
        context: ContractContext,
        extra_factors: Iterable[FraudFactor] = (),
    ) -> FraudAnalysis:
        factors: list[FraudFactor] = []
        factors.extend(self._value_factors(tx))
        factors.extend(self._gas_factors(receipt))
        factors.extend(self._flash_loan_factors(tx))
        factors.extend(self._log_factors(receipt, context))
        factors.extend(self._sender_factors(tx, context))
        factors.extend(extra_factors)

        raw_score = sum(f.weight for f in factors)
        score = max(0, min(raw_score, 100))
        decision = self.decision_engine.decide(score)

        return FraudAnalysis(
            score=score,
            level=decision.level,
            factors=tuple(factors),
            recommended_action=decision.action,
            confidence=confidence_for(len(factors)),
            timestamp=now_ms(),
            raw_score=raw_score,
        )

    def _factor(self, factor_type: str, description: str, **evidence: Any) -> FraudFactor:
        return FraudFactor(
            type=factor_type,
            weight=self.config.weight(factor_type),
            description=description,
            evidence=evidence,
        )

    def _value_factors(self, tx: ObservedTransaction) -> list[FraudFactor]:
        value = tx.value_native
        if value > self.config.very_large_transfer_native:
            return [self._factor("VERY_LARGE_TRANSFER", f"Transfer of {value:.2f} native units", value=str(value))]
        if value > self.config.large_transfer_native:
            return [self._factor("LARGE_TRANSFER", f"Transfer of {value:.2f} native units", value=str(value))]
        return []

    def _gas_factors(self, receipt: ObservedReceipt | None) -> list[FraudFactor]:
        if receipt is None:
            return []
        gas_used = receipt.gas_used
        if gas_used > self.config.very_high_gas:
            return [self._factor("VERY_HIGH_GAS", f"Very high gas: {gas_used:,}", gas_used=gas_used)]
        if gas_used > self.config.high_gas:
            return [self._factor("HIGH_GAS", f"High gas: {gas_used:,}", gas_used=gas_used)]
        return []

    def _flash_loan_factors(self, tx: ObservedTransaction) -> list[FraudFactor]:
        data = tx.input_data.lower()
        # Selectors may appear in nested call data, not only as the leading four bytes
        for selector in sorted(self.config.flash_loan_selectors):
            if selector[2:] in data:
                return [self._factor("FLASH_LOAN", "Flash loan detected", signature=selector)]
        return []

    def _log_factors(self, receipt: ObservedReceipt | None, context: ContractContext) -> list[FraudFactor]:
        if receipt is None or not receipt.logs:
            return []

        factors: list[FraudFactor] = []
        transfers = sum(1 for log in receipt.logs if log.topics and log.topics[0] == TRANSFER_TOPIC)
        if transfers > self.config.mass_transfers:
            factors.append(self._factor("MASS_TRANSFER", f"Mass transfer: {transfers} transfers", count=transfers))
        elif transfers > self.config.multiple_transfers:
            factors.append(self._factor("MULTIPLE_TRANSFERS", f"Multiple transfers: {transfers}", count=transfers))

        target = context.address.lower()
        internal_calls = sum(1 for log in receipt.logs if log.address.lower() == target)
        if internal_calls > self.config.reentrancy_calls:
            factors.append(
                self._factor(
                    "REENTRANCY_PATTERN",
                    f"Multiple internal calls: {internal_calls}",
                    internal_calls=internal_calls,
                )
            )
        return factors

    def _sender_factors(self, tx: ObservedTransaction, context: ContractContext) -> list[FraudFactor]:
        factors: list[FraudFactor] = []
        if tx.from_address in self.attackers:
            factors.append(self._factor("KNOWN_ATTACKER", "Known attacker address", sender=tx.from_address))

        recent = context.sender_recent_tx_count
        if recent is not None and recent > self.config.rapid_tx_count:
            factors.append(
                self._factor("RAPID_TRANSACTIONS", f"Rapid transactions: {recent} recent", count=recent)
            )
        return factors
