from __future__ import annotations

import pytest
from web3 import Web3

from sentinel_shield.events import ResponseAction, ThreatLevel
from sentinel_shield.models.heuristics import (
    TRANSFER_TOPIC,
    AttackerRegistry,
    ContractContext,
    FraudFactor,
    ObservedReceipt,
    ObservedTransaction,
    ReceiptLog,
    TransactionAnalyzer,
    confidence_for,
)

from conftest import ATTACKER, CONTRACT, SENDER


TOKEN = "0x" + "7" * 40


def make_tx(value_eth: int = 0, sender: str = SENDER, input_data: str = "0x") -> ObservedTransaction:
    return ObservedTransaction(
        hash="0x" + "e" * 64,
        from_address=sender,
        to_address=CONTRACT,
        value=Web3.to_wei(value_eth, "ether"),
        input_data=input_data,
    )


def make_receipt(gas_used: int = 100_000, transfers: int = 0, contract_logs: int = 0) -> ObservedReceipt:
    logs = [ReceiptLog(address=TOKEN, topics=[TRANSFER_TOPIC]) for _ in range(transfers)]
    logs += [ReceiptLog(address=CONTRACT, topics=["0x" + "0" * 64]) for _ in range(contract_logs)]
    return ObservedReceipt(gas_used=gas_used, status=True, logs=logs)


class TestTransactionAnalyzer:
    @pytest.fixture
    def attackers(self):
        return AttackerRegistry()

    @pytest.fixture
    def analyzer(self, attackers):
        return TransactionAnalyzer(attackers=attackers)

    @pytest.fixture
    def context(self):
        return ContractContext(address=CONTRACT)

    def test_large_drain_is_critical(self, analyzer, context):
        """600 units, 6M gas and 12 transfers clamp to 100."""
        analysis = analyzer.analyze(make_tx(600), make_receipt(6_000_000, transfers=12), context)

        assert analysis.factor_types == ["VERY_LARGE_TRANSFER", "VERY_HIGH_GAS", "MASS_TRANSFER"]
        assert analysis.raw_score == 125
        assert analysis.score == 100
        assert analysis.level is ThreatLevel.CRITICAL
        assert analysis.recommended_action is ResponseAction.PAUSE

    def test_moderate_transfer_stays_below_event_threshold(self, analyzer, context):
        analysis = analyzer.analyze(make_tx(60), make_receipt(200_000, transfers=1), context)

        assert analysis.factor_types == ["LARGE_TRANSFER"]
        assert analysis.score == 25
        assert analysis.level is ThreatLevel.NONE

    def test_known_attacker_alone_pauses(self, analyzer, attackers, context):
        attackers.add(ATTACKER.upper().replace("0X", "0x"))
        analysis = analyzer.analyze(make_tx(0, sender=ATTACKER), make_receipt(), context)

        assert analysis.factor_types == ["KNOWN_ATTACKER"]
        assert analysis.score == 100
        assert analysis.level is ThreatLevel.CRITICAL
        assert analysis.recommended_action is ResponseAction.PAUSE

    def test_missing_receipt_skips_dependent_factors(self, analyzer, context):
        tx = make_tx(60)
        without = analyzer.analyze(tx, None, context)
        with_quiet_receipt = analyzer.analyze(tx, make_receipt(), context)

        assert without.factor_types == ["LARGE_TRANSFER"]
        assert without.score <= with_quiet_receipt.score

    def test_missing_logs_do_not_raise(self, analyzer, context):
        receipt = ObservedReceipt(gas_used=2_000_000, status=True, logs=None)
        analysis = analyzer.analyze(make_tx(0), receipt, context)
        assert analysis.factor_types == ["HIGH_GAS"]

    def test_value_tiers_are_exclusive(self, analyzer, context):
        analysis = analyzer.analyze(make_tx(501), None, context)
        assert analysis.factor_types == ["VERY_LARGE_TRANSFER"]

    def test_flash_loan_selector_anywhere_in_calldata(self, analyzer, context):
        nested = "0x12345678" + "0" * 56 + "ab9c4b5d" + "0" * 64
        analysis = analyzer.analyze(make_tx(0, input_data=nested), None, context)
        assert analysis.factor_types == ["FLASH_LOAN"]
        assert analysis.score == 40
        assert analysis.level is ThreatLevel.LOW

    def test_reentrancy_counts_logs_from_target(self, analyzer, context):
        analysis = analyzer.analyze(make_tx(0), make_receipt(contract_logs=4, transfers=4), context)
        assert analysis.factor_types == ["MULTIPLE_TRANSFERS", "REENTRANCY_PATTERN"]
        assert analysis.score == 50
        assert analysis.level is ThreatLevel.MEDIUM

    def test_rapid_transactions_need_context(self, analyzer):
        busy = ContractContext(address=CONTRACT, sender_recent_tx_count=6)
        assert analyzer.analyze(make_tx(0), None, busy).factor_types == ["RAPID_TRANSACTIONS"]
        assert analyzer.analyze(make_tx(0), None, ContractContext(address=CONTRACT)).factors == ()

    def test_score_clamped_when_everything_fires(self, analyzer, attackers):
        attackers.add(SENDER)
        context = ContractContext(address=CONTRACT, sender_recent_tx_count=50)
        tx = make_tx(1000, input_data="0x6318967b" + "0" * 64)
        receipt = make_receipt(10_000_000, transfers=20, contract_logs=10)
        extra = [FraudFactor("EXTERNAL", 80, "external scorer")]

        analysis = analyzer.analyze(tx, receipt, context, extra_factors=extra)

        assert analysis.raw_score > 100
        assert analysis.score == 100
        assert isinstance(analysis.score, int)
        assert analysis.confidence == 0.99

    def test_confidence_grows_with_factor_count(self):
        values = [confidence_for(n) for n in range(0, 8)]
        assert values[0] == 0.5
        assert values == sorted(values)
        assert max(values) <= 0.99


class TestObservedTransaction:
    def test_from_rpc_mapping(self):
        tx = ObservedTransaction.from_tx_data({
            "hash": bytes.fromhex("ab" * 32),
            "from": SENDER,
            "to": CONTRACT,
            "value": "0xde0b6b3a7640000",
            "input": "0xab9c4b5d",
            "gas": 21000,
        })
        assert tx.hash == "0x" + "ab" * 32
        assert tx.value_native == 1
        assert tx.selector == "0xab9c4b5d"
        assert tx.gas == 21000

    def test_receipt_from_rpc_mapping(self):
        receipt = ObservedReceipt.from_receipt({
            "gasUsed": "0x5208",
            "status": 1,
            "logs": [{"address": TOKEN, "topics": [bytes.fromhex(TRANSFER_TOPIC[2:])]}],
        })
        assert receipt.gas_used == 21000
        assert receipt.logs[0].topics == [TRANSFER_TOPIC]


class TestAttackerRegistry:
    def test_membership_is_case_insensitive(self):
        registry = AttackerRegistry([ATTACKER.upper().replace("0X", "0x")])
        assert ATTACKER in registry
        registry.discard(ATTACKER)
        assert len(registry) == 0
