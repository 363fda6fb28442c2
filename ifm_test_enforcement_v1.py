"""
Invoice Financing Marketplace (IFM) - Enforcement Layer Tests
Version: 1.0.0

Atomic transitions: rollback on action error, rollback on failed
post-check, signed decision ledger, and the collaborator snapshots the
enforcer relies on.
"""

import threading
import pytest
from datetime import datetime
from typing import Dict, Any

from ifm_config import MarketplaceSettings
from ifm_collaborators_v1 import BalanceLedger, BlockClock, TitleRegistry, Transfer
from ifm_enforcement_v1 import (
    AuthorizationError,
    Criticality,
    DecisionLedger,
    EnforcementDecision,
    EnforcementResult,
    Invariant,
    InvariantEnforcer,
    InvariantType,
    InvariantViolation,
    RegistryBase,
    RegistryError,
    SystemCompromised,
    ValidationError
)
from ifm_financing_pool_v1 import FinancingPool
from ifm_invoice_registry_v1 import InvoiceRegistry
from ifm_metrics import metrics_registry
from ifm_payment_oracle_v1 import PaymentOracle

LEDGER_KEY = b"ifm-test-ledger-key"

# ============================================
# TEST DOUBLES
# ============================================

class AmountCeiling(Invariant):
    """Fails once the recipient's net position passes a ceiling."""

    def __init__(self, ceiling: int):
        super().__init__(
            id="inv_test_amount_ceiling",
            statement="Recipient position stays under the ceiling",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            owner="test"
        )
        self.ceiling = ceiling

    def post_check(self, result: Dict[str, Any]) -> bool:
        return result['balances'].net_position(result['recipient']) <= self.ceiling

class BrokenCheck(Invariant):
    """Raises inside post_check."""

    def __init__(self):
        super().__init__(
            id="inv_test_broken",
            statement="Always raises",
            type=InvariantType.STATE,
            criticality=Criticality.IMPORTANT,
            owner="test"
        )

    def post_check(self, result: Dict[str, Any]) -> bool:
        return result['missing_key']

class UnrestorableParticipant:
    """Participant whose restore always fails."""

    def snapshot(self):
        return {}

    def restore(self, snapshot):
        raise RuntimeError("storage offline")

class StallingTitleRegistry(TitleRegistry):
    """Runs a one-shot hook from inside the next title transfer."""

    def __init__(self):
        super().__init__()
        self.on_transfer = None

    def transfer(self, token_id: int, sender: str, recipient: str) -> bool:
        hook, self.on_transfer = self.on_transfer, None
        if hook is not None:
            hook()
        return super().transfer(token_id, sender, recipient)

class DemoRegistry(RegistryBase):
    REGISTRY = "demo"
    TAG = "DEMO"

    def reject(self):
        self._fail(ValidationError, 999, "always rejected")

def make_enforcer(invariants, ledger=None):
    return InvariantEnforcer("test", invariants, ledger or DecisionLedger(LEDGER_KEY), BlockClock(5))

# ============================================
# ENFORCER
# ============================================

class TestInvariantEnforcer:

    def test_successful_action_records_decisions(self):
        ledger = DecisionLedger(LEDGER_KEY)
        enforcer = make_enforcer([AmountCeiling(1000)], ledger)
        balances = BalanceLedger()

        def pay():
            balances.transfer(500, "A", "B")
            return {'balances': balances, 'recipient': "B"}

        result = enforcer.enforce_action("pay", pay, [balances])

        assert result['recipient'] == "B"
        assert balances.net_position("B") == 500
        assert len(ledger.entries) == 1
        decision = ledger.entries[0]
        assert decision.result == True
        assert decision.action == EnforcementResult.PROCEED
        assert decision.operation == "pay"
        assert decision.block_height == 5

    def test_failed_post_check_rolls_back(self):
        ledger = DecisionLedger(LEDGER_KEY)
        enforcer = make_enforcer([AmountCeiling(1000)], ledger)
        balances = BalanceLedger()
        balances.transfer(900, "A", "B")

        def overpay():
            balances.transfer(500, "A", "B")
            return {'balances': balances, 'recipient': "B"}

        with pytest.raises(InvariantViolation) as exc:
            enforcer.enforce_action("overpay", overpay, [balances])

        assert exc.value.invariant_id == "inv_test_amount_ceiling"
        assert exc.value.code == 0
        assert balances.transfers == [Transfer(900, "A", "B")]
        assert balances.net_position("B") == 900
        assert len(ledger.failures()) == 1
        assert ledger.failures()[0].action == EnforcementResult.ROLLBACK

    def test_action_error_rolls_back_every_participant(self):
        enforcer = make_enforcer([AmountCeiling(1000)])
        balances = BalanceLedger()
        titles = TitleRegistry()
        titles.mint(1, "A")

        def half_done():
            balances.transfer(100, "A", "B")
            titles.transfer(1, "A", "B")
            raise ValidationError(101, "late failure", "test")

        with pytest.raises(ValidationError):
            enforcer.enforce_action("half_done", half_done, [balances, titles])

        assert balances.transfers == []
        assert titles.owner_of(1) == "A"

    def test_post_check_exception_counts_as_failure(self):
        enforcer = make_enforcer([BrokenCheck()])
        balances = BalanceLedger()

        def pay():
            balances.transfer(1, "A", "B")
            return {'balances': balances}

        with pytest.raises(InvariantViolation):
            enforcer.enforce_action("pay", pay, [balances])

        assert balances.transfers == []

    def test_rollback_failure_is_system_compromise(self):
        enforcer = make_enforcer([])

        def fail():
            raise ValidationError(1, "nope", "test")

        with pytest.raises(SystemCompromised):
            enforcer.enforce_action("fail", fail, [UnrestorableParticipant()])

    def test_rollbacks_are_counted(self):
        enforcer = make_enforcer([AmountCeiling(0)])
        balances = BalanceLedger()
        labels = {'registry': "test", 'reason': "inv_test_amount_ceiling"}
        before = metrics_registry.get_sample_value('ifm_rollbacks_total', labels) or 0

        def pay():
            balances.transfer(1, "A", "B")
            return {'balances': balances, 'recipient': "B"}

        with pytest.raises(InvariantViolation):
            enforcer.enforce_action("pay", pay, [balances])

        assert metrics_registry.get_sample_value('ifm_rollbacks_total', labels) == before + 1

# ============================================
# DECISION LEDGER
# ============================================

class TestDecisionLedger:

    def _decision(self, ledger):
        return ledger.sign(EnforcementDecision(
            invariant_id="inv_test",
            operation="op",
            result=True,
            action=EnforcementResult.PROCEED,
            timestamp=datetime(2026, 1, 1),
            block_height=1
        ))

    def test_signed_decision_verifies(self):
        ledger = DecisionLedger(LEDGER_KEY)
        decision = self._decision(ledger)

        assert decision.verify_signature(LEDGER_KEY) == True
        assert decision.verify_signature(b"other-key") == False

        ledger.record(decision)
        assert ledger.verify_chain_integrity() == True
        assert decision.to_dict()['timestamp'] == "2026-01-01T00:00:00"

    def test_forged_decision_rejected(self):
        ledger = DecisionLedger(LEDGER_KEY)
        forged = self._decision(DecisionLedger(b"attacker-key"))

        with pytest.raises(SystemCompromised):
            ledger.record(forged)

        assert ledger.entries == []

    def test_tampering_detected(self):
        ledger = DecisionLedger(LEDGER_KEY)
        ledger.record(self._decision(ledger))

        ledger.entries[0].result = False

        assert ledger.verify_chain_integrity() == False

# ============================================
# REJECTION HELPER
# ============================================

class TestRegistryBase:

    def test_fail_raises_typed_error(self):
        labels = {'registry': "demo", 'error_type': "ValidationError"}
        before = metrics_registry.get_sample_value('ifm_operation_rejections_total', labels) or 0

        with pytest.raises(ValidationError) as exc:
            DemoRegistry().reject()

        assert isinstance(exc.value, RegistryError)
        assert exc.value.code == 999
        assert exc.value.registry == "demo"
        assert "[demo:999]" in str(exc.value)
        assert metrics_registry.get_sample_value('ifm_operation_rejections_total', labels) == before + 1

# ============================================
# SHARED COLLABORATORS
# ============================================

class TestSharedCollaborators:

    def _world(self):
        settings = MarketplaceSettings(strict_title_escrow=True)
        clock, balances, titles = BlockClock(0), BalanceLedger(), StallingTitleRegistry()
        ledger = DecisionLedger(LEDGER_KEY)
        invoices = InvoiceRegistry(clock, balances, titles, ledger, settings)
        invoices.set_authority("ST3AUTHORITY")
        pool = FinancingPool(clock, balances, titles, ledger, settings)
        pool.set_pool_admin("ST2TEST")
        return balances, titles, invoices, pool

    def test_registries_share_the_ledger_lock(self):
        balances, _, invoices, pool = self._world()
        oracle = PaymentOracle(BlockClock(0), balances, DecisionLedger(LEDGER_KEY))
        custom = threading.RLock()

        assert invoices._lock is balances.lock
        assert pool._lock is balances.lock
        assert oracle._lock is balances.lock
        assert PaymentOracle(BlockClock(0), balances, DecisionLedger(LEDGER_KEY), lock=custom)._lock is custom

    def test_rollback_keeps_concurrent_commit(self):
        balances, titles, invoices, pool = self._world()
        minted = {}

        def mint():
            minted['invoice_id'] = invoices.mint(
                "ST1SUPPLIER", 1000, 100, "ST2BUYER", "Steel coils, grade A", "STX",
                5, 10, "Lagos", "Net 30", 10, 100
            )

        minter = threading.Thread(target=mint)

        def mint_during_escrow():
            minter.start()
            minter.join(timeout=0.2)

        titles.on_transfer = mint_during_escrow

        # Seller does not hold title 1, so strict escrow fails and the pool rolls back
        with pytest.raises(AuthorizationError):
            pool.list_invoice("ST1TEST", 1, 1000, 500, 30, 5, "fixed", 2, "STX", 2000)

        minter.join(timeout=5)
        assert not minter.is_alive()
        assert minted['invoice_id'] == 0
        assert invoices.get_invoice_count() == 1
        assert titles.owner_of(0) == "ST1SUPPLIER"
        assert balances.transfers == [Transfer(500, "ST1SUPPLIER", "ST3AUTHORITY")]
        assert pool.get_listing_count() == 0

# ============================================
# COLLABORATORS
# ============================================

class TestCollaborators:

    def test_clock_is_monotonic(self):
        clock = BlockClock(10)

        assert clock.advance(5) == 15
        with pytest.raises(ValueError):
            clock.advance(-1)
        with pytest.raises(ValueError):
            BlockClock(-1)

    def test_balance_positions(self):
        balances = BalanceLedger()
        balances.transfer(300, "A", "B")
        balances.transfer(100, "B", "C")

        assert balances.net_position("A") == -300
        assert balances.net_position("B") == 200
        assert balances.net_position("C") == 100
        assert balances.transfers_between("A", "B") == [Transfer(300, "A", "B")]

    def test_title_transfer_requires_owner(self):
        titles = TitleRegistry()
        titles.mint(1, "A")

        assert titles.transfer(1, "B", "C") == False
        assert titles.owner_of(1) == "A"
        assert titles.transfer(1, "A", "C") == True
        assert titles.owner_of(1) == "C"

        titles.burn(1)
        assert titles.owner_of(1) is None
        assert titles.transfer(1, "C", "A") == False

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
