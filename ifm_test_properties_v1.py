"""
Invoice Financing Marketplace (IFM) - Property Tests
Version: 1.0.0

Generated inputs against the registry guarantees: mint echoes its
inputs, failed calls leave no trace, bid bounds are inclusive, and a
single verified payment per invoice.
"""

import pytest
from hypothesis import given, settings as hypothesis_settings, strategies as st

from ifm_config import MarketplaceSettings
from ifm_collaborators_v1 import BalanceLedger, BlockClock, TitleRegistry
from ifm_enforcement_v1 import ConflictError, DecisionLedger, RegistryError, ValidationError
from ifm_invoice_registry_v1 import InvoiceRegistry, INVOICE_CURRENCIES, STATUS_PENDING
from ifm_financing_pool_v1 import FinancingPool
from ifm_payment_oracle_v1 import PaymentOracle

SUPPLIER = "ST1SUPPLIER"
BUYER = "ST2BUYER"
SELLER = "ST1TEST"
BIDDER = "ST4BIDDER"

SETTINGS = MarketplaceSettings()

def fresh_world():
    return BlockClock(0), BalanceLedger(), TitleRegistry(), DecisionLedger(b"ifm-property-key")

def fresh_invoice_registry():
    clock, balances, titles, ledger = fresh_world()
    registry = InvoiceRegistry(clock, balances, titles, ledger, SETTINGS)
    registry.set_authority("ST3AUTHORITY")
    return registry

# ============================================
# STRATEGIES
# ============================================

def bounded_text(max_size):
    return st.text(
        alphabet=st.characters(min_codepoint=32, max_codepoint=126),
        min_size=1,
        max_size=max_size
    )

valid_mints = st.fixed_dictionaries({
    'amount': st.integers(min_value=1, max_value=10**12),
    'due_date': st.integers(min_value=1, max_value=10**6),
    'buyer': st.sampled_from([BUYER, "ST7BUYER", "ST8BUYER"]),
    'description': bounded_text(500),
    'currency': st.sampled_from(INVOICE_CURRENCIES),
    'discount_rate': st.integers(min_value=0, max_value=50),
    'penalty_rate': st.integers(min_value=0, max_value=100),
    'location': bounded_text(100),
    'terms': st.text(max_size=1000),
    'quantity': st.integers(min_value=1, max_value=10**6),
    'unit_price': st.integers(min_value=1, max_value=10**9),
})

# ============================================
# INVOICE PROPERTIES
# ============================================

class TestMintProperties:

    @given(args=valid_mints)
    @hypothesis_settings(max_examples=50, deadline=None)
    def test_mint_echoes_inputs(self, args):
        registry = fresh_invoice_registry()

        invoice_id = registry.mint(SUPPLIER, **args)
        invoice = registry.get_invoice(invoice_id)

        for name, value in args.items():
            assert getattr(invoice, name) == value
        assert invoice.paid is False
        assert invoice.status == STATUS_PENDING

    @given(args=valid_mints, amount=st.integers(max_value=0))
    @hypothesis_settings(max_examples=50, deadline=None)
    def test_rejected_mint_leaves_no_trace(self, args, amount):
        registry = fresh_invoice_registry()
        args['amount'] = amount

        with pytest.raises(ValidationError):
            registry.mint(SUPPLIER, **args)

        assert registry.get_invoice_count() == 0
        assert registry.balances.transfers == []
        assert registry.titles.owners == {}

# ============================================
# POOL PROPERTIES
# ============================================

class TestBidProperties:

    @given(
        min_price=st.integers(min_value=1, max_value=10_000),
        spread=st.integers(min_value=0, max_value=10_000),
        amount=st.integers(min_value=-10, max_value=25_000)
    )
    @hypothesis_settings(max_examples=100, deadline=None)
    def test_bid_accepted_iff_within_inclusive_bounds(self, min_price, spread, amount):
        clock, balances, titles, ledger = fresh_world()
        pool = FinancingPool(clock, balances, titles, ledger, SETTINGS)
        pool.set_pool_admin("ST2TEST")
        max_bid = min_price + spread
        pool.list_invoice(SELLER, 1, max_bid, min_price, 30, 5, "auction", 2, "STX", max_bid)

        try:
            accepted = pool.place_bid(BIDDER, 0, amount)
        except RegistryError:
            accepted = False

        assert accepted == (min_price <= amount <= max_bid)
        assert (pool.get_bid(0, BIDDER) is not None) == accepted

# ============================================
# ORACLE PROPERTIES
# ============================================

class TestConsensusProperties:

    @given(
        reporters=st.integers(min_value=2, max_value=6),
        amounts=st.lists(st.integers(min_value=1, max_value=10**9), min_size=6, max_size=6)
    )
    @hypothesis_settings(max_examples=30, deadline=None)
    def test_single_verified_payment(self, reporters, amounts):
        clock, balances, _, ledger = fresh_world()
        oracle = PaymentOracle(clock, balances, ledger, SETTINGS)
        oracle.set_authority("ST1TEST", "ST5AUTHORITY")
        names = [f"ORACLE{i}" for i in range(reporters)]
        for name in names:
            oracle.register_oracle(name, name, "Nairobi", 50, 5, 5, 5)

        outcomes = []
        for name, amount in zip(names, amounts):
            try:
                outcomes.append(oracle.report_payment(name, 9, 0, amount, "USD", True, 0, 0, 0))
            except ConflictError:
                outcomes.append(False)

        assert outcomes == [True] + [False] * (reporters - 1)
        payment = oracle.get_verified_payment(9)
        assert payment.reporter == names[0]
        assert payment.amount == amounts[0]
        assert oracle.get_report_count(9) == 1

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
