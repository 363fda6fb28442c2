"""
Shared fixtures for the IFM test suites.
"""

import pytest

from ifm_config import MarketplaceSettings
from ifm_collaborators_v1 import BalanceLedger, BlockClock, TitleRegistry
from ifm_enforcement_v1 import DecisionLedger
from ifm_invoice_registry_v1 import InvoiceRegistry
from ifm_financing_pool_v1 import FinancingPool
from ifm_payment_oracle_v1 import PaymentOracle

SUPPLIER = "ST1SUPPLIER"
BUYER = "ST2BUYER"
AUTHORITY = "ST3AUTHORITY"
SELLER = "ST1TEST"
POOL_ADMIN = "ST2TEST"
BIDDER = "ST4BIDDER"
ORACLE_ADMIN = "ST1TEST"
ORACLE_AUTHORITY = "ST5AUTHORITY"
CUSTODY = "contract"

LEDGER_KEY = b"ifm-test-ledger-key"

# ============================================
# COLLABORATORS
# ============================================

@pytest.fixture
def settings():
    return MarketplaceSettings()

@pytest.fixture
def clock():
    return BlockClock(0)

@pytest.fixture
def balances():
    return BalanceLedger()

@pytest.fixture
def titles():
    return TitleRegistry()

@pytest.fixture
def decision_ledger():
    return DecisionLedger(LEDGER_KEY)

# ============================================
# REGISTRIES
# ============================================

@pytest.fixture
def invoice_registry(clock, balances, titles, decision_ledger, settings):
    registry = InvoiceRegistry(clock, balances, titles, decision_ledger, settings)
    registry.set_authority(AUTHORITY)
    return registry

@pytest.fixture
def pool(clock, balances, titles, decision_ledger, settings):
    pool = FinancingPool(clock, balances, titles, decision_ledger, settings)
    pool.set_pool_admin(POOL_ADMIN)
    return pool

@pytest.fixture
def oracle(clock, balances, decision_ledger, settings):
    oracle = PaymentOracle(clock, balances, decision_ledger, settings)
    oracle.set_authority(ORACLE_ADMIN, ORACLE_AUTHORITY)
    return oracle

# ============================================
# CALL ARGUMENTS
# ============================================

@pytest.fixture
def mint_args():
    return dict(
        amount=1000,
        due_date=100,
        buyer=BUYER,
        description="Steel coils, grade A",
        currency="STX",
        discount_rate=5,
        penalty_rate=10,
        location="Lagos",
        terms="Net 30",
        quantity=10,
        unit_price=100
    )

@pytest.fixture
def list_args():
    return dict(
        nft_id=1,
        price=1000,
        min_price=500,
        duration=30,
        interest_rate=5,
        listing_type="fixed",
        fee_rate=2,
        currency="STX",
        max_bid=2000
    )

@pytest.fixture
def oracle_args():
    return dict(
        location="Nairobi",
        voting_threshold=60,
        grace_period=10,
        interest_rate=5,
        penalty=10
    )

@pytest.fixture
def report_args():
    return dict(
        timestamp=10,
        amount=1000,
        currency="STX",
        early=False,
        grace_period=5,
        interest_rate=3,
        penalty=2
    )
