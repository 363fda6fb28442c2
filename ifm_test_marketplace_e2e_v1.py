"""
Invoice Financing Marketplace (IFM) - End-to-End Tests
Version: 1.0.0

Supplier mints, lists into the pool, a financier buys the title, the
buyer pays, and an oracle attests the payment, all over one shared set
of collaborators.
"""

import pytest

from ifm_config import MarketplaceSettings
from ifm_collaborators_v1 import Transfer
from ifm_enforcement_v1 import AuthorizationError, ConflictError
from ifm_marketplace_v1 import Marketplace

SUPPLIER = "ST1SUPPLIER"
BUYER = "ST2BUYER"
AUTHORITY = "ST3AUTHORITY"
POOL_ADMIN = "ST2TEST"
FINANCIER = "ST4FINANCIER"
ORACLE = "ORACLE1"
CUSTODY = "contract"


@pytest.fixture
def marketplace():
    market = Marketplace(MarketplaceSettings())
    market.configure(AUTHORITY, POOL_ADMIN)
    return market

def mint(market, due_date=100):
    return market.invoices.mint(
        SUPPLIER, 1000, due_date, BUYER, "Cocoa beans, 10t", "USD",
        5, 10, "Accra", "Net 60", 10, 100
    )

def list_for_sale(market, invoice_id):
    return market.pool.list_invoice(
        SUPPLIER, invoice_id, 1000, 500, 30, 5, "fixed", 2, "USD", 2000
    )

class TestMarketplaceFlow:

    def test_configure(self, marketplace):
        assert marketplace.invoices.get_authority() == AUTHORITY
        assert marketplace.pool.get_pool_admin() == POOL_ADMIN
        assert marketplace.oracle.get_authority() == AUTHORITY

    def test_complete_financing_flow(self, marketplace):
        market = marketplace
        mint(market)
        invoice_id = mint(market)
        assert invoice_id == 1

        # Listing escrows the title away from the supplier
        listing_id = list_for_sale(market, invoice_id)
        assert market.titles.owner_of(invoice_id) == CUSTODY
        with pytest.raises(AuthorizationError):
            market.invoices.burn_invoice(SUPPLIER, invoice_id)
        with pytest.raises(AuthorizationError):
            market.invoices.transfer(SUPPLIER, invoice_id, FINANCIER)

        market.clock.advance(3)
        market.pool.place_bid(FINANCIER, listing_id, 800)
        market.pool.accept_bid(SUPPLIER, listing_id, FINANCIER)
        assert market.titles.owner_of(invoice_id) == FINANCIER

        market.invoices.mark_paid(BUYER, invoice_id)
        assert market.invoices.get_invoice(invoice_id).paid == True

        market.oracle.register_oracle(ORACLE, ORACLE, "Accra", 50, 10, 5, 10)
        market.oracle.report_payment(ORACLE, invoice_id, 3, 1000, "USD", False, 10, 5, 10)
        assert market.oracle.get_verified_payment(invoice_id).reporter == ORACLE

        assert market.balances.transfers == [
            Transfer(500, SUPPLIER, AUTHORITY),
            Transfer(500, SUPPLIER, AUTHORITY),
            Transfer(100, SUPPLIER, POOL_ADMIN),
            Transfer(800, FINANCIER, CUSTODY),
            Transfer(800, CUSTODY, SUPPLIER),
            Transfer(100, ORACLE, AUTHORITY),
        ]
        assert market.balances.net_position(SUPPLIER) == -300
        assert market.balances.net_position(CUSTODY) == 0

    def test_system_health(self, marketplace):
        market = marketplace
        invoice_id = mint(market)
        mint(market)
        list_for_sale(market, invoice_id + 1)

        with pytest.raises(ConflictError):
            list_for_sale(market, invoice_id + 1)

        health = market.get_system_health()

        assert health['total_invoices'] == 2
        assert health['total_listings'] == 1
        assert health['total_oracles'] == 0
        assert health['verified_payments'] == 0
        assert health['total_transfers'] == 3
        assert health['total_invariant_checks'] > 0
        assert health['failed_checks'] == 0
        assert health['health_score'] == 1.0
        assert health['ledger_integrity'] == True

    def test_registries_share_one_decision_ledger(self, marketplace):
        market = marketplace
        invoice_id = mint(market)
        mint(market)
        list_for_sale(market, invoice_id + 1)
        market.oracle.register_oracle(ORACLE, ORACLE, "Accra", 50, 10, 5, 10)

        owners = {entry.invariant_id.split("_")[1][0] for entry in market.decision_ledger.entries}
        assert owners == {"i", "p", "o"}

    def test_separate_oracle_authority(self):
        market = Marketplace(MarketplaceSettings())
        market.configure(AUTHORITY, POOL_ADMIN, oracle_authority="ST9ORACLEFEES")

        market.oracle.register_oracle(ORACLE, ORACLE, "Accra", 50, 10, 5, 10)

        assert market.balances.transfers == [Transfer(100, ORACLE, "ST9ORACLEFEES")]

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
