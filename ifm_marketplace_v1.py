"""
Invoice Financing Marketplace (IFM) - Marketplace Wiring
Version: 1.0.0

Builds the three registries over one shared block clock, balance ledger,
title registry and decision ledger. Supplier mints, lists into the pool,
financiers bid, an oracle attests payment.
"""

from typing import Dict, Optional

from ifm_config import MarketplaceSettings, get_settings
from ifm_collaborators_v1 import BalanceLedger, BlockClock, TitleRegistry
from ifm_enforcement_v1 import DecisionLedger, logger
from ifm_invoice_registry_v1 import InvoiceRegistry
from ifm_financing_pool_v1 import FinancingPool
from ifm_payment_oracle_v1 import PaymentOracle


class Marketplace:
    """Shared collaborators plus the invoice, pool and oracle registries."""

    def __init__(
        self,
        settings: Optional[MarketplaceSettings] = None,
        block_height: int = 0
    ):
        self.settings = settings or get_settings()

        self.clock = BlockClock(block_height)
        self.balances = BalanceLedger()
        self.titles = TitleRegistry()
        self.decision_ledger = DecisionLedger(
            self.settings.decision_secret.get_secret_value().encode()
        )

        self.invoices = InvoiceRegistry(
            self.clock,
            self.balances,
            self.titles,
            self.decision_ledger,
            self.settings
        )
        self.pool = FinancingPool(
            self.clock,
            self.balances,
            self.titles,
            self.decision_ledger,
            self.settings
        )
        self.oracle = PaymentOracle(
            self.clock,
            self.balances,
            self.decision_ledger,
            self.settings
        )

        logger.info(f"[MARKETPLACE] Initialized at block {self.clock.block_height}")

    def configure(self, authority: str, pool_admin: str, oracle_authority: Optional[str] = None) -> bool:
        """
        One-time principal setup for all three registries.

        The oracle authority is set by the oracle admin from settings and
        defaults to the invoice authority.
        """
        self.invoices.set_authority(authority)
        self.pool.set_pool_admin(pool_admin)
        self.oracle.set_authority(self.oracle.admin, oracle_authority or authority)
        return True

    def get_system_health(self) -> Dict:
        """Registry counts and decision-ledger health."""
        entries = self.decision_ledger.entries
        passed = sum(1 for entry in entries if entry.result)

        return {
            'block_height': self.clock.block_height,
            'total_invoices': self.invoices.get_invoice_count(),
            'total_listings': self.pool.get_listing_count(),
            'total_oracles': self.oracle.get_oracle_count(),
            'verified_payments': len(self.oracle.storage.verified_payments),
            'total_transfers': len(self.balances.transfers),
            'total_invariant_checks': len(entries),
            'passed_checks': passed,
            'failed_checks': len(entries) - passed,
            'health_score': passed / len(entries) if entries else 1.0,
            'ledger_integrity': self.decision_ledger.verify_chain_integrity()
        }
