"""
Invoice Financing Marketplace - Prometheus Metrics
Observability for the invoice, pool and oracle registries
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# INVOICE METRICS
# ============================================

invoice_minted_counter = Counter(
    'ifm_invoices_minted_total',
    'Total number of invoices minted',
    ['currency'],
    registry=metrics_registry
)

invoice_paid_counter = Counter(
    'ifm_invoices_paid_total',
    'Total number of invoices marked paid by their buyer',
    registry=metrics_registry
)

invoice_burned_counter = Counter(
    'ifm_invoices_burned_total',
    'Total number of invoices burned by their supplier',
    registry=metrics_registry
)

invoice_amount_histogram = Histogram(
    'ifm_invoice_amount',
    'Minted invoice face amounts',
    buckets=[100, 1000, 5000, 10000, 50000, 100000, 500000, 1000000, 10000000],
    registry=metrics_registry
)

# ============================================
# POOL METRICS
# ============================================

listing_created_counter = Counter(
    'ifm_listings_created_total',
    'Total number of listings created',
    ['listing_type', 'currency'],
    registry=metrics_registry
)

bid_placed_counter = Counter(
    'ifm_bids_placed_total',
    'Total number of bids placed',
    registry=metrics_registry
)

bid_accepted_counter = Counter(
    'ifm_bids_accepted_total',
    'Total number of bids accepted (listings sold)',
    registry=metrics_registry
)

title_escrow_failure_counter = Counter(
    'ifm_title_escrow_failures_total',
    'Title transfers that reported failure',
    ['stage'],  # listing, settlement
    registry=metrics_registry
)

escrowed_funds_gauge = Gauge(
    'ifm_escrowed_bid_funds',
    'Funds currently held in custody for live bids',
    registry=metrics_registry
)

active_listings_gauge = Gauge(
    'ifm_active_listings',
    'Listings currently open for bids',
    registry=metrics_registry
)

# ============================================
# ORACLE METRICS
# ============================================

oracle_registered_counter = Counter(
    'ifm_oracles_registered_total',
    'Total number of oracles registered',
    registry=metrics_registry
)

payment_verified_counter = Counter(
    'ifm_payments_verified_total',
    'Total number of verified payment reports',
    ['currency', 'early'],
    registry=metrics_registry
)

# ============================================
# ENFORCEMENT METRICS
# ============================================

operation_rejection_counter = Counter(
    'ifm_operation_rejections_total',
    'Registry operations rejected',
    ['registry', 'error_type'],
    registry=metrics_registry
)

invariant_check_counter = Counter(
    'ifm_invariant_checks_total',
    'Total number of invariant post-checks',
    ['invariant_id', 'result'],
    registry=metrics_registry
)

rollback_counter = Counter(
    'ifm_rollbacks_total',
    'Total number of rollbacks executed',
    ['registry', 'reason'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_invoice_minted(currency: str, amount: int):
    """Record invoice mint metrics."""
    invoice_minted_counter.labels(currency=currency).inc()
    invoice_amount_histogram.observe(amount)

def record_invoice_paid():
    invoice_paid_counter.inc()

def record_invoice_burned():
    invoice_burned_counter.inc()

def record_listing_created(listing_type: str, currency: str):
    """Record listing creation metrics."""
    listing_created_counter.labels(
        listing_type=listing_type,
        currency=currency
    ).inc()
    active_listings_gauge.inc()

def record_bid_placed(amount: int, refunded: int = 0):
    """Record a bid escrow (and any refunded prior escrow)."""
    bid_placed_counter.inc()
    escrowed_funds_gauge.inc(amount - refunded)

def record_bid_accepted(amount: int):
    """Record a sale: escrow released to the seller."""
    bid_accepted_counter.inc()
    escrowed_funds_gauge.dec(amount)
    active_listings_gauge.dec()

def record_title_escrow_failure(stage: str):
    title_escrow_failure_counter.labels(stage=stage).inc()

def record_oracle_registered():
    oracle_registered_counter.inc()

def record_payment_verified(currency: str, early: bool):
    payment_verified_counter.labels(
        currency=currency,
        early="true" if early else "false"
    ).inc()

def record_rejection(registry: str, error_type: str):
    """Record a rejected operation."""
    operation_rejection_counter.labels(
        registry=registry,
        error_type=error_type
    ).inc()

def record_invariant_check(invariant_id: str, result: bool):
    """Record invariant check metrics."""
    invariant_check_counter.labels(
        invariant_id=invariant_id,
        result="passed" if result else "failed"
    ).inc()

def record_rollback(registry: str, reason: str):
    rollback_counter.labels(registry=registry, reason=reason).inc()
