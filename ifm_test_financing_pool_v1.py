"""
Invoice Financing Marketplace (IFM) - Financing Pool Tests
Version: 1.0.0

Listing, bidding, settlement and pool deposits, in both the default
escrow mode and the strict/refund variants.
"""

import pytest

from ifm_config import MarketplaceSettings
from ifm_collaborators_v1 import Transfer
from ifm_enforcement_v1 import (
    BURN_ADDRESS,
    AuthorizationError,
    CapacityError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError
)
from ifm_financing_pool_v1 import (
    FinancingPool,
    ERR_INSUFFICIENT_DEPOSIT,
    ERR_INVALID_AMOUNT,
    ERR_INVALID_BID_AMOUNT,
    ERR_INVALID_BIDDER,
    ERR_INVALID_CURRENCY,
    ERR_INVALID_DURATION,
    ERR_INVALID_FEE_RATE,
    ERR_INVALID_INTEREST_RATE,
    ERR_INVALID_LISTING_TYPE,
    ERR_INVALID_MAX_BID,
    ERR_INVALID_MIN_PRICE,
    ERR_INVALID_NFT_ID,
    ERR_INVALID_PRICE,
    ERR_INVALID_STATUS,
    ERR_INVALID_UPDATE_PARAM,
    ERR_LISTING_ALREADY_EXISTS,
    ERR_LISTING_NOT_FOUND,
    ERR_MAX_LISTINGS_EXCEEDED,
    ERR_NOT_AUTHORIZED,
    ERR_POOL_ADMIN_ALREADY_SET,
    ERR_POOL_NOT_VERIFIED
)

SELLER = "ST1TEST"
POOL_ADMIN = "ST2TEST"
BIDDER = "ST4BIDDER"
OTHER_BIDDER = "ST8BIDDER"
CUSTODY = "contract"


def make_pool(clock, balances, titles, decision_ledger, **overrides):
    pool = FinancingPool(clock, balances, titles, decision_ledger, MarketplaceSettings(**overrides))
    pool.set_pool_admin(POOL_ADMIN)
    return pool

@pytest.fixture
def listed(pool, titles, list_args):
    """Pool with listing 0 over a title the seller actually holds."""
    titles.mint(list_args["nft_id"], SELLER)
    pool.list_invoice(SELLER, **list_args)
    return pool

# ============================================
# CONFIGURATION
# ============================================

class TestPoolAdmin:

    def test_admin_scenario(self, clock, balances, titles, decision_ledger, settings, list_args):
        """Sentinel rejected, ST2TEST accepted, first listing is id 0 and pays the admin."""
        pool = FinancingPool(clock, balances, titles, decision_ledger, settings)
        titles.mint(1, SELLER)

        with pytest.raises(AuthorizationError) as exc:
            pool.set_pool_admin(BURN_ADDRESS)
        assert exc.value.code == ERR_NOT_AUTHORIZED
        assert pool.get_pool_admin() is None

        assert pool.set_pool_admin(POOL_ADMIN) == True
        listing_id = pool.list_invoice(SELLER, **list_args)

        assert listing_id == 0
        assert balances.transfers == [Transfer(100, SELLER, POOL_ADMIN)]
        assert titles.owner_of(1) == CUSTODY

    def test_admin_set_once(self, pool):
        with pytest.raises(ConflictError) as exc:
            pool.set_pool_admin("ST9OTHER")

        assert exc.value.code == ERR_POOL_ADMIN_ALREADY_SET
        assert pool.get_pool_admin() == POOL_ADMIN

    def test_listing_requires_admin(self, clock, balances, titles, decision_ledger, settings, list_args):
        pool = FinancingPool(clock, balances, titles, decision_ledger, settings)

        with pytest.raises(AuthorizationError) as exc:
            pool.list_invoice(SELLER, **list_args)

        assert exc.value.code == ERR_POOL_NOT_VERIFIED
        assert balances.transfers == []

    def test_pool_fee_gating(self, clock, balances, titles, decision_ledger, settings, pool):
        unconfigured = FinancingPool(clock, balances, titles, decision_ledger, settings)
        with pytest.raises(AuthorizationError) as exc:
            unconfigured.set_pool_fee(POOL_ADMIN, 5)
        assert exc.value.code == ERR_POOL_NOT_VERIFIED

        with pytest.raises(AuthorizationError) as exc:
            pool.set_pool_fee(SELLER, 5)
        assert exc.value.code == ERR_NOT_AUTHORIZED

        with pytest.raises(ValidationError) as exc:
            pool.set_pool_fee(POOL_ADMIN, -1)
        assert exc.value.code == ERR_INVALID_UPDATE_PARAM

    def test_new_pool_fee_charged(self, pool, balances, titles, list_args):
        titles.mint(1, SELLER)
        pool.set_pool_fee(POOL_ADMIN, 250)

        pool.list_invoice(SELLER, **list_args)

        assert pool.get_pool_fee() == 250
        assert balances.transfers[0] == Transfer(250, SELLER, POOL_ADMIN)

# ============================================
# LISTING
# ============================================

class TestListInvoice:

    def test_listing_fields(self, listed, list_args):
        listing = listed.get_listing(0)

        for name, value in list_args.items():
            assert getattr(listing, name) == value
        assert listing.seller == SELLER
        assert listing.owner == SELLER
        assert listing.status == True
        assert listed.check_listing_existence(1) == True
        assert listed.get_listing_count() == 1

    def test_duplicate_nft_rejected_regardless_of_caller(self, listed, balances, list_args):
        transfers_before = list(balances.transfers)

        for caller in (SELLER, "ST9STRANGER"):
            with pytest.raises(ConflictError) as exc:
                listed.list_invoice(caller, **list_args)
            assert exc.value.code == ERR_LISTING_ALREADY_EXISTS

        assert balances.transfers == transfers_before
        assert listed.get_listing_count() == 1

    @pytest.mark.parametrize("field_name,value,code", [
        ("nft_id", 0, ERR_INVALID_NFT_ID),
        ("price", 0, ERR_INVALID_PRICE),
        ("min_price", 0, ERR_INVALID_MIN_PRICE),
        ("duration", 0, ERR_INVALID_DURATION),
        ("interest_rate", 21, ERR_INVALID_INTEREST_RATE),
        ("listing_type", "swap", ERR_INVALID_LISTING_TYPE),
        ("fee_rate", 11, ERR_INVALID_FEE_RATE),
        ("currency", "BTC", ERR_INVALID_CURRENCY),
        ("max_bid", 0, ERR_INVALID_MAX_BID),
    ])
    def test_field_validation(self, pool, list_args, field_name, value, code):
        list_args[field_name] = value

        with pytest.raises(ValidationError) as exc:
            pool.list_invoice(SELLER, **list_args)

        assert exc.value.code == code
        assert pool.get_listing_count() == 0

    def test_auction_in_usd_accepted(self, pool, titles, list_args):
        titles.mint(1, SELLER)
        list_args.update(listing_type="auction", currency="USD", interest_rate=20, fee_rate=10)

        assert pool.list_invoice(SELLER, **list_args) == 0

    def test_capacity(self, clock, balances, titles, decision_ledger, list_args):
        pool = make_pool(clock, balances, titles, decision_ledger, max_listings=1)
        pool.list_invoice(SELLER, **list_args)
        list_args["nft_id"] = 2

        with pytest.raises(CapacityError) as exc:
            pool.list_invoice(SELLER, **list_args)

        assert exc.value.code == ERR_MAX_LISTINGS_EXCEEDED

    def test_failed_escrow_keeps_listing_by_default(self, pool, balances, titles, list_args):
        """Seller does not hold the title: fee is charged and the listing stands."""
        listing_id = pool.list_invoice(SELLER, **list_args)

        assert pool.get_listing(listing_id) is not None
        assert balances.transfers == [Transfer(100, SELLER, POOL_ADMIN)]
        assert titles.owner_of(1) is None

    def test_failed_escrow_rolls_back_in_strict_mode(self, clock, balances, titles, decision_ledger, list_args):
        pool = make_pool(clock, balances, titles, decision_ledger, strict_title_escrow=True)

        with pytest.raises(AuthorizationError) as exc:
            pool.list_invoice(SELLER, **list_args)

        assert exc.value.code == ERR_NOT_AUTHORIZED
        assert pool.get_listing_count() == 0
        assert pool.check_listing_existence(1) == False
        assert balances.transfers == []

    def test_strict_mode_lists_held_title(self, clock, balances, titles, decision_ledger, list_args):
        pool = make_pool(clock, balances, titles, decision_ledger, strict_title_escrow=True)
        titles.mint(1, SELLER)

        assert pool.list_invoice(SELLER, **list_args) == 0
        assert titles.owner_of(1) == CUSTODY

# ============================================
# UPDATE
# ============================================

class TestUpdateListing:

    def test_update_records_audit_entry(self, listed, clock):
        clock.advance(3)

        assert listed.update_listing(SELLER, 0, 1200, 600) == True

        listing = listed.get_listing(0)
        assert listing.price == 1200
        assert listing.min_price == 600
        assert listing.created_at == 3

        update = listed.get_listing_update(0)
        assert update.update_price == 1200
        assert update.update_min_price == 600
        assert update.update_timestamp == 3
        assert update.updater == SELLER

    def test_only_seller_updates(self, listed):
        with pytest.raises(AuthorizationError):
            listed.update_listing(BIDDER, 0, 1200, 600)

        assert listed.get_listing_update(0) is None

    def test_unknown_listing(self, pool):
        with pytest.raises(NotFoundError) as exc:
            pool.update_listing(SELLER, 5, 1200, 600)

        assert exc.value.code == ERR_LISTING_NOT_FOUND

    @pytest.mark.parametrize("new_price,new_min_price,code", [
        (0, 600, ERR_INVALID_PRICE),
        (1200, 0, ERR_INVALID_MIN_PRICE),
    ])
    def test_update_validation(self, listed, new_price, new_min_price, code):
        with pytest.raises(ValidationError) as exc:
            listed.update_listing(SELLER, 0, new_price, new_min_price)

        assert exc.value.code == code

# ============================================
# BIDDING
# ============================================

class TestPlaceBid:

    @pytest.mark.parametrize("amount", [500, 800, 2000])
    def test_bid_within_bounds(self, listed, balances, amount):
        """Both bounds are inclusive."""
        assert listed.place_bid(BIDDER, 0, amount) == True

        bid = listed.get_bid(0, BIDDER)
        assert bid.amount == amount
        assert bid.bidder == BIDDER
        assert balances.transfers[-1] == Transfer(amount, BIDDER, CUSTODY)

    @pytest.mark.parametrize("amount", [499, 2001])
    def test_bid_outside_bounds(self, listed, balances, amount):
        transfers_before = list(balances.transfers)

        with pytest.raises(ValidationError) as exc:
            listed.place_bid(BIDDER, 0, amount)

        assert exc.value.code == ERR_INVALID_BID_AMOUNT
        assert listed.get_bid(0, BIDDER) is None
        assert balances.transfers == transfers_before

    def test_bid_on_unknown_listing(self, pool):
        with pytest.raises(NotFoundError) as exc:
            pool.place_bid(BIDDER, 3, 800)

        assert exc.value.code == ERR_LISTING_NOT_FOUND

    def test_rebid_overwrites_without_refund(self, listed, balances):
        listed.place_bid(BIDDER, 0, 600)
        listed.place_bid(BIDDER, 0, 700)

        assert listed.get_bid(0, BIDDER).amount == 700
        assert balances.transfers_between(BIDDER, CUSTODY) == [
            Transfer(600, BIDDER, CUSTODY),
            Transfer(700, BIDDER, CUSTODY)
        ]
        assert balances.transfers_between(CUSTODY, BIDDER) == []
        assert balances.net_position(BIDDER) == -1300

    def test_rebid_refunds_when_enabled(self, clock, balances, titles, decision_ledger, list_args):
        pool = make_pool(clock, balances, titles, decision_ledger, refund_superseded_bids=True)
        titles.mint(1, SELLER)
        pool.list_invoice(SELLER, **list_args)

        pool.place_bid(BIDDER, 0, 600)
        pool.place_bid(BIDDER, 0, 700)

        assert balances.transfers_between(CUSTODY, BIDDER) == [Transfer(600, CUSTODY, BIDDER)]
        assert balances.net_position(BIDDER) == -700

    def test_bids_are_per_bidder(self, listed):
        listed.place_bid(BIDDER, 0, 600)
        listed.place_bid(OTHER_BIDDER, 0, 900)

        assert listed.get_bid(0, BIDDER).amount == 600
        assert listed.get_bid(0, OTHER_BIDDER).amount == 900

# ============================================
# SETTLEMENT
# ============================================

class TestAcceptBid:

    def test_accept_scenario(self, listed, balances, titles):
        """Bid of 800 in [500, 2000]: accepted, listing closed, funds to seller, title to bidder."""
        listed.place_bid(BIDDER, 0, 800)

        assert listed.accept_bid(SELLER, 0, BIDDER) == True

        assert listed.get_listing(0).status == False
        assert listed.get_bid(0, BIDDER) is None
        assert balances.transfers[-1] == Transfer(800, CUSTODY, SELLER)
        assert titles.owner_of(1) == BIDDER

    def test_only_seller_accepts(self, listed):
        listed.place_bid(BIDDER, 0, 800)

        with pytest.raises(AuthorizationError) as exc:
            listed.accept_bid(BIDDER, 0, BIDDER)

        assert exc.value.code == ERR_NOT_AUTHORIZED
        assert listed.get_listing(0).status == True

    def test_accept_missing_bid(self, listed):
        with pytest.raises(NotFoundError) as exc:
            listed.accept_bid(SELLER, 0, BIDDER)

        assert exc.value.code == ERR_INVALID_BIDDER

    def test_accept_unknown_listing(self, pool):
        with pytest.raises(NotFoundError) as exc:
            pool.accept_bid(SELLER, 9, BIDDER)

        assert exc.value.code == ERR_LISTING_NOT_FOUND

    def test_sold_listing_is_terminal(self, listed, list_args):
        listed.place_bid(BIDDER, 0, 800)
        listed.place_bid(OTHER_BIDDER, 0, 900)
        listed.accept_bid(SELLER, 0, BIDDER)

        with pytest.raises(StateError) as exc:
            listed.place_bid(BIDDER, 0, 1000)
        assert exc.value.code == ERR_INVALID_STATUS

        with pytest.raises(StateError):
            listed.update_listing(SELLER, 0, 1200, 600)

        with pytest.raises(StateError):
            listed.accept_bid(SELLER, 0, OTHER_BIDDER)

        # The nft index entry outlives the sale
        with pytest.raises(ConflictError):
            listed.list_invoice(SELLER, **list_args)

    def test_unescrowed_title_sale_in_strict_mode_rolls_back(self, clock, balances, titles, decision_ledger, list_args):
        pool = make_pool(clock, balances, titles, decision_ledger, strict_title_escrow=True)
        titles.mint(1, SELLER)
        pool.list_invoice(SELLER, **list_args)
        pool.place_bid(BIDDER, 0, 800)
        # Title leaves custody behind the pool's back
        titles.transfer(1, CUSTODY, "ST9ELSEWHERE")
        transfers_before = list(balances.transfers)

        with pytest.raises(StateError):
            pool.accept_bid(SELLER, 0, BIDDER)

        assert pool.get_listing(0).status == True
        assert pool.get_bid(0, BIDDER) is not None
        assert balances.transfers == transfers_before

# ============================================
# POOL DEPOSITS
# ============================================

class TestPoolDeposits:

    def test_deposit_and_withdraw(self, pool, balances):
        assert pool.deposit_to_pool(BIDDER, 500) == True
        assert pool.withdraw_from_pool(BIDDER, 200) == True

        assert pool.get_pool_deposit(BIDDER) == 300
        assert balances.transfers == [
            Transfer(500, BIDDER, CUSTODY),
            Transfer(200, CUSTODY, BIDDER)
        ]

    def test_withdraw_more_than_deposit(self, pool, balances):
        pool.deposit_to_pool(BIDDER, 300)

        with pytest.raises(ValidationError) as exc:
            pool.withdraw_from_pool(BIDDER, 400)

        assert exc.value.code == ERR_INSUFFICIENT_DEPOSIT
        assert pool.get_pool_deposit(BIDDER) == 300
        assert len(balances.transfers) == 1

    def test_withdraw_entire_deposit(self, pool):
        pool.deposit_to_pool(BIDDER, 300)
        pool.withdraw_from_pool(BIDDER, 300)

        assert pool.get_pool_deposit(BIDDER) == 0

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amounts(self, pool, amount):
        with pytest.raises(ValidationError) as exc:
            pool.deposit_to_pool(BIDDER, amount)
        assert exc.value.code == ERR_INVALID_AMOUNT

        with pytest.raises(ValidationError) as exc:
            pool.withdraw_from_pool(BIDDER, amount)
        assert exc.value.code == ERR_INVALID_AMOUNT

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
