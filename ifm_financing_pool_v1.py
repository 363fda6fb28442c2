"""
Invoice Financing Marketplace (IFM) - Financing Pool
Version: 1.0.0

Marketplace listings for tokenized invoices. Listing escrows the invoice
title into pool custody; bids escrow funds; accepting a bid releases the
funds to the seller and the title to the bidder.

    nonexistent --list_invoice--> active --accept_bid--> sold (terminal)
                                   |  ^
                                   |  +-- update_listing / place_bid
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple, Any

from ifm_config import MarketplaceSettings, get_settings
from ifm_collaborators_v1 import BalanceLedger, BlockClock, TitleRegistry
from ifm_enforcement_v1 import (
    BURN_ADDRESS,
    AuthorizationError,
    CapacityError,
    ConflictError,
    Criticality,
    DecisionLedger,
    Invariant,
    InvariantEnforcer,
    InvariantType,
    NotFoundError,
    RegistryBase,
    StateError,
    ValidationError,
    logger
)
from ifm_metrics import (
    record_bid_accepted,
    record_bid_placed,
    record_listing_created,
    record_title_escrow_failure
)

# ============================================
# ERROR CODES
# ============================================

ERR_NOT_AUTHORIZED = 100
ERR_INVALID_PRICE = 101
ERR_INVALID_NFT_ID = 102
ERR_INVALID_AMOUNT = 103
ERR_INVALID_INTEREST_RATE = 104
ERR_INVALID_DURATION = 105
ERR_LISTING_ALREADY_EXISTS = 106
ERR_LISTING_NOT_FOUND = 107
ERR_INVALID_BID_AMOUNT = 108
ERR_POOL_NOT_VERIFIED = 109
ERR_INVALID_MIN_PRICE = 110
ERR_INVALID_MAX_BID = 111
ERR_INSUFFICIENT_DEPOSIT = 112
ERR_INVALID_UPDATE_PARAM = 113
ERR_MAX_LISTINGS_EXCEEDED = 114
ERR_INVALID_LISTING_TYPE = 115
ERR_INVALID_FEE_RATE = 116
ERR_POOL_ADMIN_ALREADY_SET = 117
ERR_INVALID_BIDDER = 118
ERR_INVALID_CURRENCY = 119
ERR_INVALID_STATUS = 120

LISTING_TYPES = ("fixed", "auction")
LISTING_CURRENCIES = ("STX", "USD")
MAX_INTEREST_RATE = 20
MAX_FEE_RATE = 10

BidKey = Tuple[int, str]

# ============================================
# DATA MODELS
# ============================================

@dataclass
class Listing:
    """Pool listing of one invoice title."""
    listing_id: int
    nft_id: int
    price: int
    min_price: int
    max_bid: int
    seller: str
    owner: str
    duration: int
    interest_rate: int
    listing_type: str
    fee_rate: int
    currency: str
    created_at: int = 0
    status: bool = True  # False once sold

    def accepts_bid(self, amount: int) -> bool:
        """Bounds are inclusive at both ends."""
        return self.status and self.min_price <= amount <= self.max_bid

    def to_dict(self) -> Dict:
        return {
            'listing_id': self.listing_id,
            'nft_id': self.nft_id,
            'price': self.price,
            'min_price': self.min_price,
            'max_bid': self.max_bid,
            'seller': self.seller,
            'owner': self.owner,
            'created_at': self.created_at,
            'duration': self.duration,
            'interest_rate': self.interest_rate,
            'listing_type': self.listing_type,
            'fee_rate': self.fee_rate,
            'currency': self.currency,
            'status': self.status
        }

@dataclass(frozen=True)
class ListingUpdate:
    """Price amendment audit entry."""
    update_price: int
    update_min_price: int
    update_timestamp: int
    updater: str

@dataclass(frozen=True)
class Bid:
    """Live bid. One per (listing, bidder); a re-bid replaces it."""
    listing_id: int
    bidder: str
    amount: int
    timestamp: int

    def to_dict(self) -> Dict:
        return {
            'listing_id': self.listing_id,
            'bidder': self.bidder,
            'amount': self.amount,
            'timestamp': self.timestamp
        }

# ============================================
# STORAGE LAYER
# ============================================

@dataclass
class PoolStorage:
    """Listing table with its nft index, bids, update audit and pool deposits."""
    listings: Dict[int, Listing] = field(default_factory=dict)
    updates: Dict[int, ListingUpdate] = field(default_factory=dict)
    by_nft: Dict[int, int] = field(default_factory=dict)
    bids: Dict[BidKey, Bid] = field(default_factory=dict)
    deposits: Dict[str, int] = field(default_factory=dict)
    next_listing_id: int = 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            'listings': {k: replace(v) for k, v in self.listings.items()},
            'updates': dict(self.updates),
            'by_nft': dict(self.by_nft),
            'bids': dict(self.bids),
            'deposits': dict(self.deposits),
            'next_listing_id': self.next_listing_id
        }

    def restore(self, snapshot: Dict[str, Any]):
        self.listings = snapshot['listings']
        self.updates = snapshot['updates']
        self.by_nft = snapshot['by_nft']
        self.bids = snapshot['bids']
        self.deposits = snapshot['deposits']
        self.next_listing_id = snapshot['next_listing_id']
        logger.warning("[STORAGE] Restored pool tables from snapshot")

# ============================================
# INVARIANTS
# ============================================

class OneListingPerInvoice(Invariant):
    """The nft index points back at a listing of that same nft."""

    def __init__(self):
        super().__init__(
            id="inv_p01_one_listing_per_invoice",
            statement="Each nft id maps to exactly one listing, and that listing carries the nft id",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            owner="financing_pool"
        )

    def post_check(self, result: Dict[str, Any]) -> bool:
        nft_id = result.get('nft_id')
        if nft_id is None:
            return True
        storage = result['storage']
        listing = storage.listings.get(storage.by_nft.get(nft_id))
        return listing is not None and listing.nft_id == nft_id

class SoldListingsHoldNoAcceptedBid(Invariant):
    """Escrow is released once: an accepted bid is gone and its listing is closed."""

    def __init__(self):
        super().__init__(
            id="inv_p02_release_once",
            statement="After acceptance the listing is inactive and the accepted bid no longer exists",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            owner="financing_pool"
        )

    def post_check(self, result: Dict[str, Any]) -> bool:
        accepted = result.get('accepted_bid')
        if accepted is None:
            return True
        storage = result['storage']
        listing = storage.listings[accepted[0]]
        return not listing.status and accepted not in storage.bids

class DepositsNonNegative(Invariant):
    """Pool deposit balances never go below zero."""

    def __init__(self):
        super().__init__(
            id="inv_p03_deposits_non_negative",
            statement="Every pool deposit balance is non-negative",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            owner="financing_pool"
        )

    def post_check(self, result: Dict[str, Any]) -> bool:
        depositor = result.get('depositor')
        if depositor is None:
            return True
        return result['storage'].deposits.get(depositor, 0) >= 0

class TitleInCustody(Invariant):
    """With strict escrow, a new listing's title sits with the pool."""

    def __init__(self, custody: str):
        super().__init__(
            id="inv_p04_title_in_custody",
            statement="A freshly listed nft is owned by the pool custody principal",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            owner="financing_pool"
        )
        self.custody = custody

    def post_check(self, result: Dict[str, Any]) -> bool:
        if result.get('operation') != "list_invoice":
            return True
        return result['titles'].owner_of(result['nft_id']) == self.custody

# ============================================
# FINANCING POOL
# ============================================

class FinancingPool(RegistryBase):
    """Listing registry: listings, bids and pool deposits."""

    REGISTRY = "financing_pool"
    TAG = "POOL"

    def __init__(
        self,
        clock: BlockClock,
        balances: BalanceLedger,
        titles: TitleRegistry,
        ledger: DecisionLedger,
        settings: Optional[MarketplaceSettings] = None,
        lock=None
    ):
        settings = settings or get_settings()
        self.clock = clock
        self.balances = balances
        self.titles = titles
        self.storage = PoolStorage()

        self.max_listings = settings.max_listings
        self.pool_fee = settings.pool_fee
        self.custody = settings.pool_custody_principal
        self.strict_title_escrow = settings.strict_title_escrow
        self.refund_superseded_bids = settings.refund_superseded_bids
        self.pool_admin: Optional[str] = None

        invariants = [
            OneListingPerInvoice(),
            SoldListingsHoldNoAcceptedBid(),
            DepositsNonNegative()
        ]
        if self.strict_title_escrow:
            invariants.append(TitleInCustody(self.custody))

        self._lock = lock if lock is not None else balances.lock
        self.enforcer = InvariantEnforcer(self.REGISTRY, invariants, ledger, clock)

        logger.info(
            f"[{self.TAG}] Initialized (max={self.max_listings}, fee={self.pool_fee}, "
            f"custody={self.custody}, strict_escrow={self.strict_title_escrow})"
        )

    def _participants(self) -> List[Any]:
        return [self.storage, self.balances, self.titles]

    def _result(self, operation: str, **extra) -> Dict[str, Any]:
        return {'storage': self.storage, 'titles': self.titles, 'operation': operation, **extra}

    # ----- configuration -----

    def set_pool_admin(self, principal: str) -> bool:
        """One-time configuration of the fee-collecting pool admin."""
        with self._lock:
            if principal == BURN_ADDRESS:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, "burn address cannot be the pool admin")
            if self.pool_admin is not None:
                self._fail(ConflictError, ERR_POOL_ADMIN_ALREADY_SET, "pool admin already configured")

            self.pool_admin = principal
            logger.info(f"[{self.TAG}] Pool admin set to {principal}")
            return True

    def set_pool_fee(self, caller: str, fee: int) -> bool:
        with self._lock:
            if self.pool_admin is None:
                self._fail(AuthorizationError, ERR_POOL_NOT_VERIFIED, "pool admin not configured")
            if caller != self.pool_admin:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the pool admin")
            if fee < 0:
                self._fail(ValidationError, ERR_INVALID_UPDATE_PARAM, f"fee must be non-negative, got {fee}")

            self.pool_fee = fee
            logger.info(f"[{self.TAG}] Pool fee set to {fee}")
            return True

    # ----- pool deposits -----

    def deposit_to_pool(self, caller: str, amount: int) -> bool:
        with self._lock:
            if amount <= 0:
                self._fail(ValidationError, ERR_INVALID_AMOUNT, f"deposit must be positive, got {amount}")

            def _deposit_action() -> Dict[str, Any]:
                self.balances.transfer(amount, caller, self.custody)
                self.storage.deposits[caller] = self.storage.deposits.get(caller, 0) + amount
                return self._result("deposit_to_pool", depositor=caller)

            self.enforcer.enforce_action("deposit_to_pool", _deposit_action, [self.storage, self.balances])

            logger.info(f"[{self.TAG}] {caller} deposited {amount}")
            return True

    def withdraw_from_pool(self, caller: str, amount: int) -> bool:
        with self._lock:
            if amount <= 0:
                self._fail(ValidationError, ERR_INVALID_AMOUNT, f"withdrawal must be positive, got {amount}")
            balance = self.storage.deposits.get(caller, 0)
            if amount > balance:
                self._fail(ValidationError, ERR_INSUFFICIENT_DEPOSIT, f"{caller} has {balance}, requested {amount}")

            def _withdraw_action() -> Dict[str, Any]:
                self.balances.transfer(amount, self.custody, caller)
                self.storage.deposits[caller] = balance - amount
                return self._result("withdraw_from_pool", depositor=caller)

            self.enforcer.enforce_action("withdraw_from_pool", _withdraw_action, [self.storage, self.balances])

            logger.info(f"[{self.TAG}] {caller} withdrew {amount}")
            return True

    # ----- listings -----

    def list_invoice(
        self,
        caller: str,
        nft_id: int,
        price: int,
        min_price: int,
        duration: int,
        interest_rate: int,
        listing_type: str,
        fee_rate: int,
        currency: str,
        max_bid: int
    ) -> int:
        """
        List an invoice title for sale or auction.

        Charges the pool fee to the admin and moves the title into pool
        custody. The title transfer result is only enforced when
        ``strict_title_escrow`` is set; otherwise a failed escrow is
        logged and the listing stands, fee included.
        """
        with self._lock:
            storage = self.storage

            if storage.next_listing_id >= self.max_listings:
                self._fail(CapacityError, ERR_MAX_LISTINGS_EXCEEDED, "pool is full")
            if nft_id <= 0:
                self._fail(ValidationError, ERR_INVALID_NFT_ID, f"nft id must be positive, got {nft_id}")
            if price <= 0:
                self._fail(ValidationError, ERR_INVALID_PRICE, f"price must be positive, got {price}")
            if min_price <= 0:
                self._fail(ValidationError, ERR_INVALID_MIN_PRICE, f"min price must be positive, got {min_price}")
            if duration <= 0:
                self._fail(ValidationError, ERR_INVALID_DURATION, f"duration must be positive, got {duration}")
            if interest_rate > MAX_INTEREST_RATE:
                self._fail(ValidationError, ERR_INVALID_INTEREST_RATE, f"interest rate {interest_rate} exceeds 20")
            if listing_type not in LISTING_TYPES:
                self._fail(ValidationError, ERR_INVALID_LISTING_TYPE, f"unknown listing type {listing_type!r}")
            if fee_rate > MAX_FEE_RATE:
                self._fail(ValidationError, ERR_INVALID_FEE_RATE, f"fee rate {fee_rate} exceeds 10")
            if currency not in LISTING_CURRENCIES:
                self._fail(ValidationError, ERR_INVALID_CURRENCY, f"unsupported currency {currency!r}")
            if max_bid <= 0:
                self._fail(ValidationError, ERR_INVALID_MAX_BID, f"max bid must be positive, got {max_bid}")
            if nft_id in storage.by_nft:
                self._fail(ConflictError, ERR_LISTING_ALREADY_EXISTS, f"nft {nft_id} is already listed")
            if self.pool_admin is None:
                self._fail(AuthorizationError, ERR_POOL_NOT_VERIFIED, "pool admin not configured")

            listing_id = storage.next_listing_id

            def _list_action() -> Dict[str, Any]:
                self.balances.transfer(self.pool_fee, caller, self.pool_admin)

                if not self.titles.transfer(nft_id, caller, self.custody):
                    record_title_escrow_failure("listing")
                    if self.strict_title_escrow:
                        self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} could not escrow title {nft_id}")
                    logger.warning(f"[{self.TAG}] Title {nft_id} was not escrowed; listing {listing_id} proceeds")

                storage.listings[listing_id] = Listing(
                    listing_id=listing_id,
                    nft_id=nft_id,
                    price=price,
                    min_price=min_price,
                    max_bid=max_bid,
                    seller=caller,
                    owner=caller,
                    duration=duration,
                    interest_rate=interest_rate,
                    listing_type=listing_type,
                    fee_rate=fee_rate,
                    currency=currency,
                    created_at=self.clock.block_height
                )
                storage.by_nft[nft_id] = listing_id
                storage.next_listing_id += 1
                return self._result("list_invoice", nft_id=nft_id)

            self.enforcer.enforce_action("list_invoice", _list_action, self._participants())

            record_listing_created(listing_type, currency)
            logger.info(f"[{self.TAG}] Listing {listing_id}: nft {nft_id} by {caller} ({listing_type}, {price} {currency})")
            return listing_id

    def _require_listing(self, listing_id: int) -> Listing:
        listing = self.storage.listings.get(listing_id)
        if listing is None:
            self._fail(NotFoundError, ERR_LISTING_NOT_FOUND, f"listing {listing_id} not found")
        return listing

    def _require_active(self, listing: Listing):
        if not listing.status:
            self._fail(StateError, ERR_INVALID_STATUS, f"listing {listing.listing_id} is closed")

    def update_listing(self, caller: str, listing_id: int, new_price: int, new_min_price: int) -> bool:
        """Seller reprices an open listing."""
        with self._lock:
            listing = self._require_listing(listing_id)
            if listing.seller != caller:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the seller")
            self._require_active(listing)
            if new_price <= 0:
                self._fail(ValidationError, ERR_INVALID_PRICE, f"price must be positive, got {new_price}")
            if new_min_price <= 0:
                self._fail(ValidationError, ERR_INVALID_MIN_PRICE, f"min price must be positive, got {new_min_price}")

            height = self.clock.block_height

            def _update_action() -> Dict[str, Any]:
                listing.price = new_price
                listing.min_price = new_min_price
                listing.created_at = height
                self.storage.updates[listing_id] = ListingUpdate(
                    update_price=new_price,
                    update_min_price=new_min_price,
                    update_timestamp=height,
                    updater=caller
                )
                return self._result("update_listing", nft_id=listing.nft_id)

            self.enforcer.enforce_action("update_listing", _update_action, [self.storage])

            logger.info(f"[{self.TAG}] Listing {listing_id} repriced: {new_price} (floor {new_min_price})")
            return True

    # ----- bidding -----

    def place_bid(self, caller: str, listing_id: int, amount: int) -> bool:
        """
        Escrow ``amount`` from the caller and record it as their bid.

        A repeat bid replaces the caller's previous one. The previous
        escrow stays in custody unless ``refund_superseded_bids`` is set.
        """
        with self._lock:
            listing = self._require_listing(listing_id)
            self._require_active(listing)
            if amount > listing.max_bid:
                self._fail(ValidationError, ERR_INVALID_BID_AMOUNT, f"bid {amount} exceeds max bid {listing.max_bid}")
            if amount < listing.min_price:
                self._fail(ValidationError, ERR_INVALID_BID_AMOUNT, f"bid {amount} is below min price {listing.min_price}")

            key = (listing_id, caller)
            previous = self.storage.bids.get(key)
            refunded = 0

            def _bid_action() -> Dict[str, Any]:
                nonlocal refunded
                if previous is not None and self.refund_superseded_bids:
                    self.balances.transfer(previous.amount, self.custody, caller)
                    refunded = previous.amount
                self.balances.transfer(amount, caller, self.custody)
                self.storage.bids[key] = Bid(
                    listing_id=listing_id,
                    bidder=caller,
                    amount=amount,
                    timestamp=self.clock.block_height
                )
                return self._result("place_bid", nft_id=listing.nft_id)

            self.enforcer.enforce_action("place_bid", _bid_action, [self.storage, self.balances])

            record_bid_placed(amount, refunded)
            if previous is not None and not refunded:
                logger.warning(f"[{self.TAG}] Bid by {caller} on {listing_id} superseded; {previous.amount} stays escrowed")
            logger.info(f"[{self.TAG}] Bid {amount} by {caller} on listing {listing_id}")
            return True

    def accept_bid(self, caller: str, listing_id: int, bidder: str) -> bool:
        """Seller accepts a bid: funds to seller, title to bidder, listing closed."""
        with self._lock:
            listing = self._require_listing(listing_id)
            key = (listing_id, bidder)
            bid = self.storage.bids.get(key)
            if bid is None:
                self._fail(NotFoundError, ERR_INVALID_BIDDER, f"{bidder} has no bid on listing {listing_id}")
            if listing.seller != caller:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the seller")
            self._require_active(listing)

            def _accept_action() -> Dict[str, Any]:
                self.balances.transfer(bid.amount, self.custody, listing.seller)

                if not self.titles.transfer(listing.nft_id, self.custody, bidder):
                    record_title_escrow_failure("settlement")
                    if self.strict_title_escrow:
                        self._fail(StateError, ERR_INVALID_STATUS, f"title {listing.nft_id} is not in custody")
                    logger.warning(f"[{self.TAG}] Title {listing.nft_id} could not be released to {bidder}")

                listing.status = False
                del self.storage.bids[key]
                return self._result("accept_bid", nft_id=listing.nft_id, accepted_bid=key)

            self.enforcer.enforce_action("accept_bid", _accept_action, self._participants())

            record_bid_accepted(bid.amount)
            logger.info(f"[{self.TAG}] Listing {listing_id} sold to {bidder} for {bid.amount}")
            return True

    # ----- reads -----

    def get_listing(self, listing_id: int) -> Optional[Listing]:
        listing = self.storage.listings.get(listing_id)
        return replace(listing) if listing else None

    def get_listing_update(self, listing_id: int) -> Optional[ListingUpdate]:
        return self.storage.updates.get(listing_id)

    def get_listing_count(self) -> int:
        return self.storage.next_listing_id

    def check_listing_existence(self, nft_id: int) -> bool:
        return nft_id in self.storage.by_nft

    def get_bid(self, listing_id: int, bidder: str) -> Optional[Bid]:
        return self.storage.bids.get((listing_id, bidder))

    def get_pool_deposit(self, principal: str) -> int:
        return self.storage.deposits.get(principal, 0)

    def get_pool_admin(self) -> Optional[str]:
        return self.pool_admin

    def get_pool_fee(self) -> int:
        return self.pool_fee
