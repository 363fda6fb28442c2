"""
Invoice Financing Marketplace (IFM) - Invoice Registry
Version: 1.0.0

Tokenized invoice lifecycle: mint, title transfer, payment, amendment, burn.

    nonexistent --mint--> pending --mark_paid--> paid (terminal)
                            |  ^
                            |  +-- transfer / update_invoice
                            +--burn_invoice--> nonexistent
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any

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
from ifm_metrics import record_invoice_burned, record_invoice_minted, record_invoice_paid

# ============================================
# ERROR CODES
# ============================================

ERR_NOT_AUTHORIZED = 100
ERR_INVALID_AMOUNT = 101
ERR_INVALID_DUE_DATE = 102
ERR_INVALID_BUYER = 103
ERR_INVOICE_NOT_FOUND = 105
ERR_INVALID_FEE = 106
ERR_AUTHORITY_NOT_VERIFIED = 107
ERR_INVALID_DESCRIPTION = 108
ERR_INVALID_CURRENCY = 109
ERR_AUTHORITY_ALREADY_SET = 110
ERR_INVOICE_PAID = 111
ERR_INVOICE_EXPIRED = 112
ERR_MAX_INVOICES_EXCEEDED = 114
ERR_INVALID_DISCOUNT_RATE = 115
ERR_INVALID_PENALTY_RATE = 116
ERR_INVALID_LOCATION = 117
ERR_INVALID_TERMS = 118
ERR_INVALID_QUANTITY = 119
ERR_INVALID_PRICE = 120

INVOICE_CURRENCIES = ("STX", "USD", "BTC")
MAX_DESCRIPTION_LENGTH = 500
MAX_LOCATION_LENGTH = 100
MAX_TERMS_LENGTH = 1000
MAX_DISCOUNT_RATE = 50
MAX_PENALTY_RATE = 100

STATUS_PENDING = "pending"
STATUS_PAID = "paid"

# ============================================
# DATA MODELS
# ============================================

@dataclass
class Invoice:
    """Tokenized invoice. The supplier holds title, the buyer owes payment."""
    invoice_id: int
    amount: int
    due_date: int
    buyer: str
    supplier: str
    description: str
    currency: str
    discount_rate: int
    penalty_rate: int
    location: str
    terms: str
    quantity: int
    unit_price: int
    created_at: int = 0
    paid: bool = False
    status: str = STATUS_PENDING

    def is_expired(self, block_height: int) -> bool:
        return block_height >= self.due_date

    def to_dict(self) -> Dict:
        return {
            'invoice_id': self.invoice_id,
            'amount': self.amount,
            'due_date': self.due_date,
            'buyer': self.buyer,
            'supplier': self.supplier,
            'paid': self.paid,
            'created_at': self.created_at,
            'description': self.description,
            'currency': self.currency,
            'status': self.status,
            'discount_rate': self.discount_rate,
            'penalty_rate': self.penalty_rate,
            'location': self.location,
            'terms': self.terms,
            'quantity': self.quantity,
            'unit_price': self.unit_price
        }

@dataclass(frozen=True)
class InvoiceUpdate:
    """Amendment audit entry (last amendment per invoice)."""
    update_amount: int
    update_due_date: int
    update_timestamp: int
    updater: str

# ============================================
# STORAGE LAYER
# ============================================

@dataclass
class InvoiceStorage:
    """Primary invoice table plus its amendment table and supplier index."""
    invoices: Dict[int, Invoice] = field(default_factory=dict)
    updates: Dict[int, InvoiceUpdate] = field(default_factory=dict)
    by_supplier: Dict[str, List[int]] = field(default_factory=dict)
    next_invoice_id: int = 0

    def index_supplier(self, supplier: str, invoice_id: int):
        self.by_supplier.setdefault(supplier, []).append(invoice_id)

    def unindex_supplier(self, supplier: str, invoice_id: int):
        ids = self.by_supplier.get(supplier, [])
        if invoice_id in ids:
            ids.remove(invoice_id)
        if not ids:
            self.by_supplier.pop(supplier, None)

    def supplier_count(self, supplier: str) -> int:
        return len(self.by_supplier.get(supplier, []))

    def snapshot(self) -> Dict[str, Any]:
        return {
            'invoices': {k: replace(v) for k, v in self.invoices.items()},
            'updates': dict(self.updates),
            'by_supplier': {k: list(v) for k, v in self.by_supplier.items()},
            'next_invoice_id': self.next_invoice_id
        }

    def restore(self, snapshot: Dict[str, Any]):
        self.invoices = snapshot['invoices']
        self.updates = snapshot['updates']
        self.by_supplier = snapshot['by_supplier']
        self.next_invoice_id = snapshot['next_invoice_id']
        logger.warning("[STORAGE] Restored invoice tables from snapshot")

# ============================================
# INVARIANTS
# ============================================

class PaidMeansSettled(Invariant):
    """Paid flag and status move together; paid is terminal."""

    def __init__(self):
        super().__init__(
            id="inv_i01_paid_means_settled",
            statement="An invoice is paid if and only if its status is 'paid'",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            owner="invoice_registry"
        )

    def post_check(self, result: Dict[str, Any]) -> bool:
        invoice = result['storage'].invoices.get(result.get('invoice_id'))
        if invoice is None:
            return True
        return invoice.paid == (invoice.status == STATUS_PAID)

class SupplierIndexConsistent(Invariant):
    """Every indexed id belongs to its supplier and the index stays under its ceiling."""

    def __init__(self, max_per_supplier: int):
        super().__init__(
            id="inv_i02_supplier_index",
            statement="Supplier index entries match invoice suppliers and never exceed the ceiling",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            owner="invoice_registry"
        )
        self.max_per_supplier = max_per_supplier

    def post_check(self, result: Dict[str, Any]) -> bool:
        storage = result['storage']
        for supplier in result.get('suppliers', ()):
            ids = storage.by_supplier.get(supplier, [])
            if len(ids) > self.max_per_supplier:
                return False
            if any(storage.invoices[i].supplier != supplier for i in ids):
                return False
        return True

class TitleRecordExists(Invariant):
    """Live invoices carry a title record wherever it currently sits."""

    def __init__(self):
        super().__init__(
            id="inv_i03_title_exists",
            statement="Every live invoice has a title record; burned invoices have none",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            owner="invoice_registry"
        )

    def post_check(self, result: Dict[str, Any]) -> bool:
        invoice_id = result.get('invoice_id')
        if invoice_id is None:
            return True
        live = invoice_id in result['storage'].invoices
        return live == (result['titles'].owner_of(invoice_id) is not None)

# ============================================
# INVOICE REGISTRY
# ============================================

class InvoiceRegistry(RegistryBase):
    """Invoice registry with validated, atomic transitions."""

    REGISTRY = "invoice_registry"
    TAG = "INVOICE_REGISTRY"

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
        self.storage = InvoiceStorage()

        self.max_invoices = settings.max_invoices
        self.max_invoices_per_supplier = settings.max_invoices_per_supplier
        self.creation_fee = settings.creation_fee
        self.authority: Optional[str] = None

        self._lock = lock if lock is not None else balances.lock
        self.enforcer = InvariantEnforcer(
            self.REGISTRY,
            [
                PaidMeansSettled(),
                SupplierIndexConsistent(self.max_invoices_per_supplier),
                TitleRecordExists()
            ],
            ledger,
            clock
        )

        logger.info(f"[{self.TAG}] Initialized (max={self.max_invoices}, fee={self.creation_fee})")

    def _participants(self) -> List[Any]:
        return [self.storage, self.balances, self.titles]

    def _result(self, invoice_id: Optional[int] = None, suppliers=()) -> Dict[str, Any]:
        return {
            'storage': self.storage,
            'titles': self.titles,
            'invoice_id': invoice_id,
            'suppliers': tuple(suppliers)
        }

    # ----- configuration -----

    def set_authority(self, principal: str) -> bool:
        """One-time configuration of the fee-collecting authority."""
        with self._lock:
            if principal == BURN_ADDRESS:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, "burn address cannot be the authority")
            if self.authority is not None:
                self._fail(ConflictError, ERR_AUTHORITY_ALREADY_SET, "authority already configured")

            self.authority = principal
            logger.info(f"[{self.TAG}] Authority set to {principal}")
            return True

    def set_creation_fee(self, caller: str, fee: int) -> bool:
        with self._lock:
            if self.authority is None:
                self._fail(AuthorizationError, ERR_AUTHORITY_NOT_VERIFIED, "authority not configured")
            if caller != self.authority:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the authority")
            if fee < 0:
                self._fail(ValidationError, ERR_INVALID_FEE, f"fee must be non-negative, got {fee}")

            self.creation_fee = fee
            logger.info(f"[{self.TAG}] Creation fee set to {fee}")
            return True

    # ----- transitions -----

    def mint(
        self,
        caller: str,
        amount: int,
        due_date: int,
        buyer: str,
        description: str,
        currency: str,
        discount_rate: int,
        penalty_rate: int,
        location: str,
        terms: str,
        quantity: int,
        unit_price: int
    ) -> int:
        """
        Mint a new invoice with the caller as supplier and title holder.

        Checks run in a fixed order so the first failing one decides the
        error code: capacity, field bounds in declaration order, then the
        authority configuration. On success the creation fee moves from
        the caller to the authority.
        """
        with self._lock:
            storage = self.storage
            height = self.clock.block_height

            if storage.next_invoice_id >= self.max_invoices:
                self._fail(CapacityError, ERR_MAX_INVOICES_EXCEEDED, "invoice registry is full")
            if storage.supplier_count(caller) >= self.max_invoices_per_supplier:
                self._fail(CapacityError, ERR_MAX_INVOICES_EXCEEDED, f"{caller} holds the maximum number of invoices")
            if amount <= 0:
                self._fail(ValidationError, ERR_INVALID_AMOUNT, f"amount must be positive, got {amount}")
            if due_date <= height:
                self._fail(ValidationError, ERR_INVALID_DUE_DATE, f"due date {due_date} is not after block {height}")
            if buyer == caller:
                self._fail(ValidationError, ERR_INVALID_BUYER, "supplier cannot bill itself")
            if not description or len(description) > MAX_DESCRIPTION_LENGTH:
                self._fail(ValidationError, ERR_INVALID_DESCRIPTION, "description must be 1-500 characters")
            if currency not in INVOICE_CURRENCIES:
                self._fail(ValidationError, ERR_INVALID_CURRENCY, f"unsupported currency {currency!r}")
            if discount_rate > MAX_DISCOUNT_RATE:
                self._fail(ValidationError, ERR_INVALID_DISCOUNT_RATE, f"discount rate {discount_rate} exceeds 50")
            if penalty_rate > MAX_PENALTY_RATE:
                self._fail(ValidationError, ERR_INVALID_PENALTY_RATE, f"penalty rate {penalty_rate} exceeds 100")
            if not location or len(location) > MAX_LOCATION_LENGTH:
                self._fail(ValidationError, ERR_INVALID_LOCATION, "location must be 1-100 characters")
            if len(terms) > MAX_TERMS_LENGTH:
                self._fail(ValidationError, ERR_INVALID_TERMS, "terms exceed 1000 characters")
            if quantity <= 0:
                self._fail(ValidationError, ERR_INVALID_QUANTITY, f"quantity must be positive, got {quantity}")
            if unit_price <= 0:
                self._fail(ValidationError, ERR_INVALID_PRICE, f"unit price must be positive, got {unit_price}")
            if self.authority is None:
                self._fail(AuthorizationError, ERR_AUTHORITY_NOT_VERIFIED, "authority not configured")

            invoice_id = storage.next_invoice_id

            def _mint_action() -> Dict[str, Any]:
                self.balances.transfer(self.creation_fee, caller, self.authority)
                storage.invoices[invoice_id] = Invoice(
                    invoice_id=invoice_id,
                    amount=amount,
                    due_date=due_date,
                    buyer=buyer,
                    supplier=caller,
                    description=description,
                    currency=currency,
                    discount_rate=discount_rate,
                    penalty_rate=penalty_rate,
                    location=location,
                    terms=terms,
                    quantity=quantity,
                    unit_price=unit_price,
                    created_at=height
                )
                storage.index_supplier(caller, invoice_id)
                self.titles.mint(invoice_id, caller)
                storage.next_invoice_id += 1
                return self._result(invoice_id, [caller])

            self.enforcer.enforce_action("mint", _mint_action, self._participants())

            record_invoice_minted(currency, amount)
            logger.info(f"[{self.TAG}] Minted invoice {invoice_id}: {amount} {currency} {caller} -> {buyer}, due {due_date}")
            return invoice_id

    def _require_invoice(self, invoice_id: int) -> Invoice:
        invoice = self.storage.invoices.get(invoice_id)
        if invoice is None:
            self._fail(NotFoundError, ERR_INVOICE_NOT_FOUND, f"invoice {invoice_id} not found")
        return invoice

    def _require_unpaid(self, invoice: Invoice):
        if invoice.paid:
            self._fail(StateError, ERR_INVOICE_PAID, f"invoice {invoice.invoice_id} is already paid")

    def transfer(self, caller: str, invoice_id: int, recipient: str) -> bool:
        """Move title (and the supplier role) to recipient before the due date."""
        with self._lock:
            invoice = self._require_invoice(invoice_id)
            if caller != invoice.supplier:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the supplier")
            self._require_unpaid(invoice)
            if invoice.is_expired(self.clock.block_height):
                self._fail(StateError, ERR_INVOICE_EXPIRED, f"invoice {invoice_id} is past its due date")
            if self.titles.owner_of(invoice_id) != caller:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} does not hold title {invoice_id}")
            if recipient != caller and self.storage.supplier_count(recipient) >= self.max_invoices_per_supplier:
                self._fail(CapacityError, ERR_MAX_INVOICES_EXCEEDED, f"{recipient} holds the maximum number of invoices")

            def _transfer_action() -> Dict[str, Any]:
                if not self.titles.transfer(invoice_id, caller, recipient):
                    self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, "title transfer refused")
                invoice.supplier = recipient
                self.storage.unindex_supplier(caller, invoice_id)
                self.storage.index_supplier(recipient, invoice_id)
                return self._result(invoice_id, [caller, recipient])

            self.enforcer.enforce_action("transfer", _transfer_action, self._participants())

            logger.info(f"[{self.TAG}] Invoice {invoice_id} transferred {caller} -> {recipient}")
            return True

    def mark_paid(self, caller: str, invoice_id: int) -> bool:
        """Buyer acknowledges payment. One-way."""
        with self._lock:
            invoice = self._require_invoice(invoice_id)
            if caller != invoice.buyer:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the buyer")
            self._require_unpaid(invoice)

            def _mark_paid_action() -> Dict[str, Any]:
                invoice.paid = True
                invoice.status = STATUS_PAID
                return self._result(invoice_id)

            self.enforcer.enforce_action("mark_paid", _mark_paid_action, [self.storage])

            record_invoice_paid()
            logger.info(f"[{self.TAG}] Invoice {invoice_id} marked paid by {caller}")
            return True

    def update_invoice(self, caller: str, invoice_id: int, new_amount: int, new_due_date: int) -> bool:
        """Amend amount and due date of an unpaid invoice."""
        with self._lock:
            invoice = self._require_invoice(invoice_id)
            height = self.clock.block_height
            if caller != invoice.supplier:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the supplier")
            self._require_unpaid(invoice)
            if new_amount <= 0:
                self._fail(ValidationError, ERR_INVALID_AMOUNT, f"amount must be positive, got {new_amount}")
            if new_due_date <= height:
                self._fail(ValidationError, ERR_INVALID_DUE_DATE, f"due date {new_due_date} is not after block {height}")

            def _update_action() -> Dict[str, Any]:
                invoice.amount = new_amount
                invoice.due_date = new_due_date
                invoice.created_at = height
                self.storage.updates[invoice_id] = InvoiceUpdate(
                    update_amount=new_amount,
                    update_due_date=new_due_date,
                    update_timestamp=height,
                    updater=caller
                )
                return self._result(invoice_id)

            self.enforcer.enforce_action("update_invoice", _update_action, [self.storage])

            logger.info(f"[{self.TAG}] Invoice {invoice_id} amended: amount={new_amount}, due={new_due_date}")
            return True

    def burn_invoice(self, caller: str, invoice_id: int) -> bool:
        """Destroy an unpaid invoice together with its amendment and title records."""
        with self._lock:
            invoice = self._require_invoice(invoice_id)
            if caller != invoice.supplier:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the supplier")
            self._require_unpaid(invoice)
            if self.titles.owner_of(invoice_id) != caller:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} does not hold title {invoice_id}")

            def _burn_action() -> Dict[str, Any]:
                del self.storage.invoices[invoice_id]
                self.storage.updates.pop(invoice_id, None)
                self.storage.unindex_supplier(caller, invoice_id)
                self.titles.burn(invoice_id)
                return self._result(invoice_id, [caller])

            self.enforcer.enforce_action("burn_invoice", _burn_action, [self.storage, self.titles])

            record_invoice_burned()
            logger.info(f"[{self.TAG}] Invoice {invoice_id} burned by {caller}")
            return True

    # ----- reads -----

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        invoice = self.storage.invoices.get(invoice_id)
        return replace(invoice) if invoice else None

    def get_invoice_update(self, invoice_id: int) -> Optional[InvoiceUpdate]:
        return self.storage.updates.get(invoice_id)

    def get_invoice_count(self) -> int:
        """Number of ids issued so far (burned invoices included)."""
        return self.storage.next_invoice_id

    def get_invoices_by_supplier(self, supplier: str) -> List[int]:
        return list(self.storage.by_supplier.get(supplier, []))

    def get_authority(self) -> Optional[str]:
        return self.authority

    def get_creation_fee(self) -> int:
        return self.creation_fee
