"""
Invoice Financing Marketplace (IFM) - Payment Oracle
Version: 1.0.0

Roster of payment attestors and the per-invoice verified-payment slot.
The first report that passes validation becomes the invoice's only
VerifiedPayment; every later report for that invoice is rejected,
whoever sends it.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Any

from ifm_config import MarketplaceSettings, get_settings
from ifm_collaborators_v1 import BalanceLedger, BlockClock
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
    ValidationError,
    logger
)
from ifm_metrics import record_oracle_registered, record_payment_verified

# ============================================
# ERROR CODES
# ============================================

ERR_NOT_AUTHORIZED = 403
ERR_INVALID_INVOICE_ID = 404
ERR_INVALID_TIMESTAMP = 405
ERR_INVALID_AMOUNT = 406
ERR_INVALID_CURRENCY = 407
ERR_INVALID_EARLY_FLAG = 408
ERR_ORACLE_ALREADY_EXISTS = 409
ERR_ORACLE_NOT_FOUND = 410
ERR_PAYMENT_ALREADY_VERIFIED = 411
ERR_INVALID_GRACE_PERIOD = 412
ERR_INVALID_INTEREST_RATE = 413
ERR_INVALID_PENALTY = 414
ERR_MAX_ORACLES_EXCEEDED = 415
ERR_INVALID_UPDATE_PARAM = 416
ERR_AUTHORITY_NOT_VERIFIED = 417
ERR_INVALID_LOCATION = 418
ERR_INVALID_VOTING_THRESHOLD = 420
ERR_INVALID_MAX_REPORTS = 421

PAYMENT_CURRENCIES = ("STX", "USD", "BTC")
MAX_NAME_LENGTH = 50
MAX_LOCATION_LENGTH = 100
MAX_GRACE_PERIOD = 30
MAX_INTEREST_RATE = 20
MAX_PENALTY = 100

MEMBERSHIP_BY_NAME = "name"
MEMBERSHIP_BY_PRINCIPAL = "principal"

# ============================================
# DATA MODELS
# ============================================

@dataclass
class Oracle:
    """Registered payment attestor."""
    oracle_id: int
    principal: str
    name: str
    location: str
    voting_threshold: int
    grace_period: int
    interest_rate: int
    penalty: int
    registered_at: int = 0
    status: bool = True

    def to_dict(self) -> Dict:
        return {
            'oracle_id': self.oracle_id,
            'principal': self.principal,
            'name': self.name,
            'location': self.location,
            'status': self.status,
            'registered_at': self.registered_at,
            'voting_threshold': self.voting_threshold,
            'grace_period': self.grace_period,
            'interest_rate': self.interest_rate,
            'penalty': self.penalty
        }

@dataclass(frozen=True)
class VerifiedPayment:
    """Accepted payment attestation. Terminal: never overwritten."""
    invoice_id: int
    reported_at: int
    amount: int
    currency: str
    early: bool
    reporter: str
    grace_period: int
    interest_rate: int
    penalty: int
    status: bool = True

    def to_dict(self) -> Dict:
        return {
            'invoice_id': self.invoice_id,
            'reported_at': self.reported_at,
            'amount': self.amount,
            'currency': self.currency,
            'early': self.early,
            'reporter': self.reporter,
            'status': self.status,
            'grace_period': self.grace_period,
            'interest_rate': self.interest_rate,
            'penalty': self.penalty
        }

# ============================================
# STORAGE LAYER
# ============================================

@dataclass
class OracleStorage:
    """Oracle roster with name and principal indices, plus payment slots."""
    oracles: Dict[int, Oracle] = field(default_factory=dict)
    by_name: Dict[str, int] = field(default_factory=dict)
    by_principal: Dict[str, Set[int]] = field(default_factory=dict)
    verified_payments: Dict[int, VerifiedPayment] = field(default_factory=dict)
    payment_reports: Dict[int, List[int]] = field(default_factory=dict)
    next_oracle_id: int = 0

    def is_active_principal(self, principal: str) -> bool:
        return any(
            self.oracles[oracle_id].status
            for oracle_id in self.by_principal.get(principal, ())
        )

    def report_count(self, invoice_id: int) -> int:
        return len(self.payment_reports.get(invoice_id, []))

    def snapshot(self) -> Dict[str, Any]:
        return {
            'oracles': {k: replace(v) for k, v in self.oracles.items()},
            'by_name': dict(self.by_name),
            'by_principal': {k: set(v) for k, v in self.by_principal.items()},
            'verified_payments': dict(self.verified_payments),
            'payment_reports': {k: list(v) for k, v in self.payment_reports.items()},
            'next_oracle_id': self.next_oracle_id
        }

    def restore(self, snapshot: Dict[str, Any]):
        self.oracles = snapshot['oracles']
        self.by_name = snapshot['by_name']
        self.by_principal = snapshot['by_principal']
        self.verified_payments = snapshot['verified_payments']
        self.payment_reports = snapshot['payment_reports']
        self.next_oracle_id = snapshot['next_oracle_id']
        logger.warning("[STORAGE] Restored oracle tables from snapshot")

# ============================================
# INVARIANTS
# ============================================

class NameIndexConsistent(Invariant):
    """Exactly one name index entry points at the touched oracle, and it is the oracle's name."""

    def __init__(self):
        super().__init__(
            id="inv_o01_name_index",
            statement="The name index maps each oracle's current name, and only that name, to its id",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            owner="payment_oracle"
        )

    def post_check(self, result: Dict[str, Any]) -> bool:
        oracle_id = result.get('oracle_id')
        if oracle_id is None:
            return True
        storage = result['storage']
        oracle = storage.oracles[oracle_id]
        names = [name for name, idx in storage.by_name.items() if idx == oracle_id]
        return names == [oracle.name]

class SingleVerifiedPayment(Invariant):
    """The stored payment belongs to the report just accepted."""

    def __init__(self):
        super().__init__(
            id="inv_o02_single_verified_payment",
            statement="An accepted report is the invoice's one verified payment",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            owner="payment_oracle"
        )

    def post_check(self, result: Dict[str, Any]) -> bool:
        invoice_id = result.get('invoice_id')
        if invoice_id is None:
            return True
        payment = result['storage'].verified_payments.get(invoice_id)
        return payment is not None and payment.reporter == result['reporter']

class ReportLogBounded(Invariant):
    """An accepted report never pushes the invoice's report log past the cap."""

    def __init__(self, oracle_registry: "PaymentOracle"):
        super().__init__(
            id="inv_o03_report_log_bounded",
            statement="No invoice's report log exceeds the per-invoice report cap",
            type=InvariantType.STATE,
            criticality=Criticality.IMPORTANT,
            owner="payment_oracle"
        )
        self.oracle_registry = oracle_registry

    def post_check(self, result: Dict[str, Any]) -> bool:
        invoice_id = result.get('invoice_id')
        if invoice_id is None:
            return True
        return result['storage'].report_count(invoice_id) <= self.oracle_registry.max_reports_per_invoice

# ============================================
# PAYMENT ORACLE
# ============================================

class PaymentOracle(RegistryBase):
    """
    Oracle registry.

    The deployer ``admin`` is fixed at construction and gates every
    configuration setter. Report membership defaults to the name-index
    lookup; ``oracle_membership="principal"`` switches to a check against
    the principals of active oracles.
    """

    REGISTRY = "payment_oracle"
    TAG = "ORACLE"

    def __init__(
        self,
        clock: BlockClock,
        balances: BalanceLedger,
        ledger: DecisionLedger,
        settings: Optional[MarketplaceSettings] = None,
        admin: Optional[str] = None,
        lock=None
    ):
        settings = settings or get_settings()
        self.clock = clock
        self.balances = balances
        self.storage = OracleStorage()

        self.admin = admin or settings.oracle_admin
        self.max_oracles = settings.max_oracles
        self.report_fee = settings.report_fee
        self.max_reports_per_invoice = settings.max_reports_per_invoice
        self.membership = settings.oracle_membership
        self.authority: Optional[str] = None

        self._lock = lock if lock is not None else balances.lock
        self.enforcer = InvariantEnforcer(
            self.REGISTRY,
            [NameIndexConsistent(), SingleVerifiedPayment(), ReportLogBounded(self)],
            ledger,
            clock
        )

        logger.info(
            f"[{self.TAG}] Initialized (admin={self.admin}, max={self.max_oracles}, "
            f"membership={self.membership})"
        )

    # ----- configuration -----

    def _require_admin(self, caller: str):
        if caller != self.admin:
            self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not the oracle admin")

    def set_authority(self, caller: str, principal: str) -> bool:
        with self._lock:
            if principal == BURN_ADDRESS:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, "burn address cannot be the authority")
            self._require_admin(caller)
            if self.authority is not None:
                self._fail(ConflictError, ERR_AUTHORITY_NOT_VERIFIED, "authority already configured")

            self.authority = principal
            logger.info(f"[{self.TAG}] Authority set to {principal}")
            return True

    def set_max_oracles(self, caller: str, new_max: int) -> bool:
        with self._lock:
            self._require_admin(caller)
            if new_max <= 0:
                self._fail(ValidationError, ERR_INVALID_UPDATE_PARAM, f"max oracles must be positive, got {new_max}")
            self.max_oracles = new_max
            return True

    def set_report_fee(self, caller: str, fee: int) -> bool:
        with self._lock:
            self._require_admin(caller)
            if fee < 0:
                self._fail(ValidationError, ERR_INVALID_UPDATE_PARAM, f"fee must be non-negative, got {fee}")
            self.report_fee = fee
            logger.info(f"[{self.TAG}] Report fee set to {fee}")
            return True

    def set_max_reports_per_invoice(self, caller: str, new_max: int) -> bool:
        with self._lock:
            self._require_admin(caller)
            if new_max <= 0:
                self._fail(ValidationError, ERR_INVALID_MAX_REPORTS, f"report cap must be positive, got {new_max}")
            self.max_reports_per_invoice = new_max
            return True

    # ----- roster -----

    def _validate_profile(self, name: str, location: str, voting_threshold: int):
        if not name or len(name) > MAX_NAME_LENGTH:
            self._fail(ValidationError, ERR_INVALID_UPDATE_PARAM, "name must be 1-50 characters")
        if not location or len(location) > MAX_LOCATION_LENGTH:
            self._fail(ValidationError, ERR_INVALID_LOCATION, "location must be 1-100 characters")
        if voting_threshold <= 0 or voting_threshold > 100:
            self._fail(ValidationError, ERR_INVALID_VOTING_THRESHOLD, f"voting threshold {voting_threshold} outside (0, 100]")

    def _validate_terms(self, grace_period: int, interest_rate: int, penalty: int):
        if grace_period > MAX_GRACE_PERIOD:
            self._fail(ValidationError, ERR_INVALID_GRACE_PERIOD, f"grace period {grace_period} exceeds 30")
        if interest_rate > MAX_INTEREST_RATE:
            self._fail(ValidationError, ERR_INVALID_INTEREST_RATE, f"interest rate {interest_rate} exceeds 20")
        if penalty > MAX_PENALTY:
            self._fail(ValidationError, ERR_INVALID_PENALTY, f"penalty {penalty} exceeds 100")

    def register_oracle(
        self,
        caller: str,
        name: str,
        location: str,
        voting_threshold: int,
        grace_period: int,
        interest_rate: int,
        penalty: int
    ) -> int:
        """Register the caller as an oracle under a unique name. Charges the report fee."""
        with self._lock:
            storage = self.storage

            if storage.next_oracle_id >= self.max_oracles:
                self._fail(CapacityError, ERR_MAX_ORACLES_EXCEEDED, "oracle roster is full")
            self._validate_profile(name, location, voting_threshold)
            self._validate_terms(grace_period, interest_rate, penalty)
            if name in storage.by_name:
                self._fail(ConflictError, ERR_ORACLE_ALREADY_EXISTS, f"oracle name {name!r} is taken")
            if self.authority is None:
                self._fail(AuthorizationError, ERR_AUTHORITY_NOT_VERIFIED, "authority not configured")

            oracle_id = storage.next_oracle_id

            def _register_action() -> Dict[str, Any]:
                self.balances.transfer(self.report_fee, caller, self.authority)
                storage.oracles[oracle_id] = Oracle(
                    oracle_id=oracle_id,
                    principal=caller,
                    name=name,
                    location=location,
                    voting_threshold=voting_threshold,
                    grace_period=grace_period,
                    interest_rate=interest_rate,
                    penalty=penalty,
                    registered_at=self.clock.block_height
                )
                storage.by_name[name] = oracle_id
                storage.by_principal.setdefault(caller, set()).add(oracle_id)
                storage.next_oracle_id += 1
                return {'storage': storage, 'oracle_id': oracle_id}

            self.enforcer.enforce_action("register_oracle", _register_action, [storage, self.balances])

            record_oracle_registered()
            logger.info(f"[{self.TAG}] Oracle {oracle_id} registered: {name} ({caller})")
            return oracle_id

    def update_oracle(
        self,
        caller: str,
        oracle_id: int,
        new_name: str,
        new_location: str,
        new_voting_threshold: int
    ) -> bool:
        """Owner renames/relocates an oracle. The new name may equal its current one."""
        with self._lock:
            storage = self.storage
            oracle = storage.oracles.get(oracle_id)
            if oracle is None:
                self._fail(NotFoundError, ERR_ORACLE_NOT_FOUND, f"oracle {oracle_id} not found")
            if oracle.principal != caller:
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} does not own oracle {oracle_id}")
            self._validate_profile(new_name, new_location, new_voting_threshold)
            holder = storage.by_name.get(new_name)
            if holder is not None and holder != oracle_id:
                self._fail(ConflictError, ERR_ORACLE_ALREADY_EXISTS, f"oracle name {new_name!r} is taken")

            def _update_action() -> Dict[str, Any]:
                del storage.by_name[oracle.name]
                oracle.name = new_name
                oracle.location = new_location
                oracle.voting_threshold = new_voting_threshold
                oracle.registered_at = self.clock.block_height
                storage.by_name[new_name] = oracle_id
                return {'storage': storage, 'oracle_id': oracle_id}

            self.enforcer.enforce_action("update_oracle", _update_action, [storage])

            logger.info(f"[{self.TAG}] Oracle {oracle_id} updated: {new_name}, {new_location}")
            return True

    # ----- attestation -----

    def is_oracle(self, caller: str) -> bool:
        if self.membership == MEMBERSHIP_BY_PRINCIPAL:
            return self.storage.is_active_principal(caller)
        return caller in self.storage.by_name

    def report_payment(
        self,
        caller: str,
        invoice_id: int,
        timestamp: int,
        amount: int,
        currency: str,
        early: bool,
        grace_period: int,
        interest_rate: int,
        penalty: int
    ) -> bool:
        """
        Attest that ``invoice_id`` was paid.

        The already-verified check runs before the report cap, so a
        verified invoice always answers ConflictError.
        """
        with self._lock:
            storage = self.storage

            if not self.is_oracle(caller):
                self._fail(AuthorizationError, ERR_NOT_AUTHORIZED, f"{caller} is not a registered oracle")
            if invoice_id < 0:
                self._fail(ValidationError, ERR_INVALID_INVOICE_ID, f"invoice id must be non-negative, got {invoice_id}")
            if timestamp < self.clock.block_height:
                self._fail(ValidationError, ERR_INVALID_TIMESTAMP, f"timestamp {timestamp} is in the past")
            if amount <= 0:
                self._fail(ValidationError, ERR_INVALID_AMOUNT, f"amount must be positive, got {amount}")
            if currency not in PAYMENT_CURRENCIES:
                self._fail(ValidationError, ERR_INVALID_CURRENCY, f"unsupported currency {currency!r}")
            if not isinstance(early, bool):
                self._fail(ValidationError, ERR_INVALID_EARLY_FLAG, f"early flag must be a bool, got {early!r}")
            self._validate_terms(grace_period, interest_rate, penalty)
            if invoice_id in storage.verified_payments:
                self._fail(ConflictError, ERR_PAYMENT_ALREADY_VERIFIED, f"invoice {invoice_id} already verified")
            if storage.report_count(invoice_id) >= self.max_reports_per_invoice:
                self._fail(CapacityError, ERR_INVALID_MAX_REPORTS, f"invoice {invoice_id} reached its report cap")

            def _report_action() -> Dict[str, Any]:
                storage.verified_payments[invoice_id] = VerifiedPayment(
                    invoice_id=invoice_id,
                    reported_at=timestamp,
                    amount=amount,
                    currency=currency,
                    early=early,
                    reporter=caller,
                    grace_period=grace_period,
                    interest_rate=interest_rate,
                    penalty=penalty
                )
                storage.payment_reports.setdefault(invoice_id, []).append(invoice_id)
                return {'storage': storage, 'invoice_id': invoice_id, 'reporter': caller}

            self.enforcer.enforce_action("report_payment", _report_action, [storage])

            record_payment_verified(currency, early)
            logger.info(f"[{self.TAG}] Payment verified for invoice {invoice_id} by {caller}: {amount} {currency}")
            return True

    # ----- reads -----

    def get_oracle(self, oracle_id: int) -> Optional[Oracle]:
        oracle = self.storage.oracles.get(oracle_id)
        return replace(oracle) if oracle else None

    def get_oracle_count(self) -> int:
        return self.storage.next_oracle_id

    def check_oracle_existence(self, name: str) -> bool:
        return name in self.storage.by_name

    def get_verified_payment(self, invoice_id: int) -> Optional[VerifiedPayment]:
        return self.storage.verified_payments.get(invoice_id)

    def get_report_count(self, invoice_id: int) -> int:
        return self.storage.report_count(invoice_id)

    def get_authority(self) -> Optional[str]:
        return self.authority

    def get_report_fee(self) -> int:
        return self.report_fee

    def get_max_oracles(self) -> int:
        return self.max_oracles

    def get_max_reports_per_invoice(self) -> int:
        return self.max_reports_per_invoice
