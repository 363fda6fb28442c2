"""
Invoice Financing Marketplace (IFM) - Enforcement Layer
Version: 1.0.0

Shared error taxonomy, post-condition invariants, and the enforcer that
runs every registry transition atomically: snapshot, act, verify, and
restore on any failure.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import hmac
import logging
from abc import ABC, abstractmethod

from ifm_config import get_settings
from ifm_metrics import record_invariant_check, record_rejection, record_rollback

# ============================================
# SYSTEM CONFIGURATION
# ============================================

# Null/burn address. Never accepted as an authority or admin principal.
BURN_ADDRESS = "SP000000000000000000002Q6VF78"

class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    FINANCIAL = "financial"
    DATA_INTEGRITY = "data_integrity"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    ROLLBACK = "rollback"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=get_settings().log_level,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("IFM.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class RegistryError(Exception):
    """Base error for every rejected registry operation."""

    def __init__(self, code: int, message: str, registry: str = "unknown"):
        super().__init__(f"[{registry}:{code}] {message}")
        self.code = code
        self.message = message
        self.registry = registry

class AuthorizationError(RegistryError):
    """Caller is not the principal the operation requires."""

class ValidationError(RegistryError):
    """A field is out of its declared bound."""

class NotFoundError(RegistryError):
    """Id or name has no current entry."""

class ConflictError(RegistryError):
    """Duplicate key or a slot that is already taken."""

class CapacityError(RegistryError):
    """A registry or per-principal list is at its ceiling."""

class StateError(RegistryError):
    """Operation attempted against a terminal entity."""

class InvariantViolation(RegistryError):
    """Raised when a post-check fails. The transition has been rolled back."""

    def __init__(self, invariant_id: str, registry: str = "unknown"):
        super().__init__(0, f"Post-check failed: {invariant_id}", registry)
        self.invariant_id = invariant_id

class SystemCompromised(Exception):
    """Raised when rollback fails - registry integrity lost."""
    pass

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

def _sign(secret: bytes, invariant_id: str, result: bool, timestamp: datetime) -> str:
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(secret, data.encode(), 'sha256').hexdigest()

@dataclass
class EnforcementDecision:
    """Immutable record of one post-check."""
    invariant_id: str
    operation: str
    result: bool
    action: EnforcementResult
    timestamp: datetime
    block_height: int
    signature: str = ""

    def verify_signature(self, secret: bytes) -> bool:
        """Verify cryptographic signature."""
        expected = _sign(secret, self.invariant_id, self.result, self.timestamp)
        return hmac.compare_digest(self.signature, expected)

    def to_dict(self) -> Dict:
        return {
            'invariant_id': self.invariant_id,
            'operation': self.operation,
            'result': self.result,
            'action': self.action.value,
            'timestamp': self.timestamp.isoformat(),
            'block_height': self.block_height,
        }

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Append-only ledger of enforcement decisions shared by all registries."""

    def __init__(self, secret: Optional[bytes] = None):
        if secret is None:
            secret = get_settings().decision_secret.get_secret_value().encode()
        self._secret = secret
        self.entries: List[EnforcementDecision] = []

    def sign(self, decision: EnforcementDecision) -> EnforcementDecision:
        decision.signature = _sign(
            self._secret, decision.invariant_id, decision.result, decision.timestamp
        )
        return decision

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not decision.verify_signature(self._secret):
            raise SystemCompromised("Invalid signature on enforcement decision")

        self.entries.append(decision)
        logger.debug(
            f"[LEDGER] {decision.operation}: {decision.invariant_id} -> {decision.result}"
        )

    def failures(self) -> List[EnforcementDecision]:
        return [entry for entry in self.entries if not entry.result]

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        return all(entry.verify_signature(self._secret) for entry in self.entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Post-condition that must hold after every transition of its owner."""

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.owner = owner

    @abstractmethod
    def post_check(self, result: Dict[str, Any]) -> bool:
        """Execute after action. Returns True if invariant still holds."""
        pass

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """
    Runs a registry action as one atomic transition.

    Every participant (anything exposing ``snapshot()`` and ``restore()``)
    is captured before the action. If the action raises, or any post-check
    fails, all participants are restored and the error propagates.
    """

    def __init__(
        self,
        registry: str,
        invariants: List[Invariant],
        ledger: DecisionLedger,
        clock
    ):
        self.registry = registry
        self.invariants = invariants
        self.ledger = ledger
        self.clock = clock

    def enforce_action(
        self,
        operation: str,
        action: Callable[[], Dict[str, Any]],
        participants: List[Any]
    ) -> Dict[str, Any]:
        """Execute action with full invariant enforcement."""
        state_before = [(p, p.snapshot()) for p in participants]

        try:
            result = action()
        except RegistryError as e:
            self._rollback(state_before)
            record_rollback(self.registry, type(e).__name__)
            raise

        for inv in self.invariants:
            decision = self._post_check(inv, operation, result)
            self.ledger.record(decision)
            record_invariant_check(inv.id, decision.result)

            if not decision.result:
                logger.error(f"POST-CHECK FAILED: {inv.id} after {operation}")
                self._rollback(state_before)
                record_rollback(self.registry, inv.id)
                raise InvariantViolation(inv.id, self.registry)

        return result

    def _post_check(self, inv: Invariant, operation: str, result: Dict[str, Any]) -> EnforcementDecision:
        """Execute post-action check."""
        try:
            check_result = bool(inv.post_check(result))
        except (KeyError, AttributeError, TypeError) as e:
            logger.error(f"Post-check exception: {inv.id}", exc_info=e)
            check_result = False

        return self.ledger.sign(EnforcementDecision(
            invariant_id=inv.id,
            operation=operation,
            result=check_result,
            action=EnforcementResult.PROCEED if check_result else EnforcementResult.ROLLBACK,
            timestamp=datetime.now(),
            block_height=self.clock.block_height,
        ))

    def _rollback(self, state_before: List[Any]):
        """Restore every participant to its pre-action snapshot."""
        logger.warning(f"[{self.registry.upper()}] ROLLBACK INITIATED")

        for participant, snapshot in reversed(state_before):
            try:
                participant.restore(snapshot)
            except Exception as e:
                logger.critical(f"ROLLBACK FAILED for {type(participant).__name__}: {e}")
                raise SystemCompromised(f"Rollback failed for {type(participant).__name__}") from e

        logger.info(f"[{self.registry.upper()}] ROLLBACK COMPLETE")

# ============================================
# REGISTRY BASE
# ============================================

class RegistryBase:
    """Rejection helper shared by the three registries."""

    REGISTRY = "registry"
    TAG = "REGISTRY"

    def _fail(self, error_cls, code: int, message: str):
        logger.warning(f"[{self.TAG}] REJECTED ({code}): {message}")
        record_rejection(self.REGISTRY, error_cls.__name__)
        raise error_cls(code, message, self.REGISTRY)
