"""
Invoice Financing Marketplace (IFM) - External Collaborators
Version: 1.0.0

In-memory stand-ins for the primitives the registries consume but do not own:
the block-height clock, the balance-transfer ledger and the title (NFT)
ownership registry. Each exposes snapshot()/restore() so the enforcer can
roll a transition back.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
import threading

from ifm_enforcement_v1 import logger

# ============================================
# BLOCK CLOCK
# ============================================

class BlockClock:
    """Monotonically increasing block height supplied by the environment."""

    def __init__(self, block_height: int = 0):
        if block_height < 0:
            raise ValueError("block height cannot be negative")
        self.block_height = block_height

    def advance(self, blocks: int = 1) -> int:
        """Move the chain forward. Height never decreases."""
        if blocks < 0:
            raise ValueError("block height is monotonic")
        self.block_height += blocks
        return self.block_height

# ============================================
# BALANCE LEDGER
# ============================================

@dataclass(frozen=True)
class Transfer:
    """One balance movement."""
    amount: int
    sender: str
    recipient: str

    def to_dict(self) -> Dict:
        return {
            'amount': self.amount,
            'sender': self.sender,
            'recipient': self.recipient
        }

class BalanceLedger:
    """
    Balance-transfer primitive.

    Transfers always succeed; insufficient balance belongs to the real
    ledger, so net positions may go negative here.

    Registries built over one ledger serialize their calls on its `lock`.
    """

    def __init__(self):
        self.transfers: List[Transfer] = []
        self.positions: Dict[str, int] = {}
        self.lock = threading.RLock()

    def transfer(self, amount: int, sender: str, recipient: str) -> Transfer:
        """Move funds and append the transfer record."""
        record = Transfer(amount=amount, sender=sender, recipient=recipient)
        self.transfers.append(record)
        self.positions[sender] = self.positions.get(sender, 0) - amount
        self.positions[recipient] = self.positions.get(recipient, 0) + amount

        logger.info(f"[LEDGER] {sender} -> {recipient}: {amount}")
        return record

    def net_position(self, principal: str) -> int:
        return self.positions.get(principal, 0)

    def transfers_between(self, sender: str, recipient: str) -> List[Transfer]:
        return [t for t in self.transfers if t.sender == sender and t.recipient == recipient]

    def snapshot(self) -> Dict:
        """Capture ledger state (for rollback)."""
        return {
            'transfers': list(self.transfers),
            'positions': dict(self.positions)
        }

    def restore(self, snapshot: Dict):
        """Restore ledger state from snapshot."""
        self.transfers = list(snapshot['transfers'])
        self.positions = dict(snapshot['positions'])
        logger.warning("[LEDGER] Restored balances from snapshot")

# ============================================
# TITLE REGISTRY
# ============================================

class TitleRegistry:
    """Non-fungible title ownership: token id -> owning principal."""

    def __init__(self):
        self.owners: Dict[int, str] = {}

    def mint(self, token_id: int, owner: str):
        self.owners[token_id] = owner
        logger.info(f"[TITLE] Minted title {token_id} to {owner}")

    def burn(self, token_id: int):
        self.owners.pop(token_id, None)
        logger.info(f"[TITLE] Burned title {token_id}")

    def owner_of(self, token_id: int) -> Optional[str]:
        return self.owners.get(token_id)

    def transfer(self, token_id: int, sender: str, recipient: str) -> bool:
        """Move title. Returns False when sender is not the current owner."""
        if self.owners.get(token_id) != sender:
            logger.warning(
                f"[TITLE] Transfer of {token_id} refused: {sender} is not the owner"
            )
            return False

        self.owners[token_id] = recipient
        logger.info(f"[TITLE] {token_id}: {sender} -> {recipient}")
        return True

    def snapshot(self) -> Dict[int, str]:
        return dict(self.owners)

    def restore(self, snapshot: Dict[int, str]):
        self.owners = dict(snapshot)
        logger.warning("[TITLE] Restored ownership from snapshot")
