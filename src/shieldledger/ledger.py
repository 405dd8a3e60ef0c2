"""
Ledger Records and Sources

The ledger keeps one record per nonce commitment:

    operation          which kind of transition produced the note
    shares_added       shares minted by this operation (public)
    recorded_token     token the record belongs to
    encrypted_balance  plaintext at nonce 0, masked with counter 0 after
    encrypted_nullifier masked with counter 1 (0 at nonce 0)
    unlocks_at         lock time of an opening deposit, folded in publicly;
                       continuing notes carry it privately and publish 0
    commitment_leaf    leaf the ledger inserted into its tree
    leaf_index         where that leaf sits in the tree

InMemoryLedger mirrors how the deployed ledger builds leaves, including the
post-construction fold of shares and unlocks_at on opening notes. It is the
reference counterpart the reconstruction engine is checked against.

LedgerClient is the owner side: it derives keys from a SessionContext,
builds the circuit's commitment point and encrypts the note data before
handing it to the ledger.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
import logging
import threading
from typing import Dict, Optional

from . import cipher
from .commitment import build_commitment, commitment_leaf, fold_shares, fold_unlocks
from .curve import CurvePoint, is_on_curve
from .errors import DuplicateNonceCommitment, LedgerError, LedgerUnavailable, MalformedInput, RecordNotFound
from .field import require_field
from .keys import Address, SessionContext, token_to_field
from .merkle import LeanIMT
from .params import PARAMS_DEFAULT, LedgerParams
from .tags import BALANCE_COUNTER, NULLIFIER_COUNTER, OperationTag

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerRecord:
    """Public ledger data for one nonce commitment."""

    operation: OperationTag
    shares_added: int
    recorded_token: int
    encrypted_balance: int
    encrypted_nullifier: int = 0
    used: bool = True
    unlocks_at: int = 0
    commitment_leaf: Optional[int] = None
    leaf_index: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            'operation': int(self.operation),
            'shares_added': self.shares_added,
            'recorded_token': self.recorded_token,
            'encrypted_balance': self.encrypted_balance,
            'encrypted_nullifier': self.encrypted_nullifier,
            'used': self.used,
            'unlocks_at': self.unlocks_at,
            'commitment_leaf': self.commitment_leaf,
            'leaf_index': self.leaf_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> LedgerRecord:
        try:
            return cls(
                operation=OperationTag(data['operation']),
                shares_added=int(data['shares_added']),
                recorded_token=int(data['recorded_token']),
                encrypted_balance=int(data['encrypted_balance']),
                encrypted_nullifier=int(data.get('encrypted_nullifier', 0)),
                used=bool(data.get('used', True)),
                unlocks_at=int(data.get('unlocks_at', 0)),
                commitment_leaf=data.get('commitment_leaf'),
                leaf_index=data.get('leaf_index'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInput(f"Invalid ledger record: {e}") from e


class LedgerSource(ABC):
    """Read access to ledger records."""

    @abstractmethod
    def get_record(self, nonce_commitment: int) -> Optional[LedgerRecord]:
        """
        Record for a nonce commitment, or None if the ledger has none.

        Raises LedgerUnavailable when the ledger cannot be reached.
        """

    def is_used(self, nonce_commitment: int) -> bool:
        record = self.get_record(nonce_commitment)
        return record is not None and record.used

    def require_record(self, nonce_commitment: int) -> LedgerRecord:
        """Like get_record, but raises RecordNotFound for absent or unused records."""
        record = self.get_record(nonce_commitment)
        if record is None or not record.used:
            raise RecordNotFound(f"No ledger record for nonce commitment 0x{nonce_commitment:064x}")
        return record


# =============================================================================
# In-memory ledger
# =============================================================================

class InMemoryLedger(LedgerSource):
    """
    Ledger accounting held in memory.

    Every accepted operation marks its nonce commitment used, inserts the
    resulting leaf into the ledger's tree and stores the public record.
    """

    def __init__(self, params: LedgerParams = PARAMS_DEFAULT):
        self.params = params
        self.tree = LeanIMT(depth_floor=params.depth_floor, max_depth=params.max_depth)
        self._records: Dict[int, LedgerRecord] = {}
        self._lock = threading.Lock()
        self.available = True

    @classmethod
    def from_config(cls, config) -> InMemoryLedger:
        return cls(config.params)

    def __len__(self) -> int:
        return len(self._records)

    def get_record(self, nonce_commitment: int) -> Optional[LedgerRecord]:
        if not self.available:
            raise LedgerUnavailable("Ledger is unavailable")
        return self._records.get(nonce_commitment)

    def set_available(self, available: bool) -> None:
        """Simulate the ledger going away or coming back."""
        self.available = available

    def _accept(
        self,
        nonce_commitment: int,
        point: CurvePoint,
        record: LedgerRecord,
    ) -> LedgerRecord:
        require_field(nonce_commitment, 'nonce_commitment')
        if not is_on_curve(point):
            raise MalformedInput("Commitment point is not on the curve")

        leaf = commitment_leaf(point)
        with self._lock:
            existing = self._records.get(nonce_commitment)
            if existing is not None and existing.used:
                raise DuplicateNonceCommitment(f"Nonce commitment 0x{nonce_commitment:064x} already used")
            self.tree.insert(leaf)
            record = replace(record, commitment_leaf=leaf, leaf_index=len(self.tree) - 1)
            self._records[nonce_commitment] = record

        logger.debug(
            "Accepted %s at leaf index %d (tree size %d)",
            record.operation.name, record.leaf_index, len(self.tree),
        )
        return record

    def open_note(
        self,
        nonce_commitment: int,
        point: CurvePoint,
        shares: int,
        token: Address,
        unlocks_at: int = 0,
    ) -> LedgerRecord:
        """
        Accept the opening note of an account.

        `point` is the circuit's commit5(0, 0, spending_key, 0, nonce_commitment);
        the ledger folds shares*G and unlocks_at*K in afterwards and records
        the share count in the clear.
        """
        if shares < 0:
            raise LedgerError("Shares must be non-negative")
        folded = fold_unlocks(fold_shares(point, shares), unlocks_at)
        record = LedgerRecord(
            operation=OperationTag.OPEN,
            shares_added=shares,
            recorded_token=token_to_field(token),
            encrypted_balance=shares,
            encrypted_nullifier=0,
            unlocks_at=unlocks_at,
        )
        return self._accept(nonce_commitment, folded, record)

    def top_up(
        self,
        nonce_commitment: int,
        point: CurvePoint,
        shares_added: int,
        token: Address,
        encrypted_balance: int,
        encrypted_nullifier: int,
    ) -> LedgerRecord:
        """
        Accept a deposit onto an open note.

        `point` commits to the carried balance; the ledger folds the newly
        minted shares in afterwards.
        """
        if shares_added <= 0:
            raise LedgerError("A top-up must mint shares")
        record = LedgerRecord(
            operation=OperationTag.TOP_UP,
            shares_added=shares_added,
            recorded_token=token_to_field(token),
            encrypted_balance=encrypted_balance,
            encrypted_nullifier=encrypted_nullifier,
        )
        return self._accept(nonce_commitment, fold_shares(point, shares_added), record)

    def _continue(
        self,
        operation: OperationTag,
        nonce_commitment: int,
        point: CurvePoint,
        token: Address,
        encrypted_balance: int,
        encrypted_nullifier: int,
    ) -> LedgerRecord:
        record = LedgerRecord(
            operation=operation,
            shares_added=0,
            recorded_token=token_to_field(token),
            encrypted_balance=encrypted_balance,
            encrypted_nullifier=encrypted_nullifier,
        )
        return self._accept(nonce_commitment, point, record)

    def transfer(self, nonce_commitment, point, token, encrypted_balance, encrypted_nullifier):
        return self._continue(
            OperationTag.TRANSFER, nonce_commitment, point, token,
            encrypted_balance, encrypted_nullifier,
        )

    def withdraw(self, nonce_commitment, point, token, encrypted_balance, encrypted_nullifier):
        return self._continue(
            OperationTag.WITHDRAW, nonce_commitment, point, token,
            encrypted_balance, encrypted_nullifier,
        )

    def absorb(self, nonce_commitment, point, token, encrypted_balance, encrypted_nullifier):
        return self._continue(
            OperationTag.ABSORB, nonce_commitment, point, token,
            encrypted_balance, encrypted_nullifier,
        )


# =============================================================================
# Owner side
# =============================================================================

class LedgerClient:
    """
    Builds and submits notes for one account.

    Each method takes the nonce to write and the owner-side values the
    circuit would commit to, and returns the ledger record.
    """

    def __init__(self, ctx: SessionContext, ledger: InMemoryLedger):
        self.ctx = ctx
        self.ledger = ledger

    def _encrypt(self, balance: int, nullifier: int):
        vk = self.ctx.view_key
        return (
            cipher.encrypt(balance, vk, BALANCE_COUNTER),
            cipher.encrypt(nullifier, vk, NULLIFIER_COUNTER),
        )

    def open(self, token: Address, shares: int, unlocks_at: int = 0) -> LedgerRecord:
        sk = self.ctx.spending_key(token)
        nc = self.ctx.nonce_commitment(token, 0)
        point = build_commitment(0, 0, sk, 0, nc)
        return self.ledger.open_note(nc, point, shares, token, unlocks_at)

    def top_up(
        self,
        token: Address,
        nonce: int,
        carried_balance: int,
        shares_added: int,
        nullifier: int,
        unlocks_at: int = 0,
    ) -> LedgerRecord:
        sk = self.ctx.spending_key(token)
        nc = self.ctx.nonce_commitment(token, nonce)
        point = build_commitment(carried_balance, nullifier, sk, unlocks_at, nc)
        enc_balance, enc_nullifier = self._encrypt(carried_balance, nullifier)
        return self.ledger.top_up(nc, point, shares_added, token, enc_balance, enc_nullifier)

    def continue_note(
        self,
        operation: OperationTag,
        token: Address,
        nonce: int,
        balance: int,
        nullifier: int,
        unlocks_at: int = 0,
    ) -> LedgerRecord:
        """Write a TRANSFER, WITHDRAW or ABSORB note holding `balance`."""
        submit = {
            OperationTag.TRANSFER: self.ledger.transfer,
            OperationTag.WITHDRAW: self.ledger.withdraw,
            OperationTag.ABSORB: self.ledger.absorb,
        }.get(operation)
        if submit is None:
            raise LedgerError(f"{operation.name} is not a continuing operation")

        sk = self.ctx.spending_key(token)
        nc = self.ctx.nonce_commitment(token, nonce)
        point = build_commitment(balance, nullifier, sk, unlocks_at, nc)
        enc_balance, enc_nullifier = self._encrypt(balance, nullifier)
        return submit(nc, point, token, enc_balance, enc_nullifier)


# =============================================================================
# Nonce discovery
# =============================================================================

def discover_current_nonce(
    ctx: SessionContext,
    token: Address,
    ledger: LedgerSource,
    max_nonce: int = PARAMS_DEFAULT.max_nonce_scan,
) -> int:
    """
    Next unused nonce for (account, token).

    Returns 0 when nonce 0 is unused. Otherwise scans upward and returns the
    first n such that n and n+1 are both unused, so a single gap in the
    chain does not end the scan early.
    """
    if not ledger.is_used(ctx.nonce_commitment(token, 0)):
        return 0

    used = [True]
    for nonce in range(1, max_nonce + 2):
        used.append(ledger.is_used(ctx.nonce_commitment(token, nonce)))
        if nonce >= 2 and not used[nonce - 1] and not used[nonce]:
            return nonce - 1

    raise LedgerError(f"No free nonce found below {max_nonce}")
