"""
State Reconstruction Engine

Replays one account's nonce chain for one token from public ledger records
plus the owner's key, and re-derives the exact leaf the ledger stored for
every note.

Per nonce n:
    1. nonce_commitment = H3(spending_key, n, token); look up the record
    2. n == 0 is an OPENING note whatever its tag says; the rest CONTINUING
    3. decrypt balance (counter 0) and nullifier (counter 1); nonce 0 is clear
    4. shares committed:
           OPENING    ledger shares_added (plaintext balance if that is 0)
           CONTINUING decrypted balance
    5. point = commit5(shares, nullifier, spending_key, unlocks_at, nonce_commitment)
       where unlocks_at comes from the opening record at n == 0 and is
       carried over from the previous note after that
    6. TOP_UP folds shares_added*G after construction, as the ledger does
    7. leaf = H2(point) must equal the ledger's leaf

Opening notes pass the share count up front because the ledger folded it in
after building the point; addition is associative, so both orders land on
the same leaf. Passing 0 without folding, or folding twice, never matches.

Failures are classified here and nowhere else:
    run-fatal     UPSTREAM_UNAVAILABLE  stop, keep the notes recovered so far
    nonce-fatal   INTEGRITY_MISMATCH, TOKEN_MISMATCH  drop the note
    skippable     NOT_FOUND
    advisory      AMBIGUOUS_SHARES
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field as dataclass_field
from enum import Enum
import logging
from typing import List, Optional, Sequence, Tuple

from . import cipher
from .commitment import build_commitment, commitment_leaf, fold_shares
from .curve import CurvePoint
from .errors import IntegrityMismatch, LedgerUnavailable, MalformedInput, RecordNotFound
from .field import FIELD_MODULUS
from .keys import Address, SessionContext, token_to_field
from .ledger import LedgerRecord, LedgerSource, discover_current_nonce
from .merkle import LeanIMT, MerkleProof
from .params import PARAMS_DEFAULT
from .tags import BALANCE_COUNTER, NULLIFIER_COUNTER, NoteKind, OperationTag

logger = logging.getLogger(__name__)


class DiagnosticCode(Enum):
    NOT_FOUND = 'not_found'
    INTEGRITY_MISMATCH = 'integrity_mismatch'
    TOKEN_MISMATCH = 'token_mismatch'
    UPSTREAM_UNAVAILABLE = 'upstream_unavailable'
    AMBIGUOUS_SHARES = 'ambiguous_shares'


@dataclass(frozen=True)
class Diagnostic:
    """Something that happened at one nonce."""

    nonce: int
    code: DiagnosticCode
    message: str
    expected: Optional[int] = None
    computed: Optional[int] = None

    @property
    def fatal_to_note(self) -> bool:
        return self.code in (DiagnosticCode.INTEGRITY_MISMATCH, DiagnosticCode.TOKEN_MISMATCH)


@dataclass(frozen=True)
class NoteState:
    """One reconstructed note."""

    nonce: int
    kind: NoteKind
    operation: OperationTag
    balance: int
    shares_committed: int
    nullifier: int
    unlocks_at: int
    nonce_commitment: int
    point: CurvePoint
    leaf: int
    leaf_index: Optional[int] = None
    proof: Optional[MerkleProof] = None
    verified: bool = True


@dataclass
class ReconstructionResult:
    """Notes most-recent-first plus every diagnostic raised on the way."""

    token: int
    notes: List[NoteState] = dataclass_field(default_factory=list)
    diagnostics: List[Diagnostic] = dataclass_field(default_factory=list)
    aborted: bool = False

    @property
    def balance(self) -> int:
        """Balance of the most recent note, 0 if there is none."""
        return self.notes[0].balance if self.notes else 0

    @property
    def latest(self) -> Optional[NoteState]:
        return self.notes[0] if self.notes else None

    def diagnostics_for(self, code: DiagnosticCode) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.code == code]

    def raise_for_integrity(self) -> None:
        """Raise the first integrity failure, if any."""
        for d in self.diagnostics:
            if d.code == DiagnosticCode.INTEGRITY_MISMATCH:
                raise IntegrityMismatch(
                    f"Nonce {d.nonce}: {d.message}",
                    expected=d.expected,
                    computed=d.computed,
                    context={'nonce': d.nonce, 'token': self.token},
                )


# =============================================================================
# Engine
# =============================================================================

class ReconstructionEngine:
    """
    Sequential reconstruction for one account on one chain.

    Holds no state between runs beyond the session it was given, so separate
    engines can run for separate (account, token) pairs in parallel.
    """

    def __init__(
        self,
        ctx: SessionContext,
        ledger: LedgerSource,
        tree: Optional[LeanIMT] = None,
        store=None,
        max_nonce_scan: int = PARAMS_DEFAULT.max_nonce_scan,
    ):
        self.ctx = ctx
        self.ledger = ledger
        self.tree = tree
        self.store = store
        self.max_nonce_scan = max_nonce_scan

    @classmethod
    def from_config(cls, ctx, ledger, config, tree=None, store=None) -> ReconstructionEngine:
        """
        Engine configured from a LedgerConfig.

        The session must be on the configured chain. A store is ignored when
        the config disables storage.
        """
        if ctx.chain_id != config.chain_id:
            raise MalformedInput(f"Session is on chain {ctx.chain_id}, config expects {config.chain_id}")
        return cls(
            ctx,
            ledger,
            tree=tree,
            store=store if config.storage.enabled else None,
            max_nonce_scan=config.reconstruction.max_nonce_scan,
        )

    def run(self, token: Address, current_nonce: Optional[int] = None) -> ReconstructionResult:
        """
        Reconstruct notes 0 .. current_nonce - 1.

        With current_nonce None the next free nonce is discovered first.
        """
        token_value = token_to_field(token)
        result = ReconstructionResult(token=token_value)

        if current_nonce is None:
            try:
                current_nonce = discover_current_nonce(self.ctx, token_value, self.ledger, self.max_nonce_scan)
            except LedgerUnavailable as e:
                self._abort(result, 0, e)
                return result

        notes: List[NoteState] = []
        unlocks_at = 0
        for nonce in range(current_nonce):
            try:
                note = self._reconstruct_nonce(token_value, nonce, unlocks_at, result)
            except LedgerUnavailable as e:
                self._abort(result, nonce, e)
                break
            if note is not None:
                notes.append(note)
                unlocks_at = note.unlocks_at

        notes.reverse()
        result.notes = notes

        if self.store is not None:
            self.store.save_result(self.ctx.zk_address(), self.ctx.chain_id, result, current_nonce, self.tree)

        logger.info(
            "Reconstructed %d of %d notes for token 0x%040x (%d diagnostics%s)",
            len(notes), current_nonce, token_value, len(result.diagnostics),
            ", aborted" if result.aborted else "",
        )
        return result

    def _abort(self, result: ReconstructionResult, nonce: int, error: Exception) -> None:
        logger.warning("Ledger unavailable at nonce %d: %s", nonce, error)
        result.aborted = True
        result.diagnostics.append(Diagnostic(nonce, DiagnosticCode.UPSTREAM_UNAVAILABLE, str(error)))

    def _reconstruct_nonce(
        self,
        token: int,
        nonce: int,
        carried_unlocks_at: int,
        result: ReconstructionResult,
    ) -> Optional[NoteState]:
        sk = self.ctx.spending_key(token)
        nc = self.ctx.nonce_commitment(token, nonce)

        try:
            record = self.ledger.require_record(nc)
        except RecordNotFound as e:
            result.diagnostics.append(Diagnostic(nonce, DiagnosticCode.NOT_FOUND, str(e)))
            return None

        if record.recorded_token not in (token, 0):
            result.diagnostics.append(Diagnostic(
                nonce, DiagnosticCode.TOKEN_MISMATCH,
                f"Record belongs to token 0x{record.recorded_token:040x}",
                expected=token, computed=record.recorded_token,
            ))
            return None

        kind = NoteKind.OPENING if nonce == 0 else NoteKind.CONTINUING
        shares, nullifier, balance, fold = self._resolve_shares(kind, nonce, record, result)
        # Only the opening deposit publishes its lock time
        unlocks_at = record.unlocks_at if kind is NoteKind.OPENING else carried_unlocks_at

        point = build_commitment(shares, nullifier, sk, unlocks_at, nc)
        if fold:
            point = fold_shares(point, record.shares_added)
        leaf = commitment_leaf(point)

        verified, proof = self._check_leaf(nonce, record, leaf, result)
        if verified is False:
            return None

        return NoteState(
            nonce=nonce,
            kind=kind,
            operation=record.operation,
            balance=balance,
            shares_committed=shares,
            nullifier=nullifier,
            unlocks_at=unlocks_at,
            nonce_commitment=nc,
            point=point,
            leaf=leaf,
            leaf_index=record.leaf_index,
            proof=proof,
            verified=bool(verified),
        )

    def _resolve_shares(
        self,
        kind: NoteKind,
        nonce: int,
        record: LedgerRecord,
        result: ReconstructionResult,
    ) -> Tuple[int, int, int, bool]:
        """(shares committed, nullifier, resulting balance, fold after construction)."""
        if kind is NoteKind.OPENING:
            shares = record.shares_added if record.shares_added else record.encrypted_balance
            return shares, 0, shares, False

        vk = self.ctx.view_key
        carried = cipher.decrypt(record.encrypted_balance, vk, BALANCE_COUNTER)
        nullifier = cipher.decrypt(record.encrypted_nullifier, vk, NULLIFIER_COUNTER)

        if record.operation == OperationTag.TOP_UP:
            balance = (carried + record.shares_added) % FIELD_MODULUS
            return carried, nullifier, balance, True

        if record.shares_added:
            logger.warning(
                "Nonce %d: %s record reports %d shares added; using the decrypted balance only",
                nonce, record.operation.name, record.shares_added,
            )
            result.diagnostics.append(Diagnostic(
                nonce, DiagnosticCode.AMBIGUOUS_SHARES,
                f"{record.operation.name} record reports shares added; not folded",
                computed=record.shares_added,
            ))
        return carried, nullifier, carried, False

    def _check_leaf(
        self,
        nonce: int,
        record: LedgerRecord,
        leaf: int,
        result: ReconstructionResult,
    ) -> Tuple[Optional[bool], Optional[MerkleProof]]:
        """
        Compare against the ledger's leaf and, with a tree, its membership.

        Returns (None, None) when there is nothing authoritative to compare to.
        """
        expected = record.commitment_leaf
        if expected is None and self.tree is not None and record.leaf_index is not None:
            if record.leaf_index < len(self.tree):
                expected = self.tree.leaves[record.leaf_index]

        if expected is None:
            return None, None

        if expected != leaf:
            logger.error("Nonce %d: leaf mismatch (expected 0x%064x, computed 0x%064x)", nonce, expected, leaf)
            result.diagnostics.append(Diagnostic(
                nonce, DiagnosticCode.INTEGRITY_MISMATCH,
                "Recomputed leaf does not match the ledger",
                expected=expected, computed=leaf,
            ))
            return False, None

        if self.tree is None or record.leaf_index is None:
            return True, None

        try:
            proof = self.tree.proof(record.leaf_index)
        except IndexError:
            proof = None
        if proof is None or proof.leaf != leaf or not proof.verify():
            result.diagnostics.append(Diagnostic(
                nonce, DiagnosticCode.INTEGRITY_MISMATCH,
                f"Leaf is not a member of the tree at index {record.leaf_index}",
                expected=self.tree.root, computed=leaf,
            ))
            return False, None
        return True, proof


def reconstruct_account_history(
    user_key: int,
    chain_id: int,
    token: Address,
    current_nonce: Optional[int],
    ledger: LedgerSource,
    tree: Optional[LeanIMT] = None,
) -> ReconstructionResult:
    """Reconstruct one account's notes for `token`, most recent first."""
    with SessionContext(user_key, chain_id) as ctx:
        return ReconstructionEngine(ctx, ledger, tree).run(token, current_nonce)


# =============================================================================
# Parallel runs
# =============================================================================

@dataclass(frozen=True)
class ReconstructionRequest:
    user_key: int
    chain_id: int
    token: Address
    ledger: LedgerSource
    current_nonce: Optional[int] = None
    tree: Optional[LeanIMT] = None


def reconstruct_many(
    requests: Sequence[ReconstructionRequest],
    max_workers: Optional[int] = None,
    config=None,
) -> List[ReconstructionResult]:
    """
    Reconstruct independent (account, token) pairs in parallel threads.

    With a LedgerConfig, the pool size defaults to its max_workers and each
    engine is built with from_config. Results come back in request order.
    """
    if not requests:
        return []
    if max_workers is None and config is not None:
        max_workers = config.reconstruction.max_workers

    def run_one(request: ReconstructionRequest) -> ReconstructionResult:
        if config is None:
            return reconstruct_account_history(
                request.user_key,
                request.chain_id,
                request.token,
                request.current_nonce,
                request.ledger,
                request.tree,
            )
        with SessionContext(request.user_key, request.chain_id) as ctx:
            engine = ReconstructionEngine.from_config(ctx, request.ledger, config, tree=request.tree)
            return engine.run(request.token, request.current_nonce)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(run_one, requests))
