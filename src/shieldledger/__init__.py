"""
shieldledger: Confidential Balance Ledger Core

Balances live on a public append-only tree as Pedersen commitments over
Baby Jubjub; the owner recovers them from public ledger records and one
private key.

    C    = shares*G + nullifier*H + spending_key*D + unlocks_at*K + nonce_commitment*J
    leaf = Poseidon2(C.x, C.y)

Usage:
    from shieldledger import reconstruct_account_history, InMemoryLedger

    result = reconstruct_account_history(user_key, chain_id, token, current_nonce, ledger)
    print(result.balance)
    for note in result.notes:          # most recent first
        print(note.nonce, note.balance, hex(note.leaf))

    # Primitives
    from shieldledger import build_commitment, commitment_leaf, derive_view_key
    from shieldledger import LeanIMT, insert_leaf, generate_proof, verify_proof
"""

# Errors
from .errors import (
    ShieldLedgerError,
    MalformedInput,
    IntegrityMismatch,
    RecordNotFound,
    LedgerUnavailable,
    LedgerError,
    DuplicateNonceCommitment,
    StoreError,
)

# Constants and parameters
from .tags import HashArity, OperationTag, NoteKind, VIEW_STRING
from .params import LedgerParams, PARAMS_DEFAULT, PARAMS_SMALL
from .field import FIELD_MODULUS

# Primitives
from .poseidon2 import hash_1, hash_2, hash_3, permute
from .curve import CurvePoint, IDENTITY, BASE8, add, negate, scalar_mul, is_zero, equals
from .keys import (
    SessionContext,
    spending_key,
    nonce_commitment,
    view_key,
    derive_view_key,
    user_key_from_signature,
    public_key,
    zk_address,
    nullifier_domain,
)
from .commitment import (
    GENERATOR_G,
    generators,
    commit5,
    build_commitment,
    commitment_leaf,
    fold_shares,
    fold_unlocks,
)
from .cipher import keystream, encrypt, decrypt, KeystreamToken, encrypt_once

# Membership tree
from .merkle import LeanIMT, MerkleProof, insert_leaf, generate_proof, verify_proof

# Ledger and reconstruction
from .ledger import LedgerRecord, LedgerSource, InMemoryLedger, LedgerClient, discover_current_nonce
from .reconstruct import (
    Diagnostic,
    DiagnosticCode,
    NoteState,
    ReconstructionResult,
    ReconstructionEngine,
    ReconstructionRequest,
    reconstruct_account_history,
    reconstruct_many,
)

# Configuration and cache
from .config import LedgerConfig, StorageConfig, ReconstructionConfig, LogConfig, setup_logging
from .store import LocalStore

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Errors
    "ShieldLedgerError",
    "MalformedInput",
    "IntegrityMismatch",
    "RecordNotFound",
    "LedgerUnavailable",
    "LedgerError",
    "DuplicateNonceCommitment",
    "StoreError",
    # Constants
    "HashArity",
    "OperationTag",
    "NoteKind",
    "VIEW_STRING",
    "LedgerParams",
    "PARAMS_DEFAULT",
    "PARAMS_SMALL",
    "FIELD_MODULUS",
    # Hash
    "hash_1",
    "hash_2",
    "hash_3",
    "permute",
    # Curve
    "CurvePoint",
    "IDENTITY",
    "BASE8",
    "add",
    "negate",
    "scalar_mul",
    "is_zero",
    "equals",
    # Keys
    "SessionContext",
    "spending_key",
    "nonce_commitment",
    "view_key",
    "derive_view_key",
    "user_key_from_signature",
    "public_key",
    "zk_address",
    "nullifier_domain",
    # Commitment
    "GENERATOR_G",
    "generators",
    "commit5",
    "build_commitment",
    "commitment_leaf",
    "fold_shares",
    "fold_unlocks",
    # Cipher
    "keystream",
    "encrypt",
    "decrypt",
    "KeystreamToken",
    "encrypt_once",
    # Tree
    "LeanIMT",
    "MerkleProof",
    "insert_leaf",
    "generate_proof",
    "verify_proof",
    # Ledger
    "LedgerRecord",
    "LedgerSource",
    "InMemoryLedger",
    "LedgerClient",
    "discover_current_nonce",
    # Reconstruction
    "Diagnostic",
    "DiagnosticCode",
    "NoteState",
    "ReconstructionResult",
    "ReconstructionEngine",
    "ReconstructionRequest",
    "reconstruct_account_history",
    "reconstruct_many",
    # Config
    "LedgerConfig",
    "StorageConfig",
    "ReconstructionConfig",
    "LogConfig",
    "setup_logging",
    "LocalStore",
]
