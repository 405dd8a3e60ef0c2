"""
Key Derivation Hierarchy

    signature ──H3──> user_key
    user_key, chain_id, token ──H3──> spending_key
    spending_key, nonce, token ──H3──> nonce_commitment
    VIEW_STRING, user_key ──H2──> view_key

Every function here is pure and must stay bit-exact with the ledger, which
recomputes the same values independently.

SessionContext bundles the root key with the chain it is used on so that
callers pass key material explicitly instead of reading it from globals.
"""

from __future__ import annotations
import logging
from typing import Dict, Optional, Union

from . import field
from .curve import BASE8, CurvePoint, scalar_mul
from .errors import MalformedInput
from .poseidon2 import hash_2, hash_3
from .tags import NULLIFIER_DOMAIN_SEPARATOR, VIEW_STRING

logger = logging.getLogger(__name__)

Address = Union[int, str]

SIGNATURE_LENGTH = 65


def token_to_field(token: Address) -> int:
    """Accept a token address as an int or a 0x-prefixed hex string."""
    if isinstance(token, str):
        text = token[2:] if token.lower().startswith('0x') else token
        try:
            value = int(text, 16)
        except ValueError:
            raise MalformedInput(f"Invalid token address: {token!r}") from None
    elif isinstance(token, int) and not isinstance(token, bool):
        value = token
    else:
        raise MalformedInput(f"Token address must be int or hex string, got {type(token).__name__}")
    if value < 0 or value >= 1 << 160:
        raise MalformedInput(f"Token address out of range: {token!r}")
    return value


# =============================================================================
# Derivations
# =============================================================================

def user_key_from_signature(signature: Union[bytes, str]) -> int:
    """
    Derive the root user key from a 65-byte wallet signature.

    The signature is split into 31 + 31 + 3 byte big-endian chunks so each
    chunk fits in the field, then hashed with H3.
    """
    if isinstance(signature, str):
        text = signature[2:] if signature.startswith('0x') else signature
        try:
            signature = bytes.fromhex(text)
        except ValueError:
            raise MalformedInput("Signature is not valid hex") from None
    if len(signature) != SIGNATURE_LENGTH:
        raise MalformedInput(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(signature)}")

    c1 = int.from_bytes(signature[0:31], 'big')
    c2 = int.from_bytes(signature[31:62], 'big')
    c3 = int.from_bytes(signature[62:65], 'big')
    return hash_3(c1, c2, c3)


def spending_key(user_key: int, chain_id: int, token: Address) -> int:
    """spending_key = H3(user_key, chain_id, token)."""
    return hash_3(
        field.require_field(user_key, 'user_key'),
        field.require_field(chain_id, 'chain_id'),
        token_to_field(token),
    )


def nonce_commitment(spending_key: int, nonce: int, token: Address) -> int:
    """nonce_commitment = H3(spending_key, nonce, token)."""
    if not isinstance(nonce, int) or nonce < 0:
        raise MalformedInput(f"Nonce must be a non-negative integer, got {nonce!r}")
    return hash_3(
        field.require_field(spending_key, 'spending_key'),
        field.require_field(nonce, 'nonce'),
        token_to_field(token),
    )


def view_key(user_key: int) -> int:
    """view_key = H2(VIEW_STRING, user_key). Decrypts, never spends."""
    return hash_2(VIEW_STRING, field.require_field(user_key, 'user_key'))


derive_view_key = view_key


def nullifier_domain(token: Address) -> int:
    """to_nullifier_domain(token) = token + 2^248 (mod p)."""
    return field.add(token_to_field(token), NULLIFIER_DOMAIN_SEPARATOR)


def public_key(user_key: int) -> CurvePoint:
    """Baby Jubjub public key: user_key * BASE8."""
    return scalar_mul(BASE8, field.require_field(user_key, 'user_key'))


def zk_address(user_key: int) -> str:
    """'zk' followed by the public key coordinates as 64-digit hex."""
    pk = public_key(user_key)
    return f"zk{pk.x:064x}{pk.y:064x}"


# =============================================================================
# Session Context
# =============================================================================

class SessionContext:
    """
    Short-lived holder of one account's key material on one chain.

    Spending keys are derived lazily per token and cached for the life of
    the session. close() drops everything; any later use raises.
    """

    def __init__(self, user_key: int, chain_id: int):
        self._user_key: Optional[int] = field.require_field(user_key, 'user_key')
        self.chain_id = field.require_field(chain_id, 'chain_id')
        self._view_key: Optional[int] = None
        self._spending_keys: Dict[int, int] = {}

    @classmethod
    def from_signature(cls, signature: Union[bytes, str], chain_id: int) -> SessionContext:
        return cls(user_key_from_signature(signature), chain_id)

    @property
    def closed(self) -> bool:
        return self._user_key is None

    def _require_open(self) -> int:
        if self._user_key is None:
            raise RuntimeError("Session context is closed")
        return self._user_key

    @property
    def user_key(self) -> int:
        return self._require_open()

    @property
    def view_key(self) -> int:
        user_key = self._require_open()
        if self._view_key is None:
            self._view_key = view_key(user_key)
        return self._view_key

    def spending_key(self, token: Address) -> int:
        user_key = self._require_open()
        token_value = token_to_field(token)
        if token_value not in self._spending_keys:
            self._spending_keys[token_value] = spending_key(user_key, self.chain_id, token_value)
        return self._spending_keys[token_value]

    def nonce_commitment(self, token: Address, nonce: int) -> int:
        return nonce_commitment(self.spending_key(token), nonce, token)

    def zk_address(self) -> str:
        return zk_address(self._require_open())

    def close(self) -> None:
        self._user_key = None
        self._view_key = None
        self._spending_keys.clear()
        logger.debug("Session context closed for chain %d", self.chain_id)

    def __enter__(self) -> SessionContext:
        self._require_open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = 'closed' if self.closed else 'open'
        return f"SessionContext(chain_id={self.chain_id}, {state})"
