"""
Pedersen Multi-Generator Commitment

    C = shares*G + nullifier*H + spending_key*D + unlocks_at*K + nonce_commitment*J
    leaf = H2(C.x, C.y)

The slot assignment is fixed. Swapping two generators produces a valid
commitment that the ledger will never recognise.

G is the Baby Jubjub Pedersen base used by the ledger circuits. H, D, K and
J come from hash_to_curve on pinned seeds, so nobody knows a discrete log
between any pair of them.
"""

from __future__ import annotations
from functools import lru_cache
from typing import Sequence, Tuple

from .curve import CurvePoint, IDENTITY, add, hash_to_curve, scalar_mul
from .errors import MalformedInput
from .field import FIELD_MODULUS
from .poseidon2 import hash_2
from .tags import GENERATOR_SEEDS, seed_to_field


GENERATOR_G = CurvePoint(
    10457101036533406547632367118273992217979173478358440826365724437999023779287,
    19824078218392094440610104313265183977899662750282163392862422243483260492317,
)

# Order of slots in commit5
SLOT_NAMES = ('shares', 'nullifier', 'spending_key', 'unlocks_at', 'nonce_commitment')


@lru_cache(maxsize=None)
def derived_generator(name: str) -> CurvePoint:
    """Hash-to-curve generator for one of 'H', 'D', 'K', 'J'."""
    if name not in GENERATOR_SEEDS:
        raise KeyError(f"Unknown generator: {name!r}")
    return hash_to_curve(seed_to_field(GENERATOR_SEEDS[name]))


def generators() -> Tuple[CurvePoint, ...]:
    """(G, H, D, K, J) in slot order."""
    return (
        GENERATOR_G,
        derived_generator('H'),
        derived_generator('D'),
        derived_generator('K'),
        derived_generator('J'),
    )


# =============================================================================
# Commitment
# =============================================================================

def commit5(scalars: Sequence[int], bases: Sequence[CurvePoint]) -> CurvePoint:
    """
    Sum of scalar_mul(bases[i], scalars[i]).

    Scalars are reduced mod p first; zero scalars contribute the identity.
    """
    if len(scalars) != 5 or len(bases) != 5:
        raise MalformedInput(
            f"commit5 takes exactly 5 scalars and 5 bases, got {len(scalars)} and {len(bases)}"
        )
    point = IDENTITY
    for scalar, base in zip(scalars, bases):
        if not isinstance(scalar, int) or isinstance(scalar, bool):
            raise MalformedInput(f"Commitment scalar must be an int, got {type(scalar).__name__}")
        scalar %= FIELD_MODULUS
        if scalar:
            point = add(point, scalar_mul(base, scalar))
    return point


def build_commitment(
    shares: int,
    nullifier: int,
    spending_key: int,
    unlocks_at: int,
    nonce_commitment: int,
) -> CurvePoint:
    """Commitment point for one note with the fixed generator assignment."""
    return commit5((shares, nullifier, spending_key, unlocks_at, nonce_commitment), generators())


def commitment_leaf(point: CurvePoint) -> int:
    """Merkle leaf of a commitment point."""
    return hash_2(point.x, point.y)


def fold_shares(point: CurvePoint, shares: int) -> CurvePoint:
    """point + shares*G, the ledger's post-construction share fold."""
    return add(point, scalar_mul(GENERATOR_G, shares % FIELD_MODULUS))


def fold_unlocks(point: CurvePoint, unlocks_at: int) -> CurvePoint:
    """point + unlocks_at*K."""
    return add(point, scalar_mul(derived_generator('K'), unlocks_at % FIELD_MODULUS))
