"""
Domain Constants for the Shielded Ledger

All values here are PINNED - changing any of them breaks agreement with
the ledger and with proofs generated against it.
"""

from enum import Enum, IntEnum


class HashArity(IntEnum):
    """
    Poseidon2 sponge arities.

    Each arity is its own primitive: the sponge IV is arity * 2^64, so a
    2-input hash never collides with a 3-input hash whose last input is 0.
    """

    ONE = 1
    TWO = 2
    THREE = 3


class OperationTag(IntEnum):
    """Operation kinds recorded by the ledger per nonce commitment."""

    OPEN = 0       # Account entry: first note of a (account, token) chain
    TOP_UP = 1     # Deposit onto an already-open note (mints shares)
    TRANSFER = 2   # Send to another account
    WITHDRAW = 3   # Withdraw underlying assets
    ABSORB = 4     # Absorb an incoming note stack


class NoteKind(Enum):
    """
    Which construction path a note uses.

    OPENING: the ledger folded shares into the point after construction,
             so reconstruction must pass them into the commitment up front.
    CONTINUING: shares come from the decrypted balance of the record.
    """

    OPENING = 'opening'
    CONTINUING = 'continuing'


# "viewing_key" as a big-endian integer
VIEW_STRING = 0x76696577696e675f6b6579

# to_nullifier_domain offset
NULLIFIER_DOMAIN_SEPARATOR = 1 << 248

# Stream cipher counters
BALANCE_COUNTER = 0
NULLIFIER_COUNTER = 1

# Seeds for the hash-to-curve generators (ASCII, < 31 bytes each)
GENERATOR_SEEDS = {
    'H': b'shieldledger.pedersen.H',
    'D': b'shieldledger.pedersen.D',
    'K': b'shieldledger.pedersen.K',
    'J': b'shieldledger.pedersen.J',
}


def seed_to_field(seed: bytes) -> int:
    """Interpret a short ASCII seed as a big-endian field element."""
    if len(seed) > 31:
        raise ValueError(f"Seed must fit in 31 bytes, got {len(seed)}")
    return int.from_bytes(seed, 'big')
