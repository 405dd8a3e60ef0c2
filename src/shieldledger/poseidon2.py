"""
Poseidon2 over the BN254 Scalar Field

Permutation: t = 4, R_F = 8 (4 + 4 external rounds), R_P = 56, S-box x^5.

Round constants are produced by the Grain LFSR exactly as the reference
parameter script does, so nothing here is a hand-typed table except the
internal diagonal. The first rows are checked against published values in
the test suite.

Sponge (matches Noir / Aztec / the ledger's Huff contract):
    state = [in_0, in_1, in_2, arity * 2^64]
    out   = permute(state)[0]

The three arities are exposed as separate functions. They are not
interchangeable: the IV binds the input count.
"""

from __future__ import annotations
from collections import deque
from functools import lru_cache
from typing import List, Sequence, Tuple

from .field import FIELD_MODULUS, FIELD_BITS
from .params import PARAMS_DEFAULT
from .tags import HashArity


P = FIELD_MODULUS

WIDTH = PARAMS_DEFAULT.poseidon_width
ROUNDS_F = PARAMS_DEFAULT.poseidon_full_rounds
ROUNDS_P = PARAMS_DEFAULT.poseidon_partial_rounds
ROUNDS_F_HALF = ROUNDS_F // 2

# diag(M_I) - 1 for the internal linear layer
INTERNAL_DIAGONAL_M1 = (
    0x10dc6e9c006ea38b04b1e03b4bd9490c0d03f98929ca1d7fb56821fd19d3b6e7,
    0x0c28145b6a44df3e0149b3d0a30b3bb599df9756d4dd9b84a86b38cfb45a740b,
    0x00544b8338791518b2c7645a50392798b21f75bb60e3596170067d00141cac15,
    0x222c01175718386f2e2e82eb122789e352e105a3b8fa852613bc534433ee428b,
)

TWO_POW_64 = 1 << 64


# =============================================================================
# Round Constants (Grain LFSR)
# =============================================================================

def _grain_init_bits(field: int, sbox: int, n: int, t: int, r_f: int, r_p: int) -> List[int]:
    """80-bit initial LFSR state encoding the instance parameters."""
    bits = []
    for value, width in ((field, 2), (sbox, 4), (n, 12), (t, 12), (r_f, 10), (r_p, 10)):
        bits.extend(int(b) for b in format(value, f'0{width}b'))
    bits.extend([1] * 30)
    return bits


class GrainLFSR:
    """Self-shrinking Grain LFSR used to derive Poseidon parameters."""

    def __init__(self, field: int, sbox: int, n: int, t: int, r_f: int, r_p: int):
        self.state = deque(_grain_init_bits(field, sbox, n, t, r_f, r_p), maxlen=80)
        for _ in range(160):
            self._clock()

    def _clock(self) -> int:
        s = self.state
        bit = s[62] ^ s[51] ^ s[38] ^ s[23] ^ s[13] ^ s[0]
        s.append(bit)
        return bit

    def next_bit(self) -> int:
        # Pairs (b1, b2): emit b2 when b1 == 1, discard the pair otherwise
        while True:
            b1 = self._clock()
            b2 = self._clock()
            if b1 == 1:
                return b2

    def next_int(self, n: int) -> int:
        value = 0
        for _ in range(n):
            value = (value << 1) | self.next_bit()
        return value

    def next_field_element(self, n: int, modulus: int) -> int:
        """Rejection-sample an n-bit integer below modulus."""
        while True:
            value = self.next_int(n)
            if value < modulus:
                return value


@lru_cache(maxsize=1)
def round_constants() -> Tuple[Tuple[int, ...], ...]:
    """
    Round constants as ROUNDS_F + ROUNDS_P rows of WIDTH entries.

    Partial rounds only use the first entry; the rest are zero.
    """
    grain = GrainLFSR(field=1, sbox=0, n=FIELD_BITS, t=WIDTH, r_f=ROUNDS_F, r_p=ROUNDS_P)
    rows = []
    for r in range(ROUNDS_F + ROUNDS_P):
        if ROUNDS_F_HALF <= r < ROUNDS_F_HALF + ROUNDS_P:
            rows.append((grain.next_field_element(FIELD_BITS, P), 0, 0, 0))
        else:
            rows.append(tuple(grain.next_field_element(FIELD_BITS, P) for _ in range(WIDTH)))
    return tuple(rows)


# =============================================================================
# Permutation
# =============================================================================

def _sbox(x: int) -> int:
    x2 = (x * x) % P
    x4 = (x2 * x2) % P
    return (x4 * x) % P


def _external_matrix(state: List[int]) -> List[int]:
    """
    Multiply by M4 = [[5,7,1,3], [4,6,1,1], [1,3,5,7], [1,1,4,6]].
    """
    a, b, c, d = state
    t0 = a + b
    t1 = c + d
    t2 = b + b + t1
    t3 = d + d + t0
    t4 = 4 * t1 + t3
    t5 = 4 * t0 + t2
    t6 = t3 + t5
    t7 = t2 + t4
    return [t6 % P, t5 % P, t7 % P, t4 % P]


def _internal_matrix(state: List[int]) -> List[int]:
    total = sum(state)
    return [(state[i] * INTERNAL_DIAGONAL_M1[i] + total) % P for i in range(WIDTH)]


def permute(state: Sequence[int]) -> List[int]:
    """Poseidon2 permutation on a width-4 state."""
    if len(state) != WIDTH:
        raise ValueError(f"State must have {WIDTH} elements, got {len(state)}")

    rc = round_constants()
    s = _external_matrix([v % P for v in state])

    for r in range(ROUNDS_F_HALF):
        s = [_sbox((s[i] + rc[r][i]) % P) for i in range(WIDTH)]
        s = _external_matrix(s)

    for r in range(ROUNDS_F_HALF, ROUNDS_F_HALF + ROUNDS_P):
        s[0] = _sbox((s[0] + rc[r][0]) % P)
        s = _internal_matrix(s)

    for r in range(ROUNDS_F_HALF + ROUNDS_P, ROUNDS_F + ROUNDS_P):
        s = [_sbox((s[i] + rc[r][i]) % P) for i in range(WIDTH)]
        s = _external_matrix(s)

    return s


# =============================================================================
# Sponge, one primitive per arity
# =============================================================================

def _sponge(arity: HashArity, inputs: Sequence[int]) -> int:
    state = [0, 0, 0, int(arity) * TWO_POW_64]
    for i, value in enumerate(inputs):
        state[i] = value % P
    return permute(state)[0]


def hash_1(a: int) -> int:
    """H1(a)."""
    return _sponge(HashArity.ONE, (a,))


def hash_2(a: int, b: int) -> int:
    """H2(a, b). Used for Merkle nodes, leaves, keystream and the view key."""
    return _sponge(HashArity.TWO, (a, b))


def hash_3(a: int, b: int, c: int) -> int:
    """H3(a, b, c). Used for the spending key and nonce commitments."""
    return _sponge(HashArity.THREE, (a, b, c))
