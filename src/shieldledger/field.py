"""
BN254 Scalar Field Arithmetic

Field: F_p where
    p = 21888242871839275222246405745257275088548364400416034343698204186575808495617

This is the scalar field of BN254 and the base field of Baby Jubjub, so
curve coordinates, hash outputs, balances and keys all live in the same
field and compose without conversion.

The multiplicative group has order p-1 = 2^28 * q (q odd), which is what
the square root routine below relies on.
"""

from __future__ import annotations
from typing import Optional

from .errors import MalformedInput


# BN254 scalar field modulus
FIELD_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617

# Bit length of the modulus (254)
FIELD_BITS = FIELD_MODULUS.bit_length()


def _two_adicity(p: int) -> int:
    s = 0
    q = p - 1
    while q % 2 == 0:
        q //= 2
        s += 1
    return s


# Largest k such that 2^k divides p-1
TWO_ADICITY = _two_adicity(FIELD_MODULUS)


# =============================================================================
# Arithmetic
# =============================================================================

def reduce(value: int) -> int:
    """Map any integer into [0, p)."""
    return value % FIELD_MODULUS


def add(a: int, b: int) -> int:
    return (a + b) % FIELD_MODULUS


def sub(a: int, b: int) -> int:
    """Subtraction in F_p; negative intermediates wrap back into range."""
    return (a - b + FIELD_MODULUS) % FIELD_MODULUS


def neg(a: int) -> int:
    a %= FIELD_MODULUS
    return FIELD_MODULUS - a if a else 0


def mul(a: int, b: int) -> int:
    return (a * b) % FIELD_MODULUS


def inverse(a: int) -> int:
    """
    Multiplicative inverse using Fermat's little theorem.

    a^-1 = a^(p-2) mod p
    """
    a %= FIELD_MODULUS
    if a == 0:
        raise ZeroDivisionError("Cannot invert zero")
    return pow(a, FIELD_MODULUS - 2, FIELD_MODULUS)


def is_square(a: int) -> bool:
    """Euler's criterion. Zero counts as a square."""
    a %= FIELD_MODULUS
    if a == 0:
        return True
    return pow(a, (FIELD_MODULUS - 1) // 2, FIELD_MODULUS) == 1


def sqrt(a: int) -> Optional[int]:
    """
    Square root if it exists.

    p ≡ 1 (mod 4) for BN254, so we use Tonelli-Shanks.
    Returns the smaller of the two roots, or None for a non-residue.
    """
    root = _tonelli_shanks(a % FIELD_MODULUS)
    if root is None:
        return None
    other = FIELD_MODULUS - root if root else 0
    return min(root, other)


# =============================================================================
# Validation
# =============================================================================

def is_canonical(value: object) -> bool:
    """True for plain ints already inside [0, p)."""
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < FIELD_MODULUS


def require_field(value: object, name: str = "value") -> int:
    """Return value unchanged if it is a canonical field element, else raise."""
    if not is_canonical(value):
        raise MalformedInput(f"{name} must be an integer in [0, p), got {value!r}")
    return value


# =============================================================================
# Helper Functions
# =============================================================================

def _tonelli_shanks(a: int) -> Optional[int]:
    """
    Tonelli-Shanks algorithm for computing square roots.

    Returns sqrt(a) if it exists, None otherwise.
    """
    if a == 0:
        return 0

    p = FIELD_MODULUS

    # Check if a is a quadratic residue
    if pow(a, (p - 1) // 2, p) != 1:
        return None

    # Factor p-1 = 2^s * q where q is odd
    s = TWO_ADICITY
    q = (p - 1) >> s

    # Find a quadratic non-residue
    z = 2
    while pow(z, (p - 1) // 2, p) != p - 1:
        z += 1

    m = s
    c = pow(z, q, p)
    t = pow(a, q, p)
    r = pow(a, (q + 1) // 2, p)

    while True:
        if t == 1:
            return r

        # Find least i such that t^(2^i) = 1
        i = 1
        temp = (t * t) % p
        while temp != 1:
            temp = (temp * temp) % p
            i += 1

        # Update
        b = pow(c, 1 << (m - i - 1), p)
        m = i
        c = (b * b) % p
        t = (t * c) % p
        r = (r * b) % p
