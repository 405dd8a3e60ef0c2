"""
Baby Jubjub Point Arithmetic

Twisted Edwards curve embedded in the BN254 scalar field:

    a*x^2 + y^2 = 1 + d*x^2*y^2,   a = 168700, d = 168696

Points are kept in affine coordinates. The identity is (0, 1), which the
Edwards addition law handles without special cases, so it doubles as the
sentinel for "no contribution".

Scalar multiplication is plain double-and-add over the scalar's bits and is
not constant time.
"""

from __future__ import annotations
from dataclasses import dataclass
from itertools import count
from typing import Iterable

from . import field
from .errors import MalformedInput
from .field import FIELD_MODULUS
from .poseidon2 import hash_2


P = FIELD_MODULUS

CURVE_A = 168700
CURVE_D = 168696

# Order of the prime-order subgroup
SUBGROUP_ORDER = 2736030358979909402780800718157159386076813972158567259200215660948447373041

COFACTOR = 8


@dataclass(frozen=True)
class CurvePoint:
    """Affine point (x, y) on Baby Jubjub."""

    x: int
    y: int

    @classmethod
    def identity(cls) -> CurvePoint:
        return IDENTITY

    @classmethod
    def checked(cls, x: int, y: int) -> CurvePoint:
        """Build a point from untrusted coordinates."""
        point = cls(field.require_field(x, 'x'), field.require_field(y, 'y'))
        if not is_on_curve(point):
            raise MalformedInput(f"Point ({x}, {y}) is not on the curve")
        return point

    def is_zero(self) -> bool:
        return is_zero(self)

    def __add__(self, other: CurvePoint) -> CurvePoint:
        return add(self, other)

    def __neg__(self) -> CurvePoint:
        return negate(self)

    def __sub__(self, other: CurvePoint) -> CurvePoint:
        return add(self, negate(other))

    def __mul__(self, scalar: int) -> CurvePoint:
        return scalar_mul(self, scalar)

    __rmul__ = __mul__

    def to_tuple(self):
        return (self.x, self.y)

    def __repr__(self) -> str:
        return f"CurvePoint(x=0x{self.x:064x}, y=0x{self.y:064x})"


IDENTITY = CurvePoint(0, 1)

# Standard EIP-2494 base point (8 * generator)
BASE8 = CurvePoint(
    5299619240641551281634865583518297030282874472190772894086521144482721001553,
    16950150798460657717958625567821834550301663161624707787222815936182638968203,
)


# =============================================================================
# Group Law
# =============================================================================

def is_on_curve(p: CurvePoint) -> bool:
    x2 = (p.x * p.x) % P
    y2 = (p.y * p.y) % P
    lhs = (CURVE_A * x2 + y2) % P
    rhs = (1 + CURVE_D * x2 * y2) % P
    return lhs == rhs


def is_zero(p: CurvePoint) -> bool:
    """True for the identity element."""
    return p.x == 0 and p.y == 1


def equals(p: CurvePoint, q: CurvePoint) -> bool:
    return p.x % P == q.x % P and p.y % P == q.y % P


def negate(p: CurvePoint) -> CurvePoint:
    """-(x, y) = (-x, y)."""
    return CurvePoint(field.neg(p.x), p.y)


def add(p: CurvePoint, q: CurvePoint) -> CurvePoint:
    """
    Edwards addition:

        x3 = (x1*y2 + y1*x2) / (1 + d*x1*x2*y1*y2)
        y3 = (y1*y2 - a*x1*x2) / (1 - d*x1*x2*y1*y2)
    """
    x1, y1, x2, y2 = p.x, p.y, q.x, q.y
    tau = (CURVE_D * x1 * x2 % P) * (y1 * y2 % P) % P

    denom_x = (1 + tau) % P
    denom_y = (1 - tau) % P
    if denom_x == 0 or denom_y == 0:
        # Only reachable for coordinates off the curve
        raise MalformedInput("Degenerate addition: operands are not curve points")

    x3 = (x1 * y2 + y1 * x2) * field.inverse(denom_x) % P
    y3 = (y1 * y2 - CURVE_A * x1 * x2) * field.inverse(denom_y) % P
    return CurvePoint(x3, y3)


def double(p: CurvePoint) -> CurvePoint:
    return add(p, p)


def scalar_mul(p: CurvePoint, k: int) -> CurvePoint:
    """
    k * P by double-and-add, most significant bit first.

    Negative scalars multiply the negated point.
    """
    if k < 0:
        return scalar_mul(negate(p), -k)
    if k == 0 or is_zero(p):
        return IDENTITY

    result = IDENTITY
    for i in range(k.bit_length() - 1, -1, -1):
        result = add(result, result)
        if (k >> i) & 1:
            result = add(result, p)
    return result


def sum_points(points: Iterable[CurvePoint]) -> CurvePoint:
    total = IDENTITY
    for point in points:
        total = add(total, point)
    return total


def in_subgroup(p: CurvePoint) -> bool:
    """True if P lies in the prime-order subgroup."""
    return is_zero(scalar_mul(p, SUBGROUP_ORDER))


# =============================================================================
# Hash to Curve
# =============================================================================

def recover_x(y: int):
    """
    Solve the curve equation for x given y.

        x^2 = (1 - y^2) / (a - d*y^2)

    Returns the smaller root, or None if y is not the ordinate of any point.
    """
    y2 = (y * y) % P
    denom = (CURVE_A - CURVE_D * y2) % P
    if denom == 0:
        return None
    x2 = (1 - y2) * field.inverse(denom) % P
    return field.sqrt(x2)


def hash_to_curve(seed: int) -> CurvePoint:
    """
    Deterministic try-and-increment map into the prime-order subgroup.

    y = H2(seed, counter) for counter = 0, 1, ... until y lands on the curve,
    then the cofactor is cleared. Nobody learns a discrete log relative to
    any other generator this way.
    """
    for counter in count():
        y = hash_2(seed, counter)
        x = recover_x(y)
        if x is None:
            continue
        point = scalar_mul(CurvePoint(x, y), COFACTOR)
        if not is_zero(point):
            return point
