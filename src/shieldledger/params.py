"""
Protocol Parameters

LedgerParams holds every public constant that two independent
implementations must agree on. They are frozen; runtime knobs that do not
affect ledger agreement live in config.py instead.
"""

from dataclasses import dataclass
import hashlib
import struct

from .field import FIELD_MODULUS


PARAMS_TAG = 0xB0


@dataclass(frozen=True)
class LedgerParams:
    """
    Public protocol parameters.

    All parameters are immutable and hashable.
    """

    # ==========================================================================
    # Membership Tree
    # ==========================================================================

    depth_floor: int = 8
    """Minimum tree depth. Proofs always carry at least this many siblings."""

    max_depth: int = 32
    """Maximum supported depth (2^32 leaves)."""

    # ==========================================================================
    # Stream Cipher
    # ==========================================================================

    max_counter: int = (1 << 32) - 1
    """Counters are u32; anything outside [0, max_counter] is rejected."""

    # ==========================================================================
    # Hash
    # ==========================================================================

    poseidon_width: int = 4
    """Poseidon2 state width t."""

    poseidon_full_rounds: int = 8
    """R_F: external (full) rounds, split evenly before and after."""

    poseidon_partial_rounds: int = 56
    """R_P: internal (partial) rounds."""

    # ==========================================================================
    # Nonce Scanning
    # ==========================================================================

    max_nonce_scan: int = 100
    """Upper bound on nonces checked when discovering the current nonce."""

    version: int = 1
    """Protocol version."""

    def __post_init__(self):
        if not 0 < self.depth_floor <= self.max_depth:
            raise ValueError(
                f"depth_floor must be in (0, {self.max_depth}], got {self.depth_floor}"
            )
        if self.max_counter < 1:
            raise ValueError("max_counter must be positive")

    @property
    def field_modulus(self) -> int:
        return FIELD_MODULUS

    def serialize(self) -> bytes:
        """
        Canonical serialization for binding.

        Format:
            TAG(2) || version(2) || depth_floor(1) || max_depth(1) ||
            max_counter(8) || width(1) || R_F(2) || R_P(2) || max_nonce_scan(4)
        """
        return b''.join([
            PARAMS_TAG.to_bytes(2, 'big'),
            self.version.to_bytes(2, 'big'),
            self.depth_floor.to_bytes(1, 'big'),
            self.max_depth.to_bytes(1, 'big'),
            self.max_counter.to_bytes(8, 'big'),
            self.poseidon_width.to_bytes(1, 'big'),
            self.poseidon_full_rounds.to_bytes(2, 'big'),
            self.poseidon_partial_rounds.to_bytes(2, 'big'),
            self.max_nonce_scan.to_bytes(4, 'big'),
        ])

    @classmethod
    def deserialize(cls, data: bytes) -> 'LedgerParams':
        """Deserialize from bytes."""
        if len(data) < 23:
            raise ValueError(f"Data too short: need 23 bytes, got {len(data)}")
        version, depth_floor, max_depth, max_counter, width, r_f, r_p, max_scan = struct.unpack(
            '>HBBQBHHI', data[2:23]
        )
        return cls(
            depth_floor=depth_floor,
            max_depth=max_depth,
            max_counter=max_counter,
            poseidon_width=width,
            poseidon_full_rounds=r_f,
            poseidon_partial_rounds=r_p,
            max_nonce_scan=max_scan,
            version=version,
        )

    def hash(self) -> bytes:
        """Hash of parameters, used to key cached state."""
        return hashlib.shake_256(self.serialize()).digest(32)


# =============================================================================
# Preset Configurations
# =============================================================================

# Default: what the deployed ledger uses
PARAMS_DEFAULT = LedgerParams()

# Small: shallow tree floor for quick local experiments
PARAMS_SMALL = LedgerParams(
    depth_floor=2,
    max_nonce_scan=16,
)
