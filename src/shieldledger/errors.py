"""
Exception taxonomy.

Pure primitives only ever raise MalformedInput. The reconstruction engine is
the one place that decides whether a failure is fatal to the run, fatal to a
single nonce, or just something to skip over.
"""

from typing import Any, Dict, Optional


class ShieldLedgerError(Exception):
    """Base error for the package."""
    pass


class MalformedInput(ShieldLedgerError, ValueError):
    """Wrong-length proofs, out-of-range counters, off-field values."""
    pass


class IntegrityMismatch(ShieldLedgerError):
    """A recomputed leaf or root disagrees with the authoritative value."""

    def __init__(
        self,
        message: str,
        expected: Optional[int] = None,
        computed: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.expected = expected
        self.computed = computed
        self.context = dict(context or {})

    def __str__(self) -> str:
        base = super().__str__()
        if self.expected is None and self.computed is None:
            return base
        return f"{base} (expected={_hex(self.expected)}, computed={_hex(self.computed)})"


class RecordNotFound(ShieldLedgerError, LookupError):
    """No ledger record exists for a derived nonce commitment."""
    pass


class LedgerUnavailable(ShieldLedgerError):
    """The ledger or blob collaborator could not be reached."""
    pass


class LedgerError(ShieldLedgerError):
    """The ledger rejected an operation."""
    pass


class DuplicateNonceCommitment(LedgerError):
    """Nonce commitment already marked used."""
    pass


class StoreError(ShieldLedgerError):
    """Local cache failure."""
    pass


def _hex(value: Optional[int]) -> str:
    if value is None:
        return "None"
    return f"0x{value:064x}"
