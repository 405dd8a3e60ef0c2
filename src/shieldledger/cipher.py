"""
Additive Stream Cipher over F_p

    keystream(key, counter) = H2(key, counter)
    encrypt(m) = m + keystream   (mod p)
    decrypt(c) = c - keystream   (mod p)

Secure only while each (key, counter) pair masks a single value. The
ledger format fixes balances at counter 0 and nullifiers at counter 1.
KeystreamToken makes the single-use rule enforceable for callers that
encrypt outside that format.
"""

import threading

from . import field
from .errors import MalformedInput
from .params import PARAMS_DEFAULT
from .poseidon2 import hash_2
from .tags import BALANCE_COUNTER, NULLIFIER_COUNTER


MAX_COUNTER = PARAMS_DEFAULT.max_counter

__all__ = [
    'MAX_COUNTER',
    'BALANCE_COUNTER',
    'NULLIFIER_COUNTER',
    'check_counter',
    'keystream',
    'encrypt',
    'decrypt',
    'KeystreamToken',
    'encrypt_once',
]


def check_counter(counter: object) -> int:
    """Counters are u32. Out-of-range values are rejected, never wrapped."""
    if not isinstance(counter, int) or isinstance(counter, bool):
        raise MalformedInput(f"Counter must be an integer, got {type(counter).__name__}")
    if counter < 0 or counter > MAX_COUNTER:
        raise MalformedInput(f"Counter {counter} outside [0, {MAX_COUNTER}]")
    return counter


def keystream(key: int, counter: int) -> int:
    return hash_2(key % field.FIELD_MODULUS, check_counter(counter))


def encrypt(plaintext: int, key: int, counter: int = BALANCE_COUNTER) -> int:
    return field.add(plaintext, keystream(key, counter))


def decrypt(ciphertext: int, key: int, counter: int = BALANCE_COUNTER) -> int:
    return field.sub(ciphertext % field.FIELD_MODULUS, keystream(key, counter))


# =============================================================================
# Consumed-once keystream
# =============================================================================

class KeystreamToken:
    """
    Right to mask exactly one value under (key, counter).

    The first encrypt_once() consumes the token; a second use raises
    RuntimeError. Decryption does not consume it.
    """

    __slots__ = ('_key', '_counter', '_consumed', '_lock')

    def __init__(self, key: int, counter: int):
        self._key = key % field.FIELD_MODULUS
        self._counter = check_counter(counter)
        self._consumed = False
        self._lock = threading.Lock()

    @property
    def counter(self) -> int:
        return self._counter

    @property
    def consumed(self) -> bool:
        return self._consumed

    def take(self) -> int:
        """Return the keystream value and mark the token spent."""
        with self._lock:
            if self._consumed:
                raise RuntimeError(f"Keystream for counter {self._counter} already used")
            self._consumed = True
        return keystream(self._key, self._counter)

    def decrypt(self, ciphertext: int) -> int:
        return decrypt(ciphertext, self._key, self._counter)

    def __repr__(self) -> str:
        return f"KeystreamToken(counter={self._counter}, consumed={self._consumed})"


def encrypt_once(plaintext: int, token: KeystreamToken) -> int:
    return field.add(plaintext, token.take())
