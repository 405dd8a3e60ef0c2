"""
Tests for the key derivation hierarchy and session context.
"""

import pytest

from shieldledger.curve import BASE8, is_on_curve, scalar_mul
from shieldledger.errors import MalformedInput
from shieldledger.field import FIELD_MODULUS as P
from shieldledger.keys import (
    SessionContext,
    derive_view_key,
    nonce_commitment,
    nullifier_domain,
    public_key,
    spending_key,
    token_to_field,
    user_key_from_signature,
    view_key,
    zk_address,
)
from shieldledger.poseidon2 import hash_2, hash_3
from shieldledger.tags import VIEW_STRING


USER_KEY = 0x1234567890abcdef
CHAIN_ID = 31337
TOKEN = 0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48


class TestTokenToField:

    def test_int(self):
        assert token_to_field(TOKEN) == TOKEN

    def test_hex_string(self):
        assert token_to_field('0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48') == TOKEN
        assert token_to_field('a0b86991c6218b36c1d19d4a2e9eb0ce3606eb48') == TOKEN

    @pytest.mark.parametrize('bad', ['0xzz', -1, 1 << 160, 1.0, None])
    def test_rejects(self, bad):
        with pytest.raises(MalformedInput):
            token_to_field(bad)


class TestDerivations:

    def test_spending_key_definition(self):
        assert spending_key(USER_KEY, CHAIN_ID, TOKEN) == hash_3(USER_KEY, CHAIN_ID, TOKEN)

    def test_nonce_commitment_definition(self):
        sk = spending_key(USER_KEY, CHAIN_ID, TOKEN)
        assert nonce_commitment(sk, 3, TOKEN) == hash_3(sk, 3, TOKEN)

    def test_view_key_definition(self):
        assert VIEW_STRING == int.from_bytes(b'viewing_key', 'big')
        assert view_key(USER_KEY) == hash_2(VIEW_STRING, USER_KEY)
        assert derive_view_key(USER_KEY) == view_key(USER_KEY)

    def test_deterministic(self):
        assert spending_key(USER_KEY, CHAIN_ID, TOKEN) == spending_key(USER_KEY, CHAIN_ID, TOKEN)

    def test_single_input_sensitivity(self):
        base = spending_key(USER_KEY, CHAIN_ID, TOKEN)
        assert spending_key(USER_KEY + 1, CHAIN_ID, TOKEN) != base
        assert spending_key(USER_KEY, CHAIN_ID + 1, TOKEN) != base
        assert spending_key(USER_KEY, CHAIN_ID, TOKEN + 1) != base

    def test_nonces_distinct(self):
        sk = spending_key(USER_KEY, CHAIN_ID, TOKEN)
        commitments = {nonce_commitment(sk, n, TOKEN) for n in range(10)}
        assert len(commitments) == 10

    def test_view_key_independent_of_spending_key(self):
        assert view_key(USER_KEY) != spending_key(USER_KEY, CHAIN_ID, TOKEN)

    def test_negative_nonce_rejected(self):
        with pytest.raises(MalformedInput):
            nonce_commitment(1, -1, TOKEN)

    def test_out_of_field_key_rejected(self):
        with pytest.raises(MalformedInput):
            spending_key(P, CHAIN_ID, TOKEN)

    def test_nullifier_domain(self):
        assert nullifier_domain(TOKEN) == TOKEN + (1 << 248)


class TestSignatureAndAddress:

    def test_user_key_from_signature(self):
        sig = bytes(range(65))
        c1 = int.from_bytes(sig[:31], 'big')
        c2 = int.from_bytes(sig[31:62], 'big')
        c3 = int.from_bytes(sig[62:], 'big')
        assert user_key_from_signature(sig) == hash_3(c1, c2, c3)
        assert user_key_from_signature('0x' + sig.hex()) == hash_3(c1, c2, c3)

    @pytest.mark.parametrize('length', [0, 64, 66])
    def test_signature_length(self, length):
        with pytest.raises(MalformedInput):
            user_key_from_signature(bytes(length))

    def test_public_key(self):
        pk = public_key(USER_KEY)
        assert pk == scalar_mul(BASE8, USER_KEY)
        assert is_on_curve(pk)

    def test_zk_address_format(self):
        address = zk_address(USER_KEY)
        pk = public_key(USER_KEY)
        assert address.startswith('zk')
        assert len(address) == 2 + 128
        assert int(address[2:66], 16) == pk.x
        assert int(address[66:], 16) == pk.y


class TestSessionContext:

    def test_matches_functions(self):
        ctx = SessionContext(USER_KEY, CHAIN_ID)
        sk = spending_key(USER_KEY, CHAIN_ID, TOKEN)
        assert ctx.spending_key(TOKEN) == sk
        assert ctx.view_key == view_key(USER_KEY)
        assert ctx.nonce_commitment(TOKEN, 2) == nonce_commitment(sk, 2, TOKEN)

    def test_hex_and_int_tokens_share_cache(self):
        ctx = SessionContext(USER_KEY, CHAIN_ID)
        assert ctx.spending_key(TOKEN) == ctx.spending_key(hex(TOKEN))

    def test_close(self):
        ctx = SessionContext(USER_KEY, CHAIN_ID)
        ctx.spending_key(TOKEN)
        ctx.close()
        assert ctx.closed
        with pytest.raises(RuntimeError):
            ctx.spending_key(TOKEN)
        with pytest.raises(RuntimeError):
            ctx.view_key

    def test_context_manager(self):
        with SessionContext(USER_KEY, CHAIN_ID) as ctx:
            assert not ctx.closed
        assert ctx.closed

    def test_from_signature(self):
        sig = bytes(range(65))
        ctx = SessionContext.from_signature(sig, CHAIN_ID)
        assert ctx.user_key == user_key_from_signature(sig)

    def test_repr_hides_keys(self):
        ctx = SessionContext(USER_KEY, CHAIN_ID)
        assert hex(USER_KEY)[2:] not in repr(ctx)
