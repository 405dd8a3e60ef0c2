"""
Tests for ledger records, the in-memory ledger and nonce discovery.
"""

import pytest

from shieldledger.cipher import decrypt, encrypt
from shieldledger.commitment import build_commitment, commitment_leaf
from shieldledger.errors import (
    DuplicateNonceCommitment,
    LedgerError,
    LedgerUnavailable,
    MalformedInput,
    RecordNotFound,
)
from shieldledger.curve import CurvePoint
from shieldledger.keys import SessionContext
from shieldledger.ledger import (
    InMemoryLedger,
    LedgerClient,
    LedgerRecord,
    discover_current_nonce,
)
from shieldledger.config import LedgerConfig
from shieldledger.params import PARAMS_SMALL
from shieldledger.tags import OperationTag


USER_KEY = 0xC0FFEE
CHAIN_ID = 1
TOKEN = 0x6B175474E89094C44Da98b954EedeAC495271d0F


@pytest.fixture
def ctx():
    with SessionContext(USER_KEY, CHAIN_ID) as session:
        yield session


@pytest.fixture
def ledger():
    return InMemoryLedger(PARAMS_SMALL)


@pytest.fixture
def client(ctx, ledger):
    return LedgerClient(ctx, ledger)


class TestLedgerRecord:

    def test_dict_round_trip(self):
        record = LedgerRecord(
            operation=OperationTag.TOP_UP,
            shares_added=5,
            recorded_token=TOKEN,
            encrypted_balance=123,
            encrypted_nullifier=456,
            commitment_leaf=789,
            leaf_index=3,
        )
        assert LedgerRecord.from_dict(record.to_dict()) == record

    def test_from_dict_rejects_garbage(self):
        with pytest.raises(MalformedInput):
            LedgerRecord.from_dict({'operation': 99})


class TestInMemoryLedger:

    def test_open_note(self, ctx, client, ledger):
        record = client.open(TOKEN, 1000)
        nc = ctx.nonce_commitment(TOKEN, 0)

        assert ledger.get_record(nc) == record
        assert record.operation == OperationTag.OPEN
        assert record.shares_added == 1000
        assert record.encrypted_balance == 1000
        assert record.encrypted_nullifier == 0
        assert record.leaf_index == 0
        assert ledger.tree.root == record.commitment_leaf

    def test_open_note_post_fold(self, ctx, client):
        """The ledger's folded leaf equals committing to the shares up front."""
        record = client.open(TOKEN, 1000, unlocks_at=1700000000)
        sk = ctx.spending_key(TOKEN)
        nc = ctx.nonce_commitment(TOKEN, 0)
        expected = commitment_leaf(build_commitment(1000, 0, sk, 1700000000, nc))
        assert record.commitment_leaf == expected
        assert record.unlocks_at == 1700000000

    def test_top_up(self, ctx, client):
        client.open(TOKEN, 1000)
        record = client.top_up(TOKEN, 1, carried_balance=1000, shares_added=500, nullifier=77)

        assert record.operation == OperationTag.TOP_UP
        assert record.shares_added == 500
        assert decrypt(record.encrypted_balance, ctx.view_key, 0) == 1000
        assert decrypt(record.encrypted_nullifier, ctx.view_key, 1) == 77

        sk = ctx.spending_key(TOKEN)
        nc = ctx.nonce_commitment(TOKEN, 1)
        assert record.commitment_leaf == commitment_leaf(build_commitment(1500, 77, sk, 0, nc))

    def test_top_up_requires_shares(self, client):
        client.open(TOKEN, 1000)
        with pytest.raises(LedgerError):
            client.top_up(TOKEN, 1, carried_balance=1000, shares_added=0, nullifier=1)

    @pytest.mark.parametrize('operation', [OperationTag.TRANSFER, OperationTag.WITHDRAW, OperationTag.ABSORB])
    def test_continuing_operations(self, ctx, client, operation):
        client.open(TOKEN, 1000)
        record = client.continue_note(operation, TOKEN, 1, balance=400, nullifier=9)
        assert record.operation == operation
        assert record.shares_added == 0
        assert decrypt(record.encrypted_balance, ctx.view_key, 0) == 400

    def test_continue_rejects_minting_kind(self, client):
        with pytest.raises(LedgerError):
            client.continue_note(OperationTag.TOP_UP, TOKEN, 1, balance=1, nullifier=1)

    def test_duplicate_nonce_commitment(self, client, ledger):
        client.open(TOKEN, 1000)
        with pytest.raises(DuplicateNonceCommitment):
            client.open(TOKEN, 2000)
        assert len(ledger) == 1
        assert ledger.tree.size == 1

    def test_off_curve_point_rejected(self, ledger):
        with pytest.raises(MalformedInput):
            ledger.transfer(123, CurvePoint(1, 1), TOKEN, encrypt(1, 1), 0)

    def test_unknown_record(self, ledger):
        assert ledger.get_record(12345) is None

    def test_require_record(self, ctx, client, ledger):
        client.open(TOKEN, 10)
        assert ledger.require_record(ctx.nonce_commitment(TOKEN, 0)).operation == OperationTag.OPEN
        with pytest.raises(RecordNotFound):
            ledger.require_record(ctx.nonce_commitment(TOKEN, 1))
        with pytest.raises(LookupError):
            ledger.require_record(12345)

    def test_from_config(self):
        ledger = InMemoryLedger.from_config(LedgerConfig(params_preset='small'))
        assert ledger.params is PARAMS_SMALL
        assert ledger.tree.depth_floor == PARAMS_SMALL.depth_floor

    def test_unavailable(self, ledger):
        ledger.set_available(False)
        with pytest.raises(LedgerUnavailable):
            ledger.get_record(1)


class TestNonceDiscovery:

    def test_fresh_account(self, ctx, ledger):
        assert discover_current_nonce(ctx, TOKEN, ledger) == 0

    def test_after_open(self, ctx, client, ledger):
        client.open(TOKEN, 10)
        assert discover_current_nonce(ctx, TOKEN, ledger) == 1

    def test_chain(self, ctx, client, ledger):
        client.open(TOKEN, 10)
        client.top_up(TOKEN, 1, 10, 5, 1)
        client.continue_note(OperationTag.WITHDRAW, TOKEN, 2, 3, 2)
        assert discover_current_nonce(ctx, TOKEN, ledger) == 3

    def test_single_gap_tolerated(self, ctx, client, ledger):
        client.open(TOKEN, 10)
        client.top_up(TOKEN, 1, 10, 5, 1)
        client.continue_note(OperationTag.TRANSFER, TOKEN, 3, 15, 2)
        assert discover_current_nonce(ctx, TOKEN, ledger) == 4

    def test_scan_limit(self, ctx, client, ledger):
        client.open(TOKEN, 10)
        for nonce in range(1, 4):
            client.continue_note(OperationTag.TRANSFER, TOKEN, nonce, 10, nonce)
        with pytest.raises(LedgerError):
            discover_current_nonce(ctx, TOKEN, ledger, max_nonce=2)

    def test_other_token_independent(self, ctx, client, ledger):
        client.open(TOKEN, 10)
        assert discover_current_nonce(ctx, TOKEN + 1, ledger) == 0
