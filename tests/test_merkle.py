"""
Tests for the lean incremental Merkle tree.
"""

import threading

import pytest

from shieldledger.errors import IntegrityMismatch, MalformedInput
from shieldledger.field import FIELD_MODULUS as P
from shieldledger.merkle import (
    EMPTY_LEAF,
    LeanIMT,
    MerkleProof,
    generate_proof,
    insert_leaf,
    node_hash,
    verify_proof,
)
from shieldledger.poseidon2 import hash_2


def make_leaves(n):
    return [hash_2(i, i) for i in range(1, n + 1)]


def rebuild_root(leaves):
    """Level-by-level root with unpaired nodes promoted."""
    layer = list(leaves)
    while len(layer) > 1:
        parents = []
        for i in range(0, len(layer), 2):
            if i + 1 < len(layer):
                parents.append(hash_2(layer[i], layer[i + 1]))
            else:
                parents.append(layer[i])
        layer = parents
    return layer[0]


class TestInsert:

    def test_empty_tree(self):
        tree = LeanIMT()
        assert tree.size == 0
        assert tree.depth == 8
        assert tree.root == EMPTY_LEAF

    def test_single_leaf_root_is_leaf(self):
        tree = LeanIMT()
        leaf = hash_2(1, 1)
        assert tree.insert(leaf) == leaf

    def test_two_leaves(self):
        tree = LeanIMT()
        a, b = make_leaves(2)
        tree.insert(a)
        assert tree.insert(b) == node_hash(a, b)

    def test_three_leaves_promote(self):
        """The third leaf has no sibling and moves up unchanged."""
        a, b, c = make_leaves(3)
        tree = LeanIMT.from_leaves([a, b, c])
        assert tree.root == node_hash(node_hash(a, b), c)

    @pytest.mark.parametrize('n', [1, 2, 3, 5, 10, 17, 32])
    def test_matches_rebuild(self, n):
        leaves = make_leaves(n)
        assert LeanIMT.from_leaves(leaves).root == rebuild_root(leaves)

    def test_zero_leaf_rejected(self):
        with pytest.raises(MalformedInput):
            LeanIMT().insert(0)

    @pytest.mark.parametrize('leaf', [-1, P, 'abc'])
    def test_non_field_leaf_rejected(self, leaf):
        with pytest.raises(MalformedInput):
            LeanIMT().insert(leaf)

    def test_insert_leaf_function(self):
        tree = LeanIMT()
        root = insert_leaf(tree, hash_2(1, 1))
        assert root == tree.root

    def test_full_tree(self):
        tree = LeanIMT(depth_floor=1, max_depth=1)
        tree.insert_many(make_leaves(2))
        with pytest.raises(MalformedInput):
            tree.insert(hash_2(3, 3))


class TestDepth:

    def test_floor(self):
        tree = LeanIMT.from_leaves(make_leaves(3))
        assert tree.depth == 8

    def test_monotonic_and_floored(self):
        tree = LeanIMT(depth_floor=2)
        depths = []
        for leaf in make_leaves(20):
            tree.insert(leaf)
            depths.append(tree.depth)
        assert depths == sorted(depths)
        assert depths[0] == 2
        # 2^depth >= size
        assert all((1 << d) >= i + 1 for i, d in enumerate(depths))
        assert depths[-1] == 5

    def test_growth_past_floor(self):
        tree = LeanIMT.from_leaves(make_leaves(257))
        assert tree.depth == 9


class TestProofs:

    @pytest.mark.parametrize('n', [3, 10, 32])
    def test_round_trip(self, n):
        tree = LeanIMT.from_leaves(make_leaves(n))
        for i, leaf in enumerate(tree.leaves):
            siblings = tree.generate_proof(i)
            assert len(siblings) == tree.depth
            assert verify_proof(leaf, i, tree.depth, tree.root, siblings)

    @pytest.mark.parametrize('n', [3, 10, 32])
    def test_tampered_sibling(self, n):
        tree = LeanIMT.from_leaves(make_leaves(n))
        for i, leaf in enumerate(tree.leaves):
            siblings = tree.generate_proof(i)
            for level, sibling in enumerate(siblings):
                if sibling == EMPTY_LEAF:
                    continue
                bad = list(siblings)
                bad[level] = (sibling + 1) % P
                assert not verify_proof(leaf, i, tree.depth, tree.root, bad)

    @pytest.mark.parametrize('n', [3, 10, 32])
    def test_tampered_leaf(self, n):
        tree = LeanIMT.from_leaves(make_leaves(n))
        for i, leaf in enumerate(tree.leaves):
            siblings = tree.generate_proof(i)
            assert not verify_proof(leaf + 1, i, tree.depth, tree.root, siblings)

    def test_wrong_index(self):
        tree = LeanIMT.from_leaves(make_leaves(4))
        siblings = tree.generate_proof(0)
        assert not verify_proof(tree.leaves[0], 1, tree.depth, tree.root, siblings)

    def test_missing_sibling_is_zero(self):
        tree = LeanIMT.from_leaves(make_leaves(3))
        siblings = tree.generate_proof(2)
        assert siblings[0] == EMPTY_LEAF
        assert siblings[1] == node_hash(tree.leaves[0], tree.leaves[1])
        assert all(s == EMPTY_LEAF for s in siblings[2:])

    def test_index_out_of_range(self):
        tree = LeanIMT.from_leaves(make_leaves(3))
        with pytest.raises(IndexError):
            tree.generate_proof(3)
        with pytest.raises(IndexError):
            generate_proof(tree, -1)

    def test_old_proof_fails_new_root(self):
        tree = LeanIMT.from_leaves(make_leaves(3))
        proof = tree.proof(0)
        tree.insert(hash_2(99, 99))
        assert proof.verify()
        assert not tree.verify(proof)
        assert tree.verify(tree.proof(0))


class TestMalformedProofs:

    def test_wrong_length(self):
        with pytest.raises(MalformedInput):
            verify_proof(1, 0, 8, 1, [0] * 7)

    def test_index_too_large(self):
        with pytest.raises(MalformedInput):
            verify_proof(1, 256, 8, 1, [0] * 8)

    def test_negative_index(self):
        with pytest.raises(MalformedInput):
            verify_proof(1, -1, 8, 1, [0] * 8)

    def test_depth_out_of_range(self):
        with pytest.raises(MalformedInput):
            verify_proof(1, 0, 33, 1, [0] * 33)

    def test_mismatch_returns_false(self):
        assert verify_proof(1, 0, 8, 2, [0] * 8) is False


class TestMerkleProof:

    def test_serialize_round_trip(self):
        tree = LeanIMT.from_leaves(make_leaves(10))
        proof = tree.proof(7)
        restored = MerkleProof.deserialize(proof.serialize())
        assert restored == proof
        assert restored.verify()

    def test_serialized_length(self):
        proof = LeanIMT.from_leaves(make_leaves(3)).proof(1)
        assert len(proof.serialize()) == 5 + 64 + 32 * proof.depth

    def test_deserialize_truncated(self):
        data = LeanIMT.from_leaves(make_leaves(3)).proof(1).serialize()
        with pytest.raises(MalformedInput):
            MerkleProof.deserialize(data[:-1])


class TestSnapshot:

    def test_round_trip(self):
        tree = LeanIMT.from_leaves(make_leaves(10))
        restored = LeanIMT.from_snapshot(tree.snapshot())
        assert restored.root == tree.root
        assert restored.depth == tree.depth
        assert restored.size == 10

    def test_tampered_root(self):
        snap = LeanIMT.from_leaves(make_leaves(4)).snapshot()
        snap['root'] = '0x01'
        with pytest.raises(IntegrityMismatch):
            LeanIMT.from_snapshot(snap)

    def test_missing_field(self):
        snap = LeanIMT.from_leaves(make_leaves(4)).snapshot()
        del snap['leaves']
        with pytest.raises(MalformedInput):
            LeanIMT.from_snapshot(snap)


class TestConcurrency:

    def test_concurrent_inserts(self):
        """Serialized inserts give the same root as sequential ones, up to order."""
        leaves = make_leaves(32)
        tree = LeanIMT()

        def worker(chunk):
            for leaf in chunk:
                tree.insert(leaf)

        threads = [threading.Thread(target=worker, args=(leaves[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tree.size == 32
        assert sorted(tree.leaves) == sorted(leaves)
        assert tree.root == rebuild_root(tree.leaves)


class TestEndToEnd:
    """leaf_i = H2(i, i) for i = 1..32."""

    def test_thirty_two_leaves(self):
        leaves = make_leaves(32)
        tree = LeanIMT()
        for leaf in leaves:
            tree.insert(leaf)

        assert tree.depth >= 8
        for i in range(32):
            assert tree.proof(i).verify()

        assert tree.root == 0x19530e0240c3face4202a51cebdc1f2df490ab85cc195da1200f58fe05381a4e
        assert tree.root == rebuild_root(leaves)
        assert tree.root == LeanIMT.from_leaves(leaves).root

    def test_three_leaf_root(self):
        """The unpaired third leaf is promoted, not hashed with zero."""
        tree = LeanIMT()
        tree.insert_many(make_leaves(3))
        assert tree.root == 0x0a659e4f2aff42834dbbbb3ee1fd5c865c8774db0fb95398a1f65fb32f21f0f5
