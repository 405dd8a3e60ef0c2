"""
Lean Incremental Merkle Tree

Append-only binary tree over field elements with H2 as the node hash.

"Lean" means no zero padding: a node without a right sibling is promoted to
the next level unchanged instead of being hashed with an empty value. The
incremental insert gets the same effect from the side nodes:

    index bit 1 (right child):  node = H2(side_nodes[level], node)
    index bit 0 (left child):   side_nodes[level] = node, node carried up

Depth starts at the floor and grows whenever 2^depth < size + 1. It never
shrinks, so every proof carries exactly `depth` siblings. A sibling of 0
marks "no sibling at this level" in a proof, which is why the zero leaf is
reserved and cannot be inserted.

Supports:
- O(depth) insertion with a single-writer lock
- Inclusion proofs rebuilt from the leaf list
- Proof verification without access to the tree
"""

from __future__ import annotations
from dataclasses import dataclass
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import field
from .errors import IntegrityMismatch, MalformedInput
from .params import PARAMS_DEFAULT
from .poseidon2 import hash_2


DEFAULT_DEPTH_FLOOR = PARAMS_DEFAULT.depth_floor
DEFAULT_MAX_DEPTH = PARAMS_DEFAULT.max_depth

# Reserved empty value
EMPTY_LEAF = 0

_PROOF_HEADER = 1 + 4


def node_hash(left: int, right: int) -> int:
    """Internal node: H2(left, right)."""
    return hash_2(left, right)


def _check_shape(index: int, depth: int, siblings: Sequence[int], max_depth: int) -> None:
    if not isinstance(depth, int) or depth < 0 or depth > max_depth:
        raise MalformedInput(f"Depth {depth!r} outside [0, {max_depth}]")
    if not isinstance(index, int) or index < 0:
        raise MalformedInput(f"Index must be a non-negative integer, got {index!r}")
    if index >= 1 << depth:
        raise MalformedInput(f"Index {index} does not fit in a tree of depth {depth}")
    if len(siblings) != depth:
        raise MalformedInput(f"Expected {depth} siblings, got {len(siblings)}")


def verify_proof(
    leaf: int,
    index: int,
    depth: int,
    root: int,
    siblings: Sequence[int],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> bool:
    """
    Replay the insertion rule from leaf to root.

    Returns False on any mismatch. Raises MalformedInput only when the
    proof has the wrong shape.
    """
    _check_shape(index, depth, siblings, max_depth)

    node = leaf
    for level, sibling in enumerate(siblings):
        if (index >> level) & 1:
            node = node_hash(sibling, node)
        elif sibling != EMPTY_LEAF:
            node = node_hash(node, sibling)
    return node == root


@dataclass(frozen=True)
class MerkleProof:
    """Inclusion proof for one leaf against one root."""

    leaf: int
    index: int
    depth: int
    root: int
    siblings: tuple

    def verify(self, root: Optional[int] = None) -> bool:
        """Verify against the recorded root, or against `root` if given."""
        target = self.root if root is None else root
        return verify_proof(self.leaf, self.index, self.depth, target, self.siblings)

    def serialize(self) -> bytes:
        """
        Format:
            depth(1) || index(4) || leaf(32) || root(32) || siblings(32 * depth)
        """
        parts = [
            self.depth.to_bytes(1, 'big'),
            self.index.to_bytes(4, 'big'),
            self.leaf.to_bytes(32, 'big'),
            self.root.to_bytes(32, 'big'),
        ]
        parts.extend(s.to_bytes(32, 'big') for s in self.siblings)
        return b''.join(parts)

    @classmethod
    def deserialize(cls, data: bytes) -> MerkleProof:
        if len(data) < _PROOF_HEADER + 64:
            raise MalformedInput(f"Proof too short: {len(data)} bytes")
        depth = data[0]
        index = int.from_bytes(data[1:5], 'big')
        expected = _PROOF_HEADER + 64 + 32 * depth
        if len(data) != expected:
            raise MalformedInput(f"Proof of depth {depth} must be {expected} bytes, got {len(data)}")

        offset = _PROOF_HEADER
        leaf = int.from_bytes(data[offset:offset + 32], 'big')
        offset += 32
        root = int.from_bytes(data[offset:offset + 32], 'big')
        offset += 32

        siblings = []
        for _ in range(depth):
            siblings.append(int.from_bytes(data[offset:offset + 32], 'big'))
            offset += 32

        return cls(leaf=leaf, index=index, depth=depth, root=root, siblings=tuple(siblings))


class LeanIMT:
    """
    Lean incremental Merkle tree.

    Inserts are serialized by an internal lock. Proof generation works on a
    copy of the leaf list taken under the lock, so it can run alongside
    inserts and answers for the tree as it was at that moment.
    """

    def __init__(self, depth_floor: int = DEFAULT_DEPTH_FLOOR, max_depth: int = DEFAULT_MAX_DEPTH):
        if not 0 <= depth_floor <= max_depth:
            raise ValueError(f"depth_floor must be in [0, {max_depth}], got {depth_floor}")
        self.depth_floor = depth_floor
        self.max_depth = max_depth
        self.depth = depth_floor
        self.side_nodes: List[int] = [EMPTY_LEAF] * (max_depth + 1)
        self.leaves: List[int] = []
        self.root = EMPTY_LEAF
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return len(self.leaves)

    def __len__(self) -> int:
        return len(self.leaves)

    # =========================================================================
    # Insertion
    # =========================================================================

    def insert(self, leaf: int) -> int:
        """Append a leaf and return the new root."""
        field.require_field(leaf, 'leaf')
        if leaf == EMPTY_LEAF:
            raise MalformedInput("The zero leaf is reserved and cannot be inserted")

        with self._lock:
            index = len(self.leaves)
            depth = self.depth
            while (1 << depth) < index + 1:
                depth += 1
            if depth > self.max_depth:
                raise MalformedInput(f"Tree is full at depth {self.max_depth}")

            node = leaf
            for level in range(depth):
                if (index >> level) & 1:
                    node = node_hash(self.side_nodes[level], node)
                else:
                    self.side_nodes[level] = node
            self.side_nodes[depth] = node

            self.depth = depth
            self.leaves.append(leaf)
            self.root = node
            return node

    def insert_many(self, leaves: Iterable[int]) -> int:
        root = self.root
        for leaf in leaves:
            root = self.insert(leaf)
        return root

    # =========================================================================
    # Proofs
    # =========================================================================

    def index_of(self, leaf: int) -> int:
        try:
            return self.leaves.index(leaf)
        except ValueError:
            raise IndexError(f"Leaf 0x{leaf:064x} is not in the tree") from None

    def _frozen(self):
        with self._lock:
            return list(self.leaves), self.depth, self.root

    def generate_proof(self, index: int) -> List[int]:
        """Siblings for the leaf at `index`, one per level of the current depth."""
        leaves, depth, _ = self._frozen()
        return _siblings(leaves, index, depth)

    def proof(self, index: int) -> MerkleProof:
        leaves, depth, root = self._frozen()
        siblings = _siblings(leaves, index, depth)
        return MerkleProof(leaf=leaves[index], index=index, depth=depth, root=root, siblings=tuple(siblings))

    def verify(self, proof: MerkleProof) -> bool:
        """Verify a proof against this tree's current root."""
        return proof.verify(self.root)

    # =========================================================================
    # Snapshots
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly state for the local cache."""
        with self._lock:
            return {
                'depth_floor': self.depth_floor,
                'max_depth': self.max_depth,
                'size': len(self.leaves),
                'depth': self.depth,
                'root': f"0x{self.root:064x}",
                'leaves': [f"0x{leaf:064x}" for leaf in self.leaves],
            }

    @classmethod
    def from_leaves(
        cls,
        leaves: Iterable[int],
        depth_floor: int = DEFAULT_DEPTH_FLOOR,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> LeanIMT:
        tree = cls(depth_floor=depth_floor, max_depth=max_depth)
        tree.insert_many(leaves)
        return tree

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> LeanIMT:
        """Rebuild from snapshot() output; the recorded root must match."""
        try:
            leaves = [int(v, 16) for v in data['leaves']]
            tree = cls.from_leaves(leaves, depth_floor=data['depth_floor'], max_depth=data['max_depth'])
            root = int(data['root'], 16)
            depth = data['depth']
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInput(f"Invalid tree snapshot: {e}") from e

        if tree.root != root:
            raise IntegrityMismatch("Snapshot root does not match its leaves", expected=root, computed=tree.root)
        if tree.depth != depth:
            raise IntegrityMismatch(f"Snapshot depth {depth} does not match rebuilt depth {tree.depth}")
        return tree

    def __repr__(self) -> str:
        return f"LeanIMT(size={len(self.leaves)}, depth={self.depth}, root=0x{self.root:064x})"


def _next_layer(layer: List[int]) -> List[int]:
    """Pair (2i, 2i+1); an unpaired trailing node moves up unchanged."""
    parents = []
    for i in range(0, len(layer), 2):
        if i + 1 < len(layer):
            parents.append(node_hash(layer[i], layer[i + 1]))
        else:
            parents.append(layer[i])
    return parents


def _siblings(leaves: List[int], index: int, depth: int) -> List[int]:
    if not isinstance(index, int) or index < 0 or index >= len(leaves):
        raise IndexError(f"Index {index} out of range [0, {len(leaves)})")

    siblings = []
    layer = leaves
    position = index
    for _ in range(depth):
        sibling = position ^ 1
        siblings.append(layer[sibling] if sibling < len(layer) else EMPTY_LEAF)
        layer = _next_layer(layer)
        position >>= 1
    return siblings


# =============================================================================
# Function-style API
# =============================================================================

def insert_leaf(tree: LeanIMT, leaf: int) -> int:
    """Insert into `tree`, return the new root."""
    return tree.insert(leaf)


def generate_proof(tree: LeanIMT, index: int) -> List[int]:
    """Sibling path for `index` in `tree`."""
    return tree.generate_proof(index)
