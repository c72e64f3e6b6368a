"""
Merkle proof verification and an off-chain mirror of a fixed-depth tree.

Verification is shared by the concurrent tree (direct and rebased proofs)
and by clients checking proofs against a published root. ``MerkleTree``
holds every node in memory so indexers can hand out fresh proofs.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from account_compression.core.constants import MAX_DEPTH
from account_compression.core.errors import (
    CapacityExceededError,
    OutOfBoundsError,
    TreeFullError,
)
from account_compression.core.hashing import empty_node, hash_pair, is_node
from account_compression.core.models import ChangeLogEvent, NodeLike, PathNode

logger = logging.getLogger(__name__)


def _proof_nodes(proof: Sequence[NodeLike]) -> Optional[List[bytes]]:
    nodes = []
    for item in proof:
        if isinstance(item, PathNode):
            nodes.append(item.node)
        elif is_node(item):
            nodes.append(bytes(item))
        else:
            return None
    return nodes


def compute_path(
    leaf_index: int,
    leaf: bytes,
    proof: Sequence[bytes],
) -> Tuple[List[bytes], bytes]:
    """Walk from ``leaf`` to the root.

    Returns the nodes on the leaf's own path (leaf first, root excluded) and
    the root. At level ``l`` bit ``l`` of ``leaf_index`` tells whether the
    current node is a right child, in which case the sibling goes first.
    """
    path = []
    node = leaf
    for level, sibling in enumerate(proof):
        path.append(node)
        if (leaf_index >> level) & 1:
            node = hash_pair(sibling, node)
        else:
            node = hash_pair(node, sibling)
    return path, node


def recompute_root(leaf_index: int, leaf: bytes, proof: Sequence[bytes]) -> bytes:
    """Root implied by ``leaf`` sitting at ``leaf_index`` with siblings ``proof``."""
    return compute_path(leaf_index, leaf, proof)[1]


def verify(
    leaf_index: int,
    leaf_hash: bytes,
    proof_path: Sequence[NodeLike],
    expected_root: bytes,
) -> bool:
    """
    Verify a Merkle proof.

    Args:
        leaf_index: Index of the leaf among the ``2**len(proof_path)`` leaves.
        leaf_hash: The 32-byte leaf.
        proof_path: Sibling nodes from the leaf level up, as PathNodes or bytes.
        expected_root: The root the proof should reconstruct.

    Returns:
        True if the proof reconstructs ``expected_root``. Malformed input
        (bad node sizes, index outside the tree) yields False.
    """
    nodes = _proof_nodes(proof_path)
    if nodes is None or not is_node(leaf_hash) or not is_node(expected_root):
        return False
    if leaf_index < 0 or leaf_index >= 1 << len(nodes):
        return False
    return recompute_root(leaf_index, bytes(leaf_hash), nodes) == bytes(expected_root)


class MerkleTree:
    """
    A fixed-depth binary Merkle tree held in memory.

    Nodes are addressed in heap order (root = 1, leaves from ``2**depth``).
    Only nodes that were written are stored; anything else is the root of an
    empty subtree.
    """

    def __init__(self, depth: int, leaves: Optional[Iterable[bytes]] = None):
        """Initialize an empty tree of ``depth`` levels and append ``leaves``."""
        if depth < 1 or depth > MAX_DEPTH:
            raise CapacityExceededError(f"Depth must be between 1 and {MAX_DEPTH}, got {depth}")
        self.depth = depth
        self.num_leaves = 0
        self._nodes: Dict[int, bytes] = {}
        for leaf in leaves or []:
            self.add_leaf(leaf)

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    @property
    def root(self) -> bytes:
        return self._get(1)

    def _get(self, position: int) -> bytes:
        node = self._nodes.get(position)
        if node is None:
            return empty_node(self.depth - (position.bit_length() - 1))
        return node

    def _check_index(self, leaf_index: int) -> None:
        if leaf_index < 0 or leaf_index >= self.capacity:
            raise OutOfBoundsError(
                f"Leaf index {leaf_index} outside tree of {self.capacity} leaves"
            )

    def get_leaf(self, leaf_index: int) -> bytes:
        """Get the leaf stored at ``leaf_index``."""
        self._check_index(leaf_index)
        return self._get(self.capacity + leaf_index)

    def add_leaf(self, leaf: bytes) -> int:
        """Write ``leaf`` after the highest leaf written so far and return its index."""
        if self.num_leaves >= self.capacity:
            raise TreeFullError(f"Tree of depth {self.depth} is full")
        index = self.num_leaves
        self.update_leaf(index, leaf)
        return index

    def update_leaf(self, leaf_index: int, leaf: bytes) -> bytes:
        """Replace the leaf at ``leaf_index`` and return the new root."""
        self._check_index(leaf_index)
        if not is_node(leaf):
            raise OutOfBoundsError(f"Leaf must be a 32-byte node, got {leaf!r}")
        position = self.capacity + leaf_index
        self._nodes[position] = bytes(leaf)
        while position > 1:
            position >>= 1
            self._nodes[position] = hash_pair(self._get(2 * position), self._get(2 * position + 1))
        self.num_leaves = max(self.num_leaves, leaf_index + 1)
        return self.root

    def get_inclusion_proof(self, leaf_index: int) -> List[PathNode]:
        """Sibling nodes of ``leaf_index`` from the leaf level up to the root."""
        self._check_index(leaf_index)
        proof = []
        position = self.capacity + leaf_index
        while position > 1:
            sibling = position ^ 1
            proof.append(PathNode(node=self._get(sibling), index=sibling))
            position >>= 1
        return proof

    def verify_inclusion_proof(
        self,
        leaf_index: int,
        leaf: bytes,
        proof: Sequence[NodeLike],
    ) -> bool:
        """Verify a proof against this tree's current root."""
        return verify(leaf_index, leaf, proof, self.root)

    def apply_changelog_event(self, event: ChangeLogEvent) -> None:
        """Replay the path of a changelog event onto this tree."""
        if len(event.path) != self.depth + 1:
            raise OutOfBoundsError(
                f"Event path has {len(event.path)} nodes, expected {self.depth + 1}"
            )
        self._check_index(event.index)
        for path_node in event.path:
            if path_node.index < 1 or path_node.index >= 2 * self.capacity:
                raise OutOfBoundsError(f"Node index {path_node.index} outside tree")
        for path_node in event.path:
            self._nodes[path_node.index] = path_node.node
        self.num_leaves = max(self.num_leaves, event.index + 1)
        logger.debug("Replayed changelog event seq=%d index=%d", event.seq, event.index)
