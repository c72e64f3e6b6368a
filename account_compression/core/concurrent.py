"""
Concurrent Merkle tree.

A fixed-depth tree that stores only its recent history: the changelog of the
last ``max_buffer_size`` root transitions and the path of the rightmost
appended leaf. Callers prove the leaf they want to change; proofs captured
against a recent root are rebased onto the current one, so writers racing
on different leaves do not have to refetch proofs.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

from account_compression.config import TreeConfig
from account_compression.core.changelog import (
    ChangelogBuffer,
    RebasedProof,
    fast_forward_proof,
    rebase_proof,
)
from account_compression.core.constants import ALL_DEPTH_SIZE_PAIRS, MAX_BUFFER_SIZE, MAX_DEPTH
from account_compression.core.errors import (
    CapacityExceededError,
    InvalidProofError,
    OutOfBoundsError,
    TreeFullError,
)
from account_compression.core.hashing import EMPTY_LEAF, empty_node, hash_pair, is_node
from account_compression.core.merkle import MerkleTree, compute_path, recompute_root
from account_compression.core.models import (
    ChangelogEntry,
    NodeLike,
    PathNode,
    RightmostPath,
    as_node,
    proof_path_nodes,
)

logger = logging.getLogger(__name__)


def check_dimensions(max_depth: int, max_buffer_size: int, strict: bool = False) -> None:
    """Reject tree dimensions the program cannot allocate."""
    if not 1 <= max_depth <= MAX_DEPTH:
        raise CapacityExceededError(f"Depth must be between 1 and {MAX_DEPTH}, got {max_depth}")
    if not 1 <= max_buffer_size <= MAX_BUFFER_SIZE:
        raise CapacityExceededError(
            f"Buffer size must be between 1 and {MAX_BUFFER_SIZE}, got {max_buffer_size}"
        )
    if strict and (max_depth, max_buffer_size) not in ALL_DEPTH_SIZE_PAIRS:
        raise CapacityExceededError(
            f"Unsupported depth/buffer size pair ({max_depth}, {max_buffer_size})"
        )


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a successful write."""

    new_root: bytes
    sequence_number: int
    leaf_index: int
    proof: Tuple[PathNode, ...]
    entry: ChangelogEntry
    rebased_from: Optional[int] = None


class ConcurrentMerkleTree:
    """
    Merkle tree that accepts updates carrying slightly stale proofs.

    All validation happens before any state changes, so a failed call leaves
    the tree exactly as it was.
    """

    def __init__(self, max_depth: int, max_buffer_size: int, strict_sizes: bool = False):
        """Initialize an all-empty tree.

        Args:
            max_depth: Number of levels; the tree holds ``2**max_depth`` leaves.
            max_buffer_size: Number of root transitions kept for rebasing.
            strict_sizes: Only accept dimensions the on-chain program allocates.
        """
        check_dimensions(max_depth, max_buffer_size, strict_sizes)
        self._depth = max_depth
        self._changelog = ChangelogBuffer(max_buffer_size)
        self._rightmost = RightmostPath.empty(max_depth)
        self.is_batch_initialized = False
        self._changelog.push(ChangelogEntry.from_path(
            root=empty_node(max_depth),
            path=[empty_node(level) for level in range(max_depth)],
            index=0,
            sequence_number=0,
        ))

    @classmethod
    def from_config(cls, config: TreeConfig) -> "ConcurrentMerkleTree":
        """Build a tree from a ``TreeConfig``."""
        return cls(config.max_depth, config.max_buffer_size, strict_sizes=config.strict_sizes)

    @classmethod
    def from_root(
        cls,
        max_depth: int,
        max_buffer_size: int,
        root: bytes,
        rightmost_leaf: bytes,
        rightmost_proof: Sequence[NodeLike],
        rightmost_index: int,
    ) -> "ConcurrentMerkleTree":
        """
        Initialize a tree whose leaves were written elsewhere.

        Only the root and the proof of the last written leaf are needed; that
        proof becomes the genesis changelog entry and the rightmost path.

        Raises:
            InvalidProofError: If the rightmost proof does not reconstruct ``root``.
        """
        tree = cls(max_depth, max_buffer_size)
        tree._check_leaf_index(rightmost_index)
        tree._check_leaf(rightmost_leaf)
        proof = tree._normalize_proof(rightmost_proof)
        path, computed_root = compute_path(rightmost_index, bytes(rightmost_leaf), proof)
        if computed_root != root:
            raise InvalidProofError("Rightmost proof does not reconstruct the supplied root")

        tree._changelog = ChangelogBuffer(max_buffer_size)
        tree._changelog.push(ChangelogEntry.from_path(root, path, rightmost_index, 0))
        tree._rightmost = RightmostPath(
            proof=proof,
            leaf=bytes(rightmost_leaf),
            index=rightmost_index + 1,
        )
        tree.is_batch_initialized = True
        return tree

    @classmethod
    def from_leaves(
        cls,
        max_depth: int,
        max_buffer_size: int,
        leaves: Iterable[bytes],
    ) -> "ConcurrentMerkleTree":
        """Initialize a tree holding ``leaves`` at indices ``0..n-1``."""
        leaves = list(leaves)
        if not leaves:
            return cls(max_depth, max_buffer_size)
        mirror = MerkleTree(max_depth, leaves)
        last = len(leaves) - 1
        return cls.from_root(
            max_depth,
            max_buffer_size,
            mirror.root,
            leaves[last],
            mirror.get_inclusion_proof(last),
            last,
        )

    @classmethod
    def restore(
        cls,
        max_depth: int,
        changelog: ChangelogBuffer,
        rightmost: RightmostPath,
        is_batch_initialized: bool = False,
    ) -> "ConcurrentMerkleTree":
        """Rebuild a tree from decoded state without replaying history."""
        check_dimensions(max_depth, changelog.capacity)
        if changelog.latest is None:
            raise CapacityExceededError("Cannot restore a tree with an empty changelog")
        tree = cls.__new__(cls)
        tree._depth = max_depth
        tree._changelog = changelog
        tree._rightmost = rightmost
        tree.is_batch_initialized = is_batch_initialized
        return tree

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def capacity(self) -> int:
        """Number of leaf slots."""
        return 1 << self._depth

    @property
    def buffer_size(self) -> int:
        return self._changelog.capacity

    @property
    def changelog(self) -> ChangelogBuffer:
        return self._changelog

    @property
    def root(self) -> bytes:
        return self._changelog.latest.root

    @property
    def sequence_number(self) -> int:
        return self._changelog.latest.sequence_number

    @property
    def active_index(self) -> int:
        return self._changelog.active_index

    @property
    def rightmost(self) -> RightmostPath:
        return self._rightmost

    @property
    def rightmost_index(self) -> int:
        """Number of leaves appended so far; the next append goes here."""
        return self._rightmost.index

    def _check_leaf_index(self, leaf_index: int) -> None:
        if leaf_index < 0 or leaf_index >= self.capacity:
            raise OutOfBoundsError(
                f"Leaf index {leaf_index} outside tree of {self.capacity} leaves"
            )

    def _check_leaf(self, leaf: bytes) -> None:
        if not is_node(leaf):
            raise OutOfBoundsError(f"Leaf must be a 32-byte node, got {leaf!r}")

    def _normalize_proof(self, proof_path: Sequence[NodeLike]) -> Tuple[bytes, ...]:
        if len(proof_path) != self._depth:
            raise OutOfBoundsError(
                f"Proof has {len(proof_path)} nodes, tree depth is {self._depth}"
            )
        return tuple(as_node(node) for node in proof_path)

    def _validate(
        self,
        leaf_index: int,
        leaf: bytes,
        proof_path: Sequence[NodeLike],
    ) -> RebasedProof:
        self._check_leaf_index(leaf_index)
        self._check_leaf(leaf)
        proof = self._normalize_proof(proof_path)
        return rebase_proof(
            self._changelog.snapshot(),
            leaf_index,
            bytes(leaf),
            proof,
            self._changelog.has_evicted,
        )

    def prove_leaf(self, leaf_index: int, leaf: bytes, proof_path: Sequence[NodeLike]) -> bool:
        """
        Check that ``leaf`` is stored at ``leaf_index`` without changing the tree.

        The proof may have been captured against any buffered root.

        Raises:
            OutOfBoundsError, InvalidProofError, StaleProofError
        """
        self._validate(leaf_index, leaf, proof_path)
        return True

    def apply_update(
        self,
        leaf_index: int,
        old_leaf: bytes,
        new_leaf: bytes,
        proof_path: Sequence[NodeLike],
    ) -> UpdateResult:
        """
        Replace ``old_leaf`` at ``leaf_index`` with ``new_leaf``.

        Args:
            leaf_index: Index of the leaf to replace.
            old_leaf: The leaf the caller's proof was built for.
            new_leaf: The replacement leaf.
            proof_path: ``depth`` sibling nodes, leaf level first, captured
                against the current root or any root still in the changelog.

        Returns:
            The new root and sequence number, and the proof that was applied.

        Raises:
            OutOfBoundsError: Bad leaf index, node size or proof length.
            LeafContentsModifiedError: The leaf changed since the proof was captured.
            StaleProofError: The proof predates every buffered root.
            InvalidProofError: The proof matches no known root.
        """
        self._check_leaf(new_leaf)
        rebased = self._validate(leaf_index, old_leaf, proof_path)
        return self._commit(leaf_index, bytes(new_leaf), rebased.proof, rebased)

    def append(self, leaf: bytes) -> UpdateResult:
        """Write ``leaf`` into the next free slot; no proof is needed."""
        self._check_leaf(leaf)
        index = self._rightmost.index
        if index >= self.capacity:
            raise TreeFullError(f"Tree of depth {self._depth} is full")
        proof = self._next_append_proof()
        if recompute_root(index, EMPTY_LEAF, proof) != self.root:
            raise InvalidProofError("Rightmost path is out of sync with the current root")
        return self._commit(index, bytes(leaf), proof, None)

    def fill_empty_or_append(
        self,
        leaf: bytes,
        proof_path: Sequence[NodeLike],
        leaf_index: int,
    ) -> UpdateResult:
        """Write ``leaf`` at ``leaf_index`` if the proof shows it empty, else append it."""
        try:
            return self.apply_update(leaf_index, EMPTY_LEAF, leaf, proof_path)
        except InvalidProofError as e:
            logger.debug("Leaf %d not provably empty (%s); appending instead", leaf_index, e)
        return self.append(leaf)

    def _next_append_proof(self) -> Tuple[bytes, ...]:
        """Proof of the empty slot right after the rightmost leaf.

        Below the critical level of ``index - 1`` and ``index`` the new
        leaf's siblings are empty subtrees; at that level the sibling is the
        ancestor of the rightmost leaf; above it the proofs are shared.
        """
        current = self._rightmost
        if current.index == 0:
            return tuple(empty_node(level) for level in range(self._depth))
        last = current.index - 1
        critical = (last ^ current.index).bit_length() - 1
        node = current.leaf
        for level in range(critical):
            # every ancestor of ``last`` below the critical level is a right child
            node = hash_pair(current.proof[level], node)
        return (
            tuple(empty_node(level) for level in range(critical))
            + (node,)
            + current.proof[critical + 1:]
        )

    def _advance_rightmost(self, entry: ChangelogEntry, proof: Tuple[bytes, ...]) -> RightmostPath:
        current = self._rightmost
        if entry.index >= current.index:
            return RightmostPath(proof=proof, leaf=entry.leaf, index=entry.index + 1)
        leaf, nodes = fast_forward_proof([entry], current.index - 1, current.leaf, current.proof)
        return RightmostPath(proof=nodes, leaf=leaf, index=current.index)

    def _commit(
        self,
        leaf_index: int,
        new_leaf: bytes,
        proof: Tuple[bytes, ...],
        rebased: Optional[RebasedProof],
    ) -> UpdateResult:
        path, root = compute_path(leaf_index, new_leaf, proof)
        entry = ChangelogEntry.from_path(root, path, leaf_index, self.sequence_number + 1)
        self._changelog.push(entry)
        self._rightmost = self._advance_rightmost(entry, proof)
        rebased_from = rebased.base_sequence_number if rebased and rebased.replayed else None
        logger.debug(
            "Applied update seq=%d leaf=%d root=%s rebased_from=%s",
            entry.sequence_number, leaf_index, root.hex(), rebased_from,
        )
        return UpdateResult(
            new_root=root,
            sequence_number=entry.sequence_number,
            leaf_index=leaf_index,
            proof=tuple(proof_path_nodes(leaf_index, proof)),
            entry=entry,
            rebased_from=rebased_from,
        )
