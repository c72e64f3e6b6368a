"""
Fixed-width codec for concurrent Merkle tree accounts.

An account is a ``TreeHeader`` followed by the tree body::

    sequence_number u64 | active_index u64 | buffer_size u64
    changelog[max_buffer_size]: root [32] | path [depth][32] | index u32 | pad u32
    rightmost path:             proof [depth][32] | leaf [32] | index u32 | pad u32

All integers are little-endian.
"""

import logging
import struct
from typing import List, Optional

from account_compression.core.changelog import ChangelogBuffer
from account_compression.core.concurrent import ConcurrentMerkleTree, UpdateResult, check_dimensions
from account_compression.core.errors import (
    AccountClosedError,
    AccountDecodeError,
    AuthorityMismatchError,
    CapacityExceededError,
    InvalidProofError,
    OutOfBoundsError,
    TreeNotEmptyError,
)
from account_compression.core.hashing import EMPTY_LEAF, NODE_SIZE
from account_compression.core.instructions import (
    Append,
    CloseEmptyTree,
    InitEmptyMerkleTree,
    InsertOrAppend,
    Instruction,
    ProofInstruction,
    ReplaceLeaf,
    TransferAuthority,
    VerifyLeaf,
)
from account_compression.core.merkle import recompute_root
from account_compression.core.models import ChangelogEntry, NodeLike, RightmostPath, TreeHeader, as_node

logger = logging.getLogger(__name__)

_COUNTERS = struct.Struct("<QQQ")
_INDEX_AND_PADDING = struct.Struct("<I4x")


def _changelog_entry_size(max_depth: int) -> int:
    return NODE_SIZE + max_depth * NODE_SIZE + _INDEX_AND_PADDING.size


def _rightmost_path_size(max_depth: int) -> int:
    return max_depth * NODE_SIZE + NODE_SIZE + _INDEX_AND_PADDING.size


def get_concurrent_merkle_tree_account_size(max_depth: int, max_buffer_size: int) -> int:
    """Number of bytes an account for a tree of these dimensions occupies."""
    check_dimensions(max_depth, max_buffer_size)
    return (
        TreeHeader.SIZE
        + _COUNTERS.size
        + max_buffer_size * _changelog_entry_size(max_depth)
        + _rightmost_path_size(max_depth)
    )


def _read_nodes(data: bytes, offset: int, count: int) -> List[bytes]:
    return [
        bytes(data[offset + i * NODE_SIZE:offset + (i + 1) * NODE_SIZE])
        for i in range(count)
    ]


class ConcurrentMerkleTreeAccount:
    """A tree together with the header stored alongside it on-chain."""

    def __init__(self, header: TreeHeader, tree: ConcurrentMerkleTree):
        if (header.max_depth, header.max_buffer_size) != (tree.depth, tree.buffer_size):
            raise CapacityExceededError(
                f"Header dimensions ({header.max_depth}, {header.max_buffer_size}) "
                f"do not match tree ({tree.depth}, {tree.buffer_size})"
            )
        self.header = header
        self.tree = tree
        self._closed = False

    @classmethod
    def create(
        cls,
        tree: ConcurrentMerkleTree,
        authority: bytes = EMPTY_LEAF,
        creation_slot: int = 0,
    ) -> "ConcurrentMerkleTreeAccount":
        header = TreeHeader(
            max_buffer_size=tree.buffer_size,
            max_depth=tree.depth,
            authority=authority,
            creation_slot=creation_slot,
            is_batch_initialized=tree.is_batch_initialized,
        )
        return cls(header, tree)

    @classmethod
    def initialize(
        cls,
        instruction: InitEmptyMerkleTree,
        authority: bytes = EMPTY_LEAF,
        creation_slot: int = 0,
        strict_sizes: bool = False,
    ) -> "ConcurrentMerkleTreeAccount":
        """Allocate the empty tree an ``init_empty_merkle_tree`` instruction asks for."""
        tree = ConcurrentMerkleTree(
            instruction.max_depth, instruction.max_buffer_size, strict_sizes=strict_sizes
        )
        return cls.create(tree, authority=authority, creation_slot=creation_slot)

    @property
    def root(self) -> bytes:
        return self.tree.root

    @property
    def sequence_number(self) -> int:
        return self.tree.sequence_number

    @property
    def depth(self) -> int:
        return self.header.max_depth

    @property
    def max_buffer_size(self) -> int:
        return self.header.max_buffer_size

    @property
    def authority(self) -> bytes:
        return self.header.authority

    @property
    def creation_slot(self) -> int:
        return self.header.creation_slot

    @property
    def rightmost_index(self) -> int:
        return self.tree.rightmost_index

    @property
    def size(self) -> int:
        return get_concurrent_merkle_tree_account_size(self.depth, self.max_buffer_size)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _authorize(self, signer: NodeLike) -> None:
        if self._closed:
            raise AccountClosedError("Tree account has been closed")
        if as_node(signer) != self.header.authority:
            raise AuthorityMismatchError(
                f"Signer {as_node(signer).hex()} is not the tree authority"
            )

    def transfer_authority(self, new_authority: NodeLike, signer: NodeLike) -> None:
        """
        Hand control of the tree to ``new_authority``.

        Raises:
            AccountClosedError: The account was closed.
            AuthorityMismatchError: ``signer`` is not the current authority.
            OutOfBoundsError: ``new_authority`` is not a 32-byte key.
        """
        self._authorize(signer)
        new_authority = as_node(new_authority)
        self.header = self.header.model_copy(update={"authority": new_authority})
        logger.info("Transferred tree authority to %s", new_authority.hex())

    def close_empty_tree(self, signer: NodeLike) -> None:
        """
        Close a tree that never held a leaf; its data is zeroed.

        Raises:
            AccountClosedError: The account was already closed.
            AuthorityMismatchError: ``signer`` is not the authority.
            TreeNotEmptyError: A leaf has been appended or written.
        """
        self._authorize(signer)
        if self.rightmost_index != 0:
            raise TreeNotEmptyError(
                f"Tree holds leaves up to index {self.rightmost_index - 1}; only empty trees close"
            )
        self._closed = True
        logger.info("Closed empty tree account (depth %d)", self.depth)

    def process(self, instruction: Instruction, signer: NodeLike = EMPTY_LEAF) -> Optional[UpdateResult]:
        """
        Execute an instruction against this account.

        ``signer`` is the public key that signed the transaction. Every
        instruction except ``verify_leaf`` must be signed by the authority.
        The ``root`` of a proof-carrying instruction must be the root its
        proof implies; any root still in the changelog is accepted.

        Returns:
            The update for instructions that write a leaf, otherwise None.

        Raises:
            AuthorityMismatchError, AccountClosedError, TreeNotEmptyError,
            OutOfBoundsError, InvalidProofError, StaleProofError
        """
        if isinstance(instruction, VerifyLeaf):
            if self._closed:
                raise AccountClosedError("Tree account has been closed")
            self._check_instruction_root(instruction.index, instruction.leaf, instruction)
            self.tree.prove_leaf(instruction.index, instruction.leaf, instruction.proof)
            return None
        if isinstance(instruction, InitEmptyMerkleTree):
            raise CapacityExceededError("Tree account is already initialized")

        self._authorize(signer)
        if isinstance(instruction, ReplaceLeaf):
            self._check_instruction_root(instruction.index, instruction.previous_leaf, instruction)
            return self.tree.apply_update(
                instruction.index, instruction.previous_leaf, instruction.new_leaf, instruction.proof
            )
        if isinstance(instruction, Append):
            return self.tree.append(instruction.leaf)
        if isinstance(instruction, InsertOrAppend):
            self._check_proof_shape(instruction.index, instruction.proof)
            proof = instruction.proof
            if recompute_root(instruction.index, EMPTY_LEAF, proof) != instruction.root:
                logger.debug("Insert proof for leaf %d does not match its root", instruction.index)
                return self.tree.append(instruction.leaf)
            return self.tree.fill_empty_or_append(instruction.leaf, proof, instruction.index)
        if isinstance(instruction, TransferAuthority):
            self.transfer_authority(instruction.new_authority, signer)
            return None
        if isinstance(instruction, CloseEmptyTree):
            self.close_empty_tree(signer)
            return None
        raise OutOfBoundsError(f"Unsupported instruction {type(instruction).__name__}")

    def _check_proof_shape(self, index: int, proof) -> None:
        if index >= self.tree.capacity:
            raise OutOfBoundsError(f"Leaf index {index} outside tree of {self.tree.capacity} leaves")
        if len(proof) != self.depth:
            raise OutOfBoundsError(f"Proof has {len(proof)} nodes, tree depth is {self.depth}")

    def _check_instruction_root(self, index: int, leaf: bytes, instruction: ProofInstruction) -> None:
        proof = instruction.proof
        self._check_proof_shape(index, proof)
        if recompute_root(index, leaf, proof) != instruction.root:
            raise InvalidProofError(f"Proof for leaf {index} does not hash to the instruction root")

    def to_bytes(self) -> bytes:
        """Encode the header and tree body; a closed account encodes as zeros."""
        if self._closed:
            return bytes(self.size)
        depth = self.depth
        changelog = self.tree.changelog
        empty_slot = bytes(_changelog_entry_size(depth))
        parts = [
            self.header.to_bytes(),
            _COUNTERS.pack(self.tree.sequence_number, changelog.active_index, len(changelog)),
        ]
        for entry in changelog.slots():
            if entry is None:
                parts.append(empty_slot)
                continue
            parts.append(entry.root)
            parts.extend(entry.path)
            parts.append(_INDEX_AND_PADDING.pack(entry.index))
        rightmost = self.tree.rightmost
        parts.extend(rightmost.proof)
        parts.append(rightmost.leaf)
        parts.append(_INDEX_AND_PADDING.pack(rightmost.index))
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ConcurrentMerkleTreeAccount":
        """
        Decode an account.

        Raises:
            AccountDecodeError: Wrong discriminator or version, inconsistent
                counters, or a length that does not match the header.
        """
        header = TreeHeader.from_bytes(data)
        depth, buffer_size = header.max_depth, header.max_buffer_size
        try:
            expected = get_concurrent_merkle_tree_account_size(depth, buffer_size)
        except CapacityExceededError as e:
            raise AccountDecodeError(f"Unsupported tree dimensions: {e}") from e
        if len(data) != expected:
            raise AccountDecodeError(
                f"Account for depth {depth} / buffer {buffer_size} needs {expected} bytes, "
                f"got {len(data)}"
            )

        offset = TreeHeader.SIZE
        sequence_number, active_index, size = _COUNTERS.unpack_from(data, offset)
        offset += _COUNTERS.size
        if not 0 < size <= buffer_size or active_index >= buffer_size:
            raise AccountDecodeError(
                f"Invalid changelog counters: active index {active_index}, size {size}"
            )
        if sequence_number % buffer_size != active_index or sequence_number + 1 < size:
            raise AccountDecodeError(
                f"Sequence number {sequence_number} inconsistent with active index {active_index}"
            )

        raw_slots = []
        for _ in range(buffer_size):
            root = bytes(data[offset:offset + NODE_SIZE])
            path = _read_nodes(data, offset + NODE_SIZE, depth)
            offset += NODE_SIZE + depth * NODE_SIZE
            (index,) = _INDEX_AND_PADDING.unpack_from(data, offset)
            offset += _INDEX_AND_PADDING.size
            raw_slots.append((root, path, index))

        slots: List[Optional[ChangelogEntry]] = [None] * buffer_size
        for age in range(size):
            slot = (active_index - age) % buffer_size
            root, path, index = raw_slots[slot]
            slots[slot] = ChangelogEntry.from_path(root, path, index, sequence_number - age)

        proof = tuple(_read_nodes(data, offset, depth))
        offset += depth * NODE_SIZE
        leaf = bytes(data[offset:offset + NODE_SIZE])
        offset += NODE_SIZE
        (rightmost_index,) = _INDEX_AND_PADDING.unpack_from(data, offset)
        if rightmost_index > 1 << depth:
            raise AccountDecodeError(f"Rightmost index {rightmost_index} exceeds tree capacity")
        rightmost = RightmostPath(proof=proof, leaf=leaf, index=rightmost_index)

        tree = ConcurrentMerkleTree.restore(
            depth,
            ChangelogBuffer.from_slots(slots, active_index, size),
            rightmost,
            is_batch_initialized=header.is_batch_initialized,
        )
        logger.debug(
            "Decoded tree account depth=%d buffer=%d seq=%d", depth, buffer_size, sequence_number
        )
        return cls(header, tree)
