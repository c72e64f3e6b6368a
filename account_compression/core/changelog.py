"""
Changelog ring buffer and proof rebasing.

The buffer keeps the last ``capacity`` root transitions. A proof captured
against any of those roots can be carried forward to the current root by
replaying the newer transitions onto it; older proofs are stale.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from account_compression.core.errors import (
    CapacityExceededError,
    InvalidProofError,
    LeafContentsModifiedError,
    SequenceNumberError,
    StaleProofError,
)
from account_compression.core.merkle import recompute_root
from account_compression.core.models import ChangelogEntry

logger = logging.getLogger(__name__)


class ChangelogBuffer:
    """Fixed-capacity ring of changelog entries.

    Entry ``n`` lives in slot ``n % capacity``; pushing past capacity
    overwrites the oldest entry.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise CapacityExceededError(f"Changelog capacity must be positive, got {capacity}")
        self._slots: List[Optional[ChangelogEntry]] = [None] * capacity
        self._active_index = 0
        self._size = 0

    @classmethod
    def from_slots(
        cls,
        slots: Sequence[Optional[ChangelogEntry]],
        active_index: int,
        size: int,
    ) -> "ChangelogBuffer":
        """Rebuild a buffer from its raw slots, e.g. when decoding an account."""
        buffer = cls(len(slots))
        if not 0 <= active_index < buffer.capacity or not 0 < size <= buffer.capacity:
            raise CapacityExceededError(
                f"Active index {active_index} / size {size} do not fit {buffer.capacity} slots"
            )
        for offset in range(size):
            slot = (active_index - offset) % buffer.capacity
            if slots[slot] is None:
                raise CapacityExceededError(f"Slot {slot} inside the live window is empty")
        buffer._slots = list(slots)
        buffer._active_index = active_index
        buffer._size = size
        return buffer

    @property
    def capacity(self) -> int:
        return len(self._slots)

    @property
    def active_index(self) -> int:
        return self._active_index

    @property
    def latest(self) -> Optional[ChangelogEntry]:
        if not self._size:
            return None
        return self._slots[self._active_index]

    @property
    def has_evicted(self) -> bool:
        """Whether at least one entry has been overwritten.

        Sequence numbers start at 0, so entry ``n`` is the ``n + 1``-th push.
        """
        latest = self.latest
        return latest is not None and latest.sequence_number >= self.capacity

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[ChangelogEntry]:
        """Iterate newest to oldest."""
        for offset in range(self._size):
            yield self._slots[(self._active_index - offset) % self.capacity]

    def push(self, entry: ChangelogEntry) -> None:
        """Store ``entry`` in slot ``sequence_number % capacity``."""
        latest = self.latest
        if latest is not None and entry.sequence_number != latest.sequence_number + 1:
            raise SequenceNumberError(
                f"Expected sequence number {latest.sequence_number + 1}, got {entry.sequence_number}"
            )
        slot = entry.sequence_number % self.capacity
        self._slots[slot] = entry
        self._active_index = slot
        self._size = min(self._size + 1, self.capacity)

    def snapshot(self) -> Tuple[ChangelogEntry, ...]:
        """Immutable newest-to-oldest view of the buffer."""
        return tuple(self)

    def slots(self) -> Tuple[Optional[ChangelogEntry], ...]:
        return tuple(self._slots)

    def lookup(self, leaf_index: int) -> List[ChangelogEntry]:
        """Entries, newest first, that rewrote ``leaf_index`` or one of its ancestors."""
        return [entry for entry in self if entry.touches(leaf_index)]

    def find_root(self, root: bytes) -> Optional[ChangelogEntry]:
        """Most recent entry whose root is ``root``."""
        for entry in self:
            if entry.root == root:
                return entry
        return None


@dataclass(frozen=True)
class RebasedProof:
    """A proof carried forward to the current root."""

    proof: Tuple[bytes, ...]
    base_sequence_number: int
    replayed: int


def fast_forward_proof(
    entries: Iterable[ChangelogEntry],
    leaf_index: int,
    leaf: bytes,
    proof: Sequence[bytes],
) -> Tuple[bytes, Tuple[bytes, ...]]:
    """
    Replay ``entries`` (oldest first) onto a proof.

    An entry that changed another leaf rewrote exactly one sibling of
    ``leaf_index``: the node at their critical level. An entry that changed
    ``leaf_index`` itself replaces the leaf.

    Returns:
        The leaf value after the replay and the updated proof.
    """
    nodes = list(proof)
    for entry in entries:
        level = entry.critical_level(leaf_index)
        if level is None:
            leaf = entry.leaf
        else:
            nodes[level] = entry.path_nodes[level].node
    return leaf, tuple(nodes)


def rebase_proof(
    snapshot: Sequence[ChangelogEntry],
    leaf_index: int,
    leaf: bytes,
    proof: Sequence[bytes],
    has_evicted: bool,
) -> RebasedProof:
    """
    Validate a proof against the newest root in ``snapshot``, rebasing if needed.

    Args:
        snapshot: Changelog entries, newest first.
        leaf_index: Index of the leaf the proof is for.
        leaf: The leaf value the caller believes is stored there.
        proof: Sibling nodes captured by the caller.
        has_evicted: Whether older entries than ``snapshot[-1]`` ever existed.

    Returns:
        The proof valid against the current root.

    Raises:
        LeafContentsModifiedError: The leaf changed after the proof was captured.
        StaleProofError: The proof may predate the oldest buffered root.
        InvalidProofError: The proof matches no root the tree ever had.
    """
    current = snapshot[0]
    implied_root = recompute_root(leaf_index, leaf, proof)
    if implied_root == current.root:
        return RebasedProof(
            proof=tuple(proof),
            base_sequence_number=current.sequence_number,
            replayed=0,
        )

    for position in range(1, len(snapshot)):
        base = snapshot[position]
        if base.root != implied_root:
            continue
        newer = reversed(snapshot[:position])
        current_leaf, rebased = fast_forward_proof(newer, leaf_index, leaf, proof)
        if current_leaf != leaf:
            raise LeafContentsModifiedError(
                f"Leaf {leaf_index} was modified after sequence {base.sequence_number}"
            )
        if recompute_root(leaf_index, leaf, rebased) != current.root:
            raise InvalidProofError(
                f"Proof for leaf {leaf_index} does not reach the current root after rebase"
            )
        logger.debug(
            "Rebased proof for leaf %d from sequence %d over %d entries",
            leaf_index, base.sequence_number, position,
        )
        return RebasedProof(
            proof=rebased,
            base_sequence_number=base.sequence_number,
            replayed=position,
        )

    if has_evicted:
        logger.warning(
            "Rejected proof for leaf %d: root not among the last %d changes",
            leaf_index, len(snapshot),
        )
        raise StaleProofError(
            f"Proof for leaf {leaf_index} is older than the {len(snapshot)} buffered changes"
        )
    raise InvalidProofError(f"Proof for leaf {leaf_index} does not match any known root")
