"""Unit tests for the concurrent Merkle tree."""

import pytest

from account_compression.core.concurrent import ConcurrentMerkleTree
from account_compression.core.constants import MAX_DEPTH
from account_compression.core.errors import (
    CapacityExceededError,
    InvalidProofError,
    LeafContentsModifiedError,
    OutOfBoundsError,
    StaleProofError,
    TreeFullError,
)
from account_compression.core.hashing import EMPTY_LEAF, empty_node, keccak256
from account_compression.core.merkle import MerkleTree, verify


def leaf(n: int) -> bytes:
    return keccak256(n.to_bytes(4, "little"))


def populated(depth: int = 3, buffer_size: int = 4, count: int = 8):
    """A concurrent tree and its off-chain mirror holding ``count`` leaves."""
    leaves = [leaf(i) for i in range(count)]
    return ConcurrentMerkleTree.from_leaves(depth, buffer_size, leaves), MerkleTree(depth, leaves)


def test_new_tree_state() -> None:
    """A fresh tree has the empty root and a single genesis entry."""
    tree = ConcurrentMerkleTree(3, 4)
    assert tree.root == empty_node(3)
    assert tree.sequence_number == 0
    assert tree.active_index == 0
    assert tree.depth == 3
    assert tree.buffer_size == 4
    assert tree.rightmost_index == 0
    assert len(tree.changelog) == 1


def test_from_leaves_matches_mirror() -> None:
    """Batch initialisation reproduces the off-chain root."""
    tree, mirror = populated(count=5)
    assert tree.root == mirror.root
    assert tree.rightmost_index == 5
    assert tree.is_batch_initialized


def test_direct_update_changes_root() -> None:
    """A proof against the current root applies directly."""
    tree, mirror = populated()
    old_root = tree.root

    result = tree.apply_update(2, leaf(2), leaf(200), mirror.get_inclusion_proof(2))

    assert result.new_root != old_root
    assert result.new_root == mirror.update_leaf(2, leaf(200))
    assert result.sequence_number == 1
    assert result.rebased_from is None
    assert tree.root == result.new_root
    assert tree.sequence_number == 1


def test_same_leaf_keeps_root_but_advances_sequence() -> None:
    """Writing the value already stored still records a change."""
    tree, mirror = populated()
    old_root = tree.root
    result = tree.apply_update(4, leaf(4), leaf(4), mirror.get_inclusion_proof(4))
    assert result.new_root == old_root
    assert tree.sequence_number == 1


def test_returned_proof_verifies_new_leaf() -> None:
    """The proof returned by an update proves the new leaf against the new root."""
    tree, mirror = populated()
    stale = mirror.get_inclusion_proof(6)
    tree.apply_update(1, leaf(1), leaf(100), mirror.get_inclusion_proof(1))

    result = tree.apply_update(6, leaf(6), leaf(600), stale)

    assert verify(6, leaf(600), result.proof, result.new_root)
    assert [node.index for node in result.proof] == [
        node.index for node in mirror.get_inclusion_proof(6)
    ]


def test_changelog_entry_records_update_path() -> None:
    """The new entry holds the leaf-to-root path and sits at the active slot."""
    tree, mirror = populated()
    result = tree.apply_update(3, leaf(3), leaf(30), mirror.get_inclusion_proof(3))
    mirror.update_leaf(3, leaf(30))

    entry = result.entry
    assert entry is tree.changelog.latest
    assert entry.root == tree.root
    assert entry.index == 3
    assert entry.depth == 3
    assert entry.leaf == leaf(30)
    assert [node.index for node in entry.path_nodes] == [11, 5, 2]
    assert tree.active_index == tree.sequence_number % tree.buffer_size


def test_rebase_disjoint_updates() -> None:
    """A proof captured before a concurrent update to another leaf still applies."""
    tree, mirror = populated()
    proof_a = mirror.get_inclusion_proof(1)
    proof_b = mirror.get_inclusion_proof(6)

    tree.apply_update(1, leaf(1), leaf(100), proof_a)
    result = tree.apply_update(6, leaf(6), leaf(600), proof_b)

    mirror.update_leaf(1, leaf(100))
    mirror.update_leaf(6, leaf(600))
    assert result.rebased_from == 0
    assert tree.root == mirror.root


def test_rebase_sibling_leaves() -> None:
    """Adjacent leaves share every ancestor but still rebase."""
    tree, mirror = populated()
    proof_0 = mirror.get_inclusion_proof(0)
    proof_1 = mirror.get_inclusion_proof(1)

    tree.apply_update(0, leaf(0), leaf(10), proof_0)
    tree.apply_update(1, leaf(1), leaf(11), proof_1)

    mirror.update_leaf(0, leaf(10))
    mirror.update_leaf(1, leaf(11))
    assert tree.root == mirror.root


def test_rebase_matches_fresh_proofs() -> None:
    """Stale proofs give the same final root as fetching fresh ones."""
    stale_tree, mirror = populated(depth=4, buffer_size=8, count=16)
    fresh_tree, _ = populated(depth=4, buffer_size=8, count=16)
    fresh_mirror = MerkleTree(4, [leaf(i) for i in range(16)])
    updates = [(3, leaf(33)), (12, leaf(44)), (7, leaf(55)), (0, leaf(66))]
    stale_proofs = {index: mirror.get_inclusion_proof(index) for index, _ in updates}

    for index, value in updates:
        stale_tree.apply_update(index, leaf(index), value, stale_proofs[index])
        fresh_tree.apply_update(index, leaf(index), value, fresh_mirror.get_inclusion_proof(index))
        fresh_mirror.update_leaf(index, value)

    assert stale_tree.root == fresh_tree.root == fresh_mirror.root


def test_leaf_modified_since_proof() -> None:
    """Replacing a leaf someone else already replaced fails."""
    tree, mirror = populated()
    proof = mirror.get_inclusion_proof(3)
    tree.apply_update(3, leaf(3), leaf(30), proof)

    root, sequence = tree.root, tree.sequence_number
    with pytest.raises(LeafContentsModifiedError):
        tree.apply_update(3, leaf(3), leaf(31), proof)
    assert isinstance(LeafContentsModifiedError(), InvalidProofError)
    assert (tree.root, tree.sequence_number) == (root, sequence)


def test_buffer_bound_rejects_old_proofs() -> None:
    """After buffer_size + 1 updates a proof from before them is stale."""
    tree, mirror = populated(depth=3, buffer_size=4)
    old_proof = mirror.get_inclusion_proof(0)

    for round_ in range(tree.buffer_size + 1):
        value = leaf(1000 + round_)
        tree.apply_update(5, mirror.get_leaf(5), value, mirror.get_inclusion_proof(5))
        mirror.update_leaf(5, value)

    root, sequence = tree.root, tree.sequence_number
    with pytest.raises(StaleProofError):
        tree.apply_update(0, leaf(0), leaf(99), old_proof)
    assert (tree.root, tree.sequence_number) == (root, sequence)


def test_proof_within_buffer_still_rebases() -> None:
    """A proof from buffer_size - 1 updates ago is carried forward."""
    tree, mirror = populated(depth=3, buffer_size=4)
    old_proof = mirror.get_inclusion_proof(0)

    for round_ in range(tree.buffer_size - 1):
        value = leaf(2000 + round_)
        tree.apply_update(5, mirror.get_leaf(5), value, mirror.get_inclusion_proof(5))
        mirror.update_leaf(5, value)

    result = tree.apply_update(0, leaf(0), leaf(99), old_proof)
    assert result.rebased_from == 0
    assert tree.root == mirror.update_leaf(0, leaf(99))


def test_garbage_proof_is_invalid() -> None:
    """A proof matching no root is invalid while the whole history is buffered."""
    tree, _ = populated()
    bogus = [leaf(70), leaf(71), leaf(72)]
    with pytest.raises(InvalidProofError):
        tree.apply_update(2, leaf(2), leaf(3), bogus)
    assert tree.sequence_number == 0


def test_wrong_old_leaf_is_invalid() -> None:
    """Claiming the wrong current value fails validation."""
    tree, mirror = populated()
    with pytest.raises(InvalidProofError):
        tree.apply_update(2, leaf(3), leaf(4), mirror.get_inclusion_proof(2))


def test_out_of_bounds_requests() -> None:
    """Malformed indices and proofs are caller errors."""
    tree, mirror = populated()
    proof = mirror.get_inclusion_proof(0)
    with pytest.raises(OutOfBoundsError):
        tree.apply_update(8, leaf(0), leaf(1), proof)
    with pytest.raises(OutOfBoundsError):
        tree.apply_update(-1, leaf(0), leaf(1), proof)
    with pytest.raises(OutOfBoundsError):
        tree.apply_update(0, leaf(0), leaf(1), proof[:2])
    with pytest.raises(OutOfBoundsError):
        tree.apply_update(0, leaf(0), b"short", proof)
    with pytest.raises(OutOfBoundsError):
        tree.apply_update(0, leaf(0), leaf(1), [b"short"] * 3)
    assert tree.sequence_number == 0


def test_first_and_last_leaf_at_maximum_depth() -> None:
    """Both ends of the widest tree validate and update."""
    tree = ConcurrentMerkleTree(MAX_DEPTH, 8)
    empty_proof = [empty_node(level) for level in range(MAX_DEPTH)]
    last = (1 << MAX_DEPTH) - 1

    assert verify(0, EMPTY_LEAF, empty_proof, tree.root)
    assert verify(last, EMPTY_LEAF, empty_proof, tree.root)

    tree.apply_update(last, EMPTY_LEAF, leaf(1), empty_proof)
    result = tree.apply_update(0, EMPTY_LEAF, leaf(2), empty_proof)

    assert result.rebased_from == 0
    assert tree.rightmost_index == 1 << MAX_DEPTH
    assert verify(0, leaf(2), result.proof, tree.root)


def test_append_tracks_mirror() -> None:
    """Appends fill slots left to right until the tree is full."""
    tree = ConcurrentMerkleTree(3, 4)
    mirror = MerkleTree(3)
    for i in range(8):
        result = tree.append(leaf(i))
        mirror.add_leaf(leaf(i))
        assert result.leaf_index == i
        assert tree.root == mirror.root
        assert tree.rightmost_index == i + 1
    with pytest.raises(TreeFullError):
        tree.append(leaf(8))


def test_append_after_replacing_rightmost_leaf() -> None:
    """Replacing leaves keeps the rightmost path usable for appends."""
    tree = ConcurrentMerkleTree(3, 4)
    mirror = MerkleTree(3)
    for i in range(3):
        tree.append(leaf(i))
        mirror.add_leaf(leaf(i))

    tree.apply_update(2, leaf(2), leaf(20), mirror.get_inclusion_proof(2))
    mirror.update_leaf(2, leaf(20))
    tree.apply_update(0, leaf(0), leaf(10), mirror.get_inclusion_proof(0))
    mirror.update_leaf(0, leaf(10))

    tree.append(leaf(3))
    mirror.add_leaf(leaf(3))
    assert tree.root == mirror.root


def test_append_after_update_past_rightmost() -> None:
    """Writing into an empty slot ahead of the rightmost leaf moves the append cursor."""
    tree = ConcurrentMerkleTree(3, 4)
    mirror = MerkleTree(3)
    tree.apply_update(5, EMPTY_LEAF, leaf(5), mirror.get_inclusion_proof(5))
    mirror.update_leaf(5, leaf(5))

    result = tree.append(leaf(6))
    mirror.add_leaf(leaf(6))

    assert result.leaf_index == 6
    assert tree.root == mirror.root


def test_fill_empty_or_append() -> None:
    """Empty slots are filled in place; occupied ones fall back to appending."""
    tree, mirror = populated(depth=3, buffer_size=4, count=2)
    mirror_proof = mirror.get_inclusion_proof(4)

    filled = tree.fill_empty_or_append(leaf(40), mirror_proof, 4)
    assert filled.leaf_index == 4
    mirror.update_leaf(4, leaf(40))

    appended = tree.fill_empty_or_append(leaf(41), mirror.get_inclusion_proof(0), 0)
    assert appended.leaf_index == 5
    mirror.update_leaf(5, leaf(41))
    assert tree.root == mirror.root


def test_prove_leaf_does_not_mutate() -> None:
    """Leaf proofs are checked, rebased if needed, without touching state."""
    tree, mirror = populated()
    stale = mirror.get_inclusion_proof(7)
    tree.apply_update(2, leaf(2), leaf(20), mirror.get_inclusion_proof(2))
    root, sequence = tree.root, tree.sequence_number

    assert tree.prove_leaf(7, leaf(7), stale)
    with pytest.raises(InvalidProofError):
        tree.prove_leaf(7, leaf(8), stale)
    assert (tree.root, tree.sequence_number) == (root, sequence)


def test_from_root_rejects_bad_rightmost_proof() -> None:
    """Batch initialisation checks the rightmost proof against the root."""
    mirror = MerkleTree(3, [leaf(i) for i in range(3)])
    with pytest.raises(InvalidProofError):
        ConcurrentMerkleTree.from_root(3, 4, mirror.root, leaf(9), mirror.get_inclusion_proof(2), 2)


@pytest.mark.parametrize("depth,buffer_size", [(0, 4), (MAX_DEPTH + 1, 8), (3, 0), (3, 4096)])
def test_invalid_dimensions(depth: int, buffer_size: int) -> None:
    """Unsupported dimensions are refused at construction."""
    with pytest.raises(CapacityExceededError):
        ConcurrentMerkleTree(depth, buffer_size)


def test_strict_sizes() -> None:
    """Strict mode only accepts the program's canonical pairs."""
    with pytest.raises(CapacityExceededError):
        ConcurrentMerkleTree(3, 4, strict_sizes=True)
    assert ConcurrentMerkleTree(3, 8, strict_sizes=True).buffer_size == 8
