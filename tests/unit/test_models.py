"""Unit tests for node, header, event and leaf models."""

import struct

import pytest
from pydantic import ValidationError

from account_compression.core.concurrent import ConcurrentMerkleTree
from account_compression.core.errors import AccountDecodeError
from account_compression.core.hashing import keccak256
from account_compression.core.models import (
    ChangeLogEvent,
    LeafSchema,
    PathNode,
    TreeHeader,
    node_index,
)


def test_path_node_wire_format() -> None:
    """A PathNode is its hash followed by a little-endian u32 index."""
    node = PathNode(node=bytes(range(32)), index=0x01020304)
    data = node.to_bytes()
    assert len(data) == PathNode.WIRE_SIZE == 36
    assert data[32:] == b"\x04\x03\x02\x01"
    assert PathNode.from_bytes(data) == node

    with pytest.raises(AccountDecodeError):
        PathNode.from_bytes(data[:-1])


def test_path_node_accepts_hex() -> None:
    hex_node = "ab" * 32
    assert PathNode(node=hex_node, index=1).node == bytes.fromhex(hex_node)
    assert PathNode(node="0x" + hex_node, index=1).node == bytes.fromhex(hex_node)
    assert PathNode(node=hex_node, index=1).model_dump() == {"node": hex_node, "index": 1}


def test_path_node_validation() -> None:
    with pytest.raises(ValidationError):
        PathNode(node=b"short", index=1)
    with pytest.raises(ValidationError):
        PathNode(node=bytes(32), index=-1)
    with pytest.raises(ValidationError):
        PathNode(node="zz" * 32, index=1)


def test_node_index_heap_order() -> None:
    assert node_index(3, 0, 0) == 8
    assert node_index(3, 0, 7) == 15
    assert node_index(3, 2, 5) == 3
    assert node_index(3, 3, 5) == 1


def test_tree_header_layout() -> None:
    """The header packs into 56 bytes with the discriminator first."""
    header = TreeHeader(
        max_depth=14,
        max_buffer_size=64,
        authority=bytes([7]) * 32,
        creation_slot=99,
        is_batch_initialized=True,
    )
    data = header.to_bytes()
    assert len(data) == TreeHeader.SIZE == 56
    assert data[0] == 1 and data[1] == 0
    assert struct.unpack_from("<II", data, 2) == (64, 14)
    assert TreeHeader.from_bytes(data) == header


def test_tree_header_rejects_bad_depth() -> None:
    data = bytearray(TreeHeader(max_depth=3, max_buffer_size=8).to_bytes())
    struct.pack_into("<I", data, 6, 31)
    with pytest.raises(AccountDecodeError):
        TreeHeader.from_bytes(bytes(data))


def test_changelog_event_wire_format() -> None:
    """Events encode discriminator, version, id, path, seq and index."""
    tree = ConcurrentMerkleTree(3, 4)
    tree_id = bytes(range(32))
    event = tree.append(keccak256(b"x")).entry.to_event(tree_id)

    data = event.to_bytes()
    assert data[:2] == b"\x00\x00"
    assert data[2:34] == tree_id
    assert struct.unpack_from("<I", data, 34) == (4,)
    assert len(data) == 2 + 32 + 4 + 4 * 36 + 8 + 4
    assert struct.unpack_from("<QI", data, len(data) - 12) == (1, 0)
    assert event.root == tree.root
    assert [node.index for node in event.path] == [8, 4, 2, 1]
    assert ChangeLogEvent.from_bytes(data) == event


def test_changelog_event_rejects_bad_input() -> None:
    tree = ConcurrentMerkleTree(3, 4)
    data = tree.append(keccak256(b"x")).entry.to_event(bytes(32)).to_bytes()

    with pytest.raises(AccountDecodeError):
        ChangeLogEvent.from_bytes(b"\x01" + data[1:])
    with pytest.raises(AccountDecodeError):
        ChangeLogEvent.from_bytes(data[:-3])
    with pytest.raises(AccountDecodeError):
        ChangeLogEvent.from_bytes(data + b"\x00")


def test_leaf_schema_hash() -> None:
    """The leaf hash covers every field in declaration order."""
    fields = {
        "id": bytes([1]) * 32,
        "owner": bytes([2]) * 32,
        "delegate": bytes([3]) * 32,
        "nonce": 5,
        "data_hash": bytes([4]) * 32,
        "creator_hash": bytes([5]) * 32,
    }
    schema = LeafSchema(**fields)
    expected = keccak256(
        b"\x01",
        fields["id"],
        fields["owner"],
        fields["delegate"],
        struct.pack("<Q", 5),
        fields["data_hash"],
        fields["creator_hash"],
    )
    assert schema.to_node() == expected
    assert LeafSchema(**{**fields, "nonce": 6}).to_node() != expected
    with pytest.raises(ValidationError):
        LeafSchema(**{**fields, "owner": b"short"})
