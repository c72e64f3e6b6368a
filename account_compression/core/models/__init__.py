"""Typed models for tree nodes, changelog entries, account headers and events."""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, ClassVar, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field, field_serializer, field_validator

from account_compression.core.constants import MAX_DEPTH
from account_compression.core.errors import AccountDecodeError, OutOfBoundsError
from account_compression.core.hashing import EMPTY_LEAF, NODE_SIZE, empty_node, keccak256

U32_MAX = 2**32 - 1
U64_MAX = 2**64 - 1

NodeLike = Union["PathNode", bytes, bytearray]


def _coerce_node(value: Any) -> Any:
    """Accept hex strings and bytearrays wherever a 32-byte node is expected."""
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        try:
            return bytes.fromhex(text)
        except ValueError as e:
            raise ValueError(f"Invalid hex node: {value!r}") from e
    if isinstance(value, bytearray):
        return bytes(value)
    return value


def _check_node(value: bytes) -> bytes:
    if len(value) != NODE_SIZE:
        raise ValueError(f"Node must be {NODE_SIZE} bytes, got {len(value)}")
    return value


def node_index(depth: int, level: int, leaf_index: int) -> int:
    """Heap-order index of the node ``level`` levels above ``leaf_index``.

    The root is 1 and the children of node ``n`` are ``2n`` and ``2n + 1``,
    so leaves occupy ``[2**depth, 2**(depth + 1))``.
    """
    return (1 << (depth - level)) + (leaf_index >> level)


def as_node(value: NodeLike) -> bytes:
    """Return the raw 32-byte hash behind a PathNode or bytes value."""
    if isinstance(value, PathNode):
        return value.node
    if isinstance(value, (bytes, bytearray)) and len(value) == NODE_SIZE:
        return bytes(value)
    raise OutOfBoundsError(f"Expected a {NODE_SIZE}-byte node, got {value!r}")


def proof_path_nodes(leaf_index: int, proof: Sequence[NodeLike]) -> List["PathNode"]:
    """Label raw sibling hashes with their heap indices."""
    depth = len(proof)
    return [
        PathNode(node=as_node(sibling), index=node_index(depth, level, leaf_index) ^ 1)
        for level, sibling in enumerate(proof)
    ]


class PathNode(BaseModel):
    """A node hash together with its heap-order position in the tree."""

    node: bytes = Field(
        ...,
        description="32-byte node hash."
    )
    index: int = Field(
        ...,
        ge=0,
        le=U32_MAX,
        description="Heap-order index of the node; the root is 1."
    )

    model_config = {"frozen": True}

    WIRE_SIZE: ClassVar[int] = NODE_SIZE + 4

    @field_validator("node", mode="before")
    @classmethod
    def coerce_node(cls, v):
        return _coerce_node(v)

    @field_validator("node")
    @classmethod
    def validate_node(cls, v: bytes) -> bytes:
        return _check_node(v)

    @field_serializer("node")
    def serialize_node(self, v: bytes) -> str:
        return v.hex()

    def to_bytes(self) -> bytes:
        """Encode as ``node || index (u32 LE)``."""
        return self.node + struct.pack("<I", self.index)

    @classmethod
    def from_bytes(cls, data: bytes) -> "PathNode":
        """Decode a 36-byte PathNode."""
        if len(data) != cls.WIRE_SIZE:
            raise AccountDecodeError(
                f"PathNode must be {cls.WIRE_SIZE} bytes, got {len(data)}"
            )
        (index,) = struct.unpack_from("<I", data, NODE_SIZE)
        return cls(node=bytes(data[:NODE_SIZE]), index=index)


@dataclass(frozen=True)
class ChangelogEntry:
    """One recorded root transition.

    ``path_nodes`` holds the nodes written by the update, from the new leaf
    up to (but excluding) the root.
    """

    root: bytes
    path_nodes: Tuple[PathNode, ...]
    index: int
    sequence_number: int

    @classmethod
    def from_path(
        cls,
        root: bytes,
        path: Sequence[bytes],
        index: int,
        sequence_number: int,
    ) -> "ChangelogEntry":
        depth = len(path)
        nodes = tuple(
            PathNode(node=node, index=node_index(depth, level, index))
            for level, node in enumerate(path)
        )
        return cls(root=root, path_nodes=nodes, index=index, sequence_number=sequence_number)

    @property
    def depth(self) -> int:
        return len(self.path_nodes)

    @property
    def path(self) -> Tuple[bytes, ...]:
        return tuple(path_node.node for path_node in self.path_nodes)

    @property
    def leaf(self) -> bytes:
        return self.path_nodes[0].node

    def critical_level(self, leaf_index: int) -> Optional[int]:
        """Highest level at which this entry's leaf and ``leaf_index`` diverge.

        At that level the node recorded by this entry is the sibling of the
        ancestor of ``leaf_index``. Returns None for the same leaf.
        """
        differ = self.index ^ leaf_index
        if not differ:
            return None
        return differ.bit_length() - 1

    def touches(self, leaf_index: int) -> bool:
        """Whether this entry rewrote ``leaf_index`` or one of its ancestors."""
        level = self.critical_level(leaf_index)
        return level is None or level + 1 < self.depth

    def to_event(self, tree_id: bytes) -> "ChangeLogEvent":
        """The changelog event an indexer would receive for this entry."""
        path = list(self.path_nodes) + [PathNode(node=self.root, index=1)]
        return ChangeLogEvent(id=tree_id, path=path, seq=self.sequence_number, index=self.index)


@dataclass(frozen=True)
class RightmostPath:
    """Proof of the most recently appended leaf.

    ``index`` counts appended leaves, so the leaf described by ``leaf`` and
    ``proof`` sits at ``index - 1`` and every leaf from ``index`` on is empty.
    """

    proof: Tuple[bytes, ...]
    leaf: bytes
    index: int

    @classmethod
    def empty(cls, depth: int) -> "RightmostPath":
        return cls(
            proof=tuple(empty_node(level) for level in range(depth)),
            leaf=EMPTY_LEAF,
            index=0,
        )


class CompressionAccountType(IntEnum):
    """Leading discriminator byte of every account owned by the program."""
    UNINITIALIZED = 0
    CONCURRENT_MERKLE_TREE = 1


class HeaderVersion(IntEnum):
    """Supported tree header layouts."""
    V1 = 0


class TreeHeader(BaseModel):
    """Fixed-size header that precedes the tree body in the account."""

    account_type: CompressionAccountType = Field(
        CompressionAccountType.CONCURRENT_MERKLE_TREE,
        description="Account discriminator."
    )
    version: HeaderVersion = Field(
        HeaderVersion.V1,
        description="Header layout version."
    )
    max_buffer_size: int = Field(
        ...,
        ge=1,
        le=U32_MAX,
        description="Number of changelog slots."
    )
    max_depth: int = Field(
        ...,
        ge=1,
        le=MAX_DEPTH,
        description="Depth of the tree."
    )
    authority: bytes = Field(
        EMPTY_LEAF,
        description="Ed25519 public key allowed to modify the tree."
    )
    creation_slot: int = Field(
        0,
        ge=0,
        le=U64_MAX,
        description="Slot at which the tree was created."
    )
    is_batch_initialized: bool = Field(
        False,
        description="Whether the tree was initialised from an existing root."
    )

    SIZE: ClassVar[int] = 56
    LAYOUT: ClassVar[struct.Struct] = struct.Struct("<BBII32sQ?5x")

    @field_validator("authority", mode="before")
    @classmethod
    def coerce_authority(cls, v):
        return _coerce_node(v)

    @field_validator("authority")
    @classmethod
    def validate_authority(cls, v: bytes) -> bytes:
        return _check_node(v)

    @field_serializer("authority")
    def serialize_authority(self, v: bytes) -> str:
        return v.hex()

    def to_bytes(self) -> bytes:
        return self.LAYOUT.pack(
            self.account_type,
            self.version,
            self.max_buffer_size,
            self.max_depth,
            self.authority,
            self.creation_slot,
            self.is_batch_initialized,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "TreeHeader":
        if len(data) < cls.SIZE:
            raise AccountDecodeError(f"Header needs {cls.SIZE} bytes, got {len(data)}")
        fields = cls.LAYOUT.unpack_from(data, 0)
        account_type, version = fields[0], fields[1]
        if account_type != CompressionAccountType.CONCURRENT_MERKLE_TREE:
            raise AccountDecodeError(f"Not a concurrent Merkle tree account (type {account_type})")
        if version != HeaderVersion.V1:
            raise AccountDecodeError(f"Unsupported header version {version}")
        try:
            return cls(
                account_type=account_type,
                version=version,
                max_buffer_size=fields[2],
                max_depth=fields[3],
                authority=fields[4],
                creation_slot=fields[5],
                is_batch_initialized=fields[6],
            )
        except ValueError as e:
            raise AccountDecodeError(f"Invalid tree header: {e}") from e


class AccountCompressionEvent(IntEnum):
    """Discriminator of events emitted through the noop program."""
    CHANGE_LOG = 0
    APPLICATION_DATA = 1


class ChangeLogEventVersion(IntEnum):
    V1 = 0


class ChangeLogEvent(BaseModel):
    """Changelog event: the full path written by one update, root included."""

    id: bytes = Field(
        ...,
        description="Address of the tree account."
    )
    path: List[PathNode] = Field(
        ...,
        min_length=1,
        description="Nodes written by the update, leaf first and root last."
    )
    seq: int = Field(
        ...,
        ge=0,
        le=U64_MAX,
        description="Sequence number of the update."
    )
    index: int = Field(
        ...,
        ge=0,
        le=U32_MAX,
        description="Index of the leaf that changed."
    )

    model_config = {"frozen": True}

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return _coerce_node(v)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: bytes) -> bytes:
        return _check_node(v)

    @field_serializer("id")
    def serialize_id(self, v: bytes) -> str:
        return v.hex()

    @property
    def root(self) -> bytes:
        return self.path[-1].node

    @property
    def leaf(self) -> bytes:
        return self.path[0].node

    def to_bytes(self) -> bytes:
        parts = [
            bytes([AccountCompressionEvent.CHANGE_LOG, ChangeLogEventVersion.V1]),
            self.id,
            struct.pack("<I", len(self.path)),
        ]
        parts.extend(path_node.to_bytes() for path_node in self.path)
        parts.append(struct.pack("<QI", self.seq, self.index))
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ChangeLogEvent":
        try:
            event_type, version = data[0], data[1]
            if event_type != AccountCompressionEvent.CHANGE_LOG:
                raise AccountDecodeError(f"Not a changelog event (type {event_type})")
            if version != ChangeLogEventVersion.V1:
                raise AccountDecodeError(f"Unsupported changelog event version {version}")
            offset = 2
            tree_id = bytes(data[offset:offset + NODE_SIZE])
            offset += NODE_SIZE
            (count,) = struct.unpack_from("<I", data, offset)
            offset += 4
            path = []
            for _ in range(count):
                path.append(PathNode.from_bytes(bytes(data[offset:offset + PathNode.WIRE_SIZE])))
                offset += PathNode.WIRE_SIZE
            seq, index = struct.unpack_from("<QI", data, offset)
            offset += 12
        except (IndexError, struct.error) as e:
            raise AccountDecodeError(f"Truncated changelog event: {e}") from e
        if offset != len(data):
            raise AccountDecodeError(f"{len(data) - offset} trailing bytes after changelog event")
        try:
            return cls(id=tree_id, path=path, seq=seq, index=index)
        except ValueError as e:
            raise AccountDecodeError(f"Invalid changelog event: {e}") from e


class LeafSchema(BaseModel):
    """Version 1 leaf layout used by compressed asset programs.

    Only its hash is stored in the tree; the fields themselves live off-chain.
    """

    version: int = Field(
        1,
        ge=1,
        le=1,
        description="Leaf schema version."
    )
    id: bytes
    owner: bytes
    delegate: bytes
    nonce: int = Field(
        ...,
        ge=0,
        le=U64_MAX
    )
    data_hash: bytes
    creator_hash: bytes

    model_config = {"frozen": True}

    @field_validator("id", "owner", "delegate", "data_hash", "creator_hash", mode="before")
    @classmethod
    def coerce_hashes(cls, v):
        return _coerce_node(v)

    @field_validator("id", "owner", "delegate", "data_hash", "creator_hash")
    @classmethod
    def validate_hashes(cls, v: bytes) -> bytes:
        return _check_node(v)

    @field_serializer("id", "owner", "delegate", "data_hash", "creator_hash")
    def serialize_hashes(self, v: bytes) -> str:
        return v.hex()

    def to_node(self) -> bytes:
        """Hash the schema into the 32-byte leaf stored in the tree."""
        return keccak256(
            bytes([self.version]),
            self.id,
            self.owner,
            self.delegate,
            struct.pack("<Q", self.nonce),
            self.data_hash,
            self.creator_hash,
        )
