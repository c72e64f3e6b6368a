"""
Instruction payloads of the account compression program.

Each instruction is encoded as an 8-byte discriminator, the first eight bytes
of ``sha256("global:<instruction name>")``, followed by its fixed-width
little-endian arguments. Proof nodes are not part of the payload; the program
receives them as extra accounts, so they travel next to the data here.
"""

import hashlib
import struct
from typing import Annotated, ClassVar, Dict, List, Tuple, Type

from pydantic import AfterValidator, BaseModel, BeforeValidator, Field, PlainSerializer, field_validator

from account_compression.core.errors import AccountDecodeError
from account_compression.core.hashing import NODE_SIZE
from account_compression.core.models import U32_MAX, PathNode, _check_node, _coerce_node

DISCRIMINATOR_SIZE = 8

Node = Annotated[
    bytes,
    BeforeValidator(_coerce_node),
    AfterValidator(_check_node),
    PlainSerializer(lambda v: v.hex(), return_type=str),
]


def instruction_discriminator(name: str) -> bytes:
    """First eight bytes of ``sha256("global:" + name)``."""
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_SIZE]


class Instruction(BaseModel):
    """Base class for instruction payloads.

    ``NODE_FIELDS`` are encoded first as raw 32-byte nodes, then the fields in
    ``INT_FIELDS`` with the ``ARGS`` struct.
    """

    NAME: ClassVar[str] = ""
    NODE_FIELDS: ClassVar[Tuple[str, ...]] = ()
    INT_FIELDS: ClassVar[Tuple[str, ...]] = ()
    ARGS: ClassVar[struct.Struct] = struct.Struct("<")

    model_config = {"frozen": True}

    @classmethod
    def discriminator(cls) -> bytes:
        return instruction_discriminator(cls.NAME)

    @classmethod
    def payload_size(cls) -> int:
        return DISCRIMINATOR_SIZE + NODE_SIZE * len(cls.NODE_FIELDS) + cls.ARGS.size

    def to_bytes(self) -> bytes:
        """Encode the discriminator followed by the arguments."""
        parts = [self.discriminator()]
        parts.extend(getattr(self, name) for name in self.NODE_FIELDS)
        parts.append(self.ARGS.pack(*(getattr(self, name) for name in self.INT_FIELDS)))
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Instruction":
        """Decode the payload of this instruction type (without its proof)."""
        if len(data) != cls.payload_size():
            raise AccountDecodeError(
                f"{cls.NAME} payload must be {cls.payload_size()} bytes, got {len(data)}"
            )
        if data[:DISCRIMINATOR_SIZE] != cls.discriminator():
            raise AccountDecodeError(f"Not a {cls.NAME} instruction")
        offset = DISCRIMINATOR_SIZE
        fields = {}
        for name in cls.NODE_FIELDS:
            fields[name] = bytes(data[offset:offset + NODE_SIZE])
            offset += NODE_SIZE
        fields.update(zip(cls.INT_FIELDS, cls.ARGS.unpack_from(data, offset)))
        try:
            return cls(**fields)
        except ValueError as e:
            raise AccountDecodeError(f"Invalid {cls.NAME} instruction: {e}") from e


class ProofInstruction(Instruction):
    """An instruction that carries a proof for one leaf."""

    proof: List[Node] = Field(
        default_factory=list,
        description="Sibling nodes from the leaf level up; sent as extra accounts."
    )

    @field_validator("proof", mode="before")
    @classmethod
    def unwrap_path_nodes(cls, v):
        return [item.node if isinstance(item, PathNode) else item for item in v]


class InitEmptyMerkleTree(Instruction):
    """Allocate an empty tree of the given dimensions."""

    NAME: ClassVar[str] = "init_empty_merkle_tree"
    INT_FIELDS: ClassVar[Tuple[str, ...]] = ("max_depth", "max_buffer_size")
    ARGS: ClassVar[struct.Struct] = struct.Struct("<II")

    max_depth: int = Field(..., ge=1, le=U32_MAX)
    max_buffer_size: int = Field(..., ge=1, le=U32_MAX)


class ReplaceLeaf(ProofInstruction):
    """Replace ``previous_leaf`` at ``index``; ``root`` is the root the proof was built against."""

    NAME: ClassVar[str] = "replace_leaf"
    NODE_FIELDS: ClassVar[Tuple[str, ...]] = ("root", "previous_leaf", "new_leaf")
    INT_FIELDS: ClassVar[Tuple[str, ...]] = ("index",)
    ARGS: ClassVar[struct.Struct] = struct.Struct("<I")

    root: Node
    previous_leaf: Node
    new_leaf: Node
    index: int = Field(..., ge=0, le=U32_MAX)


class VerifyLeaf(ProofInstruction):
    """Check that ``leaf`` sits at ``index`` without modifying the tree."""

    NAME: ClassVar[str] = "verify_leaf"
    NODE_FIELDS: ClassVar[Tuple[str, ...]] = ("root", "leaf")
    INT_FIELDS: ClassVar[Tuple[str, ...]] = ("index",)
    ARGS: ClassVar[struct.Struct] = struct.Struct("<I")

    root: Node
    leaf: Node
    index: int = Field(..., ge=0, le=U32_MAX)


class Append(Instruction):
    NAME: ClassVar[str] = "append"
    NODE_FIELDS: ClassVar[Tuple[str, ...]] = ("leaf",)

    leaf: Node


class InsertOrAppend(ProofInstruction):
    """Write ``leaf`` at ``index`` if it is provably empty, otherwise append it."""

    NAME: ClassVar[str] = "insert_or_append"
    NODE_FIELDS: ClassVar[Tuple[str, ...]] = ("root", "leaf")
    INT_FIELDS: ClassVar[Tuple[str, ...]] = ("index",)
    ARGS: ClassVar[struct.Struct] = struct.Struct("<I")

    root: Node
    leaf: Node
    index: int = Field(..., ge=0, le=U32_MAX)


class TransferAuthority(Instruction):
    NAME: ClassVar[str] = "transfer_authority"
    NODE_FIELDS: ClassVar[Tuple[str, ...]] = ("new_authority",)

    new_authority: Node


class CloseEmptyTree(Instruction):
    NAME: ClassVar[str] = "close_empty_tree"


INSTRUCTION_TYPES: Tuple[Type[Instruction], ...] = (
    InitEmptyMerkleTree,
    ReplaceLeaf,
    VerifyLeaf,
    Append,
    InsertOrAppend,
    TransferAuthority,
    CloseEmptyTree,
)

_BY_DISCRIMINATOR: Dict[bytes, Type[Instruction]] = {
    instruction.discriminator(): instruction for instruction in INSTRUCTION_TYPES
}


def decode_instruction(data: bytes) -> Instruction:
    """Decode any instruction payload by its discriminator."""
    instruction = _BY_DISCRIMINATOR.get(bytes(data[:DISCRIMINATOR_SIZE]))
    if instruction is None:
        raise AccountDecodeError(f"Unknown instruction discriminator {bytes(data[:8]).hex()}")
    return instruction.from_bytes(data)
