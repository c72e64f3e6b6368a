"""Unit tests for instruction payload encoding."""

import hashlib
import struct

import pytest
from pydantic import ValidationError

from account_compression.core.errors import AccountDecodeError
from account_compression.core.hashing import keccak256
from account_compression.core.instructions import (
    DISCRIMINATOR_SIZE,
    INSTRUCTION_TYPES,
    Append,
    CloseEmptyTree,
    InitEmptyMerkleTree,
    InsertOrAppend,
    ReplaceLeaf,
    TransferAuthority,
    VerifyLeaf,
    decode_instruction,
    instruction_discriminator,
)
from account_compression.core.models import PathNode


def node(n: int) -> bytes:
    return keccak256(b"instruction", bytes([n]))


def test_discriminators_follow_global_namespace() -> None:
    """Each discriminator is the sha256 prefix of ``global:<name>`` and they are distinct."""
    for instruction in INSTRUCTION_TYPES:
        expected = hashlib.sha256(f"global:{instruction.NAME}".encode()).digest()[:8]
        assert instruction.discriminator() == expected
    assert len({instruction.discriminator() for instruction in INSTRUCTION_TYPES}) == 7
    assert instruction_discriminator("append") == Append.discriminator()


def test_replace_leaf_layout() -> None:
    """Nodes come first in declaration order, then the little-endian index."""
    instruction = ReplaceLeaf(
        root=node(1), previous_leaf=node(2), new_leaf=node(3), index=5, proof=[node(4)] * 3
    )
    data = instruction.to_bytes()

    assert len(data) == DISCRIMINATOR_SIZE + 3 * 32 + 4 == ReplaceLeaf.payload_size()
    assert data[:8] == ReplaceLeaf.discriminator()
    assert data[8:40] == node(1)
    assert data[40:72] == node(2)
    assert data[72:104] == node(3)
    assert data[104:] == struct.pack("<I", 5)


def test_payload_sizes() -> None:
    assert len(InitEmptyMerkleTree(max_depth=14, max_buffer_size=64).to_bytes()) == 16
    assert InitEmptyMerkleTree(max_depth=14, max_buffer_size=64).to_bytes()[8:] == struct.pack("<II", 14, 64)
    assert len(Append(leaf=node(1)).to_bytes()) == 40
    assert len(VerifyLeaf(root=node(1), leaf=node(2), index=0).to_bytes()) == 76
    assert len(InsertOrAppend(root=node(1), leaf=node(2), index=0).to_bytes()) == 76
    assert len(TransferAuthority(new_authority=node(9)).to_bytes()) == 40
    assert CloseEmptyTree().to_bytes() == CloseEmptyTree.discriminator()


def test_decode_instruction() -> None:
    """Payloads decode to the same instruction, without the proof."""
    replace = ReplaceLeaf(
        root=node(1), previous_leaf=node(2), new_leaf=node(3), index=7, proof=[node(4)] * 3
    )
    decoded = decode_instruction(replace.to_bytes())
    assert isinstance(decoded, ReplaceLeaf)
    assert decoded == replace.model_copy(update={"proof": []})

    init = InitEmptyMerkleTree(max_depth=20, max_buffer_size=256)
    assert decode_instruction(init.to_bytes()) == init
    assert decode_instruction(CloseEmptyTree().to_bytes()) == CloseEmptyTree()


def test_decode_rejects_bad_payloads() -> None:
    data = Append(leaf=node(1)).to_bytes()
    with pytest.raises(AccountDecodeError):
        decode_instruction(data[:-1])
    with pytest.raises(AccountDecodeError):
        decode_instruction(b"\x00" * 40)
    with pytest.raises(AccountDecodeError):
        VerifyLeaf.from_bytes(data)
    with pytest.raises(AccountDecodeError):
        decode_instruction(InitEmptyMerkleTree.discriminator() + struct.pack("<II", 0, 8))


def test_node_fields_are_validated() -> None:
    """Nodes accept hex and bytearrays but must be 32 bytes."""
    from_hex = Append(leaf=node(1).hex())
    assert from_hex.leaf == node(1)
    assert Append(leaf=bytearray(node(1))) == from_hex
    assert from_hex.model_dump() == {"leaf": node(1).hex()}

    with pytest.raises(ValidationError):
        Append(leaf=b"\x01" * 31)
    with pytest.raises(ValidationError):
        TransferAuthority(new_authority="zz")
    with pytest.raises(ValidationError):
        ReplaceLeaf(root=node(1), previous_leaf=node(2), new_leaf=node(3), index=-1)


def test_proof_accepts_path_nodes() -> None:
    proof = [PathNode(node=node(4), index=9), node(5).hex(), node(6)]
    instruction = VerifyLeaf(root=node(1), leaf=node(2), index=0, proof=proof)
    assert instruction.proof == [node(4), node(5), node(6)]

    with pytest.raises(ValidationError):
        VerifyLeaf(root=node(1), leaf=node(2), index=0, proof=[b"\x00" * 5])
