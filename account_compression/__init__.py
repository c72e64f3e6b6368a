"""
Account Compression - concurrent Merkle trees for compressed on-chain state.

This package exposes the program addresses, the node, changelog, account and
event models, the account codec, proof helpers and the concurrent Merkle tree
through a single import surface.
"""

from importlib.metadata import PackageNotFoundError, version

__version__ = "0.1.0"

try:
    __version__ = version("account-compression")
except PackageNotFoundError:
    pass

from account_compression.core.account import (
    ConcurrentMerkleTreeAccount,
    get_concurrent_merkle_tree_account_size,
)
from account_compression.core.changelog import ChangelogBuffer, RebasedProof
from account_compression.core.concurrent import ConcurrentMerkleTree, UpdateResult
from account_compression.core.constants import (
    ALL_DEPTH_SIZE_PAIRS,
    MAX_BUFFER_SIZE,
    MAX_DEPTH,
    SPL_ACCOUNT_COMPRESSION_ADDRESS,
    SPL_ACCOUNT_COMPRESSION_PROGRAM_ID,
    SPL_NOOP_ADDRESS,
    SPL_NOOP_PROGRAM_ID,
)
from account_compression.core.crypto import (
    AuthorityKeyPair,
    SignedTreeHead,
    sign_tree_head,
    verify_tree_head,
)
from account_compression.core.errors import (
    AccountClosedError,
    AccountDecodeError,
    AuthorityMismatchError,
    CapacityExceededError,
    CompressionError,
    InvalidProofError,
    LeafContentsModifiedError,
    OutOfBoundsError,
    SequenceNumberError,
    StaleProofError,
    TreeFullError,
    TreeNotEmptyError,
)
from account_compression.core.hashing import EMPTY_LEAF, empty_node, hash_pair, keccak256
from account_compression.core.instructions import (
    Append,
    CloseEmptyTree,
    InitEmptyMerkleTree,
    InsertOrAppend,
    Instruction,
    ReplaceLeaf,
    TransferAuthority,
    VerifyLeaf,
    decode_instruction,
    instruction_discriminator,
)
from account_compression.core.merkle import MerkleTree, recompute_root, verify
from account_compression.core.models import (
    ChangeLogEvent,
    ChangelogEntry,
    CompressionAccountType,
    LeafSchema,
    PathNode,
    RightmostPath,
    TreeHeader,
)

__all__ = [
    # Program
    "ALL_DEPTH_SIZE_PAIRS",
    "MAX_BUFFER_SIZE",
    "MAX_DEPTH",
    "SPL_ACCOUNT_COMPRESSION_ADDRESS",
    "SPL_ACCOUNT_COMPRESSION_PROGRAM_ID",
    "SPL_NOOP_ADDRESS",
    "SPL_NOOP_PROGRAM_ID",
    # Tree
    "ChangelogBuffer",
    "ConcurrentMerkleTree",
    "MerkleTree",
    "RebasedProof",
    "UpdateResult",
    "recompute_root",
    "verify",
    # Accounts
    "ConcurrentMerkleTreeAccount",
    "get_concurrent_merkle_tree_account_size",
    # Instructions
    "Append",
    "CloseEmptyTree",
    "InitEmptyMerkleTree",
    "InsertOrAppend",
    "Instruction",
    "ReplaceLeaf",
    "TransferAuthority",
    "VerifyLeaf",
    "decode_instruction",
    "instruction_discriminator",
    # Utils
    "EMPTY_LEAF",
    "empty_node",
    "hash_pair",
    "keccak256",
    # Authority
    "AuthorityKeyPair",
    "SignedTreeHead",
    "sign_tree_head",
    "verify_tree_head",
    # Types
    "ChangeLogEvent",
    "ChangelogEntry",
    "CompressionAccountType",
    "LeafSchema",
    "PathNode",
    "RightmostPath",
    "TreeHeader",
    # Errors
    "AccountClosedError",
    "AccountDecodeError",
    "AuthorityMismatchError",
    "CapacityExceededError",
    "CompressionError",
    "InvalidProofError",
    "LeafContentsModifiedError",
    "OutOfBoundsError",
    "SequenceNumberError",
    "StaleProofError",
    "TreeFullError",
    "TreeNotEmptyError",
]
