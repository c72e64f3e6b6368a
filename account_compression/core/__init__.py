"""
Core components of the account compression toolkit.

This package contains the concurrent Merkle tree, its changelog buffer, proof
verification, the node and account models, the account codec and the instruction payloads.
"""

from .account import ConcurrentMerkleTreeAccount, get_concurrent_merkle_tree_account_size
from .changelog import ChangelogBuffer, fast_forward_proof, rebase_proof
from .concurrent import ConcurrentMerkleTree, UpdateResult
from .instructions import Instruction, decode_instruction
from .merkle import MerkleTree, recompute_root, verify

__all__ = [
    'ChangelogBuffer',
    'ConcurrentMerkleTree',
    'ConcurrentMerkleTreeAccount',
    'Instruction',
    'MerkleTree',
    'UpdateResult',
    'decode_instruction',
    'fast_forward_proof',
    'get_concurrent_merkle_tree_account_size',
    'rebase_proof',
    'recompute_root',
    'verify',
]
