"""
Hash primitives shared by the on-chain tree and its off-chain mirrors.

Nodes are combined with Keccak-256 over ``left || right`` with no domain
separation prefix. Leaves are stored as given (they are already 32-byte
hashes) and the empty leaf is 32 zero bytes.
"""

from functools import lru_cache

from Crypto.Hash import keccak

from account_compression.core.constants import MAX_DEPTH

NODE_SIZE = 32
EMPTY_LEAF = bytes(NODE_SIZE)


def keccak256(*parts: bytes) -> bytes:
    """Keccak-256 digest of the concatenation of ``parts``."""
    hasher = keccak.new(digest_bits=256)
    for part in parts:
        hasher.update(part)
    return hasher.digest()


def hash_pair(left: bytes, right: bytes) -> bytes:
    """Hash two sibling nodes into their parent."""
    return keccak256(left, right)


@lru_cache(maxsize=MAX_DEPTH + 1)
def empty_node(level: int) -> bytes:
    """Root of an all-empty subtree whose leaves sit ``level`` levels below it."""
    if level < 0:
        raise ValueError(f"Level must be non-negative, got {level}")
    if level == 0:
        return EMPTY_LEAF
    child = empty_node(level - 1)
    return hash_pair(child, child)


def is_node(value: object) -> bool:
    """Check that ``value`` is a 32-byte node."""
    return isinstance(value, (bytes, bytearray)) and len(value) == NODE_SIZE
