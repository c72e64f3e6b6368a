"""
Authority keys and signed tree heads.

The tree authority is an Ed25519 key whose public half is stored in the
account header. The authority can publish signed tree heads, binding a root
to its sequence number and depth, for clients that cannot read the account.
"""

import base64
import struct
from datetime import datetime, timezone
from typing import Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from pydantic import BaseModel, Field, field_validator

from account_compression.core.concurrent import ConcurrentMerkleTree

TREE_HEAD_CONTEXT = b"account-compression-tree-head-v1\n"
ED25519_KEY_SIZE = 32


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class AuthorityKeyPair(BaseModel):
    """An Ed25519 tree authority key with metadata."""

    kid: str
    public_key: bytes
    private_key: Optional[bytes] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("public_key")
    @classmethod
    def validate_public_key(cls, v: bytes) -> bytes:
        if len(v) != ED25519_KEY_SIZE:
            raise ValueError(f"Ed25519 public key must be {ED25519_KEY_SIZE} bytes, got {len(v)}")
        return v

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, v: Optional[bytes]) -> Optional[bytes]:
        if v is not None and len(v) != ED25519_KEY_SIZE:
            raise ValueError(f"Ed25519 private key must be {ED25519_KEY_SIZE} bytes, got {len(v)}")
        return v

    @classmethod
    def generate(cls, kid: str) -> "AuthorityKeyPair":
        """Generate a new Ed25519 key pair."""
        private_key = ed25519.Ed25519PrivateKey.generate()
        return cls(
            kid=kid,
            private_key=private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption()
            ),
            public_key=private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw
            ),
        )

    @property
    def private_key_obj(self) -> Optional[ed25519.Ed25519PrivateKey]:
        if not self.private_key:
            return None
        return ed25519.Ed25519PrivateKey.from_private_bytes(self.private_key)

    @property
    def public_key_obj(self) -> ed25519.Ed25519PublicKey:
        return ed25519.Ed25519PublicKey.from_public_bytes(self.public_key)

    def sign(self, data: bytes) -> bytes:
        """Sign data with the private key."""
        private_key = self.private_key_obj
        if private_key is None:
            raise ValueError("Private key not available for signing")
        return private_key.sign(data)

    def verify(self, signature: bytes, data: bytes) -> bool:
        """Verify a signature with the public key."""
        try:
            self.public_key_obj.verify(signature, data)
        except InvalidSignature:
            return False
        return True

    def to_jwk(self, private: bool = False) -> Dict:
        """Convert the key pair to a JWK (JSON Web Key)."""
        jwk = {
            "kty": "OKP",
            "crv": "Ed25519",
            "kid": self.kid,
            "x": b64url_encode(self.public_key),
            "alg": "EdDSA",
            "use": "sig",
            "created": int(self.created_at.timestamp()),
        }
        if private and self.private_key:
            jwk["d"] = b64url_encode(self.private_key)
        return jwk

    @classmethod
    def from_jwk(cls, jwk: Dict) -> "AuthorityKeyPair":
        """Create a key pair from a JWK."""
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
            raise ValueError("Only Ed25519 keys are supported")
        created = jwk.get("created")
        return cls(
            kid=jwk["kid"],
            public_key=b64url_decode(jwk["x"]),
            private_key=b64url_decode(jwk["d"]) if "d" in jwk else None,
            created_at=(
                datetime.fromtimestamp(created, tz=timezone.utc)
                if created is not None
                else datetime.now(timezone.utc)
            ),
        )


class SignedTreeHead(BaseModel):
    """A tree root signed by the tree authority."""

    root: str = Field(
        ...,
        pattern=r"^[a-f0-9]{64}$",
        description="Hex-encoded root."
    )
    sequence_number: int = Field(
        ...,
        ge=0,
        description="Sequence number of the root."
    )
    max_depth: int = Field(
        ...,
        ge=1,
        description="Depth of the tree."
    )
    kid: str = Field(
        ...,
        description="Identifier of the signing key."
    )
    signature: str = Field(
        ...,
        pattern=r"^[A-Za-z0-9_-]+$",
        description="Base64url-encoded Ed25519 signature without padding."
    )
    issued_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the head was signed."
    )

    @field_validator("issued_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


def tree_head_message(root: bytes, sequence_number: int, max_depth: int) -> bytes:
    """Bytes covered by a tree head signature."""
    return TREE_HEAD_CONTEXT + root + struct.pack("<QI", sequence_number, max_depth)


def sign_tree_head(tree: ConcurrentMerkleTree, key_pair: AuthorityKeyPair) -> SignedTreeHead:
    """Sign the current root of ``tree``."""
    message = tree_head_message(tree.root, tree.sequence_number, tree.depth)
    return SignedTreeHead(
        root=tree.root.hex(),
        sequence_number=tree.sequence_number,
        max_depth=tree.depth,
        kid=key_pair.kid,
        signature=b64url_encode(key_pair.sign(message)),
    )


def verify_tree_head(head: SignedTreeHead, public_key: bytes) -> bool:
    """Check a signed tree head against the authority's raw public key.

    Returns False for a bad signature and for a malformed key or signature.
    """
    message = tree_head_message(bytes.fromhex(head.root), head.sequence_number, head.max_depth)
    try:
        verifier = AuthorityKeyPair(kid=head.kid, public_key=public_key)
        signature = b64url_decode(head.signature)
    except ValueError:
        return False
    return verifier.verify(signature, message)
