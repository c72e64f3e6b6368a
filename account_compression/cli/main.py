"""
Account Compression Command Line Interface

Provides commands for creating tree accounts, applying leaf updates with
proofs, inspecting the changelog and signing tree heads.
"""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import click
from pydantic import ValidationError

from account_compression.config import (
    CompressionConfig,
    LogConfig,
    TreeConfig,
    load_config,
    setup_logging,
)
from account_compression.core.account import ConcurrentMerkleTreeAccount
from account_compression.core.concurrent import ConcurrentMerkleTree, UpdateResult
from account_compression.core.crypto import (
    AuthorityKeyPair,
    SignedTreeHead,
    sign_tree_head,
    verify_tree_head,
)
from account_compression.core.errors import CompressionError, StaleProofError
from account_compression.core.hashing import EMPTY_LEAF
from account_compression.core.instructions import (
    Append,
    CloseEmptyTree,
    ReplaceLeaf,
    TransferAuthority,
    VerifyLeaf,
)
from account_compression.core.merkle import MerkleTree, recompute_root
from account_compression.core.models import PathNode, as_node

CONTEXT_SETTINGS = dict(help_option_names=['-h', '--help'])

# Exit status for errors a caller may retry after refetching a proof.
EXIT_STALE = 2


class NodeParamType(click.ParamType):
    """A 32-byte node given as 64 hex characters."""
    name = "node"

    def convert(self, value, param, ctx):
        if isinstance(value, bytes):
            return value
        text = value[2:] if value.startswith("0x") else value
        try:
            node = bytes.fromhex(text)
        except ValueError:
            self.fail(f"{value!r} is not valid hex", param, ctx)
        if len(node) != 32:
            self.fail(f"expected 32 bytes, got {len(node)}", param, ctx)
        return node


NODE = NodeParamType()


# Helper functions
def fail(message: str, code: int = 1) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def report_error(e: CompressionError) -> None:
    """Print a tree error and exit; stale proofs get their own status."""
    if isinstance(e, StaleProofError):
        fail(f"{e} (fetch a fresh proof and retry)", EXIT_STALE)
    fail(f"{type(e).__name__}: {e}")


def load_account(file_path: str) -> ConcurrentMerkleTreeAccount:
    """Load a tree account from a binary file."""
    try:
        return ConcurrentMerkleTreeAccount.from_bytes(Path(file_path).read_bytes())
    except (OSError, CompressionError) as e:
        fail(f"Error loading tree account: {e}")


def save_account(account: ConcurrentMerkleTreeAccount, file_path: str) -> None:
    """Save a tree account to a binary file."""
    try:
        Path(file_path).write_bytes(account.to_bytes())
    except OSError as e:
        fail(f"Error saving tree account: {e}")


def load_proof(file_path: str) -> List[PathNode]:
    """Load a proof: a JSON list of hex nodes or of ``{"node", "index"}`` objects."""
    try:
        with open(file_path, 'r') as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data["proof"]
        nodes = []
        for item in data:
            if isinstance(item, str):
                nodes.append(bytes.fromhex(item))
            else:
                nodes.append(PathNode(**item))
        return nodes
    except (OSError, ValueError, KeyError, TypeError) as e:
        fail(f"Error loading proof: {e}")


def load_keypair(key_file: str) -> AuthorityKeyPair:
    """Load a key pair from a JWK file."""
    try:
        with open(key_file, 'r') as f:
            return AuthorityKeyPair.from_jwk(json.load(f))
    except (OSError, ValueError, KeyError, TypeError) as e:
        fail(f"Error loading key pair: {e}")


def load_signer(key_file: Optional[str]) -> bytes:
    """Public key that signs tree instructions; trees without an authority need none."""
    if not key_file:
        return EMPTY_LEAF
    return load_keypair(key_file).public_key


def save_keypair(key_pair: AuthorityKeyPair, key_file: str) -> None:
    """Save a key pair to a JWK file."""
    try:
        with open(key_file, 'w') as f:
            json.dump(key_pair.to_jwk(private=True), f, indent=2)
        click.echo(f"Key pair saved to {key_file}")
    except OSError as e:
        fail(f"Error saving key pair: {e}")


def echo_update(result: UpdateResult) -> None:
    click.echo(f"Leaf index: {result.leaf_index}")
    click.echo(f"Sequence number: {result.sequence_number}")
    click.echo(f"New root: {result.new_root.hex()}")
    if result.rebased_from is not None:
        click.echo(f"Proof rebased from sequence {result.rebased_from}")


# Command groups
@click.group(context_settings=CONTEXT_SETTINGS)
@click.option('--log-level', help='Override ACCOUNT_COMPRESSION_LOG_LEVEL')
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]):
    """Account Compression - concurrent Merkle tree accounts."""
    try:
        config = load_config()
        if log_level:
            config.log = LogConfig(level=log_level)
    except ValueError as e:
        fail(f"Invalid configuration: {e}")
    setup_logging(config.log)
    ctx.obj = config


# Key management commands
@cli.group()
def keys():
    """Manage tree authority keys."""
    pass


@keys.command()
@click.option('--output', '-o', required=True, help='Output file for the key pair')
@click.option('--kid', help='Key ID (default: auto-generated)')
def generate(output: str, kid: Optional[str] = None):
    """Generate a new Ed25519 authority key pair."""
    if not kid:
        kid = f"authority-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"
    save_keypair(AuthorityKeyPair.generate(kid), output)
    click.echo(f"Generated key pair with ID: {kid}")


# Tree commands
@cli.group()
def tree():
    """Create, update and inspect tree accounts."""
    pass


@tree.command()
@click.argument('output')
@click.option('--depth', type=int, help='Tree depth (default: configured max depth)')
@click.option('--buffer-size', type=int, help='Changelog size (default: configured buffer size)')
@click.option('--authority', 'authority_file', type=click.Path(exists=True),
              help='JWK file of the tree authority')
@click.option('--creation-slot', type=int, default=0, help='Slot recorded in the header')
@click.option('--strict/--no-strict', default=None,
              help='Only allow dimensions the program can allocate')
@click.pass_obj
def create(config: CompressionConfig, output: str, depth: Optional[int],
           buffer_size: Optional[int], authority_file: Optional[str],
           creation_slot: int, strict: Optional[bool]):
    """Create an empty tree account."""
    try:
        overrides = {
            key: value for key, value in (
                ('max_depth', depth),
                ('max_buffer_size', buffer_size),
                ('strict_sizes', strict),
            ) if value is not None
        }
        tree_config = TreeConfig(**{**config.tree.model_dump(), **overrides})
        merkle_tree = ConcurrentMerkleTree.from_config(tree_config)
    except (ValidationError, CompressionError) as e:
        fail(f"Invalid tree dimensions: {e}")

    authority = load_signer(authority_file)
    try:
        account = ConcurrentMerkleTreeAccount.create(merkle_tree, authority=authority,
                                                     creation_slot=creation_slot)
    except (ValidationError, CompressionError) as e:
        fail(f"Invalid tree header: {e}")
    save_account(account, output)
    click.echo(f"Created tree of depth {merkle_tree.depth} with buffer {merkle_tree.buffer_size} "
               f"({account.size} bytes) at {output}")


@tree.command()
@click.argument('tree_file', type=click.Path(exists=True))
def show(tree_file: str):
    """Show the header and state of a tree account."""
    account = load_account(tree_file)
    click.echo(f"Max depth: {account.depth}")
    click.echo(f"Max buffer size: {account.max_buffer_size}")
    click.echo(f"Authority: {account.authority.hex()}")
    click.echo(f"Creation slot: {account.creation_slot}")
    click.echo(f"Sequence number: {account.sequence_number}")
    click.echo(f"Active index: {account.tree.active_index}")
    click.echo(f"Buffered changes: {len(account.tree.changelog)}")
    click.echo(f"Rightmost index: {account.rightmost_index}")
    click.echo(f"Root: {account.root.hex()}")


@tree.command()
@click.argument('tree_file', type=click.Path(exists=True))
@click.option('--leaf', type=int, help='Only changes touching this leaf')
def history(tree_file: str, leaf: Optional[int]):
    """List buffered changes, newest first."""
    account = load_account(tree_file)
    changelog = account.tree.changelog
    entries = changelog.lookup(leaf) if leaf is not None else list(changelog)
    for entry in entries:
        click.echo(f"seq={entry.sequence_number} leaf={entry.index} root={entry.root.hex()}")


@tree.command()
@click.argument('tree_file', type=click.Path(exists=True))
@click.argument('leaf', type=NODE)
@click.option('--key', '-k', type=click.Path(exists=True),
              help='JWK file of the tree authority')
def append(tree_file: str, leaf: bytes, key: Optional[str]):
    """Append LEAF (hex) to the tree."""
    account = load_account(tree_file)
    signer = load_signer(key)
    try:
        result = account.process(Append(leaf=leaf), signer)
    except CompressionError as e:
        report_error(e)
    save_account(account, tree_file)
    echo_update(result)


@tree.command()
@click.argument('tree_file', type=click.Path(exists=True))
@click.argument('index', type=int)
@click.argument('old', type=NODE)
@click.argument('new', type=NODE)
@click.option('--proof', 'proof_file', required=True, type=click.Path(exists=True),
              help='JSON proof of OLD at INDEX')
@click.option('--key', '-k', type=click.Path(exists=True),
              help='JWK file of the tree authority')
def replace(tree_file: str, index: int, old: bytes, new: bytes, proof_file: str,
            key: Optional[str]):
    """Replace leaf OLD at INDEX with NEW."""
    account = load_account(tree_file)
    nodes = [as_node(node) for node in load_proof(proof_file)]
    signer = load_signer(key)
    try:
        instruction = ReplaceLeaf(root=recompute_root(index, old, nodes), previous_leaf=old,
                                  new_leaf=new, index=index, proof=nodes)
    except ValidationError as e:
        fail(f"Invalid replace instruction: {e}")
    try:
        result = account.process(instruction, signer)
    except CompressionError as e:
        report_error(e)
    save_account(account, tree_file)
    echo_update(result)


@tree.command('verify')
@click.argument('tree_file', type=click.Path(exists=True))
@click.argument('index', type=int)
@click.argument('leaf', type=NODE)
@click.option('--proof', 'proof_file', required=True, type=click.Path(exists=True),
              help='JSON proof of LEAF at INDEX')
def verify_leaf(tree_file: str, index: int, leaf: bytes, proof_file: str):
    """Check that LEAF is stored at INDEX."""
    account = load_account(tree_file)
    nodes = [as_node(node) for node in load_proof(proof_file)]
    try:
        instruction = VerifyLeaf(root=recompute_root(index, leaf, nodes), leaf=leaf,
                                 index=index, proof=nodes)
    except ValidationError as e:
        fail(f"Invalid verify instruction: {e}")
    try:
        account.process(instruction)
    except CompressionError as e:
        report_error(e)
    click.echo("✅ Leaf proof is valid")


@tree.command('transfer-authority')
@click.argument('tree_file', type=click.Path(exists=True))
@click.argument('new_authority', type=click.Path(exists=True))
@click.option('--key', '-k', required=True, type=click.Path(exists=True),
              help='JWK file of the current tree authority')
def transfer_authority(tree_file: str, new_authority: str, key: str):
    """Hand the tree to the key in the NEW_AUTHORITY JWK file."""
    account = load_account(tree_file)
    new_key = load_keypair(new_authority)
    try:
        account.process(TransferAuthority(new_authority=new_key.public_key), load_signer(key))
    except CompressionError as e:
        report_error(e)
    save_account(account, tree_file)
    click.echo(f"Authority transferred to {new_key.kid}")


@tree.command()
@click.argument('tree_file', type=click.Path(exists=True))
@click.option('--key', '-k', type=click.Path(exists=True),
              help='JWK file of the tree authority')
def close(tree_file: str, key: Optional[str]):
    """Close a tree that holds no leaves."""
    account = load_account(tree_file)
    try:
        account.process(CloseEmptyTree(), load_signer(key))
    except CompressionError as e:
        report_error(e)
    save_account(account, tree_file)
    click.echo(f"Closed tree account {tree_file}")


@tree.command('sign-head')
@click.argument('tree_file', type=click.Path(exists=True))
@click.option('--key', '-k', required=True, type=click.Path(exists=True),
              help='JWK file of the tree authority')
@click.option('--output', '-o', help='Output file for the signed tree head')
def sign_head(tree_file: str, key: str, output: Optional[str]):
    """Sign the current root of a tree."""
    account = load_account(tree_file)
    key_pair = load_keypair(key)
    if account.authority != key_pair.public_key:
        fail("Key does not match the tree authority")
    head = sign_tree_head(account.tree, key_pair)
    text = head.model_dump_json(indent=2)
    if output:
        Path(output).write_text(text)
        click.echo(f"Signed tree head saved to {output}")
    else:
        click.echo(text)


@tree.command('verify-head')
@click.argument('head_file', type=click.Path(exists=True))
@click.option('--public-key', required=True, type=click.Path(exists=True),
              help='JWK file of the tree authority')
def verify_head(head_file: str, public_key: str):
    """Verify a signed tree head."""
    try:
        head = SignedTreeHead.model_validate_json(Path(head_file).read_text())
    except (OSError, ValidationError) as e:
        fail(f"Error loading signed tree head: {e}")
    key_pair = load_keypair(public_key)
    if verify_tree_head(head, key_pair.public_key):
        click.echo("✅ Tree head signature is valid")
    else:
        fail("❌ Invalid tree head signature")


# Proof commands
@cli.group()
def proof():
    """Build proofs from a list of leaves."""
    pass


@proof.command()
@click.argument('leaves_file', type=click.Path(exists=True))
@click.argument('index', type=int)
@click.option('--depth', type=int, help='Tree depth (default: configured max depth)')
@click.pass_obj
def build(config: CompressionConfig, leaves_file: str, index: int, depth: Optional[int]):
    """Print the proof of leaf INDEX from a JSON list of hex leaves."""
    try:
        with open(leaves_file, 'r') as f:
            leaves = [bytes.fromhex(leaf) for leaf in json.load(f)]
        mirror = MerkleTree(depth or config.tree.max_depth, leaves)
        path = mirror.get_inclusion_proof(index)
    except (OSError, ValueError, TypeError) as e:
        fail(f"Error building proof: {e}")
    click.echo(json.dumps({
        "root": mirror.root.hex(),
        "leaf": mirror.get_leaf(index).hex(),
        "index": index,
        "proof": [node.model_dump() for node in path],
    }, indent=2))


# Main entry point
if __name__ == '__main__':
    cli()
