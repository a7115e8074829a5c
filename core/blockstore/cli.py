"""
Command-line interface for the block registry.

Usage:
    blockstore register --module my_pkg.blocks
    blockstore register --file ./my_blocks.py
    blockstore register --builtins

    blockstore block ls [--type SLUG]
    blockstore block inspect SLUG/NAME
    blockstore block delete SLUG/NAME
    blockstore block delete --id ID
    blockstore block type ls
    blockstore block type delete SLUG

    blockstore vault generate-key
    blockstore vault rotate-key [--new-key KEY]

Secret field values are always printed masked.
"""

from __future__ import annotations

import argparse
import json
import sys
import traceback
import uuid
from typing import Any

from .client import BlockClient
from .errors import BlockstoreError, ValidationError
from .logging_config import LogContext, configure_logging, get_logger
from .resilience import retry_transient
from .settings import BlockstoreSettings, load_settings
from .vault import SecretVault

logger = get_logger(__name__)


def _build_client(args: argparse.Namespace) -> BlockClient:
    return BlockClient.from_settings(args.settings)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# =============================================================================
# register
# =============================================================================


def register_register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``register`` command with the main CLI."""
    register_parser = subparsers.add_parser(
        "register",
        help="Register block types",
        description="Register the Block subclasses defined in a module or file.",
    )
    source = register_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--module", "-m", type=str, help="Dotted module name to import")
    source.add_argument("--file", "-f", type=str, help="Path to a Python file")
    source.add_argument("--builtins", action="store_true", help="Register the built-in block types")
    register_parser.set_defaults(func=cmd_register)


def cmd_register(args: argparse.Namespace) -> int:
    """Register block types from a module, a file or the built-in catalog."""
    client = _build_client(args)

    if args.builtins:
        from .catalog import register_builtin_blocks

        slugs = register_builtin_blocks(client)
    else:
        from .discovery import load_file, load_module, register_blocks_from

        module = load_module(args.module) if args.module else load_file(args.file)
        slugs = register_blocks_from(module, client)

    for slug in slugs:
        print(f"Registered block type {slug!r}")
    return 0


# =============================================================================
# block
# =============================================================================


def register_block_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``block`` command group with the main CLI."""
    block_parser = subparsers.add_parser(
        "block",
        help="Manage block documents and block types",
        description="List, inspect and delete block documents and block types.",
    )
    block_subparsers = block_parser.add_subparsers(dest="block_cmd", required=True)

    # block ls
    ls_parser = block_subparsers.add_parser("ls", help="List block documents")
    ls_parser.add_argument("--type", "-t", dest="type_slug", type=str, help="Only this block type")
    ls_parser.add_argument("--json", action="store_true", help="Output as JSON")
    ls_parser.set_defaults(func=cmd_block_ls)

    # block inspect
    inspect_parser = block_subparsers.add_parser("inspect", help="Show a block document")
    inspect_parser.add_argument("key", type=str, help="Document key, e.g. 'cube/rubiks-cube'")
    inspect_parser.add_argument(
        "--no-hydrate",
        action="store_true",
        help="Show references instead of the referenced documents",
    )
    inspect_parser.set_defaults(func=cmd_block_inspect)

    # block delete
    delete_parser = block_subparsers.add_parser("delete", help="Delete a block document")
    target = delete_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("key", nargs="?", type=str, help="Document key, e.g. 'cube/rubiks-cube'")
    target.add_argument("--id", dest="document_id", type=str, help="Document id")
    delete_parser.set_defaults(func=cmd_block_delete)

    # block type ...
    type_parser = block_subparsers.add_parser("type", help="Manage block types")
    type_subparsers = type_parser.add_subparsers(dest="type_cmd", required=True)

    type_ls_parser = type_subparsers.add_parser("ls", help="List registered block types")
    type_ls_parser.add_argument("--json", action="store_true", help="Output as JSON")
    type_ls_parser.set_defaults(func=cmd_block_type_ls)

    type_delete_parser = type_subparsers.add_parser("delete", help="Delete a block type")
    type_delete_parser.add_argument("slug", type=str, help="Block type slug")
    type_delete_parser.set_defaults(func=cmd_block_type_delete)


def cmd_block_ls(args: argparse.Namespace) -> int:
    """List block documents, optionally of a single type."""
    client = _build_client(args)
    documents = retry_transient()(client.list_documents)(args.type_slug)

    if args.json:
        _print_json([doc.model_dump(mode="json") for doc in documents])
        return 0

    if not documents:
        print("No block documents found.")
        return 0

    for doc in documents:
        print(f"{doc.key:<48} v{doc.version:<4} {doc.id}")
    return 0


def cmd_block_inspect(args: argparse.Namespace) -> int:
    """Show one block document with its secrets masked."""
    client = _build_client(args)
    document = retry_transient()(client.load_by_key)(args.key, hydrate=not args.no_hydrate)
    _print_json(document.model_dump(mode="json"))
    return 0


def cmd_block_delete(args: argparse.Namespace) -> int:
    """Delete a block document by key or id."""
    client = _build_client(args)
    if args.document_id:
        document = retry_transient()(client.delete_by_id)(args.document_id)
        print(f"Deleted {document.key}")
    else:
        retry_transient()(client.delete_by_key)(args.key)
        print(f"Deleted {args.key}")
    return 0


def cmd_block_type_ls(args: argparse.Namespace) -> int:
    """List registered block types."""
    client = _build_client(args)
    schemas = client.list_block_types()

    if args.json:
        _print_json([schema.model_dump(mode="json") for schema in schemas])
        return 0

    if not schemas:
        print("No block types registered.")
        return 0

    for schema in schemas:
        secret = schema.secret_fields
        line = f"{schema.slug:<32} v{schema.version:<4} {len(schema.fields)} field(s)"
        if secret:
            line += f"  secret: {', '.join(secret)}"
        print(line)
    return 0


def cmd_block_type_delete(args: argparse.Namespace) -> int:
    """Delete a block type with no remaining documents."""
    client = _build_client(args)
    client.delete_block_type(args.slug)
    print(f"Deleted block type {args.slug!r}")
    return 0


# =============================================================================
# vault
# =============================================================================


def register_vault_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``vault`` command group with the main CLI."""
    vault_parser = subparsers.add_parser(
        "vault",
        help="Manage the encryption key",
        description="Generate encryption keys and re-encrypt stored secrets.",
    )
    vault_subparsers = vault_parser.add_subparsers(dest="vault_cmd", required=True)

    generate_parser = vault_subparsers.add_parser("generate-key", help="Print a new encryption key")
    generate_parser.set_defaults(func=cmd_vault_generate_key)

    rotate_parser = vault_subparsers.add_parser(
        "rotate-key",
        help="Re-encrypt every stored secret with a new key",
        description=(
            "Re-encrypt every stored secret. The current key is read from "
            "BLOCKSTORE_ENCRYPTION_KEY; a new key is generated unless --new-key is given."
        ),
    )
    rotate_parser.add_argument("--new-key", type=str, help="Key to rotate to")
    rotate_parser.set_defaults(func=cmd_vault_rotate_key)


def cmd_vault_generate_key(args: argparse.Namespace) -> int:
    """Print a fresh Fernet key."""
    print(SecretVault.generate_key().decode())
    return 0


def cmd_vault_rotate_key(args: argparse.Namespace) -> int:
    """Re-encrypt stored secrets with a new key and print the key to persist."""
    settings: BlockstoreSettings = args.settings
    if settings.encryption_key is None:
        raise ValidationError(
            "No current encryption key: set BLOCKSTORE_ENCRYPTION_KEY before rotating"
        )

    new_key = args.new_key or SecretVault.generate_key().decode()
    client = _build_client(args)
    rotated = client.rotate_encryption_key(new_key)

    print(f"Re-encrypted {len(rotated)} document(s).", file=sys.stderr)
    print("Update BLOCKSTORE_ENCRYPTION_KEY to the new key:", file=sys.stderr)
    print(new_key)
    return 0


# =============================================================================
# main
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blockstore",
        description="Hive blockstore - typed, secret-aware configuration blocks",
    )
    parser.add_argument("--home", type=str, help="Storage directory (default: ~/.blockstore)")
    parser.add_argument(
        "--storage",
        choices=["file", "memory"],
        help="Storage backend (default: file)",
    )
    parser.add_argument("--config", type=str, help="YAML settings file")
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show full tracebacks on error",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_register_commands(subparsers)
    register_block_commands(subparsers)
    register_vault_commands(subparsers)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        args.settings = load_settings(
            config_file=args.config,
            home=args.home,
            storage=args.storage,
        )
        configure_logging(
            json_output=args.settings.log_json,
            log_level="DEBUG" if args.verbose else args.settings.log_level,
        )
        with LogContext(request_id=uuid.uuid4().hex[:12]):
            logger.debug("cli_command", command=args.command)
            return args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    except (BlockstoreError, ValueError) as e:
        # ValueError: malformed encryption key
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc(file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
