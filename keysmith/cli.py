"""
Keysmith CLI — entry point for all operations.

Usage:
    keysmith serve              # Start the local API daemon
    keysmith list               # List stored secrets (metadata only)
    keysmith get ID             # Print a secret's value
    keysmith set ID             # Store a secret (value read from a prompt or stdin)
    keysmith delete ID          # Remove a secret
    keysmith export FILE        # Write a password-protected export
    keysmith import FILE        # Load a password-protected export
    keysmith version            # Show version

The local backend's passphrase comes from $KEYSMITH_VAULT_PASSPHRASE or a prompt.
"""

from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="keysmith",
        description="Keysmith — local encrypted vault for API keys and OAuth tokens.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the local API daemon")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: 9310)")

    # list
    list_parser = subparsers.add_parser("list", help="List stored secrets")
    list_parser.add_argument("--json", action="store_true", help="Print metadata as JSON")

    # get
    get_parser = subparsers.add_parser("get", help="Print a secret's value")
    get_parser.add_argument("id", help="Secret id")
    get_parser.add_argument("--json", action="store_true", help="Print the full record as JSON")

    # set
    set_parser = subparsers.add_parser("set", help="Store a secret")
    set_parser.add_argument("id", help="Secret id")
    set_parser.add_argument("--type", choices=["apiKey", "oauth"], default="apiKey")
    set_parser.add_argument("--service-id", default="", help="Service the secret belongs to")
    set_parser.add_argument("--name", default="", help="Display name")
    set_parser.add_argument(
        "--stdin", action="store_true", help="Read the value from stdin instead of prompting"
    )

    # delete
    delete_parser = subparsers.add_parser("delete", help="Remove a secret")
    delete_parser.add_argument("id", help="Secret id")

    # export
    export_parser = subparsers.add_parser("export", help="Write a password-protected export")
    export_parser.add_argument("file", type=Path, help="Output file")

    # import
    import_parser = subparsers.add_parser("import", help="Load a password-protected export")
    import_parser.add_argument("file", type=Path, help="Export file")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from keysmith import __version__

        print(f"keysmith {__version__}")
        return 0

    handlers = {
        "serve": _cmd_serve,
        "list": _cmd_list,
        "get": _cmd_get,
        "set": _cmd_set,
        "delete": _cmd_delete,
        "export": _cmd_export,
        "import": _cmd_import,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    from keysmith.errors import KeysmithError

    try:
        return handler(args)
    except KeysmithError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _passphrase(cfg) -> str | None:
    if cfg.vault.backend != "local":
        return None
    return os.environ.get("KEYSMITH_VAULT_PASSPHRASE") or getpass.getpass("Vault passphrase: ")


def _open_store():
    from keysmith.config import get_config
    from keysmith.vault.store import open_store

    cfg = get_config()
    return open_store(cfg, passphrase=_passphrase(cfg))


def _cmd_serve(args: argparse.Namespace) -> int:
    import asyncio
    from dataclasses import replace

    from keysmith.config import get_config
    from keysmith.daemon import main as daemon_main

    cfg = get_config()
    if args.port is not None:
        cfg = replace(cfg, api_port=args.port)

    print(f"Starting Keysmith on {cfg.api_host}:{cfg.api_port}...")
    try:
        asyncio.run(daemon_main(cfg, passphrase=_passphrase(cfg)))
    except KeyboardInterrupt:
        pass
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    secrets = _open_store().list()
    if args.json:
        print(json.dumps([m.model_dump(mode="json", by_alias=True) for m in secrets], indent=2))
        return 0
    if not secrets:
        print("No secrets stored.")
        return 0
    for meta in secrets:
        updated = meta.updated_at.strftime("%Y-%m-%d %H:%M") if meta.updated_at else "-"
        service = meta.service_id or "-"
        print(f"  {meta.id:<30} {meta.type.value:<7} {service:<16} {updated}")
    return 0


def _cmd_get(args: argparse.Namespace) -> int:
    record = _open_store().get(args.id)
    if record is None:
        print(f"Error: no secret named {args.id!r}", file=sys.stderr)
        return 1
    if args.json:
        print(record.model_dump_json(by_alias=True, indent=2))
    else:
        print(record.value)
    return 0


def _cmd_set(args: argparse.Namespace) -> int:
    if args.stdin:
        value = sys.stdin.read().strip()
    else:
        value = getpass.getpass(f"Value for {args.id}: ")

    meta = _open_store().save(
        {
            "id": args.id,
            "type": args.type,
            "service_id": args.service_id,
            "name": args.name,
            "value": value,
        }
    )
    print(f"Saved {meta.id}")
    return 0


def _cmd_delete(args: argparse.Namespace) -> int:
    if _open_store().delete(args.id):
        print(f"Deleted {args.id}")
    else:
        print(f"{args.id} was not stored")
    return 0


def _cmd_export(args: argparse.Namespace) -> int:
    store = _open_store()
    password = getpass.getpass("Export password: ")
    if password != getpass.getpass("Repeat export password: "):
        print("Error: passwords do not match", file=sys.stderr)
        return 1

    exported, count = store.export_with_count(password)
    fd = os.open(args.file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)  # O_CREAT leaves an existing file's mode alone
    with os.fdopen(fd, "w") as f:
        f.write(exported)
    print(f"Exported {count} secrets to {args.file}")
    return 0


def _cmd_import(args: argparse.Namespace) -> int:
    if not args.file.is_file():
        print(f"Error: {args.file} not found", file=sys.stderr)
        return 1
    store = _open_store()
    count = store.import_(args.file.read_text(), getpass.getpass("Export password: "))
    print(f"Imported {count} secrets")
    return 0


if __name__ == "__main__":
    sys.exit(main())
