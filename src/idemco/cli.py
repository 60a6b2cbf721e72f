"""idemco CLI - maintenance commands for the idempotency store.

Usage:
    python -m idemco purge-expired [--batch-size N] [--db-path PATH]
    python -m idemco show --tenant TENANT --key KEY [--db-path PATH]
    python -m idemco migrate [--revision REV]

The store is PostgreSQL when IDEMCO_DATABASE_URL is set, otherwise SQLite
(IDEMCO_IDEMPOTENCY_DB_PATH or --db-path).

Exit codes:
    0: Success
    1: Failure / Internal error
    2: Record not found (show)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from idemco.idempotency.cleanup import DEFAULT_PURGE_BATCH_SIZE, purge_expired_records
from idemco.idempotency.coordinator import IdempotencyCoordinator, create_default_store
from idemco.idempotency.errors import IdempotencyError
from idemco.idempotency.models import IdempotencyRecord, IdempotencyStatus
from idemco.idempotency.serialization import deserialize_response
from idemco.idempotency.store import IdempotencyStore, SqliteIdempotencyStore

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NOT_FOUND = 2


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2, default=str))


def _make_error_result(code: str, message: str) -> dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message}}


def _open_store(args: argparse.Namespace) -> IdempotencyStore:
    db_path = getattr(args, "db_path", None)
    if db_path:
        return SqliteIdempotencyStore(db_path=db_path)
    return create_default_store()


def _record_to_dict(record: IdempotencyRecord) -> dict[str, Any]:
    response = None
    if record.status == IdempotencyStatus.COMPLETED and record.response is not None:
        response = deserialize_response(record.response)
    return {
        "tenant_id": record.tenant_id,
        "idempotency_key": record.idempotency_key,
        "operation": record.operation.value,
        "status": record.status.value,
        "entity_type": record.entity_type,
        "entity_id": record.entity_id,
        "attempts": record.attempts,
        "expires_at": record.expires_at.isoformat(),
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
        "response": response,
    }


def cmd_purge_expired(args: argparse.Namespace) -> int:
    """Delete expired records and print the count."""
    store = _open_store(args)
    deleted = purge_expired_records(store, batch_size=args.batch_size)
    _output_json({"ok": True, "deleted": deleted})
    return EXIT_OK


def cmd_show(args: argparse.Namespace) -> int:
    """Print the live record for a tenant/key pair."""
    coordinator = IdempotencyCoordinator(store=_open_store(args))
    record = coordinator.lookup(args.tenant, args.key)
    if record is None:
        _output_json(_make_error_result("NOT_FOUND", "Idempotency record not found"))
        return EXIT_NOT_FOUND
    _output_json({"ok": True, "record": _record_to_dict(record)})
    return EXIT_OK


def cmd_migrate(args: argparse.Namespace) -> int:
    """Apply PostgreSQL migrations (IDEMCO_DATABASE_ADMIN_URL)."""
    from idemco.persistence.migrate import run_upgrade

    run_upgrade(revision=args.revision)
    _output_json({"ok": True, "revision": args.revision})
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="idemco",
        description="idemco - Idempotent Operation Coordinator CLI",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable INFO logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    purge_parser = subparsers.add_parser("purge-expired", help="Delete expired records")
    purge_parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_PURGE_BATCH_SIZE,
        help=f"Rows deleted per batch (default: {DEFAULT_PURGE_BATCH_SIZE})",
    )
    purge_parser.add_argument("--db-path", default=None, metavar="PATH", help="SQLite store path")

    show_parser = subparsers.add_parser("show", help="Show a live idempotency record")
    show_parser.add_argument("--tenant", required=True, help="Tenant identifier")
    show_parser.add_argument("--key", required=True, help="Idempotency key")
    show_parser.add_argument("--db-path", default=None, metavar="PATH", help="SQLite store path")

    migrate_parser = subparsers.add_parser("migrate", help="Apply PostgreSQL migrations")
    migrate_parser.add_argument("--revision", default="head", help="Target revision")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    commands = {
        "purge-expired": cmd_purge_expired,
        "show": cmd_show,
        "migrate": cmd_migrate,
    }

    try:
        return commands[args.command](args)
    except (IdempotencyError, ValueError) as e:
        code = e.code if isinstance(e, IdempotencyError) else "INVALID_ARGUMENT"
        _output_json(_make_error_result(code, str(e)))
        return EXIT_FAILURE
    except Exception as e:
        # Fail-closed: unexpected errors return exit code 1
        _output_json(_make_error_result("INTERNAL_ERROR", str(e)))
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
