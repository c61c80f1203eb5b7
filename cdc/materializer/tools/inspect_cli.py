"""
Inspect CLI for the CDC materializer.

Reads the SQLite document store directly; no running materializer is
required.

Usage:
    cdc-inspect show customers C1
    cdc-inspect list orders --limit 20
    cdc-inspect schema customer
    cdc-inspect history --entity customer

Invariants:
    - Never writes documents to the store
    - JSON output is deterministic (sorted keys)

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from ..apply import provenance_of, to_public
from ..config import StoreSettings
from ..schema import SchemaHistory, expected_fields
from ..schema.baseline import EXPECTED_FIELDS
from ..store import SqliteDocumentStore


class InspectCLI:
    """Queries against a document store.

    Example:
        >>> cli = InspectCLI(SqliteDocumentStore("documents.db"))
        >>> await cli.show("customers", "C1")
    """

    def __init__(self, store: SqliteDocumentStore) -> None:
        self.store = store

    async def show(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """A materialized document, or its tombstone if it was deleted."""
        document = await self.store.find_by_id(collection, doc_id)
        if document is not None:
            provenance = provenance_of(document)
            return {
                "document": to_public(document),
                "revision": document["_revision"],
                "source_timestamp": provenance.source_timestamp if provenance else None,
            }

        tombstone = await self.store.find_tombstone(collection, doc_id)
        if tombstone is not None:
            return {"deleted": True, "source_timestamp": tombstone}
        return None

    async def list_documents(self, collection: str, limit: int) -> list[dict[str, Any]]:
        return [to_public(d) for d in await self.store.list_documents(collection, limit)]

    async def schema(self, entity_type: str) -> dict[str, Any]:
        """Baseline fields plus every field recorded in the schema history."""
        history = await self.history(entity_type)
        observed = sorted({h["field_name"] for h in history})
        return {
            "entity_type": entity_type,
            "expected_fields": sorted(expected_fields(entity_type)),
            "new_fields": observed,
            "known_fields": sorted(expected_fields(entity_type) | set(observed)),
        }

    async def history(self, entity_type: str | None = None) -> list[dict[str, Any]]:
        changes = await SchemaHistory(self.store).list_changes(entity_type)
        return [to_public(c) for c in changes]


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


async def _run(args: argparse.Namespace) -> int:
    cli = InspectCLI(SqliteDocumentStore(args.db))

    if args.command == "show":
        result = await cli.show(args.collection, args.id)
        if result is None:
            print(f"{args.collection}/{args.id} not found", file=sys.stderr)
            return 1
        _print(result)

    elif args.command == "list":
        _print(await cli.list_documents(args.collection, args.limit))

    elif args.command == "schema":
        entity_types = [args.entity_type] if args.entity_type else sorted(EXPECTED_FIELDS)
        _print([await cli.schema(e) for e in entity_types])

    elif args.command == "history":
        _print(await cli.history(args.entity))

    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the inspect tool."""
    parser = argparse.ArgumentParser(description="CDC materializer inspection tool")
    parser.add_argument(
        "--db",
        default=StoreSettings().path,
        help="Path to the SQLite document store (default: STORE_PATH)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show_parser = subparsers.add_parser("show", help="Show one materialized document")
    show_parser.add_argument("collection", help="Collection, e.g. customers")
    show_parser.add_argument("id", help="Document id")

    list_parser = subparsers.add_parser("list", help="List documents of a collection")
    list_parser.add_argument("collection", help="Collection, e.g. orders")
    list_parser.add_argument("--limit", type=int, default=20)

    schema_parser = subparsers.add_parser("schema", help="Show known fields per entity type")
    schema_parser.add_argument("entity_type", nargs="?", help="Entity type (default: all)")

    history_parser = subparsers.add_parser("history", help="Show detected schema changes")
    history_parser.add_argument("--entity", help="Only changes for this entity type")

    args = parser.parse_args(argv)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
