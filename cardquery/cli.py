"""CLI for fetching card sets and searching them."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from cardquery.card_model import Card
from cardquery.card_store import Scope, SetStore
from cardquery.query_engine import ConsistencyFault, QueryEngine
from cardquery.query_parser import ParseError
from cardquery.refresher import STATUS_FAILED, RefreshResult, SetRefresher
from cardquery.set_fetcher import SetFetcher, SourceRef

DEFAULT_LIMIT = 20


def load_sources(path: Path) -> list[SourceRef]:
    """Load the sources file: a JSON list of source objects.

    Relative "path" entries are resolved against the sources file's
    directory.

    Raises:
        ValueError: If the file is not a list of valid sources
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of sources")

    sources = []
    for entry in data:
        if not isinstance(entry, dict) or "set_id" not in entry:
            raise ValueError(f"{path}: every source needs a set_id, got {entry!r}")
        if entry.get("path") and not Path(entry["path"]).is_absolute():
            entry = {**entry, "path": str(path.parent / entry["path"])}
        sources.append(SourceRef.from_dict(entry))
    return sources


def format_stat(value: int | float | None) -> str:
    """Format an optional stat; absent stats print as '-'."""
    return "-" if value is None else f"{value:g}"


def format_card(card: Card) -> str:
    """One-line summary of a card."""
    line = (
        f"{card.name} [{card.set_id}] "
        f"cost {format_stat(card.cost)} "
        f"{format_stat(card.attack)}/{format_stat(card.health)} "
        f"({card.rarity.value})"
    )
    if card.tags:
        line += f" - {', '.join(sorted(card.tags))}"
    return line


def print_results(results: list[RefreshResult]) -> None:
    """Print one line per refreshed set."""
    for result in results:
        line = f"  {result.set_id}: {result.status}"
        if result.card_count:
            line += f" ({result.card_count:,} cards)"
        if result.error:
            line += f" - {result.error}"
        print(line)


async def load_store(sources: list[SourceRef]) -> tuple[SetStore, list[RefreshResult]]:
    """Fetch every source into a fresh store."""
    store = SetStore()
    async with SetFetcher() as fetcher:
        results = await SetRefresher(fetcher, store).refresh_all(sources)
    return store, results


async def search_cards(
    sources: list[SourceRef],
    query: str,
    set_ids: list[str] | None = None,
    limit: int = DEFAULT_LIMIT,
) -> int:
    """Fetch the sets, run one query and print the matches.

    Returns:
        Process exit code
    """
    store, results = await load_store(sources)
    for result in results:
        if result.status == STATUS_FAILED:
            print(f"Warning: set {result.set_id} unavailable: {result.error}", file=sys.stderr)

    engine = QueryEngine(store)
    try:
        cards = engine.search(query, Scope.parse(set_ids))
    except ParseError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(f"Supported syntax: {e.supported_syntax}", file=sys.stderr)
        return 2
    except ConsistencyFault as e:
        print(f"Internal error: {e}", file=sys.stderr)
        return 1

    if not cards:
        print("No cards found.")
        return 0

    for card in cards[:limit]:
        print(format_card(card))
    if len(cards) > limit:
        print(f"... and {len(cards) - limit:,} more ({len(cards):,} total)")
    return 0


async def refresh_sets(sources: list[SourceRef]) -> int:
    """Fetch every set once and report the outcome.

    Returns:
        Process exit code (1 if any set failed)
    """
    print(f"Fetching {len(sources)} set(s)...")
    store, results = await load_store(sources)
    print_results(results)

    stats = store.stats()
    print()
    print(f"Loaded {stats.set_count} set(s), {stats.card_count:,} cards.")
    return 1 if any(r.status == STATUS_FAILED for r in results) else 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="cardquery - Fetch card sets and search them with a filter query",
    )

    parser.add_argument(
        "--sources",
        type=Path,
        required=True,
        help="JSON file listing the sets to fetch",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log debug output to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Search command
    search_parser = subparsers.add_parser(
        "search",
        help="Search cards (e.g. 'cost<3 -tags:rare')",
    )
    search_parser.add_argument("query", help="Filter query")
    search_parser.add_argument(
        "--set",
        dest="set_ids",
        action="append",
        help="Restrict the search to a set id (repeatable)",
    )
    search_parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_LIMIT,
        help=f"Maximum cards to print (default: {DEFAULT_LIMIT})",
    )

    # Refresh command
    subparsers.add_parser(
        "refresh",
        help="Fetch every set once and report the result",
    )

    # Serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the MCP server over stdio",
    )
    serve_parser.add_argument(
        "--refresh-interval",
        type=float,
        default=None,
        help="Seconds between background refreshes (default: no refresh)",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command is None:
        parser.print_help()
        return 0

    try:
        sources = load_sources(args.sources)
    except (OSError, ValueError) as e:
        print(f"Error: cannot load sources: {e}", file=sys.stderr)
        return 2

    if args.command == "search":
        return asyncio.run(search_cards(sources, args.query, args.set_ids, args.limit))
    elif args.command == "refresh":
        return asyncio.run(refresh_sets(sources))
    elif args.command == "serve":
        from cardquery.server import run_server

        asyncio.run(run_server(sources, args.refresh_interval))
        return 0
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
