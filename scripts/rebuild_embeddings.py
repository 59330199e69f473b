#!/usr/bin/env python3
"""
Embedding Rebuild Script

Re-embeds every active item of the configured knowledge sources and writes
the refreshed vectors back to their stores. Run this after changing the
embedding model or provider.

Usage:
    python scripts/rebuild_embeddings.py [--dry-run] [--source tickets]
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from opsdesk.common.config import load_config
from opsdesk.common.errors import OpsDeskError
from opsdesk.retriever.context import build_context


async def rebuild(sources, dry_run: bool) -> int:
    config = load_config()

    print(f"[Rebuild] Embedding mode: {config.embedding.mode}")
    print(f"[Rebuild] Model: {config.embedding.model}")
    context = build_context(config)

    if not context.embedding_service.is_available:
        print("[Rebuild] ERROR: Embedding service not available")
        return 1

    names = sources or list(context.connectors)
    unknown = [n for n in names if n not in context.connectors]
    if unknown:
        print(f"[Rebuild] ERROR: Unknown or disabled sources: {', '.join(unknown)}")
        return 1

    if dry_run:
        print("[Rebuild] DRY RUN - no changes will be made")
        for name in names:
            print(f"[Rebuild] Would re-embed source '{name}' from {config.sources.data_dir}")
        return 0

    failed = 0
    for name in names:
        connector = context.connectors[name]
        print(f"[Rebuild] Re-embedding '{name}'...")
        try:
            await connector.reload()
        except OpsDeskError as e:
            print(f"[Rebuild] ERROR: {name}: {e}")
            failed += 1
            continue
        stats = connector.stats()
        print(
            f"[Rebuild] {name}: {stats['embedded']}/{stats['active']} active items embedded "
            f"(dimension {stats['dimension']})"
        )

    print(f"[Rebuild] Done. {len(names) - failed}/{len(names)} sources rebuilt")
    return 1 if failed else 0


def main():
    parser = argparse.ArgumentParser(description="Re-embed knowledge sources with the configured model")
    parser.add_argument("--dry-run", action="store_true", help="Print what would be done without executing")
    parser.add_argument(
        "--source",
        action="append",
        dest="sources",
        help="Source to rebuild (repeatable; default: all enabled sources)",
    )
    args = parser.parse_args()

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(rebuild(args.sources, args.dry_run)))


if __name__ == "__main__":
    main()
