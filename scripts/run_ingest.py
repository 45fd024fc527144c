# scripts/run_ingest.py
import argparse
import asyncio
import dataclasses
import json
import sys
from typing import Optional

from dotenv import load_dotenv
load_dotenv()

from eotracker.config import Settings, setup_logging
from eotracker.errors import IngestError
from eotracker.fetcher import build_fetcher
from eotracker.pipeline import run_ingestion
from eotracker.store import PostgresDocumentStore, build_store


async def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one presidential-actions ingestion cycle")
    parser.add_argument("--dry-run", action="store_true", help="Crawl and dedup, but write nothing")
    parser.add_argument("--reconcile", action="store_true", help="Also update known documents whose text changed")
    parser.add_argument("--no-enrich", action="store_true", help="Skip detail-page fetches")
    parser.add_argument("--max-pages", type=int, default=None, help="Listing pages to walk")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    if args.max_pages:
        settings = dataclasses.replace(settings, max_pages=args.max_pages)
    setup_logging(settings.log_level)

    store = build_store(settings)
    try:
        if isinstance(store, PostgresDocumentStore) and not args.dry_run:
            await store.ensure_schema()
        result = await run_ingestion(
            build_fetcher(settings),
            store,
            settings,
            dry_run=args.dry_run,
            reconcile=args.reconcile,
            enrich=not args.no_enrich,
        )
    except IngestError as e:
        print(f"[WH] ingestion failed: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        await store.close()

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
