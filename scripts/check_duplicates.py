# scripts/check_duplicates.py
import asyncio
import json

from dotenv import load_dotenv
load_dotenv()

from eotracker.config import Settings
from eotracker.db import DatabasePool
from eotracker.store import PostgresDocumentStore


async def main() -> int:
    settings = Settings.from_env()
    store = PostgresDocumentStore(DatabasePool(settings.database_url))
    try:
        duplicates = await store.find_duplicate_urls()
    finally:
        await store.close()

    if duplicates:
        print("Found duplicate URLs:")
        print(json.dumps(duplicates, indent=2, default=str))
        return 1
    print("No duplicate URLs found.")
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
