#!/usr/bin/env python3
import argparse
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from autofix import config
from autofix.services.kv_store import SqliteKeyValueStore

logger = logging.getLogger("clear_storage")


async def clear_storage(db_path: str) -> None:
    store = SqliteKeyValueStore(db_path)
    await store.clear()


def main() -> int:
    parser = argparse.ArgumentParser(description="Remove all saved data, including user accounts, from device storage.")
    parser.add_argument("--db-path", default=config.KV_DB_PATH, help="Key-value store sqlite file.")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
    asyncio.run(clear_storage(args.db_path))
    logger.info("Storage cleared: %s", args.db_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
