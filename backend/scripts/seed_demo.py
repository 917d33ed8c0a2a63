#!/usr/bin/env python3
import argparse
import asyncio
import logging
import os
import sys
from typing import Any, Dict, List

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from autofix import config
from autofix.models import Customer, Location, Mechanic
from autofix.services.collection_store import LocalCollectionStore
from autofix.services.kv_store import SqliteKeyValueStore

logger = logging.getLogger("seed_demo")

DEMO_LOCATION = Location(latitude=37.7749, longitude=-122.4194, address="San Francisco, CA")

DEMO_MECHANICS: List[Dict[str, Any]] = [
    {
        "id": "demo_mech_1",
        "full_name": "Mike Torres",
        "phone": "+1 415 555 0101",
        "services": ["Battery", "Tire Change", "Jump Start"],
        "location": {"latitude": 37.7793, "longitude": -122.4192, "address": "Civic Center, San Francisco"},
        "rating": 4.8,
        "experience": 9,
        "hourly_rate": 65,
        "total_jobs": 212,
        "verification_status": "verified",
        "description": "Roadside battery and tire specialist.",
    },
    {
        "id": "demo_mech_2",
        "full_name": "Sara Okafor",
        "phone": "+1 415 555 0102",
        "services": ["Engine Diagnostics", "Towing"],
        "location": {"latitude": 37.7599, "longitude": -122.4148, "address": "Mission District, San Francisco"},
        "rating": 4.6,
        "experience": 6,
        "hourly_rate": 70,
        "total_jobs": 134,
        "verification_status": "verified",
    },
    {
        "id": "demo_mech_3",
        "full_name": "Dan Whitfield",
        "phone": "+1 415 555 0103",
        "services": ["Lockout", "Fuel Delivery", "Tire Change"],
        "location": {"latitude": 37.8024, "longitude": -122.4058, "address": "North Beach, San Francisco"},
        "rating": 4.3,
        "experience": 3,
        "hourly_rate": 50,
        "total_jobs": 41,
        "is_available": False,
    },
]

DEMO_CUSTOMERS: List[Dict[str, Any]] = [
    {
        "id": "demo_cust_1",
        "full_name": "Alex Rivera",
        "phone": "+1 415 555 0199",
        "car_type": "2016 Honda Civic",
        "location": DEMO_LOCATION.model_dump(),
    },
]


async def seed(db_path: str) -> Dict[str, int]:
    store = LocalCollectionStore(SqliteKeyValueStore(db_path))
    await store.load_all()
    added = {"customers": 0, "mechanics": 0}
    for collection, model, rows in (
        ("customers", Customer, DEMO_CUSTOMERS),
        ("mechanics", Mechanic, DEMO_MECHANICS),
    ):
        for row in rows:
            if store.get(collection, row["id"]) is not None:
                continue
            await store.add(collection, model.model_validate(row))
            added[collection] += 1
    await store.teardown()
    return added


def main() -> int:
    parser = argparse.ArgumentParser(description="Write demo customers and mechanics into device storage.")
    parser.add_argument("--db-path", default=config.KV_DB_PATH, help="Key-value store sqlite file.")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
    added = asyncio.run(seed(args.db_path))
    logger.info("Seeded %d customer(s) and %d mechanic(s) into %s", added["customers"], added["mechanics"], args.db_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
