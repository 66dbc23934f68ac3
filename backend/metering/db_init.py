"""
Metering storage bootstrap

Creates the collections and indexes the gateway relies on. Nothing is ever
dropped, and accounts are not created here (they appear on first verified
identity). Safe to run any number of times: only what is missing is created.

The unique indexes carry correctness, not just speed: they back the
exactly-once writes of account provisioning, usage records, ledger entries
and payment events.

Usage:
    At startup: await ensure_indexes(db)
    CLI: python -m metering.db_init [--dry-run]
    In production the CLI also needs METERING_INIT_CONFIRM=YES
"""

import os
import asyncio
import logging
from typing import List

from pymongo.errors import CollectionInvalid, OperationFailure

from utils.environment import is_production

logger = logging.getLogger(__name__)

REQUIRED_COLLECTIONS = [
    "accounts",
    "api_keys",
    "usage_records",
    "token_ledger",
    "payment_events",
    "usage_summaries",
]

# (collection, keys, options)
REQUIRED_INDEXES = [
    ("accounts", [("account_id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    ("accounts", [("email", 1)], {"sparse": True, "name": "idx_email"}),

    ("api_keys", [("key_hash", 1)], {"unique": True, "name": "idx_key_hash_unique"}),
    ("api_keys", [("account_id", 1)], {"name": "idx_account_id"}),

    ("usage_records", [("request_id", 1)], {"unique": True, "name": "idx_request_id_unique"}),
    ("usage_records", [("account_id", 1), ("timestamp", -1)], {"name": "idx_account_timestamp"}),
    ("usage_records", [("timestamp", -1)], {"name": "idx_timestamp"}),

    ("token_ledger", [("entry_id", 1)], {"unique": True, "name": "idx_entry_id_unique"}),
    ("token_ledger", [("account_id", 1), ("timestamp", -1)], {"name": "idx_account_timestamp"}),

    ("payment_events", [("event_id", 1)], {"unique": True, "name": "idx_event_id_unique"}),
    ("payment_events", [("account_id", 1), ("timestamp", -1)], {"name": "idx_account_timestamp"}),

    ("usage_summaries", [("account_id", 1), ("date", 1)], {"unique": True, "name": "idx_account_date_unique"}),
]


async def prepare_storage(db, dry_run: bool = False) -> List[str]:
    """
    Create whatever collections and indexes are missing.

    Returns:
        One line per collection or index that was (or, on a dry run, would be) created
    """
    changes = []

    existing_collections = set(await db.list_collection_names())
    for name in REQUIRED_COLLECTIONS:
        if name in existing_collections:
            continue
        changes.append(f"collection {name}")
        if not dry_run:
            try:
                await db.create_collection(name)
            except CollectionInvalid:
                pass  # created concurrently

    existing_indexes = {}
    for collection_name, keys, options in REQUIRED_INDEXES:
        if collection_name not in existing_indexes:
            existing_indexes[collection_name] = set(await db[collection_name].index_information())
        if options["name"] in existing_indexes[collection_name]:
            continue

        changes.append(f"index {collection_name}.{options['name']}")
        if not dry_run:
            try:
                await db[collection_name].create_index(keys, **options)
            except OperationFailure as e:
                if "already exists" not in str(e).lower():
                    raise

    return changes


async def ensure_indexes(db) -> None:
    """Startup hook: bring storage up to date before serving requests."""
    changes = await prepare_storage(db)
    if changes:
        logger.info(f"Metering storage prepared: {', '.join(changes)}")
    else:
        logger.debug("Metering storage already up to date")


def main():
    import argparse

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Create the metering gateway's collections and indexes")
    parser.add_argument('--dry-run', action='store_true', help='List what is missing without creating it')
    args = parser.parse_args()

    if is_production() and os.environ.get("METERING_INIT_CONFIRM") != "YES":
        parser.exit(1, "Refusing to run in production without METERING_INIT_CONFIRM=YES\n")

    # Imported here: database validates MONGO_URL / DB_NAME on import
    from database import client, db

    changes = asyncio.run(prepare_storage(db, dry_run=args.dry_run))
    client.close()

    verb = "Would create" if args.dry_run else "Created"
    for change in changes:
        logger.info(f"{verb} {change}")
    logger.info(f"Metering storage: {len(changes)} change(s){' (dry run)' if args.dry_run else ''}")


if __name__ == "__main__":
    main()
