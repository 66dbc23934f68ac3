"""
Storage Bootstrap Tests

Tests for:
- Missing collections and indexes are created
- A second run changes nothing
- Dry run reports without creating
"""
import pytest

from metering.db_init import REQUIRED_COLLECTIONS, REQUIRED_INDEXES, prepare_storage


class TestPrepareStorage:

    @pytest.mark.asyncio
    async def test_creates_missing_collections_and_indexes(self, db):
        changes = await prepare_storage(db)

        assert len(changes) == len(REQUIRED_COLLECTIONS) + len(REQUIRED_INDEXES)
        assert set(REQUIRED_COLLECTIONS) <= set(await db.list_collection_names())
        indexes = await db.usage_records.index_information()
        assert indexes["idx_request_id_unique"]["unique"] is True

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, db):
        await prepare_storage(db)

        assert await prepare_storage(db) == []

    @pytest.mark.asyncio
    async def test_dry_run_creates_nothing(self, db):
        changes = await prepare_storage(db, dry_run=True)

        assert "collection accounts" in changes
        assert "index payment_events.idx_event_id_unique" in changes
        assert await db.list_collection_names() == []
