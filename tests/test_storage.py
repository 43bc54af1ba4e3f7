"""
Tests for SQLAlchemyStateStore.

Row-lock behaviour only shows on a real database; those tests use the
PostgreSQL fixture and are skipped when it is unavailable.
"""

import asyncio

import pytest

from ec2_reconciler.exceptions import TransactionClosedError
from ec2_reconciler.notifications import InstanceState
from tests.conftest import INSTANCE_ID, REGION, T


@pytest.mark.asyncio
class TestInstanceRecords:
    """Test suite for instance record storage."""

    async def test_upsert_inserts_then_replaces(self, sqlite_store, make_record):
        await sqlite_store.upsert_instance(make_record(state="pending", last_event_at=T(1)))
        await sqlite_store.upsert_instance(make_record(state="running", last_event_at=T(2)))

        records = await sqlite_store.list_instances()
        assert len(records) == 1
        assert records[0].state == InstanceState.RUNNING
        assert records[0].last_event_at == T(2)

    async def test_upsert_keeps_newer_stored_record(self, sqlite_store, make_record):
        assert await sqlite_store.upsert_instance(
            make_record(state="running", last_event_at=T(2))
        )

        assert not await sqlite_store.upsert_instance(
            make_record(state="pending", last_event_at=T(1))
        )
        assert not await sqlite_store.upsert_instance(
            make_record(state="pending", last_event_at=T(2))
        )

        record = await sqlite_store.find_instance(REGION, INSTANCE_ID)
        assert record.state == InstanceState.RUNNING
        assert record.last_event_at == T(2)

    async def test_find_missing_instance_returns_none(self, sqlite_store):
        assert await sqlite_store.find_instance(REGION, "i-missing") is None

    async def test_find_returns_full_record(self, sqlite_store, make_record):
        record = make_record()
        await sqlite_store.upsert_instance(record)

        assert await sqlite_store.find_instance(REGION, INSTANCE_ID) == record

    async def test_null_spot_request_id(self, sqlite_store, make_record):
        record = make_record().model_copy(update={"spot_request_id": None})
        await sqlite_store.upsert_instance(record)

        found = await sqlite_store.find_instance(REGION, INSTANCE_ID)
        assert found.spot_request_id is None

    async def test_update_state_in_transaction(self, sqlite_store, make_record):
        await sqlite_store.upsert_instance(make_record(state="pending", last_event_at=T(1)))

        txn = await sqlite_store.begin_transaction()
        await sqlite_store.update_instance_state(
            REGION, INSTANCE_ID, InstanceState.RUNNING, T(2), txn
        )
        await sqlite_store.commit(txn)

        record = await sqlite_store.find_instance(REGION, INSTANCE_ID)
        assert record.state == InstanceState.RUNNING
        assert record.last_event_at == T(2)

    async def test_rollback_reverts_changes(self, sqlite_store, make_record):
        await sqlite_store.upsert_instance(make_record())

        txn = await sqlite_store.begin_transaction()
        await sqlite_store.remove_instance(REGION, INSTANCE_ID, txn)
        await sqlite_store.rollback(txn)

        assert await sqlite_store.find_instance(REGION, INSTANCE_ID) is not None

    async def test_remove_missing_instance_is_noop(self, sqlite_store):
        await sqlite_store.remove_instance(REGION, "i-missing")

        assert await sqlite_store.list_instances() == []

    async def test_list_instances_by_region(self, sqlite_store, make_record):
        await sqlite_store.upsert_instance(make_record(region="us-west-2"))
        await sqlite_store.upsert_instance(make_record(instance_id="i-b"))
        await sqlite_store.upsert_instance(make_record(instance_id="i-a"))

        assert [r.instance_id for r in await sqlite_store.list_instances(REGION)] == [
            "i-a",
            "i-b",
        ]
        assert len(await sqlite_store.list_instances()) == 3


@pytest.mark.asyncio
class TestTransactions:
    """Test suite for transaction handles."""

    async def test_handle_is_inactive_after_commit(self, sqlite_store):
        txn = await sqlite_store.begin_transaction()
        assert txn.is_active

        await sqlite_store.commit(txn)

        assert not txn.is_active
        with pytest.raises(TransactionClosedError):
            await sqlite_store.commit(txn)
        with pytest.raises(TransactionClosedError):
            await sqlite_store.rollback(txn)

    async def test_finished_handle_cannot_be_used(self, sqlite_store):
        txn = await sqlite_store.begin_transaction()
        await sqlite_store.rollback(txn)

        with pytest.raises(TransactionClosedError):
            await sqlite_store.find_instance(REGION, INSTANCE_ID, txn)

    async def test_scoped_transaction_commits(self, sqlite_store, make_record):
        await sqlite_store.upsert_instance(make_record(state="pending", last_event_at=T(1)))

        async with sqlite_store.transaction() as txn:
            await sqlite_store.update_instance_state(
                REGION, INSTANCE_ID, InstanceState.RUNNING, T(2), txn
            )

        assert not txn.is_active
        record = await sqlite_store.find_instance(REGION, INSTANCE_ID)
        assert record.state == InstanceState.RUNNING

    async def test_scoped_transaction_rolls_back_on_error(self, sqlite_store, make_record):
        await sqlite_store.upsert_instance(make_record())

        with pytest.raises(RuntimeError):
            async with sqlite_store.transaction() as txn:
                await sqlite_store.remove_instance(REGION, INSTANCE_ID, txn)
                raise RuntimeError("boom")

        assert not txn.is_active
        assert await sqlite_store.find_instance(REGION, INSTANCE_ID) is not None


@pytest.mark.asyncio
class TestEventLog:
    """Test suite for the notification audit log."""

    async def test_events_listed_by_generation_time(self, sqlite_store):
        await sqlite_store.log_event(REGION, INSTANCE_ID, InstanceState.RUNNING, T(2))
        await sqlite_store.log_event(REGION, INSTANCE_ID, InstanceState.PENDING, T(1))
        await sqlite_store.log_event(REGION, "i-other", InstanceState.TERMINATED, T(3))

        events = await sqlite_store.list_events(REGION, INSTANCE_ID)

        assert [(e["state"], e["generated_at"]) for e in events] == [
            (InstanceState.PENDING, T(1)),
            (InstanceState.RUNNING, T(2)),
        ]
        assert all(e["received_at"] is not None for e in events)

    async def test_log_accepts_state_strings(self, sqlite_store):
        await sqlite_store.log_event(REGION, INSTANCE_ID, "shutting-down", T(1))

        events = await sqlite_store.list_events(REGION, INSTANCE_ID)
        assert events[0]["state"] == InstanceState.SHUTTING_DOWN


@pytest.mark.asyncio
class TestRowLocking:
    """SELECT ... FOR UPDATE serializes work on one instance."""

    async def test_second_lookup_waits_for_first_transaction(self, postgresql_store, make_record):
        store = postgresql_store
        await store.upsert_instance(make_record(state="pending", last_event_at=T(1)))

        first = await store.begin_transaction()
        await store.find_instance(REGION, INSTANCE_ID, first)

        async def locked_lookup():
            txn = await store.begin_transaction()
            try:
                return await store.find_instance(REGION, INSTANCE_ID, txn)
            finally:
                await store.commit(txn)

        waiter = asyncio.create_task(locked_lookup())
        await asyncio.sleep(0.5)
        assert not waiter.done()

        await store.update_instance_state(REGION, INSTANCE_ID, InstanceState.RUNNING, T(2), first)
        await store.commit(first)

        record = await asyncio.wait_for(waiter, timeout=5)
        assert record.state == InstanceState.RUNNING
        assert record.last_event_at == T(2)

    async def test_other_instances_are_not_blocked(self, postgresql_store, make_record):
        store = postgresql_store
        await store.upsert_instance(make_record())
        await store.upsert_instance(make_record(instance_id="i-other"))

        first = await store.begin_transaction()
        await store.find_instance(REGION, INSTANCE_ID, first)
        try:
            async with store.transaction() as second:
                record = await asyncio.wait_for(
                    store.find_instance(REGION, "i-other", second), timeout=5
                )
            assert record is not None
        finally:
            await store.rollback(first)
