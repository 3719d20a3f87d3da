"""
Tests for agent_tool_layer.executions.store
"""

from datetime import timedelta

import pytest

from agent_tool_layer.errors import InvalidTransition
from agent_tool_layer.storage.models import ExecutionRecord, ExecutionStatus, utcnow

from conftest import AGENT, AGENT_2, OWNER


def _record(cost=10, chain="base", agent=AGENT, **kw) -> ExecutionRecord:
    return ExecutionRecord(
        agent=agent, counterparty=OWNER, tool_id="search", cost=cost, chain=chain, **kw
    )


class TestCreateAndQuery:
    @pytest.mark.asyncio
    async def test_created_record_is_pending(self, store):
        rec = await store.create(_record(cost=42))
        loaded = await store.get(rec.id)
        assert loaded.status is ExecutionStatus.PENDING
        assert loaded.cost == 42
        assert loaded.tx_id is None
        assert loaded.completed_at is None

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, store):
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_list_by_agent_newest_first(self, store):
        now = utcnow()
        old = await store.create(_record(created_at=now - timedelta(seconds=10)))
        new = await store.create(_record(created_at=now))
        await store.create(_record(agent=AGENT_2))
        ids = [r.id for r in await store.list_by_agent(AGENT)]
        assert ids == [new.id, old.id]

    @pytest.mark.asyncio
    async def test_list_pending_filters_chain_and_age(self, store):
        now = utcnow()
        old = await store.create(_record(created_at=now - timedelta(minutes=5)))
        await store.create(_record(created_at=now))
        await store.create(_record(chain="kite", created_at=now - timedelta(minutes=5)))

        pending = await store.list_pending(
            "base", limit=50, created_before=now - timedelta(minutes=1)
        )
        assert [r.id for r in pending] == [old.id]
        assert await store.count_pending("base") == 2
        assert await store.count_pending("kite") == 1

    @pytest.mark.asyncio
    async def test_list_pending_respects_limit_oldest_first(self, store):
        now = utcnow()
        recs = [
            await store.create(_record(created_at=now - timedelta(seconds=30 - i)))
            for i in range(5)
        ]
        pending = await store.list_pending("base", limit=3)
        assert [r.id for r in pending] == [r.id for r in recs[:3]]


class TestTransitions:
    @pytest.mark.asyncio
    async def test_mark_success_sets_tx_and_batch(self, store, db):
        a = await store.create(_record())
        b = await store.create(_record())
        async with db.transaction() as tx:
            await store.mark_success([a.id, b.id], "0xabc", "batch-1", tx=tx)
        for rec_id in (a.id, b.id):
            rec = await store.get(rec_id)
            assert rec.status is ExecutionStatus.SUCCESS
            assert rec.tx_id == "0xabc"
            assert rec.batch_id == "batch-1"
            assert rec.completed_at is not None

    @pytest.mark.asyncio
    async def test_terminal_status_cannot_change(self, store, db):
        rec = await store.create(_record())
        async with db.transaction() as tx:
            await store.mark_failed([rec.id], "reverted", tx=tx, tx_id="0xdead")
        with pytest.raises(InvalidTransition):
            async with db.transaction() as tx:
                await store.mark_success([rec.id], "0xabc", "batch-1", tx=tx)
        loaded = await store.get(rec.id)
        assert loaded.status is ExecutionStatus.FAILED
        assert loaded.error == "reverted"
        assert loaded.tx_id == "0xdead"

    @pytest.mark.asyncio
    async def test_partial_transition_rolls_back_whole_group(self, store, db):
        done = await store.create(_record())
        open_ = await store.create(_record())
        async with db.transaction() as tx:
            await store.mark_success([done.id], "0x1", "batch-1", tx=tx)

        with pytest.raises(InvalidTransition):
            async with db.transaction() as tx:
                await store.mark_failed([done.id, open_.id], "boom", tx=tx)
        assert (await store.get(open_.id)).status is ExecutionStatus.PENDING

    @pytest.mark.asyncio
    async def test_upstream_status_is_recorded(self, store, db):
        rec = await store.create(_record())
        async with db.transaction() as tx:
            await store.mark_failed([rec.id], "tool down", tx=tx, upstream_status=503)
        loaded = await store.get(rec.id)
        assert loaded.upstream_status == 503
        assert loaded.to_dict()["cost"] == "10"
