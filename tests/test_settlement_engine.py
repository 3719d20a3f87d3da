"""
Tests for agent_tool_layer.settlement.engine

Covers:
- grouping by (agent, counterparty) and batch amount = sum of costs
- confirmed groups debit the ledger; failed groups restore availability
- groups on the same run do not affect each other
- receipt check before resubmission (late-landing transactions)
- unverifiable outcomes left for recovery, and recovery after a restart
- unexpected errors and records that leave pending mid-run stay contained
"""

import pytest
from eth_abi import decode as abi_decode
from web3.exceptions import ContractLogicError

from agent_tool_layer.chain.gateway import DEBIT_SELECTOR
from agent_tool_layer.settlement.engine import (
    EngineState,
    GroupKey,
    OutcomeStatus,
    group_pending,
)
from agent_tool_layer.storage.models import (
    AttemptState,
    ExecutionRecord,
    ExecutionStatus,
    SettlementAttempt,
)

from conftest import AGENT, AGENT_2, ESCROW_BASE, OWNER, OWNER_2


async def _fund_and_admit(gate, ledger, catalog, agent, tool_ids, deposit=1_000, chain="base"):
    await ledger.credit(agent, chain, deposit, proof_id=f"0xdeposit-{agent}")
    return [await gate.admit(agent, catalog.get(t), chain) for t in tool_ids]


class TestGrouping:
    def test_groups_by_agent_and_counterparty_in_first_seen_order(self):
        def rec(agent, owner, cost):
            return ExecutionRecord(
                agent=agent, counterparty=owner, tool_id="t", cost=cost, chain="base"
            )

        records = [rec(AGENT, OWNER, 10), rec(AGENT_2, OWNER, 5), rec(AGENT, OWNER, 7),
                   rec(AGENT, OWNER_2, 1)]
        groups = group_pending(records)
        assert [g.key for g in groups] == [
            GroupKey(AGENT, OWNER), GroupKey(AGENT_2, OWNER), GroupKey(AGENT, OWNER_2),
        ]
        assert [g.amount for g in groups] == [17, 5, 1]
        assert groups[0].execution_ids == [records[0].id, records[2].id]

    def test_empty_input_has_no_groups(self):
        assert group_pending([]) == []


class TestSuccessfulSettlement:
    @pytest.mark.asyncio
    async def test_confirmed_group_debits_ledger(self, engine, gate, ledger, store, batches, gateway, catalog):
        await ledger.credit(AGENT, "base", 100, proof_id="0xdeposit")
        record = await gate.admit(AGENT, catalog.get("search"), "base")

        report = await engine.run_once()

        assert report.final_state is EngineState.CONFIRMED
        assert engine.state is EngineState.IDLE
        assert len(report.confirmed) == 1
        settled = await store.get(record.id)
        assert settled.status is ExecutionStatus.SUCCESS
        assert settled.tx_id == gateway.submitted[0][3]
        bal = await ledger.get_balance(AGENT, "base")
        assert (bal.balance, bal.reserved) == (70, 0)

        [batch] = await batches.list_batches(chain="base")
        assert batch.execution_ids == [record.id]
        assert batch.amount == 30
        assert settled.batch_id == batch.id
        await ledger.replay(AGENT, "base")

    @pytest.mark.asyncio
    async def test_one_transaction_per_group_with_summed_amount(self, engine, gate, ledger, gateway, catalog):
        await _fund_and_admit(gate, ledger, catalog, AGENT, ["search", "search", "summarize"])

        report = await engine.run_once()

        assert len(gateway.submitted) == 1
        chain, destination, calldata, _ = gateway.submitted[0]
        assert (chain, destination) == ("base", ESCROW_BASE)
        assert calldata[:4] == DEBIT_SELECTOR
        agent, owner, amount = abi_decode(["address", "address", "uint256"], calldata[4:])
        assert (agent.lower(), owner.lower(), amount) == (AGENT, OWNER, 110)
        assert report.settled_amount == 110

    @pytest.mark.asyncio
    async def test_nothing_pending_is_a_no_op(self, engine, gateway):
        report = await engine.run_once()
        assert report.outcomes == []
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_records_younger_than_min_age_wait(self, engine, gate, ledger, gateway, catalog):
        engine.settings = engine.settings.model_copy(update={"min_age_seconds": 3600})
        await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"])
        report = await engine.run_once()
        assert report.outcomes == []
        assert gateway.submitted == []

    @pytest.mark.asyncio
    async def test_other_chains_are_left_alone(self, engine, gate, ledger, store, catalog):
        [kite_rec] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], chain="kite")
        await engine.run_once()
        assert (await store.get(kite_rec.id)).status is ExecutionStatus.PENDING


class TestFailedSettlement:
    @pytest.mark.asyncio
    async def test_failed_group_restores_exactly(self, engine, gate, ledger, store, gateway, catalog):
        records = await _fund_and_admit(
            gate, ledger, catalog, AGENT, ["translate", "translate", "translate"], deposit=100
        )
        assert (await ledger.get_balance(AGENT, "base")).available == 55
        gateway.outcomes = ["revert", "revert", "revert"]

        report = await engine.run_once()

        assert report.final_state is EngineState.FAILED
        assert len(report.failed) == 1
        assert report.failed[0].amount == 45
        assert len(gateway.submitted) == engine.settings.max_attempts
        for rec in records:
            loaded = await store.get(rec.id)
            assert loaded.status is ExecutionStatus.FAILED
            assert loaded.tx_id == gateway.submitted[-1][3]
        bal = await ledger.get_balance(AGENT, "base")
        assert (bal.balance, bal.reserved, bal.available) == (100, 0, 100)
        await ledger.replay(AGENT, "base")

    @pytest.mark.asyncio
    async def test_success_after_retry(self, engine, gate, ledger, store, gateway, catalog):
        [rec] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"])
        gateway.outcomes = ["revert", "success"]

        report = await engine.run_once()

        assert len(report.confirmed) == 1
        assert len(gateway.submitted) == 2
        assert (await store.get(rec.id)).tx_id == gateway.submitted[1][3]

    @pytest.mark.asyncio
    async def test_mixed_groups_settle_independently(self, engine, gate, ledger, store, gateway, catalog):
        [a] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)
        [b] = await _fund_and_admit(gate, ledger, catalog, AGENT_2, ["summarize"], deposit=100)
        gateway.outcomes = ["success", "revert", "revert", "revert"]

        report = await engine.run_once()

        assert [o.status for o in report.outcomes] == [OutcomeStatus.CONFIRMED, OutcomeStatus.FAILED]
        assert (await store.get(a.id)).status is ExecutionStatus.SUCCESS
        assert (await store.get(b.id)).status is ExecutionStatus.FAILED
        bal_a = await ledger.get_balance(AGENT, "base")
        bal_b = await ledger.get_balance(AGENT_2, "base")
        assert (bal_a.balance, bal_a.reserved) == (70, 0)
        assert (bal_b.balance, bal_b.reserved) == (100, 0)

    @pytest.mark.asyncio
    async def test_failed_records_are_not_picked_up_again(self, engine, gate, ledger, gateway, catalog):
        await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"])
        gateway.outcomes = ["revert"] * 3
        await engine.run_once()
        second = await engine.run_once()
        assert second.outcomes == []
        assert len(gateway.submitted) == 3


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_late_landing_tx_is_not_resubmitted(self, engine, gate, ledger, store, gateway, catalog):
        [rec] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)
        gateway.outcomes = ["late"]

        report = await engine.run_once()

        assert len(gateway.submitted) == 1
        assert len(report.confirmed) == 1
        assert (await store.get(rec.id)).status is ExecutionStatus.SUCCESS
        assert (await ledger.get_balance(AGENT, "base")).balance == 70

    @pytest.mark.asyncio
    async def test_outage_leaves_group_unresolved_then_recovers(self, engine, gate, ledger, store, batches, gateway, catalog):
        [rec] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)
        gateway.outcomes = ["outage"]

        report = await engine.run_once()

        assert [o.status for o in report.outcomes] == [OutcomeStatus.UNRESOLVED]
        assert (await store.get(rec.id)).status is ExecutionStatus.PENDING
        assert (await ledger.get_balance(AGENT, "base")).reserved == 30
        [attempt] = await batches.list_open_attempts("base")
        assert attempt.tx_ids == [gateway.submitted[0][3]]

        # Node is back; the broadcast never landed, so the group is resubmitted.
        gateway.unavailable = False
        report = await engine.run_once()

        assert len(report.confirmed) == 1
        assert len(gateway.submitted) == 2
        assert (await store.get(rec.id)).status is ExecutionStatus.SUCCESS
        assert await batches.list_open_attempts("base") == []
        bal = await ledger.get_balance(AGENT, "base")
        assert (bal.balance, bal.reserved) == (70, 0)

    @pytest.mark.asyncio
    async def test_recover_confirms_landed_attempt(self, engine, gate, ledger, store, batches, gateway, catalog):
        records = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search", "search"], deposit=100)
        attempt = await batches.open_attempt(
            SettlementAttempt(
                chain="base", agent=AGENT, counterparty=OWNER, amount=60,
                execution_ids=[r.id for r in records],
            )
        )
        landed_tx = "0x" + "77" * 32
        await batches.add_tx(attempt, landed_tx)
        gateway.add_payment(landed_tx, ESCROW_BASE, 0)

        assert await engine.recover() == 1

        assert gateway.submitted == []
        for rec in records:
            loaded = await store.get(rec.id)
            assert loaded.status is ExecutionStatus.SUCCESS
            assert loaded.tx_id == landed_tx
        [batch] = await batches.list_batches()
        assert batch.amount == 60
        assert (await ledger.get_balance(AGENT, "base")).balance == 40

    @pytest.mark.asyncio
    async def test_recover_closes_unlanded_attempt_and_keeps_records_pending(self, engine, gate, ledger, store, batches, db, catalog):
        [rec] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)
        attempt = await batches.open_attempt(
            SettlementAttempt(
                chain="base", agent=AGENT, counterparty=OWNER, amount=30,
                execution_ids=[rec.id],
            )
        )
        await batches.add_tx(attempt, "0x" + "88" * 32)

        assert await engine.recover() == 1

        row = await db.fetch_one("SELECT state, error FROM settlement_attempts WHERE id = ?", (attempt.id,))
        assert row["state"] == AttemptState.FAILED.value
        assert "restart" in row["error"]
        assert (await store.get(rec.id)).status is ExecutionStatus.PENDING
        assert (await ledger.get_balance(AGENT, "base")).reserved == 30

    @pytest.mark.asyncio
    async def test_invalid_address_fails_without_broadcast(self, engine, gate, ledger, store, gateway):
        from agent_tool_layer.tools.catalog import Tool

        bad = Tool(id="broken", owner="not-an-address", price=10)
        await ledger.credit(AGENT, "base", 100, proof_id="0xdeposit")
        rec = await gate.admit(AGENT, bad, "base")

        report = await engine.run_once()

        assert len(report.failed) == 1
        assert gateway.submitted == []
        assert (await store.get(rec.id)).status is ExecutionStatus.FAILED
        assert (await ledger.get_balance(AGENT, "base")).available == 100


class TestContainment:
    @pytest.mark.asyncio
    async def test_node_rejection_fails_only_its_group(self, engine, gate, ledger, store, batches, gateway, catalog):
        [a] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)
        [b] = await _fund_and_admit(gate, ledger, catalog, AGENT_2, ["summarize"], deposit=100)
        gateway.submit_errors = [ContractLogicError("execution reverted: insufficient escrow")]

        report = await engine.run_once()

        assert [o.status for o in report.outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.CONFIRMED]
        assert "insufficient escrow" in report.failed[0].error
        assert (await store.get(a.id)).status is ExecutionStatus.FAILED
        assert (await store.get(b.id)).status is ExecutionStatus.SUCCESS
        bal_a = await ledger.get_balance(AGENT, "base")
        assert (bal_a.balance, bal_a.reserved) == (100, 0)
        assert (await ledger.get_balance(AGENT_2, "base")).balance == 50
        assert await batches.list_open_attempts("base") == []
        assert engine.state is EngineState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_error_after_broadcast_is_left_for_recovery(self, engine, gate, ledger, store, batches, gateway, catalog):
        [rec] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)

        async def explode(tx_id):
            gateway.on_wait = None
            raise RuntimeError("decoder crashed")

        gateway.on_wait = explode
        report = await engine.run_once()

        assert [o.status for o in report.outcomes] == [OutcomeStatus.UNRESOLVED]
        assert (await store.get(rec.id)).status is ExecutionStatus.PENDING
        assert (await ledger.get_balance(AGENT, "base")).reserved == 30

        # The broadcast landed; the next run reconciles it without paying again.
        report = await engine.run_once()
        assert report.outcomes == []
        assert len(gateway.submitted) == 1
        assert (await store.get(rec.id)).status is ExecutionStatus.SUCCESS
        assert (await ledger.get_balance(AGENT, "base")).balance == 70

    @pytest.mark.asyncio
    async def test_release_during_confirmation_is_refused(self, engine, gate, ledger, store, gateway, catalog):
        [rec] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)

        async def tool_failed_meanwhile(tx_id):
            gateway.on_wait = None
            await gate._release(rec, "upstream 500", 500)

        gateway.on_wait = tool_failed_meanwhile
        report = await engine.run_once()

        assert len(report.confirmed) == 1
        assert (await store.get(rec.id)).status is ExecutionStatus.SUCCESS
        bal = await ledger.get_balance(AGENT, "base")
        assert (bal.balance, bal.reserved) == (70, 0)
        await ledger.replay(AGENT, "base")

        [other] = await _fund_and_admit(gate, ledger, catalog, AGENT_2, ["translate"], deposit=100)
        report = await engine.run_once()
        assert len(report.confirmed) == 1
        assert (await store.get(other.id)).status is ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_landed_debit_for_non_pending_records_needs_review(self, engine, gate, ledger, store, batches, gateway, catalog, db):
        [a] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)
        [b] = await _fund_and_admit(gate, ledger, catalog, AGENT_2, ["translate"], deposit=100)

        async def failed_elsewhere(tx_id):
            gateway.on_wait = None
            async with db.transaction() as tx:
                await store.mark_failed([a.id], "cancelled by operator", tx=tx)

        gateway.on_wait = failed_elsewhere
        report = await engine.run_once()

        assert [o.status for o in report.outcomes] == [OutcomeStatus.UNRESOLVED, OutcomeStatus.CONFIRMED]
        held = report.unresolved[0]
        assert held.tx_id == gateway.submitted[0][3]
        row = await db.fetch_one(
            "SELECT state, error FROM settlement_attempts WHERE chain = ? AND agent = ?",
            ("base", AGENT),
        )
        assert row["state"] == AttemptState.NEEDS_REVIEW.value
        assert held.tx_id in row["error"]
        assert a.id in await batches.held_execution_ids("base")
        assert (await store.get(b.id)).status is ExecutionStatus.SUCCESS

        # Later runs leave the held attempt alone and keep settling others.
        c = await gate.admit(AGENT_2, catalog.get("search"), "base")
        report = await engine.run_once()
        assert len(report.confirmed) == 1
        assert (await store.get(c.id)).status is ExecutionStatus.SUCCESS
        assert len(gateway.submitted) == 3

    @pytest.mark.asyncio
    async def test_recover_skips_an_attempt_that_errors(self, engine, gate, ledger, store, batches, gateway, catalog, monkeypatch):
        [a] = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search"], deposit=100)
        [b] = await _fund_and_admit(gate, ledger, catalog, AGENT_2, ["translate"], deposit=100)
        broken_tx, landed_tx = "0x" + "91" * 32, "0x" + "92" * 32
        for rec, tx_id in ((a, broken_tx), (b, landed_tx)):
            attempt = await batches.open_attempt(
                SettlementAttempt(
                    chain="base", agent=rec.agent, counterparty=rec.counterparty,
                    amount=rec.cost, execution_ids=[rec.id],
                )
            )
            await batches.add_tx(attempt, tx_id)
        gateway.add_payment(landed_tx, ESCROW_BASE, 0)

        real_get_receipt = gateway.get_receipt

        async def get_receipt(chain, tx_id):
            if tx_id == broken_tx:
                raise RuntimeError("malformed receipt")
            return await real_get_receipt(chain, tx_id)

        monkeypatch.setattr(gateway, "get_receipt", get_receipt)

        assert await engine.recover() == 1

        assert (await store.get(a.id)).status is ExecutionStatus.PENDING
        assert (await store.get(b.id)).status is ExecutionStatus.SUCCESS
        [still_open] = await batches.list_open_attempts("base")
        assert still_open.execution_ids == [a.id]


class TestOpenAttempt:
    @pytest.mark.asyncio
    async def test_refused_when_a_record_left_pending(self, gate, ledger, store, batches, catalog, db):
        recs = await _fund_and_admit(gate, ledger, catalog, AGENT, ["search", "search"])
        async with db.transaction() as tx:
            await store.mark_failed([recs[1].id], "upstream 500", tx=tx)

        attempt = await batches.open_attempt(
            SettlementAttempt(
                chain="base", agent=AGENT, counterparty=OWNER, amount=60,
                execution_ids=[r.id for r in recs],
            )
        )

        assert attempt is None
        assert await batches.list_open_attempts("base") == []
        assert await batches.held_execution_ids("base") == set()
