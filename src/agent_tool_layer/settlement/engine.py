"""Settlement batching engine for one chain.

A run drains pending executions, groups them by (agent, counterparty), and
settles each group with a single ``Escrow.debit`` transaction.  Confirmed
groups are debited from the ledger and recorded as a
:class:`SettlementBatch`; failed groups are marked failed and their
reservation is released.  Groups never affect each other.

Every broadcast tx id is written to a ``settlement_attempts`` row before its
receipt is awaited.  Retries and restarts check those ids with
``get_receipt`` first, so a transaction that landed late is reconciled
instead of paid twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Iterable, NamedTuple, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agent_tool_layer.chain.chains import Chain
from agent_tool_layer.chain.gateway import ChainGateway, Receipt, encode_debit_call
from agent_tool_layer.config import SettlementConfig
from agent_tool_layer.errors import (
    ChainUnavailable,
    InvalidTransition,
    LedgerInvariantViolation,
    SettlementFailed,
)
from agent_tool_layer.executions.store import ExecutionStore
from agent_tool_layer.ledger.escrow import EscrowLedger
from agent_tool_layer.settlement.records import BatchStore
from agent_tool_layer.storage.database import Database
from agent_tool_layer.storage.models import (
    AttemptState,
    ExecutionRecord,
    SettlementAttempt,
    SettlementBatch,
    utcnow,
)

logger = logging.getLogger("agent_tool_layer.settlement.engine")


class EngineState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class GroupKey(NamedTuple):
    agent: str
    counterparty: str


@dataclass
class SettlementGroup:
    key: GroupKey
    records: list[ExecutionRecord] = field(default_factory=list)

    @property
    def amount(self) -> int:
        return sum(r.cost for r in self.records)

    @property
    def execution_ids(self) -> list[str]:
        return [r.id for r in self.records]


def group_pending(records: Iterable[ExecutionRecord]) -> list[SettlementGroup]:
    """Group records by (agent, counterparty), keeping first-seen order."""
    groups: dict[GroupKey, SettlementGroup] = {}
    for record in records:
        key = GroupKey(record.agent, record.counterparty)
        groups.setdefault(key, SettlementGroup(key)).records.append(record)
    return list(groups.values())


class OutcomeStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNRESOLVED = "unresolved"   # could not verify; left for recovery


@dataclass
class GroupOutcome:
    key: GroupKey
    amount: int
    execution_ids: list[str]
    status: OutcomeStatus
    tx_id: Optional[str] = None
    batch_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunReport:
    chain: str
    outcomes: list[GroupOutcome] = field(default_factory=list)
    final_state: EngineState = EngineState.IDLE

    def _with(self, status: OutcomeStatus) -> list[GroupOutcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def confirmed(self) -> list[GroupOutcome]:
        return self._with(OutcomeStatus.CONFIRMED)

    @property
    def failed(self) -> list[GroupOutcome]:
        return self._with(OutcomeStatus.FAILED)

    @property
    def unresolved(self) -> list[GroupOutcome]:
        return self._with(OutcomeStatus.UNRESOLVED)

    @property
    def settled_amount(self) -> int:
        return sum(o.amount for o in self.confirmed)

    def summary(self) -> dict:
        return {
            "chain": self.chain,
            "state": self.final_state.value,
            "groups": len(self.outcomes),
            "confirmed": len(self.confirmed),
            "failed": len(self.failed),
            "unresolved": len(self.unresolved),
            "settled_amount": str(self.settled_amount),
            "batch_ids": [o.batch_id for o in self.confirmed],
        }


class SettlementEngine:
    """Runs settlement batches for a single chain.

    Not safe to run concurrently with itself; :class:`SettlementWorker`
    provides the per-chain mutual exclusion.
    """

    def __init__(
        self,
        chain: Chain,
        db: Database,
        ledger: EscrowLedger,
        store: ExecutionStore,
        batches: BatchStore,
        gateway: ChainGateway,
        settings: Optional[SettlementConfig] = None,
    ) -> None:
        self.chain = chain
        self.db = db
        self.ledger = ledger
        self.store = store
        self.batches = batches
        self.gateway = gateway
        self.settings = settings or SettlementConfig()
        self.state = EngineState.IDLE
        self.last_report: Optional[RunReport] = None

    @property
    def name(self) -> str:
        return self.chain.name

    # ------------------------------------------------------------------
    # Batch run
    # ------------------------------------------------------------------

    async def run_once(self) -> RunReport:
        report = RunReport(chain=self.name)
        try:
            self.state = EngineState.COLLECTING
            await self.recover()

            in_flight = await self.batches.held_execution_ids(self.name)
            cutoff = utcnow() - timedelta(seconds=self.settings.min_age_seconds)
            records = await self.store.list_pending(
                self.name, self.settings.batch_size, created_before=cutoff
            )
            groups = group_pending(r for r in records if r.id not in in_flight)
            if not groups:
                logger.debug(f"No pending executions to settle on {self.name}")
                return report

            logger.info(
                f"Processing settlement batch on {self.name}: "
                f"{len(groups)} groups, {sum(len(g.records) for g in groups)} executions"
            )
            self.state = EngineState.SUBMITTING
            for group in groups:
                outcome = await self._settle_group(group)
                if outcome is not None:
                    report.outcomes.append(outcome)

            if report.failed or report.unresolved:
                report.final_state = EngineState.FAILED
            else:
                report.final_state = EngineState.CONFIRMED
            self.state = report.final_state
            logger.info(f"Settlement run on {self.name} finished: {report.summary()}")
            return report
        finally:
            self.last_report = report
            self.state = EngineState.IDLE

    async def _settle_group(self, group: SettlementGroup) -> Optional[GroupOutcome]:
        attempt = await self.batches.open_attempt(
            SettlementAttempt(
                chain=self.name,
                agent=group.key.agent,
                counterparty=group.key.counterparty,
                amount=group.amount,
                execution_ids=group.execution_ids,
            )
        )
        if attempt is None:
            logger.info(
                f"Group {group.key.agent} -> {group.key.counterparty} on {self.name} "
                f"changed since collection; deferring to the next run"
            )
            return None

        try:
            return await self._settle_attempt(attempt)
        except LedgerInvariantViolation:
            raise
        except Exception as exc:
            logger.exception(f"Unexpected error settling attempt {attempt.id} on {self.name}")
            if attempt.tx_ids:
                # Something may have landed; recovery decides.
                return self._outcome(attempt, OutcomeStatus.UNRESOLVED, error=repr(exc))
            return await self._fail(attempt, f"unexpected error: {exc!r}")

    async def _settle_attempt(self, attempt: SettlementAttempt) -> GroupOutcome:
        try:
            calldata = encode_debit_call(attempt.agent, attempt.counterparty, attempt.amount)
        except ValueError as exc:
            # Nothing was broadcast, so failing is unambiguous.
            logger.error(f"Cannot encode debit for attempt {attempt.id} on {self.name}: {exc}")
            return await self._fail(attempt, f"cannot encode debit: {exc}")

        try:
            receipt = await self._submit_with_retry(attempt, calldata)
        except (SettlementFailed, ChainUnavailable) as exc:
            return await self._resolve_after_failure(attempt, str(exc))
        return await self._confirm(attempt, receipt.tx_id)

    async def _submit_with_retry(self, attempt: SettlementAttempt, calldata: bytes) -> Receipt:
        s = self.settings
        async for retry in AsyncRetrying(
            stop=stop_after_attempt(s.max_attempts),
            wait=wait_exponential(multiplier=s.backoff_seconds, max=s.backoff_max_seconds),
            retry=retry_if_exception_type((SettlementFailed, ChainUnavailable)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with retry:
                return await self._submit_once(attempt, calldata)
        raise AssertionError("retry loop exited without a result")

    async def _submit_once(self, attempt: SettlementAttempt, calldata: bytes) -> Receipt:
        landed = await self._find_landed(attempt)
        if landed is not None:
            logger.warning(f"Earlier transaction {landed.tx_id} on {self.name} landed late")
            return landed

        submitted = await self.gateway.submit_transaction(
            self.name, self.chain.escrow_address, calldata
        )
        await self.batches.add_tx(attempt, submitted.tx_id)

        timeout = self.settings.confirmation_timeout
        receipt = await self.gateway.wait_for_receipt(self.name, submitted.tx_id, timeout)
        if receipt is None:
            raise SettlementFailed(
                self.name, f"no confirmation for {submitted.tx_id} within {timeout}s",
                tx_id=submitted.tx_id,
            )
        if not receipt.succeeded:
            raise SettlementFailed(
                self.name, f"transaction {submitted.tx_id} reverted", tx_id=submitted.tx_id
            )
        return receipt

    async def _find_landed(self, attempt: SettlementAttempt) -> Optional[Receipt]:
        for tx_id in attempt.tx_ids:
            receipt = await self.gateway.get_receipt(self.name, tx_id)
            if receipt is not None and receipt.succeeded:
                return receipt
        return None

    async def _resolve_after_failure(self, attempt: SettlementAttempt, error: str) -> GroupOutcome:
        try:
            landed = await self._find_landed(attempt)
        except ChainUnavailable as exc:
            logger.error(
                f"Settlement alert on {self.name}: cannot verify attempt {attempt.id} "
                f"({exc}); leaving it for recovery"
            )
            return self._outcome(attempt, OutcomeStatus.UNRESOLVED, error=error)
        if landed is not None:
            return await self._confirm(attempt, landed.tx_id)

        logger.error(
            f"Settlement alert on {self.name}: group {attempt.agent} -> "
            f"{attempt.counterparty} ({attempt.amount}) failed after "
            f"{len(attempt.tx_ids)} submissions: {error}"
        )
        return await self._fail(attempt, error)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _confirm(self, attempt: SettlementAttempt, tx_id: str) -> GroupOutcome:
        batch = SettlementBatch(
            chain=self.name,
            agent=attempt.agent,
            counterparty=attempt.counterparty,
            amount=attempt.amount,
            execution_ids=attempt.execution_ids,
            tx_id=tx_id,
        )
        try:
            async with self.db.transaction() as tx:
                await self.store.mark_success(attempt.execution_ids, tx_id, batch.id, tx=tx)
                await self.ledger.debit(
                    attempt.agent, self.name, attempt.amount, tx=tx, reference=batch.id
                )
                await self.batches.insert_batch(batch, tx)
                await self.batches.finish_attempt(attempt.id, AttemptState.CONFIRMED, tx)
        except InvalidTransition as exc:
            return await self._hold_for_review(attempt, tx_id, str(exc))
        logger.info(
            f"Settlement confirmed on {self.name}: {attempt.agent} -> {attempt.counterparty} "
            f"amount={attempt.amount} executions={len(attempt.execution_ids)} tx={tx_id}"
        )
        return self._outcome(attempt, OutcomeStatus.CONFIRMED, tx_id=tx_id, batch_id=batch.id)

    async def _hold_for_review(
        self, attempt: SettlementAttempt, tx_id: str, error: str
    ) -> GroupOutcome:
        """Park an attempt whose debit landed but whose records cannot be settled.

        Its executions stay excluded from collection so they are never paid
        a second time.
        """
        logger.critical(
            f"Settlement alert on {self.name}: transaction {tx_id} for attempt {attempt.id} "
            f"landed but its executions could not be settled ({error}); needs review"
        )
        async with self.db.transaction() as tx:
            await self.batches.finish_attempt(
                attempt.id,
                AttemptState.NEEDS_REVIEW,
                tx,
                error=f"debit {tx_id} landed: {error}",
            )
        return self._outcome(attempt, OutcomeStatus.UNRESOLVED, tx_id=tx_id, error=error)

    async def _fail(self, attempt: SettlementAttempt, error: str) -> GroupOutcome:
        last_tx = attempt.tx_ids[-1] if attempt.tx_ids else None
        try:
            async with self.db.transaction() as tx:
                await self.store.mark_failed(attempt.execution_ids, error, tx=tx, tx_id=last_tx)
                await self.ledger.rollback_credit(
                    attempt.agent, self.name, attempt.amount, tx=tx, reference=attempt.id
                )
                await self.batches.finish_attempt(attempt.id, AttemptState.FAILED, tx, error=error)
        except InvalidTransition as exc:
            # Records already completed elsewhere; close the attempt only.
            logger.error(f"Attempt {attempt.id} on {self.name} failed but {exc}; closing it")
            async with self.db.transaction() as tx:
                await self.batches.finish_attempt(attempt.id, AttemptState.FAILED, tx, error=error)
        return self._outcome(attempt, OutcomeStatus.FAILED, tx_id=last_tx, error=error)

    def _outcome(
        self,
        attempt: SettlementAttempt,
        status: OutcomeStatus,
        tx_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> GroupOutcome:
        return GroupOutcome(
            key=GroupKey(attempt.agent, attempt.counterparty),
            amount=attempt.amount,
            execution_ids=list(attempt.execution_ids),
            status=status,
            tx_id=tx_id,
            batch_id=batch_id,
            error=error,
        )

    async def recover(self) -> int:
        """Re-verify attempts left ``submitting`` by an interrupted run.

        A landed transaction is reconciled as confirmed.  Otherwise the
        attempt is closed and its records stay pending, so the next run
        settles them with a fresh transaction.  An attempt that cannot be
        resolved is logged and skipped.  Returns how many attempts were
        resolved.
        """
        resolved = 0
        for attempt in await self.batches.list_open_attempts(self.name):
            try:
                await self._recover_attempt(attempt)
            except ChainUnavailable as exc:
                logger.warning(f"Cannot verify attempt {attempt.id} on {self.name}: {exc}")
                continue
            except LedgerInvariantViolation:
                raise
            except Exception:
                logger.exception(f"Recovery of attempt {attempt.id} on {self.name} failed")
                continue
            resolved += 1
        return resolved

    async def _recover_attempt(self, attempt: SettlementAttempt) -> None:
        landed = await self._find_landed(attempt)
        if landed is not None:
            await self._confirm(attempt, landed.tx_id)
            return
        async with self.db.transaction() as tx:
            await self.batches.finish_attempt(
                attempt.id,
                AttemptState.FAILED,
                tx,
                error="no confirmed receipt after restart",
            )
        logger.warning(
            f"Attempt {attempt.id} on {self.name} had no confirmed receipt; "
            f"its executions will be resubmitted"
        )
