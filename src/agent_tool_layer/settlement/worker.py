"""Per-chain settlement workers and the scheduler that owns them."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from agent_tool_layer.chain.chains import ChainRegistry
from agent_tool_layer.chain.gateway import ChainGateway
from agent_tool_layer.config import SettlementConfig
from agent_tool_layer.errors import LedgerInvariantViolation
from agent_tool_layer.executions.store import ExecutionStore
from agent_tool_layer.ledger.escrow import EscrowLedger
from agent_tool_layer.settlement.engine import RunReport, SettlementEngine
from agent_tool_layer.settlement.records import BatchStore
from agent_tool_layer.storage.database import Database

logger = logging.getLogger("agent_tool_layer.settlement.worker")


class SettlementWorker:
    """Runs :class:`SettlementEngine` for one chain, one batch at a time.

    A run starts when ``interval`` seconds pass or when :meth:`trigger` is
    called (for example by :meth:`notify` once ``threshold`` executions are
    pending).  :meth:`stop` stops accepting triggers and waits for the
    in-flight run to finish.
    """

    def __init__(
        self,
        engine: SettlementEngine,
        interval: float,
        threshold: int,
    ) -> None:
        self.engine = engine
        self.interval = interval
        self.threshold = threshold
        self._run_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def chain(self) -> str:
        return self.engine.name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        async with self._run_lock:
            resolved = await self.engine.recover()
        if resolved:
            logger.info(f"Recovered {resolved} interrupted settlement attempts on {self.chain}")
        self._task = asyncio.create_task(self._loop(), name=f"settlement-{self.chain}")
        logger.info(
            f"Settlement worker started for {self.chain} "
            f"(interval={self.interval}s, threshold={self.threshold})"
        )

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            try:
                await self._task
            finally:
                self._task = None
        logger.info(f"Settlement worker stopped for {self.chain}")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self) -> bool:
        """Request a run. Ignored once :meth:`stop` has been called."""
        if self._stopping:
            return False
        self._wake.set()
        return True

    async def notify(self) -> None:
        """Trigger early when enough executions are waiting."""
        pending = await self.engine.store.count_pending(self.chain)
        if pending >= self.threshold:
            logger.info(f"{pending} pending executions on {self.chain}, triggering settlement")
            self.trigger()

    async def run_now(self) -> RunReport:
        """Run one batch immediately, waiting for any in-flight run first."""
        async with self._run_lock:
            return await self.engine.run_once()

    async def _loop(self) -> None:
        while not self._stopping:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._stopping:
                break
            try:
                await self.run_now()
            except LedgerInvariantViolation:
                logger.critical(f"Halting settlement on {self.chain}: ledger invariant violated")
                self._stopping = True
                raise
            except Exception:
                logger.exception(f"Settlement run on {self.chain} failed")


class SettlementScheduler:
    """One :class:`SettlementWorker` per configured chain.

    Built once at startup and passed to whatever needs to trigger
    settlement; chains are settled independently and in parallel.
    """

    def __init__(self, workers: dict[str, SettlementWorker]) -> None:
        self.workers = workers

    @classmethod
    def build(
        cls,
        chains: ChainRegistry,
        db: Database,
        ledger: EscrowLedger,
        store: ExecutionStore,
        gateway: ChainGateway,
        settings: SettlementConfig,
    ) -> "SettlementScheduler":
        batches = BatchStore(db)
        workers = {}
        for chain in chains:
            engine = SettlementEngine(chain, db, ledger, store, batches, gateway, settings)
            workers[chain.name] = SettlementWorker(
                engine,
                interval=settings.interval_seconds,
                threshold=settings.pending_threshold,
            )
        return cls(workers)

    def worker(self, chain: str) -> SettlementWorker:
        if chain not in self.workers:
            raise KeyError(f"No settlement worker for chain '{chain}'")
        return self.workers[chain]

    async def start(self) -> None:
        for worker in self.workers.values():
            await worker.start()

    async def stop(self) -> None:
        results = await asyncio.gather(
            *(w.stop() for w in self.workers.values()), return_exceptions=True
        )
        fatal = None
        for worker, result in zip(self.workers.values(), results):
            if isinstance(result, BaseException):
                logger.error(f"Settlement worker {worker.chain} exited with {result!r}")
                if isinstance(result, LedgerInvariantViolation) and fatal is None:
                    fatal = result
        if fatal is not None:
            raise fatal

    def trigger(self, chain: str) -> bool:
        return self.worker(chain).trigger()

    async def notify(self, chain: str) -> None:
        if chain in self.workers:
            await self.workers[chain].notify()

    async def run_now(self, chain: str) -> RunReport:
        return await self.worker(chain).run_now()
