"""
Background polling of dispatched workflows.

Each accepted dispatch gets one poller task that drives the tracked entry to
a terminal state. Tasks are owned by a ``PollerSupervisor`` so a crash in
one of them only fails its own entry and never reaches request handling.
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional

from loguru import logger

from x402wf.errors import WorkflowEngineError
from x402wf.types import SettlementResult

from .engine import WorkflowEngine, WorkflowStatusReport
from .store import WorkflowStatus, WorkflowStore, WorkflowTracking


async def record_report(
    store: WorkflowStore,
    entry: WorkflowTracking,
    report: WorkflowStatusReport,
) -> Optional[WorkflowTracking]:
    """Apply one engine status report to the tracked entry."""
    nonce = entry.nonce
    if report.in_progress:
        return await store.mark_running(nonce)

    if report.completed and report.transaction_hash:
        if entry.status == WorkflowStatus.PENDING_EXECUTION:
            await store.mark_running(nonce)
        result = SettlementResult(
            success=True,
            transaction=report.transaction_hash,
            network=entry.network or report.result.get('network'),
            payer=entry.payer or report.result.get('payer'),
        )
        return await store.mark_completed(nonce, result)

    if report.completed:
        logger.error('Workflow {} completed without a transaction hash', report.workflow_id)
        return await store.mark_failed(nonce, 'workflow completed without a transaction hash')

    reason = report.error or f'workflow failed with code {report.code}'
    logger.error('Workflow {} for nonce {} failed: {}', report.workflow_id, nonce, reason)
    return await store.mark_failed(nonce, reason)


class BackgroundPoller:
    def __init__(
        self,
        store: WorkflowStore,
        engine: WorkflowEngine,
        interval: float = 2,
        timeout: float = 60,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.engine = engine
        self.interval = interval
        self.timeout = timeout
        self.clock = clock
        self.sleep = sleep

    async def run(self, nonce: str, workflow_id: str) -> Optional[WorkflowTracking]:
        """
        Poll until the entry is terminal or the ceiling passes. On the
        ceiling the entry is failed locally even though the external job may
        still finish later.
        """
        deadline = self.clock() + self.timeout
        while self.clock() < deadline:
            entry = await self.store.get(nonce)
            if entry is None:
                logger.warning('Workflow entry for nonce {} disappeared, stopping poller', nonce)
                return None
            if entry.is_terminal:
                return entry

            try:
                report = await self.engine.get_status(workflow_id)
            except WorkflowEngineError as exc:
                logger.warning('Status poll for workflow {} failed, retrying: {}', workflow_id, exc)
            else:
                entry = await record_report(self.store, entry, report)
                if entry is None or entry.is_terminal:
                    return entry

            await self.sleep(self.interval)

        logger.warning('Workflow {} for nonce {} still running after {}s, marking failed',
                       workflow_id, nonce, self.timeout)
        return await self.store.mark_failed(
            nonce, f'workflow polling timeout after {self.timeout:g}s')


class PollerSupervisor:
    """Owns poller tasks and the periodic sweep of old entries."""

    def __init__(self, poller: BackgroundPoller, store: WorkflowStore):
        self.poller = poller
        self.store = store
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def spawn(self, nonce: str, workflow_id: str) -> asyncio.Task:
        existing = self._tasks.get(nonce)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(
            self._supervise(nonce, workflow_id), name=f'workflow-poller-{nonce[:10]}')
        self._tasks[nonce] = task
        task.add_done_callback(lambda done, key=nonce: self._forget(key, done))
        logger.debug('Started poller for workflow {} (nonce {})', workflow_id, nonce)
        return task

    async def _supervise(self, nonce: str, workflow_id: str) -> Optional[WorkflowTracking]:
        try:
            return await self.poller.run(nonce, workflow_id)
        except asyncio.CancelledError:
            logger.info('Poller for nonce {} cancelled', nonce)
            raise
        except Exception as exc:
            logger.exception('Poller for workflow {} crashed', workflow_id)
            try:
                return await self.store.mark_failed(nonce, f'poller crashed: {exc}')
            except Exception:
                logger.exception('Could not record poller failure for nonce {}', nonce)
                return None

    def _forget(self, nonce: str, task: asyncio.Task) -> None:
        if self._tasks.get(nonce) is task:
            del self._tasks[nonce]

    def active(self) -> List[str]:
        return [nonce for nonce, task in self._tasks.items() if not task.done()]

    def cancel(self, nonce: str) -> bool:
        """
        Stop polling ``nonce`` locally. The external job is not cancelled and
        the entry keeps its current status.
        """
        task = self._tasks.get(nonce)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def join(self) -> None:
        """Wait for every running poller to finish."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def start_sweeper(self, interval: float, max_age: float) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(
                self._sweep_forever(interval, max_age), name='workflow-sweeper')
        return self._sweeper

    async def _sweep_forever(self, interval: float, max_age: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.store.sweep(max_age)
            except Exception:
                logger.exception('Workflow sweep failed')

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        if self._sweeper is not None:
            tasks.append(self._sweeper)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._sweeper = None
