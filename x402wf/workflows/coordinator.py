"""
Answers settle requests from the tracked workflow state.
"""
import asyncio
import time
from typing import Awaitable, Callable, Optional

from loguru import logger

from x402wf.errors import WorkflowEngineError
from x402wf.types import SettleErrorReason, SettlementResult

from .engine import WorkflowEngine
from .poller import record_report
from .store import WorkflowStatus, WorkflowStore, WorkflowTracking


class SettlementCoordinator:
    """
    Settle never dispatches. It returns what the verify-started job produced,
    waiting up to ``wait_timeout`` for a job that is still in flight.
    """

    def __init__(
        self,
        store: WorkflowStore,
        engine: WorkflowEngine,
        wait_timeout: float = 30,
        interval: float = 2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.engine = engine
        self.wait_timeout = wait_timeout
        self.interval = interval
        self.clock = clock
        self.sleep = sleep

    async def settle(
        self,
        nonce: str,
        network: Optional[str] = None,
        payer: Optional[str] = None,
    ) -> SettlementResult:
        try:
            return await self._settle(nonce, network, payer)
        except Exception:
            logger.exception('x402 settlement error for nonce {}', nonce)
            return SettlementResult.failure(
                SettleErrorReason.UNEXPECTED_SETTLE_ERROR, network, payer)

    async def _settle(self, nonce, network, payer) -> SettlementResult:
        entry = await self.store.get(nonce)
        if entry is None:
            logger.info('x402 settlement attempted without prior verification for nonce {}', nonce)
            return SettlementResult.failure(SettleErrorReason.NO_WORKFLOW_TRACKED, network, payer)

        if not entry.is_terminal:
            logger.info('Waiting for workflow {} (nonce {}) to finish', entry.workflow_id, nonce)
            entry = await self._wait_for_terminal(entry)

        network = entry.network or network
        payer = entry.payer or payer

        if entry.status == WorkflowStatus.COMPLETED and entry.result is not None:
            logger.info('x402 settlement for nonce {} tx {}', nonce, entry.result.transaction)
            return entry.result

        if entry.status == WorkflowStatus.FAILED:
            logger.info('x402 settlement for nonce {} failed: {}', nonce, entry.detail)
            return SettlementResult.failure(
                SettleErrorReason.WORKFLOW_FAILED, network, payer, detail=entry.detail)

        logger.warning('Workflow {} for nonce {} still {} after {}s',
                       entry.workflow_id, nonce, entry.status.value, self.wait_timeout)
        return SettlementResult.failure(SettleErrorReason.WORKFLOW_TIMEOUT, network, payer)

    async def _wait_for_terminal(self, entry: WorkflowTracking) -> WorkflowTracking:
        nonce = entry.nonce
        deadline = self.clock() + self.wait_timeout
        while self.clock() < deadline:
            # the background poller may have finished the entry meanwhile
            current = await self.store.get(nonce)
            if current is None:
                return entry
            entry = current
            if entry.is_terminal:
                return entry

            if entry.workflow_id:
                try:
                    report = await self.engine.get_status(entry.workflow_id)
                except WorkflowEngineError as exc:
                    logger.warning('Status poll for workflow {} failed: {}', entry.workflow_id, exc)
                else:
                    updated = await record_report(self.store, entry, report)
                    if updated is not None:
                        entry = updated
                        if entry.is_terminal:
                            return entry

            await self.sleep(self.interval)
        return entry
