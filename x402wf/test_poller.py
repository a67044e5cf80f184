import asyncio
from unittest import IsolatedAsyncioTestCase

from x402wf.errors import WorkflowEngineError
from x402wf.testing import FakeWorkflowEngine, random_nonce, report
from x402wf.types import SettleErrorReason
from x402wf.workflows import (
    BackgroundPoller,
    InMemoryWorkflowStore,
    PollerSupervisor,
    SettlementCoordinator,
    WorkflowStatus,
)

PAYER = '0x00000000000000000000000000000000000AAAAA'


class FakeTime:
    def __init__(self):
        self.now = 0.0

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


class PollerTestCase(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.time = FakeTime()
        self.store = InMemoryWorkflowStore()
        self.engine = FakeWorkflowEngine()
        self.nonce = random_nonce()

    async def _track_running(self, workflow_id='wf-1'):
        await self.store.track_if_absent(self.nonce, PAYER, 'base-sepolia')
        await self.store.attach_workflow_id(self.nonce, workflow_id)
        await self.store.mark_running(self.nonce)


class BackgroundPollerTests(PollerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.poller = BackgroundPoller(
            self.store, self.engine, interval=2, timeout=60,
            clock=self.time.clock, sleep=self.time.sleep)

    async def test_completion_is_recorded(self):
        await self._track_running()
        self.engine.script(report(1), report(1), report(2, '0xTX'))

        entry = await self.poller.run(self.nonce, 'wf-1')

        self.assertEqual(entry.status, WorkflowStatus.COMPLETED)
        self.assertEqual(entry.result.transaction, '0xTX')
        self.assertEqual(entry.result.network, 'base-sepolia')
        self.assertEqual(entry.result.payer, PAYER)
        self.assertEqual(self.engine.status_calls, 3)

    async def test_completion_while_pending(self):
        await self.store.track_if_absent(self.nonce, PAYER, 'base-sepolia')
        self.engine.script(report(2, '0xTX'))

        entry = await self.poller.run(self.nonce, 'wf-1')

        self.assertEqual(entry.status, WorkflowStatus.COMPLETED)

    async def test_failure_code_is_recorded(self):
        await self._track_running()
        self.engine.script(report(-1, error='execution reverted'))

        entry = await self.poller.run(self.nonce, 'wf-1')

        self.assertEqual(entry.status, WorkflowStatus.FAILED)
        self.assertEqual(entry.detail, 'execution reverted')

    async def test_completed_without_hash_fails(self):
        await self._track_running()
        self.engine.script(report(2))

        entry = await self.poller.run(self.nonce, 'wf-1')

        self.assertEqual(entry.status, WorkflowStatus.FAILED)

    async def test_transient_errors_are_retried(self):
        await self._track_running()
        self.engine.script(WorkflowEngineError('timeout'), report(2, '0xTX'))

        entry = await self.poller.run(self.nonce, 'wf-1')

        self.assertEqual(entry.status, WorkflowStatus.COMPLETED)

    async def test_ceiling_marks_failed(self):
        await self._track_running()
        self.engine.script(report(1))

        entry = await self.poller.run(self.nonce, 'wf-1')

        self.assertEqual(entry.status, WorkflowStatus.FAILED)
        self.assertEqual(entry.detail, 'workflow polling timeout after 60s')
        self.assertEqual(self.engine.status_calls, 30)

    async def test_stops_when_entry_is_swept(self):
        self.engine.script(report(1))

        self.assertIsNone(await self.poller.run(self.nonce, 'wf-1'))
        self.assertEqual(self.engine.status_calls, 0)


class CrashingPoller:
    async def run(self, nonce, workflow_id):
        raise RuntimeError('boom')


class PollerSupervisorTests(PollerTestCase):
    async def test_crash_fails_only_its_entry(self):
        await self._track_running()
        other = random_nonce()
        await self.store.track_if_absent(other)
        supervisor = PollerSupervisor(CrashingPoller(), self.store)

        supervisor.spawn(self.nonce, 'wf-1')
        await supervisor.join()

        entry = await self.store.get(self.nonce)
        self.assertEqual(entry.status, WorkflowStatus.FAILED)
        self.assertIn('boom', entry.detail)
        self.assertEqual((await self.store.get(other)).status, WorkflowStatus.PENDING_EXECUTION)

    async def test_spawn_is_deduplicated_and_cancellable(self):
        await self._track_running()
        self.engine.script(report(1))
        poller = BackgroundPoller(self.store, self.engine, interval=0.01, timeout=60)
        supervisor = PollerSupervisor(poller, self.store)

        first = supervisor.spawn(self.nonce, 'wf-1')
        second = supervisor.spawn(self.nonce, 'wf-1')
        await asyncio.sleep(0)

        self.assertIs(first, second)
        self.assertEqual(supervisor.active(), [self.nonce])
        self.assertTrue(supervisor.cancel(self.nonce))
        await supervisor.join()
        self.assertEqual(supervisor.active(), [])
        # the external job is untouched and the entry keeps its state
        self.assertEqual((await self.store.get(self.nonce)).status, WorkflowStatus.RUNNING)

    async def test_sweeper_runs_and_shuts_down(self):
        now = [10_000.0]
        store = InMemoryWorkflowStore(clock=lambda: now[0])
        await store.track_if_absent(self.nonce)
        now[0] = 20_000.0
        supervisor = PollerSupervisor(BackgroundPoller(store, self.engine), store)

        supervisor.start_sweeper(0.01, 3600)
        for _ in range(50):
            if len(store) == 0:
                break
            await asyncio.sleep(0.01)
        await supervisor.shutdown()

        self.assertEqual(len(store), 0)


class SettlementCoordinatorTests(PollerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.coordinator = SettlementCoordinator(
            self.store, self.engine, wait_timeout=30, interval=2,
            clock=self.time.clock, sleep=self.time.sleep)

    async def test_untracked_nonce(self):
        result = await self.coordinator.settle(self.nonce, 'base-sepolia', PAYER)

        self.assertFalse(result.success)
        self.assertEqual(result.error_reason, SettleErrorReason.NO_WORKFLOW_TRACKED)

    async def test_completed_result_is_cached(self):
        await self._track_running()
        self.engine.script(report(2, '0xTX'))

        first = await self.coordinator.settle(self.nonce)
        calls = self.engine.status_calls
        second = await self.coordinator.settle(self.nonce)

        self.assertTrue(first.success)
        self.assertEqual(first.transaction, '0xTX')
        self.assertEqual(first, second)
        self.assertEqual(self.engine.status_calls, calls)
        self.assertEqual(self.engine.dispatched, [])

    async def test_failed_workflow(self):
        await self._track_running()
        await self.store.mark_failed(self.nonce, 'execution reverted')

        result = await self.coordinator.settle(self.nonce, 'base-sepolia', PAYER)

        self.assertFalse(result.success)
        self.assertEqual(result.error_reason, SettleErrorReason.WORKFLOW_FAILED)
        self.assertEqual(result.network, 'base-sepolia')
        self.assertEqual(result.payer, PAYER)
        self.assertNotIn('detail', result.to_response())

    async def test_waits_then_times_out(self):
        await self._track_running()
        self.engine.script(report(1))

        result = await self.coordinator.settle(self.nonce)

        self.assertEqual(result.error_reason, SettleErrorReason.WORKFLOW_TIMEOUT)
        self.assertEqual(self.time.now, 30)
        self.assertEqual((await self.store.get(self.nonce)).status, WorkflowStatus.RUNNING)

    async def test_waits_for_in_flight_completion(self):
        await self._track_running()
        self.engine.script(report(1), report(1), report(2, '0xTX'))

        result = await self.coordinator.settle(self.nonce)

        self.assertTrue(result.success)
        self.assertEqual(result.transaction, '0xTX')

    async def test_pending_without_workflow_id_times_out(self):
        await self.store.track_if_absent(self.nonce, PAYER, 'base-sepolia')

        result = await self.coordinator.settle(self.nonce)

        self.assertEqual(result.error_reason, SettleErrorReason.WORKFLOW_TIMEOUT)
        self.assertEqual(self.engine.status_calls, 0)

    async def test_store_error_is_unexpected(self):
        async def broken_get(nonce):
            raise RuntimeError('store down')
        self.store.get = broken_get

        result = await self.coordinator.settle(self.nonce, 'base-sepolia', PAYER)

        self.assertEqual(result.error_reason, SettleErrorReason.UNEXPECTED_SETTLE_ERROR)
