import json
import time
from unittest.mock import AsyncMock, patch

from django.test import SimpleTestCase, override_settings
from django.urls import reverse
from eth_account import Account

from x402wf.runtime import BackgroundLoop
from x402wf.testing import FakeChainReader, FakeWorkflowEngine, build_payment, make_facilitator, report
from x402wf.workflows import WorkflowStatus


@override_settings(WORKFLOW_INTERNAL_HEADER='X-Workflow-Internal')
class X402WorkflowViewTests(SimpleTestCase):
    def setUp(self) -> None:
        self.payer = Account.create('x402-view-payer')
        self.reader = FakeChainReader()
        self.engine = FakeWorkflowEngine()
        self.facilitator = make_facilitator(self.reader, self.engine)

        patcher = patch('x402wf.views.get_facilitator', return_value=self.facilitator)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def _post(self, name, body, headers=None):
        return await self.async_client.post(
            reverse(name),
            data=json.dumps(body),
            content_type='application/json',
            headers=headers or {},
        )

    async def test_scenario_verify_then_settle(self):
        self.engine.script(report(1), report(2, '0xTX'))
        now = int(time.time())
        body = build_payment(
            self.payer, value=10000, max_amount=10000,
            valid_after=now - 60, valid_before=now + 3600, now=now)

        verify = await self._post('x402:verify', body)

        self.assertEqual(verify.status_code, 200)
        self.assertEqual(verify.json(), {
            'isValid': True,
            'invalidReason': None,
            'payer': self.payer.address,
        })

        await self.facilitator.supervisor.join()
        settle = await self._post('x402:settle', body)

        self.assertEqual(settle.status_code, 200)
        self.assertEqual(settle.json(), {
            'success': True,
            'transaction': '0xTX',
            'network': 'base-sepolia',
            'payer': self.payer.address,
            'errorReason': None,
        })
        await self.facilitator.aclose()

    async def test_scenario_expiring_too_soon(self):
        now = int(time.time())
        body = build_payment(self.payer, valid_before=now + 2, now=now)

        response = await self._post('x402:verify', body)

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['isValid'])
        self.assertEqual(response.json()['invalidReason'], 'authorization_expiring_too_soon')
        self.assertEqual(self.engine.dispatched, [])

    async def test_scenario_value_too_low(self):
        body = build_payment(self.payer, value=5000, max_amount=10000)

        response = await self._post('x402:verify', body)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['invalidReason'], 'authorization_value_too_low')

    async def test_settle_without_verify(self):
        response = await self._post('x402:settle', build_payment(self.payer))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertFalse(body['success'])
        self.assertEqual(body['errorReason'], 'no_workflow_tracked')

    async def test_internal_header_skips_dispatch(self):
        response = await self._post(
            'x402:verify', build_payment(self.payer), headers={'X-Workflow-Internal': 'true'})

        self.assertTrue(response.json()['isValid'])
        self.assertEqual(self.engine.dispatched, [])

    async def test_prefixed_routes(self):
        response = await self.async_client.post(
            '/facilitator/verify',
            data=json.dumps(build_payment(self.payer)),
            content_type='application/json',
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['isValid'])
        await self.facilitator.aclose()

    async def test_malformed_body(self):
        response = await self.async_client.post(
            reverse('x402:verify'), data='not json', content_type='application/json')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['invalidReason'], 'invalid_payload')

    async def test_missing_requirements(self):
        body = build_payment(self.payer)
        del body['paymentRequirements']

        verify = await self._post('x402:verify', body)
        settle = await self._post('x402:settle', body)

        self.assertEqual(verify.status_code, 400)
        self.assertEqual(settle.status_code, 400)
        self.assertEqual(settle.json()['errorReason'], 'invalid_payload')

    async def test_infrastructure_failure_is_500(self):
        self.reader.unreachable = True

        response = await self._post('x402:verify', build_payment(self.payer))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['invalidReason'], 'unexpected_verify_error')

    async def test_unexpected_settle_exception_is_500(self):
        self.facilitator.settle = AsyncMock(side_effect=RuntimeError('boom'))

        response = await self._post('x402:settle', build_payment(self.payer))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['errorReason'], 'unexpected_settle_error')

    async def test_supported(self):
        response = await self.async_client.get(reverse('x402:supported'))

        self.assertEqual(response.status_code, 200)
        networks = [kind['network'] for kind in response.json()['kinds']]
        self.assertIn('base-sepolia', networks)

    async def test_endpoint_docs(self):
        for name in ('x402:verify', 'x402:settle'):
            with self.subTest(name=name):
                response = await self.async_client.get(reverse(name))
                self.assertEqual(response.status_code, 200)
                self.assertEqual(response.json()['method'], 'POST')

    async def test_settlement_status(self):
        self.reader.receipts['0xabc'] = {'status': 1, 'blockNumber': 7}

        response = await self.async_client.get(
            reverse('x402:settlement-status'),
            {'transactionHash': '0xabc', 'network': 'base-sepolia'},
        )
        missing = await self.async_client.get(reverse('x402:settlement-status'))

        self.assertEqual(response.json()['confirmed'], True)
        self.assertEqual(response.json()['blockNumber'], 7)
        self.assertEqual(missing.status_code, 400)


@override_settings(WORKFLOW_INTERNAL_HEADER='X-Workflow-Internal')
class BackgroundLoopViewTests(SimpleTestCase):
    """Sync request handling, as under runserver: each request gets its own loop."""

    def setUp(self) -> None:
        self.payer = Account.create('x402-loop-payer')
        self.engine = FakeWorkflowEngine()
        self.loop = BackgroundLoop('x402-test-loop')
        self.facilitator = make_facilitator(
            engine=self.engine, poll_interval=0.05, loop=self.loop)

        patcher = patch('x402wf.views.get_facilitator', return_value=self.facilitator)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self.loop.stop)
        self.addCleanup(self._close_facilitator)

    def _close_facilitator(self):
        self.loop.run_sync(self.facilitator.aclose(), timeout=5)

    def _wait_for_terminal(self, nonce, timeout=5):
        deadline = time.monotonic() + timeout
        while True:
            entry = self.loop.run_sync(self.facilitator.store.get(nonce), timeout=1)
            if entry.is_terminal or time.monotonic() > deadline:
                return entry
            time.sleep(0.02)

    def test_polling_outlives_the_request(self):
        self.engine.script(report(1), report(1), report(2, '0xTX'))
        body = build_payment(self.payer)
        nonce = body['paymentPayload']['payload']['authorization']['nonce']

        verify = self.client.post(
            reverse('x402:verify'), data=json.dumps(body), content_type='application/json')
        entry = self._wait_for_terminal(nonce)
        status_calls = self.engine.status_calls
        settle = self.client.post(
            reverse('x402:settle'), data=json.dumps(body), content_type='application/json')

        self.assertEqual(verify.status_code, 200)
        self.assertEqual(entry.status, WorkflowStatus.COMPLETED)
        self.assertEqual(status_calls, 3)
        self.assertEqual(settle.json()['transaction'], '0xTX')
        self.assertEqual(len(self.engine.dispatched), 1)


class CoreViewTests(SimpleTestCase):
    def test_health(self):
        response = self.client.get('/health')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})

    def test_home(self):
        response = self.client.get('/')

        self.assertEqual(response.status_code, 200)
        self.assertIn(b'POST /verify', response.content)
