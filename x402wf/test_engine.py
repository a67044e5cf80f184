import json
from unittest import IsolatedAsyncioTestCase

import httpx
from django.test import SimpleTestCase, override_settings
from eth_account import Account

from x402wf import networks
from x402wf.errors import WorkflowEngineError
from x402wf.testing import build_payment
from x402wf.types import parse_request
from x402wf.workflows import (
    BackgroundPoller,
    InMemoryWorkflowStore,
    JsonRpcWorkflowEngine,
    StatusCode,
    WorkflowBuilder,
    WorkflowSettings,
    WorkflowStatus,
)
from x402wf.workflows.engine import parse_status

NODE_URL = 'http://workflow-node.test/rpc'


class JsonRpcWorkflowEngineTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.requests = []
        self.responses = []

    def _handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    async def _engine(self):
        engine = JsonRpcWorkflowEngine(
            NODE_URL,
            dispatch_method='krnl_executeWorkflow',
            status_method='krnl_getWorkflowStatus',
            config_method='krnl_getConfig',
            transport=httpx.MockTransport(self._handler),
        )
        self.addAsyncCleanup(engine.aclose)
        return engine

    async def test_dispatch_returns_workflow_id(self):
        self.responses.append({'jsonrpc': '2.0', 'id': 1, 'result': {'intentId': 'intent-1'}})
        engine = await self._engine()

        result = await engine.dispatch({'workflow': {'name': 'x'}})

        self.assertTrue(result.accepted)
        self.assertEqual(result.workflow_id, 'intent-1')
        self.assertEqual(self.requests[0]['method'], 'krnl_executeWorkflow')
        self.assertEqual(self.requests[0]['params'], [{'workflow': {'name': 'x'}}])

    async def test_dispatch_error_object_is_refusal(self):
        self.responses.append({'jsonrpc': '2.0', 'id': 1, 'error': {'code': -32000, 'message': 'quota'}})
        engine = await self._engine()

        result = await engine.dispatch({})

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, 'quota')

    async def test_dispatch_without_id_is_refusal(self):
        self.responses.append({'jsonrpc': '2.0', 'id': 1, 'result': {}})
        engine = await self._engine()

        result = await engine.dispatch({})

        self.assertFalse(result.accepted)

    async def test_transport_failure_raises(self):
        self.responses.append(httpx.ConnectError('connection refused'))
        engine = await self._engine()

        with self.assertRaises(WorkflowEngineError):
            await engine.dispatch({})

    async def test_http_error_status_raises(self):
        self.responses.append(httpx.Response(503, text='unavailable'))
        engine = await self._engine()

        with self.assertRaises(WorkflowEngineError):
            await engine.get_status('wf-1')

    async def test_non_object_reply_raises(self):
        for body in (b'null', b'[]', b'"ok"'):
            with self.subTest(body=body):
                self.responses.append(httpx.Response(200, content=body))
                engine = await self._engine()

                with self.assertRaises(WorkflowEngineError):
                    await engine.get_status('wf-1')

    async def test_null_status_reply_is_retried_by_poller(self):
        self.responses.extend([
            httpx.Response(200, content=b'null'),
            {'jsonrpc': '2.0', 'id': 2, 'result': {'code': 2, 'transactionHash': '0xTX'}},
        ])
        engine = await self._engine()
        store = InMemoryWorkflowStore()
        await store.track_if_absent('0x01', payer='0xpayer', network='base-sepolia')
        await store.attach_workflow_id('0x01', 'wf-1')
        await store.mark_running('0x01')
        poller = BackgroundPoller(store, engine, interval=0, timeout=5)

        entry = await poller.run('0x01', 'wf-1')

        self.assertEqual(entry.status, WorkflowStatus.COMPLETED)
        self.assertEqual(entry.result.transaction, '0xTX')
        self.assertEqual(len(self.requests), 2)

    async def test_status_report(self):
        self.responses.append({
            'jsonrpc': '2.0', 'id': 1,
            'result': {'code': 2, 'result': {'transactionHash': '0xabc'}},
        })
        engine = await self._engine()

        report = await engine.get_status('wf-1')

        self.assertTrue(report.completed)
        self.assertEqual(report.transaction_hash, '0xabc')
        self.assertEqual(self.requests[0]['params'], ['wf-1'])

    async def test_node_config(self):
        self.responses.append({'jsonrpc': '2.0', 'id': 1,
                               'result': {'workflow': {'node_address': '0xnode'}}})
        engine = await self._engine()

        config = await engine.get_node_config()

        self.assertEqual(config['workflow']['node_address'], '0xnode')


class ParseStatusTests(SimpleTestCase):
    def test_numeric_codes(self):
        self.assertTrue(parse_status('wf', {'code': 0}).in_progress)
        self.assertTrue(parse_status('wf', {'code': 1}).in_progress)
        self.assertTrue(parse_status('wf', {'code': 2}).completed)
        self.assertTrue(parse_status('wf', {'code': -3}).failed)

    def test_textual_status(self):
        report = parse_status('wf', {'status': 'failed', 'error': 'reverted'})

        self.assertTrue(report.failed)
        self.assertEqual(report.error, 'reverted')
        self.assertEqual(parse_status('wf', {'status': 'RUNNING'}).code, StatusCode.RUNNING)

    def test_unknown_shape_is_pending(self):
        self.assertEqual(parse_status('wf', None).code, StatusCode.PENDING)
        self.assertEqual(parse_status('wf', {'code': 'weird'}).code, StatusCode.PENDING)


@override_settings(X402_RPC_URLS={'base-sepolia': 'https://rpc.base-sepolia.test'})
class WorkflowBuilderTests(SimpleTestCase):
    def test_builds_verify_settle_confirm_steps(self):
        payer = Account.create('x402-builder-payer')
        payload, requirements = parse_request(build_payment(payer))
        builder = WorkflowBuilder(
            WorkflowSettings(
                facilitator_url='https://facilitator.test/',
                attestor_image='attestor:latest',
                internal_header='X-Workflow-Internal',
            ),
            clock=lambda: 1_000,
        )

        spec = builder.build(payload, requirements, networks.lookup('base-sepolia'), '0xdelegate')

        steps = spec['workflow']['steps']
        self.assertEqual([step['name'] for step in steps],
                         ['x402-verify-payment', 'x402-settle-payment', 'x402-confirm-settlement'])
        verify_inputs = steps[0]['inputs']
        self.assertEqual(verify_inputs['url'], 'https://facilitator.test/verify')
        self.assertEqual(verify_inputs['headers']['X-Workflow-Internal'], 'true')
        self.assertEqual(verify_inputs['body']['paymentPayload']['payload']['authorization']['from'],
                         payer.address)
        self.assertEqual(spec['chain_id'], 84532)
        self.assertEqual(spec['sender'], payer.address)
        self.assertEqual(spec['delegate'], '0xdelegate')
        self.assertEqual(spec['intent']['id'], payload.payload.authorization.nonce_key)
        self.assertEqual(spec['intent']['deadline'], '4600')
        self.assertEqual(spec['rpc_url'], 'https://rpc.base-sepolia.test')


class RpcUrlResolutionTests(SimpleTestCase):
    @override_settings(
        X402_RPC_URLS={'base-sepolia': 'https://rpc.base-sepolia.test'},
        X402_RPC_URL='https://rpc.shared.test',
    )
    def test_per_network_override_wins(self):
        self.assertEqual(networks.rpc_url_for(networks.lookup('base-sepolia')),
                         'https://rpc.base-sepolia.test')
        self.assertEqual(networks.rpc_url_for(networks.lookup('base')), 'https://rpc.shared.test')

    @override_settings(X402_RPC_URLS={}, X402_RPC_URL='')
    def test_registry_default(self):
        self.assertEqual(networks.rpc_url_for(networks.lookup('base-sepolia')),
                         'https://sepolia.base.org')
