"""
Facilitator service: verify starts the settlement workflow, settle reads it.
"""
from functools import lru_cache
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from django.conf import settings
from loguru import logger

from x402wf import networks
from x402wf.chain import ChainReaderFactory
from x402wf.errors import PayloadValidationError, WorkflowEngineError
from x402wf.runtime import BackgroundLoop
from x402wf.types import (
    EXACT_SCHEME,
    X402_VERSION,
    InvalidReason,
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
    VerificationResult,
)
from x402wf.validator import PaymentValidator
from x402wf.workflows import (
    BackgroundPoller,
    DatabaseWorkflowStore,
    InMemoryWorkflowStore,
    JsonRpcWorkflowEngine,
    PollerSupervisor,
    SettlementCoordinator,
    WorkflowBuilder,
    WorkflowEngine,
    WorkflowSettings,
    WorkflowStore,
)

T = TypeVar('T')


class Facilitator:
    def __init__(
        self,
        validator: PaymentValidator,
        store: WorkflowStore,
        engine: WorkflowEngine,
        builder: WorkflowBuilder,
        supervisor: PollerSupervisor,
        coordinator: SettlementCoordinator,
        default_delegate: str = '',
        sweep_interval: float = 0,
        max_age: float = 3600,
        loop: Optional[BackgroundLoop] = None,
    ):
        self.validator = validator
        self.store = store
        self.engine = engine
        self.builder = builder
        self.supervisor = supervisor
        self.coordinator = coordinator
        self.default_delegate = default_delegate
        self.sweep_interval = sweep_interval
        self.max_age = max_age
        self.loop = loop
        self._delegate: Optional[str] = None

    async def verify(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        dispatch: bool = True,
    ) -> VerificationResult:
        """
        Validate the authorization and, when ``dispatch`` is set, make sure a
        settlement workflow exists for its nonce. Returns as soon as the job
        is dispatched and tracked.
        """
        return await self._run(self._verify(payload, requirements, dispatch))

    async def _run(self, coro: Awaitable[T]) -> T:
        if self.loop is None:
            return await coro
        return await self.loop.run(coro)

    async def _verify(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        dispatch: bool,
    ) -> VerificationResult:
        result = await self.validator.validate(payload, requirements)
        if not result.is_valid or not dispatch:
            return result
        if self.sweep_interval > 0:
            self.supervisor.start_sweeper(self.sweep_interval, self.max_age)
        return await self._start_settlement(payload, requirements, result)

    async def _start_settlement(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        result: VerificationResult,
    ) -> VerificationResult:
        nonce = payload.payload.authorization.nonce_key
        network = networks.lookup(requirements.network)
        entry, created = await self.store.track_if_absent(
            nonce, payer=result.payer, network=network.network)
        if not created:
            logger.info('x402 workflow already tracked for nonce {} ({})',
                        nonce, entry.status.value)
            return result

        try:
            delegate = await self._resolve_delegate()
            workflow_spec = self.builder.build(payload, requirements, network, delegate)
            dispatched = await self.engine.dispatch(workflow_spec)
        except WorkflowEngineError as exc:
            logger.error('x402 workflow dispatch failed for nonce {}: {}', nonce, exc)
            await self.store.mark_failed(nonce, f'dispatch failed: {exc}')
            return VerificationResult.invalid(InvalidReason.UNEXPECTED_VERIFY_ERROR, result.payer)
        except Exception as exc:
            logger.exception('x402 workflow dispatch error for nonce {}', nonce)
            await self.store.mark_failed(nonce, f'dispatch error: {exc}')
            return VerificationResult.invalid(InvalidReason.UNEXPECTED_VERIFY_ERROR, result.payer)

        if not dispatched.accepted or not dispatched.workflow_id:
            reason = dispatched.reason or 'workflow dispatch rejected'
            logger.error('x402 workflow rejected for nonce {}: {}', nonce, reason)
            await self.store.mark_failed(nonce, reason)
            return VerificationResult.invalid(InvalidReason.UNEXPECTED_VERIFY_ERROR, result.payer)

        await self.store.attach_workflow_id(nonce, dispatched.workflow_id)
        await self.store.mark_running(nonce)
        self.supervisor.spawn(nonce, dispatched.workflow_id)
        logger.info('x402 workflow {} started for nonce {} payer {}',
                    dispatched.workflow_id, nonce, result.payer)
        return result

    async def _resolve_delegate(self) -> str:
        if self._delegate:
            return self._delegate
        try:
            node_config = await self.engine.get_node_config()
        except WorkflowEngineError as exc:
            logger.warning('Workflow node config unavailable, using default delegate: {}', exc)
            node_config = {}
        workflow_config = node_config.get('workflow') or {}
        delegate = workflow_config.get('node_address') or self.default_delegate
        if not delegate:
            raise WorkflowEngineError('Workflow node address is not available.')
        self._delegate = delegate
        return delegate

    async def settle(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> SettlementResult:
        authorization = payload.payload.authorization
        return await self._run(self.coordinator.settle(
            authorization.nonce_key,
            network=requirements.network,
            payer=authorization.from_,
        ))

    async def settlement_status(self, network: str, transaction_hash: str) -> Dict[str, Any]:
        """Receipt lookup used by the workflow's confirmation step."""
        return await self._run(self._settlement_status(network, transaction_hash))

    async def _settlement_status(self, network: str, transaction_hash: str) -> Dict[str, Any]:
        config = networks.lookup(network)
        if config is None:
            raise PayloadValidationError(f'Unsupported network: {network}')
        receipt = await self.validator.readers.for_network(config).get_transaction_receipt(
            transaction_hash)
        return {
            'transactionHash': transaction_hash,
            'network': config.network,
            'confirmed': bool(receipt and receipt['status'] == 1),
            'blockNumber': receipt['blockNumber'] if receipt else None,
        }

    @staticmethod
    def supported() -> Dict[str, List[Dict[str, Any]]]:
        kinds = []
        for name in networks.supported_networks():
            config = networks.lookup(name)
            kinds.append({
                'x402Version': X402_VERSION,
                'scheme': EXACT_SCHEME,
                'network': config.network,
                'extra': config.domain_extra,
            })
        return {'kinds': kinds}

    async def aclose(self) -> None:
        await self._run(self._aclose())

    async def _aclose(self) -> None:
        await self.supervisor.shutdown()
        close = getattr(self.engine, 'aclose', None)
        if close is not None:
            await close()


def build_store() -> WorkflowStore:
    backend = getattr(settings, 'WORKFLOW_STORE', 'memory')
    if backend == 'database':
        return DatabaseWorkflowStore()
    if backend != 'memory':
        raise ValueError(f'Unknown WORKFLOW_STORE backend: {backend}')
    return InMemoryWorkflowStore()


def build_facilitator(
    store: Optional[WorkflowStore] = None,
    engine: Optional[WorkflowEngine] = None,
    readers: Optional[ChainReaderFactory] = None,
) -> Facilitator:
    """Assemble a facilitator from Django settings; arguments override parts."""
    if store is None:
        store = build_store()
    engine = engine or JsonRpcWorkflowEngine(
        node_url=settings.WORKFLOW_NODE_URL,
        dispatch_method=settings.WORKFLOW_DISPATCH_METHOD,
        status_method=settings.WORKFLOW_STATUS_METHOD,
        config_method=settings.WORKFLOW_CONFIG_METHOD,
        timeout=settings.WORKFLOW_REQUEST_TIMEOUT_SECONDS,
    )
    validator = PaymentValidator(
        readers or ChainReaderFactory(),
        domain_source=settings.X402_DOMAIN_SEPARATOR_SOURCE,
        expiry_margin_seconds=settings.X402_EXPIRY_MARGIN_SECONDS,
    )
    builder = WorkflowBuilder(WorkflowSettings(
        facilitator_url=settings.FACILITATOR_URL,
        attestor_image=settings.WORKFLOW_ATTESTOR_IMAGE,
        internal_header=settings.WORKFLOW_INTERNAL_HEADER,
        target_contract=settings.WORKFLOW_TARGET_CONTRACT,
        bundler_url=settings.WORKFLOW_BUNDLER_URL or None,
        paymaster_url=settings.WORKFLOW_PAYMASTER_URL or None,
    ))
    poller = BackgroundPoller(
        store,
        engine,
        interval=settings.WORKFLOW_POLL_INTERVAL_SECONDS,
        timeout=settings.WORKFLOW_POLL_TIMEOUT_SECONDS,
    )
    coordinator = SettlementCoordinator(
        store,
        engine,
        wait_timeout=settings.SETTLE_WAIT_TIMEOUT_SECONDS,
        interval=settings.WORKFLOW_POLL_INTERVAL_SECONDS,
    )
    return Facilitator(
        validator=validator,
        store=store,
        engine=engine,
        builder=builder,
        supervisor=PollerSupervisor(poller, store),
        coordinator=coordinator,
        default_delegate=settings.WORKFLOW_DEFAULT_DELEGATE,
        sweep_interval=settings.WORKFLOW_SWEEP_INTERVAL_SECONDS,
        max_age=settings.WORKFLOW_MAX_AGE_SECONDS,
        loop=BackgroundLoop(),
    )


@lru_cache(maxsize=1)
def get_facilitator() -> Facilitator:
    return build_facilitator()
