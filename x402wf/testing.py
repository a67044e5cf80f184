"""
In-process doubles for the chain and the workflow engine, plus helpers that
build correctly signed payment requests. Used by the test modules.
"""
import asyncio
import os
import time
from typing import Any, Callable, Dict, List, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys

from x402wf import networks
from x402wf.chain import ChainReader, ChainReaderFactory
from x402wf.errors import ChainReaderError, ContractCallReverted, WorkflowEngineError
from x402wf.facilitator import Facilitator
from x402wf.runtime import BackgroundLoop
from x402wf.signatures import DomainDescriptor, signing_hash, struct_hash
from x402wf.types import Authorization
from x402wf.validator import PaymentValidator
from x402wf.workflows import (
    BackgroundPoller,
    DispatchResult,
    InMemoryWorkflowStore,
    PollerSupervisor,
    SettlementCoordinator,
    WorkflowBuilder,
    WorkflowEngine,
    WorkflowSettings,
    WorkflowStatusReport,
)

MERCHANT = '0x00000000000000000000000000000000000B0B0B'
CONTRACT_CODE = bytes.fromhex('6080604052')


class FakeChainReader(ChainReader):
    """
    Chain double. Balances default to ``default_balance``; tokens without a
    registered domain separator revert, which forces local recomputation.
    """

    def __init__(self, default_balance: Optional[int] = 10 ** 12):
        self.default_balance = default_balance
        self.balances: Dict[str, int] = {}
        self.domain_separators: Dict[str, bytes] = {}
        self.contract_accounts: Dict[str, Callable[[bytes, bytes], bytes]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.unreachable = False
        self.balance_unreadable = False
        self.calls: List[str] = []

    def _check_reachable(self):
        if self.unreachable:
            raise ChainReaderError('node unreachable')

    async def get_bytecode(self, address):
        self._check_reachable()
        self.calls.append('getCode')
        return CONTRACT_CODE if address.lower() in self.contract_accounts else b''

    async def read_contract(self, address, abi, function_name, args=()):
        self._check_reachable()
        self.calls.append(function_name)
        if function_name == 'DOMAIN_SEPARATOR':
            separator = self.domain_separators.get(address.lower())
            if separator is None:
                raise ContractCallReverted('no DOMAIN_SEPARATOR')
            return separator
        if function_name == 'balanceOf':
            if self.balance_unreadable:
                raise ChainReaderError('balance read failed')
            balance = self.balances.get(args[0].lower(), self.default_balance)
            if balance is None:
                raise ContractCallReverted('balanceOf reverted')
            return balance
        if function_name == 'isValidSignature':
            handler = self.contract_accounts.get(address.lower())
            if handler is None:
                raise ContractCallReverted('not a contract account')
            return handler(args[0], args[1])
        raise ContractCallReverted(f'{function_name} not implemented')

    async def get_transaction_receipt(self, transaction_hash):
        self._check_reachable()
        return self.receipts.get(transaction_hash.lower())


def reader_factory(reader: ChainReader) -> ChainReaderFactory:
    factory = ChainReaderFactory()
    for network in networks.supported_networks():
        factory.register(network, reader)
    return factory


def report(code: int, transaction_hash: Optional[str] = None, error: Optional[str] = None) -> Dict[str, Any]:
    return {'code': code, 'transaction_hash': transaction_hash, 'error': error}


class FakeWorkflowEngine(WorkflowEngine):
    """
    Engine double. ``script`` sets the status reports returned in order for
    every workflow; the last one repeats. Items may be exceptions to raise.
    """

    def __init__(self, node_address: Optional[str] = '0x000000000000000000000000000000000000dEaD'):
        self.node_address = node_address
        self.dispatched: List[Dict[str, Any]] = []
        self.status_calls = 0
        self.accept = True
        self.dispatch_error: Optional[Exception] = None
        self.dispatch_delay = 0.0
        self._script: List[Any] = [report(1)]

    def script(self, *items):
        self._script = list(items)

    async def dispatch(self, workflow_spec):
        if self.dispatch_delay:
            await asyncio.sleep(self.dispatch_delay)
        if self.dispatch_error is not None:
            raise self.dispatch_error
        self.dispatched.append(workflow_spec)
        if not self.accept:
            return DispatchResult(accepted=False, reason='engine refused workflow')
        return DispatchResult(accepted=True, workflow_id=f'wf-{len(self.dispatched)}')

    async def get_status(self, workflow_id):
        self.status_calls += 1
        item = self._script[0] if len(self._script) == 1 else self._script.pop(0)
        if isinstance(item, Exception):
            raise item
        return WorkflowStatusReport(workflow_id=workflow_id, **item)

    async def get_node_config(self):
        if self.node_address is None:
            raise WorkflowEngineError('config unavailable')
        return {'workflow': {'node_address': self.node_address}}


def random_nonce() -> str:
    return '0x' + os.urandom(32).hex()


def domain_for(network: str, extra: Optional[Dict[str, str]] = None) -> DomainDescriptor:
    config = networks.lookup(network)
    extra = extra or config.domain_extra
    return DomainDescriptor(
        name=extra['name'],
        version=extra['version'],
        chain_id=config.chain_id,
        verifying_contract=config.usdc_address,
    )


def sign_digest(account, digest: bytes, personal: bool = False) -> str:
    if personal:
        signed = Account.sign_message(encode_defunct(primitive=digest), private_key=account.key)
        return '0x' + bytes(signed.signature).hex()
    signature = keys.PrivateKey(bytes(account.key)).sign_msg_hash(digest).to_bytes()
    return '0x' + (signature[:64] + bytes([signature[64] + 27])).hex()


def authorization_digest(authorization: Dict[str, str], domain: DomainDescriptor) -> bytes:
    return signing_hash(domain.separator(), struct_hash(Authorization.model_validate(authorization)))


def build_payment(
    account,
    network: str = 'base-sepolia',
    pay_to: str = MERCHANT,
    value: int = 10000,
    max_amount: int = 10000,
    valid_after: Optional[int] = None,
    valid_before: Optional[int] = None,
    nonce: Optional[str] = None,
    scheme: str = 'exact',
    payer: Optional[str] = None,
    personal: bool = False,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Request body for /verify and /settle, signed by ``account`` over the
    locally computed domain of ``network``. ``payer`` overrides ``from``
    for contract accounts whose signature is checked on-chain.
    """
    now = int(now if now is not None else time.time())
    config = networks.lookup(network)
    authorization = {
        'from': payer or account.address,
        'to': pay_to,
        'value': str(value),
        'validAfter': str(now - 60 if valid_after is None else valid_after),
        'validBefore': str(now + 3600 if valid_before is None else valid_before),
        'nonce': nonce or random_nonce(),
    }
    if config is not None:
        digest = authorization_digest(authorization, domain_for(network))
        signature = sign_digest(account, digest, personal=personal)
        asset = config.usdc_address
        extra = config.domain_extra
    else:
        signature = '0x' + '11' * 65
        asset = networks.lookup('base-sepolia').usdc_address
        extra = None
    body = {
        'paymentPayload': {
            'x402Version': 1,
            'scheme': scheme,
            'network': network,
            'payload': {'signature': signature, 'authorization': authorization},
        },
        'paymentRequirements': {
            'scheme': scheme,
            'network': network,
            'maxAmountRequired': str(max_amount),
            'payTo': pay_to,
            'asset': asset,
            'resource': 'https://api.example.com/premium',
            'maxTimeoutSeconds': 60,
        },
    }
    if extra is not None:
        body['paymentRequirements']['extra'] = extra
    return body


def make_facilitator(
    reader: Optional[FakeChainReader] = None,
    engine: Optional[FakeWorkflowEngine] = None,
    store=None,
    poll_interval: float = 0.01,
    poll_timeout: float = 5,
    settle_wait: float = 5,
    loop: Optional[BackgroundLoop] = None,
) -> Facilitator:
    """Facilitator wired to in-process doubles with short poll intervals."""
    reader = reader or FakeChainReader()
    engine = engine or FakeWorkflowEngine()
    if store is None:
        store = InMemoryWorkflowStore()
    poller = BackgroundPoller(store, engine, interval=poll_interval, timeout=poll_timeout)
    return Facilitator(
        validator=PaymentValidator(reader_factory(reader)),
        store=store,
        engine=engine,
        builder=WorkflowBuilder(WorkflowSettings(
            facilitator_url='http://facilitator.test',
            attestor_image='attestor:test',
            internal_header='X-Workflow-Internal',
        )),
        supervisor=PollerSupervisor(poller, store),
        coordinator=SettlementCoordinator(
            store, engine, wait_timeout=settle_wait, interval=poll_interval),
        loop=loop,
    )
