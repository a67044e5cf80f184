"""
Builds the workflow description for an atomic verify + settle job.

The job calls back into this facilitator's ``/verify`` with the internal
header set (so the call only validates), submits the authorization on-chain
and then confirms the settlement.
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from x402wf.networks import NetworkConfig, rpc_url_for
from x402wf.types import PaymentPayload, PaymentRequirements

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
HTTP_EXECUTOR_IMAGE = (
    'ghcr.io/krnl-labs/executor-http@sha256:'
    '07ef35b261014304a0163502a7f1dec5395c5cac1fc381dc1f79b052389ab0d5'
)
EVM_EXECUTOR_IMAGE = 'ghcr.io/krnl-labs/executor-evm-transaction:latest'
INTENT_TTL_SECONDS = 3600


@dataclass(frozen=True)
class WorkflowSettings:
    facilitator_url: str
    attestor_image: str
    internal_header: str
    target_contract: str = ZERO_ADDRESS
    bundler_url: Optional[str] = None
    paymaster_url: Optional[str] = None
    gas_limit: str = '500000'
    max_fee_per_gas: str = '20000000000'
    max_priority_fee_per_gas: str = '2000000000'
    step_timeout_seconds: int = 30


def _output(name: str, value: str, type_: str, required: bool = True) -> Dict[str, Any]:
    return {'name': name, 'value': value, 'type': type_, 'required': required, 'export': True}


class WorkflowBuilder:
    def __init__(self, workflow_settings: WorkflowSettings, clock: Callable[[], float] = time.time):
        self.settings = workflow_settings
        self.clock = clock

    def build(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        network: NetworkConfig,
        delegate: str,
    ) -> Dict[str, Any]:
        cfg = self.settings
        authorization = payload.payload.authorization
        body = {
            'paymentPayload': payload.model_dump(by_alias=True, mode='json'),
            'paymentRequirements': requirements.model_dump(
                by_alias=True, mode='json', exclude_none=True),
        }
        facilitator_url = cfg.facilitator_url.rstrip('/')

        verify_step = {
            'name': 'x402-verify-payment',
            'image': HTTP_EXECUTOR_IMAGE,
            'attestor': cfg.attestor_image,
            'next': 'x402-settle-payment',
            'inputs': {
                'url': f'{facilitator_url}/verify',
                'method': 'POST',
                'headers': {
                    'Content-Type': 'application/json',
                    cfg.internal_header: 'true',
                },
                'body': body,
                'timeout': cfg.step_timeout_seconds,
            },
            'outputs': [
                _output('isValid', 'response.body.isValid', 'boolean'),
                _output('payer', 'response.body.payer', 'string', required=False),
                _output('invalidReason', 'response.body.invalidReason', 'string', required=False),
            ],
        }
        settle_step = {
            'name': 'x402-settle-payment',
            'image': EVM_EXECUTOR_IMAGE,
            'attestor': cfg.attestor_image,
            'next': 'x402-confirm-settlement',
            'inputs': {
                'condition': '${x402-verify-payment.isValid} == true',
                'network': network.network,
                'paymentPayload': body['paymentPayload'],
                'paymentRequirements': body['paymentRequirements'],
            },
            'outputs': [
                _output('transactionHash', 'transaction.hash', 'string'),
                _output('success', 'transaction.success', 'boolean'),
            ],
        }
        confirm_step = {
            'name': 'x402-confirm-settlement',
            'image': HTTP_EXECUTOR_IMAGE,
            'attestor': cfg.attestor_image,
            'inputs': {
                'url': f'{facilitator_url}/facilitator/settlement-status',
                'method': 'GET',
                'params': {
                    'transactionHash': '${x402-settle-payment.transactionHash}',
                    'network': network.network,
                },
                'timeout': cfg.step_timeout_seconds,
            },
            'outputs': [
                _output('confirmed', 'response.body.confirmed', 'boolean'),
                _output('blockNumber', 'response.body.blockNumber', 'number', required=False),
            ],
        }

        return {
            'chain_id': network.chain_id,
            'sender': authorization.from_,
            'delegate': delegate,
            'attestor': cfg.attestor_image,
            'target': {
                'contract': cfg.target_contract or ZERO_ADDRESS,
                'function': 'x402VerifyAndSettle(bytes,bytes)',
                'authData_result': '${x402-settle-payment.result}',
                'parameters': [],
            },
            'sponsor_execution_fee': True,
            'value': '0',
            'intent': {
                'id': authorization.nonce_key,
                'signature': payload.payload.signature,
                'deadline': str(int(self.clock()) + INTENT_TTL_SECONDS),
            },
            'rpc_url': rpc_url_for(network),
            'bundler_url': cfg.bundler_url,
            'paymaster_url': cfg.paymaster_url,
            'gas_limit': cfg.gas_limit,
            'max_fee_per_gas': cfg.max_fee_per_gas,
            'max_priority_fee_per_gas': cfg.max_priority_fee_per_gas,
            'workflow': {
                'name': 'x402-verify-settle-atomic',
                'version': 'v1.0.0',
                'steps': [verify_step, settle_step, confirm_step],
            },
        }
