import json

from django.conf import settings
from django.http import JsonResponse
from django.views import View
from loguru import logger

from x402wf.errors import ChainReaderError, PayloadValidationError
from x402wf.facilitator import get_facilitator
from x402wf.types import (
    InvalidReason,
    SettleErrorReason,
    SettlementResult,
    VerificationResult,
    parse_request,
)

REQUEST_BODY_DOC = {
    'paymentPayload': {
        'x402Version': 1,
        'scheme': 'exact',
        'network': 'base-sepolia',
        'payload': {
            'signature': '0x...',
            'authorization': {
                'from': '0x...',
                'to': '0x...',
                'value': '10000',
                'validAfter': '0',
                'validBefore': '1735689600',
                'nonce': '0x...',
            },
        },
    },
    'paymentRequirements': {
        'scheme': 'exact',
        'network': 'base-sepolia',
        'maxAmountRequired': '10000',
        'payTo': '0x...',
        'asset': '0x...',
    },
}


def _load_body(request):
    try:
        return json.loads(request.body or b'null')
    except ValueError as exc:
        raise PayloadValidationError('Request body is not valid JSON.') from exc


def _is_internal(request) -> bool:
    return request.headers.get(settings.WORKFLOW_INTERNAL_HEADER, '').lower() == 'true'


class SupportedView(View):
    """
    List supported payment kinds:
    { "kinds": [ { "x402Version": 1, "scheme": "exact", "network": "base", "extra": {...} } ] }
    """

    async def get(self, request, *args, **kwargs):
        return JsonResponse(get_facilitator().supported())


class VerifyView(View):
    """
    Validate a payment authorization and start its settlement workflow.

    Calls carrying the internal workflow header only validate, so the job
    can check the payment again without dispatching itself.
    """

    async def get(self, request, *args, **kwargs):
        return JsonResponse({
            'endpoint': '/verify',
            'method': 'POST',
            'description': 'Verify an x402 payment and start its settlement workflow.',
            'body': REQUEST_BODY_DOC,
            'response': {'isValid': 'boolean', 'invalidReason': 'string|null', 'payer': 'string|null'},
        })

    async def post(self, request, *args, **kwargs):
        try:
            payload, requirements = parse_request(_load_body(request))
        except PayloadValidationError as exc:
            logger.info('x402 verification rejected malformed request: {}', exc.message)
            return JsonResponse(
                VerificationResult.invalid(InvalidReason.INVALID_PAYLOAD).to_response(),
                status=400,
            )

        payer = payload.payload.authorization.from_
        internal = _is_internal(request)
        logger.debug('x402 verification for network {} payer {} internal={}',
                     requirements.network, payer, internal)
        try:
            result = await get_facilitator().verify(
                payload, requirements, dispatch=not internal)
        except Exception:
            logger.exception('x402 verification error for payer {}', payer)
            return JsonResponse(
                VerificationResult.invalid(
                    InvalidReason.UNEXPECTED_VERIFY_ERROR, payer).to_response(),
                status=500,
            )

        status = 500 if result.invalid_reason == InvalidReason.UNEXPECTED_VERIFY_ERROR else 200
        return JsonResponse(result.to_response(), status=status)


class SettleView(View):
    """
    Report the outcome of the settlement workflow started at verify time.
    """

    async def get(self, request, *args, **kwargs):
        return JsonResponse({
            'endpoint': '/settle',
            'method': 'POST',
            'description': 'Return the result of the settlement workflow started by /verify.',
            'body': REQUEST_BODY_DOC,
            'response': {
                'success': 'boolean',
                'transaction': 'string|null',
                'network': 'string|null',
                'payer': 'string|null',
                'errorReason': 'string|null',
            },
        })

    async def post(self, request, *args, **kwargs):
        try:
            payload, requirements = parse_request(_load_body(request))
        except PayloadValidationError as exc:
            logger.info('x402 settlement rejected malformed request: {}', exc.message)
            return JsonResponse(
                SettlementResult.failure(SettleErrorReason.INVALID_PAYLOAD).to_response(),
                status=400,
            )

        try:
            result = await get_facilitator().settle(payload, requirements)
        except Exception:
            logger.exception('x402 settlement error')
            return JsonResponse(
                SettlementResult.failure(
                    SettleErrorReason.UNEXPECTED_SETTLE_ERROR,
                    requirements.network,
                    payload.payload.authorization.from_,
                ).to_response(),
                status=500,
            )

        status = 500 if result.error_reason == SettleErrorReason.UNEXPECTED_SETTLE_ERROR else 200
        return JsonResponse(result.to_response(), status=status)


class SettlementStatusView(View):
    """Receipt confirmation queried by the workflow's last step."""

    async def get(self, request, *args, **kwargs):
        transaction_hash = request.GET.get('transactionHash', '')
        network = request.GET.get('network', '')
        if not transaction_hash or not network:
            return JsonResponse(
                {'confirmed': False, 'error': 'transactionHash and network are required.'},
                status=400,
            )
        try:
            status = await get_facilitator().settlement_status(network, transaction_hash)
        except PayloadValidationError as exc:
            return JsonResponse({'confirmed': False, 'error': exc.message}, status=400)
        except ChainReaderError as exc:
            logger.error('x402 settlement status lookup failed for {}: {}', transaction_hash, exc)
            return JsonResponse({'confirmed': False, 'error': 'Chain read failed.'}, status=502)
        return JsonResponse(status)
