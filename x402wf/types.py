"""
Wire types for the x402 "exact" EVM scheme.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from hexbytes import HexBytes
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from web3 import Web3

from x402wf.errors import PayloadValidationError

EXACT_SCHEME = 'exact'
X402_VERSION = 1


class InvalidReason(str, Enum):
    UNSUPPORTED_SCHEME = 'unsupported_scheme'
    INVALID_NETWORK = 'invalid_network'
    INVALID_SIGNATURE = 'invalid_signature'
    RECIPIENT_MISMATCH = 'recipient_mismatch'
    AUTHORIZATION_EXPIRING_TOO_SOON = 'authorization_expiring_too_soon'
    AUTHORIZATION_NOT_YET_VALID = 'authorization_not_yet_valid'
    INSUFFICIENT_FUNDS = 'insufficient_funds'
    AUTHORIZATION_VALUE_TOO_LOW = 'authorization_value_too_low'
    UNEXPECTED_VERIFY_ERROR = 'unexpected_verify_error'
    INVALID_PAYLOAD = 'invalid_payload'


class SettleErrorReason(str, Enum):
    NO_WORKFLOW_TRACKED = 'no_workflow_tracked'
    WORKFLOW_FAILED = 'workflow_failed'
    WORKFLOW_TIMEOUT = 'workflow_timeout'
    UNEXPECTED_SETTLE_ERROR = 'unexpected_settle_error'
    INVALID_PAYLOAD = 'invalid_payload'


def _check_address(value: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f'Invalid ethereum address: {value}')
    return value


def _check_uint(value: Any) -> str:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f'Expected an unsigned integer, got {value!r}') from exc
    if number < 0:
        raise ValueError(f'Expected an unsigned integer, got {value!r}')
    return str(number)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Authorization(_WireModel):
    from_: str = Field(alias='from')
    to: str
    value: str
    valid_after: str = Field(alias='validAfter')
    valid_before: str = Field(alias='validBefore')
    nonce: str

    @field_validator('from_', 'to')
    @classmethod
    def check_addresses(cls, value: str) -> str:
        return _check_address(value)

    @field_validator('value', 'valid_after', 'valid_before', mode='before')
    @classmethod
    def check_numbers(cls, value: Any) -> str:
        return _check_uint(value)

    @field_validator('nonce')
    @classmethod
    def check_nonce(cls, value: str) -> str:
        try:
            nonce_bytes = HexBytes(value)
        except (ValueError, TypeError) as exc:
            raise ValueError('Authorization nonce must be hex encoded.') from exc
        if len(nonce_bytes) != 32:
            raise ValueError('Authorization nonce must be 32 bytes.')
        return value

    @property
    def nonce_key(self) -> str:
        """Canonical ``0x``-prefixed lowercase nonce, the tracking key."""
        return '0x' + bytes(HexBytes(self.nonce)).hex()


class ExactEvmPayload(_WireModel):
    signature: str
    authorization: Authorization

    @field_validator('signature')
    @classmethod
    def check_signature(cls, value: str) -> str:
        try:
            HexBytes(value)
        except (ValueError, TypeError) as exc:
            raise ValueError('Authorization signature must be hex encoded.') from exc
        return value


class PaymentPayload(_WireModel):
    x402_version: int = Field(default=X402_VERSION, alias='x402Version')
    scheme: str
    network: str
    payload: ExactEvmPayload


class PaymentRequirements(_WireModel):
    scheme: str
    network: str
    max_amount_required: str = Field(alias='maxAmountRequired')
    pay_to: str = Field(alias='payTo')
    asset: str
    resource: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias='mimeType')
    max_timeout_seconds: Optional[int] = Field(
        default=None, alias='maxTimeoutSeconds')
    output_schema: Optional[Dict[str, Any]] = Field(
        default=None, alias='outputSchema')
    extra: Optional[Dict[str, Any]] = None

    @field_validator('pay_to', 'asset')
    @classmethod
    def check_addresses(cls, value: str) -> str:
        return _check_address(value)

    @field_validator('max_amount_required', mode='before')
    @classmethod
    def check_amount(cls, value: Any) -> str:
        return _check_uint(value)


class VerificationResult(_WireModel):
    is_valid: bool = Field(alias='isValid')
    invalid_reason: Optional[InvalidReason] = Field(
        default=None, alias='invalidReason')
    payer: Optional[str] = None

    @classmethod
    def valid(cls, payer: str) -> 'VerificationResult':
        return cls(is_valid=True, payer=payer)

    @classmethod
    def invalid(cls, reason: InvalidReason, payer: Optional[str] = None) -> 'VerificationResult':
        return cls(is_valid=False, invalid_reason=reason, payer=payer)

    def to_response(self) -> dict:
        return self.model_dump(by_alias=True, mode='json')


class SettlementResult(_WireModel):
    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[SettleErrorReason] = Field(
        default=None, alias='errorReason')
    detail: Optional[str] = None

    @classmethod
    def failure(
        cls,
        reason: SettleErrorReason,
        network: Optional[str] = None,
        payer: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> 'SettlementResult':
        return cls(success=False, error_reason=reason, network=network,
                   payer=payer, detail=detail)

    def to_response(self) -> dict:
        return self.model_dump(by_alias=True, mode='json', exclude={'detail'})


def parse_request(request_data: Any) -> tuple[PaymentPayload, PaymentRequirements]:
    """Parse the ``{paymentPayload, paymentRequirements}`` request body."""
    if not isinstance(request_data, dict):
        raise PayloadValidationError('Request body must be a JSON object.')
    try:
        payload = PaymentPayload.model_validate(request_data['paymentPayload'])
        requirements = PaymentRequirements.model_validate(
            request_data['paymentRequirements'])
    except KeyError as exc:
        raise PayloadValidationError(f'Missing field: {exc.args[0]}') from exc
    except PydanticValidationError as exc:
        raise PayloadValidationError(
            'Invalid payment payload or requirements.') from exc
    return payload, requirements
