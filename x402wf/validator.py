"""
Ordered policy checklist for "exact" scheme payment authorizations.
"""
import time
from typing import Callable, Optional

from loguru import logger
from web3 import Web3

from x402wf import networks
from x402wf.chain import ChainReader, ChainReaderFactory, ERC20_BALANCE_ABI
from x402wf.errors import ChainReaderError
from x402wf.signatures import DOMAIN_SOURCE_CONTRACT, DomainDescriptor, SignatureVerifier
from x402wf.types import (
    EXACT_SCHEME,
    InvalidReason,
    PaymentPayload,
    PaymentRequirements,
    VerificationResult,
)

# validBefore must leave room for the settlement job to land on-chain.
DEFAULT_EXPIRY_MARGIN_SECONDS = 6


def build_domain(requirements: PaymentRequirements, config: networks.NetworkConfig) -> DomainDescriptor:
    extra = requirements.extra or {}
    return DomainDescriptor(
        name=extra.get('name') or config.usdc_name,
        version=extra.get('version') or config.usdc_version,
        chain_id=config.chain_id,
        verifying_contract=requirements.asset,
    )


class PaymentValidator:
    """
    Runs the checks in a fixed order; the first failure is the reported
    reason. Infrastructure faults surface as ``unexpected_verify_error``
    except during the balance check, which is skipped when the read fails.
    """

    def __init__(
        self,
        readers: ChainReaderFactory,
        domain_source: str = DOMAIN_SOURCE_CONTRACT,
        expiry_margin_seconds: int = DEFAULT_EXPIRY_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.readers = readers
        self.domain_source = domain_source
        self.expiry_margin_seconds = expiry_margin_seconds
        self.clock = clock

    async def validate(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> VerificationResult:
        payer = payload.payload.authorization.from_
        try:
            return await self._run_checks(payload, requirements)
        except ChainReaderError as exc:
            logger.error('x402 verification infrastructure failure for {}: {}', payer, exc)
            return VerificationResult.invalid(InvalidReason.UNEXPECTED_VERIFY_ERROR, payer)

    async def _run_checks(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
    ) -> VerificationResult:
        authorization = payload.payload.authorization
        payer = authorization.from_

        if payload.scheme != EXACT_SCHEME or requirements.scheme != EXACT_SCHEME:
            return self._reject(InvalidReason.UNSUPPORTED_SCHEME, payer)

        config = networks.lookup(requirements.network)
        if config is None:
            return self._reject(InvalidReason.INVALID_NETWORK, payer,
                                f'unknown network {requirements.network}')

        reader = self.readers.for_network(config)
        verifier = SignatureVerifier(reader, self.domain_source)
        domain = build_domain(requirements, config)
        if not await verifier.verify(authorization, payload.payload.signature, domain):
            return self._reject(InvalidReason.INVALID_SIGNATURE, payer)

        if Web3.to_checksum_address(authorization.to) != Web3.to_checksum_address(requirements.pay_to):
            return self._reject(InvalidReason.RECIPIENT_MISMATCH, payer,
                                f'{authorization.to} != {requirements.pay_to}')

        now = int(self.clock())
        if int(authorization.valid_before) < now + self.expiry_margin_seconds:
            return self._reject(InvalidReason.AUTHORIZATION_EXPIRING_TOO_SOON, payer)

        if int(authorization.valid_after) > now:
            return self._reject(InvalidReason.AUTHORIZATION_NOT_YET_VALID, payer)

        required = int(requirements.max_amount_required)
        balance = await self._balance_of(reader, requirements.asset, payer)
        if balance is not None and balance < required:
            return self._reject(InvalidReason.INSUFFICIENT_FUNDS, payer,
                                f'{balance} < {required}')

        if int(authorization.value) < required:
            return self._reject(InvalidReason.AUTHORIZATION_VALUE_TOO_LOW, payer,
                                f'{authorization.value} < {required}')

        logger.info('x402 payment verified for {} on {}', payer, config.network)
        return VerificationResult.valid(payer)

    async def _balance_of(self, reader: ChainReader, asset: str, owner: str) -> Optional[int]:
        try:
            return int(await reader.read_contract(
                asset, ERC20_BALANCE_ABI, 'balanceOf', [Web3.to_checksum_address(owner)]))
        except ChainReaderError as exc:
            logger.warning(
                'Could not read {} balance of {}, skipping balance check: {}',
                asset, owner, exc)
            return None

    @staticmethod
    def _reject(reason: InvalidReason, payer: str, detail: str = '') -> VerificationResult:
        logger.info('x402 verification failed for {}: {} {}', payer, reason.value, detail)
        return VerificationResult.invalid(reason, payer)
