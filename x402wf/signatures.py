"""
EIP-712 signing hash for EIP-3009 ``TransferWithAuthorization`` and signature
validation for both key-controlled and contract (EIP-1271) accounts.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as EthKeysValidationError
from eth_utils import keccak
from hexbytes import HexBytes
from loguru import logger
from web3 import Web3

from x402wf.chain import ChainReader, DOMAIN_SEPARATOR_ABI, EIP1271_ABI
from x402wf.errors import ContractCallReverted
from x402wf.types import Authorization


TRANSFER_WITH_AUTHORIZATION_TYPEHASH = keccak(
    text='TransferWithAuthorization(address from,address to,uint256 value,'
         'uint256 validAfter,uint256 validBefore,bytes32 nonce)'
)
EIP712_DOMAIN_TYPEHASH = keccak(
    text='EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)'
)
EIP1271_MAGIC_VALUE = bytes.fromhex('1626ba7e')

DOMAIN_SOURCE_CONTRACT = 'contract'
DOMAIN_SOURCE_LOCAL = 'local'


@dataclass(frozen=True)
class DomainDescriptor:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def separator(self) -> bytes:
        return keccak(abi_encode(
            ['bytes32', 'bytes32', 'bytes32', 'uint256', 'address'],
            [
                EIP712_DOMAIN_TYPEHASH,
                keccak(text=self.name),
                keccak(text=self.version),
                self.chain_id,
                Web3.to_checksum_address(self.verifying_contract),
            ],
        ))


def struct_hash(authorization: Authorization) -> bytes:
    """Hash of the seven ABI-encoded words (typehash plus six fields)."""
    return keccak(abi_encode(
        ['bytes32', 'address', 'address', 'uint256', 'uint256', 'uint256', 'bytes32'],
        [
            TRANSFER_WITH_AUTHORIZATION_TYPEHASH,
            Web3.to_checksum_address(authorization.from_),
            Web3.to_checksum_address(authorization.to),
            int(authorization.value),
            int(authorization.valid_after),
            int(authorization.valid_before),
            bytes(HexBytes(authorization.nonce)),
        ],
    ))


def signing_hash(domain_separator: bytes, message_hash: bytes) -> bytes:
    return keccak(b'\x19\x01' + domain_separator + message_hash)


async def fetch_domain_separator(
    reader: ChainReader,
    domain: DomainDescriptor,
    source: str = DOMAIN_SOURCE_CONTRACT,
) -> bytes:
    """
    Domain separator for ``domain``.

    With the contract source the token's own ``DOMAIN_SEPARATOR()`` is used,
    so a name/version mismatch between client and server cannot matter. A
    token without that getter falls back to local recomputation; an
    unreachable node propagates ``ChainReaderError``.
    """
    if source != DOMAIN_SOURCE_CONTRACT:
        return domain.separator()
    try:
        separator = await reader.read_contract(
            domain.verifying_contract, DOMAIN_SEPARATOR_ABI, 'DOMAIN_SEPARATOR')
    except ContractCallReverted as exc:
        logger.warning(
            'DOMAIN_SEPARATOR unavailable on {}, recomputing locally: {}',
            domain.verifying_contract, exc)
        return domain.separator()
    return bytes(separator)


def _normalize_signature(signature: bytes) -> Optional[bytes]:
    if len(signature) != 65:
        return None
    v = signature[64]
    if v >= 27:
        v -= 27
    if v not in (0, 1):
        return None
    return signature[:64] + bytes([v])


def recover_hash_signer(message_hash: bytes, signature: bytes) -> Optional[str]:
    """Recover the address that signed ``message_hash`` directly."""
    normalized = _normalize_signature(signature)
    if normalized is None:
        return None
    try:
        public_key = keys.Signature(signature_bytes=normalized) \
            .recover_public_key_from_msg_hash(message_hash)
    except (BadSignature, EthKeysValidationError, ValueError):
        return None
    return public_key.to_checksum_address()


def recover_personal_signer(message_hash: bytes, signature: bytes) -> Optional[str]:
    """Recover the address that signed ``message_hash`` as an EIP-191 message."""
    try:
        return Account.recover_message(
            encode_defunct(primitive=message_hash), signature=signature)
    except Exception:  # eth_account raises several unrelated types on bad input
        return None


class Signer(ABC):
    """Signature check for one account kind."""

    kind: str = ''

    @abstractmethod
    async def verify(self, message_hash: bytes, signature: bytes, address: str) -> bool:
        pass


class SimpleAccountSigner(Signer):
    """
    Key-controlled account.

    Accepts a signature over the raw signing hash (``eth_signTypedData``)
    and the EIP-191 wrapped form of the same hash (``personal_sign`` of the
    32 raw bytes), which is what smart-account-aware clients produce.
    """

    kind = 'simple'

    async def verify(self, message_hash: bytes, signature: bytes, address: str) -> bool:
        expected = address.lower()
        for recover in (recover_hash_signer, recover_personal_signer):
            recovered = recover(message_hash, signature)
            if recovered is not None and recovered.lower() == expected:
                return True
        logger.debug('recovered signer does not match {}', address)
        return False


class ContractAccountSigner(Signer):
    """Smart-contract account validated through EIP-1271 ``isValidSignature``."""

    kind = 'contract'

    def __init__(self, reader: ChainReader):
        self.reader = reader

    async def verify(self, message_hash: bytes, signature: bytes, address: str) -> bool:
        try:
            magic_value = await self.reader.read_contract(
                address, EIP1271_ABI, 'isValidSignature', [message_hash, signature])
        except ContractCallReverted as exc:
            logger.info('isValidSignature reverted for {}: {}', address, exc)
            return False
        valid = bytes(magic_value) == EIP1271_MAGIC_VALUE
        logger.debug('EIP-1271 magic value {} from {}, valid={}',
                     HexBytes(magic_value).hex(), address, valid)
        return valid


async def resolve_signer(reader: ChainReader, address: str) -> Signer:
    """Probe ``address`` for code once and pick the matching signer kind."""
    code = await reader.get_bytecode(address)
    if code:
        return ContractAccountSigner(reader)
    return SimpleAccountSigner()


class SignatureVerifier:
    """Validates an authorization signature against its token domain."""

    def __init__(self, reader: ChainReader, domain_source: str = DOMAIN_SOURCE_CONTRACT):
        self.reader = reader
        self.domain_source = domain_source

    async def signing_hash_for(self, authorization: Authorization, domain: DomainDescriptor) -> bytes:
        separator = await fetch_domain_separator(
            self.reader, domain, self.domain_source)
        return signing_hash(separator, struct_hash(authorization))

    async def verify(
        self,
        authorization: Authorization,
        signature: str,
        domain: DomainDescriptor,
    ) -> bool:
        """
        Return whether ``signature`` authorizes ``authorization``.

        Raises ``ChainReaderError`` only when the node is unreachable.
        """
        try:
            signature_bytes = bytes(HexBytes(signature))
        except (ValueError, TypeError):
            return False
        if not signature_bytes:
            return False

        message_hash = await self.signing_hash_for(authorization, domain)
        signer = await resolve_signer(self.reader, authorization.from_)
        logger.debug('verifying {} signature for {} over {}',
                     signer.kind, authorization.from_, HexBytes(message_hash).hex())
        return await signer.verify(message_hash, signature_bytes, authorization.from_)
