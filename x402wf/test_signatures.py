import os
from unittest import IsolatedAsyncioTestCase

from eth_account import Account
from eth_account.messages import encode_typed_data
from hexbytes import HexBytes
from web3 import Web3

from x402wf.errors import ChainReaderError
from x402wf.signatures import (
    DOMAIN_SOURCE_LOCAL,
    EIP1271_MAGIC_VALUE,
    ContractAccountSigner,
    SignatureVerifier,
    fetch_domain_separator,
    recover_hash_signer,
    resolve_signer,
)
from x402wf.testing import (
    MERCHANT,
    FakeChainReader,
    authorization_digest,
    domain_for,
    random_nonce,
    sign_digest,
)
from x402wf.types import Authorization

SMART_ACCOUNT = '0x00000000000000000000000000000000000C0FFE'


def _authorization(payer: str) -> dict:
    return {
        'from': payer,
        'to': MERCHANT,
        'value': '10000',
        'validAfter': '0',
        'validBefore': '1900000000',
        'nonce': random_nonce(),
    }


def _typed_data(authorization: dict, domain) -> dict:
    return {
        'types': {
            'EIP712Domain': [
                {'name': 'name', 'type': 'string'},
                {'name': 'version', 'type': 'string'},
                {'name': 'chainId', 'type': 'uint256'},
                {'name': 'verifyingContract', 'type': 'address'},
            ],
            'TransferWithAuthorization': [
                {'name': 'from', 'type': 'address'},
                {'name': 'to', 'type': 'address'},
                {'name': 'value', 'type': 'uint256'},
                {'name': 'validAfter', 'type': 'uint256'},
                {'name': 'validBefore', 'type': 'uint256'},
                {'name': 'nonce', 'type': 'bytes32'},
            ],
        },
        'primaryType': 'TransferWithAuthorization',
        'domain': {
            'name': domain.name,
            'version': domain.version,
            'chainId': domain.chain_id,
            'verifyingContract': Web3.to_checksum_address(domain.verifying_contract),
        },
        'message': {
            'from': Web3.to_checksum_address(authorization['from']),
            'to': Web3.to_checksum_address(authorization['to']),
            'value': int(authorization['value']),
            'validAfter': int(authorization['validAfter']),
            'validBefore': int(authorization['validBefore']),
            'nonce': HexBytes(authorization['nonce']),
        },
    }


class SimpleAccountSignatureTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.payer = Account.create('x402-signature-payer')
        self.reader = FakeChainReader()
        self.domain = domain_for('base-sepolia')
        self.verifier = SignatureVerifier(self.reader)

    async def test_accepts_wallet_typed_data_signature(self):
        authorization = _authorization(self.payer.address)
        signable = encode_typed_data(full_message=_typed_data(authorization, self.domain))
        signature = '0x' + bytes(self.payer.sign_message(signable).signature).hex()

        valid = await self.verifier.verify(
            Authorization.model_validate(authorization), signature, self.domain)

        self.assertTrue(valid)

    async def test_accepts_personal_sign_of_signing_hash(self):
        authorization = _authorization(self.payer.address)
        digest = authorization_digest(authorization, self.domain)
        signature = sign_digest(self.payer, digest, personal=True)

        valid = await self.verifier.verify(
            Authorization.model_validate(authorization), signature, self.domain)

        self.assertTrue(valid)

    async def test_rejects_signature_from_unrelated_key(self):
        authorization = _authorization(self.payer.address)
        digest = authorization_digest(authorization, self.domain)
        signature = sign_digest(Account.create('someone-else'), digest)

        valid = await self.verifier.verify(
            Authorization.model_validate(authorization), signature, self.domain)

        self.assertFalse(valid)

    async def test_rejects_single_flipped_signature_byte(self):
        authorization = _authorization(self.payer.address)
        signature = bytearray.fromhex(
            sign_digest(self.payer, authorization_digest(authorization, self.domain))[2:])
        signature[10] ^= 0x01

        valid = await self.verifier.verify(
            Authorization.model_validate(authorization), '0x' + signature.hex(), self.domain)

        self.assertFalse(valid)

    async def test_rejects_malformed_signature(self):
        authorization = Authorization.model_validate(_authorization(self.payer.address))

        self.assertFalse(await self.verifier.verify(authorization, '0x', self.domain))
        self.assertFalse(await self.verifier.verify(authorization, '0x1234', self.domain))

    async def test_signature_over_other_domain_is_rejected(self):
        authorization = _authorization(self.payer.address)
        other_domain = domain_for('base-sepolia', {'name': 'USD Coin', 'version': '2'})
        signature = sign_digest(self.payer, authorization_digest(authorization, other_domain))

        valid = await self.verifier.verify(
            Authorization.model_validate(authorization), signature, self.domain)

        self.assertFalse(valid)


class DomainSeparatorTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.reader = FakeChainReader()
        self.domain = domain_for('base-sepolia')

    async def test_contract_separator_is_preferred(self):
        on_chain = os.urandom(32)
        self.reader.domain_separators[self.domain.verifying_contract.lower()] = on_chain

        separator = await fetch_domain_separator(self.reader, self.domain)

        self.assertEqual(separator, on_chain)

    async def test_reverting_getter_falls_back_to_local(self):
        separator = await fetch_domain_separator(self.reader, self.domain)

        self.assertEqual(separator, self.domain.separator())

    async def test_local_source_skips_chain(self):
        self.reader.domain_separators[self.domain.verifying_contract.lower()] = os.urandom(32)

        separator = await fetch_domain_separator(self.reader, self.domain, DOMAIN_SOURCE_LOCAL)

        self.assertEqual(separator, self.domain.separator())
        self.assertNotIn('DOMAIN_SEPARATOR', self.reader.calls)

    async def test_contract_separator_wins_over_mismatched_metadata(self):
        # client signed against the token's real domain, requirements carry a wrong name
        payer = Account.create('x402-domain-payer')
        real_domain = domain_for('base-sepolia')
        self.reader.domain_separators[real_domain.verifying_contract.lower()] = real_domain.separator()
        authorization = _authorization(payer.address)
        signature = sign_digest(payer, authorization_digest(authorization, real_domain))
        wrong_domain = domain_for('base-sepolia', {'name': 'Not USDC', 'version': '9'})

        valid = await SignatureVerifier(self.reader).verify(
            Authorization.model_validate(authorization), signature, wrong_domain)

        self.assertTrue(valid)

    async def test_unreachable_node_propagates(self):
        self.reader.unreachable = True

        with self.assertRaises(ChainReaderError):
            await fetch_domain_separator(self.reader, self.domain)


class ContractAccountSignatureTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.owner = Account.create('x402-smart-account-owner')
        self.reader = FakeChainReader()
        self.domain = domain_for('base-sepolia')

        def is_valid_signature(message_hash, signature):
            recovered = recover_hash_signer(message_hash, signature)
            if recovered and recovered.lower() == self.owner.address.lower():
                return EIP1271_MAGIC_VALUE
            return b'\xff\xff\xff\xff'

        self.reader.contract_accounts[SMART_ACCOUNT.lower()] = is_valid_signature

    async def test_resolves_signer_kind_from_bytecode(self):
        self.assertEqual((await resolve_signer(self.reader, SMART_ACCOUNT)).kind, 'contract')
        self.assertEqual((await resolve_signer(self.reader, self.owner.address)).kind, 'simple')

    async def test_owner_signature_is_accepted(self):
        authorization = _authorization(SMART_ACCOUNT)
        signature = sign_digest(self.owner, authorization_digest(authorization, self.domain))

        valid = await SignatureVerifier(self.reader).verify(
            Authorization.model_validate(authorization), signature, self.domain)

        self.assertTrue(valid)

    async def test_non_magic_value_is_rejected(self):
        authorization = _authorization(SMART_ACCOUNT)
        signature = sign_digest(
            Account.create('not-the-owner'), authorization_digest(authorization, self.domain))

        valid = await SignatureVerifier(self.reader).verify(
            Authorization.model_validate(authorization), signature, self.domain)

        self.assertFalse(valid)

    async def test_revert_counts_as_invalid(self):
        signer = ContractAccountSigner(self.reader)

        valid = await signer.verify(os.urandom(32), os.urandom(65), MERCHANT)

        self.assertFalse(valid)
