"""
Chain reader backed by web3's asynchronous HTTP provider.
"""
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TransactionNotFound

from x402wf.errors import ChainReaderError, ContractCallReverted

from .base import ChainReader


class Web3ChainReader(ChainReader):
    """Reads bytecode and view results from a JSON-RPC node."""

    def __init__(self, rpc_url: str, request_timeout: float = 10):
        self.rpc_url = rpc_url
        self.web3 = AsyncWeb3(AsyncHTTPProvider(
            rpc_url, request_kwargs={'timeout': request_timeout}))

    async def get_bytecode(self, address: str) -> bytes:
        try:
            code = await self.web3.eth.get_code(Web3.to_checksum_address(address))
        except Exception as exc:
            logger.error('get_code failed on {} for {}: {}', self.rpc_url, address, exc)
            raise ChainReaderError(f'Unable to read bytecode for {address}') from exc
        return bytes(code)

    async def read_contract(
        self,
        address: str,
        abi: List[Dict[str, Any]],
        function_name: str,
        args: Sequence[Any] = (),
    ) -> Any:
        contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(address), abi=abi)
        call = getattr(contract.functions, function_name)(*args)
        try:
            return await call.call()
        except (ContractLogicError, BadFunctionCallOutput) as exc:
            raise ContractCallReverted(
                f'{function_name} reverted on {address}: {exc}') from exc
        except Exception as exc:
            logger.error('{} call failed on {} for {}: {}',
                         function_name, self.rpc_url, address, exc)
            raise ChainReaderError(
                f'Unable to call {function_name} on {address}') from exc

    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[Dict[str, Any]]:
        try:
            receipt = await self.web3.eth.get_transaction_receipt(transaction_hash)
        except TransactionNotFound:
            return None
        except Exception as exc:
            logger.error('get_transaction_receipt failed on {} for {}: {}',
                         self.rpc_url, transaction_hash, exc)
            raise ChainReaderError(
                f'Unable to read receipt for {transaction_hash}') from exc
        return {'status': receipt['status'], 'blockNumber': receipt['blockNumber']}
