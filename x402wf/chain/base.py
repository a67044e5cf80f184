"""
Chain reader interface.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence


ERC20_BALANCE_ABI: List[Dict[str, Any]] = [
    {
        'inputs': [{'name': 'account', 'type': 'address'}],
        'name': 'balanceOf',
        'outputs': [{'name': 'balance', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function',
    }
]

DOMAIN_SEPARATOR_ABI: List[Dict[str, Any]] = [
    {
        'inputs': [],
        'name': 'DOMAIN_SEPARATOR',
        'outputs': [{'name': '', 'type': 'bytes32'}],
        'stateMutability': 'view',
        'type': 'function',
    }
]

EIP1271_ABI: List[Dict[str, Any]] = [
    {
        'inputs': [
            {'name': 'hash', 'type': 'bytes32'},
            {'name': 'signature', 'type': 'bytes'},
        ],
        'name': 'isValidSignature',
        'outputs': [{'name': 'magicValue', 'type': 'bytes4'}],
        'stateMutability': 'view',
        'type': 'function',
    }
]


class ChainReader(ABC):
    """
    Side-effect-free access to an EVM chain.

    Implementations raise ``ContractCallReverted`` when a view call reverts
    or returns no data, and ``ChainReaderError`` when the node cannot be
    reached.
    """

    @abstractmethod
    async def get_bytecode(self, address: str) -> bytes:
        """Return the deployed code at ``address`` (empty for key accounts)."""

    @abstractmethod
    async def read_contract(
        self,
        address: str,
        abi: List[Dict[str, Any]],
        function_name: str,
        args: Sequence[Any] = (),
    ) -> Any:
        """Call a view function and return its decoded result."""

    @abstractmethod
    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[Dict[str, Any]]:
        """Return ``{status, blockNumber}`` for a mined transaction, else None."""
