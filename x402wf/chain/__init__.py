"""
Chain readers used by signature and balance checks.
"""
from .base import ChainReader, DOMAIN_SEPARATOR_ABI, EIP1271_ABI, ERC20_BALANCE_ABI
from .factory import ChainReaderFactory
from .web3_reader import Web3ChainReader

__all__ = [
    'ChainReader',
    'ChainReaderFactory',
    'Web3ChainReader',
    'DOMAIN_SEPARATOR_ABI',
    'EIP1271_ABI',
    'ERC20_BALANCE_ABI',
]
