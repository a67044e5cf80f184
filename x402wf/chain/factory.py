"""
Factory for per-network chain readers.
"""
from typing import Dict

from django.conf import settings

from x402wf.networks import NetworkConfig, rpc_url_for

from .base import ChainReader
from .web3_reader import Web3ChainReader


class ChainReaderFactory:
    """Creates one reader per network and reuses it across requests."""

    def __init__(self):
        self._readers: Dict[str, ChainReader] = {}

    def for_network(self, config: NetworkConfig) -> ChainReader:
        reader = self._readers.get(config.network)
        if reader is None:
            reader = Web3ChainReader(
                rpc_url_for(config),
                request_timeout=getattr(settings, 'X402_RPC_TIMEOUT_SECONDS', 10),
            )
            self._readers[config.network] = reader
        return reader

    def register(self, network: str, reader: ChainReader) -> None:
        """Pin a reader for ``network`` (used to plug in alternative backends)."""
        self._readers[network.lower().strip()] = reader
