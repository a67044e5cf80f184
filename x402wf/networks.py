"""
Static registry of the EVM networks the facilitator accepts payments on.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

from django.conf import settings


@dataclass(frozen=True)
class NetworkConfig:
    """Chain parameters for one network and its USDC deployment."""
    network: str
    chain_id: int
    usdc_address: str
    usdc_name: str
    usdc_version: str
    default_rpc_url: str
    explorer_url: str = ''

    @property
    def domain_extra(self) -> Dict[str, str]:
        return {'name': self.usdc_name, 'version': self.usdc_version}


_NETWORKS: Dict[str, NetworkConfig] = {
    config.network: config
    for config in (
        NetworkConfig(
            network='base',
            chain_id=8453,
            usdc_address='0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913',
            usdc_name='USD Coin',
            usdc_version='2',
            default_rpc_url='https://mainnet.base.org',
            explorer_url='https://basescan.org',
        ),
        NetworkConfig(
            network='base-sepolia',
            chain_id=84532,
            usdc_address='0x036CbD53842c5426634e7929541eC2318f3dCF7e',
            usdc_name='USDC',
            usdc_version='2',
            default_rpc_url='https://sepolia.base.org',
            explorer_url='https://sepolia.basescan.org',
        ),
        NetworkConfig(
            network='ethereum-sepolia',
            chain_id=11155111,
            usdc_address='0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238',
            usdc_name='USDC',
            usdc_version='2',
            default_rpc_url='https://ethereum-sepolia-rpc.publicnode.com',
            explorer_url='https://sepolia.etherscan.io',
        ),
        NetworkConfig(
            network='optimism-sepolia',
            chain_id=11155420,
            usdc_address='0x5fd84259d66Cd46123540766Be93DFE6D43130D7',
            usdc_name='USD Coin',
            usdc_version='2',
            default_rpc_url='https://sepolia.optimism.io',
            explorer_url='https://sepolia-optimism.etherscan.io',
        ),
        NetworkConfig(
            network='arbitrum-sepolia',
            chain_id=421614,
            usdc_address='0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d',
            usdc_name='USD Coin',
            usdc_version='2',
            default_rpc_url='https://sepolia-rollup.arbitrum.io/rpc',
            explorer_url='https://sepolia.arbiscan.io',
        ),
        NetworkConfig(
            network='polygon-amoy',
            chain_id=80002,
            usdc_address='0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582',
            usdc_name='USDC',
            usdc_version='2',
            default_rpc_url='https://rpc-amoy.polygon.technology',
            explorer_url='https://amoy.polygonscan.com',
        ),
    )
}


def lookup(network: Optional[str]) -> Optional[NetworkConfig]:
    """Return the config for ``network`` or ``None`` when it is unknown."""
    if not network:
        return None
    return _NETWORKS.get(network.lower().strip())


def supported_networks() -> List[str]:
    return list(_NETWORKS.keys())


def rpc_url_for(config: NetworkConfig) -> str:
    """
    Resolve the RPC endpoint for a network.

    Per-network override from ``X402_RPC_URLS`` wins, then the global
    ``X402_RPC_URL``, then the public endpoint shipped with the registry.
    """
    overrides = getattr(settings, 'X402_RPC_URLS', None) or {}
    return (
        overrides.get(config.network)
        or getattr(settings, 'X402_RPC_URL', '')
        or config.default_rpc_url
    )
