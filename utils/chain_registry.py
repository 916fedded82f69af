import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

SUPPORTED_BLOCKCHAINS = (
    'ethereum', 'polygon', 'bsc', 'arbitrum', 'optimism', 'avalanche', 'fantom',
)

# 已知空投合约（监控统计里展示）
KNOWN_AIRDROP_CONTRACTS = {
    'arbitrum': ['0x912ce59144191c1204e64559fe8253a0e49e6548'],
    'optimism': ['0x4200000000000000000000000000000000000042'],
}


@dataclass
class ChainConfig:
    name: str
    chain_id: int
    rpc_url: str
    ws_url: Optional[str] = None
    explorer_api: Optional[str] = None
    explorer_api_key: Optional[str] = None
    watched_contracts: List[str] = field(default_factory=list)

    @property
    def has_explorer(self):
        return bool(self.explorer_api and self.explorer_api_key)


def _chain(name, chain_id, rpc_default, ws_default, explorer, key_env):
    prefix = name.upper()
    return ChainConfig(
        name=name,
        chain_id=chain_id,
        rpc_url=os.getenv(f'{prefix}_RPC_URL', rpc_default),
        ws_url=os.getenv(f'{prefix}_WS_URL', ws_default),
        explorer_api=explorer,
        explorer_api_key=os.getenv(key_env),
        watched_contracts=list(KNOWN_AIRDROP_CONTRACTS.get(name, [])),
    )


def load_chain_configs() -> Dict[str, ChainConfig]:
    """从环境变量构建各链配置，未配置时使用公共节点"""
    return {
        'ethereum': _chain('ethereum', 1, 'https://eth.llamarpc.com',
                           'wss://ethereum-rpc.publicnode.com',
                           'https://api.etherscan.io/api', 'ETHERSCAN_API_KEY'),
        'polygon': _chain('polygon', 137, 'https://polygon.llamarpc.com',
                          'wss://polygon-bor-rpc.publicnode.com',
                          'https://api.polygonscan.com/api', 'POLYGONSCAN_API_KEY'),
        'bsc': _chain('bsc', 56, 'https://bsc-dataseed.binance.org/',
                      'wss://bsc-rpc.publicnode.com',
                      'https://api.bscscan.com/api', 'BSCSCAN_API_KEY'),
        'arbitrum': _chain('arbitrum', 42161, 'https://arb1.arbitrum.io/rpc',
                           'wss://arbitrum-one-rpc.publicnode.com',
                           'https://api.arbiscan.io/api', 'ARBISCAN_API_KEY'),
        'optimism': _chain('optimism', 10, 'https://mainnet.optimism.io',
                           'wss://optimism-rpc.publicnode.com',
                           'https://api-optimistic.etherscan.io/api', 'OPTIMISTIC_ETHERSCAN_API_KEY'),
        'avalanche': _chain('avalanche', 43114, 'https://api.avax.network/ext/bc/C/rpc',
                            'wss://avalanche-c-chain-rpc.publicnode.com',
                            'https://api.snowtrace.io/api', 'SNOWTRACE_API_KEY'),
        'fantom': _chain('fantom', 250, 'https://rpc.ftm.tools',
                         'wss://fantom-rpc.publicnode.com',
                         'https://api.ftmscan.com/api', 'FTMSCAN_API_KEY'),
    }


def monitored_chain_names(configs=None):
    raw = os.getenv('MONITORED_CHAINS', 'ethereum,polygon,bsc')
    names = [n.strip().lower() for n in raw.split(',') if n.strip()]
    if configs is not None:
        names = [n for n in names if n in configs]
    return names
