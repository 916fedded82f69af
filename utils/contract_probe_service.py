import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional

import requests

from utils.chain_client import (
    AIRDROP_ABI,
    ERC20_ABI,
    NOT_SUPPORTED,
    OWNABLE_ABI,
    Capability,
    ChainClient,
    abi_signatures,
    capability_from_code,
)
from utils.errors import ChainUnreachable
from utils.log_utils import get_logger

logger = get_logger("contract_probe")

# claim 类函数 -> hasClaimFunction；检查类函数 -> isAirdropContract
CLAIM_SIGNATURES = abi_signatures(AIRDROP_ABI, {'claim', 'claimTokens', 'claimAirdrop'})
CHECK_SIGNATURES = abi_signatures(AIRDROP_ABI, {'isClaimed', 'canClaim'})

DEFAULT_DECIMALS = 18


@dataclass
class ContractInfo:
    address: str
    blockchain: str
    is_valid: bool = False
    is_token: bool = False
    name: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None
    total_supply: Optional[str] = None
    is_airdrop_contract: bool = False
    has_claim_function: bool = False
    claim_capability: Capability = Capability.indeterminate
    owner: Optional[str] = None
    last_activity: Optional[datetime] = None
    verified: bool = False
    # False：节点不可达或链未配置，结果不可信，不应覆盖已有数据
    reachable: bool = True

    def to_dict(self):
        data = asdict(self)
        data['claim_capability'] = self.claim_capability.value
        data['last_activity'] = self.last_activity.isoformat() if self.last_activity else None
        return data


class ContractProbeService:
    """
    链上合约探测：字节码 / 代币信息 / claim 接口 / owner / 浏览器源码验证 / 最近活动
    每次调用都是实时读取，不做缓存
    """

    def __init__(self, chains, clients: Optional[Dict[str, ChainClient]] = None, session=None,
                 batch_size=5, batch_pause=1.0, activity_window_days=30, request_timeout=15):
        self.chains = chains
        self.clients = clients if clients is not None else {
            name: ChainClient(cfg, timeout=request_timeout) for name, cfg in chains.items()
        }
        self.session = session or requests.Session()
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.activity_window = timedelta(days=activity_window_days)
        self.request_timeout = request_timeout

    def verify(self, address, blockchain='ethereum') -> ContractInfo:
        info = ContractInfo(address=(address or '').lower(), blockchain=blockchain)

        client = self.clients.get(blockchain)
        if client is None:
            logger.warning(f"[verify] unsupported blockchain {blockchain}")
            info.reachable = False
            return info

        # 1. 地址格式
        if not ChainClient.is_address(address):
            return info

        # 2. 地址上必须有代码
        try:
            code = client.get_code(address)
        except ChainUnreachable as e:
            logger.warning(f"[verify] {address} on {blockchain}: {e}")
            info.reachable = False
            return info
        if not code:
            return info
        info.is_valid = True

        # 3. 浏览器源码验证（未配置 API key 时保持 False）
        info.verified = self._explorer_verified(client.config, address)

        # 4. ERC-20 信息
        self._read_token_info(client, address, info)

        # 5. 空投接口（按 ABI 声明查字节码选择器，不调用）
        info.claim_capability = capability_from_code(code, CLAIM_SIGNATURES)
        info.has_claim_function = info.claim_capability is Capability.supported
        info.is_airdrop_contract = capability_from_code(code, CHECK_SIGNATURES) is Capability.supported

        # 6. owner() -> getOwner()
        info.owner = self._read_owner(client, address)

        # 7. 最近活动
        info.last_activity = self._last_activity(client.config, address)

        logger.info(f"[verify] {address} on {blockchain}: valid={info.is_valid} token={info.is_token} "
                    f"claim={info.has_claim_function} verified={info.verified}")
        return info

    def _safe_call(self, client, address, abi, fn_name):
        try:
            return client.call(address, abi, fn_name)
        except ChainUnreachable as e:
            logger.debug(f"[verify] {fn_name}() on {address}: {e}")
            return NOT_SUPPORTED

    def _read_token_info(self, client, address, info):
        name = self._safe_call(client, address, ERC20_ABI, 'name')
        symbol = self._safe_call(client, address, ERC20_ABI, 'symbol')
        if name is NOT_SUPPORTED or symbol is NOT_SUPPORTED:
            return

        info.is_token = True
        info.name = name
        info.symbol = symbol

        decimals = self._safe_call(client, address, ERC20_ABI, 'decimals')
        info.decimals = int(decimals) if decimals is not NOT_SUPPORTED else DEFAULT_DECIMALS

        total_supply = self._safe_call(client, address, ERC20_ABI, 'totalSupply')
        info.total_supply = str(total_supply) if total_supply is not NOT_SUPPORTED else '0'

    def _read_owner(self, client, address):
        for fn_name in ('owner', 'getOwner'):
            owner = self._safe_call(client, address, OWNABLE_ABI, fn_name)
            if owner is not NOT_SUPPORTED and owner:
                return owner.lower()
        return None

    def _explorer_request(self, config, params):
        if not config.has_explorer:
            return None
        try:
            resp = self.session.get(config.explorer_api, params={**params, 'apikey': config.explorer_api_key},
                                    timeout=self.request_timeout)
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.warning(f"[explorer] {config.name} {params.get('action')} failed: {e}")
            return None
        if data.get('status') == '1' and data.get('result'):
            return data['result']
        return None

    def _explorer_verified(self, config, address):
        result = self._explorer_request(config, {
            'module': 'contract',
            'action': 'getsourcecode',
            'address': address,
        })
        if not result:
            return False
        return result[0].get('SourceCode', '') != ''

    def _last_activity(self, config, address):
        result = self._explorer_request(config, {
            'module': 'account',
            'action': 'txlist',
            'address': address,
            'startblock': 0,
            'endblock': 99999999,
            'page': 1,
            'offset': 1,
            'sort': 'desc',
        })
        if not result:
            return None
        try:
            ts = int(result[0]['timeStamp'])
        except (KeyError, TypeError, ValueError):
            return None
        return datetime.fromtimestamp(ts, timezone.utc).replace(tzinfo=None)

    def _verify_isolated(self, address, blockchain):
        try:
            return self.verify(address, blockchain)
        except Exception as e:
            logger.error(f"[verify_many] {address} failed: {e}")
            return ContractInfo(address=(address or '').lower(), blockchain=blockchain, reachable=False)

    def verify_many(self, addresses: List[str], blockchain='ethereum') -> List[ContractInfo]:
        """分批并发校验（每批 batch_size 个，批间暂停），单个地址失败不影响其它"""
        logger.info(f"[verify_many] verifying {len(addresses)} contracts on {blockchain}")
        results = []
        with ThreadPoolExecutor(max_workers=self.batch_size) as executor:
            for i in range(0, len(addresses), self.batch_size):
                batch = addresses[i:i + self.batch_size]
                results.extend(executor.map(lambda a: self._verify_isolated(a, blockchain), batch))
                if i + self.batch_size < len(addresses) and self.batch_pause:
                    time.sleep(self.batch_pause)
        logger.info(f"[verify_many] done: {len(results)} contracts")
        return results

    def is_airdrop_active(self, address, blockchain='ethereum', now=None) -> Optional[bool]:
        """
        valid && hasClaimFunction && (30 天内有活动 或 活动未知)
        链不可达时返回 None（未知），调用方不应据此改状态
        """
        info = self.verify(address, blockchain)
        if not info.reachable:
            return None
        if not info.is_valid or not info.has_claim_function:
            return False
        if info.last_activity:
            now = now or datetime.now(timezone.utc).replace(tzinfo=None)
            return info.last_activity > now - self.activity_window
        return True
