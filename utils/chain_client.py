import os
import json
from enum import Enum

import aiohttp
import requests
from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    BlockNotFound,
    ContractLogicError,
    TransactionNotFound,
    Web3RPCError,
)

from utils.errors import ChainUnreachable

# abis目录（相对上级目录）
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ABIS_DIR = os.path.join(BASE_DIR, '..', 'abis')


def load_abi(filename):
    with open(os.path.join(ABIS_DIR, filename), 'r') as f:
        return json.load(f)


ERC20_ABI = load_abi('ERC20_ABI.json')
OWNABLE_ABI = load_abi('Ownable_ABI.json')
AIRDROP_ABI = load_abi('Airdrop_ABI.json')

ZERO_ADDRESS = '0x' + '0' * 40

# 网络层错误：节点不可达 / 超时 / JSON-RPC 报错
NETWORK_ERRORS = (requests.exceptions.RequestException, Web3RPCError, OSError)


def event_topic(signature):
    return Web3.to_hex(Web3.keccak(text=signature))


TRANSFER_TOPIC = event_topic('Transfer(address,address,uint256)')
NEW_AIRDROP_TOPIC = event_topic('NewAirdrop(address,uint256,uint256)')
CLAIM_OPENED_TOPIC = event_topic('ClaimOpened(address,uint256)')
CLAIM_TOPIC = event_topic('Claim(address,uint256)')
WATCHED_TOPICS = [TRANSFER_TOPIC, NEW_AIRDROP_TOPIC, CLAIM_OPENED_TOPIC]
# 已知空投合约按地址单独订阅，额外关注 Claim
CONTRACT_TOPICS = [TRANSFER_TOPIC, CLAIM_TOPIC, NEW_AIRDROP_TOPIC]


def function_signature(entry):
    return f"{entry['name']}({','.join(i['type'] for i in entry.get('inputs', []))})"


def abi_signatures(abi, names):
    """从 ABI 声明中取出指定函数名的全部签名（含重载）"""
    return [function_signature(e) for e in abi if e.get('type') == 'function' and e.get('name') in names]


def function_selector(signature):
    return bytes(Web3.keccak(text=signature)[:4])


def to_hex(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value).lower()


class Capability(Enum):
    supported = "supported"
    not_supported = "not_supported"
    indeterminate = "indeterminate"   # 网络错误，无法判断


def capability_from_code(code, signatures):
    """
    在运行时字节码中查找函数选择器（PUSH4 <selector>），只查接口，不调用
    code=None 表示取码失败
    """
    if code is None:
        return Capability.indeterminate
    code = bytes(code)
    if not code:
        return Capability.not_supported
    for signature in signatures:
        if b'\x63' + function_selector(signature) in code:
            return Capability.supported
    return Capability.not_supported


class _NotSupported:
    def __repr__(self):
        return 'NOT_SUPPORTED'

    def __bool__(self):
        return False


# 合约没有实现该函数（回滚 / 返回空数据），属于正常的否定结果
NOT_SUPPORTED = _NotSupported()


class ChainClient:
    """单条链的只读 RPC 封装（web3 HTTPProvider）"""

    def __init__(self, config, timeout=15, w3=None):
        self.config = config
        self.blockchain = config.name
        self.w3 = w3 or Web3(Web3.HTTPProvider(config.rpc_url, request_kwargs={'timeout': timeout}))

    def _rpc(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except NETWORK_ERRORS as e:
            raise ChainUnreachable(self.blockchain, str(e)) from e

    @staticmethod
    def is_address(address):
        return bool(address) and Web3.is_address(address)

    def get_code(self, address):
        return bytes(self._rpc(self.w3.eth.get_code, Web3.to_checksum_address(address)))

    def get_balance(self, address):
        return self._rpc(self.w3.eth.get_balance, Web3.to_checksum_address(address))

    def block_number(self):
        return self._rpc(lambda: self.w3.eth.block_number)

    def get_block(self, number, full_transactions=False):
        try:
            return self._rpc(self.w3.eth.get_block, number, full_transactions)
        except BlockNotFound:
            return None

    def get_transaction_receipt(self, tx_hash):
        try:
            return self._rpc(self.w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None

    def get_logs(self, address=None, topics=None, from_block=None, to_block=None):
        params = {}
        if address:
            params['address'] = Web3.to_checksum_address(address)
        if topics:
            params['topics'] = topics
        if from_block is not None:
            params['fromBlock'] = from_block
        if to_block is not None:
            params['toBlock'] = to_block
        return self._rpc(self.w3.eth.get_logs, params)

    def call(self, address, abi, fn_name, *args):
        """
        只读调用；合约未实现该函数时返回 NOT_SUPPORTED，网络错误抛 ChainUnreachable
        """
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        fn = getattr(contract.functions, fn_name)
        try:
            return fn(*args).call()
        except (ContractLogicError, BadFunctionCallOutput):
            return NOT_SUPPORTED
        except NETWORK_ERRORS as e:
            raise ChainUnreachable(self.blockchain, str(e)) from e

    def function_capability(self, address, signatures, code=None):
        if code is None:
            try:
                code = self.get_code(address)
            except ChainUnreachable:
                return Capability.indeterminate
        return capability_from_code(code, signatures)


class ChainStream:
    """
    节点 websocket 订阅（eth_subscribe newHeads / logs），异步迭代得到推送消息
    """

    def __init__(self, ws_url, heartbeat=20):
        self.ws_url = ws_url
        self.heartbeat = heartbeat
        self._session = None
        self._ws = None
        self._id = 0

    async def __aenter__(self):
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.ws_url, heartbeat=self.heartbeat)
        except BaseException:
            await self._session.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._ws is not None:
            await self._ws.close()
        if self._session is not None:
            await self._session.close()

    async def _subscribe(self, params):
        self._id += 1
        await self._ws.send_json({
            "jsonrpc": "2.0",
            "id": self._id,
            "method": "eth_subscribe",
            "params": params,
        })

    async def subscribe_new_heads(self):
        await self._subscribe(["newHeads"])

    async def subscribe_logs(self, topics, address=None):
        log_filter = {"topics": [list(topics)]}
        if address:
            log_filter["address"] = address
        await self._subscribe(["logs", log_filter])

    def __aiter__(self):
        return self

    async def __anext__(self):
        while True:
            msg = await self._ws.receive()
            if msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED,
                            aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.ERROR}:
                raise StopAsyncIteration
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            data = msg.json(loads=json.loads)
            if data.get("method") == "eth_subscription":
                return data
