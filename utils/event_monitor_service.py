import asyncio
import queue
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from web3 import Web3

from models.airdrop_models import utcnow
from utils.chain_client import (
    CLAIM_OPENED_TOPIC,
    CLAIM_TOPIC,
    CONTRACT_TOPICS,
    NEW_AIRDROP_TOPIC,
    TRANSFER_TOPIC,
    WATCHED_TOPICS,
    ZERO_ADDRESS,
    ChainClient,
    ChainStream,
    to_hex,
)
from utils.errors import ChainUnreachable
from utils.log_utils import get_logger

logger = get_logger("event_monitor")

SEEN_LOG_LIMIT = 10000

AIRDROP_KEYWORDS = ('airdrop', 'claim', 'distribute', 'reward', 'bonus')
# 部署字节码中查找：关键字 keccak 前 4 字节，或关键字本身的 utf-8 编码
AIRDROP_KEYWORD_PATTERNS = tuple(
    p for kw in AIRDROP_KEYWORDS for p in (to_hex(Web3.keccak(text=kw))[2:10], kw.encode().hex())
)


class EventType(Enum):
    token_transfer = "token_transfer"
    new_airdrop = "new_airdrop"
    claim_opened = "claim_opened"
    contract_deployed = "contract_deployed"
    claim_activity = "claim_activity"


@dataclass
class AirdropEvent:
    type: EventType
    contract_address: str
    blockchain: str
    token_address: Optional[str] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)
    data: dict = field(default_factory=dict)

    @property
    def possible_airdrop(self):
        return bool(self.data.get('possible_airdrop'))

    def to_dict(self):
        return {
            "type": self.type.value,
            "contract_address": self.contract_address,
            "token_address": self.token_address,
            "blockchain": self.blockchain,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


def contains_airdrop_keyword(code_hex):
    code_hex = (code_hex or '').lower()
    if code_hex.startswith('0x'):
        code_hex = code_hex[2:]
    return any(p in code_hex for p in AIRDROP_KEYWORD_PATTERNS)


def _int(value):
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16) if value.startswith('0x') else int(value)
    return int(value)


class ConnectionState(Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"


class ChainConnection:
    """
    单条链的订阅连接状态机：disconnected -> connecting -> connected -> disconnected
    断线后按 base * 2^attempts 退避（封顶 max_delay），超过 max_attempts 后放弃
    """

    def __init__(self, blockchain, max_attempts=3, base_interval=300, max_delay=600):
        self.blockchain = blockchain
        self.max_attempts = max_attempts
        self.base_interval = base_interval
        self.max_delay = max_delay
        self.state = ConnectionState.disconnected
        self.attempts = 0
        self.abandoned = False
        self.events_emitted = 0
        self.last_error = None
        self.connected_at = None

    def mark_connecting(self):
        self.state = ConnectionState.connecting

    def mark_connected(self):
        self.state = ConnectionState.connected
        self.attempts = 0
        self.last_error = None
        self.connected_at = utcnow()

    def mark_disconnected(self, error=None) -> Optional[float]:
        """返回下一次重连的延迟（秒）；None 表示不再重连"""
        self.state = ConnectionState.disconnected
        if error is not None:
            self.last_error = str(error)
        if self.abandoned:
            return None
        if self.attempts >= self.max_attempts:
            self.abandoned = True
            return None
        delay = min(self.base_interval * 2 ** self.attempts, self.max_delay)
        self.attempts += 1
        return delay

    def reset(self):
        self.state = ConnectionState.disconnected
        self.attempts = 0
        self.abandoned = False

    def to_dict(self):
        return {
            "state": self.state.value,
            "reconnect_attempts": self.attempts,
            "abandoned": self.abandoned,
            "events_emitted": self.events_emitted,
            "last_error": self.last_error,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
        }


class EventMonitorService:
    """
    链上事件监控：每条链一个 websocket 订阅（newHeads + logs），
    事件归一化为 AirdropEvent 后放入 events 队列，由同步服务单线程消费
    """

    def __init__(self, chains, chain_names=None, clients=None, stream_factory=ChainStream, event_queue=None,
                 max_retries=3, reconnect_interval=300, max_reconnect_delay=600,
                 mass_transfer_threshold=50, mass_transfer_max_senders=3, lookback_blocks=100,
                 block_scan_limit=10):
        self.chains = chains
        self.chain_names = [n for n in (chain_names or list(chains)) if n in chains]
        self.clients = clients if clients is not None else {n: ChainClient(chains[n]) for n in self.chain_names}
        self.stream_factory = stream_factory
        self.events = event_queue if event_queue is not None else queue.Queue()

        self.mass_transfer_threshold = mass_transfer_threshold
        self.mass_transfer_max_senders = mass_transfer_max_senders
        self.lookback_blocks = lookback_blocks
        self.block_scan_limit = block_scan_limit

        self.connections = {
            n: ChainConnection(n, max_retries, reconnect_interval, max_reconnect_delay) for n in self.chain_names
        }
        self.is_monitoring = False
        self.events_emitted = 0

        self._loop = None
        self._thread = None
        self._streams = {}      # blockchain -> 订阅 task
        self._timers = {}       # blockchain -> 重连 TimerHandle
        self._pending = set()   # 消息处理 task
        self._lock = threading.Lock()

        # 批量分发判定按 (链, 代币, 回看窗口) 缓存，同一窗口内只查一次 getLogs
        self._mass_verdicts = {}
        self._mass_locks = {}
        self._cache_lock = threading.Lock()
        # 通用订阅和合约订阅会重复推送同一条日志
        self._seen_logs = OrderedDict()

    # ---------------- 生命周期 ----------------
    def start_monitoring(self):
        with self._lock:
            if self.is_monitoring:
                logger.warning("[monitor] monitoring already active")
                return
            self.is_monitoring = True
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._run_loop, name="event-monitor", daemon=True)
            self._thread.start()

        logger.info(f"[monitor] starting monitoring for {', '.join(self.chain_names) or 'no chains'}")
        for name in self.chain_names:
            if not self.chains[name].ws_url:
                logger.warning(f"[monitor] {name} has no websocket url, skipped")
                continue
            self._loop.call_soon_threadsafe(self._connect, name)

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def stop_monitoring(self, timeout=10):
        with self._lock:
            if not self.is_monitoring:
                return
            self.is_monitoring = False
            loop, thread = self._loop, self._thread

        logger.info("[monitor] stopping monitoring...")
        future = asyncio.run_coroutine_threadsafe(self._shutdown(), loop)
        try:
            future.result(timeout=timeout)
        except Exception as e:
            logger.error(f"[monitor] shutdown error: {e}")
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=timeout)

        for conn in self.connections.values():
            conn.reset()
        self._loop = None
        self._thread = None
        logger.info("[monitor] monitoring stopped")

    async def _shutdown(self):
        # 先清掉所有待执行的重连定时器，再取消订阅和处理中的 task
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        tasks = list(self._streams.values()) + list(self._pending)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._streams.clear()
        self._pending.clear()

    # ---------------- 连接 / 重连 ----------------
    def _connect(self, name):
        self._timers.pop(name, None)
        conn = self.connections[name]
        if not self.is_monitoring or conn.abandoned:
            return
        conn.mark_connecting()
        self._streams[name] = self._loop.create_task(self._stream_chain(name))

    async def _stream_chain(self, name):
        conn = self.connections[name]
        error = None
        try:
            async with self.stream_factory(self.chains[name].ws_url) as stream:
                await stream.subscribe_new_heads()
                await stream.subscribe_logs(WATCHED_TOPICS)
                for contract in self.chains[name].watched_contracts:
                    await stream.subscribe_logs(CONTRACT_TOPICS, address=contract)
                conn.mark_connected()
                logger.info(f"[monitor] websocket connected for {name}")
                async for message in stream:
                    self._spawn(self.handle_message(name, message))
            logger.info(f"[monitor] websocket closed for {name}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            logger.warning(f"[monitor] websocket error for {name}: {e}")

        if self.is_monitoring:
            self.schedule_reconnect(name, error)

    def schedule_reconnect(self, name, error=None):
        conn = self.connections[name]
        delay = conn.mark_disconnected(error)
        if delay is None:
            logger.error(f"[monitor] max reconnect attempts reached for {name}, giving up")
            return None
        logger.info(f"[monitor] reconnecting {name} in {delay}s (attempt {conn.attempts}/{conn.max_attempts})")
        if self._loop is not None:
            self._timers[name] = self._loop.call_later(delay, self._connect, name)
        return delay

    def _spawn(self, coro):
        task = self._loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ---------------- 消息处理 ----------------
    async def handle_message(self, blockchain, message):
        try:
            result = (message.get('params') or {}).get('result') or {}
            if result.get('transactionHash'):
                await self.process_log(blockchain, result)
            elif result.get('number'):
                await self.process_new_block(blockchain, result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # 单条消息失败不影响订阅
            logger.error(f"[monitor] error processing message on {blockchain}: {e}")

    def emit(self, event: AirdropEvent):
        conn = self.connections.get(event.blockchain)
        if conn is not None:
            conn.events_emitted += 1
        self.events_emitted += 1
        self.events.put(event)

    def _log_key(self, blockchain, log):
        tx_hash, index = log.get('transactionHash'), log.get('logIndex')
        if tx_hash is None or index is None:
            return None
        return blockchain, to_hex(tx_hash), _int(index)

    def _already_seen(self, blockchain, log):
        key = self._log_key(blockchain, log)
        if key is None:
            return False
        with self._cache_lock:
            if key in self._seen_logs:
                return True
            self._seen_logs[key] = True
            if len(self._seen_logs) > SEEN_LOG_LIMIT:
                self._seen_logs.popitem(last=False)
        return False

    async def process_log(self, blockchain, log):
        # 链重组撤回的日志
        if log.get('removed'):
            logger.debug(f"[monitor] skip removed log {to_hex(log.get('transactionHash'))} on {blockchain}")
            # 重新打包进新区块时要能再次处理
            key = self._log_key(blockchain, log)
            if key is not None:
                with self._cache_lock:
                    self._seen_logs.pop(key, None)
            return None
        topics = [to_hex(t) for t in log.get('topics') or []]
        if not topics:
            return None
        if self._already_seen(blockchain, log):
            return None
        address = to_hex(log['address'])
        base = dict(
            contract_address=address,
            blockchain=blockchain,
            transaction_hash=to_hex(log.get('transactionHash')),
            block_number=_int(log.get('blockNumber')),
        )

        signature = topics[0]
        event = None
        if signature == TRANSFER_TOPIC:
            if len(topics) < 3:
                return None
            sender = '0x' + topics[1][-40:]
            receiver = '0x' + topics[2][-40:]
            data = to_hex(log.get('data')) or '0x'
            value = int(data, 16) if data not in ('0x', '') else 0

            possible = sender == ZERO_ADDRESS
            if not possible:
                possible = await asyncio.to_thread(self.is_mass_distribution, blockchain, address)
            if possible:
                event = AirdropEvent(type=EventType.token_transfer, token_address=address, data={
                    'from': sender,
                    'to': receiver,
                    'value': str(value),
                    'possible_airdrop': True,
                }, **base)
                logger.info(f"[monitor] possible airdrop transfer {address} on {blockchain}")
        elif signature == NEW_AIRDROP_TOPIC:
            event = AirdropEvent(type=EventType.new_airdrop, token_address=address, data={'topics': topics}, **base)
            logger.info(f"[monitor] new airdrop event {address} on {blockchain}")
        elif signature == CLAIM_OPENED_TOPIC:
            event = AirdropEvent(type=EventType.claim_opened, data={'topics': topics}, **base)
            logger.info(f"[monitor] claim opened {address} on {blockchain}")
        elif signature == CLAIM_TOPIC:
            event = AirdropEvent(type=EventType.claim_activity, data={'topics': topics}, **base)
            logger.debug(f"[monitor] claim on watched contract {address} on {blockchain}")

        if event is not None:
            self.emit(event)
        return event

    def is_mass_distribution(self, blockchain, token_address):
        """最近 N 个区块内 Transfer 数超过阈值，且发送方不超过 max_senders 个；同一回看窗口内结论复用"""
        client = self.clients.get(blockchain)
        if client is None:
            return False
        try:
            current = client.block_number()
        except ChainUnreachable as e:
            logger.debug(f"[monitor] mass distribution check failed for {token_address}: {e}")
            return False

        window = current // max(1, self.lookback_blocks)
        key = (blockchain, token_address, window)
        with self._cache_lock:
            if key in self._mass_verdicts:
                return self._mass_verdicts[key]
            key_lock = self._mass_locks.setdefault(key, threading.Lock())

        # 同一 key 的并发判定排队，等第一个结果
        with key_lock:
            with self._cache_lock:
                if key in self._mass_verdicts:
                    return self._mass_verdicts[key]
            try:
                logs = client.get_logs(address=token_address, topics=[TRANSFER_TOPIC],
                                       from_block=max(0, current - self.lookback_blocks), to_block=current)
            except ChainUnreachable as e:
                logger.debug(f"[monitor] mass distribution check failed for {token_address}: {e}")
                return False

            verdict = False
            if len(logs) > self.mass_transfer_threshold:
                senders = {to_hex(entry['topics'][1]) for entry in logs if len(entry['topics']) > 1}
                verdict = len(senders) <= self.mass_transfer_max_senders

            with self._cache_lock:
                # 只保留当前及上一个窗口
                for cache in (self._mass_verdicts, self._mass_locks):
                    for stale in [k for k in cache if k[2] < window - 1]:
                        del cache[stale]
                self._mass_verdicts[key] = verdict
        return verdict

    async def process_new_block(self, blockchain, header):
        client = self.clients.get(blockchain)
        if client is None:
            return []
        number = _int(header.get('number'))
        block = await asyncio.to_thread(client.get_block, number, True)
        if not block or not block.get('transactions'):
            return []

        emitted = []
        # 只看前 N 笔交易，控制每块的 RPC 开销
        for tx in block['transactions'][:self.block_scan_limit]:
            if isinstance(tx, (str, bytes)):
                continue
            if tx.get('to') or not to_hex(tx.get('input')) or to_hex(tx.get('input')) == '0x':
                continue
            try:
                event = await self._analyze_deployment(blockchain, client, tx)
            except ChainUnreachable as e:
                logger.debug(f"[monitor] receipt lookup failed on {blockchain}: {e}")
                continue
            if event is not None:
                emitted.append(event)
        return emitted

    async def _analyze_deployment(self, blockchain, client, tx):
        receipt = await asyncio.to_thread(client.get_transaction_receipt, tx['hash'])
        if not receipt or not receipt.get('contractAddress'):
            return None

        bytecode = to_hex(tx['input'])
        if not contains_airdrop_keyword(bytecode):
            return None

        contract = to_hex(receipt['contractAddress'])
        event = AirdropEvent(
            type=EventType.contract_deployed,
            contract_address=contract,
            blockchain=blockchain,
            transaction_hash=to_hex(tx['hash']),
            block_number=_int(receipt.get('blockNumber')),
            data={
                'deployer': to_hex(tx.get('from')),
                'bytecode_size': len(bytecode),
                'possible_airdrop': True,
            },
        )
        self.emit(event)
        logger.info(f"[monitor] possible airdrop contract deployed {contract} on {blockchain}")
        return event

    # ---------------- 统计 ----------------
    def get_monitoring_stats(self):
        return {
            "is_monitoring": self.is_monitoring,
            "active_blockchains": [n for n, c in self.connections.items() if c.state == ConnectionState.connected],
            "connections": {n: c.to_dict() for n, c in self.connections.items()},
            "watched_contracts": {n: list(self.chains[n].watched_contracts) for n in self.chain_names},
            "events_emitted": self.events_emitted,
            "queued_events": self.events.qsize(),
        }
