import jwt
import pytest

from app import create_app
from extensions import db
from utils.airdrop_sync_service import AirdropSyncService
from utils.chain_registry import ChainConfig, load_chain_configs
from utils.contract_probe_service import ContractInfo
from utils.event_monitor_service import EventMonitorService
from utils.source_fetch_service import FetchResult

JWT_TEST_SECRET = 'test-secret'


class FakeProbe:
    """按 (address, blockchain) 返回预设的 ContractInfo；未设置的地址视为无代码"""

    def __init__(self):
        self.infos = {}
        self.active = {}
        self.errors = {}
        self.verify_calls = []

    def set_info(self, address, blockchain='ethereum', **fields):
        fields.setdefault('is_valid', True)
        self.infos[(address.lower(), blockchain)] = ContractInfo(address=address.lower(), blockchain=blockchain,
                                                                 **fields)

    def verify(self, address, blockchain='ethereum'):
        key = (address.lower(), blockchain)
        self.verify_calls.append(key)
        if key in self.errors:
            raise self.errors[key]
        info = self.infos.get(key)
        if info is None:
            return ContractInfo(address=address.lower(), blockchain=blockchain)
        return ContractInfo(**{**info.__dict__})

    def is_airdrop_active(self, address, blockchain='ethereum', now=None):
        return self.active.get((address.lower(), blockchain), True)


class FakeFetcher:
    def __init__(self):
        self.candidates = []
        self.errors = []
        self.calls = 0
        self.hook = None

    def fetch_all(self):
        self.calls += 1
        if self.hook is not None:
            self.hook()
        return FetchResult(candidates=list(self.candidates), errors=list(self.errors))


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SYNC_REDIS_LOCK': False,
        'JWT_SECRET': JWT_TEST_SECRET,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def chains():
    return load_chain_configs()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def monitor(chains):
    # 不订阅任何链，只用它的事件队列
    return EventMonitorService(chains, chain_names=[], clients={})


@pytest.fixture
def service(app, probe, fetcher, monitor):
    return AirdropSyncService(probe, fetcher, monitor=monitor, app=app)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    token = jwt.encode({'sub': 'tester', 'role': 'admin'}, JWT_TEST_SECRET, algorithm='HS256')
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def eth_config():
    return ChainConfig(name='ethereum', chain_id=1, rpc_url='http://localhost:8545',
                       ws_url='ws://localhost:8546', explorer_api='https://api.etherscan.io/api',
                       explorer_api_key='test-key')
