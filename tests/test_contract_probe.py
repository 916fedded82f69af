from datetime import datetime, timedelta

import pytest
import requests

import utils.contract_probe_service as probe_module
from utils.chain_client import NOT_SUPPORTED, Capability, function_selector
from utils.contract_probe_service import ContractProbeService
from utils.errors import ChainUnreachable

ADDRESS = '0x' + 'a' * 40
OWNER = '0x' + 'B' * 40
CLAIM_CODE = b'\x60\x80\x63' + function_selector('claim()') + b'\x14'
NOW = datetime(2026, 5, 1, 12, 0, 0)


class FakeClient:
    def __init__(self, config, code=CLAIM_CODE, calls=None, code_error=None):
        self.config = config
        self.code = code
        self.calls = calls or {}
        self.code_error = code_error

    def get_code(self, address):
        if self.code_error:
            raise self.code_error
        return self.code

    def call(self, address, abi, fn_name, *args):
        outcome = self.calls.get(fn_name, NOT_SUPPORTED)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, source_code='contract Foo {}', last_tx=None, error=None):
        self.source_code = source_code
        self.last_tx = last_tx
        self.error = error
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append(params)
        if self.error:
            raise self.error
        if params['action'] == 'getsourcecode':
            return FakeResponse({'status': '1', 'result': [{'SourceCode': self.source_code}]})
        if self.last_tx is None:
            return FakeResponse({'status': '0', 'result': []})
        return FakeResponse({'status': '1', 'result': [{'timeStamp': str(int(self.last_tx))}]})


TOKEN_CALLS = {'name': 'Foo Token', 'symbol': 'FOO', 'decimals': 6, 'totalSupply': 10 ** 24}


def make_probe(eth_config, client=None, session=None, **kw):
    client = client or FakeClient(eth_config, calls=TOKEN_CALLS)
    return ContractProbeService({'ethereum': eth_config}, clients={'ethereum': client},
                                session=session or FakeSession(), **kw)


def epoch(dt):
    return (dt - datetime(1970, 1, 1)).total_seconds()


def test_full_token_with_claim_function(eth_config):
    calls = dict(TOKEN_CALLS, owner=NOT_SUPPORTED, getOwner=OWNER)
    session = FakeSession(last_tx=epoch(NOW))
    info = make_probe(eth_config, FakeClient(eth_config, calls=calls), session).verify('0x' + 'A' * 40)

    assert info.address == ADDRESS
    assert info.is_valid and info.is_token and info.verified and info.reachable
    assert (info.name, info.symbol, info.decimals) == ('Foo Token', 'FOO', 6)
    assert info.total_supply == str(10 ** 24)
    assert info.has_claim_function is True
    assert info.claim_capability == Capability.supported
    assert info.is_airdrop_contract is False
    assert info.owner == OWNER.lower()
    assert info.last_activity == NOW
    assert session.requests[0]['apikey'] == 'test-key'
    assert info.to_dict()['claim_capability'] == 'supported'


def test_address_without_code_is_invalid(eth_config):
    info = make_probe(eth_config, FakeClient(eth_config, code=b'')).verify(ADDRESS)
    assert info.is_valid is False
    assert info.reachable is True
    assert info.name is None


def test_malformed_address_is_invalid(eth_config):
    info = make_probe(eth_config).verify('0x1234')
    assert info.is_valid is False and info.reachable is True


def test_unreachable_chain_marks_result_untrusted(eth_config):
    client = FakeClient(eth_config, code_error=ChainUnreachable('ethereum', 'timeout'))
    info = make_probe(eth_config, client).verify(ADDRESS)
    assert info.reachable is False
    assert info.is_valid is False


def test_unknown_blockchain(eth_config):
    info = make_probe(eth_config).verify(ADDRESS, 'solana')
    assert info.reachable is False


def test_partial_token_interface_is_not_a_token(eth_config):
    client = FakeClient(eth_config, calls={'name': 'Foo', 'symbol': ChainUnreachable('ethereum', 'x')})
    info = make_probe(eth_config, client).verify(ADDRESS)
    assert info.is_valid is True
    assert info.is_token is False
    assert info.decimals is None


def test_token_defaults_when_optional_reads_fail(eth_config):
    client = FakeClient(eth_config, calls={'name': 'Foo', 'symbol': 'FOO'})
    info = make_probe(eth_config, client).verify(ADDRESS)
    assert info.decimals == 18
    assert info.total_supply == '0'
    assert info.owner is None


def test_explorer_skipped_without_api_key(eth_config):
    eth_config.explorer_api_key = None
    session = FakeSession(last_tx=epoch(NOW))
    info = make_probe(eth_config, session=session).verify(ADDRESS)
    assert info.verified is False
    assert info.last_activity is None
    assert session.requests == []


@pytest.mark.parametrize('error', [requests.exceptions.ConnectionError('down'), None])
def test_explorer_failures_are_not_fatal(eth_config, error):
    session = FakeSession(source_code='', error=error)
    info = make_probe(eth_config, session=session).verify(ADDRESS)
    assert info.is_valid is True
    assert info.verified is False


@pytest.mark.parametrize('last_activity, expected', [
    (NOW - timedelta(days=2), True),
    (NOW - timedelta(days=45), False),
    (None, True),
])
def test_airdrop_active_window(eth_config, last_activity, expected):
    session = FakeSession(last_tx=epoch(last_activity) if last_activity else None)
    assert make_probe(eth_config, session=session).is_airdrop_active(ADDRESS, now=NOW) is expected


def test_airdrop_not_active_without_claim_function(eth_config):
    client = FakeClient(eth_config, code=b'\x60\x80\x60\x40', calls=TOKEN_CALLS)
    assert make_probe(eth_config, client).is_airdrop_active(ADDRESS, now=NOW) is False


def test_airdrop_activity_unknown_when_unreachable(eth_config):
    client = FakeClient(eth_config, code_error=ChainUnreachable('ethereum', 'timeout'))
    assert make_probe(eth_config, client).is_airdrop_active(ADDRESS, now=NOW) is None


def test_verify_many_batches_and_isolates_failures(eth_config, monkeypatch):
    sleeps = []
    monkeypatch.setattr(probe_module.time, 'sleep', sleeps.append)

    probe = make_probe(eth_config, batch_size=5, batch_pause=1.0)
    bad = '0x' + 'd' * 40
    original = probe.verify

    def verify(address, blockchain='ethereum'):
        if address == bad:
            raise RuntimeError('boom')
        return original(address, blockchain)

    probe.verify = verify
    addresses = ['0x' + f'{i:040x}' for i in range(1, 12)]
    addresses[3] = bad

    results = probe.verify_many(addresses)

    assert [r.address for r in results] == addresses
    assert results[3].reachable is False
    assert all(r.is_valid for i, r in enumerate(results) if i != 3)
    # 11 个地址 3 批，只在批之间暂停
    assert sleeps == [1.0, 1.0]
