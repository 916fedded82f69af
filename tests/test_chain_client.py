import pytest
import requests
from web3 import Web3
from web3.exceptions import ContractLogicError

from utils.chain_client import (
    AIRDROP_ABI,
    ERC20_ABI,
    NOT_SUPPORTED,
    OWNABLE_ABI,
    Capability,
    ChainClient,
    abi_signatures,
    capability_from_code,
    function_selector,
    to_hex,
)
from utils.errors import ChainUnreachable

ADDRESS = '0x' + 'a' * 40


class FakeFunction:
    def __init__(self, outcome):
        self.outcome = outcome

    def __call__(self, *args):
        return self

    def call(self):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeFunctions:
    def __init__(self, outcomes):
        self.outcomes = outcomes

    def __getattr__(self, name):
        return FakeFunction(self.outcomes[name])


class FakeContract:
    def __init__(self, outcomes):
        self.functions = FakeFunctions(outcomes)


class FakeEth:
    def __init__(self, code=b'', outcomes=None, error=None):
        self.code = code
        self.outcomes = outcomes or {}
        self.error = error
        self.contract_calls = []

    def get_code(self, address):
        if self.error:
            raise self.error
        return self.code

    def contract(self, address, abi):
        self.contract_calls.append(address)
        return FakeContract(self.outcomes)


class FakeWeb3:
    def __init__(self, **kw):
        self.eth = FakeEth(**kw)


def make_client(eth_config, **kw):
    return ChainClient(eth_config, w3=FakeWeb3(**kw))


def test_abi_signatures_include_overloads():
    sigs = abi_signatures(AIRDROP_ABI, {'claim'})
    assert sigs
    assert all(s.startswith('claim(') for s in sigs)
    assert 'totalSupply()' in abi_signatures(ERC20_ABI, {'totalSupply'})


def test_capability_is_tri_state():
    selector = function_selector('claim()')
    assert capability_from_code(None, ['claim()']) == Capability.indeterminate
    assert capability_from_code(b'', ['claim()']) == Capability.not_supported
    assert capability_from_code(b'\x60\x80\x63' + selector + b'\x14', ['claim()']) == Capability.supported
    # 选择器必须紧跟 PUSH4
    assert capability_from_code(b'\x60\x80' + selector, ['claim()']) == Capability.not_supported


def test_function_capability_network_error_is_indeterminate(eth_config):
    client = make_client(eth_config, error=requests.exceptions.ConnectionError('refused'))
    assert client.function_capability(ADDRESS, ['claim()']) == Capability.indeterminate


def test_get_code_wraps_network_errors(eth_config):
    client = make_client(eth_config, error=requests.exceptions.Timeout('slow'))
    with pytest.raises(ChainUnreachable) as exc:
        client.get_code(ADDRESS)
    assert exc.value.blockchain == 'ethereum'


def test_get_code_uses_checksum_address(eth_config):
    client = make_client(eth_config, code=b'\x60\x80')
    assert client.get_code(ADDRESS) == b'\x60\x80'


def test_call_distinguishes_revert_from_outage(eth_config):
    client = make_client(eth_config, outcomes={
        'name': 'Foo',
        'owner': ContractLogicError('execution reverted'),
        'symbol': requests.exceptions.ConnectionError('down'),
    })

    assert client.call(ADDRESS, ERC20_ABI, 'name') == 'Foo'
    assert client.call(ADDRESS, OWNABLE_ABI, 'owner') is NOT_SUPPORTED
    assert not NOT_SUPPORTED
    with pytest.raises(ChainUnreachable):
        client.call(ADDRESS, ERC20_ABI, 'symbol')
    assert client.w3.eth.contract_calls[0] == Web3.to_checksum_address(ADDRESS)


def test_is_address():
    assert ChainClient.is_address(ADDRESS)
    assert not ChainClient.is_address('0x1234')
    assert not ChainClient.is_address('')


def test_to_hex_normalizes_case():
    assert to_hex(None) is None
    assert to_hex('0xABCDEF') == '0xabcdef'
    assert to_hex(b'\xab\xcd') == '0xabcd'
