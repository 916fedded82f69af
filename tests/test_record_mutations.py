import pytest

from extensions import db
from models import Airdrop, AirdropStatusEnum, RiskLevelEnum, UserClaim, VerificationLevelEnum
from utils.errors import DuplicateKey, InvalidTransition, RecordNotFound
from utils.source_fetch_service import AirdropCandidate

WALLET = '0x' + 'Ab' * 20


@pytest.fixture
def airdrop(service):
    record, _ = service.create_record(AirdropCandidate(
        name='Foo', symbol='FOO', contract_address='0x' + 'f' * 40, description='Foo airdrop',
        website='https://foo.xyz', source='coingecko',
    ))
    return record.id


def test_increment_views_is_atomic_counter(service, airdrop):
    for _ in range(3):
        service.increment_views(airdrop)
    record = db.session.get(Airdrop, airdrop)
    assert record.views == 3
    assert len(record.verification_history) == 1


def test_increment_views_missing_record(service):
    with pytest.raises(RecordNotFound):
        service.increment_views(999)


def test_record_claim_updates_analytics(service, airdrop):
    claim = service.record_claim(airdrop, WALLET, 300, tx_hash='0x01')
    service.record_claim(airdrop, '0x' + '2' * 40, 100)

    assert claim.wallet_address == WALLET.lower()
    assert claim.claimed is True

    record = db.session.get(Airdrop, airdrop)
    assert record.claims == 2
    assert record.successful_claims == 2
    assert record.claimed_users == 2
    assert record.total_value_claimed == '400'
    assert record.average_claim_value == '200'
    assert [c['amount'] for c in record.top_claimers] == ['300', '100']
    assert record.verification_history[-1].action == 'Claim recorded'


def test_second_claim_by_same_wallet_rejected(service, airdrop):
    service.record_claim(airdrop, WALLET, 10)
    with pytest.raises(DuplicateKey):
        service.record_claim(airdrop, WALLET.upper().replace('0X', '0x'), 10)

    record = db.session.get(Airdrop, airdrop)
    assert record.successful_claims == 1
    assert UserClaim.query.count() == 1


def test_top_claimers_bounded_and_sorted(service, airdrop):
    for i in range(12):
        service.record_claim(airdrop, '0x' + f'{i:040x}', (i * 7) % 12 + 1)

    top = db.session.get(Airdrop, airdrop).top_claimers
    amounts = [int(c['amount']) for c in top]
    assert len(top) == 10
    assert amounts == sorted(amounts, reverse=True)
    assert amounts[0] == 12


def test_record_claim_missing_record(service):
    with pytest.raises(RecordNotFound):
        service.record_claim(42, WALLET, 1)


def test_update_verification_level_any_direction(service, airdrop):
    assert service.update_verification_level(airdrop, 'official', by='alice') is True
    assert service.update_verification_level(airdrop, 'unverified', by='bob') is True
    assert service.update_verification_level(airdrop, 'unverified') is False

    record = db.session.get(Airdrop, airdrop)
    assert record.verification_level == VerificationLevelEnum.unverified
    actions = [(h.action, h.by) for h in record.verification_history]
    assert ('Verification level changed from community to official', 'alice') in actions
    assert ('Verification level changed from official to unverified', 'bob') in actions


def test_update_verification_level_rejects_unknown_level(service, airdrop):
    with pytest.raises(ValueError):
        service.update_verification_level(airdrop, 'trusted')
    with pytest.raises(RecordNotFound):
        service.update_verification_level(999, 'official')


@pytest.mark.parametrize('warnings, expected', [
    (['w1'], RiskLevelEnum.low),
    (['w1', 'w2'], RiskLevelEnum.medium),
    (['w1', 'w2', 'w3'], RiskLevelEnum.high),
    (['w1', 'w1', 'w2', 'w2'], RiskLevelEnum.medium),
])
def test_risk_level_follows_warning_count(service, airdrop, warnings, expected):
    level = None
    for w in warnings:
        level = service.add_risk_warning(airdrop, w, factor='unaudited')

    record = db.session.get(Airdrop, airdrop)
    assert level == expected
    assert record.risk_level == expected
    assert record.risk_warnings == list(dict.fromkeys(warnings))
    assert record.risk_factors == ['unaudited']
    assert [h.action for h in record.verification_history].count('Risk warning added') == len(warnings)


def test_add_risk_warning_missing_record(service):
    with pytest.raises(RecordNotFound):
        service.add_risk_warning(7, 'rug')


def test_explicit_status_change_and_cancelled_is_terminal(service, airdrop):
    assert service.update_status(airdrop, 'ended') is True
    assert service.update_status(airdrop, 'active') is True
    assert service.update_status(airdrop, 'cancelled') is True
    assert db.session.get(Airdrop, airdrop).status == AirdropStatusEnum.cancelled

    with pytest.raises(InvalidTransition):
        service.update_status(airdrop, 'active')
