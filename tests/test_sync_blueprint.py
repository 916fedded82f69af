from datetime import datetime

import jwt
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from rq.exceptions import NoSuchJobError

import app as app_module
import blueprints.sync as sync_module
import scheduler as scheduler_module
from extensions import db
from models import Airdrop, RiskLevelEnum, VerificationLevelEnum
from utils.airdrop_sync_service import AirdropSyncService
from utils.source_fetch_service import AirdropCandidate
from utils.sync_jobs import run_sync_job

CONTRACT = '0x' + 'f' * 40


def bearer(payload, secret='test-secret'):
    return {'Authorization': f"Bearer {jwt.encode(payload, secret, algorithm='HS256')}"}


@pytest.fixture
def airdrop(service):
    record, _ = service.create_record(AirdropCandidate(
        name='Foo', symbol='FOO', contract_address=CONTRACT, description='Foo airdrop', source='github',
    ))
    return record.id


# ---------------- 鉴权 ----------------
def test_missing_token_rejected(client, service):
    resp = client.post('/api/airdrops/sync/')
    assert resp.status_code == 401
    assert resp.get_json()['success'] is False


@pytest.mark.parametrize('headers, status', [
    (bearer({'sub': 'eve', 'role': 'admin'}, secret='wrong'), 401),
    (bearer({'sub': 'eve', 'role': 'admin', 'exp': 1}), 401),
    (bearer({'sub': 'eve', 'role': 'user'}), 403),
])
def test_bad_tokens_rejected(client, service, headers, status):
    assert client.post('/api/airdrops/sync/', headers=headers).status_code == status


def test_unconfigured_secret_is_503(app, client, service, admin_headers):
    app.config['JWT_SECRET'] = None
    assert client.post('/api/airdrops/sync/', headers=admin_headers).status_code == 503


# ---------------- 同步 ----------------
def test_run_sync(client, service, fetcher, admin_headers):
    fetcher.candidates = [AirdropCandidate(name='Foo', symbol='FOO', description='Foo airdrop', source='github')]
    fetcher.errors = ['Source airdrop-alert unavailable: timeout']

    resp = client.post('/api/airdrops/sync/', headers=admin_headers)
    body = resp.get_json()

    assert resp.status_code == 200
    assert body['data']['new_count'] == 1
    assert body['data']['errors'] == fetcher.errors

    status = client.get('/api/airdrops/sync/status').get_json()['data']
    assert status['sync_in_progress'] is False
    assert status['last_sync']['new_count'] == 1


def test_concurrent_sync_returns_409(client, service, fetcher, admin_headers):
    seen = {}

    def reenter():
        seen['sync'] = client.post('/api/airdrops/sync/', headers=admin_headers).status_code
        seen['status'] = client.get('/api/airdrops/sync/status').get_json()['data']['sync_in_progress']

    fetcher.hook = reenter
    service.sync()

    assert seen == {'sync': 409, 'status': True}
    assert fetcher.calls == 1


def test_run_sync_when_redis_down(client, service, fetcher, admin_headers):
    class DownLock:
        def acquire(self, blocking=True):
            raise RedisConnectionError('Error 111 connecting to localhost:6379')

        def locked(self):
            raise RedisConnectionError('Error 111 connecting to localhost:6379')

    service.lock_factory = DownLock
    fetcher.candidates = [AirdropCandidate(name='Foo', symbol='FOO', description='Foo airdrop', source='github')]

    resp = client.post('/api/airdrops/sync/', headers=admin_headers)
    assert resp.status_code == 200
    assert resp.get_json()['data']['new_count'] == 1
    assert client.get('/api/airdrops/sync/status').get_json()['data']['sync_in_progress'] is False


def test_stats(client, service, airdrop):
    data = client.get('/api/airdrops/sync/stats').get_json()['data']
    assert data['total'] == 1
    assert data['by_status'] == {'active': 1}
    assert data['by_blockchain'] == {'ethereum': 1}


# ---------------- rq 队列 ----------------
class FakeJob:
    def __init__(self, job_id, status='finished', result=None):
        self.id = job_id
        self.status = status
        self.result = result

    def get_status(self):
        return self.status

    def return_value(self):
        return self.result


def test_enqueue_sync(client, service, admin_headers, monkeypatch):
    enqueued = []

    class FakeQueue:
        def enqueue(self, func, **kwargs):
            enqueued.append((func, kwargs))
            return FakeJob('job-1', status='queued')

    monkeypatch.setattr(sync_module, 'sync_queue', FakeQueue())
    resp = client.post('/api/airdrops/sync/enqueue', headers=admin_headers)

    assert resp.status_code == 202
    assert resp.get_json()['job_id'] == 'job-1'
    assert enqueued == [('utils.sync_jobs.run_sync_job', {'job_timeout': 3600})]


def test_job_status(client, service, admin_headers, monkeypatch):
    jobs = {'job-1': FakeJob('job-1', result={'new_count': 2})}

    class FakeJobClass:
        @staticmethod
        def fetch(job_id, connection=None):
            if job_id not in jobs:
                raise NoSuchJobError(job_id)
            return jobs[job_id]

    monkeypatch.setattr(sync_module, 'Job', FakeJobClass)

    data = client.get('/api/airdrops/sync/jobs/job-1', headers=admin_headers).get_json()['data']
    assert data == {'job_id': 'job-1', 'status': 'finished', 'result': {'new_count': 2}}
    assert client.get('/api/airdrops/sync/jobs/nope', headers=admin_headers).status_code == 404


def test_run_sync_job_in_worker(app, service, fetcher, monkeypatch):
    monkeypatch.setattr(app_module, 'create_app', lambda: app)
    fetcher.candidates = [AirdropCandidate(name='Foo', symbol='FOO', description='Foo airdrop', source='github')]

    result = run_sync_job()
    assert result['new_count'] == 1

    service._sync_lock.acquire()
    try:
        assert run_sync_job() == {'skipped': True, 'reason': 'A sync is already in progress'}
    finally:
        service._sync_lock.release()


# ---------------- 定时任务 ----------------
def test_scheduled_sync_swallows_in_progress(app, service, fetcher):
    service._sync_lock.acquire()
    try:
        scheduler_module.sync_job(app)
    finally:
        service._sync_lock.release()
    assert fetcher.calls == 0

    scheduler_module.sync_job(app)
    assert fetcher.calls == 1


def test_maintenance_job_skipped_during_sync(app, service, airdrop):
    db.session.query(Airdrop).update({'end_date': datetime(2000, 1, 1)}, synchronize_session=False)
    db.session.commit()

    service._sync_lock.acquire()
    try:
        scheduler_module.maintenance_job(app)
    finally:
        service._sync_lock.release()
    assert db.session.get(Airdrop, airdrop).status.value == 'active'
    db.session.commit()

    scheduler_module.maintenance_job(app)
    db.session.expire_all()
    assert db.session.get(Airdrop, airdrop).status.value == 'ended'


class WorkerHeldLock:
    """rq worker 正在同步时的 redis 锁"""

    def acquire(self, blocking=True):
        return False

    def locked(self):
        return True


def test_maintenance_job_skipped_while_worker_syncs(app, service, airdrop):
    db.session.query(Airdrop).update({'end_date': datetime(2000, 1, 1)}, synchronize_session=False)
    db.session.commit()

    service.lock_factory = WorkerHeldLock
    scheduler_module.maintenance_job(app)
    assert db.session.get(Airdrop, airdrop).status.value == 'active'


# ---------------- 监控 ----------------
def test_monitoring_start_stop(client, service, admin_headers):
    assert client.post('/api/airdrops/sync/monitoring/start', headers=admin_headers).status_code == 200
    try:
        stats = client.get('/api/airdrops/sync/monitoring/stats').get_json()['data']
        assert stats['is_monitoring'] is True
        assert stats['consumer_running'] is True
    finally:
        assert client.post('/api/airdrops/sync/monitoring/stop', headers=admin_headers).status_code == 200

    stats = client.get('/api/airdrops/sync/monitoring/stats').get_json()['data']
    assert stats['is_monitoring'] is False
    assert stats['consumer_running'] is False


def test_monitoring_start_without_monitor(client, app, probe, fetcher, admin_headers):
    AirdropSyncService(probe, fetcher, monitor=None, app=app)
    assert client.post('/api/airdrops/sync/monitoring/start', headers=admin_headers).status_code == 400


# ---------------- 合约校验 ----------------
@pytest.mark.parametrize('payload', [
    {'address': '0x1234'},
    {'address': CONTRACT, 'blockchain': 'solana'},
    {},
])
def test_verify_contract_rejects_bad_input(client, service, admin_headers, payload):
    assert client.post('/api/airdrops/sync/verify-contract', json=payload, headers=admin_headers).status_code == 400


def test_verify_contract(client, service, probe, admin_headers):
    probe.set_info(CONTRACT, name='Foo', symbol='FOO', is_token=True, has_claim_function=True)
    resp = client.post('/api/airdrops/sync/verify-contract', json={'address': CONTRACT, 'blockchain': 'Ethereum'},
                       headers=admin_headers)
    data = resp.get_json()['data']

    assert resp.status_code == 200
    assert data['is_valid'] is True
    assert data['has_claim_function'] is True
    assert data['claim_capability'] == 'indeterminate'
    assert probe.verify_calls == [(CONTRACT, 'ethereum')]


# ---------------- 人工审核 ----------------
def test_update_verification_level_endpoint(client, service, admin_headers, airdrop):
    url = f'/api/airdrops/sync/airdrops/{airdrop}/verification-level'

    resp = client.post(url, json={'level': 'official', 'details': 'team confirmed'}, headers=admin_headers)
    assert resp.get_json() == {'success': True, 'changed': True}

    record = db.session.get(Airdrop, airdrop)
    assert record.verification_level == VerificationLevelEnum.official
    assert record.verification_history[-1].by == 'tester'

    assert client.post(url, json={'level': 'bogus'}, headers=admin_headers).status_code == 400
    assert client.post('/api/airdrops/sync/airdrops/999/verification-level', json={'level': 'official'},
                       headers=admin_headers).status_code == 404


def test_add_risk_warning_endpoint(client, service, admin_headers, airdrop):
    url = f'/api/airdrops/sync/airdrops/{airdrop}/risk-warnings'

    assert client.post(url, json={'warning': '  '}, headers=admin_headers).status_code == 400
    client.post(url, json={'warning': 'owner can mint'}, headers=admin_headers)
    resp = client.post(url, json={'warning': 'unaudited', 'factor': 'audit'}, headers=admin_headers)

    assert resp.get_json()['risk_level'] == 'medium'
    assert db.session.get(Airdrop, airdrop).risk_level == RiskLevelEnum.medium
    assert client.post('/api/airdrops/sync/airdrops/999/risk-warnings', json={'warning': 'x'},
                       headers=admin_headers).status_code == 404


def test_health_check(client):
    assert client.get('/').get_json() == {'status': 'healthy'}
