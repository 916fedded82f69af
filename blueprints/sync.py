from flask import Blueprint, request, jsonify, current_app, g
from rq.job import Job
from rq.exceptions import NoSuchJobError
from extensions import redis_conn, sync_queue
from utils.auth_utils import jwt_required
from utils.chain_client import ChainClient
from utils.chain_registry import SUPPORTED_BLOCKCHAINS
from utils.errors import SyncInProgress, RecordNotFound, InvalidTransition, AirdropSyncError
from utils.log_utils import get_logger

sync_bp = Blueprint('airdrop_sync', __name__, url_prefix='/api/airdrops/sync')

logger = get_logger("sync_api")


def _service():
    return current_app.extensions['airdrop_sync']


# 🟢 手动触发同步（同步执行，已有同步时 409）
@sync_bp.route('/', methods=['POST'])
@jwt_required
def run_sync():
    try:
        result = _service().sync()
    except SyncInProgress as e:
        return jsonify({'success': False, 'message': str(e)}), 409
    return jsonify({'success': True, 'message': 'Sync completed', 'data': result.to_dict()}), 200


# 🟢 放入 rq 队列异步执行
@sync_bp.route('/enqueue', methods=['POST'])
@jwt_required
def enqueue_sync():
    try:
        job = sync_queue.enqueue('utils.sync_jobs.run_sync_job', job_timeout=3600)
    except Exception as e:
        logger.error(f"[enqueue_sync] 入队失败: {e}")
        return jsonify({'success': False, 'message': f'Failed to enqueue sync: {e}'}), 500
    return jsonify({'success': True, 'message': 'Sync queued', 'job_id': job.id}), 202


@sync_bp.route('/jobs/<job_id>', methods=['GET'])
@jwt_required
def sync_job_status(job_id):
    try:
        job = Job.fetch(job_id, connection=redis_conn)
    except NoSuchJobError:
        return jsonify({'success': False, 'message': 'Job not found'}), 404

    status = job.get_status()  # queued, started, finished, failed
    data = {'job_id': job_id, 'status': status}
    if status == 'finished':
        data['result'] = job.return_value()
    return jsonify({'success': True, 'data': data}), 200


@sync_bp.route('/status', methods=['GET'])
def sync_status():
    service = _service()
    last = service.get_last_sync_result()
    return jsonify({
        'success': True,
        'data': {
            'sync_in_progress': service.is_sync_in_progress(),
            'last_sync': last.to_dict() if last else None,
        }
    }), 200


@sync_bp.route('/stats', methods=['GET'])
def sync_stats():
    return jsonify({'success': True, 'data': _service().get_statistics()}), 200


@sync_bp.route('/monitoring/start', methods=['POST'])
@jwt_required
def start_monitoring():
    try:
        _service().start_automatic_monitoring()
    except AirdropSyncError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    return jsonify({'success': True, 'message': 'Monitoring started'}), 200


@sync_bp.route('/monitoring/stop', methods=['POST'])
@jwt_required
def stop_monitoring():
    _service().stop_monitoring()
    return jsonify({'success': True, 'message': 'Monitoring stopped'}), 200


@sync_bp.route('/monitoring/stats', methods=['GET'])
def monitoring_stats():
    return jsonify({'success': True, 'data': _service().get_monitoring_stats()}), 200


@sync_bp.route('/verify-contract', methods=['POST'])
@jwt_required
def verify_contract():
    data = request.get_json() or {}
    address = (data.get('address') or '').strip()
    blockchain = (data.get('blockchain') or 'ethereum').strip().lower()

    if not ChainClient.is_address(address):
        return jsonify({'success': False, 'message': 'Invalid contract address'}), 400
    if blockchain not in SUPPORTED_BLOCKCHAINS:
        return jsonify({'success': False, 'message': f'Unsupported blockchain: {blockchain}'}), 400

    info = _service().verify_contract(address, blockchain)
    return jsonify({'success': True, 'data': info.to_dict()}), 200


# 人工审核：调整验证等级 / 追加风险警告
@sync_bp.route('/airdrops/<int:airdrop_id>/verification-level', methods=['POST'])
@jwt_required
def update_verification_level(airdrop_id):
    data = request.get_json() or {}
    try:
        changed = _service().update_verification_level(airdrop_id, data.get('level'), by=g.current_admin,
                                                       details=data.get('details'))
    except ValueError:
        return jsonify({'success': False, 'message': 'Invalid verification level'}), 400
    except RecordNotFound as e:
        return jsonify({'success': False, 'message': str(e)}), 404
    except InvalidTransition as e:
        return jsonify({'success': False, 'message': str(e)}), 409
    return jsonify({'success': True, 'changed': changed}), 200


@sync_bp.route('/airdrops/<int:airdrop_id>/risk-warnings', methods=['POST'])
@jwt_required
def add_risk_warning(airdrop_id):
    data = request.get_json() or {}
    warning = (data.get('warning') or '').strip()
    if not warning:
        return jsonify({'success': False, 'message': 'Warning text is required'}), 400
    try:
        level = _service().add_risk_warning(airdrop_id, warning, factor=data.get('factor'), by=g.current_admin)
    except RecordNotFound as e:
        return jsonify({'success': False, 'message': str(e)}), 404
    return jsonify({'success': True, 'risk_level': level.value}), 200
