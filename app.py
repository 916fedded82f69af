from flask import Flask, jsonify
from flask_cors import CORS
from flask_migrate import Migrate
from extensions import db, redis_conn
from dotenv import load_dotenv
import os

# 提前导入模型注册函数（明确显示依赖关系）
from models import register_models

from blueprints.sync import sync_bp
from scheduler import scheduler
from utils.chain_registry import load_chain_configs, monitored_chain_names
from utils.contract_probe_service import ContractProbeService
from utils.source_fetch_service import SourceFetchService
from utils.event_monitor_service import EventMonitorService
from utils.airdrop_sync_service import AirdropSyncService

load_dotenv()


def _env_int(name, default):
    return int(os.getenv(name, default))


def _env_float(name, default):
    return float(os.getenv(name, default))


def init_airdrop_services(app):
    """按配置构建探测 / 抓取 / 监控 / 同步服务，挂到 app.extensions['airdrop_sync']"""
    cfg = app.config
    chains = load_chain_configs()

    probe = ContractProbeService(
        chains,
        batch_size=cfg['PROBE_BATCH_SIZE'],
        batch_pause=cfg['PROBE_BATCH_PAUSE'],
        activity_window_days=cfg['ACTIVITY_WINDOW_DAYS'],
    )
    fetcher = SourceFetchService(chains)
    monitor = EventMonitorService(
        chains,
        chain_names=monitored_chain_names(chains),
        max_retries=cfg['WEBSOCKET_MAX_RETRIES'],
        reconnect_interval=cfg['WEBSOCKET_RECONNECT_INTERVAL'],
        max_reconnect_delay=cfg['WEBSOCKET_MAX_RECONNECT_DELAY'],
        mass_transfer_threshold=cfg['MASS_TRANSFER_THRESHOLD'],
        mass_transfer_max_senders=cfg['MASS_TRANSFER_MAX_SENDERS'],
        lookback_blocks=cfg['MASS_TRANSFER_LOOKBACK_BLOCKS'],
        block_scan_limit=cfg['BLOCK_TX_SCAN_LIMIT'],
    )

    lock_factory = None
    if cfg['SYNC_REDIS_LOCK']:
        lock_factory = lambda: redis_conn.lock('airdrop_sync_lock', timeout=cfg['SYNC_LOCK_TIMEOUT'])

    return AirdropSyncService(
        probe,
        fetcher,
        monitor=monitor,
        scheduler=scheduler,
        app=app,
        sync_interval_hours=cfg['SYNC_INTERVAL_HOURS'],
        retention_days=cfg['RETENTION_DAYS'],
        retention_min_views=cfg['RETENTION_MIN_VIEWS'],
        lock_factory=lock_factory,
    )


def create_app(config=None):
    app = Flask(__name__)

    CORS(app, supports_credentials=True)

    # ===== 配置 =====
    app.config.update(
        SECRET_KEY=os.getenv('SECRET_KEY'),
        JWT_SECRET=os.getenv('JWT_SECRET'),
        SQLALCHEMY_DATABASE_URI=os.getenv('DB_URI', 'sqlite:///airdrops.db'),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        SYNC_INTERVAL_HOURS=_env_int('SYNC_INTERVAL_HOURS', 6),
        SYNC_REDIS_LOCK=os.getenv('SYNC_REDIS_LOCK', 'True') == 'True',
        SYNC_LOCK_TIMEOUT=_env_int('SYNC_LOCK_TIMEOUT', 3600),
        WEBSOCKET_MAX_RETRIES=_env_int('WEBSOCKET_MAX_RETRIES', 3),
        WEBSOCKET_RECONNECT_INTERVAL=_env_int('WEBSOCKET_RECONNECT_INTERVAL', 300),
        WEBSOCKET_MAX_RECONNECT_DELAY=_env_int('WEBSOCKET_MAX_RECONNECT_DELAY', 600),
        MASS_TRANSFER_THRESHOLD=_env_int('MASS_TRANSFER_THRESHOLD', 50),
        MASS_TRANSFER_MAX_SENDERS=_env_int('MASS_TRANSFER_MAX_SENDERS', 3),
        MASS_TRANSFER_LOOKBACK_BLOCKS=_env_int('MASS_TRANSFER_LOOKBACK_BLOCKS', 100),
        BLOCK_TX_SCAN_LIMIT=_env_int('BLOCK_TX_SCAN_LIMIT', 10),
        PROBE_BATCH_SIZE=_env_int('PROBE_BATCH_SIZE', 5),
        PROBE_BATCH_PAUSE=_env_float('PROBE_BATCH_PAUSE', 1.0),
        ACTIVITY_WINDOW_DAYS=_env_int('ACTIVITY_WINDOW_DAYS', 30),
        RETENTION_DAYS=_env_int('RETENTION_DAYS', 90),
        RETENTION_MIN_VIEWS=_env_int('RETENTION_MIN_VIEWS', 10),
    )
    if config:
        app.config.update(config)

    # ===== 初始化扩展 =====
    db.init_app(app)
    Migrate(app, db)

    with app.app_context():
        register_models()  # 确保在应用上下文中注册

    init_airdrop_services(app)

    # ===== 注册蓝图 =====
    app.register_blueprint(sync_bp)

    # 健康检查
    @app.route('/')
    def health_check():
        return jsonify({'status': 'healthy'})

    return app


if __name__ == '__main__':
    from scheduler import start_scheduler  # 延迟导入
    app = create_app()
    start_scheduler(app)
    app.extensions['airdrop_sync'].start_automatic_monitoring()
    app.run(host='0.0.0.0', port=5000)
