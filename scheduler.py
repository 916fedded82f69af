from apscheduler.schedulers.background import BackgroundScheduler
from datetime import datetime, timezone
from extensions import db
from utils.errors import SyncInProgress
from utils.log_utils import get_logger
import traceback

logger = get_logger("scheduler")

scheduler = BackgroundScheduler()


# 维护任务：过期 / 失活 / 清理 / 统计（同步间隔较长，这里单独按小时跑）
def maintenance_job(app):
    with app.app_context():
        service = app.extensions['airdrop_sync']
        if service.is_sync_in_progress():
            logger.info("Sync in progress, maintenance skipped.")
            return
        try:
            start_time = datetime.now(timezone.utc)
            logger.info("Running scheduled maintenance task...")
            result = service.run_maintenance()
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info(f"Maintenance completed in {duration:.2f}s, errors: {len(result.errors)}")
        except Exception:
            db.session.rollback()
            logger.error("Maintenance task failed:")
            traceback.print_exc()


def sync_job(app):
    with app.app_context():
        try:
            logger.info("Running scheduled sync task...")
            result = app.extensions['airdrop_sync'].sync()
            logger.info(f"Sync task completed: {result.to_dict()}")
        except SyncInProgress:
            logger.warning("Previous sync still running, skipped.")
        except Exception:
            db.session.rollback()
            logger.error("Sync task failed:")
            traceback.print_exc()


def start_scheduler(app):
    # 启动后先跑一次全量同步
    scheduler.add_job(lambda: sync_job(app), 'date', id='airdrop_sync_initial')
    scheduler.add_job(lambda: maintenance_job(app), 'interval', hours=1, id='airdrop_maintenance')

    scheduler.start()
    logger.info("Scheduler started: maintenance every 1h, initial sync queued")
