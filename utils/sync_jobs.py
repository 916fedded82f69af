# utils/sync_jobs.py
from extensions import db
from utils.errors import SyncInProgress
from utils.log_utils import get_logger

logger = get_logger("sync_jobs")


# ----------------- 异步任务 -----------------
def run_sync_job():
    """
    rq worker 中执行一次全量同步，返回 SyncResult 字典（写入 job.result）
    """
    from app import create_app
    app = create_app()

    with app.app_context():
        service = app.extensions['airdrop_sync']
        try:
            result = service.sync()
        except SyncInProgress as e:
            logger.warning(f"[run_sync_job] {e}")
            return {"skipped": True, "reason": str(e)}
        except Exception as e:
            db.session.rollback()
            logger.error(f"[run_sync_job] 同步异常: {e}")
            raise

        logger.info(f"[run_sync_job] 同步完成: new={result.new_count} updated={result.updated_count} "
                    f"errors={len(result.errors)}")
        return result.to_dict()
