import queue
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from apscheduler.jobstores.base import JobLookupError
from redis.exceptions import LockNotOwnedError, RedisError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from models import (
    OPEN_STATUSES,
    Airdrop,
    AirdropSource,
    AirdropStatusEnum,
    DistributionMethodEnum,
    RiskLevelEnum,
    UserClaim,
    VerificationEvent,
    VerificationLevelEnum,
    utcnow,
)
from models.airdrop_models import parse_value
from utils.errors import (
    AirdropSyncError,
    DuplicateKey,
    InvalidTransition,
    RecordNotFound,
    SyncInProgress,
)
from utils.event_monitor_service import EventType
from utils.log_utils import get_logger
from utils.source_fetch_service import (
    TRUSTED_SOURCES,
    AirdropCandidate,
    source_confidence,
    source_type,
)

logger = get_logger("airdrop_sync")

SYNC_JOB_ID = 'airdrop_sync_interval'
TOP_CLAIMERS_LIMIT = 10


@dataclass
class SyncResult:
    new_count: int = 0
    updated_count: int = 0
    verified_count: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    statistics: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            "new_count": self.new_count,
            "updated_count": self.updated_count,
            "verified_count": self.verified_count,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "statistics": self.statistics,
        }


def _status(value, default=AirdropStatusEnum.active):
    try:
        return AirdropStatusEnum(value)
    except ValueError:
        return default


class AirdropSyncService:
    """
    空投同步核心：
      1. 外部来源候选 -> 去重 / 合并 / 创建
      2. 合约探测结果 -> contractInfo，等级只升不降
      3. 维护：过期、失活、清理、统计
      4. 链上事件 -> 增量创建 / 状态更新
    所有写操作都是按字段的窄更新（UPDATE ... WHERE），避免整行覆盖
    """

    def __init__(self, probe, fetcher, monitor=None, scheduler=None, app=None,
                 sync_interval_hours=6, retention_days=90, retention_min_views=10, lock_factory=None):
        self.probe = probe
        self.fetcher = fetcher
        self.monitor = monitor
        self.scheduler = scheduler
        self.sync_interval_hours = sync_interval_hours
        self.retention_days = retention_days
        self.retention_min_views = retention_min_views
        # 跨进程单飞锁（redis），web 进程和 rq worker 共用
        self.lock_factory = lock_factory

        self._sync_lock = threading.Lock()
        self._last_result = None
        self._statistics = {}
        self._consumer = None
        self._consumer_stop = threading.Event()

        self.app = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        app.extensions['airdrop_sync'] = self

    # ================= 批量同步 =================
    def sync(self) -> SyncResult:
        # 单飞：已有同步在跑时直接拒绝，不排队
        if not self._sync_lock.acquire(blocking=False):
            raise SyncInProgress("A sync is already in progress")
        try:
            shared = self._acquire_shared_lock()
            try:
                return self._run_sync()
            finally:
                if shared is not None:
                    self._release_shared_lock(shared)
        finally:
            self._sync_lock.release()

    def _acquire_shared_lock(self):
        """返回已持有的 redis 锁；redis 不可用时返回 None，只靠进程内锁"""
        if not self.lock_factory:
            return None
        shared = self.lock_factory()
        try:
            acquired = shared.acquire(blocking=False)
        except RedisError as e:
            logger.warning(f"[sync] redis lock unavailable, falling back to in-process guard: {e}")
            return None
        if not acquired:
            raise SyncInProgress("A sync is already in progress in another process")
        return shared

    def _release_shared_lock(self, shared):
        try:
            shared.release()
        except LockNotOwnedError:
            # 同步时间超过锁超时，锁已被释放或被别的进程拿走
            logger.warning("[sync] redis lock expired before the sync finished")
        except RedisError as e:
            logger.warning(f"[sync] failed to release redis lock: {e}")

    def is_sync_in_progress(self):
        if self._sync_lock.locked():
            return True
        if not self.lock_factory:
            return False
        try:
            return bool(self.lock_factory().locked())
        except RedisError as e:
            logger.warning(f"[sync] redis lock state unknown: {e}")
            return False

    def get_last_sync_result(self) -> Optional[SyncResult]:
        return self._last_result

    def _run_sync(self):
        result = SyncResult()
        logger.info("[sync] starting airdrop sync...")
        try:
            fetched = self.fetcher.fetch_all()
            result.errors.extend(fetched.errors)
            logger.info(f"[sync] fetched {len(fetched.candidates)} candidates")

            for candidate in fetched.candidates:
                try:
                    self.process_candidate(candidate, result)
                except Exception as e:
                    db.session.rollback()
                    logger.error(f"[sync] error processing {candidate.name}: {e}")
                    result.errors.append(f"Error processing {candidate.name}: {e}")

            self.run_maintenance(result)
        except Exception as e:
            db.session.rollback()
            logger.error(f"[sync] sync aborted: {e}")
            traceback.print_exc()
            result.errors.append(f"General error: {e}")

        result.finished_at = utcnow()
        self._last_result = result
        logger.info(f"[sync] done: new={result.new_count} updated={result.updated_count} "
                    f"verified={result.verified_count} errors={len(result.errors)}")
        return result

    def process_candidate(self, candidate: AirdropCandidate, result: SyncResult):
        record = self.find_existing(candidate)
        if record is not None:
            self.merge_candidate(record, candidate)
            result.updated_count += 1
            logger.info(f"[sync] updated {candidate.name}")
        else:
            record, created = self.create_record(candidate)
            if created:
                result.new_count += 1
                logger.info(f"[sync] created {candidate.name}")
            else:
                result.updated_count += 1

        if candidate.contract_address:
            if self.enrich_contract(record.id, candidate.contract_address, candidate.blockchain):
                result.verified_count += 1
        return record

    def find_existing(self, candidate: AirdropCandidate) -> Optional[Airdrop]:
        """合约地址 -> 代币地址 -> (name, symbol)；name/symbol 只在没有合约地址时使用"""
        if candidate.contract_address:
            record = Airdrop.query.filter_by(contract_address=candidate.contract_address,
                                             blockchain=candidate.blockchain).first()
            if record is not None:
                return record
        if candidate.token_address:
            record = Airdrop.query.filter_by(token_address=candidate.token_address,
                                             blockchain=candidate.blockchain).first()
            if record is not None:
                return record
        if not candidate.contract_address:
            return Airdrop.query.filter_by(name=candidate.name, symbol=candidate.symbol).first()
        return None

    def merge_candidate(self, record: Airdrop, candidate: AirdropCandidate):
        """只覆盖候选中非空且不同的字段；status 不动；来源按 URL 追加"""
        changes = {}
        if candidate.description and candidate.description != record.description:
            changes['description'] = candidate.description
        if candidate.website and candidate.website != record.website:
            changes['website'] = candidate.website
        if candidate.end_date and candidate.end_date != record.end_date:
            changes['end_date'] = candidate.end_date
        if candidate.total_value and candidate.total_value != record.total_value:
            changes['total_value'] = candidate.total_value

        now = utcnow()
        if changes:
            changes['last_verified'] = now
            Airdrop.query.filter_by(id=record.id).update(changes, synchronize_session=False)

        url = candidate.source_url
        if AirdropSource.query.filter_by(airdrop_id=record.id, url=url).first() is None:
            db.session.add(AirdropSource(
                airdrop_id=record.id,
                source_type=source_type(candidate.source),
                url=url,
                last_updated=now,
                confidence=source_confidence(candidate.source),
            ))

        try:
            db.session.commit()
        except IntegrityError:
            # 并发追加了同一个 URL，字段更新重新提交一次即可
            db.session.rollback()
            if changes:
                Airdrop.query.filter_by(id=record.id).update(changes, synchronize_session=False)
                db.session.commit()
        return record

    def create_record(self, candidate: AirdropCandidate):
        """返回 (record, created)；唯一键冲突时转为合并"""
        now = utcnow()
        trusted = candidate.source in TRUSTED_SOURCES
        record = Airdrop(
            name=candidate.name,
            symbol=candidate.symbol or 'UNKNOWN',
            contract_address=candidate.contract_address or None,
            token_address=candidate.token_address or candidate.contract_address or None,
            blockchain=candidate.blockchain,
            description=candidate.description or f"{candidate.name} token airdrop",
            website=candidate.website,
            end_date=candidate.end_date,
            total_value=candidate.total_value,
            status=_status(candidate.status),
            verification_level=VerificationLevelEnum.community if trusted else VerificationLevelEnum.unverified,
            distribution_method=DistributionMethodEnum.claim,
            risk_level=RiskLevelEnum.low if trusted else RiskLevelEnum.medium,
            risk_factors=[],
            risk_warnings=[],
            requirements={'whitelist_only': False, 'kyc': False},
            audit_reports=[],
            social_metrics={},
            top_claimers=[],
            added_by='system',
            added_at=now,
            last_verified=now,
        )
        record.sources.append(AirdropSource(
            source_type=source_type(candidate.source),
            url=candidate.source_url,
            last_updated=now,
            confidence=source_confidence(candidate.source),
        ))
        record.verification_history.append(VerificationEvent(
            date=now,
            action='Airdrop created from external source',
            by='system',
            details=f"Source: {candidate.source}",
        ))
        record.tags = record.generate_auto_tags()

        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = self.find_existing(candidate)
            if existing is None:
                raise DuplicateKey(f"Duplicate airdrop {candidate.name} on {candidate.blockchain}")
            logger.warning(f"[sync] concurrent create for {candidate.name}, merging instead")
            self.merge_candidate(existing, candidate)
            return existing, False
        return record, True

    # ================= 合约信息 =================
    def enrich_contract(self, airdrop_id, address, blockchain):
        """探测并写入 contractInfo；链不可达被跳过时返回 False"""
        info = self.probe.verify(address, blockchain)
        return self.apply_contract_info(airdrop_id, info)

    def apply_contract_info(self, airdrop_id, info):
        # 节点不可达时探测结果不可信，保留原值
        if not info.reachable:
            logger.warning(f"[sync] skip contract info for {info.address}: chain {info.blockchain} unreachable")
            return False

        record = db.session.get(Airdrop, airdrop_id)
        if record is None:
            raise RecordNotFound(f"Airdrop {airdrop_id} not found")

        changes = {}
        if record.contract_verified != info.verified:
            changes['contract_verified'] = info.verified
        if record.has_claim_function != info.has_claim_function:
            changes['has_claim_function'] = info.has_claim_function
        if info.owner is not None and info.owner != record.contract_owner:
            changes['contract_owner'] = info.owner
        if info.last_activity is not None and info.last_activity != record.last_activity:
            changes['last_activity'] = info.last_activity

        now = utcnow()
        if changes:
            changes['last_verified'] = now
            Airdrop.query.filter_by(id=airdrop_id).update(changes, synchronize_session=False)

        # 单向棘轮：只从 unverified 升到 community，从不因探测结果降级
        if info.verified and info.is_valid:
            raised = Airdrop.query.filter(
                Airdrop.id == airdrop_id,
                Airdrop.verification_level == VerificationLevelEnum.unverified,
            ).update({
                'verification_level': VerificationLevelEnum.community,
                'risk_level': RiskLevelEnum.low,
                'last_verified': now,
            }, synchronize_session=False)
            if raised:
                db.session.add(VerificationEvent(
                    airdrop_id=airdrop_id,
                    date=now,
                    action='Verification level raised to community',
                    by='system',
                    details=f"Contract {info.address} source verified on {info.blockchain}",
                ))
                logger.info(f"[sync] airdrop {airdrop_id} raised to community")

        db.session.commit()
        return True

    def verify_contract(self, address, blockchain='ethereum'):
        return self.probe.verify(address, blockchain)

    # ================= 状态变更 =================
    def _transition_status(self, airdrop_id, new_status, action, by, details=None, from_statuses=None):
        """条件更新 status，只有真的变了才写历史；重复执行是 no-op"""
        query = Airdrop.query.filter(Airdrop.id == airdrop_id, Airdrop.status != new_status)
        if from_statuses:
            query = query.filter(Airdrop.status.in_(from_statuses))
        now = utcnow()
        changed = query.update({'status': new_status, 'last_verified': now}, synchronize_session=False)
        if changed:
            db.session.add(VerificationEvent(airdrop_id=airdrop_id, date=now, action=action, by=by, details=details))
        db.session.commit()
        return bool(changed)

    def update_status(self, airdrop_id, status, by='admin', details=None):
        """人工状态变更（包括把 ended 重新打开）；cancelled 为终态"""
        status = AirdropStatusEnum(status)
        record = db.session.get(Airdrop, airdrop_id)
        if record is None:
            raise RecordNotFound(f"Airdrop {airdrop_id} not found")
        if record.status == AirdropStatusEnum.cancelled and status != AirdropStatusEnum.cancelled:
            raise InvalidTransition(f"Airdrop {airdrop_id} is cancelled")
        old = record.status
        return self._transition_status(airdrop_id, status, f"Status changed from {old.value} to {status.value}",
                                       by, details, from_statuses=[old])

    # ================= 维护 =================
    def run_maintenance(self, result=None, now=None):
        now = now or utcnow()
        result = result if result is not None else SyncResult()
        steps = (
            ('expire', self.expire_records),
            ('liveness', self.check_liveness),
            ('retention', self.retention_sweep),
        )
        for name, step in steps:
            try:
                count = step(now)
                logger.info(f"[maintenance] {name}: {count}")
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"[maintenance] {name} failed: {e}")
                result.errors.append(f"Maintenance {name} failed: {e}")

        try:
            result.statistics = self.update_statistics()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"[maintenance] statistics failed: {e}")
        return result

    def expire_records(self, now=None):
        now = now or utcnow()
        expired_ids = [row.id for row in db.session.query(Airdrop.id).filter(
            Airdrop.status.in_(OPEN_STATUSES),
            db.or_(Airdrop.end_date < now, Airdrop.claim_deadline < now),
        ).all()]

        count = 0
        for airdrop_id in expired_ids:
            if self._transition_status(airdrop_id, AirdropStatusEnum.ended, 'Airdrop expired', 'system',
                                       'End date or claim deadline passed', from_statuses=OPEN_STATUSES):
                count += 1
        return count

    def check_liveness(self, now=None):
        now = now or utcnow()
        rows = db.session.query(Airdrop.id, Airdrop.contract_address, Airdrop.blockchain).filter(
            Airdrop.status.in_(OPEN_STATUSES),
            Airdrop.contract_address.isnot(None),
        ).all()

        count = 0
        for airdrop_id, address, blockchain in rows:
            try:
                active = self.probe.is_airdrop_active(address, blockchain, now=now)
            except AirdropSyncError as e:
                logger.warning(f"[maintenance] liveness check failed for {address}: {e}")
                continue
            # None：链不可达，结果未知，跳过
            if active is None or active:
                continue
            if self._transition_status(airdrop_id, AirdropStatusEnum.ended, 'Airdrop marked inactive', 'system',
                                       f"No claim function or activity for contract {address}",
                                       from_statuses=OPEN_STATUSES):
                count += 1
                logger.info(f"[maintenance] airdrop {airdrop_id} marked inactive")
        return count

    def retention_sweep(self, now=None):
        """删除 ended + unverified + 长期未验证 + 低浏览量 的记录；有用户 claim 的不删"""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.retention_days)
        stale = Airdrop.query.filter(
            Airdrop.status == AirdropStatusEnum.ended,
            Airdrop.verification_level == VerificationLevelEnum.unverified,
            Airdrop.last_verified < cutoff,
            Airdrop.views < self.retention_min_views,
            Airdrop.id.not_in(db.select(UserClaim.airdrop_id)),
        ).all()

        for record in stale:
            db.session.delete(record)
        db.session.commit()
        return len(stale)

    def update_statistics(self):
        by_status = db.session.query(Airdrop.status, func.count(Airdrop.id)).group_by(Airdrop.status).all()
        by_chain = db.session.query(Airdrop.blockchain, func.count(Airdrop.id)).group_by(Airdrop.blockchain).all()
        values = db.session.query(Airdrop.total_value).filter(Airdrop.total_value.isnot(None)).all()

        stats = {
            "total": sum(count for _, count in by_status),
            "by_status": {status.value: count for status, count in by_status},
            "by_blockchain": {chain: count for chain, count in by_chain},
            "total_value": sum(parse_value(v) for (v,) in values),
            "generated_at": utcnow().isoformat(),
        }
        self._statistics = stats
        logger.info(f"[maintenance] statistics: {stats}")
        return stats

    def get_statistics(self):
        return self.update_statistics()

    # ================= 事件驱动 =================
    def handle_event(self, event):
        if event.type == EventType.claim_opened:
            return self.open_claim(event)
        if event.type == EventType.claim_activity:
            return self.touch_activity(event)
        if event.type in (EventType.new_airdrop, EventType.contract_deployed) or \
                (event.type == EventType.token_transfer and event.possible_airdrop):
            return self.process_detected_airdrop(event)
        logger.debug(f"[event] ignored {event.type.value} for {event.contract_address}")
        return None

    def process_detected_airdrop(self, event):
        existing = self.touch_activity(event)
        if existing is not None:
            return existing

        address = (event.contract_address or '').lower()

        # 先探测，无效合约直接丢弃
        info = self.probe.verify(address, event.blockchain)
        if not info.is_valid:
            logger.info(f"[event] dropped {event.type.value} for invalid contract {address}")
            return None

        candidate = AirdropCandidate(
            name=info.name or f"Token {address[:8]}",
            symbol=info.symbol or 'UNKNOWN',
            contract_address=address,
            token_address=event.token_address or address,
            blockchain=event.blockchain,
            description=f"Airdrop automatically detected on {event.blockchain}",
            status='active',
            source='monitoring',
        )
        record, created = self.create_record(candidate)
        self.apply_contract_info(record.id, info)
        if created:
            logger.info(f"[event] created airdrop {candidate.name} from {event.type.value}")
        return record

    def touch_activity(self, event):
        """已有记录只刷新 last_activity；没有记录返回 None"""
        address = (event.contract_address or '').lower()
        record = Airdrop.query.filter_by(contract_address=address, blockchain=event.blockchain).first()
        if record is None:
            return None
        Airdrop.query.filter_by(id=record.id).update({'last_activity': event.timestamp}, synchronize_session=False)
        db.session.commit()
        return record

    def open_claim(self, event):
        """链上 ClaimOpened 视为权威信号，直接置为 active（可覆盖过期）"""
        address = (event.contract_address or '').lower()
        record = Airdrop.query.filter_by(contract_address=address, blockchain=event.blockchain).first()
        if record is None:
            logger.info(f"[event] claim opened for unknown contract {address}")
            return None
        if self._transition_status(record.id, AirdropStatusEnum.active, 'Claim opened on-chain', 'monitoring',
                                   f"tx {event.transaction_hash}"):
            logger.info(f"[event] airdrop {record.id} set active by claim opened")
        return record

    def process_pending_events(self, max_events=None):
        """同步消费队列中已有的事件（消费线程和测试共用）"""
        processed = 0
        while max_events is None or processed < max_events:
            try:
                event = self.monitor.events.get_nowait()
            except queue.Empty:
                break
            self._dispatch(event)
            processed += 1
        return processed

    def _dispatch(self, event):
        try:
            self.handle_event(event)
        except Exception as e:
            db.session.rollback()
            logger.error(f"[event] failed handling {event.type.value} {event.contract_address}: {e}")
            traceback.print_exc()
        finally:
            self.monitor.events.task_done()

    def _consume_events(self):
        while not self._consumer_stop.is_set():
            try:
                event = self.monitor.events.get(timeout=1)
            except queue.Empty:
                continue
            with self.app.app_context():
                self._dispatch(event)

    # ================= 记录级操作 =================
    def increment_views(self, airdrop_id):
        updated = Airdrop.query.filter_by(id=airdrop_id).update({Airdrop.views: Airdrop.views + 1},
                                                                synchronize_session=False)
        if not updated:
            db.session.rollback()
            raise RecordNotFound(f"Airdrop {airdrop_id} not found")
        db.session.commit()

    def record_claim(self, airdrop_id, wallet_address, amount, tx_hash=None, claim_date=None):
        wallet = wallet_address.lower()
        amount = int(amount)
        if amount < 0:
            raise ValueError("claim amount must be non-negative")

        # 行锁，保证 top_claimers / 总额在并发下不丢更新
        record = Airdrop.query.filter_by(id=airdrop_id).with_for_update().first()
        if record is None:
            raise RecordNotFound(f"Airdrop {airdrop_id} not found")

        now = utcnow()
        claim = UserClaim(
            wallet_address=wallet,
            airdrop_id=airdrop_id,
            claimed=True,
            claim_tx_hash=tx_hash,
            claim_date=claim_date or now,
            claim_amount=str(amount),
            blockchain=record.blockchain,
        )
        db.session.add(claim)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateKey(f"Wallet {wallet} already claimed airdrop {airdrop_id}")

        successful = (record.successful_claims or 0) + 1
        total = int(record.total_value_claimed or '0') + amount
        top = list(record.top_claimers or [])
        top.append({'address': wallet, 'amount': str(amount), 'date': claim.claim_date.isoformat()})
        top.sort(key=lambda c: int(c['amount']), reverse=True)

        Airdrop.query.filter_by(id=airdrop_id).update({
            Airdrop.claims: Airdrop.claims + 1,
            Airdrop.successful_claims: Airdrop.successful_claims + 1,
            Airdrop.claimed_users: Airdrop.claimed_users + 1,
            Airdrop.total_value_claimed: str(total),
            Airdrop.average_claim_value: str(total // successful),
            Airdrop.top_claimers: top[:TOP_CLAIMERS_LIMIT],
        }, synchronize_session=False)
        db.session.add(VerificationEvent(
            airdrop_id=airdrop_id,
            date=now,
            action='Claim recorded',
            by=wallet,
            details=f"amount={amount} tx={tx_hash}",
        ))
        db.session.commit()
        logger.info(f"[claim] {wallet} claimed {amount} from airdrop {airdrop_id}")
        return claim

    def update_verification_level(self, airdrop_id, level, by='admin', details=None):
        """人工调整等级，任意方向，必写历史"""
        level = VerificationLevelEnum(level)
        record = db.session.get(Airdrop, airdrop_id)
        if record is None:
            raise RecordNotFound(f"Airdrop {airdrop_id} not found")
        old = record.verification_level
        if old == level:
            return False

        now = utcnow()
        updated = Airdrop.query.filter(
            Airdrop.id == airdrop_id,
            Airdrop.verification_level == old,
        ).update({'verification_level': level, 'last_verified': now}, synchronize_session=False)
        if not updated:
            db.session.rollback()
            raise InvalidTransition(f"Verification level of airdrop {airdrop_id} changed concurrently")

        db.session.add(VerificationEvent(
            airdrop_id=airdrop_id,
            date=now,
            action=f"Verification level changed from {old.value} to {level.value}",
            by=by,
            details=details,
        ))
        db.session.commit()
        logger.info(f"[verify] airdrop {airdrop_id}: {old.value} -> {level.value} by {by}")
        return True

    def add_risk_warning(self, airdrop_id, warning, factor=None, by='admin'):
        """追加风险警告并按警告数重新推导 risk_level"""
        record = Airdrop.query.filter_by(id=airdrop_id).with_for_update().first()
        if record is None:
            raise RecordNotFound(f"Airdrop {airdrop_id} not found")

        warnings = list(record.risk_warnings or [])
        if warning not in warnings:
            warnings.append(warning)
        factors = list(record.risk_factors or [])
        if factor and factor not in factors:
            factors.append(factor)
        level = Airdrop.derive_risk_level(warnings, record.risk_level)

        now = utcnow()
        Airdrop.query.filter_by(id=airdrop_id).update({
            'risk_warnings': warnings,
            'risk_factors': factors,
            'risk_level': level,
        }, synchronize_session=False)
        db.session.add(VerificationEvent(
            airdrop_id=airdrop_id,
            date=now,
            action='Risk warning added',
            by=by,
            details=warning,
        ))
        db.session.commit()
        return level

    # ================= 自动监控 =================
    def start_automatic_monitoring(self):
        if self.monitor is None:
            raise AirdropSyncError("No event monitor configured")
        logger.info("[monitor] starting automatic monitoring...")
        self.monitor.start_monitoring()

        if self._consumer is None or not self._consumer.is_alive():
            self._consumer_stop.clear()
            self._consumer = threading.Thread(target=self._consume_events, name="airdrop-event-consumer",
                                              daemon=True)
            self._consumer.start()

        if self.scheduler is not None:
            from scheduler import sync_job  # 延迟导入
            app = self.app
            self.scheduler.add_job(lambda: sync_job(app), 'interval', hours=self.sync_interval_hours,
                                   id=SYNC_JOB_ID, replace_existing=True)
        logger.info(f"[monitor] automatic monitoring started, sync every {self.sync_interval_hours}h")

    def stop_monitoring(self):
        if self.monitor is not None:
            self.monitor.stop_monitoring()

        self._consumer_stop.set()
        if self._consumer is not None:
            self._consumer.join(timeout=5)
            self._consumer = None

        if self.scheduler is not None:
            try:
                self.scheduler.remove_job(SYNC_JOB_ID)
            except JobLookupError:
                pass
        logger.info("[monitor] automatic monitoring stopped")

    def get_monitoring_stats(self):
        stats = self.monitor.get_monitoring_stats() if self.monitor is not None else {"is_monitoring": False}
        stats["consumer_running"] = self._consumer is not None and self._consumer.is_alive()
        stats["sync_in_progress"] = self.is_sync_in_progress()
        return stats
