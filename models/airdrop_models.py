from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import UniqueConstraint
from extensions import db


def utcnow():
    # 数据库统一存 naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AirdropStatusEnum(Enum):
    upcoming = "upcoming"
    active = "active"
    ended = "ended"
    paused = "paused"
    cancelled = "cancelled"


class VerificationLevelEnum(Enum):
    unverified = "unverified"
    community = "community"
    official = "official"
    scam = "scam"        # 终态覆盖


class RiskLevelEnum(Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class SourceTypeEnum(Enum):
    api = "api"
    scraping = "scraping"
    monitoring = "monitoring"
    manual = "manual"


class DistributionMethodEnum(Enum):
    claim = "claim"
    airdrop = "airdrop"
    vesting = "vesting"
    lottery = "lottery"


# 仍处于"进行中"的状态，过期 / 失活检查只作用于这两个
OPEN_STATUSES = (AirdropStatusEnum.active, AirdropStatusEnum.upcoming)


def parse_value(raw):
    """'$1,200,000' -> 1200000.0，解析失败返回 0"""
    if raw is None:
        return 0.0
    try:
        return float(str(raw).replace(',', '').replace('$', '').strip() or 0)
    except ValueError:
        return 0.0


class Airdrop(db.Model):
    """
    规范化空投记录（verified schema），legacy schema 通过 to_legacy_dict() 兼容输出
    """
    __tablename__ = 'airdrops'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    symbol = db.Column(db.String(50), nullable=False, index=True)
    contract_address = db.Column(db.String(66), nullable=True, index=True)  # 小写；为空时存 NULL，避免唯一约束冲突
    token_address = db.Column(db.String(66), nullable=True, index=True)
    blockchain = db.Column(db.String(20), nullable=False, default='ethereum')
    description = db.Column(db.Text, nullable=False)

    website = db.Column(db.String(255))
    twitter = db.Column(db.String(255))
    discord = db.Column(db.String(255))
    telegram = db.Column(db.String(255))

    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True, index=True)
    claim_deadline = db.Column(db.DateTime, nullable=True)

    total_value = db.Column(db.String(64))
    total_tokens = db.Column(db.String(78))
    eligible_users = db.Column(db.Integer, default=0, nullable=False)
    claimed_users = db.Column(db.Integer, default=0, nullable=False)
    requirements = db.Column(db.JSON, default=dict)  # whitelist_only / kyc / min_balance ...

    status = db.Column(db.Enum(AirdropStatusEnum), default=AirdropStatusEnum.upcoming, nullable=False, index=True)
    verification_level = db.Column(db.Enum(VerificationLevelEnum), default=VerificationLevelEnum.unverified,
                                   nullable=False, index=True)
    distribution_method = db.Column(db.Enum(DistributionMethodEnum), default=DistributionMethodEnum.claim,
                                    nullable=False)

    # contractInfo
    contract_verified = db.Column(db.Boolean, default=False, nullable=False)
    has_claim_function = db.Column(db.Boolean, default=False, nullable=False)
    contract_owner = db.Column(db.String(66))
    contract_deployer = db.Column(db.String(66))
    last_activity = db.Column(db.DateTime, nullable=True)
    audit_reports = db.Column(db.JSON, default=list)

    social_metrics = db.Column(db.JSON, default=dict)

    # risks：level 由 warnings 数量推导，见 derive_risk_level
    risk_level = db.Column(db.Enum(RiskLevelEnum), default=RiskLevelEnum.medium, nullable=False)
    risk_factors = db.Column(db.JSON, default=list)
    risk_warnings = db.Column(db.JSON, default=list)

    tags = db.Column(db.JSON, default=list)

    # metadata
    added_by = db.Column(db.String(20), default='system', nullable=False)
    added_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    last_verified = db.Column(db.DateTime, default=utcnow, nullable=False)

    # analytics（计数只增不减）
    views = db.Column(db.Integer, default=0, nullable=False)
    claims = db.Column(db.Integer, default=0, nullable=False)
    successful_claims = db.Column(db.Integer, default=0, nullable=False)
    total_value_claimed = db.Column(db.String(78), default='0', nullable=False)
    average_claim_value = db.Column(db.String(78), default='0', nullable=False)
    top_claimers = db.Column(db.JSON, default=list)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    sources = db.relationship('AirdropSource', backref='airdrop', cascade='all, delete-orphan',
                              order_by='AirdropSource.id')
    verification_history = db.relationship('VerificationEvent', backref='airdrop', cascade='all, delete-orphan',
                                           order_by='VerificationEvent.id')

    __table_args__ = (
        UniqueConstraint('contract_address', 'blockchain', name='uix_airdrop_contract_chain'),
        db.Index('ix_airdrops_chain_status', 'blockchain', 'status'),
        db.Index('ix_airdrops_level_status', 'verification_level', 'status'),
    )

    def __repr__(self):
        return f"<Airdrop {self.name} ({self.symbol}) {self.blockchain} {self.status.value if self.status else None}>"

    # ---------------- 派生属性 ----------------
    @staticmethod
    def derive_risk_level(warnings, current):
        """warnings >=3 -> high，>=2 -> medium，否则保持原值"""
        count = len(warnings or [])
        if count >= 3:
            return RiskLevelEnum.high
        if count >= 2:
            return RiskLevelEnum.medium
        return current or RiskLevelEnum.medium

    def is_active(self, now=None):
        now = now or utcnow()
        return (self.status == AirdropStatusEnum.active
                and (self.end_date is None or self.end_date > now)
                and (self.claim_deadline is None or self.claim_deadline > now))

    def days_until_expiry(self, now=None):
        expiry = self.claim_deadline or self.end_date
        if expiry is None:
            return None
        now = now or utcnow()
        seconds = (expiry - now).total_seconds()
        if seconds <= 0:
            return 0
        return int(-(-seconds // 86400))

    @property
    def claim_rate(self):
        if not self.eligible_users:
            return 0
        return (self.claimed_users or 0) / self.eligible_users * 100

    @property
    def risk_score(self):
        score = 50

        # 降低风险的因素
        if self.contract_verified:
            score -= 20
        if self.verification_level == VerificationLevelEnum.official:
            score -= 25
        if self.audit_reports:
            score -= 15
        if (self.social_metrics or {}).get('twitter_followers', 0) > 10000:
            score -= 5
        if len(self.sources) > 2:
            score -= 5

        # 增加风险的因素
        if self.verification_level == VerificationLevelEnum.unverified:
            score += 30
        if not self.has_claim_function:
            score += 20
        if self.risk_level == RiskLevelEnum.high:
            score += 25
        if self.risk_level == RiskLevelEnum.critical:
            score += 40
        if not self.website:
            score += 10

        return max(0, min(100, score))

    def generate_auto_tags(self):
        tags = [self.blockchain, self.distribution_method.value]

        if self.verification_level == VerificationLevelEnum.official:
            tags.append('verified')
        if self.contract_verified:
            tags.append('contract-verified')

        requirements = self.requirements or {}
        if requirements.get('kyc'):
            tags.append('kyc-required')
        if requirements.get('whitelist_only'):
            tags.append('whitelist-only')

        if self.total_value:
            value = parse_value(self.total_value)
            if value > 1000000:
                tags.append('high-value')
            elif value > 100000:
                tags.append('medium-value')
            else:
                tags.append('low-value')

        tags.append(self.status.value)
        # 去重并保持顺序
        return list(dict.fromkeys(tags))

    # ---------------- 序列化 ----------------
    def to_dict(self):
        def iso(dt):
            return dt.isoformat() if dt else None

        return {
            "id": self.id,
            "name": self.name,
            "symbol": self.symbol,
            "contract_address": self.contract_address or '',
            "token_address": self.token_address or '',
            "blockchain": self.blockchain,
            "description": self.description,
            "website": self.website,
            "twitter": self.twitter,
            "discord": self.discord,
            "telegram": self.telegram,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "claim_deadline": iso(self.claim_deadline),
            "total_value": self.total_value,
            "status": self.status.value,
            "verification_level": self.verification_level.value,
            "distribution_method": self.distribution_method.value,
            "sources": [s.to_dict() for s in self.sources],
            "contract_info": {
                "verified": self.contract_verified,
                "has_claim_function": self.has_claim_function,
                "owner": self.contract_owner,
                "deployer": self.contract_deployer,
                "last_activity": iso(self.last_activity),
                "audit_reports": self.audit_reports or [],
            },
            "risks": {
                "level": self.risk_level.value,
                "factors": self.risk_factors or [],
                "warnings": self.risk_warnings or [],
                "score": self.risk_score,
            },
            "tags": self.tags or [],
            "metadata": {
                "added_by": self.added_by,
                "added_at": iso(self.added_at),
                "last_verified": iso(self.last_verified),
                "verification_history": [h.to_dict() for h in self.verification_history],
            },
            "analytics": {
                "views": self.views,
                "claims": self.claims,
                "successful_claims": self.successful_claims,
                "total_value_claimed": self.total_value_claimed,
                "average_claim_value": self.average_claim_value,
                "top_claimers": self.top_claimers or [],
            },
            "is_active": self.is_active(),
            "days_until_expiry": self.days_until_expiry(),
            "claim_rate": self.claim_rate,
        }

    def to_legacy_dict(self):
        """旧版 API 的精简字段视图"""
        return {
            "id": self.id,
            "name": self.name,
            "tokenSymbol": self.symbol,
            "tokenAddress": self.token_address or self.contract_address or '',
            "contractAddress": self.contract_address or '',
            "blockchain": self.blockchain,
            "description": self.description,
            "totalSupply": self.total_tokens or '0',
            "claimFunction": 'claim',
            "isActive": self.status == AirdropStatusEnum.active,
            "expirationDate": self.end_date.isoformat() if self.end_date else None,
            "requirements": {
                "minBalance": (self.requirements or {}).get('min_balance'),
                "whitelisted": bool((self.requirements or {}).get('whitelist_only')),
            },
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    # ---------------- 查询 ----------------
    @classmethod
    def find_active(cls, now=None):
        now = now or utcnow()
        return cls.query.filter(
            cls.status == AirdropStatusEnum.active,
            db.or_(cls.end_date.is_(None), cls.end_date > now),
            db.or_(cls.claim_deadline.is_(None), cls.claim_deadline > now),
        ).order_by(cls.added_at.desc())

    @classmethod
    def find_by_blockchain(cls, blockchain):
        return cls.query.filter_by(blockchain=blockchain).order_by(cls.added_at.desc())

    @classmethod
    def find_by_verification_level(cls, level):
        return cls.query.filter_by(verification_level=VerificationLevelEnum(level)).order_by(cls.added_at.desc())

    @classmethod
    def find_high_value(cls, min_value=100000):
        # total_value 是展示字符串，只能在 Python 侧比较
        candidates = cls.query.filter(
            cls.total_value.isnot(None),
            cls.status.in_(OPEN_STATUSES),
        ).all()
        return [a for a in candidates if parse_value(a.total_value) >= min_value]

    @classmethod
    def search(cls, text, **filters):
        pattern = f"%{text.strip()}%"
        query = cls.query.filter(db.or_(
            cls.name.ilike(pattern),
            cls.symbol.ilike(pattern),
            cls.description.ilike(pattern),
        ))
        if filters:
            query = query.filter_by(**filters)
        return query.order_by(cls.added_at.desc())


class AirdropSource(db.Model):
    """来源记录：只追加，不修改"""
    __tablename__ = 'airdrop_sources'

    id = db.Column(db.Integer, primary_key=True)
    airdrop_id = db.Column(db.Integer, db.ForeignKey('airdrops.id', ondelete='CASCADE'), nullable=False)
    source_type = db.Column(db.Enum(SourceTypeEnum), nullable=False)
    url = db.Column(db.String(500), nullable=False)
    last_updated = db.Column(db.DateTime, default=utcnow, nullable=False)
    confidence = db.Column(db.Integer, default=50, nullable=False)  # 0-100

    __table_args__ = (
        UniqueConstraint('airdrop_id', 'url', name='uix_airdrop_source_url'),
    )

    def to_dict(self):
        return {
            "type": self.source_type.value,
            "url": self.url,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "confidence": self.confidence,
        }


class VerificationEvent(db.Model):
    """metadata.verificationHistory：状态 / 等级变更审计日志，只追加"""
    __tablename__ = 'verification_history'

    id = db.Column(db.Integer, primary_key=True)
    airdrop_id = db.Column(db.Integer, db.ForeignKey('airdrops.id', ondelete='CASCADE'), nullable=False, index=True)
    date = db.Column(db.DateTime, default=utcnow, nullable=False)
    action = db.Column(db.String(255), nullable=False)
    by = db.Column(db.String(64), nullable=False)
    details = db.Column(db.Text)

    def to_dict(self):
        return {
            "date": self.date.isoformat() if self.date else None,
            "action": self.action,
            "by": self.by,
            "details": self.details,
        }


