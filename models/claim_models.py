from sqlalchemy import UniqueConstraint
from extensions import db
from .airdrop_models import utcnow


class UserClaim(db.Model):
    """每个 (钱包, 空投) 一条，成功提交 claim 时创建，不删除"""
    __tablename__ = 'user_claims'

    id = db.Column(db.Integer, primary_key=True)
    wallet_address = db.Column(db.String(42), nullable=False, index=True)   # 小写
    airdrop_id = db.Column(db.Integer, db.ForeignKey('airdrops.id'), nullable=False)
    claimed = db.Column(db.Boolean, default=False, nullable=False)
    claim_tx_hash = db.Column(db.String(100), nullable=True)
    claim_date = db.Column(db.DateTime, nullable=True)
    claim_amount = db.Column(db.String(78), nullable=False, default='0')
    blockchain = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    airdrop = db.relationship('Airdrop', backref='user_claims')

    __table_args__ = (
        UniqueConstraint('wallet_address', 'airdrop_id', name='uix_wallet_airdrop_claim'),
        db.Index('ix_user_claims_wallet_claimed', 'wallet_address', 'claimed'),
    )

    def __repr__(self):
        return f"<UserClaim {self.wallet_address} airdrop={self.airdrop_id} claimed={self.claimed}>"

    def to_dict(self):
        return {
            "id": self.id,
            "wallet_address": self.wallet_address,
            "airdrop_id": self.airdrop_id,
            "claimed": self.claimed,
            "claim_tx_hash": self.claim_tx_hash,
            "claim_date": self.claim_date.isoformat() if self.claim_date else None,
            "claim_amount": self.claim_amount,
            "blockchain": self.blockchain,
        }
