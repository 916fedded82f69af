"""create airdrop tables

Revision ID: a1f3c9e2b7d4
Revises:
Create Date: 2026-10-17 10:12:41.302114

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'a1f3c9e2b7d4'
down_revision = None
branch_labels = None
depends_on = None

airdrop_status = sa.Enum('upcoming', 'active', 'ended', 'paused', 'cancelled', name='airdropstatusenum')
verification_level = sa.Enum('unverified', 'community', 'official', 'scam', name='verificationlevelenum')
risk_level = sa.Enum('low', 'medium', 'high', 'critical', name='risklevelenum')
source_type = sa.Enum('api', 'scraping', 'monitoring', 'manual', name='sourcetypeenum')
distribution_method = sa.Enum('claim', 'airdrop', 'vesting', 'lottery', name='distributionmethodenum')


def upgrade():
    op.create_table(
        'airdrops',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('symbol', sa.String(length=50), nullable=False),
        sa.Column('contract_address', sa.String(length=66), nullable=True),
        sa.Column('token_address', sa.String(length=66), nullable=True),
        sa.Column('blockchain', sa.String(length=20), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('website', sa.String(length=255), nullable=True),
        sa.Column('twitter', sa.String(length=255), nullable=True),
        sa.Column('discord', sa.String(length=255), nullable=True),
        sa.Column('telegram', sa.String(length=255), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('claim_deadline', sa.DateTime(), nullable=True),
        sa.Column('total_value', sa.String(length=64), nullable=True),
        sa.Column('total_tokens', sa.String(length=78), nullable=True),
        sa.Column('eligible_users', sa.Integer(), nullable=False),
        sa.Column('claimed_users', sa.Integer(), nullable=False),
        sa.Column('requirements', sa.JSON(), nullable=True),
        sa.Column('status', airdrop_status, nullable=False),
        sa.Column('verification_level', verification_level, nullable=False),
        sa.Column('distribution_method', distribution_method, nullable=False),
        sa.Column('contract_verified', sa.Boolean(), nullable=False),
        sa.Column('has_claim_function', sa.Boolean(), nullable=False),
        sa.Column('contract_owner', sa.String(length=66), nullable=True),
        sa.Column('contract_deployer', sa.String(length=66), nullable=True),
        sa.Column('last_activity', sa.DateTime(), nullable=True),
        sa.Column('audit_reports', sa.JSON(), nullable=True),
        sa.Column('social_metrics', sa.JSON(), nullable=True),
        sa.Column('risk_level', risk_level, nullable=False),
        sa.Column('risk_factors', sa.JSON(), nullable=True),
        sa.Column('risk_warnings', sa.JSON(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('added_by', sa.String(length=20), nullable=False),
        sa.Column('added_at', sa.DateTime(), nullable=False),
        sa.Column('last_verified', sa.DateTime(), nullable=False),
        sa.Column('views', sa.Integer(), nullable=False),
        sa.Column('claims', sa.Integer(), nullable=False),
        sa.Column('successful_claims', sa.Integer(), nullable=False),
        sa.Column('total_value_claimed', sa.String(length=78), nullable=False),
        sa.Column('average_claim_value', sa.String(length=78), nullable=False),
        sa.Column('top_claimers', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('contract_address', 'blockchain', name='uix_airdrop_contract_chain'),
    )
    with op.batch_alter_table('airdrops', schema=None) as batch_op:
        batch_op.create_index('ix_airdrops_name', ['name'], unique=False)
        batch_op.create_index('ix_airdrops_symbol', ['symbol'], unique=False)
        batch_op.create_index('ix_airdrops_contract_address', ['contract_address'], unique=False)
        batch_op.create_index('ix_airdrops_token_address', ['token_address'], unique=False)
        batch_op.create_index('ix_airdrops_end_date', ['end_date'], unique=False)
        batch_op.create_index('ix_airdrops_status', ['status'], unique=False)
        batch_op.create_index('ix_airdrops_verification_level', ['verification_level'], unique=False)
        batch_op.create_index('ix_airdrops_added_at', ['added_at'], unique=False)
        batch_op.create_index('ix_airdrops_chain_status', ['blockchain', 'status'], unique=False)
        batch_op.create_index('ix_airdrops_level_status', ['verification_level', 'status'], unique=False)

    op.create_table(
        'airdrop_sources',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('airdrop_id', sa.Integer(), nullable=False),
        sa.Column('source_type', source_type, nullable=False),
        sa.Column('url', sa.String(length=500), nullable=False),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.Column('confidence', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['airdrop_id'], ['airdrops.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('airdrop_id', 'url', name='uix_airdrop_source_url'),
    )

    op.create_table(
        'verification_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('airdrop_id', sa.Integer(), nullable=False),
        sa.Column('date', sa.DateTime(), nullable=False),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('by', sa.String(length=64), nullable=False),
        sa.Column('details', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['airdrop_id'], ['airdrops.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('verification_history', schema=None) as batch_op:
        batch_op.create_index('ix_verification_history_airdrop_id', ['airdrop_id'], unique=False)

    op.create_table(
        'user_claims',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('wallet_address', sa.String(length=42), nullable=False),
        sa.Column('airdrop_id', sa.Integer(), nullable=False),
        sa.Column('claimed', sa.Boolean(), nullable=False),
        sa.Column('claim_tx_hash', sa.String(length=100), nullable=True),
        sa.Column('claim_date', sa.DateTime(), nullable=True),
        sa.Column('claim_amount', sa.String(length=78), nullable=False),
        sa.Column('blockchain', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['airdrop_id'], ['airdrops.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('wallet_address', 'airdrop_id', name='uix_wallet_airdrop_claim'),
    )
    with op.batch_alter_table('user_claims', schema=None) as batch_op:
        batch_op.create_index('ix_user_claims_wallet_address', ['wallet_address'], unique=False)
        batch_op.create_index('ix_user_claims_wallet_claimed', ['wallet_address', 'claimed'], unique=False)


def downgrade():
    with op.batch_alter_table('user_claims', schema=None) as batch_op:
        batch_op.drop_index('ix_user_claims_wallet_claimed')
        batch_op.drop_index('ix_user_claims_wallet_address')
    op.drop_table('user_claims')

    with op.batch_alter_table('verification_history', schema=None) as batch_op:
        batch_op.drop_index('ix_verification_history_airdrop_id')
    op.drop_table('verification_history')

    op.drop_table('airdrop_sources')

    with op.batch_alter_table('airdrops', schema=None) as batch_op:
        batch_op.drop_index('ix_airdrops_level_status')
        batch_op.drop_index('ix_airdrops_chain_status')
        batch_op.drop_index('ix_airdrops_added_at')
        batch_op.drop_index('ix_airdrops_verification_level')
        batch_op.drop_index('ix_airdrops_status')
        batch_op.drop_index('ix_airdrops_end_date')
        batch_op.drop_index('ix_airdrops_token_address')
        batch_op.drop_index('ix_airdrops_contract_address')
        batch_op.drop_index('ix_airdrops_symbol')
        batch_op.drop_index('ix_airdrops_name')
    op.drop_table('airdrops')

    for enum in (distribution_method, source_type, risk_level, verification_level, airdrop_status):
        enum.drop(op.get_bind(), checkfirst=True)
