"""Initial schema

Revision ID: 001
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'price_samples',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('origin', sa.String(8), nullable=False),
        sa.Column('destination', sa.String(8), nullable=False),
        sa.Column('price', sa.Numeric(14, 4), nullable=False),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_price_samples_route', 'price_samples', ['origin', 'destination', 'observed_at'])
    op.create_index('ix_price_samples_observed_at', 'price_samples', ['observed_at'])

    op.create_table(
        'flight_deals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('deal_id', sa.String(80), nullable=False),
        sa.Column('origin', sa.String(8), nullable=False),
        sa.Column('destination', sa.String(8), nullable=False),
        sa.Column('destination_name', sa.String(128)),
        sa.Column('departure_date', sa.Date()),
        sa.Column('return_date', sa.Date()),
        sa.Column('price', sa.Numeric(14, 4), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('discount_percent', sa.Integer(), nullable=False),
        sa.Column('average_price', sa.Numeric(14, 4), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('is_last_minute', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_provisional', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deep_link', sa.String(1024)),
        sa.Column('airline', sa.String(128)),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('origin', 'destination', 'departure_date', name='uix_deal_route_departure'),
    )
    op.create_index('ix_flight_deals_deal_id', 'flight_deals', ['deal_id'])
    op.create_index('ix_flight_deals_origin', 'flight_deals', ['origin'])
    op.create_index('ix_flight_deals_destination', 'flight_deals', ['destination'])
    op.create_index('ix_flight_deals_expires_at', 'flight_deals', ['expires_at'])

    op.create_table(
        'deal_cache_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cache_key', sa.String(128), nullable=False, unique=True),
        sa.Column('origin', sa.String(8)),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('written_at', sa.DateTime(), nullable=False),
        sa.Column('ttl_seconds', sa.Integer(), nullable=False),
    )
    op.create_index('ix_deal_cache_entries_origin', 'deal_cache_entries', ['origin'])

    op.create_table(
        'signal_usage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('identity_id', sa.String(128), nullable=False, unique=True),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_used_at', sa.DateTime()),
        sa.Column('last_used_at', sa.DateTime()),
    )

    op.create_table(
        'deal_alerts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('origin', sa.String(8), nullable=False),
        sa.Column('destination', sa.String(8), nullable=False, server_default='ANYWHERE'),
        sa.Column('date_type', sa.Enum('FLEXIBLE', 'SPECIFIC', name='alertdatetype'), nullable=False),
        sa.Column('start_date', sa.Date()),
        sa.Column('end_date', sa.Date()),
        sa.Column('max_price', sa.Numeric(14, 4)),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_checked_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_deal_alerts_user_id', 'deal_alerts', ['user_id'])
    op.create_index('ix_deal_alerts_origin', 'deal_alerts', ['origin'])


def downgrade():
    op.drop_table('deal_alerts')
    op.execute("DROP TYPE IF EXISTS alertdatetype")
    op.drop_table('signal_usage')
    op.drop_table('deal_cache_entries')
    op.drop_table('flight_deals')
    op.drop_table('price_samples')
