"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Canonical catalog
    op.create_table(
        'canonical_skus',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('natural_key', sa.String(length=255), nullable=False),
        sa.Column('caliber', sa.String(length=64), nullable=False),
        sa.Column('brand', sa.String(length=128), nullable=False),
        sa.Column('grain_weight', sa.Integer(), nullable=True),
        sa.Column('pack_size', sa.Integer(), nullable=True),
        sa.Column('upc', sa.String(length=13), nullable=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('provenance', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('natural_key')
    )
    op.create_index('ix_canonical_skus_upc', 'canonical_skus', ['upc'])
    op.create_index('ix_canonical_skus_caliber_brand', 'canonical_skus', ['caliber', 'brand'])

    # Retailer listings
    op.create_table(
        'retailer_skus',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('retailer_id', sa.String(length=64), nullable=False),
        sa.Column('feed_id', sa.String(length=64), nullable=False),
        sa.Column('feed_run_id', sa.String(length=64), nullable=False),
        sa.Column('sku_hash', sa.String(length=32), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('raw_title', sa.Text(), nullable=False),
        sa.Column('raw_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('raw_upc', sa.String(length=32), nullable=True),
        sa.Column('raw_sku', sa.String(length=128), nullable=True),
        sa.Column('raw_brand', sa.String(length=128), nullable=True),
        sa.Column('raw_caliber', sa.String(length=64), nullable=True),
        sa.Column('raw_grain', sa.Integer(), nullable=True),
        sa.Column('raw_pack_size', sa.Integer(), nullable=True),
        sa.Column('raw_in_stock', sa.Boolean(), nullable=True),
        sa.Column('raw_url', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('canonical_sku_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['canonical_sku_id'], ['canonical_skus.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('retailer_id', 'sku_hash', name='uq_retailer_sku_hash')
    )
    op.create_index('ix_retailer_skus_feed_id', 'retailer_skus', ['feed_id'])
    op.create_index('ix_retailer_skus_canonical_sku_id', 'retailer_skus', ['canonical_sku_id'])

    # Quarantine
    op.create_table(
        'quarantined_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('retailer_id', sa.String(length=64), nullable=False),
        sa.Column('feed_id', sa.String(length=64), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('match_key', sa.String(length=32), nullable=False),
        sa.Column('raw_data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('parsed_fields', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('blocking_issues', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('resolved_upc', sa.String(length=13), nullable=True),
        sa.Column('retailer_sku_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['retailer_sku_id'], ['retailer_skus.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('feed_id', 'match_key', name='uq_quarantine_feed_match_key')
    )

    # Benchmarks
    op.create_table(
        'benchmarks',
        sa.Column('canonical_sku_id', sa.Integer(), nullable=False),
        sa.Column('min_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('median_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('max_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('avg_price', sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column('seller_count', sa.Integer(), nullable=False),
        sa.Column('data_points', sa.Integer(), nullable=False),
        sa.Column('confidence', sa.String(length=8), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=True),
        sa.Column('computed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['canonical_sku_id'], ['canonical_skus.id']),
        sa.PrimaryKeyConstraint('canonical_sku_id')
    )

    # Insights
    op.create_table(
        'insights',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('retailer_sku_id', sa.Integer(), nullable=False),
        sa.Column('retailer_id', sa.String(length=64), nullable=False),
        sa.Column('canonical_sku_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('severity', sa.String(length=8), nullable=False),
        sa.Column('retailer_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('market_median', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('deviation', sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('run_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['retailer_sku_id'], ['retailer_skus.id']),
        sa.ForeignKeyConstraint(['canonical_sku_id'], ['canonical_skus.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('retailer_sku_id', 'canonical_sku_id', 'type', name='uq_insight_triple')
    )

    # Feed runs
    op.create_table(
        'feed_runs',
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('retailer_id', sa.String(length=64), nullable=False),
        sa.Column('feed_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('feed_health', sa.String(length=8), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=True),
        sa.Column('skipped_unchanged', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('total_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('indexable_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('quarantined_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rejected_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deactivated_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('matched_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('auto_created_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('benchmark_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('insight_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stage_metrics', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('error_codes', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('failed_stage', sa.String(length=16), nullable=True),
        sa.Column('last_committed_batch', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('run_id')
    )
    op.create_index('ix_feed_runs_feed_id', 'feed_runs', ['feed_id'])


def downgrade() -> None:
    op.drop_index('ix_feed_runs_feed_id', table_name='feed_runs')
    op.drop_table('feed_runs')
    op.drop_table('insights')
    op.drop_table('benchmarks')
    op.drop_table('quarantined_records')
    op.drop_index('ix_retailer_skus_canonical_sku_id', table_name='retailer_skus')
    op.drop_index('ix_retailer_skus_feed_id', table_name='retailer_skus')
    op.drop_table('retailer_skus')
    op.drop_index('ix_canonical_skus_caliber_brand', table_name='canonical_skus')
    op.drop_index('ix_canonical_skus_upc', table_name='canonical_skus')
    op.drop_table('canonical_skus')
