"""Add CAPI pipeline tables (events, touchpoints, tenant settings).

Revision ID: 20261016_000001
Revises:
Create Date: 2026-10-16 00:00:00.000000

WHAT:
    Creates:
    - capi_events: idempotent delivery queue, unique on (tenant_id, event_id)
    - capi_touchpoints: session attribution cache, unique on (tenant_id, session_id)
    - capi_tenant_settings: per-tenant Meta pixel id / token / test event code

WHY:
    The unique constraints are what make ingestion upserts idempotent; the
    (tenant_id, status, created_at) index serves claim_batch.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261016_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'capi_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('event_name', sa.String(), nullable=False),
        sa.Column('event_time', sa.DateTime(), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('action_source', sa.String(), nullable=False, server_default='website'),
        sa.Column('event_source_url', sa.Text(), nullable=True),
        sa.Column('touchpoint_id', sa.Uuid(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='queued'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('claim_token', sa.String(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('tenant_id', 'event_id', name='uq_capi_event_tenant_event'),
    )
    op.create_index('ix_capi_events_tenant_id', 'capi_events', ['tenant_id'])
    op.create_index('ix_capi_events_claim_token', 'capi_events', ['claim_token'])
    op.create_index('ix_capi_events_claim', 'capi_events', ['tenant_id', 'status', 'created_at'])

    op.create_table(
        'capi_touchpoints',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('utm_source', sa.String(), nullable=True),
        sa.Column('utm_medium', sa.String(), nullable=True),
        sa.Column('utm_campaign', sa.String(), nullable=True),
        sa.Column('utm_content', sa.String(), nullable=True),
        sa.Column('utm_term', sa.String(), nullable=True),
        sa.Column('click_id_primary', sa.String(), nullable=True),
        sa.Column('click_id_secondary', sa.String(), nullable=True),
        sa.Column('landing_url', sa.Text(), nullable=True),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('ip', sa.String(), nullable=True),
        sa.Column('first_seen_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('tenant_id', 'session_id', name='uq_capi_touchpoint_session'),
    )

    op.create_table(
        'capi_tenant_settings',
        sa.Column('tenant_id', sa.Uuid(), primary_key=True),
        sa.Column('meta_pixel_id', sa.String(), nullable=True),
        sa.Column('meta_access_token', sa.Text(), nullable=True),
        sa.Column('meta_test_event_code', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('capi_tenant_settings')
    op.drop_table('capi_touchpoints')
    op.drop_index('ix_capi_events_claim', table_name='capi_events')
    op.drop_index('ix_capi_events_claim_token', table_name='capi_events')
    op.drop_index('ix_capi_events_tenant_id', table_name='capi_events')
    op.drop_table('capi_events')
