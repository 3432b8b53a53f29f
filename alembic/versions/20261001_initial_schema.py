"""Initial schema: projects, scans, job queue, results, analysis, tags

Revision ID: 20261001_initial_schema
Revises:
Create Date: 2026-10-01

The job_queue table is the work queue. The composite index on
(status, created_at) serves the claim query:
SELECT id FROM job_queue WHERE status = 'pending' ORDER BY created_at LIMIT 1
and the stale reclaimer's (status, started_at) scan.
"""
from alembic import op
import sqlalchemy as sa
from typing import Union


# revision identifiers, used by Alembic.
revision: str = '20261001_initial_schema'
down_revision: Union[str, None] = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'projects',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('industry', sa.String(), nullable=False, server_default=''),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('keywords', sa.JSON(), nullable=False),
        sa.Column('competitors', sa.JSON(), nullable=False),
        sa.Column('alert_keywords', sa.JSON(), nullable=False),
        sa.Column('sources', sa.JSON(), nullable=False),
        sa.Column('language', sa.String(), nullable=False, server_default='it'),
        sa.Column('location_code', sa.Integer(), nullable=False, server_default='2380'),
        sa.Column('schedule', sa.String(), nullable=False, server_default='manual'),
        sa.Column('schedule_day', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_filter_at', sa.DateTime(), nullable=True),
        sa.Column('last_normalize_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_projects_slug', 'projects', ['slug'], unique=True)
    op.create_index('ix_projects_is_active', 'projects', ['is_active'], unique=False)

    op.create_table(
        'scans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('trigger_type', sa.String(), nullable=False, server_default='manual'),
        sa.Column('status', sa.String(), nullable=False, server_default='running'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('total_tasks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_tasks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('date_from', sa.DateTime(), nullable=True),
        sa.Column('date_to', sa.DateTime(), nullable=True),
        sa.Column('ai_briefing', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scans_project_id', 'scans', ['project_id'], unique=False)
    op.create_index('ix_scans_status', 'scans', ['status'], unique=False)
    op.create_index('ix_scans_completed_at', 'scans', ['completed_at'], unique=False)

    op.create_table(
        'job_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scan_id', sa.Integer(), nullable=False),
        sa.Column('keyword', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['scan_id'], ['scans.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_job_queue_scan_id', 'job_queue', ['scan_id'], unique=False)
    op.create_index('ix_job_queue_status', 'job_queue', ['status'], unique=False)
    op.create_index('ix_job_queue_created_at', 'job_queue', ['created_at'], unique=False)
    op.create_index('idx_job_queue_claim', 'job_queue', ['status', 'created_at'], unique=False)
    op.create_index('idx_job_queue_stale', 'job_queue', ['status', 'started_at'], unique=False)

    op.create_table(
        'serp_results',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('scan_id', sa.Integer(), nullable=False),
        sa.Column('keyword', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('title', sa.String(), nullable=False, server_default=''),
        sa.Column('snippet', sa.Text(), nullable=True),
        sa.Column('domain', sa.String(), nullable=False, server_default=''),
        sa.Column('is_competitor', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('excerpt', sa.Text(), nullable=True),
        sa.Column('fetched_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['scan_id'], ['scans.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_serp_results_scan_id', 'serp_results', ['scan_id'], unique=False)
    op.create_index('ix_serp_results_url', 'serp_results', ['url'], unique=False)
    op.create_index('ix_serp_results_domain', 'serp_results', ['domain'], unique=False)

    op.create_table(
        'ai_analysis',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('serp_result_id', sa.Integer(), nullable=False),
        sa.Column('themes', sa.JSON(), nullable=False),
        sa.Column('sentiment', sa.String(), nullable=False, server_default='neutral'),
        sa.Column('sentiment_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('entities', sa.JSON(), nullable=False),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('language_detected', sa.String(), nullable=True),
        sa.Column('is_hi_priority', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('priority_reason', sa.Text(), nullable=True),
        sa.Column('is_off_topic', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('off_topic_reason', sa.Text(), nullable=True),
        sa.Column('analyzed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['serp_result_id'], ['serp_results.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_ai_analysis_serp_result_id', 'ai_analysis', ['serp_result_id'], unique=True)
    op.create_index('ix_ai_analysis_is_off_topic', 'ai_analysis', ['is_off_topic'], unique=False)

    op.create_table(
        'tags',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'slug', name='uq_tags_project_slug')
    )
    op.create_index('ix_tags_project_id', 'tags', ['project_id'], unique=False)
    op.create_index('ix_tags_slug', 'tags', ['slug'], unique=False)

    op.create_table(
        'tag_scans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tag_id', sa.Integer(), nullable=False),
        sa.Column('scan_id', sa.Integer(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['tag_id'], ['tags.id']),
        sa.ForeignKeyConstraint(['scan_id'], ['scans.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tag_id', 'scan_id', name='uq_tag_scans_tag_scan')
    )
    op.create_index('ix_tag_scans_tag_id', 'tag_scans', ['tag_id'], unique=False)
    op.create_index('ix_tag_scans_scan_id', 'tag_scans', ['scan_id'], unique=False)

    op.create_table(
        'tag_blacklist',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('tag_name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'tag_name', name='uq_tag_blacklist_project_tag')
    )
    op.create_index('ix_tag_blacklist_project_id', 'tag_blacklist', ['project_id'], unique=False)


def downgrade() -> None:
    op.drop_table('tag_blacklist')
    op.drop_table('tag_scans')
    op.drop_table('tags')
    op.drop_table('ai_analysis')
    op.drop_table('serp_results')
    op.drop_table('job_queue')
    op.drop_table('scans')
    op.drop_table('projects')
