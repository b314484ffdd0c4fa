"""Create topics, strategy_configs, episodes and strategy_evolution_logs

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2025-11-16 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'e1f2a3b4c5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'topics',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('owner_id', sa.String(128), nullable=True),
        sa.Column('active_version', sa.Integer(), nullable=True),
        sa.Column('evaluated_episode_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_evaluated_episode_id', sa.Uuid(as_uuid=True), nullable=True),
        sa.Column('last_evaluated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_topics_owner_id'), 'topics', ['owner_id'], unique=False)

    op.create_table(
        'strategy_configs',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('topic_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('parent_version', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('rollout_percentage', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['topic_id'], ['topics.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('topic_id', 'version', name='uq_strategy_configs_topic_version')
    )
    op.create_index(
        'uq_strategy_configs_one_active',
        'strategy_configs',
        ['topic_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )
    op.create_index('ix_strategy_configs_topic_status', 'strategy_configs', ['topic_id', 'status'], unique=False)

    op.create_table(
        'episodes',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('topic_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('strategy_version', sa.Integer(), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=True),
        sa.Column('query', sa.Text(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('sources_returned', sa.JSON(), nullable=False),
        sa.Column('sources_saved', sa.JSON(), nullable=False),
        sa.Column('followup_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tool_usage', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['topic_id'], ['topics.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_episodes_topic_version', 'episodes', ['topic_id', 'strategy_version'], unique=False)
    op.create_index('ix_episodes_topic_created', 'episodes', ['topic_id', 'created_at'], unique=False)

    op.create_table(
        'strategy_evolution_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('topic_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('from_version', sa.Integer(), nullable=False),
        sa.Column('to_version', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('changes', sa.JSON(), nullable=False),
        sa.Column('metrics', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['topic_id'], ['topics.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_strategy_evolution_logs_topic_id'), 'strategy_evolution_logs', ['topic_id'], unique=False)
    op.create_index(op.f('ix_strategy_evolution_logs_created_at'), 'strategy_evolution_logs', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_strategy_evolution_logs_created_at'), table_name='strategy_evolution_logs')
    op.drop_index(op.f('ix_strategy_evolution_logs_topic_id'), table_name='strategy_evolution_logs')
    op.drop_table('strategy_evolution_logs')
    op.drop_index('ix_episodes_topic_created', table_name='episodes')
    op.drop_index('ix_episodes_topic_version', table_name='episodes')
    op.drop_table('episodes')
    op.drop_index('ix_strategy_configs_topic_status', table_name='strategy_configs')
    op.drop_index('uq_strategy_configs_one_active', table_name='strategy_configs')
    op.drop_table('strategy_configs')
    op.drop_index(op.f('ix_topics_owner_id'), table_name='topics')
    op.drop_table('topics')
