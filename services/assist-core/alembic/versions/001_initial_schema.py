"""Initial schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

# SQLAlchemy stores enum member names
conversation_status = sa.Enum('NEW', 'ACTIVE', 'WAITING', 'RESOLVED', 'CLOSED', name='conversationstatus')
handoff_state = sa.Enum('AI_HANDLING', 'HANDOFF_SUGGESTED', 'HANDOFF_REQUESTED', 'HUMAN_HANDLING', name='handoffstate')
message_direction = sa.Enum('INBOUND', 'OUTBOUND', name='messagedirection')
message_role = sa.Enum('USER', 'ASSISTANT', 'SYSTEM', name='messagerole')
training_state = sa.Enum('UNTRAINED', 'TRAINING', 'TRAINED', 'FAILED', name='trainingstate')
document_status = sa.Enum('PENDING', 'PROCESSED', 'ERROR', name='documentstatus')


def upgrade() -> None:
    # AI agents
    op.create_table(
        'ai_agents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, index=True),
        sa.Column('is_global', sa.Boolean(), nullable=False),
        sa.Column('department_id', sa.String(), nullable=True, index=True),
        sa.Column('team_id', sa.String(), nullable=True, index=True),
        sa.Column('model_settings', postgresql.JSONB(), nullable=True),
        sa.Column('behavior_settings', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Conversations
    op.create_table(
        'conversations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('customer_id', sa.String(), nullable=True, index=True),
        sa.Column('agent_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('ai_agents.id'), nullable=True, index=True),
        sa.Column('channel_type', sa.String(), nullable=False),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('status', conversation_status, nullable=False, index=True),
        sa.Column('is_ai_handled', sa.Boolean(), nullable=False),
        sa.Column('handoff_state', handoff_state, nullable=False),
        sa.Column('ai_confidence', sa.Float(), nullable=True),
        sa.Column('ai_response_time', sa.Float(), nullable=True),
        sa.Column('assigned_to', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Messages
    op.create_table(
        'messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('conversations.id'), nullable=False, index=True),
        sa.Column('direction', message_direction, nullable=False),
        sa.Column('role', message_role, nullable=False),
        sa.Column('content', sa.String(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('sender_name', sa.String(), nullable=True),
        sa.Column('feedback_recorded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
    )

    # AI conversation logs
    op.create_table(
        'ai_conversation_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('conversations.id'), nullable=False, index=True),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('messages.id'), nullable=True, index=True),
        sa.Column('agent_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('ai_agents.id'), nullable=True),
        sa.Column('prompt', sa.String(), nullable=False),
        sa.Column('response', sa.String(), nullable=False),
        sa.Column('tokens_used', sa.Integer(), nullable=True),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('processing_time', sa.Float(), nullable=False),
        sa.Column('feedback_score', sa.Integer(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
    )

    # Lifecycle events
    op.create_table(
        'ai_webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_type', sa.String(), nullable=False, index=True),
        sa.Column('agent_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('ai_agents.id'), nullable=True, index=True),
        sa.Column('conversation_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('conversations.id'), nullable=True, index=True),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, index=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('delivery_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
    )

    # Webhook subscriptions
    op.create_table(
        'webhook_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('secret_key', sa.String(), nullable=False),
        sa.Column('events', postgresql.JSONB(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_triggered', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # Knowledge bases
    op.create_table(
        'knowledge_bases',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('document_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('training_state', training_state, nullable=False),
        sa.Column('training_quality', sa.Float(), nullable=True),
        sa.Column('last_trained', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('knowledge_base_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('knowledge_bases.id'), nullable=False, index=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('content', sa.String(), nullable=True),
        sa.Column('file_type', sa.String(), nullable=True),
        sa.Column('status', document_status, nullable=False, index=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'training_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('knowledge_base_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('knowledge_bases.id'), nullable=False, index=True),
        sa.Column('status', training_state, nullable=False),
        sa.Column('progress', sa.Float(), nullable=False),
        sa.Column('quality', sa.Float(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('training_jobs')
    op.drop_table('documents')
    op.drop_table('knowledge_bases')
    op.drop_table('webhook_subscriptions')
    op.drop_table('ai_webhook_events')
    op.drop_table('ai_conversation_logs')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('ai_agents')

    bind = op.get_bind()
    for enum_type in (document_status, training_state, message_role, message_direction, handoff_state, conversation_status):
        enum_type.drop(bind, checkfirst=True)
