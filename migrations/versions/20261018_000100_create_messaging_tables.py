"""create messaging, offer, presence and notification tables

Revision ID: 20261018_000100
Revises:
Create Date: 2026-10-18 00:01:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_000100'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user_profiles',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('full_name', sa.String(length=120)),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='buyer'),
        sa.Column('avatar_url', sa.String(length=500)),
        sa.Column('district', sa.String(length=100)),
        sa.Column('state', sa.String(length=100)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint("role IN ('farmer', 'buyer')", name='valid_role'),
    )

    op.create_table(
        'conversations',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('subject', sa.String(length=255)),
        sa.Column('conversation_key', sa.String(length=160), nullable=False, unique=True),
        sa.Column('last_message', sa.Text()),
        sa.Column('last_activity_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'conversation_participants',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('conversation_id', sa.String(length=36), sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('is_pinned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('hidden_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('conversation_id', 'user_id', name='uq_participant_conversation_user'),
    )
    op.create_index('ix_conversation_participants_user_id', 'conversation_participants', ['user_id'])
    op.create_index('ix_participant_user_hidden', 'conversation_participants', ['user_id', 'hidden_at'])

    op.create_table(
        'offers',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('listing_id', sa.String(length=64), nullable=False),
        sa.Column('buyer_id', sa.String(length=64), nullable=False),
        sa.Column('farmer_id', sa.String(length=64), nullable=False),
        sa.Column('conversation_id', sa.String(length=36), sa.ForeignKey('conversations.id', ondelete='SET NULL')),
        sa.Column('offer_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('message', sa.Text()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'expired', 'completed')",
            name='valid_offer_status',
        ),
        sa.CheckConstraint('quantity > 0', name='positive_quantity'),
    )
    op.create_index('ix_offers_listing_id', 'offers', ['listing_id'])
    op.create_index('ix_offers_status', 'offers', ['status'])

    op.create_table(
        'messages',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('conversation_id', sa.String(length=36), sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sender_id', sa.String(length=64), nullable=False),
        sa.Column('content', sa.Text()),
        sa.Column('message_type', sa.String(length=20), nullable=False, server_default='text'),
        sa.Column('offer_id', sa.String(length=36), sa.ForeignKey('offers.id', ondelete='SET NULL')),
        sa.Column('request_id', sa.String(length=64)),
        sa.Column('delivered_at', sa.DateTime(timezone=True)),
        sa.Column('seen_at', sa.DateTime(timezone=True)),
        sa.Column('read_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint("message_type IN ('text', 'offer', 'system', 'payment')", name='valid_message_type'),
        sa.UniqueConstraint('sender_id', 'request_id', name='uq_message_sender_request'),
    )
    op.create_index('ix_messages_conversation_created', 'messages', ['conversation_id', 'created_at', 'id'])
    op.create_index('ix_messages_conversation_unread', 'messages', ['conversation_id', 'read_at'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('offer_id', sa.String(length=36), sa.ForeignKey('offers.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payer_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('transaction_ref', sa.String(length=120)),
        sa.Column('screenshot_url', sa.String(length=500)),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='submitted'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint("status IN ('submitted', 'confirmed', 'failed')", name='valid_payment_status'),
    )
    op.create_index('ix_payments_offer_id', 'payments', ['offer_id'])

    op.create_table(
        'user_presence',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False, unique=True),
        sa.Column('is_online', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('body', sa.Text()),
        sa.Column('entity_type', sa.String(length=50)),
        sa.Column('entity_id', sa.String(length=64)),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_notifications_user_created', 'notifications', ['user_id', 'created_at'])


def downgrade():
    op.drop_index('ix_notifications_user_created', table_name='notifications')
    op.drop_table('notifications')
    op.drop_table('user_presence')
    op.drop_index('ix_payments_offer_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_messages_conversation_unread', table_name='messages')
    op.drop_index('ix_messages_conversation_created', table_name='messages')
    op.drop_table('messages')
    op.drop_index('ix_offers_status', table_name='offers')
    op.drop_index('ix_offers_listing_id', table_name='offers')
    op.drop_table('offers')
    op.drop_index('ix_participant_user_hidden', table_name='conversation_participants')
    op.drop_index('ix_conversation_participants_user_id', table_name='conversation_participants')
    op.drop_table('conversation_participants')
    op.drop_table('conversations')
    op.drop_table('user_profiles')
