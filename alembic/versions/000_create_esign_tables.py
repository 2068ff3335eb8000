"""Create e-signature tables (documents, recipients, document events)

Revision ID: 000_create_esign_tables
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '000_create_esign_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create e-signature tables."""
    op.create_table(
        'esign_documents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('original_name', sa.String(255), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='uploaded'),
        sa.Column('signing_flow', sa.String(20), nullable=False, server_default='SEQUENTIAL'),
        sa.Column('error_message', sa.Text, nullable=True),
        # Remote agreement
        sa.Column('remote_agreement_id', sa.String(100), nullable=True),
        # Reminder campaign
        sa.Column('last_reminder_sent', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminder_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('auto_reminders', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('reminder_urgency', sa.String(20), nullable=True),
        sa.Column('reminder_schedule_hours', sa.String(200), nullable=True),
        sa.Column('next_reminder_at', sa.DateTime(timezone=True), nullable=True),
        # Recovery
        sa.Column('recovery_applied', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('recovery_method', sa.String(30), nullable=True),
        sa.Column('recovered_at', sa.DateTime(timezone=True), nullable=True),
        # Timestamps
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_esign_documents_id', 'esign_documents', ['id'])
    op.create_index('ix_esign_documents_status', 'esign_documents', ['status'])
    op.create_index(
        'ix_esign_documents_remote_agreement_id', 'esign_documents', ['remote_agreement_id'], unique=True
    )

    op.create_table(
        'esign_recipients',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'document_id', sa.String(36),
            sa.ForeignKey('esign_documents.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('signing_order', sa.Integer, nullable=False, server_default='1'),
        sa.Column('role', sa.String(20), nullable=False, server_default='signer'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_reminder_sent', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_signing_url_accessed', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delegated_to', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_esign_recipients_document_id', 'esign_recipients', ['document_id'])

    op.create_table(
        'esign_document_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'document_id', sa.String(36),
            sa.ForeignKey('esign_documents.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('action', sa.String(30), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('source', sa.String(30), nullable=True),
        sa.Column('details', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_esign_document_events_document_id', 'esign_document_events', ['document_id'])
    op.create_index('ix_esign_document_events_action', 'esign_document_events', ['action'])


def downgrade():
    """Drop e-signature tables."""
    op.drop_index('ix_esign_document_events_action', table_name='esign_document_events')
    op.drop_index('ix_esign_document_events_document_id', table_name='esign_document_events')
    op.drop_table('esign_document_events')
    op.drop_index('ix_esign_recipients_document_id', table_name='esign_recipients')
    op.drop_table('esign_recipients')
    op.drop_index('ix_esign_documents_remote_agreement_id', table_name='esign_documents')
    op.drop_index('ix_esign_documents_status', table_name='esign_documents')
    op.drop_index('ix_esign_documents_id', table_name='esign_documents')
    op.drop_table('esign_documents')
