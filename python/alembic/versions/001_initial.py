"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000

This is the baseline migration that creates all tables for the Client
Verification Portal. It matches the models in database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # Create enums
    record_status = postgresql.ENUM(
        'pending', 'confirmed', 'updated',
        name='record_status', create_type=True
    )
    record_status.create(op.get_bind(), checkfirst=True)

    audit_action = postgresql.ENUM(
        'created', 'confirmed', 'updated',
        name='audit_action', create_type=True
    )
    audit_action.create(op.get_bind(), checkfirst=True)

    audit_source = postgresql.ENUM(
        'import', 'verification', 'admin',
        name='audit_source', create_type=True
    )
    audit_source.create(op.get_bind(), checkfirst=True)

    # Create contact_records table
    op.create_table(
        'contact_records',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('client_number', sa.String(100), nullable=False),
        sa.Column('first_name', sa.String(200), nullable=False),
        sa.Column('last_name', sa.String(200), nullable=False),
        sa.Column('phone_number', sa.String(50), nullable=False),
        sa.Column('alt_number', sa.String(50)),
        sa.Column('address', sa.Text, nullable=False),
        sa.Column('email', sa.String(254), nullable=False),
        sa.Column('status', sa.Enum('pending', 'confirmed', 'updated',
                                    name='record_status', create_type=False),
                  nullable=False, server_default='pending'),
        sa.Column('verification_token', sa.String(128), unique=True),
        sa.Column('token_expiry', sa.DateTime(timezone=True)),
        sa.Column('has_changes', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('group_template', sa.String(200)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )

    # Create admin_accounts table
    op.create_table(
        'admin_accounts',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(254), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )

    # Create admin_security table
    op.create_table(
        'admin_security',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('admin_id', sa.Integer,
                  sa.ForeignKey('admin_accounts.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('two_factor_secret', sa.String(64)),
        sa.Column('two_factor_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )

    # Create audit_logs table
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('record_id', sa.Integer,
                  sa.ForeignKey('contact_records.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('action', sa.Enum('created', 'confirmed', 'updated',
                                    name='audit_action', create_type=False),
                  nullable=False),
        sa.Column('source', sa.Enum('import', 'verification', 'admin',
                                    name='audit_source', create_type=False),
                  nullable=False),
        sa.Column('old_data', sa.JSON),
        sa.Column('new_data', sa.JSON),
        sa.Column('ip_address', sa.String(64)),
        sa.Column('user_agent', sa.String(500)),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    )

    # Create indexes
    op.create_index('ix_contact_records_client_number', 'contact_records', ['client_number'])
    op.create_index('ix_contact_records_email', 'contact_records', ['email'])
    op.create_index('ix_contact_records_status', 'contact_records', ['status'])
    op.create_index('ix_contact_records_last_updated', 'contact_records', ['last_updated'])
    op.create_index('ix_contact_status_updated', 'contact_records', ['status', 'last_updated'])

    op.create_index('ix_audit_logs_record_id', 'audit_logs', ['record_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_record_timestamp', 'audit_logs', ['record_id', 'timestamp'])

    # Audit rows are append-only at the database level too
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_audit_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_logs is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER audit_logs_append_only
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION reject_audit_change()
    """)


def downgrade() -> None:
    """Drop all tables and types."""
    op.execute('DROP TRIGGER IF EXISTS audit_logs_append_only ON audit_logs')
    op.execute('DROP FUNCTION IF EXISTS reject_audit_change()')

    # Drop tables in reverse order
    op.drop_table('audit_logs')
    op.drop_table('admin_security')
    op.drop_table('admin_accounts')
    op.drop_table('contact_records')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS audit_source')
    op.execute('DROP TYPE IF EXISTS audit_action')
    op.execute('DROP TYPE IF EXISTS record_status')
