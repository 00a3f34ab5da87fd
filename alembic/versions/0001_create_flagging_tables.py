"""create flagging tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None

# Shared between tables, so created once up front on PostgreSQL
appointment_status = postgresql.ENUM(
    'scheduled', 'confirmed', 'checked_in', 'in_progress', 'completed', 'cancelled', 'no_show', 'rescheduled',
    name='appointment_status', create_type=False)
flag_reason = postgresql.ENUM('no_response_to_notifications', 'multiple_no_shows', 'manual_flag', name='flag_reason', create_type=False)
flag_severity = postgresql.ENUM('low', 'medium', 'high', name='flag_severity', create_type=False)
flag_status = postgresql.ENUM('active', 'resolved', name='flag_status', create_type=False)
performer_type = postgresql.ENUM('system', 'doctor', 'nurse', name='performer_type', create_type=False)
risk_level = postgresql.ENUM('none', 'low', 'medium', 'high', name='risk_level', create_type=False)
alert_type = postgresql.ENUM('patient_flagged', 'high_risk_patient', 'repeated_offender', name='alert_type', create_type=False)
alert_severity = postgresql.ENUM('info', 'warning', 'urgent', name='alert_severity', create_type=False)
flag_audit_action = postgresql.ENUM('created', 'resolved', 'amended', 'purged', name='flag_audit_action', create_type=False)

ENUMS = (
    appointment_status, flag_reason, flag_severity, flag_status, performer_type,
    risk_level, alert_type, alert_severity, flag_audit_action,
)


def upgrade():
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        'appointments',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('doctor_id', sa.String(64), nullable=False),
        sa.Column('patient_id', sa.String(255), nullable=True),
        sa.Column('patient_name', sa.String(255), nullable=False),
        sa.Column('patient_email', sa.String(255), nullable=True),
        sa.Column('date_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', appointment_status, nullable=False),
        sa.Column('first_notification_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('first_notification_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('second_notification_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('second_notification_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmation_received', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('opted_out', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_appointments_status_date', 'appointments', ['status', 'date_time'])
    op.create_index('idx_appointments_doctor_date', 'appointments', ['doctor_id', 'date_time'])

    op.create_table(
        'patient_flags',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('patient_id', sa.String(255), nullable=False),
        sa.Column('patient_name', sa.String(255), nullable=False),
        sa.Column('patient_email', sa.String(255), nullable=True),
        sa.Column('doctor_id', sa.String(64), nullable=False),
        sa.Column('reason', flag_reason, nullable=False),
        sa.Column('severity', flag_severity, nullable=False),
        sa.Column('status', flag_status, nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('appointment_id', sa.String(64), nullable=True),
        sa.Column('appointment_date_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notifications_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_notification_sent', sa.DateTime(timezone=True), nullable=True),
        sa.Column('response_deadline', sa.DateTime(timezone=True), nullable=False),
        sa.Column('data_retention_expiry', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_by', performer_type, nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.String(64), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
    )
    op.create_index('idx_flags_patient_created', 'patient_flags', ['patient_id', 'created_at'])
    op.create_index('idx_flags_doctor_status', 'patient_flags', ['doctor_id', 'status'])
    op.create_index('idx_flags_retention', 'patient_flags', ['data_retention_expiry'])
    op.create_index(
        'uq_flags_active_appointment_patient', 'patient_flags', ['appointment_id', 'patient_id'],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'flag_versions',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('flag_id', sa.String(32), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('snapshot', sa.JSON(), nullable=False),
        sa.Column('changes', sa.JSON(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('created_by', sa.String(64), nullable=False),
        sa.Column('created_by_type', performer_type, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_flag_versions_flag', 'flag_versions', ['flag_id', 'version_number'], unique=True)

    op.create_table(
        'patient_flag_summaries',
        sa.Column('patient_id', sa.String(255), primary_key=True),
        sa.Column('patient_name', sa.String(255), nullable=False),
        sa.Column('patient_email', sa.String(255), nullable=True),
        sa.Column('total_flags', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active_flags', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('resolved_flags', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('low_flags', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('medium_flags', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('high_flags', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('risk_level', risk_level, nullable=False),
        sa.Column('first_flag_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_flag_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_resolution_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_summaries_active', 'patient_flag_summaries', ['active_flags'])

    op.create_table(
        'doctor_alerts',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('doctor_id', sa.String(64), nullable=False),
        sa.Column('type', alert_type, nullable=False),
        sa.Column('severity', alert_severity, nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('patient_id', sa.String(255), nullable=False),
        sa.Column('patient_name', sa.String(255), nullable=False),
        sa.Column('flag_id', sa.String(32), nullable=True),
        sa.Column('appointment_id', sa.String(64), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('acknowledged', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('dismissed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('requires_action', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('action_deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dismissed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_alerts_doctor_created', 'doctor_alerts', ['doctor_id', 'created_at'])
    op.create_index('idx_alerts_doctor_read', 'doctor_alerts', ['doctor_id', 'read'])

    op.create_table(
        'flagging_configurations',
        sa.Column('doctor_id', sa.String(64), primary_key=True),
        sa.Column('enable_auto_flagging', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('flag_after_missed_notifications', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('flag_severity_for_no_response', flag_severity, nullable=False),
        sa.Column('response_timeout_hours', sa.Float(), nullable=False, server_default='2'),
        sa.Column('appointment_grace_period_minutes', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('enable_real_time_alerts', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('enable_email_alerts', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('alert_for_severities', sa.JSON(), nullable=False),
        sa.Column('flag_retention_months', sa.Integer(), nullable=False, server_default='24'),
        sa.Column('auto_resolve_old_flags', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'flag_audit_logs',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('flag_id', sa.String(32), nullable=False),
        sa.Column('patient_id', sa.String(255), nullable=False),
        sa.Column('doctor_id', sa.String(64), nullable=False),
        sa.Column('action', flag_audit_action, nullable=False),
        sa.Column('performed_by', sa.String(64), nullable=False),
        sa.Column('performed_by_type', performer_type, nullable=False),
        sa.Column('change_reason', sa.Text(), nullable=False),
        sa.Column('review_comments', sa.Text(), nullable=True),
        sa.Column('legal_basis', sa.String(50), nullable=False),
        sa.Column('patient_consent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
    )
    op.create_index('ix_flag_audit_logs_timestamp', 'flag_audit_logs', ['timestamp'])
    op.create_index('idx_flag_audit_flag_date', 'flag_audit_logs', ['flag_id', 'timestamp'])
    op.create_index('idx_flag_audit_patient_date', 'flag_audit_logs', ['patient_id', 'timestamp'])
    op.create_index('idx_flag_audit_action_date', 'flag_audit_logs', ['action', 'timestamp'])


def downgrade():
    op.drop_table('flag_audit_logs')
    op.drop_table('flagging_configurations')
    op.drop_table('doctor_alerts')
    op.drop_table('patient_flag_summaries')
    op.drop_table('flag_versions')
    op.drop_table('patient_flags')
    op.drop_table('appointments')

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
