# medflag/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, JSON, Index, Float,
    Enum as SQLAlchemyEnum, text, event
)
from sqlalchemy.sql import func

from .database import Base
from .exceptions import AuditIntegrityError
from .schemas import (
    AppointmentStatus, FlagReason, FlagSeverity, FlagStatus, PerformerType,
    RiskLevel, AlertType, AlertSeverity, AuditAction
)


class Appointment(Base):
    """Appointment rows as exposed by the scheduling side, with reminder state"""
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_status_date', 'status', 'date_time'),
        Index('idx_appointments_doctor_date', 'doctor_id', 'date_time'),
    )

    id = Column(String(64), primary_key=True)
    doctor_id = Column(String(64), nullable=False)
    patient_id = Column(String(255), nullable=True)
    patient_name = Column(String(255), nullable=False)
    patient_email = Column(String(255), nullable=True)
    date_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.scheduled, nullable=False)

    # Reminders and notifications
    first_notification_sent = Column(Boolean, default=False, nullable=False)
    first_notification_sent_at = Column(DateTime(timezone=True), nullable=True)
    second_notification_sent = Column(Boolean, default=False, nullable=False)
    second_notification_sent_at = Column(DateTime(timezone=True), nullable=True)
    confirmation_received = Column(Boolean, default=False, nullable=False)
    opted_out = Column(Boolean, default=False, nullable=False)

    # Metadata
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class PatientFlag(Base):
    """A patient flagged for failing to respond; one active row per appointment and patient"""
    __tablename__ = "patient_flags"
    __table_args__ = (
        Index('idx_flags_patient_created', 'patient_id', 'created_at'),
        Index('idx_flags_doctor_status', 'doctor_id', 'status'),
        Index('idx_flags_retention', 'data_retention_expiry'),
        Index(
            'uq_flags_active_appointment_patient', 'appointment_id', 'patient_id',
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(String(32), primary_key=True)
    patient_id = Column(String(255), nullable=False)
    patient_name = Column(String(255), nullable=False)
    patient_email = Column(String(255), nullable=True)
    doctor_id = Column(String(64), nullable=False)

    reason = Column(SQLAlchemyEnum(FlagReason, name='flag_reason'), nullable=False)
    severity = Column(SQLAlchemyEnum(FlagSeverity, name='flag_severity'), nullable=False)
    status = Column(SQLAlchemyEnum(FlagStatus, name='flag_status'), nullable=False, default=FlagStatus.active)
    description = Column(Text, nullable=False)

    appointment_id = Column(String(64), nullable=True)
    appointment_date_time = Column(DateTime(timezone=True), nullable=True)

    notifications_sent = Column(Integer, nullable=False, default=0)
    last_notification_sent = Column(DateTime(timezone=True), nullable=True)
    response_deadline = Column(DateTime(timezone=True), nullable=False)
    data_retention_expiry = Column(DateTime(timezone=True), nullable=False)

    created_by = Column(SQLAlchemyEnum(PerformerType, name='performer_type'), nullable=False, default=PerformerType.system)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolution_notes = Column(Text, nullable=True)


class FlagVersion(Base):
    """Snapshot of a flag taken before each amendment"""
    __tablename__ = "flag_versions"
    __table_args__ = (
        Index('idx_flag_versions_flag', 'flag_id', 'version_number', unique=True),
    )

    id = Column(String(32), primary_key=True)
    flag_id = Column(String(32), nullable=False)
    version_number = Column(Integer, nullable=False)
    snapshot = Column(JSON, nullable=False)
    changes = Column(JSON, nullable=False)
    reason = Column(Text, nullable=False)
    created_by = Column(String(64), nullable=False)
    created_by_type = Column(SQLAlchemyEnum(PerformerType, name='performer_type'), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class PatientFlagSummary(Base):
    """Derived per-patient aggregate, rewritten wholesale on every flag mutation"""
    __tablename__ = "patient_flag_summaries"
    __table_args__ = (
        Index('idx_summaries_active', 'active_flags'),
    )

    patient_id = Column(String(255), primary_key=True)
    patient_name = Column(String(255), nullable=False)
    patient_email = Column(String(255), nullable=True)
    total_flags = Column(Integer, nullable=False, default=0)
    active_flags = Column(Integer, nullable=False, default=0)
    resolved_flags = Column(Integer, nullable=False, default=0)
    low_flags = Column(Integer, nullable=False, default=0)
    medium_flags = Column(Integer, nullable=False, default=0)
    high_flags = Column(Integer, nullable=False, default=0)
    risk_level = Column(SQLAlchemyEnum(RiskLevel, name='risk_level'), nullable=False, default=RiskLevel.none)
    first_flag_date = Column(DateTime(timezone=True), nullable=True)
    last_flag_date = Column(DateTime(timezone=True), nullable=True)
    last_resolution_date = Column(DateTime(timezone=True), nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=False)


class DoctorAlert(Base):
    """Operator-facing alert raised when a flag is created"""
    __tablename__ = "doctor_alerts"
    __table_args__ = (
        Index('idx_alerts_doctor_created', 'doctor_id', 'created_at'),
        Index('idx_alerts_doctor_read', 'doctor_id', 'read'),
    )

    id = Column(String(32), primary_key=True)
    doctor_id = Column(String(64), nullable=False)
    type = Column(SQLAlchemyEnum(AlertType, name='alert_type'), nullable=False)
    severity = Column(SQLAlchemyEnum(AlertSeverity, name='alert_severity'), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    patient_id = Column(String(255), nullable=False)
    patient_name = Column(String(255), nullable=False)
    flag_id = Column(String(32), nullable=True)
    appointment_id = Column(String(64), nullable=True)

    read = Column(Boolean, nullable=False, default=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    dismissed = Column(Boolean, nullable=False, default=False)
    requires_action = Column(Boolean, nullable=False, default=True)
    action_deadline = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    dismissed_at = Column(DateTime(timezone=True), nullable=True)


class FlaggingConfiguration(Base):
    """Per-doctor flagging thresholds"""
    __tablename__ = "flagging_configurations"

    doctor_id = Column(String(64), primary_key=True)
    enable_auto_flagging = Column(Boolean, nullable=False, default=True)
    flag_after_missed_notifications = Column(Integer, nullable=False, default=2)
    flag_severity_for_no_response = Column(SQLAlchemyEnum(FlagSeverity, name='flag_severity'), nullable=False, default=FlagSeverity.medium)
    response_timeout_hours = Column(Float, nullable=False, default=2)
    appointment_grace_period_minutes = Column(Integer, nullable=False, default=15)
    enable_real_time_alerts = Column(Boolean, nullable=False, default=True)
    enable_email_alerts = Column(Boolean, nullable=False, default=True)
    alert_for_severities = Column(JSON, nullable=False)
    flag_retention_months = Column(Integer, nullable=False, default=24)
    auto_resolve_old_flags = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class FlagAuditLog(Base):
    """Append-only compliance trail for every flag state transition"""
    __tablename__ = "flag_audit_logs"
    __table_args__ = (
        Index('idx_flag_audit_flag_date', 'flag_id', 'timestamp'),
        Index('idx_flag_audit_patient_date', 'patient_id', 'timestamp'),
        Index('idx_flag_audit_action_date', 'action', 'timestamp'),
    )

    id = Column(String(32), primary_key=True)
    flag_id = Column(String(32), nullable=False)
    patient_id = Column(String(255), nullable=False)
    doctor_id = Column(String(64), nullable=False)
    action = Column(SQLAlchemyEnum(AuditAction, name='flag_audit_action'), nullable=False)
    performed_by = Column(String(64), nullable=False)
    performed_by_type = Column(SQLAlchemyEnum(PerformerType, name='performer_type'), nullable=False)
    change_reason = Column(Text, nullable=False)
    review_comments = Column(Text, nullable=True)
    legal_basis = Column(String(50), nullable=False)
    patient_consent = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)


@event.listens_for(FlagAuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditIntegrityError(f"Audit entry {target.id} is immutable")


@event.listens_for(FlagAuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditIntegrityError(f"Audit entry {target.id} cannot be deleted")
