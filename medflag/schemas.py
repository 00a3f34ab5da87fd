# medflag/schemas.py
from datetime import datetime, timezone
from typing import Annotated, List, Optional, Dict, Any
from uuid import uuid4
from enum import Enum

from pydantic import BaseModel, Field, AfterValidator, field_validator


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


# --- Enum Classes ---
class AppointmentStatus(str, Enum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    checked_in = "checked_in"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"
    rescheduled = "rescheduled"


class FlagReason(str, Enum):
    no_response_to_notifications = "no_response_to_notifications"
    # Defined for the no-show pathway; no eligibility rule produces it yet.
    multiple_no_shows = "multiple_no_shows"
    manual_flag = "manual_flag"


class FlagSeverity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class FlagStatus(str, Enum):
    active = "active"
    resolved = "resolved"


class PerformerType(str, Enum):
    system = "system"
    doctor = "doctor"
    nurse = "nurse"


class RiskLevel(str, Enum):
    none = "none"
    low = "low"
    medium = "medium"
    high = "high"


class AlertType(str, Enum):
    patient_flagged = "patient_flagged"
    high_risk_patient = "high_risk_patient"
    repeated_offender = "repeated_offender"


class AlertSeverity(str, Enum):
    info = "info"
    warning = "warning"
    urgent = "urgent"


class AuditAction(str, Enum):
    created = "created"
    resolved = "resolved"
    amended = "amended"
    purged = "purged"


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


# --- Appointment read contract ---
class NotificationRecord(BaseSchema):
    sent: bool = False
    sent_at: Optional[UTCDateTime] = None


class AppointmentNotifications(BaseSchema):
    first_notification: NotificationRecord = Field(default_factory=NotificationRecord)
    second_notification: NotificationRecord = Field(default_factory=NotificationRecord)
    confirmation_received: bool = False
    opted_out: bool = False

    @property
    def sent_count(self) -> int:
        return int(self.first_notification.sent) + int(self.second_notification.sent)

    @property
    def last_sent_at(self) -> Optional[datetime]:
        """Second reminder's timestamp if it went out, else the first's."""
        if self.second_notification.sent:
            return self.second_notification.sent_at
        if self.first_notification.sent:
            return self.first_notification.sent_at
        return None


class Appointment(BaseSchema):
    id: str
    doctor_id: str
    patient_id: Optional[str] = None
    patient_name: str
    patient_email: Optional[str] = None
    date_time: UTCDateTime
    status: AppointmentStatus = AppointmentStatus.scheduled
    notifications: AppointmentNotifications = Field(default_factory=AppointmentNotifications)

    @property
    def flag_patient_id(self) -> str:
        """Patient key used for flags and summaries."""
        return self.patient_id or self.patient_email or self.patient_name or self.id


# --- Configuration ---
class FlaggingConfiguration(BaseSchema):
    doctor_id: str
    enable_auto_flagging: bool = True
    flag_after_missed_notifications: int = Field(2, ge=1, le=2)
    flag_severity_for_no_response: FlagSeverity = FlagSeverity.medium
    response_timeout_hours: float = Field(2, ge=0)
    appointment_grace_period_minutes: int = Field(15, ge=0)
    enable_real_time_alerts: bool = True
    enable_email_alerts: bool = True
    alert_for_severities: List[FlagSeverity] = Field(default_factory=lambda: [FlagSeverity.medium, FlagSeverity.high])
    flag_retention_months: int = Field(24, ge=1)
    auto_resolve_old_flags: bool = True
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)


class FlaggingConfigurationUpdate(BaseSchema):
    enable_auto_flagging: Optional[bool] = None
    flag_after_missed_notifications: Optional[int] = Field(None, ge=1, le=2)
    flag_severity_for_no_response: Optional[FlagSeverity] = None
    response_timeout_hours: Optional[float] = Field(None, ge=0)
    appointment_grace_period_minutes: Optional[int] = Field(None, ge=0)
    enable_real_time_alerts: Optional[bool] = None
    enable_email_alerts: Optional[bool] = None
    alert_for_severities: Optional[List[FlagSeverity]] = None
    flag_retention_months: Optional[int] = Field(None, ge=1)
    auto_resolve_old_flags: Optional[bool] = None


# --- Flags ---
class Flag(BaseSchema):
    id: str = Field(default_factory=new_id)
    patient_id: str
    patient_name: str
    patient_email: Optional[str] = None
    doctor_id: str
    reason: FlagReason
    severity: FlagSeverity
    status: FlagStatus = FlagStatus.active
    description: str
    appointment_id: Optional[str] = None
    appointment_date_time: Optional[UTCDateTime] = None
    notifications_sent: int = 0
    last_notification_sent: Optional[UTCDateTime] = None
    response_deadline: UTCDateTime
    data_retention_expiry: UTCDateTime
    created_by: PerformerType = PerformerType.system
    version: int = 1
    created_at: UTCDateTime
    updated_at: UTCDateTime
    resolved_at: Optional[UTCDateTime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None


class FlagVersion(BaseSchema):
    id: str = Field(default_factory=new_id)
    flag_id: str
    version_number: int
    snapshot: Dict[str, Any]
    changes: Dict[str, Dict[str, Any]]
    reason: str
    created_by: str
    created_by_type: PerformerType
    created_at: UTCDateTime


class SeverityCounts(BaseSchema):
    low: int = 0
    medium: int = 0
    high: int = 0


class FlagSummary(BaseSchema):
    patient_id: str
    patient_name: str
    patient_email: Optional[str] = None
    total_flags: int
    active_flags: int
    resolved_flags: int
    flags_by_severity: SeverityCounts
    risk_level: RiskLevel
    first_flag_date: Optional[UTCDateTime] = None
    last_flag_date: Optional[UTCDateTime] = None
    last_resolution_date: Optional[UTCDateTime] = None
    last_updated: UTCDateTime


class FlaggedPatient(BaseSchema):
    patient_id: str
    patient_name: str
    flag_count: int
    risk_level: RiskLevel
    last_flag_date: Optional[UTCDateTime] = None


class RecentFlag(BaseSchema):
    flag_id: str
    patient_id: str
    patient_name: str
    flag_date: UTCDateTime
    reason: FlagReason


class DoctorFlaggingSummary(BaseSchema):
    """Dashboard widget for one doctor."""
    total_flagged: int = 0
    high_risk: int = 0
    needs_attention: int = 0
    recent_flags: List[RecentFlag] = Field(default_factory=list)


class ReasonCount(BaseSchema):
    reason: FlagReason
    count: int


class FlaggingStatistics(BaseSchema):
    total_active_flags: int = 0
    flags_today: int = 0
    flags_this_week: int = 0
    top_reasons: List[ReasonCount] = Field(default_factory=list)


# --- Alerts ---
class Alert(BaseSchema):
    id: str = Field(default_factory=new_id)
    doctor_id: str
    type: AlertType = AlertType.patient_flagged
    severity: AlertSeverity
    title: str
    message: str
    patient_id: str
    patient_name: str
    flag_id: Optional[str] = None
    appointment_id: Optional[str] = None
    read: bool = False
    acknowledged: bool = False
    dismissed: bool = False
    requires_action: bool = True
    action_deadline: Optional[UTCDateTime] = None
    created_at: UTCDateTime
    read_at: Optional[UTCDateTime] = None
    acknowledged_at: Optional[UTCDateTime] = None
    dismissed_at: Optional[UTCDateTime] = None


# --- Audit ---
class AuditEntry(BaseSchema):
    id: str = Field(default_factory=new_id)
    flag_id: str
    patient_id: str
    doctor_id: str
    action: AuditAction
    performed_by: str
    performed_by_type: PerformerType
    change_reason: str
    review_comments: Optional[str] = None
    legal_basis: str
    patient_consent: bool
    timestamp: UTCDateTime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ComplianceResult(BaseSchema):
    compliant: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    legal_basis: str = "legitimate_interest"
    patient_consent: bool = False


# --- Flagging pass ---
class FlaggingPassResult(BaseSchema):
    processed_count: int = 0
    new_flags_count: int = 0
    errors: List[str] = Field(default_factory=list)


# --- Request bodies ---
class ResolveFlagRequest(BaseSchema):
    resolution_notes: str = Field(..., min_length=1)
    resolved_by: str = Field(..., min_length=1)
    resolved_by_type: PerformerType = PerformerType.doctor

    @field_validator("resolved_by_type")
    @classmethod
    def reject_system(cls, v):
        if v == PerformerType.system:
            raise ValueError("flags are resolved by an operator, not the system")
        return v


class ManualFlagCreate(BaseSchema):
    patient_id: str = Field(..., min_length=1)
    patient_name: str = Field(..., min_length=1)
    patient_email: Optional[str] = None
    doctor_id: str = Field(..., min_length=1)
    severity: FlagSeverity = FlagSeverity.medium
    description: str = Field(..., min_length=1)
    appointment_id: Optional[str] = None
    performed_by: str = Field(..., min_length=1)
    performed_by_type: PerformerType = PerformerType.doctor


class AmendmentRequest(BaseSchema):
    approved_changes: Dict[str, Any]
    performed_by: str = Field(..., min_length=1)
    performed_by_type: PerformerType = PerformerType.doctor
    reason: str = Field(..., min_length=1)
    review_comments: Optional[str] = None


class FlaggingRunRequest(BaseSchema):
    now: Optional[UTCDateTime] = None
