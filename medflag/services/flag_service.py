# medflag/services/flag_service.py
"""
Flag lifecycle: creation (automatic and manual), resolution, amendments and the
retention purge.

Every mutation runs in one store transaction together with the summary
recompute and the audit entry it produces. The compliance check runs before the
first write.
"""
import calendar
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog

from .. import schemas
from ..compliance_logger import ComplianceLogger, compliance_logger as default_compliance
from ..config import Settings, get_settings
from ..core.logging import hash_identifier
from ..exceptions import (
    AlreadyResolvedError, ConcurrencyConflictError, GDPRComplianceError,
    NotFoundError, ValidationError
)
from ..repositories.base import FlaggingStore, StoreSession
from ..schemas import AuditAction, FlagReason, FlagStatus, PerformerType
from .alert_service import local_date_time
from .configuration_service import load_configuration
from .risk_service import recompute_summary

logger = structlog.get_logger(__name__)

AMENDABLE_FIELDS = ("severity", "description", "patient_name", "patient_email", "response_deadline")
TOP_REASONS_LIMIT = 5


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_starts(now: datetime, settings: Settings) -> Tuple[datetime, datetime]:
    """UTC instants of local midnight today and of local midnight last Monday."""
    local = now.astimezone(ZoneInfo(settings.display_timezone))
    day = local.replace(hour=0, minute=0, second=0, microsecond=0)
    week = day - timedelta(days=day.weekday())
    return day.astimezone(timezone.utc), week.astimezone(timezone.utc)


def describe_flag(appointment: schemas.Appointment, reason: FlagReason, settings: Optional[Settings] = None) -> str:
    date_str, time_str = local_date_time(appointment.date_time, settings)
    when = f"{date_str} {time_str}"
    if reason == FlagReason.no_response_to_notifications:
        return f"Patient did not respond to the notifications for the appointment on {when}"
    if reason == FlagReason.multiple_no_shows:
        return f"Patient did not show up for the appointment on {when}"
    return f"Flagged for the appointment on {when}"


class FlagService:
    def __init__(
        self,
        store: FlaggingStore,
        compliance: Optional[ComplianceLogger] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.compliance = compliance or default_compliance
        self.settings = settings or get_settings()

    # --- compliance ---

    def check_compliance(self, patient_id: str, doctor_id: str) -> schemas.ComplianceResult:
        result = self.compliance.validate(patient_id, doctor_id)
        if not result.compliant:
            raise GDPRComplianceError(
                "GDPR compliance check failed for patient flagging", errors=result.errors
            )
        return result

    # --- creation ---

    def insert_flag(
        self,
        session: StoreSession,
        appointment: schemas.Appointment,
        reason: FlagReason,
        config: schemas.FlaggingConfiguration,
        now: datetime,
        compliance: schemas.ComplianceResult,
    ) -> schemas.Flag:
        """Persist an automatic flag inside an open transaction."""
        patient_id = appointment.flag_patient_id
        if session.flags.find_active(appointment.id, patient_id) is not None:
            raise ConcurrencyConflictError(
                f"Active flag already exists for appointment {appointment.id}"
            )

        notifications = appointment.notifications
        flag = schemas.Flag(
            patient_id=patient_id,
            patient_name=appointment.patient_name,
            patient_email=appointment.patient_email,
            doctor_id=appointment.doctor_id,
            reason=reason,
            severity=config.flag_severity_for_no_response,
            status=FlagStatus.active,
            description=describe_flag(appointment, reason, self.settings),
            appointment_id=appointment.id,
            appointment_date_time=appointment.date_time,
            notifications_sent=notifications.sent_count,
            last_notification_sent=notifications.last_sent_at,
            response_deadline=now + timedelta(hours=config.response_timeout_hours),
            data_retention_expiry=add_months(now, config.flag_retention_months),
            created_by=PerformerType.system,
            created_at=now,
            updated_at=now,
        )
        session.flags.add(flag)
        recompute_summary(session, patient_id, now)
        self.compliance.record(
            session, flag, AuditAction.created,
            performed_by="system",
            performed_by_type=PerformerType.system,
            change_reason=f"Automatic flag for {reason.value}",
            now=now,
            legal_basis=compliance.legal_basis,
            patient_consent=compliance.patient_consent,
        )
        logger.info(
            "patient_flag_created",
            flag_id=flag.id,
            appointment_id=appointment.id,
            patient=hash_identifier(patient_id),
            severity=flag.severity.value,
        )
        return flag

    def create_flag(
        self,
        appointment: schemas.Appointment,
        reason: FlagReason = FlagReason.no_response_to_notifications,
        config: Optional[schemas.FlaggingConfiguration] = None,
        now: Optional[datetime] = None,
    ) -> schemas.Flag:
        now = now or schemas.utcnow()
        compliance = self.check_compliance(appointment.flag_patient_id, appointment.doctor_id)
        with self.store.transaction() as session:
            config = config or load_configuration(session, appointment.doctor_id, now)
            return self.insert_flag(session, appointment, reason, config, now, compliance)

    def create_manual_flag(self, request: schemas.ManualFlagCreate, now: Optional[datetime] = None) -> schemas.Flag:
        now = now or schemas.utcnow()
        compliance = self.check_compliance(request.patient_id, request.doctor_id)
        with self.store.transaction() as session:
            if request.appointment_id and session.flags.find_active(request.appointment_id, request.patient_id):
                raise ConcurrencyConflictError(
                    f"Active flag already exists for appointment {request.appointment_id}"
                )
            config = load_configuration(session, request.doctor_id, now)
            flag = schemas.Flag(
                patient_id=request.patient_id,
                patient_name=request.patient_name,
                patient_email=request.patient_email,
                doctor_id=request.doctor_id,
                reason=FlagReason.manual_flag,
                severity=request.severity,
                status=FlagStatus.active,
                description=request.description,
                appointment_id=request.appointment_id,
                response_deadline=now + timedelta(hours=config.response_timeout_hours),
                data_retention_expiry=add_months(now, config.flag_retention_months),
                created_by=request.performed_by_type,
                created_at=now,
                updated_at=now,
            )
            session.flags.add(flag)
            recompute_summary(session, flag.patient_id, now)
            self.compliance.record(
                session, flag, AuditAction.created,
                performed_by=request.performed_by,
                performed_by_type=request.performed_by_type,
                change_reason=request.description,
                now=now,
                legal_basis=compliance.legal_basis,
                patient_consent=compliance.patient_consent,
            )
        logger.info("manual_flag_created", flag_id=flag.id, patient=hash_identifier(flag.patient_id))
        return flag

    # --- resolution ---

    def resolve_flag(
        self,
        flag_id: str,
        resolution_notes: str,
        resolved_by: str,
        resolved_by_type: PerformerType = PerformerType.doctor,
        now: Optional[datetime] = None,
    ) -> schemas.Flag:
        if not flag_id:
            raise ValidationError("flag_id is required")
        if not resolved_by:
            raise ValidationError("resolved_by is required")
        now = now or schemas.utcnow()

        with self.store.transaction() as session:
            flag = session.flags.get(flag_id)
            if flag is None:
                raise NotFoundError("Flag", flag_id)
            if flag.status == FlagStatus.resolved:
                raise AlreadyResolvedError(flag_id)

            flag.status = FlagStatus.resolved
            flag.resolved_at = now
            flag.resolved_by = resolved_by
            flag.resolution_notes = resolution_notes
            flag.updated_at = now
            session.flags.update(flag)
            recompute_summary(session, flag.patient_id, now)
            self.compliance.record(
                session, flag, AuditAction.resolved,
                performed_by=resolved_by,
                performed_by_type=resolved_by_type,
                change_reason=resolution_notes,
                now=now,
                patient_consent=True,
            )

        logger.info("patient_flag_resolved", flag_id=flag_id, resolved_by=resolved_by)
        return flag

    # --- amendments ---

    def apply_amendment(
        self,
        flag_id: str,
        approved_changes: Dict[str, Any],
        performed_by: str,
        performed_by_type: PerformerType,
        reason: str,
        review_comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> schemas.Flag:
        if not approved_changes:
            raise ValidationError("approved_changes cannot be empty")
        unknown = sorted(set(approved_changes) - set(AMENDABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be amended: {', '.join(unknown)}")
        if not reason:
            raise ValidationError("An amendment reason is required")
        now = now or schemas.utcnow()

        with self.store.transaction() as session:
            flag = session.flags.get(flag_id)
            if flag is None:
                raise NotFoundError("Flag", flag_id)

            try:
                amended = schemas.Flag.model_validate({**flag.model_dump(), **approved_changes})
            except ValueError as e:
                raise ValidationError(f"Invalid amendment: {e}") from e
            for field in ("description", "patient_name"):
                if not getattr(amended, field):
                    raise ValidationError(f"{field} cannot be empty")

            before = flag.model_dump(mode="json")
            after = amended.model_dump(mode="json")
            changes = {
                field: {"from": before[field], "to": after[field]}
                for field in approved_changes
                if before[field] != after[field]
            }
            if not changes:
                raise ValidationError("Amendment does not change the flag")

            version = schemas.FlagVersion(
                flag_id=flag.id,
                version_number=flag.version,
                snapshot=before,
                changes=changes,
                reason=reason,
                created_by=performed_by,
                created_by_type=performed_by_type,
                created_at=now,
            )
            session.versions.add(version)

            amended.version = flag.version + 1
            amended.updated_at = now
            session.flags.update(amended)
            recompute_summary(session, amended.patient_id, now)
            self.compliance.record(
                session, amended, AuditAction.amended,
                performed_by=performed_by,
                performed_by_type=performed_by_type,
                change_reason=reason,
                now=now,
                review_comments=review_comments,
                metadata={
                    "previous_version_id": version.id,
                    "previous_version": version.version_number,
                    "changes": changes,
                },
            )

        logger.info("patient_flag_amended", flag_id=flag_id, version=amended.version, fields=sorted(changes))
        return amended

    def get_flag_versions(self, flag_id: str) -> List[schemas.FlagVersion]:
        with self.store.transaction() as session:
            if session.flags.get(flag_id) is None:
                raise NotFoundError("Flag", flag_id)
            return session.versions.list_for_flag(flag_id)

    # --- reads ---

    def get_flag(self, flag_id: str) -> schemas.Flag:
        with self.store.transaction() as session:
            flag = session.flags.get(flag_id)
        if flag is None:
            raise NotFoundError("Flag", flag_id)
        return flag

    def get_patient_flags(self, patient_id: str, include_resolved: bool = True) -> List[schemas.Flag]:
        with self.store.transaction() as session:
            return session.flags.list_for_patient(patient_id, include_resolved)

    def get_flag_audit(self, flag_id: str) -> List[schemas.AuditEntry]:
        with self.store.transaction() as session:
            return session.audit.list_for_flag(flag_id)

    def get_flagging_statistics(self, now: Optional[datetime] = None) -> schemas.FlaggingStatistics:
        """
        Flag counts across all doctors.

        "Today" and "this week" start at local midnight and on local Monday
        midnight in the display timezone. Reasons are ranked over active flags.
        """
        day_start, week_start = period_starts(now or schemas.utcnow(), self.settings)
        with self.store.transaction() as session:
            active = session.flags.list_active()
            this_week = session.flags.list_created_since(week_start)

        reasons = Counter(f.reason for f in active)
        ranked = sorted(reasons.items(), key=lambda item: (-item[1], item[0].value))
        return schemas.FlaggingStatistics(
            total_active_flags=len(active),
            flags_today=sum(1 for f in this_week if f.created_at >= day_start),
            flags_this_week=len(this_week),
            top_reasons=[
                schemas.ReasonCount(reason=reason, count=count)
                for reason, count in ranked[:TOP_REASONS_LIMIT]
            ],
        )

    # --- retention ---

    def purge_expired_flags(self, now: Optional[datetime] = None) -> int:
        """Delete flags past their retention expiry. Returns the number purged."""
        now = now or schemas.utcnow()
        with self.store.transaction() as session:
            expired = session.flags.list_expired(now)
            patients = set()
            for flag in expired:
                session.flags.delete(flag.id)
                patients.add(flag.patient_id)
                self.compliance.record(
                    session, flag, AuditAction.purged,
                    performed_by="system",
                    performed_by_type=PerformerType.system,
                    change_reason="Data retention period expired",
                    now=now,
                    metadata={"data_retention_expiry": flag.data_retention_expiry.isoformat()},
                )
            # fixed lock order
            for patient_id in sorted(patients):
                recompute_summary(session, patient_id, now)

        if expired:
            logger.info("expired_flags_purged", count=len(expired), patients=len(patients))
        return len(expired)
