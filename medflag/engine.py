# medflag/engine.py
"""Public entry point of the flagging engine, shared by the HTTP routers and the cron runner."""
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from . import schemas
from .compliance_logger import ComplianceLogger
from .config import Settings, get_settings
from .exceptions import NotFoundError
from .repositories.base import FlaggingStore
from .services.alert_service import AlertService
from .services.appointment_store import AppointmentStore
from .services.configuration_service import ConfigurationService
from .services.flag_service import FlagService
from .services.flagging_pass import FlaggingPass
from .services.risk_service import RiskService

Clock = Callable[[], datetime]


class FlaggingEngine:
    def __init__(
        self,
        store: FlaggingStore,
        appointments: AppointmentStore,
        settings: Optional[Settings] = None,
        compliance: Optional[ComplianceLogger] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.appointments = appointments
        self.clock = clock or schemas.utcnow
        self.configurations = ConfigurationService(store)
        self.flags = FlagService(store, compliance=compliance, settings=self.settings)
        self.alerts = AlertService(store, settings=self.settings)
        self.risk = RiskService(store)
        self.flagging_pass = FlaggingPass(store, appointments, self.flags, self.settings)

    def _now(self, now: Optional[datetime]) -> datetime:
        return now or self.clock()

    # Flagging pass
    async def run_flagging_pass(self, now: Optional[datetime] = None) -> schemas.FlaggingPassResult:
        return await self.flagging_pass.run(self._now(now))

    def purge_expired_flags(self, now: Optional[datetime] = None) -> int:
        return self.flags.purge_expired_flags(self._now(now))

    # Flags
    def get_patient_flag_summary(self, patient_id: str) -> schemas.FlagSummary:
        summary = self.risk.get_patient_flag_summary(patient_id)
        if summary is None:
            raise NotFoundError("FlagSummary", patient_id)
        return summary

    def get_patient_flags(self, patient_id: str, include_resolved: bool = True) -> List[schemas.Flag]:
        return self.flags.get_patient_flags(patient_id, include_resolved)

    def resolve_patient_flag(
        self,
        flag_id: str,
        resolution_notes: str,
        resolved_by: str,
        resolved_by_type: schemas.PerformerType = schemas.PerformerType.doctor,
        now: Optional[datetime] = None,
    ) -> schemas.Flag:
        return self.flags.resolve_flag(flag_id, resolution_notes, resolved_by, resolved_by_type, self._now(now))

    def create_manual_flag(self, request: schemas.ManualFlagCreate, now: Optional[datetime] = None) -> schemas.Flag:
        return self.flags.create_manual_flag(request, self._now(now))

    def apply_amendment(self, flag_id: str, request: schemas.AmendmentRequest, now: Optional[datetime] = None) -> schemas.Flag:
        return self.flags.apply_amendment(
            flag_id,
            request.approved_changes,
            performed_by=request.performed_by,
            performed_by_type=request.performed_by_type,
            reason=request.reason,
            review_comments=request.review_comments,
            now=self._now(now),
        )

    def get_flag_versions(self, flag_id: str) -> List[schemas.FlagVersion]:
        return self.flags.get_flag_versions(flag_id)

    def get_flag_audit(self, flag_id: str) -> List[schemas.AuditEntry]:
        self.flags.get_flag(flag_id)
        return self.flags.get_flag_audit(flag_id)

    def get_flagged_patients_for_doctor(self, doctor_id: str) -> List[schemas.FlaggedPatient]:
        return self.risk.get_flagged_patients_for_doctor(doctor_id)

    def get_doctor_flagging_summary(self, doctor_id: str) -> schemas.DoctorFlaggingSummary:
        return self.risk.get_doctor_flagging_summary(doctor_id)

    def get_flagging_statistics(self, now: Optional[datetime] = None) -> schemas.FlaggingStatistics:
        return self.flags.get_flagging_statistics(self._now(now))

    # Alerts
    def get_doctor_alerts(self, doctor_id: str, unread_only: bool = False) -> List[schemas.Alert]:
        return self.alerts.get_doctor_alerts(doctor_id, unread_only)

    def mark_alert_as_read(self, alert_id: str, now: Optional[datetime] = None) -> schemas.Alert:
        return self.alerts.mark_read(alert_id, self._now(now))

    def acknowledge_alert(self, alert_id: str, now: Optional[datetime] = None) -> schemas.Alert:
        return self.alerts.acknowledge(alert_id, self._now(now))

    def dismiss_alert(self, alert_id: str, now: Optional[datetime] = None) -> schemas.Alert:
        return self.alerts.dismiss(alert_id, self._now(now))

    # Configuration
    def get_configuration(self, doctor_id: str) -> schemas.FlaggingConfiguration:
        return self.configurations.get_configuration(doctor_id, self.clock())

    def update_configuration(self, doctor_id: str, update: schemas.FlaggingConfigurationUpdate) -> schemas.FlaggingConfiguration:
        return self.configurations.update_configuration(doctor_id, update, self.clock())

    def health(self) -> Dict[str, Any]:
        with self.store.transaction():
            pass
        return {
            "status": "healthy",
            "service": self.settings.app_name,
            "version": self.settings.app_version,
            "environment": self.settings.environment,
            "timestamp": self.clock().isoformat(),
        }


def build_sql_engine(settings: Optional[Settings] = None) -> FlaggingEngine:
    """Engine over the configured database, creating tables if needed."""
    from .database import build_engine, build_session_factory, create_tables
    from .repositories.sql import SQLFlaggingStore
    from .services.appointment_store import SQLAppointmentStore

    settings = settings or get_settings()
    bind = build_engine(settings.database_url, settings.statement_timeout_seconds)
    create_tables(bind)
    session_factory = build_session_factory(bind)
    return FlaggingEngine(
        SQLFlaggingStore(session_factory),
        SQLAppointmentStore(session_factory),
        settings=settings,
    )


@lru_cache()
def get_flagging_engine() -> FlaggingEngine:
    """FastAPI dependency; overridden in tests."""
    return build_sql_engine()
