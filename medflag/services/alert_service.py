# medflag/services/alert_service.py
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog

from .. import schemas
from ..config import Settings, get_settings
from ..exceptions import NotFoundError, ValidationError
from ..repositories.base import FlaggingStore, StoreSession
from ..schemas import AlertSeverity, AlertType, FlagSeverity

logger = structlog.get_logger(__name__)

ALERT_TITLE = "Patient flagged for no response"

SEVERITY_TO_ALERT = {
    FlagSeverity.low: AlertSeverity.info,
    FlagSeverity.medium: AlertSeverity.warning,
    FlagSeverity.high: AlertSeverity.urgent,
}


def local_date_time(value: datetime, settings: Optional[Settings] = None) -> Tuple[str, str]:
    """(dd.mm.YYYY, HH:MM) of a UTC instant in the display timezone."""
    settings = settings or get_settings()
    local = value.astimezone(ZoneInfo(settings.display_timezone))
    return local.strftime("%d.%m.%Y"), local.strftime("%H:%M")


def build_alert(
    flag: schemas.Flag,
    appointment: Optional[schemas.Appointment],
    now: datetime,
    settings: Optional[Settings] = None,
) -> schemas.Alert:
    settings = settings or get_settings()
    when = appointment.date_time if appointment is not None else flag.appointment_date_time
    if when is not None:
        date_str, time_str = local_date_time(when, settings)
        message = (
            f"{flag.patient_name} was flagged for not responding to the notifications "
            f"for the appointment on {date_str} at {time_str}."
        )
    else:
        message = f"{flag.patient_name} was flagged: {flag.description}"

    return schemas.Alert(
        doctor_id=flag.doctor_id,
        type=AlertType.patient_flagged,
        severity=SEVERITY_TO_ALERT[flag.severity],
        title=ALERT_TITLE,
        message=message,
        patient_id=flag.patient_id,
        patient_name=flag.patient_name,
        flag_id=flag.id,
        appointment_id=appointment.id if appointment is not None else flag.appointment_id,
        requires_action=True,
        action_deadline=now + timedelta(hours=settings.alert_action_window_hours),
        created_at=now,
    )


def add_alert(
    session: StoreSession,
    flag: schemas.Flag,
    appointment: Optional[schemas.Appointment],
    now: datetime,
    settings: Optional[Settings] = None,
) -> schemas.Alert:
    alert = session.alerts.add(build_alert(flag, appointment, now, settings))
    logger.info("doctor_alert_created", alert_id=alert.id, flag_id=flag.id, doctor_id=flag.doctor_id)
    return alert


class AlertService:
    def __init__(self, store: FlaggingStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def create_alert(
        self,
        flag: schemas.Flag,
        appointment: Optional[schemas.Appointment] = None,
        now: Optional[datetime] = None,
    ) -> schemas.Alert:
        with self.store.transaction() as session:
            return add_alert(session, flag, appointment, now or schemas.utcnow(), self.settings)

    def _transition(self, alert_id: str, flag_name: str, now: Optional[datetime]) -> schemas.Alert:
        if not alert_id:
            raise ValidationError("alert_id is required")
        now = now or schemas.utcnow()
        with self.store.transaction() as session:
            alert = session.alerts.get(alert_id)
            if alert is None:
                raise NotFoundError("Alert", alert_id)
            # repeat calls keep the first timestamp
            if not getattr(alert, flag_name):
                setattr(alert, flag_name, True)
                setattr(alert, f"{flag_name}_at", now)
                session.alerts.update(alert)
                logger.info("doctor_alert_updated", alert_id=alert_id, transition=flag_name)
            return alert

    def mark_read(self, alert_id: str, now: Optional[datetime] = None) -> schemas.Alert:
        return self._transition(alert_id, "read", now)

    def acknowledge(self, alert_id: str, now: Optional[datetime] = None) -> schemas.Alert:
        return self._transition(alert_id, "acknowledged", now)

    def dismiss(self, alert_id: str, now: Optional[datetime] = None) -> schemas.Alert:
        return self._transition(alert_id, "dismissed", now)

    def get_doctor_alerts(self, doctor_id: str, unread_only: bool = False) -> List[schemas.Alert]:
        with self.store.transaction() as session:
            return session.alerts.list_for_doctor(doctor_id, unread_only, self.settings.alert_page_size)
