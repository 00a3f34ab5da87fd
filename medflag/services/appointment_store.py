# medflag/services/appointment_store.py
"""
Read contract of the external appointment store.

The scheduling side owns appointments and their reminder state; the flagging
engine only ever asks for candidates by status and cutoff time.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List

import structlog

from .. import models, schemas
from ..schemas import AppointmentStatus

logger = structlog.get_logger(__name__)


class AppointmentStore(ABC):

    @abstractmethod
    async def find_appointments(self, status: AppointmentStatus, due_before: datetime) -> List[schemas.Appointment]:
        """Appointments with the given status whose date_time is at or before due_before."""


class InMemoryAppointmentStore(AppointmentStore):
    def __init__(self, appointments=None):
        self._appointments: Dict[str, schemas.Appointment] = {}
        for appointment in appointments or []:
            self.put(appointment)

    def put(self, appointment: schemas.Appointment) -> None:
        self._appointments[appointment.id] = appointment.model_copy(deep=True)

    def get(self, appointment_id: str):
        appointment = self._appointments.get(appointment_id)
        return appointment.model_copy(deep=True) if appointment else None

    async def find_appointments(self, status: AppointmentStatus, due_before: datetime) -> List[schemas.Appointment]:
        matches = [
            a.model_copy(deep=True) for a in self._appointments.values()
            if a.status == status and a.date_time <= due_before
        ]
        matches.sort(key=lambda a: a.date_time)
        return matches


def appointment_from_row(row: models.Appointment) -> schemas.Appointment:
    return schemas.Appointment(
        id=row.id,
        doctor_id=row.doctor_id,
        patient_id=row.patient_id,
        patient_name=row.patient_name,
        patient_email=row.patient_email,
        date_time=row.date_time,
        status=row.status,
        notifications=schemas.AppointmentNotifications(
            first_notification=schemas.NotificationRecord(
                sent=row.first_notification_sent,
                sent_at=row.first_notification_sent_at,
            ),
            second_notification=schemas.NotificationRecord(
                sent=row.second_notification_sent,
                sent_at=row.second_notification_sent_at,
            ),
            confirmation_received=row.confirmation_received,
            opted_out=row.opted_out,
        ),
    )


class SQLAppointmentStore(AppointmentStore):
    """Reads the ``appointments`` table through a blocking Session in a worker thread."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _query(self, status: AppointmentStatus, due_before: datetime) -> List[schemas.Appointment]:
        db = self.session_factory()
        try:
            rows = db.query(models.Appointment).filter(
                models.Appointment.status == status,
                models.Appointment.date_time <= due_before,
            ).order_by(models.Appointment.date_time).all()
            return [appointment_from_row(r) for r in rows]
        finally:
            db.close()

    async def find_appointments(self, status: AppointmentStatus, due_before: datetime) -> List[schemas.Appointment]:
        appointments = await asyncio.to_thread(self._query, status, due_before)
        logger.debug("appointments_fetched", status=status.value, count=len(appointments))
        return appointments
