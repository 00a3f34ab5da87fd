# tests/conftest.py
import os

os.environ.setdefault("ENVIRONMENT", "testing")

from datetime import datetime, timedelta, timezone

import pytest

from medflag.compliance_logger import ComplianceLogger
from medflag.config import Settings
from medflag.database import build_engine, build_session_factory, create_tables
from medflag.engine import FlaggingEngine
from medflag.repositories.memory import InMemoryFlaggingStore
from medflag.repositories.sql import SQLFlaggingStore
from medflag.schemas import (
    Appointment, AppointmentNotifications, AppointmentStatus, NotificationRecord
)
from medflag.services.appointment_store import InMemoryAppointmentStore

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_appointment(
    appointment_id="a1",
    doctor_id="d1",
    patient_id="p1",
    patient_name="Ana Popescu",
    patient_email="ana@example.com",
    date_time=None,
    status=AppointmentStatus.scheduled,
    first_sent_at=None,
    second_sent_at=None,
    first_sent=True,
    second_sent=True,
    confirmation_received=False,
    opted_out=False,
):
    """Overdue scheduled appointment whose two reminders went unanswered."""
    return Appointment(
        id=appointment_id,
        doctor_id=doctor_id,
        patient_id=patient_id,
        patient_name=patient_name,
        patient_email=patient_email,
        date_time=date_time or NOW - timedelta(hours=3),
        status=status,
        notifications=AppointmentNotifications(
            first_notification=NotificationRecord(
                sent=first_sent,
                sent_at=(first_sent_at or NOW - timedelta(hours=26)) if first_sent else None,
            ),
            second_notification=NotificationRecord(
                sent=second_sent,
                sent_at=(second_sent_at or NOW - timedelta(hours=4)) if second_sent else None,
            ),
            confirmation_received=confirmation_received,
            opted_out=opted_out,
        ),
    )


@pytest.fixture
def settings():
    return Settings(
        environment="testing",
        database_url="sqlite://",
        unit_timeout_seconds=5,
        query_timeout_seconds=5,
        pass_max_workers=4,
    )


@pytest.fixture
def store():
    return InMemoryFlaggingStore()


@pytest.fixture
def appointments():
    return InMemoryAppointmentStore()


@pytest.fixture
def compliance():
    return ComplianceLogger()


@pytest.fixture
def engine(store, appointments, settings, compliance):
    return FlaggingEngine(store, appointments, settings=settings, compliance=compliance, clock=lambda: NOW)


@pytest.fixture
def sql_bind():
    bind = build_engine("sqlite://")
    create_tables(bind)
    yield bind
    bind.dispose()


@pytest.fixture
def sql_session_factory(sql_bind):
    return build_session_factory(sql_bind)


@pytest.fixture
def sql_store(sql_session_factory):
    return SQLFlaggingStore(sql_session_factory)
