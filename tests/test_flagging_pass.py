# tests/test_flagging_pass.py
import asyncio
import time
from datetime import timedelta

import pytest

from medflag.compliance_logger import ComplianceLogger, legitimate_interest_policy
from medflag.engine import FlaggingEngine
from medflag.exceptions import StoreUnavailableError
from medflag.schemas import AlertSeverity, AppointmentStatus, ComplianceResult, FlaggingConfigurationUpdate, RiskLevel
from medflag.services.appointment_store import AppointmentStore
from medflag.services.flagging_pass import UnitTicket

from conftest import NOW, make_appointment


class FailingAppointmentStore(AppointmentStore):
    async def find_appointments(self, status, due_before):
        raise RuntimeError("connection reset by peer")


class SlowAppointmentStore(AppointmentStore):
    async def find_appointments(self, status, due_before):
        await asyncio.sleep(1)
        return []


@pytest.mark.asyncio
async def test_unanswered_appointment_is_flagged_once(engine, appointments):
    appointments.put(make_appointment())

    result = await engine.run_flagging_pass()

    assert result.processed_count == 1
    assert result.new_flags_count == 1
    assert result.errors == []

    [flag] = engine.get_patient_flags("p1")
    [alert] = engine.get_doctor_alerts("d1")
    assert alert.flag_id == flag.id
    assert alert.severity == AlertSeverity.warning
    assert alert.appointment_id == "a1"
    assert engine.get_patient_flag_summary("p1").risk_level == RiskLevel.medium


@pytest.mark.asyncio
async def test_pass_is_idempotent(engine, appointments):
    appointments.put(make_appointment())

    await engine.run_flagging_pass()
    second = await engine.run_flagging_pass(now=NOW + timedelta(minutes=30))

    assert second.processed_count == 1
    assert second.new_flags_count == 0
    assert second.errors == []
    assert len(engine.get_patient_flags("p1")) == 1
    assert len(engine.get_doctor_alerts("d1")) == 1


@pytest.mark.asyncio
async def test_recent_appointments_are_not_candidates(engine, appointments):
    appointments.put(make_appointment(appointment_id="recent", date_time=NOW - timedelta(hours=1)))
    appointments.put(make_appointment(appointment_id="done", status=AppointmentStatus.completed))

    result = await engine.run_flagging_pass()

    assert result.processed_count == 0
    assert result.new_flags_count == 0


@pytest.mark.asyncio
async def test_ineligible_appointments_are_processed_but_not_flagged(engine, appointments):
    appointments.put(make_appointment(appointment_id="a1", opted_out=True))
    appointments.put(make_appointment(appointment_id="a2", patient_id="p2", confirmation_received=True))
    appointments.put(make_appointment(appointment_id="a3", patient_id="p3"))

    result = await engine.run_flagging_pass()

    assert result.processed_count == 3
    assert result.new_flags_count == 1
    assert engine.get_patient_flags("p1") == []
    assert len(engine.get_patient_flags("p3")) == 1


@pytest.mark.asyncio
async def test_failing_appointment_does_not_stop_the_others(store, appointments, settings):
    def policy(patient_id, doctor_id):
        if patient_id == "p2":
            return ComplianceResult(compliant=False, errors=["objection to processing on file"])
        return legitimate_interest_policy(patient_id, doctor_id)

    engine = FlaggingEngine(store, appointments, settings=settings,
                            compliance=ComplianceLogger(policy), clock=lambda: NOW)
    for i in range(1, 4):
        appointments.put(make_appointment(appointment_id=f"a{i}", patient_id=f"p{i}"))

    result = await engine.run_flagging_pass()

    assert result.processed_count == 3
    assert result.new_flags_count == 2
    assert result.errors == [
        "Error processing appointment a2: GDPR compliance check failed for patient flagging"
    ]
    assert engine.get_patient_flags("p2") == []
    assert [a.patient_id for a in engine.get_doctor_alerts("d1") if a.patient_id == "p2"] == []


@pytest.mark.asyncio
async def test_disabled_auto_flagging_is_respected(engine, appointments):
    engine.update_configuration("d1", FlaggingConfigurationUpdate(enable_auto_flagging=False))
    appointments.put(make_appointment())

    result = await engine.run_flagging_pass()

    assert result.new_flags_count == 0
    assert result.errors == []


@pytest.mark.asyncio
async def test_query_failure_aborts_pass(store, settings):
    engine = FlaggingEngine(store, FailingAppointmentStore(), settings=settings, clock=lambda: NOW)
    with pytest.raises(StoreUnavailableError):
        await engine.run_flagging_pass()


@pytest.mark.asyncio
async def test_query_timeout_aborts_pass(store, settings):
    settings.query_timeout_seconds = 0.05
    engine = FlaggingEngine(store, SlowAppointmentStore(), settings=settings, clock=lambda: NOW)
    with pytest.raises(StoreUnavailableError):
        await engine.run_flagging_pass()


@pytest.mark.asyncio
async def test_timed_out_unit_leaves_no_writes_behind(store, appointments, settings):
    def slow_policy(patient_id, doctor_id):
        time.sleep(0.3)
        return legitimate_interest_policy(patient_id, doctor_id)

    settings.unit_timeout_seconds = 0.05
    engine = FlaggingEngine(store, appointments, settings=settings,
                            compliance=ComplianceLogger(slow_policy), clock=lambda: NOW)
    appointments.put(make_appointment())

    result = await engine.run_flagging_pass()
    assert result.new_flags_count == 0
    assert result.errors == ["Error processing appointment a1: timed out after 0.05s"]

    # let the abandoned worker run to completion
    await asyncio.sleep(0.6)

    assert engine.get_patient_flags("p1") == []
    assert engine.get_doctor_alerts("d1") == []
    assert engine.risk.get_patient_flag_summary("p1") is None
    with store.transaction() as session:
        assert session.audit.list_for_patient("p1") == []

    # the next pass is free to flag the appointment
    settings.unit_timeout_seconds = 5
    retry = await engine.run_flagging_pass()
    assert retry.new_flags_count == 1


def test_first_claim_on_a_unit_wins():
    committed = UnitTicket()
    assert committed.claim_commit() is True
    assert committed.abandon() is False
    assert committed.claim_commit() is True

    abandoned = UnitTicket()
    assert abandoned.abandon() is True
    assert abandoned.claim_commit() is False


def test_abandoned_unit_rolls_back(engine, store):
    ticket = UnitTicket()
    ticket.abandon()

    with pytest.raises(StoreUnavailableError):
        engine.flagging_pass.process_appointment(make_appointment(), NOW, ticket)

    assert engine.get_patient_flags("p1") == []
    assert engine.get_doctor_alerts("d1") == []
    with store.transaction() as session:
        assert session.configurations.get("d1") is None


@pytest.mark.asyncio
async def test_many_appointments_are_flagged_concurrently(engine, appointments):
    for i in range(20):
        appointments.put(make_appointment(appointment_id=f"a{i}", patient_id=f"p{i}"))

    result = await engine.run_flagging_pass()

    assert result.processed_count == 20
    assert result.new_flags_count == 20
    assert len(engine.get_flagged_patients_for_doctor("d1")) == 20


@pytest.mark.asyncio
async def test_unanswered_reminders_from_yesterday_raise_one_flag_and_alert(engine, appointments):
    yesterday_ten = (NOW - timedelta(days=1)).replace(hour=10, minute=0)
    appointments.put(make_appointment(
        appointment_id="A1",
        doctor_id="D1",
        date_time=yesterday_ten,
        first_sent_at=NOW - timedelta(days=2),
        second_sent_at=NOW - timedelta(hours=3),
    ))

    result = await engine.run_flagging_pass()

    assert result.new_flags_count == 1
    [flag] = engine.get_patient_flags("p1")
    [alert] = engine.get_doctor_alerts("D1")
    assert flag.appointment_id == "A1"
    assert alert.flag_id == flag.id
    assert engine.get_patient_flag_summary("p1").risk_level == RiskLevel.medium
