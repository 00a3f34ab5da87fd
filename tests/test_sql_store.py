# tests/test_sql_store.py
import asyncio
import time
from datetime import timedelta, timezone

import pytest
from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool

from medflag import database, models
from medflag.compliance_logger import ComplianceLogger, legitimate_interest_policy
from medflag.database import build_engine, build_session_factory, create_tables
from medflag.engine import FlaggingEngine
from medflag.exceptions import AuditIntegrityError, ConcurrencyConflictError
from medflag.repositories.sql import SQLFlaggingStore, advisory_lock_key
from medflag.schemas import AmendmentRequest, AuditAction, FlagReason, FlagStatus, PerformerType, RiskLevel
from medflag.services.appointment_store import SQLAppointmentStore
from medflag.services.configuration_service import load_configuration
from medflag.services.flag_service import FlagService

from conftest import NOW, make_appointment


@pytest.fixture
def sql_engine(sql_store, sql_session_factory, settings):
    settings.pass_max_workers = 1
    return FlaggingEngine(sql_store, SQLAppointmentStore(sql_session_factory), settings=settings, clock=lambda: NOW)


def insert_appointment(session_factory, appointment):
    db = session_factory()
    notifications = appointment.notifications
    db.add(models.Appointment(
        id=appointment.id,
        doctor_id=appointment.doctor_id,
        patient_id=appointment.patient_id,
        patient_name=appointment.patient_name,
        patient_email=appointment.patient_email,
        date_time=appointment.date_time,
        status=appointment.status,
        first_notification_sent=notifications.first_notification.sent,
        first_notification_sent_at=notifications.first_notification.sent_at,
        second_notification_sent=notifications.second_notification.sent,
        second_notification_sent_at=notifications.second_notification.sent_at,
        confirmation_received=notifications.confirmation_received,
        opted_out=notifications.opted_out,
    ))
    db.commit()
    db.close()


def test_flag_round_trips_as_utc(sql_store, settings):
    service = FlagService(sql_store, settings=settings)
    created = service.create_flag(make_appointment(), now=NOW)

    loaded = service.get_flag(created.id)

    assert loaded.created_at == NOW
    assert loaded.created_at.tzinfo == timezone.utc
    assert loaded.appointment_date_time == NOW - timedelta(hours=3)
    assert loaded.status == FlagStatus.active


def test_unique_index_blocks_second_active_flag(sql_store, settings):
    service = FlagService(sql_store, settings=settings)
    flag = service.create_flag(make_appointment(), now=NOW)
    duplicate = flag.model_copy(update={"id": "duplicate"})

    with pytest.raises(ConcurrencyConflictError):
        with sql_store.transaction() as session:
            session.flags.add(duplicate)

    assert [f.id for f in service.get_patient_flags("p1")] == [flag.id]


def test_resolved_flags_do_not_count_against_the_index(sql_store, settings):
    service = FlagService(sql_store, settings=settings)
    first = service.create_flag(make_appointment(), now=NOW)
    service.resolve_flag(first.id, "done", "doc-1", now=NOW)
    second = service.create_flag(make_appointment(), now=NOW + timedelta(minutes=1))

    flags = service.get_patient_flags("p1")
    assert [f.id for f in flags] == [second.id, first.id]


def test_audit_rows_cannot_be_updated_or_deleted(sql_store, sql_session_factory, settings):
    FlagService(sql_store, settings=settings).create_flag(make_appointment(), now=NOW)

    db = sql_session_factory()
    try:
        row = db.query(models.FlagAuditLog).one()
        row.change_reason = "rewritten"
        with pytest.raises(AuditIntegrityError):
            db.flush()
        db.rollback()

        row = db.query(models.FlagAuditLog).one()
        db.delete(row)
        with pytest.raises(AuditIntegrityError):
            db.flush()
        db.rollback()

        assert db.query(models.FlagAuditLog).one().change_reason.startswith("Automatic flag")
    finally:
        db.close()


def test_failed_transaction_rolls_back(sql_store, settings):
    service = FlagService(sql_store, settings=settings)
    compliance = service.check_compliance("p1", "d1")

    with pytest.raises(RuntimeError):
        with sql_store.transaction() as session:
            config = load_configuration(session, "d1", NOW)
            service.insert_flag(
                session, make_appointment(), FlagReason.no_response_to_notifications, config, NOW, compliance
            )
            raise RuntimeError("boom")

    assert service.get_patient_flags("p1") == []
    with sql_store.transaction() as session:
        assert session.summaries.get("p1") is None
        assert session.audit.list_for_patient("p1") == []


@pytest.mark.asyncio
async def test_pass_over_sql_tables(sql_engine, sql_session_factory):
    insert_appointment(sql_session_factory, make_appointment())
    insert_appointment(sql_session_factory, make_appointment(appointment_id="a2", patient_id="p2", opted_out=True))

    result = await sql_engine.run_flagging_pass()
    again = await sql_engine.run_flagging_pass()

    assert result.processed_count == 2
    assert result.new_flags_count == 1
    assert again.new_flags_count == 0
    assert sql_engine.get_patient_flag_summary("p1").risk_level == RiskLevel.medium
    [alert] = sql_engine.get_doctor_alerts("d1")
    assert alert.created_at.tzinfo == timezone.utc


def test_amendments_and_versions_persist(sql_engine):
    flag = sql_engine.flags.create_flag(make_appointment(), now=NOW)
    sql_engine.apply_amendment(flag.id, AmendmentRequest(
        approved_changes={"severity": "high"},
        performed_by="doc-1",
        performed_by_type=PerformerType.doctor,
        reason="Escalated after review",
    ), now=NOW + timedelta(hours=1))

    [version] = sql_engine.get_flag_versions(flag.id)
    assert version.snapshot["severity"] == "medium"
    assert version.created_by_type == PerformerType.doctor
    audit = sql_engine.get_flag_audit(flag.id)
    assert [e.action for e in audit] == [AuditAction.created, AuditAction.amended]
    assert audit[-1].metadata["changes"]["severity"] == {"from": "medium", "to": "high"}
    assert sql_engine.get_patient_flag_summary("p1").risk_level == RiskLevel.high


def test_configuration_persists(sql_engine):
    config = sql_engine.get_configuration("d1")
    assert sql_engine.get_configuration("d1") == config


@pytest.fixture
def file_backed(tmp_path, settings):
    bind = build_engine(f"sqlite:///{tmp_path / 'flags.db'}")
    create_tables(bind)
    session_factory = build_session_factory(bind)
    settings.pass_max_workers = 4
    engine = FlaggingEngine(
        SQLFlaggingStore(session_factory), SQLAppointmentStore(session_factory),
        settings=settings, clock=lambda: NOW,
    )
    yield engine, session_factory
    bind.dispose()


@pytest.mark.asyncio
async def test_concurrent_units_for_one_patient_keep_summary_totals(file_backed):
    engine, session_factory = file_backed
    engine.get_configuration("d1")
    for i in range(6):
        insert_appointment(session_factory, make_appointment(
            appointment_id=f"a{i}", date_time=NOW - timedelta(hours=3 + i)
        ))

    result = await engine.run_flagging_pass()

    assert result.errors == []
    assert result.new_flags_count == 6
    flags = engine.get_patient_flags("p1")
    summary = engine.get_patient_flag_summary("p1")
    assert len(flags) == 6
    assert summary.total_flags == 6
    assert summary.active_flags == 6
    assert summary.flags_by_severity.medium == 6


def test_summary_lock_key_is_stable_and_fits_bigint():
    key = advisory_lock_key("p1")
    assert key == advisory_lock_key("p1")
    assert key != advisory_lock_key("p2")
    assert -2 ** 63 <= key < 2 ** 63


def test_summary_lock_is_a_no_op_on_sqlite(sql_store):
    with sql_store.transaction() as session:
        session.summaries.lock("p1")
        assert session.summaries.get("p1") is None


@pytest.mark.asyncio
async def test_timed_out_unit_is_rolled_back(sql_store, sql_session_factory, settings):
    def slow_policy(patient_id, doctor_id):
        time.sleep(0.3)
        return legitimate_interest_policy(patient_id, doctor_id)

    settings.unit_timeout_seconds = 0.05
    engine = FlaggingEngine(sql_store, SQLAppointmentStore(sql_session_factory), settings=settings,
                            compliance=ComplianceLogger(slow_policy), clock=lambda: NOW)
    insert_appointment(sql_session_factory, make_appointment())

    result = await engine.run_flagging_pass()
    await asyncio.sleep(0.6)

    assert result.errors == ["Error processing appointment a1: timed out after 0.05s"]
    assert engine.get_patient_flags("p1") == []
    assert engine.get_doctor_alerts("d1") == []
    assert engine.risk.get_patient_flag_summary("p1") is None


def test_statistics_and_dashboard_over_sql(sql_engine):
    sql_engine.flags.create_flag(make_appointment(), now=NOW)
    sql_engine.flags.create_flag(
        make_appointment(appointment_id="a2", patient_id="p2"), now=NOW - timedelta(days=6)
    )

    stats = sql_engine.get_flagging_statistics()
    assert stats.total_active_flags == 2
    assert stats.flags_today == 1
    assert stats.flags_this_week == 1
    assert stats.top_reasons[0].count == 2

    dashboard = sql_engine.get_doctor_flagging_summary("d1")
    assert dashboard.total_flagged == 2
    assert [f.patient_id for f in dashboard.recent_flags] == ["p1", "p2"]


def test_engines_are_only_built_on_request(tmp_path):
    assert not hasattr(database, "engine")
    assert not hasattr(database, "SessionLocal")

    bind = database.build_engine(f"sqlite:///{tmp_path / 'other.db'}", statement_timeout_seconds=2)
    try:
        assert not isinstance(bind.pool, StaticPool)
        database.create_tables(bind)
        assert "patient_flags" in inspect(bind).get_table_names()
    finally:
        bind.dispose()
