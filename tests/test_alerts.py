# tests/test_alerts.py
from datetime import datetime, timedelta, timezone

import pytest

from medflag.exceptions import NotFoundError
from medflag.schemas import AlertSeverity, AlertType, FlagSeverity, FlagStatus
from medflag.services.alert_service import AlertService, build_alert, local_date_time

from conftest import NOW, make_appointment


@pytest.fixture
def flag(engine):
    return engine.flags.create_flag(make_appointment(), now=NOW)


def test_alert_fields(flag, settings):
    appointment = make_appointment(date_time=datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc))
    alert = build_alert(flag, appointment, NOW, settings)

    assert alert.type == AlertType.patient_flagged
    assert alert.severity == AlertSeverity.warning
    assert alert.title == "Patient flagged for no response"
    assert alert.message == (
        "Ana Popescu was flagged for not responding to the notifications "
        "for the appointment on 15.03.2024 at 11:00."
    )
    assert alert.requires_action is True
    assert alert.action_deadline == NOW + timedelta(hours=24)
    assert alert.flag_id == flag.id
    assert alert.read is False


@pytest.mark.parametrize("severity,expected", [
    (FlagSeverity.low, AlertSeverity.info),
    (FlagSeverity.medium, AlertSeverity.warning),
    (FlagSeverity.high, AlertSeverity.urgent),
])
def test_alert_severity_follows_flag_severity(flag, settings, severity, expected):
    flag.severity = severity
    assert build_alert(flag, None, NOW, settings).severity == expected


def test_local_time_uses_display_timezone(settings):
    # Bucharest is UTC+3 in summer
    assert local_date_time(datetime(2024, 7, 1, 21, 30, tzinfo=timezone.utc), settings) == ("02.07.2024", "00:30")


def test_mark_read_keeps_first_timestamp(engine, flag):
    alert = engine.alerts.create_alert(flag, make_appointment(), now=NOW)

    first = engine.alerts.mark_read(alert.id, now=NOW + timedelta(minutes=1))
    second = engine.alerts.mark_read(alert.id, now=NOW + timedelta(minutes=5))

    assert first.read is True
    assert first.read_at == NOW + timedelta(minutes=1)
    assert second.read_at == NOW + timedelta(minutes=1)


def test_acknowledge_and_dismiss_are_independent(engine, flag):
    alert = engine.alerts.create_alert(flag, now=NOW)

    acknowledged = engine.acknowledge_alert(alert.id)
    assert acknowledged.acknowledged is True
    assert acknowledged.read is False
    assert acknowledged.dismissed is False

    dismissed = engine.dismiss_alert(alert.id)
    assert dismissed.dismissed is True
    assert dismissed.acknowledged is True
    assert dismissed.dismissed_at == NOW


def test_unknown_alert(engine):
    with pytest.raises(NotFoundError):
        engine.mark_alert_as_read("missing")


def test_alert_transitions_do_not_touch_the_flag(engine, flag):
    alert = engine.alerts.create_alert(flag, now=NOW)
    engine.dismiss_alert(alert.id)
    assert engine.flags.get_flag(flag.id).status == FlagStatus.active


def test_resolving_flag_leaves_alert_untouched(engine, flag):
    alert = engine.alerts.create_alert(flag, now=NOW)
    engine.resolve_patient_flag(flag.id, "Patient confirmed by phone", "doc-1")

    [stored] = engine.get_doctor_alerts("d1")
    assert stored.id == alert.id
    assert stored.read is False
    assert stored.dismissed is False


def test_doctor_alerts_newest_first_and_unread_filter(engine, flag):
    older = engine.alerts.create_alert(flag, now=NOW)
    newer = engine.alerts.create_alert(flag, now=NOW + timedelta(minutes=10))
    engine.mark_alert_as_read(newer.id)

    assert [a.id for a in engine.get_doctor_alerts("d1")] == [newer.id, older.id]
    assert [a.id for a in engine.get_doctor_alerts("d1", unread_only=True)] == [older.id]
    assert engine.get_doctor_alerts("someone-else") == []


def test_doctor_alerts_capped_at_page_size(store, flag, settings):
    settings.alert_page_size = 3
    service = AlertService(store, settings=settings)
    for i in range(5):
        service.create_alert(flag, now=NOW + timedelta(minutes=i))

    alerts = service.get_doctor_alerts("d1")
    assert len(alerts) == 3
    assert alerts[0].created_at == NOW + timedelta(minutes=4)
