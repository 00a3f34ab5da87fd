# medflag/services/eligibility.py
"""
Decides whether an appointment's patient should be flagged for not responding
to reminder notifications.

Pure functions only; the caller supplies the clock and whether an active flag
already exists for the appointment.
"""
from datetime import datetime
from typing import NamedTuple, Optional

from ..schemas import Appointment, AppointmentStatus, FlaggingConfiguration, FlagReason


class EligibilityDecision(NamedTuple):
    should_flag: bool
    reason: Optional[FlagReason] = None
    skip_reason: Optional[str] = None


def _skip(skip_reason: str) -> EligibilityDecision:
    return EligibilityDecision(False, None, skip_reason)


def evaluate(
    appointment: Appointment,
    config: FlaggingConfiguration,
    now: datetime,
    active_flag_exists: bool,
) -> EligibilityDecision:
    notifications = appointment.notifications

    if notifications.confirmation_received or appointment.status == AppointmentStatus.confirmed:
        return _skip("confirmed")

    if notifications.opted_out:
        return _skip("opted_out")

    if notifications.sent_count == 0:
        return _skip("no_notifications_sent")

    if not config.enable_auto_flagging:
        return _skip("auto_flagging_disabled")

    last_notification_time = notifications.last_sent_at
    if last_notification_time is None:
        return _skip("no_notification_timestamp")

    hours_since_notification = (now - last_notification_time).total_seconds() / 3600
    if hours_since_notification < config.response_timeout_hours:
        return _skip("within_response_window")

    if now <= appointment.date_time:
        return _skip("appointment_not_passed")

    if active_flag_exists:
        return _skip("already_flagged")

    return EligibilityDecision(True, FlagReason.no_response_to_notifications, None)


def should_flag_patient(
    appointment: Appointment,
    config: FlaggingConfiguration,
    now: datetime,
    active_flag_exists: bool = False,
) -> bool:
    return evaluate(appointment, config, now, active_flag_exists).should_flag
