# medflag/services/risk_service.py
from datetime import datetime
from typing import List, Optional

import structlog

from .. import schemas
from ..core.logging import hash_identifier
from ..repositories.base import FlaggingStore, StoreSession
from ..schemas import FlagSeverity, FlagStatus, RiskLevel

logger = structlog.get_logger(__name__)

RECENT_FLAGS_LIMIT = 5
NEEDS_ATTENTION_FLAG_COUNT = 2


def calculate_risk_level(counts: schemas.SeverityCounts) -> RiskLevel:
    if counts.high > 0:
        return RiskLevel.high
    if counts.medium > 2:
        return RiskLevel.high
    if counts.medium > 0:
        return RiskLevel.medium
    if counts.low > 3:
        return RiskLevel.medium
    if counts.low > 0:
        return RiskLevel.low
    return RiskLevel.none


def build_summary(patient_id: str, flags: List[schemas.Flag], now: datetime) -> schemas.FlagSummary:
    """Fold a non-empty flag set into a summary. ``flags`` must be newest first."""
    counts = schemas.SeverityCounts()
    for flag in flags:
        if flag.severity == FlagSeverity.low:
            counts.low += 1
        elif flag.severity == FlagSeverity.medium:
            counts.medium += 1
        elif flag.severity == FlagSeverity.high:
            counts.high += 1

    active = sum(1 for f in flags if f.status == FlagStatus.active)
    resolution_dates = [f.resolved_at for f in flags if f.resolved_at is not None]
    created_dates = [f.created_at for f in flags]
    latest = flags[0]

    return schemas.FlagSummary(
        patient_id=patient_id,
        patient_name=latest.patient_name,
        patient_email=latest.patient_email,
        total_flags=len(flags),
        active_flags=active,
        resolved_flags=len(flags) - active,
        flags_by_severity=counts,
        risk_level=calculate_risk_level(counts),
        first_flag_date=min(created_dates),
        last_flag_date=max(created_dates),
        last_resolution_date=max(resolution_dates) if resolution_dates else None,
        last_updated=now,
    )


def recompute_summary(session: StoreSession, patient_id: str, now: datetime) -> Optional[schemas.FlagSummary]:
    """Rebuild the patient's summary from their flags; deletes it when none remain."""
    # taken before reading the flags
    session.summaries.lock(patient_id)
    flags = session.flags.list_for_patient(patient_id, include_resolved=True)
    if not flags:
        session.summaries.delete(patient_id)
        logger.debug("flag_summary_deleted", patient=hash_identifier(patient_id))
        return None

    summary = build_summary(patient_id, flags, now)
    session.summaries.save(summary)
    logger.debug(
        "flag_summary_recomputed",
        patient=hash_identifier(patient_id),
        total=summary.total_flags,
        active=summary.active_flags,
        risk_level=summary.risk_level.value,
    )
    return summary


class RiskService:
    def __init__(self, store: FlaggingStore):
        self.store = store

    def recompute_summary(self, patient_id: str, now: Optional[datetime] = None) -> Optional[schemas.FlagSummary]:
        with self.store.transaction() as session:
            return recompute_summary(session, patient_id, now or schemas.utcnow())

    def get_patient_flag_summary(self, patient_id: str) -> Optional[schemas.FlagSummary]:
        with self.store.transaction() as session:
            return session.summaries.get(patient_id)

    def get_flagged_patients_for_doctor(self, doctor_id: str) -> List[schemas.FlaggedPatient]:
        with self.store.transaction() as session:
            own_patients = set(session.flags.patient_ids_for_doctor(doctor_id))
            summaries = [
                s for s in session.summaries.list_with_active_flags()
                if s.patient_id in own_patients
            ]

        flagged = [
            schemas.FlaggedPatient(
                patient_id=s.patient_id,
                patient_name=s.patient_name,
                flag_count=s.active_flags,
                risk_level=s.risk_level,
                last_flag_date=s.last_flag_date,
            )
            for s in summaries
        ]
        # newest first, patients without a date last
        flagged.sort(key=lambda p: p.last_flag_date.timestamp() if p.last_flag_date else float("-inf"), reverse=True)
        return flagged

    def get_doctor_flagging_summary(self, doctor_id: str) -> schemas.DoctorFlaggingSummary:
        """Counts over the doctor's flagged patients plus each of the five most
        recently flagged patients' newest active flag."""
        patients = self.get_flagged_patients_for_doctor(doctor_id)
        with self.store.transaction() as session:
            active_flags = session.flags.list_active(doctor_id)

        recent, seen = [], set()
        for flag in active_flags:
            if flag.patient_id in seen:
                continue
            seen.add(flag.patient_id)
            recent.append(schemas.RecentFlag(
                flag_id=flag.id,
                patient_id=flag.patient_id,
                patient_name=flag.patient_name,
                flag_date=flag.created_at,
                reason=flag.reason,
            ))
            if len(recent) == RECENT_FLAGS_LIMIT:
                break

        return schemas.DoctorFlaggingSummary(
            total_flagged=len(patients),
            high_risk=sum(1 for p in patients if p.risk_level == RiskLevel.high),
            needs_attention=sum(1 for p in patients if p.flag_count > NEEDS_ATTENTION_FLAG_COUNT),
            recent_flags=recent,
        )
