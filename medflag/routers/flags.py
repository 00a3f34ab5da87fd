# medflag/routers/flags.py
from fastapi import APIRouter, Depends, status
from typing import List

from .. import schemas
from ..engine import FlaggingEngine, get_flagging_engine
from ..exceptions import FlaggingError
from .errors import http_error

router = APIRouter(
    tags=["Patient Flags"],
    responses={404: {"description": "Not found"}},
)


@router.get("/patients/{patient_id}/flag-summary", response_model=schemas.FlagSummary)
def read_patient_flag_summary(patient_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    """
    Aggregated flag counts and risk level for one patient.
    """
    try:
        return engine.get_patient_flag_summary(patient_id)
    except FlaggingError as e:
        raise http_error(e)


@router.get("/patients/{patient_id}/flags", response_model=List[schemas.Flag])
def read_patient_flags(
    patient_id: str,
    include_resolved: bool = True,
    engine: FlaggingEngine = Depends(get_flagging_engine)
):
    """
    Flags for one patient, newest first.
    """
    try:
        return engine.get_patient_flags(patient_id, include_resolved=include_resolved)
    except FlaggingError as e:
        raise http_error(e)


@router.post("/flags", response_model=schemas.Flag, status_code=status.HTTP_201_CREATED)
def create_manual_flag(request: schemas.ManualFlagCreate, engine: FlaggingEngine = Depends(get_flagging_engine)):
    """
    Flag a patient by hand. Goes through the same compliance check and audit
    trail as automatic flags.
    """
    try:
        return engine.create_manual_flag(request)
    except FlaggingError as e:
        raise http_error(e)


@router.post("/flags/{flag_id}/resolve", response_model=schemas.Flag)
def resolve_flag(
    flag_id: str,
    request: schemas.ResolveFlagRequest,
    engine: FlaggingEngine = Depends(get_flagging_engine)
):
    try:
        return engine.resolve_patient_flag(
            flag_id, request.resolution_notes, request.resolved_by, request.resolved_by_type
        )
    except FlaggingError as e:
        raise http_error(e)


@router.post("/flags/{flag_id}/amendments", response_model=schemas.Flag)
def amend_flag(
    flag_id: str,
    request: schemas.AmendmentRequest,
    engine: FlaggingEngine = Depends(get_flagging_engine)
):
    """
    Apply approved changes to a flag. The previous state is kept as a version.
    """
    try:
        return engine.apply_amendment(flag_id, request)
    except FlaggingError as e:
        raise http_error(e)


@router.get("/flags/{flag_id}/versions", response_model=List[schemas.FlagVersion])
def read_flag_versions(flag_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    try:
        return engine.get_flag_versions(flag_id)
    except FlaggingError as e:
        raise http_error(e)


@router.get("/flags/{flag_id}/audit", response_model=List[schemas.AuditEntry])
def read_flag_audit(flag_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    """
    Compliance trail of one flag, oldest first.
    """
    try:
        return engine.get_flag_audit(flag_id)
    except FlaggingError as e:
        raise http_error(e)


@router.get("/doctors/{doctor_id}/flagged-patients", response_model=List[schemas.FlaggedPatient])
def read_flagged_patients(doctor_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    try:
        return engine.get_flagged_patients_for_doctor(doctor_id)
    except FlaggingError as e:
        raise http_error(e)


@router.get("/doctors/{doctor_id}/flagging-summary", response_model=schemas.DoctorFlaggingSummary)
def read_doctor_flagging_summary(doctor_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    """Dashboard widget: flagged, high-risk and needs-attention counts plus recent flags."""
    try:
        return engine.get_doctor_flagging_summary(doctor_id)
    except FlaggingError as e:
        raise http_error(e)
