# medflag/routers/alerts.py
from fastapi import APIRouter, Depends
from typing import List

from .. import schemas
from ..engine import FlaggingEngine, get_flagging_engine
from ..exceptions import FlaggingError
from .errors import http_error

router = APIRouter(
    tags=["Doctor Alerts"],
    responses={404: {"description": "Not found"}},
)


@router.get("/doctors/{doctor_id}/alerts", response_model=List[schemas.Alert])
def read_doctor_alerts(
    doctor_id: str,
    unread_only: bool = False,
    engine: FlaggingEngine = Depends(get_flagging_engine)
):
    """
    Newest alerts for a doctor, at most one page.
    """
    try:
        return engine.get_doctor_alerts(doctor_id, unread_only=unread_only)
    except FlaggingError as e:
        raise http_error(e)


@router.post("/alerts/{alert_id}/read", response_model=schemas.Alert)
def mark_alert_read(alert_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    try:
        return engine.mark_alert_as_read(alert_id)
    except FlaggingError as e:
        raise http_error(e)


@router.post("/alerts/{alert_id}/acknowledge", response_model=schemas.Alert)
def acknowledge_alert(alert_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    try:
        return engine.acknowledge_alert(alert_id)
    except FlaggingError as e:
        raise http_error(e)


@router.post("/alerts/{alert_id}/dismiss", response_model=schemas.Alert)
def dismiss_alert(alert_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    try:
        return engine.dismiss_alert(alert_id)
    except FlaggingError as e:
        raise http_error(e)
