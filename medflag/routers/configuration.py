# medflag/routers/configuration.py
from fastapi import APIRouter, Depends

from .. import schemas
from ..engine import FlaggingEngine, get_flagging_engine
from ..exceptions import FlaggingError
from .errors import http_error

router = APIRouter(
    tags=["Flagging Configuration"],
    responses={404: {"description": "Not found"}},
)


@router.get("/doctors/{doctor_id}/flagging-configuration", response_model=schemas.FlaggingConfiguration)
def read_flagging_configuration(doctor_id: str, engine: FlaggingEngine = Depends(get_flagging_engine)):
    """
    Doctor's flagging thresholds; defaults are stored on first read.
    """
    try:
        return engine.get_configuration(doctor_id)
    except FlaggingError as e:
        raise http_error(e)


@router.put("/doctors/{doctor_id}/flagging-configuration", response_model=schemas.FlaggingConfiguration)
def update_flagging_configuration(
    doctor_id: str,
    update: schemas.FlaggingConfigurationUpdate,
    engine: FlaggingEngine = Depends(get_flagging_engine)
):
    try:
        return engine.update_configuration(doctor_id, update)
    except FlaggingError as e:
        raise http_error(e)
