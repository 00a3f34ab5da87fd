# medflag/routers/flagging.py
from typing import Optional

from fastapi import APIRouter, Depends

from .. import schemas
from ..engine import FlaggingEngine, get_flagging_engine
from ..exceptions import FlaggingError
from .errors import http_error

router = APIRouter(
    prefix="/flagging",
    tags=["Flagging Pass"],
)


@router.post("/run", response_model=schemas.FlaggingPassResult)
async def run_flagging_pass(
    request: Optional[schemas.FlaggingRunRequest] = None,
    engine: FlaggingEngine = Depends(get_flagging_engine)
):
    """
    Run one scan over overdue appointments. Normally triggered by the scheduler;
    exposed here for operators.
    """
    try:
        return await engine.run_flagging_pass(now=request.now if request else None)
    except FlaggingError as e:
        raise http_error(e)


@router.get("/statistics", response_model=schemas.FlaggingStatistics)
def read_flagging_statistics(engine: FlaggingEngine = Depends(get_flagging_engine)):
    try:
        return engine.get_flagging_statistics()
    except FlaggingError as e:
        raise http_error(e)
