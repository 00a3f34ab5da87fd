# medflag/routers/health.py
from fastapi import APIRouter, Depends
from typing import Dict, Any

from ..engine import FlaggingEngine, get_flagging_engine
from ..exceptions import FlaggingError
from .errors import http_error

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
)


@router.get("")
def health_check(engine: FlaggingEngine = Depends(get_flagging_engine)) -> Dict[str, Any]:
    """
    Liveness plus a round trip through the flag store.
    """
    try:
        return engine.health()
    except FlaggingError as e:
        raise http_error(e)
