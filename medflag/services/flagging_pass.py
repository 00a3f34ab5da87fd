# medflag/services/flagging_pass.py
import asyncio
import threading
import time
from datetime import datetime, timedelta
from typing import Optional, Tuple

import structlog

from .. import schemas
from ..config import Settings, get_settings
from ..exceptions import StoreUnavailableError
from ..repositories.base import FlaggingStore
from ..schemas import AppointmentStatus
from .alert_service import add_alert
from .appointment_store import AppointmentStore
from .configuration_service import load_configuration
from .eligibility import evaluate
from .flag_service import FlagService

logger = structlog.get_logger(__name__)


class UnitTicket:
    """
    Decides who owns the outcome of one unit of work.

    The worker thread claims the ticket right before its transaction commits; the
    pass claims it when the unit runs out of time. Only the first claim wins, so a
    unit reported as timed out never commits afterwards.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._owner = None

    def _claim(self, owner: str) -> bool:
        with self._lock:
            if self._owner is None:
                self._owner = owner
            return self._owner == owner

    def claim_commit(self) -> bool:
        return self._claim("worker")

    def abandon(self) -> bool:
        return self._claim("pass")


def _discard_outcome(worker: asyncio.Future):
    # the unit was already reported as timed out
    if not worker.cancelled():
        worker.exception()


class FlaggingPass:
    """
    One scan over overdue scheduled appointments.

    Each appointment is an independent unit of work run on a worker thread with
    its own store transaction. A failing unit is recorded in the result and never
    stops the others; only a failed candidate query aborts the pass.
    """

    def __init__(
        self,
        store: FlaggingStore,
        appointments: AppointmentStore,
        flag_service: FlagService,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.appointments = appointments
        self.flag_service = flag_service
        self.settings = settings or get_settings()

    def process_appointment(
        self,
        appointment: schemas.Appointment,
        now: datetime,
        ticket: Optional[UnitTicket] = None,
    ) -> Tuple[bool, Optional[str]]:
        """Evaluate and, when eligible, flag one appointment. Returns (flagged, skip_reason)."""
        patient_id = appointment.flag_patient_id
        with self.store.transaction() as session:
            config = load_configuration(session, appointment.doctor_id, now)
            active = session.flags.find_active(appointment.id, patient_id) is not None
            decision = evaluate(appointment, config, now, active)

            if decision.should_flag:
                compliance = self.flag_service.check_compliance(patient_id, appointment.doctor_id)
                flag = self.flag_service.insert_flag(session, appointment, decision.reason, config, now, compliance)
                add_alert(session, flag, appointment, now, self.settings)

            if ticket is not None and not ticket.claim_commit():
                raise StoreUnavailableError(
                    f"Unit for appointment {appointment.id} abandoned after timeout"
                )
        return decision.should_flag, decision.skip_reason

    async def _fetch_candidates(self, now: datetime):
        due_before = now - timedelta(hours=self.settings.flagging_cutoff_hours)
        try:
            return await asyncio.wait_for(
                self.appointments.find_appointments(AppointmentStatus.scheduled, due_before),
                timeout=self.settings.query_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(
                f"Appointment query timed out after {self.settings.query_timeout_seconds}s"
            ) from e
        except StoreUnavailableError:
            raise
        except Exception as e:
            raise StoreUnavailableError(f"Appointment query failed: {str(e)}") from e

    async def run(self, now: Optional[datetime] = None) -> schemas.FlaggingPassResult:
        now = now or schemas.utcnow()
        started = time.perf_counter()

        candidates = await self._fetch_candidates(now)
        result = schemas.FlaggingPassResult(processed_count=len(candidates))
        semaphore = asyncio.Semaphore(self.settings.pass_max_workers)

        async def run_unit(appointment: schemas.Appointment):
            async with semaphore:
                ticket = UnitTicket()
                worker = asyncio.ensure_future(
                    asyncio.to_thread(self.process_appointment, appointment, now, ticket)
                )
                try:
                    try:
                        flagged, skip_reason = await asyncio.wait_for(
                            asyncio.shield(worker), timeout=self.settings.unit_timeout_seconds
                        )
                    except asyncio.TimeoutError:
                        if ticket.abandon():
                            worker.add_done_callback(_discard_outcome)
                            logger.warning(
                                "flagging_unit_timed_out",
                                appointment_id=appointment.id,
                                timeout_seconds=self.settings.unit_timeout_seconds,
                            )
                            return False, f"timed out after {self.settings.unit_timeout_seconds}s"
                        # already committing, its outcome stands
                        flagged, skip_reason = await worker
                except Exception as e:
                    logger.error("flagging_unit_failed", appointment_id=appointment.id, error=str(e))
                    return False, str(e)
                if not flagged:
                    logger.debug("appointment_not_flagged", appointment_id=appointment.id, skip_reason=skip_reason)
                return flagged, None

        outcomes = await asyncio.gather(*(run_unit(a) for a in candidates))

        for appointment, (flagged, error) in zip(candidates, outcomes):
            if flagged:
                result.new_flags_count += 1
            elif error is not None:
                result.errors.append(f"Error processing appointment {appointment.id}: {error}")

        logger.info(
            "flagging_pass_completed",
            processed=result.processed_count,
            new_flags=result.new_flags_count,
            errors=len(result.errors),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return result


async def run_flagging_pass(
    store: FlaggingStore,
    appointments: AppointmentStore,
    now: Optional[datetime] = None,
    flag_service: Optional[FlagService] = None,
    settings: Optional[Settings] = None,
) -> schemas.FlaggingPassResult:
    settings = settings or get_settings()
    flag_service = flag_service or FlagService(store, settings=settings)
    return await FlaggingPass(store, appointments, flag_service, settings).run(now)
