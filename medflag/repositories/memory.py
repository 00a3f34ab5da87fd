# medflag/repositories/memory.py
"""
In-memory flagging store used by tests and local runs.

Transactions are serialized by one re-entrant lock. The outermost transaction
snapshots every table on entry and restores the snapshot if its block raises,
so a failed unit of work leaves nothing behind.
"""
import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from .. import schemas
from ..exceptions import ConcurrencyConflictError, NotFoundError
from .base import (
    FlagRepository, AlertRepository, SummaryRepository, AuditRepository,
    ConfigurationRepository, VersionRepository, StoreSession, FlaggingStore
)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryFlagRepository(FlagRepository):
    def __init__(self, tables: "_Tables"):
        self._tables = tables

    def add(self, flag: schemas.Flag) -> schemas.Flag:
        if flag.status == schemas.FlagStatus.active and flag.appointment_id is not None:
            if self.find_active(flag.appointment_id, flag.patient_id) is not None:
                raise ConcurrencyConflictError(
                    f"Active flag already exists for appointment {flag.appointment_id}"
                )
        self._tables.flags[flag.id] = _copy(flag)
        return flag

    def get(self, flag_id: str) -> Optional[schemas.Flag]:
        return _copy(self._tables.flags.get(flag_id))

    def update(self, flag: schemas.Flag) -> schemas.Flag:
        if flag.id not in self._tables.flags:
            raise NotFoundError("Flag", flag.id)
        self._tables.flags[flag.id] = _copy(flag)
        return flag

    def delete(self, flag_id: str) -> None:
        self._tables.flags.pop(flag_id, None)

    def find_active(self, appointment_id: str, patient_id: str) -> Optional[schemas.Flag]:
        for flag in self._tables.flags.values():
            if (flag.appointment_id == appointment_id and flag.patient_id == patient_id
                    and flag.status == schemas.FlagStatus.active):
                return _copy(flag)
        return None

    def list_for_patient(self, patient_id: str, include_resolved: bool = True) -> List[schemas.Flag]:
        flags = [
            f for f in self._tables.flags.values()
            if f.patient_id == patient_id and (include_resolved or f.status == schemas.FlagStatus.active)
        ]
        flags.sort(key=lambda f: f.created_at, reverse=True)
        return [_copy(f) for f in flags]

    def list_expired(self, now: datetime) -> List[schemas.Flag]:
        return [_copy(f) for f in self._tables.flags.values() if f.data_retention_expiry <= now]

    def list_active(self, doctor_id: Optional[str] = None) -> List[schemas.Flag]:
        flags = [
            f for f in self._tables.flags.values()
            if f.status == schemas.FlagStatus.active and (doctor_id is None or f.doctor_id == doctor_id)
        ]
        flags.sort(key=lambda f: f.created_at, reverse=True)
        return [_copy(f) for f in flags]

    def list_created_since(self, since: datetime) -> List[schemas.Flag]:
        return [_copy(f) for f in self._tables.flags.values() if f.created_at >= since]

    def patient_ids_for_doctor(self, doctor_id: str) -> List[str]:
        return sorted({f.patient_id for f in self._tables.flags.values() if f.doctor_id == doctor_id})


class InMemoryAlertRepository(AlertRepository):
    def __init__(self, tables: "_Tables"):
        self._tables = tables

    def add(self, alert: schemas.Alert) -> schemas.Alert:
        self._tables.alerts[alert.id] = _copy(alert)
        return alert

    def get(self, alert_id: str) -> Optional[schemas.Alert]:
        return _copy(self._tables.alerts.get(alert_id))

    def update(self, alert: schemas.Alert) -> schemas.Alert:
        if alert.id not in self._tables.alerts:
            raise NotFoundError("Alert", alert.id)
        self._tables.alerts[alert.id] = _copy(alert)
        return alert

    def list_for_doctor(self, doctor_id: str, unread_only: bool, limit: int) -> List[schemas.Alert]:
        alerts = [
            a for a in self._tables.alerts.values()
            if a.doctor_id == doctor_id and (not unread_only or not a.read)
        ]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return [_copy(a) for a in alerts[:limit]]


class InMemorySummaryRepository(SummaryRepository):
    def __init__(self, tables: "_Tables"):
        self._tables = tables

    def get(self, patient_id: str) -> Optional[schemas.FlagSummary]:
        return _copy(self._tables.summaries.get(patient_id))

    def save(self, summary: schemas.FlagSummary) -> schemas.FlagSummary:
        self._tables.summaries[summary.patient_id] = _copy(summary)
        return summary

    def delete(self, patient_id: str) -> None:
        self._tables.summaries.pop(patient_id, None)

    def list_with_active_flags(self) -> List[schemas.FlagSummary]:
        return [_copy(s) for s in self._tables.summaries.values() if s.active_flags > 0]


class InMemoryAuditRepository(AuditRepository):
    def __init__(self, tables: "_Tables"):
        self._tables = tables

    def append(self, entry: schemas.AuditEntry) -> schemas.AuditEntry:
        self._tables.audit.append(_copy(entry))
        return entry

    def list_for_flag(self, flag_id: str) -> List[schemas.AuditEntry]:
        return [_copy(e) for e in self._tables.audit if e.flag_id == flag_id]

    def list_for_patient(self, patient_id: str) -> List[schemas.AuditEntry]:
        return [_copy(e) for e in self._tables.audit if e.patient_id == patient_id]


class InMemoryConfigurationRepository(ConfigurationRepository):
    def __init__(self, tables: "_Tables"):
        self._tables = tables

    def get(self, doctor_id: str) -> Optional[schemas.FlaggingConfiguration]:
        return _copy(self._tables.configurations.get(doctor_id))

    def add(self, config: schemas.FlaggingConfiguration) -> schemas.FlaggingConfiguration:
        if config.doctor_id in self._tables.configurations:
            raise ConcurrencyConflictError(f"Configuration for {config.doctor_id} already exists")
        self._tables.configurations[config.doctor_id] = _copy(config)
        return config

    def update(self, config: schemas.FlaggingConfiguration) -> schemas.FlaggingConfiguration:
        if config.doctor_id not in self._tables.configurations:
            raise NotFoundError("FlaggingConfiguration", config.doctor_id)
        self._tables.configurations[config.doctor_id] = _copy(config)
        return config


class InMemoryVersionRepository(VersionRepository):
    def __init__(self, tables: "_Tables"):
        self._tables = tables

    def add(self, version: schemas.FlagVersion) -> schemas.FlagVersion:
        self._tables.versions.append(_copy(version))
        return version

    def list_for_flag(self, flag_id: str) -> List[schemas.FlagVersion]:
        versions = [v for v in self._tables.versions if v.flag_id == flag_id]
        versions.sort(key=lambda v: v.version_number)
        return [_copy(v) for v in versions]


class _Tables:
    def __init__(self):
        self.flags: Dict[str, schemas.Flag] = {}
        self.alerts: Dict[str, schemas.Alert] = {}
        self.summaries: Dict[str, schemas.FlagSummary] = {}
        self.configurations: Dict[str, schemas.FlaggingConfiguration] = {}
        self.audit: List[schemas.AuditEntry] = []
        self.versions: List[schemas.FlagVersion] = []


class InMemoryFlaggingStore(FlaggingStore):
    """Process-local store; replace with SQLFlaggingStore in production."""

    def __init__(self):
        self._tables = _Tables()
        self._lock = threading.RLock()
        self._depth = 0
        self._session = StoreSession(
            flags=InMemoryFlagRepository(self._tables),
            alerts=InMemoryAlertRepository(self._tables),
            summaries=InMemorySummaryRepository(self._tables),
            audit=InMemoryAuditRepository(self._tables),
            configurations=InMemoryConfigurationRepository(self._tables),
            versions=InMemoryVersionRepository(self._tables),
        )

    @contextmanager
    def transaction(self):
        with self._lock:
            outermost = self._depth == 0
            snapshot = copy.deepcopy(self._tables.__dict__) if outermost else None
            self._depth += 1
            try:
                yield self._session
            except BaseException:
                if outermost:
                    self._tables.__dict__.update(snapshot)
                raise
            finally:
                self._depth -= 1
