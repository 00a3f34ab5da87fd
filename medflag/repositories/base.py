# medflag/repositories/base.py
"""
Persistence interfaces for the flagging engine.

Every mutation happens inside ``FlaggingStore.transaction()``; the yielded
``StoreSession`` groups one repository per aggregate. Leaving the block
normally commits, raising rolls back everything written inside it.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import List, Optional

from .. import schemas


class FlagRepository(ABC):

    @abstractmethod
    def add(self, flag: schemas.Flag) -> schemas.Flag:
        """Insert a flag. Raises ConcurrencyConflictError if it would be a second
        active flag for the same appointment and patient."""

    @abstractmethod
    def get(self, flag_id: str) -> Optional[schemas.Flag]:
        ...

    @abstractmethod
    def update(self, flag: schemas.Flag) -> schemas.Flag:
        ...

    @abstractmethod
    def delete(self, flag_id: str) -> None:
        ...

    @abstractmethod
    def find_active(self, appointment_id: str, patient_id: str) -> Optional[schemas.Flag]:
        ...

    @abstractmethod
    def list_for_patient(self, patient_id: str, include_resolved: bool = True) -> List[schemas.Flag]:
        """Flags for a patient, newest first."""

    @abstractmethod
    def list_expired(self, now: datetime) -> List[schemas.Flag]:
        ...

    @abstractmethod
    def list_active(self, doctor_id: Optional[str] = None) -> List[schemas.Flag]:
        """Active flags, optionally only the doctor's, newest first."""

    @abstractmethod
    def list_created_since(self, since: datetime) -> List[schemas.Flag]:
        ...

    @abstractmethod
    def patient_ids_for_doctor(self, doctor_id: str) -> List[str]:
        ...


class AlertRepository(ABC):

    @abstractmethod
    def add(self, alert: schemas.Alert) -> schemas.Alert:
        ...

    @abstractmethod
    def get(self, alert_id: str) -> Optional[schemas.Alert]:
        ...

    @abstractmethod
    def update(self, alert: schemas.Alert) -> schemas.Alert:
        ...

    @abstractmethod
    def list_for_doctor(self, doctor_id: str, unread_only: bool, limit: int) -> List[schemas.Alert]:
        """Alerts for a doctor, newest first."""


class SummaryRepository(ABC):

    def lock(self, patient_id: str) -> None:
        """Hold off other rebuilds of this patient's summary until the transaction ends.

        A no-op for stores whose transactions are already serialized.
        """

    @abstractmethod
    def get(self, patient_id: str) -> Optional[schemas.FlagSummary]:
        ...

    @abstractmethod
    def save(self, summary: schemas.FlagSummary) -> schemas.FlagSummary:
        """Overwrite the stored summary wholesale."""

    @abstractmethod
    def delete(self, patient_id: str) -> None:
        ...

    @abstractmethod
    def list_with_active_flags(self) -> List[schemas.FlagSummary]:
        ...


class AuditRepository(ABC):
    """Append-only; there is deliberately no update or delete."""

    @abstractmethod
    def append(self, entry: schemas.AuditEntry) -> schemas.AuditEntry:
        ...

    @abstractmethod
    def list_for_flag(self, flag_id: str) -> List[schemas.AuditEntry]:
        """Entries for one flag, oldest first."""

    @abstractmethod
    def list_for_patient(self, patient_id: str) -> List[schemas.AuditEntry]:
        ...


class ConfigurationRepository(ABC):

    @abstractmethod
    def get(self, doctor_id: str) -> Optional[schemas.FlaggingConfiguration]:
        ...

    @abstractmethod
    def add(self, config: schemas.FlaggingConfiguration) -> schemas.FlaggingConfiguration:
        ...

    @abstractmethod
    def update(self, config: schemas.FlaggingConfiguration) -> schemas.FlaggingConfiguration:
        ...


class VersionRepository(ABC):

    @abstractmethod
    def add(self, version: schemas.FlagVersion) -> schemas.FlagVersion:
        ...

    @abstractmethod
    def list_for_flag(self, flag_id: str) -> List[schemas.FlagVersion]:
        """Snapshots for one flag, oldest first."""


class StoreSession:
    def __init__(
        self,
        flags: FlagRepository,
        alerts: AlertRepository,
        summaries: SummaryRepository,
        audit: AuditRepository,
        configurations: ConfigurationRepository,
        versions: VersionRepository,
    ):
        self.flags = flags
        self.alerts = alerts
        self.summaries = summaries
        self.audit = audit
        self.configurations = configurations
        self.versions = versions


class FlaggingStore(ABC):

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Context manager yielding a StoreSession bound to one atomic unit of work."""
