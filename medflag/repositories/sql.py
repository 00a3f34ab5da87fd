# medflag/repositories/sql.py
"""
SQLAlchemy-backed flagging store.

The at-most-one-active-flag rule is enforced by the partial unique index
``uq_flags_active_appointment_patient``; a concurrent insert that loses the race
surfaces as ConcurrencyConflictError. Summary rebuilds for one patient are
serialized on PostgreSQL with a transaction-scoped advisory lock.
"""
import hashlib
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import desc, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models, schemas
from ..exceptions import (
    ConcurrencyConflictError, FlaggingError, NotFoundError, StoreUnavailableError
)
from .base import (
    FlagRepository, AlertRepository, SummaryRepository, AuditRepository,
    ConfigurationRepository, VersionRepository, StoreSession, FlaggingStore
)

logger = structlog.get_logger(__name__)


def advisory_lock_key(patient_id: str) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.blake2b(f"flag-summary:{patient_id}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _flush(db: Session, what: str):
    try:
        db.flush()
    except IntegrityError as e:
        raise ConcurrencyConflictError(f"{what} conflicts with an existing row: {e.orig}") from e


class SQLFlagRepository(FlagRepository):
    def __init__(self, db: Session):
        self.db = db

    def add(self, flag: schemas.Flag) -> schemas.Flag:
        self.db.add(models.PatientFlag(**flag.model_dump()))
        _flush(self.db, f"Flag for appointment {flag.appointment_id}")
        return flag

    def get(self, flag_id: str) -> Optional[schemas.Flag]:
        row = self.db.get(models.PatientFlag, flag_id)
        return schemas.Flag.model_validate(row) if row else None

    def update(self, flag: schemas.Flag) -> schemas.Flag:
        row = self.db.get(models.PatientFlag, flag.id)
        if row is None:
            raise NotFoundError("Flag", flag.id)
        for key, value in flag.model_dump().items():
            setattr(row, key, value)
        _flush(self.db, f"Flag {flag.id}")
        return flag

    def delete(self, flag_id: str) -> None:
        row = self.db.get(models.PatientFlag, flag_id)
        if row is not None:
            self.db.delete(row)
            self.db.flush()

    def find_active(self, appointment_id: str, patient_id: str) -> Optional[schemas.Flag]:
        row = self.db.query(models.PatientFlag).filter(
            models.PatientFlag.appointment_id == appointment_id,
            models.PatientFlag.patient_id == patient_id,
            models.PatientFlag.status == schemas.FlagStatus.active,
        ).first()
        return schemas.Flag.model_validate(row) if row else None

    def list_for_patient(self, patient_id: str, include_resolved: bool = True) -> List[schemas.Flag]:
        query = self.db.query(models.PatientFlag).filter(models.PatientFlag.patient_id == patient_id)
        if not include_resolved:
            query = query.filter(models.PatientFlag.status == schemas.FlagStatus.active)
        rows = query.order_by(desc(models.PatientFlag.created_at)).all()
        return [schemas.Flag.model_validate(r) for r in rows]

    def list_expired(self, now: datetime) -> List[schemas.Flag]:
        rows = self.db.query(models.PatientFlag).filter(
            models.PatientFlag.data_retention_expiry <= now
        ).all()
        return [schemas.Flag.model_validate(r) for r in rows]

    def list_active(self, doctor_id: Optional[str] = None) -> List[schemas.Flag]:
        query = self.db.query(models.PatientFlag).filter(
            models.PatientFlag.status == schemas.FlagStatus.active
        )
        if doctor_id is not None:
            query = query.filter(models.PatientFlag.doctor_id == doctor_id)
        rows = query.order_by(desc(models.PatientFlag.created_at)).all()
        return [schemas.Flag.model_validate(r) for r in rows]

    def list_created_since(self, since: datetime) -> List[schemas.Flag]:
        rows = self.db.query(models.PatientFlag).filter(
            models.PatientFlag.created_at >= since
        ).all()
        return [schemas.Flag.model_validate(r) for r in rows]

    def patient_ids_for_doctor(self, doctor_id: str) -> List[str]:
        rows = self.db.query(models.PatientFlag.patient_id).filter(
            models.PatientFlag.doctor_id == doctor_id
        ).distinct().all()
        return sorted(r[0] for r in rows)


class SQLAlertRepository(AlertRepository):
    def __init__(self, db: Session):
        self.db = db

    def add(self, alert: schemas.Alert) -> schemas.Alert:
        self.db.add(models.DoctorAlert(**alert.model_dump()))
        _flush(self.db, f"Alert {alert.id}")
        return alert

    def get(self, alert_id: str) -> Optional[schemas.Alert]:
        row = self.db.get(models.DoctorAlert, alert_id)
        return schemas.Alert.model_validate(row) if row else None

    def update(self, alert: schemas.Alert) -> schemas.Alert:
        row = self.db.get(models.DoctorAlert, alert.id)
        if row is None:
            raise NotFoundError("Alert", alert.id)
        for key, value in alert.model_dump().items():
            setattr(row, key, value)
        self.db.flush()
        return alert

    def list_for_doctor(self, doctor_id: str, unread_only: bool, limit: int) -> List[schemas.Alert]:
        query = self.db.query(models.DoctorAlert).filter(models.DoctorAlert.doctor_id == doctor_id)
        if unread_only:
            query = query.filter(models.DoctorAlert.read.is_(False))
        rows = query.order_by(desc(models.DoctorAlert.created_at)).limit(limit).all()
        return [schemas.Alert.model_validate(r) for r in rows]


class SQLSummaryRepository(SummaryRepository):
    def __init__(self, db: Session):
        self.db = db

    def lock(self, patient_id: str) -> None:
        # SQLite already serializes writers
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": advisory_lock_key(patient_id)},
        )

    @staticmethod
    def _to_schema(row: models.PatientFlagSummary) -> schemas.FlagSummary:
        return schemas.FlagSummary(
            patient_id=row.patient_id,
            patient_name=row.patient_name,
            patient_email=row.patient_email,
            total_flags=row.total_flags,
            active_flags=row.active_flags,
            resolved_flags=row.resolved_flags,
            flags_by_severity=schemas.SeverityCounts(
                low=row.low_flags, medium=row.medium_flags, high=row.high_flags
            ),
            risk_level=row.risk_level,
            first_flag_date=row.first_flag_date,
            last_flag_date=row.last_flag_date,
            last_resolution_date=row.last_resolution_date,
            last_updated=row.last_updated,
        )

    def get(self, patient_id: str) -> Optional[schemas.FlagSummary]:
        row = self.db.get(models.PatientFlagSummary, patient_id)
        return self._to_schema(row) if row else None

    def save(self, summary: schemas.FlagSummary) -> schemas.FlagSummary:
        data = summary.model_dump(exclude={"flags_by_severity"})
        counts = summary.flags_by_severity
        self.db.merge(models.PatientFlagSummary(
            **data,
            low_flags=counts.low,
            medium_flags=counts.medium,
            high_flags=counts.high,
        ))
        self.db.flush()
        return summary

    def delete(self, patient_id: str) -> None:
        row = self.db.get(models.PatientFlagSummary, patient_id)
        if row is not None:
            self.db.delete(row)
            self.db.flush()

    def list_with_active_flags(self) -> List[schemas.FlagSummary]:
        rows = self.db.query(models.PatientFlagSummary).filter(
            models.PatientFlagSummary.active_flags > 0
        ).all()
        return [self._to_schema(r) for r in rows]


class SQLAuditRepository(AuditRepository):
    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _to_schema(row: models.FlagAuditLog) -> schemas.AuditEntry:
        return schemas.AuditEntry(
            id=row.id,
            flag_id=row.flag_id,
            patient_id=row.patient_id,
            doctor_id=row.doctor_id,
            action=row.action,
            performed_by=row.performed_by,
            performed_by_type=row.performed_by_type,
            change_reason=row.change_reason,
            review_comments=row.review_comments,
            legal_basis=row.legal_basis,
            patient_consent=row.patient_consent,
            timestamp=row.timestamp,
            metadata=row.details or {},
        )

    def append(self, entry: schemas.AuditEntry) -> schemas.AuditEntry:
        data = entry.model_dump(exclude={"metadata"})
        self.db.add(models.FlagAuditLog(**data, details=entry.model_dump(mode="json")["metadata"]))
        self.db.flush()
        return entry

    def list_for_flag(self, flag_id: str) -> List[schemas.AuditEntry]:
        rows = self.db.query(models.FlagAuditLog).filter(
            models.FlagAuditLog.flag_id == flag_id
        ).order_by(models.FlagAuditLog.timestamp).all()
        return [self._to_schema(r) for r in rows]

    def list_for_patient(self, patient_id: str) -> List[schemas.AuditEntry]:
        rows = self.db.query(models.FlagAuditLog).filter(
            models.FlagAuditLog.patient_id == patient_id
        ).order_by(models.FlagAuditLog.timestamp).all()
        return [self._to_schema(r) for r in rows]


class SQLConfigurationRepository(ConfigurationRepository):
    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _to_row_data(config: schemas.FlaggingConfiguration) -> dict:
        data = config.model_dump()
        data["alert_for_severities"] = [s.value for s in config.alert_for_severities]
        return data

    def get(self, doctor_id: str) -> Optional[schemas.FlaggingConfiguration]:
        row = self.db.get(models.FlaggingConfiguration, doctor_id)
        return schemas.FlaggingConfiguration.model_validate(row) if row else None

    def add(self, config: schemas.FlaggingConfiguration) -> schemas.FlaggingConfiguration:
        # savepoint so a lost creation race leaves the outer transaction usable
        try:
            with self.db.begin_nested():
                self.db.add(models.FlaggingConfiguration(**self._to_row_data(config)))
        except IntegrityError as e:
            raise ConcurrencyConflictError(f"Configuration for {config.doctor_id} already exists") from e
        return config

    def update(self, config: schemas.FlaggingConfiguration) -> schemas.FlaggingConfiguration:
        row = self.db.get(models.FlaggingConfiguration, config.doctor_id)
        if row is None:
            raise NotFoundError("FlaggingConfiguration", config.doctor_id)
        for key, value in self._to_row_data(config).items():
            setattr(row, key, value)
        self.db.flush()
        return config


class SQLVersionRepository(VersionRepository):
    def __init__(self, db: Session):
        self.db = db

    def add(self, version: schemas.FlagVersion) -> schemas.FlagVersion:
        data = version.model_dump(mode="json")
        data["created_by_type"] = version.created_by_type
        data["created_at"] = version.created_at
        self.db.add(models.FlagVersion(**data))
        _flush(self.db, f"Version {version.version_number} of flag {version.flag_id}")
        return version

    def list_for_flag(self, flag_id: str) -> List[schemas.FlagVersion]:
        rows = self.db.query(models.FlagVersion).filter(
            models.FlagVersion.flag_id == flag_id
        ).order_by(models.FlagVersion.version_number).all()
        return [schemas.FlagVersion.model_validate(r) for r in rows]


class SQLFlaggingStore(FlaggingStore):
    """One Session per transaction; commit on success, rollback on any error."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def transaction(self):
        db = self.session_factory()
        try:
            yield StoreSession(
                flags=SQLFlagRepository(db),
                alerts=SQLAlertRepository(db),
                summaries=SQLSummaryRepository(db),
                audit=SQLAuditRepository(db),
                configurations=SQLConfigurationRepository(db),
                versions=SQLVersionRepository(db),
            )
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ConcurrencyConflictError(f"Write conflicted with a concurrent change: {e.orig}") from e
        except FlaggingError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("flag_store_error", error=str(e))
            raise StoreUnavailableError(f"Database error: {str(e)}") from e
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()
