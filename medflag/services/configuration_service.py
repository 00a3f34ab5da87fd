# medflag/services/configuration_service.py
from datetime import datetime
from typing import Optional

import structlog

from .. import schemas
from ..exceptions import ConcurrencyConflictError, ValidationError
from ..repositories.base import FlaggingStore, StoreSession

logger = structlog.get_logger(__name__)


def load_configuration(session: StoreSession, doctor_id: str, now: Optional[datetime] = None) -> schemas.FlaggingConfiguration:
    """Doctor's configuration, created with defaults on first read."""
    config = session.configurations.get(doctor_id)
    if config is not None:
        return config

    now = now or schemas.utcnow()
    config = schemas.FlaggingConfiguration(doctor_id=doctor_id, created_at=now, updated_at=now)
    try:
        session.configurations.add(config)
    except ConcurrencyConflictError:
        # another unit created it first
        existing = session.configurations.get(doctor_id)
        if existing is None:
            raise
        return existing
    logger.info("flagging_configuration_created", doctor_id=doctor_id)
    return config


class ConfigurationService:
    def __init__(self, store: FlaggingStore):
        self.store = store

    def get_configuration(self, doctor_id: str, now: Optional[datetime] = None) -> schemas.FlaggingConfiguration:
        if not doctor_id:
            raise ValidationError("doctor_id is required")
        with self.store.transaction() as session:
            return load_configuration(session, doctor_id, now)

    def update_configuration(
        self,
        doctor_id: str,
        update: schemas.FlaggingConfigurationUpdate,
        now: Optional[datetime] = None,
    ) -> schemas.FlaggingConfiguration:
        if not doctor_id:
            raise ValidationError("doctor_id is required")
        changes = update.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            raise ValidationError("No configuration fields supplied")
        if "alert_for_severities" in changes and not changes["alert_for_severities"]:
            raise ValidationError("alert_for_severities cannot be empty")

        now = now or schemas.utcnow()
        with self.store.transaction() as session:
            current = load_configuration(session, doctor_id, now)
            merged = current.model_dump()
            merged.update(changes)
            merged["updated_at"] = now
            try:
                updated = schemas.FlaggingConfiguration.model_validate(merged)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            session.configurations.update(updated)

        logger.info("flagging_configuration_updated", doctor_id=doctor_id, fields=sorted(changes))
        return updated
