from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from . import schemas
from .config import get_settings
from .core.logging import hash_identifier
from .repositories.base import StoreSession
from .schemas import AuditAction, ComplianceResult, PerformerType

logger = structlog.get_logger(__name__)

CompliancePolicy = Callable[[str, str], ComplianceResult]


def legitimate_interest_policy(patient_id: str, doctor_id: str) -> ComplianceResult:
    """Flagging for missed reminders is processed under legitimate interest."""
    errors = []
    if not patient_id:
        errors.append("Patient identifier is required")
    if not doctor_id:
        errors.append("Doctor identifier is required")
    return ComplianceResult(
        compliant=not errors,
        errors=errors,
        legal_basis=get_settings().legal_basis,
        patient_consent=not errors,
    )


class ComplianceLogger:
    """Compliance boundary for flag state transitions.

    ``validate`` runs before anything is persisted; ``record`` appends the audit
    entry inside the caller's store transaction so the entry commits or rolls
    back together with the change it describes.
    """

    def __init__(self, policy: Optional[CompliancePolicy] = None):
        self.policy = policy or legitimate_interest_policy

    def validate(self, patient_id: str, doctor_id: str) -> ComplianceResult:
        result = self.policy(patient_id, doctor_id)
        if not result.compliant:
            logger.warning(
                "compliance_check_failed",
                patient=hash_identifier(patient_id),
                doctor_id=doctor_id,
                errors=result.errors,
            )
        return result

    def record(
        self,
        session: StoreSession,
        flag: schemas.Flag,
        action: AuditAction,
        performed_by: str,
        performed_by_type: PerformerType,
        change_reason: str,
        now: datetime,
        legal_basis: Optional[str] = None,
        patient_consent: bool = False,
        review_comments: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.AuditEntry:
        entry = schemas.AuditEntry(
            flag_id=flag.id,
            patient_id=flag.patient_id,
            doctor_id=flag.doctor_id,
            action=action,
            performed_by=performed_by,
            performed_by_type=performed_by_type,
            change_reason=change_reason,
            review_comments=review_comments,
            legal_basis=legal_basis or get_settings().legal_basis,
            patient_consent=patient_consent,
            timestamp=now,
            metadata=metadata or {},
        )
        session.audit.append(entry)
        logger.info(
            "flag_audit_recorded",
            action=action.value,
            flag_id=flag.id,
            patient=hash_identifier(flag.patient_id),
            performed_by_type=performed_by_type.value,
        )
        return entry


# Default instance for module-level helpers
compliance_logger = ComplianceLogger()


def validate_compliance(patient_id: str, doctor_id: str) -> ComplianceResult:
    return compliance_logger.validate(patient_id, doctor_id)
