# medflag/exceptions.py
"""Error taxonomy shared by every engine operation."""


class FlaggingError(Exception):
    """Base class for all flagging engine errors."""
    pass


class ValidationError(FlaggingError):
    """Malformed input to a public operation."""
    pass


class GDPRComplianceError(FlaggingError):
    """Compliance check failed; the operation aborted before any write."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


GDPRValidationError = GDPRComplianceError


class NotFoundError(FlaggingError):
    """Flag, alert or configuration does not exist."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class AlreadyResolvedError(FlaggingError):
    """Resolve was called on a flag that is already resolved."""

    def __init__(self, flag_id: str):
        super().__init__(f"Flag {flag_id} is already resolved")
        self.flag_id = flag_id


class ConcurrencyConflictError(FlaggingError):
    """The at-most-one-active-flag check lost a race."""
    pass


class StoreUnavailableError(FlaggingError):
    """Transient failure of the appointment store or the flag store."""
    pass


class AuditIntegrityError(FlaggingError):
    """Attempt to rewrite or remove an audit entry."""
    pass
