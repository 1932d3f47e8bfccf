"""Error taxonomy for reconciliation operations."""


class ReconcileError(Exception):
    """Base error carrying a stable machine-readable code."""

    code = "RECONCILE_ERROR"

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.context}


class NotFoundError(ReconcileError):
    """Identity or subscription absent. Skipped in batch context."""

    code = "NOT_FOUND"


class ForbiddenError(ReconcileError):
    """Caller lacks admin capability. Aborts the request."""

    code = "FORBIDDEN"


class ConflictError(ReconcileError):
    """Mobile-store identifier already linked to another identity."""

    code = "CONFLICT"


class ProviderUnavailableError(ReconcileError):
    """Live provider lookup failed or timed out."""

    code = "PROVIDER_UNAVAILABLE"


class MalformedRecordError(ReconcileError):
    """Stored record could not be normalized."""

    code = "MALFORMED_RECORD"
