"""POS error taxonomy.

Every error carries a stable machine-readable ``code``. The request boundary
(see ``kassa.main``) turns any ``PosError`` into ``{"ok": false, "error": code}``
plus optional extra fields such as ``fallback``.
"""

from typing import Any, Dict, Optional


class PosError(Exception):
    """Base class for errors surfaced to POS API clients."""

    status_code = 500

    def __init__(self, code: str, status_code: Optional[int] = None, **extra: Any):
        self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.extra: Dict[str, Any] = extra
        super().__init__(code)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.code, **self.extra}


class PosValidationError(PosError):
    """Rejected input. Raised before anything is persisted."""

    status_code = 400


class PosNotFoundError(PosError):
    status_code = 404


class PosConflictError(PosError):
    """The current state does not allow the requested action."""

    status_code = 409


class PosAuthError(PosError):
    status_code = 401


class ExternalServiceError(PosError):
    """Failure talking to a fiscal signing service or payment provider.

    ``kind`` is one of ``not_configured``, ``network``, ``auth_failed``,
    ``api_error`` or ``invalid_response``. Only ``not_configured`` requires an
    operator; the others are transient.
    """

    status_code = 502

    def __init__(self, code: str, provider: str, kind: str = "api_error", **extra: Any):
        self.provider = provider
        self.kind = kind
        super().__init__(code, **extra)

    @property
    def is_configuration_error(self) -> bool:
        return self.kind == "not_configured"


class AuditAppendError(PosError):
    """The audit chain could not be extended within the allowed attempts."""

    status_code = 500

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__("failed_to_append_pos_audit_log")
