"""Error taxonomy shared by the catalog, trial, and orchestration layers.

Every error carries a machine-readable ``code``, a human-readable ``detail``
that names the offending entity, and the HTTP status the API maps it to.
"""

from __future__ import annotations


class SkillsError(Exception):
    """Base class for every error surfaced to API callers."""

    status_code = 500
    default_code = "internal_error"

    def __init__(self, detail: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, str]:
        return {"error": self.code, "detail": self.detail}


class ConfigurationError(SkillsError):
    """Missing or unusable server-side configuration. Never retried."""

    status_code = 503
    default_code = "not_configured"


class StoreUnavailableError(ConfigurationError):
    default_code = "store_unavailable"


class SchemaUnavailableError(ConfigurationError):
    default_code = "schema_unavailable"


class InvalidRequestError(SkillsError):
    status_code = 400
    default_code = "invalid_request"


class AuthorizationError(SkillsError):
    status_code = 403
    default_code = "trial_execute_unauthorized"


class NotFoundError(SkillsError):
    status_code = 404
    default_code = "not_found"


class IntegrityError(SkillsError):
    """Catalog or run data that must never be served or extended."""

    status_code = 409
    default_code = "benchmark_integrity_failed"


class UpstreamError(SkillsError):
    status_code = 502
    default_code = "trial_orchestration_failed"


class UpstreamTimeoutError(UpstreamError):
    status_code = 504
    default_code = "trial_orchestration_timeout"


class PersistenceError(SkillsError):
    default_code = "trial_orchestration_persist_failed"
