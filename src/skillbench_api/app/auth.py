"""Shared-secret authorization for the trial routes.

Beginner terms used in this file:
- Dependency: a function FastAPI runs before the route handler; its return
  value is handed to the handler as an argument.
- Constant-time compare: ``hmac.compare_digest`` takes the same time whether
  the first or the last character differs, so timing leaks nothing.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from fastapi import Request

from .errors import AuthorizationError, ConfigurationError
from .settings import Settings

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 16
TOKEN_HEADER = "x-skills-trial-token"


@dataclass(frozen=True)
class ExecutionAuthorization:
    """Proof that the caller presented the configured trial secret."""

    scheme: str


def authorize_execution(
    *, authorization: str | None, trial_token: str | None, settings: Settings
) -> ExecutionAuthorization:
    secret = settings.trial_execute_token.strip()
    if len(secret) < MIN_SECRET_LENGTH:
        raise ConfigurationError(
            "Trial execution secret is missing or shorter than "
            f"{MIN_SECRET_LENGTH} characters.",
            code="trial_execute_not_configured",
        )

    bearer = _bearer_token(authorization)
    if bearer is not None and hmac.compare_digest(bearer.encode(), secret.encode()):
        return ExecutionAuthorization(scheme="bearer")
    presented = (trial_token or "").strip()
    if presented and hmac.compare_digest(presented.encode(), secret.encode()):
        return ExecutionAuthorization(scheme="header")

    logger.warning("trial_auth event=rejected has_bearer=%s has_header=%s", bearer is not None, bool(presented))
    raise AuthorizationError("A valid trial execution token is required.")


def require_execution_token(request: Request) -> ExecutionAuthorization:
    return authorize_execution(
        authorization=request.headers.get("authorization"),
        trial_token=request.headers.get(TOKEN_HEADER),
        settings=request.app.state.settings,
    )


def _bearer_token(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
