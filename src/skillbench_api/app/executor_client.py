"""HTTP client for the external sandboxed trial executor.

The executor receives one request per evaluation mode and answers with the
raw trial result (status, artifact path, events, checks). This module only
moves JSON; validation of the answer happens in the trial normalizer.
"""

from __future__ import annotations

import http.client
import json
import logging
from typing import Any, Protocol
from urllib import error, request
from urllib.parse import urlparse

from .errors import ConfigurationError
from .settings import Settings

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


class ExecutorError(Exception):
    """The executor could not be reached or answered with an unusable body."""


class ExecutorTimeoutError(ExecutorError):
    pass


class TrialExecutor(Protocol):
    def execute(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]: ...


class HttpTrialExecutor:
    """POST one orchestration payload and return the decoded JSON object."""

    def __init__(self, *, url: str, token: str = "") -> None:
        self.url = url
        self.token = token

    def execute(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        req = request.Request(
            url=self.url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        mode = payload.get("evaluationMode")
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read()
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")[:200]
            logger.warning(
                "trial_executor event=request_failed mode=%s status=%s body=%s",
                mode,
                exc.code,
                raw_error,
            )
            raise ExecutorError(f"Executor returned HTTP {exc.code} for mode {mode}") from exc
        except TimeoutError as exc:
            raise ExecutorTimeoutError(f"Executor timed out for mode {mode}") from exc
        except error.URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise ExecutorTimeoutError(f"Executor timed out for mode {mode}") from exc
            logger.warning("trial_executor event=request_failed mode=%s reason=%s", mode, exc.reason)
            raise ExecutorError(f"Executor unreachable for mode {mode}: {exc.reason}") from exc
        except (http.client.HTTPException, OSError) as exc:
            # Dropped connections surface from getresponse() without URLError wrapping.
            logger.warning("trial_executor event=request_failed mode=%s error=%r", mode, exc)
            raise ExecutorError(f"Executor connection failed for mode {mode}: {exc!r}") from exc

        try:
            decoded = json.loads(body)
        except (UnicodeDecodeError, ValueError) as exc:
            raise ExecutorError(f"Executor returned non-JSON body for mode {mode}") from exc
        if not isinstance(decoded, dict):
            raise ExecutorError(f"Executor returned a non-object body for mode {mode}")
        return decoded


def validate_executor_url(url: str) -> str:
    """Require https, or plain http only for local loopback development."""
    cleaned = url.strip()
    if not cleaned:
        raise ConfigurationError(
            "Trial orchestrator URL is not configured.",
            code="trial_orchestrator_not_configured",
        )
    parsed = urlparse(cleaned)
    if parsed.scheme == "https" and parsed.hostname:
        return cleaned
    if parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS:
        return cleaned
    raise ConfigurationError(
        "Trial orchestrator URL must use https (http is allowed only for loopback hosts).",
        code="trial_orchestrator_insecure_url",
    )


def build_trial_executor(settings: Settings) -> HttpTrialExecutor:
    url = validate_executor_url(settings.trial_orchestrator_url)
    return HttpTrialExecutor(url=url, token=settings.trial_orchestrator_token)
