from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import pytest
from conftest import build_settings

from skillbench_api.app.errors import ConfigurationError
from skillbench_api.app.executor_client import (
    ExecutorError,
    ExecutorTimeoutError,
    HttpTrialExecutor,
    build_trial_executor,
    validate_executor_url,
)


class _ExecutorHandler(BaseHTTPRequestHandler):
    # Set per test: (status, body bytes, delay seconds).
    response: tuple[int, bytes, float] = (200, b"{}", 0.0)
    received: list[dict[str, Any]] = []

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length", "0"))
        body = json.loads(self.rfile.read(length).decode("utf-8"))
        type(self).received.append(
            {"body": body, "authorization": self.headers.get("Authorization")}
        )
        status, payload, delay = type(self).response
        if delay:
            threading.Event().wait(delay)
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        return None


@pytest.fixture
def executor_url() -> Iterator[str]:
    _ExecutorHandler.received = []
    _ExecutorHandler.response = (200, b"{}", 0.0)
    server = ThreadingHTTPServer(("127.0.0.1", 0), _ExecutorHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/trials"
    finally:
        server.shutdown()
        server.server_close()


def test_execute_posts_payload_with_bearer_token(executor_url: str) -> None:
    _ExecutorHandler.response = (200, json.dumps({"status": "completed"}).encode(), 0.0)
    client = HttpTrialExecutor(url=executor_url, token="orchestrator-token")

    result = client.execute({"evaluationMode": "baseline", "runId": "run-1"}, timeout_s=5)

    assert result == {"status": "completed"}
    assert _ExecutorHandler.received[0]["body"]["runId"] == "run-1"
    assert _ExecutorHandler.received[0]["authorization"] == "Bearer orchestrator-token"


def test_execute_omits_authorization_without_token(executor_url: str) -> None:
    HttpTrialExecutor(url=executor_url).execute({"evaluationMode": "baseline"}, timeout_s=5)
    assert _ExecutorHandler.received[0]["authorization"] is None


@pytest.mark.parametrize(
    ("status", "body"),
    [
        (500, b'{"error": "boom"}'),
        (200, b"<html>not json</html>"),
        (200, b"[1, 2, 3]"),
        (200, b"\xff\xfe{not json"),
    ],
)
def test_execute_raises_on_unusable_response(executor_url: str, status: int, body: bytes) -> None:
    _ExecutorHandler.response = (status, body, 0.0)
    with pytest.raises(ExecutorError):
        HttpTrialExecutor(url=executor_url).execute({"evaluationMode": "baseline"}, timeout_s=5)


def test_execute_raises_timeout_for_slow_executor(executor_url: str) -> None:
    _ExecutorHandler.response = (200, b"{}", 1.0)
    with pytest.raises(ExecutorTimeoutError):
        HttpTrialExecutor(url=executor_url).execute({"evaluationMode": "baseline"}, timeout_s=0.2)


def test_execute_raises_when_executor_hangs_up(hangup_executor_url: str) -> None:
    client = HttpTrialExecutor(url=hangup_executor_url)
    with pytest.raises(ExecutorError, match="baseline"):
        client.execute({"evaluationMode": "baseline"}, timeout_s=5)


def test_execute_raises_when_executor_is_unreachable() -> None:
    client = HttpTrialExecutor(url="http://127.0.0.1:9/trials")
    with pytest.raises(ExecutorError):
        client.execute({"evaluationMode": "baseline"}, timeout_s=2)


@pytest.mark.parametrize(
    "url",
    [
        "https://executor.example.com/trials",
        "http://localhost:8080/trials",
        "http://127.0.0.1/trials",
        "http://[::1]:9000/trials",
    ],
)
def test_validate_executor_url_accepts_secure_or_loopback(url: str) -> None:
    assert validate_executor_url(url) == url


@pytest.mark.parametrize(
    ("url", "code"),
    [
        ("", "trial_orchestrator_not_configured"),
        ("   ", "trial_orchestrator_not_configured"),
        ("http://executor.example.com/trials", "trial_orchestrator_insecure_url"),
        ("ftp://127.0.0.1/trials", "trial_orchestrator_insecure_url"),
    ],
)
def test_validate_executor_url_rejects(url: str, code: str) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        validate_executor_url(url)
    assert exc_info.value.code == code
    assert exc_info.value.status_code == 503


def test_build_trial_executor_uses_settings() -> None:
    executor = build_trial_executor(
        build_settings(
            trial_orchestrator_url="https://executor.example.com/trials",
            trial_orchestrator_token="abc",
        )
    )
    assert executor.url == "https://executor.example.com/trials"
    assert executor.token == "abc"
