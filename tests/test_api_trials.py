from __future__ import annotations

import asyncio
import threading
from contextlib import suppress
from types import SimpleNamespace
from typing import Any

import pytest
from conftest import (
    TRIAL_TOKEN,
    FakeExecutor,
    auth_headers,
    build_catalog_store,
    build_settings,
    executor_result,
)
from fastapi.testclient import TestClient

from skillbench_api.app.executor_client import ExecutorError
from skillbench_api.app.storage import InMemorySkillStore
from skillbench_api.main import _watch_disconnect, create_app


def _trial_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "benchmarkCaseId": "case-ci-1",
        "runId": "run-api-1",
        "evaluationMode": "baseline",
        "agent": "codex",
        "model": "gpt-5",
        "status": "completed",
        "artifactPath": "artifacts/run-api-1/baseline",
        "events": [{"type": "command", "command": "make test", "exitCode": 0}],
        "checks": {"deterministic": {"passed": 1, "total": 1}},
    }
    payload.update(overrides)
    return payload


def _orchestrating_client(
    store: InMemorySkillStore, executor: FakeExecutor | None, **settings: Any
) -> TestClient:
    app = create_app(store=store, settings_override=build_settings(**settings), executor=executor)
    return TestClient(app)


def _three_mode_executor(**overrides: Any) -> FakeExecutor:
    results: dict[str, Any] = {
        "baseline": executor_result(passed=1, total=2),
        "oracle_skill": executor_result(passed=1, total=1),
        "library_selection": executor_result(passed=1, total=1, skill_id="ci-security-hardening"),
    }
    results.update(overrides)
    return FakeExecutor(results)


def test_execute_requires_token(client: TestClient) -> None:
    response = client.post("/api/skills/trials/execute", json=_trial_payload())
    assert response.status_code == 403
    assert response.json()["error"] == "trial_execute_unauthorized"


def test_execute_reports_missing_secret() -> None:
    client = TestClient(
        create_app(
            store=build_catalog_store(),
            settings_override=build_settings(trial_execute_token=""),
        )
    )
    response = client.post(
        "/api/skills/trials/execute", json=_trial_payload(), headers=auth_headers()
    )
    assert response.status_code == 503
    assert response.json()["error"] == "trial_execute_not_configured"


def test_execute_persists_baseline_trial(client: TestClient) -> None:
    response = client.post(
        "/api/skills/trials/execute", json=_trial_payload(), headers=auth_headers()
    )
    assert response.status_code == 201
    payload = response.json()
    assert payload["trial"]["evaluationMode"] == "baseline"
    assert payload["scoring"]["deterministicScore"] == 100
    assert payload["scoring"]["overallScore"] > 80
    assert payload["run"]["id"] == "run-api-1"
    assert payload["run"]["status"] == "completed"


def test_execute_accepts_trial_token_header_and_slug(client: TestClient) -> None:
    response = client.post(
        "/api/skills/trials/execute",
        json=_trial_payload(evaluationMode="oracle_skill", skillId="sql-migration-operator"),
        headers={"X-Skills-Trial-Token": TRIAL_TOKEN},
    )
    assert response.status_code == 201
    assert response.json()["trial"]["skillId"] == "skill-sql-migration-operator"


def test_execute_flags_destructive_commands(client: TestClient) -> None:
    response = client.post(
        "/api/skills/trials/execute",
        json=_trial_payload(
            events=[{"type": "command", "command": "rm -rf /", "exitCode": 0, "blocked": False}],
            checks={
                "deterministic": {"passed": 1, "total": 1},
                "safety": {"violations": ["attempted root delete"]},
            },
        ),
        headers=auth_headers(),
    )
    assert response.status_code == 201
    scoring = response.json()["scoring"]
    assert scoring["safetyScore"] < 70
    assert "rm -rf /" in scoring["forbiddenCommands"]


@pytest.mark.parametrize(
    ("overrides", "status", "code"),
    [
        ({"evaluationMode": "random"}, 400, "invalid_evaluation_mode"),
        ({"notes": "%73%79%6E%74%68%65%74%69%63 run"}, 400, "blocked_artifact_markers"),
        (
            {"events": [{"type": "status", "message": "x" * 20_000}]},
            400,
            "event_payload_too_large",
        ),
        ({"startedAt": "yesterday"}, 400, "invalid_request"),
        ({"seed": 2**40}, 400, "invalid_request"),
        ({"benchmarkCaseId": "case-missing"}, 404, "benchmark_case_not_found"),
        ({"evaluationMode": "oracle_skill", "skillId": "nope"}, 404, "skill_not_found"),
    ],
)
def test_execute_rejects_invalid_trials(
    client: TestClient, overrides: dict[str, Any], status: int, code: str
) -> None:
    response = client.post(
        "/api/skills/trials/execute", json=_trial_payload(**overrides), headers=auth_headers()
    )
    assert response.status_code == status
    assert response.json()["error"] == code


def test_execute_rejects_non_object_body(client: TestClient) -> None:
    response = client.post("/api/skills/trials/execute", json=[1, 2], headers=auth_headers())
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_execute_running_trial_creates_running_run(client: TestClient) -> None:
    response = client.post(
        "/api/skills/trials/execute",
        json=_trial_payload(status="running", runId="run-api-running"),
        headers=auth_headers(),
    )
    assert response.status_code == 201
    payload = response.json()
    assert payload["run"]["status"] == "running"
    assert payload["run"]["completedAt"] is None
    assert payload["trial"]["completedAt"] is None


def test_trial_detail_round_trip(client: TestClient) -> None:
    created = client.post(
        "/api/skills/trials/execute", json=_trial_payload(), headers=auth_headers()
    ).json()
    trial_id = created["trial"]["id"]

    response = client.get(f"/api/skills/trials/{trial_id}", headers=auth_headers())
    assert response.status_code == 200
    payload = response.json()
    assert payload["trial"]["id"] == trial_id
    assert payload["events"][0]["eventType"] == "command"
    assert payload["events"][0]["payload"]["command"] == "make test"
    assert payload["score"]["overallScore"] == created["scoring"]["overallScore"]

    missing = client.get("/api/skills/trials/trial-missing", headers=auth_headers())
    assert missing.status_code == 404
    assert missing.json()["error"] == "trial_not_found"


def test_orchestrate_all_modes_and_inspect() -> None:
    store = build_catalog_store()
    client = _orchestrating_client(store, _three_mode_executor())

    response = client.post(
        "/api/skills/trials/orchestrate",
        json={
            "benchmarkCaseId": "case-ci-1",
            "oracleSkillId": "ci-security-hardening",
            "runId": "run-api-orchestrated",
        },
        headers=auth_headers(),
    )
    assert response.status_code == 201
    payload = response.json()
    assert payload["runId"] == "run-api-orchestrated"
    assert payload["modesExecuted"] == ["baseline", "oracle_skill", "library_selection"]
    assert len(payload["trials"]) == 3
    deltas = payload["comparison"]["deltas"]
    assert deltas["oracleSkillVsBaseline"]["overallScoreDelta"] > 0
    assert deltas["librarySelectionVsBaseline"]["overallScoreDelta"] > 0

    inspect = client.post(
        "/api/skills/trials/inspect",
        json={"runId": "run-api-orchestrated"},
        headers=auth_headers(),
    )
    assert inspect.status_code == 200
    inspected = inspect.json()
    assert inspected["trialCount"] == 3
    assert inspected["scoreCount"] == 3
    assert inspected["run"]["status"] == "completed"
    assert (
        inspected["comparison"]["deltas"]["oracleSkillVsBaseline"]["overallScoreDelta"]
        == deltas["oracleSkillVsBaseline"]["overallScoreDelta"]
    )


def test_orchestrate_requires_executor_configuration() -> None:
    client = _orchestrating_client(build_catalog_store(), None, trial_orchestrator_url="")
    response = client.post(
        "/api/skills/trials/orchestrate",
        json={"benchmarkCaseId": "case-ci-1"},
        headers=auth_headers(),
    )
    assert response.status_code == 503
    assert response.json()["error"] == "trial_orchestrator_not_configured"


def test_orchestrate_rejects_insecure_executor_url() -> None:
    client = _orchestrating_client(
        build_catalog_store(), None, trial_orchestrator_url="http://executor.example.com"
    )
    response = client.post(
        "/api/skills/trials/orchestrate",
        json={"benchmarkCaseId": "case-ci-1"},
        headers=auth_headers(),
    )
    assert response.status_code == 503
    assert response.json()["error"] == "trial_orchestrator_insecure_url"


@pytest.mark.parametrize(
    ("executor", "body", "status", "code"),
    [
        (
            _three_mode_executor(),
            {"benchmarkCaseId": "case-unpinned"},
            409,
            "invalid_container_contract",
        ),
        (
            _three_mode_executor(baseline=executor_result(passed=0, total=1, status="pending")),
            {"benchmarkCaseId": "case-ci-1"},
            409,
            "trial_orchestration_incomplete",
        ),
        (
            _three_mode_executor(baseline=ExecutorError("connection reset")),
            {"benchmarkCaseId": "case-ci-1"},
            502,
            "trial_orchestration_failed",
        ),
        (
            _three_mode_executor(
                library_selection=executor_result(passed=1, total=1, skill_id="skill-unknown")
            ),
            {"benchmarkCaseId": "case-ci-1"},
            404,
            "trial_orchestration_persist_failed",
        ),
        (
            _three_mode_executor(),
            {"benchmarkCaseId": "case-ci-1", "modes": ["baseline", "chaos"]},
            400,
            "invalid_modes",
        ),
    ],
)
def test_orchestrate_failures_leave_no_trials(
    executor: FakeExecutor, body: dict[str, Any], status: int, code: str
) -> None:
    store = build_catalog_store()
    client = _orchestrating_client(store, executor)

    response = client.post(
        "/api/skills/trials/orchestrate",
        json={**body, "runId": "run-api-failed"},
        headers=auth_headers(),
    )

    assert response.status_code == status
    assert response.json()["error"] == code
    assert store.get_run("run-api-failed") is None
    assert len(store.rows("trials")) == 3


@pytest.mark.parametrize(
    "extra", [{"timeoutSeconds": "soon"}, {"seed": 2**40}]
)
def test_orchestrate_rejects_bad_body_type(extra: dict[str, Any]) -> None:
    client = _orchestrating_client(build_catalog_store(), _three_mode_executor())
    response = client.post(
        "/api/skills/trials/orchestrate",
        json={"benchmarkCaseId": "case-ci-1", **extra},
        headers=auth_headers(),
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_inspect_unknown_run(client: TestClient) -> None:
    response = client.post(
        "/api/skills/trials/inspect", json={"runId": "run-unknown"}, headers=auth_headers()
    )
    assert response.status_code == 404
    assert response.json()["error"] == "run_not_found"


def test_inspect_requires_token(client: TestClient) -> None:
    response = client.post("/api/skills/trials/inspect", json={"runId": "run-unknown"})
    assert response.status_code == 403


def test_orchestrate_maps_dropped_executor_connection(hangup_executor_url: str) -> None:
    store = build_catalog_store()
    client = _orchestrating_client(store, None, trial_orchestrator_url=hangup_executor_url)

    response = client.post(
        "/api/skills/trials/orchestrate",
        json={"benchmarkCaseId": "case-ci-1", "modes": ["baseline"], "runId": "run-api-hangup"},
        headers=auth_headers(),
    )

    assert response.status_code == 502
    assert response.json()["error"] == "trial_orchestration_failed"
    assert "baseline" in response.json()["detail"]
    assert store.get_run("run-api-hangup") is None


class _DisconnectingRequest:
    url = SimpleNamespace(path="/api/skills/trials/orchestrate")

    def __init__(self, disconnected: bool) -> None:
        self.disconnected = disconnected

    async def is_disconnected(self) -> bool:
        return self.disconnected


def test_disconnect_watcher_sets_cancel_event() -> None:
    cancel_event = threading.Event()
    asyncio.run(_watch_disconnect(_DisconnectingRequest(True), cancel_event))
    assert cancel_event.is_set()


def test_disconnect_watcher_cancels_cleanly_while_connected() -> None:
    cancel_event = threading.Event()

    async def run_and_cancel() -> asyncio.Task[None]:
        watcher = asyncio.create_task(_watch_disconnect(_DisconnectingRequest(False), cancel_event))
        await asyncio.sleep(0)
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher
        return watcher

    watcher = asyncio.run(run_and_cancel())
    assert watcher.done()
    assert watcher.cancelled()
    assert not cancel_event.is_set()
