from __future__ import annotations

import json
import socket
import threading
from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from skillbench_api.app.settings import Settings
from skillbench_api.app.storage import InMemorySkillStore
from skillbench_api.main import create_app

TRIAL_TOKEN = "trial-secret-0123456789abcdef"
PINNED_IMAGE = "docker.io/library/alpine@sha256:" + "3f" * 32
CATALOG_RUN_ID = "run-catalog-2026-01"


def build_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": "",
        "trial_execute_token": TRIAL_TOKEN,
        "trial_orchestrator_url": "https://executor.internal/trials",
        "benchmark_run_mode": "sandbox",
    }
    values.update(overrides)
    return Settings(**values)


def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TRIAL_TOKEN}"}


def _skill_row(
    skill_id: str,
    slug: str,
    name: str,
    *,
    summary: str,
    description: str,
    keywords: list[str],
    security_status: str = "approved",
    agent_family: str = "multi",
) -> dict[str, Any]:
    return {
        "id": skill_id,
        "slug": slug,
        "name": name,
        "agent_family": agent_family,
        "summary": summary,
        "description": description,
        "keywords_json": json.dumps(keywords),
        "source_url": f"https://github.com/acme-skills/{slug}/tree/main",
        "imported_from": "github",
        "security_status": security_status,
        "security_notes": "",
        "provenance_json": None,
        "security_review_json": None,
        "embedding_json": None,
        "created_at": "2026-01-02T10:00:00+00:00",
        "updated_at": "2026-01-05T10:00:00+00:00",
    }


def _oracle_trial(
    store: InMemorySkillStore,
    *,
    trial_id: str,
    case_id: str,
    skill_id: str,
    agent: str,
    overall: float,
) -> None:
    store.add_row(
        "trials",
        {
            "id": trial_id,
            "benchmark_case_id": case_id,
            "run_id": CATALOG_RUN_ID,
            "skill_id": skill_id,
            "agent": agent,
            "model": "gpt-5",
            "seed": 7,
            "evaluation_mode": "oracle_skill",
            "status": "completed",
            "artifact_path": f"artifacts/{CATALOG_RUN_ID}/{trial_id}",
            "notes": "",
            "started_at": "2026-01-10T09:00:00+00:00",
            "completed_at": "2026-01-10T09:10:00+00:00",
            "created_at": "2026-01-10T09:10:00+00:00",
        },
    )
    store.add_row(
        "trial_scores",
        {
            "id": f"score-{trial_id}",
            "trial_id": trial_id,
            "overall_score": overall,
            "quality_score": overall,
            "security_score": 100.0,
            "speed_score": 90.0,
            "cost_score": 90.0,
            "success_rate": round(overall / 100, 4),
            "deterministic_score": overall,
            "safety_score": 100.0,
            "efficiency_score": 90.0,
            "scorer_version": "trial-scorer-v1",
            "created_at": "2026-01-10T09:10:00+00:00",
        },
    )


def build_catalog_store() -> InMemorySkillStore:
    """Two approved skills with benchmark history plus one pending skill."""
    store = InMemorySkillStore()
    store.add_row(
        "skill_tasks",
        {
            "id": "task-ci-hardening",
            "slug": "ci-pipeline-hardening",
            "name": "Harden CI pipeline",
            "description": "Lock down GitHub Actions workflows, secrets, and permissions.",
            "category": "security",
            "tags_json": json.dumps(["ci", "github-actions", "secrets"]),
        },
    )
    store.add_row(
        "skill_tasks",
        {
            "id": "task-sql-migration",
            "slug": "sql-schema-migration",
            "name": "Plan SQL schema migration",
            "description": "Write reversible PostgreSQL migrations with zero downtime.",
            "category": "database",
            "tags_json": json.dumps(["sql", "postgres", "migration"]),
        },
    )
    store.add_row(
        "skills",
        _skill_row(
            "skill-ci-security-hardening",
            "ci-security-hardening",
            "CI Security Hardening",
            summary="Harden GitHub Actions pipelines and secrets handling.",
            description="Pins actions, scopes tokens, and audits workflow permissions in CI.",
            keywords=["ci", "github", "actions", "pipeline", "secrets", "security"],
        ),
    )
    store.add_row(
        "skills",
        _skill_row(
            "skill-sql-migration-operator",
            "sql-migration-operator",
            "SQL Migration Operator",
            summary="Plan and apply PostgreSQL schema migrations safely.",
            description="Writes reversible migrations, backfills columns, and checks locks.",
            keywords=["sql", "postgres", "migration", "schema", "database"],
        ),
    )
    store.add_row(
        "skills",
        _skill_row(
            "skill-web-scraper",
            "web-scraper",
            "Web Scraper",
            summary="Scrape web pages into structured records.",
            description="Crawls pages and extracts tables.",
            keywords=["scrape", "crawl", "html"],
            security_status="pending",
        ),
    )
    store.add_row(
        "skill_benchmark_runs",
        {
            "id": CATALOG_RUN_ID,
            "runner": "skills-trial-api",
            "mode": "sandbox",
            "status": "completed",
            "started_at": "2026-01-10T08:00:00+00:00",
            "completed_at": "2026-01-10T12:00:00+00:00",
            "artifact_path": f"artifacts/{CATALOG_RUN_ID}",
            "notes": "January catalog benchmark",
        },
    )
    store.add_row("benchmarks", {"id": "bench-ci", "task_id": "task-ci-hardening"})
    store.add_row("benchmarks", {"id": "bench-sql", "task_id": "task-sql-migration"})
    store.add_row(
        "benchmark_cases",
        {
            "id": "case-ci-1",
            "benchmark_id": "bench-ci",
            "container_image": PINNED_IMAGE,
            "timeout_seconds": 600,
        },
    )
    store.add_row(
        "benchmark_cases",
        {
            "id": "case-sql-1",
            "benchmark_id": "bench-sql",
            "container_image": PINNED_IMAGE,
            "timeout_seconds": 900,
        },
    )
    store.add_row(
        "benchmark_cases",
        {
            "id": "case-unpinned",
            "benchmark_id": "bench-ci",
            "container_image": "alpine:latest",
            "timeout_seconds": 600,
        },
    )
    _oracle_trial(
        store,
        trial_id="trial-ci-codex",
        case_id="case-ci-1",
        skill_id="skill-ci-security-hardening",
        agent="codex",
        overall=96.0,
    )
    _oracle_trial(
        store,
        trial_id="trial-ci-claude",
        case_id="case-ci-1",
        skill_id="skill-ci-security-hardening",
        agent="claude",
        overall=92.0,
    )
    _oracle_trial(
        store,
        trial_id="trial-sql-codex",
        case_id="case-sql-1",
        skill_id="skill-sql-migration-operator",
        agent="codex",
        overall=90.0,
    )
    return store


class FakeExecutor:
    """Executor double that answers from a per-mode table of results."""

    def __init__(self, results: dict[str, Any]) -> None:
        self.results = results
        self.calls: list[dict[str, Any]] = []

    def execute(self, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        self.calls.append(dict(payload))
        result = self.results[payload["evaluationMode"]]
        if isinstance(result, Exception):
            raise result
        return dict(result)


def executor_result(
    *,
    passed: int,
    total: int,
    status: str = "completed",
    skill_id: str | None = None,
    events: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    result: dict[str, Any] = {
        "status": status,
        "artifactPath": "artifacts/orchestrated/case-ci-1",
        "notes": "executor run",
        "events": events or [],
        "checks": {"deterministic": {"passed": passed, "total": total}},
    }
    if skill_id is not None:
        result["skillId"] = skill_id
    return result


@pytest.fixture
def store() -> InMemorySkillStore:
    return build_catalog_store()


@pytest.fixture
def client(store: InMemorySkillStore) -> Iterator[TestClient]:
    app = create_app(store=store, settings_override=build_settings())
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def hangup_executor_url() -> Iterator[str]:
    """Loopback executor that reads each request and closes without replying."""
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(0.1)
    stop = threading.Event()

    def serve() -> None:
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except TimeoutError:
                continue
            with conn:
                conn.recv(65536)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{listener.getsockname()[1]}/trials"
    finally:
        stop.set()
        thread.join(timeout=2)
        listener.close()
