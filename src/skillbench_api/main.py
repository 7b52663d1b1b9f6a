"""FastAPI application wiring for the skills benchmark service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Route/path operation: a function exposed over HTTP (for example, GET /health).
- Dependency (``Depends``): a function FastAPI runs before a route; its result
  is passed to the route as an argument.
- app.state: a place to store shared runtime objects (store, settings, executor).
- Threadpool: blocking work (database, executor HTTP calls) runs off the event
  loop so one slow request does not stall the others.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import Body, Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .app.auth import ExecutionAuthorization, require_execution_token
from .app.catalog import (
    compute_coverage,
    find_skill,
    group_scores_by_task,
    load_catalog,
    summarise_skill,
)
from .app.errors import NotFoundError, SkillsError
from .app.executor_client import TrialExecutor, build_trial_executor
from .app.models import InspectRequest, OrchestrateRequest, RecommendRequest, SkillCatalog
from .app.orchestration import inspect_run, orchestrate
from .app.persistence import load_trial_detail, record_trial
from .app.recommender import normalize_query, recommend
from .app.settings import Settings, get_settings
from .app.storage import PostgresSkillStore, SkillStore

logger = logging.getLogger(__name__)

DISCONNECT_POLL_S = 0.5


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    store_override: SkillStore | None,
    executor_override: TrialExecutor | None,
) -> None:
    if not hasattr(app.state, "store"):
        database_url = settings.resolved_database_url()
        if store_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set SKILLBENCH_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        app.state.store = store_override or PostgresSkillStore(database_url)
        app.state.store.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "executor"):
        app.state.executor = executor_override


def create_app(
    *,
    store: SkillStore | None = None,
    settings_override: Settings | None = None,
    executor: TrialExecutor | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    logging.getLogger("skillbench_api").setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            store_override=store,
            executor_override=executor,
        )
        yield

    app_lifespan = lifespan if store is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if store is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            store_override=store,
            executor_override=executor,
        )

    @app.exception_handler(SkillsError)
    async def skills_error_handler(request: Request, exc: SkillsError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(
                "skills_api event=request_failed path=%s code=%s detail=%s",
                request.url.path,
                exc.code,
                exc.detail,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = f"{location}: {first.get('msg', 'invalid value')}" if location else "Request body is invalid."
        return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": detail})

    def _get_store(request: Request) -> SkillStore:
        if not hasattr(request.app.state, "store"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                store_override=store,
                executor_override=executor,
            )
        return request.app.state.store

    def _get_catalog(request: Request) -> SkillCatalog:
        return load_catalog(_get_store(request), run_mode=settings.benchmark_run_mode)

    def _get_executor(request: Request) -> TrialExecutor:
        injected = getattr(request.app.state, "executor", None)
        return injected if injected is not None else build_trial_executor(settings)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/api/skills")
    def list_skills(request: Request) -> dict[str, Any]:
        catalog = _get_catalog(request)
        summaries = [summarise_skill(skill, catalog.scores) for skill in catalog.skills]
        summaries.sort(key=lambda item: (-item.average_score, item.name))
        return {
            "skills": [summary.model_dump(by_alias=True) for summary in summaries],
            "total": len(summaries),
        }

    @app.get("/api/skills/tasks")
    def list_tasks(request: Request) -> dict[str, Any]:
        catalog = _get_catalog(request)
        return {
            "tasks": [task.model_dump(by_alias=True) for task in catalog.tasks],
            "total": len(catalog.tasks),
        }

    @app.get("/api/skills/benchmarks")
    def list_benchmarks(request: Request) -> dict[str, Any]:
        catalog = _get_catalog(request)
        return {
            "runs": [run.model_dump(by_alias=True) for run in catalog.runs],
            "total": len(catalog.runs),
            "coverage": compute_coverage(catalog).model_dump(by_alias=True),
        }

    def _recommend(request: Request, task: Any, agent: Any, limit: Any) -> dict[str, Any]:
        query = normalize_query(
            task, agent, limit, default_limit=settings.recommendation_default_limit
        )
        catalog = _get_catalog(request)
        result = recommend(catalog, query)
        if result.best is None:
            raise NotFoundError("No approved skill matches this task.", code="no_match_found")
        return {
            "query": query.model_dump(by_alias=True),
            "strategy": result.strategy,
            "recommendation": result.best.model_dump(by_alias=True),
            "candidates": [entry.model_dump(by_alias=True) for entry in result.candidates],
            "benchmarkContext": {
                "runs": len(catalog.runs),
                "taskCoverage": compute_coverage(catalog).tasks_covered,
            },
        }

    @app.get("/api/skills/recommend")
    def recommend_get(
        request: Request,
        task: str = "",
        agent: str | None = None,
        limit: str | None = None,
    ) -> dict[str, Any]:
        return _recommend(request, task, agent, limit)

    @app.post("/api/skills/recommend")
    def recommend_post(request: Request, payload: RecommendRequest) -> dict[str, Any]:
        return _recommend(request, payload.task, payload.agent, payload.limit)

    # Trial routes are declared before /api/skills/{id_or_slug} so "trials"
    # is never captured as a skill slug.
    @app.post("/api/skills/trials/execute", status_code=201)
    def execute_trial(
        request: Request,
        payload: Any = Body(default=None),
        auth: ExecutionAuthorization = Depends(require_execution_token),
    ) -> dict[str, Any]:
        persisted = record_trial(
            _get_store(request), payload, run_mode=settings.benchmark_run_mode
        )
        logger.info(
            "skills_api event=trial_executed trial_id=%s auth=%s",
            persisted.trial.id,
            auth.scheme,
        )
        return persisted.model_dump(by_alias=True)

    @app.post("/api/skills/trials/orchestrate", status_code=201)
    async def orchestrate_trials(
        request: Request,
        payload: OrchestrateRequest,
        auth: ExecutionAuthorization = Depends(require_execution_token),
    ) -> dict[str, Any]:
        trial_store = _get_store(request)
        trial_executor = _get_executor(request)
        cancel_event = threading.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
        try:
            result = await run_in_threadpool(
                orchestrate,
                trial_store,
                trial_executor,
                payload,
                run_mode=settings.benchmark_run_mode,
                cancel_event=cancel_event,
            )
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
        logger.info(
            "skills_api event=trials_orchestrated run_id=%s auth=%s", result.run_id, auth.scheme
        )
        return result.model_dump(by_alias=True)

    @app.post("/api/skills/trials/inspect")
    def inspect_trials(
        request: Request,
        payload: InspectRequest,
        auth: ExecutionAuthorization = Depends(require_execution_token),
    ) -> dict[str, Any]:
        return inspect_run(_get_store(request), payload.run_id).model_dump(by_alias=True)

    @app.get("/api/skills/trials/{trial_id}")
    def get_trial(
        trial_id: str,
        request: Request,
        auth: ExecutionAuthorization = Depends(require_execution_token),
    ) -> dict[str, Any]:
        return load_trial_detail(_get_store(request), trial_id).model_dump(by_alias=True)

    @app.get("/api/skills/{id_or_slug}")
    def get_skill(id_or_slug: str, request: Request) -> dict[str, Any]:
        catalog = _get_catalog(request)
        skill = find_skill(catalog, id_or_slug)
        if skill is None:
            raise NotFoundError(f"Skill '{id_or_slug}' does not exist.", code="skill_not_found")
        scores = [score for score in catalog.scores if score.skill_id == skill.id]
        return {
            "skill": skill.model_dump(by_alias=True, exclude={"embedding"}),
            "summaryStats": summarise_skill(skill, catalog.scores).model_dump(by_alias=True),
            "scores": [score.model_dump(by_alias=True) for score in scores],
            "byTask": [group.model_dump(by_alias=True) for group in group_scores_by_task(scores)],
        }

    return app


async def _watch_disconnect(request: Request, cancel_event: threading.Event) -> None:
    """Set ``cancel_event`` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("skills_api event=client_disconnected path=%s", request.url.path)
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_S)


app = create_app()
