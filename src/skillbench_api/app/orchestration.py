"""Multi-mode trial orchestration against the external executor.

An orchestration runs as a saga with three phases:
1. Execute every requested mode in order, each bounded by the mode timeout.
2. Persist every mode inside one store transaction.
3. Finalize the run status inside that same transaction.

A failure in phase 1 persists nothing. A failure in phase 2 or 3 rolls the
whole transaction back, so callers never observe a partial comparison.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any

from .catalog import parse_benchmark_case, parse_run, validate_run
from .errors import (
    IntegrityError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    SkillsError,
    UpstreamError,
    UpstreamTimeoutError,
)
from .executor_client import ExecutorError, ExecutorTimeoutError, TrialExecutor
from .integrity import is_pinned_container_image, is_valid_run_id
from .models import (
    AGENT_NAMES,
    EVALUATION_MODES,
    TERMINAL_STATUSES,
    ComparisonDeltas,
    ModeSummary,
    OrchestratedTrial,
    OrchestrateRequest,
    OrchestrationResult,
    RunInspection,
    ScoreDelta,
    TrialComparison,
    TrialExecutionContext,
    TrialScoreComputation,
)
from .persistence import persist_trial
from .storage.base import SkillStore
from .trials import DEFAULT_MODEL, new_run_id, normalize_trial_input, score_trial, utc_now_iso

logger = logging.getLogger(__name__)

MIN_TIMEOUT_SECONDS = 30
MAX_TIMEOUT_SECONDS = 7200
DEFAULT_TIMEOUT_SECONDS = 1800
WAIT_SLICE_S = 0.25


def orchestrate(
    store: SkillStore,
    executor: TrialExecutor,
    request: OrchestrateRequest,
    *,
    run_mode: str,
    cancel_event: threading.Event | None = None,
) -> OrchestrationResult:
    benchmark_case_id = (request.benchmark_case_id or "").strip()
    if not benchmark_case_id:
        raise InvalidRequestError("benchmarkCaseId is required.", code="invalid_benchmark_case")
    agent = request.agent.strip().lower()
    if agent not in AGENT_NAMES:
        raise InvalidRequestError(
            f"agent must be one of {', '.join(AGENT_NAMES)}.", code="invalid_agent"
        )
    run_id = (request.run_id or "").strip() or new_run_id()
    if not is_valid_run_id(run_id):
        raise InvalidRequestError(f"Run id '{run_id[:64]}' is not valid.", code="invalid_run_id")
    oracle_skill_id = (request.oracle_skill_id or "").strip() or None
    modes = resolve_modes(request.modes, oracle_skill_id)

    case_row = store.get_benchmark_case(benchmark_case_id)
    if case_row is None:
        raise NotFoundError(
            f"Benchmark case '{benchmark_case_id}' does not exist.",
            code="benchmark_case_not_found",
        )
    case = parse_benchmark_case(case_row)
    if not is_pinned_container_image(case.container_image):
        raise IntegrityError(
            f"Benchmark case '{benchmark_case_id}' container image is not pinned to a sha256 digest.",
            code="invalid_container_contract",
        )
    existing_run = store.get_run(run_id)
    if existing_run is not None:
        validate_run(parse_run(existing_run), run_mode=run_mode)
    timeout_seconds = clamp_timeout(request.timeout_seconds, case.timeout_seconds)

    logger.info(
        "trial_orchestration event=start run_id=%s case=%s modes=%s timeout_s=%d",
        run_id,
        benchmark_case_id,
        ",".join(modes),
        timeout_seconds,
    )

    # Phase 1: execute every mode before writing anything.
    executed: list[tuple[TrialExecutionContext, TrialScoreComputation]] = []
    for mode in modes:
        payload = {
            "benchmarkCaseId": benchmark_case_id,
            "runId": run_id,
            "evaluationMode": mode,
            "agent": agent,
            "model": request.model or DEFAULT_MODEL,
            "seed": request.seed,
            "timeoutSeconds": timeout_seconds,
            "containerImage": case.container_image,
            "skillId": oracle_skill_id if mode == "oracle_skill" else None,
        }
        result = call_with_timeout(
            executor, payload, timeout_s=float(timeout_seconds), cancel_event=cancel_event
        )
        context = _context_from_result(result, payload)
        score = score_trial(context)
        logger.info(
            "trial_orchestration event=mode_executed run_id=%s mode=%s status=%s overall_score=%.2f",
            run_id,
            mode,
            context.status,
            score.overall_score,
        )
        executed.append((context, score))

    # Phases 2 and 3: persist all modes and finalize the run atomically.
    trials: list[OrchestratedTrial] = []
    try:
        with store.transaction() as writer:
            for context, score in executed:
                try:
                    persisted = persist_trial(writer, context, score, run_mode=run_mode)
                except SkillsError as exc:
                    raise PersistenceError(
                        f"Persisting mode {context.evaluation_mode} failed: {exc.detail}",
                        status_code=exc.status_code,
                    ) from exc
                trials.append(
                    OrchestratedTrial(
                        mode=context.evaluation_mode, trial=persisted.trial, scoring=score
                    )
                )
            any_failed = any(context.status == "failed" for context, _ in executed)
            writer.update_run_status(
                run_id,
                status="failed" if any_failed else "completed",
                completed_at=utc_now_iso(),
            )
    except PersistenceError as exc:
        logger.warning(
            "trial_orchestration event=rollback run_id=%s code=%s detail=%s",
            run_id,
            exc.code,
            exc.detail,
        )
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning("trial_orchestration event=rollback run_id=%s error=%s", run_id, exc)
        raise PersistenceError(f"Persisting run {run_id} failed: {exc}") from exc

    logger.info(
        "trial_orchestration event=committed run_id=%s trials=%d", run_id, len(trials)
    )
    summaries = [
        ModeSummary(
            mode=item.mode,
            trial_id=item.trial.id,
            status=item.trial.status,
            skill_id=item.trial.skill_id,
            overall_score=item.scoring.overall_score,
            success_rate=item.scoring.success_rate,
            deterministic_score=item.scoring.deterministic_score,
            safety_score=item.scoring.safety_score,
        )
        for item in trials
    ]
    return OrchestrationResult(
        run_id=run_id,
        modes_executed=modes,
        trials=trials,
        comparison=build_comparison(summaries),
    )


def resolve_modes(raw_modes: list[str] | None, oracle_skill_id: str | None) -> list[str]:
    if not raw_modes:
        if oracle_skill_id:
            return list(EVALUATION_MODES)
        return ["baseline", "library_selection"]

    modes: list[str] = []
    for mode in raw_modes:
        if mode not in EVALUATION_MODES:
            raise InvalidRequestError(f"Unknown evaluation mode '{mode}'.", code="invalid_modes")
        if mode in modes:
            raise InvalidRequestError(f"Mode '{mode}' is requested twice.", code="invalid_modes")
        modes.append(mode)
    if "oracle_skill" in modes and not oracle_skill_id:
        raise InvalidRequestError(
            "oracle_skill mode requires an oracleSkillId.", code="invalid_skill_mode"
        )
    return modes


def clamp_timeout(requested: int | None, case_default: int | None) -> int:
    value = requested
    if value is None or value <= 0:
        value = case_default if case_default and case_default > 0 else DEFAULT_TIMEOUT_SECONDS
    return max(MIN_TIMEOUT_SECONDS, min(MAX_TIMEOUT_SECONDS, value))


def call_with_timeout(
    executor: TrialExecutor,
    payload: dict[str, Any],
    *,
    timeout_s: float,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    """Run one executor call, aborting the wait on deadline or cancellation."""
    mode = payload.get("evaluationMode")
    deadline = time.monotonic() + timeout_s
    pool = ThreadPoolExecutor(max_workers=1)
    future = pool.submit(executor.execute, payload, timeout_s=timeout_s)
    try:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                logger.info("trial_orchestration event=cancelled mode=%s", mode)
                raise UpstreamError(
                    f"Orchestration cancelled before mode {mode} finished.",
                    code="trial_orchestration_cancelled",
                    status_code=499,
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                raise UpstreamTimeoutError(
                    f"Executor did not answer mode {mode} within {timeout_s:.0f}s."
                )
            done, _ = wait([future], timeout=min(WAIT_SLICE_S, remaining))
            if done:
                return _result_or_raise(future, mode)
    finally:
        # Never block the request on a stuck worker thread.
        pool.shutdown(wait=False, cancel_futures=True)


def _result_or_raise(future: Any, mode: Any) -> dict[str, Any]:
    try:
        return future.result()
    except (ExecutorTimeoutError, TimeoutError) as exc:
        raise UpstreamTimeoutError(f"Executor timed out for mode {mode}.") from exc
    except ExecutorError as exc:
        raise UpstreamError(f"Executor failed for mode {mode}: {exc}") from exc


def _context_from_result(result: dict[str, Any], payload: dict[str, Any]) -> TrialExecutionContext:
    mode = payload["evaluationMode"]
    status = result.get("status")
    if status not in TERMINAL_STATUSES:
        raise UpstreamError(
            f"Executor reported non-terminal status '{status}' for mode {mode}.",
            code="trial_orchestration_incomplete",
            status_code=409,
        )

    if mode == "baseline":
        skill_id = None
    elif mode == "oracle_skill":
        skill_id = payload["skillId"]
    else:
        # library_selection: the executor reports which skill it picked.
        skill_id = result.get("skillId")

    raw_trial = {
        "benchmarkCaseId": payload["benchmarkCaseId"],
        "runId": payload["runId"],
        "evaluationMode": mode,
        "skillId": skill_id,
        "agent": payload["agent"],
        "model": payload["model"],
        "seed": payload["seed"],
        "status": status,
        "artifactPath": result.get("artifactPath"),
        "notes": result.get("notes", ""),
        "startedAt": result.get("startedAt"),
        "completedAt": result.get("completedAt"),
        "events": result.get("events"),
        "checks": result.get("checks"),
    }
    try:
        return normalize_trial_input(raw_trial)
    except InvalidRequestError as exc:
        raise UpstreamError(
            f"Executor result for mode {mode} is invalid ({exc.code}): {exc.detail}"
        ) from exc


def build_comparison(summaries: list[ModeSummary]) -> TrialComparison:
    modes: dict[str, ModeSummary] = {}
    for summary in summaries:
        modes[summary.mode] = summary
    baseline = modes.get("baseline")
    return TrialComparison(
        modes=modes,
        deltas=ComparisonDeltas(
            oracle_skill_vs_baseline=score_delta(modes.get("oracle_skill"), baseline),
            library_selection_vs_baseline=score_delta(modes.get("library_selection"), baseline),
        ),
    )


def score_delta(candidate: ModeSummary | None, baseline: ModeSummary | None) -> ScoreDelta | None:
    """Delta of ``candidate`` over ``baseline``; None unless both completed with scores."""
    if candidate is None or baseline is None:
        return None
    if candidate.status != "completed" or baseline.status != "completed":
        return None
    pairs = (
        (candidate.overall_score, baseline.overall_score),
        (candidate.success_rate, baseline.success_rate),
        (candidate.deterministic_score, baseline.deterministic_score),
        (candidate.safety_score, baseline.safety_score),
    )
    if any(left is None or right is None for left, right in pairs):
        return None
    return ScoreDelta(
        overall_score_delta=round(candidate.overall_score - baseline.overall_score, 2),
        success_rate_delta=round(candidate.success_rate - baseline.success_rate, 4),
        deterministic_delta=round(candidate.deterministic_score - baseline.deterministic_score, 2),
        safety_delta=round(candidate.safety_score - baseline.safety_score, 2),
    )


def inspect_run(store: SkillStore, run_id: str) -> RunInspection:
    cleaned = (run_id or "").strip()
    if not is_valid_run_id(cleaned):
        raise InvalidRequestError(f"Run id '{cleaned[:64]}' is not valid.", code="invalid_run_id")
    run_row = store.get_run(cleaned)
    if run_row is None:
        raise NotFoundError(f"Run '{cleaned}' does not exist.", code="run_not_found")
    rows = store.list_run_trials(cleaned)
    if not rows:
        raise NotFoundError(f"Run '{cleaned}' has no persisted trials.", code="run_trials_not_found")

    summaries = [
        ModeSummary(
            mode=row["evaluation_mode"],
            trial_id=row["id"],
            status=row["status"],
            skill_id=row.get("skill_id"),
            overall_score=row.get("overall_score"),
            success_rate=row.get("success_rate"),
            deterministic_score=row.get("deterministic_score"),
            safety_score=row.get("safety_score"),
        )
        for row in rows
    ]
    return RunInspection(
        run_id=cleaned,
        run=parse_run(run_row),
        trial_count=len(rows),
        score_count=sum(1 for row in rows if row.get("score_id")),
        trials=summaries,
        comparison=build_comparison(summaries),
    )
