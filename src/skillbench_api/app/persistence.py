"""Atomic trial writes: run upsert, trial row, ordered events, and one score."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .catalog import parse_run, validate_run
from .errors import InvalidRequestError, NotFoundError, PersistenceError, SkillsError
from .models import (
    TERMINAL_STATUSES,
    BenchmarkRun,
    PersistedTrial,
    TrialDetail,
    TrialEventRecord,
    TrialExecutionContext,
    TrialRecord,
    TrialScoreComputation,
    TrialScoreRecord,
)
from .storage.base import SkillStore, TrialWriter
from .trials import normalize_trial_input, score_trial, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_RUNNER = "skills-trial-api"


def record_trial(store: SkillStore, raw: Any, *, run_mode: str) -> PersistedTrial:
    """Normalize, score, and persist one trial inside a single transaction."""
    context = normalize_trial_input(raw)
    score = score_trial(context)
    try:
        with store.transaction() as writer:
            return persist_trial(writer, context, score, run_mode=run_mode)
    except SkillsError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "trial_persistence event=rollback trial_id=%s run_id=%s error=%s",
            context.trial_id,
            context.run_id,
            exc,
        )
        raise PersistenceError(
            f"Persisting trial for run {context.run_id} failed.",
            code="trial_persist_failed",
        ) from exc


def persist_trial(
    writer: TrialWriter,
    context: TrialExecutionContext,
    score: TrialScoreComputation,
    *,
    run_mode: str,
    runner: str = DEFAULT_RUNNER,
) -> PersistedTrial:
    """Write every row for one trial through ``writer``.

    Every check runs before the first insert, so a rejected trial leaves no
    rows behind even when the caller's transaction is later committed.
    """
    if writer.get_benchmark_case(context.benchmark_case_id) is None:
        raise NotFoundError(
            f"Benchmark case '{context.benchmark_case_id}' does not exist.",
            code="benchmark_case_not_found",
        )

    skill_id = None
    if context.skill_id:
        skill_id = writer.resolve_skill_id(context.skill_id)
        if skill_id is None:
            raise NotFoundError(
                f"Skill '{context.skill_id}' does not exist.", code="skill_not_found"
            )

    run = ensure_run(writer, context, run_mode=run_mode, runner=runner)

    created_at = utc_now_iso()
    trial_row = {
        "id": context.trial_id,
        "benchmark_case_id": context.benchmark_case_id,
        "run_id": run.id,
        "skill_id": skill_id,
        "agent": context.agent,
        "model": context.model,
        "seed": context.seed,
        "evaluation_mode": context.evaluation_mode,
        "status": context.status,
        "artifact_path": context.artifact_path,
        "notes": context.notes,
        "started_at": context.started_at,
        "completed_at": context.completed_at if context.status in TERMINAL_STATUSES else None,
        "created_at": created_at,
    }
    writer.insert_trial(trial_row)

    for seq, event in enumerate(context.events):
        writer.insert_trial_event(
            {
                "id": f"trial-event-{uuid.uuid4().hex}",
                "trial_id": context.trial_id,
                "seq": seq,
                "event_type": event.type,
                "payload_json": event.payload,
                "created_at": created_at,
            }
        )

    writer.insert_trial_score(
        {
            "id": f"trial-score-{uuid.uuid4().hex}",
            "trial_id": context.trial_id,
            "overall_score": score.overall_score,
            "quality_score": score.quality_score,
            "security_score": score.security_score,
            "speed_score": score.speed_score,
            "cost_score": score.cost_score,
            "success_rate": score.success_rate,
            "deterministic_score": score.deterministic_score,
            "safety_score": score.safety_score,
            "efficiency_score": score.efficiency_score,
            "scorer_version": score.scorer_version,
            "created_at": created_at,
        }
    )

    logger.info(
        "trial_persistence event=persisted trial_id=%s run_id=%s mode=%s overall_score=%.2f",
        context.trial_id,
        run.id,
        context.evaluation_mode,
        score.overall_score,
    )
    return PersistedTrial(
        trial=TrialRecord.model_validate(trial_row),
        scoring=score,
        run=run,
    )


def ensure_run(
    writer: TrialWriter,
    context: TrialExecutionContext,
    *,
    run_mode: str,
    runner: str = DEFAULT_RUNNER,
) -> BenchmarkRun:
    """Return the owning run, creating it on first use and validating reuse."""
    existing = writer.get_run(context.run_id)
    if existing is None:
        terminal = context.status in TERMINAL_STATUSES
        row = {
            "id": context.run_id,
            "runner": runner,
            "mode": run_mode,
            "status": context.status if terminal else "running",
            "started_at": context.started_at,
            "completed_at": context.completed_at if terminal else None,
            "artifact_path": context.artifact_path,
            "notes": context.notes,
        }
        if writer.insert_run(row):
            return parse_run(row)
        # Another request created the run between our read and insert.
        existing = writer.get_run(context.run_id)
        if existing is None:
            raise PersistenceError(
                f"Run '{context.run_id}' could not be created.", code="run_not_found"
            )

    run = parse_run(existing)
    validate_run(run, run_mode=run_mode)
    return run


def load_trial_detail(store: SkillStore, trial_id: str) -> TrialDetail:
    cleaned = (trial_id or "").strip()
    if not cleaned:
        raise InvalidRequestError("trialId is required.", code="invalid_trial_id")
    trial_row = store.get_trial(cleaned)
    if trial_row is None:
        raise NotFoundError(f"Trial '{cleaned}' does not exist.", code="trial_not_found")

    events = [
        TrialEventRecord(
            id=row["id"],
            trial_id=row["trial_id"],
            event_type=row["event_type"],
            payload=row.get("payload_json") or {},
            created_at=row["created_at"],
        )
        for row in sorted(store.list_trial_events(cleaned), key=lambda row: row.get("seq", 0))
    ]
    score_row = store.get_trial_score(cleaned)
    return TrialDetail(
        trial=TrialRecord.model_validate(trial_row),
        events=events,
        score=TrialScoreRecord.model_validate(score_row) if score_row else None,
    )
