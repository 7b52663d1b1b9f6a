"""Catalog loader and integrity validator.

The catalog is rebuilt from the store on every request and is served only when
every integrity rule passes. There is no partial or default catalog: a store
that is unreachable, too old, or holding suspicious rows fails the request.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from .embedding import hash_token
from .errors import IntegrityError, SchemaUnavailableError
from .integrity import find_synthetic_marker
from .models import (
    AGENT_NAMES,
    BenchmarkCase,
    BenchmarkRun,
    CatalogCoverage,
    Skill,
    SkillCatalog,
    SkillProvenance,
    SkillScore,
    SkillSecurityReview,
    SkillSummary,
    SkillTask,
    TaskScoreGroup,
)
from .storage.base import SkillStore, iter_missing_columns

logger = logging.getLogger(__name__)

LEGACY_REVIEWED_AT = "2026-02-14T03:00:00.000Z"
LEGACY_REVIEWER = "skills-security-lab"
LEGACY_REVIEW_METHOD = "manual + benchmark"
LEGACY_CHECKLIST_VERSION = "v1.3"


def load_catalog(store: SkillStore, *, run_mode: str) -> SkillCatalog:
    """Read, parse, and validate the full catalog. Raises on any defect."""
    ensure_schema(store)
    catalog = SkillCatalog(
        tasks=[parse_task(row) for row in store.list_tasks()],
        skills=[parse_skill(row) for row in store.list_skills()],
        runs=[parse_run(row) for row in store.list_runs()],
        scores=[parse_score(row) for row in store.list_oracle_scores()],
    )
    try:
        validate_catalog(catalog, run_mode=run_mode)
    except IntegrityError as exc:
        logger.warning(
            "skills_catalog event=integrity_rejected code=%s detail=%s", exc.code, exc.detail
        )
        raise
    logger.info(
        "skills_catalog event=loaded tasks=%d skills=%d runs=%d scores=%d",
        len(catalog.tasks),
        len(catalog.skills),
        len(catalog.runs),
        len(catalog.scores),
    )
    return catalog


def ensure_schema(store: SkillStore) -> None:
    missing = [f"{table}.{column}" for table, column in iter_missing_columns(store)]
    if missing:
        raise SchemaUnavailableError(
            "Skills store is missing required columns: " + ", ".join(missing)
        )


def validate_catalog(catalog: SkillCatalog, *, run_mode: str) -> None:
    if not catalog.skills:
        raise IntegrityError("Catalog has no skills.")
    if not catalog.runs:
        raise IntegrityError("Catalog has no benchmark runs.")
    if not catalog.scores:
        raise IntegrityError("Catalog has no benchmark scores.")

    run_ids: set[str] = set()
    for run in catalog.runs:
        if run.id in run_ids:
            raise IntegrityError(f"Duplicate benchmark run id '{run.id}'.")
        run_ids.add(run.id)
        validate_run(run, run_mode=run_mode)

    task_ids = {task.id for task in catalog.tasks}
    skill_ids = {skill.id for skill in catalog.skills}
    for score in catalog.scores:
        if score.task_id not in task_ids:
            raise IntegrityError(f"Score '{score.id}' references unknown task '{score.task_id}'.")
        if score.skill_id not in skill_ids:
            raise IntegrityError(f"Score '{score.id}' references unknown skill '{score.skill_id}'.")
        if score.run_id not in run_ids:
            raise IntegrityError(f"Score '{score.id}' references unknown run '{score.run_id}'.")
        if not score.created_at.strip():
            raise IntegrityError(f"Score '{score.id}' has no createdAt timestamp.")


def validate_run(run: BenchmarkRun, *, run_mode: str) -> None:
    """Reject runs that are not real pinned-mode runs or that carry synthetic markers."""
    if run.mode.lower() != run_mode.lower():
        raise IntegrityError(
            f"Run '{run.id}' uses mode '{run.mode}', expected '{run_mode}'.",
            code="non_real_benchmark_mode",
        )
    for field_name, value in (("artifactPath", run.artifact_path), ("notes", run.notes)):
        marker = find_synthetic_marker(value)
        if marker is not None:
            raise IntegrityError(
                f"Run '{run.id}' {field_name} contains blocked marker '{marker}'."
            )


def parse_task(row: dict[str, Any]) -> SkillTask:
    return SkillTask(
        id=_string_from(row.get("id")),
        slug=_string_from(row.get("slug")),
        name=_string_from(row.get("name")),
        description=_string_from(row.get("description")),
        category=_string_from(row.get("category"), "general"),
        tags=_string_list(row.get("tags_json")),
    )


def parse_skill(row: dict[str, Any]) -> Skill:
    source_url = _string_from(row.get("source_url"))
    imported_from = _string_from(row.get("imported_from"))
    provenance = parse_provenance(row.get("provenance_json"), source_url, imported_from)
    security_review = parse_security_review(
        row.get("security_review_json"),
        legacy_status=row.get("security_status"),
        legacy_notes=_string_from(row.get("security_notes")),
    )
    return Skill(
        id=_string_from(row.get("id")),
        slug=_string_from(row.get("slug")),
        name=_string_from(row.get("name")),
        agent_family=_agent_family(row.get("agent_family")),
        summary=_string_from(row.get("summary")),
        description=_string_from(row.get("description")),
        keywords=_string_list(row.get("keywords_json")),
        source_url=source_url,
        imported_from=imported_from,
        security_status=security_review.status,
        security_notes=security_review.notes,
        provenance=provenance,
        security_review=security_review,
        embedding=_number_list(row.get("embedding_json")),
        created_at=_string_from(row.get("created_at")),
        updated_at=_string_from(row.get("updated_at")),
    )


def parse_run(row: dict[str, Any]) -> BenchmarkRun:
    status = _string_from(row.get("status"), "running")
    if status not in ("pending", "running", "completed", "failed"):
        raise IntegrityError(f"Run '{row.get('id')}' has unknown status '{status}'.")
    return BenchmarkRun(
        id=_string_from(row.get("id")),
        runner=_string_from(row.get("runner")),
        mode=_string_from(row.get("mode")),
        status=status,
        started_at=_string_from(row.get("started_at")),
        completed_at=_string_from(row.get("completed_at")) or None,
        artifact_path=_string_from(row.get("artifact_path")),
        notes=_string_from(row.get("notes")),
    )


def parse_benchmark_case(row: dict[str, Any]) -> BenchmarkCase:
    timeout = row.get("timeout_seconds")
    if isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0:
        timeout = None
    return BenchmarkCase(
        id=_string_from(row.get("id")),
        benchmark_id=_string_from(row.get("benchmark_id")),
        container_image=_string_from(row.get("container_image")).strip(),
        timeout_seconds=timeout,
    )

def parse_score(row: dict[str, Any]) -> SkillScore:
    score_id = _string_from(row.get("id"))
    agent = _string_from(row.get("agent"))
    if agent not in AGENT_NAMES:
        raise IntegrityError(f"Score '{score_id}' uses unsupported agent '{agent}'.")
    return SkillScore(
        id=score_id,
        run_id=_string_from(row.get("run_id")),
        skill_id=_string_from(row.get("skill_id")),
        task_id=_string_from(row.get("task_id")),
        task_slug=_string_from(row.get("task_slug")),
        task_name=_string_from(row.get("task_name")),
        agent=agent,
        overall_score=_number_from(row.get("overall_score")),
        quality_score=_number_from(row.get("quality_score")),
        security_score=_number_from(row.get("security_score")),
        speed_score=_number_from(row.get("speed_score")),
        cost_score=_number_from(row.get("cost_score")),
        success_rate=_number_from(row.get("success_rate")),
        artifact_path=_string_from(row.get("artifact_path")),
        created_at=_string_from(row.get("created_at")),
    )


def parse_provenance(value: Any, source_url: str, imported_from: str) -> SkillProvenance:
    parsed = _json_object(value) or {}
    return SkillProvenance(
        source_url=_string_from(parsed.get("sourceUrl"), source_url),
        repository=_string_from(parsed.get("repository"), source_url_to_repository(source_url)),
        imported_from=_string_from(parsed.get("importedFrom"), imported_from),
        license=_string_from(parsed.get("license"), "Unknown"),
        last_verified_at=_string_from(parsed.get("lastVerifiedAt"), LEGACY_REVIEWED_AT),
        checksum=_string_from(parsed.get("checksum"), f"legacy:{hash_token(source_url, 997)}"),
    )


def parse_security_review(value: Any, *, legacy_status: Any, legacy_notes: str) -> SkillSecurityReview:
    parsed = _json_object(value) or {}
    return SkillSecurityReview(
        status=_security_status(parsed.get("status", legacy_status)),
        reviewed_by=_string_from(parsed.get("reviewedBy"), LEGACY_REVIEWER),
        reviewed_at=_string_from(parsed.get("reviewedAt"), LEGACY_REVIEWED_AT),
        review_method=_string_from(parsed.get("reviewMethod"), LEGACY_REVIEW_METHOD),
        checklist_version=_string_from(parsed.get("checklistVersion"), LEGACY_CHECKLIST_VERSION),
        notes=_string_from(parsed.get("notes"), legacy_notes),
    )


def source_url_to_repository(source_url: str) -> str:
    """``https://github.com/owner/repo/tree/main`` -> ``owner/repo``."""
    parsed = urlparse(source_url)
    if not parsed.scheme or not parsed.netloc:
        return "unknown"
    parts = [part for part in parsed.path.split("/") if part]
    if len(parts) >= 2:
        return f"{parts[0]}/{parts[1]}"
    return parsed.hostname or "unknown"


def summarise_skill(skill: Skill, all_scores: Iterable[SkillScore]) -> SkillSummary:
    scores = [score for score in all_scores if score.skill_id == skill.id]
    overall = [score.overall_score for score in scores]
    average = sum(overall) / len(overall) if overall else 0.0
    agents: list[str] = []
    for score in scores:
        if score.agent not in agents:
            agents.append(score.agent)
    return SkillSummary(
        id=skill.id,
        slug=skill.slug,
        name=skill.name,
        agent_family=skill.agent_family,
        summary=skill.summary,
        source_url=skill.source_url,
        imported_from=skill.imported_from,
        security_status=skill.security_status,
        security_notes=skill.security_notes,
        provenance=skill.provenance,
        security_review=skill.security_review,
        average_score=round(average, 2),
        best_score=round(max(overall), 2) if overall else 0.0,
        benchmarked_tasks=len({score.task_id for score in scores}),
        agent_coverage=agents,
        updated_at=skill.updated_at,
    )


def compute_coverage(catalog: SkillCatalog) -> CatalogCoverage:
    agents: list[str] = []
    for score in catalog.scores:
        if score.agent not in agents:
            agents.append(score.agent)
    return CatalogCoverage(
        tasks_covered=len({score.task_id for score in catalog.scores}),
        skills_covered=len({score.skill_id for score in catalog.scores}),
        agents_covered=agents,
        score_rows=len(catalog.scores),
    )


def group_scores_by_task(scores: Iterable[SkillScore]) -> list[TaskScoreGroup]:
    grouped: dict[str, list[SkillScore]] = {}
    for score in scores:
        grouped.setdefault(score.task_id, []).append(score)
    return [
        TaskScoreGroup(
            task_id=task_id,
            task_name=rows[0].task_name,
            task_slug=rows[0].task_slug,
            average_score=round(sum(row.overall_score for row in rows) / len(rows), 2),
            scores=rows,
        )
        for task_id, rows in grouped.items()
    ]


def find_skill(catalog: SkillCatalog, id_or_slug: str) -> Skill | None:
    for skill in catalog.skills:
        if skill.id == id_or_slug or skill.slug == id_or_slug:
            return skill
    return None


def _string_from(value: Any, fallback: str = "") -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, str) and value.strip():
        return value
    return fallback


def _number_from(value: Any, fallback: float = 0.0) -> float:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return fallback
    return fallback


def _json_value(value: Any) -> Any:
    """JSONB columns arrive decoded; legacy TEXT columns arrive as JSON strings."""
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def _json_object(value: Any) -> dict[str, Any] | None:
    parsed = _json_value(value)
    return parsed if isinstance(parsed, dict) else None


def _string_list(value: Any) -> list[str]:
    parsed = _json_value(value)
    if not isinstance(parsed, list):
        return []
    return [entry for entry in parsed if isinstance(entry, str)]


def _number_list(value: Any) -> list[float]:
    parsed = _json_value(value)
    if not isinstance(parsed, list):
        return []
    numbers: list[float] = []
    for entry in parsed:
        if isinstance(entry, bool):
            continue
        if isinstance(entry, (int, float)):
            numbers.append(float(entry))
    return numbers


def _agent_family(value: Any) -> str:
    return value if value in ("codex", "claude", "gemini", "multi") else "multi"


def _security_status(value: Any) -> str:
    # Unknown values must never be treated as approved.
    return value if value in ("approved", "pending", "rejected") else "pending"
