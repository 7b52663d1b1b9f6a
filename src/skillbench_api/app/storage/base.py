"""Storage interfaces for the skills catalog and trial history.

Rows cross this boundary as plain dicts keyed by column name so that the
catalog layer can probe for optional columns the same way for every backend.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import AbstractContextManager
from typing import Any, Protocol

Row = dict[str, Any]

# Columns the catalog and trial layers read or write. Missing any of them
# means the store predates trial-native scoring.
TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "skill_tasks": ("id", "slug", "name", "description", "category", "tags_json"),
    "skills": (
        "id",
        "slug",
        "name",
        "agent_family",
        "summary",
        "description",
        "keywords_json",
        "source_url",
        "imported_from",
        "security_status",
        "security_notes",
        "created_at",
        "updated_at",
    ),
    "skill_benchmark_runs": (
        "id",
        "runner",
        "mode",
        "status",
        "started_at",
        "completed_at",
        "artifact_path",
        "notes",
    ),
    "benchmarks": ("id", "task_id"),
    "benchmark_cases": ("id", "benchmark_id", "container_image", "timeout_seconds"),
    "trials": (
        "id",
        "benchmark_case_id",
        "run_id",
        "skill_id",
        "agent",
        "model",
        "seed",
        "evaluation_mode",
        "status",
        "artifact_path",
        "notes",
        "started_at",
        "completed_at",
        "created_at",
    ),
    "trial_events": ("id", "trial_id", "event_type", "payload_json", "created_at"),
    "trial_scores": (
        "id",
        "trial_id",
        "overall_score",
        "quality_score",
        "security_score",
        "speed_score",
        "cost_score",
        "success_rate",
        "deterministic_score",
        "safety_score",
        "efficiency_score",
        "scorer_version",
        "created_at",
    ),
}

# Optional skill columns added after the first catalog release.
OPTIONAL_SKILL_COLUMNS: tuple[str, ...] = (
    "provenance_json",
    "security_review_json",
    "embedding_json",
)


class TrialWriter(Protocol):
    """Unit of work handed out by ``SkillStore.transaction()``."""

    def get_run(self, run_id: str) -> Row | None: ...

    def insert_run(self, row: Row) -> bool: ...

    def update_run_status(self, run_id: str, *, status: str, completed_at: str | None) -> None: ...

    def resolve_skill_id(self, id_or_slug: str) -> str | None: ...

    def get_benchmark_case(self, case_id: str) -> Row | None: ...

    def insert_trial(self, row: Row) -> None: ...

    def insert_trial_event(self, row: Row) -> None: ...

    def insert_trial_score(self, row: Row) -> None: ...


class SkillStore(Protocol):
    def migrate(self) -> None: ...

    def table_columns(self, table: str) -> set[str]: ...

    def list_tasks(self) -> list[Row]: ...

    def list_skills(self) -> list[Row]: ...

    def list_runs(self) -> list[Row]: ...

    def list_oracle_scores(self) -> list[Row]: ...

    def get_benchmark_case(self, case_id: str) -> Row | None: ...

    def resolve_skill_id(self, id_or_slug: str) -> str | None: ...

    def get_run(self, run_id: str) -> Row | None: ...

    def list_run_trials(self, run_id: str) -> list[Row]: ...

    def get_trial(self, trial_id: str) -> Row | None: ...

    def list_trial_events(self, trial_id: str) -> list[Row]: ...

    def get_trial_score(self, trial_id: str) -> Row | None: ...

    def update_skill_embedding(self, skill_id: str, embedding: list[float]) -> None: ...

    def transaction(self) -> AbstractContextManager[TrialWriter]: ...


def iter_missing_columns(
    store: SkillStore, required: dict[str, tuple[str, ...]] = TABLE_COLUMNS
) -> Iterator[tuple[str, str]]:
    """Yield ``(table, column)`` pairs the store does not expose."""
    for table, columns in required.items():
        available = store.table_columns(table)
        for column in columns:
            if column not in available:
                yield table, column
