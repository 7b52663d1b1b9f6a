"""In-memory storage backend for tests only."""

from __future__ import annotations

import copy
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from .base import OPTIONAL_SKILL_COLUMNS, TABLE_COLUMNS, Row


class InMemorySkillStore:
    """Holds every table as a list of row dicts with the PostgreSQL column names."""

    def __init__(self) -> None:
        self._tables: dict[str, list[Row]] = {table: [] for table in TABLE_COLUMNS}
        # Tests drop entries here to simulate an older schema.
        self.columns: dict[str, set[str]] = {
            table: set(columns) for table, columns in TABLE_COLUMNS.items()
        }
        self.columns["skills"].update(OPTIONAL_SKILL_COLUMNS)

    def migrate(self) -> None:
        return None

    def add_row(self, table: str, row: Row) -> None:
        self._tables[table].append(dict(row))

    def rows(self, table: str) -> list[Row]:
        return [dict(row) for row in self._tables[table]]

    def table_columns(self, table: str) -> set[str]:
        return set(self.columns.get(table, set()))

    def list_tasks(self) -> list[Row]:
        return sorted(self.rows("skill_tasks"), key=lambda row: row.get("name", ""))

    def list_skills(self) -> list[Row]:
        available = self.columns["skills"]
        skills = [
            {key: value for key, value in row.items() if key in available}
            for row in self._tables["skills"]
        ]
        return sorted(skills, key=lambda row: row.get("name", ""))

    def list_runs(self) -> list[Row]:
        return sorted(
            self.rows("skill_benchmark_runs"),
            key=lambda row: row.get("started_at") or "",
            reverse=True,
        )

    def list_oracle_scores(self) -> list[Row]:
        scores_by_trial = {row["trial_id"]: row for row in self._tables["trial_scores"]}
        cases = {row["id"]: row for row in self._tables["benchmark_cases"]}
        benchmarks = {row["id"]: row for row in self._tables["benchmarks"]}
        tasks = {row["id"]: row for row in self._tables["skill_tasks"]}

        rows: list[Row] = []
        for trial in self._tables["trials"]:
            if trial.get("status") != "completed":
                continue
            if trial.get("evaluation_mode") != "oracle_skill" or not trial.get("skill_id"):
                continue
            score = scores_by_trial.get(trial["id"])
            if score is None:
                continue
            case = cases.get(trial.get("benchmark_case_id"), {})
            benchmark = benchmarks.get(case.get("benchmark_id"), {})
            task = tasks.get(benchmark.get("task_id"), {})
            rows.append(
                {
                    "id": score["id"],
                    "run_id": trial["run_id"],
                    "skill_id": trial["skill_id"],
                    "task_id": benchmark.get("task_id"),
                    "task_slug": task.get("slug"),
                    "task_name": task.get("name"),
                    "agent": trial.get("agent"),
                    "overall_score": score["overall_score"],
                    "quality_score": score["quality_score"],
                    "security_score": score["security_score"],
                    "speed_score": score["speed_score"],
                    "cost_score": score["cost_score"],
                    "success_rate": score["success_rate"],
                    "artifact_path": trial.get("artifact_path"),
                    "created_at": score.get("created_at"),
                }
            )
        return sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)

    def get_benchmark_case(self, case_id: str) -> Row | None:
        case = _find(self._tables["benchmark_cases"], "id", case_id)
        if case is None:
            return None
        benchmark = _find(self._tables["benchmarks"], "id", case.get("benchmark_id")) or {}
        return {**case, "task_id": benchmark.get("task_id", "")}

    def resolve_skill_id(self, id_or_slug: str) -> str | None:
        for row in self._tables["skills"]:
            if row["id"] == id_or_slug or row.get("slug") == id_or_slug:
                return row["id"]
        return None

    def get_run(self, run_id: str) -> Row | None:
        return _find(self._tables["skill_benchmark_runs"], "id", run_id)

    def list_run_trials(self, run_id: str) -> list[Row]:
        scores_by_trial = {row["trial_id"]: row for row in self._tables["trial_scores"]}
        rows: list[Row] = []
        for trial in self._tables["trials"]:
            if trial.get("run_id") != run_id:
                continue
            score = scores_by_trial.get(trial["id"], {})
            rows.append(
                {
                    **trial,
                    "score_id": score.get("id"),
                    "overall_score": score.get("overall_score"),
                    "success_rate": score.get("success_rate"),
                    "deterministic_score": score.get("deterministic_score"),
                    "safety_score": score.get("safety_score"),
                }
            )
        return sorted(rows, key=lambda row: row.get("created_at") or "")

    def get_trial(self, trial_id: str) -> Row | None:
        return _find(self._tables["trials"], "id", trial_id)

    def list_trial_events(self, trial_id: str) -> list[Row]:
        return [dict(row) for row in self._tables["trial_events"] if row["trial_id"] == trial_id]

    def get_trial_score(self, trial_id: str) -> Row | None:
        return _find(self._tables["trial_scores"], "trial_id", trial_id)

    def update_skill_embedding(self, skill_id: str, embedding: list[float]) -> None:
        for row in self._tables["skills"]:
            if row["id"] == skill_id:
                row["embedding_json"] = list(embedding)
                return
        raise KeyError(f"Skill {skill_id} does not exist")

    @contextmanager
    def transaction(self) -> Iterator[_MemoryTrialWriter]:
        snapshot = copy.deepcopy(self._tables)
        try:
            yield _MemoryTrialWriter(self)
        except BaseException:
            self._tables = snapshot
            raise


class _MemoryTrialWriter:
    def __init__(self, store: InMemorySkillStore) -> None:
        self._store = store

    def get_run(self, run_id: str) -> Row | None:
        return self._store.get_run(run_id)

    def insert_run(self, row: Row) -> bool:
        if self._store.get_run(row["id"]) is not None:
            return False
        self._store.add_row("skill_benchmark_runs", row)
        return True

    def update_run_status(self, run_id: str, *, status: str, completed_at: str | None) -> None:
        for row in self._store._tables["skill_benchmark_runs"]:
            if row["id"] == run_id:
                row["status"] = status
                row["completed_at"] = completed_at

    def resolve_skill_id(self, id_or_slug: str) -> str | None:
        return self._store.resolve_skill_id(id_or_slug)

    def get_benchmark_case(self, case_id: str) -> Row | None:
        return self._store.get_benchmark_case(case_id)

    def insert_trial(self, row: Row) -> None:
        self._store.add_row("trials", row)

    def insert_trial_event(self, row: Row) -> None:
        self._store.add_row("trial_events", row)

    def insert_trial_score(self, row: Row) -> None:
        if self._store.get_trial_score(row["trial_id"]) is not None:
            raise ValueError(f"Trial {row['trial_id']} already has a score")
        self._store.add_row("trial_scores", row)


def _find(rows: list[Row], key: str, value: Any) -> Row | None:
    for row in rows:
        if row.get(key) == value:
            return dict(row)
    return None
