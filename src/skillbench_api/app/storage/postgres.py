"""PostgreSQL storage backend for the skills catalog and trial history.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for tags, keywords, embeddings, and event payloads.
- information_schema: built-in catalog views used here to probe which columns exist.
- Row factory: returns query rows as dict-like objects instead of tuples.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from ..errors import StoreUnavailableError
from .base import OPTIONAL_SKILL_COLUMNS, TABLE_COLUMNS, Row

logger = logging.getLogger(__name__)

_SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS skill_tasks (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'general',
        tags_json JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS skills (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        agent_family TEXT NOT NULL DEFAULT 'multi'
            CHECK (agent_family IN ('codex', 'claude', 'gemini', 'multi')),
        summary TEXT NOT NULL,
        description TEXT NOT NULL,
        keywords_json JSONB NOT NULL DEFAULT '[]'::jsonb,
        source_url TEXT,
        imported_from TEXT,
        security_status TEXT NOT NULL DEFAULT 'pending'
            CHECK (security_status IN ('approved', 'pending', 'rejected')),
        security_notes TEXT NOT NULL DEFAULT '',
        provenance_json JSONB,
        security_review_json JSONB,
        embedding_json JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS skill_benchmark_runs (
        id TEXT PRIMARY KEY,
        runner TEXT NOT NULL,
        mode TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'running'
            CHECK (status IN ('pending', 'running', 'completed', 'failed')),
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        artifact_path TEXT NOT NULL,
        notes TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS benchmarks (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL REFERENCES skill_tasks(id) ON DELETE CASCADE,
        slug TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS benchmark_cases (
        id TEXT PRIMARY KEY,
        benchmark_id TEXT NOT NULL REFERENCES benchmarks(id) ON DELETE CASCADE,
        slug TEXT NOT NULL,
        name TEXT NOT NULL,
        instructions TEXT NOT NULL DEFAULT '',
        container_image TEXT NOT NULL DEFAULT '',
        timeout_seconds INTEGER NOT NULL DEFAULT 1800,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (benchmark_id, slug)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trials (
        id TEXT PRIMARY KEY,
        benchmark_case_id TEXT NOT NULL REFERENCES benchmark_cases(id) ON DELETE CASCADE,
        run_id TEXT NOT NULL REFERENCES skill_benchmark_runs(id) ON DELETE CASCADE,
        skill_id TEXT REFERENCES skills(id) ON DELETE CASCADE,
        agent TEXT NOT NULL CHECK (agent IN ('codex', 'claude', 'gemini')),
        model TEXT NOT NULL,
        seed INTEGER NOT NULL DEFAULT 0,
        evaluation_mode TEXT NOT NULL
            CHECK (evaluation_mode IN ('baseline', 'oracle_skill', 'library_selection')),
        status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'completed', 'failed')),
        artifact_path TEXT NOT NULL,
        notes TEXT NOT NULL DEFAULT '',
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trial_events (
        id TEXT PRIMARY KEY,
        trial_id TEXT NOT NULL REFERENCES trials(id) ON DELETE CASCADE,
        seq INTEGER NOT NULL,
        event_type TEXT NOT NULL
            CHECK (event_type IN ('command', 'tool_call', 'safety', 'status')),
        payload_json JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trial_scores (
        id TEXT PRIMARY KEY,
        trial_id TEXT NOT NULL UNIQUE REFERENCES trials(id) ON DELETE CASCADE,
        overall_score DOUBLE PRECISION NOT NULL,
        quality_score DOUBLE PRECISION NOT NULL,
        security_score DOUBLE PRECISION NOT NULL,
        speed_score DOUBLE PRECISION NOT NULL,
        cost_score DOUBLE PRECISION NOT NULL,
        success_rate DOUBLE PRECISION NOT NULL,
        deterministic_score DOUBLE PRECISION NOT NULL DEFAULT 0,
        safety_score DOUBLE PRECISION NOT NULL DEFAULT 0,
        efficiency_score DOUBLE PRECISION NOT NULL DEFAULT 0,
        scorer_version TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_benchmark_cases_benchmark ON benchmark_cases(benchmark_id)",
    "CREATE INDEX IF NOT EXISTS idx_trials_run ON trials(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_trials_skill ON trials(skill_id, evaluation_mode, agent)",
    "CREATE INDEX IF NOT EXISTS idx_trials_status ON trials(status, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_trial_events_trial ON trial_events(trial_id, seq)",
    "CREATE INDEX IF NOT EXISTS idx_trial_scores_created ON trial_scores(created_at DESC)",
)

_ORACLE_SCORES_SQL = """
    SELECT ts.id, t.run_id, t.skill_id, b.task_id, st.slug AS task_slug, st.name AS task_name,
           t.agent, ts.overall_score, ts.quality_score, ts.security_score, ts.speed_score,
           ts.cost_score, ts.success_rate, t.artifact_path, ts.created_at
    FROM trials t
    INNER JOIN trial_scores ts ON ts.trial_id = t.id
    LEFT JOIN benchmark_cases bc ON bc.id = t.benchmark_case_id
    LEFT JOIN benchmarks b ON b.id = bc.benchmark_id
    LEFT JOIN skill_tasks st ON st.id = b.task_id
    WHERE t.status = 'completed'
      AND t.evaluation_mode = 'oracle_skill'
      AND t.skill_id IS NOT NULL
    ORDER BY ts.created_at DESC
"""

_BENCHMARK_CASE_SQL = """
    SELECT bc.id, bc.benchmark_id, b.task_id, bc.container_image, bc.timeout_seconds
    FROM benchmark_cases bc
    INNER JOIN benchmarks b ON b.id = bc.benchmark_id
    WHERE bc.id = %s
"""

_RUN_COLUMNS = "id, runner, mode, status, started_at, completed_at, artifact_path, notes"


class PostgresSkillStore:
    """Thread-safe PostgreSQL-backed store for catalog reads and trial writes."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        # Lazy import helper keeps error message clear if psycopg is missing.
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.commit()

    def table_columns(self, table: str) -> set[str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT column_name
                FROM information_schema.columns
                WHERE table_schema = ANY (current_schemas(false))
                  AND table_name = %s
                """,
                (table,),
            ).fetchall()
        return {str(row["column_name"]) for row in rows}

    def list_tasks(self) -> list[Row]:
        return self._fetch_all(
            "SELECT id, slug, name, description, category, tags_json FROM skill_tasks ORDER BY name ASC"
        )

    def list_skills(self) -> list[Row]:
        available = self.table_columns("skills")
        columns = [column for column in TABLE_COLUMNS["skills"] if column in available]
        columns.extend(column for column in OPTIONAL_SKILL_COLUMNS if column in available)
        # Column names come from the fixed whitelist above, never from input.
        return self._fetch_all(f"SELECT {', '.join(columns)} FROM skills ORDER BY name ASC")

    def list_runs(self) -> list[Row]:
        return self._fetch_all(
            f"SELECT {_RUN_COLUMNS} FROM skill_benchmark_runs ORDER BY started_at DESC"
        )

    def list_oracle_scores(self) -> list[Row]:
        return self._fetch_all(_ORACLE_SCORES_SQL)

    def get_benchmark_case(self, case_id: str) -> Row | None:
        return self._fetch_one(_BENCHMARK_CASE_SQL, (case_id,))

    def resolve_skill_id(self, id_or_slug: str) -> str | None:
        row = self._fetch_one(
            "SELECT id FROM skills WHERE id = %s OR slug = %s LIMIT 1", (id_or_slug, id_or_slug)
        )
        return str(row["id"]) if row else None

    def get_run(self, run_id: str) -> Row | None:
        return self._fetch_one(
            f"SELECT {_RUN_COLUMNS} FROM skill_benchmark_runs WHERE id = %s", (run_id,)
        )

    def list_run_trials(self, run_id: str) -> list[Row]:
        return self._fetch_all(
            """
            SELECT t.*, ts.id AS score_id, ts.overall_score, ts.success_rate,
                   ts.deterministic_score, ts.safety_score
            FROM trials t
            LEFT JOIN trial_scores ts ON ts.trial_id = t.id
            WHERE t.run_id = %s
            ORDER BY t.created_at ASC
            """,
            (run_id,),
        )

    def get_trial(self, trial_id: str) -> Row | None:
        return self._fetch_one("SELECT * FROM trials WHERE id = %s", (trial_id,))

    def list_trial_events(self, trial_id: str) -> list[Row]:
        return self._fetch_all(
            "SELECT id, trial_id, event_type, payload_json, created_at "
            "FROM trial_events WHERE trial_id = %s ORDER BY seq ASC",
            (trial_id,),
        )

    def get_trial_score(self, trial_id: str) -> Row | None:
        return self._fetch_one("SELECT * FROM trial_scores WHERE trial_id = %s", (trial_id,))

    def update_skill_embedding(self, skill_id: str, embedding: list[float]) -> None:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "UPDATE skills SET embedding_json = %s WHERE id = %s",
                (self._json_wrapper(embedding), skill_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Skill {skill_id} does not exist")
            conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[_PostgresTrialWriter]:
        """Yield a writer whose statements commit together or not at all."""
        with self._lock, self._connect() as conn:
            with conn.transaction():
                yield _PostgresTrialWriter(conn, self._json_wrapper)

    def _fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[Row]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_normalize_row(row) for row in rows]

    def _fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> Row | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _normalize_row(row) if row is not None else None

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        try:
            return self._psycopg.connect(self.database_url, row_factory=self._dict_row)
        except self._psycopg.OperationalError as exc:
            logger.warning("skill_store event=connect_failed error=%s", exc)
            raise StoreUnavailableError("Skills store is unreachable.") from exc

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json


class _PostgresTrialWriter:
    """Runs every statement on the single connection owned by one transaction."""

    def __init__(self, conn: Any, json_wrapper: Any) -> None:
        self._conn = conn
        self._json = json_wrapper

    def get_run(self, run_id: str) -> Row | None:
        row = self._conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM skill_benchmark_runs WHERE id = %s", (run_id,)
        ).fetchone()
        return _normalize_row(row) if row is not None else None

    def insert_run(self, row: Row) -> bool:
        cursor = self._conn.execute(
            """
            INSERT INTO skill_benchmark_runs (
                id, runner, mode, status, started_at, completed_at, artifact_path, notes
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO NOTHING
            """,
            (
                row["id"],
                row["runner"],
                row["mode"],
                row["status"],
                _to_timestamp(row["started_at"]),
                _to_timestamp(row.get("completed_at")),
                row["artifact_path"],
                row.get("notes", ""),
            ),
        )
        return cursor.rowcount == 1

    def update_run_status(self, run_id: str, *, status: str, completed_at: str | None) -> None:
        self._conn.execute(
            "UPDATE skill_benchmark_runs SET status = %s, completed_at = %s WHERE id = %s",
            (status, _to_timestamp(completed_at), run_id),
        )

    def resolve_skill_id(self, id_or_slug: str) -> str | None:
        row = self._conn.execute(
            "SELECT id FROM skills WHERE id = %s OR slug = %s LIMIT 1", (id_or_slug, id_or_slug)
        ).fetchone()
        return str(row["id"]) if row else None

    def get_benchmark_case(self, case_id: str) -> Row | None:
        row = self._conn.execute(_BENCHMARK_CASE_SQL, (case_id,)).fetchone()
        return _normalize_row(row) if row is not None else None

    def insert_trial(self, row: Row) -> None:
        self._conn.execute(
            """
            INSERT INTO trials (
                id, benchmark_case_id, run_id, skill_id, agent, model, seed, evaluation_mode,
                status, artifact_path, notes, started_at, completed_at, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                row["id"],
                row["benchmark_case_id"],
                row["run_id"],
                row.get("skill_id"),
                row["agent"],
                row["model"],
                row["seed"],
                row["evaluation_mode"],
                row["status"],
                row["artifact_path"],
                row.get("notes", ""),
                _to_timestamp(row.get("started_at")),
                _to_timestamp(row.get("completed_at")),
                _to_timestamp(row["created_at"]),
            ),
        )

    def insert_trial_event(self, row: Row) -> None:
        self._conn.execute(
            """
            INSERT INTO trial_events (id, trial_id, seq, event_type, payload_json, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                row["id"],
                row["trial_id"],
                row["seq"],
                row["event_type"],
                self._json(row.get("payload_json") or {}),
                _to_timestamp(row["created_at"]),
            ),
        )

    def insert_trial_score(self, row: Row) -> None:
        self._conn.execute(
            """
            INSERT INTO trial_scores (
                id, trial_id, overall_score, quality_score, security_score, speed_score,
                cost_score, success_rate, deterministic_score, safety_score, efficiency_score,
                scorer_version, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                row["id"],
                row["trial_id"],
                row["overall_score"],
                row["quality_score"],
                row["security_score"],
                row["speed_score"],
                row["cost_score"],
                row["success_rate"],
                row["deterministic_score"],
                row["safety_score"],
                row["efficiency_score"],
                row["scorer_version"],
                _to_timestamp(row["created_at"]),
            ),
        )


def _normalize_row(row: Any) -> Row:
    """Convert driver values into the plain shapes the catalog layer expects."""
    normalized: Row = {}
    for key, value in dict(row).items():
        if isinstance(value, datetime):
            normalized[key] = value.isoformat()
        else:
            normalized[key] = value
    return normalized


def _to_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
