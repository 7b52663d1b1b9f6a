"""Pydantic models shared across the catalog, recommender, trials, and API.

Beginner terms used in this file:
- ApiModel: base model whose JSON keys are camelCase (``sourceUrl``) while the
  Python attributes stay snake_case (``source_url``).
- Literal: restricts a field to a fixed set of allowed string values.
- Agent family vs agent filter: a skill declares which agents it supports
  (``multi`` means all of them); a query filters by one agent or ``any``.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AgentName = Literal["codex", "claude", "gemini"]
AgentFamily = Literal["codex", "claude", "gemini", "multi"]
AgentFilter = Literal["codex", "claude", "gemini", "any"]
SecurityStatus = Literal["approved", "pending", "rejected"]
RunStatus = Literal["pending", "running", "completed", "failed"]
TrialStatus = Literal["pending", "running", "completed", "failed"]
EvaluationMode = Literal["baseline", "oracle_skill", "library_selection"]
EventType = Literal["command", "tool_call", "safety", "status"]
RetrievalStrategy = Literal["embedding-first", "lexical-backoff"]

AGENT_NAMES: tuple[str, ...] = ("codex", "claude", "gemini")
EVALUATION_MODES: tuple[str, ...] = ("baseline", "oracle_skill", "library_selection")
TRIAL_STATUSES: tuple[str, ...] = ("pending", "running", "completed", "failed")
TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed")
EVENT_TYPES: tuple[str, ...] = ("command", "tool_call", "safety", "status")


class ApiModel(BaseModel):
    """Base for every model that crosses the HTTP boundary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Catalog entities (read-only snapshots rebuilt per request).


class SkillProvenance(ApiModel):
    source_url: str
    repository: str
    imported_from: str
    license: str
    last_verified_at: str
    checksum: str


class SkillSecurityReview(ApiModel):
    status: SecurityStatus
    reviewed_by: str
    reviewed_at: str
    review_method: str
    checklist_version: str
    notes: str


class SkillTask(ApiModel):
    id: str
    slug: str
    name: str
    description: str
    category: str = "general"
    tags: list[str] = Field(default_factory=list)


class Skill(ApiModel):
    id: str
    slug: str
    name: str
    agent_family: AgentFamily = "multi"
    summary: str
    description: str
    keywords: list[str] = Field(default_factory=list)
    source_url: str = ""
    imported_from: str = ""
    security_status: SecurityStatus
    security_notes: str = ""
    provenance: SkillProvenance
    security_review: SkillSecurityReview
    # Unit-normalized; empty when the store has no embedding for this skill yet.
    embedding: list[float] = Field(default_factory=list)
    created_at: str
    updated_at: str

    def searchable_text(self) -> str:
        return " ".join([self.name, self.summary, self.description, " ".join(self.keywords)])


class BenchmarkRun(ApiModel):
    id: str
    runner: str
    mode: str
    status: RunStatus
    started_at: str
    completed_at: str | None = None
    artifact_path: str
    notes: str = ""


class SkillScore(ApiModel):
    """Catalog-level benchmark score derived from a completed oracle_skill trial."""

    id: str
    run_id: str
    skill_id: str
    task_id: str
    task_slug: str = ""
    task_name: str = ""
    agent: AgentName
    overall_score: float
    quality_score: float
    security_score: float
    speed_score: float
    cost_score: float
    success_rate: float
    artifact_path: str
    created_at: str


class SkillCatalog(BaseModel):
    tasks: list[SkillTask] = Field(default_factory=list)
    skills: list[Skill] = Field(default_factory=list)
    runs: list[BenchmarkRun] = Field(default_factory=list)
    scores: list[SkillScore] = Field(default_factory=list)


class SkillSummary(ApiModel):
    id: str
    slug: str
    name: str
    agent_family: AgentFamily
    summary: str
    source_url: str
    imported_from: str
    security_status: SecurityStatus
    security_notes: str
    provenance: SkillProvenance
    security_review: SkillSecurityReview
    average_score: float
    best_score: float
    benchmarked_tasks: int
    agent_coverage: list[AgentName]
    updated_at: str


class CatalogCoverage(ApiModel):
    tasks_covered: int
    skills_covered: int
    agents_covered: list[AgentName]
    score_rows: int


class TaskScoreGroup(ApiModel):
    task_id: str
    task_name: str
    task_slug: str
    average_score: float
    scores: list[SkillScore]


class BenchmarkCase(ApiModel):
    id: str
    benchmark_id: str
    container_image: str = ""
    # None when the row carries no usable per-case timeout.
    timeout_seconds: int | None = None


# Recommendation.


class RecommendationQuery(ApiModel):
    task: str
    agent: AgentFilter = "any"
    limit: int = 3


class RecommendationEntry(ApiModel):
    skill_id: str
    slug: str
    name: str
    security_status: SecurityStatus
    source_url: str
    average_benchmark_score: float
    embedding_similarity: float
    lexical_score: float
    retrieval_score: float
    final_score: float
    matched_agent: AgentFilter
    provenance: SkillProvenance
    security_review: SkillSecurityReview


class RecommendationResult(ApiModel):
    strategy: RetrievalStrategy
    best: RecommendationEntry | None = None
    candidates: list[RecommendationEntry] = Field(default_factory=list)


class RecommendRequest(ApiModel):
    """Loose POST body; normalization happens in the recommender."""

    task: Any = ""
    agent: Any = None
    limit: Any = None


# Trials.


class TrialMetrics(ApiModel):
    duration_ms: float = 0.0
    command_count: int = 0
    tool_call_count: int = 0
    cost_units: float = 0.0


class TrialChecks(ApiModel):
    deterministic_passed: int | None = None
    deterministic_total: int | None = None
    violations: list[str] = Field(default_factory=list)
    metrics: TrialMetrics | None = None


class TrialEvent(ApiModel):
    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    command: str | None = None
    blocked: bool = False
    exit_code: int | None = None
    duration_ms: float = 0.0


class TrialExecutionContext(ApiModel):
    """A validated trial, ready to be scored and persisted."""

    trial_id: str
    benchmark_case_id: str
    run_id: str
    skill_id: str | None = None
    agent: AgentName
    model: str
    seed: int = 0
    evaluation_mode: EvaluationMode
    status: TrialStatus
    artifact_path: str
    notes: str = ""
    started_at: str
    completed_at: str | None = None
    events: list[TrialEvent] = Field(default_factory=list)
    checks: TrialChecks = Field(default_factory=TrialChecks)


class TrialScoreComputation(ApiModel):
    overall_score: float
    quality_score: float
    security_score: float
    speed_score: float
    cost_score: float
    success_rate: float
    deterministic_score: float
    safety_score: float
    efficiency_score: float
    violations: int = 0
    forbidden_commands: list[str] = Field(default_factory=list)
    scorer_version: str


class TrialRecord(ApiModel):
    id: str
    benchmark_case_id: str
    run_id: str
    skill_id: str | None = None
    agent: AgentName
    model: str
    seed: int = 0
    evaluation_mode: EvaluationMode
    status: TrialStatus
    artifact_path: str
    notes: str = ""
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str


class TrialEventRecord(ApiModel):
    id: str
    trial_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str


class TrialScoreRecord(ApiModel):
    id: str
    trial_id: str
    overall_score: float
    quality_score: float
    security_score: float
    speed_score: float
    cost_score: float
    success_rate: float
    deterministic_score: float
    safety_score: float
    efficiency_score: float
    scorer_version: str
    created_at: str


class PersistedTrial(ApiModel):
    trial: TrialRecord
    scoring: TrialScoreComputation
    run: BenchmarkRun


class TrialDetail(ApiModel):
    trial: TrialRecord
    events: list[TrialEventRecord] = Field(default_factory=list)
    score: TrialScoreRecord | None = None


# Orchestration and comparison.


class OrchestrateRequest(ApiModel):
    benchmark_case_id: str = ""
    oracle_skill_id: str | None = None
    agent: str = "codex"
    model: str | None = None
    seed: int = Field(default=0, ge=-(2**31), le=2**31 - 1)
    run_id: str | None = None
    modes: list[str] | None = None
    timeout_seconds: int | None = None


class InspectRequest(ApiModel):
    run_id: str = ""


class ModeSummary(ApiModel):
    mode: EvaluationMode
    trial_id: str
    status: TrialStatus
    skill_id: str | None = None
    overall_score: float | None = None
    success_rate: float | None = None
    deterministic_score: float | None = None
    safety_score: float | None = None


class ScoreDelta(ApiModel):
    overall_score_delta: float
    success_rate_delta: float
    deterministic_delta: float
    safety_delta: float


class ComparisonDeltas(ApiModel):
    oracle_skill_vs_baseline: ScoreDelta | None = None
    library_selection_vs_baseline: ScoreDelta | None = None


class TrialComparison(ApiModel):
    modes: dict[str, ModeSummary] = Field(default_factory=dict)
    deltas: ComparisonDeltas = Field(default_factory=ComparisonDeltas)


class RunInspection(ApiModel):
    run_id: str
    run: BenchmarkRun
    trial_count: int
    score_count: int
    trials: list[ModeSummary]
    comparison: TrialComparison


class OrchestratedTrial(ApiModel):
    mode: EvaluationMode
    trial: TrialRecord
    scoring: TrialScoreComputation


class OrchestrationResult(ApiModel):
    run_id: str
    modes_executed: list[EvaluationMode]
    trials: list[OrchestratedTrial]
    comparison: TrialComparison
