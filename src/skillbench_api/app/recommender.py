"""Hybrid skill recommendation: hashed embeddings, lexical overlap, and benchmarks.

Beginner terms used in this file:
- Confidence gate: when the best embedding match is weak, or barely ahead of
  the runner-up, ranking switches to lexical overlap instead.
- benchmarkNorm: a skill's average benchmark score scaled into [0, 1].
"""

from __future__ import annotations

import logging
from typing import Any

from .embedding import cosine_similarity, embed_text, normalize_embedding, vector_magnitude
from .errors import InvalidRequestError
from .lexical import blended_lexical_score, token_set
from .models import (
    AGENT_NAMES,
    RecommendationEntry,
    RecommendationQuery,
    RecommendationResult,
    Skill,
    SkillCatalog,
)

logger = logging.getLogger(__name__)

MIN_TASK_LENGTH = 8
DEFAULT_LIMIT = 3
MAX_LIMIT = 5

EMBEDDING_CONFIDENCE_MIN = 0.22
EMBEDDING_MARGIN_MIN = 0.03
LEXICAL_BOOST_WEIGHT = 0.15

# (retrieval weight, benchmark weight) per strategy.
FINAL_WEIGHTS = {
    "embedding-first": (0.75, 0.25),
    "lexical-backoff": (0.7, 0.3),
}


def normalize_query(
    task: Any, agent: Any = None, limit: Any = None, *, default_limit: int = DEFAULT_LIMIT
) -> RecommendationQuery:
    """Coerce loosely-typed caller input into a bounded query."""
    task_text = task.strip() if isinstance(task, str) else ""
    raw_agent = agent.strip().lower() if isinstance(agent, str) else "any"
    normalized_agent = raw_agent if raw_agent in AGENT_NAMES else "any"
    try:
        numeric_limit = int(limit) if limit is not None else 0
    except (TypeError, ValueError, OverflowError):
        numeric_limit = 0
    if numeric_limit <= 0:
        numeric_limit = default_limit
    return RecommendationQuery(
        task=task_text, agent=normalized_agent, limit=min(MAX_LIMIT, numeric_limit)
    )


def recommend(catalog: SkillCatalog, query: RecommendationQuery) -> RecommendationResult:
    if len(query.task) < MIN_TASK_LENGTH:
        raise InvalidRequestError(
            f"Task description must be at least {MIN_TASK_LENGTH} characters.",
            code="invalid_task",
        )

    available = [skill for skill in catalog.skills if skill.security_review.status == "approved"]
    if not available:
        return RecommendationResult(strategy="lexical-backoff", best=None, candidates=[])

    query_embedding = embed_text(query.task)
    query_tokens = token_set(query.task)
    has_embedding_signal = vector_magnitude(query_embedding) > 0
    task_context = build_task_context_by_skill(catalog)

    raw: list[dict[str, Any]] = []
    for skill in available:
        average = average_benchmark(catalog, skill.id, agent=query.agent)
        embedding = normalize_embedding(skill.embedding or embed_skill(skill))
        similarity = cosine_similarity(query_embedding, embedding) if has_embedding_signal else 0.0
        lexical = blended_lexical_score(
            query_tokens,
            skill_text=skill.searchable_text(),
            task_context=task_context.get(skill.id, []),
        )
        raw.append(
            {
                "skill": skill,
                "average": average,
                "benchmark_norm": _clamp(average / 100),
                "similarity": similarity,
                "lexical": lexical,
            }
        )

    strategy = select_strategy([entry["similarity"] for entry in raw], has_embedding_signal)
    retrieval_weight, benchmark_weight = FINAL_WEIGHTS[strategy]

    entries: list[RecommendationEntry] = []
    for entry in raw:
        if strategy == "lexical-backoff":
            retrieval = entry["lexical"]
        else:
            retrieval = _clamp(entry["similarity"] + LEXICAL_BOOST_WEIGHT * entry["lexical"])
        final = retrieval_weight * retrieval + benchmark_weight * entry["benchmark_norm"]
        skill: Skill = entry["skill"]
        entries.append(
            RecommendationEntry(
                skill_id=skill.id,
                slug=skill.slug,
                name=skill.name,
                security_status=skill.security_status,
                source_url=skill.source_url,
                average_benchmark_score=round(entry["average"], 2),
                embedding_similarity=round(entry["similarity"], 4),
                lexical_score=round(entry["lexical"], 4),
                retrieval_score=round(retrieval, 4),
                final_score=round(final, 4),
                matched_agent=query.agent,
                provenance=skill.provenance,
                security_review=skill.security_review,
            )
        )

    entries.sort(
        key=lambda item: (
            -item.final_score,
            -item.lexical_score,
            -item.average_benchmark_score,
            item.slug,
        )
    )
    ranked = entries[: query.limit]
    logger.info(
        "skill_recommendation event=ranked strategy=%s candidates=%d best=%s",
        strategy,
        len(ranked),
        ranked[0].slug if ranked else None,
    )
    return RecommendationResult(strategy=strategy, best=ranked[0] if ranked else None, candidates=ranked)


def select_strategy(similarities: list[float], has_embedding_signal: bool) -> str:
    """Apply the confidence gate to the per-skill embedding similarities."""
    ordered = sorted(similarities, reverse=True)
    strongest = ordered[0] if ordered else 0.0
    runner_up = ordered[1] if len(ordered) > 1 else 0.0
    if (
        not has_embedding_signal
        or strongest < EMBEDDING_CONFIDENCE_MIN
        or strongest - runner_up < EMBEDDING_MARGIN_MIN
    ):
        return "lexical-backoff"
    return "embedding-first"


def average_benchmark(catalog: SkillCatalog, skill_id: str, *, agent: str) -> float:
    """Mean overall score for a skill, for ``agent`` when it has any scores."""
    skill_scores = [score for score in catalog.scores if score.skill_id == skill_id]
    if agent != "any":
        agent_scores = [score for score in skill_scores if score.agent == agent]
        if agent_scores:
            skill_scores = agent_scores
    if not skill_scores:
        return 0.0
    return sum(score.overall_score for score in skill_scores) / len(skill_scores)


def build_task_context_by_skill(catalog: SkillCatalog) -> dict[str, list[str]]:
    """Distinct task descriptions each skill has been benchmarked against."""
    tasks = {task.id: task for task in catalog.tasks}
    contexts: dict[str, list[str]] = {}
    for score in catalog.scores:
        task = tasks.get(score.task_id)
        if task is None:
            continue
        text = " ".join([task.slug, task.name, task.description, " ".join(task.tags)])
        bucket = contexts.setdefault(score.skill_id, [])
        if text not in bucket:
            bucket.append(text)
    return contexts


def embed_skill(skill: Skill) -> list[float]:
    return embed_text(skill.searchable_text())


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(high, max(low, value))
