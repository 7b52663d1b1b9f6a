from __future__ import annotations

import pytest
from conftest import build_catalog_store

from skillbench_api.app.catalog import load_catalog
from skillbench_api.app.embedding import embed_text
from skillbench_api.app.errors import InvalidRequestError
from skillbench_api.app.models import RecommendationQuery, SkillCatalog
from skillbench_api.app.recommender import (
    average_benchmark,
    build_task_context_by_skill,
    normalize_query,
    recommend,
    select_strategy,
)


@pytest.fixture
def catalog() -> SkillCatalog:
    return load_catalog(build_catalog_store(), run_mode="sandbox")


def test_recommend_picks_matching_skill(catalog: SkillCatalog) -> None:
    result = recommend(
        catalog,
        RecommendationQuery(task="Harden GitHub Actions CI pipeline secrets", agent="any", limit=3),
    )
    assert result.best is not None
    assert result.best.slug == "ci-security-hardening"
    assert result.best.average_benchmark_score == 94.0
    assert result.best.lexical_score > 0
    assert [entry.slug for entry in result.candidates][0] == "ci-security-hardening"


def test_recommend_never_returns_unapproved_skills(catalog: SkillCatalog) -> None:
    result = recommend(
        catalog, RecommendationQuery(task="scrape html pages and crawl tables", limit=5)
    )
    slugs = {entry.slug for entry in result.candidates}
    assert "web-scraper" not in slugs
    assert slugs <= {"ci-security-hardening", "sql-migration-operator"}


def test_recommend_respects_limit_and_agent(catalog: SkillCatalog) -> None:
    result = recommend(
        catalog,
        RecommendationQuery(task="Plan a PostgreSQL schema migration", agent="claude", limit=1),
    )
    assert len(result.candidates) == 1
    assert result.best is not None
    assert result.best.slug == "sql-migration-operator"
    assert result.best.matched_agent == "claude"
    # No claude scores for this skill, so every agent's scores count.
    assert result.best.average_benchmark_score == 90.0


def test_recommend_is_deterministic(catalog: SkillCatalog) -> None:
    query = RecommendationQuery(task="Harden GitHub Actions CI pipeline secrets", limit=3)
    assert recommend(catalog, query) == recommend(catalog, query)


@pytest.mark.parametrize("task", ["", "short", "ci", "abcdefg"])
def test_recommend_rejects_short_task(catalog: SkillCatalog, task: str) -> None:
    with pytest.raises(InvalidRequestError) as exc_info:
        recommend(catalog, RecommendationQuery(task=task, limit=3))
    assert exc_info.value.code == "invalid_task"


def test_recommend_accepts_eight_character_task(catalog: SkillCatalog) -> None:
    result = recommend(catalog, RecommendationQuery(task="ci build", limit=3))
    assert result.candidates


def test_recommend_backs_off_to_lexical_on_near_tie(catalog: SkillCatalog) -> None:
    task = "harden our github actions ci pipeline secrets"
    shared = embed_text(task)
    for skill in catalog.skills:
        skill.embedding = list(shared)

    result = recommend(catalog, RecommendationQuery(task=task, limit=3))

    similarities = [entry.embedding_similarity for entry in result.candidates]
    assert len(similarities) == 2
    assert max(similarities) - min(similarities) < 0.03
    assert result.strategy == "lexical-backoff"
    assert result.best is not None
    assert result.best.slug == "ci-security-hardening"


def test_recommend_returns_no_best_without_approved_skills(catalog: SkillCatalog) -> None:
    for skill in catalog.skills:
        skill.security_review.status = "pending"
    result = recommend(catalog, RecommendationQuery(task="Harden GitHub Actions CI pipeline"))
    assert result.best is None
    assert result.candidates == []


def test_normalize_query_coerces_loose_input() -> None:
    query = normalize_query("  Plan a migration  ", "COPILOT", "abc")
    assert query.task == "Plan a migration"
    assert query.agent == "any"
    assert query.limit == 3

    assert normalize_query("task text", "Gemini", 9).limit == 5
    assert normalize_query("task text", "Gemini", 9).agent == "gemini"
    assert normalize_query("task text", None, 0, default_limit=2).limit == 2
    assert normalize_query(None, None, None).task == ""
    assert normalize_query("task text", 5, float("inf")).agent == "any"
    assert normalize_query("task text", ["codex"], [2]).limit == 3


@pytest.mark.parametrize(
    ("similarities", "has_signal", "expected"),
    [
        ([0.9, 0.1], True, "embedding-first"),
        ([0.9, 0.89], True, "lexical-backoff"),
        ([0.1, 0.0], True, "lexical-backoff"),
        ([0.9], True, "embedding-first"),
        ([], True, "lexical-backoff"),
        ([0.9, 0.1], False, "lexical-backoff"),
    ],
)
def test_select_strategy_confidence_gate(
    similarities: list[float], has_signal: bool, expected: str
) -> None:
    assert select_strategy(similarities, has_signal) == expected


def test_average_benchmark_filters_by_agent(catalog: SkillCatalog) -> None:
    assert average_benchmark(catalog, "skill-ci-security-hardening", agent="any") == 94.0
    assert average_benchmark(catalog, "skill-ci-security-hardening", agent="claude") == 92.0
    assert average_benchmark(catalog, "skill-web-scraper", agent="any") == 0.0


def test_task_context_lists_benchmarked_tasks(catalog: SkillCatalog) -> None:
    contexts = build_task_context_by_skill(catalog)
    assert len(contexts["skill-ci-security-hardening"]) == 1
    assert "ci-pipeline-hardening" in contexts["skill-ci-security-hardening"][0]
    assert "skill-web-scraper" not in contexts
