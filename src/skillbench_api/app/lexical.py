from __future__ import annotations

from collections.abc import Iterable

from .embedding import tokenize

SKILL_LEXICAL_WEIGHT = 0.65
TASK_LEXICAL_WEIGHT = 0.35


def token_set(text: str) -> set[str]:
    return set(tokenize(text))


def jaccard_similarity(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    union = len(a | b)
    if union == 0:
        return 0.0
    return min(1.0, max(0.0, len(a & b) / union))


def blended_lexical_score(
    query_tokens: set[str],
    *,
    skill_text: str,
    task_context: Iterable[str],
) -> float:
    """Blend the skill's own text match with its benchmarked task context."""
    skill_score = jaccard_similarity(query_tokens, token_set(skill_text))
    task_score = jaccard_similarity(query_tokens, token_set(" ".join(task_context)))
    blended = SKILL_LEXICAL_WEIGHT * skill_score + TASK_LEXICAL_WEIGHT * task_score
    return min(1.0, max(0.0, blended))
