from __future__ import annotations

import argparse
import json

from skillbench_api.app.catalog import load_catalog
from skillbench_api.app.recommender import normalize_query, recommend
from skillbench_api.app.settings import get_settings
from skillbench_api.app.storage import PostgresSkillStore


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Rank catalog skills for a task description using the live PostgreSQL catalog."
    )
    parser.add_argument("task", help="Task description (at least 8 characters).")
    parser.add_argument(
        "--agent",
        default="any",
        help="Agent filter: codex, claude, gemini, or any (default: any).",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=3,
        help="Number of candidates to show (default: 3, max: 5).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full ranking as JSON instead of a table.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    settings = get_settings()
    database_url = settings.resolved_database_url()
    if not database_url:
        raise SystemExit("Set SKILLBENCH_DATABASE_URL or DATABASE_URL first.")

    store = PostgresSkillStore(database_url)
    catalog = load_catalog(store, run_mode=settings.benchmark_run_mode)
    query = normalize_query(args.task, args.agent, args.limit)
    result = recommend(catalog, query)

    if args.json:
        print(json.dumps(result.model_dump(by_alias=True), indent=2))
        return

    print(f"Strategy: {result.strategy}")
    if result.best is None:
        print("No approved skill matched.")
        return
    for rank, entry in enumerate(result.candidates, start=1):
        print(
            f"{rank}. {entry.slug:<32} final={entry.final_score:.4f} "
            f"embedding={entry.embedding_similarity:.4f} lexical={entry.lexical_score:.4f} "
            f"benchmark={entry.average_benchmark_score:.2f}"
        )


if __name__ == "__main__":
    main()
