from __future__ import annotations

import argparse

from skillbench_api.app.catalog import parse_skill
from skillbench_api.app.recommender import embed_skill
from skillbench_api.app.settings import get_settings
from skillbench_api.app.storage import PostgresSkillStore


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Store hashed text embeddings for skills that do not have one yet."
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Recompute embeddings for every skill, not only the empty ones.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report which skills would be updated without writing.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    database_url = get_settings().resolved_database_url()
    if not database_url:
        raise SystemExit("Set SKILLBENCH_DATABASE_URL or DATABASE_URL first.")

    store = PostgresSkillStore(database_url)
    store.migrate()
    updated = 0
    skipped = 0
    for row in store.list_skills():
        skill = parse_skill(row)
        if skill.embedding and not args.force:
            skipped += 1
            continue
        if not args.dry_run:
            store.update_skill_embedding(skill.id, embed_skill(skill))
        updated += 1
        print(f"{'would update' if args.dry_run else 'updated'}: {skill.slug}")

    print(f"Skills updated: {updated}")
    print(f"Skills skipped: {skipped}")


if __name__ == "__main__":
    main()
