"""Storage backends for the skills catalog and trial history."""

from skillbench_api.app.storage.base import TABLE_COLUMNS, SkillStore, TrialWriter
from skillbench_api.app.storage.memory import InMemorySkillStore
from skillbench_api.app.storage.postgres import PostgresSkillStore

__all__ = [
    "InMemorySkillStore",
    "PostgresSkillStore",
    "SkillStore",
    "TABLE_COLUMNS",
    "TrialWriter",
]
