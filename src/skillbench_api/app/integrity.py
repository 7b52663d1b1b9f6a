"""Shared integrity rules: synthetic-data markers, destructive commands, contracts."""

from __future__ import annotations

import re
from urllib.parse import unquote

SYNTHETIC_MARKERS: tuple[str, ...] = ("fallback", "mock", "synthetic", "seed")

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")
MAX_RUN_ID_LENGTH = 190

# registry/repo/path@sha256:<64 hex>
PINNED_IMAGE_PATTERN = re.compile(
    r"^[A-Za-z0-9][A-Za-z0-9._-]*(?::[0-9]+)?(?:/[A-Za-z0-9][A-Za-z0-9._-]*)+@sha256:[a-f0-9]{64}$"
)

_COMMAND_END = r"(?=$|[\s;&|])"

DESTRUCTIVE_COMMAND_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "recursive_root_delete",
        re.compile(
            r"\brm(?=[^;&|]*\s(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)\b)[^;&|]*\s/\*?"
            + _COMMAND_END
        ),
    ),
    ("filesystem_format", re.compile(r"\bmkfs(?:\.[a-z0-9]+)?\b", re.IGNORECASE)),
    ("fork_bomb", re.compile(r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:")),
    (
        "raw_device_write",
        re.compile(
            r"(?:\bdd\b[^;&|]*\bof=/dev/|>\s*/dev/)(?:sd|hd|vd|xvd|nvme|mmcblk|disk)[a-z0-9]*"
        ),
    ),
    (
        "world_writable_root_chmod",
        re.compile(r"\bchmod\b[^;&|]*\b0?777\s+/\*?" + _COMMAND_END),
    ),
)


def _decoded_forms(value: str) -> list[str]:
    forms = [value]
    current = value
    # Decode repeatedly so double-encoded markers are caught too.
    for _ in range(3):
        decoded = unquote(current)
        if decoded == current:
            break
        forms.append(decoded)
        current = decoded
    return forms


def find_synthetic_marker(value: str | None) -> str | None:
    if not value:
        return None
    for form in _decoded_forms(value):
        lowered = form.lower()
        for marker in SYNTHETIC_MARKERS:
            if marker in lowered:
                return marker
    return None


def has_synthetic_marker(*values: str | None) -> bool:
    return any(find_synthetic_marker(value) is not None for value in values)


def find_destructive_command(command: str | None) -> str | None:
    """Return the name of the first destructive rule ``command`` matches."""
    if not command:
        return None
    for rule_name, pattern in DESTRUCTIVE_COMMAND_RULES:
        if pattern.search(command):
            return rule_name
    return None


def is_valid_run_id(run_id: str) -> bool:
    return 0 < len(run_id) <= MAX_RUN_ID_LENGTH and RUN_ID_PATTERN.match(run_id) is not None


def is_pinned_container_image(image: str | None) -> bool:
    return bool(image) and PINNED_IMAGE_PATTERN.match(image.strip()) is not None
