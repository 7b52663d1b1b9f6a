from __future__ import annotations

import pytest

from skillbench_api.app.integrity import (
    find_destructive_command,
    find_synthetic_marker,
    has_synthetic_marker,
    is_pinned_container_image,
    is_valid_run_id,
)

DIGEST = "ab" * 32


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("artifacts/run-7/output", None),
        ("artifacts/MOCK-run", "mock"),
        ("used a fallback path", "fallback"),
        ("%73%79%6E%74%68%65%74%69%63", "synthetic"),
        ("%2573%2565%2565%2564", "seed"),
        (None, None),
        ("", None),
    ],
)
def test_find_synthetic_marker(value: str | None, expected: str | None) -> None:
    assert find_synthetic_marker(value) == expected


def test_has_synthetic_marker_checks_every_value() -> None:
    assert has_synthetic_marker("artifacts/clean", None, "notes mention synthetic data")
    assert not has_synthetic_marker("artifacts/clean", None, "plain notes")


@pytest.mark.parametrize(
    ("command", "rule"),
    [
        ("rm -rf /", "recursive_root_delete"),
        ("sudo rm -fr /*", "recursive_root_delete"),
        ("rm --recursive --force / && echo done", "recursive_root_delete"),
        ("mkfs.ext4 /dev/sda1", "filesystem_format"),
        (":(){ :|:& };:", "fork_bomb"),
        ("dd if=/dev/zero of=/dev/sda bs=1M", "raw_device_write"),
        ("chmod -R 777 /", "world_writable_root_chmod"),
    ],
)
def test_find_destructive_command_flags_known_patterns(command: str, rule: str) -> None:
    assert find_destructive_command(command) == rule


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf /tmp/build",
        "rm -rf ./dist",
        "ls -la /",
        "dd if=/dev/zero of=./disk.img bs=1M count=1",
        "chmod 644 /etc/app.conf",
        None,
    ],
)
def test_find_destructive_command_allows_scoped_commands(command: str | None) -> None:
    assert find_destructive_command(command) is None


def test_is_valid_run_id() -> None:
    assert is_valid_run_id("run-2026.01:batch_7")
    assert not is_valid_run_id("")
    assert not is_valid_run_id("run with spaces")
    assert not is_valid_run_id("run/../../etc")
    assert not is_valid_run_id("r" * 191)


def test_is_pinned_container_image() -> None:
    assert is_pinned_container_image(f"docker.io/library/alpine@sha256:{DIGEST}")
    assert is_pinned_container_image(f"ghcr.io:443/acme/runner@sha256:{DIGEST}")
    assert not is_pinned_container_image("alpine:latest")
    assert not is_pinned_container_image(f"alpine@sha256:{DIGEST}")
    assert not is_pinned_container_image(f"docker.io/library/alpine@sha256:{DIGEST[:-2]}")
    assert not is_pinned_container_image(None)
