"""Identifiers and relative paths for version and composition files."""

from __future__ import annotations

import re

from .settings import (
    CompressionSettings,
    base_settings,
    preset_label,
)

_UNSAFE = re.compile(r"[^a-z0-9_-]")
MAX_NAME_LENGTH = 64


def format_version_id(seq: int) -> str:
    return f"v{seq:03d}"


def token_label(tokens: int) -> str:
    """Rounded thousands, never below ``1k``."""
    return f"{max(1, int(tokens / 1000 + 0.5))}k"


def version_basename(
    version_id: str,
    settings: CompressionSettings,
    output_tokens: int,
    part_number: int | None = None,
) -> str:
    """e.g. ``part2_v004_tiered-standard_3k`` or ``v001_uniform-moderate_1k``."""
    mode = base_settings(settings).mode
    stem = f"{version_id}_{mode}-{preset_label(settings)}_{token_label(output_tokens)}"
    if part_number is not None and part_number > 0:
        return f"part{part_number}_{stem}"
    return stem


def sanitize_name(name: str) -> str:
    """Lowercase, unsafe characters to ``-``, at most 64 characters."""
    return _UNSAFE.sub("-", name.strip().lower())[:MAX_NAME_LENGTH]


def summaries_dir(project_id: str, session_id: str) -> str:
    return f"{project_id}/summaries/{session_id}"


def composed_dir(project_id: str, name: str) -> str:
    return f"{project_id}/composed/{name}"
