"""Lazy migration of manifests and compression records.

Record migration: records written before part tracking existed are read as
part 1, full-session, with a range synthesised from the session.  Running it
on an already-migrated record returns the record unchanged.

Schema migration: manifests carry a semver ``schema_version``; each step
upgrades one version and is logged in ``migration_history``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

from .errors import InvalidSettings
from .models import SCHEMA_VERSION, utc_now
from .settings import CompressionLevel, level_for_settings, parse_settings

_log = logging.getLogger(__name__)

_VERSION_SEQ = re.compile(r"v(\d+)$")


def parse_semver(version: str) -> tuple[int, int, int]:
    parts = (str(version or "0.0.0").split("-")[0].split(".") + ["0", "0", "0"])[:3]
    try:
        major, minor, patch = (int(p) for p in parts)
    except ValueError:
        return (0, 0, 0)
    return (major, minor, patch)


def compare_versions(a: str, b: str) -> int:
    pa, pb = parse_semver(a), parse_semver(b)
    return (pa > pb) - (pa < pb)


def level_from_raw_settings(settings: dict[str, Any] | None) -> CompressionLevel:
    if not settings:
        return CompressionLevel.MODERATE
    try:
        return level_for_settings(parse_settings(settings))
    except InvalidSettings:
        return CompressionLevel.MODERATE


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def is_migrated(record: dict[str, Any]) -> bool:
    return record.get("part_number") is not None


def migrate_record(record: dict[str, Any], session: dict[str, Any]) -> dict[str, Any]:
    """Fill part fields of a legacy record. No-op for migrated records."""
    if is_migrated(record):
        return record
    settings = dict(record.get("settings") or {})
    settings.setdefault("mode", "uniform")
    count = session.get("original_messages") or record.get("input_messages") or 0
    migrated = dict(record)
    migrated.update(
        {
            "settings": settings,
            "is_full_session": True,
            "part_number": 1,
            "compression_level": str(level_from_raw_settings(settings)),
            "message_range": {
                "start_index": 0,
                "end_index": count,
                "message_count": count,
                "start_timestamp": session.get("first_timestamp"),
                "end_timestamp": session.get("last_timestamp"),
            },
        }
    )
    return migrated


def migrate_session(session: dict[str, Any]) -> bool:
    """Migrate records in place; returns whether anything changed."""
    changed = False
    records = session.get("compressions") or []
    for i, record in enumerate(records):
        if not is_migrated(record):
            records[i] = migrate_record(record, session)
            changed = True
    session["compressions"] = records
    highest = 0
    for record in records:
        match = _VERSION_SEQ.search(str(record.get("version_id", "")))
        if match:
            highest = max(highest, int(match.group(1)))
    if session.get("next_version_seq", 1) <= highest:
        session["next_version_seq"] = highest + 1
        changed = True
    return changed


# ---------------------------------------------------------------------------
# Manifest schema
# ---------------------------------------------------------------------------


def _to_1_0_0(data: dict[str, Any]) -> None:
    data.pop("version", None)
    data.setdefault("sessions", {})
    data.setdefault("compositions", {})
    data.setdefault("settings", {})
    data.setdefault("display_name", data.get("project_id", ""))


_MIGRATIONS: list[tuple[str, Callable[[dict[str, Any]], None]]] = [
    ("1.0.0", _to_1_0_0),
]


def current_schema(data: dict[str, Any]) -> str:
    return str(data.get("schema_version") or data.get("version") or "0.0.0")


def needs_migration(data: dict[str, Any]) -> bool:
    if compare_versions(current_schema(data), SCHEMA_VERSION) < 0:
        return True
    return any(
        not is_migrated(r)
        for s in (data.get("sessions") or {}).values()
        for r in s.get("compressions") or []
    )


def migrate_manifest(data: dict[str, Any]) -> bool:
    """Upgrade *data* in place to the current schema; returns whether it changed."""
    changed = False
    version = current_schema(data)
    history = data.setdefault("migration_history", [])
    for target, step in _MIGRATIONS:
        if compare_versions(version, target) >= 0:
            continue
        step(data)
        history.append({"from": version, "to": target, "at": utc_now()})
        _log.info("Migrated manifest %s from %s to %s", data.get("project_id"), version, target)
        version = target
        changed = True
    data["schema_version"] = version
    for session in (data.get("sessions") or {}).values():
        changed = migrate_session(session) or changed
    return changed
