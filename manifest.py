"""
Manifest resolution and duplicate project detection.

The manifest lists active project files through ``include`` directives::

    # /etc/db_backups/db_backups.conf
    include /etc/db_backups/conf.d/acme.conf;
    include /etc/db_backups/conf.d/*.conf;

Includes must be absolute. A file whose first significant line is itself an
include directive is treated as a nested manifest.
"""
from __future__ import annotations

import glob
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from backup_errors import ConfigError
from project_config import sanitize_name


logger = logging.getLogger(__name__)

AUDIT_PREFIX = "db_uniques_autogen_"
AUDIT_TIMESTAMP_FORMAT = "%Y-%m-%d-%H%M%S"
GLOB_CHARS = ("*", "?", "[")

_INCLUDE = re.compile(r"^include(?:\s+(.*))?$")


class IncludeStatus(str, Enum):
    VALID = "Valid"
    INVALID = "Invalid"
    GLOB = "Processed via glob"


@dataclass
class IncludeReport:
    manifest: Path
    directive: str
    status: IncludeStatus
    path: Optional[Path] = None
    reason: str = ""


@dataclass
class ManifestResolution:
    manifest: Path
    project_paths: List[Path] = field(default_factory=list)
    includes: List[IncludeReport] = field(default_factory=list)
    visited: FrozenSet[Path] = frozenset()

    @property
    def invalid(self) -> List[IncludeReport]:
        return [item for item in self.includes if item.status is IncludeStatus.INVALID]


class DuplicateStatus(str, Enum):
    UNIQUE = "Unique"
    DUPLICATE = "Duplicate"


@dataclass
class DuplicateEntry:
    path: Path
    project_key: str
    status: DuplicateStatus


@dataclass
class DuplicateReport:
    entries: List[DuplicateEntry] = field(default_factory=list)
    audit_file: Optional[Path] = None

    @property
    def unique_paths(self) -> List[Path]:
        return [entry.path for entry in self.entries if entry.status is DuplicateStatus.UNIQUE]

    @property
    def duplicate_paths(self) -> List[Path]:
        return [entry.path for entry in self.entries if entry.status is DuplicateStatus.DUPLICATE]


def parse_include_directive(line: str) -> Optional[str]:
    """Return the include target of a manifest line, or None for other lines."""
    stripped = line.split("#", 1)[0].strip()
    match = _INCLUDE.match(stripped)
    if match is None:
        return None

    target = (match.group(1) or "").strip()
    if target.endswith(";"):
        target = target[:-1].rstrip()
    if len(target) >= 2 and target[0] == target[-1] and target[0] in ("'", '"'):
        target = target[1:-1]
    return target


def _read_lines(path: Path) -> List[str]:
    with path.open("r", encoding="utf-8") as handle:
        return handle.read().splitlines()


def is_nested_manifest(path: Path) -> bool:
    try:
        lines = _read_lines(path)
    except (OSError, UnicodeDecodeError):
        return False
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        return parse_include_directive(stripped) is not None
    return False


def resolve_manifest(manifest_path: Path) -> ManifestResolution:
    manifest_path = Path(manifest_path)
    if not manifest_path.is_file():
        raise ConfigError(f"Manifest file {manifest_path} was not found or is not a regular file.")
    if not os.access(manifest_path, os.R_OK):
        raise ConfigError(f"Manifest file {manifest_path} is not readable.")

    canonical = manifest_path.resolve()
    includes: List[IncludeReport] = []
    collected: Dict[Path, None] = {}
    visited = _resolve_recursively(canonical, frozenset(), includes, collected)

    return ManifestResolution(
        manifest=canonical,
        project_paths=list(collected),
        includes=includes,
        visited=visited,
    )


def _resolve_recursively(
    manifest: Path,
    visited: FrozenSet[Path],
    includes: List[IncludeReport],
    collected: Dict[Path, None],
) -> FrozenSet[Path]:
    if manifest in visited:
        logger.warning(
            "Manifest %s was already processed in this run; skipping recursive include.",
            manifest,
        )
        return visited
    visited = visited | {manifest}

    try:
        lines = _read_lines(manifest)
    except (OSError, UnicodeDecodeError) as error:
        raise ConfigError(f"Manifest file {manifest} could not be read: {error}") from error

    for line in lines:
        target = parse_include_directive(line)
        if target is None:
            continue
        directive = line.strip()

        if not target:
            logger.warning("Empty include directive in %s: %r", manifest, directive)
            includes.append(
                IncludeReport(manifest, directive, IncludeStatus.INVALID, reason="Empty include path")
            )
            continue

        if not os.path.isabs(target):
            logger.warning(
                "Include path %r in %s is not absolute; relative includes are not supported.",
                target,
                manifest,
            )
            includes.append(
                IncludeReport(manifest, directive, IncludeStatus.INVALID, reason="Relative path")
            )
            continue

        if any(char in target for char in GLOB_CHARS):
            visited = _expand_glob(manifest, directive, target, visited, includes, collected)
        else:
            visited = _include_literal(manifest, directive, Path(target), visited, includes, collected)

    return visited


def _expand_glob(
    manifest: Path,
    directive: str,
    pattern: str,
    visited: FrozenSet[Path],
    includes: List[IncludeReport],
    collected: Dict[Path, None],
) -> FrozenSet[Path]:
    matches = sorted(glob.glob(pattern))
    if not matches:
        logger.warning("Include glob %r in %s matched no files.", pattern, manifest)
        includes.append(
            IncludeReport(manifest, directive, IncludeStatus.INVALID, reason="Glob matched no files")
        )
        return visited

    for match in matches:
        candidate = Path(match)
        if candidate.is_dir():
            logger.warning("Glob match %s in %s is a directory; skipping.", candidate, manifest)
            includes.append(
                IncludeReport(manifest, directive, IncludeStatus.INVALID, candidate, "Is a directory")
            )
            continue
        resolved = candidate.resolve()
        if not _is_readable_file(resolved):
            includes.append(
                IncludeReport(manifest, directive, IncludeStatus.INVALID, resolved, "Not readable")
            )
            continue
        if is_nested_manifest(resolved):
            visited = _resolve_recursively(resolved, visited, includes, collected)
            continue
        includes.append(IncludeReport(manifest, directive, IncludeStatus.GLOB, resolved))
        collected.setdefault(resolved, None)
    return visited


def _include_literal(
    manifest: Path,
    directive: str,
    target: Path,
    visited: FrozenSet[Path],
    includes: List[IncludeReport],
    collected: Dict[Path, None],
) -> FrozenSet[Path]:
    if target.is_dir():
        logger.warning("Include %s in %s points to a directory; skipping.", target, manifest)
        includes.append(
            IncludeReport(manifest, directive, IncludeStatus.INVALID, target, "Is a directory")
        )
        return visited
    if not target.exists():
        logger.warning("Included file %s referenced in %s was not found.", target, manifest)
        includes.append(
            IncludeReport(manifest, directive, IncludeStatus.INVALID, target, "File not found")
        )
        return visited

    resolved = target.resolve()
    if not _is_readable_file(resolved):
        logger.warning("Included file %s referenced in %s is not readable.", resolved, manifest)
        includes.append(
            IncludeReport(manifest, directive, IncludeStatus.INVALID, resolved, "Not readable")
        )
        return visited

    if is_nested_manifest(resolved):
        return _resolve_recursively(resolved, visited, includes, collected)

    includes.append(IncludeReport(manifest, directive, IncludeStatus.VALID, resolved))
    collected.setdefault(resolved, None)
    return visited


def _is_readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def project_key(path: Path) -> str:
    """Identity used for duplicate detection: the sanitized file stem."""
    return sanitize_name(path.stem)


def detect_duplicates(paths: List[Path]) -> DuplicateReport:
    report = DuplicateReport()
    seen: Set[str] = set()
    for path in paths:
        key = project_key(path)
        if key in seen:
            logger.warning("Project %r in %s duplicates an earlier config; excluding it.", key, path)
            report.entries.append(DuplicateEntry(path, key, DuplicateStatus.DUPLICATE))
        else:
            seen.add(key)
            report.entries.append(DuplicateEntry(path, key, DuplicateStatus.UNIQUE))
    return report


def write_audit_file(
    unique_paths: List[Path], audit_dir: Path, *, now: Optional[datetime] = None
) -> Path:
    """Write the unique project list to a fresh root-only file and drop older ones."""
    timestamp = (now or datetime.now()).strftime(AUDIT_TIMESTAMP_FORMAT)
    audit_file = audit_dir / f"{AUDIT_PREFIX}{timestamp}.conf"

    header = [
        "# This file is auto-generated by the db_backups runner.",
        "# DO NOT MODIFY THIS FILE MANUALLY.",
        "# It is regenerated on every run. Access restricted to root only.",
        "",
        "# List of unique valid project configs loaded for backup",
        f"# Run at: {timestamp}",
        "",
    ]

    try:
        audit_dir.mkdir(parents=True, exist_ok=True)
        for previous in audit_dir.glob(f"{AUDIT_PREFIX}*.conf"):
            if previous != audit_file:
                previous.unlink(missing_ok=True)
        fd = os.open(audit_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(header))
            handle.writelines(f"{path}\n" for path in unique_paths)
        os.chmod(audit_file, 0o600)
    except OSError as error:
        raise ConfigError(f"Could not write audit file {audit_file}: {error}") from error

    logger.info("Unique project list saved to %s", audit_file)
    return audit_file


def read_audit_file(audit_file: Path) -> List[Path]:
    paths: List[Path] = []
    for line in _read_lines(audit_file):
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            paths.append(Path(stripped))
    return paths


def deduplicate_projects(
    resolution: ManifestResolution, audit_dir: Path, *, now: Optional[datetime] = None
) -> DuplicateReport:
    report = detect_duplicates(resolution.project_paths)
    report.audit_file = write_audit_file(report.unique_paths, audit_dir, now=now)
    return report


def summarize_includes(resolution: ManifestResolution) -> Tuple[int, int]:
    valid = sum(1 for item in resolution.includes if item.status is not IncludeStatus.INVALID)
    return valid, len(resolution.includes) - valid
