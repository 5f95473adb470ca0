"""
Project configuration files and per-cadence project filtering.

Project files use shell-style declarations::

    PROJECT_NAME="Acme Shop"
    DB_TYPE=mysql
    DBS_TO_BACKUP=("shop" "analytics")
    BACKUP_FREQUENCY_HOURLY=off
    TTL_DAILY_BACKUP=14d

Every file is parsed into its own mapping, so nothing declared by one
project is visible while another project is being evaluated.
"""
from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from backup_errors import ConfigError


logger = logging.getLogger(__name__)

ConfigValue = Union[str, List[str]]

_ASSIGNMENT = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_SEPARATORS_ONLY = re.compile(r"^[_.-]+$")

TRUE_VALUES = {"on", "true", "yes", "1"}
FALSE_VALUES = {"off", "false", "no", "0"}


class Cadence(str, Enum):
    MINUTELY = "minutely"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def frequency_key(self) -> str:
        return f"BACKUP_FREQUENCY_{self.value.upper()}"

    @property
    def ttl_key(self) -> str:
        return f"TTL_{self.value.upper()}_BACKUP"


class BackupMode(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"
    BOTH = "both"

    @property
    def uses_cloud(self) -> bool:
        return self in (BackupMode.CLOUD, BackupMode.BOTH)


class DatabaseEngine(str, Enum):
    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRES = "postgres"
    MONGODB = "mongodb"


class CloudProvider(str, Enum):
    S3 = "s3"
    R2 = "r2"
    B2 = "b2"


class FilterStatus(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    SKIPPED = "SKIPPED"


def sanitize_name(name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9._-]`` with an underscore."""
    return _UNSAFE_NAME_CHARS.sub("_", name)


def is_separator_only(name: str) -> bool:
    return bool(_SEPARATORS_ONLY.match(name))


def parse_project_text(text: str, source: str = "<string>") -> Dict[str, ConfigValue]:
    values: Dict[str, ConfigValue] = {}
    lines = text.splitlines()
    index = 0

    while index < len(lines):
        line_number = index + 1
        stripped = lines[index].strip()
        index += 1

        if not stripped or stripped.startswith("#"):
            continue

        match = _ASSIGNMENT.match(stripped)
        if match is None:
            raise ConfigError(
                f"{source}:{line_number}: expected KEY=value, got {stripped!r}."
            )
        key, raw_value = match.group(1), match.group(2).strip()

        if raw_value.startswith("("):
            body = raw_value[1:]
            end = _find_closing_paren(body)
            while end < 0:
                if index >= len(lines):
                    raise ConfigError(
                        f"{source}:{line_number}: unterminated array for {key}."
                    )
                body += "\n" + lines[index]
                index += 1
                end = _find_closing_paren(body)
            values[key] = _split_words(body[:end], source, line_number)
            continue

        words = _split_words(raw_value, source, line_number)
        values[key] = " ".join(words)

    return values


def _find_closing_paren(body: str) -> int:
    """Index of the first ``)`` outside quotes and comments, or -1."""
    quote: Optional[str] = None
    escaped = False
    in_comment = False
    previous = " "
    for position, char in enumerate(body):
        if in_comment:
            if char == "\n":
                in_comment = False
        elif escaped:
            escaped = False
        elif char == "\\" and quote != "'":
            escaped = True
        elif quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "#" and previous.isspace():
            in_comment = True
        elif char == ")":
            return position
        previous = char
    return -1


def _strip_comments(value: str) -> str:
    """Drop comments that start a word; a ``#`` inside a word or quotes is literal."""
    kept: List[str] = []
    quote: Optional[str] = None
    escaped = False
    in_comment = False
    previous = " "
    for char in value:
        if in_comment:
            if char != "\n":
                continue
            in_comment = False
        elif escaped:
            escaped = False
        elif char == "\\" and quote != "'":
            escaped = True
        elif quote:
            if char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "#" and previous.isspace():
            in_comment = True
            continue
        kept.append(char)
        previous = char
    return "".join(kept)


def _split_words(value: str, source: str, line_number: int) -> List[str]:
    try:
        return shlex.split(_strip_comments(value), comments=False)
    except ValueError as error:
        raise ConfigError(f"{source}:{line_number}: {error}.") from error


def read_project_file(path: Path) -> Dict[str, ConfigValue]:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise ConfigError(f"Project config {path} could not be read: {error}") from error
    return parse_project_text(text, source=str(path))


def get_scalar(values: Dict[str, ConfigValue], key: str) -> str:
    value = values.get(key)
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(value).strip()
    return value.strip()


def get_list(values: Dict[str, ConfigValue], key: str) -> List[str]:
    value = values.get(key)
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    names: List[str] = []
    for item in items:
        names.extend(part for part in re.split(r"[\s,]+", item) if part)
    return names


@dataclass
class FilterEntry:
    path: Path
    status: FilterStatus
    reason: str = ""


@dataclass
class FilterResult:
    cadence: Cadence
    entries: List[FilterEntry] = field(default_factory=list)

    @property
    def enabled(self) -> List[Path]:
        return [entry.path for entry in self.entries if entry.status is FilterStatus.ENABLED]

    def count(self, status: FilterStatus) -> int:
        return sum(1 for entry in self.entries if entry.status is status)


def classify_frequency(raw: Optional[str]) -> Optional[bool]:
    """Return True/False for a recognised flag, None when the value is unrecognised."""
    if raw is None or not raw.strip():
        return True
    normalized = raw.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    return None


def filter_projects_by_frequency(paths: Iterable[Path], cadence: Cadence) -> FilterResult:
    result = FilterResult(cadence=cadence)
    key = cadence.frequency_key

    for path in paths:
        try:
            values = read_project_file(path)
        except ConfigError as error:
            logger.warning("Skipping %s: %s", path.name, error)
            result.entries.append(
                FilterEntry(path, FilterStatus.SKIPPED, "Failed to load config")
            )
            continue

        raw = get_scalar(values, key) if key in values else None
        if raw is None:
            logger.info("%s not set in %s, assuming 'on'.", key, path.name)

        enabled = classify_frequency(raw)
        if enabled is None:
            logger.warning("Unknown value %r for %s in %s. Skipping.", raw, key, path.name)
            result.entries.append(
                FilterEntry(path, FilterStatus.SKIPPED, f"Unknown setting '{raw}'")
            )
        elif enabled:
            result.entries.append(FilterEntry(path, FilterStatus.ENABLED))
        else:
            result.entries.append(FilterEntry(path, FilterStatus.DISABLED))

    return result
