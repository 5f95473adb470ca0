import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from backup_errors import ConfigError
from project_config import (
    Cadence,
    FilterStatus,
    classify_frequency,
    filter_projects_by_frequency,
    get_list,
    get_scalar,
    is_separator_only,
    parse_project_text,
    read_project_file,
    sanitize_name,
)


def write_project(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text(body, encoding="utf-8")
    return path


def test_parse_project_text_handles_quotes_exports_and_arrays() -> None:
    text = """
# Acme production databases
export PROJECT_NAME="Acme Shop"
DB_TYPE=mysql
DBS_TO_BACKUP=(
  "shop"   # primary store
  analytics
)
TTL_DAILY_BACKUP='7d'
S3_PATH=backups/acme  # trailing comment
"""
    values = parse_project_text(text)

    assert values["PROJECT_NAME"] == "Acme Shop"
    assert values["DB_TYPE"] == "mysql"
    assert values["DBS_TO_BACKUP"] == ["shop", "analytics"]
    assert values["TTL_DAILY_BACKUP"] == "7d"
    assert values["S3_PATH"] == "backups/acme"


def test_parse_project_text_single_line_array_with_quoted_paren() -> None:
    values = parse_project_text('DBS_TO_BACKUP=("a)b" c)')
    assert values["DBS_TO_BACKUP"] == ["a)b", "c"]


def test_parse_project_text_keeps_hash_inside_words() -> None:
    text = """
DB_PASSWORD=abc#123
S3_PATH="team#1"  # quoted
DBS_TO_BACKUP=(shop#eu # comment
  'a #b' c)
DB_USER=backup #comment
"""
    values = parse_project_text(text)

    assert values["DB_PASSWORD"] == "abc#123"
    assert values["S3_PATH"] == "team#1"
    assert values["DBS_TO_BACKUP"] == ["shop#eu", "a #b", "c"]
    assert values["DB_USER"] == "backup"


def test_parse_project_text_rejects_malformed_lines() -> None:
    with pytest.raises(ConfigError, match="expected KEY=value"):
        parse_project_text("PROJECT_NAME=acme\nthis is not valid\n", source="acme.conf")


def test_parse_project_text_rejects_unterminated_array() -> None:
    with pytest.raises(ConfigError, match="unterminated array"):
        parse_project_text("DBS_TO_BACKUP=(one\ntwo\n")


def test_projects_are_parsed_in_isolation(tmp_path: Path) -> None:
    first = write_project(tmp_path, "first.conf", "PROJECT_NAME=first\nDB_PASSWORD=secret\n")
    second = write_project(tmp_path, "second.conf", "PROJECT_NAME=second\n")

    assert read_project_file(first)["DB_PASSWORD"] == "secret"
    assert "DB_PASSWORD" not in read_project_file(second)


def test_read_project_file_missing_raises_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        read_project_file(tmp_path / "missing.conf")


def test_get_list_splits_on_whitespace_and_commas() -> None:
    values = {"DBS_TO_BACKUP": "shop, analytics  logs", "ARRAY": ["a,b", "c"]}
    assert get_list(values, "DBS_TO_BACKUP") == ["shop", "analytics", "logs"]
    assert get_list(values, "ARRAY") == ["a", "b", "c"]
    assert get_list(values, "MISSING") == []
    assert get_scalar(values, "MISSING") == ""


def test_sanitize_name_and_separator_only() -> None:
    assert sanitize_name("Acme Shop!") == "Acme_Shop_"
    assert sanitize_name("acme-prod.v2") == "acme-prod.v2"
    assert is_separator_only(sanitize_name("!!!"))
    assert is_separator_only("-._")
    assert not is_separator_only("a_b")


@pytest.mark.parametrize(
    "raw, expected",
    [(None, True), ("", True), ("ON", True), ("yes", True), ("1", True), ("off", False), ("No", False), ("0", False), ("maybe", None)],
)
def test_classify_frequency(raw, expected) -> None:
    assert classify_frequency(raw) is expected


def test_filter_projects_by_frequency(tmp_path: Path) -> None:
    unset = write_project(tmp_path, "unset.conf", "PROJECT_NAME=unset\n")
    enabled = write_project(tmp_path, "enabled.conf", "BACKUP_FREQUENCY_DAILY=Yes\n")
    disabled = write_project(tmp_path, "disabled.conf", "BACKUP_FREQUENCY_DAILY=off\n")
    unknown = write_project(tmp_path, "unknown.conf", "BACKUP_FREQUENCY_DAILY=maybe\n")
    broken = write_project(tmp_path, "broken.conf", "not an assignment\n")
    other_cadence = write_project(tmp_path, "hourly_off.conf", "BACKUP_FREQUENCY_HOURLY=off\n")

    result = filter_projects_by_frequency(
        [unset, enabled, disabled, unknown, broken, other_cadence], Cadence.DAILY
    )

    assert result.enabled == [unset, enabled, other_cadence]
    statuses = {entry.path.name: (entry.status, entry.reason) for entry in result.entries}
    assert statuses["disabled.conf"] == (FilterStatus.DISABLED, "")
    assert statuses["unknown.conf"] == (FilterStatus.SKIPPED, "Unknown setting 'maybe'")
    assert statuses["broken.conf"] == (FilterStatus.SKIPPED, "Failed to load config")
    assert result.count(FilterStatus.SKIPPED) == 2
    assert result.count(FilterStatus.DISABLED) == 1
