import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from backup_cycle import ArtifactStatus, BackupArtifact, ProjectOutcome, ProjectStatus
from preflight import PreflightResult
from project_config import Cadence, FilterEntry, FilterResult, FilterStatus
from run_report import RunReport, log_filter_table


def successful_artifact(database: str) -> BackupArtifact:
    artifact = BackupArtifact(project="acme", database=database, local_path=Path(f"/b/{database}.zip"))
    artifact.status = ArtifactStatus.SUCCESS
    return artifact


def test_exit_status_zero_when_nothing_ran() -> None:
    assert RunReport(cadence=Cadence.DAILY).exit_status() == 0


def test_exit_status_reflects_failures() -> None:
    report = RunReport(cadence=Cadence.DAILY)
    report.record_outcome(ProjectOutcome("acme", ProjectStatus.PASSED, [successful_artifact("shop")]))
    assert report.exit_status() == 0

    report.record_preflight_failure(
        PreflightResult(
            config_path=Path("/etc/db_backups/conf.d/beta.conf"),
            project_name="beta",
            failed_step=4,
            step_label="Backup type",
            reason="BACKUP_TYPE 'tape' is invalid",
        )
    )
    assert report.exit_status() == 1
    assert report.failed_projects == ["beta"]


def test_record_filter_counts() -> None:
    result = FilterResult(
        cadence=Cadence.DAILY,
        entries=[
            FilterEntry(Path("a.conf"), FilterStatus.ENABLED),
            FilterEntry(Path("b.conf"), FilterStatus.DISABLED),
            FilterEntry(Path("c.conf"), FilterStatus.SKIPPED, "Unknown setting 'x'"),
        ],
    )
    report = RunReport(cadence=Cadence.DAILY)
    report.record_filter(result)

    assert (report.considered, report.enabled, report.disabled, report.skipped) == (3, 1, 1, 1)


def test_tables_are_logged_fixed_width(caplog: pytest.LogCaptureFixture) -> None:
    result = FilterResult(
        cadence=Cadence.DAILY,
        entries=[FilterEntry(Path("c.conf"), FilterStatus.SKIPPED, "Unknown setting 'x'")],
    )
    with caplog.at_level(logging.INFO):
        log_filter_table(result)

    assert "c.conf".ljust(50) + " | SKIPPED (Unknown setting 'x')" in caplog.messages


def test_summary_lists_database_rows(caplog: pytest.LogCaptureFixture) -> None:
    failed = BackupArtifact(project="acme", database="broken")
    failed.fail("Dump of broken exited with status 2")
    report = RunReport(cadence=Cadence.DAILY)
    report.record_outcome(
        ProjectOutcome("acme", ProjectStatus.FAILED, [successful_artifact("shop"), failed], "1 of 2 databases failed")
    )

    with caplog.at_level(logging.INFO):
        report.log_summary()

    assert "acme/shop".ljust(50) + " | Success /b/shop.zip" in caplog.messages
    assert "acme/broken".ljust(50) + " | Failed Dump of broken exited with status 2" in caplog.messages
    assert any("finished with failures: acme" in message for message in caplog.messages)
