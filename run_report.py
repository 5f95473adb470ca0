"""Run-level summaries rendered as fixed-width tables through logging."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from backup_cycle import ArtifactStatus, BackupArtifact, ProjectOutcome, ProjectStatus
from manifest import DuplicateReport, ManifestResolution
from preflight import PreflightResult
from project_config import Cadence, FilterResult, FilterStatus


ROW_FORMAT = "%-50s | %s"
RULE = "-" * 78


def log_table(title: str, rows: Iterable[Tuple[str, str]], *, header: Tuple[str, str] = ("Item", "Status")) -> None:
    logging.info("%s", title)
    logging.info("%s", RULE)
    logging.info(ROW_FORMAT, *header)
    logging.info("%s", RULE)
    for left, right in rows:
        logging.info(ROW_FORMAT, left, right)
    logging.info("%s", RULE)


def log_include_table(resolution: ManifestResolution) -> None:
    rows = []
    for item in resolution.includes:
        status = item.status.value
        if item.reason:
            status = f"{status} ({item.reason})"
        rows.append((str(item.path or item.directive), status))
    log_table(f"Include resolution for {resolution.manifest}", rows, header=("Include", "Status"))


def log_duplicate_table(report: DuplicateReport) -> None:
    rows = [(str(entry.path), entry.status.value) for entry in report.entries]
    log_table("Duplicate project check", rows, header=("Project config", "Status"))


def log_filter_table(result: FilterResult) -> None:
    rows = []
    for entry in result.entries:
        status = entry.status.value
        if entry.reason:
            status = f"{status} ({entry.reason})"
        rows.append((entry.path.name, status))
    log_table(
        f"Frequency filter ({result.cadence.value})", rows, header=("Project config", "Status")
    )


@dataclass
class DatabaseRow:
    project: str
    database: str
    status: ArtifactStatus
    location: str


@dataclass
class RunReport:
    cadence: Cadence
    considered: int = 0
    enabled: int = 0
    disabled: int = 0
    skipped: int = 0
    projects: List[Tuple[str, ProjectStatus, str]] = field(default_factory=list)
    databases: List[DatabaseRow] = field(default_factory=list)

    def record_filter(self, result: FilterResult) -> None:
        self.considered = len(result.entries)
        self.enabled = result.count(FilterStatus.ENABLED)
        self.disabled = result.count(FilterStatus.DISABLED)
        self.skipped = result.count(FilterStatus.SKIPPED)

    def record_preflight_failure(self, result: PreflightResult) -> None:
        reason = f"step {result.failed_step} ({result.step_label}): {result.reason}"
        self.projects.append((result.project_name, ProjectStatus.PREFLIGHT_FAILED, reason))

    def record_outcome(self, outcome: ProjectOutcome) -> None:
        self.projects.append((outcome.project, outcome.status, outcome.reason))
        for artifact in outcome.artifacts:
            self.databases.append(
                DatabaseRow(
                    project=outcome.project,
                    database=artifact.database,
                    status=artifact.status or ArtifactStatus.FAILED,
                    location=_artifact_location(artifact),
                )
            )

    @property
    def failed_projects(self) -> List[str]:
        return [
            name
            for name, status, _ in self.projects
            if status in (ProjectStatus.FAILED, ProjectStatus.PREFLIGHT_FAILED)
        ]

    def exit_status(self) -> int:
        return 1 if self.failed_projects else 0

    def log_summary(self) -> None:
        logging.info(
            "Projects for %s: %d considered, %d enabled, %d disabled, %d skipped",
            self.cadence.value,
            self.considered,
            self.enabled,
            self.disabled,
            self.skipped,
        )
        if self.projects:
            log_table(
                "Project results",
                ((name, _status_with_reason(status, reason)) for name, status, reason in self.projects),
                header=("Project", "Status"),
            )
        if self.databases:
            log_table(
                "Database results",
                (
                    (f"{row.project}/{row.database}", f"{row.status.value} {row.location}".rstrip())
                    for row in self.databases
                ),
                header=("Project/Database", "Status"),
            )
        if self.exit_status() == 0:
            logging.info("%s backup run finished: all projects passed.", self.cadence.value.capitalize())
        else:
            logging.error(
                "%s backup run finished with failures: %s",
                self.cadence.value.capitalize(),
                ", ".join(self.failed_projects) or "see database results",
            )


def _status_with_reason(status: ProjectStatus, reason: str) -> str:
    if status is ProjectStatus.PASSED or not reason:
        return status.value
    return f"{status.value} ({reason})"


def _artifact_location(artifact: BackupArtifact) -> str:
    if not artifact.succeeded:
        return artifact.reason
    location: Optional[str] = artifact.cloud_key or (str(artifact.local_path) if artifact.local_path else None)
    return location or ""
