"""
Backup cycle for one project: dump, compress, store and expire every
database, then replicate the cadence directory to cloud storage.

A failing database never stops the remaining databases of the project.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from backup_errors import ExecutionError, StorageError
from cloud_storage import cadence_prefix, describe, expire_remote_backups, sync_directory
from durations import format_minutes
from preflight import ProjectContext
from project_config import BackupMode, Cadence, DatabaseEngine, sanitize_name


ARCHIVE_SUFFIX = ".zip"
DEFAULT_TEMP_RETENTION_MINUTES = 120
MYSQL_DUMP_OPTIONS = ("--single-transaction", "--quick", "--routines", "--triggers")
STDERR_TAIL = 500


class ArtifactStage(str, Enum):
    INIT = "INIT"
    FILENAME_GENERATED = "FILENAME_GENERATED"
    DUMPED = "DUMPED"
    COMPRESSED = "COMPRESSED"
    LOCALLY_STORED = "LOCALLY_STORED"
    CLOUD_REPLICATED = "CLOUD_REPLICATED"
    EXPIRED = "EXPIRED"
    DONE = "DONE"
    FAILED = "FAILED"


class ArtifactStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"


class ProjectStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    PREFLIGHT_FAILED = "FAILED (Preflight)"
    NO_DATABASES = "SKIPPED (No DBs)"


@dataclass(frozen=True)
class RunContext:
    cadence: Cadence
    period_label: str
    started_at: datetime
    command_timeout: Optional[int] = None
    temp_retention_minutes: int = DEFAULT_TEMP_RETENTION_MINUTES

    @classmethod
    def create(
        cls,
        cadence: Cadence,
        *,
        now: Optional[datetime] = None,
        command_timeout: Optional[int] = None,
        temp_retention_minutes: int = DEFAULT_TEMP_RETENTION_MINUTES,
    ) -> "RunContext":
        started_at = now or datetime.now()
        return cls(
            cadence=cadence,
            period_label=period_label(cadence, started_at),
            started_at=started_at,
            command_timeout=command_timeout,
            temp_retention_minutes=temp_retention_minutes,
        )


@dataclass
class BackupArtifact:
    project: str
    database: str
    base_filename: str = ""
    dump_path: Optional[Path] = None
    archive_path: Optional[Path] = None
    local_path: Optional[Path] = None
    cloud_key: Optional[str] = None
    stage: ArtifactStage = ArtifactStage.INIT
    status: Optional[ArtifactStatus] = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status is ArtifactStatus.SUCCESS

    def advance(self, stage: ArtifactStage) -> None:
        self.stage = stage

    def fail(self, reason: str) -> None:
        self.stage = ArtifactStage.FAILED
        self.status = ArtifactStatus.FAILED
        self.reason = reason


@dataclass
class ProjectOutcome:
    project: str
    status: ProjectStatus
    artifacts: List[BackupArtifact] = field(default_factory=list)
    reason: str = ""

    @property
    def succeeded(self) -> List[BackupArtifact]:
        return [artifact for artifact in self.artifacts if artifact.succeeded]

    @property
    def failed(self) -> List[BackupArtifact]:
        return [artifact for artifact in self.artifacts if not artifact.succeeded]


def period_label(cadence: Cadence, now: datetime) -> str:
    """Label of the period that just ended, used as the artifact name prefix."""
    if cadence is Cadence.MINUTELY:
        return (now - timedelta(minutes=1)).strftime("%Y-%m-%d-%H%M")
    if cadence is Cadence.HOURLY:
        return (now - timedelta(hours=1)).strftime("%Y-%m-%d_H%H")
    if cadence is Cadence.DAILY:
        return (now - timedelta(days=1)).strftime("%Y-%m-%d")
    if cadence is Cadence.WEEKLY:
        return (now - timedelta(weeks=1)).strftime("%Y-%m-%d_W%V")
    if cadence is Cadence.MONTHLY:
        last_of_previous = now.replace(day=1) - timedelta(days=1)
        return last_of_previous.strftime("%Y-%m")
    return str(now.year - 1)


def compose_base_filename(database: str, label: str) -> str:
    return f"{label}_{sanitize_name(database)}_backup"


def _dump_path(context: ProjectContext, base_filename: str) -> Path:
    if context.engine is DatabaseEngine.MONGODB:
        return context.working_dir / base_filename
    if context.engine is DatabaseEngine.POSTGRES:
        return context.working_dir / f"{base_filename}.dump"
    return context.working_dir / f"{base_filename}.sql"


def build_dump_command(
    context: ProjectContext, database: str, dump_path: Path
) -> Tuple[List[str], Dict[str, str], bool]:
    """Return (argv, extra environment, write stdout to dump_path)."""
    if context.engine in (DatabaseEngine.MYSQL, DatabaseEngine.MARIADB):
        argv = [context.dump_tool, *MYSQL_DUMP_OPTIONS, "-u", context.db_user, database]
        return argv, {"MYSQL_PWD": context.db_password or ""}, True

    if context.engine is DatabaseEngine.POSTGRES:
        if context.db_password is None:
            argv = ["sudo", "-n", "-u", context.db_user, context.dump_tool, "-Fc", database]
            return argv, {}, True
        argv = [context.dump_tool, "-Fc", "-U", context.db_user, database]
        return argv, {"PGPASSWORD": context.db_password}, True

    argv = [
        context.dump_tool,
        "--db",
        database,
        "--username",
        context.db_user,
        "--password",
        context.db_password or "",
        "--authenticationDatabase",
        "admin",
        "--out",
        str(_staging_path(dump_path)),
    ]
    return argv, {}, False


def _staging_path(dump_path: Path) -> Path:
    return dump_path.parent / f".{dump_path.name}.partial"


def _redact(argv: List[str], secret: Optional[str]) -> str:
    return " ".join("****" if secret and item == secret else item for item in argv)


def _remove_path(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
    except OSError as error:
        logging.warning("Could not remove %s: %s", path, error)


def dump_database(
    context: ProjectContext, database: str, dump_path: Path, *, timeout: Optional[int] = None
) -> Path:
    argv, extra_env, to_stdout = build_dump_command(context, database, dump_path)
    env = os.environ.copy()
    env.update(extra_env)
    logging.debug("Running %s", _redact(argv, context.db_password))

    # mongodump writes into a staging directory that is renamed once complete.
    staging = _staging_path(dump_path)
    partial = dump_path if to_stdout else staging
    try:
        if to_stdout:
            with dump_path.open("wb") as handle:
                result = subprocess.run(
                    argv, stdout=handle, stderr=subprocess.PIPE, env=env, timeout=timeout
                )
        else:
            result = subprocess.run(
                argv, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, env=env, timeout=timeout
            )
    except subprocess.TimeoutExpired as error:
        _remove_path(partial)
        raise ExecutionError(f"Dump of {database} timed out after {error.timeout} seconds.") from error
    except OSError as error:
        _remove_path(partial)
        raise ExecutionError(f"Dump of {database} could not be started: {error}") from error

    if result.returncode != 0:
        _remove_path(partial)
        stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        if context.db_password:
            stderr = stderr.replace(context.db_password, "****")
        raise ExecutionError(
            f"Dump of {database} exited with status {result.returncode}: {stderr[-STDERR_TAIL:]}"
        )

    if not to_stdout:
        database_dir = staging / database
        source = database_dir if database_dir.is_dir() else staging
        try:
            _remove_path(dump_path)
            source.rename(dump_path)
        except OSError as error:
            _remove_path(staging)
            raise ExecutionError(f"Dump of {database} could not be finalised: {error}") from error
        if source != staging:
            _remove_path(staging)
    return dump_path


def compress_dump(dump_path: Path, archive_path: Path) -> Path:
    """Zip a dump file or directory, then remove the raw dump."""
    try:
        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            if dump_path.is_dir():
                for item in sorted(dump_path.rglob("*")):
                    archive.write(item, item.relative_to(dump_path.parent))
            else:
                archive.write(dump_path, dump_path.name)
    except (OSError, zipfile.BadZipFile) as error:
        _remove_path(archive_path)
        raise ExecutionError(f"Compression of {dump_path.name} failed: {error}") from error
    _remove_path(dump_path)
    return archive_path


def store_archive(archive_path: Path, cadence_dir: Path) -> Path:
    destination = cadence_dir / archive_path.name
    try:
        cadence_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(archive_path), str(destination))
    except (OSError, shutil.Error) as error:
        raise ExecutionError(f"Could not move {archive_path.name} to {cadence_dir}: {error}") from error
    return destination


def expire_local_archives(cadence_dir: Path, retention_minutes: int, *, now: Optional[float] = None) -> List[Path]:
    if retention_minutes <= 0 or not cadence_dir.is_dir():
        return []
    cutoff = (now if now is not None else time.time()) - retention_minutes * 60
    removed: List[Path] = []
    for archive in sorted(cadence_dir.glob(f"*{ARCHIVE_SUFFIX}")):
        try:
            if archive.stat().st_mtime >= cutoff:
                continue
            archive.unlink()
        except OSError as error:
            logging.warning("Failed to delete expired backup %s: %s", archive, error)
            continue
        logging.info("Deleted expired local backup %s", archive)
        removed.append(archive)
    return removed


def sweep_working_directory(working_dir: Path, max_age_minutes: int, *, now: Optional[float] = None) -> None:
    """Remove leftovers older than ``max_age_minutes`` from the working directory."""
    if not working_dir.is_dir():
        return
    cutoff = (now if now is not None else time.time()) - max_age_minutes * 60
    try:
        entries = list(working_dir.iterdir())
    except OSError as error:
        logging.warning("Could not scan working directory %s: %s", working_dir, error)
        return
    for entry in entries:
        try:
            if entry.lstat().st_mtime >= cutoff:
                continue
        except OSError:
            continue
        logging.debug("Removing stale working entry %s", entry)
        _remove_path(entry)


def purge_local_archives(cadence_dir: Path) -> None:
    if not cadence_dir.is_dir():
        return
    for archive in cadence_dir.glob(f"*{ARCHIVE_SUFFIX}"):
        try:
            archive.unlink()
        except OSError as error:
            logging.warning("Could not remove local copy %s: %s", archive, error)


def back_up_database(context: ProjectContext, database: str, run: RunContext) -> BackupArtifact:
    artifact = BackupArtifact(project=context.name, database=database)
    cadence_dir = context.local_cadence_dir(run.cadence)
    try:
        artifact.base_filename = compose_base_filename(database, run.period_label)
        artifact.advance(ArtifactStage.FILENAME_GENERATED)

        logging.info("[%s] Dumping database %s", context.name, database)
        artifact.dump_path = dump_database(
            context, database, _dump_path(context, artifact.base_filename), timeout=run.command_timeout
        )
        artifact.advance(ArtifactStage.DUMPED)

        artifact.archive_path = compress_dump(
            artifact.dump_path, context.working_dir / f"{artifact.base_filename}{ARCHIVE_SUFFIX}"
        )
        artifact.advance(ArtifactStage.COMPRESSED)

        artifact.local_path = store_archive(artifact.archive_path, cadence_dir)
        artifact.advance(ArtifactStage.LOCALLY_STORED)
        logging.info("[%s] Stored %s", context.name, artifact.local_path)
    except ExecutionError as error:
        logging.error("[%s] Backup of %s failed: %s", context.name, database, error)
        artifact.fail(str(error))
        return artifact
    finally:
        sweep_working_directory(context.working_dir, run.temp_retention_minutes)

    retention = context.retention_for(run.cadence)
    if retention > 0:
        logging.info(
            "[%s] Expiring %s backups older than %s", context.name, run.cadence.value, format_minutes(retention)
        )
    expire_local_archives(cadence_dir, retention)
    if not context.mode.uses_cloud:
        artifact.advance(ArtifactStage.EXPIRED)
    artifact.status = ArtifactStatus.SUCCESS
    return artifact


def replicate_to_cloud(context: ProjectContext, run: RunContext, artifacts: List[BackupArtifact]) -> None:
    """Push the cadence directory to the project's bucket and expire old objects.

    Raises StorageError when the sync fails; expiry problems are warnings.
    """
    target = context.cloud
    prefix = cadence_prefix(target, run.cadence)
    cadence_dir = context.local_cadence_dir(run.cadence)

    # Upload-only in cloud mode: local copies are purged after every run.
    sync_directory(target, cadence_dir, prefix, delete_removed=context.mode is BackupMode.BOTH)

    for artifact in artifacts:
        if artifact.succeeded:
            artifact.cloud_key = f"{prefix}{artifact.local_path.name}"
            artifact.advance(ArtifactStage.CLOUD_REPLICATED)

    try:
        expire_remote_backups(
            target,
            prefix,
            context.retention_for(run.cadence),
            now=run.started_at.astimezone(timezone.utc),
        )
    except StorageError as error:
        logging.warning("[%s] Cloud cleanup of %s failed: %s", context.name, describe(target, prefix), error)
    for artifact in artifacts:
        if artifact.succeeded:
            artifact.advance(ArtifactStage.EXPIRED)

    if context.mode is BackupMode.CLOUD:
        logging.info("[%s] Removing local copies from %s after upload", context.name, cadence_dir)
        purge_local_archives(cadence_dir)


def run_project_cycle(context: ProjectContext, run: RunContext) -> ProjectOutcome:
    if not context.databases:
        return ProjectOutcome(context.raw_name, ProjectStatus.NO_DATABASES, reason="No databases listed")

    outcome = ProjectOutcome(context.raw_name, ProjectStatus.PASSED)
    for database in context.databases:
        outcome.artifacts.append(back_up_database(context, database, run))

    if context.mode.uses_cloud and outcome.succeeded:
        try:
            replicate_to_cloud(context, run, outcome.artifacts)
        except StorageError as error:
            logging.error("[%s] Cloud replication failed: %s", context.name, error)
            outcome.status = ProjectStatus.FAILED
            outcome.reason = str(error)

    if outcome.status is ProjectStatus.PASSED:
        for artifact in outcome.succeeded:
            artifact.advance(ArtifactStage.DONE)

    if outcome.failed:
        outcome.status = ProjectStatus.FAILED
        if not outcome.reason:
            outcome.reason = f"{len(outcome.failed)} of {len(outcome.artifacts)} databases failed"
    return outcome
