#!/usr/bin/env python3
"""
Periodic database backup runner.

Invoked once per cadence by cron. Resolves the project manifest, selects the
projects enabled for the cadence, validates each one and backs up its
databases to local and cloud storage.
"""
from __future__ import annotations

import argparse
import configparser
import fcntl
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, TextIO

from backup_cycle import (
    DEFAULT_TEMP_RETENTION_MINUTES,
    ProjectOutcome,
    ProjectStatus,
    RunContext,
    run_project_cycle,
)
from backup_errors import ConfigError, DependencyError
from cloud_storage import quiet_external_loggers
from manifest import deduplicate_projects, read_audit_file, resolve_manifest
from preflight import run_preflight
from project_config import Cadence, filter_projects_by_frequency
from run_report import RunReport, log_duplicate_table, log_filter_table, log_include_table


CONFIG_SECTION = "db_backups"
LOG_LEVELS = ["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"

DEFAULT_MANIFEST = Path("/etc/db_backups/db_backups.conf")
DEFAULT_BACKUP_BASE = Path("/var/backups/db_backups")
DEFAULT_TEMP_BASE = Path("/var/cache/db_backups")
DEFAULT_AUDIT_DIR = Path("/etc/db_backups/autogen_conf.d")
DEFAULT_LOCK_DIR = Path("/var/lock/db_backups")

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2
EXIT_LOCKED = 3


@dataclass
class Settings:
    manifest: Path = DEFAULT_MANIFEST
    backup_base: Path = DEFAULT_BACKUP_BASE
    temp_base: Path = DEFAULT_TEMP_BASE
    audit_dir: Path = DEFAULT_AUDIT_DIR
    lock_dir: Path = DEFAULT_LOCK_DIR
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    command_timeout: Optional[int] = None
    temp_retention_minutes: int = DEFAULT_TEMP_RETENTION_MINUTES


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Back up every project database enabled for the given cadence."
    )
    parser.add_argument(
        "cadence",
        choices=[cadence.value for cadence in Cadence],
        help="Backup cadence to run.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI settings file with a [db_backups] section.",
    )
    parser.add_argument(
        "--manifest",
        type=Path,
        help=f"Manifest listing the active project configs (default: {DEFAULT_MANIFEST}).",
    )
    parser.add_argument(
        "--backup-base",
        type=Path,
        help=f"Base directory for local backups (default: {DEFAULT_BACKUP_BASE}).",
    )
    parser.add_argument(
        "--temp-base",
        type=Path,
        help=f"Base directory for per-project working directories (default: {DEFAULT_TEMP_BASE}).",
    )
    parser.add_argument(
        "--audit-dir",
        type=Path,
        help=f"Directory for the generated unique-project list (default: {DEFAULT_AUDIT_DIR}).",
    )
    parser.add_argument(
        "--lock-dir",
        type=Path,
        help=f"Directory holding the per-cadence lock files (default: {DEFAULT_LOCK_DIR}).",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Also append log records to this file.",
    )
    return parser.parse_args(argv)


def read_settings_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    try:
        read_files = parser.read(config_path)
    except configparser.Error as error:
        raise ConfigError(f"Settings file {config_path} is malformed: {error}") from error
    if not read_files:
        raise ConfigError(f"Settings file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigError(
            f"Settings file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigError(f"{name} must be an integer.") from error


def merge_settings(
    args: argparse.Namespace, file_config: Optional[Dict[str, str]]
) -> Settings:
    file_cfg = file_config or {}
    settings = Settings()

    for name in ("manifest", "backup_base", "temp_base", "audit_dir", "lock_dir", "log_file"):
        cli_value = getattr(args, name)
        if cli_value is not None:
            setattr(settings, name, cli_value)
        elif file_cfg.get(name):
            setattr(settings, name, Path(file_cfg[name]).expanduser())

    log_level = args.log_level or file_cfg.get("log_level") or settings.log_level
    if log_level.upper() not in LOG_LEVELS:
        raise ConfigError(f"Invalid log level: {log_level}")
    settings.log_level = log_level.upper()

    if file_cfg.get("command_timeout"):
        settings.command_timeout = parse_int(file_cfg["command_timeout"], "command_timeout")
        if settings.command_timeout <= 0:
            raise ConfigError("command_timeout must be a positive integer.")

    if file_cfg.get("temp_retention_minutes"):
        settings.temp_retention_minutes = parse_int(
            file_cfg["temp_retention_minutes"], "temp_retention_minutes"
        )
        if settings.temp_retention_minutes <= 0:
            raise ConfigError("temp_retention_minutes must be a positive integer.")

    return settings


def configure_logging(log_level: str, log_file: Optional[Path] = None) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ConfigError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as error:
            raise ConfigError(f"Log file {log_file} could not be opened: {error}") from error
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    quiet_external_loggers()


def prepare_base_directories(settings: Settings) -> None:
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        logging.warning("Not running as root; dumps and file permissions may fail.")
    for directory in (settings.backup_base, settings.temp_base):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise DependencyError(f"Base directory {directory} could not be created: {error}") from error


def acquire_cadence_lock(lock_dir: Path, cadence: Cadence) -> Optional[TextIO]:
    """Take the non-blocking per-cadence lock; None when another run holds it."""
    lock_path = lock_dir / f"db_backups_{cadence.value}.lock"
    try:
        lock_dir.mkdir(parents=True, exist_ok=True)
        handle = open(lock_path, "w", encoding="utf-8")
    except OSError as error:
        raise DependencyError(f"Lock file {lock_path} could not be opened: {error}") from error

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        return None

    handle.write(f"{os.getpid()}\n")
    handle.flush()
    logging.debug("Acquired %s lock %s", cadence.value, lock_path)
    return handle


def release_lock(handle: TextIO) -> None:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


def run_backups(settings: Settings, cadence: Cadence, *, now: Optional[datetime] = None) -> int:
    resolution = resolve_manifest(settings.manifest)
    log_include_table(resolution)
    if not resolution.project_paths:
        logging.warning("No project configs resolved from %s; nothing to do.", settings.manifest)
        return EXIT_OK

    duplicates = deduplicate_projects(resolution, settings.audit_dir, now=now)
    log_duplicate_table(duplicates)

    filtered = filter_projects_by_frequency(read_audit_file(duplicates.audit_file), cadence)
    log_filter_table(filtered)

    report = RunReport(cadence=cadence)
    report.record_filter(filtered)
    if not filtered.enabled:
        logging.info("No projects are enabled for %s backups.", cadence.value)
        report.log_summary()
        return EXIT_OK

    run = RunContext.create(
        cadence,
        now=now,
        command_timeout=settings.command_timeout,
        temp_retention_minutes=settings.temp_retention_minutes,
    )
    logging.info("Starting %s backups for period %s", cadence.value, run.period_label)

    for config_path in filtered.enabled:
        result = run_preflight(
            config_path, backup_base=settings.backup_base, temp_base=settings.temp_base
        )
        if not result.passed:
            report.record_preflight_failure(result)
            continue
        try:
            outcome = run_project_cycle(result.context, run)
        except DependencyError:
            raise
        except Exception as error:
            logging.exception("[%s] backup cycle aborted: %s", result.context.name, error)
            outcome = ProjectOutcome(
                result.context.raw_name, ProjectStatus.FAILED, reason=f"Unexpected error: {error}"
            )
        report.record_outcome(outcome)

    report.log_summary()
    return EXIT_FAILURES if report.exit_status() else EXIT_OK


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_settings_file(args.config)
        settings = merge_settings(args, file_config)
        configure_logging(settings.log_level, settings.log_file)
    except ConfigError as error:
        logging.error("%s", error)
        return EXIT_FATAL

    cadence = Cadence(args.cadence)
    try:
        prepare_base_directories(settings)
        lock = acquire_cadence_lock(settings.lock_dir, cadence)
    except DependencyError as error:
        logging.error("%s", error)
        return EXIT_FATAL

    if lock is None:
        logging.error("Another %s backup run is already in progress; exiting.", cadence.value)
        return EXIT_LOCKED

    try:
        return run_backups(settings, cadence)
    except (ConfigError, DependencyError) as error:
        logging.error("%s", error)
        return EXIT_FATAL
    finally:
        release_lock(lock)


if __name__ == "__main__":
    sys.exit(main())
