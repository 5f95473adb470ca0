"""
Per-project preflight validation.

Each project file goes through a fixed sequence of checks. The first
failing step stops that project only; a project that passes every step
yields an immutable ProjectContext that the backup cycle consumes.
"""
from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from backup_errors import BackupError, DependencyError, ValidationError
from cloud_storage import CloudTarget, R2Target, S3Target, normalize_prefix, verify_cloud_target
from durations import format_minutes, parse_ttl
from project_config import (
    BackupMode,
    Cadence,
    CloudProvider,
    ConfigValue,
    DatabaseEngine,
    get_list,
    get_scalar,
    is_separator_only,
    read_project_file,
    sanitize_name,
)


logger = logging.getLogger(__name__)

DEFAULT_CLOUD_ROOT = "db_backups"
DEFAULT_POSTGRES_USER = "postgres"
R2_ENDPOINT_TEMPLATE = "https://{account_id}.r2.cloudflarestorage.com"

DUMP_TOOLS: Dict[DatabaseEngine, Tuple[str, ...]] = {
    DatabaseEngine.MYSQL: ("mysqldump",),
    DatabaseEngine.MARIADB: ("mariadb-dump", "mysqldump"),
    DatabaseEngine.POSTGRES: ("pg_dump",),
    DatabaseEngine.MONGODB: ("mongodump",),
}


@dataclass(frozen=True)
class ProjectContext:
    config_path: Path
    raw_name: str
    name: str
    mode: BackupMode
    engine: DatabaseEngine
    dump_tool: str
    databases: Tuple[str, ...]
    db_user: str
    db_password: Optional[str] = field(repr=False)
    local_root: Path
    working_dir: Path
    cloud: Optional[CloudTarget]
    retention: Dict[Cadence, int] = field(hash=False)

    def local_cadence_dir(self, cadence: Cadence) -> Path:
        return self.local_root / cadence.value

    def retention_for(self, cadence: Cadence) -> int:
        return self.retention.get(cadence, 0)


@dataclass
class PreflightResult:
    config_path: Path
    project_name: str
    context: Optional[ProjectContext] = None
    failed_step: Optional[int] = None
    step_label: str = ""
    reason: str = ""

    @property
    def passed(self) -> bool:
        return self.context is not None


@dataclass
class _Draft:
    """Mutable state accumulated while the steps run."""

    config_path: Path
    backup_base: Path
    temp_base: Path
    values: Dict[str, ConfigValue] = field(default_factory=dict)
    raw_name: str = ""
    name: str = ""
    local_root: Optional[Path] = None
    custom_root: bool = False
    working_dir: Optional[Path] = None
    mode: Optional[BackupMode] = None
    engine: Optional[DatabaseEngine] = None
    dump_tool: str = ""
    databases: List[str] = field(default_factory=list)
    db_user: str = ""
    db_password: Optional[str] = None
    cloud: Optional[CloudTarget] = None
    retention: Dict[Cadence, int] = field(default_factory=dict)

    def scalar(self, key: str) -> str:
        return get_scalar(self.values, key)


def _load_configuration(draft: _Draft) -> None:
    draft.values = read_project_file(draft.config_path)


def _validate_identity(draft: _Draft) -> None:
    raw_name = draft.scalar("PROJECT_NAME")
    if not raw_name:
        raise ValidationError("PROJECT_NAME is missing or empty.")
    name = sanitize_name(raw_name)
    if is_separator_only(name):
        raise ValidationError(
            f"PROJECT_NAME {raw_name!r} sanitizes to {name!r}, which contains only separators."
        )
    if name != raw_name:
        logger.info("Project name %r sanitized to %r.", raw_name, name)
    draft.raw_name = raw_name
    draft.name = name


def _resolve_paths(draft: _Draft) -> None:
    backup_base = Path(os.path.normpath(draft.backup_base))
    default_root = backup_base / draft.name
    draft.working_dir = draft.temp_base / f"{draft.name}_temp"

    custom = draft.scalar("LOCAL_BACKUP_ROOT")
    if not custom:
        draft.local_root = default_root
        return

    candidate = Path(custom)
    if not candidate.is_absolute():
        raise ValidationError(f"LOCAL_BACKUP_ROOT {custom!r} must be an absolute path.")
    candidate = Path(os.path.normpath(candidate))
    if candidate == backup_base or backup_base in candidate.parents:
        if candidate != default_root:
            logger.warning(
                "LOCAL_BACKUP_ROOT %s lies inside %s; using the default %s instead.",
                candidate,
                backup_base,
                default_root,
            )
        draft.local_root = default_root
        return

    draft.local_root = candidate
    draft.custom_root = True


def _validate_mode(draft: _Draft) -> None:
    raw = draft.scalar("BACKUP_TYPE").lower()
    try:
        draft.mode = BackupMode(raw)
    except ValueError:
        raise ValidationError(
            f"BACKUP_TYPE {raw!r} is invalid; expected one of local, cloud, both."
        ) from None


def _validate_engine(draft: _Draft) -> None:
    raw = draft.scalar("DB_TYPE").lower()
    try:
        engine = DatabaseEngine(raw)
    except ValueError:
        raise ValidationError(
            f"DB_TYPE {raw!r} is invalid; expected one of mysql, mariadb, postgres, mongodb."
        ) from None

    for tool in DUMP_TOOLS[engine]:
        found = shutil.which(tool)
        if found:
            draft.engine = engine
            draft.dump_tool = found
            return
    raise ValidationError(
        f"Dump utility for {engine.value} not found on PATH (looked for {', '.join(DUMP_TOOLS[engine])})."
    )


def _validate_databases(draft: _Draft) -> None:
    databases = get_list(draft.values, "DBS_TO_BACKUP")
    if not databases:
        raise ValidationError("DBS_TO_BACKUP is missing or empty.")

    # Archive names use the sanitized database name.
    by_filename: Dict[str, str] = {}
    unique: List[str] = []
    for database in databases:
        filename = sanitize_name(database)
        previous = by_filename.setdefault(filename, database)
        if previous == database and database in unique:
            logger.warning("Database %r is listed more than once; backing it up once.", database)
            continue
        if previous != database:
            raise ValidationError(
                f"Databases {previous!r} and {database!r} both produce archive name {filename!r}."
            )
        unique.append(database)
    draft.databases = unique

    user = draft.scalar("DB_USER")
    password = draft.scalar("DB_PASSWORD") or None

    if draft.engine is DatabaseEngine.POSTGRES:
        if password is None:
            if not user:
                user = DEFAULT_POSTGRES_USER
                logger.info("No DB_PASSWORD for postgres; using peer authentication as %r.", user)
        elif not user:
            raise ValidationError("DB_PASSWORD is set but DB_USER is missing for postgres.")
    elif not user or password is None:
        raise ValidationError(f"DB_USER and DB_PASSWORD are required for {draft.engine.value}.")

    draft.db_user = user
    draft.db_password = password


def _build_cloud_target(draft: _Draft) -> CloudTarget:
    raw_provider = draft.scalar("CLOUD_STORAGE_PROVIDER").lower()
    if not raw_provider:
        logger.warning("CLOUD_STORAGE_PROVIDER is not set for %s; defaulting to s3.", draft.name)
        raw_provider = CloudProvider.S3.value
    try:
        provider = CloudProvider(raw_provider)
    except ValueError:
        raise ValidationError(f"CLOUD_STORAGE_PROVIDER {raw_provider!r} is not recognised.") from None

    if provider is CloudProvider.B2:
        raise ValidationError("CLOUD_STORAGE_PROVIDER 'b2' is not supported.")

    bucket = draft.scalar("S3_BUCKET_NAME")
    if not bucket:
        raise ValidationError("S3_BUCKET_NAME is required for cloud backups.")
    prefix = normalize_prefix(draft.scalar("S3_PATH")) or f"{DEFAULT_CLOUD_ROOT}/{draft.name}/"

    if provider is CloudProvider.S3:
        return S3Target(
            bucket=bucket,
            prefix=prefix,
            aws_profile=draft.scalar("S3_AWS_PROFILE_NAME") or None,
            aws_region=draft.scalar("S3_REGION") or None,
        )

    profile = draft.scalar("R2_AWS_PROFILE_NAME")
    if not profile:
        raise ValidationError("R2_AWS_PROFILE_NAME is required for r2.")
    endpoint = draft.scalar("R2_ENDPOINT_URL")
    if not endpoint:
        account_id = draft.scalar("R2_ACCOUNT_ID")
        if not account_id:
            raise ValidationError("Either R2_ENDPOINT_URL or R2_ACCOUNT_ID is required for r2.")
        endpoint = R2_ENDPOINT_TEMPLATE.format(account_id=account_id)
    return R2Target(bucket=bucket, prefix=prefix, aws_profile=profile, endpoint_url=endpoint)


def _validate_cloud(draft: _Draft) -> None:
    if not draft.mode.uses_cloud:
        return
    target = _build_cloud_target(draft)
    draft.cloud = verify_cloud_target(target)


def _prepare_directories(draft: _Draft) -> None:
    try:
        if draft.custom_root:
            draft.local_root.mkdir(parents=True, exist_ok=True)
        draft.working_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise ValidationError(f"Could not create project directories: {error}") from error


def _validate_retention(draft: _Draft) -> None:
    problems: List[str] = []
    for cadence in Cadence:
        key = cadence.ttl_key
        raw = draft.scalar(key)
        if not raw:
            logger.warning("%s not set for %s; %s backups are kept forever.", key, draft.name, cadence.value)
            draft.retention[cadence] = 0
            continue
        try:
            draft.retention[cadence] = parse_ttl(raw)
        except ValidationError as error:
            problems.append(f"{key}: {error}")
            continue
        logger.debug("%s for %s: %s", key, draft.name, format_minutes(draft.retention[cadence]))
    if problems:
        raise ValidationError("; ".join(problems))


PREFLIGHT_STEPS: Tuple[Tuple[str, Callable[[_Draft], None]], ...] = (
    ("Load configuration", _load_configuration),
    ("Project identity", _validate_identity),
    ("Backup paths", _resolve_paths),
    ("Backup type", _validate_mode),
    ("Database engine", _validate_engine),
    ("Databases and credentials", _validate_databases),
    ("Cloud storage", _validate_cloud),
    ("Directories", _prepare_directories),
    ("Retention", _validate_retention),
)


def run_preflight(config_path: Path, *, backup_base: Path, temp_base: Path) -> PreflightResult:
    """Validate one project file; a DependencyError is re-raised for the caller."""
    draft = _Draft(config_path=config_path, backup_base=backup_base, temp_base=temp_base)
    total = len(PREFLIGHT_STEPS)

    for number, (label, step) in enumerate(PREFLIGHT_STEPS, start=1):
        logger.debug("[%s] preflight step %d/%d: %s", config_path.name, number, total, label)
        try:
            step(draft)
        except DependencyError:
            raise
        except Exception as error:
            if not isinstance(error, BackupError):
                logger.debug("Unexpected error in preflight step %d", number, exc_info=True)
            logger.error(
                "[%s] preflight failed at step %d/%d (%s): %s",
                draft.raw_name or config_path.name,
                number,
                total,
                label,
                error,
            )
            return PreflightResult(
                config_path=config_path,
                project_name=draft.raw_name or config_path.stem,
                failed_step=number,
                step_label=label,
                reason=str(error),
            )

    context = ProjectContext(
        config_path=config_path,
        raw_name=draft.raw_name,
        name=draft.name,
        mode=draft.mode,
        engine=draft.engine,
        dump_tool=draft.dump_tool,
        databases=tuple(draft.databases),
        db_user=draft.db_user,
        db_password=draft.db_password,
        local_root=draft.local_root,
        working_dir=draft.working_dir,
        cloud=draft.cloud,
        retention=dict(draft.retention),
    )
    logger.info("[%s] preflight passed (%s, %s).", context.name, context.engine.value, context.mode.value)
    return PreflightResult(config_path=config_path, project_name=context.raw_name, context=context)
