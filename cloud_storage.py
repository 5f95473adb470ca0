"""
Object-storage operations for project backups.

S3 and Cloudflare R2 are both reached through boto3's S3 client; R2 uses a
named credentials profile and an account endpoint URL.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from backup_errors import DependencyError, StorageError
from project_config import Cadence, CloudProvider


NOISY_LOGGERS = ("boto", "boto3", "botocore", "urllib3", "s3transfer")
DEFAULT_BUCKET_REGION = "us-east-1"
KEEP_MARKER = ".keep"
ARCHIVE_SUFFIX = ".zip"


@dataclass(frozen=True)
class S3Target:
    bucket: str
    prefix: str
    aws_profile: Optional[str] = None
    aws_region: Optional[str] = None

    @property
    def provider(self) -> CloudProvider:
        return CloudProvider.S3


@dataclass(frozen=True)
class R2Target:
    bucket: str
    prefix: str
    aws_profile: str
    endpoint_url: str

    @property
    def provider(self) -> CloudProvider:
        return CloudProvider.R2


CloudTarget = Union[S3Target, R2Target]


@dataclass(frozen=True)
class RemoteObject:
    key: str
    last_modified: datetime


@dataclass
class SyncResult:
    uploaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)


@dataclass
class ExpiryResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def normalize_prefix(prefix: str) -> str:
    cleaned = prefix.strip().strip("/")
    return f"{cleaned}/" if cleaned else ""


def cadence_prefix(target: CloudTarget, cadence: Cadence) -> str:
    return f"{target.prefix}{cadence.value}/"


def describe(target: CloudTarget, key: str = "") -> str:
    return f"{target.provider.value}://{target.bucket}/{key or target.prefix}"


def quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_s3_client(
    *,
    aws_profile: Optional[str],
    aws_region: Optional[str],
    endpoint_url: Optional[str] = None,
):
    try:
        import boto3
    except ModuleNotFoundError as exc:
        raise DependencyError(
            "boto3 is required for cloud backups. Install with `pip install boto3`."
        ) from exc
    quiet_external_loggers()
    session_kwargs = {}
    if aws_profile:
        session_kwargs["profile_name"] = aws_profile
    if aws_region:
        session_kwargs["region_name"] = aws_region
    session = boto3.Session(**session_kwargs)
    if endpoint_url:
        return session.client("s3", endpoint_url=endpoint_url)
    return session.client("s3")


def create_client(target: CloudTarget):
    if isinstance(target, R2Target):
        return create_s3_client(
            aws_profile=target.aws_profile,
            aws_region="auto",
            endpoint_url=target.endpoint_url,
        )
    return create_s3_client(aws_profile=target.aws_profile, aws_region=target.aws_region)


def _client_errors():
    try:
        from botocore.exceptions import BotoCoreError, ClientError
    except ModuleNotFoundError as exc:
        raise DependencyError(
            "botocore is required for cloud backups. Install with `pip install boto3`."
        ) from exc
    return (BotoCoreError, ClientError)


def _open_client(target: CloudTarget):
    """create_client, with unusable profiles, regions and endpoints raised as StorageError."""
    boto_core_error, _ = _client_errors()
    try:
        return create_client(target)
    except (boto_core_error, ValueError) as error:
        raise StorageError(
            f"Could not create a {target.provider.value} client for {describe(target)}: {error}"
        ) from error


def _error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


def s3_object_exists(client, bucket: str, key: str) -> bool:
    from botocore.exceptions import ClientError

    try:
        client.head_object(Bucket=bucket, Key=key)
        return True
    except ClientError as error:
        if error.response["ResponseMetadata"]["HTTPStatusCode"] == 404:
            return False
        error_code = error.response.get("Error", {}).get("Code")
        if error_code in ("404", "NotFound", "NoSuchKey"):
            return False
        raise


def discover_bucket_region(client, bucket: str) -> str:
    response = client.get_bucket_location(Bucket=bucket)
    region = response.get("LocationConstraint")
    if not region or region == "None":
        return DEFAULT_BUCKET_REGION
    # Legacy EU buckets report the pre-2014 constraint name.
    if region == "EU":
        return "eu-west-1"
    return region


def verify_cloud_target(target: CloudTarget) -> CloudTarget:
    """Confirm the bucket is reachable and the target prefix is writable.

    A reachable bucket does not imply write access to an arbitrary prefix,
    so a zero-byte marker object is written under the prefix and read back.
    For S3 targets the bucket region is discovered and returned on the
    target so later operations talk to the right endpoint.
    """
    errors = _client_errors()
    client = _open_client(target)

    if isinstance(target, S3Target):
        try:
            region = discover_bucket_region(client, target.bucket)
        except errors as error:
            raise StorageError(
                f"Failed to get the location of bucket '{target.bucket}'. The bucket may not "
                f"exist or the credentials lack s3:GetBucketLocation ({_error_code(error) or error})."
            ) from error
        logging.info("Bucket '%s' is in region '%s'.", target.bucket, region)
        if region != target.aws_region:
            target = replace(target, aws_region=region)
            client = _open_client(target)

    try:
        client.head_bucket(Bucket=target.bucket)
    except errors as error:
        code = _error_code(error)
        if code in ("403", "AccessDenied"):
            reason = "access denied"
        elif code in ("404", "NoSuchBucket", "NotFound"):
            reason = "bucket does not exist"
        else:
            reason = code or str(error)
        raise StorageError(
            f"Bucket '{target.bucket}' is not reachable with the configured "
            f"{target.provider.value} credentials: {reason}."
        ) from error
    logging.info("Bucket '%s' exists and is accessible.", target.bucket)

    marker_key = f"{target.prefix}{KEEP_MARKER}"
    try:
        client.put_object(Bucket=target.bucket, Key=marker_key, Body=b"")
        if not s3_object_exists(client, target.bucket, marker_key):
            raise StorageError(
                f"Marker object {describe(target, marker_key)} was written but could not be read back."
            )
    except errors as error:
        raise StorageError(
            f"Target prefix {describe(target)} is not writable: {_error_code(error) or error}."
        ) from error
    logging.info("Target prefix %s confirmed writable.", describe(target))
    return target


def list_remote_backups(target: CloudTarget, prefix: str, *, client=None) -> List[RemoteObject]:
    client = client or _open_client(target)
    paginator = client.get_paginator("list_objects_v2")
    objects: List[RemoteObject] = []
    for page in paginator.paginate(Bucket=target.bucket, Prefix=prefix):
        for obj in page.get("Contents", []):
            key = obj["Key"]
            if not key.endswith(ARCHIVE_SUFFIX):
                continue
            if "/" in key[len(prefix):]:
                logging.debug("Skipping nested object %s", key)
                continue
            objects.append(RemoteObject(key=key, last_modified=obj["LastModified"]))
    objects.sort(key=lambda item: item.last_modified)
    return objects


def sync_directory(
    target: CloudTarget,
    local_dir: Path,
    prefix: str,
    *,
    delete_removed: bool,
) -> SyncResult:
    """Push local archives under ``prefix``; optionally delete remote archives missing locally.

    Objects already present remotely are skipped. Any upload, listing or
    deletion failure aborts the sync with a StorageError.
    """
    errors = _client_errors()
    result = SyncResult()
    local_files: Dict[str, Path] = {}
    if local_dir.is_dir():
        local_files = {
            path.name: path
            for path in sorted(local_dir.glob(f"*{ARCHIVE_SUFFIX}"))
            if path.is_file()
        }

    try:
        client = _open_client(target)
        remote = {Path(obj.key).name: obj.key for obj in list_remote_backups(target, prefix, client=client)}

        for name, path in local_files.items():
            key = f"{prefix}{name}"
            if name in remote:
                logging.debug("Backup %s already present at %s, skipping upload", name, describe(target, key))
                result.skipped.append(key)
                continue
            logging.info("Uploading %s to %s", name, describe(target, key))
            client.upload_file(str(path), target.bucket, key)
            result.uploaded.append(key)

        if delete_removed:
            for name, key in remote.items():
                if name in local_files:
                    continue
                logging.info("Deleting %s (removed locally)", describe(target, key))
                client.delete_object(Bucket=target.bucket, Key=key)
                result.deleted.append(key)
    except errors as error:
        raise StorageError(
            f"Synchronization of {local_dir} to {describe(target, prefix)} failed: "
            f"{_error_code(error) or error}"
        ) from error
    except OSError as error:
        raise StorageError(f"Could not read {local_dir} for synchronization: {error}") from error

    return result


def expire_remote_backups(
    target: CloudTarget,
    prefix: str,
    retention_minutes: int,
    *,
    now: Optional[datetime] = None,
) -> ExpiryResult:
    """Delete archives under ``prefix`` last modified before now minus the retention.

    A retention of 0 keeps everything. Individual delete failures are
    logged as warnings and collected rather than raised.
    """
    result = ExpiryResult()
    if retention_minutes <= 0:
        logging.info("Retention for %s is unlimited; skipping cloud cleanup.", describe(target, prefix))
        return result

    errors = _client_errors()
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(minutes=retention_minutes)

    try:
        client = _open_client(target)
        objects = list_remote_backups(target, prefix, client=client)
    except errors as error:
        raise StorageError(
            f"Failed to list objects for cleanup in {describe(target, prefix)}: {_error_code(error) or error}"
        ) from error

    for obj in objects:
        modified = obj.last_modified
        if modified.tzinfo is None:
            modified = modified.replace(tzinfo=timezone.utc)
        if modified >= cutoff:
            continue
        logging.info(
            "Deleting expired backup %s (last modified %s)",
            describe(target, obj.key),
            modified.isoformat(),
        )
        try:
            client.delete_object(Bucket=target.bucket, Key=obj.key)
        except errors as error:
            logging.warning("Failed to delete %s: %s", describe(target, obj.key), error)
            result.failed.append(obj.key)
            continue
        result.deleted.append(obj.key)

    return result
