import sys
import types
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

import cloud_storage
from backup_errors import DependencyError, StorageError
from cloud_storage import (
    R2Target,
    S3Target,
    cadence_prefix,
    expire_remote_backups,
    list_remote_backups,
    normalize_prefix,
    s3_object_exists,
    sync_directory,
    verify_cloud_target,
)
from project_config import Cadence


NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClientError(Exception):
    def __init__(self, error_response: dict, operation_name: str) -> None:
        super().__init__(f"{operation_name}: {error_response.get('Error', {}).get('Code')}")
        self.response = error_response
        self.operation_name = operation_name


class FakeBotoCoreError(Exception):
    pass


def client_error(code: str, status: int, operation: str) -> FakeClientError:
    return FakeClientError(
        {"ResponseMetadata": {"HTTPStatusCode": status}, "Error": {"Code": code}}, operation
    )


class FakeBucket:
    def __init__(self) -> None:
        self.objects: Dict[str, datetime] = {}
        self.location: Optional[str] = None
        self.head_bucket_error: Optional[Exception] = None
        self.fail_deletes: Set[str] = set()
        self.uploads: List[str] = []
        self.deletes: List[str] = []
        self.sessions: List[dict] = []
        self.clients: List[dict] = []
        self.session_error: Optional[Exception] = None
        self.client_init_error: Optional[Exception] = None


class FakePaginator:
    def __init__(self, bucket: FakeBucket) -> None:
        self.bucket = bucket

    def paginate(self, *, Bucket: str, Prefix: str):
        keys = sorted(key for key in self.bucket.objects if key.startswith(Prefix))
        # Two pages to exercise pagination.
        middle = len(keys) // 2
        for chunk in (keys[:middle], keys[middle:]):
            yield {"Contents": [{"Key": key, "LastModified": self.bucket.objects[key]} for key in chunk]}


class FakeClient:
    def __init__(self, bucket: FakeBucket) -> None:
        self.bucket = bucket

    def get_bucket_location(self, *, Bucket: str) -> dict:
        return {"LocationConstraint": self.bucket.location}

    def head_bucket(self, *, Bucket: str) -> None:
        if self.bucket.head_bucket_error is not None:
            raise self.bucket.head_bucket_error

    def head_object(self, *, Bucket: str, Key: str) -> None:
        if Key not in self.bucket.objects:
            raise client_error("404", 404, "HeadObject")

    def put_object(self, *, Bucket: str, Key: str, Body: bytes) -> None:
        self.bucket.objects[Key] = NOW

    def upload_file(self, filename: str, bucket: str, key: str) -> None:
        self.bucket.uploads.append(key)
        self.bucket.objects[key] = NOW

    def delete_object(self, *, Bucket: str, Key: str) -> None:
        if Key in self.bucket.fail_deletes:
            raise client_error("AccessDenied", 403, "DeleteObject")
        self.bucket.deletes.append(Key)
        self.bucket.objects.pop(Key, None)

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "list_objects_v2"
        return FakePaginator(self.bucket)


@pytest.fixture
def bucket(monkeypatch: pytest.MonkeyPatch) -> FakeBucket:
    state = FakeBucket()

    class FakeSession:
        def __init__(self, **kwargs) -> None:
            if state.session_error is not None:
                raise state.session_error
            state.sessions.append(kwargs)

        def client(self, service_name: str, **kwargs) -> FakeClient:
            assert service_name == "s3"
            if state.client_init_error is not None:
                raise state.client_init_error
            state.clients.append(kwargs)
            return FakeClient(state)

    fake_boto3 = types.ModuleType("boto3")
    fake_boto3.Session = FakeSession  # type: ignore[attr-defined]

    fake_botocore = types.ModuleType("botocore")
    fake_botocore_exceptions = types.ModuleType("botocore.exceptions")
    fake_botocore_exceptions.ClientError = FakeClientError  # type: ignore[attr-defined]
    fake_botocore_exceptions.BotoCoreError = FakeBotoCoreError  # type: ignore[attr-defined]
    fake_botocore.exceptions = fake_botocore_exceptions  # type: ignore[attr-defined]

    monkeypatch.setitem(sys.modules, "boto3", fake_boto3)
    monkeypatch.setitem(sys.modules, "botocore", fake_botocore)
    monkeypatch.setitem(sys.modules, "botocore.exceptions", fake_botocore_exceptions)
    return state


S3 = S3Target(bucket="acme-backups", prefix="db_backups/acme/", aws_profile="backup")


def test_normalize_prefix_and_cadence_prefix() -> None:
    assert normalize_prefix("/backups/acme/") == "backups/acme/"
    assert normalize_prefix("  ") == ""
    assert cadence_prefix(S3, Cadence.DAILY) == "db_backups/acme/daily/"


def test_missing_boto3_raises_dependency_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "boto3", None)
    with pytest.raises(DependencyError):
        cloud_storage.create_client(S3)


def test_verify_s3_target_discovers_region_and_writes_marker(bucket: FakeBucket) -> None:
    verified = verify_cloud_target(S3)

    assert verified.aws_region == "us-east-1"
    assert "db_backups/acme/.keep" in bucket.objects
    assert bucket.sessions[0] == {"profile_name": "backup"}
    assert bucket.sessions[-1] == {"profile_name": "backup", "region_name": "us-east-1"}


def test_verify_s3_target_keeps_known_region(bucket: FakeBucket) -> None:
    bucket.location = "eu-central-1"
    target = S3Target(bucket="acme-backups", prefix="p/", aws_region="eu-central-1")

    assert verify_cloud_target(target) == target
    assert len(bucket.sessions) == 1


def test_verify_reports_inaccessible_bucket(bucket: FakeBucket) -> None:
    bucket.head_bucket_error = client_error("403", 403, "HeadBucket")
    with pytest.raises(StorageError, match="access denied"):
        verify_cloud_target(S3)


def test_verify_r2_target_uses_endpoint(bucket: FakeBucket) -> None:
    target = R2Target(
        bucket="acme", prefix="db_backups/acme/", aws_profile="r2", endpoint_url="https://x.r2.example"
    )

    assert verify_cloud_target(target) == target
    assert bucket.clients == [{"endpoint_url": "https://x.r2.example"}]
    assert bucket.sessions == [{"profile_name": "r2", "region_name": "auto"}]


def test_verify_reports_unknown_profile(bucket: FakeBucket) -> None:
    bucket.session_error = FakeBotoCoreError("The config profile (nosuchprofile) could not be found")
    target = S3Target(bucket="acme-backups", prefix="p/", aws_profile="nosuchprofile")

    with pytest.raises(StorageError, match="nosuchprofile"):
        verify_cloud_target(target)


def test_verify_reports_malformed_r2_endpoint(bucket: FakeBucket) -> None:
    bucket.client_init_error = ValueError("Invalid endpoint: not a url")
    target = R2Target(bucket="acme", prefix="p/", aws_profile="r2", endpoint_url="not a url")

    with pytest.raises(StorageError, match="Invalid endpoint"):
        verify_cloud_target(target)


def test_sync_and_expiry_report_unusable_client(tmp_path: Path, bucket: FakeBucket) -> None:
    make_archives(tmp_path, "a.zip")
    bucket.session_error = FakeBotoCoreError("The config profile (backup) could not be found")

    with pytest.raises(StorageError, match="Could not create"):
        sync_directory(S3, tmp_path, "db_backups/acme/daily/", delete_removed=False)
    with pytest.raises(StorageError, match="Could not create"):
        expire_remote_backups(S3, "db_backups/acme/daily/", 60, now=NOW)


def test_s3_object_exists(bucket: FakeBucket) -> None:
    client = cloud_storage.create_client(S3)
    bucket.objects["present.zip"] = NOW
    assert s3_object_exists(client, "acme-backups", "present.zip")
    assert not s3_object_exists(client, "acme-backups", "absent.zip")


def test_list_remote_backups_ignores_other_objects(bucket: FakeBucket) -> None:
    prefix = "db_backups/acme/daily/"
    bucket.objects.update(
        {
            f"{prefix}b.zip": NOW,
            f"{prefix}a.zip": NOW - timedelta(days=1),
            f"{prefix}notes.txt": NOW,
            f"{prefix}nested/c.zip": NOW,
            "db_backups/acme/.keep": NOW,
        }
    )

    keys = [obj.key for obj in list_remote_backups(S3, prefix)]

    assert keys == [f"{prefix}a.zip", f"{prefix}b.zip"]


def make_archives(directory: Path, *names: str) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(b"zip")


def test_sync_uploads_new_and_deletes_removed(tmp_path: Path, bucket: FakeBucket) -> None:
    prefix = "db_backups/acme/daily/"
    make_archives(tmp_path, "a.zip", "b.zip")
    bucket.objects.update({f"{prefix}b.zip": NOW, f"{prefix}c.zip": NOW})

    result = sync_directory(S3, tmp_path, prefix, delete_removed=True)

    assert result.uploaded == [f"{prefix}a.zip"]
    assert result.skipped == [f"{prefix}b.zip"]
    assert result.deleted == [f"{prefix}c.zip"]
    assert sorted(bucket.objects) == [f"{prefix}a.zip", f"{prefix}b.zip"]


def test_upload_only_sync_keeps_remote_archives(tmp_path: Path, bucket: FakeBucket) -> None:
    prefix = "db_backups/acme/daily/"
    make_archives(tmp_path, "a.zip")
    bucket.objects[f"{prefix}c.zip"] = NOW

    result = sync_directory(S3, tmp_path, prefix, delete_removed=False)

    assert result.uploaded == [f"{prefix}a.zip"]
    assert result.deleted == []
    assert f"{prefix}c.zip" in bucket.objects


def test_sync_failure_raises_storage_error(tmp_path: Path, bucket: FakeBucket) -> None:
    prefix = "db_backups/acme/daily/"
    make_archives(tmp_path, "a.zip")
    bucket.objects[f"{prefix}c.zip"] = NOW
    bucket.fail_deletes.add(f"{prefix}c.zip")

    with pytest.raises(StorageError, match="Synchronization"):
        sync_directory(S3, tmp_path, prefix, delete_removed=True)


def test_expire_remote_backups_deletes_only_expired(bucket: FakeBucket) -> None:
    prefix = "db_backups/acme/hourly/"
    bucket.objects.update(
        {
            f"{prefix}old.zip": NOW - timedelta(hours=3),
            f"{prefix}recent.zip": NOW - timedelta(minutes=30),
            "db_backups/acme/daily/other.zip": NOW - timedelta(days=30),
        }
    )

    result = expire_remote_backups(S3, prefix, 60, now=NOW)

    assert result.deleted == [f"{prefix}old.zip"]
    assert f"{prefix}recent.zip" in bucket.objects
    assert "db_backups/acme/daily/other.zip" in bucket.objects


def test_expire_remote_backups_unlimited_retention_keeps_everything(bucket: FakeBucket) -> None:
    prefix = "db_backups/acme/daily/"
    bucket.objects[f"{prefix}ancient.zip"] = NOW - timedelta(days=3650)

    result = expire_remote_backups(S3, prefix, 0, now=NOW)

    assert result.deleted == []
    assert bucket.sessions == []


def test_expire_remote_backups_delete_failures_are_collected(bucket: FakeBucket) -> None:
    prefix = "db_backups/acme/daily/"
    bucket.objects.update(
        {f"{prefix}locked.zip": NOW - timedelta(days=10), f"{prefix}old.zip": NOW - timedelta(days=9)}
    )
    bucket.fail_deletes.add(f"{prefix}locked.zip")

    result = expire_remote_backups(S3, prefix, 24 * 60, now=NOW)

    assert result.failed == [f"{prefix}locked.zip"]
    assert result.deleted == [f"{prefix}old.zip"]
