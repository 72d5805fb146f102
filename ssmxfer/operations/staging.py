"""
Staging store: per-region bucket holding objects for staged transfers
"""
import os
import re
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .. import config as _cfg
from ..core.aws_clients import AWSSession
from ..errors import StagingError
from ..models import Direction, StagingObject
from ..utils.file_utils import human_size, iter_chunks
from ..utils.logging import log, vlog, warn
from ..utils.retry import retried

LIFECYCLE_RULE_ID = "ssmxfer-staging-expiry"
_MISSING_BUCKET = {"404", "NoSuchBucket", "NotFound"}
_MISSING_OBJECT = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def _code(e: Exception) -> str:
    if isinstance(e, ClientError):
        return str(e.response.get("Error", {}).get("Code", ""))
    return ""


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class StagingStore:
    """All objects live under STAGING_KEY_PREFIX in `<prefix>-<account>-<region>`."""

    def __init__(self, session: AWSSession):
        self.session = session
        self._ready: set = set()

    @property
    def s3(self):
        return self.session.s3

    def bucket_name(self) -> str:
        name = f"{_cfg.STAGING_BUCKET_PREFIX}-{self.session.account_id()}-{self.session.region}"
        return name.lower()[:63].rstrip("-")

    # ══════════════════════════════════════════════════════════════════════
    #  BUCKET
    # ══════════════════════════════════════════════════════════════════════

    def ensure_bucket(self) -> str:
        """
        Make sure the region's staging bucket exists with its expiry rule, then
        sweep abandoned multipart uploads. Idempotent; cached per process.
        """
        bucket = self.bucket_name()
        if bucket in self._ready:
            return bucket
        created = False
        try:
            self.s3.head_bucket(Bucket=bucket, ExpectedBucketOwner=self.session.account_id())
        except ClientError as e:
            if _code(e) in _MISSING_BUCKET:
                self._create_bucket(bucket)
                created = True
            elif _code(e) in ("403", "Forbidden", "AccessDenied"):
                raise StagingError(
                    f"staging bucket {bucket} exists but is not accessible by this account",
                    cause=e) from e
            else:
                raise StagingError(f"cannot check staging bucket {bucket}: {e}", cause=e) from e
        except BotoCoreError as e:
            raise StagingError(f"cannot check staging bucket {bucket}: {e}", cause=e) from e

        try:
            self._apply_lifecycle(bucket)
        except (ClientError, BotoCoreError) as e:
            if created:
                # An unmanaged bucket would never expire its objects; don't keep it.
                try:
                    self.s3.delete_bucket(Bucket=bucket)
                except (ClientError, BotoCoreError) as de:
                    warn(f"could not delete new bucket {bucket} after lifecycle failure: {de}")
            raise StagingError(f"cannot apply lifecycle rule to {bucket}: {e}", cause=e) from e

        self.sweep_multipart(bucket)
        self._ready.add(bucket)
        return bucket

    def _create_bucket(self, bucket: str):
        region = self.session.region
        kwargs = {"Bucket": bucket}
        if region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        log(f"  [STAGING] creating bucket {bucket} in {region}")
        try:
            self.s3.create_bucket(**kwargs)
        except ClientError as e:
            if _code(e) != "BucketAlreadyOwnedByYou":
                raise StagingError(f"cannot create staging bucket {bucket}: {e}", cause=e) from e
        except BotoCoreError as e:
            raise StagingError(f"cannot create staging bucket {bucket}: {e}", cause=e) from e
        try:
            self.s3.put_public_access_block(
                Bucket=bucket,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
        except (ClientError, BotoCoreError) as e:
            warn(f"could not block public access on {bucket}: {e}")

    def lifecycle_rule(self) -> dict:
        return {
            "ID": LIFECYCLE_RULE_ID,
            "Status": "Enabled",
            "Filter": {"Prefix": _cfg.STAGING_KEY_PREFIX},
            "Expiration": {"Days": _cfg.STAGING_EXPIRY_DAYS},
            "AbortIncompleteMultipartUpload": {"DaysAfterInitiation": _cfg.MULTIPART_ABORT_DAYS},
        }

    def _apply_lifecycle(self, bucket: str):
        """Merge our rule into whatever rules the bucket already has."""
        try:
            rules = self.s3.get_bucket_lifecycle_configuration(Bucket=bucket).get("Rules", [])
        except ClientError as e:
            if _code(e) != "NoSuchLifecycleConfiguration":
                raise
            rules = []
        ours = self.lifecycle_rule()
        if any(r == ours for r in rules):
            return
        merged = [r for r in rules if r.get("ID") != LIFECYCLE_RULE_ID] + [ours]
        self.s3.put_bucket_lifecycle_configuration(
            Bucket=bucket, LifecycleConfiguration={"Rules": merged})
        vlog(f"  [STAGING] lifecycle rule {LIFECYCLE_RULE_ID} applied to {bucket}")

    # ══════════════════════════════════════════════════════════════════════
    #  OBJECTS
    # ══════════════════════════════════════════════════════════════════════

    def preallocate(self, request_id: str, filename: str, size: int,
                    direction: Direction) -> StagingObject:
        """Decide bucket/key for a transfer. Nothing is created in S3."""
        base = _SAFE_NAME.sub("_", os.path.basename(filename)).strip("._") or "payload"
        key = f"{_cfg.STAGING_KEY_PREFIX}{direction.value}s/{request_id}/{base}"
        return StagingObject(bucket=self.bucket_name(), key=key, size=size,
                             request_id=request_id, region=self.session.region)

    def stage(self, obj: StagingObject, local_path: Path,
              ttl_hint: Optional[int] = None) -> StagingObject:
        """Upload a local file to obj; a failed multipart upload is aborted."""
        size = os.path.getsize(local_path)
        expires = time.time() + (ttl_hint or _cfg.STAGING_EXPIRY_DAYS * 86400)
        meta = {"ssmxfer-request": obj.request_id, "ssmxfer-expires": _iso(expires)}
        log(f"  [STAGING] uploading {human_size(size)} → {obj.uri}")
        try:
            if size < _cfg.MULTIPART_THRESHOLD:
                with open(local_path, "rb") as f:
                    self.s3.put_object(Bucket=obj.bucket, Key=obj.key, Body=f, Metadata=meta)
            else:
                self._multipart_upload(obj, local_path, meta)
        except (ClientError, BotoCoreError) as e:
            raise StagingError(f"upload to {obj.uri} failed: {e}",
                               request_id=obj.request_id, cause=e) from e
        obj.size = size
        obj.created_at = time.time()
        return obj

    def _multipart_upload(self, obj: StagingObject, local_path: Path, meta: dict):
        upload_id = self.s3.create_multipart_upload(
            Bucket=obj.bucket, Key=obj.key, Metadata=meta)["UploadId"]
        try:
            parts = []
            for n, chunk in enumerate(iter_chunks(local_path, _cfg.MULTIPART_CHUNK), 1):
                resp = self.s3.upload_part(Bucket=obj.bucket, Key=obj.key, UploadId=upload_id,
                                           PartNumber=n, Body=chunk)
                parts.append({"ETag": resp["ETag"], "PartNumber": n})
                vlog(f"  [STAGING] part {n} uploaded")
            self.s3.complete_multipart_upload(
                Bucket=obj.bucket, Key=obj.key, UploadId=upload_id,
                MultipartUpload={"Parts": parts})
        except BaseException:
            self._abort(obj.bucket, obj.key, upload_id)
            raise

    def _abort(self, bucket: str, key: str, upload_id: str):
        try:
            self.s3.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
            vlog(f"  [STAGING] aborted multipart upload {upload_id}")
        except (ClientError, BotoCoreError) as e:
            if _code(e) != "NoSuchUpload":
                warn(f"could not abort multipart upload {upload_id} on {bucket}/{key}: {e}")

    def fetch(self, obj: StagingObject, local_path: Path) -> int:
        """Download obj to local_path (written via a temp file in the same directory)."""
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(local_path.parent), prefix=f".{local_path.name}.",
                                   suffix=".part")
        try:
            written = 0
            with os.fdopen(fd, "wb") as f:
                resp = self.s3.get_object(Bucket=obj.bucket, Key=obj.key)
                for chunk in iter(lambda: resp["Body"].read(1024 * 1024), b""):
                    f.write(chunk)
                    written += len(chunk)
            expected = resp.get("ContentLength")
            if expected is not None and written != expected:
                raise StagingError(f"short read from {obj.uri}: {written}/{expected} bytes",
                                   request_id=obj.request_id)
            os.replace(tmp, local_path)
            return written
        except (ClientError, BotoCoreError) as e:
            raise StagingError(f"download of {obj.uri} failed: {e}",
                               request_id=obj.request_id, cause=e) from e
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    def unstage(self, obj: StagingObject):
        """Delete obj; an object or bucket that is already gone counts as deleted."""
        try:
            self._delete(obj.bucket, obj.key)
        except (ClientError, BotoCoreError) as e:
            raise StagingError(f"cannot delete {obj.uri}: {e}",
                               request_id=obj.request_id, cause=e) from e
        vlog(f"  [STAGING] deleted {obj.uri}")

    @retried
    def _delete(self, bucket: str, key: str):
        try:
            self.s3.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if _code(e) not in _MISSING_OBJECT:
                raise

    # ══════════════════════════════════════════════════════════════════════
    #  MAINTENANCE
    # ══════════════════════════════════════════════════════════════════════

    def sweep_multipart(self, bucket: Optional[str] = None,
                        older_than: Optional[float] = None) -> int:
        """
        Abort multipart uploads under our prefix started more than older_than
        seconds ago (default: twice the transfer timeout). Returns the count.
        """
        bucket = bucket or self.bucket_name()
        age = 2 * _cfg.TRANSFER_TIMEOUT if older_than is None else older_than
        cutoff = time.time() - age
        aborted = 0
        kwargs = {"Bucket": bucket, "Prefix": _cfg.STAGING_KEY_PREFIX}
        try:
            while True:
                resp = self.s3.list_multipart_uploads(**kwargs)
                for up in resp.get("Uploads", []):
                    initiated = up.get("Initiated")
                    if initiated is not None and initiated.timestamp() > cutoff:
                        continue
                    self._abort(bucket, up["Key"], up["UploadId"])
                    aborted += 1
                if not resp.get("IsTruncated"):
                    break
                kwargs["KeyMarker"] = resp.get("NextKeyMarker", "")
                kwargs["UploadIdMarker"] = resp.get("NextUploadIdMarker", "")
        except ClientError as e:
            if _code(e) == "NoSuchBucket":
                return aborted
            raise StagingError(f"cannot list multipart uploads in {bucket}: {e}", cause=e) from e
        except BotoCoreError as e:
            raise StagingError(f"cannot list multipart uploads in {bucket}: {e}", cause=e) from e
        if aborted:
            log(f"  [STAGING] aborted {aborted} abandoned multipart upload(s) in {bucket}")
        return aborted
