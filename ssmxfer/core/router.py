"""
Transfer router: direct-channel vs staged transfers and the lifecycle of their resources

Small files (below DIRECT_THRESHOLD) travel inside the command channel as
base64 chunks and never touch the ledger. Larger files go through the staging
bucket under an ephemeral grant, and the ledger records the grant and object
before anything is created in AWS:

  upload:   put(Pending) → stage → activate grant → Active → pull
  download: put(Pending) → activate grant → Active → push → fetch
  then:     unstage → revoke → Released → remove

The grant is issued as late as possible and the target-side copy never runs
past its expiry.

If any step after put() fails, the router rolls back what it can but leaves
the ledger entry Active; cleanup / emergency-cleanup is the authority on when
it goes away.
"""
import base64
import hashlib
import math
import os
import posixpath
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from .. import config as _cfg
from ..errors import (CredentialError, ExecutionError, RegistryError, RemoteExitError,
                      SsmxferError, ValidationError)
from ..models import (Direction, EntryState, Instance, MultiResult, RegistryEntry,
                      TargetOutcome, TransferRequest, TransferResult, new_id)
from ..operations import remote
from ..operations.credentials import EphemeralCredentialManager, GrantScope
from ..operations.staging import StagingStore
from ..state.registry import ResourceRegistry, current_owner
from ..utils.file_utils import check_remote_path, human_size, iter_chunks, md5_local
from ..utils.logging import log, vlog, warn
from .aws_clients import AWSSession
from .catalog import InstanceCatalog
from .executor import CommandExecutor


def grant_ttl() -> int:
    """Long enough for one transfer plus propagation, never above GRANT_TTL_MAX."""
    wanted = int(_cfg.TRANSFER_TIMEOUT + _cfg.IAM_PROPAGATION_DELAY) + 300
    return max(_cfg.GRANT_TTL_MIN, min(_cfg.GRANT_TTL_MAX, wanted))


def remote_budget(grant) -> float:
    """Target-side copy timeout: TRANSFER_TIMEOUT, cut short by the grant's expiry."""
    left = grant.expires_at - time.time()
    if left <= 0:
        raise CredentialError(f"grant {grant.policy_name} expired before the copy started",
                              request_id=grant.request_id)
    return min(float(_cfg.TRANSFER_TIMEOUT), left)


class TransferRouter:

    def __init__(self, session: AWSSession, registry: Optional[ResourceRegistry] = None):
        self.session = session
        self.registry = registry or ResourceRegistry()
        self.catalog = InstanceCatalog(session)
        self.executor = CommandExecutor(session)
        self.staging = StagingStore(session)
        self.credentials = EphemeralCredentialManager(session)

    # ══════════════════════════════════════════════════════════════════════
    #  ENTRY POINTS
    # ══════════════════════════════════════════════════════════════════════

    def _target(self, identifier: str) -> Instance:
        instance = self.catalog.require_online(self.catalog.resolve(identifier))
        if instance.is_windows:
            raise ValidationError(f"{instance.label}: file transfer supports Linux targets only",
                                  target=instance.instance_id)
        return instance

    def upload(self, target: str, local_path, remote_path: str) -> TransferResult:
        local_path = Path(local_path)
        if not local_path.is_file():
            raise ValidationError(f"local file not found: {local_path}", target=target)
        instance = self._target(target)
        request = TransferRequest(
            source=str(local_path),
            destination=remote_path,
            target=instance.instance_id,
            direction=Direction.UPLOAD,
            size=local_path.stat().st_size,
        )
        return self.transfer(request, instance)

    def download(self, target: str, remote_path: str, local_path) -> TransferResult:
        instance = self._target(target)
        remote_path = check_remote_path(remote_path)
        request = TransferRequest(
            source=remote_path,
            destination=str(local_path),
            target=instance.instance_id,
            direction=Direction.DOWNLOAD,
            size=self.remote_size(instance.instance_id, remote_path),
        )
        return self.transfer(request, instance)

    def transfer(self, request: TransferRequest,
                 instance: Optional[Instance] = None) -> TransferResult:
        """Route one request. Errors carry the request id, target and ledger entry."""
        try:
            if request.size < 0:
                raise ValidationError(f"negative transfer size: {request.size}")
            check_remote_path(request.remote_path)
            if request.direction is Direction.UPLOAD and not os.path.isfile(request.source):
                raise ValidationError(f"local file not found: {request.source}")
            if instance is None:
                instance = self._target(request.target)

            started = time.monotonic()
            if request.size < _cfg.DIRECT_THRESHOLD:
                log(f"[{request.direction.value.upper()}] {human_size(request.size)} "
                    f"via command channel ({instance.label})")
                if request.direction is Direction.UPLOAD:
                    self._direct_upload(request)
                else:
                    self._direct_download(request)
                result = TransferResult(request.request_id, request.target, request.direction,
                                        "direct", request.size)
            else:
                log(f"[{request.direction.value.upper()}] {human_size(request.size)} "
                    f"via staging bucket ({instance.label})")
                result = self._staged(request, instance)
            result.elapsed = time.monotonic() - started
            log(f"[{request.direction.value.upper()} ✓] {request.source} → {request.destination} "
                f"({result.elapsed:.1f}s)")
            return result
        except SsmxferError as e:
            raise e.with_context(request_id=request.request_id, target=request.target)

    def transfer_many(self, targets: list, direction: Direction, source: str,
                      destination: str, concurrency: Optional[int] = None) -> MultiResult:
        """
        Same transfer against several targets through a bounded pool.
        Downloads land in <destination>/<target>/<basename of source>.
        """
        workers = max(1, min(concurrency or _cfg.MAX_WORKERS, _cfg.MAX_WORKERS_CAP,
                             len(targets) or 1))
        # Build shared clients up front, not from worker threads.
        for service in ("ec2", "ssm", "iam", "s3"):
            self.session.client(service)

        def one(target):
            try:
                if direction is Direction.UPLOAD:
                    res = self.upload(target, source, destination)
                else:
                    local = Path(destination) / target / posixpath.basename(source)
                    res = self.download(target, source, local)
                return TargetOutcome(target, result=res)
            except Exception as e:
                return TargetOutcome(target, error=e)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(one, targets))
        return MultiResult(outcomes)

    def remote_size(self, instance_id: str, path: str) -> int:
        try:
            res = self.executor.run(instance_id, remote.size_probe(path), _cfg.COMMAND_TIMEOUT)
        except RemoteExitError as e:
            if e.exit_code == remote.EXIT_NOT_FOUND:
                raise RemoteExitError(f"remote file not found: {path}", exit_code=e.exit_code,
                                      stdout=e.stdout, stderr=e.stderr,
                                      target=instance_id) from e
            raise
        text = res.stdout.strip()
        if not text.isdigit():
            raise ExecutionError(f"unexpected size probe output for {path}: {text!r}",
                                 target=instance_id)
        return int(text)

    # ══════════════════════════════════════════════════════════════════════
    #  DIRECT PATH
    # ══════════════════════════════════════════════════════════════════════

    def _direct_upload(self, request: TransferRequest):
        iid = request.target
        dest = check_remote_path(request.destination)
        tmp = remote.part_path(dest, request.request_id)
        local = Path(request.source)

        self.executor.run(iid, remote.upload_begin(dest, tmp), _cfg.COMMAND_TIMEOUT)
        try:
            chunks = max(1, math.ceil(request.size / _cfg.DIRECT_UPLOAD_CHUNK))
            for n, chunk in enumerate(iter_chunks(local, _cfg.DIRECT_UPLOAD_CHUNK), 1):
                b64 = base64.b64encode(chunk).decode("ascii")
                self.executor.run(iid, remote.upload_chunk(tmp, b64), _cfg.COMMAND_TIMEOUT)
                vlog(f"  [DIRECT] chunk {n}/{chunks}")
            self.executor.run(iid, remote.upload_finalize(tmp, dest, md5_local(local)),
                              _cfg.COMMAND_TIMEOUT)
        except RemoteExitError as e:
            if e.exit_code == remote.EXIT_INTEGRITY:
                raise RemoteExitError(f"checksum mismatch after upload to {dest}",
                                      exit_code=e.exit_code, stdout=e.stdout,
                                      stderr=e.stderr) from e
            self._discard_remote(iid, tmp)
            raise
        except (SsmxferError, KeyboardInterrupt):
            self._discard_remote(iid, tmp)
            raise

    def _discard_remote(self, iid: str, tmp: str):
        try:
            self.executor.run(iid, remote.discard(tmp), _cfg.COMMAND_TIMEOUT)
        except SsmxferError as e:
            warn(f"could not remove partial file {tmp} on {iid}: {e}")

    def _direct_download(self, request: TransferRequest):
        iid = request.target
        src = request.source
        dest = Path(request.destination)
        dest.parent.mkdir(parents=True, exist_ok=True)
        chunk = _cfg.DIRECT_DOWNLOAD_CHUNK
        count = math.ceil(request.size / chunk)

        fd, tmp = tempfile.mkstemp(dir=str(dest.parent), prefix=f".{dest.name}.", suffix=".part")
        try:
            h = hashlib.md5()
            written = 0
            with os.fdopen(fd, "wb") as f:
                for i in range(count):
                    out = self.executor.run(iid, remote.download_chunk(src, chunk, i),
                                            _cfg.COMMAND_TIMEOUT).stdout.strip()
                    try:
                        data = base64.b64decode(out, validate=True)
                    except ValueError as e:
                        raise ExecutionError(f"corrupt chunk {i} from {src}: {e}") from e
                    f.write(data)
                    h.update(data)
                    written += len(data)
                    vlog(f"  [DIRECT] chunk {i + 1}/{count}")
            if written != request.size:
                raise ExecutionError(
                    f"{src} changed during download ({written} of {request.size} bytes)")
            remote_md5 = self.executor.run(iid, remote.remote_md5(src),
                                           _cfg.COMMAND_TIMEOUT).stdout.strip().split()
            if not remote_md5 or remote_md5[0] != h.hexdigest():
                raise ExecutionError(f"checksum mismatch downloading {src}")
            os.replace(tmp, dest)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    # ══════════════════════════════════════════════════════════════════════
    #  STAGED PATH
    # ══════════════════════════════════════════════════════════════════════

    def _staged(self, request: TransferRequest, instance: Instance) -> TransferResult:
        rid = request.request_id
        iid = instance.instance_id
        region = self.session.region

        # Nothing below creates a tracked resource yet.
        role = self.credentials.role_for_instance(instance)
        self.staging.ensure_bucket()
        ttl = grant_ttl()
        name = posixpath.basename(request.source) if request.direction is Direction.DOWNLOAD \
            else os.path.basename(request.source)
        obj = self.staging.preallocate(rid, name, request.size, request.direction)
        grant = self.credentials.plan(GrantScope.for_object(obj, request.direction), ttl, rid, role)

        entry = RegistryEntry(
            entry_id=new_id(),
            request_id=rid,
            region=region,
            owner=current_owner(),
            state=EntryState.PENDING,
            instance_id=iid,
            direction=request.direction.value,
            grant=grant,
            staging=obj,
        )
        self.registry.put(entry)

        try:
            if request.direction is Direction.UPLOAD:
                # The grant clock starts only once the object is in the bucket.
                self.staging.stage(obj, Path(request.source), ttl_hint=ttl)
                self._activate(entry, grant)
                dest = check_remote_path(request.destination)
                self.executor.run(
                    iid,
                    remote.staged_pull(obj.uri, remote.part_path(dest, rid), dest, region,
                                       request.size),
                    remote_budget(grant), comment=f"ssmxfer pull {rid}")
            else:
                self._activate(entry, grant)
                self.executor.run(
                    iid, remote.staged_push(request.source, obj.uri, region),
                    remote_budget(grant), comment=f"ssmxfer push {rid}")
                self.staging.fetch(obj, Path(request.destination))
        except BaseException as exc:
            self._rollback(entry, grant, obj)
            if isinstance(exc, SsmxferError):
                exc.with_context(request_id=rid, target=iid, entry_id=entry.entry_id)
            raise

        result = TransferResult(rid, iid, request.direction, "staged", request.size,
                                entry_id=entry.entry_id)
        if not self._release(entry, grant, obj):
            result.cleanup_pending = True
        else:
            result.entry_id = None
        return result

    def _activate(self, entry: RegistryEntry, grant):
        self.credentials.activate(grant)
        self.registry.update(entry.entry_id, state=EntryState.ACTIVE, grant=grant)

    def _rollback(self, entry: RegistryEntry, grant, obj):
        """Best effort. The ledger entry is left Active whatever happens here."""
        warn(f"transfer {entry.request_id} failed; rolling back "
             f"(ledger entry {entry.entry_id} kept until cleanup)")
        try:
            self.staging.unstage(obj)
        except Exception as e:
            warn(f"  rollback: could not delete {obj.uri}: {e}")
        try:
            self.credentials.revoke(grant)
        except Exception as e:
            warn(f"  rollback: could not revoke {grant.policy_name}: {e}")
        try:
            self.registry.update_state(entry.entry_id, EntryState.ACTIVE)
        except RegistryError as e:
            warn(f"  rollback: could not mark ledger entry {entry.entry_id} active: {e}")

    def _release(self, entry: RegistryEntry, grant, obj) -> bool:
        """Delete object, revoke grant, then Released → removed. False if any step fails."""
        try:
            self.staging.unstage(obj)
            self.credentials.revoke(grant)
            self.registry.update_state(entry.entry_id, EntryState.RELEASED)
            self.registry.remove(entry.entry_id)
        except SsmxferError as e:
            warn(f"transfer {entry.request_id} completed but releasing its resources failed: "
                 f"{e}. Run `ssmxfer cleanup --region {entry.region}`.")
            return False
        vlog(f"  [LEDGER] released {entry.entry_id}")
        return True
