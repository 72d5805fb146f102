"""
Cleanup operations (routine and emergency) driven by the resource ledger
"""
import time
from dataclasses import dataclass, field
from typing import Optional

from .. import config as _cfg
from ..core.aws_clients import AWSSession
from ..errors import SsmxferError, StagingError
from ..models import EntryState, GrantState, RegistryEntry
from ..state.registry import ResourceRegistry, owner_alive
from ..utils.logging import log, warn
from .credentials import EphemeralCredentialManager
from .staging import StagingStore


@dataclass
class CleanupReport:
    removed: list = field(default_factory=list)   # entry ids
    failed: list = field(default_factory=list)    # (entry id, error message)
    skipped: list = field(default_factory=list)   # entry ids left alone
    aborted_uploads: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


def release_reason(entry: RegistryEntry, now: Optional[float] = None) -> Optional[str]:
    """Why routine cleanup may release this entry, or None to leave it alone."""
    now = time.time() if now is None else now
    if entry.state is EntryState.RELEASED:
        return "released"
    # A Requested grant was never issued; its expiry still moves at activation
    if entry.grant is not None and entry.grant.state is not GrantState.REQUESTED \
            and entry.grant.expired(now):
        return "grant expired"
    if now - entry.created_at > _cfg.STALE_ENTRY_AGE:
        return "stale"
    if not owner_alive(entry.owner):
        return f"owner {entry.owner} is gone"
    return None


def release_entry(entry: RegistryEntry, registry: ResourceRegistry,
                  staging: StagingStore, credentials: EphemeralCredentialManager):
    """Delete the object, revoke the grant, then drop the ledger entry."""
    if entry.staging is not None:
        staging.unstage(entry.staging)
    if entry.grant is not None:
        credentials.revoke(entry.grant)
    if entry.state is not EntryState.RELEASED:
        registry.update_state(entry.entry_id, EntryState.RELEASED)
    registry.remove(entry.entry_id)


def _release_all(entries: list, session: AWSSession, registry: ResourceRegistry,
                 report: CleanupReport, dry_run: bool, reasons: dict):
    staging = StagingStore(session)
    credentials = EphemeralCredentialManager(session)
    for entry in entries:
        why = reasons.get(entry.entry_id, "")
        if dry_run:
            log(f"  [CLEANUP-DRY] {entry.entry_id} ({why}) request {entry.request_id}")
            continue
        try:
            release_entry(entry, registry, staging, credentials)
            report.removed.append(entry.entry_id)
            log(f"  [CLEANUP ✓] {entry.entry_id} ({why})")
        except SsmxferError as e:
            report.failed.append((entry.entry_id, str(e)))
            warn(f"  could not release {entry.entry_id}: {e}")


def _sweep(session: AWSSession, report: CleanupReport, older_than: Optional[float],
           dry_run: bool):
    if dry_run:
        return
    try:
        report.aborted_uploads = StagingStore(session).sweep_multipart(older_than=older_than)
    except StagingError as e:
        warn(f"multipart sweep failed: {e}")


def cleanup(session: AWSSession, registry: Optional[ResourceRegistry] = None,
            dry_run: bool = False) -> CleanupReport:
    """
    Release ledger entries of this region that are finished, expired, stale
    or orphaned by a dead process on this host, then abort abandoned multipart
    uploads. Entries owned by live transfers are skipped.
    """
    registry = registry or ResourceRegistry()
    report = CleanupReport()
    now = time.time()
    todo, reasons = [], {}
    for entry in registry.list_all(session.region):
        why = release_reason(entry, now)
        if why is None:
            report.skipped.append(entry.entry_id)
        else:
            todo.append(entry)
            reasons[entry.entry_id] = why

    log(f"[CLEANUP] {session.region}: {len(todo)} entr{'y' if len(todo) == 1 else 'ies'} "
        f"to release, {len(report.skipped)} in use")
    _release_all(todo, session, registry, report, dry_run, reasons)
    _sweep(session, report, None, dry_run)
    return report


def emergency_cleanup(session: AWSSession, registry: Optional[ResourceRegistry] = None,
                      dry_run: bool = False) -> CleanupReport:
    """
    Release every entry of this region regardless of owner, state or age,
    and abort every multipart upload under the staging prefix. Entries whose
    release fails stay in the ledger.
    """
    registry = registry or ResourceRegistry()
    report = CleanupReport()
    entries = registry.list_all(session.region)
    log(f"[EMERGENCY-CLEANUP] {session.region}: releasing {len(entries)} entr"
        f"{'y' if len(entries) == 1 else 'ies'}")
    reasons = {e.entry_id: "emergency" for e in entries}
    _release_all(entries, session, registry, report, dry_run, reasons)
    _sweep(session, report, 0, dry_run)
    return report
