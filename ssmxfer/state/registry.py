"""
Resource ledger: durable, lock-guarded record of outstanding grants and staged objects

On-disk format (JSON):
  {"version": 1, "entries": [ {RegistryEntry.to_dict()}, ... ]}

Every mutation runs lock → read → mutate → atomic write → unlock. The lock
protects the ledger file only; callers never hold it across an AWS call.
"""
import contextlib
import json
import os
import socket
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from .. import config as _cfg
from ..errors import RegistryError
from ..models import EntryState, RegistryEntry
from ..utils.filelock import FileLockError, locked
from ..utils.logging import vlog, warn

LEDGER_VERSION = 1


def current_owner() -> str:
    """Owner tag for entries created by this process: "<host>:<pid>"."""
    return f"{socket.gethostname()}:{os.getpid()}"


def owner_alive(owner: str) -> bool:
    """
    False only when the owner is provably gone: same host and the pid no longer
    exists. Anything we cannot check is treated as alive.
    """
    host, _, pid_s = owner.rpartition(":")
    if host != socket.gethostname() or not pid_s.isdigit():
        return True
    pid = int(pid_s)
    if pid == os.getpid():
        return True
    if os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ResourceRegistry:
    """JSON ledger at `path` (defaults to the platform state directory)."""

    def __init__(self, path: Optional[Path] = None, lock_timeout: Optional[float] = None):
        self.path = Path(path) if path else _cfg.get_registry_file()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = _cfg.REGISTRY_LOCK_TIMEOUT if lock_timeout is None else lock_timeout

    # ── transactions ───────────────────────────────────────────────────────

    @contextlib.contextmanager
    def _transaction(self, write: bool = True):
        """Yield the ledger as {entry_id: RegistryEntry} while holding the lock."""
        try:
            with locked(self.lock_path, self.lock_timeout):
                entries = self._load()
                yield entries
                if write:
                    self._save(entries)
        except FileLockError as e:
            raise RegistryError(f"cannot lock ledger {self.path}: {e}") from e

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            blob = self.path.read_bytes()
        except OSError as e:
            raise RegistryError(f"cannot read ledger {self.path}: {e}") from e
        try:
            text = blob.decode("utf-8")
            if not text.strip():
                return {}
            data = json.loads(text)
            raw = data["entries"] if isinstance(data, dict) else data
            if not isinstance(raw, list):
                raise ValueError("'entries' is not a list")
            entries = {}
            for item in raw:
                entry = RegistryEntry.from_dict(item)
                entries[entry.entry_id] = entry
            return entries
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self._quarantine(e)
            return {}

    def _quarantine(self, reason: Exception):
        """Move a malformed ledger aside and start an empty one."""
        stamp = datetime.now().strftime("%Y%m%dT%H%M%S")
        aside = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        n = 1
        while aside.exists():
            aside = self.path.with_name(f"{self.path.name}.corrupt-{stamp}-{n}")
            n += 1
        try:
            os.replace(self.path, aside)
        except OSError as e:
            raise RegistryError(
                f"ledger {self.path} is malformed ({reason}) and could not be moved aside: {e}"
            ) from e
        warn(f"Ledger {self.path} was malformed ({reason}); moved it to {aside} "
             f"and started an empty ledger. Resources it tracked may need "
             f"emergency-cleanup.")
        self._save({})

    def _save(self, entries: dict):
        """Write-temp-then-rename so readers never see a torn file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": LEDGER_VERSION,
            "entries": [e.to_dict() for e in sorted(entries.values(), key=lambda e: e.created_at)],
        }
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".registry-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            if os.name != "nt":
                os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise RegistryError(f"cannot write ledger {self.path}: {e}") from e

    # ── mutations ──────────────────────────────────────────────────────────

    def put(self, entry: RegistryEntry) -> RegistryEntry:
        with self._transaction() as entries:
            if entry.entry_id in entries:
                raise RegistryError(f"duplicate ledger entry {entry.entry_id}",
                                    entry_id=entry.entry_id, request_id=entry.request_id)
            entry.updated_at = time.time()
            entries[entry.entry_id] = entry
        vlog(f"  [LEDGER] put {entry.entry_id} ({entry.state.value})")
        return entry

    def update_state(self, entry_id: str, state: EntryState) -> RegistryEntry:
        return self.update(entry_id, state=state)

    def update(self, entry_id: str, state: Optional[EntryState] = None,
               grant=None, staging=None) -> RegistryEntry:
        """Change the state and/or attached resources of an existing entry."""
        with self._transaction() as entries:
            entry = entries.get(entry_id)
            if entry is None:
                raise RegistryError(f"no ledger entry {entry_id}", entry_id=entry_id)
            if state is not None and state is not entry.state:
                if entry.state is EntryState.RELEASED:
                    raise RegistryError(
                        f"ledger entry {entry_id} is released; cannot move to {state.value}",
                        entry_id=entry_id, request_id=entry.request_id)
                entry.state = state
                entry.raw_state = None
            if grant is not None:
                entry.grant = grant
            if staging is not None:
                entry.staging = staging
            entry.updated_at = time.time()
        vlog(f"  [LEDGER] {entry_id} → {entry.state.value}")
        return entry

    def remove(self, entry_id: str) -> bool:
        """Drop an entry. Returns False when it was already gone."""
        with self._transaction() as entries:
            found = entries.pop(entry_id, None) is not None
        if found:
            vlog(f"  [LEDGER] removed {entry_id}")
        return found

    # ── queries ────────────────────────────────────────────────────────────

    def get(self, entry_id: str) -> Optional[RegistryEntry]:
        with self._transaction(write=False) as entries:
            return entries.get(entry_id)

    def list_all(self, region: Optional[str] = None) -> list:
        with self._transaction(write=False) as entries:
            items = list(entries.values())
        if region:
            items = [e for e in items if e.region == region]
        return sorted(items, key=lambda e: e.created_at)

    def list_active(self, region: Optional[str] = None) -> list:
        return [e for e in self.list_all(region) if e.state is EntryState.ACTIVE]
