"""
Error taxonomy for ssmxfer

Every failure surfaced to a caller is an SsmxferError carrying whatever
identifiers are known at the point of failure (request, target, ledger entry),
so an operator can inspect or force-clean the entry later.
"""
from typing import Optional


class SsmxferError(Exception):
    """Base class for all ssmxfer errors."""

    kind = "error"

    def __init__(self, message: str, *, request_id: Optional[str] = None,
                 target: Optional[str] = None, entry_id: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.request_id = request_id
        self.target = target
        self.entry_id = entry_id

    def with_context(self, *, request_id: Optional[str] = None,
                     target: Optional[str] = None,
                     entry_id: Optional[str] = None) -> "SsmxferError":
        """Fill in identifiers that were unknown where the error was raised."""
        if request_id and not self.request_id:
            self.request_id = request_id
        if target and not self.target:
            self.target = target
        if entry_id and not self.entry_id:
            self.entry_id = entry_id
        return self

    def __str__(self) -> str:
        parts = [self.message]
        ctx = []
        if self.target:
            ctx.append(f"target={self.target}")
        if self.request_id:
            ctx.append(f"request={self.request_id}")
        if self.entry_id:
            ctx.append(f"ledger-entry={self.entry_id}")
        if ctx:
            parts.append(f"[{', '.join(ctx)}]")
        return " ".join(parts)


class ValidationError(SsmxferError):
    """Bad request shape: negative size, relative remote path, bad region …"""
    kind = "validation"


class CredentialError(SsmxferError):
    """Grant issue or revoke failed."""
    kind = "credential"


class StagingError(SsmxferError):
    """Object-store failure."""
    kind = "staging"


class ExecutionError(SsmxferError):
    """Transport-level command failure (send, poll, undeliverable, cancelled)."""
    kind = "execution"


class RemoteExitError(ExecutionError):
    """The command ran and exited non-zero."""
    kind = "remote-exit"

    def __init__(self, message: str, *, exit_code: int, stdout: str = "",
                 stderr: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class TimeoutError(SsmxferError):
    """An operation exceeded its deadline. Never retried automatically."""
    kind = "timeout"


class RegistryError(SsmxferError):
    """Ledger read/write/lock failure."""
    kind = "registry"


class CancelledError(SsmxferError):
    """The operator cancelled an interactive selection."""
    kind = "cancelled"


class PartialFailure(SsmxferError):
    """Aggregate of a multi-target operation where at least one target failed."""
    kind = "partial"

    def __init__(self, message: str, outcomes: list):
        super().__init__(message)
        self.outcomes = outcomes

    @property
    def failed(self) -> list:
        return [o for o in self.outcomes if not o.ok]

    @property
    def succeeded(self) -> list:
        return [o for o in self.outcomes if o.ok]


# Tags a staged or direct transfer can fail with.
TRANSFER_ERRORS = (CredentialError, StagingError, ExecutionError, TimeoutError,
                   RegistryError, ValidationError)
