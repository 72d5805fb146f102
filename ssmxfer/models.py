"""
Data model: instances, transfer requests, grants, staging objects, ledger entries
"""
import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from .errors import CredentialError, PartialFailure


def new_id() -> str:
    return uuid.uuid4().hex


def _lenient_state(enum_cls, value, default, fallback):
    """Map a stored state to `enum_cls`; values written by a newer release fall
    back to `fallback` and the stored string is returned alongside."""
    if value is None:
        return default, None
    try:
        return enum_cls(value), None
    except ValueError:
        return fallback, str(value)


# ══════════════════════════════════════════════════════════════════════════════
#  INSTANCES
# ══════════════════════════════════════════════════════════════════════════════

class ReachState(enum.Enum):
    ONLINE = "Online"
    CONNECTION_LOST = "ConnectionLost"
    NO_AGENT = "NoAgent"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Reachability:
    """Agent reachability; `raw` keeps whatever the broker actually reported."""
    state: ReachState
    raw: Optional[str] = None

    @classmethod
    def from_ping_status(cls, raw: Optional[str]) -> "Reachability":
        if raw is None or raw == "":
            return cls(ReachState.NO_AGENT, raw)
        if raw == "Online":
            return cls(ReachState.ONLINE, raw)
        if raw == "ConnectionLost":
            return cls(ReachState.CONNECTION_LOST, raw)
        return cls(ReachState.UNKNOWN, raw)

    @property
    def online(self) -> bool:
        return self.state is ReachState.ONLINE

    def __str__(self) -> str:
        if self.state is ReachState.UNKNOWN:
            return f"Unknown({self.raw})"
        return self.state.value


@dataclass(frozen=True)
class Instance:
    instance_id: str
    name: str = ""
    reachability: Reachability = Reachability(ReachState.NO_AGENT)
    platform: str = ""
    state: str = ""
    private_ip: str = ""
    public_ip: str = ""
    iam_profile_arn: str = ""
    agent_version: str = ""
    tags: dict = field(default_factory=dict)

    @property
    def is_windows(self) -> bool:
        return self.platform.lower().startswith("windows")

    @property
    def label(self) -> str:
        return f"{self.name} ({self.instance_id})" if self.name else self.instance_id


# ══════════════════════════════════════════════════════════════════════════════
#  TRANSFERS
# ══════════════════════════════════════════════════════════════════════════════

class Direction(enum.Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass(frozen=True)
class TransferRequest:
    """
    One file movement. For uploads `source` is local and `destination` remote;
    for downloads it is the other way round. `size` is the payload in bytes
    (for downloads, the remote size as probed before routing).
    """
    source: str
    destination: str
    target: str
    direction: Direction
    size: int
    request_id: str = field(default_factory=new_id)

    @property
    def remote_path(self) -> str:
        return self.destination if self.direction is Direction.UPLOAD else self.source

    @property
    def local_path(self) -> str:
        return self.source if self.direction is Direction.UPLOAD else self.destination


@dataclass
class TransferResult:
    request_id: str
    target: str
    direction: Direction
    method: str  # "direct" | "staged"
    size: int
    elapsed: float = 0.0
    # True when the transfer succeeded but releasing its resources did not
    cleanup_pending: bool = False
    entry_id: Optional[str] = None


# ══════════════════════════════════════════════════════════════════════════════
#  GRANTS & STAGING OBJECTS
# ══════════════════════════════════════════════════════════════════════════════

class GrantState(enum.Enum):
    REQUESTED = "requested"
    ACTIVE = "active"
    REVOKED = "revoked"


_GRANT_TRANSITIONS = {
    GrantState.REQUESTED: {GrantState.ACTIVE, GrantState.REVOKED},
    GrantState.ACTIVE: {GrantState.REVOKED},
    GrantState.REVOKED: set(),
}


@dataclass
class EphemeralGrant:
    grant_id: str
    request_id: str
    policy_name: str
    policy_arn: str
    role_name: str
    resource: str
    actions: list
    owner: str
    created_at: float
    expires_at: float
    state: GrantState = GrantState.REQUESTED
    # state string from a newer release, written back until this one moves it
    raw_state: Optional[str] = field(default=None, repr=False)

    def transition(self, new_state: GrantState):
        if new_state not in _GRANT_TRANSITIONS[self.state]:
            raise CredentialError(
                f"grant {self.grant_id}: illegal transition "
                f"{self.state.value} → {new_state.value}",
                request_id=self.request_id,
            )
        self.state = new_state
        self.raw_state = None

    def expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "grant_id": self.grant_id,
            "request_id": self.request_id,
            "policy_name": self.policy_name,
            "policy_arn": self.policy_arn,
            "role_name": self.role_name,
            "resource": self.resource,
            "actions": list(self.actions),
            "owner": self.owner,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "state": self.raw_state or self.state.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "EphemeralGrant":
        state, raw = _lenient_state(GrantState, d.get("state"),
                                    GrantState.REQUESTED, GrantState.ACTIVE)
        return cls(
            grant_id=str(d["grant_id"]),
            request_id=str(d.get("request_id", "")),
            policy_name=str(d.get("policy_name", "")),
            policy_arn=str(d.get("policy_arn", "")),
            role_name=str(d.get("role_name", "")),
            resource=str(d.get("resource", "")),
            actions=list(d.get("actions", [])),
            owner=str(d.get("owner", "")),
            created_at=float(d.get("created_at", 0.0)),
            expires_at=float(d.get("expires_at", 0.0)),
            state=state,
            raw_state=raw,
        )


@dataclass
class StagingObject:
    bucket: str
    key: str
    size: int
    request_id: str
    region: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    @property
    def arn(self) -> str:
        return f"arn:aws:s3:::{self.bucket}/{self.key}"

    def to_dict(self) -> dict:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "size": self.size,
            "request_id": self.request_id,
            "region": self.region,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "StagingObject":
        return cls(
            bucket=str(d["bucket"]),
            key=str(d["key"]),
            size=int(d.get("size", 0)),
            request_id=str(d.get("request_id", "")),
            region=str(d.get("region", "")),
            created_at=float(d.get("created_at", 0.0)),
        )


# ══════════════════════════════════════════════════════════════════════════════
#  LEDGER
# ══════════════════════════════════════════════════════════════════════════════

class EntryState(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    RELEASED = "released"


@dataclass
class RegistryEntry:
    """
    Durable record of the ephemeral resources of one staged transfer: the grant
    and the staging object it authorizes.
    """
    entry_id: str
    request_id: str
    region: str
    owner: str
    state: EntryState = EntryState.PENDING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    instance_id: str = ""
    direction: str = ""
    grant: Optional[EphemeralGrant] = None
    staging: Optional[StagingObject] = None
    raw_state: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "request_id": self.request_id,
            "region": self.region,
            "owner": self.owner,
            "state": self.raw_state or self.state.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "instance_id": self.instance_id,
            "direction": self.direction,
            "grant": self.grant.to_dict() if self.grant else None,
            "staging": self.staging.to_dict() if self.staging else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "RegistryEntry":
        """Unknown keys are ignored; missing optional keys take defaults.
        A state this release does not know reads as Active so cleanup still
        releases the entry.
        """
        state, raw = _lenient_state(EntryState, d.get("state"),
                                    EntryState.ACTIVE, EntryState.ACTIVE)
        grant = d.get("grant")
        staging = d.get("staging")
        created = float(d.get("created_at", 0.0))
        return cls(
            entry_id=str(d["entry_id"]),
            request_id=str(d.get("request_id", "")),
            region=str(d.get("region", "")),
            owner=str(d.get("owner", "")),
            state=state,
            created_at=created,
            updated_at=float(d.get("updated_at", created)),
            instance_id=str(d.get("instance_id", "")),
            direction=str(d.get("direction", "")),
            grant=EphemeralGrant.from_dict(grant) if isinstance(grant, dict) else None,
            staging=StagingObject.from_dict(staging) if isinstance(staging, dict) else None,
            raw_state=raw,
        )


# ══════════════════════════════════════════════════════════════════════════════
#  COMMAND RESULTS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class CommandResult:
    command_id: str
    instance_id: str
    status: str
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""


@dataclass
class TargetOutcome:
    """Result of one target in a multi-target operation."""
    target: str
    result: object = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class MultiResult:
    outcomes: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def failed(self) -> list:
        return [o for o in self.outcomes if not o.ok]

    @property
    def succeeded(self) -> list:
        return [o for o in self.outcomes if o.ok]

    def raise_for_failures(self):
        """Raise PartialFailure listing every outcome when any target failed."""
        if not self.ok:
            raise PartialFailure(
                f"{len(self.failed)} of {len(self.outcomes)} target(s) failed",
                self.outcomes,
            )
