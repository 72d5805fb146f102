"""
Ephemeral credential manager

A grant is a customer-managed IAM policy attached to the target's instance
role for the duration of one staged transfer. The policy allows the minimum
action set on exactly one staging object and carries an aws:CurrentTime
condition, so IAM itself stops honouring it at the expiry instant even if
revocation never happens.

Grant life cycle: Requested → Active → Revoked (terminal).
"""
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .. import config as _cfg
from ..core.aws_clients import AWSSession
from ..errors import CredentialError, ValidationError
from ..models import (Direction, EphemeralGrant, GrantState, Instance, StagingObject,
                      new_id)
from ..state.registry import current_owner
from ..utils.logging import log, vlog
from ..utils.retry import retried

POLICY_PATH = "/ssmxfer/"

# Target-side actions per direction: the target reads what we uploaded, or
# writes what we are about to download.
ACTIONS = {
    Direction.UPLOAD: ("s3:GetObject",),
    Direction.DOWNLOAD: ("s3:PutObject", "s3:AbortMultipartUpload"),
}


@dataclass(frozen=True)
class GrantScope:
    resource: str
    actions: tuple

    @classmethod
    def for_object(cls, obj: StagingObject, direction: Direction) -> "GrantScope":
        return cls(resource=obj.arn, actions=ACTIONS[direction])


def _error_code(e: Exception) -> str:
    if isinstance(e, ClientError):
        return e.response.get("Error", {}).get("Code", "")
    return ""


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def clamp_ttl(ttl: Optional[int]) -> int:
    """Default to the longest allowed TTL; refuse anything longer."""
    if ttl is None:
        return _cfg.GRANT_TTL_MAX
    if ttl > _cfg.GRANT_TTL_MAX:
        raise ValidationError(
            f"grant TTL {ttl}s exceeds the maximum of {_cfg.GRANT_TTL_MAX}s")
    return max(int(ttl), _cfg.GRANT_TTL_MIN)


class EphemeralCredentialManager:

    def __init__(self, session: AWSSession):
        self.session = session

    @property
    def iam(self):
        return self.session.iam

    # ── role lookup ────────────────────────────────────────────────────────

    def role_for_instance(self, instance: Instance) -> str:
        """Instance profile ARN → the role grants get attached to."""
        if not instance.iam_profile_arn:
            raise CredentialError(
                f"{instance.label} has no IAM instance profile; staged transfers "
                f"need one so the target can read/write the staging bucket",
                target=instance.instance_id)
        profile_name = instance.iam_profile_arn.rsplit("/", 1)[-1]
        try:
            resp = self._get_instance_profile(profile_name)
        except (ClientError, BotoCoreError) as e:
            raise CredentialError(f"cannot read instance profile {profile_name}: {e}",
                                  target=instance.instance_id, cause=e) from e
        roles = resp.get("InstanceProfile", {}).get("Roles", [])
        if not roles:
            raise CredentialError(f"instance profile {profile_name} has no role",
                                  target=instance.instance_id)
        return roles[0]["RoleName"]

    @retried
    def _get_instance_profile(self, name: str) -> dict:
        return self.iam.get_instance_profile(InstanceProfileName=name)

    # ── issue ──────────────────────────────────────────────────────────────

    def plan(self, scope: GrantScope, ttl: Optional[int], request_id: str,
             role_name: str) -> EphemeralGrant:
        """
        Build a Requested grant without touching IAM. The policy ARN is
        known up front so the ledger can reference it before it exists.
        """
        if not scope.actions or not scope.resource or "*" in scope.resource:
            raise ValidationError(f"grant scope must name one object: {scope}",
                                  request_id=request_id)
        ttl = clamp_ttl(ttl)
        grant_id = new_id()
        name = f"{_cfg.GRANT_POLICY_PREFIX}-{grant_id}"
        now = time.time()
        return EphemeralGrant(
            grant_id=grant_id,
            request_id=request_id,
            policy_name=name,
            policy_arn=f"arn:aws:iam::{self.session.account_id()}:policy{POLICY_PATH}{name}",
            role_name=role_name,
            resource=scope.resource,
            actions=list(scope.actions),
            owner=current_owner(),
            created_at=now,
            expires_at=now + ttl,
        )

    @staticmethod
    def policy_document(grant: EphemeralGrant) -> dict:
        return {
            "Version": "2012-10-17",
            "Statement": [{
                "Sid": "SsmxferStagedTransfer",
                "Effect": "Allow",
                "Action": list(grant.actions),
                "Resource": [grant.resource],
                "Condition": {"DateLessThan": {"aws:CurrentTime": _iso(grant.expires_at)}},
            }],
        }

    def activate(self, grant: EphemeralGrant) -> EphemeralGrant:
        """Create the policy and attach it to the role; Requested → Active.

        The TTL fixed at plan() time is re-anchored to now, so time spent
        between planning and issuing does not eat into the grant.
        """
        if grant.state is not GrantState.REQUESTED:
            raise CredentialError(
                f"grant {grant.grant_id} is {grant.state.value}; only a requested grant can be issued",
                request_id=grant.request_id)
        # Expiry counts from issue, not from planning
        grant.expires_at = time.time() + (grant.expires_at - grant.created_at)
        try:
            resp = self.iam.create_policy(
                PolicyName=grant.policy_name,
                Path=POLICY_PATH,
                PolicyDocument=json.dumps(self.policy_document(grant)),
                Description=f"ssmxfer grant for transfer {grant.request_id}"[:1000],
                Tags=[
                    {"Key": "ssmxfer:request", "Value": grant.request_id},
                    {"Key": "ssmxfer:owner", "Value": grant.owner[:256]},
                    {"Key": "ssmxfer:expires", "Value": _iso(grant.expires_at)},
                ],
            )
            grant.policy_arn = resp["Policy"]["Arn"]
        except (ClientError, BotoCoreError) as e:
            raise CredentialError(f"cannot create grant policy {grant.policy_name}: {e}",
                                  request_id=grant.request_id, cause=e) from e
        try:
            self.iam.attach_role_policy(RoleName=grant.role_name, PolicyArn=grant.policy_arn)
        except (ClientError, BotoCoreError) as e:
            hint = ""
            if _error_code(e) == "LimitExceeded":
                hint = " (role has too many managed policies; wait for running transfers or run cleanup)"
            raise CredentialError(
                f"cannot attach grant {grant.policy_name} to role {grant.role_name}: {e}{hint}",
                request_id=grant.request_id, cause=e) from e
        grant.transition(GrantState.ACTIVE)
        log(f"  [GRANT] {grant.policy_name} → role {grant.role_name} "
            f"(expires {_iso(grant.expires_at)})")
        if _cfg.IAM_PROPAGATION_DELAY > 0:
            vlog(f"  [GRANT] waiting {_cfg.IAM_PROPAGATION_DELAY:.0f}s for IAM propagation")
            time.sleep(_cfg.IAM_PROPAGATION_DELAY)
        return grant

    def issue(self, scope: GrantScope, ttl: Optional[int], request_id: str,
              role_name: str) -> EphemeralGrant:
        """plan() + activate(); every call yields a new grant id."""
        return self.activate(self.plan(scope, ttl, request_id, role_name))

    # ── revoke ─────────────────────────────────────────────────────────────

    def revoke(self, grant: EphemeralGrant):
        """
        Detach the policy from every entity and delete it. Missing policies
        and attachments count as success, so repeating a revoke is harmless.
        """
        if grant.state is GrantState.REVOKED:
            return
        try:
            self._detach(grant.role_name, grant.policy_arn)
            self._detach_all(grant.policy_arn)
            self._delete_policy(grant.policy_arn)
        except (ClientError, BotoCoreError) as e:
            raise CredentialError(f"cannot revoke grant {grant.policy_name}: {e}",
                                  request_id=grant.request_id, cause=e) from e
        grant.transition(GrantState.REVOKED)
        vlog(f"  [GRANT] revoked {grant.policy_name}")

    @retried
    def _detach(self, role_name: str, policy_arn: str):
        if not role_name:
            return
        try:
            self.iam.detach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        except ClientError as e:
            if _error_code(e) != "NoSuchEntity":
                raise

    @retried
    def _detach_all(self, policy_arn: str):
        """Catch attachments made outside this tool (or by an earlier crashed run)."""
        try:
            resp = self.iam.list_entities_for_policy(PolicyArn=policy_arn)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return
            raise
        for role in resp.get("PolicyRoles", []):
            self._ignore_missing(self.iam.detach_role_policy,
                                 RoleName=role["RoleName"], PolicyArn=policy_arn)
        for user in resp.get("PolicyUsers", []):
            self._ignore_missing(self.iam.detach_user_policy,
                                 UserName=user["UserName"], PolicyArn=policy_arn)
        for group in resp.get("PolicyGroups", []):
            self._ignore_missing(self.iam.detach_group_policy,
                                 GroupName=group["GroupName"], PolicyArn=policy_arn)

    @retried
    def _delete_policy(self, policy_arn: str):
        self._ignore_missing(self.iam.delete_policy, PolicyArn=policy_arn)

    @staticmethod
    def _ignore_missing(call, **kwargs):
        try:
            call(**kwargs)
        except ClientError as e:
            if _error_code(e) != "NoSuchEntity":
                raise
