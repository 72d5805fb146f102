"""
Instance catalog: resolve ids / Name tags and report agent reachability
"""
import re
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ExecutionError, ValidationError
from ..models import Instance, Reachability
from ..utils.logging import vlog
from ..utils.retry import retried
from .aws_clients import AWSSession

INSTANCE_ID_RE = re.compile(r"^i-[0-9a-f]{8,17}$")
_AGENT_FILTER_BATCH = 50


def is_instance_id(value: str) -> bool:
    return bool(INSTANCE_ID_RE.match(value or ""))


def parse_tag_filters(spec: Optional[str]) -> list:
    """"Env=prod,Team=ops" → EC2 describe filters."""
    filters = []
    if not spec:
        return filters
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"invalid tag filter {part!r} (expected key=value)")
        filters.append({"Name": f"tag:{key.strip()}", "Values": [value.strip()]})
    return filters


def _tags(raw: dict) -> dict:
    return {t["Key"]: t.get("Value", "") for t in raw.get("Tags", []) or []}


class InstanceCatalog:
    """Read-only view over the compute inventory merged with agent registrations."""

    def __init__(self, session: AWSSession):
        self.session = session

    # ── raw queries ────────────────────────────────────────────────────────

    @retried
    def _describe_instances(self, **kwargs) -> list:
        kwargs = dict(kwargs)
        out = []
        token = None
        while True:
            if token:
                kwargs["NextToken"] = token
            resp = self.session.ec2.describe_instances(**kwargs)
            for res in resp.get("Reservations", []):
                out.extend(res.get("Instances", []))
            token = resp.get("NextToken")
            if not token:
                return out

    @retried
    def _describe_agents(self, instance_ids: list) -> dict:
        info = {}
        for i in range(0, len(instance_ids), _AGENT_FILTER_BATCH):
            batch = instance_ids[i:i + _AGENT_FILTER_BATCH]
            token = None
            while True:
                kwargs = {"Filters": [{"Key": "InstanceIds", "Values": batch}]}
                if token:
                    kwargs["NextToken"] = token
                resp = self.session.ssm.describe_instance_information(**kwargs)
                for item in resp.get("InstanceInformationList", []):
                    info[item["InstanceId"]] = item
                token = resp.get("NextToken")
                if not token:
                    break
        return info

    def _build(self, raws: list) -> list:
        agents = self._describe_agents([r["InstanceId"] for r in raws]) if raws else {}
        result = []
        for raw in raws:
            iid = raw["InstanceId"]
            tags = _tags(raw)
            agent = agents.get(iid)
            platform = (agent or {}).get("PlatformType") or raw.get("PlatformDetails") \
                or raw.get("Platform") or ""
            result.append(Instance(
                instance_id=iid,
                name=tags.get("Name", ""),
                reachability=Reachability.from_ping_status((agent or {}).get("PingStatus")),
                platform=platform,
                state=raw.get("State", {}).get("Name", ""),
                private_ip=raw.get("PrivateIpAddress", "") or "",
                public_ip=raw.get("PublicIpAddress", "") or "",
                iam_profile_arn=(raw.get("IamInstanceProfile") or {}).get("Arn", ""),
                agent_version=(agent or {}).get("AgentVersion", ""),
                tags=tags,
            ))
        return result

    # ── public surface ─────────────────────────────────────────────────────

    def list_instances(self, tag_filter: Optional[str] = None,
                       states=("pending", "running", "stopping", "stopped")) -> list:
        filters = parse_tag_filters(tag_filter)
        if states:
            filters.append({"Name": "instance-state-name", "Values": list(states)})
        try:
            raws = self._describe_instances(Filters=filters)
        except (ClientError, BotoCoreError) as e:
            raise ExecutionError(f"cannot list instances: {e}", cause=e) from e
        return sorted(self._build(raws), key=lambda i: (i.name.lower(), i.instance_id))

    def describe(self, instance_id: str) -> Instance:
        try:
            raws = self._describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"):
                raise ValidationError(f"instance {instance_id} not found",
                                      target=instance_id, cause=e) from e
            raise ExecutionError(f"cannot describe {instance_id}: {e}",
                                 target=instance_id, cause=e) from e
        except BotoCoreError as e:
            raise ExecutionError(f"cannot describe {instance_id}: {e}",
                                 target=instance_id, cause=e) from e
        if not raws:
            raise ValidationError(f"instance {instance_id} not found", target=instance_id)
        return self._build(raws[:1])[0]

    def resolve(self, identifier: str) -> Instance:
        """Instance id, or the unique Name tag of a running/stopped instance."""
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("empty instance identifier")
        if is_instance_id(identifier):
            return self.describe(identifier)

        vlog(f"  [CATALOG] resolving Name tag {identifier!r}")
        try:
            raws = self._describe_instances(Filters=[
                {"Name": "tag:Name", "Values": [identifier]},
                {"Name": "instance-state-name", "Values": ["running", "stopped"]},
            ])
        except (ClientError, BotoCoreError) as e:
            raise ExecutionError(f"cannot resolve {identifier!r}: {e}",
                                 target=identifier, cause=e) from e
        if not raws:
            raise ValidationError(f"no running or stopped instance named {identifier!r}",
                                  target=identifier)
        if len(raws) > 1:
            ids = ", ".join(sorted(r["InstanceId"] for r in raws))
            raise ValidationError(
                f"name {identifier!r} matches {len(raws)} instances ({ids}); use an instance id",
                target=identifier)
        return self._build(raws)[0]

    def require_online(self, instance: Instance) -> Instance:
        if not instance.reachability.online:
            raise ExecutionError(
                f"{instance.label} is not reachable through the session broker "
                f"(agent status: {instance.reachability})",
                target=instance.instance_id)
        return instance
