"""
AWS client factory for one region/profile

Replaces a live connection object: boto3 clients are created lazily, cached
and shared by the worker pool (boto3 clients are thread-safe once built).
"""
import threading
from typing import Callable, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .. import config as _cfg
from ..errors import CredentialError
from ..utils.logging import vlog


class AWSSession:
    """
    Lazily-built boto3 clients bound to one region.

    `client_factory(service_name, region_name=..., config=...)` may be passed
    to substitute clients (defaults to a boto3.Session's `client` method).
    """

    def __init__(self, region: Optional[str] = None, profile: Optional[str] = None,
                 client_factory: Optional[Callable] = None):
        self.region = _cfg.normalize_region(region or _cfg.REGION)
        self.profile = profile if profile is not None else _cfg.AWS_PROFILE
        self._factory = client_factory
        self._clients: dict = {}
        self._lock = threading.Lock()
        self._account_id: Optional[str] = None

    def _boto_config(self) -> BotoConfig:
        # Transient retries happen in @retried; keep botocore's own short.
        return BotoConfig(
            connect_timeout=10,
            read_timeout=60,
            retries={"max_attempts": 3, "mode": "standard"},
        )

    def client(self, service: str):
        with self._lock:
            cl = self._clients.get(service)
            if cl is None:
                factory = self._factory
                if factory is None:
                    factory = boto3.Session(profile_name=self.profile).client
                vlog(f"  [AWS] creating {service} client in {self.region}")
                cl = factory(service, region_name=self.region, config=self._boto_config())
                self._clients[service] = cl
            return cl

    @property
    def ssm(self):
        return self.client("ssm")

    @property
    def ec2(self):
        return self.client("ec2")

    @property
    def iam(self):
        return self.client("iam")

    @property
    def s3(self):
        return self.client("s3")

    def account_id(self) -> str:
        """Caller's account id (cached)."""
        if self._account_id is None:
            try:
                self._account_id = self.client("sts").get_caller_identity()["Account"]
            except (ClientError, BotoCoreError) as e:
                raise CredentialError(f"cannot determine AWS account: {e}", cause=e) from e
        return self._account_id
