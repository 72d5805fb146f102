"""
Command executor: send a shell script through the session broker, poll for completion
"""
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .. import config as _cfg
from .. import errors
from ..errors import ExecutionError, RemoteExitError
from ..models import CommandResult, MultiResult, TargetOutcome
from ..utils.logging import vlog, warn
from ..utils.retry import retried
from .aws_clients import AWSSession

DOCUMENT = "AWS-RunShellScript"
# SendCommand's own delivery timeout has a floor of 30 s
MIN_DELIVERY_TIMEOUT = 30

_PENDING = {"Pending", "InProgress", "Delayed", "Cancelling"}
_TRANSPORT_FAILURES = {"Undeliverable", "Terminated", "DeliveryTimedOut",
                       "InvalidPlatform", "AccessDenied", "Cancelled"}


class CommandExecutor:
    """
    Send-then-poll wrapper around SendCommand / GetCommandInvocation.

    A non-zero remote exit is RemoteExitError; anything that stops the script
    from running to completion is ExecutionError; running past the deadline is
    errors.TimeoutError and is never retried here.
    """

    def __init__(self, session: AWSSession):
        self.session = session

    # ── primitives ─────────────────────────────────────────────────────────

    def send(self, instance_id: str, commands: list, timeout: int,
             comment: str = "ssmxfer") -> str:
        """Submit commands; returns the command id without waiting."""
        try:
            resp = self.session.ssm.send_command(
                InstanceIds=[instance_id],
                DocumentName=DOCUMENT,
                Comment=comment[:100],
                TimeoutSeconds=max(MIN_DELIVERY_TIMEOUT, int(timeout)),
                Parameters={
                    "commands": list(commands),
                    "executionTimeout": [str(int(timeout))],
                },
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == "InvalidInstanceId":
                raise ExecutionError(
                    f"{instance_id} is not registered with the session broker or is not running",
                    target=instance_id, cause=e) from e
            raise ExecutionError(f"send command failed: {e}", target=instance_id, cause=e) from e
        except BotoCoreError as e:
            raise ExecutionError(f"send command failed: {e}", target=instance_id, cause=e) from e
        command_id = resp["Command"]["CommandId"]
        vlog(f"  [EXEC] {instance_id}: sent {command_id}")
        return command_id

    @retried
    def _get_invocation(self, command_id: str, instance_id: str) -> Optional[dict]:
        try:
            return self.session.ssm.get_command_invocation(
                CommandId=command_id, InstanceId=instance_id)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "InvocationDoesNotExist":
                return None
            raise

    def cancel(self, command_id: str, instance_id: str):
        """Best effort; failures are only logged."""
        try:
            self.session.ssm.cancel_command(CommandId=command_id, InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            warn(f"could not cancel {command_id} on {instance_id}: {e}")

    def wait(self, command_id: str, instance_id: str, timeout: float) -> CommandResult:
        """Poll with exponential back-off until the invocation finishes or timeout passes."""
        deadline = time.monotonic() + timeout
        delay = _cfg.POLL_INITIAL_DELAY
        while True:
            time.sleep(min(delay, max(0.0, deadline - time.monotonic())))
            try:
                inv = self._get_invocation(command_id, instance_id)
            except (ClientError, BotoCoreError) as e:
                raise ExecutionError(f"polling {command_id} failed: {e}",
                                     target=instance_id, cause=e) from e

            if inv is not None and inv.get("Status") not in _PENDING:
                return self._finish(command_id, instance_id, inv)

            if time.monotonic() >= deadline:
                self.cancel(command_id, instance_id)
                raise errors.TimeoutError(
                    f"command {command_id} did not finish within {timeout:.0f}s",
                    target=instance_id)
            delay = min(delay * 2, _cfg.POLL_MAX_DELAY)

    def _finish(self, command_id: str, instance_id: str, inv: dict) -> CommandResult:
        status = inv.get("Status", "")
        details = inv.get("StatusDetails", "") or status
        code = inv.get("ResponseCode", -1)
        stdout = inv.get("StandardOutputContent", "") or ""
        stderr = inv.get("StandardErrorContent", "") or ""
        result = CommandResult(command_id=command_id, instance_id=instance_id, status=status,
                               exit_code=code, stdout=stdout, stderr=stderr)

        if status == "Success":
            vlog(f"  [EXEC] {instance_id}: {command_id} succeeded")
            result.exit_code = 0 if code in (None, -1) else code
            return result
        if details == "ExecutionTimedOut":
            raise errors.TimeoutError(f"command {command_id} timed out on the instance",
                                      target=instance_id)
        if details in _TRANSPORT_FAILURES or status in ("Cancelled", "TimedOut") or code in (None, -1):
            raise ExecutionError(f"command {command_id} {details or status}",
                                 target=instance_id)
        msg = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit status {code}"
        raise RemoteExitError(f"remote command failed (exit {code}): {msg}",
                              exit_code=code, stdout=stdout, stderr=stderr,
                              target=instance_id)

    # ── public surface ─────────────────────────────────────────────────────

    def run(self, target: str, commands: list, timeout: Optional[float] = None,
            comment: str = "ssmxfer") -> CommandResult:
        timeout = _cfg.COMMAND_TIMEOUT if timeout is None else timeout
        command_id = self.send(target, commands, int(timeout), comment)
        try:
            return self.wait(command_id, target, timeout)
        except KeyboardInterrupt:
            self.cancel(command_id, target)
            raise

    def run_many(self, targets: list, commands: list, timeout: Optional[float] = None,
                 concurrency: Optional[int] = None) -> MultiResult:
        """
        Run the same commands on every target through a bounded worker pool.
        Failures are collected per target; none of them stops the others.
        """
        workers = concurrency or _cfg.MAX_WORKERS
        workers = max(1, min(workers, _cfg.MAX_WORKERS_CAP, len(targets) or 1))
        # Build the client here; lazy creation from worker threads is racy in boto3.
        _ = self.session.ssm

        def one(target):
            try:
                return TargetOutcome(target, result=self.run(target, commands, timeout))
            except Exception as e:
                return TargetOutcome(target, error=e)

        pool = ThreadPoolExecutor(max_workers=workers)
        try:
            outcomes = list(pool.map(one, targets))
        except KeyboardInterrupt:
            pool.shutdown(wait=False, cancel_futures=True)
            raise
        pool.shutdown()
        return MultiResult(outcomes)
