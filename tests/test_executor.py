"""
Tests for the command executor: exit statuses, transport failures, timeouts,
and multi-target fan-out.
"""
import unittest

from fakes import FakeAWS, client_error, fast_config

from ssmxfer import errors
from ssmxfer.core.executor import CommandExecutor
from ssmxfer.errors import ExecutionError, PartialFailure, RemoteExitError

IIDS = ["i-0000000000000000%d" % n for n in range(1, 6)]


class ExecutorTestCase(unittest.TestCase):

    def setUp(self):
        fast_config(self)
        self.aws = FakeAWS()
        for iid in IIDS:
            self.aws.add_instance(iid)
        self.executor = CommandExecutor(self.aws.session())


class TestRun(ExecutorTestCase):

    def test_success_returns_output(self):
        res = self.executor.run(IIDS[0], ["echo hello"])
        self.assertEqual(res.exit_code, 0)
        self.assertEqual(res.stdout, "hello\n")
        self.assertEqual(res.instance_id, IIDS[0])

    def test_non_zero_exit(self):
        with self.assertRaises(RemoteExitError) as ctx:
            self.executor.run(IIDS[0], ["echo boom >&2", "exit 3"])
        err = ctx.exception
        self.assertEqual(err.exit_code, 3)
        self.assertEqual(err.stderr, "boom\n")
        self.assertEqual(err.target, IIDS[0])
        self.assertIn("boom", str(err))

    def test_undeliverable_is_execution_error(self):
        self.aws.ssm.undeliverable.add(IIDS[0])
        with self.assertRaises(ExecutionError) as ctx:
            self.executor.run(IIDS[0], ["echo hi"])
        self.assertNotIsInstance(ctx.exception, RemoteExitError)

    def test_unknown_instance(self):
        with self.assertRaises(ExecutionError):
            self.executor.run("i-0fffffffffffffff9", ["echo hi"])

    def test_timeout_cancels_command(self):
        fast_config(self, POLL_INITIAL_DELAY=0.01, POLL_MAX_DELAY=0.05)
        with self.assertRaises(errors.TimeoutError) as ctx:
            self.executor.run(IIDS[0], ["sleep 600"], timeout=0.3)
        self.assertEqual(ctx.exception.target, IIDS[0])
        self.assertEqual(len(self.aws.ssm.cancelled), 1)

    def test_polling_retries_throttling(self):
        self.aws.ssm.fail["get_command_invocation"] = client_error(
            "ThrottlingException", "GetCommandInvocation", 400)
        res = self.executor.run(IIDS[0], ["echo ok"])
        self.assertEqual(res.stdout, "ok\n")
        self.assertEqual(self.aws.ssm.calls.count("get_command_invocation"), 2)

    def test_poll_failure(self):
        self.aws.ssm.fail["get_command_invocation"] = client_error(
            "AccessDeniedException", "GetCommandInvocation", 400)
        with self.assertRaises(ExecutionError):
            self.executor.run(IIDS[0], ["echo ok"])


class TestRunMany(ExecutorTestCase):

    def test_partial_failure_collects_every_target(self):
        """Two targets are unreachable; the other three still run to completion."""
        self.aws.ssm.undeliverable.update(IIDS[1:3])
        multi = self.executor.run_many(IIDS, ["echo done"], concurrency=2)

        self.assertFalse(multi.ok)
        self.assertEqual([o.target for o in multi.outcomes], IIDS)
        self.assertEqual([o.target for o in multi.succeeded], [IIDS[0], IIDS[3], IIDS[4]])
        self.assertEqual([o.target for o in multi.failed], IIDS[1:3])
        for o in multi.succeeded:
            self.assertEqual(o.result.stdout, "done\n")

        with self.assertRaises(PartialFailure) as ctx:
            multi.raise_for_failures()
        self.assertEqual(len(ctx.exception.failed), 2)
        self.assertEqual(len(ctx.exception.succeeded), 3)

    def test_all_succeed(self):
        multi = self.executor.run_many(IIDS, ["echo done"])
        self.assertTrue(multi.ok)
        multi.raise_for_failures()

    def test_every_target_runs_once(self):
        self.executor.run_many(IIDS, ["echo x"], concurrency=50)
        self.assertEqual(sorted(iid for iid, _ in self.aws.ssm.sent), sorted(IIDS))


if __name__ == "__main__":
    unittest.main()
