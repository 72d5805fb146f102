"""
Integration tests for ssmxfer CLI behavior and configuration loading.
Author: Younes Rahimi

Tests:
  - config loading: get_profile / apply_profile / apply_env mutate module variables
  - region shortcodes and validation
  - ssmxfer init: creates a valid config.yaml, refuses overwrite without --force
  - ssmxfer ledger / emergency-cleanup: offline behaviour and exit codes
  - multi-target summaries exit 3 on partial failure, Ctrl-C exits 130
"""
import io
import json
import os
import subprocess
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest import mock

import yaml

from fakes import FakeAWS, fast_config

from ssmxfer import cli


# ── Helpers ───────────────────────────────────────────────────────────────────

REPO_ROOT = Path(__file__).parent.parent
WEB1 = "i-0a1b2c3d4e5f60001"
WEB2 = "i-0a1b2c3d4e5f60002"


def run_ssmxfer(*args, env_dir, input_text=""):
    """Run the ssmxfer CLI with config/state under env_dir; return (returncode, stdout, stderr)."""
    env = {k: v for k, v in os.environ.items()
           if not k.startswith("SSMXFER_") and k not in ("AWS_REGION", "AWS_DEFAULT_REGION")}
    env.update({
        "PYTHONPATH": str(REPO_ROOT),
        "XDG_CONFIG_HOME": str(Path(env_dir) / "config"),
        "XDG_STATE_HOME": str(Path(env_dir) / "state"),
    })
    result = subprocess.run(
        [sys.executable, "-m", "ssmxfer", *args],
        cwd=str(env_dir),
        capture_output=True,
        text=True,
        input=input_text,
        env=env,
    )
    return result.returncode, result.stdout, result.stderr


class ConfigSnapshot:
    """Restore every upper-case config value after a test."""

    def setUp(self):
        import ssmxfer.config as cfg
        saved = {k: getattr(cfg, k) for k in dir(cfg) if k.isupper()}

        def restore():
            for k, v in saved.items():
                setattr(cfg, k, v)

        self.addCleanup(restore)


# ── Tests: config loading ─────────────────────────────────────────────────────

class TestLoadProfile(ConfigSnapshot, unittest.TestCase):
    """Tests for load_global_config, get_profile and apply_profile."""

    def setUp(self):
        super().setUp()
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    def _write_config(self, content):
        p = self.root / "config.yaml"
        p.write_text(content, encoding="utf-8")
        return p

    def test_missing_file_is_empty(self):
        import ssmxfer.config as cfg
        self.assertEqual(cfg.load_global_config(self.root / "absent.yaml"), {})

    def test_apply_profile_basic(self):
        """apply_profile sets region, thresholds and timeouts."""
        import ssmxfer.config as cfg
        p = self._write_config(
            "defaults:\n"
            "  region: euw1\n"
            "  direct_threshold: 2048\n"
            "profiles:\n"
            "  - name: default\n"
            "    transfer_timeout: 900\n"
            "    iam_propagation_delay: 2.5\n"
            "    staging_bucket_prefix: my-stage\n"
        )
        profile = cfg.get_profile(cfg.load_global_config(p), "default")
        cfg.apply_profile(profile)
        self.assertEqual(cfg.REGION, "eu-west-1")
        self.assertEqual(cfg.DIRECT_THRESHOLD, 2048)
        self.assertEqual(cfg.TRANSFER_TIMEOUT, 900)
        self.assertEqual(cfg.IAM_PROPAGATION_DELAY, 2.5)
        self.assertEqual(cfg.STAGING_BUCKET_PREFIX, "my-stage")

    def test_get_profile_by_name(self):
        """get_profile retrieves the named profile merged over defaults."""
        import ssmxfer.config as cfg
        p = self._write_config(
            "defaults:\n"
            "  region: us-east-1\n"
            "  max_workers: 4\n"
            "profiles:\n"
            "  - name: dev\n"
            "    region: us-west-2\n"
            "  - name: prod\n"
            "    region: ca-central-1\n"
            "    aws_profile: prod-admin\n"
        )
        profile = cfg.get_profile(cfg.load_global_config(p), "prod")
        self.assertEqual(profile["region"], "ca-central-1")
        self.assertEqual(profile["aws_profile"], "prod-admin")
        self.assertEqual(profile["max_workers"], 4)

    def test_get_profile_falls_back_to_first(self):
        """get_profile falls back to first profile if named one not found."""
        import ssmxfer.config as cfg
        p = self._write_config(
            "profiles:\n"
            "  - name: only\n"
            "    region: eu-central-1\n"
        )
        profile = cfg.get_profile(cfg.load_global_config(p), "nonexistent")
        self.assertEqual(profile["region"], "eu-central-1")

    def test_max_workers_is_capped(self):
        import ssmxfer.config as cfg
        cfg.apply_profile({"max_workers": 500})
        self.assertEqual(cfg.MAX_WORKERS, cfg.MAX_WORKERS_CAP)

    def test_non_mapping_config_rejected(self):
        import ssmxfer.config as cfg
        p = self._write_config("- just\n- a list\n")
        with self.assertRaises(ValueError):
            cfg.load_global_config(p)

    def test_broken_yaml_is_a_value_error(self):
        import ssmxfer.config as cfg
        p = self._write_config("defaults:\n  region: [us-east-1\n")
        with self.assertRaises(ValueError) as ctx:
            cfg.load_global_config(p)
        self.assertIn(str(p), str(ctx.exception))


class TestEnvironment(ConfigSnapshot, unittest.TestCase):
    """apply_env wins over the YAML values."""

    def test_threshold_override(self):
        import ssmxfer.config as cfg
        cfg.apply_env({"SSMXFER_DIRECT_THRESHOLD": "4096"})
        self.assertEqual(cfg.DIRECT_THRESHOLD, 4096)

    def test_invalid_threshold_keeps_default(self):
        import ssmxfer.config as cfg
        before = cfg.DIRECT_THRESHOLD
        cfg.apply_env({"SSMXFER_DIRECT_THRESHOLD": "lots"})
        self.assertEqual(cfg.DIRECT_THRESHOLD, before)

    def test_region_and_debug(self):
        import ssmxfer.config as cfg
        cfg.apply_env({"AWS_DEFAULT_REGION": "apse2", "SSMXFER_DEBUG": "yes"})
        self.assertEqual(cfg.REGION, "ap-southeast-2")
        self.assertTrue(cfg.DEBUG)

    def test_registry_file_override(self):
        import ssmxfer.config as cfg
        from unittest import mock
        with mock.patch.dict(os.environ, {"SSMXFER_REGISTRY_FILE": "/tmp/x/ledger.json"}):
            self.assertEqual(cfg.get_registry_file(), Path("/tmp/x/ledger.json"))
        with mock.patch.dict(os.environ, {"XDG_STATE_HOME": "/tmp/state"}, clear=False):
            os.environ.pop("SSMXFER_REGISTRY_FILE", None)
            self.assertEqual(cfg.get_registry_file(), Path("/tmp/state/ssmxfer/registry.json"))


class TestRegions(unittest.TestCase):

    def test_shortcodes(self):
        from ssmxfer.config import normalize_region
        self.assertEqual(normalize_region("cac1"), "ca-central-1")
        self.assertEqual(normalize_region("USE1"), "us-east-1")
        self.assertEqual(normalize_region("eu-west-2"), "eu-west-2")

    def test_invalid_region(self):
        from ssmxfer.config import normalize_region
        for bad in ("", "mars", "us_east_1", "us-east"):
            with self.subTest(region=bad):
                with self.assertRaises(ValueError):
                    normalize_region(bad)


# ── Tests: ssmxfer init CLI ───────────────────────────────────────────────────

class TestInitCommand(unittest.TestCase):
    """Tests for the 'ssmxfer init' subcommand."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.env_dir = Path(self.tmpdir.name)
        self.config_file = self.env_dir / "config" / "ssmxfer" / "config.yaml"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_init_creates_config_file(self):
        """'ssmxfer init' creates config.yaml in the XDG config directory."""
        rc, out, err = run_ssmxfer("init", "--region", "cac1", env_dir=self.env_dir)
        self.assertEqual(rc, 0, msg=f"stderr: {err}")
        self.assertTrue(self.config_file.exists(), "config.yaml should have been created")
        self.assertIn("ca-central-1", self.config_file.read_text(encoding="utf-8"))

    def test_init_refuses_overwrite(self):
        """'ssmxfer init' refuses to overwrite an existing config.yaml without --force."""
        self.config_file.parent.mkdir(parents=True)
        self.config_file.write_text("profiles: []\n", encoding="utf-8")
        rc, out, err = run_ssmxfer("init", env_dir=self.env_dir)
        self.assertNotEqual(rc, 0, "Should exit with error when config.yaml exists")
        self.assertIn("already exists", err)
        self.assertEqual(self.config_file.read_text(encoding="utf-8"), "profiles: []\n")

    def test_init_force_overwrites(self):
        """'ssmxfer init --force' overwrites an existing config.yaml."""
        self.config_file.parent.mkdir(parents=True)
        self.config_file.write_text("profiles: []\n", encoding="utf-8")
        rc, out, err = run_ssmxfer("init", "--region", "usw2", "--force", env_dir=self.env_dir)
        self.assertEqual(rc, 0, msg=f"stderr: {err}")
        self.assertIn("us-west-2", self.config_file.read_text(encoding="utf-8"))

    def test_init_dry_run_does_not_write(self):
        """'ssmxfer init --dry-run' prints the config but does not write it."""
        rc, out, err = run_ssmxfer("init", "--dry-run", env_dir=self.env_dir)
        self.assertEqual(rc, 0, msg=f"stderr: {err}")
        self.assertFalse(self.config_file.exists(), "config.yaml should NOT be created in dry-run")
        self.assertIn("dry-run", out)

    def test_init_creates_valid_yaml(self):
        """'ssmxfer init' produces YAML that the config loader accepts."""
        rc, out, err = run_ssmxfer("init", "--region", "euw1", "--aws-profile", "ops",
                                   env_dir=self.env_dir)
        self.assertEqual(rc, 0, msg=f"stderr: {err}")
        data = yaml.safe_load(self.config_file.read_text(encoding="utf-8"))
        self.assertEqual(data["defaults"]["region"], "eu-west-1")
        self.assertEqual(data["profiles"][0]["name"], "default")
        self.assertEqual(data["profiles"][0]["aws_profile"], "ops")
        self.assertIn("direct_threshold", data["defaults"])


# ── Tests: offline commands ───────────────────────────────────────────────────

class TestOfflineCommands(unittest.TestCase):
    """Commands that must behave without reaching AWS."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.env_dir = Path(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_help(self):
        rc, out, err = run_ssmxfer("--help", env_dir=self.env_dir)
        self.assertEqual(rc, 0)
        for sub in ("transfer", "exec", "ledger", "emergency-cleanup"):
            self.assertIn(sub, out)

    def test_no_command_prints_help(self):
        rc, out, err = run_ssmxfer(env_dir=self.env_dir)
        self.assertEqual(rc, 1)
        self.assertIn("usage", out)

    def test_transfer_needs_an_action(self):
        rc, out, err = run_ssmxfer("transfer", env_dir=self.env_dir)
        self.assertEqual(rc, 2)

    def test_empty_ledger(self):
        rc, out, err = run_ssmxfer("ledger", env_dir=self.env_dir)
        self.assertEqual(rc, 0, msg=f"stderr: {err}")
        self.assertIn("No outstanding entries.", out)
        self.assertIn(str(self.env_dir / "state" / "ssmxfer" / "registry.json"), out)

    def test_ledger_lists_entries(self):
        """Entries written by another process show up in 'ssmxfer ledger'."""
        ledger = self.env_dir / "state" / "ssmxfer" / "registry.json"
        ledger.parent.mkdir(parents=True)
        ledger.write_text(json.dumps({"version": 1, "entries": [{
            "entry_id": "deadbeef" * 4,
            "request_id": "r-1",
            "region": "us-east-1",
            "owner": "elsewhere:1",
            "state": "active",
            "instance_id": "i-0123456789abcdef0",
            "direction": "upload",
            "staging": {"bucket": "b", "key": "ssmxfer/uploads/r-1/f", "size": 3,
                        "request_id": "r-1"},
        }]}), encoding="utf-8")
        rc, out, err = run_ssmxfer("ledger", env_dir=self.env_dir)
        self.assertEqual(rc, 0, msg=f"stderr: {err}")
        self.assertIn("deadbeef" * 4, out)
        self.assertIn("s3://b/ssmxfer/uploads/r-1/f", out)

        rc, out, err = run_ssmxfer("ledger", "--region", "euw1", env_dir=self.env_dir)
        self.assertEqual(rc, 0, msg=f"stderr: {err}")
        self.assertIn("No outstanding entries.", out)

    def test_invalid_region(self):
        rc, out, err = run_ssmxfer("ledger", "--region", "mars", env_dir=self.env_dir)
        self.assertEqual(rc, 1)
        self.assertIn("invalid region", err)

    def test_emergency_cleanup_requires_yes_when_not_interactive(self):
        rc, out, err = run_ssmxfer("emergency-cleanup", "--region", "use1",
                                   env_dir=self.env_dir)
        self.assertEqual(rc, 1)
        self.assertIn("--yes", err)

    def test_broken_config_file_is_reported(self):
        cfg_file = self.env_dir / "config" / "ssmxfer" / "config.yaml"
        cfg_file.parent.mkdir(parents=True)
        cfg_file.write_text("defaults: {region: [\n", encoding="utf-8")
        rc, out, err = run_ssmxfer("ledger", env_dir=self.env_dir)
        self.assertEqual(rc, 1)
        self.assertIn("invalid YAML", err)
        self.assertNotIn("Traceback", err)

    def test_transfer_with_empty_target(self):
        rc, out, err = run_ssmxfer("transfer", "upload", "", "a.bin", "/tmp/a.bin",
                                   env_dir=self.env_dir)
        self.assertEqual(rc, 1)
        self.assertIn("no target given", err)
        self.assertNotIn("Traceback", err)


class TestExitCodes(ConfigSnapshot, unittest.TestCase):
    """In-process runs against the AWS fakes: summary tables and exit codes."""

    def setUp(self):
        super().setUp()
        fast_config(self)
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        env = {k: v for k, v in os.environ.items()
               if not k.startswith("SSMXFER_") and k not in ("AWS_REGION", "AWS_DEFAULT_REGION")}
        env.update({"XDG_CONFIG_HOME": str(self.root / "config"),
                    "XDG_STATE_HOME": str(self.root / "state")})
        patcher = mock.patch.dict(os.environ, env, clear=True)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.aws = FakeAWS()
        for iid in (WEB1, WEB2):
            self.aws.add_instance(iid)
        patcher = mock.patch("ssmxfer.cli._session", return_value=self.aws.session())
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.tmpdir.cleanup()

    def run_cli(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            rc = cli.main(list(argv))
        return rc, out.getvalue(), err.getvalue()

    def test_exec_everywhere_succeeds(self):
        rc, out, err = self.run_cli("exec", "--targets", f"{WEB1},{WEB2}", "echo hi")
        self.assertEqual(rc, cli.EXIT_OK)
        self.assertIn("2 succeeded, 0 failed", out)

    def test_exec_partial_failure(self):
        """One target cannot be reached: the table shows both and the exit code is 3."""
        self.aws.ssm.undeliverable.add(WEB2)
        rc, out, err = self.run_cli("exec", "--targets", f"{WEB1},{WEB2}", "echo hi")
        self.assertEqual(rc, cli.EXIT_PARTIAL)
        self.assertIn("1 succeeded, 1 failed", out)
        row = next(line for line in out.splitlines() if line.startswith(WEB2))
        self.assertIn("FAILED", row)

    def test_exec_total_failure(self):
        self.aws.ssm.undeliverable.update({WEB1, WEB2})
        rc, out, err = self.run_cli("exec", "--targets", f"{WEB1},{WEB2}", "echo hi")
        self.assertEqual(rc, cli.EXIT_FAIL)
        self.assertIn("0 succeeded, 2 failed", out)

    def test_transfer_partial_failure(self):
        src = self.root / "small.txt"
        src.write_bytes(b"hello\n")
        self.aws.ssm.undeliverable.add(WEB1)
        rc, out, err = self.run_cli("transfer", "upload", f"{WEB1},{WEB2}", str(src),
                                    "/tmp/small.txt")
        self.assertEqual(rc, cli.EXIT_PARTIAL)
        self.assertIn("1 succeeded, 1 failed", out)

    def test_interrupt_exits_130_with_cleanup_hint(self):
        src = self.root / "small.txt"
        src.write_bytes(b"hello\n")
        with mock.patch("ssmxfer.core.router.TransferRouter.upload",
                        side_effect=KeyboardInterrupt):
            rc, out, err = self.run_cli("transfer", "upload", WEB1, str(src), "/tmp/small.txt")
        self.assertEqual(rc, cli.EXIT_INTERRUPTED)
        self.assertIn("Interrupted", err)
        self.assertIn("ssmxfer cleanup --region us-east-1", err)


if __name__ == "__main__":
    unittest.main()
