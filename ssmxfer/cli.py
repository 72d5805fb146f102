#!/usr/bin/env python3
"""
ssmxfer  —  File transfer and command execution over the SSM session broker
==========================================================================
Author: Younes Rahimi

Subcommands:
  init               Create the global config.yaml.
  list               List instances and their agent status.
  status             Show one instance in detail.
  exec               Run a shell command on one or more instances.
  transfer           Upload or download a file (direct or staged through S3).
  ledger             Show the resource ledger (outstanding grants / staged objects).
  cleanup            Release finished, expired and orphaned ledger entries.
  emergency-cleanup  Release every ledger entry of a region.

Exit codes: 0 success, 1 failure, 3 partial failure, 130 interrupted.
Run 'ssmxfer <subcommand> --help' for more details.
"""
import argparse
import sys
import time
from pathlib import Path

EXIT_OK = 0
EXIT_FAIL = 1
EXIT_PARTIAL = 3
EXIT_INTERRUPTED = 130


# ── helpers ──────────────────────────────────────────────────────────────────

def _session(args):
    from ssmxfer import config as _cfg
    from ssmxfer.core.aws_clients import AWSSession

    return AWSSession(region=args.region or _cfg.REGION, profile=args.aws_profile)


def _pick_instance(session) -> str:
    """Interactive fallback when no target was given."""
    from ssmxfer.core.catalog import InstanceCatalog
    from ssmxfer.utils.select import select

    catalog = InstanceCatalog(session)
    online = [i for i in catalog.list_instances(states=("running",)) if i.reachability.online]
    idx = select(online, prompt="Instance",
                 render=lambda i: f"{i.instance_id:<20} {i.name[:30]:<30} {i.platform}")
    return online[idx].instance_id


def _split_targets(value: str) -> list:
    return [t.strip() for t in (value or "").split(",") if t.strip()]


def _print_table(headers: list, rows: list):
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(str(c))) for w, c in zip(widths, row)]
    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    print(fmt.format(*headers))
    print(fmt.format(*("─" * w for w in widths)))
    for row in rows:
        print(fmt.format(*(str(c) for c in row)))


def _print_summary(multi) -> int:
    """Per-target table for multi-target operations; returns the exit code."""
    rows = []
    for o in multi.outcomes:
        if o.ok:
            res = o.result
            detail = getattr(res, "method", "") or f"exit {getattr(res, 'exit_code', 0)}"
            if getattr(res, "cleanup_pending", False):
                detail += f" (cleanup pending: {res.entry_id})"
            rows.append((o.target, "ok", detail))
        else:
            rows.append((o.target, "FAILED", str(o.error).splitlines()[0]))
    print()
    _print_table(["TARGET", "STATUS", "DETAIL"], rows)
    print(f"\n{len(multi.succeeded)} succeeded, {len(multi.failed)} failed")
    if multi.ok:
        return EXIT_OK
    return EXIT_PARTIAL if multi.succeeded else EXIT_FAIL


def _cleanup_hint(region: str, entry_id: str):
    print(f"\nLedger entry {entry_id} may still hold AWS resources.", file=sys.stderr)
    print(f"  Inspect : ssmxfer ledger --region {region}", file=sys.stderr)
    print(f"  Release : ssmxfer cleanup --region {region}", file=sys.stderr)
    print(f"  Force   : ssmxfer emergency-cleanup --region {region}", file=sys.stderr)


def _age(ts: float) -> str:
    secs = max(0, int(time.time() - ts))
    if secs < 120:
        return f"{secs}s"
    if secs < 7200:
        return f"{secs // 60}m"
    if secs < 172800:
        return f"{secs // 3600}h"
    return f"{secs // 86400}d"


# ── init ─────────────────────────────────────────────────────────────────────

def cmd_init(args):
    """Write a starter global config.yaml."""
    from ssmxfer import config as _cfg

    target = _cfg.get_global_config_file()
    if target.exists() and not args.force and not args.dry_run:
        print(f"error: {target} already exists", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        return EXIT_FAIL

    region = _cfg.normalize_region(args.region) if args.region else _cfg.REGION
    profile_name = args.profile or "default"

    lines = [
        "# ssmxfer configuration",
        "#",
        "# defaults: applied to every profile; profiles: named overrides",
        "# selected with --profile NAME. Environment variables win over both:",
        "#   AWS_REGION, SSMXFER_DIRECT_THRESHOLD, SSMXFER_LOG_DIR, SSMXFER_DEBUG,",
        "#   SSMXFER_REGISTRY_FILE",
        "defaults:",
        f"  region: {region}",
        f"  direct_threshold: {_cfg.DIRECT_THRESHOLD}",
        f"  grant_ttl_max: {_cfg.GRANT_TTL_MAX}",
        f"  staging_expiry_days: {_cfg.STAGING_EXPIRY_DAYS}",
        f"  command_timeout: {_cfg.COMMAND_TIMEOUT}",
        f"  transfer_timeout: {_cfg.TRANSFER_TIMEOUT}",
        f"  max_workers: {_cfg.MAX_WORKERS}",
        "profiles:",
        f"  - name: {profile_name}",
    ]
    if args.aws_profile:
        lines.append(f"    aws_profile: '{args.aws_profile}'")
    content = "\n".join(lines) + "\n"

    if args.dry_run:
        print(f"[dry-run] Would write {target}:")
        print(content)
        return EXIT_OK

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    print(f"Created {target}")
    if args.verbose:
        print(content)
    return EXIT_OK


# ── list / status ────────────────────────────────────────────────────────────

def cmd_list(args):
    from ssmxfer.core.catalog import InstanceCatalog

    session = _session(args)
    instances = InstanceCatalog(session).list_instances(tag_filter=args.tags)
    if not instances:
        print(f"No instances found in {session.region}.")
        return EXIT_OK
    rows = [(i.instance_id, i.name or "-", i.state, str(i.reachability), i.platform or "-",
             i.private_ip or "-") for i in instances]
    _print_table(["INSTANCE", "NAME", "STATE", "AGENT", "PLATFORM", "PRIVATE IP"], rows)
    print(f"\n{len(instances)} instance(s) in {session.region}")
    return EXIT_OK


def cmd_status(args):
    from ssmxfer.core.catalog import InstanceCatalog

    session = _session(args)
    target = args.target or _pick_instance(session)
    inst = InstanceCatalog(session).resolve(target)
    print(f"\nInstance : {inst.instance_id}")
    print(f"Name     : {inst.name or '-'}")
    print(f"State    : {inst.state}")
    print(f"Agent    : {inst.reachability}" + (f" (v{inst.agent_version})" if inst.agent_version else ""))
    print(f"Platform : {inst.platform or '-'}")
    print(f"Private  : {inst.private_ip or '-'}")
    print(f"Public   : {inst.public_ip or '-'}")
    print(f"Profile  : {inst.iam_profile_arn or '(none; staged transfers unavailable)'}")
    return EXIT_OK


# ── exec ─────────────────────────────────────────────────────────────────────

def cmd_exec(args):
    from ssmxfer import config as _cfg
    from ssmxfer.core.catalog import InstanceCatalog
    from ssmxfer.core.executor import CommandExecutor

    session = _session(args)
    catalog = InstanceCatalog(session)
    executor = CommandExecutor(session)
    timeout = args.timeout or _cfg.COMMAND_TIMEOUT

    if args.tags:
        targets = [i.instance_id for i in catalog.list_instances(tag_filter=args.tags,
                                                                 states=("running",))]
        if not targets:
            print(f"error: no running instances match {args.tags}", file=sys.stderr)
            return EXIT_FAIL
    else:
        targets = _split_targets(args.targets) or [_pick_instance(session)]

    if len(targets) == 1:
        inst = catalog.require_online(catalog.resolve(targets[0]))
        res = executor.run(inst.instance_id, [args.shell_command], timeout)
        sys.stdout.write(res.stdout)
        if res.stderr:
            sys.stderr.write(res.stderr)
        return EXIT_OK

    ids = [catalog.resolve(t).instance_id for t in targets]
    multi = executor.run_many(ids, [args.shell_command], timeout, concurrency=args.parallel)
    if args.verbose:
        for o in multi.succeeded:
            print(f"\n── {o.target} ──")
            sys.stdout.write(o.result.stdout)
    return _print_summary(multi)


# ── transfer ─────────────────────────────────────────────────────────────────

def cmd_transfer(args):
    from ssmxfer.core.router import TransferRouter
    from ssmxfer.errors import ValidationError
    from ssmxfer.models import Direction

    targets = _split_targets(args.target)
    if not targets:
        raise ValidationError("no target given")
    direction = Direction.UPLOAD if args.transfer_sub == "upload" else Direction.DOWNLOAD
    session = _session(args)
    router = TransferRouter(session)

    if len(targets) > 1:
        multi = router.transfer_many(targets, direction, args.source, args.destination,
                                     concurrency=args.parallel)
        return _print_summary(multi)

    if direction is Direction.UPLOAD:
        result = router.upload(targets[0], Path(args.source).expanduser(), args.destination)
    else:
        result = router.download(targets[0], args.source, Path(args.destination).expanduser())
    if result.cleanup_pending:
        _cleanup_hint(session.region, result.entry_id)
        return EXIT_FAIL
    return EXIT_OK


# ── ledger / cleanup ─────────────────────────────────────────────────────────

def cmd_ledger(args):
    from ssmxfer import config as _cfg
    from ssmxfer.state.registry import ResourceRegistry

    registry = ResourceRegistry()
    region = _cfg.normalize_region(args.region) if args.region else None
    entries = registry.list_all(region)
    print(f"Ledger: {registry.path}")
    if not entries:
        print("No outstanding entries.")
        return EXIT_OK
    rows = []
    for e in entries:
        rows.append((
            e.entry_id, e.raw_state or e.state.value, e.region, e.instance_id or "-", e.direction or "-",
            e.owner or "-", _age(e.created_at),
            e.staging.uri if e.staging else "-",
            e.grant.policy_name if e.grant else "-",
        ))
    _print_table(["ENTRY", "STATE", "REGION", "INSTANCE", "DIR", "OWNER", "AGE",
                  "OBJECT", "GRANT"], rows)
    return EXIT_OK


def _print_report(report, dry_run: bool) -> int:
    verb = "would release" if dry_run else "released"
    print(f"\n{verb}: {len(report.removed)}  failed: {len(report.failed)}  "
          f"skipped: {len(report.skipped)}  multipart uploads aborted: {report.aborted_uploads}")
    for entry_id, msg in report.failed:
        print(f"  ✗ {entry_id}: {msg}", file=sys.stderr)
    return EXIT_OK if report.ok else EXIT_FAIL


def cmd_cleanup(args):
    from ssmxfer.operations.cleanup import cleanup

    report = cleanup(_session(args), dry_run=args.dry_run)
    return _print_report(report, args.dry_run)


def cmd_emergency_cleanup(args):
    from ssmxfer.operations.cleanup import emergency_cleanup

    session = _session(args)
    if not args.yes and not args.dry_run:
        if not sys.stdin.isatty():
            print("error: emergency-cleanup needs --yes when not run interactively",
                  file=sys.stderr)
            return EXIT_FAIL
        answer = input(f"Release EVERY ledger entry in {session.region}, including ones "
                       f"owned by running transfers? [y/N]: ").strip().lower()
        if answer not in ("y", "yes"):
            print("Aborted.")
            return EXIT_FAIL
    report = emergency_cleanup(session, dry_run=args.dry_run)
    return _print_report(report, args.dry_run)


# ── main ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-r", "--region", metavar="REGION",
                        help="AWS region or shortcode (use1, cac1, …)")
    common.add_argument("--profile", metavar="NAME", default="default",
                        help="Config profile to use (default: default)")
    common.add_argument("--aws-profile", metavar="NAME", default=None,
                        help="Named AWS credentials profile")
    common.add_argument("-v", "--verbose", action="store_true",
                        help="Show extra output")

    parser = argparse.ArgumentParser(
        prog="ssmxfer",
        description="File transfer and command execution over the SSM session broker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # ── init ──────────────────────────────────────────────────────────────────
    init_p = subparsers.add_parser("init", parents=[common],
                                   help="Create the global config.yaml",
                                   description="Write a starter config.yaml in the config directory.")
    init_p.add_argument("--force", action="store_true", help="Overwrite existing config.yaml")
    init_p.add_argument("-n", "--dry-run", action="store_true",
                        help="Preview without writing files")

    # ── list / status ─────────────────────────────────────────────────────────
    list_p = subparsers.add_parser("list", parents=[common],
                                   help="List instances and agent status")
    list_p.add_argument("--tags", metavar="K=V[,K=V]", help="Filter by tags")

    status_p = subparsers.add_parser("status", parents=[common],
                                     help="Show one instance in detail")
    status_p.add_argument("target", nargs="?", metavar="TARGET",
                          help="Instance id or Name tag (omit to choose interactively)")

    # ── exec ──────────────────────────────────────────────────────────────────
    exec_p = subparsers.add_parser("exec", parents=[common],
                                   help="Run a shell command on one or more instances")
    exec_p.add_argument("shell_command", metavar="COMMAND", help="Shell command (quote it)")
    exec_p.add_argument("-t", "--targets", metavar="ID[,ID]",
                        help="Instance ids / Name tags, comma separated")
    exec_p.add_argument("--tags", metavar="K=V[,K=V]",
                        help="Run on every running instance matching these tags")
    exec_p.add_argument("-p", "--parallel", type=int, metavar="N", default=None,
                        help="Concurrent targets (default: max_workers)")
    exec_p.add_argument("--timeout", type=int, metavar="SECONDS", default=None,
                        help="Per-target timeout (default: command_timeout)")

    # ── transfer ──────────────────────────────────────────────────────────────
    transfer_p = subparsers.add_parser("transfer", help="Upload or download a file")
    transfer_sub = transfer_p.add_subparsers(dest="transfer_sub", metavar="ACTION", required=True)
    up_p = transfer_sub.add_parser("upload", parents=[common],
                                   help="Copy a local file to an instance")
    up_p.add_argument("target", metavar="TARGET", help="Instance id(s) or Name tag(s), comma separated")
    up_p.add_argument("source", metavar="LOCAL")
    up_p.add_argument("destination", metavar="REMOTE", help="Absolute path on the instance")
    down_p = transfer_sub.add_parser("download", parents=[common],
                                     help="Copy a file from an instance")
    down_p.add_argument("target", metavar="TARGET", help="Instance id(s) or Name tag(s), comma separated")
    down_p.add_argument("source", metavar="REMOTE", help="Absolute path on the instance")
    down_p.add_argument("destination", metavar="LOCAL",
                        help="Local file (a directory when several targets are given)")
    for p in (up_p, down_p):
        p.add_argument("-p", "--parallel", type=int, metavar="N", default=None,
                       help="Concurrent targets (default: max_workers)")

    # ── ledger / cleanup ──────────────────────────────────────────────────────
    subparsers.add_parser("ledger", parents=[common],
                          help="Show outstanding ledger entries")
    clean_p = subparsers.add_parser("cleanup", parents=[common],
                                    help="Release finished, expired and orphaned entries")
    clean_p.add_argument("-n", "--dry-run", action="store_true",
                         help="Show what would be released")
    emerg_p = subparsers.add_parser("emergency-cleanup", parents=[common],
                                    help="Release every ledger entry of a region")
    emerg_p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    emerg_p.add_argument("-n", "--dry-run", action="store_true",
                         help="Show what would be released")
    return parser


_HANDLERS = {
    "init": cmd_init,
    "list": cmd_list,
    "status": cmd_status,
    "exec": cmd_exec,
    "transfer": cmd_transfer,
    "ledger": cmd_ledger,
    "cleanup": cmd_cleanup,
    "emergency-cleanup": cmd_emergency_cleanup,
}


def main(argv=None) -> int:
    """CLI entry point for ssmxfer"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_FAIL

    from ssmxfer import config as _cfg
    from ssmxfer.errors import CancelledError, SsmxferError
    from ssmxfer.utils.logging import error, set_log_dir, set_verbose

    try:
        _cfg.load(args.profile)
        if args.region:
            args.region = _cfg.normalize_region(args.region)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAIL
    set_verbose(args.verbose or _cfg.DEBUG)
    set_log_dir(_cfg.get_log_dir())

    region = args.region or _cfg.REGION
    try:
        return _HANDLERS[args.command](args)
    except KeyboardInterrupt:
        print(file=sys.stderr)
        error("Interrupted.")
        print(f"If a staged transfer was running, run: ssmxfer cleanup --region {region}",
              file=sys.stderr)
        return EXIT_INTERRUPTED
    except CancelledError as e:
        error(str(e))
        return EXIT_FAIL
    except SsmxferError as e:
        error(str(e))
        stderr = getattr(e, "stderr", "")
        if stderr and args.verbose:
            print(stderr, file=sys.stderr)
        if e.entry_id:
            _cleanup_hint(region, e.entry_id)
        return EXIT_FAIL


if __name__ == "__main__":
    sys.exit(main())
