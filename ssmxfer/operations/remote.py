"""
Shell scripts run on the target for direct and staged transfers

Every builder returns a list of lines for the AWS-RunShellScript `commands`
parameter. Paths are always passed through shlex.quote.

Exit codes used by these scripts:
  2  remote file not found
  4  integrity check failed (checksum or size)
  5  object-store copy failed after all attempts
"""
import posixpath
import shlex

EXIT_NOT_FOUND = 2
EXIT_INTEGRITY = 4
EXIT_COPY_FAILED = 5

# The grant may need a few seconds more than IAM_PROPAGATION_DELAY to be visible.
COPY_ATTEMPTS = 6
COPY_RETRY_SLEEP = 5

q = shlex.quote


def part_path(dest: str, request_id: str) -> str:
    """Temporary name a file is assembled under before being moved into place."""
    return f"{dest}.ssmxfer-{request_id[:8]}.part"


# ── direct upload ───────────────────────────────────────────────────────────

def upload_begin(dest: str, tmp: str) -> list:
    return [
        "set -e",
        f"mkdir -p {q(posixpath.dirname(dest) or '/')}",
        f": > {q(tmp)}",
    ]


def upload_chunk(tmp: str, b64: str) -> list:
    return [
        "set -e",
        f"printf '%s' {q(b64)} | base64 -d >> {q(tmp)}",
    ]


def upload_finalize(tmp: str, dest: str, md5: str) -> list:
    return [
        f"actual=$(md5sum < {q(tmp)} | cut -d' ' -f1)",
        f"if [ \"$actual\" != {q(md5)} ]; then rm -f {q(tmp)}; "
        f"echo CHECKSUM_MISMATCH >&2; exit {EXIT_INTEGRITY}; fi",
        f"mv -f {q(tmp)} {q(dest)}",
    ]


def discard(tmp: str) -> list:
    return [f"rm -f {q(tmp)}"]


# ── direct download ─────────────────────────────────────────────────────────

def size_probe(src: str) -> list:
    return [
        f"if [ -f {q(src)} ]; then stat -c %s {q(src)}; "
        f"else echo FILE_NOT_FOUND >&2; exit {EXIT_NOT_FOUND}; fi",
    ]


def download_chunk(src: str, chunk_size: int, index: int) -> list:
    return [
        f"dd if={q(src)} bs={int(chunk_size)} skip={int(index)} count=1 2>/dev/null | base64 -w0",
    ]


def remote_md5(src: str) -> list:
    return [f"md5sum {q(src)} | cut -d' ' -f1"]


# ── staged ──────────────────────────────────────────────────────────────────

def _copy_loop(copy_cmd: str) -> str:
    return (
        f"n=0; until {copy_cmd}; do n=$((n+1)); "
        f"if [ \"$n\" -ge {COPY_ATTEMPTS} ]; then echo STAGING_COPY_FAILED >&2; "
        f"exit {EXIT_COPY_FAILED}; fi; sleep {COPY_RETRY_SLEEP}; done"
    )


def staged_pull(uri: str, tmp: str, dest: str, region: str, size: int) -> list:
    """Target copies the staged object down, checks its size, moves it into place."""
    return [
        "set -e",
        f"mkdir -p {q(posixpath.dirname(dest) or '/')}",
        _copy_loop(f"aws s3 cp {q(uri)} {q(tmp)} --region {q(region)} --only-show-errors"),
        f"if [ \"$(stat -c %s {q(tmp)})\" != {q(str(size))} ]; then rm -f {q(tmp)}; "
        f"echo SIZE_MISMATCH >&2; exit {EXIT_INTEGRITY}; fi",
        f"mv -f {q(tmp)} {q(dest)}",
    ]


def staged_push(src: str, uri: str, region: str) -> list:
    """Target copies a local file up to the staged object."""
    return [
        "set -e",
        f"if [ ! -f {q(src)} ]; then echo FILE_NOT_FOUND >&2; exit {EXIT_NOT_FOUND}; fi",
        _copy_loop(f"aws s3 cp {q(src)} {q(uri)} --region {q(region)} --only-show-errors"),
    ]
