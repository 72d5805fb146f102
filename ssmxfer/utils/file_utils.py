"""
File utilities (MD5, chunking, remote path checks)
"""
import hashlib
import posixpath
from pathlib import Path

from ..errors import ValidationError


def md5_local(path: Path) -> str:
    """Compute MD5 hash of a local file"""
    h = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def iter_chunks(path: Path, size: int):
    """Yield successive `size`-byte blocks of a local file."""
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(size), b""):
            yield chunk


def check_remote_path(path: str) -> str:
    """
    Remote paths must be absolute POSIX paths; NUL and newlines are refused
    because they cannot survive a shell script line.
    """
    if not path or not path.startswith("/"):
        raise ValidationError(f"remote path must be absolute: {path!r}")
    if "\x00" in path or "\n" in path or "\r" in path:
        raise ValidationError(f"remote path contains control characters: {path!r}")
    normalized = posixpath.normpath(path)
    if normalized == "/":
        raise ValidationError("remote path must name a file, not '/'")
    return normalized


def human_size(n: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if n < 1024 or unit == "GB":
            return f"{n:.0f} {unit}" if unit == "B" else f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} GB"
