"""
Logging utilities for ssmxfer
"""
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

_verbose = False
_log_file: Optional[Path] = None
_lock = threading.Lock()


def set_verbose(verbose: bool):
    """Set the verbose flag"""
    global _verbose
    _verbose = verbose


def is_verbose() -> bool:
    return _verbose


def set_log_dir(log_dir: Optional[Path]):
    """Also append every line to <log_dir>/ssmxfer-YYYYMMDD.log (None turns it off)."""
    global _log_file
    if log_dir is None:
        _log_file = None
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    _log_file = log_dir / f"ssmxfer-{datetime.now().strftime('%Y%m%d')}.log"


def _emit(line: str, stream):
    with _lock:
        print(line, file=stream, flush=True)
        if _log_file is not None:
            try:
                with _log_file.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError:
                pass


def log(msg: str):
    """Log a message with timestamp"""
    ts = datetime.now().strftime("%H:%M:%S")
    _emit(f"[{ts}] {msg}", sys.stdout)


def vlog(msg: str):
    """Log a verbose message (only if verbose mode is enabled)"""
    if _verbose:
        log(msg)


def warn(msg: str):
    """Log a warning message"""
    ts = datetime.now().strftime("%H:%M:%S")
    _emit(f"[{ts}] ⚠  {msg}", sys.stderr)


def error(msg: str):
    """Log an error message to stderr"""
    ts = datetime.now().strftime("%H:%M:%S")
    _emit(f"[{ts}] ✗  {msg}", sys.stderr)
