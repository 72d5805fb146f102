"""Utilities (logging, retry, file locking, file helpers, selection)"""
from .logging import log, vlog, warn, error, set_verbose
from .retry import retried, is_transient
from .file_utils import md5_local, check_remote_path

__all__ = [
    "log", "vlog", "warn", "error", "set_verbose",
    "retried", "is_transient",
    "md5_local", "check_remote_path",
]
