"""
Retry decorator for AWS control-plane calls
"""
import functools
import time
from botocore.exceptions import ClientError, ConnectionClosedError, EndpointConnectionError
from .logging import log, warn
from .. import config as _cfg

TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "InternalError",
    "InternalFailure",
})


def is_transient(exc: Exception) -> bool:
    """True for throttling, 5xx and connection-level failures."""
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError)):
        return True
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        if err.get("Code") in TRANSIENT_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500
    return False


def retried(fn):
    """Decorator: retry fn up to RETRY_MAX times with exponential back-off.

    Only transient failures are retried; everything else propagates at once.
    """

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        delay = _cfg.RETRY_BASE_DELAY
        attempts = max(1, _cfg.RETRY_MAX)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                if attempt == attempts or not is_transient(exc):
                    raise
                warn(f"{fn.__name__} failed (attempt {attempt}/{attempts}): {exc}")
                log(f"  retrying in {delay:.0f}s …")
                time.sleep(delay)
                delay = min(delay * 2, 60)

    return wrapper
