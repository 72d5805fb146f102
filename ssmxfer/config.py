"""
Configuration constants for ssmxfer
Author: Younes Rahimi
"""
import os
import re
from pathlib import Path
from typing import Optional

# ══════════════════════════════════════════════════════════════════════════════
#  DEFAULTS  ── overridden by YAML config, apply_profile() or apply_env()
# ══════════════════════════════════════════════════════════════════════════════

REGION = "us-east-1"
# Named AWS profile, or None for the default credential chain
AWS_PROFILE: Optional[str] = None

# Files strictly below this size go through the command channel itself.
DIRECT_THRESHOLD = 1024 * 1024
# Raw bytes per direct-upload command (base64 grows it by 4/3)
DIRECT_UPLOAD_CHUNK = 32 * 1024
# Raw bytes per direct-download command; base64 output must stay below the
# 24,000 characters the broker returns inline.
DIRECT_DOWNLOAD_CHUNK = 16 * 1024

# Ephemeral grants
GRANT_TTL_MIN = 300
GRANT_TTL_MAX = 3600
IAM_PROPAGATION_DELAY = 5.0  # seconds to wait after attaching a grant
GRANT_POLICY_PREFIX = "ssmxfer-grant"

# Staging bucket
STAGING_BUCKET_PREFIX = "ssmxfer-staging"
STAGING_KEY_PREFIX = "ssmxfer/"
STAGING_EXPIRY_DAYS = 1
MULTIPART_ABORT_DAYS = 1
MULTIPART_THRESHOLD = 8 * 1024 * 1024
MULTIPART_CHUNK = 8 * 1024 * 1024

# Command channel
COMMAND_TIMEOUT = 300
TRANSFER_TIMEOUT = 1800
POLL_INITIAL_DELAY = 0.5  # seconds; doubles each poll
POLL_MAX_DELAY = 5.0
MAX_WORKERS = 10
MAX_WORKERS_CAP = 32

# Retry settings
RETRY_MAX = 5
RETRY_BASE_DELAY = 1.0  # seconds; doubles each attempt

# Registry
REGISTRY_LOCK_TIMEOUT = 30.0
STALE_ENTRY_AGE = 24 * 3600

# Logging
LOG_DIR: Optional[str] = None
DEBUG = False


# ══════════════════════════════════════════════════════════════════════════════
#  REGIONS
# ══════════════════════════════════════════════════════════════════════════════

REGION_SHORTCODES = {
    "cac1": "ca-central-1",
    "caw1": "ca-west-1",
    "use1": "us-east-1",
    "use2": "us-east-2",
    "usw1": "us-west-1",
    "usw2": "us-west-2",
    "euw1": "eu-west-1",
    "euw2": "eu-west-2",
    "euw3": "eu-west-3",
    "euc1": "eu-central-1",
    "euc2": "eu-central-2",
    "eun1": "eu-north-1",
    "eus1": "eu-south-1",
    "eus2": "eu-south-2",
    "aps1": "ap-south-1",
    "aps2": "ap-south-2",
    "apse1": "ap-southeast-1",
    "apse2": "ap-southeast-2",
    "apse3": "ap-southeast-3",
    "apse4": "ap-southeast-4",
    "apne1": "ap-northeast-1",
    "apne2": "ap-northeast-2",
    "apne3": "ap-northeast-3",
    "sae1": "sa-east-1",
    "afs1": "af-south-1",
    "mes1": "me-south-1",
    "mec1": "me-central-1",
}

_REGION_RE = re.compile(r"^[a-z]{2,3}(-[a-z]+)+-\d+$")


def normalize_region(region: str) -> str:
    """
    Map a shortcode (use1, cac1, …) to its full region name.
    Full names are returned unchanged. Raises ValueError for anything else.
    """
    value = (region or "").strip().lower()
    value = REGION_SHORTCODES.get(value, value)
    if not _REGION_RE.match(value):
        raise ValueError(f"invalid region: {region!r}")
    return value


# ══════════════════════════════════════════════════════════════════════════════
#  DYNAMIC PATHS  ── computed from the environment at call time
# ══════════════════════════════════════════════════════════════════════════════

def get_global_config_dir() -> Path:
    """Return the global config directory for ssmxfer."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "ssmxfer"
    if os.name == "nt":
        appdata = os.environ.get("APPDATA", "")
        if appdata:
            return Path(appdata) / "ssmxfer"
    return Path.home() / ".config" / "ssmxfer"


def get_state_dir() -> Path:
    """Return the directory holding the resource ledger."""
    xdg = os.environ.get("XDG_STATE_HOME", "")
    if xdg:
        return Path(xdg) / "ssmxfer"
    if os.name == "nt":
        local = os.environ.get("LOCALAPPDATA", "")
        if local:
            return Path(local) / "ssmxfer"
    return Path.home() / ".local" / "state" / "ssmxfer"


def get_registry_file() -> Path:
    """Return the ledger path; SSMXFER_REGISTRY_FILE overrides the default."""
    override = os.environ.get("SSMXFER_REGISTRY_FILE", "")
    if override:
        return Path(override).expanduser()
    return get_state_dir() / "registry.json"


def get_log_dir() -> Optional[Path]:
    """Return the log directory, or None when file logging is off."""
    value = os.environ.get("SSMXFER_LOG_DIR", "") or LOG_DIR
    return Path(value).expanduser() if value else None


# ══════════════════════════════════════════════════════════════════════════════
#  GLOBAL CONFIG FILE  ── $XDG_CONFIG_HOME/ssmxfer/config.yaml
# ══════════════════════════════════════════════════════════════════════════════

def get_global_config_file() -> Path:
    return get_global_config_dir() / "config.yaml"


def load_global_config(path: Optional[Path] = None) -> dict:
    """Load the global YAML config. A missing file yields an empty dict."""
    import yaml

    cfg_path = path or get_global_config_file()
    if not cfg_path.is_file():
        return {}
    try:
        with cfg_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"{cfg_path}: invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"{cfg_path}: expected a mapping at the top level")
    return data


def get_profile(data: dict, profile_name: str = "default") -> dict:
    """
    Extract a named profile from a config.yaml data dict.
    Falls back to the first profile if the named one is not found.
    Returns a flat profile dict merged with top-level defaults.
    """
    defaults = data.get("defaults", {}) or {}
    profiles = data.get("profiles", []) or []
    if not profiles:
        return dict(defaults)
    profile = next((p for p in profiles if p.get("name") == profile_name), None)
    if profile is None:
        profile = profiles[0]
    merged = dict(defaults)
    merged.update(profile)
    return merged


# ══════════════════════════════════════════════════════════════════════════════
#  APPLY PROFILE  ── mutates module-level variables
# ══════════════════════════════════════════════════════════════════════════════

_INT_KEYS = {
    "direct_threshold": "DIRECT_THRESHOLD",
    "direct_upload_chunk": "DIRECT_UPLOAD_CHUNK",
    "direct_download_chunk": "DIRECT_DOWNLOAD_CHUNK",
    "grant_ttl_min": "GRANT_TTL_MIN",
    "grant_ttl_max": "GRANT_TTL_MAX",
    "staging_expiry_days": "STAGING_EXPIRY_DAYS",
    "multipart_abort_days": "MULTIPART_ABORT_DAYS",
    "multipart_threshold": "MULTIPART_THRESHOLD",
    "multipart_chunk": "MULTIPART_CHUNK",
    "command_timeout": "COMMAND_TIMEOUT",
    "transfer_timeout": "TRANSFER_TIMEOUT",
    "max_workers": "MAX_WORKERS",
    "retry_max": "RETRY_MAX",
    "stale_entry_age": "STALE_ENTRY_AGE",
}

_FLOAT_KEYS = {
    "iam_propagation_delay": "IAM_PROPAGATION_DELAY",
    "poll_initial_delay": "POLL_INITIAL_DELAY",
    "poll_max_delay": "POLL_MAX_DELAY",
    "retry_base_delay": "RETRY_BASE_DELAY",
    "registry_lock_timeout": "REGISTRY_LOCK_TIMEOUT",
}

_STR_KEYS = {
    "staging_bucket_prefix": "STAGING_BUCKET_PREFIX",
    "staging_key_prefix": "STAGING_KEY_PREFIX",
    "grant_policy_prefix": "GRANT_POLICY_PREFIX",
}


def apply_profile(profile: dict):
    """
    Apply a profile dict to the module-level config variables.
    Supports keys: region, aws_profile, log_dir, debug, plus every lower-case
    name in _INT_KEYS / _FLOAT_KEYS / _STR_KEYS. Unknown keys are ignored.
    """
    global REGION, AWS_PROFILE, LOG_DIR, DEBUG, MAX_WORKERS
    g = globals()

    if profile.get("region"):
        REGION = normalize_region(str(profile["region"]))
    if "aws_profile" in profile:
        AWS_PROFILE = str(profile["aws_profile"]) if profile["aws_profile"] else None
    if "log_dir" in profile:
        LOG_DIR = str(profile["log_dir"]) if profile["log_dir"] else None
    if "debug" in profile:
        DEBUG = bool(profile["debug"])

    for key, name in _INT_KEYS.items():
        if key in profile:
            g[name] = int(profile[key])
    for key, name in _FLOAT_KEYS.items():
        if key in profile:
            g[name] = float(profile[key])
    for key, name in _STR_KEYS.items():
        if key in profile:
            g[name] = str(profile[key])

    MAX_WORKERS = max(1, min(MAX_WORKERS, MAX_WORKERS_CAP))


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env(environ: Optional[dict] = None):
    """Apply environment overrides; these win over the YAML config."""
    global REGION, DIRECT_THRESHOLD, LOG_DIR, DEBUG
    from .utils.logging import warn

    env = os.environ if environ is None else environ

    region = env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION")
    if region:
        try:
            REGION = normalize_region(region)
        except ValueError:
            warn(f"Ignoring invalid AWS region in environment: {region!r}")

    raw = env.get("SSMXFER_DIRECT_THRESHOLD")
    if raw:
        try:
            value = int(raw)
            if value < 0:
                raise ValueError(raw)
            DIRECT_THRESHOLD = value
        except ValueError:
            warn(f"Invalid SSMXFER_DIRECT_THRESHOLD={raw!r}, keeping {DIRECT_THRESHOLD}")

    if env.get("SSMXFER_LOG_DIR"):
        LOG_DIR = env["SSMXFER_LOG_DIR"]
    if env.get("SSMXFER_DEBUG"):
        DEBUG = _env_bool(env["SSMXFER_DEBUG"])


def load(profile_name: str = "default", path: Optional[Path] = None) -> dict:
    """Load config.yaml, apply the named profile, then the environment."""
    data = load_global_config(path)
    profile = get_profile(data, profile_name)
    apply_profile(profile)
    apply_env()
    return profile
