"""Operations (credentials, staging, remote scripts, cleanup)"""
from .credentials import EphemeralCredentialManager, GrantScope
from .staging import StagingStore
from .cleanup import CleanupReport, cleanup, emergency_cleanup

__all__ = [
    "EphemeralCredentialManager", "GrantScope",
    "StagingStore",
    "CleanupReport", "cleanup", "emergency_cleanup",
]
