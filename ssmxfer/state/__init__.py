"""State management (resource ledger)"""
from .registry import ResourceRegistry, current_owner, owner_alive

__all__ = ["ResourceRegistry", "current_owner", "owner_alive"]
