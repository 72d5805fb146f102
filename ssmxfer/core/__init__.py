"""Core functionality (AWS session, catalog, executor)"""
from .aws_clients import AWSSession
from .catalog import InstanceCatalog
from .executor import CommandExecutor

__all__ = ["AWSSession", "InstanceCatalog", "CommandExecutor"]
