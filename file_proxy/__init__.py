"""Tenant-scoped, range-aware file proxy in front of an object store."""

from .app import create_app
from .proxy import FileProxy
from .settings import AuthSettings, ProxySettings, StorageSettings

__all__ = ["AuthSettings", "FileProxy", "ProxySettings", "StorageSettings", "create_app"]
