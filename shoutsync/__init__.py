"""Realtime cache synchronisation for the shouts map client."""
from .config import Settings, configure_logging, get_settings
from .context import SyncContext, resolve_invalidation_bus

__all__ = ["Settings", "SyncContext", "configure_logging", "get_settings", "resolve_invalidation_bus"]
