"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    close_db,
    create_engine,
    create_session_factory,
    get_session,
    init_db,
    session_scope,
)
from .metrics import Metrics
from .projects import Maintainer, ProjectConfig, ProjectConfigService

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "create_engine",
    "create_session_factory",
    "get_session",
    "session_scope",
    "init_db",
    "close_db",
    # Metrics
    "Metrics",
    # Projects
    "Maintainer",
    "ProjectConfig",
    "ProjectConfigService",
]
