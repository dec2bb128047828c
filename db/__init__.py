from .db_manager import (
    get_db_session,
    get_engine,
    get_pool_status,
    get_session_factory,
    health_check,
    init_db,
    close_db,
)
from .config import get_db_settings

__all__ = [
    "get_db_session",
    "get_db_settings",
    "get_engine",
    "get_pool_status",
    "get_session_factory",
    "health_check",
    "init_db",
    "close_db",
]
