from .connection import (
    Base,
    close_db,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
    "close_db",
]
