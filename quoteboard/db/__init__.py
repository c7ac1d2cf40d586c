"""Database package: async SQLAlchemy models and connection management."""

from quoteboard.db.connection import close_db, get_session, get_session_factory, init_db
from quoteboard.db.models import Base

__all__ = ["Base", "close_db", "get_session", "get_session_factory", "init_db"]
