from coldstore.db.base import Base
from coldstore.db.session import AsyncSessionLocal, engine, get_db

__all__ = ["AsyncSessionLocal", "Base", "engine", "get_db"]
