"""Database engine, session factory and declarative base."""

from radarscan.db.base import Base
from radarscan.db.session import AsyncSessionLocal, engine

__all__ = ["AsyncSessionLocal", "Base", "engine"]
