"""SQLAlchemy plumbing: declarative base, column types, engine, write guards."""

from apparel_kernel.db.base import Base, PortableDecimal, TrackedBase, UUIDString
from apparel_kernel.db.engine import create_tables, get_engine, get_session

__all__ = [
    "Base",
    "PortableDecimal",
    "TrackedBase",
    "UUIDString",
    "create_tables",
    "get_engine",
    "get_session",
]
