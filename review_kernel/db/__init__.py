"""Database layer - engine, base classes, types, and append-only listeners."""

from review_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from review_kernel.db.engine import create_tables, get_engine, get_session
from review_kernel.db.types import LongText, Sequence, ShortCode, Tokens

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
    "Tokens",
    "Sequence",
    "ShortCode",
    "LongText",
]
