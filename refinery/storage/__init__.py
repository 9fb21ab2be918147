"""Storage layer for refinery."""

from .audit_trail import AuditTrail
from .memory_store import MemoryStore
from .schema import SCHEMA_VERSION
from .sqlite import SQLiteStorage

__all__ = ["AuditTrail", "MemoryStore", "SQLiteStorage", "SCHEMA_VERSION"]
