"""Provider clients, persistence and report writers."""

from .reports import write_report
from .store import JsonFileStore, MemoryStore, Store

__all__ = ["JsonFileStore", "MemoryStore", "Store", "write_report"]
