"""
Durable storage for deals.

The file-backed event log is authoritative. Snapshots and the SQLite index
are projections rebuilt from it on demand.
"""

from dealbot.persistence.index import RelationalIndex
from dealbot.persistence.log_store import LogStore
from dealbot.persistence.manager import PersistenceManager

__all__ = [
    "LogStore",
    "PersistenceManager",
    "RelationalIndex",
]
