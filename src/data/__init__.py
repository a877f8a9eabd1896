from .database import Database
from .models import (
    ActiveSession, AppState, Chain, ChainTreeNode, ChainType, CompletionHistory,
    ScheduledSession, TaskTimeStats,
)
from .repository import Repository
from .storage import Storage, StorageError

__all__ = [
    "Database", "ActiveSession", "AppState", "Chain", "ChainTreeNode", "ChainType",
    "CompletionHistory", "ScheduledSession", "TaskTimeStats", "Repository",
    "Storage", "StorageError",
]
