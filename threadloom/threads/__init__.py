"""Conversation threads and their SQLite persistence."""

from .cleanup import ThreadCleanupService
from .models import StoredMessage, ThreadSummary
from .registry import StoreRegistry
from .store import SQLiteThreadStore
from .thread import ConversationThread, MessageView, RunStatus, Usage

__all__ = [
    "ConversationThread",
    "MessageView",
    "RunStatus",
    "SQLiteThreadStore",
    "StoreRegistry",
    "StoredMessage",
    "ThreadCleanupService",
    "ThreadSummary",
    "Usage",
]
