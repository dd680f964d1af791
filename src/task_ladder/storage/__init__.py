"""Storage backends for the task engine."""

from task_ladder.storage.base import HistoryLog, OrderedTaskList, TaskBackend, TaskStore
from task_ladder.storage.files import FileBackend
from task_ladder.storage.sql import SqlBackend

__all__ = [
    "FileBackend",
    "HistoryLog",
    "OrderedTaskList",
    "SqlBackend",
    "TaskBackend",
    "TaskStore",
]
