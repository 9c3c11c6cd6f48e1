"""Hierarchical task tree engine.

This package provides the task model, the derived tree index, the ordering,
cycle and completion rules, the mutation engine with rollback, change-feed
reconciliation, and the file-backed store and async session that persist it.
"""

from .engine import DeletePolicy, Mutation, TaskTree
from .errors import TaskEngineError
from .model import Task, TaskStatus

__all__ = ["DeletePolicy", "Mutation", "Task", "TaskEngineError", "TaskStatus", "TaskTree"]
