"""Provide the public `task_planner` package exports."""

from __future__ import annotations

from .task_engine import Task, TaskStatus, TaskTree

__all__ = ["Task", "TaskStatus", "TaskTree"]
