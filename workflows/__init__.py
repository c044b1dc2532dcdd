"""Workflow definitions module."""

from workflows.refresh_workflow import RefreshValueStoreWorkflow, TASK_QUEUE

__all__ = ["RefreshValueStoreWorkflow", "TASK_QUEUE"]
