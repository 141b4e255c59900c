"""FastAPI dependencies."""

from typing import Optional

from fastapi import Depends

from reconciler.db.repository import CatalogStore, SqlCatalogStore
from reconciler.worker.tasks import TaskRunner

_store: Optional[CatalogStore] = None
_task_runner: Optional[TaskRunner] = None


def get_store() -> CatalogStore:
    """Dependency for the catalog store."""
    global _store
    if _store is None:
        _store = SqlCatalogStore()
    return _store


def get_task_runner(store: CatalogStore = Depends(get_store)) -> TaskRunner:
    """Dependency for the shared feed-run runner."""
    global _task_runner
    if _task_runner is None or _task_runner.store is not store:
        _task_runner = TaskRunner(store)
    return _task_runner
