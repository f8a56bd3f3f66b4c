"""
Run/job state store.

    >>> from pipewright.storage import StateStore
    >>> store = StateStore.from_url("sqlite:///:memory:")
    >>> store.create_schema()
    >>> run = store.create_run({"analyzer": {}, "evaluator": {}})
"""

from .models import Job, Run, utcnow
from .repository import StateStore, create_db_engine

__all__ = ["Job", "Run", "StateStore", "create_db_engine", "utcnow"]
