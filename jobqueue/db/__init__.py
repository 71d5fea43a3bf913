"""
Database module.
Contains database connection, models, and the SQL job store.
"""

from jobqueue.db.connection import create_engine, create_session_factory
from jobqueue.db.models import Base, JobRecord
from jobqueue.db.repository import SqlJobStore

__all__ = [
    "create_engine",
    "create_session_factory",
    "SqlJobStore",
    "JobRecord",
    "Base",
]
