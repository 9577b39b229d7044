"""
Database package for Iudex.
"""

from .base import Base, create_db_engine, get_db, get_engine, get_session_local, init_database
from .models import (
    TestHistoryModel,
    TestModel,
    TestResultModel,
    TestRunModel,
    TestSuiteModel,
)

__all__ = [
    "Base",
    "create_db_engine",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_database",
    "TestHistoryModel",
    "TestModel",
    "TestResultModel",
    "TestRunModel",
    "TestSuiteModel",
]
