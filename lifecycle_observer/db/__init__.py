"""
Database Package
================

Exports key database components.
"""

from lifecycle_observer.db.models import (
    Base,
    ExecutionModel,
    ImprovementModel,
    AlertModel,
    DetectionCooldownModel,
)
from lifecycle_observer.db.connection import init_db, get_session_maker, get_engine, dispose_db
from lifecycle_observer.db.repository import SqlStorage
