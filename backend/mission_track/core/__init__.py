"""
Mission Track - Core Package
============================

Domain components: storage, membership checks, encryption, notification
fan-out, the realtime layer and the orchestrator that ties them together.
"""

from mission_track.core.config import settings
from mission_track.core.database import Base, close_db, init_db

__all__ = ["Base", "close_db", "init_db", "settings"]
