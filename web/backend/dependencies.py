#!/usr/bin/env python3
"""
FastAPI dependencies for dependency injection.
"""

import logging
import threading
from typing import Optional

from notification.service import NotificationEngine
from .config import get_config

logger = logging.getLogger(__name__)


class EngineManager:
    """Owns the process-wide NotificationEngine used by the API."""

    def __init__(self):
        self._engine: Optional[NotificationEngine] = None
        self._lock = threading.Lock()

    def get_engine(self) -> NotificationEngine:
        with self._lock:
            if self._engine is None:
                self._engine = NotificationEngine.from_config(get_config())
                self._engine.start()
                self._engine.recover()
            return self._engine

    def set_engine(self, engine: Optional[NotificationEngine]) -> None:
        with self._lock:
            self._engine = engine

    def shutdown(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.stop()
                self._engine = None


# Global engine manager instance
_engine_manager = EngineManager()


def get_engine() -> NotificationEngine:
    """
    FastAPI dependency that returns the notification engine.

    Usage:
        @app.get("/endpoint")
        def my_endpoint(engine: NotificationEngine = Depends(get_engine)):
            ...
    """
    return _engine_manager.get_engine()


def set_engine(engine: Optional[NotificationEngine]) -> None:
    """Install a pre-built engine (tests, embedding applications)."""
    _engine_manager.set_engine(engine)


def shutdown_engine() -> None:
    _engine_manager.shutdown()
