"""
FastAPI dependency injection providers.

Routes take the engine and the runtime through ``Depends`` so tests can swap
them with ``app.dependency_overrides``:

    >>> app.dependency_overrides[get_runtime] = lambda: CoreRuntime(test_engine)
"""

from __future__ import annotations

import threading
from typing import Generator, Optional

from sqlalchemy.engine import Engine

from channel_core.db.engine import engine
from channel_core.runtime import CoreRuntime

_runtime: Optional[CoreRuntime] = None
_runtime_lock = threading.Lock()


def get_db_engine() -> Generator[Engine, None, None]:
    """
    Provide the process-wide database engine.

    Yields:
        Engine: SQLAlchemy database engine
    """
    yield engine


def get_runtime() -> CoreRuntime:
    """
    Provide the process-wide runtime, building it on first use.

    Returns:
        CoreRuntime: The shared component graph
    """
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = CoreRuntime(engine)
        return _runtime
