"""abo: agent decision and approval engine for subscription businesses."""

__version__ = "0.1.0"

from .engine import Engine, build_engine, open_engine
from .schemas.events import Event, HandleResult

__all__ = ["Engine", "Event", "HandleResult", "build_engine", "open_engine"]
