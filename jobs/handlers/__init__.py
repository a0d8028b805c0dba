"""
Job handlers, one per job kind, selected by SourceRecord.kind.
"""

from typing import Dict, Iterable
from models.base import JobKind
from jobs.handlers.base import JobHandler
from jobs.handlers.change_event import ChangeEventHandler
from jobs.handlers.extraction import ExtractionHandler


def build_registry(handlers: Iterable[JobHandler]) -> Dict[JobKind, JobHandler]:
    """Index handlers by kind; a kind may only be registered once"""
    registry: Dict[JobKind, JobHandler] = {}
    for handler in handlers:
        if handler.kind in registry:
            raise ValueError(f"Duplicate handler for job kind {handler.kind.name}")
        registry[handler.kind] = handler
    return registry


__all__ = [
    "JobHandler",
    "ChangeEventHandler",
    "ExtractionHandler",
    "build_registry",
]
