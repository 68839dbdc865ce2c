"""Task graph vocabulary: task names, statuses, results, events and sessions.

The five analysis tasks and their dependencies are declared once, in
``DEPENDENCIES``. An ``AnalysisSession`` owns one ``TaskResult`` per task;
only the orchestrator writes to those slots, and only the coroutine
executing a task writes to that task's slot.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from ..models import CompositeAnalysis, RepositoryRef
from .sources import SourceData

logger = logging.getLogger("codeatlas.pipeline")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskName(str, Enum):
    """The nodes of the analysis DAG."""
    STRUCTURE = "structure"
    CODE_FACTS = "code_facts"
    CRITICAL_PATHS = "critical_paths"
    DEPENDENCY_GRAPH = "dependency_graph"
    TUTORIAL = "tutorial"

    @property
    def document_key(self) -> str:
        """Key of this task's section in the persisted document."""
        return to_camel(self.value)


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Dependency table
# ---------------------------------------------------------------------------

DEPENDENCIES: dict[TaskName, tuple[TaskName, ...]] = {
    TaskName.STRUCTURE: (),
    TaskName.CODE_FACTS: (),
    TaskName.CRITICAL_PATHS: (TaskName.CODE_FACTS,),
    TaskName.DEPENDENCY_GRAPH: (TaskName.CODE_FACTS,),
    TaskName.TUTORIAL: (TaskName.CRITICAL_PATHS,),
}


def dependents_of(name: TaskName) -> list[TaskName]:
    """Tasks that list *name* as a direct dependency."""
    return [task for task, deps in DEPENDENCIES.items() if name in deps]


# ---------------------------------------------------------------------------
# Results and events
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TaskResult(BaseModel):
    """State of one task within one session."""

    name: TaskName
    status: TaskStatus = TaskStatus.NOT_STARTED
    value: Any = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def done(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


class TaskEvent(BaseModel):
    """A status transition, delivered to session subscribers."""

    session_id: str
    task: TaskName
    status: TaskStatus
    error: Optional[str] = None
    duration_ms: float = 0.0
    timestamp: str = Field(default_factory=_now)


Listener = Callable[[TaskEvent], Any]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class AnalysisSession:
    """One in-memory run of the task graph for one repository request.

    Parameters
    ----------
    ref : RepositoryRef
        The repository being analysed.
    role : str
        Developer role the generated sections are tailored to.
    user_id : str
        Requesting identity; half of the result-store key.
    source : SourceData
        Memoised source data shared by every task in this session.
    """

    def __init__(
        self,
        *,
        ref: RepositoryRef,
        role: str,
        user_id: str,
        source: SourceData,
        from_cache: bool = False,
    ) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.ref = ref
        self.role = role
        self.user_id = user_id
        self.source = source
        self.from_cache = from_cache
        self.started_at = _now()
        self.results: dict[TaskName, TaskResult] = {
            name: TaskResult(name=name) for name in TaskName
        }
        self.warnings: list[str] = []
        self.cached: CompositeAnalysis | None = None
        # Set once any task has executed in this session.
        self.dirty = False

        self.cancel_event = asyncio.Event()
        self._listeners: list[Listener] = []
        self._inflight: dict[TaskName, asyncio.Task] = {}
        self._settled = asyncio.Event()
        self._settled.set()

    def __repr__(self) -> str:
        return f"<AnalysisSession {self.id} {self.ref} cancelled={self.cancelled}>"

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def running(self) -> list[TaskName]:
        return list(self._inflight)

    def status(self, name: TaskName) -> TaskStatus:
        return self.results[name].status

    def value(self, name: TaskName) -> Any:
        return self.results[name].value

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "repository": self.ref.canonical_url,
            "from_cache": self.from_cache,
            "cancelled": self.cancelled,
            "tasks": {name.value: r.status.value for name, r in self.results.items()},
            "warnings": list(self.warnings),
        }

    # -- progress -----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for task events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, name: TaskName) -> None:
        result = self.results[name]
        event = TaskEvent(
            session_id=self.id,
            task=name,
            status=result.status,
            error=result.error,
            duration_ms=result.duration_ms,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener %r failed", listener)
