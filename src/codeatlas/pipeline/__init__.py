"""Task graph orchestration for repository analysis.

Modules
-------
base        : Task names, statuses, results, events and the session object
sources     : Per-session memo of fetched source data
tasks       : The five task bodies
orchestrator: Scheduling, regeneration and finalization
progress    : rich console rendering of task events
"""

from .base import DEPENDENCIES, AnalysisSession, TaskEvent, TaskName, TaskResult, TaskStatus
from .orchestrator import Orchestrator
from .progress import ConsoleProgress

__all__ = [
    "DEPENDENCIES",
    "AnalysisSession",
    "ConsoleProgress",
    "Orchestrator",
    "TaskEvent",
    "TaskName",
    "TaskResult",
    "TaskStatus",
]
