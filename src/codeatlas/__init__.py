"""codeatlas: incremental, demand-driven analysis of GitHub repositories.

Modules
-------
source/    : GitHub fetcher (metadata, tree, changed-file ranking, content)
analysis/  : Local lexical pattern scan producing ``CodeFacts``
llm/       : Text backends, generation gateway, prompts and fallbacks
pipeline/  : Task graph orchestrator, sessions and progress events
store      : Result store for analyses, chat histories and usage counters
assistant  : Metered Q&A and quizzes over a finished analysis
"""

from .assistant import ChatReply, CodebaseAssistant, QuizQuestion
from .config import Settings, configure_logging
from .factory import build_assistant, build_orchestrator
from .models import CodeFacts, CompositeAnalysis, RepositoryRef, StoredAnalysis
from .pipeline import AnalysisSession, Orchestrator, TaskName, TaskStatus
from .source.github import parse_repository_ref
from .store import InMemoryResultStore, JsonFileResultStore, ResultStore

__version__ = "0.1.0"

__all__ = [
    "AnalysisSession",
    "ChatReply",
    "CodeFacts",
    "CodebaseAssistant",
    "CompositeAnalysis",
    "InMemoryResultStore",
    "JsonFileResultStore",
    "Orchestrator",
    "QuizQuestion",
    "RepositoryRef",
    "ResultStore",
    "Settings",
    "StoredAnalysis",
    "TaskName",
    "TaskStatus",
    "build_assistant",
    "build_orchestrator",
    "configure_logging",
    "parse_repository_ref",
]
