"""The five analysis task bodies.

Each runner reads its dependencies' values from the session (the
orchestrator has already checked they succeeded), pulls source data
through the session's memo and returns the value for its own slot.
Runners never write to the session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..analysis.patterns import analyze
from ..llm import prompts
from ..llm.gateway import GenerationGateway
from ..models import CodeFacts
from .base import AnalysisSession, TaskName

logger = logging.getLogger("codeatlas.pipeline.tasks")

TaskRunner = Callable[[AnalysisSession, GenerationGateway], Awaitable[Any]]


async def _generate_section(
    session: AnalysisSession,
    gateway: GenerationGateway,
    prompt: str,
    fallback: dict[str, Any],
) -> dict[str, Any]:
    value = await gateway.generate_json(prompt, fallback, cancel_event=session.cancel_event)
    if not isinstance(value, dict):
        logger.warning("Model returned %s instead of an object; using fallback", type(value).__name__)
        return fallback
    return value


async def run_structure(session: AnalysisSession, gateway: GenerationGateway) -> dict[str, Any]:
    metadata, tree, changed = await asyncio.gather(
        session.source.metadata(),
        session.source.tree(),
        session.source.changed_files(),
    )
    return await _generate_section(
        session,
        gateway,
        prompts.structure_prompt(metadata, tree, changed),
        prompts.default_structure(metadata.name or session.ref.name),
    )


async def run_code_facts(session: AnalysisSession, gateway: GenerationGateway) -> CodeFacts:
    samples = await session.source.samples()
    return analyze(samples)


async def run_critical_paths(session: AnalysisSession, gateway: GenerationGateway) -> dict[str, Any]:
    code_facts: CodeFacts = session.value(TaskName.CODE_FACTS)
    changed = await session.source.changed_files()
    samples = await session.source.samples()
    return await _generate_section(
        session,
        gateway,
        prompts.critical_paths_prompt(session.role, changed, samples, code_facts),
        prompts.default_critical_paths(changed),
    )


async def run_dependency_graph(session: AnalysisSession, gateway: GenerationGateway) -> dict[str, Any]:
    code_facts: CodeFacts = session.value(TaskName.CODE_FACTS)
    tree = await session.source.tree()
    return await _generate_section(
        session,
        gateway,
        prompts.dependency_graph_prompt(code_facts, tree),
        prompts.default_dependency_graph(code_facts),
    )


async def run_tutorial(session: AnalysisSession, gateway: GenerationGateway) -> dict[str, Any]:
    critical = session.value(TaskName.CRITICAL_PATHS) or {}
    paths = critical.get("criticalPaths")
    if not isinstance(paths, list):
        paths = []
    metadata = await session.source.metadata()
    return await _generate_section(
        session,
        gateway,
        prompts.tutorial_prompt(session.role, metadata, paths),
        prompts.default_tutorial(session.role),
    )


RUNNERS: dict[TaskName, TaskRunner] = {
    TaskName.STRUCTURE: run_structure,
    TaskName.CODE_FACTS: run_code_facts,
    TaskName.CRITICAL_PATHS: run_critical_paths,
    TaskName.DEPENDENCY_GRAPH: run_dependency_graph,
    TaskName.TUTORIAL: run_tutorial,
}
