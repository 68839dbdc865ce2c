"""Tests for the task graph orchestrator (mocked fetcher, scripted backend)."""

from __future__ import annotations

import asyncio
import io
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from rich.console import Console

from codeatlas.analysis.patterns import analyze
from codeatlas.errors import (
    BackendError,
    DependencyFailed,
    DependencyNotReady,
    InvalidRepositoryRef,
    SessionCancelled,
    SourceUnavailable,
    StoreError,
    TaskAlreadyRunning,
)
from codeatlas.llm.backends import TextBackend
from codeatlas.llm.gateway import CredentialPool, GenerationGateway
from codeatlas.models import (
    ChangedFile,
    CodeFacts,
    CompositeAnalysis,
    FileSample,
    RepoMetadata,
    TreeNode,
)
from codeatlas.pipeline import ConsoleProgress, Orchestrator, TaskName, TaskStatus
from codeatlas.source.github import GitHubFetcher
from codeatlas.store import InMemoryResultStore

URL = "https://github.com/acme/widgets"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

METADATA = RepoMetadata(name="widgets", full_name="acme/widgets", language="TypeScript")
TREE = [
    TreeNode(
        path="src",
        name="src",
        type="dir",
        children=[TreeNode(path="src/a.ts", name="a.ts", type="file")],
    ),
]
CHANGED = [
    ChangedFile(path="src/a.ts", change_count=5),
    ChangedFile(path="src/b.ts", change_count=2),
]
SAMPLES = [
    FileSample(
        path="src/a.ts",
        content="import { b } from './b';\nexport function a() { return b(); }\n",
        change_count=5,
    ),
    FileSample(path="src/b.ts", content="export function b() { return 1; }\n", change_count=2),
]

STRUCTURE = {
    "architecture": {"pattern": "Layered", "description": "UI over services", "mainComponents": ["a"]},
    "systemMap": {"nodes": [], "connections": []},
    "criticalComponents": ["src/a.ts"],
    "strengths": [],
    "improvements": [],
}
CRITICAL = {
    "criticalPaths": [{"name": "Render", "description": "", "importance": 9, "files": ["src/a.ts"], "dataFlow": []}],
    "frequentlyChangedFiles": [],
    "keyBusinessLogic": [],
    "entryPoints": ["src/a.ts"],
}
GRAPH = {
    "dependencyGraph": {"nodes": [{"id": "src/a.ts"}], "edges": []},
    "circularDependencies": [],
    "recommendations": [],
}
TUTORIAL = {"title": "Rendering", "overview": "", "prerequisites": [], "steps": [], "additionalNotes": ""}

# Prompt markers, one per generated section.
ARCHITECT = "software architect"
ANALYST = "code analyst"
DEPENDENCIES = "dependency analysis"
WRITER = "technical writer"


class RoutedBackend(TextBackend):
    """Answers by prompt marker; optional gates hold a marker's answer back."""

    name = "routed"

    def __init__(self, routes: dict[str, object]) -> None:
        super().__init__(model="fake")
        self.routes = routes
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[str] = []

    async def complete(self, prompt: str, *, credential: str) -> str:
        marker = next(m for m in self.routes if m in prompt)
        self.calls.append(marker)
        gate = self.gates.get(marker)
        if gate is not None:
            await gate.wait()
        answer = self.routes[marker]
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def backend():
    return RoutedBackend({
        ARCHITECT: f"```json\n{json.dumps(STRUCTURE)}\n```",
        ANALYST: json.dumps(CRITICAL),
        DEPENDENCIES: f"Here is the graph:\n{json.dumps(GRAPH)}",
        WRITER: json.dumps(TUTORIAL),
    })


@pytest.fixture
def fetcher():
    f = MagicMock(spec=GitHubFetcher)
    f.get_metadata = AsyncMock(return_value=METADATA)
    f.get_tree = AsyncMock(return_value=TREE)
    f.get_changed_files = AsyncMock(return_value=CHANGED)
    f.get_file_samples = AsyncMock(return_value=SAMPLES)
    return f


@pytest.fixture
def store():
    return InMemoryResultStore()


@pytest.fixture
def orch(fetcher, backend, store):
    gateway = GenerationGateway(backend, CredentialPool(["k1", "k2"]))
    return Orchestrator(fetcher, gateway, store)


def fetch_counts(fetcher) -> tuple[int, ...]:
    return (
        fetcher.get_metadata.await_count,
        fetcher.get_tree.await_count,
        fetcher.get_changed_files.await_count,
        fetcher.get_file_samples.await_count,
    )


async def settle_until(predicate, rounds: int = 500) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------

class TestFullRun:
    @pytest.mark.asyncio
    async def test_every_task_succeeds_and_is_persisted(self, orch, store, fetcher):
        session = await orch.start_session(URL, "backend", user_id="u1")
        assert session.from_cache is False
        await orch.wait(session)

        assert all(r.status is TaskStatus.SUCCEEDED for r in session.results.values())
        assert isinstance(session.value(TaskName.CODE_FACTS), CodeFacts)
        assert session.value(TaskName.STRUCTURE) == STRUCTURE

        analysis = await orch.finalize(session)
        doc = analysis.to_document()
        assert {"structure", "codeFacts", "criticalPaths", "dependencyGraph", "tutorial"} <= set(doc)
        assert doc["missingSections"] == []
        assert doc["repository"]["name"] == "widgets"
        assert store.get(URL, "u1") is not None
        # every source item fetched exactly once
        assert fetch_counts(fetcher) == (1, 1, 1, 1)

    @pytest.mark.asyncio
    async def test_tasks_start_only_after_their_dependencies(self, orch):
        events = []
        session = await orch.start_session(URL, user_id="u1", listener=events.append)
        await orch.wait(session)

        def index(task, status):
            return next(i for i, e in enumerate(events) if e.task is task and e.status is status)

        assert index(TaskName.CODE_FACTS, TaskStatus.SUCCEEDED) < index(TaskName.CRITICAL_PATHS, TaskStatus.RUNNING)
        assert index(TaskName.CODE_FACTS, TaskStatus.SUCCEEDED) < index(TaskName.DEPENDENCY_GRAPH, TaskStatus.RUNNING)
        assert index(TaskName.CRITICAL_PATHS, TaskStatus.SUCCEEDED) < index(TaskName.TUTORIAL, TaskStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_no_barrier_between_stages(self, orch, backend):
        backend.gates[ARCHITECT] = asyncio.Event()
        session = await orch.start_session(URL, user_id="u1")

        await settle_until(lambda: session.status(TaskName.TUTORIAL) is TaskStatus.SUCCEEDED)
        assert session.status(TaskName.STRUCTURE) is TaskStatus.RUNNING

        backend.gates[ARCHITECT].set()
        await orch.wait(session)
        assert session.status(TaskName.STRUCTURE) is TaskStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_analyze_convenience(self, orch):
        analysis = await orch.analyze(URL, "frontend", user_id="u1")
        assert analysis.complete
        assert analysis.role == "frontend"
        assert analysis.repository_url == URL

    @pytest.mark.asyncio
    async def test_unparseable_output_uses_fallback(self, orch, backend):
        backend.routes[DEPENDENCIES] = "I could not build a graph for this repository."
        session = await orch.start_session(URL, user_id="u1")
        await orch.wait(session)

        graph = session.results[TaskName.DEPENDENCY_GRAPH]
        assert graph.status is TaskStatus.SUCCEEDED
        node_ids = {n["id"] for n in graph.value["dependencyGraph"]["nodes"]}
        assert {"src/a.ts", "src/b.ts", "./b"} <= node_ids
        assert graph.value["recommendations"]

    @pytest.mark.asyncio
    async def test_invalid_url(self, orch):
        with pytest.raises(InvalidRepositoryRef):
            await orch.start_session("https://example.com/acme/widgets", user_id="u1")


# ---------------------------------------------------------------------------
# Failure isolation and caching
# ---------------------------------------------------------------------------

class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_structure_failure_is_cached_as_a_gap(self, orch, backend, fetcher, store):
        backend.routes[ARCHITECT] = BackendError("HTTP 429", status=429, body="quota")
        session = await orch.start_session(URL, user_id="u1")
        await orch.wait(session)

        structure = session.results[TaskName.STRUCTURE]
        assert structure.status is TaskStatus.FAILED
        assert structure.error.startswith("GatewayExhausted:")
        assert backend.calls.count(ARCHITECT) == 4
        assert session.status(TaskName.CODE_FACTS) is TaskStatus.SUCCEEDED

        analysis = await orch.finalize(session)
        doc = analysis.to_document()
        assert "structure" not in doc
        assert "codeFacts" in doc
        assert doc["missingSections"] == ["structure"]
        assert doc["errors"]["structure"].startswith("GatewayExhausted:")

        before = fetch_counts(fetcher)
        with patch("codeatlas.pipeline.tasks.analyze", wraps=analyze) as spy:
            again = await orch.start_session(URL, user_id="u1")
            await orch.wait(again)
        spy.assert_not_called()
        assert fetch_counts(fetcher) == before
        assert again.from_cache is True
        assert again.status(TaskName.CODE_FACTS) is TaskStatus.SUCCEEDED
        assert again.status(TaskName.STRUCTURE) is TaskStatus.FAILED
        assert (await orch.finalize(again)).code_facts == analysis.code_facts

    @pytest.mark.asyncio
    async def test_cached_gap_regeneration_cascades_and_persists(self, orch, backend, store):
        store.put(URL, "u1", CompositeAnalysis(
            repository_url=URL,
            repository=METADATA,
            structure=STRUCTURE,
            missing_sections=["codeFacts", "criticalPaths", "dependencyGraph", "tutorial"],
            errors={
                "codeFacts": "SourceUnavailable: GitHub is down",
                "criticalPaths": "not run",
                "dependencyGraph": "still running at finalization",
            },
        ))

        session = await orch.start_session(URL, user_id="u1")
        assert session.from_cache is True
        assert session.status(TaskName.STRUCTURE) is TaskStatus.SUCCEEDED
        assert session.results[TaskName.CODE_FACTS].error == "SourceUnavailable: GitHub is down"
        for name in (TaskName.CRITICAL_PATHS, TaskName.DEPENDENCY_GRAPH, TaskName.TUTORIAL):
            assert session.status(name) is TaskStatus.NOT_STARTED
        with pytest.raises(DependencyFailed):
            await orch.run_task(session, TaskName.CRITICAL_PATHS)

        result = await orch.regenerate_task(session, TaskName.CODE_FACTS)
        assert result.status is TaskStatus.SUCCEEDED
        await orch.wait(session)

        assert all(r.status is TaskStatus.SUCCEEDED for r in session.results.values())
        assert ARCHITECT not in backend.calls

        analysis = await orch.finalize(session)
        assert analysis.complete
        stored = store.get(URL, "u1")
        assert stored.complete
        assert stored.code_facts == analysis.code_facts
        assert stored.tutorial is not None

    @pytest.mark.asyncio
    async def test_cache_is_per_user(self, orch):
        first = await orch.start_session(URL, user_id="u1")
        await orch.wait(first)
        await orch.finalize(first)

        other = await orch.start_session(URL, user_id="u2")
        assert other.from_cache is False
        await orch.wait(other)

    @pytest.mark.asyncio
    async def test_force_refresh_skips_cache(self, orch):
        await orch.analyze(URL, user_id="u1")
        with patch("codeatlas.pipeline.tasks.analyze", wraps=analyze) as spy:
            session = await orch.start_session(URL, user_id="u1", force_refresh=True)
            await orch.wait(session)
        assert session.from_cache is False
        spy.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_dependency_blocks_dependents(self, orch, fetcher):
        fetcher.get_changed_files.side_effect = SourceUnavailable("GitHub is down")
        session = await orch.start_session(URL, user_id="u1")
        await orch.wait(session)

        assert session.results[TaskName.CODE_FACTS].error == "SourceUnavailable: GitHub is down"
        assert session.status(TaskName.CRITICAL_PATHS) is TaskStatus.NOT_STARTED
        with pytest.raises(DependencyFailed) as info:
            await orch.run_task(session, TaskName.CRITICAL_PATHS)
        assert info.value.failed == ["code_facts"]

        # failed fetches are not memoised, so regeneration retries them
        fetcher.get_changed_files.side_effect = None
        result = await orch.regenerate_task(session, TaskName.CODE_FACTS)
        assert result.status is TaskStatus.SUCCEEDED
        assert result.attempts == 2
        await orch.wait(session)

        assert fetcher.get_changed_files.await_count == 3
        assert session.status(TaskName.TUTORIAL) is TaskStatus.SUCCEEDED
        # no automatic retry of the other failed root
        assert session.status(TaskName.STRUCTURE) is TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_persistence_failure_is_a_warning(self, fetcher, backend):
        class BrokenStore(InMemoryResultStore):
            def put(self, repository_url, user_id, analysis):
                raise StoreError("disk full")

        gateway = GenerationGateway(backend, CredentialPool(["k1"]))
        orch = Orchestrator(fetcher, gateway, BrokenStore())
        session = await orch.start_session(URL, user_id="u1")
        await orch.wait(session)

        analysis = await orch.finalize(session)
        assert analysis.complete
        assert any("disk full" in w for w in session.warnings)


# ---------------------------------------------------------------------------
# Single-task operations
# ---------------------------------------------------------------------------

class TestSingleTask:
    @pytest.mark.asyncio
    async def test_regenerate_reuses_dependencies(self, orch, backend, fetcher):
        session = await orch.start_session(URL, user_id="u1")
        await orch.wait(session)
        before = fetch_counts(fetcher)
        calls_before = len(backend.calls)

        with patch("codeatlas.pipeline.tasks.analyze", wraps=analyze) as spy:
            result = await orch.regenerate_task(session, TaskName.CRITICAL_PATHS)

        assert result.status is TaskStatus.SUCCEEDED
        assert result.attempts == 2
        spy.assert_not_called()
        assert fetch_counts(fetcher) == before
        assert backend.calls[calls_before:] == [ANALYST]

    @pytest.mark.asyncio
    async def test_regenerate_failed_task(self, orch, backend, fetcher):
        backend.routes[ARCHITECT] = BackendError("HTTP 500", status=500, body="oops")
        session = await orch.start_session(URL, user_id="u1")
        await orch.wait(session)
        assert session.status(TaskName.STRUCTURE) is TaskStatus.FAILED

        backend.routes[ARCHITECT] = json.dumps(STRUCTURE)
        result = await orch.regenerate_task(session, TaskName.STRUCTURE)
        assert result.status is TaskStatus.SUCCEEDED
        assert result.error is None
        assert fetcher.get_metadata.await_count == 1

        analysis = await orch.finalize(session)
        assert analysis.complete

    @pytest.mark.asyncio
    async def test_run_task_returns_existing_outcome(self, orch):
        session = await orch.start_session(URL, user_id="u1")
        await orch.wait(session)
        result = await orch.run_task(session, TaskName.CODE_FACTS)
        assert result is session.results[TaskName.CODE_FACTS]
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_not_ready_and_already_running(self, orch, fetcher):
        gate = asyncio.Event()

        async def slow_samples(*args, **kwargs):
            await gate.wait()
            return SAMPLES

        fetcher.get_file_samples.side_effect = slow_samples
        session = await orch.start_session(URL, user_id="u1")

        with pytest.raises(DependencyNotReady) as info:
            await orch.run_task(session, TaskName.CRITICAL_PATHS)
        assert info.value.pending == ["code_facts"]
        with pytest.raises(TaskAlreadyRunning):
            await orch.regenerate_task(session, TaskName.CODE_FACTS)

        gate.set()
        result = await orch.run_task(session, TaskName.CODE_FACTS)
        assert result.status is TaskStatus.SUCCEEDED
        await orch.wait(session)
        assert session.status(TaskName.TUTORIAL) is TaskStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_run_task_accepts_string_names(self, orch):
        session = await orch.start_session(URL, user_id="u1")
        await orch.wait(session)
        result = await orch.run_task(session, "tutorial")
        assert result.name is TaskName.TUTORIAL


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    @pytest.mark.asyncio
    async def test_in_flight_results_are_discarded(self, orch, backend, store):
        backend.gates[ARCHITECT] = asyncio.Event()
        session = await orch.start_session(URL, user_id="u1")
        await settle_until(lambda: session.status(TaskName.TUTORIAL) is TaskStatus.SUCCEEDED)

        orch.cancel(session)
        backend.gates[ARCHITECT].set()
        await orch.wait(session)

        structure = session.results[TaskName.STRUCTURE]
        assert structure.status is TaskStatus.FAILED
        assert structure.value is None
        assert "SessionCancelled" in structure.error

        with pytest.raises(SessionCancelled):
            await orch.run_task(session, TaskName.STRUCTURE)
        with pytest.raises(SessionCancelled):
            await orch.regenerate_task(session, TaskName.TUTORIAL)

        await orch.finalize(session)
        assert len(store) == 0
        assert session.warnings

    @pytest.mark.asyncio
    async def test_dependents_not_launched_after_cancel(self, orch, fetcher, backend):
        gate = asyncio.Event()

        async def slow_samples(*args, **kwargs):
            await gate.wait()
            return SAMPLES

        fetcher.get_file_samples.side_effect = slow_samples
        session = await orch.start_session(URL, user_id="u1")
        orch.cancel(session)
        gate.set()
        await orch.wait(session)

        assert session.status(TaskName.CODE_FACTS) is TaskStatus.FAILED
        assert session.status(TaskName.CRITICAL_PATHS) is TaskStatus.NOT_STARTED
        assert ANALYST not in backend.calls


# ---------------------------------------------------------------------------
# Progress rendering
# ---------------------------------------------------------------------------

class TestConsoleProgress:
    @pytest.mark.asyncio
    async def test_renders_transitions(self, orch, backend):
        backend.routes[ARCHITECT] = BackendError("HTTP 429 [quota]", status=429, body="quota")
        buffer = io.StringIO()
        progress = ConsoleProgress(Console(file=buffer, width=200, color_system=None))

        session = await orch.start_session(URL, user_id="u1", listener=progress)
        await orch.wait(session)

        output = buffer.getvalue()
        assert "✓ code_facts" in output
        assert "✗ structure" in output
        assert "[quota]" in output
        assert len(progress.events) == 10
