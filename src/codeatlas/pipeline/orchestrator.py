"""Task graph orchestrator: the incremental, demand-driven analysis loop.

This is the top-level entry point of the pipeline. It:
1. Parses the repository URL and checks the result store; a cached
   document is served as-is, with every section seeded from it.
2. Otherwise launches every task whose dependencies are satisfied
   (Structure and CodeFacts) on the running event loop.
3. Launches each further task the moment its own dependencies succeed.
   There is no stage barrier.
4. Lets callers run, await or regenerate a single task without touching
   the ones it depends on.
5. Assembles whatever succeeded into a ``CompositeAnalysis`` and writes it
   to the store.

A failed task never fails the session; its dependents simply stay
``not_started`` until the caller regenerates it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone

from ..errors import (
    CodeAtlasError,
    DependencyFailed,
    DependencyNotReady,
    SessionCancelled,
    TaskAlreadyRunning,
)
from ..llm.gateway import GenerationGateway
from ..models import CompositeAnalysis
from ..source.github import GitHubFetcher, parse_repository_ref
from ..store import ResultStore
from .base import (
    DEPENDENCIES,
    AnalysisSession,
    Listener,
    TaskName,
    TaskResult,
    TaskStatus,
    dependents_of,
)
from .sources import SourceData
from .tasks import RUNNERS

logger = logging.getLogger("codeatlas.pipeline.orchestrator")

NOT_IN_CACHE = "not present in cached analysis"
NOT_RUN = "not run"
STILL_RUNNING = "still running at finalization"
UNRUN_CAUSES = frozenset({NOT_RUN, STILL_RUNNING})
DEFAULT_ROLE = "full-stack"


class Orchestrator:
    """Runs analysis sessions against a fetcher, a gateway and a store.

    Usage::

        orch = Orchestrator(fetcher, gateway, store)
        session = await orch.start_session(
            "https://github.com/acme/widgets", "backend", user_id="u1"
        )
        await orch.wait(session)
        analysis = await orch.finalize(session)
    """

    def __init__(
        self,
        fetcher: GitHubFetcher,
        gateway: GenerationGateway,
        store: ResultStore,
        *,
        tree_depth: int = 2,
        changed_limit: int = 10,
        sample_limit: int = 5,
    ) -> None:
        self.fetcher = fetcher
        self.gateway = gateway
        self.store = store
        self.tree_depth = tree_depth
        self.changed_limit = changed_limit
        self.sample_limit = sample_limit

    # -- session lifecycle --------------------------------------------------

    async def start_session(
        self,
        repository_url: str,
        role: str = DEFAULT_ROLE,
        *,
        user_id: str,
        force_refresh: bool = False,
        listener: Listener | None = None,
    ) -> AnalysisSession:
        """Open a session for *repository_url*.

        Raises InvalidRepositoryRef for malformed URLs. On a cache hit the
        returned session has ``from_cache=True`` and nothing executes;
        otherwise the root tasks are scheduled and this returns at once.
        """
        ref = parse_repository_ref(repository_url)
        source = SourceData(
            self.fetcher,
            ref,
            tree_depth=self.tree_depth,
            changed_limit=self.changed_limit,
            sample_limit=self.sample_limit,
        )

        cached = None if force_refresh else self._lookup(ref.canonical_url, user_id)
        session = AnalysisSession(
            ref=ref,
            role=role or DEFAULT_ROLE,
            user_id=user_id,
            source=source,
            from_cache=cached is not None,
        )
        if listener is not None:
            session.subscribe(listener)

        if cached is not None:
            self._seed_from_cache(session, cached)
            logger.info("Serving %s for %s from the result store", ref, user_id)
            return session

        logger.info("Starting analysis session %s for %s (role=%s)", session.id, ref, session.role)
        self._launch_ready(session)
        return session

    async def wait(self, session: AnalysisSession) -> AnalysisSession:
        """Return once nothing is running and nothing more can start."""
        await session._settled.wait()
        return session

    async def analyze(
        self,
        repository_url: str,
        role: str = DEFAULT_ROLE,
        *,
        user_id: str,
        force_refresh: bool = False,
        listener: Listener | None = None,
    ) -> CompositeAnalysis:
        """Convenience wrapper: start, wait for every task, finalize."""
        session = await self.start_session(
            repository_url,
            role,
            user_id=user_id,
            force_refresh=force_refresh,
            listener=listener,
        )
        await self.wait(session)
        return await self.finalize(session)

    def cancel(self, session: AnalysisSession) -> None:
        """Abandon *session*: in-flight results are discarded on arrival."""
        if not session.cancelled:
            logger.info("Cancelling session %s (%d task(s) in flight)", session.id, len(session.running))
            session.cancel_event.set()

    # -- single-task operations ---------------------------------------------

    async def run_task(self, session: AnalysisSession, name: TaskName) -> TaskResult:
        """Run *name* once, or return its existing outcome.

        A task that already succeeded or failed is returned unchanged; a
        running task is awaited. Raises DependencyFailed or
        DependencyNotReady when a dependency has not succeeded.
        """
        name = TaskName(name)
        self._ensure_active(session)
        result = session.results[name]
        if result.status is TaskStatus.RUNNING:
            await asyncio.shield(session._inflight[name])
            return session.results[name]
        if result.done:
            return result

        self._check_dependencies(session, name)
        await asyncio.shield(self._spawn(session, name))
        return session.results[name]

    async def regenerate_task(self, session: AnalysisSession, name: TaskName) -> TaskResult:
        """Re-execute *name* whatever its status, reusing its dependencies' outputs."""
        name = TaskName(name)
        self._ensure_active(session)
        if session.results[name].status is TaskStatus.RUNNING:
            raise TaskAlreadyRunning(f"{name.value} is already running in session {session.id}")

        self._check_dependencies(session, name)
        logger.info("Regenerating %s in session %s", name.value, session.id)
        await asyncio.shield(self._spawn(session, name))
        return session.results[name]

    # -- finalization -------------------------------------------------------

    async def finalize(self, session: AnalysisSession) -> CompositeAnalysis:
        """Assemble the succeeded sections and persist them.

        Never raises for persistence problems: they are logged and added
        to ``session.warnings``.
        """
        if session.from_cache and not session.dirty and session.cached is not None:
            return session.cached

        analysis = self._compose(session)
        if session.cancelled:
            session.warnings.append("Session cancelled; analysis not persisted")
            return analysis

        try:
            self.store.put(session.ref.canonical_url, session.user_id, analysis)
        except Exception as exc:
            logger.exception("Failed to persist analysis for %s", session.ref)
            session.warnings.append(f"Analysis not persisted: {type(exc).__name__}: {exc}")
        return analysis

    # -- internals ----------------------------------------------------------

    def _lookup(self, url: str, user_id: str) -> CompositeAnalysis | None:
        try:
            return self.store.get(url, user_id)
        except CodeAtlasError as exc:
            logger.warning("Result store lookup failed for %s: %s; treating as a miss", url, exc)
            return None

    def _seed_from_cache(self, session: AnalysisSession, cached: CompositeAnalysis) -> None:
        """Mirror the cached document onto the session's results.

        Present sections succeed. A missing section is ``failed`` only
        when it actually ran and failed with all of its inputs in the
        document; work that never ran, or whose inputs are themselves
        missing, stays ``not_started`` so regenerating an input cascades
        exactly as it would in a live session.
        """
        session.cached = cached
        if cached.repository is not None:
            session.source.seed("metadata", cached.repository)
        for name, result in session.results.items():
            value = getattr(cached, name.value)
            if value is not None:
                result.status = TaskStatus.SUCCEEDED
                result.value = value
                continue
            error = cached.errors.get(name.document_key)
            inputs_missing = any(getattr(cached, dep.value) is None for dep in DEPENDENCIES[name])
            if inputs_missing or error in UNRUN_CAUSES:
                result.status = TaskStatus.NOT_STARTED
            else:
                result.status = TaskStatus.FAILED
                result.error = error or NOT_IN_CACHE

    def _compose(self, session: AnalysisSession) -> CompositeAnalysis:
        sections = {}
        missing: list[str] = []
        errors: dict[str, str] = {}
        for name, result in session.results.items():
            if result.status is TaskStatus.SUCCEEDED:
                sections[name.value] = result.value
                continue
            missing.append(name.document_key)
            if result.status is TaskStatus.FAILED:
                errors[name.document_key] = result.error or "failed"
            elif result.status is TaskStatus.RUNNING:
                errors[name.document_key] = STILL_RUNNING
            else:
                errors[name.document_key] = NOT_RUN

        return CompositeAnalysis(
            repository_url=session.ref.canonical_url,
            role=session.role,
            repository=session.source.peek("metadata"),
            missing_sections=missing,
            errors=errors,
            **sections,
        )

    def _ensure_active(self, session: AnalysisSession) -> None:
        if session.cancelled:
            raise SessionCancelled(f"Session {session.id} was cancelled")

    def _check_dependencies(self, session: AnalysisSession, name: TaskName) -> None:
        deps = DEPENDENCIES[name]
        failed = [d.value for d in deps if session.status(d) is TaskStatus.FAILED]
        if failed:
            raise DependencyFailed(name.value, failed)
        pending = [d.value for d in deps if session.status(d) is not TaskStatus.SUCCEEDED]
        if pending:
            raise DependencyNotReady(name.value, pending)

    def _ready(self, session: AnalysisSession, name: TaskName) -> bool:
        return session.status(name) is TaskStatus.NOT_STARTED and all(
            session.status(dep) is TaskStatus.SUCCEEDED for dep in DEPENDENCIES[name]
        )

    def _launch_ready(self, session: AnalysisSession, candidates=None) -> None:
        if session.cancelled:
            return
        for name in candidates if candidates is not None else list(TaskName):
            if self._ready(session, name):
                self._spawn(session, name)

    def _spawn(self, session: AnalysisSession, name: TaskName) -> asyncio.Task:
        result = session.results[name]
        result.status = TaskStatus.RUNNING
        result.attempts += 1
        result.error = None
        result.started_at = datetime.now(timezone.utc).isoformat()
        result.finished_at = None
        session.dirty = True
        session._settled.clear()
        session.emit(name)

        task = asyncio.create_task(
            self._execute(session, name), name=f"codeatlas:{session.id}:{name.value}"
        )
        session._inflight[name] = task
        return task

    async def _execute(self, session: AnalysisSession, name: TaskName) -> None:
        result = session.results[name]
        t0 = time.perf_counter()
        value = None
        error: str | None = None
        try:
            value = await RUNNERS[name](session, self.gateway)
        except CodeAtlasError as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.warning("Task %s failed in session %s: %s", name.value, session.id, error)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Task %s crashed in session %s", name.value, session.id)

        result.duration_ms = (time.perf_counter() - t0) * 1000
        result.finished_at = datetime.now(timezone.utc).isoformat()
        try:
            if session.cancelled:
                result.status = TaskStatus.FAILED
                result.value = None
                result.error = "SessionCancelled: result discarded"
                logger.info("Discarding %s result for cancelled session %s", name.value, session.id)
            elif error is not None:
                result.status = TaskStatus.FAILED
                result.value = None
                result.error = error
            else:
                result.status = TaskStatus.SUCCEEDED
                result.value = value
                logger.info(
                    "Task %s succeeded in session %s (%.0f ms)",
                    name.value, session.id, result.duration_ms,
                )
            session.emit(name)
            if result.status is TaskStatus.SUCCEEDED:
                self._launch_ready(session, dependents_of(name))
        finally:
            session._inflight.pop(name, None)
            if not session._inflight:
                session._settled.set()
