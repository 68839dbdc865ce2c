"""Exception hierarchy shared by every codeatlas component.

Errors are raised at the I/O boundary (host API, generation backend,
result store) and converted into task failures by the orchestrator.
Only the orchestrator decides whether an error fails a task, is absorbed
as a best-effort omission, or propagates to the caller.
"""

from __future__ import annotations


class CodeAtlasError(Exception):
    """Base class for all codeatlas errors."""


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

class InvalidRepositoryRef(CodeAtlasError, ValueError):
    """The repository URL does not match the expected host/owner/name shape."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Not a valid GitHub repository URL: {url!r}")
        self.url = url


# ---------------------------------------------------------------------------
# Source host
# ---------------------------------------------------------------------------

class SourceHostError(CodeAtlasError):
    """A request to the source host API failed."""


class NotFound(SourceHostError):
    """The repository (or path) does not exist or is not visible."""


class AccessDenied(SourceHostError):
    """The host refused the request (bad credentials, forbidden, rate limited)."""


class ContentUnavailable(SourceHostError):
    """A path resolved to something other than decodable file content."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Content unavailable for {path}: {reason}")
        self.path = path
        self.reason = reason


class SourceUnavailable(SourceHostError):
    """Network error, timeout or unexpected status from the host."""


# ---------------------------------------------------------------------------
# Generation backend
# ---------------------------------------------------------------------------

class GatewayError(CodeAtlasError):
    """Base class for generation gateway failures."""


class BackendError(GatewayError):
    """A single backend call failed.

    ``status`` is the HTTP status code, or ``None`` for network errors
    and timeouts. ``body`` is the raw error payload used by the
    rate-limit predicate.
    """

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class GatewayExhausted(GatewayError):
    """Every attempt allowed by the credential pool failed."""

    def __init__(self, attempts: int, last_error: BackendError | None = None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Generation backend unavailable after {attempts} attempts{detail}")
        self.attempts = attempts
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class OrchestrationError(CodeAtlasError):
    """Base class for task-graph errors."""


class DependencyNotReady(OrchestrationError):
    """A dependency of the requested task has not succeeded yet."""

    def __init__(self, task: str, pending: list[str]) -> None:
        super().__init__(
            f"Cannot run {task}: waiting on {', '.join(pending)}"
        )
        self.task = task
        self.pending = pending


class DependencyFailed(OrchestrationError):
    """A dependency of the requested task failed and must be regenerated first."""

    def __init__(self, task: str, failed: list[str]) -> None:
        super().__init__(
            f"Cannot run {task}: dependency failed ({', '.join(failed)}); "
            "regenerate it first"
        )
        self.task = task
        self.failed = failed


class TaskAlreadyRunning(OrchestrationError):
    """The task is in flight; its slot has a single writer."""


class SessionCancelled(OrchestrationError):
    """The session was cancelled; no further work is accepted."""


# ---------------------------------------------------------------------------
# Assistant / store
# ---------------------------------------------------------------------------

class QuotaExceeded(CodeAtlasError):
    """The user has used every conversational query their plan allows."""

    def __init__(self, user_id: str, used: int, limit: int) -> None:
        super().__init__(
            f"User {user_id} has reached the limit of {limit} questions ({used} used)"
        )
        self.user_id = user_id
        self.used = used
        self.limit = limit


class StoreError(CodeAtlasError):
    """The result store could not read or write a document."""
