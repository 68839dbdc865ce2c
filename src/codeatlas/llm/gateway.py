"""Generation gateway: prompt in, text (or JSON) out, backend unreliability hidden.

The gateway owns two policies:

- **Rotation.** Every failed backend call (rate limit, other non-2xx,
  network error, timeout) advances a shared ``CredentialPool`` and tries
  again, up to ``len(pool) * 2`` attempts per ``generate()`` call. The
  retry is an explicit bounded loop.
- **Lenient parsing.** ``extract_json`` digs a JSON value out of noisy
  model output and hands back a caller-supplied fallback instead of
  raising, so a malformed response degrades one task's output but never
  aborts a session.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from typing import Any, Callable, Sequence

from ..errors import BackendError, GatewayExhausted, SessionCancelled
from .backends import TextBackend

logger = logging.getLogger("codeatlas.llm.gateway")

RateLimitPredicate = Callable[[int | None, str], bool]

_RATE_LIMIT_MARKERS = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "quota",
    "resource_exhausted",
    "too many requests",
)


def is_rate_limited(status: int | None, body: str) -> bool:
    """Default rate-limit signature: HTTP 429 or a quota marker in the body."""
    if status == 429:
        return True
    lowered = (body or "").lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


# ---------------------------------------------------------------------------
# Credential pool
# ---------------------------------------------------------------------------

class CredentialPool:
    """Ordered API credentials with a shared round-robin cursor.

    One pool is shared by every session in the process. ``rotate`` is a
    compare-and-advance under a lock: when several tasks fail on the same
    credential at once, the cursor moves forward once rather than once per
    task, so no task skips past a credential that has not been tried.
    """

    def __init__(self, credentials: Sequence[str]) -> None:
        cleaned = [c.strip() for c in credentials if c and c.strip()]
        if not cleaned:
            raise ValueError("CredentialPool needs at least one credential")
        self._credentials = tuple(cleaned)
        self._index = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def index(self) -> int:
        with self._lock:
            return self._index

    def current(self) -> tuple[int, str]:
        """Return ``(index, credential)`` for the cursor position."""
        with self._lock:
            return self._index, self._credentials[self._index]

    def rotate(self, observed_index: int) -> int:
        """Advance past *observed_index* if nobody else already has.

        Returns the cursor position after the call.
        """
        with self._lock:
            if self._index == observed_index:
                self._index = (self._index + 1) % len(self._credentials)
            return self._index


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
_FENCED_ANY_RE = re.compile(r"```[^\n`]*\n?([\s\S]*?)\s*```")
_BRACED_RE = re.compile(r"(\{[\s\S]*\})")


def _candidates(raw_text: str):
    m = _FENCED_JSON_RE.search(raw_text)
    if m:
        yield m.group(1)
    m = _FENCED_ANY_RE.search(raw_text)
    if m:
        yield m.group(1)
    m = _BRACED_RE.search(raw_text)
    if m:
        yield m.group(1)
    yield raw_text


def extract_json(raw_text: str | None, fallback: Any) -> Any:
    """Return the first JSON value found in *raw_text*, else *fallback*.

    Tried in order: a ```` ```json ```` fenced block, any fenced block,
    the outermost ``{...}`` span, the whole text. When none parses, the
    *fallback* object itself is returned (not a copy).
    """
    if not raw_text:
        return fallback
    for candidate in _candidates(raw_text):
        try:
            return json.loads(candidate)
        except (ValueError, RecursionError):
            continue
    logger.warning("No JSON found in model output (%d chars); using fallback", len(raw_text))
    return fallback


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class GenerationGateway:
    """Send prompts through a backend, rotating credentials on failure.

    Parameters
    ----------
    backend
        The text backend that performs single requests.
    pool
        Shared credential pool; mutated only through ``rotate``.
    rate_limit_predicate
        ``(status, body) -> bool`` used to classify failures. Both classes
        of failure rotate; the predicate only decides how they are reported.
    retry_delay
        Seconds to sleep between attempts (``0`` disables sleeping).
    """

    def __init__(
        self,
        backend: TextBackend,
        pool: CredentialPool,
        *,
        rate_limit_predicate: RateLimitPredicate = is_rate_limited,
        retry_delay: float = 0.0,
    ) -> None:
        self.backend = backend
        self.pool = pool
        self.rate_limit_predicate = rate_limit_predicate
        self.retry_delay = retry_delay

    @property
    def max_attempts(self) -> int:
        return len(self.pool) * 2

    async def generate(
        self,
        prompt: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Return raw completion text for *prompt*.

        Raises GatewayExhausted after ``len(pool) * 2`` failed attempts and
        SessionCancelled if *cancel_event* is set between attempts.
        """
        last_error: BackendError | None = None
        for attempt in range(1, self.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise SessionCancelled("Session cancelled during generation")

            index, credential = self.pool.current()
            try:
                text = await self.backend.complete(prompt, credential=credential)
            except BackendError as exc:
                last_error = exc
                kind = (
                    "rate limited"
                    if self.rate_limit_predicate(exc.status, exc.body)
                    else "failed"
                )
                new_index = self.pool.rotate(index)
                logger.warning(
                    "Credential #%d %s (attempt %d/%d, status=%s); rotating to #%d",
                    index, kind, attempt, self.max_attempts, exc.status, new_index,
                )
                if self.retry_delay and attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)
                continue

            logger.debug(
                "Generated %d chars with credential #%d on attempt %d",
                len(text), index, attempt,
            )
            return text

        raise GatewayExhausted(self.max_attempts, last_error)

    async def generate_json(
        self,
        prompt: str,
        fallback: Any,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        """``generate`` followed by ``extract_json``.

        Backend exhaustion propagates; unparseable output yields *fallback*.
        """
        text = await self.generate(prompt, cancel_event=cancel_event)
        return extract_json(text, fallback)

    async def aclose(self) -> None:
        await self.backend.aclose()
