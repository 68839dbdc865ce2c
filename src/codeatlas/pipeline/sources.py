"""Per-session memo of the source data the analysis tasks read.

Metadata, the tree listing, the changed-file ranking and the file samples
are each fetched at most once per session, the first time a task asks for
them. Concurrent tasks asking for the same item wait on that item's lock
and share the result. A fetch that raises is not memoised, so the next
task (or a regeneration) retries it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..models import ChangedFile, FileSample, RepoMetadata, RepositoryRef, TreeNode
from ..source.github import GitHubFetcher

logger = logging.getLogger("codeatlas.pipeline.sources")

_KEYS = ("metadata", "tree", "changed_files", "samples")


class SourceData:
    """Lazy, lock-guarded source data for one repository."""

    def __init__(
        self,
        fetcher: GitHubFetcher,
        ref: RepositoryRef,
        *,
        tree_depth: int = 2,
        changed_limit: int = 10,
        sample_limit: int = 5,
    ) -> None:
        self.fetcher = fetcher
        self.ref = ref
        self.tree_depth = tree_depth
        self.changed_limit = changed_limit
        self.sample_limit = sample_limit
        self._values: dict[str, Any] = {}
        self._locks = {key: asyncio.Lock() for key in _KEYS}

    async def _memo(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._values:
            return self._values[key]
        async with self._locks[key]:
            if key not in self._values:
                logger.debug("Fetching %s for %s", key, self.ref)
                self._values[key] = await loader()
            return self._values[key]

    async def metadata(self) -> RepoMetadata:
        return await self._memo("metadata", lambda: self.fetcher.get_metadata(self.ref))

    async def tree(self) -> list[TreeNode]:
        return await self._memo(
            "tree", lambda: self.fetcher.get_tree(self.ref, max_depth=self.tree_depth)
        )

    async def changed_files(self) -> list[ChangedFile]:
        return await self._memo(
            "changed_files",
            lambda: self.fetcher.get_changed_files(self.ref, limit=self.changed_limit),
        )

    async def samples(self) -> list[FileSample]:
        changed = await self.changed_files()
        return await self._memo(
            "samples",
            lambda: self.fetcher.get_file_samples(self.ref, changed, limit=self.sample_limit),
        )

    def peek(self, key: str) -> Any:
        """Return the memoised value for *key*, or ``None`` if never fetched."""
        return self._values.get(key)

    def seed(self, key: str, value: Any) -> None:
        """Pre-populate *key*, e.g. with metadata from a cached analysis."""
        if key not in self._locks:
            raise KeyError(key)
        self._values[key] = value
