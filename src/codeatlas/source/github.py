"""Fetch repository metadata, trees, change history and file content from GitHub."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from collections import Counter
from fnmatch import fnmatch
from typing import Any, Iterable
from urllib.parse import quote

import httpx

from ..errors import (
    AccessDenied,
    ContentUnavailable,
    InvalidRepositoryRef,
    NotFound,
    SourceHostError,
    SourceUnavailable,
)
from ..models import ChangedFile, FileSample, RepoMetadata, RepositoryRef, TreeNode

logger = logging.getLogger("codeatlas.source.github")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GITHUB_API = "https://api.github.com"
_GITHUB_URL_RE = re.compile(
    r"^(?:(?:https?://)?(?:www\.)?github\.com/|git@github\.com:)"
    r"(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+?)"
    r"(?:\.git)?/?(?:[/?#].*)?$"
)

# Directories listed but never expanded in tree listings, and never
# counted in the changed-file ranking.
DEFAULT_EXCLUDED_DIRS: frozenset[str] = frozenset({
    ".git",
    ".next",
    ".nuxt",
    ".cache",
    ".idea",
    ".tox",
    ".venv",
    ".vscode",
    "__pycache__",
    "bower_components",
    "build",
    "coverage",
    "dist",
    "node_modules",
    "out",
    "target",
    "vendor",
    "venv",
})

# Basenames (fnmatch globs) that are noise in commit history.
DEFAULT_NOISE_GLOBS: tuple[str, ...] = (
    "package-lock.json",
    "npm-shrinkwrap.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "bun.lockb",
    "poetry.lock",
    "Pipfile.lock",
    "uv.lock",
    "Cargo.lock",
    "Gemfile.lock",
    "composer.lock",
    "go.sum",
    "*.lock",
    "*.min.js",
    "*.min.css",
    "*.map",
    "*.pyc",
)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

def parse_repository_ref(url: str) -> RepositoryRef:
    """Extract the owner/name pair from a GitHub URL.

    Accepts HTTPS (with or without scheme or ``www.``), SSH
    (``git@github.com:owner/repo.git``), sub-paths, a ``.git`` suffix,
    query strings and fragments.

    Raises InvalidRepositoryRef if the URL doesn't match.
    """
    m = _GITHUB_URL_RE.match((url or "").strip())
    if not m:
        raise InvalidRepositoryRef(url)
    owner, repo = m.group("owner"), m.group("repo")
    if owner in {".", ".."} or repo in {".", ".."}:
        raise InvalidRepositoryRef(url)
    return RepositoryRef(owner=owner, name=repo)


def is_github_url(source: str) -> bool:
    """Return True if *source* looks like a GitHub repository URL."""
    try:
        parse_repository_ref(source)
    except InvalidRepositoryRef:
        return False
    return True


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

class GitHubFetcher:
    """Async client for the parts of the GitHub REST API the pipeline needs.

    No analysis happens here: every method is I/O plus normalisation into
    the models in :mod:`codeatlas.models`.
    """

    def __init__(
        self,
        token: str | None = None,
        *,
        timeout: float = 30.0,
        api_base: str = _GITHUB_API,
        excluded_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
        noise_globs: Iterable[str] = DEFAULT_NOISE_GLOBS,
        commit_window: int = 100,
        detail_window: int = 30,
        max_concurrency: int = 5,
        max_content_chars: int = 100_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.timeout = timeout
        self.api_base = api_base.rstrip("/")
        self.excluded_dirs = frozenset(excluded_dirs)
        self.noise_globs = tuple(noise_globs)
        self.commit_window = commit_window
        self.detail_window = detail_window
        self.max_concurrency = max_concurrency
        self.max_content_chars = max_content_chars

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> GitHubFetcher:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # -- public API ----------------------------------------------------------

    async def get_metadata(self, ref: RepositoryRef) -> RepoMetadata:
        """Return repository metadata.

        A 404 is reported differently depending on whether a token was
        supplied, because GitHub hides private repositories behind 404s.
        """
        try:
            data = await self._get_json(f"/repos/{ref.owner}/{ref.name}")
        except NotFound as exc:
            if self.token:
                raise NotFound(
                    f"Repository {ref} does not exist or is not visible to the "
                    "supplied token."
                ) from exc
            raise NotFound(
                f"Repository {ref} was not found. It may be private: supply a "
                "GitHub token to analyse private repositories."
            ) from exc

        license_info = data.get("license") or {}
        return RepoMetadata(
            name=data.get("name") or ref.name,
            full_name=data.get("full_name") or ref.full_name,
            description=data.get("description") or "",
            language=data.get("language") or "",
            default_branch=data.get("default_branch") or "main",
            open_issues_count=data.get("open_issues_count") or 0,
            license=license_info.get("spdx_id") or license_info.get("name") or "",
            stars=data.get("stargazers_count") or 0,
            forks=data.get("forks_count") or 0,
            topics=list(data.get("topics") or []),
            html_url=data.get("html_url") or ref.canonical_url,
        )

    async def get_tree(
        self,
        ref: RepositoryRef,
        path: str = "",
        max_depth: int = 2,
    ) -> list[TreeNode]:
        """Return the tree under *path*, expanding at most *max_depth* levels.

        ``max_depth=1`` lists only the entries directly under *path*.
        Excluded directories are kept as leaves with ``excluded=True``.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        nodes = await self._list_dir(ref, path, 1, max(1, max_depth), semaphore)
        logger.info("Tree for %s: %d top-level entries", ref, len(nodes))
        return nodes

    async def get_changed_files(
        self,
        ref: RepositoryRef,
        limit: int = 10,
    ) -> list[ChangedFile]:
        """Rank files by how many recent commits touched them.

        Lists the most recent ``commit_window`` commits, fetches per-commit
        detail for the newest ``detail_window`` of them, drops noise paths
        and returns the top *limit* by count (ties broken by path).
        """
        commits = await self._get_json(
            f"/repos/{ref.owner}/{ref.name}/commits",
            params={"per_page": min(self.commit_window, 100)},
        )
        shas = [c["sha"] for c in commits[: self.detail_window] if c.get("sha")]
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _files_for(sha: str) -> list[str]:
            async with semaphore:
                try:
                    detail = await self._get_json(
                        f"/repos/{ref.owner}/{ref.name}/commits/{sha}"
                    )
                except SourceHostError as exc:
                    logger.warning("Skipping commit %s of %s: %s", sha[:7], ref, exc)
                    return []
            return [f["filename"] for f in detail.get("files") or [] if f.get("filename")]

        touched = await asyncio.gather(*(_files_for(sha) for sha in shas))

        counts: Counter[str] = Counter()
        for files in touched:
            for path in set(files):
                if not self.is_noise(path):
                    counts[path] += 1

        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[: max(0, limit)]
        logger.info(
            "Changed files for %s: %d commits scanned, %d eligible files",
            ref, len(shas), len(counts),
        )
        return [ChangedFile(path=p, change_count=n) for p, n in ranked]

    async def get_file_content(self, ref: RepositoryRef, path: str) -> str:
        """Return the decoded text of a single file.

        Raises ContentUnavailable for directories, submodules, symlinks,
        oversize files (which GitHub serves without content) and binaries.
        """
        data = await self._get_json(
            f"/repos/{ref.owner}/{ref.name}/contents/{quote(path, safe='/')}"
        )
        if isinstance(data, list):
            raise ContentUnavailable(path, "path is a directory")
        if data.get("type") != "file":
            raise ContentUnavailable(path, f"entry type is {data.get('type')!r}")
        encoding = data.get("encoding")
        if encoding != "base64":
            raise ContentUnavailable(path, f"unsupported encoding {encoding!r}")

        try:
            raw = base64.b64decode(data.get("content") or "")
        except (binascii.Error, TypeError, ValueError) as exc:
            raise ContentUnavailable(path, "malformed base64 content") from exc
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ContentUnavailable(path, "binary content") from exc
        if "\x00" in text:
            raise ContentUnavailable(path, "binary content")
        return text[: self.max_content_chars]

    async def get_file_samples(
        self,
        ref: RepositoryRef,
        changed_files: list[ChangedFile],
        limit: int = 5,
    ) -> list[FileSample]:
        """Fetch content for the top *limit* ranked files, skipping failures."""
        selected = changed_files[: max(0, limit)]

        async def _sample(changed: ChangedFile) -> FileSample | None:
            try:
                content = await self.get_file_content(ref, changed.path)
            except SourceHostError as exc:
                logger.warning("Skipping sample %s: %s", changed.path, exc)
                return None
            return FileSample(
                path=changed.path, content=content, change_count=changed.change_count
            )

        samples = await asyncio.gather(*(_sample(c) for c in selected))
        return [s for s in samples if s is not None]

    def is_noise(self, path: str) -> bool:
        """True if *path* is a lockfile, build artifact or VCS metadata."""
        parts = path.split("/")
        if any(part in self.excluded_dirs for part in parts[:-1]):
            return True
        basename = parts[-1]
        return any(fnmatch(basename, g) or fnmatch(path, g) for g in self.noise_globs)

    # -- private -------------------------------------------------------------

    async def _list_dir(
        self,
        ref: RepositoryRef,
        path: str,
        depth: int,
        max_depth: int,
        semaphore: asyncio.Semaphore,
    ) -> list[TreeNode]:
        url = f"/repos/{ref.owner}/{ref.name}/contents"
        if path:
            url += f"/{quote(path.strip('/'), safe='/')}"
        async with semaphore:
            entries = await self._get_json(url)
        if isinstance(entries, dict):
            entries = [entries]

        nodes: list[TreeNode] = []
        expand: list[TreeNode] = []
        for entry in entries:
            is_dir = entry.get("type") == "dir"
            name = entry.get("name") or entry.get("path", "").rsplit("/", 1)[-1]
            node = TreeNode(
                path=entry.get("path") or name,
                name=name,
                type="dir" if is_dir else "file",
                size=entry.get("size") or 0,
                excluded=is_dir and name in self.excluded_dirs,
            )
            if is_dir and not node.excluded and depth < max_depth:
                expand.append(node)
            nodes.append(node)

        children = await asyncio.gather(
            *(self._list_dir(ref, n.path, depth + 1, max_depth, semaphore) for n in expand)
        )
        for node, kids in zip(expand, children):
            node.children = kids
        return nodes

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self._client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise SourceUnavailable(f"Timed out requesting {url}") from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Request to {url} failed: {exc}") from exc

        if resp.status_code == 404:
            raise NotFound(f"Not found: {url}")
        if resp.status_code in (401, 403):
            if resp.headers.get("x-ratelimit-remaining") == "0":
                raise AccessDenied(
                    "GitHub API rate limit exceeded; supply a token or retry later."
                )
            raise AccessDenied(
                f"GitHub refused {url} (HTTP {resp.status_code}); check the token."
            )
        if resp.status_code >= 400:
            raise SourceUnavailable(f"GitHub returned HTTP {resp.status_code} for {url}")
        return resp.json()
