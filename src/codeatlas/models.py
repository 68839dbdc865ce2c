"""Pydantic models for repository facts and the composite analysis document.

These models are the data contract between the source fetcher, the local
pattern analyzer, the analysis tasks and the result store. Everything here
is JSON serialisable via ``model_dump(mode="json")``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Repository identity and metadata
# ---------------------------------------------------------------------------

class RepositoryRef(BaseModel):
    """Immutable owner/name pair parsed from a repository URL."""

    model_config = ConfigDict(frozen=True)

    owner: str
    name: str

    @computed_field
    @property
    def canonical_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


class RepoMetadata(BaseModel):
    """Repository metadata as reported by the source host."""

    name: str = ""
    full_name: str = ""
    description: str = ""
    language: str = ""
    default_branch: str = "main"
    open_issues_count: int = 0
    license: str = ""
    stars: int = 0
    forks: int = 0
    topics: list[str] = Field(default_factory=list)
    html_url: str = ""


class TreeNode(BaseModel):
    """One entry of the depth-bounded repository tree.

    Directories from the exclusion set are kept as a single summary leaf
    (``excluded=True``) so the listing stays small on large repositories.
    """

    path: str
    name: str
    type: str  # "file" | "dir"
    size: int = 0
    excluded: bool = False
    children: list[TreeNode] = Field(default_factory=list)

    @property
    def is_dir(self) -> bool:
        return self.type == "dir"

    def walk(self):
        """Yield this node and all descendants, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


def flatten_tree(nodes: list[TreeNode]) -> list[str]:
    """Return every path in *nodes*, directories suffixed with ``/``."""
    paths: list[str] = []
    for root in nodes:
        for node in root.walk():
            paths.append(f"{node.path}/" if node.is_dir else node.path)
    return paths


class ChangedFile(BaseModel):
    """A file and how many recent commits touched it."""

    model_config = ConfigDict(frozen=True)

    path: str
    change_count: int


class FileSample(BaseModel):
    """Raw content of a frequently-changed file."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str
    change_count: int = 0


# ---------------------------------------------------------------------------
# Code facts (local pattern analysis output)
# ---------------------------------------------------------------------------

class ModuleInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    name: str
    type: str
    language: str


class DependencyEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    targets: list[str] = Field(default_factory=list)


class PatternMatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    patterns: list[str] = Field(default_factory=list)


class ComplexityMetrics(BaseModel):
    """Line and branch counts for one file."""

    model_config = ConfigDict(frozen=True)

    lines: int = 0
    functions: int = 0
    classes: int = 0
    conditionals: int = 0
    loops: int = 0
    cognitive_complexity: int = 0


class CodeFacts(BaseModel):
    """Aggregate output of the local pattern analyzer."""

    model_config = ConfigDict(frozen=True)

    modules: list[ModuleInfo] = Field(default_factory=list)
    dependencies: list[DependencyEdge] = Field(default_factory=list)
    patterns: list[PatternMatch] = Field(default_factory=list)
    complexity: dict[str, ComplexityMetrics] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Composite analysis document
# ---------------------------------------------------------------------------

class CompositeAnalysis(BaseModel):
    """The merged output of every succeeded task: the unit of caching.

    A failed task leaves its field unset; ``to_document()`` drops unset
    sections entirely, lists them in ``missingSections`` and records the
    cause in ``errors`` so callers can offer a regenerate action.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    repository_url: str
    role: str = "full-stack"
    generated_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    repository: Optional[RepoMetadata] = None

    structure: Optional[dict[str, Any]] = None
    code_facts: Optional[CodeFacts] = None
    critical_paths: Optional[dict[str, Any]] = None
    dependency_graph: Optional[dict[str, Any]] = None
    tutorial: Optional[dict[str, Any]] = None

    missing_sections: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.missing_sections

    def to_document(self) -> dict[str, Any]:
        """Serialise to the persisted JSON shape (camelCase, gaps omitted)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> CompositeAnalysis:
        return cls.model_validate(document)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    role: str
    content: str


class StoredAnalysis(BaseModel):
    """A persisted analysis together with its per-user chat transcript."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    repository_url: str
    user_id: str
    analysis: CompositeAnalysis
    chat_history: list[ChatMessage] = Field(default_factory=list)
    last_analyzed_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_document(self) -> dict[str, Any]:
        document = self.model_dump(mode="json", by_alias=True, exclude={"analysis"})
        document["analysis"] = self.analysis.to_document()
        return document

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> StoredAnalysis:
        return cls.model_validate(document)
