"""Prompt templates and schema-shaped fallback payloads for each analysis task.

Every prompt asks for a single JSON object. Every task also has a
deterministic default with the same shape, returned by the gateway when
the model's answer cannot be parsed. Defaults are built fresh on each call
so callers may mutate what they get back.
"""

from __future__ import annotations

import json
from typing import Any, Sequence

from ..models import ChangedFile, CodeFacts, FileSample, RepoMetadata, TreeNode, flatten_tree

# Sample sizes keep prompts inside the backend's context budget.
TREE_SAMPLE_SIZE = 60
SNIPPET_CHARS = 300
CHAT_HISTORY_TURNS = 10
CHAT_CONTEXT_CHARS = 12_000


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def _metadata_dict(metadata: RepoMetadata | None) -> dict[str, Any]:
    return metadata.model_dump(mode="json") if metadata is not None else {}


def _changed_dicts(changed_files: Sequence[ChangedFile]) -> list[dict[str, Any]]:
    return [{"filename": c.path, "count": c.change_count} for c in changed_files]


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------

def structure_prompt(
    metadata: RepoMetadata,
    tree: Sequence[TreeNode],
    changed_files: Sequence[ChangedFile],
) -> str:
    return f"""
You are an expert software architect analysing a GitHub repository.

CONTEXT:
- You have the repository metadata, a sample of its file tree and the files
  that change most often in recent commit history.
- Identify the architectural pattern and describe how components interact.

REPOSITORY INFORMATION:
{_dump(_metadata_dict(metadata))}

REPOSITORY STRUCTURE SAMPLE:
{_dump(flatten_tree(list(tree))[:TREE_SAMPLE_SIZE])}

MOST FREQUENTLY CHANGED FILES:
{_dump(_changed_dicts(changed_files))}

INSTRUCTIONS:
1. Identify the architectural pattern (MVC, layered, hexagonal, ...).
2. Build a high-level system map of components and their connections.
3. Name the most important modules, services or components.
4. List strengths of the architecture and concrete improvements.

OUTPUT FORMAT:
Return a JSON object with exactly this structure:
{{
  "architecture": {{
    "pattern": "string",
    "description": "string",
    "mainComponents": ["string"]
  }},
  "systemMap": {{
    "nodes": [{{"id": "string", "label": "string", "type": "string", "parent": "string (optional)"}}],
    "connections": [{{"from": "string", "to": "string", "label": "string"}}]
  }},
  "criticalComponents": ["string"],
  "strengths": ["string"],
  "improvements": ["string"]
}}

Base the analysis ONLY on the data above. Do not add text outside the JSON.
""".strip()


def default_structure(repo_name: str) -> dict[str, Any]:
    return {
        "architecture": {
            "pattern": "Layered Application Architecture",
            "description": (
                f"Based on the repository structure of {repo_name}, the code appears "
                "to be organised into presentation, service and data layers."
            ),
            "mainComponents": ["Entry Points", "Services", "Utilities"],
        },
        "systemMap": {
            "nodes": [
                {"id": "n1", "label": "Interface Layer", "type": "container"},
                {"id": "n2", "label": "Service Layer", "type": "container"},
                {"id": "n3", "label": "Data Layer", "type": "container"},
            ],
            "connections": [
                {"from": "n1", "to": "n2", "label": "Calls"},
                {"from": "n2", "to": "n3", "label": "Data Access"},
            ],
        },
        "criticalComponents": ["Entry Points", "Core Services", "Data Access"],
        "strengths": ["Separation of concerns"],
        "improvements": ["Document module boundaries", "Add test coverage"],
    }


# ---------------------------------------------------------------------------
# Critical paths
# ---------------------------------------------------------------------------

def critical_paths_prompt(
    role: str,
    changed_files: Sequence[ChangedFile],
    samples: Sequence[FileSample],
    code_facts: CodeFacts,
) -> str:
    snippets = [
        {
            "path": s.path,
            "snippet": (s.content[:SNIPPET_CHARS] + "...") if s.content else "No content available",
            "changeFrequency": s.change_count,
        }
        for s in samples
    ]
    facts = {
        "modules": [m.model_dump() for m in code_facts.modules],
        "patterns": [p.model_dump() for p in code_facts.patterns],
    }
    return f"""
You are an expert code analyst helping a {role} developer onboard onto a codebase.

TASK:
Identify
1. Critical code paths (the 20% of code that provides 80% of core functionality)
2. Key business logic components
3. Data flow through the application
4. Why the most frequently modified files change so often

MOST FREQUENTLY CHANGED FILES:
{_dump(_changed_dicts(changed_files))}

FILE CONTENTS (truncated):
{_dump(snippets)}

STATIC FACTS:
{_dump(facts)}

OUTPUT FORMAT:
Return a JSON object with exactly this structure:
{{
  "criticalPaths": [
    {{
      "name": "string",
      "description": "string",
      "importance": 1,
      "files": ["string"],
      "dataFlow": ["string"]
    }}
  ],
  "frequentlyChangedFiles": [
    {{"filename": "string", "count": 0, "significance": "string", "recommendation": "string"}}
  ],
  "keyBusinessLogic": ["string"],
  "entryPoints": ["string"]
}}

Focus on what a {role} developer needs. Return ONLY the JSON object.
""".strip()


def default_critical_paths(changed_files: Sequence[ChangedFile] = ()) -> dict[str, Any]:
    files = [c.path for c in changed_files[:3]]
    return {
        "criticalPaths": [
            {
                "name": "Core Application Flow",
                "description": "The main workflow users interact with",
                "importance": 9,
                "files": files,
                "dataFlow": [
                    "Request enters the application",
                    "Core logic processes it",
                    "Result is returned",
                ],
            }
        ],
        "frequentlyChangedFiles": [
            {
                "filename": c.path,
                "count": c.change_count,
                "significance": "Frequently modified in recent history",
                "recommendation": "Read this file early",
            }
            for c in changed_files[:5]
        ],
        "keyBusinessLogic": [],
        "entryPoints": files[:1],
    }


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------

def dependency_graph_prompt(code_facts: CodeFacts, tree: Sequence[TreeNode]) -> str:
    dependencies = {
        "codeAnalysis": [d.model_dump() for d in code_facts.dependencies],
        "repositoryStructure": flatten_tree(list(tree))[:TREE_SAMPLE_SIZE],
    }
    return f"""
You are an expert in software dependency analysis.

CONTEXT:
- Build a dependency graph showing how the modules of this codebase relate.
- Identify problematic patterns such as circular dependencies.

DEPENDENCY INFORMATION:
{_dump(dependencies)}

OUTPUT FORMAT:
Return a JSON object with exactly this structure:
{{
  "dependencyGraph": {{
    "nodes": [{{"id": "string", "label": "string", "type": "string"}}],
    "edges": [{{"source": "string", "target": "string", "type": "string"}}]
  }},
  "circularDependencies": [["string"]],
  "recommendations": ["string"]
}}

Return ONLY valid JSON conforming to the structure above.
""".strip()


def default_dependency_graph(code_facts: CodeFacts | None = None) -> dict[str, Any]:
    nodes: list[dict[str, str]] = []
    edges: list[dict[str, str]] = []
    if code_facts is not None:
        for module in code_facts.modules:
            nodes.append({"id": module.path, "label": module.name, "type": module.type})
        known = {n["id"] for n in nodes}
        for edge in code_facts.dependencies:
            for target in edge.targets:
                if target not in known:
                    nodes.append({"id": target, "label": target, "type": "external"})
                    known.add(target)
                edges.append({"source": edge.source, "target": target, "type": "imports"})
    return {
        "dependencyGraph": {"nodes": nodes, "edges": edges},
        "circularDependencies": [],
        "recommendations": ["Consider creating clearer module boundaries"],
    }


# ---------------------------------------------------------------------------
# Tutorial
# ---------------------------------------------------------------------------

def tutorial_prompt(
    role: str,
    metadata: RepoMetadata,
    critical_paths: Sequence[dict[str, Any]],
) -> str:
    return f"""
You are an expert technical writer creating a tutorial for a {role} developer
who is new to this codebase.

REPOSITORY INFO:
{_dump(_metadata_dict(metadata))}

CRITICAL PATHS:
{_dump(list(critical_paths))}

INSTRUCTIONS:
1. Focus on ONE critical workflow and walk through it step by step.
2. Include a code example for each step.
3. Explain the key concepts, patterns and decisions.

OUTPUT FORMAT:
Return a JSON object with exactly this structure:
{{
  "title": "string",
  "overview": "string",
  "prerequisites": ["string"],
  "steps": [
    {{"title": "string", "description": "string", "codeExample": "string", "explanation": "string"}}
  ],
  "additionalNotes": "string"
}}

Return ONLY valid JSON conforming to the structure above.
""".strip()


def default_tutorial(role: str = "developer") -> dict[str, Any]:
    return {
        "title": f"Getting Started for {role or 'developer'} developers",
        "overview": "An introduction to the repository structure and its key components.",
        "prerequisites": ["Familiarity with the repository's primary language"],
        "steps": [
            {
                "title": "Repository Overview",
                "description": "Start from the top-level layout and the main entry points.",
                "codeExample": "",
                "explanation": "Most projects separate entry points, services and utilities.",
            }
        ],
        "additionalNotes": (
            "Focus on how data flows between components and which parts hold "
            "the core business logic."
        ),
    }


# ---------------------------------------------------------------------------
# Assistant: chat and quiz
# ---------------------------------------------------------------------------

def chat_prompt(
    question: str,
    analysis_document: dict[str, Any],
    history: Sequence[dict[str, str]] = (),
) -> str:
    context = _dump(analysis_document)
    if len(context) > CHAT_CONTEXT_CHARS:
        context = context[:CHAT_CONTEXT_CHARS] + "\n... (truncated)"
    turns = "\n".join(
        f"{turn.get('role', 'user').upper()}: {turn.get('content', '')}"
        for turn in list(history)[-CHAT_HISTORY_TURNS:]
    )
    return f"""
You are an AI assistant that answers questions about a specific codebase.
Answer using the analysis below. If the analysis does not contain the answer,
say so instead of guessing. Use markdown and fenced code blocks where useful.

CODEBASE ANALYSIS:
{context}

CONVERSATION SO FAR:
{turns or "(none)"}

QUESTION:
{question}
""".strip()


def quiz_prompt(role: str, analysis_document: dict[str, Any], count: int) -> str:
    context = _dump(analysis_document)
    if len(context) > CHAT_CONTEXT_CHARS:
        context = context[:CHAT_CONTEXT_CHARS] + "\n... (truncated)"
    return f"""
You are creating a knowledge check for a {role} developer who has just read
an analysis of a codebase.

CODEBASE ANALYSIS:
{context}

Write {count} multiple-choice questions about this specific codebase.

OUTPUT FORMAT:
Return a JSON object with exactly this structure:
{{
  "questions": [
    {{"question": "string", "options": ["string"], "correctAnswer": 0, "explanation": "string"}}
  ]
}}

Return ONLY valid JSON conforming to the structure above.
""".strip()
