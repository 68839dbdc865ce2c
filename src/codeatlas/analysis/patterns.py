"""Lexical pattern scan that turns file samples into ``CodeFacts``.

This is not a parser: imports, structural markers and
complexity counts are recovered with per-language regular expressions.
The scan is pure and deterministic: no I/O, same input, same output.
A file that fails to analyse is logged and left out of the aggregate.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Iterable

from ..models import (
    CodeFacts,
    ComplexityMetrics,
    DependencyEdge,
    FileSample,
    ModuleInfo,
    PatternMatch,
)

logger = logging.getLogger("codeatlas.analysis.patterns")

# ---------------------------------------------------------------------------
# Language detection
# ---------------------------------------------------------------------------

_LANGUAGE_BY_EXTENSION: dict[str, str] = {
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "rb": "ruby",
    "java": "java",
    "go": "go",
    "php": "php",
    "cs": "csharp",
    "cpp": "cpp",
    "c": "c",
    "swift": "swift",
    "kt": "kotlin",
    "rs": "rust",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "json": "json",
    "md": "markdown",
    "yml": "yaml",
    "yaml": "yaml",
}

_JS_FAMILY = {"javascript", "typescript"}


def detect_language(path: str) -> str:
    """Guess the language of *path* from its extension."""
    suffix = PurePosixPath(path).suffix.lower().lstrip(".")
    return _LANGUAGE_BY_EXTENSION.get(suffix, "unknown")


# ---------------------------------------------------------------------------
# Dependency extraction
# ---------------------------------------------------------------------------

_JS_IMPORT_FROM = re.compile(
    r"""import\s+(?:type\s+)?(?:\{[^}]*\}|\*\s+as\s+\w+|\w+(?:\s*,\s*\{[^}]*\})?)\s+from\s+['"]([^'"]+)['"]"""
)
_JS_IMPORT_BARE = re.compile(r"""^\s*import\s+['"]([^'"]+)['"]""", re.MULTILINE)
_JS_REQUIRE = re.compile(r"""require\s*\(\s*['"]([^'"]+)['"]\s*\)""")
_JS_DYNAMIC_IMPORT = re.compile(r"""import\s*\(\s*['"]([^'"]+)['"]\s*\)""")

_PY_FROM = re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\s", re.MULTILINE)
_PY_IMPORT = re.compile(r"^\s*import\s+([\w.]+(?:\s*,\s*[\w.]+)*)", re.MULTILINE)

_GO_IMPORT_SINGLE = re.compile(r'^\s*import\s+(?:\w+\s+)?"([^"]+)"', re.MULTILINE)
_GO_IMPORT_BLOCK = re.compile(r"^\s*import\s*\(([^)]*)\)", re.MULTILINE)
_GO_BLOCK_ITEM = re.compile(r'"([^"]+)"')

_JVM_IMPORT = re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+)(?:\.\*)?\s*;?", re.MULTILINE)
_RUBY_REQUIRE = re.compile(r"""^\s*require(?:_relative)?\s*\(?\s*['"]([^'"]+)['"]""", re.MULTILINE)


def _unique(items: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        if item and item not in seen:
            seen[item] = None
    return list(seen)


def extract_dependencies(language: str, content: str) -> list[str]:
    """Return the modules *content* imports, in first-seen order."""
    found: list[str] = []
    if language in _JS_FAMILY:
        found += _JS_IMPORT_FROM.findall(content)
        found += _JS_IMPORT_BARE.findall(content)
        found += _JS_REQUIRE.findall(content)
        found += _JS_DYNAMIC_IMPORT.findall(content)
    elif language == "python":
        found += _PY_FROM.findall(content)
        for group in _PY_IMPORT.findall(content):
            found += [name.strip() for name in group.split(",")]
    elif language == "go":
        found += _GO_IMPORT_SINGLE.findall(content)
        for block in _GO_IMPORT_BLOCK.findall(content):
            found += _GO_BLOCK_ITEM.findall(block)
    elif language in {"java", "kotlin"}:
        found += [name.rstrip(".") for name in _JVM_IMPORT.findall(content)]
    elif language == "ruby":
        found += _RUBY_REQUIRE.findall(content)
    return _unique(found)


# ---------------------------------------------------------------------------
# Structural patterns
# ---------------------------------------------------------------------------

def detect_patterns(language: str, content: str) -> list[str]:
    """Return named structural patterns recognised in *content*."""
    patterns: list[str] = []
    if language in _JS_FAMILY:
        if "React" in content and (
            "extends Component" in content
            or ("function" in content and "return (" in content)
            or "=> (" in content
        ):
            patterns.append("ReactComponent")
        if any(
            marker in content
            for marker in ("createStore", "configureStore", "useReducer", "useDispatch", "useSelector")
        ):
            patterns.append("ReduxPattern")
        if "class " in content and "constructor" in content:
            patterns.append("ClassBasedArchitecture")
        if re.search(r"\b(?:express|koa|fastify)\s*\(", content):
            patterns.append("HttpServer")
    elif language == "python":
        if re.search(r"^\s*from\s+flask\s+import", content, re.MULTILINE):
            patterns.append("FlaskWebApp")
        if re.search(r"^\s*(?:from|import)\s+django\b", content, re.MULTILINE):
            patterns.append("DjangoApp")
        if re.search(r"^\s*from\s+fastapi\s+import", content, re.MULTILINE):
            patterns.append("FastAPIApp")
        if re.search(r"^\s*async\s+def\s", content, re.MULTILINE):
            patterns.append("AsyncIO")
        if "@dataclass" in content:
            patterns.append("Dataclass")
        if re.search(r"^\s*class\s+\w+", content, re.MULTILINE):
            patterns.append("ClassBasedArchitecture")
    elif language in {"java", "kotlin"}:
        if "@RestController" in content or "@Controller" in content:
            patterns.append("SpringController")
        if "@Entity" in content:
            patterns.append("JpaEntity")
    elif language == "go":
        if "net/http" in content and "HandleFunc" in content:
            patterns.append("HttpServer")
    return patterns


# ---------------------------------------------------------------------------
# Complexity
# ---------------------------------------------------------------------------

_FUNCTION_RES: dict[str, re.Pattern[str]] = {
    "python": re.compile(r"^\s*(?:async\s+)?def\s+\w+\s*\(", re.MULTILINE),
    "go": re.compile(r"^\s*func\s+(?:\([^)]*\)\s*)?\w+\s*\(", re.MULTILINE),
    "ruby": re.compile(r"^\s*def\s+[\w.?!]+", re.MULTILINE),
}
_DEFAULT_FUNCTION_RE = re.compile(r"function\s+\w+\s*\(|\w+\s*=\s*(?:async\s*)?\([^)]*\)\s*=>")
_CLASS_RE = re.compile(r"\bclass\s+\w+")
_PY_CONDITIONAL_RE = re.compile(r"^\s*(?:if|elif)\b", re.MULTILINE)
_PY_LOOP_RE = re.compile(r"^\s*(?:async\s+)?(?:for|while)\b", re.MULTILINE)
_CONDITIONAL_RE = re.compile(r"\bif\s*\(")
_LOOP_RE = re.compile(r"\b(?:for|while)\s*\(")


def calculate_complexity(content: str, language: str = "unknown") -> ComplexityMetrics:
    """Count lines, definitions and branches.

    ``cognitive_complexity`` is a crude weighted sum: each conditional,
    function and class counts once, each loop twice.
    """
    lines = len(content.split("\n"))
    functions = len(_FUNCTION_RES.get(language, _DEFAULT_FUNCTION_RE).findall(content))
    classes = len(_CLASS_RE.findall(content))
    if language in {"python", "ruby"}:
        conditionals = len(_PY_CONDITIONAL_RE.findall(content))
        loops = len(_PY_LOOP_RE.findall(content))
    else:
        conditionals = len(_CONDITIONAL_RE.findall(content))
        loops = len(_LOOP_RE.findall(content))
    return ComplexityMetrics(
        lines=lines,
        functions=functions,
        classes=classes,
        conditionals=conditionals,
        loops=loops,
        cognitive_complexity=conditionals + loops * 2 + functions + classes,
    )


def guess_module_type(path: str, content: str) -> str:
    """Classify a module from its path, falling back on content hints."""
    lowered = path.lower()
    if "test" in lowered or "spec" in lowered:
        return "test"
    if (
        "component" in lowered
        or lowered.endswith((".jsx", ".tsx"))
        or "React" in content
    ):
        return "component"
    if "controller" in lowered or "route" in lowered:
        return "controller"
    if "model" in lowered or "schema" in content:
        return "model"
    if "util" in lowered or "helper" in lowered:
        return "utility"
    if "service" in lowered:
        return "service"
    if "config" in lowered:
        return "configuration"
    return "unknown"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def analyze(samples: Iterable[FileSample]) -> CodeFacts:
    """Run the pattern scan over *samples* and aggregate the results."""
    modules: list[ModuleInfo] = []
    dependencies: list[DependencyEdge] = []
    patterns: list[PatternMatch] = []
    complexity: dict[str, ComplexityMetrics] = {}

    for sample in samples:
        try:
            language = detect_language(sample.path)
            module = ModuleInfo(
                path=sample.path,
                name=PurePosixPath(sample.path).name,
                type=guess_module_type(sample.path, sample.content),
                language=language,
            )
            edge = DependencyEdge(
                source=sample.path,
                targets=extract_dependencies(language, sample.content),
            )
            found = detect_patterns(language, sample.content)
            metrics = calculate_complexity(sample.content, language)
        except Exception:
            logger.exception("Pattern scan failed for %s; omitting it", sample.path)
            continue

        modules.append(module)
        dependencies.append(edge)
        if found:
            patterns.append(PatternMatch(path=sample.path, patterns=found))
        complexity[sample.path] = metrics

    logger.debug("Analyzed %d files", len(modules))
    return CodeFacts(
        modules=modules,
        dependencies=dependencies,
        patterns=patterns,
        complexity=complexity,
    )
