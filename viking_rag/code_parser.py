"""Regex-based source structure extraction.

Pure functions: given file text and its path, return the names of the
functions, classes, imports and exports it declares. No state, no I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Literal

FileKind = Literal["module", "class", "script", "config", "unknown"]

_FILE_KINDS = {"module", "class", "script", "config", "unknown"}

_LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyw": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".scala": "scala",
    ".sh": "shell",
    ".bash": "shell",
    ".zsh": "shell",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".ini": "ini",
    ".cfg": "ini",
    ".md": "markdown",
    ".mdx": "markdown",
    ".txt": "text",
}

_CONFIG_LANGUAGES = {"json", "yaml", "toml", "ini"}


@dataclass
class CodeStructure:
    """Names declared by one file plus its inferred kind."""

    functions: list[str] = field(default_factory=list)
    classes: list[str] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    exports: list[str] = field(default_factory=list)
    kind: FileKind = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "functions": list(self.functions),
            "classes": list(self.classes),
            "imports": list(self.imports),
            "exports": list(self.exports),
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CodeStructure":
        kind = str(data.get("kind") or data.get("type") or "unknown")
        return cls(
            functions=[str(v) for v in data.get("functions", [])],
            classes=[str(v) for v in data.get("classes", [])],
            imports=[str(v) for v in data.get("imports", [])],
            exports=[str(v) for v in data.get("exports", [])],
            kind=kind if kind in _FILE_KINDS else "unknown",  # type: ignore[arg-type]
        )


@dataclass(frozen=True)
class _Rules:
    """Ordered pattern table for one language family."""

    functions: tuple[re.Pattern[str], ...] = ()
    classes: tuple[re.Pattern[str], ...] = ()
    imports: tuple[re.Pattern[str], ...] = ()
    exports: tuple[re.Pattern[str], ...] = ()
    skip_functions: frozenset[str] = frozenset()


_JS_RULES = _Rules(
    functions=(
        re.compile(r"(?:export\s+)?(?:async\s+)?function\s+(\w+)"),
        re.compile(r"(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s*)?\([^)]*\)\s*=>"),
        re.compile(r"(?:export\s+)?const\s+(\w+)\s*=\s*(?:async\s*)?function"),
        re.compile(r"(\w+)\s*:\s*(?:async\s*)?\([^)]*\)\s*=>"),
    ),
    classes=(re.compile(r"(?:export\s+)?(?:abstract\s+)?class\s+(\w+)"),),
    imports=(re.compile(r"import\s+(?:{[^}]+}|\*\s+as\s+\w+|\w+)\s+from\s+['\"]([^'\"]+)['\"]"),),
    exports=(
        re.compile(r"export\s+(?:default\s+)?(?:const|let|var|function|class|interface|type)\s+(\w+)"),
    ),
)

_PYTHON_RULES = _Rules(
    functions=(re.compile(r"^(?:async\s+)?def\s+(\w+)\s*\(", re.MULTILINE),),
    classes=(re.compile(r"^class\s+(\w+)", re.MULTILINE),),
    imports=(
        re.compile(r"^import\s+(\w+)", re.MULTILINE),
        re.compile(r"^from\s+([\w.]+)\s+import", re.MULTILINE),
    ),
    exports=(re.compile(r"^__all__\s*=\s*\[([^\]]*)\]", re.MULTILINE),),
)

_GO_RULES = _Rules(
    functions=(re.compile(r"^func\s+(?:\([^)]+\)\s+)?(\w+)\s*\(", re.MULTILINE),),
    classes=(re.compile(r"^type\s+(\w+)\s+struct", re.MULTILINE),),
    imports=(re.compile(r"import\s+(?:\(\s*)?[\"']([^\"']+)[\"']"),),
)

_RUST_RULES = _Rules(
    functions=(re.compile(r"(?:pub\s+)?(?:async\s+)?fn\s+(\w+)\s*[<(]"),),
    classes=(
        re.compile(r"(?:pub\s+)?struct\s+(\w+)"),
        re.compile(r"(?:pub\s+)?enum\s+(\w+)"),
        re.compile(r"impl(?:<[^>]+>)?\s+(\w+)"),
    ),
    imports=(re.compile(r"use\s+([\w:]+)"),),
)

_JAVA_RULES = _Rules(
    functions=(
        re.compile(
            r"(?:public|private|protected)?\s*(?:static\s+)?(?:final\s+)?"
            r"(?:\w+(?:<[^>]+>)?)\s+(\w+)\s*\("
        ),
    ),
    classes=(
        re.compile(r"(?:public\s+)?(?:abstract\s+)?class\s+(\w+)"),
        re.compile(r"(?:public\s+)?interface\s+(\w+)"),
    ),
    imports=(re.compile(r"import\s+([\w.]+)"),),
    skip_functions=frozenset({"if", "while", "for", "switch", "catch", "return", "new"}),
)

_SHELL_RULES = _Rules(
    functions=(
        re.compile(r"^\s*function\s+(\w+)", re.MULTILINE),
        re.compile(r"^\s*(\w+)\s*\(\)\s*\{", re.MULTILINE),
    ),
    imports=(re.compile(r"^\s*(?:source|\.)\s+([^\s;]+)", re.MULTILINE),),
)

_RULES_BY_LANGUAGE = {
    "typescript": _JS_RULES,
    "javascript": _JS_RULES,
    "python": _PYTHON_RULES,
    "go": _GO_RULES,
    "rust": _RUST_RULES,
    "java": _JAVA_RULES,
    "kotlin": _JAVA_RULES,
    "scala": _JAVA_RULES,
    "shell": _SHELL_RULES,
}


def detect_language(path: str) -> str:
    """Map a file path to a language name by extension (``text`` if unknown)."""
    return _LANGUAGES.get(PurePosixPath(path.replace("\\", "/")).suffix.lower(), "text")


def _collect(patterns: tuple[re.Pattern[str], ...], content: str, skip: frozenset[str] = frozenset()) -> list[str]:
    found: list[str] = []
    for pattern in patterns:
        for match in pattern.finditer(content):
            name = match.group(1)
            if name and name not in skip and name not in found:
                found.append(name)
    return found


def _python_exports(raw_lists: list[str]) -> list[str]:
    names: list[str] = []
    for raw in raw_lists:
        for item in re.findall(r"['\"](\w+)['\"]", raw):
            if item not in names:
                names.append(item)
    return names


def parse_code_structure(content: str, path: str) -> CodeStructure:
    """Extract declared names from ``content``; language chosen by ``path`` extension."""
    language = detect_language(path)
    structure = CodeStructure()

    rules = _RULES_BY_LANGUAGE.get(language)
    if rules is not None:
        structure.functions = _collect(rules.functions, content, rules.skip_functions)
        structure.classes = _collect(rules.classes, content)
        structure.imports = _collect(rules.imports, content)
        exports = _collect(rules.exports, content)
        structure.exports = _python_exports(exports) if language == "python" else exports

    if language in _CONFIG_LANGUAGES:
        structure.kind = "config"
    elif language == "shell":
        structure.kind = "script"
    elif structure.classes:
        structure.kind = "class"
    elif structure.functions or structure.imports:
        structure.kind = "module"
    return structure
