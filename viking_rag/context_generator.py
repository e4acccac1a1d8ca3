"""Short natural-language descriptions of source files.

Two paths: a local heuristic built from the parsed structure, and an
optional chat-completion call. Any LLM failure falls back to the heuristic.
"""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

import httpx

from viking_rag.code_parser import CodeStructure, parse_code_structure
from viking_rag.exceptions import ContextGenerationError
from viking_rag.logging import get_logger

log = get_logger(__name__)

CONTEXT_PROMPT = """You are a code analyzer. Given a code file, generate a brief context description (2-3 sentences) that explains:
1. What this file does (purpose)
2. Key components (main functions/classes)
3. Where it fits in a project

Be concise and focus on searchable keywords. Answer in the same language as the code comments.

File path: {file_path}
Content:
```
{content}
```

Context description:"""

# Chat-completion endpoints for providers known by name.
CHAT_COMPLETION_URLS = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "deepseek": "https://api.deepseek.com/v1/chat/completions",
    "mistral": "https://api.mistral.ai/v1/chat/completions",
    "siliconflow": "https://api.siliconflow.cn/v1/chat/completions",
    "zhipu": "https://open.bigmodel.cn/api/paas/v4/chat/completions",
    "openrouter": "https://openrouter.ai/api/v1/chat/completions",
}


@dataclass
class ContextResult:
    """Description plus the structure it was derived from."""

    context: str
    structure: CodeStructure


def _file_name(path: str) -> str:
    return PurePosixPath(path.replace("\\", "/")).name or path


def _head(values: list[str], limit: int) -> str:
    suffix = "..." if len(values) > limit else ""
    return ", ".join(values[:limit]) + suffix


def describe_structure(structure: CodeStructure, path: str) -> str:
    """Heuristic one-paragraph description of a parsed file."""
    parts: list[str] = []
    if structure.kind == "config":
        parts.append(f"Configuration file: {_file_name(path)}")
    elif structure.kind == "class":
        parts.append(f"Classes: {', '.join(structure.classes)}")
    if structure.functions:
        parts.append(f"Functions: {_head(structure.functions, 10)}")
    if structure.imports:
        parts.append(f"Imports: {_head(structure.imports, 5)}")
    if structure.exports:
        parts.append(f"Exports: {_head(structure.exports, 5)}")
    return ". ".join(parts) or f"File: {_file_name(path)}"


def generate_local_context(content: str, path: str) -> ContextResult:
    """Describe a file without calling an LLM."""
    structure = parse_code_structure(content, path)
    return ContextResult(context=describe_structure(structure, path), structure=structure)


class ContextGenerator:
    """Generate file descriptions through an OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        provider: str = "",
        api_key: str = "",
        base_url: str = "",
        model: str = "",
        *,
        max_content_chars: int = 4000,
        timeout: float = 30.0,
    ):
        self.provider = provider.strip().lower()
        self.api_key = api_key.strip()
        self.base_url = (base_url.strip() or CHAT_COMPLETION_URLS.get(self.provider, "")).rstrip("/")
        self.model = model.strip()
        self.max_content_chars = max(200, int(max_content_chars))
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.base_url and self.model)

    def build_prompt(self, content: str, path: str) -> str:
        if len(content) > self.max_content_chars:
            content = content[: self.max_content_chars] + "\n... [truncated]"
        return CONTEXT_PROMPT.format(file_path=path, content=content)

    async def _call_llm(self, prompt: str) -> str:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": 200,
            "temperature": 0.3,
            "stream": False,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            response = await self.client.post(self.base_url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise ContextGenerationError(f"Context LLM HTTP error: {e}")

        if response.status_code != 200:
            raise ContextGenerationError(
                f"Context LLM API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise ContextGenerationError(f"Failed to parse context LLM response: {e}")
        return str(content).strip()

    async def generate(self, content: str, path: str) -> ContextResult:
        """Describe one file, falling back to the heuristic on any failure."""
        if not self.enabled:
            return generate_local_context(content, path)
        structure = parse_code_structure(content, path)
        try:
            context = await self._call_llm(self.build_prompt(content, path))
        except ContextGenerationError as exc:
            log.warning("Context generation failed; using local digest", path=path, error=str(exc))
            return ContextResult(context=describe_structure(structure, path), structure=structure)
        if not context:
            context = describe_structure(structure, path)
        return ContextResult(context=context, structure=structure)

    async def batch_generate(
        self,
        files: list[tuple[str, str]],
        on_progress: Callable[[int, int], None] | None = None,
        *,
        concurrency: int = 3,
        delay: float = 0.2,
    ) -> dict[str, ContextResult]:
        """Describe many ``(path, content)`` files with a bounded worker pool."""
        results: dict[str, ContextResult] = {}
        total = len(files)
        done = 0

        def report() -> None:
            nonlocal done
            done += 1
            if on_progress is not None:
                on_progress(done, total)

        if not self.enabled:
            for path, content in files:
                results[path] = generate_local_context(content, path)
                report()
            return results

        queue: asyncio.Queue[tuple[str, str]] = asyncio.Queue()
        for item in files:
            queue.put_nowait(item)

        async def worker() -> None:
            while True:
                try:
                    path, content = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results[path] = await self.generate(content, path)
                report()
                if not queue.empty() and delay > 0:
                    await asyncio.sleep(delay)

        await asyncio.gather(*(worker() for _ in range(max(1, concurrency))))
        return results

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
