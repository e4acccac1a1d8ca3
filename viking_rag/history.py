"""Conversation history compression.

Older exchanges are folded into one synthetic summary exchange; the most
recent ones are kept verbatim. Inputs are never mutated.
"""

import json
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Union

from viking_rag.logging import get_logger

log = get_logger(__name__)

BOILERPLATE_MESSAGES = frozenset({"Continue with the previous request.", "..."})
MAX_KEY_INTERACTIONS = 3
MAX_TOOLS = 5
MAX_FILES = 5
MESSAGE_EXCERPT_CHARS = 100
MIN_KEEP_BY_TOKENS = 3

_CJK_RE = re.compile(r"[\u4e00-\u9fa5]")


class NodeType(IntEnum):
    TEXT = 0
    TOOL_RESULT = 1
    TOOL_USE = 5


@dataclass
class TextNode:
    content: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": int(NodeType.TEXT), "text_node": {"content": self.content}}


@dataclass
class ToolUseNode:
    tool_name: str = ""
    input_json: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": int(NodeType.TOOL_USE),
            "tool_use": {"tool_name": self.tool_name, "input_json": self.input_json},
        }


@dataclass
class ToolResultNode:
    content: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": int(NodeType.TOOL_RESULT), "tool_result_node": {"content": self.content}}


@dataclass
class RawNode:
    """Node of a type this module does not interpret; kept for round-tripping."""

    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)


Node = Union[TextNode, ToolUseNode, ToolResultNode, RawNode]


def node_from_dict(data: dict[str, Any]) -> Node:
    node_type = data.get("type")
    if node_type == NodeType.TEXT and isinstance(data.get("text_node"), dict):
        return TextNode(content=str(data["text_node"].get("content") or ""))
    if node_type == NodeType.TOOL_USE and isinstance(data.get("tool_use"), dict):
        tool_use = data["tool_use"]
        return ToolUseNode(
            tool_name=str(tool_use.get("tool_name") or tool_use.get("name") or ""),
            input_json=str(tool_use.get("input_json") or ""),
        )
    if node_type == NodeType.TOOL_RESULT and isinstance(data.get("tool_result_node"), dict):
        return ToolResultNode(content=str(data["tool_result_node"].get("content") or ""))
    return RawNode(data=dict(data))


@dataclass
class Exchange:
    """One user turn with the assistant's response nodes and tool results."""

    request_message: str | None = None
    response_nodes: list[Node] = field(default_factory=list)
    request_nodes: list[Node] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Exchange":
        message = data.get("request_message")
        return cls(
            request_message=None if message is None else str(message),
            response_nodes=[node_from_dict(n) for n in data.get("response_nodes") or [] if isinstance(n, dict)],
            request_nodes=[node_from_dict(n) for n in data.get("request_nodes") or [] if isinstance(n, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "response_nodes": [n.to_dict() for n in self.response_nodes],
            "request_nodes": [n.to_dict() for n in self.request_nodes],
        }
        if self.request_message is not None:
            data["request_message"] = self.request_message
        return data


@dataclass
class ContextStats:
    total_exchanges: int
    estimated_tokens: int
    token_limit: int
    usage_percentage: float
    needs_compression: bool


@dataclass
class CompressionResult:
    compressed_exchanges: list[Exchange]
    original_count: int
    compressed_count: int
    estimated_tokens_before: int = 0
    estimated_tokens_after: int = 0
    compression_ratio: float = 1.0
    summary: str | None = None


def estimate_tokens(text: str | None) -> int:
    """Rough token count: CJK at 1.5 chars/token, everything else at 4."""
    if not text:
        return 0
    cjk = len(_CJK_RE.findall(text))
    return math.ceil(cjk / 1.5 + (len(text) - cjk) / 4)


def estimate_exchanges_tokens(exchanges: list[Exchange]) -> int:
    total = 0
    for exchange in exchanges:
        total += estimate_tokens(exchange.request_message)
        for node in exchange.response_nodes:
            if isinstance(node, TextNode):
                total += estimate_tokens(node.content)
            elif isinstance(node, ToolUseNode):
                total += estimate_tokens(node.tool_name) + estimate_tokens(node.input_json)
        for node in exchange.request_nodes:
            if isinstance(node, ToolResultNode):
                total += estimate_tokens(node.content)
    return total


# First matching substring wins; order matters for overlapping names.
_MODEL_CONTEXT_LIMITS: tuple[tuple[str, int], ...] = (
    ("gemini-3", 1_048_576),
    ("gemini-2.5", 1_048_576),
    ("gemini-2.0-flash-thinking", 32_768),
    ("gemini-2.0", 1_048_576),
    ("gemini-1.5-pro", 2_097_152),
    ("gemini-1.5", 1_048_576),
    ("gemini-exp", 1_048_576),
    ("gemini", 200_000),
    ("claude", 200_000),
    ("gpt-4-turbo", 128_000),
    ("gpt-4o", 128_000),
    ("gpt-4", 8_192),
    ("gpt-3.5-turbo-16k", 16_384),
    ("gpt-3.5", 4_096),
    ("deepseek", 128_000),
    ("glm", 128_000),
    ("minimax", 245_760),
)
DEFAULT_CONTEXT_LIMIT = 200_000


def get_model_context_limit(model: str) -> int:
    name = (model or "").lower()
    for needle, limit in _MODEL_CONTEXT_LIMITS:
        if needle in name:
            return limit
    return DEFAULT_CONTEXT_LIMIT


def get_context_stats(
    history: list[Exchange],
    token_limit: int = DEFAULT_CONTEXT_LIMIT,
    threshold: float = 0.8,
) -> ContextStats:
    tokens = estimate_exchanges_tokens(history)
    usage = (tokens / token_limit) * 100 if token_limit > 0 else 0.0
    return ContextStats(
        total_exchanges=len(history),
        estimated_tokens=tokens,
        token_limit=token_limit,
        usage_percentage=usage,
        needs_compression=usage > threshold * 100,
    )


def generate_history_summary(exchanges: list[Exchange]) -> str:
    """Digest of key user messages, tool usage and touched files."""
    key_interactions: list[str] = []
    tool_counts: Counter[str] = Counter()
    files: list[str] = []

    for exchange in exchanges:
        message = exchange.request_message or ""
        excerpt = message[:MESSAGE_EXCERPT_CHARS]
        if excerpt and excerpt not in BOILERPLATE_MESSAGES:
            suffix = "..." if len(message) > MESSAGE_EXCERPT_CHARS else ""
            key_interactions.append(f"User: {excerpt}{suffix}")
        for node in exchange.response_nodes:
            if not isinstance(node, ToolUseNode):
                continue
            tool_counts[node.tool_name] += 1
            try:
                tool_input = json.loads(node.input_json or "{}")
            except ValueError:
                continue
            path = tool_input.get("path") if isinstance(tool_input, dict) else None
            if path and str(path) not in files:
                files.append(str(path))

    parts = [f"Compressed {len(exchanges)} earlier exchanges:"]
    if key_interactions:
        parts.append(f"\nKey interactions: {'; '.join(key_interactions[:MAX_KEY_INTERACTIONS])}")
    if tool_counts:
        top_tools = ", ".join(f"{name}({count})" for name, count in tool_counts.most_common(MAX_TOOLS))
        parts.append(f"\nTools used: {top_tools}")
    if files:
        more = "..." if len(files) > MAX_FILES else ""
        parts.append(f"\nFiles accessed: {', '.join(files[:MAX_FILES])}{more}")
    return "\n".join(parts)


def _summary_exchange(old: list[Exchange], summary: str) -> Exchange:
    return Exchange(
        request_message=f"[Context summary] Compressed {len(old)} earlier exchanges",
        response_nodes=[TextNode(content=summary)],
        request_nodes=[],
    )


def _passthrough(history: list[Exchange], tokens: int) -> CompressionResult:
    return CompressionResult(
        compressed_exchanges=list(history),
        original_count=len(history),
        compressed_count=len(history),
        estimated_tokens_before=tokens,
        estimated_tokens_after=tokens,
        compression_ratio=1.0,
    )


def _fold(history: list[Exchange], keep: int, tokens_before: int) -> CompressionResult:
    split = len(history) - keep
    old, recent = history[:split], history[split:]
    summary = generate_history_summary(old)
    compressed = [_summary_exchange(old, summary), *recent]
    tokens_after = estimate_tokens(summary) + estimate_exchanges_tokens(recent)
    log.debug("History compressed", original=len(history), compressed=len(compressed), tokens_after=tokens_after)
    return CompressionResult(
        compressed_exchanges=compressed,
        original_count=len(history),
        compressed_count=len(compressed),
        estimated_tokens_before=tokens_before,
        estimated_tokens_after=tokens_after,
        compression_ratio=tokens_after / tokens_before if tokens_before else 1.0,
        summary=summary,
    )


def compress_chat_history(
    history: list[Exchange],
    keep_recent_count: int = 3,
    max_history_length: int = 8,
) -> CompressionResult:
    """Keep the last ``keep_recent_count`` exchanges once history exceeds ``max_history_length``."""
    tokens_before = estimate_exchanges_tokens(history)
    if len(history) <= max_history_length:
        return _passthrough(history, tokens_before)
    keep = max(0, min(keep_recent_count, len(history)))
    if keep == len(history):
        return _passthrough(history, tokens_before)
    return _fold(history, keep, tokens_before)


def compress_chat_history_by_tokens(
    history: list[Exchange],
    token_limit: int = DEFAULT_CONTEXT_LIMIT,
    target_usage: float = 0.4,
    threshold: float = 0.8,
) -> CompressionResult:
    """Keep the newest exchanges fitting ``token_limit * target_usage`` (at least three).

    History below ``threshold`` usage passes through unchanged.
    """
    if not history:
        return _passthrough([], 0)
    tokens_before = estimate_exchanges_tokens(history)
    if token_limit <= 0 or tokens_before / token_limit < threshold:
        return _passthrough(history, tokens_before)

    target_tokens = token_limit * target_usage
    keep = 0
    accumulated = 0
    for exchange in reversed(history):
        exchange_tokens = estimate_exchanges_tokens([exchange])
        if accumulated + exchange_tokens > target_tokens and keep > 0:
            break
        accumulated += exchange_tokens
        keep += 1
    keep = max(keep, min(MIN_KEEP_BY_TOKENS, len(history)))
    if keep >= len(history):
        return _passthrough(history, tokens_before)
    return _fold(history, keep, tokens_before)
