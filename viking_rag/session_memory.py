"""Long-lived user preferences and agent experience.

Preferences are extracted from user messages by an ordered rule table;
experiences are recorded explicitly by the caller. Both persist in the
``session-memory`` key-value dataset and are rendered into a bounded
prompt block.
"""

import json
import re
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

from viking_rag.logging import get_logger
from viking_rag.storage import KvStore

log = get_logger(__name__)

DATASET_NAME = "session-memory"
PREF_PREFIX = "pref:"
EXP_PREFIX = "exp:"

INITIAL_CONFIDENCE = 0.5
CONFIDENCE_STEP = 0.2
MIN_PROMPT_CONFIDENCE = 0.3
MAX_PROMPT_PREFERENCES = 10
MAX_PROMPT_EXPERIENCES = 5
MAX_EXPERIENCE_TEXT = 500
MAX_EXPERIENCE_KEY = 64
TRUNCATION_MARKER = "\n...(truncated)"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class PreferenceRule:
    pattern: re.Pattern[str]
    key: str
    extract: Callable[[re.Match[str]], str]


def _lower_group(match: re.Match[str]) -> str:
    return match.group(1).lower()


def _group(match: re.Match[str]) -> str:
    return match.group(1)


# Evaluated in order; several rules may fire on one message.
PREFERENCE_RULES: tuple[PreferenceRule, ...] = (
    PreferenceRule(
        re.compile(r"(?:use|prefer|always use|write in)\s+(typescript|javascript|python|go|rust|java)\b", re.I),
        "language",
        _lower_group,
    ),
    PreferenceRule(
        re.compile(r"(?:use|prefer)\s+(chinese|english|japanese|中文|英文|日文)", re.I),
        "response_language",
        _group,
    ),
    PreferenceRule(
        re.compile(r"(?:use|prefer|with)\s+(react|vue|angular|svelte|next\.?js|nuxt)", re.I),
        "framework",
        _lower_group,
    ),
    PreferenceRule(re.compile(r"(?:use|prefer)\s+(tabs|spaces)", re.I), "indentation", _lower_group),
    PreferenceRule(
        re.compile(r"(?:use|prefer|write)\s+(?:in\s+)?(functional|oop|class-based)\s+(?:style|approach|pattern)", re.I),
        "coding_style",
        _lower_group,
    ),
    PreferenceRule(re.compile(r"(?:don'?t|never|avoid)\s+use\s+(\w+)", re.I), "avoid", _lower_group),
    PreferenceRule(re.compile(r"用中文(?:回答|回复|解释)"), "response_language", lambda _m: "中文"),
    PreferenceRule(
        re.compile(r"(?:reply|respond|answer)\s+in\s+(chinese|english|japanese)", re.I),
        "response_language",
        _group,
    ),
)


@dataclass
class UserPreference:
    key: str
    value: str
    confidence: float
    source: str
    updated_at: str


@dataclass
class AgentExperience:
    pattern: str
    context: str
    resolution: str
    success_count: int
    updated_at: str


@dataclass
class SessionMemoryStats:
    preferences: int
    experiences: int
    last_updated: str | None


def experience_key(pattern: str) -> str:
    """Identifier-safe, length-bounded dedup key for an experience pattern."""
    return re.sub(r"[^a-zA-Z0-9]", "_", pattern)[:MAX_EXPERIENCE_KEY]


class SessionMemory:
    """Preference and experience memory persisted across sessions."""

    def __init__(self, cache_dir: Path | str, *, store: KvStore | None = None):
        self.store = store or KvStore(cache_dir, DATASET_NAME)
        self._preferences: dict[str, UserPreference] = {}
        self._experiences: dict[str, AgentExperience] = {}

    async def init(self) -> None:
        async for key, value in self.store.entries(PREF_PREFIX):
            try:
                pref = UserPreference(**json.loads(value))
                pref.confidence = float(pref.confidence)
                self._preferences[key[len(PREF_PREFIX) :]] = pref
            except (ValueError, TypeError) as exc:
                log.debug("Skipping corrupt preference", key=key, error=str(exc))
        async for key, value in self.store.entries(EXP_PREFIX):
            try:
                experience = AgentExperience(**json.loads(value))
                experience.success_count = int(experience.success_count)
                self._experiences[key[len(EXP_PREFIX) :]] = experience
            except (ValueError, TypeError) as exc:
                log.debug("Skipping corrupt experience", key=key, error=str(exc))

    async def extract_from_user_message(self, message: str, conversation_id: str) -> list[UserPreference]:
        """Apply every matching preference rule; returns the preferences written."""
        updated: list[UserPreference] = []
        for rule in PREFERENCE_RULES:
            match = rule.pattern.search(message)
            if match is None:
                continue
            existing = self._preferences.get(rule.key)
            if existing is not None:
                confidence = round(min(existing.confidence + CONFIDENCE_STEP, 1.0), 6)
            else:
                confidence = INITIAL_CONFIDENCE
            pref = UserPreference(
                key=rule.key,
                value=rule.extract(match),
                confidence=confidence,
                source=conversation_id,
                updated_at=_utcnow_iso(),
            )
            self._preferences[rule.key] = pref
            await self.store.set_json(PREF_PREFIX + rule.key, asdict(pref))
            updated.append(pref)
        if updated:
            log.debug("Preferences updated", keys=[p.key for p in updated], conversation=conversation_id)
        return updated

    async def record_experience(self, pattern: str, context: str, resolution: str) -> AgentExperience:
        key = experience_key(pattern)
        existing = self._experiences.get(key)
        experience = AgentExperience(
            pattern=pattern,
            context=context[:MAX_EXPERIENCE_TEXT],
            resolution=resolution[:MAX_EXPERIENCE_TEXT],
            success_count=existing.success_count + 1 if existing is not None else 1,
            updated_at=_utcnow_iso(),
        )
        self._experiences[key] = experience
        await self.store.set_json(EXP_PREFIX + key, asdict(experience))
        return experience

    def build_memory_prompt(self, max_tokens: int = 500) -> str:
        """Render ranked preferences and experiences within ``max_tokens * 4`` characters."""
        parts: list[str] = []
        preferences = sorted(
            (p for p in self._preferences.values() if p.confidence >= MIN_PROMPT_CONFIDENCE),
            key=lambda p: p.confidence,
            reverse=True,
        )
        if preferences:
            parts.append("## User Preferences (learned from history)")
            for pref in preferences[:MAX_PROMPT_PREFERENCES]:
                parts.append(f"- {pref.key}: {pref.value} (confidence: {pref.confidence * 100:.0f}%)")
        experiences = sorted(self._experiences.values(), key=lambda e: e.success_count, reverse=True)
        if experiences:
            parts.append("## Agent Experience (learned patterns)")
            for exp in experiences[:MAX_PROMPT_EXPERIENCES]:
                parts.append(f"- Pattern: {exp.pattern}\n  Resolution: {exp.resolution}")

        prompt = "\n".join(parts)
        max_chars = max_tokens * 4
        if len(prompt) > max_chars:
            return prompt[:max_chars] + TRUNCATION_MARKER
        return prompt

    def get_preference(self, key: str) -> UserPreference | None:
        return self._preferences.get(key)

    def get_preferences(self) -> list[UserPreference]:
        return list(self._preferences.values())

    def get_experiences(self) -> list[AgentExperience]:
        return list(self._experiences.values())

    def get_stats(self) -> SessionMemoryStats:
        stamps = [p.updated_at for p in self._preferences.values()]
        stamps += [e.updated_at for e in self._experiences.values()]
        return SessionMemoryStats(
            preferences=len(self._preferences),
            experiences=len(self._experiences),
            last_updated=max(stamps) if stamps else None,
        )

    async def clear(self) -> None:
        self._preferences.clear()
        self._experiences.clear()
        await self.store.clear(PREF_PREFIX)
        await self.store.clear(EXP_PREFIX)

    async def close(self) -> None:
        await self.store.close()
