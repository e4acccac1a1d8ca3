from pathlib import Path

import pytest

from viking_rag.session_memory import SessionMemory, experience_key
from viking_rag.storage import KvStore


@pytest.mark.asyncio
async def test_first_match_sets_half_confidence(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()

    updated = await memory.extract_from_user_message("Please use TypeScript for this", "conv-1")

    assert [p.key for p in updated] == ["language"]
    pref = memory.get_preference("language")
    assert pref.value == "typescript"
    assert pref.confidence == 0.5
    assert pref.source == "conv-1"
    await memory.close()


@pytest.mark.asyncio
async def test_confidence_grows_and_caps_at_one(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()

    seen = []
    for _ in range(6):
        await memory.extract_from_user_message("I prefer tabs", "conv-1")
        seen.append(memory.get_preference("indentation").confidence)

    assert seen == [0.5, 0.7, 0.9, 1.0, 1.0, 1.0]
    await memory.close()


@pytest.mark.asyncio
async def test_latest_value_overwrites_and_keeps_raising_confidence(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()

    await memory.extract_from_user_message("use react", "c1")
    await memory.extract_from_user_message("actually use vue", "c2")

    pref = memory.get_preference("framework")
    assert pref.value == "vue"
    assert pref.confidence == pytest.approx(0.7)
    assert pref.source == "c2"
    await memory.close()


@pytest.mark.asyncio
async def test_several_rules_fire_on_one_message(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()

    updated = await memory.extract_from_user_message(
        "Always use python with Next.js, don't use jquery, and reply in English",
        "c1",
    )

    values = {p.key: p.value for p in updated}
    assert values == {
        "language": "python",
        "framework": "next.js",
        "avoid": "jquery",
        "response_language": "English",
    }
    await memory.close()


@pytest.mark.asyncio
async def test_chinese_phrasing_sets_response_language(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()

    await memory.extract_from_user_message("请用中文回答这个问题", "c1")

    assert memory.get_preference("response_language").value == "中文"
    await memory.close()


@pytest.mark.asyncio
async def test_unmatched_message_changes_nothing(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()

    assert await memory.extract_from_user_message("fix the failing test", "c1") == []
    assert memory.get_stats().preferences == 0
    await memory.close()


@pytest.mark.asyncio
async def test_record_experience_counts_repeats_and_truncates(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()

    await memory.record_experience("ImportError: no module x", "ctx", "pip install x")
    again = await memory.record_experience("ImportError: no module x", "c" * 900, "r" * 900)

    assert again.success_count == 2
    assert len(again.context) == 500
    assert len(again.resolution) == 500
    assert experience_key("ImportError: no module x") == "ImportError__no_module_x"
    assert len(experience_key("a" * 200)) == 64
    await memory.close()


@pytest.mark.asyncio
async def test_memory_prompt_ranks_and_filters(tmp_path: Path):
    store = KvStore(tmp_path, "session-memory")
    await store.set_json(
        "pref:weak",
        {"key": "weak", "value": "maybe", "confidence": 0.2, "source": "old", "updated_at": "2024-01-01T00:00:00+00:00"},
    )
    await store.close()
    memory = SessionMemory(tmp_path)
    await memory.init()
    await memory.extract_from_user_message("use spaces", "c1")
    await memory.extract_from_user_message("use go", "c1")
    await memory.extract_from_user_message("use go", "c1")
    await memory.record_experience("flaky test", "ctx", "rerun with -p no:randomly")
    await memory.record_experience("lint error", "ctx", "run ruff --fix")
    await memory.record_experience("lint error", "ctx", "run ruff --fix")

    prompt = memory.build_memory_prompt()

    assert prompt.split("\n") == [
        "## User Preferences (learned from history)",
        "- language: go (confidence: 70%)",
        "- indentation: spaces (confidence: 50%)",
        "## Agent Experience (learned patterns)",
        "- Pattern: lint error",
        "  Resolution: run ruff --fix",
        "- Pattern: flaky test",
        "  Resolution: rerun with -p no:randomly",
    ]
    assert memory.get_stats().preferences == 3
    await memory.close()


@pytest.mark.asyncio
async def test_memory_prompt_truncated_to_budget(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()
    await memory.extract_from_user_message("use rust", "c1")

    prompt = memory.build_memory_prompt(max_tokens=5)

    assert prompt == "## User Preferences (learned from history)"[:20] + "\n...(truncated)"
    assert memory.build_memory_prompt() != prompt
    await memory.close()


@pytest.mark.asyncio
async def test_memory_persists_and_skips_corrupt_entries(tmp_path: Path):
    first = SessionMemory(tmp_path)
    await first.init()
    await first.extract_from_user_message("use java", "c1")
    await first.record_experience("p", "c", "r")
    await first.store.set("pref:broken", "{nope")
    await first.store.set("exp:broken", '{"pattern": "only"}')
    await first.close()

    second = SessionMemory(tmp_path)
    await second.init()

    assert second.get_preference("language").value == "java"
    assert second.get_preference("broken") is None
    stats = second.get_stats()
    assert (stats.preferences, stats.experiences) == (1, 1)
    assert stats.last_updated is not None
    await second.close()


@pytest.mark.asyncio
async def test_clear_removes_everything(tmp_path: Path):
    memory = SessionMemory(tmp_path)
    await memory.init()
    await memory.extract_from_user_message("use java", "c1")
    await memory.record_experience("p", "c", "r")

    await memory.clear()

    assert memory.build_memory_prompt() == ""
    assert await memory.store.keys() == []
    await memory.close()


@pytest.mark.asyncio
async def test_entries_with_bad_field_types_are_skipped_or_coerced(tmp_path: Path):
    store = KvStore(tmp_path, "session-memory")
    stamp = "2024-01-01T00:00:00+00:00"
    await store.set_json(
        "pref:language",
        {"key": "language", "value": "go", "confidence": "0.9", "source": "old", "updated_at": stamp},
    )
    await store.set_json(
        "pref:framework",
        {"key": "framework", "value": "vue", "confidence": "high", "source": "old", "updated_at": stamp},
    )
    await store.set_json(
        "pref:indentation",
        {"key": "indentation", "value": "tabs", "confidence": None, "source": "old", "updated_at": stamp},
    )
    await store.set_json(
        "exp:lint",
        {"pattern": "lint", "context": "c", "resolution": "r", "success_count": "many", "updated_at": stamp},
    )
    await store.close()
    memory = SessionMemory(tmp_path)

    await memory.init()

    assert memory.get_preference("language").confidence == 0.9
    assert memory.get_preference("framework") is None
    assert memory.get_preference("indentation") is None
    assert memory.get_experiences() == []
    assert memory.build_memory_prompt() == (
        "## User Preferences (learned from history)\n- language: go (confidence: 90%)"
    )
    await memory.close()
