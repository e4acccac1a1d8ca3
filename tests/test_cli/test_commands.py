import asyncio
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

import viking_rag.config as config_module
import viking_rag.main as main_module
from viking_rag.session_memory import SessionMemory
from viking_rag.tiered_context import TieredContextStore
from viking_rag.workspace import content_hash

runner = CliRunner()


@pytest.fixture
def workspace(monkeypatch, tmp_path: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setattr(main_module, "console", Console(width=200, force_terminal=False))
    # structlog would otherwise bind to the runner's temporary stderr
    monkeypatch.setattr(main_module, "configure_logging", lambda *args, **kwargs: None)
    (tmp_path / "config.yaml").write_text("storage:\n  cache_dir: .cache\n", encoding="utf-8")
    return tmp_path


def _seed(cache_dir: Path) -> None:
    async def seed() -> None:
        tiers = TieredContextStore(cache_dir)
        await tiers.init()
        for path, content in (
            ("src/rag/store.py", "class KvStore:\n    pass\n"),
            ("src/ui/view.py", "def render():\n    pass\n"),
        ):
            await tiers.generate_tier(path, content, content_hash(content))
        await tiers.close()

        memory = SessionMemory(cache_dir)
        await memory.init()
        await memory.extract_from_user_message("use typescript", "cli")
        await memory.close()

    asyncio.run(seed())


def test_models_lists_catalog(workspace: Path):
    result = runner.invoke(main_module.cli, ["models"])

    assert result.exit_code == 0
    assert "* all-MiniLM-L6-v2" in result.output
    assert "bge-small-en-v1.5" in result.output


def test_tiers_filters_by_prefix(workspace: Path):
    _seed(workspace / ".cache")

    result = runner.invoke(main_module.cli, ["tiers", "src/rag/"])

    assert result.exit_code == 0
    assert "[store.py] type:class cls:KvStore" in result.output
    assert "view.py" not in result.output


def test_tiers_reports_empty_prefix(workspace: Path):
    result = runner.invoke(main_module.cli, ["tiers", "nothing/"])

    assert result.exit_code == 0
    assert "No tiers cached" in result.output


def test_memory_shows_preferences(workspace: Path):
    _seed(workspace / ".cache")

    result = runner.invoke(main_module.cli, ["memory"])

    assert result.exit_code == 0
    assert "typescript" in result.output
    assert "- language: typescript (confidence: 50%)" in result.output


class _CachedModelFetcher:
    def __init__(self, root: Path):
        self.root = root

    def cached_path(self, model, cache_dir):
        return self.root

    def download(self, model, cache_dir, on_fraction):
        raise AssertionError("cached model must not be downloaded")

    def artifact_dir(self, model, cache_dir):
        return self.root


def test_index_and_search_survive_a_model_that_fails_to_load(monkeypatch, workspace: Path):
    def loader(model, path, device):
        raise RuntimeError("boom")

    real_create = main_module.create_rag_engine
    monkeypatch.setattr(
        main_module,
        "create_rag_engine",
        lambda config, **kwargs: real_create(
            config,
            fetcher=_CachedModelFetcher(workspace / "model"),
            loader=loader,
            request_interval=0,
            worker_delay=0,
            **kwargs,
        ),
    )
    (workspace / "ws" / "src").mkdir(parents=True)
    (workspace / "ws" / "src" / "view.py").write_text("def render():\n    pass\n", encoding="utf-8")
    (workspace / "ws" / "src" / "store.py").write_text("class KvStore:\n    pass\n", encoding="utf-8")

    indexed = runner.invoke(main_module.cli, ["index", "ws"])

    assert indexed.exit_code == 0
    assert "unavailable" in indexed.output

    listed = runner.invoke(main_module.cli, ["tiers", "src/"])
    assert listed.exit_code == 0
    assert "[view.py]" in listed.output
    assert "fn:render" in listed.output

    found = runner.invoke(main_module.cli, ["search", "render", "ws"])
    assert found.exit_code == 0
    assert "using keyword search" in found.output
    assert "src/view.py" in found.output
    assert "src/store.py" not in found.output
