import pytest

from viking_rag.code_parser import parse_code_structure
from viking_rag.context_generator import ContextGenerator, describe_structure, generate_local_context


class _FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


class _FakeClient:
    def __init__(self, status_code: int = 200, content: str = "Handles user sessions."):
        self.status_code = status_code
        self.content = content
        self.posts: list[dict] = []

    async def post(self, url: str, **kwargs):
        self.posts.append({"url": url, **kwargs})
        if self.status_code != 200:
            return _FakeResponse(self.status_code, text="rate limited")
        return _FakeResponse(200, {"choices": [{"message": {"content": f"  {self.content}  "}}]})

    async def aclose(self) -> None:
        return None


def test_describe_structure_for_config_and_code():
    config = parse_code_structure('{"a": 1}', "conf/app.json")
    code = parse_code_structure(
        "import os\n" + "\n".join(f"def f{i}():\n    pass" for i in range(12)),
        "lib/funcs.py",
    )

    assert describe_structure(config, "conf/app.json") == "Configuration file: app.json"
    assert describe_structure(code, "lib/funcs.py") == (
        "Functions: f0, f1, f2, f3, f4, f5, f6, f7, f8, f9.... Imports: os"
    )
    assert generate_local_context("", "empty.txt").context == "File: empty.txt"


@pytest.mark.asyncio
async def test_generate_uses_chat_completion():
    generator = ContextGenerator("openai", "sk-test", model="gpt-4o-mini")
    client = _FakeClient()
    generator.client = client

    result = await generator.generate("def login():\n    pass\n", "auth.py")

    assert result.context == "Handles user sessions."
    assert result.structure.functions == ["login"]
    body = client.posts[0]["json"]
    assert client.posts[0]["url"] == "https://api.openai.com/v1/chat/completions"
    assert body["max_tokens"] == 200
    assert body["temperature"] == 0.3
    assert body["stream"] is False
    assert "File path: auth.py" in body["messages"][0]["content"]


@pytest.mark.asyncio
async def test_generate_falls_back_to_heuristic_on_error():
    generator = ContextGenerator("openai", "sk-test", model="gpt-4o-mini")
    generator.client = _FakeClient(status_code=429)

    result = await generator.generate("def login():\n    pass\n", "auth.py")

    assert result.context == "Functions: login"


@pytest.mark.asyncio
async def test_disabled_generator_never_calls_network():
    generator = ContextGenerator()
    client = _FakeClient()
    generator.client = client

    results = await generator.batch_generate([("a.py", "def a():\n    pass\n")])

    assert generator.enabled is False
    assert results["a.py"].context == "Functions: a"
    assert client.posts == []


def test_prompt_truncates_long_content():
    generator = ContextGenerator("openai", "sk-test", model="m", max_content_chars=4000)

    prompt = generator.build_prompt("x" * 5000, "big.py")

    assert "x" * 4000 + "\n... [truncated]" in prompt
    assert "x" * 4001 not in prompt


@pytest.mark.asyncio
async def test_batch_generate_covers_every_file_with_worker_pool():
    generator = ContextGenerator("deepseek", "sk-test", model="deepseek-chat")
    client = _FakeClient()
    generator.client = client
    files = [(f"m{i}.py", f"def f{i}():\n    pass\n") for i in range(7)]
    progress: list[tuple[int, int]] = []

    results = await generator.batch_generate(
        files,
        lambda cur, total: progress.append((cur, total)),
        concurrency=3,
        delay=0,
    )

    assert set(results) == {path for path, _ in files}
    assert len(client.posts) == 7
    assert progress[-1] == (7, 7)
    assert client.posts[0]["url"] == "https://api.deepseek.com/v1/chat/completions"
