import time

import pytest

from viking_rag.embedding_models import resolve_provider
from viking_rag.embeddings import RemoteEmbedder
from viking_rag.exceptions import EmbeddingAPIError, EmbeddingError


class _FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _vector_for(text: str) -> list[float]:
    return [float(len(text)), 1.0]


class _FakeClient:
    """Echo embeddings; entries returned in reverse index order."""

    def __init__(self, fail_batches: bool = False, bad_inputs: set[str] | None = None):
        self.posts: list[dict] = []
        self.fail_batches = fail_batches
        self.bad_inputs = bad_inputs or set()

    async def post(self, url: str, **kwargs):
        self.posts.append({"url": url, **kwargs})
        inputs = kwargs["json"]["input"]
        if isinstance(inputs, list) and self.fail_batches:
            return _FakeResponse(500, text="upstream exploded")
        items = inputs if isinstance(inputs, list) else [inputs]
        if any(item in self.bad_inputs for item in items):
            return _FakeResponse(400, text="bad input")
        data = [{"index": i, "embedding": _vector_for(t)} for i, t in enumerate(items)]
        return _FakeResponse(200, {"data": list(reversed(data))})

    async def aclose(self) -> None:
        return None


def _embedder(client: _FakeClient, **kwargs) -> RemoteEmbedder:
    embedder = RemoteEmbedder(resolve_provider("openai"), "sk-test", min_interval=0, **kwargs)
    embedder.client = client
    return embedder


@pytest.mark.asyncio
async def test_request_shape_and_auth_header():
    client = _FakeClient()
    embedder = _embedder(client)

    vector = await embedder.embed_strict("hello")

    assert vector == [5.0, 1.0]
    call = client.posts[0]
    assert call["url"] == "https://api.openai.com/v1/embeddings"
    assert call["json"] == {"model": "text-embedding-3-small", "input": "hello"}
    assert call["headers"]["Authorization"] == "Bearer sk-test"
    assert call["timeout"] == 30.0


@pytest.mark.asyncio
async def test_batch_output_follows_input_order_despite_shuffled_indexes():
    client = _FakeClient()
    embedder = _embedder(client)
    texts = ["a", "bbb", "cc", "dddd"]

    vectors = await embedder.embed_batch(texts)

    assert vectors == [_vector_for(t) for t in texts]
    assert client.posts[0]["timeout"] == 60.0


@pytest.mark.asyncio
async def test_batches_are_capped_at_twenty_items():
    client = _FakeClient()
    embedder = _embedder(client)
    texts = [f"text-{i}" for i in range(45)]

    vectors = await embedder.embed_batch(texts)

    assert [len(p["json"]["input"]) for p in client.posts] == [20, 20, 5]
    assert vectors == [_vector_for(t) for t in texts]


@pytest.mark.asyncio
async def test_failed_batch_falls_back_to_single_calls():
    client = _FakeClient(fail_batches=True, bad_inputs={"bad"})
    embedder = _embedder(client)

    vectors = await embedder.embed_batch(["good", "bad", "fine"])

    assert vectors == [_vector_for("good"), None, _vector_for("fine")]
    singles = [p["json"]["input"] for p in client.posts if isinstance(p["json"]["input"], str)]
    assert singles == ["good", "bad", "fine"]


@pytest.mark.asyncio
async def test_non_200_raises_with_status_and_excerpt():
    client = _FakeClient(bad_inputs={"x"})
    embedder = _embedder(client)

    with pytest.raises(EmbeddingAPIError) as exc_info:
        await embedder.embed_strict("x")

    assert exc_info.value.status_code == 400
    assert "bad input" in str(exc_info.value)
    assert await embedder.embed("x") is None


@pytest.mark.asyncio
async def test_malformed_body_is_an_embedding_error():
    class _NoData(_FakeClient):
        async def post(self, url: str, **kwargs):
            return _FakeResponse(200, {"object": "list"})

    embedder = _embedder(_NoData())

    with pytest.raises(EmbeddingError):
        await embedder.embed_strict("x")


@pytest.mark.asyncio
async def test_input_truncated_to_provider_limit():
    client = _FakeClient()
    embedder = _embedder(client)
    limit = embedder.spec.max_input_tokens * 2

    await embedder.embed("y" * (limit + 500))

    assert len(client.posts[0]["json"]["input"]) == limit


@pytest.mark.asyncio
async def test_calls_respect_minimum_interval():
    client = _FakeClient()
    embedder = RemoteEmbedder(resolve_provider("openai"), "sk-test", min_interval=0.05)
    embedder.client = client

    started = time.monotonic()
    await embedder.embed("one")
    await embedder.embed("two")
    await embedder.embed("three")

    assert time.monotonic() - started >= 0.09
    assert len(client.posts) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "rows",
    [
        [{"index": None, "embedding": [0.1, 0.2]}, {"index": 1, "embedding": [0.3, 0.4]}],
        [{"index": 0, "embedding": [None, 0.2]}],
        [{"index": 0, "embedding": ["x", 0.2]}],
    ],
)
async def test_unparseable_rows_fall_back_to_none(rows):
    class _BadRows(_FakeClient):
        async def post(self, url: str, **kwargs):
            return _FakeResponse(200, {"data": rows})

    embedder = _embedder(_BadRows())

    with pytest.raises(EmbeddingError):
        await embedder.embed_strict("x")
    assert await embedder.embed("x") is None
    assert await embedder.embed_batch(["x", "y"]) == [None, None]
