import asyncio
import json
import random
from collections import deque
from types import SimpleNamespace
from typing import List, Optional

import fakeredis
import httpx
import pytest

from config import Settings


# =========================
# Settings
# =========================

def make_settings(**overrides) -> Settings:
    values = dict(
        ENV="dev",
        ALLOWED_ORIGINS="http://localhost:3000",
        REDIS_URL=None,
        RECAPTCHA_SECRET_KEY=None,
        OPENAI_API_KEY="sk-test",
        DEEPSEEK_API_KEY="ds-test",
        GEMINI_API_KEY="gm-test",
        LOCAL_MODEL_URL="http://ollama.test",
        LOCAL_MODEL_BACKEND="ollama",
        EVENT_SINK_URL=None,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# =========================
# Frames
# =========================

def split_frames(data: bytes, parts: int) -> List[bytes]:
    """Cut `data` into `parts` frames at arbitrary (seeded) byte offsets."""
    if parts <= 1:
        return [data]
    cuts = sorted(random.Random(parts).sample(range(1, len(data)), parts - 1))
    bounds = [0, *cuts, len(data)]
    return [data[start:end] for start, end in zip(bounds, bounds[1:])]


def sse(*events, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(event, ensure_ascii=False)}\n\n" for event in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def chat_chunk(content: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": content}}]}


def ndjson(*records) -> bytes:
    return "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in records).encode("utf-8")


async def aiter_list(items):
    for item in items:
        yield item


def parse_ndjson(body: str) -> List[dict]:
    return [json.loads(line) for line in body.splitlines() if line.strip()]


# =========================
# Upstream doubles
# =========================

class FrameStream(httpx.AsyncByteStream):
    """Upstream body delivered frame by frame; records when it is released."""

    def __init__(self, frames, *, hang: bool = False):
        self.frames = list(frames)
        self.hang = hang
        self.closed = False
        self.reads = 0

    async def __aiter__(self):
        for frame in self.frames:
            self.reads += 1
            yield frame
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


class UpstreamRecorder:
    """httpx.MockTransport handler that records every outgoing request."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.streams: List[FrameStream] = []
        self._responses = deque()

    def stream(self, frames, *, status_code: int = 200, hang: bool = False) -> None:
        self._responses.append(("stream", status_code, frames, hang))

    def error(self, status_code: int, **kwargs) -> None:
        self._responses.append(("error", status_code, kwargs, False))

    def fail(self, exc: Exception) -> None:
        self._responses.append(("raise", 0, exc, False))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind, status_code, data, hang = self._responses.popleft() if self._responses else ("stream", 200, [], False)
        if kind == "raise":
            raise data
        if kind == "error":
            return httpx.Response(status_code, **data)
        stream = FrameStream(data, hang=hang)
        self.streams.append(stream)
        return httpx.Response(status_code, stream=stream)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


class FakeCompletionStream:
    """
    Stands in for LiteLLM's streaming wrapper: nothing is requested until
    the first read, so `read_error` surfaces on iteration, not on the call.
    """

    def __init__(self, texts, read_error: Optional[Exception] = None):
        self._texts = iter(list(texts))
        self.read_error = read_error
        self.reads = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        try:
            text = next(self._texts)
        except StopIteration:
            raise StopAsyncIteration
        return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])

    async def aclose(self):
        self.closed = True


class FakeCompletion:
    def __init__(self, texts=(), error: Optional[Exception] = None, read_error: Optional[Exception] = None):
        self.texts = texts
        self.error = error
        self.read_error = read_error
        self.calls: List[dict] = []
        self.streams: List[FakeCompletionStream] = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        stream = FakeCompletionStream(self.texts, read_error=self.read_error)
        self.streams.append(stream)
        return stream


# =========================
# Fixtures
# =========================

@pytest.fixture
def upstream():
    return UpstreamRecorder()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def completion():
    return FakeCompletion(["Χαῖρε", ", ὦ φίλε"])
