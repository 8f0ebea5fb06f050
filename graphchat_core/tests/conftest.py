import json
from typing import Any, Dict, List, Optional

import pytest


def sse(event: Optional[str], data: Any) -> bytes:
    payload = data if isinstance(data, str) else json.dumps(data)
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {payload}\n\n".encode("utf-8")


class SettingsStub:
    openai_api_key = "sk-openai-test"
    openai_base_url = "https://api.openai.test/v1"
    anthropic_api_key = "sk-anthropic-test"
    anthropic_base_url = "https://api.anthropic.test/v1"
    anthropic_version = "2023-06-01"
    anthropic_beta = None
    gemini_api_key = "gemini-test-key"
    gemini_base_url = "https://gemini.test"
    xai_api_key = "xai-test-key"
    xai_base_url = "https://api.x.test/v1"
    default_model = "gpt-5.2-high"
    http_timeout = 1.0
    stream_read_timeout = 2.0
    system_instruction_file = None


class MemoryPayloadStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(initial or {})
        self.puts: List[str] = []

    def get(self, key):
        return self.data.get(key)

    def put(self, key, json_value):
        self.puts.append(key)
        self.data[key] = json_value


class FakeStreamResponse:
    reason_phrase = "OK"

    def __init__(self, chunks, status_code=200, body=b"", calls=None):
        self._chunks = list(chunks)
        self.status_code = status_code
        self._body = body
        self.closed = False
        self._calls = calls

    def __enter__(self):
        return self

    def __exit__(self, *a):
        self.closed = True
        if self._calls is not None:
            self._calls["closed"] = True
        return False

    def iter_bytes(self):
        for c in self._chunks:
            yield c

    def read(self):
        return self._body

    @property
    def text(self):
        return self._body.decode("utf-8")


class FakeJsonResponse:
    reason_phrase = "OK"

    def __init__(self, data, status_code=200, headers=None):
        self._data = data
        self.status_code = status_code
        self.headers = headers or {}

    def json(self):
        if isinstance(self._data, Exception):
            raise self._data
        return self._data

    @property
    def text(self):
        return json.dumps(self._data)


@pytest.fixture
def settings_stub():
    return SettingsStub()


@pytest.fixture
def http_calls(monkeypatch):
    """替换 httpx.Client：stream 返回 calls["chunks"] 组成的 SSE 流，post 返回 calls["json"]。"""

    calls: Dict[str, Any] = {"requests": [], "chunks": [], "json": {}, "status": 200, "body": b""}

    class Client:
        def __init__(self, *a, **kw):
            calls["timeout"] = kw.get("timeout")

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, json=None, headers=None, **_):
            calls["requests"].append({"method": method, "url": url, "json": json, "headers": headers})
            return FakeStreamResponse(calls["chunks"], calls["status"], calls["body"], calls)

        def post(self, url, json=None, headers=None, **_):
            calls["requests"].append({"method": "POST", "url": url, "json": json, "headers": headers})
            return FakeJsonResponse(calls["json"], calls["status"])

    monkeypatch.setattr("httpx.Client", Client)
    return calls
