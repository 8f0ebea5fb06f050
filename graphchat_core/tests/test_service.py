from conftest import MemoryPayloadStore, SettingsStub, sse

from graphchat_core.api.service import ChatService
from graphchat_core.domain.models import InkNode, TextNode
from graphchat_core.streaming.cancel import CancellationToken


def _anthropic_stream(*texts):
    chunks = [
        sse("message_start", {"type": "message_start", "message": {"id": "msg_1", "role": "assistant", "content": []}}),
        sse("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}),
    ]
    chunks += [
        sse("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": t}})
        for t in texts
    ]
    chunks += [
        sse("content_block_stop", {"type": "content_block_stop", "index": 0}),
        sse("message_stop", {"type": "message_stop"}),
    ]
    return chunks


NODES = [
    {"id": "u1", "author": "user", "content": "Hi"},
    {"id": "a1", "parentId": "u1", "author": "assistant", "content": "Hello!", "canonicalMessage": {"text": "Hello!"}},
    {"id": "u2", "parentId": "a1", "author": "user", "content": "How are you?"},
]


def test_streaming_send_persists_request_and_reply(http_calls):
    http_calls["chunks"] = _anthropic_stream("Fine, ", "thanks.")
    payloads = MemoryPayloadStore()
    deltas = []
    service = ChatService(payload_store=payloads, settings=SettingsStub())

    res = service.send(
        NODES,
        "u2",
        "chat-1",
        model_id="claude-opus-4-5",
        user_settings={"effort": "medium"},
        system_instruction="SYS",
        reply_node_id="a2",
        on_delta=lambda d, full: deltas.append(full),
    )

    assert res.ok
    assert res.text == "Fine, thanks."
    assert deltas == ["Fine, ", "Fine, thanks."]
    assert res.provider == "anthropic"
    assert res.trace_id
    assert res.request_key == "chat-1/a2/req"
    assert res.response_key == "chat-1/a2/res"
    assert payloads.data["chat-1/a2/req"]["messages"] == [
        {"role": "user", "content": [{"type": "text", "text": "Hi"}]},
        {"role": "assistant", "content": [{"type": "text", "text": "Hello!"}]},
        {"role": "user", "content": [{"type": "text", "text": "How are you?"}]},
    ]
    assert payloads.data["chat-1/a2/res"]["content"] == [{"type": "text", "text": "Fine, thanks."}]
    assert res.canonical_message.text == "Fine, thanks."
    assert res.canonical_meta.to_dict() == {"usedWebSearch": False, "effort": "medium"}
    req = http_calls["requests"][0]
    assert req["url"] == "https://api.anthropic.test/v1/messages"
    assert req["json"]["stream"] is True


def test_non_streaming_when_user_disables_streaming(http_calls):
    http_calls["json"] = {"id": "resp_1", "output": [{"type": "message", "content": [{"type": "output_text", "text": "ok"}]}]}
    res = ChatService(settings=SettingsStub()).send(
        NODES, "u2", "chat-1", model_id="gpt-5.2-high", user_settings={"streaming": False}, web_search_enabled=True
    )
    assert res.ok
    assert res.text == "ok"
    assert res.request_key is None
    assert res.canonical_meta.used_web_search is True
    assert res.canonical_meta.effort == "high"
    assert res.canonical_meta.verbosity == "medium"
    assert "stream" not in http_calls["requests"][0]["json"]


def test_gemini_canonical_message_keeps_citations(http_calls):
    http_calls["json"] = {
        "candidates": [
            {
                "content": {"role": "model", "parts": [{"text": "The sky is blue."}]},
                "groundingMetadata": {
                    "groundingChunks": [{"web": {"uri": "https://example.com"}}],
                    "groundingSupports": [{"segment": {"endIndex": 16}, "groundingChunkIndices": [0]}],
                },
            }
        ]
    }
    res = ChatService(settings=SettingsStub()).send(NODES, "u2", "chat-1", model_id="gemini-3-pro-preview")
    assert res.canonical_message.text == "The sky is blue.[1](<https://example.com>)"


def test_cancelled_stream_keeps_partial_text_and_skips_reply(http_calls):
    http_calls["chunks"] = _anthropic_stream("Hel", "lo", " world")
    payloads = MemoryPayloadStore()
    token = CancellationToken()

    def on_delta(delta, full):
        if full == "Hello":
            token.cancel()

    res = ChatService(payload_store=payloads, settings=SettingsStub()).send(
        NODES, "u2", "chat-1", model_id="claude-sonnet-4-5", token=token, on_delta=on_delta
    )
    assert res.status == "cancelled"
    assert res.text == "Hello"
    assert res.response_key is None
    assert "chat-1/u2/res" not in payloads.data
    assert "chat-1/u2/req" in payloads.data


def test_missing_api_key_is_failure_result():
    class NoKey(SettingsStub):
        xai_api_key = None

    res = ChatService(settings=NoKey()).send(NODES, "u2", "chat-1", model_id="grok-4")
    assert res.status == "failure"
    assert res.result.error_code == "MISSING_API_KEY"


def test_unknown_model_is_failure_result():
    res = ChatService(settings=SettingsStub()).send(NODES, "u2", "chat-1", model_id="gpt-2")
    assert res.status == "failure"
    assert res.result.error_code == "UNKNOWN_MODEL"


def test_ink_leaf_without_strokes_is_failure_result():
    nodes = [TextNode(id="u1", content="draw"), InkNode(id="k1", parent_id="u1")]
    res = ChatService(settings=SettingsStub()).send(nodes, "k1", "chat-1", model_id="gpt-5.2-high")
    assert res.status == "failure"
    assert res.result.error_code == "RASTERIZATION_FAILED"


def test_http_error_is_failure_result(http_calls):
    http_calls["status"] = 401
    http_calls["body"] = b'{"error": {"message": "invalid x-api-key"}}'
    res = ChatService(settings=SettingsStub()).send(NODES, "u2", "chat-1", model_id="claude-opus-4-5")
    assert res.status == "failure"
    assert res.result.error == "invalid x-api-key"
    assert res.canonical_message is None


class FailingPayloadStore(MemoryPayloadStore):
    def __init__(self, failing_suffix):
        super().__init__()
        self.failing_suffix = failing_suffix

    def put(self, key, value):
        if key.endswith(self.failing_suffix):
            raise OSError("disk full")
        super().put(key, value)


def test_reply_persist_error_keeps_successful_result(http_calls):
    http_calls["chunks"] = _anthropic_stream("Done.")
    payloads = FailingPayloadStore("/res")
    res = ChatService(payload_store=payloads, settings=SettingsStub()).send(
        NODES, "u2", "chat-1", model_id="claude-opus-4-5"
    )
    assert res.ok
    assert res.text == "Done."
    assert res.canonical_message.text == "Done."
    assert res.request_key == "chat-1/u2/req"
    assert res.response_key is None


def test_request_persist_error_still_sends(http_calls):
    http_calls["chunks"] = _anthropic_stream("Sent anyway.")
    payloads = FailingPayloadStore("/req")
    res = ChatService(payload_store=payloads, settings=SettingsStub()).send(
        NODES, "u2", "chat-1", model_id="claude-opus-4-5"
    )
    assert res.ok
    assert res.request_key is None
    assert res.response_key == "chat-1/u2/res"
    assert len(http_calls["requests"]) == 1


def test_missing_system_instruction_file_is_failure_result(http_calls):
    class MissingPrompt(SettingsStub):
        system_instruction_file = "/nonexistent/prompt.md"

    res = ChatService(settings=MissingPrompt()).send(NODES, "u2", "chat-1", model_id="claude-opus-4-5")
    assert res.status == "failure"
    assert res.result.error_code == "SYSTEM_PROMPT_UNREADABLE"
    assert http_calls["requests"] == []


def test_malformed_node_is_failure_result():
    nodes = [{"parentId": "x", "content": "no id"}, {"id": "k1", "kind": "ink", "strokes": [{"points": [{"x": "a", "y": 1}]}]}]
    res = ChatService(settings=SettingsStub()).send(nodes, "k1", "chat-1", model_id="gpt-5.2-high")
    assert res.status == "failure"
    assert res.result.error_code == "INVALID_NODE"
