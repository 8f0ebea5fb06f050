import base64
import dataclasses

import pytest

from conftest import MemoryPayloadStore, SettingsStub

from graphchat_core.attachments.file_cache import FileHandle, FileHandleCache
from graphchat_core.attachments.materializer import CLIENT_UNAVAILABLE_OMITTED, FILE_UPLOAD_OMITTED, Materializer
from graphchat_core.domain.exceptions import NetworkError, ValidationError
from graphchat_core.domain.models import ImageAttachment, PdfAttachment, Turn
from graphchat_core.providers import create_provider
from graphchat_core.providers.anthropic_client import AnthropicClient, build_anthropic_request
from graphchat_core.providers.base import ChatSettings
from graphchat_core.providers.gemini_client import GeminiClient, build_gemini_request
from graphchat_core.providers.model_settings import ModelUserSettings
from graphchat_core.providers.openai_client import OpenAIClient, build_openai_request
from graphchat_core.providers.registry import PROVIDER_REGISTRY, get_model_info
from graphchat_core.providers.xai_client import XaiClient, build_xai_request

PDF_B64 = base64.b64encode(b"%PDF-1.7 test").decode("ascii")
PNG_B64 = base64.b64encode(b"\x89PNG fake").decode("ascii")


def _user(node_id, text, attachments=None, leaf=False):
    return Turn(
        role="user",
        node_id=node_id,
        node_kind="text",
        text_parts=[text] if text else [],
        attachment_parts=list(attachments or []),
        is_leaf=leaf,
    )


def _assistant(node_id, text, model_id=None, raw_key=None, canonical=None):
    return Turn(
        role="assistant",
        node_id=node_id,
        node_kind="text",
        text_parts=[text],
        model_id=model_id,
        raw_response_key=raw_key,
        canonical_text=canonical,
    )


OPENAI_RAW = {
    "id": "resp_1",
    "output": [
        {"type": "reasoning", "id": "rs_1", "encrypted_content": "opaque", "summary": []},
        {"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "raw answer"}]},
    ],
}


# ---- OpenAI ----


def test_openai_request_shape():
    turns = [_user("u1", "Describe", [ImageAttachment(data=PNG_B64, mime_type="image/png", detail="low")], leaf=True)]
    chat = ChatSettings(model_id="gpt-5.2-high", web_search_enabled=True, system_instruction="SYS")
    body = build_openai_request(turns, chat, Materializer(None))

    assert body["model"] == "gpt-5.2"
    assert body["instructions"] == "SYS"
    assert body["store"] is True
    assert body["text"] == {"verbosity": "medium"}
    assert body["tools"] == [{"type": "web_search"}]
    assert body["reasoning"] == {"effort": "high", "summary": "auto"}
    assert body["include"] == ["reasoning.encrypted_content"]
    assert body["input"] == [
        {
            "role": "user",
            "content": [
                {"type": "input_text", "text": "Describe"},
                {"type": "input_image", "image_url": f"data:image/png;base64,{PNG_B64}", "detail": "low"},
            ],
        }
    ]


def test_openai_user_settings_control_verbosity_and_summary():
    user = ModelUserSettings(streaming=True, verbosity="low", reasoning_summary="off")
    chat = ChatSettings(model_id="gpt-5.2-medium", user=user, system_instruction="")
    body = build_openai_request([_user("u1", "hi", leaf=True)], chat, Materializer(None))
    assert body["text"] == {"verbosity": "low"}
    assert body["reasoning"] == {"effort": "medium"}
    assert "tools" not in body


def test_openai_assistant_turn_sources():
    payloads = MemoryPayloadStore({"c/a1/res": OPENAI_RAW})
    chat = ChatSettings(model_id="gpt-5.2-high", system_instruction="")

    replay = build_openai_request(
        [_user("u1", "q"), _assistant("a1", "node text", "gpt-5.2-high", "c/a1/res"), _user("u2", "next", leaf=True)],
        chat,
        Materializer(None),
        payloads,
    )
    assert replay["input"][1:3] == OPENAI_RAW["output"]

    canonical = build_openai_request(
        [_assistant("a1", "node text", "gpt-5.2-high", "c/a1/res", canonical="clean text")],
        chat,
        Materializer(None),
        payloads,
    )
    assert canonical["input"] == [{"role": "assistant", "content": [{"type": "output_text", "text": "clean text"}]}]

    foreign = build_openai_request(
        [_assistant("a1", "node text", "claude-opus-4-5", "c/a1/res")],
        chat,
        Materializer(None),
        payloads,
    )
    assert foreign["input"] == [{"role": "assistant", "content": [{"type": "output_text", "text": "raw answer"}]}]


def test_openai_pdf_input_file():
    turns = [_user("u1", "", [PdfAttachment(data=PDF_B64, name="paper.pdf")], leaf=True)]
    body = build_openai_request(turns, ChatSettings(system_instruction=""), Materializer(None))
    assert body["input"][0]["content"] == [
        {"type": "input_file", "file_data": f"data:application/pdf;base64,{PDF_B64}", "filename": "paper.pdf"}
    ]


def test_openai_send_requires_api_key():
    class NoKey(SettingsStub):
        openai_api_key = None

    with pytest.raises(ValidationError):
        OpenAIClient(NoKey()).send({"model": "gpt-5.2"})


# ---- Anthropic ----


def test_anthropic_request_effort_and_max_tokens():
    user = ModelUserSettings(streaming=True, max_tokens=999_999, effort="max")
    chat = ChatSettings(model_id="claude-opus-4-5", user=user, web_search_enabled=True, system_instruction="SYS")
    turns = [_user("u1", "Read", [PdfAttachment(data=PDF_B64), ImageAttachment(data=PNG_B64, mime_type="image/jpeg")], leaf=True)]
    body = build_anthropic_request(turns, chat, Materializer(None))

    assert body["model"] == "claude-opus-4-5"
    assert body["max_tokens"] == 200_000
    assert body["system"] == "SYS"
    assert body["thinking"] == {"type": "adaptive"}
    assert body["output_config"] == {"effort": "high"}
    assert body["tools"] == [{"type": "web_search_20250305", "name": "web_search"}]
    content = body["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "Read"}
    assert content[1]["type"] == "document"
    assert content[1]["source"] == {"type": "base64", "media_type": "application/pdf", "data": PDF_B64}
    assert content[2]["source"]["media_type"] == "image/jpeg"


def test_anthropic_unsupported_effort_falls_back():
    chat = ChatSettings(model_id="claude-opus-4-5", user=ModelUserSettings(streaming=True, effort="minimal"), system_instruction="")
    body = build_anthropic_request([_user("u1", "x", leaf=True)], chat, Materializer(None))
    assert body["output_config"] == {"effort": "low"}
    assert body["max_tokens"] == 4096


def test_anthropic_without_effort_support_has_no_thinking():
    chat = ChatSettings(model_id="claude-sonnet-4-5", system_instruction="")
    body = build_anthropic_request([_user("u1", "x", leaf=True)], chat, Materializer(None))
    assert "thinking" not in body
    assert "output_config" not in body


def test_anthropic_replays_raw_content():
    raw = {"content": [{"type": "thinking", "thinking": "t", "signature": "s"}, {"type": "text", "text": "hi"}]}
    payloads = MemoryPayloadStore({"c/a1/res": raw})
    chat = ChatSettings(model_id="claude-opus-4-5", system_instruction="")
    body = build_anthropic_request([_assistant("a1", "hi", "claude-opus-4-5", "c/a1/res")], chat, Materializer(None), payloads)
    assert body["messages"] == [{"role": "assistant", "content": raw["content"]}]


def test_anthropic_headers_include_beta():
    class Beta(SettingsStub):
        anthropic_beta = "files-api-2025-04-14"

    headers = AnthropicClient(Beta())._headers("key")
    assert headers == {"x-api-key": "key", "anthropic-version": "2023-06-01", "anthropic-beta": "files-api-2025-04-14"}


# ---- Gemini ----


class FakeUploader:
    def __init__(self, fail=False):
        self.uploads = []
        self.fail = fail

    def upload(self, data, mime_type, display_name=None):
        if self.fail:
            raise NetworkError(code="NETWORK_ERROR", message="offline")
        self.uploads.append((data, mime_type, display_name))
        return FileHandle(name=f"files/{len(self.uploads)}", uri=f"https://files.test/{len(self.uploads)}", mime_type=mime_type)

    def is_active(self, handle):
        return True


def test_gemini_request_uploads_attachments():
    uploader = FakeUploader()
    payloads = MemoryPayloadStore()
    cache = FileHandleCache(payloads, uploader)
    turns = [
        _user("u1", "first"),
        _assistant("a1", "reply", "gemini-3-pro-preview"),
        _user("u2", "see pdf", [PdfAttachment(data=PDF_B64, storage_key="pdf-1", name="a.pdf")], leaf=True),
    ]
    chat = ChatSettings(model_id="gemini-3-pro-preview", web_search_enabled=True, system_instruction="SYS")
    body = build_gemini_request(turns, chat, Materializer(None), cache, payloads)

    assert body["model"] == "gemini-3-pro-preview"
    assert body["systemInstruction"] == {"parts": [{"text": "SYS"}]}
    assert body["tools"] == [{"googleSearch": {}}]
    assert body["generationConfig"] == {"thinkingConfig": {"thinkingLevel": "HIGH"}}
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["contents"][2]["parts"] == [
        {"text": "see pdf"},
        {"fileData": {"fileUri": "https://files.test/1", "mimeType": "application/pdf"}},
    ]
    assert uploader.uploads == [(b"%PDF-1.7 test", "application/pdf", "a.pdf")]
    assert payloads.data["gemini/pdf-1"]["uri"] == "https://files.test/1"


def test_gemini_upload_failure_and_missing_client_become_markers():
    turns = [_user("u1", "", [PdfAttachment(data=PDF_B64)], leaf=True)]
    chat = ChatSettings(model_id="gemini-3-pro-preview-low", system_instruction="")
    failed = build_gemini_request(turns, chat, Materializer(None), FileHandleCache(None, FakeUploader(fail=True)))
    assert failed["contents"][0]["parts"] == [{"text": FILE_UPLOAD_OMITTED}]
    assert failed["generationConfig"]["thinkingConfig"]["thinkingLevel"] == "LOW"

    no_client = build_gemini_request(turns, chat, Materializer(None), None)
    assert no_client["contents"][0]["parts"] == [{"text": CLIENT_UNAVAILABLE_OMITTED}]


def test_gemini_send_strips_model_and_adds_citations(http_calls):
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
    deltas = []
    result = GeminiClient(SettingsStub()).send(
        {"model": "gemini-3-pro-preview", "contents": []}, on_delta=lambda d, full: deltas.append(full)
    )
    assert result.ok
    assert result.text == "The sky is blue.[1](<https://example.com>)"
    assert deltas == [result.text]
    req = http_calls["requests"][0]
    assert req["url"] == "https://gemini.test/v1beta/models/gemini-3-pro-preview:generateContent"
    assert req["headers"]["x-goog-api-key"] == "gemini-test-key"
    assert "model" not in req["json"]


# ---- xAI ----


def test_xai_replaces_pdfs_with_markers_in_order():
    turns = [
        _user(
            "u1",
            "Compare",
            [ImageAttachment(data=PNG_B64, mime_type="image/png"), PdfAttachment(storage_key="k", name="report.pdf"), PdfAttachment()],
            leaf=True,
        ),
    ]
    body = build_xai_request(turns, ChatSettings(model_id="grok-4", system_instruction="SYS"), Materializer(None))
    assert body["store"] is False
    assert body["input"][0] == {"role": "system", "content": "SYS"}
    content = body["input"][1]["content"]
    assert [c["type"] for c in content] == ["input_text", "input_image", "input_text", "input_text"]
    assert content[2]["text"] == "[PDF attachment omitted for xAI: report.pdf]"
    assert content[3]["text"] == "[PDF attachment omitted for xAI.]"


def test_xai_assistant_content_is_plain_string():
    body = build_xai_request(
        [_assistant("a1", "previous", "grok-4")],
        ChatSettings(model_id="grok-4", system_instruction="SYS"),
        Materializer(None),
    )
    assert body["input"][1] == {"role": "assistant", "content": "previous"}


def test_xai_send_extracts_text(http_calls):
    http_calls["json"] = {"output": [{"type": "message", "content": [{"type": "output_text", "text": "grok says"}]}]}
    result = XaiClient(SettingsStub()).send({"model": "grok-4", "input": []})
    assert result.text == "grok says"
    assert http_calls["requests"][0]["url"] == "https://api.x.test/v1/responses"


# ---- factory ----


def test_create_provider_by_name():
    assert isinstance(create_provider("openai", SettingsStub()), OpenAIClient)
    assert isinstance(create_provider("Anthropic", SettingsStub()), AnthropicClient)
    assert isinstance(create_provider("gemini", SettingsStub()), GeminiClient)
    assert isinstance(create_provider("xai", SettingsStub()), XaiClient)
    with pytest.raises(KeyError):
        create_provider("mistral", SettingsStub())


@pytest.mark.parametrize(
    "base_id, build",
    [
        ("gpt-5.2-high", lambda turns, chat: build_openai_request(turns, chat, Materializer(None))),
        ("claude-opus-4-5", lambda turns, chat: build_anthropic_request(turns, chat, Materializer(None))),
        ("gemini-3-pro-preview", lambda turns, chat: build_gemini_request(turns, chat, Materializer(None), None)),
        ("grok-4", lambda turns, chat: build_xai_request(turns, chat, Materializer(None))),
    ],
)
def test_web_search_tool_requires_model_capability(monkeypatch, base_id, build):
    base = get_model_info(base_id)
    no_search = dataclasses.replace(base, id=f"{base_id}-nosearch", web_search=False)
    monkeypatch.setitem(PROVIDER_REGISTRY[base.provider].models, no_search.id, no_search)
    turns = [_user("u1", "news?", leaf=True)]

    body = build(turns, ChatSettings(model_id=no_search.id, web_search_enabled=True, system_instruction=""))
    assert "tools" not in body

    body = build(turns, ChatSettings(model_id=base_id, web_search_enabled=True, system_instruction=""))
    assert "tools" in body
