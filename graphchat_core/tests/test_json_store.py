import tempfile
from pathlib import Path

import pytest

from graphchat_core.domain.exceptions import BusinessError
from graphchat_core.infrastructure.storage.json_store import FileAttachmentStore, JsonPayloadStore


def test_payload_store_put_and_get():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonPayloadStore(root=root)
        store.put("chat-1/node-1/res", {"output": [{"type": "message"}], "note": "中文"})
        assert store.get("chat-1/node-1/res") == {"output": [{"type": "message"}], "note": "中文"}
        assert (root / "payloads" / "chat-1" / "node-1" / "res.json").exists()
        # 不留下临时文件
        assert [p.name for p in (root / "payloads" / "chat-1" / "node-1").iterdir()] == ["res.json"]


def test_payload_store_missing_key():
    with tempfile.TemporaryDirectory() as d:
        assert JsonPayloadStore(root=d).get("nope/req") is None


def test_payload_store_overwrite():
    with tempfile.TemporaryDirectory() as d:
        store = JsonPayloadStore(root=d)
        store.put("gemini/doc-1", {"name": "files/a"})
        store.put("gemini/doc-1", {"name": "files/b"})
        assert store.get("gemini/doc-1") == {"name": "files/b"}


def test_invalid_keys_rejected():
    with tempfile.TemporaryDirectory() as d:
        store = JsonPayloadStore(root=d)
        for key in ("", "a//b", "../escape", "a/./b"):
            with pytest.raises(BusinessError) as exc:
                store.put(key, {})
            assert exc.value.code == "INVALID_KEY"


def test_unserializable_payload_rejected():
    with tempfile.TemporaryDirectory() as d:
        with pytest.raises(BusinessError) as exc:
            JsonPayloadStore(root=d).put("k", {"bad": object()})
        assert exc.value.code == "STORE_WRITE_ERROR"


def test_attachment_store_roundtrip():
    with tempfile.TemporaryDirectory() as d:
        store = FileAttachmentStore(root=d)
        store.put("att/img-1", b"\x89PNG", "image/png", "shot.png")
        rec = store.get("att/img-1")
        assert rec.data == b"\x89PNG"
        assert rec.mime_type == "image/png"
        assert rec.name == "shot.png"
        assert store.get("att/missing") is None
