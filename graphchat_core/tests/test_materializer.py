import base64

from graphchat_core.attachments.materializer import (
    FILE_READ_OMITTED,
    IMAGE_READ_OMITTED,
    Materializer,
    split_data_url,
)
from graphchat_core.context.chain import resolve_turns
from graphchat_core.domain.models import (
    FileRefBlock,
    ImageAttachment,
    ImageRefBlock,
    InkAttachment,
    PdfAttachment,
    TextBlock,
    TextNode,
)
from graphchat_core.infrastructure.storage.json_store import FileAttachmentStore
from graphchat_core.providers.anthropic_client import build_anthropic_messages
from graphchat_core.providers.base import turn_blocks
from graphchat_core.providers.openai_client import build_openai_input


def test_missing_storage_key_becomes_inline_marker(tmp_path):
    store = FileAttachmentStore(root=tmp_path)
    nodes = [TextNode(id="u1", content="look", attachments=[ImageAttachment(storage_key="not-there")])]
    turns = resolve_turns(nodes, "u1")
    materializer = Materializer(store)

    items = build_openai_input(turns, materializer)
    assert len(items) == 1
    assert items[0]["content"] == [
        {"type": "input_text", "text": "look"},
        {"type": "input_text", "text": IMAGE_READ_OMITTED},
    ]

    messages = build_anthropic_messages(turns, materializer)
    assert messages[0]["content"][-1] == {"type": "text", "text": IMAGE_READ_OMITTED}


def test_marker_keeps_turn_without_text(tmp_path):
    nodes = [TextNode(id="u1", content="", attachments=[PdfAttachment(storage_key="missing.pdf")])]
    turns = resolve_turns(nodes, "u1")
    blocks = turn_blocks(turns[0], Materializer(FileAttachmentStore(root=tmp_path)))
    assert blocks == [TextBlock(text=FILE_READ_OMITTED)]


def test_store_backed_image_is_encoded(tmp_path):
    store = FileAttachmentStore(root=tmp_path)
    store.put("img-1", b"\x89PNG-bytes", "image/png", "shot.png")
    block = Materializer(store).to_block(ImageAttachment(storage_key="img-1", detail="high"))
    assert isinstance(block, ImageRefBlock)
    assert block.base64 == base64.b64encode(b"\x89PNG-bytes").decode("ascii")
    assert block.detail == "high"
    assert block.data_url.startswith("data:image/png;base64,")


def test_inline_data_wins_over_storage_key():
    att = PdfAttachment(data=base64.b64encode(b"%PDF-1.4").decode("ascii"), storage_key="ignored", name=" doc.pdf ")
    block = Materializer(None).to_block(att)
    assert isinstance(block, FileRefBlock)
    assert block.filename == "doc.pdf"
    assert base64.b64decode(block.base64) == b"%PDF-1.4"


def test_invalid_inline_base64_is_omitted():
    block = Materializer(None).to_block(ImageAttachment(data="not base64!!"))
    assert block == TextBlock(text=IMAGE_READ_OMITTED)


def test_ink_attachment_is_not_materialized():
    assert Materializer(None).materialize(InkAttachment(storage_key="ink-1"), "image/png") is None


def test_split_data_url():
    assert split_data_url("data:image/jpeg;base64,AAAA") == ("image/jpeg", "AAAA")
    assert split_data_url("https://example.com/a.png") is None
    assert split_data_url("data:image/png;base64,") is None


def test_inline_data_url_is_decoded():
    payload = base64.b64encode(b"jpeg-bytes").decode("ascii")
    got = Materializer(None).materialize(ImageAttachment(data=f"data:image/jpeg;base64,{payload}"), "image/png")
    assert got.mime_type == "image/jpeg"
    assert got.data == b"jpeg-bytes"


def test_store_error_becomes_marker():
    class BrokenStore:
        def get(self, key):
            raise OSError("disk gone")

    block = Materializer(BrokenStore()).to_block(PdfAttachment(storage_key="doc-1"))
    assert block == TextBlock(text=FILE_READ_OMITTED)
