from pathlib import Path

import pytest

from agentdesk.agent import attachments
from agentdesk.agent.attachments import AttachmentError, FileAttachmentManager
from agentdesk.llm.types import DocumentPart, FilePart, ImagePart, TextPart

pytestmark = pytest.mark.unit


def _source(tmp_path: Path, name: str, data: bytes) -> Path:
    path = tmp_path / "incoming" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def test_colliding_names_get_counter_before_extension(tmp_path: Path) -> None:
    manager = FileAttachmentManager(tmp_path / "conv")
    source = _source(tmp_path, "report.pdf", b"%PDF-1.4")

    names = [manager.copy_file(source, "m1").file_name for _ in range(3)]

    assert names == ["report.pdf", "report (1).pdf", "report (2).pdf"]
    assert sorted(p.name for p in manager.message_dir("m1").iterdir()) == sorted(names)


def test_counter_goes_before_first_dot_and_handles_no_extension(tmp_path: Path) -> None:
    directory = tmp_path / "dir"
    directory.mkdir()
    (directory / "archive.tar.gz").write_bytes(b"")
    (directory / "Makefile").write_bytes(b"")

    assert FileAttachmentManager.unique_file_name("archive.tar.gz", directory) == "archive (1).tar.gz"
    assert FileAttachmentManager.unique_file_name("Makefile", directory) == "Makefile (1)"
    assert FileAttachmentManager.unique_file_name("fresh.txt", directory) == "fresh.txt"


def test_copy_records_metadata(tmp_path: Path) -> None:
    conversation_dir = tmp_path / "conv"
    manager = FileAttachmentManager(conversation_dir)

    attachment = manager.copy_file(_source(tmp_path, "photo.png", b"\x89PNG...."), "m1")

    assert attachment.mime_type == "image/png"
    assert attachment.file_size == 8
    assert attachment.path == conversation_dir / "attachments" / "m1" / "photo.png"
    assert attachment.relative_to(conversation_dir) == "attachments/m1/photo.png"


def test_missing_source_raises(tmp_path: Path) -> None:
    manager = FileAttachmentManager(tmp_path / "conv")

    with pytest.raises(AttachmentError):
        manager.copy_file(tmp_path / "nope.txt", "m1")


def test_failed_copy_leaves_no_partial_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    manager = FileAttachmentManager(tmp_path / "conv")
    source = _source(tmp_path, "notes.txt", b"data")

    def broken_copy(src, dst) -> None:
        dst.write(b"da")
        raise OSError("disk full")

    monkeypatch.setattr(attachments.shutil, "copyfileobj", broken_copy)
    with pytest.raises(AttachmentError):
        manager.copy_file(source, "m1")
    monkeypatch.undo()

    assert list(manager.message_dir("m1").iterdir()) == []
    assert manager.copy_file(source, "m1").file_name == "notes.txt"


@pytest.mark.parametrize(
    ("name", "data", "expected"),
    [
        ("photo.png", b"\x89PNG", ImagePart),
        ("paper.pdf", b"%PDF", DocumentPart),
        ("blob.bin", b"\x00\x01", FilePart),
    ],
)
def test_content_block_follows_mime_type(tmp_path: Path, name: str, data: bytes, expected: type) -> None:
    manager = FileAttachmentManager(tmp_path / "conv")
    attachment = manager.copy_file(_source(tmp_path, name, data), "m1")

    block = manager.create_content_block(attachment)

    assert isinstance(block, expected)
    assert block.data == data
    assert block.source_path == str(attachment.path)


def test_text_attachment_is_inlined(tmp_path: Path) -> None:
    manager = FileAttachmentManager(tmp_path / "conv")
    attachment = manager.copy_file(_source(tmp_path, "notes.txt", "héllo".encode()), "m1")

    block = manager.create_content_block(attachment)

    assert block == TextPart("File: notes.txt\n\nhéllo")


def test_unreadable_attachment_raises(tmp_path: Path) -> None:
    manager = FileAttachmentManager(tmp_path / "conv")
    attachment = manager.copy_file(_source(tmp_path, "notes.txt", b"x"), "m1")
    attachment.path.unlink()

    with pytest.raises(AttachmentError):
        manager.create_content_block(attachment)


def test_delete_attachments_removes_message_directory(tmp_path: Path) -> None:
    manager = FileAttachmentManager(tmp_path / "conv")
    manager.copy_file(_source(tmp_path, "notes.txt", b"x"), "m1")

    manager.delete_attachments("m1")
    manager.delete_attachments("m1")

    assert not manager.message_dir("m1").exists()
