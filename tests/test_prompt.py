from __future__ import annotations

from pathlib import Path

from engine.prompt import UNREADABLE_MARKER, PromptBuilder, read_attachment
from engine.types import FileRef, Message


def _user(text: str, *attachments: FileRef) -> Message:
    return Message(id=text, is_from_user=True, text=text, attachments=attachments)


def _assistant(text: str) -> Message:
    return Message(id=text, is_from_user=False, text=text)


class TestPromptBuilder:
    def test_history_rendered_in_order_with_open_assistant_tag(self) -> None:
        prompt = PromptBuilder().build([_user("hi"), _assistant("hello")], "how are you")
        assert prompt == "User: hi\n\nAssistant: hello\n\nUser: how are you\n\nAssistant:"
        assert prompt.index("User: hi") < prompt.index("Assistant: hello") < prompt.index("User: how are you")

    def test_empty_history(self) -> None:
        assert PromptBuilder().build([], "ping") == "User: ping\n\nAssistant:"

    def test_attachment_block_follows_user_line(self, tmp_path: Path) -> None:
        notes = tmp_path / "notes.txt"
        notes.write_text("alpha\nbeta", encoding="utf-8")
        ref = FileRef(name="notes.txt", path=notes, kind="text", size_bytes=10)
        prompt = PromptBuilder().build([_user("see file", ref)], "summarise")
        assert (
            "User: see file\n\n[Attached Files]:\n"
            "\n--- File: notes.txt (Type: text) ---\nalpha\nbeta\n--- End of notes.txt ---\n"
        ) in prompt
        assert prompt.endswith("User: summarise\n\nAssistant:")

    def test_assistant_attachments_are_ignored(self, tmp_path: Path) -> None:
        ref = FileRef(name="x.txt", path=tmp_path / "x.txt")
        message = Message(id="a", is_from_user=False, text="done", attachments=(ref,))
        assert "[Attached Files]" not in PromptBuilder().build([message], "next")


class TestReadAttachment:
    def test_missing_file_degrades_to_marker(self, tmp_path: Path) -> None:
        ref = FileRef(name="gone.txt", path=tmp_path / "gone.txt")
        assert read_attachment(ref) == "[Could not access file: gone.txt]"

    def test_binary_content_uses_unreadable_marker(self, tmp_path: Path) -> None:
        blob = tmp_path / "image.bin"
        blob.write_bytes(b"\x89PNG\x00\x00\xff\xfe")
        assert read_attachment(FileRef(name="image.bin", path=blob, kind="binary")) == UNREADABLE_MARKER

    def test_non_utf8_text_decoded_permissively(self, tmp_path: Path) -> None:
        legacy = tmp_path / "legacy.txt"
        legacy.write_bytes("café".encode("latin-1"))
        assert read_attachment(FileRef(name="legacy.txt", path=legacy)) == "caf�"

    def test_directory_path_is_not_fatal(self, tmp_path: Path) -> None:
        text = read_attachment(FileRef(name="folder", path=tmp_path))
        assert text.startswith("[")
