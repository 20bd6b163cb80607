"""Render conversation history into the single prompt llama-cli consumes."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Sequence

from app.constants import ASSISTANT_TAG, USER_TAG
from engine.types import FileRef, Message

logger = logging.getLogger("ember.prompt")

UNREADABLE_MARKER = "[Unable to read file as text]"


def _looks_binary(data: bytes) -> bool:
    return b"\x00" in data[:8192]


def read_attachment(ref: FileRef) -> str:
    """Return attachment text, or a placeholder when it cannot be read.

    Never raises: unreadable files degrade to a bracketed marker so the
    generation can proceed.
    """
    try:
        with Path(ref.path).open("rb") as handle:
            data = handle.read()
    except (FileNotFoundError, PermissionError):
        logger.warning("Could not access attachment %s at %s", ref.name, ref.path)
        return f"[Could not access file: {ref.name}]"
    except OSError as exc:
        logger.warning("Error reading attachment %s: %s", ref.name, exc)
        return f"[Error reading file: {exc.strerror or exc}]"

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        if _looks_binary(data):
            logger.info("Attachment %s is not text; inserting placeholder", ref.name)
            return UNREADABLE_MARKER
        logger.debug("Attachment %s is not valid UTF-8; decoding permissively", ref.name)
        return data.decode("utf-8", errors="replace")
    logger.debug("Read attachment %s (%s characters)", ref.name, len(text))
    return text


def render_attachments(attachments: Iterable[FileRef]) -> str:
    parts = ["\n\n[Attached Files]:\n"]
    for ref in attachments:
        parts.append(f"\n--- File: {ref.name} (Type: {ref.kind}) ---\n")
        parts.append(read_attachment(ref))
        parts.append(f"\n--- End of {ref.name} ---\n")
    return "".join(parts)


class PromptBuilder:
    """Role-tagged plain-text prompt with inlined attachment bodies."""

    def __init__(self, *, user_tag: str = USER_TAG, assistant_tag: str = ASSISTANT_TAG) -> None:
        self.user_tag = user_tag
        self.assistant_tag = assistant_tag

    def build(self, history: Sequence[Message], prompt: str) -> str:
        parts: list[str] = []
        for message in history:
            if message.is_from_user:
                parts.append(f"{self.user_tag} {message.text}")
                if message.attachments:
                    parts.append(render_attachments(message.attachments))
                parts.append("\n\n")
            else:
                parts.append(f"{self.assistant_tag} {message.text}\n\n")
        if not history:
            logger.debug("No conversation history; starting fresh")
        parts.append(f"{self.user_tag} {prompt}\n\n{self.assistant_tag}")
        return "".join(parts)


__all__ = ["PromptBuilder", "UNREADABLE_MARKER", "read_attachment", "render_attachments"]
