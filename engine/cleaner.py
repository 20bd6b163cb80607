"""Turn raw llama-cli output into presentable assistant text.

The pipeline runs in a fixed order:

1. drop the echoed prompt when output starts with the user tag
2. strip interactive ``>`` continuation markers
3. strip end-of-sequence / end-of-turn tokens
4. strip leading and trailing role-tag remnants
5. strip phrase fragments left behind by truncated stop sequences
6. trim surrounding whitespace
7. collapse three or more newlines into a single blank line
8. collapse runs of spaces

Steps that rewrite content (2, 3, 5, 7, 8) only touch prose. Lines inside a
fenced code block, including the fence lines themselves, pass through
untouched. ``clean_response`` re-applies the pipeline until the text stops
changing, so cleaning its own output is a no-op.
"""

from __future__ import annotations

import re
from typing import Callable

from app.constants import (
    ASSISTANT_TAG,
    END_MARKERS,
    FENCE_MARKER,
    PROMPT_ARTIFACTS,
    TRUNCATED_STOP_PHRASES,
    USER_TAG,
)

_ECHO_BOUNDARY = re.compile(r"\n\n" + re.escape(ASSISTANT_TAG), re.IGNORECASE)
_SHORT_ECHO_BOUNDARY = "\n\nA:"
_ROLE = "(?:" + "|".join(re.escape(tag) for tag in (USER_TAG, ASSISTANT_TAG)) + ")"
_LEADING_ROLE = re.compile(r"\A\n?" + _ROLE)
_TRAILING_ROLE = re.compile(r"\n" + _ROLE + r"[ \t]*\Z")
_PHRASES = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in TRUNCATED_STOP_PHRASES) + r")\b",
    re.IGNORECASE,
)
_TRAILING_TOKEN = re.compile(r"<[^<>\n]*>\Z")
_BLANK_RUN = re.compile(r"\n{3,}")
_LEADING_BLANKS = re.compile(r"\A\n{2,}")
_TRAILING_BLANKS = re.compile(r"\n{2,}\Z")
_SPACE_RUN = re.compile(r" {2,}")


def split_fenced(text: str) -> list[tuple[bool, str]]:
    """Split text into ``(is_code, chunk)`` runs of whole lines.

    A line whose stripped content starts with the fence marker toggles the
    code state and belongs to the code run it opens or closes.
    """
    runs: list[tuple[bool, list[str]]] = []
    in_code = False
    for line in text.split("\n"):
        is_fence = line.strip().startswith(FENCE_MARKER)
        code_line = in_code or is_fence
        if is_fence:
            in_code = not in_code
        if runs and runs[-1][0] == code_line:
            runs[-1][1].append(line)
        else:
            runs.append((code_line, [line]))
    return [(is_code, "\n".join(lines)) for is_code, lines in runs]


def _outside_fences(text: str, transform: Callable[[str], str]) -> str:
    return "\n".join(chunk if is_code else transform(chunk) for is_code, chunk in split_fenced(text))


def _ends_in_prose(text: str) -> bool:
    runs = split_fenced(text)
    return bool(runs) and not runs[-1][0]


def strip_prompt_echo(text: str) -> str:
    if not text.startswith(USER_TAG):
        return text
    match = _ECHO_BOUNDARY.search(text)
    if match:
        return text[match.end():]
    index = text.find(_SHORT_ECHO_BOUNDARY)
    if index >= 0:
        return text[index + len(_SHORT_ECHO_BOUNDARY):]
    return text


def _remove_all(chunk: str, needles: tuple[str, ...]) -> str:
    for needle in needles:
        chunk = chunk.replace(needle, "")
    return chunk


def strip_prompt_artifacts(text: str) -> str:
    text = _outside_fences(text, lambda chunk: _remove_all(chunk, PROMPT_ARTIFACTS))
    # A closing ">" of a <...> token is left for the end-marker step.
    if text.endswith(">") and not _TRAILING_TOKEN.search(text) and _ends_in_prose(text):
        text = text[:-1]
    return text


def strip_end_markers(text: str) -> str:
    return _outside_fences(text, lambda chunk: _remove_all(chunk, END_MARKERS))


def strip_role_remnants(text: str) -> str:
    text = _LEADING_ROLE.sub("", text, count=1)
    return _TRAILING_ROLE.sub("", text, count=1)


def strip_stop_fragments(text: str) -> str:
    return _outside_fences(text, lambda chunk: _PHRASES.sub("", chunk))


def collapse_blank_lines(text: str) -> str:
    """Leave at most one blank line between paragraphs and around fences.

    Runs are rejoined with a newline, so a prose run next to a code run may
    keep only one newline of its own on that side.
    """
    runs = split_fenced(text)
    pieces: list[str] = []
    for index, (is_code, chunk) in enumerate(runs):
        if not is_code:
            after_code = index > 0
            before_code = index < len(runs) - 1
            if not chunk.strip("\n") and after_code and before_code:
                chunk = ""
            else:
                chunk = _BLANK_RUN.sub("\n\n", chunk)
                if after_code:
                    chunk = _LEADING_BLANKS.sub("\n", chunk)
                if before_code:
                    chunk = _TRAILING_BLANKS.sub("\n", chunk)
        pieces.append(chunk)
    return "\n".join(pieces)


def collapse_spaces(text: str) -> str:
    return _outside_fences(text, lambda chunk: _SPACE_RUN.sub(" ", chunk))


def _clean_once(text: str) -> str:
    text = strip_prompt_echo(text)
    text = strip_prompt_artifacts(text)
    text = strip_end_markers(text)
    text = strip_role_remnants(text)
    text = strip_stop_fragments(text)
    text = text.strip()
    text = collapse_blank_lines(text)
    return collapse_spaces(text)


def clean_response(raw: str) -> str:
    """Return the presentable form of raw engine output."""
    text = raw or ""
    # Any pass that changes the text also shortens it.
    while True:
        cleaned = _clean_once(text)
        if cleaned == text:
            return cleaned
        text = cleaned


__all__ = [
    "clean_response",
    "collapse_blank_lines",
    "collapse_spaces",
    "split_fenced",
    "strip_end_markers",
    "strip_prompt_artifacts",
    "strip_prompt_echo",
    "strip_role_remnants",
    "strip_stop_fragments",
]
